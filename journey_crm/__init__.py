"""
Journey CRM - operator journey state machine and recycling engine
"""

__version__ = "0.1.0"
