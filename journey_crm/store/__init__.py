from .base import JourneyStore, day_key
from .memory import InMemoryStore

__all__ = ["JourneyStore", "InMemoryStore", "day_key"]
