"""
Configuration et utilitaires partagés
"""

import os
import logging
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'journey_crm')

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


# ==================== JOURNEY / RECYCLING ====================

# Stage >= 3 = joueur "high value"
HIGH_VALUE_STAGE = 3
UNREGISTERED_STAGE = -1
REGISTERED_STAGE = 0

# Compare-and-swap sur customer_journey_states
MAX_STATE_UPDATE_ATTEMPTS = int(os.environ.get('MAX_STATE_UPDATE_ATTEMPTS', '10'))

# Lease lock (recycle par customer/from/to)
LOCK_TTL_SECONDS = int(os.environ.get('LOCK_TTL_SECONDS', '30'))
LOCK_WAIT_SECONDS = float(os.environ.get('LOCK_WAIT_SECONDS', '5'))

BATCH_RECYCLE_LIMIT = int(os.environ.get('BATCH_RECYCLE_LIMIT', '100'))


# ==================== MESSAGING CAPS ====================

MIN_HOURS_BETWEEN_MESSAGES = 24
ACQUISITION_MAX_EMAILS = 3
ACQUISITION_MAX_SMS = 2


# ==================== SCHEDULER ====================

SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE', 'UTC')
RECYCLE_CRON_HOURS = os.environ.get('RECYCLE_CRON_HOURS', '*/6')
RATES_CRON_HOUR = int(os.environ.get('RATES_CRON_HOUR', '2'))


# ==================== HELPERS ====================

def now_utc() -> datetime:
    """Retourne la date/heure actuelle (UTC, timezone-aware)"""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return now_utc().isoformat()


def days_between(earlier: datetime, later: datetime) -> int:
    """Nombre de jours entiers (arrondi inférieur) entre deux dates"""
    if earlier.tzinfo is None:
        earlier = earlier.replace(tzinfo=timezone.utc)
    if later.tzinfo is None:
        later = later.replace(tzinfo=timezone.utc)
    return int((later - earlier).total_seconds() // 86400)


def configure_logging(level: str = None):
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_mongo_store(mongo_url: str = None, db_name: str = None):
    """
    Construit un MongoStore sur un client motor dédié.
    Le client n'est jamais global: chaque appelant possède son store.
    """
    from motor.motor_asyncio import AsyncIOMotorClient
    from journey_crm.store.mongo import MongoStore

    client = AsyncIOMotorClient(mongo_url or MONGO_URL)
    return MongoStore(client[db_name or DB_NAME], client=client)
