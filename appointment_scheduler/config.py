import logging
import os
from datetime import time
from typing import List, Tuple

logger = logging.getLogger(__name__)

# --- File Paths ---
DATA_DIR = os.environ.get("SCHEDULER_DATA_DIR", "data")
SNAPSHOT_FILE = os.path.join(DATA_DIR, "snapshot.json")
DIRECTORY_FILE = os.path.join(DATA_DIR, "directory.json")
INVENTORY_FILE = os.path.join(DATA_DIR, "inventory.json")

# --- Booking policy ---
SLOT_DURATION_MINUTES = int(os.environ.get("SLOT_DURATION_MINUTES", "30"))
BOOKING_HORIZON_DAYS = int(os.environ.get("BOOKING_HORIZON_DAYS", "30"))

# Daily template used to generate free slots.
WORKING_WINDOWS: List[Tuple[time, time]] = [(time(9, 0), time(12, 0)), (time(13, 0), time(18, 0))]

# Latest start time accepted by a booking request. Differs from the 18:00 end
# of the generation template; both are kept.
BOOKING_CUTOFF = time.fromisoformat(os.environ.get("BOOKING_CUTOFF", "17:30"))

# Days ahead that are regenerated eagerly when a provider template changes.
AVAILABILITY_DAYS = int(os.environ.get("AVAILABILITY_DAYS", "7"))

# --- Telegram ---
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID = os.environ.get("TELEGRAM_CHAT_ID")
if not TELEGRAM_BOT_TOKEN or not TELEGRAM_CHAT_ID:
    logger.warning("Telegram configuration incomplete. Skipping notifications.")
