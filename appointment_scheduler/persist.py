import json
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError

from appointment_scheduler import config
from appointment_scheduler.errors import InvalidRangeError
from appointment_scheduler.models import EngineSnapshot, Party, StockItem

logger = logging.getLogger(__name__)


def ensure_data_dir():
    """Ensures the data directory exists."""
    if not os.path.exists(config.DATA_DIR):
        os.makedirs(config.DATA_DIR)


def load_snapshot() -> Optional[EngineSnapshot]:
    """Loads the last saved engine state, or None when there is nothing usable."""
    if not os.path.exists(config.SNAPSHOT_FILE):
        logger.info("No snapshot file found. Starting fresh.")
        return None
    try:
        with open(config.SNAPSHOT_FILE, "r") as f:
            data = json.load(f)
        if "last_updated" not in data or "state" not in data:
            logger.warning("Snapshot file has unexpected format. Starting fresh.")
            return None
        snapshot = EngineSnapshot.model_validate(data["state"])
        logger.info(f"Loaded snapshot, last updated: {data['last_updated']}")
        return snapshot
    except (json.JSONDecodeError, IOError, ValidationError, InvalidRangeError) as e:
        logger.warning(f"Failed to load snapshot file: {e}. Starting fresh.")
        return None


def save_snapshot(snapshot: EngineSnapshot):
    """Saves the engine state to a JSON file with timestamp."""
    ensure_data_dir()
    try:
        data = {
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "state": snapshot.model_dump(mode="json"),
        }
        with open(config.SNAPSHOT_FILE, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Saved snapshot to {config.SNAPSHOT_FILE} on {data['last_updated']}")
    except IOError as e:
        logger.error(f"Failed to save snapshot: {e}")


def load_parties() -> List[Party]:
    rows = _load_list(config.DIRECTORY_FILE, "directory")
    try:
        return [Party.model_validate(p) for p in rows]
    except ValidationError as e:
        logger.warning(f"Directory file has invalid entries: {e}. Ignoring it.")
        return []


def save_parties(parties: List[Party]):
    _save_list(config.DIRECTORY_FILE, [p.model_dump(mode="json") for p in parties])


def load_stock() -> List[StockItem]:
    rows = _load_list(config.INVENTORY_FILE, "inventory")
    try:
        return [StockItem.model_validate(i) for i in rows]
    except ValidationError as e:
        logger.warning(f"Inventory file has invalid entries: {e}. Ignoring it.")
        return []


def save_stock(items: List[StockItem]):
    _save_list(config.INVENTORY_FILE, [i.model_dump(mode="json") for i in items])


def _load_list(path: str, name: str) -> List[dict]:
    if not os.path.exists(path):
        logger.info(f"No {name} file found at {path}.")
        return []
    try:
        with open(path, "r") as f:
            data = json.load(f)
        if not isinstance(data, list):
            logger.warning(f"{name.capitalize()} file has unexpected format. Ignoring it.")
            return []
        return data
    except (json.JSONDecodeError, IOError):
        logger.warning(f"Failed to load {name} file. Ignoring it.")
        return []


def _save_list(path: str, rows: List[dict]):
    ensure_data_dir()
    try:
        with open(path, "w") as f:
            json.dump(rows, f, indent=2)
        logger.info(f"Saved {len(rows)} row(s) to {path}")
    except IOError as e:
        logger.error(f"Failed to save {path}: {e}")
