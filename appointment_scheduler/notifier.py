import logging
from typing import Optional

import requests

from appointment_scheduler import config
from appointment_scheduler.collaborators import Directory
from appointment_scheduler.errors import NotFoundError
from appointment_scheduler.models import Reservation

logger = logging.getLogger(__name__)

EVENT_TITLES = {
    "requested": "New appointment request",
    "confirmed": "Appointment confirmed",
    "rejected": "Appointment request declined",
    "cancelled": "Appointment cancelled",
    "completed": "Appointment completed",
    "moved": "Appointment moved",
}


def send_telegram_message(message: str) -> bool:
    """Sends a message to the configured Telegram chat. Returns whether it was delivered."""
    token = config.TELEGRAM_BOT_TOKEN
    chat_id = config.TELEGRAM_CHAT_ID

    if not token or not chat_id:
        logger.debug("Telegram configuration missing. Skipping notification.")
        return False

    url = f"https://api.telegram.org/bot{token}/sendMessage"
    payload = {"chat_id": chat_id, "text": message, "parse_mode": "Markdown"}

    try:
        response = requests.post(url, json=payload, timeout=10)
        response.raise_for_status()
        logger.info("Telegram notification sent successfully.")
        return True
    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to send Telegram message: {e}")
        return False


def format_event(event: str, reservation: Reservation, directory: Optional[Directory] = None) -> str:
    requester = reservation.requester_id
    provider = reservation.provider_id
    if directory is not None:
        try:
            requester = directory.resolve_requester(reservation.requester_id).name
            provider = directory.resolve_provider(reservation.provider_id).name
        except NotFoundError as e:
            logger.debug(f"Falling back to ids in notification: {e}")

    title = EVENT_TITLES.get(event, event.capitalize())
    when = reservation.scheduled_at.strftime("%Y-%m-%d %H:%M")
    return (
        f"*{title}* ({reservation.id})\n"
        f"{when} | {provider} with {requester}\n"
        f"Status: {reservation.status.value}"
    )


class TelegramNotifier:
    """Engine listener that posts each reservation event to Telegram."""

    def __init__(self, directory: Optional[Directory] = None):
        self.directory = directory

    def __call__(self, event: str, reservation: Reservation):
        send_telegram_message(format_event(event, reservation, self.directory))
