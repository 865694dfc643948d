# loyalty/services/notification_service.py
"""
Best-effort outbound notifications to the city team (Slack-style webhook).

send_loyalty_notification() raises NotificationError; callers go through
notify_safely() so a failed notification never affects the state change
that triggered it.
"""
import os
import logging

import requests
from dotenv import load_dotenv

from loyalty.exceptions import NotificationError

load_dotenv()

logger = logging.getLogger(__name__)

WEBHOOK_URL = os.getenv("LOYALTY_NOTIFY_WEBHOOK_URL")


def send_loyalty_notification(city: str, business_name: str, subject: str, message: str) -> None:
    if not WEBHOOK_URL:
        logger.debug(f"Notification webhook not configured, dropping: {subject}")
        return

    payload = {
        "text": f"*[{city}] {subject}*\n{business_name}: {message}",
        "city": city,
        "category": "loyalty",
        "subject": subject,
    }

    try:
        response = requests.post(WEBHOOK_URL, json=payload, timeout=5)
    except requests.RequestException as e:
        raise NotificationError(f"Notification request failed: {e}") from e

    if response.status_code >= 300:
        raise NotificationError(f"Notification webhook returned {response.status_code}: {response.text}")


def notify_safely(city: str, business_name: str, subject: str, message: str) -> bool:
    """Fire-and-forget wrapper. Returns False when the notification was lost."""
    try:
        send_loyalty_notification(city, business_name, subject, message)
        return True
    except NotificationError as e:
        logger.error(f"Loyalty notification failed ({subject}): {e}")
        return False
