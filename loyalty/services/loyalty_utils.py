# loyalty/services/loyalty_utils.py
"""
Shared loyalty helpers: window constants, balance dispatch by program type,
earn cooldown checks and the display strings shown on the wallet pass.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import os
import secrets
import string
import logging

from dotenv import load_dotenv

from loyalty.services.utils_functions_service import utcnow

load_dotenv()

logger = logging.getLogger(__name__)

# Display window for the live "reward redeemed" screen and pass message
REDEMPTION_DISPLAY_WINDOW = timedelta(minutes=int(os.getenv("LOYALTY_DISPLAY_WINDOW_MINUTES", "10")))

# Previous counter token stays valid this long after a rotation
TOKEN_GRACE_WINDOW = timedelta(minutes=int(os.getenv("LOYALTY_TOKEN_GRACE_MINUTES", "30")))

EARN_RATE_LIMIT_PER_USER_PER_HOUR = 10
EARN_RATE_LIMIT_PER_IP_PER_HOUR = 20

# More distinct visitors than this from one IP at one business is refused
IP_VELOCITY_THRESHOLD = 3
IP_VELOCITY_WINDOW = timedelta(minutes=10)

# One redemption per visitor in this window
CONSUME_RATE_LIMIT = timedelta(minutes=5)

STAMP_ICONS = {
    "stamp": "Stamp",
    "bean": "Coffee Bean",
    "scissors": "Scissors",
    "flame": "Flame",
    "burger": "Burger",
    "cocktail": "Cocktail",
    "pizza": "Pizza",
    "star": "Star",
    "heart": "Heart",
    "cake": "Cake",
    "dumbbell": "Dumbbell",
    "paw": "Paw",
}

EARN_MODES = ("per_visit", "per_transaction")

_PUBLIC_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_public_id(length: int = 10) -> str:
    return "".join(secrets.choice(_PUBLIC_ID_ALPHABET) for _ in range(length))


# ──────────────────────────────────────────────────────────────────────────────
# Balance dispatch (program.type picks the authoritative column)

def balance_attr(program) -> str:
    if program.type == "stamps":
        return "stamps_balance"
    if program.type == "points":
        return "points_balance"
    raise ValueError(f"Unknown program type: {program.type}")


def get_balance(program, membership) -> int:
    return getattr(membership, balance_attr(program)) or 0


def balance_cap(program) -> int:
    """
    Highest balance a membership may hold.

    One reward is outstanding at a time: a stamp card stops at the threshold,
    a points balance may bank up to one threshold's worth on top of a
    pending reward. Either way a single redemption leaves it below threshold.
    """
    if program.type == "stamps":
        return program.reward_threshold
    return 2 * program.reward_threshold - 1


# ──────────────────────────────────────────────────────────────────────────────
# Earn cooldowns

@dataclass
class EarnConstraints:
    allowed: bool
    reason: str | None = None
    next_eligible_at: datetime | None = None


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name}, falling back to UTC")
        return ZoneInfo("UTC")


def local_today(tz_name: str, now: datetime | None = None) -> date:
    """Today's date in the program timezone. `now` is naive UTC."""
    now = now or utcnow()
    return now.replace(tzinfo=ZoneInfo("UTC")).astimezone(_zone(tz_name)).date()


def next_local_midnight(tz_name: str, now: datetime | None = None) -> datetime:
    """Next midnight in the program timezone, returned as naive UTC."""
    now = now or utcnow()
    zone = _zone(tz_name)
    local_now = now.replace(tzinfo=ZoneInfo("UTC")).astimezone(zone)
    midnight = datetime.combine(local_now.date() + timedelta(days=1), datetime.min.time(), tzinfo=zone)
    return midnight.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)


def can_earn_now(membership, program, now: datetime | None = None) -> EarnConstraints:
    """
    Check daily limit and minimum gap for a membership.

    The daily counter resets when earned_today_date is before today in the
    program's timezone.
    """
    now = now or utcnow()
    today = local_today(program.timezone, now)
    is_new_day = membership.earned_today_date != today
    today_count = 0 if is_new_day else (membership.earned_today_count or 0)

    if program.max_earns_per_day and today_count >= program.max_earns_per_day:
        unit = "stamp" if program.max_earns_per_day == 1 else "stamps"
        return EarnConstraints(
            allowed=False,
            reason=f"You've reached your daily limit of {program.max_earns_per_day} {unit} for today.",
            next_eligible_at=next_local_midnight(program.timezone, now),
        )

    if membership.last_earned_at and program.min_gap_minutes and program.min_gap_minutes > 0:
        next_eligible = membership.last_earned_at + timedelta(minutes=program.min_gap_minutes)
        if now < next_eligible:
            return EarnConstraints(
                allowed=False,
                reason="Too soon since your last stamp. Try again in a few minutes.",
                next_eligible_at=next_eligible,
            )

    return EarnConstraints(allowed=True)


# ──────────────────────────────────────────────────────────────────────────────
# Display helpers

def calculate_progress(balance: int, threshold: int) -> int:
    if threshold <= 0:
        return 0
    return min(round(balance / threshold * 100), 100)


def get_proximity_message(balance: int, threshold: int) -> str | None:
    """Motivational copy based on how close a visitor is to the reward."""
    remaining = threshold - balance
    if remaining <= 0:
        return "Reward available!"
    if remaining == 1:
        return "Just 1 more visit!"
    if remaining == 2:
        return "Only 2 more to go!"
    if remaining == 3:
        return "Almost there, 3 more!"
    if balance >= threshold / 2:
        return "You're over halfway!"
    return None


def status_text(program, balance: int) -> str:
    return f"{balance}/{program.reward_threshold} {program.stamp_label}"


def loyalty_field_values(program, membership, last_message: str | None = None) -> dict[str, str]:
    """
    Field name -> value map for the issuing service template.

    The template always calls the balance field "Points"; the Status string
    carries the program's own label ("7/10 Stamps").
    """
    balance = get_balance(program, membership)
    fields = {
        "Points": str(balance),
        "Threshold": str(program.reward_threshold),
        "Status": status_text(program, balance),
        "Reward": program.reward_description,
    }
    if last_message is not None:
        fields["Last_Message"] = last_message
    return fields
