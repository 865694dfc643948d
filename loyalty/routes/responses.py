# loyalty/routes/responses.py
import uuid
import logging

from flask import jsonify

from loyalty.exceptions import (
    EarnNotAllowed, InsufficientBalance, LoyaltyError, RedeemNotAllowed, ValidationError,
)
from loyalty.services.utils_functions_service import isoformat_z

logger = logging.getLogger(__name__)


def error_response(e: LoyaltyError):
    """Translate a service error into the JSON error body and status code."""
    body = {"error": e.error, "message": str(e)}

    if isinstance(e, (EarnNotAllowed, RedeemNotAllowed)):
        body["reason"] = e.reason
        body["next_eligible_at"] = isoformat_z(e.next_eligible_at)
    elif isinstance(e, InsufficientBalance):
        body["balance"] = e.balance
        body["threshold"] = e.threshold

    if e.status_code >= 500:
        logger.error(f"{e.error}: {e}")
    return jsonify(body), e.status_code


def parse_uuid(value, name: str) -> uuid.UUID:
    if not value:
        raise ValidationError(f"{name} is required")
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"{name} is not a valid id")
