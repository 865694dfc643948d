# loyalty/services/token_service.py
"""
Counter QR token rotation.

The token printed at the till authorizes in-person earns. After a rotation
the previous token keeps working for TOKEN_GRACE_WINDOW so codes that are
already printed or on screen do not break immediately.
"""
from datetime import datetime
import hmac
import secrets
import logging

from sqlalchemy import update

from loyalty.db import SessionLocal
from loyalty.exceptions import ConflictingRequest, ProgramNotFound
from loyalty.models import LoyaltyProgram
from loyalty.services.loyalty_utils import TOKEN_GRACE_WINDOW
from loyalty.services.utils_functions_service import utcnow

logger = logging.getLogger(__name__)

# retries when another rotation replaced the token first
ROTATE_ATTEMPTS = 3


def generate_counter_token() -> str:
    """URL-safe random token (192 bits)."""
    return secrets.token_urlsafe(24)


def _matches(presented: str, stored: str | None) -> bool:
    if not stored or not presented:
        return False
    return hmac.compare_digest(presented.encode(), stored.encode())


def validate_counter_token(program: LoyaltyProgram, presented_token: str, now: datetime | None = None) -> bool:
    """
    Accept the current token, or the previous one while the grace window
    after the last rotation is still open.
    """
    if _matches(presented_token, program.counter_qr_token):
        return True

    if _matches(presented_token, program.previous_counter_qr_token) and program.counter_qr_token_rotated_at:
        now = now or utcnow()
        if now - program.counter_qr_token_rotated_at <= TOKEN_GRACE_WINDOW:
            return True
        logger.info(f"Previous counter token for program {program.id} presented after grace window")

    return False


def rotate_counter_token(program_id, business_id=None, now: datetime | None = None) -> LoyaltyProgram:
    """
    Issue a new counter token and move the current one into the grace slot.

    When business_id is given the program must belong to it.
    """
    now = now or utcnow()
    with SessionLocal() as db:
        for _ in range(ROTATE_ATTEMPTS):
            program = db.get(LoyaltyProgram, program_id, populate_existing=True)

            if not program or (business_id is not None and program.business_id != business_id):
                raise ProgramNotFound(f"Program {program_id} not found")

            current = program.counter_qr_token
            result = db.execute(
                update(LoyaltyProgram)
                .where(LoyaltyProgram.id == program.id, LoyaltyProgram.counter_qr_token == current)
                .values(
                    previous_counter_qr_token=current,
                    counter_qr_token=generate_counter_token(),
                    counter_qr_token_rotated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                break
            db.rollback()
        else:
            raise ConflictingRequest("Counter token changed concurrently, please try again")

        db.commit()
        program = db.get(LoyaltyProgram, program_id, populate_existing=True)

        logger.info(f"Rotated counter token for program {program.id}")
        return program
