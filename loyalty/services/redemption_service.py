# loyalty/services/redemption_service.py
"""
Redemption records and the short "reward redeemed" display window.

A redemption is consumed the moment it is created. The display window only
controls what the visitor's screen and pass show; it is evaluated lazily
when read and the stored row is never rewritten on expiry.
"""
from datetime import datetime
import logging

from sqlalchemy import select, update

from loyalty.db import SessionLocal
from loyalty.exceptions import InvalidState, MembershipNotFound, RedemptionNotFound, ValidationError
from loyalty.models import Business, LoyaltyMembership, LoyaltyProgram, LoyaltyRedemption
from loyalty.services import pass_sync_service
from loyalty.services.loyalty_utils import REDEMPTION_DISPLAY_WINDOW
from loyalty.services.utils_functions_service import isoformat_z, utcnow

logger = logging.getLogger(__name__)


def create_redemption(db, membership: LoyaltyMembership, program: LoyaltyProgram, now: datetime) -> LoyaltyRedemption:
    """
    Add the redemption row to the caller's session.

    Must run inside the ledger transaction that deducted the balance; the
    caller commits.
    """
    redemption = LoyaltyRedemption(
        membership_id=membership.id,
        business_id=program.business_id,
        user_wallet_pass_id=membership.user_wallet_pass_id,
        reward_description=program.reward_description,
        status="consumed",
        amount_deducted=program.reward_threshold,
        consumed_at=now,
        display_expires_at=now + REDEMPTION_DISPLAY_WINDOW,
    )
    db.add(redemption)
    db.flush()
    return redemption


def redemption_to_dict(redemption: LoyaltyRedemption, now: datetime | None = None) -> dict:
    now = now or utcnow()
    is_active = now < redemption.display_expires_at
    remaining = (redemption.display_expires_at - now).total_seconds()

    return {
        "redemption_id": str(redemption.id),
        "membership_id": str(redemption.membership_id),
        "reward_description": redemption.reward_description,
        # derived; the stored row keeps its own status
        "status": redemption.status if is_active else "expired_display",
        "stored_status": redemption.status,
        "is_active": is_active,
        "time_remaining_seconds": max(0, int(remaining)),
        "amount_deducted": redemption.amount_deducted,
        "consumed_at": isoformat_z(redemption.consumed_at),
        "display_expires_at": isoformat_z(redemption.display_expires_at),
        "display_reset_at": isoformat_z(redemption.display_reset_at),
        "flagged": redemption.flagged_at is not None,
    }


def get_redemption_status(redemption_id, visitor_id: str, now: datetime | None = None) -> dict:
    """Live status for the visitor's "show this to staff" screen."""
    now = now or utcnow()
    with SessionLocal() as db:
        redemption = db.get(LoyaltyRedemption, redemption_id)
        # someone else's redemption looks exactly like a missing one
        if not redemption or redemption.user_wallet_pass_id != visitor_id:
            raise RedemptionNotFound(f"Redemption {redemption_id} not found")

        business = db.get(Business, redemption.business_id)
        result = redemption_to_dict(redemption, now)
        result["business_name"] = business.business_name if business else None
        return result


def flag_redemption(redemption_id, business_id, reason: str) -> LoyaltyRedemption:
    """
    Mark a redemption as suspicious for follow-up.

    Balances and the stored status are left alone.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to flag a redemption")

    with SessionLocal() as db:
        redemption = db.get(LoyaltyRedemption, redemption_id)
        if not redemption or redemption.business_id != business_id:
            raise RedemptionNotFound(f"Redemption {redemption_id} not found")

        redemption.flagged_at = utcnow()
        redemption.flagged_reason = reason
        db.commit()
        db.refresh(redemption)

    logger.warning(f"Redemption {redemption.id} flagged by business {business_id}: {reason}")
    return redemption


def _latest_redemption(db, membership_id) -> LoyaltyRedemption | None:
    return db.scalar(
        select(LoyaltyRedemption)
        .where(LoyaltyRedemption.membership_id == membership_id)
        .order_by(LoyaltyRedemption.consumed_at.desc())
        .limit(1)
    )


def reset_pass_display(membership_id, now: datetime | None = None) -> pass_sync_service.SyncResult:
    """
    Put the pass back to the plain balance view once the redemption display
    window has elapsed.
    """
    now = now or utcnow()
    with SessionLocal() as db:
        if not db.get(LoyaltyMembership, membership_id):
            raise MembershipNotFound(f"Membership {membership_id} not found")

        redemption = _latest_redemption(db, membership_id)
        if redemption and now < redemption.display_expires_at:
            raise InvalidState("Redemption is still being displayed")
        redemption_id = redemption.id if redemption else None

    result = pass_sync_service.sync_membership(membership_id, "reset")

    if result.ok and redemption_id:
        with SessionLocal() as db:
            db.execute(
                update(LoyaltyRedemption)
                .where(
                    LoyaltyRedemption.membership_id == membership_id,
                    LoyaltyRedemption.display_expires_at <= now,
                    LoyaltyRedemption.display_reset_at.is_(None),
                )
                .values(display_reset_at=now)
            )
            db.commit()

    return result


def reset_expired_displays(now: datetime | None = None) -> dict:
    """Reset every pass whose display window has run out. Called from cron."""
    now = now or utcnow()
    with SessionLocal() as db:
        membership_ids = db.scalars(
            select(LoyaltyRedemption.membership_id)
            .where(
                LoyaltyRedemption.display_expires_at <= now,
                LoyaltyRedemption.display_reset_at.is_(None),
            )
            .distinct()
        ).all()

    reset, failed = 0, 0
    for membership_id in membership_ids:
        try:
            result = reset_pass_display(membership_id, now=now)
        except InvalidState:
            # a newer redemption is on screen; its own window will pick this up
            continue
        if result.ok:
            reset += 1
        else:
            failed += 1

    logger.info(f"Display reset: {reset} reset, {failed} failed, {len(membership_ids)} checked")
    return {"checked": len(membership_ids), "reset": reset, "failed": failed}
