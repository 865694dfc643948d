# loyalty/services/pass_sync_service.py
"""
Keeps the visitor's wallet pass in line with the ledger.

Everything here runs after the ledger transaction has committed and never
raises to its caller: issuing-service failures come back as a SyncResult
with ok=False and are logged. Retry and force-push repair any drift.
"""
from dataclasses import dataclass
import logging

from sqlalchemy import select, update

from loyalty.db import SessionLocal
from loyalty.exceptions import ExternalServiceFailure, MembershipNotFound
from loyalty.models import AppUser, Business, LoyaltyMembership, LoyaltyProgram
from loyalty.services import walletpush_service
from loyalty.services.loyalty_utils import get_balance, get_proximity_message, loyalty_field_values, status_text

logger = logging.getLogger(__name__)

EVENTS = ("progress", "reward_unlocked", "redeemed", "reset")


@dataclass
class SyncResult:
    ok: bool
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    serial: str | None = None
    apple_url: str | None = None
    google_url: str | None = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "reason": self.reason,
            "error": self.error,
            "serial": self.serial,
            "apple_url": self.apple_url,
            "google_url": self.google_url,
        }


def _load(db, membership_id):
    membership = db.get(LoyaltyMembership, membership_id)
    if not membership:
        raise MembershipNotFound(f"Membership {membership_id} not found")
    program = db.get(LoyaltyProgram, membership.program_id)
    business = db.get(Business, program.business_id)
    return membership, program, business


def visitor_profile(db, wallet_pass_id: str) -> dict:
    """Contact details sent to the issuing service; placeholders when unknown."""
    user = db.scalar(select(AppUser).where(AppUser.wallet_pass_id == wallet_pass_id))
    return {
        "first_name": user.first_name if user and user.first_name else "Qwikker",
        "last_name": user.last_name if user and user.last_name else "Member",
        "email": user.email if user and user.email else f"{wallet_pass_id}@pass.qwikker.com",
    }


def event_fields(event: str, program, membership, business_name: str) -> dict[str, str]:
    """Ordered fields for one logical pass update."""
    balance = get_balance(program, membership)

    if event == "reward_unlocked":
        return {
            "Points": str(balance),
            "Status": "Reward Available!",
            "Last_Message": f"You earned a free {program.reward_description} at {business_name}!",
        }
    if event == "redeemed":
        return {
            "Points": str(balance),
            "Status": "Reward Redeemed!",
            "Last_Message": f"You redeemed {program.reward_description}!",
        }
    if event == "progress":
        return {
            "Points": str(balance),
            "Status": status_text(program, balance),
        }
    if event == "reset":
        # overwrite the one-time redeemed message
        message = get_proximity_message(balance, program.reward_threshold) or status_text(program, balance)
        return loyalty_field_values(program, membership, last_message=message)

    raise ValueError(f"Unknown pass sync event: {event}")


def issue_for_membership(membership_id, member: dict | None = None) -> SyncResult:
    """
    Create the visitor's pass and store its serial.

    No-op success when a serial already exists, skipped when the program
    has no issuing credentials yet.
    """
    with SessionLocal() as db:
        membership, program, _ = _load(db, membership_id)

        if membership.walletpush_serial:
            return SyncResult(ok=True, skipped=True, reason="already_issued", serial=membership.walletpush_serial)

        credentials = walletpush_service.credentials_for(program)
        if not credentials:
            logger.info(f"Program {program.id} has no WalletPush credentials, skipping pass issue")
            return SyncResult(ok=True, skipped=True, reason="no_credentials")

        member = member or visitor_profile(db, membership.user_wallet_pass_id)
        initial_fields = loyalty_field_values(program, membership)

    try:
        issued = walletpush_service.issue_pass(credentials, member, initial_fields)
    except ExternalServiceFailure as e:
        logger.error(f"Failed to issue pass for membership {membership_id}: {e}")
        return SyncResult(ok=False, error=str(e))

    with SessionLocal() as db:
        # only the first successful issue wins the serial slot
        result = db.execute(
            update(LoyaltyMembership)
            .where(LoyaltyMembership.id == membership_id, LoyaltyMembership.walletpush_serial.is_(None))
            .values(walletpush_serial=issued.serial)
        )
        db.commit()
        if result.rowcount == 0:
            stored = db.get(LoyaltyMembership, membership_id).walletpush_serial
            logger.warning(f"Membership {membership_id} already had serial {stored}, discarding {issued.serial}")
            return SyncResult(ok=True, skipped=True, reason="already_issued", serial=stored)

    logger.info(f"Stored pass serial {issued.serial} on membership {membership_id}")
    return SyncResult(ok=True, serial=issued.serial, apple_url=issued.apple_url, google_url=issued.google_url)


def retry_issue(membership_id) -> SyncResult:
    """Re-attempt pass creation for a membership whose first issue failed."""
    logger.info(f"Retrying pass issue for membership {membership_id}")
    return issue_for_membership(membership_id)


def _push(membership_id, build_fields) -> SyncResult:
    with SessionLocal() as db:
        membership, program, business = _load(db, membership_id)

        credentials = walletpush_service.credentials_for(program)
        if not credentials:
            return SyncResult(ok=True, skipped=True, reason="no_credentials")
        if not membership.walletpush_serial:
            return SyncResult(ok=True, skipped=True, reason="no_pass")

        serial = membership.walletpush_serial
        fields = build_fields(program, membership, business.business_name if business else "this business")

    try:
        walletpush_service.push_fields(credentials, serial, fields)
    except ExternalServiceFailure as e:
        logger.error(f"Pass sync failed for membership {membership_id}: {e}")
        return SyncResult(ok=False, error=str(e), serial=serial)

    return SyncResult(ok=True, serial=serial)


def sync_membership(membership_id, event: str) -> SyncResult:
    """Push the fields for one ledger event, with a single device notification."""
    if event not in EVENTS:
        raise ValueError(f"Unknown pass sync event: {event}")
    result = _push(membership_id, lambda program, membership, name: event_fields(event, program, membership, name))
    if result.ok and not result.skipped:
        logger.info(f"Synced pass for membership {membership_id} ({event})")
    return result


def force_push(membership_id) -> SyncResult:
    """Re-send every current field value; used to repair drift."""
    logger.info(f"Force pushing pass for membership {membership_id}")
    return _push(membership_id, lambda program, membership, name: loyalty_field_values(program, membership))
