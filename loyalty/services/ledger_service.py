# loyalty/services/ledger_service.py
"""
Membership ledger: joining, earning and redeeming.

Balance changes are single-row conditional UPDATEs so concurrent requests
can never overdraw or double-credit a membership. The pass is synced only
after the ledger transaction has committed.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID
import csv
import io
import logging

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError

from loyalty.db import SessionLocal
from loyalty.exceptions import (
    ConflictingRequest, EarnNotAllowed, InsufficientBalance, InvalidToken, MembershipNotFound,
    ProgramNotActive, ProgramNotFound, RedeemNotAllowed, ValidationError,
)
from loyalty.models import AppUser, LoyaltyEarnEvent, LoyaltyMembership, LoyaltyProgram, LoyaltyRedemption
from loyalty.services import pass_sync_service
from loyalty.services.loyalty_utils import (
    CONSUME_RATE_LIMIT, EARN_RATE_LIMIT_PER_IP_PER_HOUR, EARN_RATE_LIMIT_PER_USER_PER_HOUR,
    IP_VELOCITY_THRESHOLD, IP_VELOCITY_WINDOW, balance_attr, balance_cap, calculate_progress,
    can_earn_now, get_balance, get_proximity_message, local_today,
)
from loyalty.services.program_service import require_active
from loyalty.services.redemption_service import create_redemption, redemption_to_dict
from loyalty.services.token_service import validate_counter_token
from loyalty.services.utils_functions_service import hash_ip, isoformat_z, utcnow

logger = logging.getLogger(__name__)

# optimistic retries when another earn moved the balance first
EARN_ATTEMPTS = 3


@dataclass
class EarnResult:
    membership_id: UUID
    balance: int
    threshold: int
    reward_unlocked: bool
    overflow: int = 0
    proximity_message: str | None = None
    next_eligible_at: datetime | None = None
    pass_sync: pass_sync_service.SyncResult | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "membership_id": str(self.membership_id),
            "balance": self.balance,
            "threshold": self.threshold,
            "progress": calculate_progress(self.balance, self.threshold),
            "reward_unlocked": self.reward_unlocked,
            "overflow": self.overflow,
            "proximity_message": self.proximity_message,
            "next_eligible_at": isoformat_z(self.next_eligible_at),
            "pass_sync": self.pass_sync.to_dict() if self.pass_sync else None,
        }


def membership_to_dict(program: LoyaltyProgram, membership: LoyaltyMembership) -> dict:
    balance = get_balance(program, membership)
    return {
        "id": str(membership.id),
        "program_id": str(membership.program_id),
        "user_wallet_pass_id": membership.user_wallet_pass_id,
        "balance": balance,
        "threshold": program.reward_threshold,
        "progress": calculate_progress(balance, program.reward_threshold),
        "reward_available": balance >= program.reward_threshold,
        "proximity_message": get_proximity_message(balance, program.reward_threshold),
        "total_earned": membership.total_earned,
        "total_redeemed": membership.total_redeemed,
        "status": membership.status,
        "has_pass": membership.walletpush_serial is not None,
        "last_earned_at": isoformat_z(membership.last_earned_at),
        "joined_at": isoformat_z(membership.joined_at),
    }


def _active_program(db, program_id) -> LoyaltyProgram:
    program = db.get(LoyaltyProgram, program_id)
    if not program:
        raise ProgramNotFound(f"Program {program_id} not found")
    require_active(program)
    return program


def _program_is_active(program_id):
    """Gate for balance UPDATEs so a pause or end that already committed wins."""
    return (
        select(LoyaltyProgram.id)
        .where(LoyaltyProgram.id == program_id, LoyaltyProgram.status == "active")
        .exists()
    )


def _require_still_active(db, program_id) -> None:
    status = db.scalar(select(LoyaltyProgram.status).where(LoyaltyProgram.id == program_id))
    if status != "active":
        raise ProgramNotActive(status)


# ──────────────────────────────────────────────────────────────────────────────
# Membership

def get_or_create_membership(program_id, visitor_id: str) -> tuple[LoyaltyMembership, bool]:
    """
    Returns (membership, created). A concurrent join that wins the unique
    constraint is treated as "already exists".
    """
    if not visitor_id:
        raise ValidationError("A wallet pass id is required")

    with SessionLocal() as db:
        _active_program(db, program_id)

        existing = db.scalar(
            select(LoyaltyMembership).where(
                LoyaltyMembership.program_id == program_id,
                LoyaltyMembership.user_wallet_pass_id == visitor_id,
            )
        )
        if existing:
            return existing, False

        membership = LoyaltyMembership(program_id=program_id, user_wallet_pass_id=visitor_id)
        db.add(membership)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = db.scalar(
                select(LoyaltyMembership).where(
                    LoyaltyMembership.program_id == program_id,
                    LoyaltyMembership.user_wallet_pass_id == visitor_id,
                )
            )
            if not existing:
                raise
            return existing, False

        db.refresh(membership)
        logger.info(f"Created membership {membership.id} for program {program_id}")
        return membership, True


def join_program(public_id: str, city: str, visitor_profile: dict) -> dict:
    """
    Visitor joins a program from its public page and gets a wallet pass.

    visitor_profile carries wallet_pass_id plus optional first_name,
    last_name and email for the pass.
    """
    visitor_id = (visitor_profile or {}).get("wallet_pass_id")
    if not visitor_id:
        raise ValidationError("wallet_pass_id is required")

    with SessionLocal() as db:
        program = db.scalar(
            select(LoyaltyProgram).where(LoyaltyProgram.public_id == public_id, LoyaltyProgram.city == city)
        )
        if not program:
            raise ProgramNotFound(f"Program {public_id} not found")
        require_active(program)

        user = db.scalar(select(AppUser).where(AppUser.wallet_pass_id == visitor_id))
        member = {
            "first_name": visitor_profile.get("first_name") or (user.first_name if user else None),
            "last_name": visitor_profile.get("last_name") or (user.last_name if user else None),
            "email": visitor_profile.get("email") or (user.email if user else None),
        }

    membership, created = get_or_create_membership(program.id, visitor_id)

    sync = pass_sync_service.issue_for_membership(
        membership.id,
        member={key: value for key, value in member.items() if value} or None,
    )

    with SessionLocal() as db:
        membership = db.get(LoyaltyMembership, membership.id)
        result = membership_to_dict(program, membership)

    return {
        "membership": result,
        "already_member": not created,
        "program_name": program.program_name,
        "pass": sync.to_dict(),
    }


def get_membership_for_visitor(program_id, visitor_id: str) -> dict:
    with SessionLocal() as db:
        program = db.get(LoyaltyProgram, program_id)
        if not program:
            raise ProgramNotFound(f"Program {program_id} not found")

        membership = db.scalar(
            select(LoyaltyMembership).where(
                LoyaltyMembership.program_id == program_id,
                LoyaltyMembership.user_wallet_pass_id == visitor_id,
            )
        )
        if not membership:
            raise MembershipNotFound("Not a member of this program")

        return membership_to_dict(program, membership)


# ──────────────────────────────────────────────────────────────────────────────
# Earn

def _reject_earn(db, program, visitor_id, membership_id, ip_hash, now, reason, message, next_eligible_at=None):
    """Record the refused attempt and raise."""
    db.add(LoyaltyEarnEvent(
        membership_id=membership_id,
        business_id=program.business_id,
        user_wallet_pass_id=visitor_id,
        amount=0,
        ip_hash=ip_hash,
        valid=False,
        reason_if_invalid=reason,
        earned_at=now,
    ))
    db.commit()
    logger.info(f"Earn refused for {visitor_id} on program {program.id}: {reason}")
    raise EarnNotAllowed(message, reason, next_eligible_at)


def _check_ip(db, program, visitor_id, ip_hash, now) -> None:
    """Per-IP hourly limit, then too many distinct visitors from one IP at one business."""
    attempts = db.scalar(
        select(func.count(LoyaltyEarnEvent.id)).where(
            LoyaltyEarnEvent.ip_hash == ip_hash,
            LoyaltyEarnEvent.earned_at >= now - timedelta(hours=1),
        )
    ) or 0
    if attempts >= EARN_RATE_LIMIT_PER_IP_PER_HOUR:
        _reject_earn(
            db, program, visitor_id, None, ip_hash, now, "rate_limit_ip",
            "Too many attempts from this location.", now + timedelta(hours=1),
        )

    visitors = set(db.scalars(
        select(LoyaltyEarnEvent.user_wallet_pass_id).distinct().where(
            LoyaltyEarnEvent.ip_hash == ip_hash,
            LoyaltyEarnEvent.business_id == program.business_id,
            LoyaltyEarnEvent.earned_at >= now - IP_VELOCITY_WINDOW,
        )
    ))
    visitors.add(visitor_id)
    if len(visitors) > IP_VELOCITY_THRESHOLD:
        logger.warning(f"IP velocity tripped on business {program.business_id}: {len(visitors)} visitors")
        _reject_earn(
            db, program, visitor_id, None, ip_hash, now, "ip_velocity",
            "Suspicious activity detected. Please try again later.",
        )


def earn(program_id, visitor_id: str, counter_token: str, amount: int = 1,
         ip: str | None = None, now: datetime | None = None, city: str | None = None) -> EarnResult:
    """
    Credit a visit after the visitor scanned the counter QR code.

    Checks run in order: program exists (in city, when given), program
    active, token valid, per-visitor and per-IP hourly limits, IP velocity,
    membership, cooldown. The balance is capped so only one reward is
    outstanding at a time; anything above the cap is reported as overflow
    and not credited.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer")
    if not visitor_id:
        raise ValidationError("A wallet pass id is required")

    now = now or utcnow()
    ip_hash = hash_ip(ip)

    with SessionLocal() as db:
        program = db.get(LoyaltyProgram, program_id)
        if not program or (city is not None and program.city != city):
            raise ProgramNotFound(f"Program {program_id} not found")
        require_active(program)

        if not validate_counter_token(program, counter_token, now=now):
            logger.warning(f"Invalid counter token presented for program {program.id}")
            raise InvalidToken("Invalid or expired QR code. Ask staff for the current code.")

        recent = db.scalar(
            select(func.count(LoyaltyEarnEvent.id)).where(
                LoyaltyEarnEvent.user_wallet_pass_id == visitor_id,
                LoyaltyEarnEvent.earned_at >= now - timedelta(hours=1),
            )
        ) or 0
        if recent >= EARN_RATE_LIMIT_PER_USER_PER_HOUR:
            _reject_earn(
                db, program, visitor_id, None, ip_hash, now, "rate_limited",
                "Too many attempts. Please try again later.", now + timedelta(hours=1),
            )

        if ip_hash:
            _check_ip(db, program, visitor_id, ip_hash, now)

    membership, _ = get_or_create_membership(program_id, visitor_id)

    column_name = balance_attr(program)
    column = getattr(LoyaltyMembership, column_name)
    threshold = program.reward_threshold
    cap = balance_cap(program)
    today = local_today(program.timezone, now)

    with SessionLocal() as db:
        for _ in range(EARN_ATTEMPTS):
            membership = db.get(LoyaltyMembership, membership.id, populate_existing=True)

            constraints = can_earn_now(membership, program, now)
            if not constraints.allowed:
                _reject_earn(
                    db, program, visitor_id, membership.id, ip_hash, now, "cooldown",
                    constraints.reason, constraints.next_eligible_at,
                )

            old = get_balance(program, membership)
            credited = min(old + amount, cap) - old
            if credited <= 0:
                _reject_earn(
                    db, program, visitor_id, membership.id, ip_hash, now, "reward_pending",
                    "Your reward is waiting. Redeem it before collecting more.",
                )

            result = db.execute(
                update(LoyaltyMembership)
                .where(LoyaltyMembership.id == membership.id, column == old, _program_is_active(program.id))
                .values({
                    column_name: case((column + amount > cap, cap), else_=column + amount),
                    "total_earned": LoyaltyMembership.total_earned + credited,
                    "earned_today_count": case(
                        (LoyaltyMembership.earned_today_date == today, LoyaltyMembership.earned_today_count + 1),
                        else_=1,
                    ),
                    "earned_today_date": today,
                    "last_earned_at": now,
                    "last_active_at": now,
                })
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                break
            db.rollback()
            _require_still_active(db, program.id)
        else:
            raise ConflictingRequest("Balance changed concurrently, please try again")

        db.add(LoyaltyEarnEvent(
            membership_id=membership.id,
            business_id=program.business_id,
            user_wallet_pass_id=visitor_id,
            amount=credited,
            ip_hash=ip_hash,
            valid=True,
            earned_at=now,
        ))

        new = db.scalar(select(column).where(LoyaltyMembership.id == membership.id))
        db.commit()

    reward_unlocked = old < threshold <= new
    logger.info(
        f"Earn on membership {membership.id}: {old} -> {new}/{threshold}"
        + (" (reward unlocked)" if reward_unlocked else "")
    )

    sync = pass_sync_service.sync_membership(membership.id, "reward_unlocked" if reward_unlocked else "progress")

    next_eligible = None
    if program.min_gap_minutes:
        next_eligible = now + timedelta(minutes=program.min_gap_minutes)

    return EarnResult(
        membership_id=membership.id,
        balance=new,
        threshold=threshold,
        reward_unlocked=reward_unlocked,
        overflow=amount - credited,
        proximity_message=get_proximity_message(new, threshold),
        next_eligible_at=next_eligible,
        pass_sync=sync,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Redeem

def redeem(membership_id, visitor_id: str | None = None, now: datetime | None = None,
           city: str | None = None) -> dict:
    """
    Spend one reward: deduct exactly the threshold and record the redemption.

    When visitor_id is given the membership must belong to that visitor, and
    when city is given its program must be in that city. A visitor can
    redeem once per CONSUME_RATE_LIMIT.
    """
    now = now or utcnow()

    with SessionLocal() as db:
        membership = db.get(LoyaltyMembership, membership_id)
        if not membership or (visitor_id is not None and membership.user_wallet_pass_id != visitor_id):
            raise MembershipNotFound(f"Membership {membership_id} not found")

        program = _active_program(db, membership.program_id)
        if city is not None and program.city != city:
            raise MembershipNotFound(f"Membership {membership_id} not found")

        column_name = balance_attr(program)
        column = getattr(LoyaltyMembership, column_name)
        threshold = program.reward_threshold

        result = db.execute(
            update(LoyaltyMembership)
            .where(LoyaltyMembership.id == membership.id, column >= threshold, _program_is_active(program.id))
            .values({
                column_name: column - threshold,
                "total_redeemed": LoyaltyMembership.total_redeemed + 1,
                "last_active_at": now,
            })
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            _require_still_active(db, program.id)
            balance = db.scalar(select(column).where(LoyaltyMembership.id == membership.id)) or 0
            raise InsufficientBalance(balance, threshold)

        last_redeemed = db.scalar(
            select(func.max(LoyaltyRedemption.consumed_at)).where(
                LoyaltyRedemption.user_wallet_pass_id == membership.user_wallet_pass_id,
                LoyaltyRedemption.consumed_at > now - CONSUME_RATE_LIMIT,
            )
        )
        if last_redeemed is not None:
            db.rollback()
            logger.info(f"Redeem refused for membership {membership_id}: redeemed at {last_redeemed}")
            raise RedeemNotAllowed(
                "Please wait before redeeming again",
                "redeem_rate_limited",
                last_redeemed + CONSUME_RATE_LIMIT,
            )

        membership = db.get(LoyaltyMembership, membership.id, populate_existing=True)
        redemption = create_redemption(db, membership, program, now)
        db.commit()

        response = {
            **redemption_to_dict(redemption, now),
            "balance": get_balance(program, membership),
            "threshold": threshold,
        }

    logger.info(f"Redeemed {threshold} from membership {membership_id} (redemption {response['redemption_id']})")

    sync = pass_sync_service.sync_membership(membership_id, "redeemed")
    response["pass_sync"] = sync.to_dict()
    return response


# ──────────────────────────────────────────────────────────────────────────────
# Member lists

MEMBER_CSV_COLUMNS = (
    "membership_id", "wallet_pass_id", "first_name", "last_name", "email",
    "balance", "total_earned", "total_redeemed", "status", "joined_at", "last_active_at",
)


def list_members(business_id, status: str | None = None, since_days: int | None = None,
                 now: datetime | None = None) -> list[dict]:
    """Members of the business's program, most recently active first."""
    with SessionLocal() as db:
        program = db.scalar(select(LoyaltyProgram).where(LoyaltyProgram.business_id == business_id))
        if not program:
            raise ProgramNotFound("No loyalty program found")

        query = (
            select(LoyaltyMembership, AppUser)
            .outerjoin(AppUser, AppUser.wallet_pass_id == LoyaltyMembership.user_wallet_pass_id)
            .where(LoyaltyMembership.program_id == program.id)
        )
        if status:
            query = query.where(LoyaltyMembership.status == status)
        if since_days:
            query = query.where(LoyaltyMembership.last_active_at >= (now or utcnow()) - timedelta(days=since_days))

        rows = db.execute(query.order_by(LoyaltyMembership.last_active_at.desc())).all()

        return [
            {
                "membership_id": str(membership.id),
                "wallet_pass_id": membership.user_wallet_pass_id,
                "first_name": user.first_name if user else None,
                "last_name": user.last_name if user else None,
                "email": user.email if user else None,
                "balance": get_balance(program, membership),
                "total_earned": membership.total_earned,
                "total_redeemed": membership.total_redeemed,
                "status": membership.status,
                "joined_at": isoformat_z(membership.joined_at),
                "last_active_at": isoformat_z(membership.last_active_at),
            }
            for membership, user in rows
        ]


def export_members_csv(rows: list[dict]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=MEMBER_CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({key: "" if row.get(key) is None else row.get(key) for key in MEMBER_CSV_COLUMNS})
    return buffer.getvalue()


def check_membership_access(membership_id, business_id=None, visitor_id: str | None = None) -> None:
    """
    The membership must belong to the given business's program or to the
    given visitor. Anything else reads as not found.
    """
    with SessionLocal() as db:
        membership = db.get(LoyaltyMembership, membership_id)
        if membership:
            if visitor_id is not None and membership.user_wallet_pass_id == visitor_id:
                return
            if business_id is not None:
                program = db.get(LoyaltyProgram, membership.program_id)
                if program.business_id == business_id:
                    return
        raise MembershipNotFound(f"Membership {membership_id} not found")
