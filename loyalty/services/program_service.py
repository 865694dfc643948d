# loyalty/services/program_service.py
"""
Program store: loyalty program records and their lifecycle.

    draft -> submitted -> active <-> paused
                 |          \\       /
                 v           ended (terminal)
               draft (rejected)

Every status change is a conditional UPDATE on the current status, so two
racing transitions cannot both apply.
"""
from datetime import datetime
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from loyalty.db import SessionLocal
from loyalty.exceptions import (
    ConflictingRequest, InvalidState, ProgramNotActive, ProgramNotFound,
    RequestNotFound, ValidationError,
)
from loyalty.models import (
    PROGRAM_TYPES, Business, LoyaltyEarnEvent, LoyaltyMembership, LoyaltyPassRequest,
    LoyaltyProgram, LoyaltyRedemption,
)
from loyalty.services.loyalty_utils import (
    EARN_MODES, STAMP_ICONS, balance_attr, generate_public_id,
)
from loyalty.services.notification_service import notify_safely
from loyalty.services.token_service import generate_counter_token
from loyalty.services.utils_functions_service import isoformat_z, utcnow

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "No reason provided"

# fields a business may still change once the program left draft
COSMETIC_FIELDS = (
    "earn_instructions", "redeem_instructions", "terms_and_conditions",
    "logo_url", "strip_image_url", "primary_color", "background_color",
)

DEFINITION_FIELDS = (
    "program_name", "type", "reward_threshold", "reward_description", "stamp_label",
    "stamp_icon", "earn_mode", "timezone", "max_earns_per_day", "min_gap_minutes",
) + COSMETIC_FIELDS


def require_active(program: LoyaltyProgram) -> None:
    """Gate for every ledger mutation."""
    if program.status != "active":
        raise ProgramNotActive(program.status)


def program_to_dict(program: LoyaltyProgram, include_token: bool = False) -> dict:
    result = {
        "id": str(program.id),
        "public_id": program.public_id,
        "business_id": str(program.business_id),
        "city": program.city,
        "program_name": program.program_name,
        "type": program.type,
        "reward_threshold": program.reward_threshold,
        "reward_description": program.reward_description,
        "stamp_label": program.stamp_label,
        "stamp_icon": program.stamp_icon,
        "earn_mode": program.earn_mode,
        "earn_instructions": program.earn_instructions,
        "redeem_instructions": program.redeem_instructions,
        "terms_and_conditions": program.terms_and_conditions,
        "primary_color": program.primary_color,
        "background_color": program.background_color,
        "logo_url": program.logo_url,
        "strip_image_url": program.strip_image_url,
        "timezone": program.timezone,
        "max_earns_per_day": program.max_earns_per_day,
        "min_gap_minutes": program.min_gap_minutes,
        "status": program.status,
        "pass_enabled": bool(
            program.walletpush_template_id and program.walletpush_api_key and program.walletpush_pass_type_id
        ),
        "ended_at": isoformat_z(program.ended_at),
        "created_at": isoformat_z(program.created_at),
    }
    if include_token:
        result["counter_qr_token"] = program.counter_qr_token
        result["counter_qr_token_rotated_at"] = isoformat_z(program.counter_qr_token_rotated_at)
    return result


def request_to_dict(request: LoyaltyPassRequest) -> dict:
    return {
        "id": str(request.id),
        "business_id": str(request.business_id),
        "program_id": str(request.program_id),
        "status": request.status,
        "design_spec": request.design_spec_json,
        "rejection_reason": request.rejection_reason,
        "reviewed_by_admin_id": str(request.reviewed_by_admin_id) if request.reviewed_by_admin_id else None,
        "reviewed_at": isoformat_z(request.reviewed_at),
        "created_at": isoformat_z(request.created_at),
    }


# ──────────────────────────────────────────────────────────────────────────────
# Reads

def get_program(program_id) -> LoyaltyProgram:
    with SessionLocal() as db:
        program = db.get(LoyaltyProgram, program_id)
        if not program:
            raise ProgramNotFound(f"Program {program_id} not found")
        return program


def get_program_by_public_id(public_id: str, city: str) -> LoyaltyProgram:
    """Look a program up by its external id, scoped to the caller's city."""
    with SessionLocal() as db:
        program = db.scalar(
            select(LoyaltyProgram).where(
                LoyaltyProgram.public_id == public_id,
                LoyaltyProgram.city == city,
            )
        )
        if not program:
            raise ProgramNotFound(f"Program {public_id} not found")
        return program


def get_business_program(business_id) -> LoyaltyProgram:
    with SessionLocal() as db:
        program = db.scalar(select(LoyaltyProgram).where(LoyaltyProgram.business_id == business_id))
        if not program:
            raise ProgramNotFound("No loyalty program found. Create one first.")
        return program


def list_pending_requests(city: str) -> list[dict]:
    """Open activation requests for an admin's city, oldest first."""
    with SessionLocal() as db:
        rows = db.execute(
            select(LoyaltyPassRequest, Business.business_name)
            .join(LoyaltyProgram, LoyaltyProgram.id == LoyaltyPassRequest.program_id)
            .join(Business, Business.id == LoyaltyPassRequest.business_id)
            .where(LoyaltyPassRequest.status == "submitted", LoyaltyProgram.city == city)
            .order_by(LoyaltyPassRequest.created_at.asc())
        ).all()

        return [
            {**request_to_dict(request), "business_name": business_name}
            for request, business_name in rows
        ]


def get_program_summary(business_id, now: datetime | None = None) -> dict:
    """Dashboard numbers for the business's program."""
    now = now or utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    with SessionLocal() as db:
        program = db.scalar(select(LoyaltyProgram).where(LoyaltyProgram.business_id == business_id))
        if not program:
            raise ProgramNotFound("No loyalty program found")

        balance = getattr(LoyaltyMembership, balance_attr(program))

        active_members = db.scalar(
            select(func.count(LoyaltyMembership.id)).where(
                LoyaltyMembership.program_id == program.id,
                LoyaltyMembership.status == "active",
            )
        ) or 0

        visits_this_month = db.scalar(
            select(func.count(LoyaltyEarnEvent.id)).where(
                LoyaltyEarnEvent.business_id == business_id,
                LoyaltyEarnEvent.valid.is_(True),
                LoyaltyEarnEvent.earned_at >= month_start,
            )
        ) or 0

        redeemed_this_month = db.scalar(
            select(func.count(LoyaltyRedemption.id)).where(
                LoyaltyRedemption.business_id == business_id,
                LoyaltyRedemption.consumed_at >= month_start,
            )
        ) or 0

        near_reward = db.scalar(
            select(func.count(LoyaltyMembership.id)).where(
                LoyaltyMembership.program_id == program.id,
                balance >= max(program.reward_threshold - 2, 1),
                balance < program.reward_threshold,
            )
        ) or 0

        flagged = db.scalar(
            select(func.count(LoyaltyRedemption.id)).where(
                LoyaltyRedemption.business_id == business_id,
                LoyaltyRedemption.flagged_at.is_not(None),
            )
        ) or 0

        return {
            "program_id": str(program.id),
            "status": program.status,
            "active_members": active_members,
            "visits_this_month": visits_this_month,
            "rewards_redeemed_this_month": redeemed_this_month,
            "avg_visits_per_member": round(visits_this_month / active_members, 1) if active_members else 0,
            "members_near_reward": near_reward,
            "flagged_redemptions": flagged,
        }


# ──────────────────────────────────────────────────────────────────────────────
# Create / edit

def _validate_definition(values: dict) -> None:
    if "type" in values and values["type"] not in PROGRAM_TYPES:
        raise ValidationError(f"type must be one of {', '.join(PROGRAM_TYPES)}")

    if "reward_threshold" in values:
        threshold = values["reward_threshold"]
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold <= 0:
            raise ValidationError("reward_threshold must be a positive integer")

    if "stamp_icon" in values and values["stamp_icon"] not in STAMP_ICONS:
        raise ValidationError(f"Unknown stamp_icon: {values['stamp_icon']}")

    if "earn_mode" in values and values["earn_mode"] not in EARN_MODES:
        raise ValidationError(f"earn_mode must be one of {', '.join(EARN_MODES)}")

    for key in ("max_earns_per_day", "min_gap_minutes"):
        if key in values:
            value = values[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{key} must be a non-negative integer")


def upsert_program(business_id, data: dict) -> tuple[LoyaltyProgram, bool]:
    """
    Create the business's program or update it.

    In draft every definition field is editable; afterwards only cosmetic
    fields are. Returns (program, created).
    """
    with SessionLocal() as db:
        business = db.get(Business, business_id)
        if not business:
            raise ProgramNotFound(f"Business {business_id} not found")

        program = db.scalar(select(LoyaltyProgram).where(LoyaltyProgram.business_id == business_id))

        if program:
            allowed = DEFINITION_FIELDS if program.status == "draft" else COSMETIC_FIELDS
            values = {key: data[key] for key in allowed if key in data}
            _validate_definition(values)
            for key, value in values.items():
                setattr(program, key, value)
            db.commit()
            db.refresh(program)
            logger.info(f"Updated loyalty program {program.id} ({program.status}): {sorted(values)}")
            return program, False

        values = {key: data[key] for key in DEFINITION_FIELDS if key in data and data[key] is not None}
        _validate_definition(values)

        program = LoyaltyProgram(
            business_id=business.id,
            city=business.city,
            public_id=generate_public_id(),
            counter_qr_token=generate_counter_token(),
            status="draft",
            program_name=values.pop("program_name", None) or f"{business.business_name} Rewards",
            logo_url=values.pop("logo_url", None) or business.logo,
            **values,
        )
        db.add(program)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ConflictingRequest("A loyalty program already exists for this business")

        db.refresh(program)
        logger.info(f"Created loyalty program {program.id} for business {business.id}")
        return program, True


# ──────────────────────────────────────────────────────────────────────────────
# Lifecycle

def _transition(db, program: LoyaltyProgram, allowed_from: tuple[str, ...], to_status: str, **extra) -> None:
    """Conditional status update. Raises InvalidState when the status moved under us."""
    if program.status not in allowed_from:
        raise InvalidState(f"Cannot move program from {program.status} to {to_status}")

    result = db.execute(
        update(LoyaltyProgram)
        .where(LoyaltyProgram.id == program.id, LoyaltyProgram.status.in_(allowed_from))
        .values(status=to_status, updated_at=utcnow(), **extra)
    )
    if result.rowcount == 0:
        db.rollback()
        current = db.get(LoyaltyProgram, program.id)
        db.refresh(current)
        raise InvalidState(f"Cannot move program from {current.status} to {to_status}")


def _business_program(db, business_id) -> tuple[LoyaltyProgram, Business]:
    program = db.scalar(select(LoyaltyProgram).where(LoyaltyProgram.business_id == business_id))
    if not program:
        raise ProgramNotFound("No loyalty program found")
    return program, db.get(Business, business_id)


def submit_program(business_id) -> LoyaltyPassRequest:
    """Business asks for its draft program to be activated."""
    with SessionLocal() as db:
        program, business = _business_program(db, business_id)

        if program.status != "draft":
            raise InvalidState(f"Program is already {program.status}")

        if not program.reward_threshold or not program.reward_description:
            raise ValidationError("Reward threshold and description are required")

        open_request = db.scalar(
            select(LoyaltyPassRequest.id).where(
                LoyaltyPassRequest.program_id == program.id,
                LoyaltyPassRequest.status == "submitted",
            )
        )
        if open_request:
            raise ConflictingRequest("An activation request is already pending for this program")

        request = LoyaltyPassRequest(
            business_id=business.id,
            program_id=program.id,
            status="submitted",
            design_spec_json={
                **{key: getattr(program, key) for key in DEFINITION_FIELDS},
                "business_name": business.business_name,
                "business_city": program.city,
            },
        )
        db.add(request)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            raise ConflictingRequest("An activation request is already pending for this program")

        _transition(db, program, ("draft",), "submitted")
        db.commit()
        db.refresh(request)

        city, business_name = program.city, business.business_name
        message = (
            f"Submitted a loyalty card for provisioning. Reward: \"{program.reward_description}\" "
            f"({program.reward_threshold} {program.stamp_label})."
        )

    logger.info(f"Program {program.id} submitted for activation (request {request.id})")
    notify_safely(city, business_name, "New Loyalty Card Request", message)
    return request


def _open_request(db, request_id, admin_city: str) -> tuple[LoyaltyPassRequest, LoyaltyProgram, Business]:
    request = db.get(LoyaltyPassRequest, request_id)
    if not request:
        raise RequestNotFound(f"Request {request_id} not found")

    program = db.get(LoyaltyProgram, request.program_id)
    # admins never see other cities' requests
    if not program or program.city != admin_city:
        raise RequestNotFound(f"Request {request_id} not found")

    if request.status != "submitted":
        raise InvalidState(f"Request is already {request.status}")

    return request, program, db.get(Business, request.business_id)


def _close_request(db, request: LoyaltyPassRequest, status: str, admin_id, **extra) -> None:
    result = db.execute(
        update(LoyaltyPassRequest)
        .where(LoyaltyPassRequest.id == request.id, LoyaltyPassRequest.status == "submitted")
        .values(status=status, reviewed_by_admin_id=admin_id, reviewed_at=utcnow(), **extra)
    )
    if result.rowcount == 0:
        db.rollback()
        raise ConflictingRequest("Request was already reviewed")


def approve_request(request_id, admin_id, admin_city: str, credentials: dict) -> LoyaltyProgram:
    """
    Admin approval: stores the issuing-service credentials on the program
    and activates it.
    """
    template_id = (credentials or {}).get("walletpush_template_id")
    api_key = (credentials or {}).get("walletpush_api_key")
    pass_type_id = (credentials or {}).get("walletpush_pass_type_id")
    if not (template_id and api_key and pass_type_id):
        raise ValidationError("walletpush_template_id, walletpush_api_key and walletpush_pass_type_id are required")

    with SessionLocal() as db:
        request, program, business = _open_request(db, request_id, admin_city)

        _close_request(db, request, "approved", admin_id)
        _transition(
            db, program, ("submitted",), "active",
            walletpush_template_id=template_id,
            walletpush_api_key=api_key,
            walletpush_pass_type_id=pass_type_id,
        )
        db.commit()
        db.refresh(program)

    logger.info(f"Program {program.id} approved by admin {admin_id}")
    return program


def reject_request(request_id, admin_id, admin_city: str, reason: str | None = None) -> LoyaltyPassRequest:
    """Admin rejection: the program goes back to draft for revision."""
    reason = (reason or "").strip() or DEFAULT_REJECTION_REASON

    with SessionLocal() as db:
        request, program, business = _open_request(db, request_id, admin_city)

        _close_request(db, request, "rejected", admin_id, rejection_reason=reason)
        _transition(db, program, ("submitted",), "draft")
        db.commit()
        db.refresh(request)

        city, business_name = program.city, business.business_name

    logger.info(f"Program {program.id} rejected by admin {admin_id}: {reason}")
    notify_safely(city, business_name, "Loyalty Card Request Rejected", f"Reason: {reason}")
    return request


def pause_program(business_id) -> LoyaltyProgram:
    with SessionLocal() as db:
        program, business = _business_program(db, business_id)
        _transition(db, program, ("active",), "paused")
        db.commit()
        db.refresh(program)

    logger.info(f"Program {program.id} paused")
    notify_safely(program.city, business.business_name, "Loyalty Program Paused", "Paused their loyalty program.")
    return program


def resume_program(business_id) -> LoyaltyProgram:
    with SessionLocal() as db:
        program, business = _business_program(db, business_id)

        if program.status == "paused" and not (
            program.walletpush_template_id and program.walletpush_api_key and program.walletpush_pass_type_id
        ):
            raise InvalidState("Program was never activated and cannot be resumed")

        _transition(db, program, ("paused",), "active")
        db.commit()
        db.refresh(program)

    logger.info(f"Program {program.id} resumed")
    return program


def end_program(business_id) -> LoyaltyProgram:
    """
    End the program for good. Memberships and redemption history stay;
    no further earns, redeems or joins are accepted.
    """
    with SessionLocal() as db:
        program, business = _business_program(db, business_id)
        _transition(db, program, ("active", "paused"), "ended", ended_at=utcnow())
        db.commit()
        db.refresh(program)

    logger.info(f"Program {program.id} ended")
    notify_safely(program.city, business.business_name, "Loyalty Program Ended", "Ended their loyalty program.")
    return program
