# loyalty/models.py
from __future__ import annotations
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, JSON, Text,
    UniqueConstraint, Uuid, text,
)
from datetime import date, datetime
import uuid

from loyalty.services.utils_functions_service import utcnow


class Base(DeclarativeBase):
    pass

def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

def uuid_fk(table_column: str, nullable: bool = False):
    """Helper for UUID foreign keys"""
    return mapped_column(
        Uuid(as_uuid=True),
        ForeignKey(table_column, ondelete="CASCADE"),
        nullable=nullable
    )


PROGRAM_STATUSES = ("draft", "submitted", "active", "paused", "ended")
PROGRAM_TYPES = ("stamps", "points")
REQUEST_STATUSES = ("submitted", "approved", "rejected")


class Business(Base):
    __tablename__ = "business_profiles"
    id: Mapped[uuid.UUID] = uuid_pk()
    # Supabase Auth user (auth.users.id). No FK across schemas.
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    business_name: Mapped[str] = mapped_column(Text, nullable=False)
    city: Mapped[str] = mapped_column(Text, nullable=False)
    logo: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=True)

    program: Mapped["LoyaltyProgram | None"] = relationship(back_populates="business", uselist=False)


class CityAdmin(Base):
    __tablename__ = "city_admins"
    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    city: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "city", name="uq_city_admins_user_city"),
    )


class AppUser(Base):
    """Visitor profile, keyed by the wallet pass id handed out by the main app."""
    __tablename__ = "app_users"
    id: Mapped[uuid.UUID] = uuid_pk()
    wallet_pass_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(Text)
    last_name: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=True)


class LoyaltyProgram(Base):
    __tablename__ = "loyalty_programs"
    id: Mapped[uuid.UUID] = uuid_pk()
    public_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    business_id: Mapped[uuid.UUID] = uuid_fk("business_profiles.id")
    city: Mapped[str] = mapped_column(Text, nullable=False)

    # reward definition
    program_name: Mapped[str | None] = mapped_column(Text)
    type: Mapped[str] = mapped_column(Text, default="stamps", nullable=False)
    reward_threshold: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    reward_description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    stamp_label: Mapped[str] = mapped_column(Text, default="Stamps", nullable=False)
    stamp_icon: Mapped[str] = mapped_column(Text, default="stamp", nullable=False)
    earn_mode: Mapped[str] = mapped_column(Text, default="per_visit", nullable=False)
    earn_instructions: Mapped[str | None] = mapped_column(Text)
    redeem_instructions: Mapped[str | None] = mapped_column(Text)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text)

    # branding
    primary_color: Mapped[str | None] = mapped_column(Text, default="#00d083")
    background_color: Mapped[str | None] = mapped_column(Text, default="#0b0f14")
    logo_url: Mapped[str | None] = mapped_column(Text)
    strip_image_url: Mapped[str | None] = mapped_column(Text)

    # issuing service credentials, set by the admin on approval
    walletpush_template_id: Mapped[str | None] = mapped_column(Text)
    walletpush_api_key: Mapped[str | None] = mapped_column(Text)
    walletpush_pass_type_id: Mapped[str | None] = mapped_column(Text)

    # counter QR token
    counter_qr_token: Mapped[str] = mapped_column(Text, nullable=False)
    previous_counter_qr_token: Mapped[str | None] = mapped_column(Text)
    counter_qr_token_rotated_at: Mapped[datetime | None] = mapped_column(DateTime)

    # earn rules
    timezone: Mapped[str] = mapped_column(Text, default="Europe/London", nullable=False)
    max_earns_per_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    min_gap_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)

    # lifecycle
    status: Mapped[str] = mapped_column(Text, default="draft", nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=True)

    business: Mapped["Business"] = relationship(back_populates="program")

    __table_args__ = (
        # one program per business
        UniqueConstraint("business_id", name="uq_loyalty_programs_business"),
        CheckConstraint("reward_threshold > 0", name="ck_loyalty_programs_threshold_positive"),
        CheckConstraint(
            "status IN ('draft', 'submitted', 'active', 'paused', 'ended')",
            name="ck_loyalty_programs_status",
        ),
        CheckConstraint("type IN ('stamps', 'points')", name="ck_loyalty_programs_type"),
        Index("ix_loyalty_programs_city_status", "city", "status"),
    )


class LoyaltyMembership(Base):
    __tablename__ = "loyalty_memberships"
    id: Mapped[uuid.UUID] = uuid_pk()
    program_id: Mapped[uuid.UUID] = uuid_fk("loyalty_programs.id")
    user_wallet_pass_id: Mapped[str] = mapped_column(Text, nullable=False)

    # only one is meaningful, picked by program.type
    stamps_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    points_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    total_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_redeemed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_earned_at: Mapped[datetime | None] = mapped_column(DateTime)
    earned_today_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    earned_today_date: Mapped[date | None] = mapped_column(Date)

    walletpush_serial: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, default="active", nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=True)
    last_active_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=True)

    __table_args__ = (
        # enforce one membership per (program, visitor)
        UniqueConstraint("program_id", "user_wallet_pass_id", name="uq_loyalty_memberships_program_visitor"),
        CheckConstraint("stamps_balance >= 0", name="ck_loyalty_memberships_stamps_non_negative"),
        CheckConstraint("points_balance >= 0", name="ck_loyalty_memberships_points_non_negative"),
    )


class LoyaltyEarnEvent(Base):
    __tablename__ = "loyalty_earn_events"
    id: Mapped[uuid.UUID] = uuid_pk()
    membership_id: Mapped[uuid.UUID | None] = uuid_fk("loyalty_memberships.id", nullable=True)
    business_id: Mapped[uuid.UUID] = uuid_fk("business_profiles.id")
    user_wallet_pass_id: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    method: Mapped[str] = mapped_column(Text, default="counter_qr", nullable=False)
    ip_hash: Mapped[str | None] = mapped_column(Text)
    valid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reason_if_invalid: Mapped[str | None] = mapped_column(Text)
    earned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # hourly rate limit lookup
        Index("ix_loyalty_earn_events_visitor_earned_at", "user_wallet_pass_id", "earned_at"),
        # per-IP limit and velocity lookups
        Index("ix_loyalty_earn_events_ip_earned_at", "ip_hash", "earned_at"),
    )


class LoyaltyRedemption(Base):
    __tablename__ = "loyalty_redemptions"
    id: Mapped[uuid.UUID] = uuid_pk()
    membership_id: Mapped[uuid.UUID] = uuid_fk("loyalty_memberships.id")
    business_id: Mapped[uuid.UUID] = uuid_fk("business_profiles.id")
    user_wallet_pass_id: Mapped[str] = mapped_column(Text, nullable=False)
    # snapshot, the program's description may change later
    reward_description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, default="consumed", nullable=False)
    amount_deducted: Mapped[int] = mapped_column(Integer, nullable=False)
    consumed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    display_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    display_reset_at: Mapped[datetime | None] = mapped_column(DateTime)
    flagged_at: Mapped[datetime | None] = mapped_column(DateTime)
    flagged_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=True)

    __table_args__ = (
        Index(
            "ix_loyalty_redemptions_pending_reset",
            "display_expires_at",
            postgresql_where=text("display_reset_at IS NULL"),
        ),
    )


class LoyaltyPassRequest(Base):
    __tablename__ = "loyalty_pass_requests"
    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = uuid_fk("business_profiles.id")
    program_id: Mapped[uuid.UUID] = uuid_fk("loyalty_programs.id")
    design_spec_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(Text, default="submitted", nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    reviewed_by_admin_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=True)

    __table_args__ = (
        # at most one open request per program
        Index(
            "uq_loyalty_pass_requests_open",
            "program_id",
            unique=True,
            postgresql_where=text("status = 'submitted'"),
            sqlite_where=text("status = 'submitted'"),
        ),
    )
