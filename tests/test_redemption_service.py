# tests/test_redemption_service.py
from datetime import datetime, timedelta
from uuid import UUID

import pytest
from sqlalchemy import select

from loyalty.db import SessionLocal
from loyalty.exceptions import InvalidState, RedemptionNotFound, ValidationError
from loyalty.models import LoyaltyMembership, LoyaltyRedemption
from loyalty.services import ledger_service, redemption_service

NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture
def redeemed(program):
    """Joined visitor with a pass who just redeemed, returns the redeem response"""
    ledger_service.join_program(program.public_id, "bournemouth", {"wallet_pass_id": "wp_visitor_1"})
    for i in range(5):
        ledger_service.earn(program.id, "wp_visitor_1", program.counter_qr_token, now=NOW + timedelta(minutes=i))
    membership, _ = ledger_service.get_or_create_membership(program.id, "wp_visitor_1")
    return ledger_service.redeem(
        membership.id,
        "wp_visitor_1",
        now=NOW + timedelta(minutes=5),
    )


def _stored(redemption_id):
    with SessionLocal() as db:
        return db.scalar(select(LoyaltyRedemption).where(LoyaltyRedemption.id == redemption_id))


def _redemption_uuid(redeemed):
    return UUID(redeemed["redemption_id"])


class TestDisplayWindow:

    def test_active_just_before_expiry(self, redeemed):
        redemption_id = _redemption_uuid(redeemed)
        expires = NOW + timedelta(minutes=15)

        status = redemption_service.get_redemption_status(
            redemption_id, "wp_visitor_1", now=expires - timedelta(seconds=1)
        )

        assert status["is_active"] is True
        assert status["status"] == "consumed"
        assert status["time_remaining_seconds"] == 1
        assert status["business_name"] == "Bean There"

    def test_expired_display_after_window(self, redeemed):
        redemption_id = _redemption_uuid(redeemed)
        expires = NOW + timedelta(minutes=15)

        status = redemption_service.get_redemption_status(
            redemption_id, "wp_visitor_1", now=expires + timedelta(seconds=1)
        )

        assert status["is_active"] is False
        assert status["status"] == "expired_display"
        assert status["stored_status"] == "consumed"
        assert status["time_remaining_seconds"] == 0
        # reading never rewrites the row
        assert _stored(redemption_id).status == "consumed"

    def test_other_visitor_sees_not_found(self, redeemed):
        with pytest.raises(RedemptionNotFound):
            redemption_service.get_redemption_status(_redemption_uuid(redeemed), "wp_intruder", now=NOW)


class TestFlag:

    def test_owner_flags_without_touching_balance(self, redeemed, business):
        redemption_id = _redemption_uuid(redeemed)

        flagged = redemption_service.flag_redemption(redemption_id, business.id, "Customer claimed twice")

        assert flagged.flagged_reason == "Customer claimed twice"
        assert flagged.flagged_at is not None
        assert flagged.status == "consumed"

        with SessionLocal() as db:
            membership = db.get(LoyaltyMembership, flagged.membership_id)
        assert membership.stamps_balance == 0
        assert membership.total_redeemed == 1

    def test_other_business_cannot_flag(self, redeemed, other_business):
        with pytest.raises(RedemptionNotFound):
            redemption_service.flag_redemption(_redemption_uuid(redeemed), other_business.id, "nope")

    def test_reason_required(self, redeemed, business):
        with pytest.raises(ValidationError):
            redemption_service.flag_redemption(_redemption_uuid(redeemed), business.id, "  ")


class TestResetDisplay:

    def test_refuses_while_window_open(self, redeemed):
        with pytest.raises(InvalidState):
            redemption_service.reset_pass_display(UUID(redeemed["membership_id"]), now=NOW + timedelta(minutes=10))

    def test_pushes_balance_fields_with_one_notification(self, redeemed, walletpush):
        writes_before = len(walletpush.field_writes())

        result = redemption_service.reset_pass_display(
            _stored(_redemption_uuid(redeemed)).membership_id, now=NOW + timedelta(minutes=16)
        )

        assert result.ok is True
        writes = walletpush.field_writes()[writes_before:]
        assert [call[1].rsplit("/", 1)[-1] for call in writes] == [
            "Points", "Threshold", "Status", "Reward", "Last_Message",
        ]
        assert [call[3]["push"] for call in writes] == [False, False, False, False, True]
        assert writes[2][3]["value"] == "0/5 Stamps"
        # the redeemed message is replaced
        assert writes[4][3]["value"] == "0/5 Stamps"

        assert _stored(_redemption_uuid(redeemed)).display_reset_at == NOW + timedelta(minutes=16)

    def test_batch_reset_only_touches_expired_windows(self, redeemed):
        assert redemption_service.reset_expired_displays(now=NOW + timedelta(minutes=10))["checked"] == 0

        counts = redemption_service.reset_expired_displays(now=NOW + timedelta(minutes=20))
        assert counts == {"checked": 1, "reset": 1, "failed": 0}

        # already reset
        assert redemption_service.reset_expired_displays(now=NOW + timedelta(minutes=30))["checked"] == 0
