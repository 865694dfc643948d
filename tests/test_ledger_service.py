# tests/test_ledger_service.py
from datetime import datetime, timedelta
import threading
import uuid

import pytest
from sqlalchemy import select, update

from loyalty.db import SessionLocal
from loyalty.exceptions import (
    EarnNotAllowed, InsufficientBalance, InvalidToken, MembershipNotFound, ProgramNotActive,
    ProgramNotFound, RedeemNotAllowed, ValidationError,
)
from loyalty.models import LoyaltyEarnEvent, LoyaltyMembership, LoyaltyProgram, LoyaltyRedemption
from loyalty.services import ledger_service, program_service
from loyalty.services.loyalty_utils import REDEMPTION_DISPLAY_WINDOW
from loyalty.services.utils_functions_service import hash_ip

NOW = datetime(2026, 3, 2, 12, 0, 0)


def _membership(membership_id):
    with SessionLocal() as db:
        return db.get(LoyaltyMembership, membership_id)


def _earn(program, visitor_id="wp_visitor_1", minutes=0, **kwargs):
    return ledger_service.earn(
        program.id, visitor_id, program.counter_qr_token, now=NOW + timedelta(minutes=minutes), **kwargs
    )


def _run_together(target, count=2):
    """Start count threads on a barrier; returns (results, errors)."""
    barrier = threading.Barrier(count)
    results, errors = [], []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            outcome = target()
        except Exception as e:
            with lock:
                errors.append(e)
            return
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results, errors


class TestMembership:

    def test_get_or_create_is_idempotent(self, program):
        first, created = ledger_service.get_or_create_membership(program.id, "wp_a")
        second, created_again = ledger_service.get_or_create_membership(program.id, "wp_a")

        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert first.stamps_balance == 0

    def test_join_issues_pass_once(self, program, visitor, walletpush):
        result = ledger_service.join_program(program.public_id, "bournemouth", {"wallet_pass_id": visitor.wallet_pass_id})

        assert result["already_member"] is False
        assert result["pass"]["ok"] is True
        assert result["pass"]["serial"] == "serial-1"
        assert result["pass"]["apple_url"].endswith("/api/apple-pass/serial-1/download")
        assert result["membership"]["has_pass"] is True

        method, endpoint, api_key, body = walletpush.calls[0]
        assert (method, endpoint, api_key) == ("POST", "templates/tmpl-123/pass", "wp-key")
        assert body["First_Name"] == "Ada"
        assert body["Status"] == "0/5 Stamps"

        again = ledger_service.join_program(program.public_id, "bournemouth", {"wallet_pass_id": visitor.wallet_pass_id})
        assert again["already_member"] is True
        assert again["pass"]["skipped"] is True
        assert walletpush.issued == 1

    def test_join_is_scoped_to_city(self, program):
        with pytest.raises(ProgramNotFound):
            ledger_service.join_program(program.public_id, "brighton", {"wallet_pass_id": "wp_a"})

    def test_join_requires_active_program(self, business, make_program):
        paused = make_program(business, status="paused")
        with pytest.raises(ProgramNotActive):
            ledger_service.join_program(paused.public_id, "bournemouth", {"wallet_pass_id": "wp_a"})

    def test_concurrent_first_joins_share_one_membership(self, program):
        results, errors = _run_together(lambda: ledger_service.get_or_create_membership(program.id, "wp_a"))

        assert errors == []
        assert sorted(created for _, created in results) == [False, True]
        assert len({membership.id for membership, _ in results}) == 1

    def test_unique_violation_returns_existing(self, program, monkeypatch):
        existing, _ = ledger_service.get_or_create_membership(program.id, "wp_a")
        real_session = ledger_service.SessionLocal

        def session_missing_first_lookup():
            # the existence check misses, as if the other insert had not committed yet
            db = real_session()
            lookups = []
            scalar = db.scalar

            def first_lookup_misses(*args, **kwargs):
                lookups.append(args)
                if len(lookups) == 1:
                    return None
                return scalar(*args, **kwargs)

            db.scalar = first_lookup_misses
            return db

        monkeypatch.setattr(ledger_service, "SessionLocal", session_missing_first_lookup)

        membership, created = ledger_service.get_or_create_membership(program.id, "wp_a")

        assert created is False
        assert membership.id == existing.id


class TestEarn:

    def test_five_earns_then_redeem(self, program, walletpush):
        ledger_service.join_program(program.public_id, "bournemouth", {"wallet_pass_id": "wp_visitor_1"})

        results = [_earn(program, minutes=i) for i in range(5)]

        assert [r.balance for r in results] == [1, 2, 3, 4, 5]
        assert [r.reward_unlocked for r in results] == [False, False, False, False, True]

        unlocked_push = walletpush.field_writes()[-1]
        assert unlocked_push[3] == {"value": "You earned a free Free coffee at Bean There!", "push": True}

        redeemed = ledger_service.redeem(results[-1].membership_id, "wp_visitor_1", now=NOW + timedelta(minutes=6))

        assert redeemed["balance"] == 0
        assert redeemed["amount_deducted"] == 5
        assert redeemed["status"] == "consumed"
        assert redeemed["pass_sync"]["ok"] is True

        with SessionLocal() as db:
            redemption = db.scalar(select(LoyaltyRedemption))
            assert redemption.consumed_at == NOW + timedelta(minutes=6)
            assert redemption.display_expires_at == NOW + timedelta(minutes=6) + REDEMPTION_DISPLAY_WINDOW
            assert redemption.reward_description == "Free coffee"

        membership = _membership(redemption.membership_id)
        assert membership.total_earned == 5
        assert membership.total_redeemed == 1

        statuses = [call[3]["value"] for call in walletpush.field_writes() if call[1].endswith("/values/Status")]
        assert statuses[-1] == "Reward Redeemed!"

    def test_earn_records_valid_event(self, program):
        result = _earn(program, ip="203.0.113.9")

        with SessionLocal() as db:
            event = db.scalar(select(LoyaltyEarnEvent))
        assert event.valid is True
        assert event.amount == 1
        assert event.ip_hash and event.ip_hash != "203.0.113.9"
        assert event.membership_id == result.membership_id

    def test_invalid_token_rejected(self, program):
        with pytest.raises(InvalidToken):
            ledger_service.earn(program.id, "wp_a", "wrong-token", now=NOW)

    def test_unknown_program(self, program):
        with pytest.raises(ProgramNotFound):
            ledger_service.earn(uuid.uuid4(), "wp_a", program.counter_qr_token, now=NOW)

    @pytest.mark.parametrize("status", ["draft", "submitted", "paused", "ended"])
    def test_only_active_programs_accept_earns(self, business, make_program, status):
        program = make_program(business, status=status)
        with pytest.raises(ProgramNotActive):
            _earn(program)

    def test_amount_must_be_positive(self, program):
        with pytest.raises(ValidationError):
            _earn(program, amount=0)

    def test_cooldown_records_invalid_event(self, business, make_program):
        program = make_program(business, max_earns_per_day=0, min_gap_minutes=30)
        _earn(program)

        with pytest.raises(EarnNotAllowed) as excinfo:
            _earn(program, minutes=5)

        assert excinfo.value.reason == "cooldown"
        assert excinfo.value.next_eligible_at == NOW + timedelta(minutes=30)

        with SessionLocal() as db:
            events = db.scalars(select(LoyaltyEarnEvent).order_by(LoyaltyEarnEvent.earned_at)).all()
        assert [e.valid for e in events] == [True, False]
        assert events[1].reason_if_invalid == "cooldown"

        assert _earn(program, minutes=31).balance == 2

    def test_daily_limit(self, business, make_program):
        program = make_program(business, max_earns_per_day=1, min_gap_minutes=0, timezone="UTC")
        _earn(program)

        with pytest.raises(EarnNotAllowed) as excinfo:
            _earn(program, minutes=60)
        assert excinfo.value.next_eligible_at == datetime(2026, 3, 3)

        assert _earn(program, minutes=13 * 60).balance == 2

    def test_hourly_rate_limit(self, business, make_program):
        program = make_program(business, type="points", reward_threshold=100)
        for i in range(10):
            _earn(program, minutes=i)

        with pytest.raises(EarnNotAllowed) as excinfo:
            _earn(program, minutes=11)
        assert excinfo.value.reason == "rate_limited"

    def test_stamps_stop_at_threshold(self, program):
        for i in range(5):
            _earn(program, minutes=i)

        with pytest.raises(EarnNotAllowed) as excinfo:
            _earn(program, minutes=6)
        assert excinfo.value.reason == "reward_pending"

    def test_points_overflow_is_reported_not_credited(self, business, make_program):
        program = make_program(business, type="points", reward_threshold=100)

        first = _earn(program, amount=150)
        assert first.balance == 150
        assert first.reward_unlocked is True
        assert first.overflow == 0

        second = _earn(program, amount=80, minutes=1)
        assert second.balance == 199
        assert second.overflow == 31
        assert second.reward_unlocked is False

        redeemed = ledger_service.redeem(second.membership_id, now=NOW + timedelta(minutes=2))
        assert redeemed["balance"] == 99
        assert redeemed["balance"] < program.reward_threshold

    def test_earn_survives_pass_sync_failure(self, program, walletpush):
        ledger_service.join_program(program.public_id, "bournemouth", {"wallet_pass_id": "wp_visitor_1"})
        walletpush.fail = True

        result = _earn(program)

        assert result.balance == 1
        assert result.pass_sync.ok is False
        assert _membership(result.membership_id).stamps_balance == 1

    def test_earn_is_scoped_to_city(self, program):
        with pytest.raises(ProgramNotFound):
            _earn(program, city="brighton")
        assert _earn(program, city="bournemouth").balance == 1

    def test_per_ip_hourly_limit(self, program):
        with SessionLocal() as db:
            for i in range(20):
                db.add(LoyaltyEarnEvent(
                    business_id=program.business_id,
                    user_wallet_pass_id=f"wp_{i}",
                    amount=1,
                    ip_hash=hash_ip("198.51.100.7"),
                    valid=True,
                    earned_at=NOW - timedelta(minutes=50 - i),
                ))
            db.commit()

        with pytest.raises(EarnNotAllowed) as excinfo:
            _earn(program, visitor_id="wp_regular", ip="198.51.100.7")
        assert excinfo.value.reason == "rate_limit_ip"

        # other addresses are unaffected
        assert _earn(program, visitor_id="wp_regular", ip="198.51.100.8").balance == 1

    def test_ip_velocity_across_visitors(self, program):
        for i in range(3):
            _earn(program, visitor_id=f"wp_{i}", minutes=i, ip="203.0.113.5")

        with pytest.raises(EarnNotAllowed) as excinfo:
            _earn(program, visitor_id="wp_3", minutes=3, ip="203.0.113.5")
        assert excinfo.value.reason == "ip_velocity"

        with SessionLocal() as db:
            refused = db.scalar(select(LoyaltyEarnEvent).where(LoyaltyEarnEvent.valid.is_(False)))
        assert refused.user_wallet_pass_id == "wp_3"
        assert refused.reason_if_invalid == "ip_velocity"

        # window has moved past the burst
        assert _earn(program, visitor_id="wp_3", minutes=15, ip="203.0.113.5").balance == 1

    def test_pause_after_checks_blocks_the_credit(self, business, program, monkeypatch):
        real = ledger_service.get_or_create_membership

        def pause_in_between(program_id, visitor_id):
            found = real(program_id, visitor_id)
            program_service.pause_program(business.id)
            return found

        monkeypatch.setattr(ledger_service, "get_or_create_membership", pause_in_between)

        with pytest.raises(ProgramNotActive):
            _earn(program)

        with SessionLocal() as db:
            membership = db.scalar(select(LoyaltyMembership))
            assert membership.stamps_balance == 0
            assert db.scalar(select(LoyaltyEarnEvent)) is None

    def test_concurrent_earns_unlock_once(self, business, make_program):
        program = make_program(business, type="points", reward_threshold=10)
        membership_id = _earn(program, amount=9).membership_id

        results, errors = _run_together(lambda: _earn(program, minutes=1))

        assert errors == []
        assert sorted(r.balance for r in results) == [10, 11]
        assert [r.reward_unlocked for r in results].count(True) == 1
        assert _membership(membership_id).points_balance == 11


class TestRedeem:

    def test_insufficient_balance(self, program):
        result = _earn(program)
        with pytest.raises(InsufficientBalance) as excinfo:
            ledger_service.redeem(result.membership_id, now=NOW)

        assert excinfo.value.balance == 1
        assert excinfo.value.threshold == 5
        assert _membership(result.membership_id).stamps_balance == 1

    def test_other_visitor_cannot_redeem(self, program):
        for i in range(5):
            result = _earn(program, minutes=i)

        with pytest.raises(MembershipNotFound):
            ledger_service.redeem(result.membership_id, "wp_someone_else")

    def test_paused_program_blocks_redeem(self, program):
        for i in range(5):
            result = _earn(program, minutes=i)

        with SessionLocal() as db:
            db.get(LoyaltyProgram, program.id).status = "paused"
            db.commit()

        with pytest.raises(ProgramNotActive):
            ledger_service.redeem(result.membership_id)
        assert _membership(result.membership_id).stamps_balance == 5

    def test_concurrent_redeems_at_threshold(self, program):
        for i in range(5):
            result = _earn(program, minutes=i)
        membership_id = result.membership_id

        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                ledger_service.redeem(membership_id)
                outcome = "ok"
            except InsufficientBalance:
                outcome = "insufficient"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert sorted(outcomes) == ["insufficient", "ok"]
        assert _membership(membership_id).stamps_balance == 0

        with SessionLocal() as db:
            assert len(db.scalars(select(LoyaltyRedemption)).all()) == 1

    def test_redeem_is_scoped_to_city(self, program):
        for i in range(5):
            result = _earn(program, minutes=i)

        with pytest.raises(MembershipNotFound):
            ledger_service.redeem(result.membership_id, "wp_visitor_1", now=NOW + timedelta(minutes=6), city="brighton")
        assert _membership(result.membership_id).stamps_balance == 5

    def test_one_redemption_per_window(self, business, make_program):
        program = make_program(business, type="points", reward_threshold=10)
        membership_id = _earn(program, amount=19).membership_id

        first = ledger_service.redeem(membership_id, now=NOW + timedelta(minutes=1))
        assert first["balance"] == 9
        _earn(program, amount=10, minutes=2)

        with pytest.raises(RedeemNotAllowed) as excinfo:
            ledger_service.redeem(membership_id, now=NOW + timedelta(minutes=3))
        assert excinfo.value.reason == "redeem_rate_limited"
        assert excinfo.value.next_eligible_at == NOW + timedelta(minutes=6)
        assert _membership(membership_id).points_balance == 19

        assert ledger_service.redeem(membership_id, now=NOW + timedelta(minutes=7))["balance"] == 9

    def test_redeem_touches_last_active(self, program):
        for i in range(5):
            result = _earn(program, minutes=i)

        ledger_service.redeem(result.membership_id, now=NOW + timedelta(minutes=30))
        assert _membership(result.membership_id).last_active_at == NOW + timedelta(minutes=30)

    def test_pause_committed_before_update_blocks_redeem(self, program, monkeypatch):
        for i in range(5):
            result = _earn(program, minutes=i)
        real = ledger_service._active_program

        def pause_after_check(db, program_id):
            found = real(db, program_id)
            db.execute(update(LoyaltyProgram).where(LoyaltyProgram.id == program_id).values(status="paused"))
            db.commit()
            return found

        monkeypatch.setattr(ledger_service, "_active_program", pause_after_check)

        with pytest.raises(ProgramNotActive):
            ledger_service.redeem(result.membership_id, now=NOW + timedelta(minutes=6))
        assert _membership(result.membership_id).stamps_balance == 5


class TestMemberList:

    def test_list_and_export(self, business, program, visitor):
        _earn(program, visitor_id=visitor.wallet_pass_id)
        _earn(program, visitor_id="wp_anon", minutes=1)

        rows = ledger_service.list_members(business.id)
        assert {row["wallet_pass_id"] for row in rows} == {"wp_visitor_1", "wp_anon"}

        named = next(row for row in rows if row["wallet_pass_id"] == "wp_visitor_1")
        assert named["first_name"] == "Ada"
        assert named["balance"] == 1

        csv_text = ledger_service.export_members_csv(rows)
        lines = csv_text.strip().splitlines()
        assert lines[0].startswith("membership_id,wallet_pass_id,first_name")
        assert len(lines) == 3

    def test_membership_for_visitor(self, program):
        result = _earn(program)
        found = ledger_service.get_membership_for_visitor(program.id, "wp_visitor_1")
        assert found["id"] == str(result.membership_id)
        assert found["balance"] == 1

        with pytest.raises(MembershipNotFound):
            ledger_service.get_membership_for_visitor(program.id, "wp_nobody")
