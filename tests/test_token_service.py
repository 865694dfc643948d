# tests/test_token_service.py
from datetime import datetime, timedelta
import threading

import pytest

from loyalty.exceptions import ProgramNotFound
from loyalty.services.token_service import (
    generate_counter_token, rotate_counter_token, validate_counter_token,
)

T0 = datetime(2026, 3, 2, 12, 0, 0)


def test_generated_tokens_are_url_safe_and_unique():
    tokens = {generate_counter_token() for _ in range(50)}
    assert len(tokens) == 50
    for token in tokens:
        assert len(token) == 32
        assert all(c.isalnum() or c in "-_" for c in token)


def test_current_token_is_always_valid(program):
    assert validate_counter_token(program, program.counter_qr_token, now=T0)
    assert not validate_counter_token(program, "not-the-token", now=T0)
    assert not validate_counter_token(program, "", now=T0)


def test_previous_token_honoured_inside_grace_window(program):
    old_token = program.counter_qr_token
    rotated = rotate_counter_token(program.id, now=T0)

    assert rotated.counter_qr_token != old_token
    assert rotated.previous_counter_qr_token == old_token
    assert rotated.counter_qr_token_rotated_at == T0

    assert validate_counter_token(rotated, old_token, now=T0 + timedelta(minutes=29))
    assert not validate_counter_token(rotated, old_token, now=T0 + timedelta(minutes=31))
    # new token unaffected by the window
    assert validate_counter_token(rotated, rotated.counter_qr_token, now=T0 + timedelta(minutes=31))


def test_token_from_two_rotations_ago_is_rejected(program):
    first = program.counter_qr_token
    rotate_counter_token(program.id, now=T0)
    rotated = rotate_counter_token(program.id, now=T0 + timedelta(minutes=5))

    assert not validate_counter_token(rotated, first, now=T0 + timedelta(minutes=6))


def test_scan_ten_and_forty_minutes_after_rotation(program):
    old_token = program.counter_qr_token
    rotated = rotate_counter_token(program.id, now=T0)

    assert validate_counter_token(rotated, old_token, now=T0 + timedelta(minutes=10))
    assert not validate_counter_token(rotated, old_token, now=T0 + timedelta(minutes=40))


def test_rotate_checks_owner(program, other_business):
    with pytest.raises(ProgramNotFound):
        rotate_counter_token(program.id, business_id=other_business.id)


def test_concurrent_rotations_keep_the_chain(program):
    original = program.counter_qr_token
    barrier = threading.Barrier(2)
    rotated = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        result = rotate_counter_token(program.id, now=T0)
        with lock:
            rotated.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(rotated) == 2
    first, second = sorted(rotated, key=lambda p: p.previous_counter_qr_token != original)
    assert first.previous_counter_qr_token == original
    # the second rotation saw the first one's token, nothing was dropped
    assert second.previous_counter_qr_token == first.counter_qr_token
