# tests/conftest.py
import os
import tempfile
import uuid

# configure before anything imports loyalty.db
_DB_DIR = tempfile.mkdtemp(prefix="loyalty-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-with-enough-length-for-hs256"
os.environ["CRON_TOKEN"] = "test-cron-token"
os.environ["DEFAULT_CITY"] = "bournemouth"
os.environ.pop("LOYALTY_NOTIFY_WEBHOOK_URL", None)
os.environ.pop("K_SERVICE", None)

import jwt
import pytest

from loyalty import create_app
from loyalty.db import SessionLocal, engine
from loyalty.models import AppUser, Base, Business, CityAdmin, LoyaltyProgram
from loyalty.services import walletpush_service
from loyalty.services.token_service import generate_counter_token

CREDENTIALS = {
    "walletpush_template_id": "tmpl-123",
    "walletpush_api_key": "wp-key",
    "walletpush_pass_type_id": "pass.com.qwikker.loyalty",
}


@pytest.fixture(autouse=True)
def tables():
    """Fresh schema for every test"""
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


class FakeWalletPush:
    """Records every call made through walletpush_service.make_api_request"""

    def __init__(self):
        self.calls = []
        self.fail = False
        self.issued = 0

    def __call__(self, method, endpoint, api_key, data=None):
        self.calls.append((method, endpoint, api_key, data))
        if self.fail:
            raise walletpush_service.ExternalServiceFailure("WalletPush returned 503")
        if method == "POST":
            self.issued += 1
            return {
                "serialNumber": f"serial-{self.issued}",
                "appleUrl": f"https://app.walletpush.io/api/pass-install/serial-{self.issued}",
                "googleUrl": f"https://pay.google.com/gp/v/save/serial-{self.issued}",
            }
        return {}

    def field_writes(self):
        return [call for call in self.calls if call[0] == "PUT"]


@pytest.fixture(autouse=True)
def walletpush(monkeypatch):
    fake = FakeWalletPush()
    monkeypatch.setattr(walletpush_service, "make_api_request", fake)
    return fake


def _add(obj):
    with SessionLocal() as db:
        db.add(obj)
        db.commit()
        db.refresh(obj)
        return obj


@pytest.fixture
def business():
    return _add(Business(user_id=uuid.uuid4(), business_name="Bean There", city="bournemouth"))


@pytest.fixture
def other_business():
    return _add(Business(user_id=uuid.uuid4(), business_name="Grind House", city="bournemouth"))


@pytest.fixture
def admin():
    return _add(CityAdmin(user_id=uuid.uuid4(), city="bournemouth"))


@pytest.fixture
def make_program():
    def _make(business, status="active", credentials=True, **overrides):
        values = {
            "business_id": business.id,
            "city": business.city,
            "public_id": uuid.uuid4().hex[:10],
            "counter_qr_token": generate_counter_token(),
            "program_name": f"{business.business_name} Rewards",
            "reward_threshold": 5,
            "reward_description": "Free coffee",
            "status": status,
            # no cooldowns unless a test asks for them
            "max_earns_per_day": 0,
            "min_gap_minutes": 0,
        }
        if credentials:
            values.update(CREDENTIALS)
        values.update(overrides)
        return _add(LoyaltyProgram(**values))
    return _make


@pytest.fixture
def program(business, make_program):
    return make_program(business)


@pytest.fixture
def visitor():
    return _add(AppUser(wallet_pass_id="wp_visitor_1", first_name="Ada", last_name="Lovelace", email="ada@example.com"))


@pytest.fixture
def app():
    app = create_app()
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def auth_headers(user_id, city="bournemouth"):
    token = jwt.encode({"sub": str(user_id)}, os.environ["SUPABASE_JWT_SECRET"], algorithm="HS256")
    return {"Authorization": f"Bearer {token}", "X-City": city}
