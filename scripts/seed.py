# scripts/seed.py
from __future__ import annotations
import os, uuid
from sqlalchemy.orm import Session
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from loyalty.db import engine
from loyalty.models import Business, CityAdmin, LoyaltyProgram
from loyalty.services.loyalty_utils import generate_public_id
from loyalty.services.token_service import generate_counter_token
from dotenv import load_dotenv
load_dotenv()

AUTH_USER_ID = os.getenv("AUTH_USER")
CITY = os.getenv("DEFAULT_CITY", "bournemouth")

def _uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise SystemExit("❌ AUTH_USER must be a valid UUID from Supabase Auth → Users")

def get_or_create(session: Session, model, defaults: dict | None = None, **lookup):
    """Utility to avoid duplicate inserts when reseeding."""
    inst = session.execute(select(model).filter_by(**lookup)).scalar_one_or_none()
    if inst:
        return inst, False
    params = {**lookup, **(defaults or {})}
    inst = model(**params)
    session.add(inst)
    try:
        session.flush()
        return inst, True
    except IntegrityError:
        session.rollback()
        inst = session.execute(select(model).filter_by(**lookup)).scalar_one()
        return inst, False

def seed():
    if not AUTH_USER_ID:
        raise SystemExit("❌ Set AUTH_USER in your .env (Supabase Auth user UUID).")

    user_id = _uuid(AUTH_USER_ID)

    with Session(engine) as session:
        # Business owned by the auth user
        business, created_b = get_or_create(
            session,
            Business,
            user_id=user_id,
            defaults={"business_name": "Sample Coffee", "city": CITY},
        )

        # Same user doubles as the city admin for local testing
        admin, created_a = get_or_create(session, CityAdmin, user_id=user_id, city=CITY)

        # Active stamp card; WalletPush credentials from env when present
        program, created_p = get_or_create(
            session,
            LoyaltyProgram,
            business_id=business.id,
            defaults={
                "city": CITY,
                "public_id": generate_public_id(),
                "counter_qr_token": generate_counter_token(),
                "program_name": "Sample Coffee Rewards",
                "reward_threshold": 10,
                "reward_description": "Free coffee",
                "status": "active",
                "max_earns_per_day": 0,
                "min_gap_minutes": 0,
                "walletpush_template_id": os.getenv("WALLETPUSH_TEMPLATE_ID"),
                "walletpush_api_key": os.getenv("WALLETPUSH_API_KEY"),
                "walletpush_pass_type_id": os.getenv("WALLETPUSH_PASS_TYPE_ID"),
            },
        )

        session.commit()

        print("✅ Seed complete")
        print(f"  business_id : {business.id} ({'created' if created_b else 'existing'})")
        print(f"  admin_id    : {admin.id} ({'created' if created_a else 'existing'})")
        print(f"  program_id  : {program.id} ({'created' if created_p else 'existing'})")
        print(f"  public_id   : {program.public_id}")
        print(f"  counter QR  : {program.counter_qr_token}")
        print(f"  auth_user   : {user_id}")

if __name__ == "__main__":
    seed()
