# loyalty/services/auth_service.py
from __future__ import annotations

import os
import functools
import hmac
import uuid
from typing import Optional

import jwt
from dotenv import load_dotenv
from flask import request, g, abort
from sqlalchemy import select

from loyalty.db import SessionLocal
from loyalty.models import Business, CityAdmin

load_dotenv()

# ──────────────────────────────────────────────────────────────────────────────
# Config
# Get this from Supabase: Project Settings → API → JWT Secret
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")

DEFAULT_CITY = os.getenv("DEFAULT_CITY", "bournemouth")

# ──────────────────────────────────────────────────────────────────────────────
# Low-level JWT utilities

def _bearer_token() -> Optional[str]:
    """Return the raw Bearer token string or None."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip()


def decode_supabase_jwt(token: str) -> Optional[dict]:
    """Decode a Supabase access token (HS256). Returns payload dict or None."""
    if not SUPABASE_JWT_SECRET:
        raise RuntimeError("Missing SUPABASE_JWT_SECRET env var")
    try:
        # Supabase uses HS256; often no aud claim
        return jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except jwt.PyJWTError:
        return None


def current_user_id() -> Optional[str]:
    """Extract auth.users.id (UUID as string) from the request Bearer token."""
    tok = _bearer_token()
    if not tok:
        return None
    payload = decode_supabase_jwt(tok)
    return payload.get("sub") if payload else None


def current_city() -> str:
    """Tenant city, set by the edge proxy from the subdomain."""
    return (request.headers.get("X-City") or DEFAULT_CITY).strip().lower()


# ──────────────────────────────────────────────────────────────────────────────
# Decorators

def require_auth(fn):
    """Attach g.user_id (auth.users.id) or abort 401."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        uid = current_user_id()
        if not uid:
            abort(401, description="Unauthorized")
        g.user_id = uid
        return fn(*args, **kwargs)
    return wrapper


def verify_cron_token(f):
    @functools.wraps(f)
    def cron_wrapper(*args, **kwargs):
        token = request.headers.get('X-Cron-Token')
        expected_token = os.getenv('CRON_TOKEN')
        if not token or not expected_token or not hmac.compare_digest(token, expected_token):
            return {'error': 'Unauthorized Missing cron token or token is incorrect'}, 403

        return f(*args, **kwargs)
    return cron_wrapper


# ──────────────────────────────────────────────────────────────────────────────
# Caller resolution (call inside @require_auth routes)

def current_business() -> Business:
    """The business profile owned by the caller, or abort 403."""
    uid = getattr(g, "user_id", None)
    if not uid:
        abort(401, description="Unauthorized")

    with SessionLocal() as db:
        business = db.scalar(
            select(Business)
            .where(Business.user_id == _as_uuid(uid))
            .order_by(Business.created_at.asc())
            .limit(1)
        )
        if not business:
            abort(403, description="No business profile for this account")
        return business


def current_admin() -> CityAdmin:
    """The caller's admin row for the request's city, or abort 403."""
    uid = getattr(g, "user_id", None)
    if not uid:
        abort(401, description="Unauthorized")

    with SessionLocal() as db:
        admin = db.scalar(
            select(CityAdmin).where(
                CityAdmin.user_id == _as_uuid(uid),
                CityAdmin.city == current_city(),
            )
        )
        if not admin:
            abort(403, description="Forbidden")
        return admin


def _as_uuid(value):
    try:
        return uuid.UUID(str(value))
    except ValueError:
        abort(401, description="Unauthorized")
