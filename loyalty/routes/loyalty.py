# loyalty/routes/loyalty.py
"""
Visitor-facing endpoints. Visitors are identified by the wallet pass id the
main app hands out, not by a login.
"""
from flask import Blueprint, jsonify, request
import logging

from loyalty.exceptions import LoyaltyError, ValidationError
from loyalty.routes.responses import error_response, parse_uuid
from loyalty.services import ledger_service, program_service, redemption_service
from loyalty.services.auth_service import current_business, current_city, require_auth

bp = Blueprint("loyalty", __name__)
logger = logging.getLogger(__name__)


def _client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() or request.remote_addr


@bp.post("/join")
def join():
    data = request.get_json(silent=True) or {}
    try:
        public_id = data.get("public_id")
        if not public_id:
            raise ValidationError("public_id is required")
        result = ledger_service.join_program(public_id, current_city(), data)
        return jsonify({"success": True, **result}), 200 if result["already_member"] else 201
    except LoyaltyError as e:
        return error_response(e)


@bp.post("/earn")
def earn():
    """Visitor scanned the counter QR code. Always one visit, never a client-chosen amount."""
    data = request.get_json(silent=True) or {}
    try:
        public_id = data.get("public_id")
        if not public_id:
            raise ValidationError("public_id is required")
        city = current_city()
        program = program_service.get_program_by_public_id(public_id, city)
        result = ledger_service.earn(
            program.id,
            data.get("wallet_pass_id"),
            data.get("token"),
            ip=_client_ip(),
            city=city,
        )
        return jsonify({"success": True, **result.to_dict()}), 200
    except LoyaltyError as e:
        return error_response(e)


@bp.post("/redeem")
def redeem():
    data = request.get_json(silent=True) or {}
    try:
        wallet_pass_id = data.get("wallet_pass_id")
        if not wallet_pass_id:
            raise ValidationError("wallet_pass_id is required")
        result = ledger_service.redeem(
            parse_uuid(data.get("membership_id"), "membership_id"), wallet_pass_id, city=current_city()
        )
        return jsonify({"success": True, **result}), 200
    except LoyaltyError as e:
        return error_response(e)


@bp.get("/redemptions/<uuid:redemption_id>/status")
def redemption_status(redemption_id):
    wallet_pass_id = request.args.get("wallet_pass_id")
    if not wallet_pass_id:
        return jsonify({"error": "Invalid input", "message": "wallet_pass_id is required"}), 400
    try:
        return jsonify(redemption_service.get_redemption_status(redemption_id, wallet_pass_id)), 200
    except LoyaltyError as e:
        return error_response(e)


@bp.post("/redemptions/<uuid:redemption_id>/flag")
@require_auth
def flag(redemption_id):
    business = current_business()
    data = request.get_json(silent=True) or {}
    try:
        redemption = redemption_service.flag_redemption(redemption_id, business.id, data.get("reason"))
        return jsonify({"success": True, **redemption_service.redemption_to_dict(redemption)}), 200
    except LoyaltyError as e:
        return error_response(e)
