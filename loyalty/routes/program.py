# loyalty/routes/program.py
"""Business dashboard endpoints for the caller's own program."""
from flask import Blueprint, Response, jsonify, request
import logging
import re

from loyalty.exceptions import LoyaltyError, ValidationError
from loyalty.routes.responses import error_response
from loyalty.services import ledger_service, program_service
from loyalty.services.auth_service import current_business, require_auth
from loyalty.services.token_service import rotate_counter_token

bp = Blueprint("loyalty_program", __name__)
logger = logging.getLogger(__name__)


@bp.get("/")
@require_auth
def get_my_program():
    business = current_business()
    try:
        program = program_service.get_business_program(business.id)
        return jsonify({"program": program_service.program_to_dict(program, include_token=True)}), 200
    except LoyaltyError as e:
        return error_response(e)


@bp.post("/upsert")
@require_auth
def upsert():
    business = current_business()
    data = request.get_json(silent=True) or {}
    try:
        program, created = program_service.upsert_program(business.id, data)
        return jsonify({
            "success": True,
            "created": created,
            "program": program_service.program_to_dict(program, include_token=True),
        }), 201 if created else 200
    except LoyaltyError as e:
        return error_response(e)


@bp.post("/submit")
@require_auth
def submit():
    business = current_business()
    try:
        pass_request = program_service.submit_program(business.id)
        return jsonify({"success": True, "request": program_service.request_to_dict(pass_request)}), 200
    except LoyaltyError as e:
        return error_response(e)


def _lifecycle(action):
    business = current_business()
    try:
        program = action(business.id)
        return jsonify({"success": True, "program": program_service.program_to_dict(program)}), 200
    except LoyaltyError as e:
        return error_response(e)


@bp.post("/pause")
@require_auth
def pause():
    return _lifecycle(program_service.pause_program)


@bp.post("/resume")
@require_auth
def resume():
    return _lifecycle(program_service.resume_program)


@bp.post("/end")
@require_auth
def end():
    return _lifecycle(program_service.end_program)


@bp.post("/rotate-token")
@require_auth
def rotate_token():
    business = current_business()
    try:
        program = program_service.get_business_program(business.id)
        program = rotate_counter_token(program.id, business_id=business.id)
        return jsonify({
            "success": True,
            "counter_qr_token": program.counter_qr_token,
            "rotated_at": program_service.program_to_dict(program, include_token=True)["counter_qr_token_rotated_at"],
        }), 200
    except LoyaltyError as e:
        return error_response(e)


@bp.get("/summary")
@require_auth
def summary():
    business = current_business()
    try:
        return jsonify(program_service.get_program_summary(business.id)), 200
    except LoyaltyError as e:
        return error_response(e)


def _since_days(value: str | None) -> int | None:
    """'30d' or '30' -> 30"""
    if not value:
        return None
    match = re.fullmatch(r"(\d+)d?", value.strip())
    if not match:
        raise ValidationError("since must look like 30d")
    return int(match.group(1))


@bp.get("/members")
@require_auth
def members():
    business = current_business()
    try:
        rows = ledger_service.list_members(
            business.id,
            status=request.args.get("status") or None,
            since_days=_since_days(request.args.get("since")),
        )
    except LoyaltyError as e:
        return error_response(e)

    if request.args.get("format") == "csv":
        return Response(
            ledger_service.export_members_csv(rows),
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=loyalty-members.csv"},
        )

    return jsonify({"members": rows, "count": len(rows)}), 200
