# loyalty/routes/admin.py
"""City admin review of activation requests."""
from flask import Blueprint, jsonify, request
import logging

from loyalty.exceptions import LoyaltyError
from loyalty.routes.responses import error_response
from loyalty.services import program_service
from loyalty.services.auth_service import current_admin, require_auth

bp = Blueprint("loyalty_admin", __name__)
logger = logging.getLogger(__name__)


@bp.get("/requests")
@require_auth
def pending_requests():
    admin = current_admin()
    requests_ = program_service.list_pending_requests(admin.city)
    return jsonify({"requests": requests_, "count": len(requests_)}), 200


@bp.post("/requests/<uuid:request_id>/approve")
@require_auth
def approve(request_id):
    admin = current_admin()
    data = request.get_json(silent=True) or {}
    try:
        program = program_service.approve_request(request_id, admin.id, admin.city, data)
        return jsonify({"success": True, "program": program_service.program_to_dict(program)}), 200
    except LoyaltyError as e:
        return error_response(e)


@bp.post("/requests/<uuid:request_id>/reject")
@require_auth
def reject(request_id):
    admin = current_admin()
    data = request.get_json(silent=True) or {}
    try:
        pass_request = program_service.reject_request(request_id, admin.id, admin.city, data.get("reason"))
        return jsonify({"success": True, "request": program_service.request_to_dict(pass_request)}), 200
    except LoyaltyError as e:
        return error_response(e)
