# loyalty/routes/passes.py
"""Wallet pass repair endpoints."""
from flask import Blueprint, jsonify, request
import logging

from loyalty.exceptions import LoyaltyError
from loyalty.routes.responses import error_response
from loyalty.services import ledger_service, pass_sync_service, redemption_service
from loyalty.services.auth_service import current_business, require_auth

bp = Blueprint("loyalty_passes", __name__)
logger = logging.getLogger(__name__)


def _sync_response(result: pass_sync_service.SyncResult):
    # a failed push is reported, not raised; the ledger is already correct
    return jsonify({"success": result.ok, **result.to_dict()}), 200 if result.ok else 502


@bp.post("/<uuid:membership_id>/retry")
def retry(membership_id):
    """Visitor retries pass creation after a failed join."""
    data = request.get_json(silent=True) or {}
    try:
        ledger_service.check_membership_access(membership_id, visitor_id=data.get("wallet_pass_id") or "")
        return _sync_response(pass_sync_service.retry_issue(membership_id))
    except LoyaltyError as e:
        return error_response(e)


@bp.post("/<uuid:membership_id>/force-push")
@require_auth
def force_push(membership_id):
    business = current_business()
    try:
        ledger_service.check_membership_access(membership_id, business_id=business.id)
        return _sync_response(pass_sync_service.force_push(membership_id))
    except LoyaltyError as e:
        return error_response(e)


@bp.post("/<uuid:membership_id>/reset-display")
@require_auth
def reset_display(membership_id):
    business = current_business()
    try:
        ledger_service.check_membership_access(membership_id, business_id=business.id)
        return _sync_response(redemption_service.reset_pass_display(membership_id))
    except LoyaltyError as e:
        return error_response(e)
