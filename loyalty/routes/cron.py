# loyalty/routes/cron.py
from flask import Blueprint, jsonify
from sqlalchemy.exc import SQLAlchemyError
import logging

from loyalty.services.auth_service import verify_cron_token
from loyalty.services.redemption_service import reset_expired_displays

logger = logging.getLogger(__name__)
bp = Blueprint('cron', __name__)


@bp.post("/reset-expired-displays")
@verify_cron_token
def cron_reset_expired_displays():
    """Called by Cloud Scheduler every few minutes"""
    try:
        counts = reset_expired_displays()
        return jsonify({"success": True, **counts})
    except SQLAlchemyError as e:
        logger.error(f"Cron failed: {e}")
        return jsonify({"success": False, "error": str(e)}), 500
