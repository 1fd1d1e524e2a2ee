"""Health blueprint — GET /health

Database round-trip plus the state of each provider circuit breaker.
An open breaker is reported but doesn't fail the check: the service is
still taking webhooks and queueing work for the retry worker.
"""

import logging

from flask import Blueprint, jsonify
from sqlalchemy import text

from app.extensions import db, fulfillment_client, payment_client

health_bp = Blueprint("health", __name__)

logger = logging.getLogger(__name__)


@health_bp.route("/health", methods=["GET"])
def health():
    database_ok = True
    try:
        db.session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        db.session.rollback()
        database_ok = False

    body = {
        "status": "ok" if database_ok else "degraded",
        "database": "ok" if database_ok else "error",
        "breakers": [
            payment_client.breaker.stats(),
            fulfillment_client.breaker.stats(),
        ],
    }
    return jsonify(body), 200 if database_ok else 503
