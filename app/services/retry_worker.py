"""Retry worker — re-submits orders stuck in `paid`.

Each pass:
  1. Releases `submitting` claims left behind by a dead process
  2. Picks paid, unsubmitted orders under FULFILLMENT_MAX_RETRIES whose
     exponential backoff has elapsed (and that aren't flagged for review)
  3. Runs the same submit_order() the payment webhook uses, one order at a
     time, each with its own claim and commit
  4. With FULFILLMENT_AUTO_CONFIRM on, retries confirmation of drafts that
     were created but never confirmed

A breaker rejection leaves the order untouched for the next pass. Orders
at the retry bound stay `paid` for manual intervention: the customer has
paid, so fulfillment is never silently abandoned.

Designed to be called from a Flask CLI command (`flask retry-fulfillment`
from cron, or `flask run-retry-worker` as a long-running process).
"""

import logging
import threading

from flask import current_app

from app.extensions import db
from app.services import order_service

logger = logging.getLogger(__name__)


def run_retry_pass(client, dry_run=False, now=None):
    """Run one sweep. Returns a summary dict of outcome counts."""
    config = current_app.config
    summary = {
        "released": 0,
        order_service.SUBMITTED: 0,
        order_service.FAILED: 0,
        order_service.DEFERRED: 0,
        order_service.SKIPPED: 0,
        "errors": 0,
        "confirmed": 0,
    }

    if not dry_run:
        summary["released"] = order_service.release_stale_claims(
            config.get("FULFILLMENT_CLAIM_TIMEOUT", 300), now=now
        )

    orders = order_service.get_retryable_orders(
        max_retries=config.get("FULFILLMENT_MAX_RETRIES", 10),
        backoff_base=config.get("FULFILLMENT_RETRY_BACKOFF_SECONDS", 60),
        backoff_cap=config.get("FULFILLMENT_RETRY_BACKOFF_MAX_SECONDS", 3600),
        now=now,
    )
    order_ids = [order.id for order in orders]

    if not order_ids:
        logger.info("Retry pass: no orders waiting for fulfillment submission")
    else:
        logger.info(f"Retry pass: {len(order_ids)} order(s) to submit")

    for order_id in order_ids:
        if dry_run:
            logger.info(f"[DRY RUN] would submit order {order_id}")
            summary[order_service.SKIPPED] += 1
            continue

        try:
            outcome = order_service.submit_order(order_id, client)
        except Exception as e:
            # One bad order must not stall the rest of the pass.
            db.session.rollback()
            logger.error(f"Retry of order {order_id} crashed: {e}", exc_info=True)
            summary["errors"] += 1
            continue

        summary[outcome] += 1
        if outcome == order_service.DEFERRED:
            logger.info(f"Order {order_id}: provider unavailable, will retry next pass")

    if config.get("FULFILLMENT_AUTO_CONFIRM") and not dry_run:
        for order in order_service.get_unconfirmed_orders():
            if order_service.confirm_order(order.id, client):
                summary["confirmed"] += 1

    logger.info(f"Retry pass complete: {summary}")
    return summary


def run_forever(app, client, interval=None, stop_event=None):
    """Run retry passes every `interval` seconds until stop_event is set."""
    stop_event = stop_event or threading.Event()
    interval = interval or app.config.get("RETRY_WORKER_INTERVAL", 300)

    logger.info(f"Retry worker started (interval {interval}s)")
    while not stop_event.is_set():
        with app.app_context():
            try:
                run_retry_pass(client)
            except Exception as e:
                logger.error(f"Retry pass failed: {e}", exc_info=True)
            finally:
                db.session.remove()
        stop_event.wait(interval)
    logger.info("Retry worker stopped")
