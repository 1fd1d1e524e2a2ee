"""Order service — the order fulfillment state machine.

Lifecycle:

    created -> awaiting_payment -> paid -> submitting -> submitted
            -> confirmed -> fulfilled

    terminal alternatives: fulfillment_failed, payment_failed

`submitting` is a claim marker held only while a submission call is in
flight. A failed submission drops the order back to `paid` (retryable) and
appends a SubmissionFailure row.

Every transition is a single conditional UPDATE
(`WHERE id = :id AND status IN (:allowed)`) committed immediately, so
read-validate-write is atomic per order row. Two concurrent webhook
deliveries or two overlapping worker runs can't both win the same
transition; the loser sees rowcount 0 and treats it as a no-op.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from flask import current_app

from app.extensions import db
from app.models.order import Order, OrderItem, OrderStatus
from app.models.submission_failure import SubmissionFailure
from app.services.provider_errors import (
    PermanentProviderError,
    ProviderError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

# submit_order() outcomes
SUBMITTED = "submitted"
FAILED = "failed"
DEFERRED = "deferred"          # breaker refused the call; nothing attempted
SKIPPED = "skipped"            # already submitted, or claimed elsewhere

# from-states allowed for each target state
TRANSITIONS = {
    OrderStatus.AWAITING_PAYMENT: (OrderStatus.CREATED,),
    OrderStatus.PAID: (OrderStatus.CREATED, OrderStatus.AWAITING_PAYMENT),
    OrderStatus.PAYMENT_FAILED: (OrderStatus.CREATED, OrderStatus.AWAITING_PAYMENT),
    OrderStatus.SUBMITTING: (OrderStatus.PAID,),
    OrderStatus.SUBMITTED: (OrderStatus.SUBMITTING, OrderStatus.PAID),
    OrderStatus.CONFIRMED: (OrderStatus.SUBMITTED,),
    OrderStatus.FULFILLED: (OrderStatus.SUBMITTED, OrderStatus.CONFIRMED),
    OrderStatus.FULFILLMENT_FAILED: OrderStatus.NON_TERMINAL,
}


class OrderNotFound(LookupError):
    pass


def _now():
    return datetime.now(timezone.utc)


def as_utc(dt):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ──────────────────────────────────────────────
# Core transition primitive
# ──────────────────────────────────────────────

def transition(order_id, to_status, from_statuses=None, **fields):
    """Atomically move an order to `to_status` if it is in `from_statuses`.

    Extra keyword arguments are written in the same UPDATE.
    Returns True if the row changed, False if the guard didn't match.
    """
    if from_statuses is None:
        from_statuses = TRANSITIONS[to_status]

    values = dict(fields)
    values["status"] = to_status
    values["updated_at"] = _now()

    updated = (
        Order.query
        .filter(Order.id == order_id, Order.status.in_(from_statuses))
        .update(values, synchronize_session=False)
    )
    db.session.commit()

    if updated:
        logger.info(f"Order {order_id} -> {to_status}")
    else:
        current = db.session.get(Order, order_id)
        logger.info(
            f"Order {order_id}: transition to {to_status} skipped "
            f"(status={current.status if current else 'missing'})"
        )
    return bool(updated)


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def get_order(order_id):
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def get_order_items(order_id):
    return (
        OrderItem.query
        .filter_by(order_id=order_id)
        .order_by(OrderItem.created_at.asc())
        .all()
    )


def get_order_by_fulfillment_id(fulfillment_order_id):
    if not fulfillment_order_id:
        return None
    return Order.query.filter_by(fulfillment_order_id=str(fulfillment_order_id)).first()


def get_order_by_payment_intent(payment_intent_id):
    if not payment_intent_id:
        return None
    return Order.query.filter_by(payment_intent_id=payment_intent_id).first()


# ──────────────────────────────────────────────
# Checkout-side transitions
# ──────────────────────────────────────────────

def create_order(customer_email, items, shipping=None, currency="usd",
                 customer_name=None, customer_phone=None):
    """Create an order in `created` with its (immutable) items.

    `items` is a list of dicts: product_name, variant_name, quantity,
    unit_price, fulfillment_variant_id, and optional product_id/variant_id.
    """
    if not items:
        raise ValueError("An order needs at least one item")

    order = Order(
        customer_email=customer_email,
        customer_name=customer_name,
        customer_phone=customer_phone,
        currency=currency,
        status=OrderStatus.CREATED,
        **(shipping or {}),
    )
    db.session.add(order)
    db.session.flush()

    total = Decimal("0")
    for data in items:
        quantity = int(data["quantity"])
        if quantity < 1:
            raise ValueError("Item quantity must be at least 1")
        unit_price = Decimal(str(data["unit_price"]))
        line_price = unit_price * quantity
        total += line_price
        db.session.add(OrderItem(
            order_id=order.id,
            product_id=data.get("product_id"),
            variant_id=data.get("variant_id"),
            product_name=data["product_name"],
            variant_name=data.get("variant_name", ""),
            quantity=quantity,
            unit_price=unit_price,
            line_price=line_price,
            fulfillment_variant_id=(
                str(data["fulfillment_variant_id"])
                if data.get("fulfillment_variant_id") is not None else None
            ),
        ))

    order.total_amount = total
    db.session.commit()
    logger.info(f"Order {order.id} created ({len(items)} item(s), {total} {currency})")
    return order


def mark_awaiting_payment(order_id, payment_session_id):
    return transition(
        order_id, OrderStatus.AWAITING_PAYMENT, payment_session_id=payment_session_id
    )


def mark_paid(order_id, payment_session_id=None, payment_intent_id=None,
              shipping=None, customer=None):
    """created/awaiting_payment -> paid, storing payment + shipping details."""
    fields = {}
    if payment_session_id:
        fields["payment_session_id"] = payment_session_id
    if payment_intent_id:
        fields["payment_intent_id"] = payment_intent_id
    for source in (shipping, customer):
        if source:
            fields.update({k: v for k, v in source.items() if v})
    return transition(order_id, OrderStatus.PAID, **fields)


def mark_payment_failed(order_id, reason=None):
    return transition(order_id, OrderStatus.PAYMENT_FAILED, failure_reason=reason)


# ──────────────────────────────────────────────
# Fulfillment submission
# ──────────────────────────────────────────────

def claim_for_submission(order_id):
    """Compare-and-swap paid -> submitting.

    At most one caller wins, which guarantees at most one in-flight
    submission per order even when the webhook path and a worker run (or
    two worker runs) race.
    """
    return transition(
        order_id,
        OrderStatus.SUBMITTING,
        (OrderStatus.PAID,),
        submission_claimed_at=_now(),
    )


def release_claim(order_id):
    return transition(
        order_id,
        OrderStatus.PAID,
        (OrderStatus.SUBMITTING,),
        submission_claimed_at=None,
    )


def submit_order(order_id, client):
    """Submit a paid order to the fulfillment provider (one attempt).

    Shared by the payment webhook (synchronous first attempt) and the retry
    worker. Returns one of SUBMITTED, FAILED, DEFERRED, SKIPPED.
    """
    order = get_order(order_id)

    # Never submit twice: an existing external id means a previous attempt
    # got through. Heal a stranded paid/submitting row and stop.
    if order.fulfillment_order_id:
        if order.status in (OrderStatus.PAID, OrderStatus.SUBMITTING):
            transition(order_id, OrderStatus.SUBMITTED, submission_claimed_at=None)
        logger.info(
            f"Order {order_id} already has fulfillment order "
            f"{order.fulfillment_order_id}, skipping submission"
        )
        return SKIPPED

    if not claim_for_submission(order_id):
        return SKIPPED

    order = get_order(order_id)
    items = get_order_items(order_id)

    try:
        external_id = client.submit_fulfillment_order(order, items)
    except ProviderUnavailableError as e:
        # Breaker rejection: nothing was sent, so it isn't an attempt.
        release_claim(order_id)
        logger.warning(f"Order {order_id} submission deferred: {e}")
        return DEFERRED
    except ProviderError as e:
        release_claim(order_id)
        record_submission_failure(order_id, e)
        return FAILED
    except Exception as e:
        # Not a provider answer, so nothing suggests a retry would help.
        db.session.rollback()
        logger.error(f"Order {order_id} submission crashed: {e}", exc_info=True)
        release_claim(order_id)
        record_submission_failure(
            order_id,
            PermanentProviderError(
                f"Unexpected submission error: {e}",
                detail=repr(e),
            ),
        )
        return FAILED

    updated = (
        Order.query
        .filter(
            Order.id == order_id,
            Order.status == OrderStatus.SUBMITTING,
            Order.fulfillment_order_id.is_(None),
        )
        .update(
            {
                "status": OrderStatus.SUBMITTED,
                "fulfillment_order_id": external_id,
                "submission_claimed_at": None,
                "updated_at": _now(),
            },
            synchronize_session=False,
        )
    )
    db.session.commit()

    if not updated:
        # Claim was released underneath us (stale-claim recovery). The draft
        # exists at the provider; leave a trail for manual reconciliation.
        logger.error(
            f"Order {order_id}: fulfillment order {external_id} created but the "
            f"submission claim was lost; manual reconciliation needed"
        )
        _flag_for_review(order_id, f"Orphaned fulfillment order {external_id}")
        return FAILED

    logger.info(f"Order {order_id} submitted (fulfillment order {external_id})")

    if current_app.config.get("FULFILLMENT_AUTO_CONFIRM"):
        confirm_order(order_id, client)

    return SUBMITTED


def confirm_order(order_id, client):
    """Confirm the provider draft, then submitted -> confirmed.

    Returns True on success. A failed confirm leaves the order `submitted`
    so a later pass can try again.
    """
    order = get_order(order_id)
    if order.status != OrderStatus.SUBMITTED or not order.fulfillment_order_id:
        return False

    try:
        client.confirm_fulfillment_order(order.fulfillment_order_id)
    except ProviderError as e:
        logger.warning(
            f"Order {order_id}: confirm of fulfillment order "
            f"{order.fulfillment_order_id} failed: {e}"
        )
        return False

    return transition(order_id, OrderStatus.CONFIRMED)


def record_submission_failure(order_id, error):
    """Bump the retry count and append a SubmissionFailure row.

    Permanent errors, and failures that reach FULFILLMENT_MAX_RETRIES,
    flag the order for manual review. The order is never moved to a
    terminal state here: payment has been captured.
    """
    Order.query.filter(Order.id == order_id).update(
        {
            "submission_retry_count": Order.submission_retry_count + 1,
            "updated_at": _now(),
        },
        synchronize_session=False,
    )
    order = db.session.get(Order, order_id, populate_existing=True)
    retry_count = order.submission_retry_count
    # Monotonic per order, even across an operator reset of the retry count.
    last_attempt = (
        db.session.query(db.func.max(SubmissionFailure.attempt_number))
        .filter(SubmissionFailure.order_id == order_id)
        .scalar()
    ) or 0
    attempt = last_attempt + 1

    db.session.add(SubmissionFailure(
        order_id=order_id,
        attempt_number=attempt,
        error_message=str(error)[:2000],
        error_detail=getattr(error, "detail", None),
        retryable=getattr(error, "retryable", True),
    ))
    db.session.commit()

    logger.warning(f"Order {order_id} submission attempt {attempt} failed: {error}")

    max_retries = current_app.config.get("FULFILLMENT_MAX_RETRIES", 10)
    if not getattr(error, "retryable", True):
        _flag_for_review(order_id, f"Provider rejected the order: {error}")
    elif retry_count >= max_retries:
        _flag_for_review(order_id, f"Gave up after {retry_count} attempts. Last error: {error}")

    return attempt


def _flag_for_review(order_id, reason):
    """Stop automatic retries and alert an admin (once per order)."""
    updated = (
        Order.query
        .filter(Order.id == order_id, Order.requires_manual_review.is_(False))
        .update({"requires_manual_review": True}, synchronize_session=False)
    )
    db.session.commit()
    if not updated:
        return

    logger.error(f"Order {order_id} flagged for manual review: {reason}")

    from app.services.email_service import send_admin_alert

    order = db.session.get(Order, order_id)
    send_admin_alert(
        subject=f"Fulfillment needs attention - order {order_id}",
        lines=[
            "An order could not be submitted for fulfillment and has been",
            "taken out of automatic retry. Payment has already been captured.",
            "",
            f"Order:        {order_id}",
            f"Customer:     {order.customer_email or '-'}",
            f"Total:        {order.total_amount} {order.currency.upper()}",
            f"Attempts:     {order.submission_retry_count}",
            f"Reason:       {reason}",
            "",
            "Fix the order, then run: flask reset-fulfillment-retries " + order_id,
        ],
    )


# ──────────────────────────────────────────────
# Provider-driven transitions
# ──────────────────────────────────────────────

def mark_fulfilled(order, tracking_number=None, tracking_url=None, carrier=None):
    """submitted/confirmed -> fulfilled with tracking details.

    A repeat delivery finds the order already `fulfilled` and changes
    nothing, tracking fields included.
    """
    return transition(
        order.id,
        OrderStatus.FULFILLED,
        tracking_number=tracking_number,
        tracking_url=tracking_url,
        tracking_carrier=carrier,
    )


def mark_fulfillment_failed(order, reason=None):
    return transition(order.id, OrderStatus.FULFILLMENT_FAILED, failure_reason=reason)


# ──────────────────────────────────────────────
# Worker support
# ──────────────────────────────────────────────

def release_stale_claims(max_age_seconds, now=None):
    """Return `submitting` orders whose claim outlived max_age to `paid`.

    A claim only outlives the request timeout when the process holding it
    died mid-call.
    """
    now = now or _now()
    cutoff = now - timedelta(seconds=max_age_seconds)
    stale = (
        Order.query
        .filter(Order.status == OrderStatus.SUBMITTING)
        .filter(Order.submission_claimed_at < cutoff)
        .all()
    )
    released = 0
    for order in stale:
        if release_claim(order.id):
            logger.warning(f"Released stale submission claim on order {order.id}")
            released += 1
    return released


def backoff_seconds(attempt, base, cap):
    """Exponential backoff after `attempt` failures: base, 2*base, 4*base..."""
    if attempt <= 0 or base <= 0:
        return 0
    return min(base * (2 ** (attempt - 1)), cap)


def get_retryable_orders(max_retries, backoff_base=0, backoff_cap=3600, now=None):
    """Paid, unsubmitted orders under the retry bound whose backoff elapsed."""
    now = now or _now()
    candidates = (
        Order.query
        .filter(Order.status == OrderStatus.PAID)
        .filter(Order.fulfillment_order_id.is_(None))
        .filter(Order.submission_retry_count < max_retries)
        .filter(Order.requires_manual_review.is_(False))
        .order_by(Order.created_at.asc())
        .all()
    )

    ready = []
    for order in candidates:
        last_failure = (
            SubmissionFailure.query
            .filter_by(order_id=order.id)
            .order_by(SubmissionFailure.created_at.desc())
            .first()
        )
        if last_failure:
            wait = backoff_seconds(order.submission_retry_count, backoff_base, backoff_cap)
            next_attempt = as_utc(last_failure.created_at) + timedelta(seconds=wait)
            if next_attempt > now:
                continue
        ready.append(order)
    return ready


def get_unconfirmed_orders():
    return (
        Order.query
        .filter(Order.status == OrderStatus.SUBMITTED)
        .filter(Order.fulfillment_order_id.isnot(None))
        .order_by(Order.created_at.asc())
        .all()
    )


def reset_for_retry(order_id):
    """Operator action after fixing an order: put it back in the retry pool."""
    updated = (
        Order.query
        .filter(Order.id == order_id, Order.status == OrderStatus.PAID)
        .update(
            {
                "requires_manual_review": False,
                "submission_retry_count": 0,
                "updated_at": _now(),
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    return bool(updated)
