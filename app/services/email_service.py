"""
Plain-text notification emails.

Uses SMTP (Google Workspace by default) for two audiences:

- Admin alerts to ADMIN_EMAIL: orders pulled out of automatic fulfillment
  retry, orders the fulfillment provider reports as failed, payments that
  failed, were canceled or whose checkout expired.
- Customer notifications: order confirmation once payment lands, and
  shipping details once the package ships.

Every send is best effort. Messages go out from a background thread and a
failure to send is logged, never raised into the order flow.

Usage:
    from app.services.email_service import send_admin_alert, send_email

    send_admin_alert(
        subject="Fulfillment needs attention",
        lines=["Order: 123", "Reason: ..."],
    )
    send_email(to="jane@example.com", subject="Your order", lines=[...])
"""

import logging
import smtplib
import threading
from email.mime.text import MIMEText

from flask import current_app

logger = logging.getLogger(__name__)


def _send_smtp(app, msg):
    """Send an email via SMTP. Runs in a background thread."""
    with app.app_context():
        host = app.config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
        port = app.config.get("MAIL_SMTP_PORT", 587)
        username = app.config.get("MAIL_USERNAME")
        password = app.config.get("MAIL_PASSWORD")

        if not username or not password:
            logger.warning(
                f"Email not sent (MAIL_USERNAME/MAIL_PASSWORD not configured): "
                f"{msg['Subject']}"
            )
            return

        try:
            with smtplib.SMTP(host, port, timeout=30) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(username, password)
                server.send_message(msg)
            logger.info(f"Email sent to {msg['To']}: {msg['Subject']}")
        except Exception as e:
            logger.error(f"Failed to send email to {msg['To']}: {e}")


def build_message(app, to, subject, lines, reply_to=None):
    from_name = app.config.get("MAIL_FROM_NAME", "Store Alerts")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME") or ""

    msg = MIMEText("\n".join(lines), "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to
    if reply_to:
        msg["Reply-To"] = reply_to
    return msg


def _dispatch(app, msg):
    thread = threading.Thread(target=_send_smtp, args=(app, msg))
    thread.daemon = True
    thread.start()
    return thread


def send_email(to, subject, lines, reply_to=None):
    """
    Email a plain-text message to `to` without blocking the caller.

    Returns the background thread, or None when there is no recipient.
    """
    if not to:
        logger.info(f"No recipient address, email not sent: {subject}")
        return None

    app = current_app._get_current_object()
    reply_to = reply_to or app.config.get("MAIL_REPLY_TO")
    return _dispatch(app, build_message(app, to, subject, lines, reply_to=reply_to))


def send_admin_alert(subject, lines):
    """
    Email a plain-text alert to ADMIN_EMAIL without blocking the caller.

    Returns the background thread, or None when no admin address is set.
    """
    app = current_app._get_current_object()

    if not app.config.get("ADMIN_EMAIL"):
        logger.warning(f"No ADMIN_EMAIL configured, alert not sent: {subject}")
        return None

    return _dispatch(app, build_message(app, app.config["ADMIN_EMAIL"], subject, lines))
