"""
Customer e-mail notifications.

Messages are built during the request and handed to FastAPI background tasks,
so SMTP latency or failure never reaches the caller. When no SMTP host is
configured the message is logged and dropped.
"""

import logging
from email.message import EmailMessage
from html import escape
from typing import Optional

import aiosmtplib
from fastapi import BackgroundTasks

from config import Settings

logger = logging.getLogger(__name__)


async def deliver(settings: Settings, message: EmailMessage) -> None:
    try:
        await aiosmtplib.send(
            message,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_port == 465,
            timeout=30,
        )
        logger.info("Sent %r to %s", message["Subject"], message["To"])
    except Exception:
        logger.exception("Failed to send %r to %s", message["Subject"], message["To"])


def _money(value) -> str:
    return f"LKR {float(value or 0):.2f}"


def _items_table(order: dict) -> str:
    rows = "".join(
        f"<tr><td>{escape(it['title'])}</td><td>{it['quantity']}</td>"
        f"<td style=\"text-align:right\">{_money(it.get('line_total', it['price'] * it['quantity']))}</td></tr>"
        for it in order.get("items", [])
    )
    return f"<table>{rows}</table>"


class Notifier:
    def __init__(self, settings: Settings, tasks: Optional[BackgroundTasks] = None):
        self.settings = settings
        self.tasks = tasks

    def send(self, to: Optional[str], subject: str, text: str, html: str) -> bool:
        if not to:
            logger.warning("No recipient for %r; skipping", subject)
            return False
        if not self.settings.mail_enabled:
            logger.info("Mail disabled; not sending %r to %s", subject, to)
            return False
        message = EmailMessage()
        message["From"] = self.settings.mail_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        message.add_alternative(html, subtype="html")
        if self.tasks is None:
            logger.warning("No task queue available; dropping %r", subject)
            return False
        self.tasks.add_task(deliver, self.settings, message)
        return True

    def order_placed(self, order: dict, recipient: dict) -> bool:
        name = recipient.get("full_name") or order.get("contact_name") or "Customer"
        number = order.get("order_number") or str(order.get("_id"))
        delivery_type = order["delivery_type"]
        if order.get("payment_method") == "CARD":
            status_line = "Payment received"
        else:
            status_line = "Cash payment on " + ("delivery" if delivery_type == "DELIVERY" else "pickup")
        subject = f"Your order {number} is confirmed ({delivery_type.lower()})"
        text = (
            f"Hi {name},\n\nYour order {number} has been placed.\n"
            f"{status_line}.\nTotal: {_money(order['total'])}\n\n"
            f"Track it at {self.settings.frontend_url}/my-orders\n"
        )
        html = (
            f"<p>Hi {escape(name)},</p><p>Your order <strong>{escape(number)}</strong> has been placed.</p>"
            f"<p>{status_line} &middot; {delivery_type} &middot; {order.get('payment_method')}</p>"
            f"{_items_table(order)}"
            f"<p>Subtotal {_money(order['subtotal'])}<br>Delivery {_money(order['delivery_fee'])}"
            f"<br><strong>Total {_money(order['total'])}</strong></p>"
        )
        return self.send(order.get("contact_email") or recipient.get("email"), subject, text, html)

    def order_cancelled(self, order: dict, recipient: dict) -> bool:
        name = recipient.get("full_name") or order.get("contact_name") or "Customer"
        number = order.get("order_number") or str(order.get("_id"))
        subject = f"Your order {number} has been cancelled"
        text = (
            f"Hi {name},\n\nYour order {number} ({_money(order['total'])}) has been cancelled.\n"
            "If you paid by card, the refund will follow within a few business days.\n"
        )
        html = (
            f"<p>Hi {escape(name)},</p><p>Your order <strong>{escape(number)}</strong> "
            f"({_money(order['total'])}) has been cancelled.</p>{_items_table(order)}"
        )
        return self.send(order.get("contact_email") or recipient.get("email"), subject, text, html)
