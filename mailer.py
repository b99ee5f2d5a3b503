"""Outgoing email: SMTP transport and message templates."""
import asyncio
import base64
import logging
import smtplib
from decimal import Decimal
from email.message import EmailMessage
from html import escape
from typing import Any, Dict, Iterable, List, Optional

from config import SMTP_FROM, SMTP_HOST, SMTP_PASS, SMTP_PORT, SMTP_SECURE, SMTP_USER

logger = logging.getLogger(__name__)


class Mailer:
    """Sends email over SMTP without blocking the event loop."""

    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        secure: bool = SMTP_SECURE,
        username: Optional[str] = SMTP_USER,
        password: Optional[str] = SMTP_PASS,
        sender: str = SMTP_FROM,
    ):
        self.host = host
        self.port = port
        self.secure = secure
        self.username = username
        self.password = password
        self.sender = sender

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """
        Send one message.

        Args:
            to: Recipient address
            subject: Subject line
            html: HTML body
            text: Plain-text alternative
            attachments: Dicts with filename, content (base64) and content_type

        Raises:
            smtplib.SMTPException, OSError: If delivery fails
        """
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        for attachment in attachments or []:
            maintype, _, subtype = attachment["content_type"].partition("/")
            message.add_attachment(
                base64.b64decode(attachment["content"]),
                maintype=maintype,
                subtype=subtype,
                filename=attachment["filename"],
            )

        await asyncio.to_thread(self._deliver, message)

    def _deliver(self, message: EmailMessage) -> None:
        smtp_cls = smtplib.SMTP_SSL if self.secure else smtplib.SMTP
        with smtp_cls(self.host, self.port, timeout=30) as smtp:
            if not self.secure and self.port == 587:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(message)


def _money(value: Decimal) -> str:
    return f"${Decimal(value):.2f}"


def _layout(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"font-family: sans-serif\">"
        f"<h2>{escape(title)}</h2>{body}"
        "<p style=\"color: #888\">Storefront</p></body></html>"
    )


def order_verification_email(
    user_name: str,
    order_id: int,
    total: Decimal,
    lines: Iterable[Dict[str, Any]],
    verification_link: str,
    remember_link: str,
    expiry_minutes: int,
) -> Dict[str, str]:
    """Email asking the user to confirm payment for a pending order."""
    rows = "".join(
        f"<tr><td>{index}</td><td>{escape(line['name'])}</td><td>{line['quantity']}</td>"
        f"<td>{_money(line['unit_price'])}</td>"
        f"<td>{_money(line['unit_price'] * line['quantity'])}</td></tr>"
        for index, line in enumerate(lines, start=1)
    )
    body = (
        f"<p>Hi {escape(user_name)},</p>"
        f"<p>Please confirm the payment of <strong>{_money(total)}</strong> for order #{order_id} "
        f"within {expiry_minutes} minutes, otherwise it will be cancelled automatically.</p>"
        f"<table>{rows}</table>"
        f"<p><a href=\"{verification_link}\">Confirm payment</a></p>"
        f"<p><a href=\"{remember_link}\">Confirm and trust this device for future payments</a></p>"
    )
    return {
        "subject": "Verify your payment",
        "html": _layout(f"Order #{order_id}", body),
        "text": f"Please verify your payment for order #{order_id}. Link: {verification_link}",
    }


def order_completed_email(
    user_name: str,
    order_id: int,
    created_at: str,
    total: Decimal,
    balance: Decimal,
) -> Dict[str, str]:
    """Invoice email for a settled order."""
    body = (
        f"<p>Hi {escape(user_name)},</p>"
        f"<p>Your order #{order_id} placed on {created_at} has been completed.</p>"
        f"<p>Total charged: <strong>{_money(total)}</strong><br>"
        f"Remaining balance: {_money(balance)}</p>"
    )
    return {
        "subject": f"Thank you for your purchase - Order #{order_id}",
        "html": _layout("Invoice", body),
        "text": f"Thank you for your purchase. Your order #{order_id} has been completed. Total: {_money(total)}.",
    }


def products_out_of_stock_email(
    user_name: str,
    removed_products: List[Dict[str, Any]],
    products_url: str,
) -> Dict[str, str]:
    """Notice listing cart lines removed because their product sold out."""
    if len(removed_products) == 1:
        subject = f"Product out of stock: {removed_products[0]['product_name']}"
        intro = "The following product in your cart sold out and was removed automatically:"
    else:
        subject = f"{len(removed_products)} products out of stock in your cart"
        intro = "The following products in your cart sold out and were removed automatically:"

    items_html = "".join(
        f"<li>{escape(p['product_name'])} ({p['quantity']} units)</li>" for p in removed_products
    )
    items_text = "\n".join(f"  - {p['product_name']} ({p['quantity']} units)" for p in removed_products)
    body = (
        f"<p>Hi {escape(user_name)},</p><p>{intro}</p><ul>{items_html}</ul>"
        f"<p><a href=\"{products_url}\">Browse available products</a></p>"
    )
    return {
        "subject": subject,
        "html": _layout(subject, body),
        "text": f"Hi {user_name},\n\n{intro}\n\n{items_text}\n\nBrowse available products: {products_url}",
    }


def balance_updated_email(
    user_name: str,
    amount: Decimal,
    balance: Decimal,
    unsubscribe_link: str,
) -> Dict[str, str]:
    body = (
        f"<p>Hi {escape(user_name)},</p>"
        f"<p>{_money(amount)} was added to your account. New balance: <strong>{_money(balance)}</strong>.</p>"
        f"<p style=\"font-size: small\"><a href=\"{unsubscribe_link}\">Stop balance notifications</a></p>"
    )
    return {
        "subject": "Your balance was updated",
        "html": _layout("Balance updated", body),
        "text": f"{_money(amount)} was added to your account. New balance: {_money(balance)}. "
                f"Unsubscribe: {unsubscribe_link}",
    }


def email_verification_email(user_name: str, verification_link: str, expiry_hours: int) -> Dict[str, str]:
    """Link that confirms ownership of the address given at registration."""
    body = (
        f"<p>Hi {escape(user_name)},</p>"
        f"<p>Please confirm your email address. The link is valid for {expiry_hours} hours.</p>"
        f"<p><a href=\"{verification_link}\">Verify email</a></p>"
    )
    return {
        "subject": "Verify your email",
        "html": _layout("Welcome to Storefront", body),
        "text": f"Please verify your email address: {verification_link}",
    }


def login_code_email(user_name: str, code: str, expiry_minutes: int) -> Dict[str, str]:
    body = (
        f"<p>Hi {escape(user_name)},</p>"
        f"<p>Your login code is:</p>"
        f"<p style=\"font-size: 28px; letter-spacing: 6px\"><strong>{code}</strong></p>"
        f"<p>It expires in {expiry_minutes} minutes. If you did not try to sign in, change your password.</p>"
    )
    return {
        "subject": "Your login code",
        "html": _layout("Login code", body),
        "text": f"Your login code is {code}. It expires in {expiry_minutes} minutes.",
    }
