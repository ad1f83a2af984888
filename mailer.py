import logging
import os
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from html import escape
from urllib.parse import quote

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST", "").strip()
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "").strip()
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "") or os.getenv("SMTP_PASS", "")
SMTP_FROM = os.getenv("SMTP_FROM", "noreply@pleasurezone.ug").strip()
SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "PleasureZone")
SMTP_USE_SSL = os.getenv("SMTP_USE_SSL", "0") == "1"
SMTP_TIMEOUT = float(os.getenv("SMTP_TIMEOUT", "10"))
BASE_URL = (os.getenv("BASE_URL") or os.getenv("FRONTEND_URL") or "http://localhost:3000").rstrip("/")
STORE_NAME = os.getenv("STORE_NAME", "Pleasure Zone Uganda")

DISCREET_FOOTER = "Discreet billing and shipping guaranteed."


def send_email(to_email: str, subject: str, text_body: str, html_body: str = None) -> bool:
    if not to_email:
        return False
    if not SMTP_HOST:
        logger.info("SMTP not configured; skipped email '%s' to %s", subject, to_email)
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = formataddr((SMTP_FROM_NAME, SMTP_FROM))
    msg["To"] = to_email
    msg.attach(MIMEText(text_body or "", "plain", "utf-8"))
    if html_body:
        msg.attach(MIMEText(html_body, "html", "utf-8"))

    try:
        if SMTP_USE_SSL:
            server = smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT)
        else:
            server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT)
        with server:
            if not SMTP_USE_SSL:
                server.starttls()
            if SMTP_USER:
                server.login(SMTP_USER, SMTP_PASSWORD)
            server.send_message(msg)
        logger.info("Email '%s' sent to %s", subject, to_email)
        return True
    except smtplib.SMTPAuthenticationError:
        logger.error("SMTP authentication failed for %s", SMTP_USER)
        return False
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Email '%s' to %s failed: %s", subject, to_email, exc)
        return False


def format_money(amount, currency: str = "UGX") -> str:
    try:
        value = float(amount or 0)
    except (TypeError, ValueError):
        value = 0.0
    if value.is_integer():
        return f"{currency} {value:,.0f}"
    return f"{currency} {value:,.2f}"


def _layout(title: str, body_html: str, footer_html: str = "") -> str:
    year = datetime.now(timezone.utc).year
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{escape(title)}</title>
</head>
<body style="font-family: Arial, sans-serif; background: #f5f5f7; margin: 0; padding: 0;">
  <div style="max-width: 600px; margin: 0 auto; background: #ffffff;">
    <div style="background: #ec4899; color: #ffffff; padding: 24px; text-align: center;">
      <h1 style="margin: 0; font-size: 22px;">PleasureZone</h1>
    </div>
    <div style="padding: 32px 28px; color: #1d1d1f; line-height: 1.6;">
      {body_html}
    </div>
    <div style="padding: 24px; text-align: center; color: #86868b; font-size: 12px; background: #f5f5f7;">
      {footer_html}
      <p>{DISCREET_FOOTER}</p>
      <p>&copy; {year} {escape(STORE_NAME)}. All rights reserved.</p>
    </div>
  </div>
</body>
</html>"""


def _button(href: str, label: str) -> str:
    return (
        f'<p style="text-align: center; padding: 16px 0;">'
        f'<a href="{escape(href)}" style="display: inline-block; background: #ec4899; color: #ffffff; '
        f'text-decoration: none; padding: 12px 36px; border-radius: 30px;">{escape(label)}</a></p>'
    )


def build_abandoned_cart_email(items, cart_value, currency: str, reminder: int):
    currency = currency or "UGX"
    if reminder == 1:
        subject = "You left something behind!"
        heading = "Your cart misses you!"
        intro = "You left some amazing items in your cart. Complete your order now before they sell out!"
    else:
        subject = "Last chance! Your cart expires soon"
        heading = "Last chance to complete your order"
        intro = (
            "Your cart items are reserved but won't be for long. "
            "Complete your purchase now to avoid disappointment."
        )
    cart_url = f"{BASE_URL}/cart"

    rows = []
    text_lines = [heading, "", intro, ""]
    for item in items or []:
        name = str(item.get("productName") or item.get("name") or "Item")
        qty = int(item.get("quantity") or 0)
        price = format_money(item.get("price"), currency)
        rows.append(
            '<div style="padding: 12px 0; border-bottom: 1px solid #e5e5e5;">'
            f'<div style="font-weight: 600;">{escape(name)}</div>'
            f'<div style="color: #86868b;">Qty: {qty} &times; {escape(price)}</div>'
            "</div>"
        )
        text_lines.append(f"- {name}: Qty {qty} x {price}")

    total = format_money(cart_value, currency)
    body = (
        f"<h2>{escape(heading)}</h2><p>{escape(intro)}</p>"
        f"<div>{''.join(rows)}</div>"
        f'<p style="text-align: right; font-size: 18px; font-weight: 600;">Total: {escape(total)}</p>'
        f"{_button(cart_url, 'Complete Your Order')}"
    )
    if reminder != 1:
        body += (
            '<p style="text-align: center; color: #f5a623; font-weight: 600;">'
            "Your cart expires in 24 hours</p>"
        )
    text_lines += ["", f"Total: {total}", f"Complete your order: {cart_url}"]
    if reminder != 1:
        text_lines.append("Your cart expires in 24 hours.")
    footer = "<p>You're receiving this because you have items in your PleasureZone cart.</p>"
    return subject, "\n".join(text_lines), _layout(subject, body, footer)


def build_email_verification(user_name: str, verify_url: str):
    subject = f"Verify Your Email - {STORE_NAME}"
    name = user_name or "there"
    text_body = (
        f"Hi {name},\n\nPlease verify your email address by opening the link below.\n"
        f"{verify_url}\n\nThis link expires in 24 hours."
    )
    body = (
        f"<h2>Hi {escape(name)},</h2>"
        "<p>Please verify your email address to finish setting up your account.</p>"
        f"{_button(verify_url, 'Verify Email')}"
        "<p>This link expires in 24 hours. If you didn't create an account, ignore this email.</p>"
    )
    return subject, text_body, _layout(subject, body)


def build_welcome_email(user_name: str):
    subject = f"Welcome to {STORE_NAME}!"
    name = user_name or "there"
    text_body = (
        f"Hi {name},\n\nWelcome to {STORE_NAME}. Every order ships in plain, unbranded packaging.\n"
        f"Start shopping: {BASE_URL}/products"
    )
    body = (
        f"<h2>Welcome, {escape(name)}!</h2>"
        "<p>Your account is ready. Every order ships in plain, unbranded packaging "
        "and your statement shows a neutral merchant name.</p>"
        f"{_button(BASE_URL + '/products', 'Start Shopping')}"
    )
    return subject, text_body, _layout(subject, body)


def build_password_reset_email(user_name: str, reset_url: str):
    subject = "Reset Your Password"
    name = user_name or "there"
    text_body = (
        f"Hi {name},\n\nUse the link below to reset your password. It expires in 1 hour.\n{reset_url}\n\n"
        "If you didn't request this, you can ignore this email."
    )
    body = (
        f"<h2>Hi {escape(name)},</h2>"
        "<p>We received a request to reset your password. The link expires in 1 hour.</p>"
        f"{_button(reset_url, 'Reset Password')}"
        "<p>If you didn't request this, you can ignore this email.</p>"
    )
    return subject, text_body, _layout(subject, body)


def _items_table(items, currency: str) -> str:
    rows = []
    for item in items or []:
        name = str(item.get("product_name") or item.get("name") or "Item")
        qty = int(item.get("quantity") or 0)
        line = format_money(float(item.get("price") or 0) * qty, currency)
        rows.append(
            f"<tr><td style=\"padding: 8px 0;\">{escape(name)} &times; {qty}</td>"
            f"<td style=\"padding: 8px 0; text-align: right;\">{escape(line)}</td></tr>"
        )
    return f'<table style="width: 100%; border-collapse: collapse;">{"".join(rows)}</table>'


def build_order_confirmation_email(order: dict, items):
    order_number = order.get("order_number", "")
    currency = order.get("currency") or "UGX"
    subject = f"Order Confirmed - #{order_number}"
    name = order.get("customer_name") or "there"
    total = format_money(order.get("total"), currency)
    track_url = f"{BASE_URL}/track-order?order={quote(str(order_number))}"
    text_lines = [f"Hi {name},", "", f"Thank you! Your order #{order_number} is confirmed.", ""]
    for item in items or []:
        text_lines.append(f"- {item.get('product_name')} x {item.get('quantity')}")
    text_lines += ["", f"Total: {total}", f"Track your order: {track_url}"]
    body = (
        f"<h2>Thank you, {escape(name)}!</h2>"
        f"<p>Your order <strong>#{escape(str(order_number))}</strong> is confirmed and will ship "
        "in discreet packaging.</p>"
        f"{_items_table(items, currency)}"
        f'<p style="text-align: right; font-weight: 600;">Total: {escape(total)}</p>'
        f"{_button(track_url, 'Track Order')}"
    )
    return subject, "\n".join(text_lines), _layout(subject, body)


def build_shipping_email(order: dict):
    order_number = order.get("order_number", "")
    subject = f"Your Order Has Shipped - #{order_number}"
    name = order.get("customer_name") or "there"
    tracking = order.get("tracking_number") or ""
    track_url = f"{BASE_URL}/track-order?order={quote(str(order_number))}"
    text_body = f"Hi {name},\n\nYour order #{order_number} is on its way in discreet packaging."
    if tracking:
        text_body += f"\nTracking number: {tracking}"
    text_body += f"\nTrack it here: {track_url}"
    body = (
        f"<h2>Good news, {escape(name)}!</h2>"
        f"<p>Your order <strong>#{escape(str(order_number))}</strong> has shipped in plain packaging.</p>"
    )
    if tracking:
        body += f"<p>Tracking number: <strong>{escape(tracking)}</strong></p>"
    body += _button(track_url, "Track Order")
    return subject, text_body, _layout(subject, body)


def build_newsletter_welcome_email(email: str):
    subject = "Welcome! Here's 10% Off Your First Order"
    unsubscribe_url = f"{BASE_URL}/newsletter/unsubscribe?email={quote(email or '')}"
    text_body = (
        f"Thanks for subscribing! Use code WELCOME10 for 10% off your first order. "
        f"Shop at {BASE_URL}/products"
    )
    body = (
        "<h2>You're in!</h2><p>Thanks for subscribing to our newsletter. Here's a welcome gift:</p>"
        '<div style="background: #fce7f3; border: 2px dashed #ec4899; padding: 20px; text-align: center;">'
        '<p>Use code</p><p style="font-size: 24px; font-weight: bold; color: #ec4899;">WELCOME10</p>'
        "<p>for 10% off your first order</p></div>"
        f"{_button(BASE_URL + '/products', 'Shop Now')}"
    )
    footer = f'<p><a href="{escape(unsubscribe_url)}" style="color: #666;">Unsubscribe</a></p>'
    return subject, text_body, _layout(subject, body, footer)


def build_gift_card_email(code: str, amount, currency: str, sender_name: str, recipient_name: str,
                          message: str = "", expires_at=None):
    subject = f"You've received a {STORE_NAME} gift card!"
    value = format_money(amount, currency)
    recipient = recipient_name or "there"
    sender = sender_name or "Someone special"
    expiry = expires_at.strftime("%d %b %Y") if expires_at else ""
    text_lines = [
        f"Hi {recipient},",
        "",
        f"{sender} sent you a {value} gift card.",
        f"Code: {code}",
    ]
    if message:
        text_lines += ["", f'"{message}"']
    if expiry:
        text_lines.append(f"Valid until {expiry}.")
    text_lines.append(f"Redeem at checkout: {BASE_URL}/products")
    body = (
        f"<h2>Hi {escape(recipient)},</h2>"
        f"<p>{escape(sender)} sent you a <strong>{escape(value)}</strong> gift card.</p>"
        f'<p style="font-size: 22px; font-weight: bold; letter-spacing: 2px; text-align: center;">{escape(code)}</p>'
    )
    if message:
        body += f'<blockquote style="color: #555;">{escape(message)}</blockquote>'
    if expiry:
        body += f"<p>Valid until {escape(expiry)}.</p>"
    body += _button(BASE_URL + "/products", "Shop Now")
    return subject, "\n".join(text_lines), _layout(subject, body)


def build_ticket_created_email(ticket_number: str, name: str, subject_line: str):
    subject = f"Support ticket {ticket_number} received"
    lookup_url = f"{BASE_URL}/support/ticket?number={quote(ticket_number)}"
    text_body = (
        f"Hi {name or 'there'},\n\nWe received your request \"{subject_line}\".\n"
        f"Ticket number: {ticket_number}\nWe'll respond within 24 hours.\n{lookup_url}"
    )
    body = (
        f"<h2>Hi {escape(name or 'there')},</h2>"
        f"<p>We received your request <strong>{escape(subject_line)}</strong>.</p>"
        f"<p>Ticket number: <strong>{escape(ticket_number)}</strong></p>"
        "<p>We'll respond within 24 hours.</p>"
        f"{_button(lookup_url, 'View Ticket')}"
    )
    return subject, text_body, _layout(subject, body)
