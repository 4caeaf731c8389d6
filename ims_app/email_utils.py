import smtplib
from email.message import EmailMessage

import requests
from flask import current_app

RESEND_API_URL = "https://api.resend.com/emails"


class DeliveryError(Exception):
    """An outbound message was handed to a provider and rejected."""


def email_configured() -> bool:
    cfg = current_app.config
    return bool(cfg.get("RESEND_API_KEY") or cfg.get("MAIL_HOST"))


def send_email(subject: str, to_address: str, text_body: str, html_body: str = None) -> bool:
    """Send an email through the configured provider.

    Uses the Resend HTTP API when RESEND_API_KEY is set, otherwise the SMTP
    settings (MAIL_HOST, MAIL_PORT, MAIL_USER, MAIL_PASSWORD, MAIL_FROM,
    MAIL_USE_TLS, MAIL_USE_SSL). Returns False when no provider is
    configured and raises DeliveryError when the provider fails.
    """
    cfg = current_app.config
    if cfg.get("RESEND_API_KEY"):
        _send_via_resend(subject, to_address, text_body, html_body)
        return True
    if cfg.get("MAIL_HOST"):
        _send_via_smtp(subject, to_address, text_body, html_body)
        return True
    current_app.logger.warning("No email provider configured; skipping email send.")
    return False


def _send_via_resend(subject, to_address, text_body, html_body):
    cfg = current_app.config
    payload = {
        "from": cfg.get("RESEND_FROM_EMAIL") or "noreply@example.com",
        "to": [to_address],
        "subject": subject,
        "text": text_body,
    }
    if html_body:
        payload["html"] = html_body
    headers = {"Authorization": f"Bearer {cfg['RESEND_API_KEY']}"}
    try:
        resp = requests.post(RESEND_API_URL, json=payload, headers=headers, timeout=15)
    except requests.RequestException as e:
        current_app.logger.error(f"Failed to send email to {to_address}: {e}")
        raise DeliveryError(str(e)) from e
    if resp.status_code >= 400:
        try:
            detail = resp.json().get("message") or resp.text
        except ValueError:
            detail = resp.text
        current_app.logger.error(f"Email provider rejected message to {to_address}: {detail}")
        raise DeliveryError(detail or f"HTTP {resp.status_code}")


def _send_via_smtp(subject, to_address, text_body, html_body):
    cfg = current_app.config
    host = cfg.get("MAIL_HOST")
    port = int(cfg.get("MAIL_PORT", 587))
    user = cfg.get("MAIL_USER")
    password = cfg.get("MAIL_PASSWORD")
    mail_from = cfg.get("MAIL_FROM") or user or "noreply@example.com"
    use_tls = bool(cfg.get("MAIL_USE_TLS", True))
    use_ssl = bool(cfg.get("MAIL_USE_SSL", False))

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = mail_from
    msg["To"] = to_address
    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")

    try:
        if use_ssl:
            with smtplib.SMTP_SSL(host, port) as server:
                if user and password:
                    server.login(user, password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(host, port) as server:
                if use_tls:
                    server.starttls()
                if user and password:
                    server.login(user, password)
                server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        current_app.logger.error(f"Failed to send email to {to_address}: {e}")
        raise DeliveryError(str(e)) from e
