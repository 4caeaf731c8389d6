import requests
from flask import current_app
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from .email_utils import DeliveryError


def sms_configured() -> bool:
    cfg = current_app.config
    return bool(cfg.get("TWILIO_ACCOUNT_SID") and cfg.get("TWILIO_AUTH_TOKEN"))


def send_sms(to_phone: str, body: str) -> bool:
    """Send a single SMS via Twilio.

    Returns False when Twilio is not configured; raises DeliveryError when
    the provider rejects the message.
    """
    cfg = current_app.config
    if not sms_configured():
        current_app.logger.warning("Twilio not configured; skipping SMS send.")
        return False
    try:
        client = Client(cfg["TWILIO_ACCOUNT_SID"], cfg["TWILIO_AUTH_TOKEN"])
        client.messages.create(from_=cfg.get("TWILIO_PHONE_NUMBER"), to=to_phone, body=body)
    except (TwilioException, requests.RequestException) as e:
        current_app.logger.error(f"Failed to send SMS to {to_phone}: {e}")
        raise DeliveryError(str(e)) from e
    return True


def whatsapp_configured() -> bool:
    return sms_configured() and bool(current_app.config.get("TWILIO_WHATSAPP_NUMBER"))


def send_whatsapp(to_phone: str, body: str) -> bool:
    """Send a WhatsApp message through Twilio's WhatsApp channel (E.164 numbers)."""
    cfg = current_app.config
    if not whatsapp_configured():
        current_app.logger.warning("Twilio WhatsApp sender not configured; skipping WhatsApp send.")
        return False
    try:
        client = Client(cfg["TWILIO_ACCOUNT_SID"], cfg["TWILIO_AUTH_TOKEN"])
        client.messages.create(
            from_=f"whatsapp:{cfg['TWILIO_WHATSAPP_NUMBER']}",
            to=f"whatsapp:{to_phone}",
            body=body,
        )
    except (TwilioException, requests.RequestException) as e:
        current_app.logger.error(f"Failed to send WhatsApp message to {to_phone}: {e}")
        raise DeliveryError(str(e)) from e
    return True
