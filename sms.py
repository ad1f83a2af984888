# sending an sms
import logging
import os

import africastalking

logger = logging.getLogger(__name__)

AFRICASTALKING_USERNAME = os.getenv("AFRICASTALKING_USERNAME", "")
AFRICASTALKING_API_KEY = os.getenv("AFRICASTALKING_API_KEY", "")
AFRICASTALKING_SENDER_ID = os.getenv("AFRICASTALKING_SENDER_ID", "PleasureZn")

if AFRICASTALKING_USERNAME and AFRICASTALKING_API_KEY:
    africastalking.initialize(
        username=AFRICASTALKING_USERNAME,
        api_key=AFRICASTALKING_API_KEY,
    )
    sms = africastalking.SMS
else:
    sms = None


def send_sms(phone, message) -> bool:
    if not phone:
        return False
    if sms is None:
        logger.info("SMS not configured: missing AFRICASTALKING_USERNAME or AFRICASTALKING_API_KEY.")
        return False
    try:
        response = sms.send(message, [phone], AFRICASTALKING_SENDER_ID or None)
        logger.info("SMS sent to %s: %s", phone, response)
        return True
    except Exception as error:
        logger.warning("SMS to %s failed: %s", phone, error)
        return False


def send_shipping_sms(phone, order_number, tracking_number=None) -> bool:
    message = f"PleasureZone: your order {order_number} has shipped in discreet packaging."
    if tracking_number:
        message += f" Tracking: {tracking_number}."
    return send_sms(phone, message)
