"""Razorpay gateway client. Constructed explicitly and handed to the payment service."""

import logging
import os
from typing import Optional

import razorpay
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError

from errors import InvalidSignature, PaymentError
from utils import to_paise

logger = logging.getLogger(__name__)

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
CURRENCY = "INR"

GATEWAY_ERRORS = (BadRequestError, GatewayError, ServerError)


class RazorpayGateway:
    def __init__(self, key_id: Optional[str] = None, key_secret: Optional[str] = None,
                 webhook_secret: Optional[str] = None):
        self.key_id = key_id or RAZORPAY_KEY_ID
        self.webhook_secret = webhook_secret or RAZORPAY_WEBHOOK_SECRET
        self.client = razorpay.Client(auth=(self.key_id, key_secret or RAZORPAY_KEY_SECRET))

    def create_order(self, amount: float, receipt: str, notes: dict) -> dict:
        try:
            return self.client.order.create(data={
                "amount": to_paise(amount),
                "currency": CURRENCY,
                "receipt": receipt,
                "notes": notes,
            })
        except GATEWAY_ERRORS as e:
            logger.error(f"Gateway order creation failed for {receipt}: {e}", exc_info=True)
            raise PaymentError(f"Failed to create payment order: {e}")

    def verify_payment_signature(self, razorpay_order_id: str, razorpay_payment_id: str,
                                 razorpay_signature: str) -> None:
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": razorpay_order_id,
                "razorpay_payment_id": razorpay_payment_id,
                "razorpay_signature": razorpay_signature,
            })
        except SignatureVerificationError:
            raise InvalidSignature("payment")

    def verify_webhook_signature(self, body: str, signature: str) -> None:
        if not self.webhook_secret:
            raise PaymentError("Webhook secret not configured")
        try:
            self.client.utility.verify_webhook_signature(body, signature, self.webhook_secret)
        except SignatureVerificationError:
            raise InvalidSignature("webhook")

    def refund(self, payment_id: str, amount: float, notes: dict) -> dict:
        try:
            return self.client.payment.refund(payment_id, {"amount": to_paise(amount), "notes": notes})
        except GATEWAY_ERRORS as e:
            logger.error(f"Gateway refund failed for payment {payment_id}: {e}", exc_info=True)
            raise PaymentError(f"Refund processing failed: {e}")
