"""
Online payment via Razorpay.

The storefront opens a gateway order (``/payment/create-order``), the shopper
pays on the gateway's checkout, and the storefront posts the gateway's
callback fields to ``/payment/verify-payment``. The callback signature is
checked before anything is written. Only a verified payment turns the
cart into a paid order.
"""
import hashlib
import hmac
import logging
import time
from typing import Optional

import httpx
from fastapi import APIRouter, Depends

from addresses import validate_address
from auth import Context, get_context
from config import Settings, get_settings
from database import now_utc, serialize_doc
from errors import GatewayError, GatewayTimeout, InvalidState, SecurityError, ValidationError
from orders import OrderFinalizer
from schemas import CreatePaymentBody, GatewayPayment, VerifyPaymentBody

logger = logging.getLogger(__name__)

GATEWAY_METHODS = {"upi": "UPI", "card": "Card"}
SETTLED_STATUSES = ("captured", "authorized")


def expected_signature(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    body = f"{gateway_order_id}|{gateway_payment_id}"
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def verify_signature(gateway_order_id: str, gateway_payment_id: str, signature: str, secret: str) -> bool:
    if not secret:
        raise GatewayError("Payment gateway is not configured")
    expected = expected_signature(gateway_order_id, gateway_payment_id, secret)
    return hmac.compare_digest(expected, signature or "")


class RazorpayGateway:
    """Thin client for the two gateway calls the checkout needs."""

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.settings.razorpay_api_url,
            auth=(self.settings.razorpay_key_id, self.settings.razorpay_key_secret),
            timeout=self.settings.gateway_timeout,
            transport=self.transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException:
            logger.warning("Payment gateway timed out on %s %s", method, path)
            raise GatewayTimeout("Payment gateway timed out, please retry")
        except httpx.HTTPStatusError as e:
            logger.error("Payment gateway answered %s on %s %s", e.response.status_code, method, path)
            raise GatewayError("Payment gateway rejected the request")
        except httpx.HTTPError as e:
            logger.error("Payment gateway unreachable on %s %s: %s", method, path, e)
            raise GatewayError("Payment gateway unavailable")

    def create_order(self, amount: float, currency: str, receipt: str) -> dict:
        payload = {"amount": int(round(amount * 100)), "currency": currency, "receipt": receipt}
        return self._request("POST", "/v1/orders", json=payload)

    def fetch_payment(self, payment_id: str) -> dict:
        return self._request("GET", f"/v1/payments/{payment_id}")


def get_gateway(settings: Settings = Depends(get_settings)) -> RazorpayGateway:
    return RazorpayGateway(settings)


def create_payment_intent(gateway: RazorpayGateway, settings: Settings, user_id: str,
                          amount: float, currency: Optional[str] = None) -> dict:
    if amount is None or amount <= 0:
        raise ValidationError("Invalid amount")
    receipt = f"receipt_{user_id}_{int(time.time() * 1000)}"
    order = gateway.create_order(amount, currency or settings.currency, receipt)
    return {**order, "key_id": settings.razorpay_key_id}


class PaymentVerifier:
    def __init__(self, ctx: Context, gateway: RazorpayGateway):
        self.ctx = ctx
        self.gateway = gateway

    def verify(self, body: VerifyPaymentBody) -> dict:
        settings = self.ctx.settings
        if not verify_signature(
            body.razorpay_order_id,
            body.razorpay_payment_id,
            body.razorpay_signature,
            settings.razorpay_key_secret,
        ):
            logger.warning(
                "Payment signature mismatch for gateway order %s (user %s)",
                body.razorpay_order_id,
                self.ctx.user.id,
            )
            raise SecurityError("Invalid payment signature")

        finalizer = OrderFinalizer(self.ctx.db, settings, self.ctx.user.id)
        existing = finalizer.find_paid_order(body.razorpay_payment_id)
        if existing is not None:
            logger.info("Payment %s already settled as order %s", body.razorpay_payment_id, existing["customOrderId"])
            return existing

        details = body.orderDetails
        fields = details.shippingAddress.model_dump() if details.shippingAddress else None
        address = validate_address(fields, settings.default_country)

        captured = self.lookup_payment(body.razorpay_payment_id)
        captured_amount = None
        if captured is not None:
            self.check_captured(captured, body.razorpay_order_id)
            captured_amount = captured.get("amount")

        payment = GatewayPayment(
            gatewayOrderId=body.razorpay_order_id,
            gatewayPaymentId=body.razorpay_payment_id,
            paidAt=now_utc(),
        )
        order = finalizer.place_paid_order(
            payment,
            payment_method(captured),
            address,
            details.totalPrice,
            captured_amount=captured_amount,
        )
        logger.info("Online order %s placed for user %s", order["customOrderId"], self.ctx.user.id)
        return order

    def lookup_payment(self, payment_id: str) -> Optional[dict]:
        """The gateway's record of the payment, or None when the gateway can't be asked."""
        try:
            return self.gateway.fetch_payment(payment_id)
        except GatewayError:
            logger.warning("Could not fetch payment %s from gateway; recording it as Card", payment_id)
            return None

    def check_captured(self, captured: dict, gateway_order_id: str) -> None:
        if captured.get("order_id") != gateway_order_id:
            logger.warning(
                "Payment %s belongs to gateway order %s, not %s",
                captured.get("id"),
                captured.get("order_id"),
                gateway_order_id,
            )
            raise SecurityError("Payment does not belong to this order")
        if captured.get("status") not in SETTLED_STATUSES:
            raise InvalidState(f"Payment is {captured.get('status') or 'unknown'}, not captured")
        if not isinstance(captured.get("amount"), int):
            raise SecurityError("Gateway did not report the paid amount")


def payment_method(captured: Optional[dict]) -> str:
    if captured is None:
        return "Card"
    return GATEWAY_METHODS.get(str(captured.get("method", "")).lower(), "Card")


# ----------------------- Routes -----------------------
router = APIRouter(prefix="/payment", tags=["payments"])


@router.post("/create-order")
def create_order(
    body: CreatePaymentBody,
    ctx: Context = Depends(get_context),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    order = create_payment_intent(gateway, ctx.settings, ctx.user.id, body.amount, body.currency)
    return {"success": True, "order": order, "user": {"id": ctx.user.id, "email": ctx.user.email}}


@router.post("/verify-payment", status_code=201)
def verify_payment(
    body: VerifyPaymentBody,
    ctx: Context = Depends(get_context),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    order = PaymentVerifier(ctx, gateway).verify(body)
    return {
        "success": True,
        "message": "Online order placed successfully",
        "orderId": str(order["_id"]),
        "customOrderId": order["customOrderId"],
        "order": serialize_doc(order),
    }
