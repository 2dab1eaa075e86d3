"""
Payment gateway collaborator.

The booking flow only ever calls ``initialize`` and ``verify``. Card
payments go to Paystack and come back through a redirect plus a callback or
webhook; every other method type is settled offline and succeeds at once.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

import httpx

from booking_engine.models import PaymentMethodType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    ok: bool
    reference: Optional[str] = None
    redirect_url: Optional[str] = None
    error: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @property
    def requires_redirect(self) -> bool:
        return self.ok and bool(self.redirect_url)


@dataclass(frozen=True)
class VerificationResult:
    reference: str
    success: bool
    amount: Optional[Decimal] = None
    raw: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    @abstractmethod
    def initialize(
        self,
        amount: Decimal,
        method_type: PaymentMethodType,
        appointment_ref: str,
        email: Optional[str] = None,
    ) -> GatewayResult:
        """Start a payment. Never raises for gateway-side failures."""

    @abstractmethod
    def verify(self, reference: str) -> VerificationResult:
        pass


class OfflineGateway(PaymentGateway):
    """Cash, wallet, transfer and mobile money: settled outside the engine."""

    def initialize(self, amount, method_type, appointment_ref, email=None):
        return GatewayResult(ok=True, reference=f"{appointment_ref}-{method_type.value}")

    def verify(self, reference):
        return VerificationResult(reference=reference, success=True)


class PaystackGateway(PaymentGateway):
    def __init__(
        self,
        secret_key: Optional[str],
        base_url: str = "https://api.paystack.co",
        callback_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.callback_url = callback_url
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
        )

    def close(self):
        self._client.close()

    def initialize(self, amount, method_type, appointment_ref, email=None):
        if not self.secret_key:
            logger.error("PAYSTACK_SECRET_KEY is not configured")
            return GatewayResult(ok=False, error="Card payments are not configured")

        payload = {
            "amount": int((Decimal(amount) * 100).to_integral_value()),
            "email": email or f"{appointment_ref.lower()}@bookings.local",
            "reference": appointment_ref,
            "metadata": {"appointment_ref": appointment_ref},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url

        try:
            response = self._client.post("/transaction/initialize", json=payload)
        except httpx.TimeoutException:
            logger.warning(f"Paystack initialize timed out for {appointment_ref}")
            return GatewayResult(ok=False, error="Payment gateway timed out")
        except httpx.HTTPError as e:
            logger.error(f"Paystack initialize failed for {appointment_ref}: {e}")
            return GatewayResult(ok=False, error="Payment gateway unreachable")

        body = _json_or_empty(response)
        if response.status_code != 200 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.error(f"Paystack rejected {appointment_ref}: {message}")
            return GatewayResult(ok=False, error=message, raw=body)

        data = body.get("data") or {}
        return GatewayResult(
            ok=True,
            reference=data.get("reference", appointment_ref),
            redirect_url=data.get("authorization_url"),
            raw=body,
        )

    def verify(self, reference):
        try:
            response = self._client.get(f"/transaction/verify/{reference}")
        except httpx.HTTPError as e:
            logger.error(f"Paystack verify failed for {reference}: {e}")
            raise

        body = _json_or_empty(response)
        data = body.get("data") or {}
        success = response.status_code == 200 and data.get("status") == "success"
        return VerificationResult(
            reference=reference,
            success=success,
            amount=from_minor_units(data.get("amount")),
            raw=body,
        )


def from_minor_units(value) -> Optional[Decimal]:
    """Gateway amounts are integers in cents; ``None`` when not reported."""
    if value is None:
        return None
    return Decimal(str(value)) / 100


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class GatewayRegistry:
    """Chooses the gateway for a payment method type."""

    def __init__(self, card: PaymentGateway, offline: Optional[PaymentGateway] = None):
        offline = offline or OfflineGateway()
        self._gateways: Dict[PaymentMethodType, PaymentGateway] = {
            method: offline for method in PaymentMethodType
        }
        self._gateways[PaymentMethodType.CARD] = card

    def for_method(self, method_type) -> PaymentGateway:
        return self._gateways[PaymentMethodType(method_type)]

    @property
    def card(self) -> PaymentGateway:
        return self._gateways[PaymentMethodType.CARD]


def verify_webhook_signature(secret: Optional[str], payload: bytes, signature: Optional[str]) -> bool:
    """Paystack signs the raw body with HMAC-SHA512 of the secret key."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)
