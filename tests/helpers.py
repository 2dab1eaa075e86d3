"""Constants and test doubles shared by the test modules."""

from datetime import date, datetime, timedelta

from booking_engine.services.payment_gateway import (
    GatewayResult,
    PaymentGateway,
    VerificationResult,
)

TENANT_ID = 1
CUSTOMER_ID = 7
OTHER_CUSTOMER_ID = 8
WEBHOOK_SECRET = "sk_test_webhook_secret"

# Monday morning, before opening
NOW = datetime(2026, 11, 2, 8, 0)
TOMORROW = date(2026, 11, 3)
BOOKING_DAY = date(2026, 11, 5)


class FixedClock:
    """Injectable clock; tests move time with ``advance``."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCardGateway(PaymentGateway):
    """Stands in for the card processor; records what the engine asked for."""

    def __init__(self):
        self.fail_with = None
        self.raise_with = None
        self.verify_success = True
        self.verify_amount = None
        self.initialized = []

    def initialize(self, amount, method_type, appointment_ref, email=None):
        self.initialized.append((amount, method_type, appointment_ref))
        if self.raise_with is not None:
            raise self.raise_with
        if self.fail_with:
            return GatewayResult(ok=False, error=self.fail_with)
        return GatewayResult(
            ok=True,
            reference=appointment_ref,
            redirect_url=f"https://checkout.paystack.test/{appointment_ref}",
        )

    def verify(self, reference):
        return VerificationResult(
            reference=reference,
            success=self.verify_success,
            amount=self.verify_amount,
            raw={"data": {"status": "success" if self.verify_success else "failed"}},
        )
