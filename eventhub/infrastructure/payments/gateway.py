"""Payment gateway capability set.

The booking flow only needs three remote operations: authorize a charge,
confirm (capture) it, and refund it. Every call carries an idempotency key
derived from the reservation or payment id, so a retried call with the same
key never has a second effect at the processor.
"""

from dataclasses import dataclass
from typing import Protocol

from eventhub import config


@dataclass(frozen=True)
class Authorization:
    auth_id: str
    status: str


@dataclass(frozen=True)
class Confirmation:
    status: str
    gateway_txn_id: str


@dataclass(frozen=True)
class Refund:
    refund_id: str
    status: str


class PaymentGateway(Protocol):
    def authorize(
        self,
        amount_minor: int,
        currency: str,
        method_ref: str,
        idempotency_key: str,
    ) -> Authorization:
        ...

    def confirm(self, auth_id: str, idempotency_key: str) -> Confirmation:
        ...

    def refund(
        self,
        gateway_txn_id: str,
        amount_minor: int,
        reason: str,
        idempotency_key: str,
    ) -> Refund:
        ...


def reservation_payment_key(reservation_id: str) -> str:
    return f"rsv_{reservation_id}"


def refund_key(payment_id: str) -> str:
    return f"refund_{payment_id}"


def build_gateway(name: str | None = None) -> PaymentGateway:
    selected = (name or config.PAYMENT_GATEWAY).lower()
    if selected == "razorpay":
        from eventhub.infrastructure.payments.razorpay_gateway import RazorpayGateway

        return RazorpayGateway.from_env()
    if selected == "sandbox":
        from eventhub.infrastructure.payments.sandbox_gateway import SandboxPaymentGateway

        return SandboxPaymentGateway()
    raise ValueError(f"Unknown payment gateway '{selected}'")
