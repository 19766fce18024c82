import logging
import threading
from dataclasses import dataclass, field
from uuid import uuid4

from eventhub.domain.exceptions import PaymentDeclinedError, PaymentGatewayError
from eventhub.infrastructure.payments.gateway import Authorization, Confirmation, Refund

logger = logging.getLogger(__name__)

DECLINED_METHOD = "pm_card_declined"
UNAVAILABLE_METHOD = "pm_gateway_error"


@dataclass
class _Charge:
    auth_id: str
    idempotency_key: str
    amount_minor: int
    currency: str
    method_ref: str
    captured: bool = False
    refunds: dict[str, Refund] = field(default_factory=dict)


class SandboxPaymentGateway:
    """
    In-process gateway for local runs and tests.

    Deduplicates on the idempotency key the way a hosted processor does:
    repeating authorize/confirm/refund with the same key returns the
    original result instead of charging again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._charges_by_key: dict[str, _Charge] = {}
        self._charges_by_auth: dict[str, _Charge] = {}
        self.calls: list[tuple[str, str]] = []

    def authorize(
        self,
        amount_minor: int,
        currency: str,
        method_ref: str,
        idempotency_key: str,
    ) -> Authorization:
        with self._lock:
            self.calls.append(("authorize", idempotency_key))
            if method_ref == UNAVAILABLE_METHOD:
                raise PaymentGatewayError("Sandbox gateway unavailable")
            if method_ref == DECLINED_METHOD:
                raise PaymentDeclinedError("Card declined")

            charge = self._charges_by_key.get(idempotency_key)
            if charge is None:
                charge = _Charge(
                    auth_id=f"auth_{uuid4().hex[:16]}",
                    idempotency_key=idempotency_key,
                    amount_minor=amount_minor,
                    currency=currency,
                    method_ref=method_ref,
                )
                self._charges_by_key[idempotency_key] = charge
                self._charges_by_auth[charge.auth_id] = charge
            return Authorization(auth_id=charge.auth_id, status="authorized")

    def confirm(self, auth_id: str, idempotency_key: str) -> Confirmation:
        with self._lock:
            self.calls.append(("confirm", idempotency_key))
            charge = self._charges_by_auth.get(auth_id)
            if charge is None or charge.idempotency_key != idempotency_key:
                raise PaymentDeclinedError(f"Unknown authorization {auth_id}")
            charge.captured = True
            return Confirmation(status="captured", gateway_txn_id=f"txn_{charge.auth_id[5:]}")

    def refund(
        self,
        gateway_txn_id: str,
        amount_minor: int,
        reason: str,
        idempotency_key: str,
    ) -> Refund:
        with self._lock:
            self.calls.append(("refund", idempotency_key))
            charge = self._charges_by_auth.get(f"auth_{gateway_txn_id[4:]}")
            if charge is None or not charge.captured:
                raise PaymentDeclinedError(f"Nothing captured for {gateway_txn_id}")
            if amount_minor > charge.amount_minor:
                raise PaymentDeclinedError("Refund exceeds captured amount")
            if idempotency_key not in charge.refunds:
                logger.info(
                    "Sandbox refund issued. txn=%s amount_minor=%s reason=%s",
                    gateway_txn_id,
                    amount_minor,
                    reason,
                )
                charge.refunds[idempotency_key] = Refund(
                    refund_id=f"rfnd_{uuid4().hex[:16]}",
                    status="processed",
                )
            return charge.refunds[idempotency_key]

    def refund_count(self, gateway_txn_id: str) -> int:
        with self._lock:
            charge = self._charges_by_auth.get(f"auth_{gateway_txn_id[4:]}")
            return len(charge.refunds) if charge else 0

    def captured_count(self) -> int:
        with self._lock:
            return sum(1 for charge in self._charges_by_key.values() if charge.captured)
