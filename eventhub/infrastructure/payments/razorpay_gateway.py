import logging

import razorpay
import requests

from eventhub import config
from eventhub.domain.exceptions import PaymentDeclinedError, PaymentGatewayError
from eventhub.infrastructure.payments.gateway import Authorization, Confirmation, Refund

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    razorpay.errors.ServerError,
    razorpay.errors.GatewayError,
    requests.RequestException,
)


def _notes(entity: dict) -> dict:
    # Razorpay returns an empty list instead of an empty object.
    notes = entity.get("notes") or {}
    return notes if isinstance(notes, dict) else {}


class RazorpayGateway:
    """
    Razorpay-backed adapter.

    `method_ref` is the Razorpay payment id produced by client-side
    checkout; the payment arrives here already authorized and is bound to
    the booking's idempotency key through its notes before capture.
    """

    def __init__(self, client: razorpay.Client):
        self.client = client

    @classmethod
    def from_env(cls) -> "RazorpayGateway":
        key_id = config.RAZORPAY_KEY_ID
        key_secret = config.RAZORPAY_KEY_SECRET
        if not key_id or not key_secret:
            raise PaymentGatewayError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        return cls(razorpay.Client(auth=(key_id, key_secret)))

    def authorize(
        self,
        amount_minor: int,
        currency: str,
        method_ref: str,
        idempotency_key: str,
    ) -> Authorization:
        payment = self._call(self.client.payment.fetch, method_ref)

        status = payment.get("status")
        if status not in {"authorized", "captured"}:
            raise PaymentDeclinedError(f"Payment {method_ref} is {status}, not authorized")
        if payment.get("amount") != amount_minor:
            raise PaymentDeclinedError("Authorized amount does not match the booking total")
        if str(payment.get("currency", "")).upper() != currency.upper():
            raise PaymentDeclinedError("Authorized currency does not match the booking currency")

        bound_key = _notes(payment).get("idempotency_key")
        if bound_key and bound_key != idempotency_key:
            raise PaymentDeclinedError("Payment is already bound to another booking")
        if not bound_key:
            notes = dict(_notes(payment), idempotency_key=idempotency_key)
            self._call(self.client.payment.edit, method_ref, {"notes": notes})

        logger.info(
            "Razorpay payment authorized. payment_id=%s idempotency_key=%s",
            method_ref,
            idempotency_key,
        )
        return Authorization(auth_id=method_ref, status=status)

    def confirm(self, auth_id: str, idempotency_key: str) -> Confirmation:
        payment = self._call(self.client.payment.fetch, auth_id)
        if _notes(payment).get("idempotency_key") not in {None, idempotency_key}:
            raise PaymentDeclinedError("Payment is bound to another booking")

        if payment.get("status") == "captured":
            return Confirmation(status="captured", gateway_txn_id=payment["id"])

        captured = self._call(
            self.client.payment.capture,
            auth_id,
            payment["amount"],
            {"currency": payment["currency"]},
        )
        if captured.get("status") != "captured":
            raise PaymentDeclinedError(f"Capture of {auth_id} ended as {captured.get('status')}")
        return Confirmation(status="captured", gateway_txn_id=captured["id"])

    def refund(
        self,
        gateway_txn_id: str,
        amount_minor: int,
        reason: str,
        idempotency_key: str,
    ) -> Refund:
        existing = self._call(self.client.payment.fetch_multiple_refund, gateway_txn_id)
        for item in existing.get("items", []):
            if _notes(item).get("idempotency_key") == idempotency_key:
                logger.info(
                    "Razorpay refund already issued. payment_id=%s refund_id=%s",
                    gateway_txn_id,
                    item["id"],
                )
                return Refund(refund_id=item["id"], status=item.get("status", "processed"))

        refund = self._call(
            self.client.payment.refund,
            gateway_txn_id,
            amount_minor,
            {
                "receipt": idempotency_key[:40],
                "notes": {"idempotency_key": idempotency_key, "reason": reason[:255]},
            },
        )
        return Refund(refund_id=refund["id"], status=refund.get("status", "pending"))

    def _call(self, fn, *args):
        try:
            return fn(*args)
        except razorpay.errors.BadRequestError as exc:
            raise PaymentDeclinedError(str(exc)) from exc
        except _TRANSIENT_ERRORS as exc:
            logger.warning(
                "Razorpay call failed. operation=%s error=%s",
                getattr(fn, "__name__", fn),
                exc,
            )
            raise PaymentGatewayError(str(exc)) from exc
