from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, TypedDict
import uuid
import hmac
import hashlib
import base64
import time

import orjson

from .errors import InvalidSignature, ProviderError, ValidationError
from .infra.logs import get_logger

log = get_logger("mockpay")

SIGNATURE_HEADER = "x-mockpay-signature"

# event kinds the reconciler understands
PAYMENT_SUCCEEDED = "payment.succeeded"
CHARGE_SUCCEEDED = "charge.succeeded"
PAYMENT_FAILED = "payment.failed"
CHARGE_REFUNDED = "charge.refunded"

# provider type -> kind
_KINDS = {
    "checkout.completed": PAYMENT_SUCCEEDED,
    "payment.succeeded": PAYMENT_SUCCEEDED,
    "charge.succeeded": CHARGE_SUCCEEDED,
    "payment.failed": PAYMENT_FAILED,
    "checkout.failed": PAYMENT_FAILED,
    "charge.refunded": CHARGE_REFUNDED,
}


def _opt_int(v) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        raise ValidationError(f"not an integer amount: {v!r}")


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    payment_intent_id: str
    redirect_url: str


@dataclass
class ProviderEvent:
    """A verified webhook, reduced to what reconciliation looks at."""
    event_id: str
    type: str
    kind: str
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    # metadata we attached at session creation
    order_id: Optional[str] = None
    amount_cents: Optional[int] = None
    # cumulative, as reported by the provider
    amount_refunded_cents: Optional[int] = None
    currency: Optional[str] = None
    created_at: Optional[float] = None


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_session(
        self, order_id: str, amount_cents: int, currency: str, meta: dict
    ) -> CreateSessionResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # one of the kinds above, or the raw type for events we don't handle
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment_session_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...

    @abstractmethod
    def parse_event(self, event: dict) -> ProviderEvent: ...

    # authoritative processing fee of a charge; None when not known yet
    @abstractmethod
    async def fetch_fee(self, charge_id: str) -> Optional[int]: ...

    # returns the provider's refund id; raises ProviderError on failure
    @abstractmethod
    async def refund(
        self,
        charge_id: str,
        amount_cents: int,
        reason: str = "",
        idempotency_key: Optional[str] = None,
    ) -> str: ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    Local stand-in for a card provider. Sessions live in the orders table
    (checkout_session_id); MockPay only remembers what a real provider would
    answer on its API: charge fees and refunds.
    """

    # charged by the simulated provider: 2.9% + 30
    FEE_BP = 290
    FEE_FLAT = 30

    def __init__(self, secret: str):
        self.secret = secret
        self._fees: Dict[str, int] = {}
        self._refunded: Dict[str, int] = {}
        self._charged: Dict[str, int] = {}
        self._refund_ids: Dict[str, str] = {}

    async def create_session(
        self, order_id: str, amount_cents: int, currency: str, meta: dict
    ) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        redirect_url = f"/mockpay/{psid}"
        return {
            "payment_session_id": psid,
            "payment_intent_id": f"pi_{uuid.uuid4().hex}",
            "redirect_url": redirect_url,
        }

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignature("Invalid signature")
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Invalid JSON")
        return event

    def event_kind(self, event: dict) -> str:
        t = event.get("type", "")
        return _KINDS.get(t, t)

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_session_id", ""),
                event.get("idempotency_key")
        )

    def parse_event(self, event: dict) -> ProviderEvent:
        _, idem = self.event_ids(event)
        if not idem:
            raise ValidationError("missing idempotency_key")
        return ProviderEvent(
            event_id=idem,
            type=event.get("type", ""),
            kind=self.event_kind(event),
            checkout_session_id=event.get("payment_session_id") or None,
            payment_intent_id=event.get("payment_intent_id") or None,
            charge_id=event.get("charge_id") or None,
            order_id=event.get("order_id") or None,
            amount_cents=_opt_int(event.get("amount")),
            amount_refunded_cents=_opt_int(event.get("amount_refunded")),
            currency=event.get("currency"),
            created_at=event.get("created_at"),
        )

    async def fetch_fee(self, charge_id: str) -> Optional[int]:
        return self._fees.get(charge_id)

    async def refund(
        self,
        charge_id: str,
        amount_cents: int,
        reason: str = "",
        idempotency_key: Optional[str] = None,
    ) -> str:
        if idempotency_key in self._refund_ids:
            # a retried request gets the first answer
            return self._refund_ids[idempotency_key]
        charged = self._charged.get(charge_id)
        if charged is None:
            raise ProviderError("unknown charge", charge_id=charge_id)
        done = self._refunded.get(charge_id, 0)
        if amount_cents <= 0 or done + amount_cents > charged:
            raise ProviderError("refund exceeds charge", charge_id=charge_id)
        self._refunded[charge_id] = done + amount_cents
        refund_id = f"re_{uuid.uuid4().hex}"
        if idempotency_key:
            self._refund_ids[idempotency_key] = refund_id
        return refund_id

    # --------------------------------------------------------------------------
    # simulated customer actions
    # --------------------------------------------------------------------------
    def _event(self, type_: str, **fields) -> dict:
        return {
            "type": type_,
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
            "created_at": int(time.time()),
            **fields,
        }

    def build_events(
        self,
        outcome: str,
        *,
        order_id: str,
        payment_session_id: str,
        payment_intent_id: Optional[str],
        amount_cents: int,
        currency: str,
        charge_id: Optional[str] = None,
        refund_cents: Optional[int] = None,
    ) -> List[dict]:
        """The events a real provider would send for one customer action:
        succeeded, failed or refunded."""
        common = {
            "payment_session_id": payment_session_id,
            "payment_intent_id": payment_intent_id,
            "order_id": order_id,
            "currency": currency,
        }
        if outcome == "succeeded":
            charge_id = charge_id or f"ch_{uuid.uuid4().hex}"
            self._charged[charge_id] = amount_cents
            self._fees[charge_id] = round(
                amount_cents * self.FEE_BP / 10000 + self.FEE_FLAT
            )
            return [
                self._event("checkout.completed", amount=amount_cents,
                            **common),
                self._event("charge.succeeded", amount=amount_cents,
                            charge_id=charge_id, **common),
            ]
        if outcome == "failed":
            return [self._event("payment.failed", amount=amount_cents,
                                **common)]
        if outcome == "refunded":
            if not charge_id or charge_id not in self._charged:
                raise ValidationError("order has no charge to refund")
            already = self._refunded.get(charge_id, 0)
            amount = refund_cents or (amount_cents - already)
            if amount <= 0 or already + amount > amount_cents:
                raise ValidationError("nothing left to refund")
            self._refunded[charge_id] = already + amount
            return [self._event("charge.refunded", amount=amount_cents,
                                amount_refunded=already + amount,
                                charge_id=charge_id, **common)]
        raise ValidationError("invalid kind")

    def encode(self, event: dict) -> Tuple[bytes, Dict[str, str]]:
        payload = orjson.dumps(event)
        return payload, {
            SIGNATURE_HEADER: self.sign(payload),
            "content-type": "application/json",
        }
