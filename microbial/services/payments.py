"""
Credit packages and the Paystack payment callback.

A verified charge.success event carries the buyer and the package in
metadata.custom_fields. Credits are applied through the ledger with the
Paystack reference as idempotency key, so webhook redeliveries are no-ops.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from ..core.config import get_settings
from ..core.errors import InvalidPayment
from ..models.credits import TransactionType
from . import realtime
from .credits import CreditLedger

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"
CHARGE_SUCCESS = "charge.success"


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price: int  # NGN
    description: str
    popular: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


CREDIT_PACKAGES: dict[str, CreditPackage] = {
    p.id: p
    for p in (
        CreditPackage("basic", "Basic", 100, 2000, "Perfect for casual users"),
        CreditPackage("standard", "Standard", 300, 5000, "Most popular option", popular=True),
        CreditPackage("premium", "Premium", 700, 10000, "For regular users"),
        CreditPackage("professional", "Professional", 1500, 20000, "Best value for power users"),
    )
}


@dataclass(frozen=True)
class PaymentEvent:
    reference: str
    user_id: str
    package: CreditPackage
    amount_kobo: int


async def apply_payment(
    ledger: CreditLedger,
    user_id: str,
    credits: int,
    reference: str,
    description: str = "",
) -> int:
    """Credit a confirmed purchase. Returns the new balance."""
    balance = await ledger.credit(
        user_id,
        credits,
        TransactionType.PURCHASE,
        description or f"Purchased {credits} credits",
        reference=f"paystack:{reference}",
    )
    logger.info("Payment %s applied: %d credits for %s", reference, credits, user_id)
    await realtime.credits_updated(user_id, balance, TransactionType.PURCHASE.value)
    return balance


def verify_paystack_signature(body: bytes, signature: str, secret: Optional[str] = None) -> bool:
    """HMAC-SHA512 of the raw request body, hex encoded."""
    secret = secret if secret is not None else get_settings().paystack_secret_key
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)


def _custom_field(fields: list, name: str) -> str:
    for f in fields or []:
        if isinstance(f, dict) and f.get("variable_name") == name:
            return str(f.get("value") or "")
    return ""


def parse_paystack_event(body: bytes) -> Optional[PaymentEvent]:
    """
    Decode a webhook body. None for events that don't grant credits.
    Raises InvalidPayment for charge.success events that can't be honoured.
    """
    try:
        event = json.loads(body)
    except ValueError as e:
        raise InvalidPayment("Webhook body is not JSON") from e

    if event.get("event") != CHARGE_SUCCESS:
        logger.debug("Ignoring Paystack event %s", event.get("event"))
        return None

    data = event.get("data") or {}
    reference = str(data.get("reference") or "")
    fields = (data.get("metadata") or {}).get("custom_fields") or []
    user_id = _custom_field(fields, "user_id")
    package_id = _custom_field(fields, "credit_package")

    if not reference:
        raise InvalidPayment("charge.success without a reference")
    if not user_id or user_id == "anonymous":
        raise InvalidPayment(f"Payment {reference} has no user")
    package = CREDIT_PACKAGES.get(package_id)
    if package is None:
        raise InvalidPayment(f"Payment {reference} names unknown package {package_id!r}")

    amount = int(data.get("amount") or 0)
    if amount < package.price * 100:
        raise InvalidPayment(
            f"Payment {reference} amount {amount} is below the {package.id} price"
        )

    return PaymentEvent(reference=reference, user_id=user_id, package=package, amount_kobo=amount)


async def handle_paystack_webhook(
    ledger: CreditLedger,
    body: bytes,
    signature: str,
    secret: Optional[str] = None,
) -> Optional[int]:
    """Verify, decode and apply. Returns the new balance, None if nothing was granted."""
    if not verify_paystack_signature(body, signature, secret):
        raise InvalidPayment("Invalid Paystack signature")

    payment = parse_paystack_event(body)
    if payment is None:
        return None

    package = payment.package
    return await apply_payment(
        ledger,
        payment.user_id,
        package.credits,
        payment.reference,
        f"Purchased {package.name} package ({package.credits} credits)",
    )
