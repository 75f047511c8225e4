import hashlib
import hmac
import json

import pytest

from microbial.core.errors import InvalidPayment
from microbial.models.credits import TransactionType
from microbial.services.payments import (
    CREDIT_PACKAGES,
    handle_paystack_webhook,
    parse_paystack_event,
    verify_paystack_signature,
)

SECRET = "sk_test_secret"


def _event(package="standard", user_id="alice", reference="ref_1", amount=500000, event="charge.success"):
    return json.dumps({
        "event": event,
        "data": {
            "reference": reference,
            "amount": amount,
            "metadata": {
                "custom_fields": [
                    {"display_name": "Credit Package", "variable_name": "credit_package", "value": package},
                    {"display_name": "User ID", "variable_name": "user_id", "value": user_id},
                ],
            },
        },
    }).encode()


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def test_packages():
    assert {p.id: p.credits for p in CREDIT_PACKAGES.values()} == {
        "basic": 100, "standard": 300, "premium": 700, "professional": 1500,
    }


def test_signature_verification():
    body = _event()

    assert verify_paystack_signature(body, _sign(body), SECRET) is True
    assert verify_paystack_signature(body, _sign(body, "other"), SECRET) is False
    assert verify_paystack_signature(body, "", SECRET) is False
    assert verify_paystack_signature(body, _sign(body), "") is False


def test_parse_charge_success():
    payment = parse_paystack_event(_event(package="premium", amount=1000000))

    assert payment.user_id == "alice"
    assert payment.package.credits == 700
    assert payment.reference == "ref_1"


def test_other_events_are_ignored():
    assert parse_paystack_event(_event(event="transfer.success")) is None


@pytest.mark.parametrize("kwargs", [
    {"package": "platinum"},
    {"user_id": "anonymous"},
    {"user_id": ""},
    {"reference": ""},
    {"amount": 100},
])
def test_unusable_charges_are_rejected(kwargs):
    with pytest.raises(InvalidPayment):
        parse_paystack_event(_event(**kwargs))


@pytest.mark.asyncio
async def test_webhook_credits_once_per_reference(ledger):
    body = _event()

    first = await handle_paystack_webhook(ledger, body, _sign(body), SECRET)
    redelivered = await handle_paystack_webhook(ledger, body, _sign(body), SECRET)

    assert first == redelivered == 320
    purchases = [
        t for t in await ledger.recent_history("alice")
        if t.type == TransactionType.PURCHASE.value
    ]
    assert len(purchases) == 1
    assert purchases[0].reference == "paystack:ref_1"
    assert purchases[0].description == "Purchased Standard package (300 credits)"


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_changes_nothing(ledger):
    body = _event()

    with pytest.raises(InvalidPayment):
        await handle_paystack_webhook(ledger, body, _sign(body, "forged"), SECRET)
    assert await ledger.get_balance("alice") == 0
