import pytest

from ibtasim.errors import InvalidPayload
from ibtasim.services.whop_events import (
    PaymentFailed,
    PaymentRefunded,
    PaymentSucceeded,
    UnrecognizedEvent,
    parse_event,
)
from tests.conftest import whop_payload


def test_succeeded():
    ev = parse_event(whop_payload("payment.succeeded", 12, payment_id="pay_9", status="paid"))
    assert isinstance(ev, PaymentSucceeded)
    assert ev.tag == "payment.succeeded"
    assert ev.donation_ref == "12"
    assert ev.payment_id == "pay_9"
    assert ev.provider_status == "paid"


def test_failed_carries_reason():
    ev = parse_event(whop_payload("payment.failed", "12", failure_message="card declined"))
    assert isinstance(ev, PaymentFailed)
    assert ev.reason == "card declined"


def test_refunded():
    ev = parse_event(whop_payload("payment.refunded", 3, refund_reason="requested_by_customer"))
    assert isinstance(ev, PaymentRefunded)
    assert ev.reason == "requested_by_customer"


def test_unknown_tag_is_kept_for_logging():
    ev = parse_event(whop_payload("membership.went_valid", 5))
    assert isinstance(ev, UnrecognizedEvent)
    assert ev.tag == "membership.went_valid"
    assert ev.donation_ref == "5"


@pytest.mark.parametrize(
    "payload",
    [
        {"event": "payment.succeeded", "data": {"id": "pay_1"}},
        {"event": "payment.succeeded", "data": {"metadata": {"donationId": "  "}}},
        {"event": "payment.succeeded", "data": {"metadata": "nope"}},
        {"event": "payment.succeeded"},
    ],
)
def test_missing_donation_ref(payload):
    assert parse_event(payload).donation_ref is None


@pytest.mark.parametrize("payload", [[], "payment.succeeded", 42, None])
def test_non_object_body_is_rejected(payload):
    with pytest.raises(InvalidPayload):
        parse_event(payload)


def test_events_are_plain_values():
    body = whop_payload("payment.succeeded", 7, payment_id="pay_1", status="paid")
    assert parse_event(body) == PaymentSucceeded(payment_id="pay_1", donation_ref="7", provider_status="paid")
    assert parse_event(whop_payload("other.thing", 7)) == UnrecognizedEvent(tag="other.thing", donation_ref="7")
