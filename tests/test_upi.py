"""Tests for UPI intent helpers and the coin earn rate."""

from __future__ import annotations

import pytest

from services.upi import build_upi_intent_url, coins_for_amount, parse_upi_payload


@pytest.mark.parametrize(
    ("amount", "coins"),
    [(436, 43), (10, 1), (9.99, 0), (0, 0), (-50, 0), (1000.5, 100)],
)
def test_coins_for_amount_rounds_down(amount, coins) -> None:
    assert coins_for_amount(amount) == coins


def test_build_upi_intent_url_encodes_fields() -> None:
    url = build_upi_intent_url(250, "EV Charging Payment")

    assert url == (
        "upi://pay?pa=evsparkhub@okaxis&pn=EV%20Spark%20Hub&am=250&cu=INR"
        "&tn=EV%20Charging%20Payment"
    )


def test_build_upi_intent_url_keeps_fractional_amount_and_reference() -> None:
    url = build_upi_intent_url(99.5, "Slot & Charge", reference_id="pay-1")

    assert "am=99.5" in url
    assert "tn=Slot%20%26%20Charge" in url
    assert url.endswith("&tr=pay-1")


def test_parse_upi_payload_reads_intent_fields() -> None:
    url = build_upi_intent_url(120, "Booking 42", reference_id="ref-9")

    payload = parse_upi_payload(url)

    assert payload is not None
    assert payload.payee_vpa == "evsparkhub@okaxis"
    assert payload.payee_name == "EV Spark Hub"
    assert payload.amount == "120"
    assert payload.description == "Booking 42"
    assert payload.reference_id == "ref-9"


def test_parse_upi_payload_rejects_other_content() -> None:
    assert parse_upi_payload("https://example.com/?q=1") is None
