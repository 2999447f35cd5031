"""UPI intent helpers and the Spark Coins earn rate."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, quote, urlsplit

DEFAULT_PAYEE_VPA = "evsparkhub@okaxis"
DEFAULT_PAYEE_NAME = "EV Spark Hub"
RUPEES_PER_COIN = 10


@dataclass(frozen=True)
class UpiPayload:
    payee_vpa: Optional[str] = None
    payee_name: Optional[str] = None
    amount: Optional[str] = None
    reference_id: Optional[str] = None
    description: Optional[str] = None


def coins_for_amount(amount: float) -> int:
    """One Spark Coin per ten currency units, rounded down."""
    if amount <= 0:
        return 0
    return int(math.floor(amount / RUPEES_PER_COIN))


def _format_amount(amount: float) -> str:
    return f"{amount:.2f}".rstrip("0").rstrip(".")


def build_upi_intent_url(
    amount: float,
    description: str = "EV Charging Payment",
    payee_vpa: str = DEFAULT_PAYEE_VPA,
    payee_name: str = DEFAULT_PAYEE_NAME,
    reference_id: Optional[str] = None,
) -> str:
    params = [
        ("pa", payee_vpa),
        ("pn", payee_name),
        ("am", _format_amount(amount)),
        ("cu", "INR"),
        ("tn", description),
    ]
    if reference_id:
        params.append(("tr", reference_id))
    query = "&".join(f"{key}={quote(value, safe='@')}" for key, value in params)
    return f"upi://pay?{query}"


def parse_upi_payload(content: str) -> Optional[UpiPayload]:
    """Read a scanned UPI QR string; ``None`` when it is not a UPI payload."""
    if "upi://" not in content and "pa=" not in content:
        return None
    parts = urlsplit(content)
    query = parts.query if parts.scheme == "upi" else content.split("?", 1)[-1]
    values = parse_qs(query, keep_blank_values=False)

    def first(key: str) -> Optional[str]:
        found = values.get(key)
        return found[0] if found else None

    return UpiPayload(
        payee_vpa=first("pa"),
        payee_name=first("pn"),
        amount=first("am"),
        reference_id=first("tr"),
        description=first("tn"),
    )
