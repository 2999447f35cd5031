"""Ordered rule tables that derive station fields from OpenStreetMap tags.

Every field is described by a list of ``(predicate, extractor)`` pairs. The
first rule whose predicate accepts the tag mapping produces the value; a
field with no matching rule resolves to ``None``.
"""

from __future__ import annotations

import re
from typing import Callable, Mapping, Optional, Sequence, Tuple, TypeVar

from models.records import StationStatus

T = TypeVar("T")

Tags = Mapping[str, str]
Predicate = Callable[[Tags], bool]
Extractor = Callable[[Tags], T]
Rule = Tuple[Predicate, Extractor]

_LEADING_NUMBER = re.compile(r"^\s*([-+]?\d+(?:\.\d+)?)")

# (minimum kW, label), checked top down.
POWER_SPEED_THRESHOLDS: Sequence[Tuple[float, str]] = (
    (150.0, "Ultra Fast"),
    (50.0, "Fast"),
    (22.0, "Rapid"),
    (7.0, "Normal"),
)

_STATUS_ALIASES = {
    StationStatus.operational: {
        "operational", "yes", "active", "available", "in_service", "in service", "ok",
    },
    StationStatus.out_of_order: {
        "out_of_order", "out of order", "broken", "defect", "defective", "faulty",
        "closed", "disused", "no", "not_operational", "unavailable",
    },
    StationStatus.under_construction: {
        "under_construction", "under construction", "construction", "planned", "proposed",
    },
}


def evaluate(rules: Sequence[Rule], tags: Tags) -> Optional[T]:
    for predicate, extractor in rules:
        if predicate(tags):
            return extractor(tags)
    return None


def has(key: str) -> Predicate:
    return lambda tags: bool((tags.get(key) or "").strip())


def is_yes(key: str) -> Predicate:
    return lambda tags: (tags.get(key) or "").strip().lower() == "yes"


def value_of(key: str) -> Extractor:
    return lambda tags: tags[key].strip()


def constant(value: T) -> Extractor:
    return lambda _tags: value


def always(_tags: Tags) -> bool:
    return True


def parse_number(raw: Optional[str]) -> Optional[float]:
    """Parse a leading number the way ``"22 kW"`` style tags are written."""
    if raw is None:
        return None
    match = _LEADING_NUMBER.match(raw)
    if not match:
        return None
    return float(match.group(1))


def speed_for_power(kilowatts: float) -> str:
    for minimum, label in POWER_SPEED_THRESHOLDS:
        if kilowatts >= minimum:
            return label
    return "Slow"


def format_power(kilowatts: float) -> str:
    return f"{kilowatts:g} kW"


def normalize_status(raw: Optional[str]) -> Optional[StationStatus]:
    if raw is None:
        return None
    candidate = raw.strip().lower()
    if not candidate:
        return None
    for status, aliases in _STATUS_ALIASES.items():
        if candidate in aliases:
            return status
    return StationStatus.unknown


def _has_output(tags: Tags) -> bool:
    return parse_number(tags.get("charge:output")) is not None


def _output_kw(tags: Tags) -> float:
    value = parse_number(tags.get("charge:output"))
    if value is None:
        raise ValueError(f"charge:output is not a number: {tags.get('charge:output')!r}")
    return value


def name_rules(placeholder: str) -> Sequence[Rule]:
    return (
        (has("name"), value_of("name")),
        (has("name:en"), value_of("name:en")),
        (has("operator"), lambda tags: f"{tags['operator'].strip()} Charging Station"),
        (has("brand"), lambda tags: f"{tags['brand'].strip()} Charging Station"),
        (has("network"), lambda tags: f"{tags['network'].strip()} Charging Point"),
        (always, constant(placeholder)),
    )


SOCKET_RULES: Sequence[Rule] = (
    (has("socket"), value_of("socket")),
    (has("charge:socket"), value_of("charge:socket")),
    (is_yes("socket:type2"), constant("Type 2")),
    (is_yes("socket:type1"), constant("Type 1")),
    (is_yes("socket:chademo"), constant("CHAdeMO")),
    (is_yes("socket:ccs"), constant("CCS")),
    (always, constant("Standard Socket")),
)

SPEED_RULES: Sequence[Rule] = (
    (has("charge:speed"), value_of("charge:speed")),
    (_has_output, lambda tags: speed_for_power(_output_kw(tags))),
    (lambda tags: is_yes("socket:ccs")(tags) or is_yes("socket:chademo")(tags), constant("Fast")),
    (always, constant("Standard")),
)

POWER_RULES: Sequence[Rule] = (
    (_has_output, lambda tags: format_power(_output_kw(tags))),
)

STATUS_RULES: Sequence[Rule] = (
    (has("charge:status"), lambda tags: normalize_status(tags["charge:status"])),
    (has("operational_status"), lambda tags: normalize_status(tags["operational_status"])),
    (is_yes("operational"), constant(StationStatus.operational)),
)

FEE_RULES: Sequence[Rule] = (
    (is_yes("fee"), constant(True)),
    (is_yes("charge:fee"), constant(True)),
    (is_yes("payment"), constant(True)),
    (always, constant(False)),
)

ACCESS_RULES: Sequence[Rule] = (
    (has("access"), value_of("access")),
    (has("charge:access"), value_of("charge:access")),
    (always, constant("Public")),
)

NETWORK_RULES: Sequence[Rule] = (
    (has("network"), value_of("network")),
    (has("brand"), value_of("brand")),
)

CAPACITY_RULES: Sequence[Rule] = (
    (
        lambda tags: (tags.get("capacity") or "").strip().isdigit(),
        lambda tags: int(tags["capacity"].strip()),
    ),
)

LAST_UPDATE_RULES: Sequence[Rule] = (
    (has("check_date:charge"), value_of("check_date:charge")),
)
