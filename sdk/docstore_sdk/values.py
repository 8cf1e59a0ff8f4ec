"""
Property value codec for the DocStore SDK.

Converts between Python values and the store's JSON Value representation:

    str        -> {"stringValue": "..."}
    int        -> {"integerValue": "123"}       (int64 carried as a string)
    float      -> {"doubleValue": 1.5}          ("NaN", "Infinity", "-Infinity")
    bool       -> {"booleanValue": true}
    None       -> {"nullValue": null}
    Identifier -> {"keyValue": {...}}
    bytes      -> {"blobValue": "<base64>"}
    datetime   -> {"timestampValue": "2024-01-01T00:00:00.000001Z"}
    list/tuple -> {"arrayValue": {"values": [...]}}

Invariants:
    - Decoding an encoded value yields an equal value
    - Integers outside the signed 64-bit range are rejected, never truncated
    - Booleans are never encoded as integers
"""

from __future__ import annotations

import base64
import binascii
import math
from datetime import datetime, timezone
from typing import Any

from .identifier import Identifier, InvalidIdentifierError
from .schema import PropertyKind

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_NON_FINITE = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}


class ValueEncodingError(ValueError):
    """A value cannot be represented in, or read from, the store format."""

    pass


def encode_value(
    value: Any,
    kind: PropertyKind | None = None,
    *,
    exclude_from_indexes: bool = False,
) -> dict[str, Any]:
    """Encode a Python value.

    Args:
        value: Value to encode
        kind: Declared kind, used to widen ints to doubles for float properties
        exclude_from_indexes: Mark the value as not indexed

    Returns:
        Wire Value dictionary

    Raises:
        ValueEncodingError: If the value has no wire representation
    """
    encoded = _encode(value, kind)
    if exclude_from_indexes and "arrayValue" not in encoded:
        encoded["excludeFromIndexes"] = True
    elif exclude_from_indexes:
        for item in encoded["arrayValue"]["values"]:
            item["excludeFromIndexes"] = True
    return encoded


def _encode(value: Any, kind: PropertyKind | None) -> dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        if kind is not None and kind.element_kind == PropertyKind.FLOAT:
            return _encode_double(float(value))
        if value < INT64_MIN or value > INT64_MAX:
            raise ValueEncodingError(f"integer {value} is outside the 64-bit range")
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return _encode_double(value)
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (bytes, bytearray)):
        return {"blobValue": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, datetime):
        return {"timestampValue": format_timestamp(value)}
    if isinstance(value, Identifier):
        if value.is_pending:
            raise ValueEncodingError(f"cannot store a reference to pending identifier {value}")
        return {"keyValue": value.to_key()}
    if isinstance(value, (list, tuple)):
        element_kind = kind.element_kind if kind is not None else None
        values = []
        for item in value:
            if isinstance(item, (list, tuple)):
                raise ValueEncodingError("arrays cannot contain arrays")
            values.append(_encode(item, element_kind))
        return {"arrayValue": {"values": values}}
    raise ValueEncodingError(f"unsupported value type {type(value).__name__}")


def _encode_double(value: float) -> dict[str, Any]:
    if math.isnan(value):
        return {"doubleValue": "NaN"}
    if math.isinf(value):
        return {"doubleValue": "Infinity" if value > 0 else "-Infinity"}
    return {"doubleValue": value}


def decode_value(encoded: dict[str, Any]) -> Any:
    """Decode a wire Value.

    Raises:
        ValueEncodingError: If the value is malformed or of an unsupported type
    """
    if "nullValue" in encoded:
        return None
    if "booleanValue" in encoded:
        return bool(encoded["booleanValue"])
    if "integerValue" in encoded:
        try:
            number = int(encoded["integerValue"])
        except (TypeError, ValueError) as e:
            raise ValueEncodingError(f"invalid integerValue {encoded['integerValue']!r}") from e
        if number < INT64_MIN or number > INT64_MAX:
            raise ValueEncodingError(f"integerValue {number} is outside the 64-bit range")
        return number
    if "doubleValue" in encoded:
        raw = encoded["doubleValue"]
        if isinstance(raw, str):
            if raw in _NON_FINITE:
                return _NON_FINITE[raw]
            try:
                return float(raw)
            except ValueError as e:
                raise ValueEncodingError(f"invalid doubleValue {raw!r}") from e
        return float(raw)
    if "stringValue" in encoded:
        return encoded["stringValue"]
    if "blobValue" in encoded:
        try:
            return base64.b64decode(encoded["blobValue"], validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueEncodingError("invalid base64 in blobValue") from e
    if "timestampValue" in encoded:
        return parse_timestamp(encoded["timestampValue"])
    if "keyValue" in encoded:
        try:
            return Identifier.from_key(encoded["keyValue"])
        except InvalidIdentifierError as e:
            raise ValueEncodingError(f"invalid keyValue: {e}") from e
    if "arrayValue" in encoded:
        return [decode_value(item) for item in encoded["arrayValue"].get("values", [])]
    raise ValueEncodingError(f"unsupported value fields {sorted(encoded)}")


def format_timestamp(value: datetime) -> str:
    """Format as RFC 3339 in UTC with microsecond precision.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Fractions beyond microseconds (the store reports nanoseconds) are cut.
    """
    raw = text.strip()
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    if "." in raw:
        head, _, rest = raw.partition(".")
        digits = ""
        index = 0
        while index < len(rest) and rest[index].isdigit():
            digits += rest[index]
            index += 1
        raw = f"{head}.{digits[:6].ljust(6, '0')}{rest[index:]}"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as e:
        raise ValueEncodingError(f"invalid timestampValue {text!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def value_matches_kind(value: Any, kind: PropertyKind) -> bool:
    """Whether a decoded Python value fits a declared property kind."""
    if kind.is_list:
        if not isinstance(value, (list, tuple)):
            return False
        return all(value_matches_kind(item, kind.element_kind) for item in value)
    if kind == PropertyKind.STRING:
        return isinstance(value, str)
    if kind == PropertyKind.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == PropertyKind.FLOAT:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == PropertyKind.BOOLEAN:
        return isinstance(value, bool)
    if kind == PropertyKind.KEY:
        return isinstance(value, Identifier)
    if kind == PropertyKind.BYTES:
        return isinstance(value, (bytes, bytearray))
    if kind == PropertyKind.TIMESTAMP:
        return isinstance(value, datetime)
    return False
