"""Canonical JSON bytes for digests and signatures.

Every digest in the registry (history chain links, provenance reports,
signature inputs) is computed over the bytes produced here. There is exactly
one definition so that a step hashed at append time and re-hashed during
verification always agree byte for byte.
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def now_rfc3339() -> str:
    """RFC3339 UTC timestamp with second precision and a trailing ``Z``.

    Set ``SOURCE_DATE_EPOCH`` (seconds since the Unix epoch) to pin the value
    for reproducible reports.
    """

    sde = os.environ.get("SOURCE_DATE_EPOCH")
    if sde is not None and str(sde).strip() != "":
        try:
            epoch = int(str(sde).strip(), 10)
        except ValueError as ex:
            raise ValueError("SOURCE_DATE_EPOCH must be an integer (seconds)") from ex
        dt = datetime.fromtimestamp(epoch, tz=timezone.utc)
    else:
        dt = datetime.now(timezone.utc)
    return format_timestamp(dt.replace(microsecond=0))


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as RFC3339 UTC, keeping microseconds when present."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def coerce_json_types(obj: Any) -> Any:
    """Coerce Python values into strict JSON types.

    - datetimes become RFC3339 strings (naive values are treated as UTC)
    - Decimals become their exact string form
    - tuples and sets become lists (sets sorted)
    - dataclass instances become dicts
    - floats are rejected; amounts must be integers, Decimals or strings
    """
    if obj is None:
        return None
    if isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        raise ValueError("Floats are not allowed in canonical JSON. Use integers, Decimals or strings.")
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return format_timestamp(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if is_dataclass(obj) and not isinstance(obj, type):
        return coerce_json_types(asdict(obj))
    if isinstance(obj, (list, tuple)):
        return [coerce_json_types(x) for x in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted(coerce_json_types(x) for x in obj)
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            out[str(k)] = coerce_json_types(v)
        return out
    return str(obj)


def canonicalize(obj: Any) -> bytes:
    """Sorted keys, no insignificant whitespace, UTF-8."""
    clean = coerce_json_types(obj)
    return json.dumps(clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def digest(obj: Any) -> str:
    """sha256 over the canonical bytes of ``obj``."""
    return sha256_hex(canonicalize(obj))
