import io
import json
import math
import hashlib
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Iterable, List, Optional, Sequence

import qrcode

from config import CO2E_FACTOR, PUBLIC_BASE_URL
from errors import EncodingError

SCHEMA_VERSION = "compost-lot/v1"

# previous_fingerprint of the first link in every unit's chain; never derived
GENESIS = "GENESIS"

_SEP = b"\x1f"


@dataclass(frozen=True)
class LotHashInput:
    """Protected lot attributes plus the sub-record identifiers they are sealed with.

    Adding a field here changes every future fingerprint: bump SCHEMA_VERSION.
    """
    code: str
    unit: str
    started_at: Any
    ended_at: Any
    initial_weight_kg: Any
    current_weight_kg: Any
    latitude: Any
    longitude: Any
    created_by: str
    volunteers: Sequence[str] = ()
    deliveries: Sequence[str] = ()
    photos: Sequence[str] = ()


def _text(name: str, value: Any) -> str:
    if value is None or isinstance(value, bool):
        raise EncodingError(f"{name}: expected text, got {value!r}")
    return str(value)


def _number(name: str, value: Any, nullable: bool = False) -> Optional[float]:
    if value is None:
        if nullable:
            return None
        raise EncodingError(f"{name}: value is required")
    if isinstance(value, bool):
        raise EncodingError(f"{name}: booleans are not numbers")
    try:
        f = float(value)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"{name}: not a number: {value!r}") from exc
    if not math.isfinite(f):
        raise EncodingError(f"{name}: non-finite number {value!r}")
    return f + 0.0  # folds -0.0 into 0.0


def _timestamp(name: str, value: Any, nullable: bool = False) -> Optional[str]:
    if value is None:
        if nullable:
            return None
        raise EncodingError(f"{name}: timestamp is required")
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise EncodingError(f"{name}: unparseable timestamp {value!r}") from exc
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if not isinstance(value, datetime):
        raise EncodingError(f"{name}: expected a timestamp, got {type(value).__name__}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _identifiers(name: str, values: Optional[Iterable[Any]], distinct: bool = False) -> List[str]:
    out = [_text(name, v) for v in (values or ())]
    if distinct:
        out = list(set(out))
    return sorted(out)


def delivery_token(delivery_id: Any, weight_kg: Any) -> str:
    # the weight rides along with the id so a retroactive re-weigh is detected
    return f"{_text('delivery_id', delivery_id)}:{_number('delivery_weight_kg', weight_kg)!r}"


def canonical_document(data: LotHashInput) -> dict:
    return {
        "schema": SCHEMA_VERSION,
        "code": _text("code", data.code),
        "unit": _text("unit", data.unit),
        "started_at": _timestamp("started_at", data.started_at),
        "ended_at": _timestamp("ended_at", data.ended_at, nullable=True),
        "initial_weight_kg": _number("initial_weight_kg", data.initial_weight_kg),
        "current_weight_kg": _number("current_weight_kg", data.current_weight_kg),
        "latitude": _number("latitude", data.latitude, nullable=True),
        "longitude": _number("longitude", data.longitude, nullable=True),
        "created_by": _text("created_by", data.created_by),
        "volunteers": _identifiers("volunteers", data.volunteers, distinct=True),
        "deliveries": _identifiers("deliveries", data.deliveries),
        "photos": _identifiers("photos", data.photos),
    }


def canonical_encode(data: LotHashInput) -> bytes:
    doc = canonical_document(data)
    return json.dumps(doc, sort_keys=True, separators=(",", ":"),
                      ensure_ascii=False, allow_nan=False).encode("utf-8")


def compute_fingerprint(canonical: bytes, previous_fingerprint: str, chain_index: int) -> str:
    if not previous_fingerprint:
        raise EncodingError("previous_fingerprint must be a digest or GENESIS")
    if isinstance(chain_index, bool) or not isinstance(chain_index, int) or chain_index < 0:
        raise EncodingError(f"chain_index must be a non-negative integer, got {chain_index!r}")
    block = canonical + _SEP + previous_fingerprint.encode("ascii") + _SEP + str(chain_index).encode("ascii")
    return hashlib.sha256(block).hexdigest()


def fingerprint_lot(data: LotHashInput, previous_fingerprint: str, chain_index: int) -> str:
    return compute_fingerprint(canonical_encode(data), previous_fingerprint, chain_index)


def co2e_avoided(initial_weight_kg: float) -> float:
    return round(float(initial_weight_kg) * CO2E_FACTOR, 3)


def audit_url(code: str) -> str:
    return f"{PUBLIC_BASE_URL}/lote/auditoria/{code}"


def format_hash_display(h: Optional[str]) -> str:
    if not h:
        return ""
    if len(h) <= 16:
        return h
    return f"{h[:8]}...{h[-8:]}"


def qr_png(url: str) -> bytes:
    img = qrcode.make(url, error_correction=qrcode.constants.ERROR_CORRECT_M, border=1)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
