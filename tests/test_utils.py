import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from errors import EncodingError
from utils import (
    GENESIS,
    LotHashInput,
    audit_url,
    canonical_encode,
    co2e_avoided,
    compute_fingerprint,
    delivery_token,
    fingerprint_lot,
    format_hash_display,
)


def sample(**overrides):
    fields = dict(
        code="CWB001-0001",
        unit="CWB001",
        started_at=datetime(2025, 1, 6, 8, 0),
        ended_at=datetime(2025, 2, 24, 17, 30),
        initial_weight_kg=42.5,
        current_weight_kg=30,
        latitude=-25.4284,
        longitude=-49.2733,
        created_by="operator-01",
        volunteers=["vol-b", "vol-a", "vol-c"],
        deliveries=["3:2.5", "1:4.0", "2:1.25"],
        photos=["https://p/2.jpg", "https://p/1.jpg"],
    )
    fields.update(overrides)
    return LotHashInput(**fields)


def test_fingerprint_is_deterministic():
    a = fingerprint_lot(sample(), GENESIS, 0)
    b = fingerprint_lot(sample(), GENESIS, 0)
    assert a == b
    assert len(a) == 64
    int(a, 16)


def test_identifier_order_does_not_matter():
    shuffled = sample(
        volunteers=["vol-c", "vol-a", "vol-b"],
        deliveries=["2:1.25", "3:2.5", "1:4.0"],
        photos=("https://p/1.jpg", "https://p/2.jpg"),
    )
    assert canonical_encode(shuffled) == canonical_encode(sample())


def test_repeated_volunteers_collapse():
    assert canonical_encode(sample(volunteers=["vol-a", "vol-b", "vol-a", "vol-c"])) == canonical_encode(sample())


def test_numbers_are_normalized():
    as_int = sample(current_weight_kg=30)
    as_float = sample(current_weight_kg=30.0)
    as_decimal = sample(current_weight_kg=Decimal("30"))
    as_text = sample(current_weight_kg="30.0")
    assert canonical_encode(as_int) == canonical_encode(as_float) == canonical_encode(as_decimal) == canonical_encode(as_text)
    assert canonical_encode(sample(latitude=-0.0)) == canonical_encode(sample(latitude=0.0))


def test_missing_optionals_encode_as_null():
    doc = json.loads(canonical_encode(sample(ended_at=None, latitude=None, longitude=None)))
    assert doc["ended_at"] is None
    assert doc["latitude"] is None
    assert doc["longitude"] is None
    assert doc["schema"] == "compost-lot/v1"


def test_zero_coordinate_is_not_null():
    doc = json.loads(canonical_encode(sample(latitude=0)))
    assert doc["latitude"] == 0.0


def test_timestamps_are_normalized_to_utc():
    naive = sample(started_at=datetime(2025, 1, 6, 8, 0))
    aware = sample(started_at=datetime(2025, 1, 6, 5, 0, tzinfo=timezone(timedelta(hours=-3))))
    text = sample(started_at="2025-01-06T08:00:00Z")
    assert canonical_encode(naive) == canonical_encode(aware) == canonical_encode(text)
    assert json.loads(canonical_encode(naive))["started_at"] == "2025-01-06T08:00:00.000000Z"


@pytest.mark.parametrize("overrides", [
    {"started_at": "last tuesday"},
    {"started_at": None},
    {"ended_at": 12345},
    {"initial_weight_kg": float("nan")},
    {"current_weight_kg": float("inf")},
    {"current_weight_kg": True},
    {"latitude": "north"},
    {"code": None},
    {"photos": ["https://p/1.jpg", None]},
])
def test_malformed_input_raises_encoding_error(overrides):
    with pytest.raises(EncodingError):
        canonical_encode(sample(**overrides))


def test_every_protected_field_changes_the_fingerprint():
    base = fingerprint_lot(sample(), GENESIS, 0)
    variants = [
        sample(code="CWB001-0002"),
        sample(unit="CWB002"),
        sample(started_at=datetime(2025, 1, 6, 8, 1)),
        sample(ended_at=None),
        sample(initial_weight_kg=42.0),
        sample(current_weight_kg=29.99),
        sample(latitude=-25.4285),
        sample(longitude=None),
        sample(created_by="operator-02"),
        sample(volunteers=["vol-a", "vol-b"]),
        sample(deliveries=["3:2.5", "1:4.0", "2:1.3"]),
        sample(photos=["https://p/1.jpg"]),
    ]
    assert all(fingerprint_lot(v, GENESIS, 0) != base for v in variants)


def test_previous_and_index_are_bound_into_the_digest():
    canonical = canonical_encode(sample())
    base = compute_fingerprint(canonical, GENESIS, 0)
    assert compute_fingerprint(canonical, GENESIS, 1) != base
    assert compute_fingerprint(canonical, "a" * 64, 0) != base
    assert base != GENESIS


@pytest.mark.parametrize("previous, index", [("", 0), (None, 0), (GENESIS, -1), (GENESIS, True)])
def test_bad_link_inputs_are_rejected(previous, index):
    with pytest.raises(EncodingError):
        compute_fingerprint(b"{}", previous, index)


def test_delivery_token_carries_normalized_weight():
    assert delivery_token(7, 5) == "7:5.0"
    assert delivery_token("7", Decimal("5.0")) == "7:5.0"


def test_helpers():
    assert co2e_avoided(100) == 76.6
    assert audit_url("CWB001-0001") == "https://audit.example.org/lote/auditoria/CWB001-0001"
    h = "0123456789abcdef" * 4
    assert format_hash_display(h) == "01234567...89abcdef"
    assert format_hash_display("") == ""
    assert format_hash_display(None) == ""


def test_known_answer():
    # pinned bytes and digest: any change here is a schema change and needs a new SCHEMA_VERSION
    assert canonical_encode(sample()) == (
        b'{"code":"CWB001-0001","created_by":"operator-01","current_weight_kg":30.0,'
        b'"deliveries":["1:4.0","2:1.25","3:2.5"],"ended_at":"2025-02-24T17:30:00.000000Z",'
        b'"initial_weight_kg":42.5,"latitude":-25.4284,"longitude":-49.2733,'
        b'"photos":["https://p/1.jpg","https://p/2.jpg"],"schema":"compost-lot/v1",'
        b'"started_at":"2025-01-06T08:00:00.000000Z","unit":"CWB001","volunteers":["vol-a","vol-b","vol-c"]}'
    )
    assert fingerprint_lot(sample(), GENESIS, 0) == "24be4cf93683eb1261a6d12051fd87f56617ddeaf6812019e1ff77bd5a078054"
