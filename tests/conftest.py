import os, sys, tempfile
from datetime import datetime

import pytest

# Ensure the top-level modules are importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Point the store at a throwaway SQLite file before anything imports config
_tmpdir = tempfile.mkdtemp(prefix="compost-chain-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'test.db')}"
os.environ["PUBLIC_BASE_URL"] = "https://audit.example.org"
os.environ["READ_BACKOFF_BASE"] = "0"
os.environ.setdefault("LOG_JSON", "0")

import chain
from config import REQUIRED_WEEKLY_CHECKPOINTS
from database import Base, SessionLocal, engine, init_db
from models import Delivery, Lot, LotPhoto, WeeklyCheckpoint

init_db()


# Reset database before each test for isolation
@pytest.fixture(autouse=True)
def _reset_db():
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from app import app
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_lot(db):
    """Active lot with deliveries, a photo and (by default) every weekly checkpoint."""
    def _make(code, unit="CWB001", initial=10.0, checkpoints=REQUIRED_WEEKLY_CHECKPOINTS,
              volunteers=("vol-ana", "vol-bruno"), photos=1):
        lot = Lot(
            code=code,
            unit=unit,
            started_at=datetime(2025, 1, 6, 8, 0),
            initial_weight_kg=initial,
            current_weight_kg=initial,
            latitude=-25.4284,
            longitude=-49.2733,
            created_by="operator-01",
        )
        db.add(lot); db.flush()
        for i, v in enumerate(volunteers):
            db.add(Delivery(lot_id=lot.id, volunteer_id=v, weight_kg=2.5 + i,
                            delivered_at=datetime(2025, 1, 6, 9, i)))
        for i in range(photos):
            db.add(LotPhoto(lot_id=lot.id, url=f"https://photos.example.org/{code}/{i}.jpg"))
        for week in range(1, checkpoints + 1):
            db.add(WeeklyCheckpoint(lot_id=lot.id, week=week,
                                    weight_before_kg=initial, weight_after_kg=initial * 0.9))
        db.commit()
        return code
    return _make


@pytest.fixture
def seal(db, make_lot):
    """Create and finalize lots in order; returns their FinalizeResults."""
    def _seal(*codes, unit="CWB001"):
        return [chain.finalize_lot(db, make_lot(code, unit=unit), 8.0) for code in codes]
    return _seal
