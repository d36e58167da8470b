"""
Persistence contract of the integrity chain.

Reads retry transient store failures with backoff. Writes are never
retried here: the orchestrator re-checks the lot before trying again.
Every list of links is ordered by chain_index explicitly.
"""

import logging
import time
from typing import Any, Callable, List, Optional, Set, Tuple, TypeVar

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import READ_RETRIES, READ_BACKOFF_BASE
from errors import AllocationConflictError, LotAlreadyFinalizedError, LotNotFoundError, PersistenceError
from models import (
    ChainCounter, Delivery, Lot, LotPhoto, WeeklyCheckpoint, LOT_ACTIVE, LOT_FINALIZING,
)
from utils import GENESIS, LotHashInput, delivery_token

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Backoff:
    def __init__(self, base: float = READ_BACKOFF_BASE, cap: float = 2.0, factor: float = 2.0):
        self.base = base; self.cap = cap; self.factor = factor; self.n = 0

    def next(self) -> float:
        t = min(self.base * (self.factor ** self.n), self.cap); self.n += 1; return t


def _read(db: Session, what: str, fn: Callable[[], T], tries: int = READ_RETRIES) -> T:
    b = Backoff()
    for attempt in range(1, tries + 1):
        try:
            return fn()
        except OperationalError as exc:
            db.rollback()
            if attempt == tries:
                raise PersistenceError(f"{what}: store unavailable after {tries} attempts") from exc
            delay = b.next()
            logger.warning("read %s failed (attempt %d/%d), retrying in %.2fs: %s",
                           what, attempt, tries, delay, exc)
            time.sleep(delay)
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError(f"{what}: {exc}") from exc
    raise PersistenceError(f"{what}: no attempts made")


# ---------- Reads ----------
def get_lot(db: Session, code: str, fresh: bool = False) -> Lot:
    stmt = select(Lot).where(Lot.code == code)
    if fresh:
        # reload over whatever the session already holds for this row
        stmt = stmt.execution_options(populate_existing=True)
    lot = _read(db, f"lot {code}", lambda: db.scalar(stmt))
    if lot is None:
        raise LotNotFoundError(f"lot {code} not found")
    return lot


def list_links(db: Session, unit: str, from_index: Optional[int] = None) -> List[Lot]:
    def q():
        stmt = select(Lot).where(Lot.unit == unit, Lot.chain_index.is_not(None))
        if from_index is not None:
            stmt = stmt.where(Lot.chain_index >= from_index)
        return list(db.scalars(stmt.order_by(Lot.chain_index.asc())).all())
    return _read(db, f"links of {unit}", q)


def list_linked_units(db: Session) -> List[str]:
    return _read(db, "linked units", lambda: list(db.scalars(
        select(Lot.unit).where(Lot.chain_index.is_not(None)).distinct().order_by(Lot.unit)
    ).all()))


def previous_link(db: Session, unit: str, before_index: int) -> Optional[Lot]:
    """Latest link of the unit below ``before_index`` (gaps are allowed)."""
    return _read(db, f"link of {unit} before {before_index}", lambda: db.scalar(
        select(Lot)
        .where(Lot.unit == unit, Lot.chain_index.is_not(None), Lot.chain_index < before_index)
        .order_by(Lot.chain_index.desc())
        .limit(1)
    ))


def volunteers_of(db: Session, lot_id: int) -> List[str]:
    return _read(db, f"volunteers of lot {lot_id}", lambda: list(db.scalars(
        select(Delivery.volunteer_id).where(Delivery.lot_id == lot_id).distinct()
    ).all()))


def deliveries_of(db: Session, lot_id: int) -> List[str]:
    rows = _read(db, f"deliveries of lot {lot_id}", lambda: db.execute(
        select(Delivery.id, Delivery.weight_kg).where(Delivery.lot_id == lot_id)
    ).all())
    return [delivery_token(r.id, r.weight_kg) for r in rows]


def photos_of(db: Session, lot_id: int) -> List[str]:
    return _read(db, f"photos of lot {lot_id}", lambda: list(db.scalars(
        select(LotPhoto.url).where(LotPhoto.lot_id == lot_id)
    ).all()))


def checkpoint_weeks(db: Session, lot_id: int) -> Set[int]:
    return set(_read(db, f"checkpoints of lot {lot_id}", lambda: db.scalars(
        select(WeeklyCheckpoint.week).where(WeeklyCheckpoint.lot_id == lot_id)
    ).all()))


def lot_hash_input(db: Session, lot: Lot, **overrides: Any) -> LotHashInput:
    """Current state of a lot as the encoder sees it.

    ``overrides`` substitutes terminal attributes that are not persisted yet.
    """
    fields = dict(
        code=lot.code,
        unit=lot.unit,
        started_at=lot.started_at,
        ended_at=lot.ended_at,
        initial_weight_kg=lot.initial_weight_kg,
        current_weight_kg=lot.current_weight_kg,
        latitude=lot.latitude,
        longitude=lot.longitude,
        created_by=lot.created_by,
    )
    fields.update(overrides)
    return LotHashInput(
        volunteers=volunteers_of(db, lot.id),
        deliveries=deliveries_of(db, lot.id),
        photos=photos_of(db, lot.id),
        **fields,
    )


# ---------- Lot status ----------
def _move_status(db: Session, lot_id: int, current: str, new: str) -> bool:
    stmt = (
        update(Lot)
        .where(Lot.id == lot_id, Lot.status == current, Lot.chain_index.is_(None))
        .values(status=new)
        .execution_options(synchronize_session=False)
    )
    try:
        return db.execute(stmt).rowcount == 1
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"status change of lot {lot_id} failed: {exc}") from exc


def hold_active(db: Session, lot_id: int) -> None:
    """Lock the lot row as ``active`` inside the caller's transaction.

    Sub-record writers call this before adding rows; a finalization that
    claimed the lot first makes it fail, and one that comes later waits for
    the caller's commit, so sealed lots never gain sub-records.
    """
    if not _move_status(db, lot_id, LOT_ACTIVE, LOT_ACTIVE):
        db.rollback()
        raise LotAlreadyFinalizedError(f"lot {lot_id} is finalized or being finalized")


def claim_for_finalization(db: Session, lot_id: int) -> None:
    if not _move_status(db, lot_id, LOT_ACTIVE, LOT_FINALIZING):
        db.rollback()
        raise LotAlreadyFinalizedError(f"lot {lot_id} is finalized or being finalized")
    db.commit()


def release_finalization(db: Session, lot_id: int) -> None:
    """Hand a claimed lot back to ``active`` after a failed finalization."""
    db.rollback()
    if _move_status(db, lot_id, LOT_FINALIZING, LOT_ACTIVE):
        db.commit()
    else:
        db.rollback()


# ---------- Writes ----------
def _ensure_counter(db: Session, unit: str) -> None:
    if db.scalar(select(ChainCounter.unit).where(ChainCounter.unit == unit)) is not None:
        return
    top = db.scalar(select(func.max(Lot.chain_index)).where(Lot.unit == unit))
    db.add(ChainCounter(unit=unit, next_index=0 if top is None else top + 1))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()  # a concurrent writer created it first


def allocate_next_index(db: Session, unit: str) -> Tuple[int, str]:
    """Atomically take the next chain index of ``unit``.

    The increment commits on its own and is never rolled back, so a failed
    finalization leaves a gap rather than a reusable index.
    Returns ``(index, previous_fingerprint)``.
    """
    try:
        _ensure_counter(db, unit)
        stmt = (
            update(ChainCounter)
            .where(ChainCounter.unit == unit)
            .values(next_index=ChainCounter.next_index + 1)
            .returning(ChainCounter.next_index)
            .execution_options(synchronize_session=False)
        )
        index = db.execute(stmt).scalar_one() - 1
        db.commit()
    except OperationalError as exc:
        db.rollback()
        raise AllocationConflictError(f"could not allocate a chain index for {unit}: {exc}") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"chain index allocation for {unit} failed: {exc}") from exc

    prev = previous_link(db, unit, index)
    return index, (prev.fingerprint if prev else GENESIS)


def write_link(db: Session, lot_id: int, fingerprint: str, previous_fingerprint: str,
               chain_index: int, **terminal: Any) -> None:
    """Seal a lot: link columns and terminal attributes in one conditional UPDATE."""
    stmt = (
        update(Lot)
        .where(Lot.id == lot_id, Lot.chain_index.is_(None), Lot.fingerprint.is_(None))
        .values(fingerprint=fingerprint, previous_fingerprint=previous_fingerprint,
                chain_index=chain_index, **terminal)
        .execution_options(synchronize_session=False)
    )
    try:
        res = db.execute(stmt)
        if res.rowcount != 1:
            db.rollback()
            raise LotAlreadyFinalizedError(f"lot {lot_id} already carries a chain link")
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AllocationConflictError(f"chain index {chain_index} is already taken") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"writing link for lot {lot_id} failed: {exc}") from exc


def update_link(db: Session, lot_id: int, fingerprint: str, previous_fingerprint: str) -> None:
    """Repair-only path: rewrites the two fingerprint columns and nothing else."""
    stmt = (
        update(Lot)
        .where(Lot.id == lot_id, Lot.chain_index.is_not(None))
        .values(fingerprint=fingerprint, previous_fingerprint=previous_fingerprint)
        .execution_options(synchronize_session=False)
    )
    try:
        res = db.execute(stmt)
        if res.rowcount != 1:
            raise PersistenceError(f"lot {lot_id} has no chain link to update")
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"updating link for lot {lot_id} failed: {exc}") from exc
    except PersistenceError:
        db.rollback()
        raise
