"""
Integrity chain operations: validate, repair, finalize.

Each call re-reads everything it needs from the store; nothing about a
unit's chain is cached between calls. Finalize and repair serialize on a
unit lock, validation only reads and can run alongside them.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

import store
from config import REQUIRED_WEEKLY_CHECKPOINTS, UNIT_LOCK_TIMEOUT
from errors import (
    AllocationConflictError,
    ChainError,
    ChainRepairDefectError,
    IncompletePrerequisiteError,
    LotAlreadyFinalizedError,
    PersistenceError,
    RepairConfirmationRequiredError,
)
from logging_config import audit_log
from models import LOT_FINALIZED, to_utc_naive, utcnow
from schemas import ChainReport, ChainValidationResult, FinalizeResult, RepairResult
from utils import GENESIS, audit_url, canonical_encode, co2e_avoided, compute_fingerprint, fingerprint_lot

_locks: Dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


@contextmanager
def unit_lock(unit: str, timeout: float = UNIT_LOCK_TIMEOUT):
    """Advisory per-unit mutex for the writers of a chain (finalize, repair)."""
    with _locks_guard:
        lock = _locks.setdefault(unit, threading.Lock())
    if not lock.acquire(timeout=timeout):
        raise AllocationConflictError(f"unit {unit} is busy, retry later")
    try:
        yield
    finally:
        lock.release()


# ---------- Validator ----------
def validate_chain(db: Session, unit: str) -> ChainValidationResult:
    links = store.list_links(db, unit)
    expected_previous = GENESIS
    validated = 0

    for lot in links:
        reason = None
        if lot.fingerprint is None:
            reason = "fingerprint_mismatch"
        elif lot.previous_fingerprint is None:
            reason = "previous_mismatch"
        else:
            # the stored previous is used, not the one we expect: a rewritten
            # fingerprint at i-1 must surface as a previous mismatch at i
            data = store.lot_hash_input(db, lot)
            recomputed = fingerprint_lot(data, lot.previous_fingerprint, lot.chain_index)
            if recomputed != lot.fingerprint:
                reason = "fingerprint_mismatch"
            elif lot.previous_fingerprint != expected_previous:
                reason = "previous_mismatch"

        if reason:
            audit_log.chain_broken(unit, lot.chain_index, lot.code, reason)
            return ChainValidationResult(
                unit=unit,
                valid=False,
                total_links=len(links),
                validated_length=validated,
                break_index=lot.chain_index,
                break_lot_id=lot.id,
                break_lot_code=lot.code,
                reason=reason,
            )
        validated += 1
        expected_previous = lot.fingerprint

    audit_log.chain_validated(unit, len(links))
    return ChainValidationResult(unit=unit, valid=True, total_links=len(links), validated_length=validated)


def validate_all(db: Session) -> ChainReport:
    results = [validate_chain(db, unit) for unit in store.list_linked_units(db)]
    return ChainReport(valid=all(r.valid for r in results), units=results)


# ---------- Repairer ----------
def repair_chain(db: Session, unit: str, from_index: int, confirm_full_rebuild: bool = False) -> RepairResult:
    """Re-seal every link of ``unit`` at or after ``from_index``.

    Fingerprints are recomputed from the lots as they are now and chained
    forward from the last link below ``from_index`` (GENESIS if none).
    This re-attests the present state; it does not restore anything.
    Only the fingerprint columns are written. Links that already match are
    skipped, so a retry from the same or an earlier index is harmless.
    """
    if from_index < 0:
        raise ValueError("from_index must be >= 0")

    with unit_lock(unit):
        links = store.list_links(db, unit, from_index)
        updated, unchanged = [], []
        failed_index: Optional[int] = None
        error: Optional[str] = None

        if links:
            prev = store.previous_link(db, unit, from_index)
            if prev is None and not confirm_full_rebuild:
                raise RepairConfirmationRequiredError(
                    f"no link of {unit} survives below index {from_index}; "
                    f"re-sealing the whole chain needs confirm_full_rebuild"
                )
            seed = prev.fingerprint if prev else GENESIS

            for idx, lot_id, lot in [(l.chain_index, l.id, l) for l in links]:
                try:
                    fp = fingerprint_lot(store.lot_hash_input(db, lot), seed, idx)
                    if fp == lot.fingerprint and lot.previous_fingerprint == seed:
                        unchanged.append(idx)
                    else:
                        store.update_link(db, lot_id, fp, seed)
                        updated.append(idx)
                except ChainError as exc:
                    failed_index, error = idx, str(exc)
                    break
                seed = fp

        try:
            validation = validate_chain(db, unit)
        except PersistenceError:
            if failed_index is None:
                raise
            # the store is still failing; the progress report is what matters now
            validation = None

    completed = failed_index is None
    if completed:
        audit_log.chain_repaired(unit, from_index, updated)
        if not validation.valid and validation.break_index >= from_index:
            raise ChainRepairDefectError(
                f"repair of {unit} from {from_index} still breaks at {validation.break_index}"
            )
    else:
        audit_log.repair_failed(unit, failed_index, updated, error)

    return RepairResult(
        unit=unit,
        from_index=from_index,
        updated_indices=updated,
        unchanged_indices=unchanged,
        failed_index=failed_index,
        error=error,
        completed=completed,
        validation=validation,
    )


# ---------- Finalization ----------
def finalize_lot(db: Session, lot_code: str, final_weight_kg: float,
                 ended_at: Optional[datetime] = None) -> FinalizeResult:
    ended = to_utc_naive(ended_at) if ended_at else utcnow()
    lot = store.get_lot(db, lot_code)
    unit = lot.unit

    with unit_lock(unit):
        lot = store.get_lot(db, lot_code, fresh=True)
        if lot.is_linked or lot.status == LOT_FINALIZED:
            raise LotAlreadyFinalizedError(f"lot {lot_code} is already finalized at index {lot.chain_index}")

        weeks = store.checkpoint_weeks(db, lot.id)
        missing = [w for w in range(1, REQUIRED_WEEKLY_CHECKPOINTS + 1) if w not in weeks]
        if missing:
            raise IncompletePrerequisiteError(
                f"lot {lot_code} is missing weekly checkpoints {missing} "
                f"({REQUIRED_WEEKLY_CHECKPOINTS} required)"
            )

        lot_id, initial = lot.id, lot.initial_weight_kg
        # sub-record writers are refused from here on, so what is gathered is what gets sealed
        store.claim_for_finalization(db, lot_id)
        index = None
        try:
            # encode before allocating: bad data must not burn an index
            canonical = canonical_encode(store.lot_hash_input(
                db, lot, ended_at=ended, current_weight_kg=final_weight_kg))

            index, previous = store.allocate_next_index(db, unit)
            fingerprint = compute_fingerprint(canonical, previous, index)
            co2e = co2e_avoided(initial)

            store.write_link(
                db, lot_id, fingerprint, previous, index,
                ended_at=ended,
                final_weight_kg=final_weight_kg,
                current_weight_kg=final_weight_kg,
                status=LOT_FINALIZED,
                co2e_avoided_kg=co2e,
            )
        except ChainError as exc:
            # an allocated index stays consumed; the lot goes back to active
            audit_log.finalization_failed(lot_code, str(exc), index)
            store.release_finalization(db, lot_id)
            raise

    audit_log.link_written(unit, lot_code, index, fingerprint)
    return FinalizeResult(
        lot_id=lot_id,
        code=lot_code,
        unit=unit,
        fingerprint=fingerprint,
        previous_fingerprint=previous,
        chain_index=index,
        audit_url=audit_url(lot_code),
        co2e_avoided_kg=co2e,
        finalized_at=ended,
    )
