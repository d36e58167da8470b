from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Request, Response, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sqlalchemy import select, func
from sqlalchemy.orm import Session

import chain
import store
import schemas
from config import LOG_LEVEL, LOG_JSON
from database import SessionLocal, init_db
from errors import ChainError
from logging_config import configure_logging
from models import Lot, Delivery, LotPhoto, WeeklyCheckpoint, LOT_ACTIVE, utcnow, to_utc_naive
from schemas import CreateLot, CreateDelivery, CreatePhoto, CreateCheckpoint, FinalizeLot, RepairRequest, LotSummary
from utils import audit_url, format_hash_display, qr_png

app = FastAPI(title="Compost Lot Integrity Chain", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # restrict to the public site in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- DB ----------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def on_startup():
    configure_logging(level=LOG_LEVEL, json_format=LOG_JSON)
    init_db()


@app.exception_handler(ChainError)
async def chain_error_handler(request: Request, exc: ChainError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error": exc.code})


# ---------- Helpers ----------
def _active_lot(db: Session, code: str) -> Lot:
    lot = store.get_lot(db, code)
    # a sealed lot's sub-records are part of its fingerprint; the row stays
    # held as active until the caller commits its new sub-record
    store.hold_active(db, lot.id)
    return lot


# ---------- APIs: lots ----------
@app.post("/api/lots", response_model=LotSummary)
def create_lot(body: CreateLot, db: Session = Depends(get_db)):
    if db.scalar(select(Lot).where(Lot.code == body.code)):
        raise HTTPException(status_code=400, detail="lot code already exists")
    lot = Lot(
        code=body.code,
        unit=body.unit,
        started_at=to_utc_naive(body.started_at) or utcnow(),
        initial_weight_kg=body.initial_weight_kg,
        current_weight_kg=body.initial_weight_kg,
        latitude=body.latitude,
        longitude=body.longitude,
        created_by=body.created_by,
        status=LOT_ACTIVE,
    )
    db.add(lot); db.commit(); db.refresh(lot)
    return get_lot_summary(body.code, db)


@app.post("/api/lots/{code}/deliveries")
def add_delivery(code: str, body: CreateDelivery, db: Session = Depends(get_db)):
    lot = _active_lot(db, code)
    d = Delivery(
        lot_id=lot.id,
        volunteer_id=body.volunteer_id,
        weight_kg=body.weight_kg,
        delivered_at=to_utc_naive(body.delivered_at) or utcnow(),
    )
    lot.current_weight_kg = lot.current_weight_kg + body.weight_kg
    db.add(d); db.commit(); db.refresh(d)
    return {"status": "ok", "delivery_id": d.id}


@app.post("/api/lots/{code}/photos")
def add_photo(code: str, body: CreatePhoto, db: Session = Depends(get_db)):
    lot = _active_lot(db, code)
    p = LotPhoto(lot_id=lot.id, url=body.url, kind=body.kind)
    db.add(p); db.commit(); db.refresh(p)
    return {"status": "ok", "photo_id": p.id}


@app.post("/api/lots/{code}/checkpoints")
def add_checkpoint(code: str, body: CreateCheckpoint, db: Session = Depends(get_db)):
    lot = _active_lot(db, code)
    if body.week in store.checkpoint_weeks(db, lot.id):
        raise HTTPException(status_code=400, detail=f"week {body.week} already recorded")
    cp = WeeklyCheckpoint(
        lot_id=lot.id,
        week=body.week,
        weight_before_kg=body.weight_before_kg,
        weight_after_kg=body.weight_after_kg,
        notes=body.notes,
    )
    lot.current_weight_kg = body.weight_after_kg
    db.add(cp); db.commit()
    return {"status": "ok", "week": body.week}


@app.get("/api/lots/{code}", response_model=LotSummary)
def get_lot_summary(code: str, db: Session = Depends(get_db)):
    lot = store.get_lot(db, code)
    link = None
    if lot.is_linked:
        link = schemas.ChainLinkOut(
            fingerprint=lot.fingerprint,
            previous_fingerprint=lot.previous_fingerprint,
            chain_index=lot.chain_index,
            fingerprint_short=format_hash_display(lot.fingerprint),
        )
    return LotSummary(
        id=lot.id,
        code=lot.code,
        unit=lot.unit,
        status=lot.status,
        started_at=lot.started_at,
        ended_at=lot.ended_at,
        initial_weight_kg=lot.initial_weight_kg,
        current_weight_kg=lot.current_weight_kg,
        final_weight_kg=lot.final_weight_kg,
        latitude=lot.latitude,
        longitude=lot.longitude,
        created_by=lot.created_by,
        total_deliveries=db.scalar(select(func.count(Delivery.id)).where(Delivery.lot_id == lot.id)) or 0,
        total_volunteers=len(store.volunteers_of(db, lot.id)),
        total_photos=db.scalar(select(func.count(LotPhoto.id)).where(LotPhoto.lot_id == lot.id)) or 0,
        weekly_checkpoints=len(store.checkpoint_weeks(db, lot.id)),
        co2e_avoided_kg=lot.co2e_avoided_kg,
        link=link,
        audit_url=audit_url(lot.code) if link else None,
    )


@app.post("/api/lots/{code}/finalize", response_model=schemas.FinalizeResult)
def finalize_lot(code: str, body: FinalizeLot, db: Session = Depends(get_db)):
    return chain.finalize_lot(db, code, body.final_weight_kg, body.ended_at)


@app.get("/api/lots/{code}/qrcode")
def lot_qrcode(code: str, db: Session = Depends(get_db)):
    lot = store.get_lot(db, code)
    if not lot.is_linked:
        raise HTTPException(status_code=409, detail="lot is not finalized yet")
    return Response(content=qr_png(audit_url(lot.code)), media_type="image/png")


# ---------- APIs: chain ----------
@app.get("/api/chain/validate")
def validate_chain(
    unit: Optional[str] = Query(None, description="unit code; all units when omitted"),
    db: Session = Depends(get_db),
):
    if unit:
        return chain.validate_chain(db, unit)
    return chain.validate_all(db)


@app.post("/api/chain/repair", response_model=schemas.RepairResult)
def repair_chain(body: RepairRequest, db: Session = Depends(get_db)):
    return chain.repair_chain(db, body.unit, body.from_index, body.confirm_full_rebuild)
