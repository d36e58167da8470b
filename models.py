from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Float, DateTime, Text, ForeignKey, UniqueConstraint
from database import Base

LOT_ACTIVE = "active"
LOT_FINALIZING = "finalizing"  # claimed by a finalization in progress
LOT_FINALIZED = "finalized"


def utcnow() -> datetime:
    # naive UTC: what SQLite hands back, so encodings match before and after a reload
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is not None and ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


class Lot(Base):
    __tablename__ = "lots"
    __table_args__ = (UniqueConstraint("unit", "chain_index", name="uq_lots_unit_chain_index"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    unit: Mapped[str] = mapped_column(String(32), index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    initial_weight_kg: Mapped[float] = mapped_column(Float)
    current_weight_kg: Mapped[float] = mapped_column(Float)
    final_weight_kg: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_by: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), default=LOT_ACTIVE)
    co2e_avoided_kg: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # chain link; written by finalization, rewritten only by repair
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    previous_fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    chain_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    deliveries: Mapped[list["Delivery"]] = relationship("Delivery", back_populates="lot", cascade="all, delete-orphan")
    photos: Mapped[list["LotPhoto"]] = relationship("LotPhoto", back_populates="lot", cascade="all, delete-orphan")
    checkpoints: Mapped[list["WeeklyCheckpoint"]] = relationship("WeeklyCheckpoint", back_populates="lot", cascade="all, delete-orphan")

    @property
    def is_linked(self) -> bool:
        return self.chain_index is not None


class Delivery(Base):
    __tablename__ = "deliveries"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    lot_id: Mapped[int] = mapped_column(Integer, ForeignKey("lots.id"), index=True)
    volunteer_id: Mapped[str] = mapped_column(String(64))
    weight_kg: Mapped[float] = mapped_column(Float)
    delivered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    lot: Mapped[Lot] = relationship("Lot", back_populates="deliveries")


class LotPhoto(Base):
    __tablename__ = "lot_photos"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    lot_id: Mapped[int] = mapped_column(Integer, ForeignKey("lots.id"), index=True)
    url: Mapped[str] = mapped_column(String(512))
    kind: Mapped[str] = mapped_column(String(32), default="general")
    taken_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    lot: Mapped[Lot] = relationship("Lot", back_populates="photos")


class WeeklyCheckpoint(Base):
    __tablename__ = "weekly_checkpoints"
    __table_args__ = (UniqueConstraint("lot_id", "week", name="uq_checkpoints_lot_week"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    lot_id: Mapped[int] = mapped_column(Integer, ForeignKey("lots.id"), index=True)
    week: Mapped[int] = mapped_column(Integer)
    weight_before_kg: Mapped[float] = mapped_column(Float)
    weight_after_kg: Mapped[float] = mapped_column(Float)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    lot: Mapped[Lot] = relationship("Lot", back_populates="checkpoints")


class ChainCounter(Base):
    """Next chain index per unit; only ever advanced by an atomic UPDATE."""
    __tablename__ = "chain_counters"
    unit: Mapped[str] = mapped_column(String(32), primary_key=True)
    next_index: Mapped[int] = mapped_column(Integer, default=0)
