from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, List


# ---------- Requests ----------
class CreateLot(BaseModel):
    code: str = Field(..., min_length=3, max_length=64)
    unit: str = Field(..., min_length=1, max_length=32)
    initial_weight_kg: float = Field(..., ge=0)
    created_by: str
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    started_at: Optional[datetime] = None


class CreateDelivery(BaseModel):
    volunteer_id: str
    weight_kg: float = Field(..., gt=0)
    delivered_at: Optional[datetime] = None


class CreatePhoto(BaseModel):
    url: str = Field(..., min_length=1, max_length=512)
    kind: str = "general"


class CreateCheckpoint(BaseModel):
    week: int = Field(..., ge=1)
    weight_before_kg: float = Field(..., ge=0)
    weight_after_kg: float = Field(..., ge=0)
    notes: Optional[str] = None


class FinalizeLot(BaseModel):
    final_weight_kg: float = Field(..., gt=0)
    ended_at: Optional[datetime] = None


class RepairRequest(BaseModel):
    unit: str
    from_index: int = Field(..., ge=0)
    # required when nothing below from_index survives: the whole unit is re-sealed
    confirm_full_rebuild: bool = False


# ---------- Results ----------
class ChainLinkOut(BaseModel):
    fingerprint: Optional[str] = None
    previous_fingerprint: Optional[str] = None
    chain_index: int
    fingerprint_short: str


class LotSummary(BaseModel):
    id: int
    code: str
    unit: str
    status: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    initial_weight_kg: float
    current_weight_kg: float
    final_weight_kg: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_by: str
    total_deliveries: int
    total_volunteers: int
    total_photos: int
    weekly_checkpoints: int
    co2e_avoided_kg: Optional[float] = None
    link: Optional[ChainLinkOut] = None
    audit_url: Optional[str] = None


class ChainValidationResult(BaseModel):
    unit: str
    valid: bool
    total_links: int
    validated_length: int
    break_index: Optional[int] = None
    break_lot_id: Optional[int] = None
    break_lot_code: Optional[str] = None
    reason: Optional[str] = None  # fingerprint_mismatch | previous_mismatch


class ChainReport(BaseModel):
    valid: bool
    units: List[ChainValidationResult]


class RepairResult(BaseModel):
    unit: str
    from_index: int
    updated_indices: List[int] = []
    unchanged_indices: List[int] = []
    failed_index: Optional[int] = None
    error: Optional[str] = None
    completed: bool
    validation: Optional[ChainValidationResult] = None  # None when the store failed again while re-checking


class FinalizeResult(BaseModel):
    lot_id: int
    code: str
    unit: str
    fingerprint: str
    previous_fingerprint: str
    chain_index: int
    audit_url: str
    co2e_avoided_kg: float
    finalized_at: datetime
