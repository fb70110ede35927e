"""
Pydantic models/schemas for the skew engine
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Dict, Any, Literal
from datetime import date, datetime, timezone


# ==================== CHAIN MODELS ====================

class ChainResult(BaseModel):
    stream_symbols: List[str]
    expiration_date: date
    dte: int = Field(ge=0)


class SymbolSearchResult(BaseModel):
    symbol: str
    description: str = ""
    listed_market: Optional[str] = None
    instrument_type: Optional[str] = None


# ==================== SKEW MODELS ====================

class SkewResult(BaseModel):
    """Immutable outcome of one skew computation."""
    model_config = ConfigDict(frozen=True)

    skew: float = Field(gt=0)
    pricing_skew: Optional[float] = None
    implied_move: Optional[float] = None
    underlying_price: Optional[float] = None
    expiration_date: date
    dte: int = Field(ge=0)
    call_oi: int = Field(ge=0)
    put_oi: int = Field(ge=0)
    call_delta: float
    put_delta: float
    call_count: int = Field(ge=0)
    put_count: int = Field(ge=0)
    calculated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ==================== PROGRESS MODELS ====================

ProgressType = Literal["connected", "cached", "chain", "phase1", "phase2", "result", "error"]

BatchStatus = Literal["pending", "calculating", "phase1", "phase2", "cached", "complete", "error"]


class ProgressEvent(BaseModel):
    type: ProgressType
    message: Optional[str] = None
    data: Optional[Any] = None


class BatchProgress(BaseModel):
    symbol: str
    status: BatchStatus
    data: Optional[Any] = None


class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int
    aborted: bool = False


class BatchEvent(BaseModel):
    type: Literal["connected", "progress", "complete", "error"]
    message: Optional[str] = None
    progress: Optional[BatchProgress] = None
    summary: Optional[BatchSummary] = None
    results: Optional[Dict[str, SkewResult]] = None
    errors: Optional[Dict[str, str]] = None
