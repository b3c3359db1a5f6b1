from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..models.asset import Currency


class IngestMode(str, Enum):
    QUOTES = "quotes"
    HISTORICAL = "historical"


# --- Bulk ingestion ---
class BulkHistoricalRequest(BaseModel):
    currency: Optional[Currency] = None  # None: all assets
    historical_days: Optional[int] = Field(None, gt=0)
    years_back: Optional[int] = Field(None, gt=0)
    replace_existing: bool = False
    batch_size: Optional[int] = Field(None, ge=1, le=50)
    delay_between_batches: Optional[float] = Field(None, ge=0)  # seconds


class UpdateAllRequest(BaseModel):
    currency: Optional[Currency] = None
    mode: IngestMode = IngestMode.QUOTES
    historical_days: int = Field(30, gt=0)
    replace_existing: bool = False


class FullHistoryRequest(BaseModel):
    currency: Optional[Currency] = None
    years_back: int = Field(20, gt=0, le=50)
    replace_existing: bool = False


# --- Quotes ---
class QuotesRequest(BaseModel):
    tickers: list[str]


class HistoricalRequest(BaseModel):
    ticker: str
    start: Optional[date] = None  # default: two years before end
    end: Optional[date] = None
    replace_existing: bool = False


# --- Cache ---
class CacheInvalidateRequest(BaseModel):
    ticker: str


class CacheWarmUpRequest(BaseModel):
    tickers: list[str]
