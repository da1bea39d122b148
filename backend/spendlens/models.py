import datetime as dt
from datetime import datetime, timezone
from typing import Callable, Dict, List, Literal, Optional, Pattern, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


ConfidenceSource = Literal["ml", "rules", "hybrid"]
RawType = Literal["DR", "CR"]
Direction = Literal["debit", "credit"]
SupportedBank = Literal["ICICI", "UNKNOWN"]
ExtractionMethod = Literal["pattern", "ml", "fallback"]


class Fragment(BaseModel):
    """One positioned run of text from the PDF text layer (y grows upward)."""

    model_config = ConfigDict(frozen=True)

    text: str
    x: float
    y: float


Row = List[Fragment]


class RawTransaction(BaseModel):
    date: str
    description: str
    amount: float
    type: RawType = "DR"


class AmountThreshold(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: Optional[float] = None
    max: Optional[float] = None


class CategoryRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    keywords: List[str]
    merchant_keywords: List[str] = Field(default_factory=list)
    category: str
    subcategory: Optional[str] = None
    is_recurring: bool = False
    amount_threshold: Optional[AmountThreshold] = None


class MerchantPattern(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    regex: Pattern[str]
    extract_group: int = 1
    cleanup: Optional[Callable[[str], str]] = None


class Confidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float
    source: ConfidenceSource = "ml"

    @field_validator("score")
    @classmethod
    def clamp_score(cls, v: float) -> float:
        return max(0.0, min(1.0, float(v)))


class PreprocessedTransaction(BaseModel):
    original_description: str
    cleaned_description: str
    tokens: List[str]
    features: Dict[str, float]
    amount: float
    type: Direction


class AlternativeCategory(BaseModel):
    category: str
    subcategory: Optional[str] = None
    confidence: float


class CategoryPrediction(BaseModel):
    category: str
    subcategory: Optional[str] = None
    confidence: Confidence
    alternative_categories: Optional[List[AlternativeCategory]] = None


class MerchantPrediction(BaseModel):
    merchant: str
    normalized_merchant: str
    confidence: Confidence
    extraction_method: ExtractionMethod


class Enrichment(BaseModel):
    category: CategoryPrediction
    merchant: MerchantPrediction
    payment_method: str
    is_recurring: bool
    tags: List[str]
    notes: Optional[str] = None
    confidence: Confidence


class Transaction(BaseModel):
    id: str
    date: dt.date
    amount: float
    description: str
    type: Direction
    category: str
    subcategory: Optional[str] = None
    merchant: Optional[str] = None
    account: str
    payment_method: str
    is_recurring: bool = False
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    is_verified: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    confidence: Optional[Confidence] = None


class ParseResult(BaseModel):
    bank: SupportedBank
    transactions: List[Transaction] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    account_number: Optional[str] = None


class WorkerProgress(BaseModel):
    kind: Literal["progress"] = "progress"
    progress_percent: int
    message: Optional[str] = None


class WorkerComplete(BaseModel):
    kind: Literal["complete"] = "complete"
    result: ParseResult


class WorkerError(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    # decode_failed | no_adapter | failed
    code: Optional[str] = None


class WorkerCancelled(BaseModel):
    kind: Literal["cancelled"] = "cancelled"


WorkerMessage = Union[WorkerProgress, WorkerComplete, WorkerError, WorkerCancelled]
