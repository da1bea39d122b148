from typing import Optional

from pydantic import BaseModel

from ..errors import MLServiceError
from ..models import Confidence, ConfidenceSource
from ..settings import PipelineConfig

DEFAULT_ML_CONFIG = PipelineConfig(use_ml=True, confidence_threshold=0.7, fallback_to_rules=True)

__all__ = [
    "DEFAULT_ML_CONFIG",
    "MLServiceError",
    "NotReady",
    "Readiness",
    "create_confidence",
    "should_use_ml_result",
]


class Readiness(BaseModel):
    service: str
    ready: bool
    reason: Optional[str] = None


class NotReady(BaseModel):
    """Returned instead of a result when a service cannot serve a call."""

    service: str
    reason: str = "not ready"


def create_confidence(score: float, source: ConfidenceSource = "ml") -> Confidence:
    return Confidence(score=score, source=source)


def should_use_ml_result(confidence: Confidence, threshold: float = DEFAULT_ML_CONFIG.confidence_threshold) -> bool:
    return confidence.score >= threshold
