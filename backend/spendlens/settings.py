import os
from typing import Literal, Optional

from pydantic import BaseModel, Field

MerchantNormalization = Literal["lenient", "strict"]


class PipelineConfig(BaseModel):
    use_ml: bool = True
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    fallback_to_rules: bool = True
    # spaCy pipeline name or path used for entity-based merchant extraction.
    model_path: Optional[str] = None
    merchant_normalization: MerchantNormalization = "lenient"
    y_tolerance: float = Field(default=5.0, ge=0.0)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "off", "no"}


def load_pipeline_config() -> PipelineConfig:
    """Build the pipeline configuration from SPENDLENS_* environment variables."""
    normalization = os.getenv("SPENDLENS_MERCHANT_NORMALIZATION", "lenient").strip().lower()
    if normalization not in {"lenient", "strict"}:
        normalization = "lenient"
    return PipelineConfig(
        use_ml=_env_flag("SPENDLENS_USE_ML", True),
        confidence_threshold=float(os.getenv("SPENDLENS_CONFIDENCE_THRESHOLD", "0.7")),
        fallback_to_rules=_env_flag("SPENDLENS_FALLBACK_TO_RULES", True),
        model_path=os.getenv("SPENDLENS_MODEL_PATH") or None,
        merchant_normalization=normalization,
        y_tolerance=float(os.getenv("SPENDLENS_Y_TOLERANCE", "5.0")),
    )
