from typing import Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict

from ..models import AlternativeCategory, CategoryPrediction, CategoryRule, Confidence, PreprocessedTransaction
from ..rules import DEFAULT_CATEGORY_RULES, FALLBACK_CATEGORY, match_rule
from .base import MLServiceError, NotReady, Readiness, create_confidence

FEATURE_WEIGHTS: Dict[str, float] = {
    "amount_log": 0.1,
    "is_small_amount": 0.05,
    "is_medium_amount": 0.03,
    "is_large_amount": 0.08,
    "is_round_amount": 0.02,
    "has_upi": 0.15,
    "has_card": 0.12,
    "has_neft": 0.10,
    "has_imps": 0.08,
    "has_restaurant_keywords": 0.25,
    "has_shopping_keywords": 0.22,
    "has_service_keywords": 0.18,
    "has_entertainment_keywords": 0.20,
    "has_merchant_indicators": 0.15,
    "has_person_name_pattern": 0.12,
    "token_count": 0.05,
    "text_length": 0.03,
}
DEFAULT_FEATURE_WEIGHT = 0.1

KEYWORD_WEIGHT = 0.3
RULE_AGREEMENT_BONUS = 0.2
MIN_CANDIDATE_SCORE = 0.2
MIN_ALTERNATIVE_SCORE = 0.3
MAX_ALTERNATIVES = 3


class CategoryPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    bonus_features: List[str]
    penalty_features: List[str]
    keywords: List[str]
    base_score: float
    amount_range: Optional[Tuple[float, float]] = None


CATEGORY_PATTERNS: List[CategoryPattern] = [
    CategoryPattern(
        category="Food & Dining",
        bonus_features=["has_restaurant_keywords", "has_upi", "is_small_amount"],
        penalty_features=["is_large_amount", "has_neft"],
        keywords=["swiggy", "zomato", "restaurant", "cafe", "food", "dining", "hotel"],
        base_score=0.6,
    ),
    CategoryPattern(
        category="Entertainment",
        bonus_features=["has_entertainment_keywords", "is_round_amount"],
        penalty_features=["has_person_name_pattern"],
        keywords=["netflix", "prime", "movie", "cinema", "pvr", "inox", "spotify"],
        base_score=0.7,
    ),
    CategoryPattern(
        category="Shopping",
        bonus_features=["has_shopping_keywords", "has_upi"],
        penalty_features=["has_person_name_pattern"],
        keywords=["amazon", "flipkart", "myntra", "shopping", "store", "mall"],
        base_score=0.65,
    ),
    CategoryPattern(
        category="Transportation",
        bonus_features=["has_upi", "is_small_amount"],
        penalty_features=["is_large_amount"],
        keywords=["uber", "ola", "taxi", "auto", "bus", "train", "metro", "parking"],
        base_score=0.6,
    ),
    CategoryPattern(
        category="Transfer",
        bonus_features=["has_person_name_pattern", "has_neft", "has_imps"],
        penalty_features=["has_merchant_indicators", "has_shopping_keywords"],
        keywords=["transfer", "paytm-", "gpay-", "phonepe"],
        base_score=0.5,
    ),
    CategoryPattern(
        category="Utilities",
        bonus_features=["is_round_amount", "is_medium_amount"],
        penalty_features=["is_small_amount", "has_person_name_pattern"],
        keywords=["electricity", "water", "gas", "internet", "mobile", "phone"],
        base_score=0.7,
    ),
    CategoryPattern(
        category="Healthcare",
        bonus_features=["is_large_amount"],
        penalty_features=["is_small_amount"],
        keywords=["medical", "hospital", "pharmacy", "doctor", "clinic", "health"],
        base_score=0.6,
    ),
    CategoryPattern(
        category="Home & Services",
        bonus_features=["has_service_keywords"],
        penalty_features=["is_small_amount"],
        keywords=["pest", "control", "repair", "cleaning", "maintenance"],
        base_score=0.65,
    ),
]


class _Candidate(BaseModel):
    category: str
    subcategory: Optional[str] = None
    score: float


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, score))


class TransactionClassifier:
    """
    Weighted feature scorer over a static per-category pattern table.

    Scores are not probabilities; they only need to rank categories and be
    comparable against the pipeline's confidence threshold.
    """

    name = "TransactionClassifier"
    version = "1.0.0"

    def __init__(
        self,
        patterns: Sequence[CategoryPattern] = CATEGORY_PATTERNS,
        weights: Optional[Dict[str, float]] = None,
        rules: Sequence[CategoryRule] = DEFAULT_CATEGORY_RULES,
    ):
        self.patterns = list(patterns)
        self.weights = dict(FEATURE_WEIGHTS if weights is None else weights)
        self.rules = list(rules)

    def readiness(self) -> Readiness:
        if not self.patterns:
            return Readiness(service=self.name, ready=False, reason="no category patterns loaded")
        return Readiness(service=self.name, ready=True)

    def is_ready(self) -> bool:
        return self.readiness().ready

    def get_confidence(self) -> Confidence:
        return create_confidence(0.8)

    def classify(self, txn: PreprocessedTransaction) -> Union[CategoryPrediction, NotReady]:
        state = self.readiness()
        if not state.ready:
            return NotReady(service=self.name, reason=state.reason or "not ready")
        try:
            candidates = self._rank(txn)
        except Exception as exc:
            raise MLServiceError(f"Classification failed: {exc}", self.name, "classify") from exc

        if not candidates:
            return CategoryPrediction(category=FALLBACK_CATEGORY, confidence=create_confidence(0.3))

        best = candidates[0]
        alternatives = [
            AlternativeCategory(category=c.category, subcategory=c.subcategory, confidence=c.score)
            for c in candidates[1:MAX_ALTERNATIVES + 1]
            if c.score > MIN_ALTERNATIVE_SCORE
        ]
        return CategoryPrediction(
            category=best.category,
            subcategory=best.subcategory,
            confidence=create_confidence(best.score),
            alternative_categories=alternatives,
        )

    def _weight(self, feature: str) -> float:
        return self.weights.get(feature, DEFAULT_FEATURE_WEIGHT)

    def _rank(self, txn: PreprocessedTransaction) -> List[_Candidate]:
        text = f"{txn.cleaned_description} {' '.join(txn.tokens)}".lower()
        rule = match_rule(text, text, txn.amount, self.rules)

        candidates: List[_Candidate] = []
        for pattern in self.patterns:
            score = pattern.base_score
            score += sum(KEYWORD_WEIGHT for k in pattern.keywords if k in text)
            score += sum(self._weight(f) for f in pattern.bonus_features if txn.features.get(f, 0.0) > 0)
            score -= sum(self._weight(f) for f in pattern.penalty_features if txn.features.get(f, 0.0) > 0)

            if pattern.amount_range is not None:
                low, high = pattern.amount_range
                if low <= txn.amount <= high:
                    score += 0.1
                else:
                    score *= 0.5

            subcategory = None
            if rule is not None and rule.category == pattern.category:
                score += RULE_AGREEMENT_BONUS
                subcategory = rule.subcategory

            score = _clamp(score)
            if score > MIN_CANDIDATE_SCORE:
                candidates.append(_Candidate(category=pattern.category, subcategory=subcategory, score=score))

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates
