import re
from typing import List, Optional, Tuple, Union

import spacy
from pydantic import BaseModel

from ..logging_utils import log_event
from ..models import Confidence, MerchantPattern, MerchantPrediction
from ..rules import (
    UNKNOWN_MERCHANT,
    UPI_MERCHANT_PATTERNS,
    clean_merchant_name,
    extract_merchant as extract_rule_merchant,
    normalize_merchant_name,
)
from ..settings import MerchantNormalization
from .base import DEFAULT_ML_CONFIG, MLServiceError, NotReady, Readiness, create_confidence

DEFAULT_NER_MODEL = "en_core_web_sm"

PATTERN_ACCEPT_SCORE = 0.7
RULE_FALLBACK_SCORE = 0.6
UNKNOWN_SCORE = 0.1


def _strip_wallet_suffix(name: str) -> str:
    return re.sub(
        r"\s+(REST|H|CO|PVT|LTD|SOLUTIONS?|SOL|INDIA|IND)$", "", name, flags=re.IGNORECASE
    ).strip()


def _strip_bill_words(name: str) -> str:
    return re.sub(r"\s*(BILL|PAYMENT|PAY).*$", "", name, flags=re.IGNORECASE).strip()


EXTENDED_MERCHANT_PATTERNS: List[MerchantPattern] = UPI_MERCHANT_PATTERNS + [
    MerchantPattern(
        regex=re.compile(r"(?:UPI/|BHQR/|GPAY-|PAYTM-)([^/\s]+)(?:[/\s].*)?$", re.IGNORECASE),
        cleanup=_strip_wallet_suffix,
    ),
    MerchantPattern(regex=re.compile(r"CARD\s+PAYMENT\s+(?:TO\s+)?([^/\n]+)(?:/.*)?$", re.IGNORECASE)),
    MerchantPattern(
        regex=re.compile(r"BIL/([^/]+)/([^/]+)", re.IGNORECASE), extract_group=2, cleanup=_strip_bill_words
    ),
    MerchantPattern(
        regex=re.compile(r"(?:ONLINE\s+)?PAYMENT\s+(?:TO\s+)?([A-Za-z][^/\n]+?)(?:\s+(?:VIA|THROUGH).*)?$", re.IGNORECASE)
    ),
    MerchantPattern(
        regex=re.compile(r"(?:TRANSFER\s+)?\bTO\s+([^/\n]+?)(?:\s+(?:A/C|ACCOUNT).*)?$", re.IGNORECASE)
    ),
]


class MerchantType(BaseModel):
    name: str
    keywords: List[str]
    suffixes: List[str]
    confidence: float


MERCHANT_TYPES: List[MerchantType] = [
    MerchantType(
        name="restaurant",
        keywords=["restaurant", "cafe", "hotel", "dining", "food", "kitchen", "canteen"],
        suffixes=["rest", "hotel", "cafe", "kitchen"],
        confidence=0.8,
    ),
    MerchantType(
        name="retail",
        keywords=["store", "shop", "mart", "market", "supermarket", "hypermarket"],
        suffixes=["store", "mart", "market"],
        confidence=0.75,
    ),
    MerchantType(
        name="service",
        keywords=["services", "solutions", "consulting", "tech", "software"],
        suffixes=["services", "solutions", "tech", "sol"],
        confidence=0.7,
    ),
    MerchantType(
        name="entertainment",
        keywords=["cinema", "movie", "entertainment", "games", "sports"],
        suffixes=["cinema", "movies", "entertainment"],
        confidence=0.8,
    ),
    MerchantType(
        name="healthcare",
        keywords=["hospital", "clinic", "medical", "pharmacy", "health"],
        suffixes=["hospital", "clinic", "medical", "pharmacy", "health"],
        confidence=0.9,
    ),
]

BUSINESS_INDICATORS = ["pvt", "ltd", "co", "inc", "corp", "services", "solutions"]

# spaCy entity labels mapped onto candidate kinds.
ENTITY_KINDS = {
    "ORG": "organization",
    "GPE": "place",
    "LOC": "place",
    "FAC": "place",
    "PERSON": "person",
}
KIND_WEIGHTS = {
    "organization": 0.3,
    "place": 0.25,
    "capitalized": 0.2,
    "person": 0.15,
}
MIN_ENTITY_SCORE = 0.3
MIN_CAPITALIZED_SCORE = 0.4

CAPITALIZED_RUN_RE = re.compile(r"\b[A-Z][A-Z\s]{2,}\b")
TRANSACTION_ID_RE = re.compile(r"^[A-Z]{3}\d+|\d{6,}")


class EntityCandidate(BaseModel):
    text: str
    kind: str
    score: float


def detect_merchant_type(name: str) -> Optional[Tuple[str, float]]:
    lower = (name or "").lower()
    for mtype in MERCHANT_TYPES:
        if any(k in lower for k in mtype.keywords):
            return mtype.name, mtype.confidence
    for mtype in MERCHANT_TYPES:
        if any(lower.endswith(s) for s in mtype.suffixes):
            return mtype.name, mtype.confidence * 0.8
    return None


def _type_confidence(name: str) -> float:
    detected = detect_merchant_type(name)
    return detected[1] if detected else 0.0


def pattern_confidence(merchant: str, normalized: str) -> float:
    score = 0.7
    if len(merchant) > 5:
        score += 0.1
    if re.match(r"^[A-Z][a-z]", merchant):
        score += 0.05
    if len(merchant.split()) > 1:
        score += 0.1
    score += _type_confidence(merchant) * 0.2
    if normalized != merchant:
        score += 0.15
    return min(score, 1.0)


def score_candidate(text: str, kind: str) -> float:
    score = 0.4 + KIND_WEIGHTS.get(kind, 0.0)
    if len(text) > 8:
        score += 0.1
    if len(text) < 3:
        score -= 0.3
    lower = text.lower()
    if any(b in lower for b in BUSINESS_INDICATORS):
        score += 0.2
    score += _type_confidence(text) * 0.15
    if TRANSACTION_ID_RE.search(text):
        score -= 0.4
    return max(0.0, min(1.0, score))


class EnhancedMerchantExtractor:
    """
    Merchant identification in three stages: the extended regex table,
    entity candidates (spaCy NER plus ALL-CAPS runs) and finally "Unknown".

    The NER model is loaded on first use. If it is missing the entity stage
    still runs on ALL-CAPS runs alone.
    """

    name = "EnhancedMerchantExtractor"
    version = "1.0.0"

    def __init__(
        self,
        policy: MerchantNormalization = "lenient",
        model_name: Optional[str] = None,
        nlp=None,
        use_ner: bool = True,
        patterns: Optional[List[MerchantPattern]] = None,
    ):
        self.policy = policy
        self.model_name = model_name or DEFAULT_NER_MODEL
        self.patterns = list(EXTENDED_MERCHANT_PATTERNS if patterns is None else patterns)
        self.use_ner = use_ner
        self._nlp = nlp
        self._ner_attempted = nlp is not None

    def readiness(self) -> Readiness:
        if not self.patterns:
            return Readiness(service=self.name, ready=False, reason="no merchant patterns loaded")
        return Readiness(service=self.name, ready=True)

    def is_ready(self) -> bool:
        return self.readiness().ready

    def get_confidence(self) -> Confidence:
        return create_confidence(0.75)

    def ner_available(self) -> bool:
        return self._load_ner() is not None

    def _load_ner(self):
        if not self.use_ner:
            return None
        if not self._ner_attempted:
            self._ner_attempted = True
            try:
                self._nlp = spacy.load(self.model_name)
            except OSError as exc:
                log_event('warning', 'ml.ner_unavailable', model=self.model_name, error=str(exc))
                self._nlp = None
        return self._nlp

    def extract_merchant(
        self, description: str, threshold: float = DEFAULT_ML_CONFIG.confidence_threshold
    ) -> Union[MerchantPrediction, NotReady]:
        state = self.readiness()
        if not state.ready:
            return NotReady(service=self.name, reason=state.reason or "not ready")
        try:
            return self._extract(description or "", threshold)
        except MLServiceError:
            raise
        except Exception as exc:
            raise MLServiceError(f"Merchant extraction failed: {exc}", self.name, "extract_merchant") from exc

    def _extract(self, description: str, threshold: float) -> MerchantPrediction:
        merchant, normalized, score = self.extract_with_patterns(description)
        if score > PATTERN_ACCEPT_SCORE:
            return MerchantPrediction(
                merchant=merchant,
                normalized_merchant=normalized,
                confidence=create_confidence(score),
                extraction_method="pattern",
            )

        candidates = self.entity_candidates(description)
        if candidates and candidates[0].score >= threshold:
            best = candidates[0]
            cleaned = clean_merchant_name(best.text) or best.text
            return MerchantPrediction(
                merchant=cleaned,
                normalized_merchant=normalize_merchant_name(cleaned, self.policy),
                confidence=create_confidence(best.score),
                extraction_method="ml",
            )

        return MerchantPrediction(
            merchant=UNKNOWN_MERCHANT,
            normalized_merchant=UNKNOWN_MERCHANT,
            confidence=create_confidence(UNKNOWN_SCORE),
            extraction_method="fallback",
        )

    def extract_with_patterns(self, description: str) -> Tuple[str, str, float]:
        """Return ``(merchant, normalized, score)`` from the first firing pattern."""
        desc = description.strip()
        for pattern in self.patterns:
            m = pattern.regex.search(desc)
            if not m or not m.group(pattern.extract_group):
                continue
            merchant = m.group(pattern.extract_group).strip()
            if pattern.cleanup is not None:
                merchant = pattern.cleanup(merchant)
            merchant = clean_merchant_name(merchant)
            if len(merchant) > 1:
                normalized = normalize_merchant_name(merchant, self.policy)
                return merchant, normalized, pattern_confidence(merchant, normalized)

        rule_merchant = extract_rule_merchant(desc, policy=self.policy)
        if rule_merchant != UNKNOWN_MERCHANT:
            return rule_merchant, rule_merchant, RULE_FALLBACK_SCORE
        return UNKNOWN_MERCHANT, UNKNOWN_MERCHANT, UNKNOWN_SCORE

    def entity_candidates(self, description: str) -> List[EntityCandidate]:
        candidates: List[EntityCandidate] = []

        nlp = self._load_ner()
        if nlp is not None:
            doc = nlp(re.sub(r"[/|]+", " ", description))
            for ent in doc.ents:
                kind = ENTITY_KINDS.get(ent.label_)
                text = ent.text.strip()
                if kind is None or not text:
                    continue
                score = score_candidate(text, kind)
                if score > MIN_ENTITY_SCORE:
                    candidates.append(EntityCandidate(text=text, kind=kind, score=score))

        for run in CAPITALIZED_RUN_RE.findall(description):
            text = run.strip()
            if not text:
                continue
            score = score_candidate(text, "capitalized")
            if score > MIN_CAPITALIZED_SCORE:
                candidates.append(EntityCandidate(text=text, kind="capitalized", score=score))

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates
