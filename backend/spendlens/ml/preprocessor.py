import math
import re
from typing import Dict, List, Optional

import spacy

from ..models import Confidence, Direction, PreprocessedTransaction
from ..text_cleaning import clean_spaces, strip_boilerplate
from .base import MLServiceError, Readiness, create_confidence

STOP_WORDS = {
    "upi", "bank", "icici", "hdfc", "axis", "yes", "sbi", "state",
    "to", "from", "transfer", "payment", "monthly", "au", "generating",
    "bil", "imps", "neft", "rtgs", "dr", "cr", "the", "and", "or", "in", "on", "at",
}

CHANNEL_PREFIXES = ["upi/", "bil/", "imps/", "neft/", "rtgs/", "bhqr/", "gpay-", "paytm-"]

MERCHANT_INDICATORS = [
    "pvt", "ltd", "co", "inc", "corp", "restaurant", "cafe", "supermarket",
    "store", "mall", "shop", "services", "solutions", "hotel", "booking",
]

RESTAURANT_KEYWORDS = ["restaurant", "cafe", "hotel", "dining"]
SHOPPING_KEYWORDS = ["store", "mall", "shopping", "amazon", "flipkart"]
SERVICE_KEYWORDS = ["services", "solutions", "booking"]
ENTERTAINMENT_KEYWORDS = ["netflix", "movie", "cinema", "pvr"]

ALL_CAPS_RE = re.compile(r"\b[A-Z]{2,}[A-Z0-9]*\b")
NUMBER_RE = re.compile(r"\d+")
SEPARATOR_RE = re.compile(r"[/|]+")


def has_keywords(tokens: List[str], keywords: List[str]) -> bool:
    token_text = " ".join(tokens).lower()
    return any(k in token_text for k in keywords)


def looks_like_person_name(tokens: List[str]) -> bool:
    if not tokens or len(tokens) > 3:
        return False
    if has_keywords(tokens, MERCHANT_INDICATORS):
        return False
    return not any(re.search(r"\d{4,}", t) for t in tokens)


class TransactionTextPreprocessor:
    """
    Cleans a transaction description, tokenizes it and derives the fixed
    numeric feature map the classifier scores against.
    """

    name = "TransactionTextPreprocessor"
    version = "1.0.0"

    def __init__(self, nlp: Optional["spacy.language.Language"] = None):
        # Blank pipeline: tokenizer only, no model download needed.
        self._nlp = nlp if nlp is not None else spacy.blank("en")

    def readiness(self) -> Readiness:
        if self._nlp is None:
            return Readiness(service=self.name, ready=False, reason="tokenizer not loaded")
        return Readiness(service=self.name, ready=True)

    def is_ready(self) -> bool:
        return self.readiness().ready

    def get_confidence(self) -> Confidence:
        return create_confidence(0.95, "rules")

    def preprocess(self, description: str, amount: float, type: Direction) -> PreprocessedTransaction:
        try:
            cleaned = self.clean_description(description)
            tokens = self.tokenize(cleaned, description)
            features = self.extract_features(tokens, amount)
        except Exception as exc:
            raise MLServiceError(f"Failed to preprocess transaction: {exc}", self.name, "preprocess") from exc
        return PreprocessedTransaction(
            original_description=description,
            cleaned_description=cleaned,
            tokens=tokens,
            features=features,
            amount=amount,
            type=type,
        )

    def clean_description(self, description: str) -> str:
        return clean_spaces(strip_boilerplate(description or "").lower())

    def tokenize(self, text: str, original: str = "") -> List[str]:
        tokens: List[str] = []

        for tok in self._nlp(SEPARATOR_RE.sub(" ", text)):
            word = re.sub(r"[^\w\-]", "", tok.text)
            if len(word) > 2 and word.lower() not in STOP_WORDS:
                tokens.append(word)

        for caps in ALL_CAPS_RE.findall(original or ""):
            if caps.lower() not in STOP_WORDS:
                tokens.append(caps)

        for prefix in CHANNEL_PREFIXES:
            if prefix in text:
                tokens.append(prefix.strip("/-"))

        tokens.extend(n for n in NUMBER_RE.findall(text) if len(n) >= 3)

        seen = set()
        unique: List[str] = []
        for tok in tokens:
            key = tok.lower()
            if tok and key not in seen:
                seen.add(key)
                unique.append(tok)
        return unique

    def extract_features(self, tokens: List[str], amount: float) -> Dict[str, float]:
        lowered = [t.lower() for t in tokens]
        combined = " ".join(tokens)
        features: Dict[str, float] = {
            "token_count": float(len(tokens)),
            "amount": float(amount),
            "amount_log": math.log10(max(amount, 0.0) + 1),
            "is_small_amount": 1.0 if amount < 100 else 0.0,
            "is_medium_amount": 1.0 if 100 <= amount <= 5000 else 0.0,
            "is_large_amount": 1.0 if amount > 5000 else 0.0,
            "is_round_amount": 1.0 if amount % 100 == 0 else 0.0,
        }
        for channel in ("upi", "card", "neft", "imps", "rtgs"):
            features[f"has_{channel}"] = 1.0 if any(channel in t for t in lowered) else 0.0

        features["has_restaurant_keywords"] = 1.0 if has_keywords(tokens, RESTAURANT_KEYWORDS) else 0.0
        features["has_shopping_keywords"] = 1.0 if has_keywords(tokens, SHOPPING_KEYWORDS) else 0.0
        features["has_service_keywords"] = 1.0 if has_keywords(tokens, SERVICE_KEYWORDS) else 0.0
        features["has_entertainment_keywords"] = 1.0 if has_keywords(tokens, ENTERTAINMENT_KEYWORDS) else 0.0
        features["has_merchant_indicators"] = 1.0 if has_keywords(tokens, MERCHANT_INDICATORS) else 0.0
        features["has_person_name_pattern"] = 1.0 if looks_like_person_name(tokens) else 0.0

        features["text_length"] = float(len(combined))
        features["avg_token_length"] = len(combined) / len(tokens) if tokens else 0.0
        features["has_numbers"] = 1.0 if re.search(r"\d", combined) else 0.0
        features["has_special_chars"] = 1.0 if re.search(r"[/\-_]", combined) else 0.0
        return features
