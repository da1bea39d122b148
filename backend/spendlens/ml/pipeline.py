import asyncio
from typing import Any, Dict, List, Optional, Sequence

from ..logging_utils import log_event
from ..models import (
    CategoryPrediction,
    CategoryRule,
    Confidence,
    Direction,
    Enrichment,
    MerchantPrediction,
    PreprocessedTransaction,
)
from ..rules import (
    DEFAULT_CATEGORY_RULES,
    FALLBACK_CATEGORY,
    UNKNOWN_MERCHANT,
    RuleEnrichment,
    categorize_transaction,
    determine_payment_method,
    enrich_with_rules,
    extract_merchant,
    extract_notes,
    generate_tags,
    is_recurring_by_keywords,
)
from ..settings import PipelineConfig
from .base import DEFAULT_ML_CONFIG, Readiness, create_confidence, should_use_ml_result
from .classifier import TransactionClassifier
from .merchant_extractor import EnhancedMerchantExtractor
from .preprocessor import TransactionTextPreprocessor

MERCHANT_WEIGHT = 0.4
CATEGORY_WEIGHT = 0.6

FULL_FALLBACK_SCORE = 0.6
RULE_MERCHANT_SCORE = 0.6
RULE_UNKNOWN_MERCHANT_SCORE = 0.3
RULE_CATEGORY_SCORE = 0.7
RULE_OTHERS_CATEGORY_SCORE = 0.4
NO_FALLBACK_MERCHANT_SCORE = 0.1
NO_FALLBACK_CATEGORY_SCORE = 0.3

HIGH_VALUE_AMOUNT = 10000
LARGE_ROUND_AMOUNT = 1000


def flatten_enrichment(enrichment: Enrichment) -> RuleEnrichment:
    """Collapse a pipeline result into the shape used to build a Transaction."""
    return RuleEnrichment(
        merchant=enrichment.merchant.normalized_merchant,
        category=enrichment.category.category or FALLBACK_CATEGORY,
        subcategory=enrichment.category.subcategory,
        payment_method=enrichment.payment_method,
        is_recurring=enrichment.is_recurring,
        tags=enrichment.tags,
        notes=enrichment.notes,
    )


def combine_sources(merchant: Confidence, category: Confidence) -> str:
    if merchant.source == "ml" and category.source == "ml":
        return "ml"
    if merchant.source == "rules" and category.source == "rules":
        return "rules"
    return "hybrid"


class MLTransactionPipeline:
    """
    Fuses the feature-based services with the rule engine.

    Merchant and category are decided independently: each one takes the ML
    answer only when it clears ``confidence_threshold`` and otherwise falls
    back to the rule answer for that concern alone. Anything unexpected
    degrades the whole call to a single rule pass.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        preprocessor: Optional[TransactionTextPreprocessor] = None,
        classifier: Optional[TransactionClassifier] = None,
        merchant_extractor: Optional[EnhancedMerchantExtractor] = None,
        rules: Sequence[CategoryRule] = DEFAULT_CATEGORY_RULES,
    ):
        self.config = config or DEFAULT_ML_CONFIG
        self.rules = list(rules)
        self.preprocessor = preprocessor or TransactionTextPreprocessor()
        self.classifier = classifier or TransactionClassifier(rules=self.rules)
        self.merchant_extractor = merchant_extractor or EnhancedMerchantExtractor(
            policy=self.config.merchant_normalization,
            model_name=self.config.model_path,
        )

    # ----------------- Readiness -----------------

    def service_readiness(self) -> List[Readiness]:
        return [
            self.preprocessor.readiness(),
            self.classifier.readiness(),
            self.merchant_extractor.readiness(),
        ]

    def readiness(self) -> Readiness:
        not_ready = [r for r in self.service_readiness() if not r.ready]
        if not_ready:
            reason = "; ".join(f"{r.service}: {r.reason}" for r in not_ready)
            return Readiness(service="MLTransactionPipeline", ready=False, reason=reason)
        return Readiness(service="MLTransactionPipeline", ready=True)

    def is_ready(self) -> bool:
        return self.readiness().ready

    def get_stats(self) -> Dict[str, Any]:
        return {
            "ready": self.is_ready(),
            "services": [r.model_dump() for r in self.service_readiness()],
            "config": self.config.model_dump(),
        }

    # ----------------- Enrichment -----------------

    async def enrich_transaction(self, description: str, amount: float, type: Direction = "debit") -> Enrichment:
        try:
            return await self._enrich(description, amount, type)
        except Exception as exc:
            log_event('error', 'ml.pipeline_failed', error=str(exc), error_type=exc.__class__.__name__)
            return self.rule_enrichment(description, amount, FULL_FALLBACK_SCORE)

    async def _enrich(self, description: str, amount: float, type: Direction) -> Enrichment:
        policy = self.config.merchant_normalization
        rule_merchant = extract_merchant(description, policy=policy)
        rule_category = categorize_transaction(description, rule_merchant, amount, self.rules)

        use_ml = self.config.use_ml and self.preprocessor.is_ready()
        preprocessed: Optional[PreprocessedTransaction] = None
        if use_ml:
            preprocessed = self.preprocessor.preprocess(description, amount, type)

        merchant, category = await asyncio.gather(
            self._merchant_stage(description, rule_merchant, use_ml),
            self._category_stage(preprocessed, rule_category.category, rule_category.subcategory),
        )

        payment_method = determine_payment_method(description)
        features = preprocessed.features if preprocessed is not None else {}
        is_recurring = self._is_recurring(description, category, features)

        ml_used = merchant.confidence.source == "ml" or category.confidence.source == "ml"
        tags = self._tags(description, merchant, category, amount, payment_method, ml_used)

        score = merchant.confidence.score * MERCHANT_WEIGHT + category.confidence.score * CATEGORY_WEIGHT
        return Enrichment(
            category=category,
            merchant=merchant,
            payment_method=payment_method,
            is_recurring=is_recurring,
            tags=tags,
            notes=extract_notes(description),
            confidence=create_confidence(score, combine_sources(merchant.confidence, category.confidence)),
        )

    async def _merchant_stage(self, description: str, rule_merchant: str, use_ml: bool) -> MerchantPrediction:
        threshold = self.config.confidence_threshold
        if use_ml:
            try:
                result = await asyncio.to_thread(self.merchant_extractor.extract_merchant, description, threshold)
            except Exception as exc:
                log_event('warning', 'ml.merchant_failed', error=str(exc))
                result = None
            if isinstance(result, MerchantPrediction) and should_use_ml_result(result.confidence, threshold):
                return result
        return self._fallback_merchant(rule_merchant)

    async def _category_stage(
        self, preprocessed: Optional[PreprocessedTransaction], rule_category: str, rule_subcategory: Optional[str]
    ) -> CategoryPrediction:
        threshold = self.config.confidence_threshold
        if preprocessed is not None:
            try:
                result = await asyncio.to_thread(self.classifier.classify, preprocessed)
            except Exception as exc:
                log_event('warning', 'ml.classify_failed', error=str(exc))
                result = None
            if isinstance(result, CategoryPrediction) and should_use_ml_result(result.confidence, threshold):
                return result
        return self._fallback_category(rule_category, rule_subcategory)

    def _fallback_merchant(self, rule_merchant: str) -> MerchantPrediction:
        if not self.config.fallback_to_rules:
            return MerchantPrediction(
                merchant=UNKNOWN_MERCHANT,
                normalized_merchant=UNKNOWN_MERCHANT,
                confidence=create_confidence(NO_FALLBACK_MERCHANT_SCORE, "rules"),
                extraction_method="fallback",
            )
        known = rule_merchant != UNKNOWN_MERCHANT
        return MerchantPrediction(
            merchant=rule_merchant,
            normalized_merchant=rule_merchant,
            confidence=create_confidence(RULE_MERCHANT_SCORE if known else RULE_UNKNOWN_MERCHANT_SCORE, "rules"),
            extraction_method="pattern" if known else "fallback",
        )

    def _fallback_category(self, rule_category: str, rule_subcategory: Optional[str]) -> CategoryPrediction:
        if not self.config.fallback_to_rules:
            return CategoryPrediction(
                category=FALLBACK_CATEGORY,
                confidence=create_confidence(NO_FALLBACK_CATEGORY_SCORE, "rules"),
            )
        score = RULE_OTHERS_CATEGORY_SCORE if rule_category == FALLBACK_CATEGORY else RULE_CATEGORY_SCORE
        return CategoryPrediction(
            category=rule_category,
            subcategory=rule_subcategory,
            confidence=create_confidence(score, "rules"),
        )

    def _is_recurring(self, description: str, category: CategoryPrediction, features: Dict[str, float]) -> bool:
        if features.get("has_entertainment_keywords") and features.get("is_round_amount"):
            return True
        if features.get("has_service_keywords") and features.get("is_medium_amount"):
            return True
        if category.category in ("Utilities", "Finance"):
            return True
        if category.category == "Entertainment" and category.subcategory == "Streaming Services":
            return True
        return is_recurring_by_keywords(description, category.category)

    def _tags(
        self,
        description: str,
        merchant: MerchantPrediction,
        category: CategoryPrediction,
        amount: float,
        payment_method: str,
        ml_used: bool,
    ) -> List[str]:
        tags = set(generate_tags(description, merchant.normalized_merchant, category.category, amount))
        if ml_used:
            tags.add("ml-enhanced")
        if payment_method == "UPI":
            tags.add("digital-payment")
        if payment_method == "Card":
            tags.add("card-payment")
        if amount > HIGH_VALUE_AMOUNT:
            tags.add("high-value")
        if amount % 100 == 0 and amount >= LARGE_ROUND_AMOUNT:
            tags.add("round-amount-large")
        if merchant.normalized_merchant != UNKNOWN_MERCHANT:
            tags.add("merchant-identified")
        return sorted(tags)

    def rule_enrichment(self, description: str, amount: float, score: float = FULL_FALLBACK_SCORE) -> Enrichment:
        rules = enrich_with_rules(description, amount, self.config.merchant_normalization)
        confidence = create_confidence(score, "rules")
        return Enrichment(
            category=CategoryPrediction(category=rules.category, subcategory=rules.subcategory, confidence=confidence),
            merchant=MerchantPrediction(
                merchant=rules.merchant,
                normalized_merchant=rules.merchant,
                confidence=confidence,
                extraction_method="pattern" if rules.merchant != UNKNOWN_MERCHANT else "fallback",
            ),
            payment_method=rules.payment_method,
            is_recurring=rules.is_recurring or is_recurring_by_keywords(description, rules.category),
            tags=rules.tags,
            notes=rules.notes,
            confidence=confidence,
        )


def create_ml_pipeline(config: Optional[PipelineConfig] = None) -> MLTransactionPipeline:
    config = config or DEFAULT_ML_CONFIG
    return MLTransactionPipeline(
        config=config,
        merchant_extractor=EnhancedMerchantExtractor(
            policy=config.merchant_normalization,
            model_name=config.model_path,
        ),
    )
