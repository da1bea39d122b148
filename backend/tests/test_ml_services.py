import math
from types import SimpleNamespace

import pytest

from spendlens.errors import MLServiceError
from spendlens.ml import merchant_extractor as merchant_module
from spendlens.ml.base import NotReady, create_confidence, should_use_ml_result
from spendlens.ml.classifier import CategoryPattern, TransactionClassifier
from spendlens.ml.merchant_extractor import EnhancedMerchantExtractor, detect_merchant_type, score_candidate
from spendlens.ml.preprocessor import TransactionTextPreprocessor, looks_like_person_name
from spendlens.models import MerchantPrediction

FEATURE_KEYS = {
    'token_count', 'amount', 'amount_log', 'is_small_amount', 'is_medium_amount', 'is_large_amount',
    'is_round_amount', 'has_upi', 'has_card', 'has_neft', 'has_imps', 'has_rtgs',
    'has_restaurant_keywords', 'has_shopping_keywords', 'has_service_keywords',
    'has_entertainment_keywords', 'has_merchant_indicators', 'has_person_name_pattern',
    'text_length', 'avg_token_length', 'has_numbers', 'has_special_chars',
}


@pytest.fixture(scope='module')
def preprocessor():
    return TransactionTextPreprocessor()


# ----------------- base -----------------

def test_create_confidence_clamps():
    assert create_confidence(1.7).score == 1.0
    assert create_confidence(-0.2, 'rules').score == 0.0


def test_should_use_ml_result_threshold_is_inclusive():
    assert should_use_ml_result(create_confidence(0.7), 0.7) is True
    assert should_use_ml_result(create_confidence(0.69), 0.7) is False


# ----------------- preprocessor -----------------

def test_preprocess_tokens_and_features(preprocessor):
    result = preprocessor.preprocess('UPI/NETFLIX/123', 199.0, 'debit')
    assert result.cleaned_description == 'upi/netflix/123'
    assert 'netflix' in result.tokens
    assert 'upi' in result.tokens
    assert '123' in result.tokens
    lowered = [t.lower() for t in result.tokens]
    assert len(lowered) == len(set(lowered))
    assert set(result.features) == FEATURE_KEYS
    assert result.features['has_upi'] == 1.0
    assert result.features['has_entertainment_keywords'] == 1.0
    assert result.features['is_medium_amount'] == 1.0
    assert result.features['amount_log'] == pytest.approx(math.log10(200))


def test_tokenize_drops_stop_words_and_short_tokens(preprocessor):
    tokens = preprocessor.tokenize('neft/xyz/acme services pvt to bank', 'NEFT/XYZ/ACME SERVICES PVT TO BANK')
    lowered = [t.lower() for t in tokens]
    assert 'bank' not in lowered
    assert 'to' not in lowered
    assert 'acme' in lowered
    assert 'services' in lowered
    assert 'neft' in lowered


def test_extract_features_amount_bands(preprocessor):
    features = preprocessor.extract_features(['lulu'], 6050.0)
    assert features['is_large_amount'] == 1.0
    assert features['is_round_amount'] == 0.0
    assert preprocessor.extract_features([], 50.0)['avg_token_length'] == 0.0
    assert preprocessor.extract_features([], 500.0)['is_round_amount'] == 1.0


def test_looks_like_person_name():
    assert looks_like_person_name(['praveen', 'kumar']) is True
    assert looks_like_person_name(['acme', 'services']) is False
    assert looks_like_person_name(['ravi', '12345']) is False
    assert looks_like_person_name([]) is False


def test_preprocess_wraps_tokenizer_failure():
    def broken(_text):
        raise RuntimeError('tokenizer exploded')

    with pytest.raises(MLServiceError) as exc_info:
        TransactionTextPreprocessor(nlp=broken).preprocess('UPI/NETFLIX/123', 199.0, 'debit')
    assert exc_info.value.service == 'TransactionTextPreprocessor'
    assert exc_info.value.operation == 'preprocess'


# ----------------- classifier -----------------

def test_classifier_streaming_with_rule_agreement(preprocessor):
    classifier = TransactionClassifier()
    prediction = classifier.classify(preprocessor.preprocess('UPI/NETFLIX/123', 199.0, 'debit'))
    assert prediction.category == 'Entertainment'
    assert prediction.subcategory == 'Streaming Services'
    assert prediction.confidence.score == 1.0
    assert prediction.confidence.source == 'ml'
    assert 0 < len(prediction.alternative_categories) <= 3
    assert all(alt.confidence > 0.3 for alt in prediction.alternative_categories)
    assert all(alt.category != 'Entertainment' for alt in prediction.alternative_categories)


def test_classifier_food_delivery(preprocessor):
    prediction = TransactionClassifier().classify(
        preprocessor.preprocess('UPI/SWIGGY/paytm.s123/YES BANK', 450.0, 'debit')
    )
    assert prediction.category == 'Food & Dining'
    assert prediction.subcategory == 'Food Delivery'


def test_classifier_falls_back_to_others_when_nothing_scores(preprocessor):
    weak = CategoryPattern(category='Weak', bonus_features=[], penalty_features=[], keywords=[], base_score=0.1)
    prediction = TransactionClassifier(patterns=[weak]).classify(preprocessor.preprocess('XYZ', 10.0, 'debit'))
    assert prediction.category == 'Others'
    assert prediction.confidence.score == 0.3


def test_classifier_amount_range_adjustment(preprocessor):
    ranged = CategoryPattern(
        category='Rent', bonus_features=[], penalty_features=[], keywords=[], base_score=0.6,
        amount_range=(5000, 50000),
    )
    classifier = TransactionClassifier(patterns=[ranged], rules=[])
    inside = classifier.classify(preprocessor.preprocess('XYZ', 20000.0, 'debit'))
    outside = classifier.classify(preprocessor.preprocess('XYZ', 100.0, 'debit'))
    assert inside.confidence.score == pytest.approx(0.7)
    assert outside.confidence.score == pytest.approx(0.3)


def test_classifier_not_ready_without_patterns(preprocessor):
    classifier = TransactionClassifier(patterns=[])
    assert classifier.is_ready() is False
    result = classifier.classify(preprocessor.preprocess('XYZ', 10.0, 'debit'))
    assert isinstance(result, NotReady)
    assert result.service == 'TransactionClassifier'


def test_classifier_wraps_internal_errors(preprocessor, monkeypatch):
    classifier = TransactionClassifier()

    def boom(_txn):
        raise KeyError('weights')

    monkeypatch.setattr(classifier, '_rank', boom)
    with pytest.raises(MLServiceError):
        classifier.classify(preprocessor.preprocess('UPI/NETFLIX/123', 199.0, 'debit'))


# ----------------- merchant extractor -----------------

def test_merchant_pattern_path_normalizes_brand():
    prediction = EnhancedMerchantExtractor(use_ner=False).extract_merchant('UPI/NETFLIX/123')
    assert isinstance(prediction, MerchantPrediction)
    assert prediction.merchant == 'NETFLIX'
    assert prediction.normalized_merchant == 'Netflix'
    assert prediction.extraction_method == 'pattern'
    assert prediction.confidence.score == pytest.approx(0.95)


def test_merchant_card_payment_pattern():
    prediction = EnhancedMerchantExtractor(use_ner=False).extract_merchant('CARD PAYMENT TO Lulu Hypermarket')
    assert prediction.normalized_merchant == 'Lulu Hypermarket'
    assert prediction.extraction_method == 'pattern'
    assert prediction.confidence.score == 1.0


def test_merchant_capitalized_run_candidate():
    prediction = EnhancedMerchantExtractor(use_ner=False).extract_merchant('POS 4521 WWW AMAZON IN')
    assert prediction.extraction_method == 'ml'
    assert prediction.normalized_merchant == 'Amazon'


def test_merchant_entity_candidate_from_ner():
    def fake_nlp(_text):
        return SimpleNamespace(ents=[
            SimpleNamespace(text='Bluedart Logistics', label_='ORG'),
            SimpleNamespace(text='991', label_='CARDINAL'),
        ])

    extractor = EnhancedMerchantExtractor(nlp=fake_nlp)
    prediction = extractor.extract_merchant('deposit ref 991 bluedart logistics')
    assert prediction.extraction_method == 'ml'
    assert prediction.merchant == 'Bluedart Logistics'
    assert prediction.confidence.score == pytest.approx(0.8)


def test_merchant_unknown_fallback():
    prediction = EnhancedMerchantExtractor(use_ner=False).extract_merchant('cash deposit 4521')
    assert prediction.merchant == 'Unknown'
    assert prediction.normalized_merchant == 'Unknown'
    assert prediction.extraction_method == 'fallback'
    assert prediction.confidence.score == pytest.approx(0.1)


def test_merchant_pattern_miss_uses_rule_extractor_score():
    extractor = EnhancedMerchantExtractor(use_ner=False)
    assert extractor.extract_with_patterns('cash deposit 4521') == ('cash deposit', 'cash deposit', 0.6)


def test_merchant_strict_policy_keeps_raw_name():
    prediction = EnhancedMerchantExtractor(policy='strict', use_ner=False).extract_merchant('UPI/SWIGGY STORE/1')
    assert prediction.normalized_merchant == 'SWIGGY STORE'


def test_ner_unavailable_is_logged_once(monkeypatch):
    events = []

    def fake_load(name):
        raise OSError(f"[E050] Can't find model '{name}'")

    monkeypatch.setattr(merchant_module.spacy, 'load', fake_load)
    monkeypatch.setattr(merchant_module, 'log_event', lambda level, name, **fields: events.append(name))

    extractor = EnhancedMerchantExtractor(model_name='missing_model')
    assert extractor.ner_available() is False
    extractor.entity_candidates('POS WWW AMAZON IN')
    extractor.entity_candidates('POS WWW FLIPKART IN')
    assert events == ['ml.ner_unavailable']


def test_score_candidate_penalizes_transaction_ids():
    assert score_candidate('ICI123456', 'organization') < score_candidate('ACME SERVICES', 'organization')


def test_detect_merchant_type():
    assert detect_merchant_type('Apollo Pharmacy') == ('healthcare', 0.9)
    assert detect_merchant_type('Skynet Sol')[0] == 'service'
    assert detect_merchant_type('Ravi') is None
