import re
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from .errors import InvalidDateError
from .models import (
    AmountThreshold,
    CategoryRule,
    Confidence,
    MerchantPattern,
    RawTransaction,
    Transaction,
    utc_now,
)
from .parser import parse_statement_date
from .settings import MerchantNormalization

UNKNOWN_MERCHANT = "Unknown"
FALLBACK_CATEGORY = "Others"

# ----------------- Merchant extraction -----------------


def _strip_upi_suffix(name: str) -> str:
    return re.sub(r"\s+(REST|H|CO|PVT|LTD|SOLUTIONS?|SOL)$", "", name, flags=re.IGNORECASE).strip()


def _strip_bill_tail(name: str) -> str:
    return re.sub(r"\s*(CREDIT CA|EMI|LOAN).*$", "", name, flags=re.IGNORECASE).strip()


UPI_MERCHANT_PATTERNS: List[MerchantPattern] = [
    MerchantPattern(regex=re.compile(r"UPI/([^/]+)(?:/.*)?$", re.IGNORECASE), extract_group=1, cleanup=_strip_upi_suffix),
    MerchantPattern(regex=re.compile(r"IMPS/([^/]+)/([^/]+)", re.IGNORECASE), extract_group=2),
    MerchantPattern(regex=re.compile(r"NEFT/([^/]+)/([^/]+)", re.IGNORECASE), extract_group=2),
    MerchantPattern(regex=re.compile(r"RTGS/([^/]+)/([^/]+)", re.IGNORECASE), extract_group=2),
    MerchantPattern(regex=re.compile(r"BIL/(.+?)(?:/.*)?$", re.IGNORECASE), extract_group=1, cleanup=_strip_bill_tail),
]

MERCHANT_NORMALIZATIONS: Dict[str, str] = {
    "SWIGGY": "Swiggy",
    "SWIGGYINST": "Swiggy Instamart",
    "SWIGGYINSTAMAR": "Swiggy Instamart",
    "ZOMATO": "Zomato",
    "NETFLIX": "Netflix",
    "NETFLIX CO": "Netflix",
    "AMAZON": "Amazon",
    "FLIPKART": "Flipkart",
    "PAYTM": "Paytm",
    "PHONEPE": "PhonePe",
    "GPAY": "Google Pay",
    "GOOGLE IND": "Google",
    "GOOGLE INDIA": "Google",
    "UBER": "Uber",
    "OLA": "Ola",
    "MYNTRA": "Myntra",
    "AJIO": "Ajio",
    "MY LOOKS": "My Looks",
    "MY LOOKS H": "My Looks",
    "LORDS REST": "Lords Restaurant",
    "LORDS": "Lords Restaurant",
    "THE HAVEN": "The Haven Supermarket",
    "PVR INOX": "PVR Inox",
    "PVR INOX L": "PVR Inox",
    "LULU INTER": "Lulu Hypermarket",
    "LULU": "Lulu Hypermarket",
    "D CAFE AND": "D Cafe",
    "ANBARASI A": "Anbarasi Restaurant",
    "SKYNET SOL": "Skynet Solutions",
    "BROADWAY A": "Broadway",
    "BROADWAY": "Broadway",
    "GOODCAREPE": "Good Care Pest Control",
    "MALABARCOM": "Malabar Restaurant",
    "PARKINGBOO": "Parking Booking",
    "ABHIRAMIPR": "Abhirami",
    "ABHIRAMI V": "Abhirami",
    "LAKSHMY FU": "Lakshmy",
    "J S FRUITS": "J S Fruits",
    "AKB FRUITS": "AKB Fruits",
    "BAAWRCHI T": "Baawrchi",
    "MEJO JACOB": "Mejo Jacob",
    "PRAVEEN KU": "Praveen Kumar",
    "MINIMOL R": "Minimol",
    "NANDANA M": "Nandana",
    "MURALI R": "Murali",
    "JAYAKRISHN": "Jayakrishnan",
    "SHAMLA J": "Shamla",
    "GVR AND CO": "GVR & Co",
    "RAMESAN C": "Ramesan",
    "MOHAMMAD A": "Mohammad",
    "BHARAT KUM": "Bharat Kumar",
    "AMBIKA NIT": "Ambika",
    "SHABABAIK": "Shabab",
    "PARAGON LU": "Paragon",
}

_LENIENT_KEYS = sorted(MERCHANT_NORMALIZATIONS, key=len, reverse=True)

FALLBACK_STOP_WORDS = {
    "UPI", "BANK", "ICI", "ICICI", "HDFC", "AXIS", "YES", "SBI", "STATE", "TO", "FROM",
    "TRANSFER", "PAYMENT", "MONTHLY", "AU", "GENERATING",
}


def clean_merchant_name(name: str) -> str:
    name = re.sub(
        r"\s+(REST|RESTAURANT|PVT\s*LTD|LTD|PVT|PRIVATE|LIMITED|COMPANY|CO|INC|CORP|LLC|SOL|SOLUTIONS?|H)\s*$",
        "",
        name or "",
        flags=re.IGNORECASE,
    )
    name = re.sub(r"\s+[A-Z]$", "", name)
    name = re.sub(r"^(MR|MS|DR|PROF)\s+", "", name, flags=re.IGNORECASE)
    name = re.sub(r"\b[A-Z]{3}\d{6,}\b", "", name)
    name = re.sub(r"\b\d{6,}\b", "", name)
    name = re.sub(r"[^A-Za-z0-9\s\-&]", " ", name)
    return re.sub(r"\s+", " ", name).strip()


def title_case(name: str) -> str:
    return " ".join(w[:1].upper() + w[1:] for w in name.lower().split(" "))


def normalize_merchant_name(
    name: str,
    policy: MerchantNormalization = "lenient",
    normalizations: Optional[Dict[str, str]] = None,
) -> str:
    """
    Map a raw merchant name onto its brand spelling.

    ``strict`` only accepts exact (upper-cased) table hits and otherwise
    returns the input unchanged. ``lenient`` additionally tries substring
    containment against table keys, longest key first, and title-cases
    anything still unmatched.
    """
    table = MERCHANT_NORMALIZATIONS if normalizations is None else normalizations
    upper = (name or "").strip().upper()
    if upper in table:
        return table[upper]
    if policy == "strict":
        return name
    keys = _LENIENT_KEYS if normalizations is None else sorted(table, key=len, reverse=True)
    for key in keys:
        if key in upper:
            return table[key]
    return title_case(name.strip())


def extract_fallback_merchant(description: str) -> str:
    words = []
    for word in re.split(r"[\s/\-_|]+", description or ""):
        letters = re.sub(r"[^A-Za-z]", "", word).upper()
        if len(letters) >= 3 and letters not in FALLBACK_STOP_WORDS:
            words.append(word)
        if len(words) == 2:
            break
    return " ".join(words).strip() or UNKNOWN_MERCHANT


def extract_merchant(
    description: str,
    patterns: Sequence[MerchantPattern] = UPI_MERCHANT_PATTERNS,
    policy: MerchantNormalization = "lenient",
) -> str:
    desc = (description or "").strip()
    for pattern in patterns:
        m = pattern.regex.search(desc)
        if not m or not m.group(pattern.extract_group):
            continue
        merchant = m.group(pattern.extract_group).strip()
        if pattern.cleanup is not None:
            merchant = pattern.cleanup(merchant)
        merchant = clean_merchant_name(merchant)
        if len(merchant) > 1:
            return normalize_merchant_name(merchant, policy)
    return extract_fallback_merchant(desc)


# ----------------- Categorization -----------------

DEFAULT_CATEGORY_RULES: List[CategoryRule] = [
    CategoryRule(
        keywords=["pvr", "inox", "cinema", "movie", "theatre", "theater"],
        merchant_keywords=["pvr inox", "pvr", "inox"],
        category="Entertainment", subcategory="Movies",
    ),
    CategoryRule(
        keywords=["netflix", "prime", "spotify", "youtube", "hotstar", "zee5", "voot"],
        merchant_keywords=["netflix"],
        category="Entertainment", subcategory="Streaming Services", is_recurring=True,
    ),
    CategoryRule(
        keywords=["swiggy", "zomato", "uber eats", "food delivery", "instamart"],
        merchant_keywords=["swiggy", "swiggy instamart", "zomato"],
        category="Food & Dining", subcategory="Food Delivery",
    ),
    CategoryRule(
        keywords=["restaurant", "cafe", "dining", "hotel", "bar", "rest", "anbarasi", "lords", "malabar", "baawrchi"],
        merchant_keywords=["lords restaurant", "anbarasi restaurant", "d cafe", "malabar restaurant", "baawrchi"],
        category="Food & Dining", subcategory="Restaurant",
    ),
    CategoryRule(
        keywords=["supermarket", "grocery", "haven", "lulu", "hypermarket"],
        merchant_keywords=["the haven supermarket", "lulu hypermarket"],
        category="Shopping", subcategory="Groceries",
    ),
    CategoryRule(
        keywords=["amazon", "flipkart", "myntra", "ajio", "shopping", "mall", "store", "looks"],
        merchant_keywords=["my looks"],
        category="Shopping", subcategory="Online Shopping",
    ),
    CategoryRule(
        keywords=["uber", "ola", "rapido", "taxi", "auto", "metro", "bus", "train", "ixigo"],
        merchant_keywords=["ixigo"],
        category="Transportation", subcategory="Travel Booking",
    ),
    CategoryRule(
        keywords=["pest control", "goodcare", "skynet"],
        merchant_keywords=["good care pest control", "skynet solutions"],
        category="Home & Services", subcategory="Pest Control",
    ),
    CategoryRule(
        keywords=["electricity", "water", "gas", "internet", "mobile", "phone", "broadband"],
        category="Utilities", subcategory="Bills", is_recurring=True,
    ),
    CategoryRule(
        keywords=["medical", "hospital", "pharmacy", "doctor", "clinic", "health"],
        category="Healthcare",
    ),
    CategoryRule(
        keywords=["petrol", "diesel", "fuel", "hp", "bharat petroleum", "indian oil"],
        category="Transportation", subcategory="Fuel",
    ),
    CategoryRule(
        keywords=["parking", "parkingboo"],
        merchant_keywords=["parking booking"],
        category="Transportation", subcategory="Parking",
    ),
    CategoryRule(
        keywords=["atm", "cash", "withdrawal"],
        category="Cash & ATM",
    ),
    CategoryRule(
        keywords=["loan", "emi", "credit card", "personal loan"],
        category="Finance", subcategory="Loans & EMI", is_recurring=True,
    ),
]

BUSINESS_KEYWORDS = [
    "pvt", "ltd", "co", "inc", "corp", "bank", "services", "solutions",
    "restaurant", "supermarket", "store", "cafe", "mall", "shop",
]


class RuleCategorization(BaseModel):
    category: str
    subcategory: Optional[str] = None
    payment_method: str
    is_recurring: bool = False


class RuleEnrichment(BaseModel):
    merchant: str
    category: str
    subcategory: Optional[str] = None
    payment_method: str
    is_recurring: bool
    tags: List[str]
    notes: Optional[str] = None


def amount_within(threshold: Optional[AmountThreshold], amount: float) -> bool:
    if threshold is None:
        return True
    if threshold.min is not None and amount < threshold.min:
        return False
    if threshold.max is not None and amount > threshold.max:
        return False
    return True


def match_rule(
    text: str, merchant_text: str, amount: float, rules: Sequence[CategoryRule] = DEFAULT_CATEGORY_RULES
) -> Optional[CategoryRule]:
    """First rule whose keywords hit ``text`` (or merchant keywords hit ``merchant_text``)."""
    text = text.lower()
    merchant_text = merchant_text.lower()
    for rule in rules:
        keyword_hit = any(k.lower() in text for k in rule.keywords)
        merchant_hit = any(k.lower() in merchant_text for k in rule.merchant_keywords)
        if (keyword_hit or merchant_hit) and amount_within(rule.amount_threshold, amount):
            return rule
    return None


def determine_payment_method(description: str) -> str:
    desc = (description or "").lower()
    if "bhqr" in desc or "qr" in desc:
        return "QR Code"
    if "gpay" in desc:
        return "Google Pay"
    if "paytm" in desc:
        return "Paytm"
    if "phonepe" in desc:
        return "PhonePe"
    if "upi" in desc:
        return "UPI"
    if "card" in desc:
        return "Card"
    if "neft" in desc or "rtgs" in desc:
        return "Bank Transfer"
    if "bil/" in desc:
        return "Bill Payment"
    if "imps" in desc:
        return "IMPS"
    # Statements are UPI-dominated.
    return "UPI"


def is_personal_transfer(description: str, merchant: str) -> bool:
    desc = (description or "").lower()
    merch = (merchant or "").lower()
    if "paytm-" in desc or "gpay-" in desc or "phonepe" in desc:
        return True
    if any(k in merch for k in BUSINESS_KEYWORDS):
        return False
    return (
        len(merch) < 25
        and "@" not in merch
        and "www" not in merch
        and not re.search(r"\d{4,}", merch)
    )


def categorize_transaction(
    description: str,
    merchant: str,
    amount: float,
    rules: Sequence[CategoryRule] = DEFAULT_CATEGORY_RULES,
    detect_personal_transfers: bool = True,
) -> RuleCategorization:
    payment_method = determine_payment_method(description)
    combined = f"{description} {merchant}"
    rule = match_rule(combined, merchant, amount, rules)
    if rule is not None:
        return RuleCategorization(
            category=rule.category,
            subcategory=rule.subcategory,
            payment_method=payment_method,
            is_recurring=rule.is_recurring,
        )
    if detect_personal_transfers and is_personal_transfer(description, merchant):
        return RuleCategorization(category="Transfer", subcategory="Personal", payment_method=payment_method)
    return RuleCategorization(category=FALLBACK_CATEGORY, payment_method=payment_method)


RECURRING_KEYWORDS = ["monthly", "subscription", "emi", "loan", "netflix", "prime"]
RECURRING_CATEGORIES = {"Utilities", "Finance"}


def is_recurring_by_keywords(description: str, category: str) -> bool:
    desc = (description or "").lower()
    return any(k in desc for k in RECURRING_KEYWORDS) or category in RECURRING_CATEGORIES


# ----------------- Tags & notes -----------------

CHANNEL_TAGS = [
    ("bhqr", "qr-payment"),
    ("upi", "upi"),
    ("gpay", "google-pay"),
    ("paytm", "paytm"),
    ("neft", "neft"),
    ("imps", "imps"),
    ("rtgs", "rtgs"),
]

BANK_TAGS = [
    (("hdfc",), "hdfc-bank"),
    (("icici",), "icici-bank"),
    (("axis",), "axis-bank"),
    (("sbi", "state bank"), "sbi-bank"),
    (("yes bank",), "yes-bank"),
]


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", (value or "").lower())
    return re.sub(r"-+", "-", slug).strip("-")


def generate_tags(description: str, merchant: str, category: str, amount: Optional[float] = None) -> List[str]:
    tags = set()
    desc = (description or "").lower()
    merch = (merchant or "").lower()

    tags.add(re.sub(r"[\s&]", "-", category.lower()))

    for needle, tag in CHANNEL_TAGS:
        if needle in desc:
            tags.add(tag)
    for needles, tag in BANK_TAGS:
        if any(n in desc for n in needles):
            tags.add(tag)

    if "swiggy" in merch:
        tags.add("food-delivery")
        if "instamart" in merch:
            tags.add("grocery-delivery")
    if re.search(r"netflix|prime|spotify", merch):
        tags.update({"subscription", "monthly-bill"})
    if re.search(r"emi|loan", desc):
        tags.update({"recurring", "loan-payment"})

    if amount:
        if amount > 10000:
            tags.add("high-amount")
        if amount < 100:
            tags.add("small-amount")

    if merchant and merchant != UNKNOWN_MERCHANT and len(merchant) > 2:
        merchant_tag = slugify(merchant)
        if len(merchant_tag) > 1:
            tags.add(f"merchant-{merchant_tag}")

    return sorted(t for t in tags if t)


ICICI_TXN_ID_RE = re.compile(r"(ICI[a-f0-9]{6,})", re.IGNORECASE)
REFERENCE_RE = re.compile(r"\b([A-Z0-9]{10,})\b")


def extract_notes(description: str) -> Optional[str]:
    m = ICICI_TXN_ID_RE.search(description or "")
    if m:
        return f"Transaction ID: {m.group(1)}"
    m = REFERENCE_RE.search(description or "")
    if m:
        return f"Reference: {m.group(1)}"
    return None


# ----------------- Rule-only enrichment & conversion -----------------


def enrich_with_rules(
    description: str, amount: float, policy: MerchantNormalization = "lenient"
) -> RuleEnrichment:
    merchant = extract_merchant(description, policy=policy)
    result = categorize_transaction(description, merchant, amount)
    return RuleEnrichment(
        merchant=merchant,
        category=result.category,
        subcategory=result.subcategory,
        payment_method=result.payment_method,
        is_recurring=result.is_recurring,
        tags=generate_tags(description, merchant, result.category, amount),
        notes=extract_notes(description),
    )


def make_transaction_id(bank_name: str, account_number: str, raw_date: str, index: int) -> str:
    date_key = re.sub(r"[-/]", "", raw_date)
    return f"{bank_name.lower()}_{account_number}_{date_key}_{index}"


def build_transaction(
    raw: RawTransaction,
    enrichment: RuleEnrichment,
    account_number: str,
    bank_name: str,
    index: int,
    now: Optional[datetime] = None,
    confidence: Optional[Confidence] = None,
) -> Transaction:
    """Raises InvalidDateError when the raw date is not a real calendar date."""
    now = now or utc_now()
    return Transaction(
        id=make_transaction_id(bank_name, account_number, raw.date, index),
        date=parse_statement_date(raw.date),
        amount=raw.amount,
        description=raw.description,
        type="debit" if raw.type == "DR" else "credit",
        category=enrichment.category or FALLBACK_CATEGORY,
        subcategory=enrichment.subcategory,
        merchant=enrichment.merchant,
        account=account_number,
        payment_method=enrichment.payment_method,
        is_recurring=enrichment.is_recurring,
        tags=enrichment.tags,
        notes=enrichment.notes,
        is_verified=False,
        created_at=now,
        updated_at=now,
        confidence=confidence,
    )


Enricher = Callable[[RawTransaction], Tuple[RuleEnrichment, Optional[Confidence]]]


def rule_enricher(policy: MerchantNormalization = "lenient") -> Enricher:
    def enrich(raw: RawTransaction) -> Tuple[RuleEnrichment, Optional[Confidence]]:
        return enrich_with_rules(raw.description, raw.amount, policy), None

    return enrich


def convert_to_transactions(
    raw_transactions: Sequence[RawTransaction],
    account_number: str,
    bank_name: str = "ICICI",
    enrich: Optional[Enricher] = None,
    start_index: int = 0,
    now: Optional[datetime] = None,
    on_skip: Optional[Callable[[RawTransaction, InvalidDateError], None]] = None,
) -> List[Transaction]:
    """
    Enrich and convert raw records in order.

    Every record consumes one index, skipped or not, so ids stay unique
    across calls that continue from ``start_index``. A record whose date is
    not a real calendar date raises ``InvalidDateError`` unless ``on_skip``
    is given, in which case it is reported there and left out.
    """
    enrich = enrich or rule_enricher()
    now = now or utc_now()
    out: List[Transaction] = []
    for offset, raw in enumerate(raw_transactions):
        try:
            parse_statement_date(raw.date)
        except InvalidDateError as exc:
            if on_skip is None:
                raise
            on_skip(raw, exc)
            continue
        enrichment, confidence = enrich(raw)
        out.append(build_transaction(
            raw, enrichment, account_number, bank_name, start_index + offset, now=now, confidence=confidence
        ))
    return out
