import re
from typing import List, Pattern, Tuple

# (pattern, replacement) pairs applied in order to every description.
BOILERPLATE_SUBSTITUTIONS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"This is a system-generated statement\.?\s*", re.IGNORECASE), ""),
    (re.compile(r"Hence,?\s*it does not require any signature\.?\s*", re.IGNORECASE), ""),
    (re.compile(r"signature\.\s*Page\s*\d+", re.IGNORECASE), ""),
    (re.compile(r"\s*\bPage \d+\s*", re.IGNORECASE), " "),
]

TRAILING_SLASHES_RE = re.compile(r"/+$")
WHITESPACE_RE = re.compile(r"\s+")

# Lines matching any of these never reach the segmenter.
SYSTEM_TEXT_PATTERNS: List[Pattern[str]] = [
    re.compile(r"^This is a system-generated", re.IGNORECASE),
    re.compile(r"Hence, it does not require", re.IGNORECASE),
    re.compile(r"any signature", re.IGNORECASE),
    re.compile(r"Page \d+$", re.IGNORECASE),
    re.compile(r"signature\.\s*Page", re.IGNORECASE),
    re.compile(r"Account Number", re.IGNORECASE),
    re.compile(r"Transaction date", re.IGNORECASE),
    re.compile(r"Date\s*Description\s*Amount\s*Type", re.IGNORECASE),
    re.compile(r"From \d{2}/\d{2}/\d{4} To \d{2}/\d{2}/\d{4}", re.IGNORECASE),
]


def clean_spaces(s: str) -> str:
    return WHITESPACE_RE.sub(" ", s).strip()


def strip_boilerplate(text: str) -> str:
    for pattern, replacement in BOILERPLATE_SUBSTITUTIONS:
        text = pattern.sub(replacement, text)
    return text


def clean_description(description: str) -> str:
    """
    Remove statement disclaimers and page footers from a transaction
    description, drop trailing slash runs and collapse whitespace.
    """
    text = strip_boilerplate(description or "")
    text = clean_spaces(text)
    text = TRAILING_SLASHES_RE.sub("", text)
    return clean_spaces(text)


def is_system_text(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in SYSTEM_TEXT_PATTERNS)
