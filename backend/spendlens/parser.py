import re
from datetime import date
from typing import Iterable, List, Optional, Sequence

from .errors import InvalidDateError
from .models import Fragment, RawTransaction, Row
from .text_cleaning import clean_description, clean_spaces, is_system_text

Y_TOLERANCE = 5.0

DATE_TOKEN_RE = re.compile(r"^\d{2}[-/]\d{2}[-/]\d{4}$")
TYPE_TOKEN_RE = re.compile(r"^(DR|CR)$")
AMOUNT_TOKEN_RE = re.compile(r"^(\d{1,3}(?:,\d{3})*(?:\.\d{2})?|\d+(?:\.\d{2})?)$")

ACCOUNT_NUMBER_RE = re.compile(
    r"(?:Account\s+(?:Number|No\.?)|A/C\s*No\.?)\s*[:\-]?\s*([0-9Xx*]{6,20})",
    re.IGNORECASE,
)


def group_fragments_into_rows(
    fragments: Iterable[Fragment], y_tolerance: float = Y_TOLERANCE
) -> List[Row]:
    """
    Group positioned fragments into visual rows using Y proximity.

    Rows come out top of page first (descending y) and fragments inside a
    row left to right. A fragment joins the current row when its raw y is
    within ``y_tolerance`` of the previous fragment's y, so renderer jitter
    never splits a line and a gap larger than the tolerance always does.
    """
    ordered = sorted(fragments, key=lambda f: (-f.y, f.x))
    if not ordered:
        return []
    rows: List[Row] = []
    last_y: Optional[float] = None
    for frag in ordered:
        if last_y is None or abs(last_y - frag.y) > y_tolerance:
            rows.append([frag])
        else:
            rows[-1].append(frag)
        last_y = frag.y
    for row in rows:
        row.sort(key=lambda f: f.x)
    return rows


def row_text(row: Sequence[Fragment]) -> str:
    return clean_spaces(" ".join(f.text for f in row))


def rows_to_lines(rows: Iterable[Sequence[Fragment]]) -> List[str]:
    return [row_text(r) for r in rows]


def parse_amount(raw: str) -> float:
    """Strip thousands separators and parse, e.g. "1,234.56" -> 1234.56."""
    return float(raw.replace(",", "").strip())


def parse_statement_date(raw: str) -> date:
    """Parse a DD-MM-YYYY or DD/MM/YYYY statement date."""
    parts = re.split(r"[-/]", (raw or "").strip())
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise InvalidDateError(f"Invalid date format: {raw}")
    day, month, year = (int(p) for p in parts)
    if not (1 <= day <= 31) or not (1 <= month <= 12) or year < 1900:
        raise InvalidDateError(f"Invalid date format: {raw}")
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise InvalidDateError(f"Invalid date format: {raw}") from exc


def extract_account_number(lines: Iterable[str]) -> Optional[str]:
    for line in lines:
        m = ACCOUNT_NUMBER_RE.search(line or "")
        if m:
            return m.group(1)
    return None


def _row_tokens(row: Sequence[Fragment]) -> List[str]:
    # The text layer splits footers and disclaimers into single words, so the
    # joined row is what gets checked against the boilerplate patterns.
    if is_system_text(row_text(row)):
        return []
    tokens = []
    for frag in row:
        text = frag.text.strip()
        if not text or is_system_text(text):
            continue
        tokens.append(text)
    return tokens


def segment_rows(rows: Iterable[Sequence[Fragment]]) -> List[RawTransaction]:
    """
    Turn ordered rows into raw transactions.

    A row holding a date token opens a transaction; rows without one
    continue the open transaction (extra description text, or a type or
    amount that wrapped onto the next line). A transaction is emitted only
    once it has both a date and an amount.
    """
    txs: List[RawTransaction] = []
    current_date: Optional[str] = None
    current_type: Optional[str] = None
    current_amount: Optional[float] = None
    description_parts: List[str] = []

    def flush():
        nonlocal current_date, current_type, current_amount, description_parts
        if current_date is not None and current_amount is not None:
            description = clean_description(" ".join(description_parts))
            if description:
                txs.append(RawTransaction(
                    date=current_date,
                    description=description,
                    amount=current_amount,
                    type=current_type or "DR",
                ))
        current_date = None
        current_type = None
        current_amount = None
        description_parts = []

    def absorb(tokens: List[str]):
        nonlocal current_type, current_amount
        for tok in tokens:
            if TYPE_TOKEN_RE.match(tok):
                if current_type is None:
                    current_type = tok
            elif AMOUNT_TOKEN_RE.match(tok):
                if current_amount is None:
                    current_amount = parse_amount(tok)
            elif len(tok) > 1:
                description_parts.append(tok)

    for row in rows:
        tokens = _row_tokens(row)
        if not tokens:
            continue
        date_idx = next((i for i, tok in enumerate(tokens) if DATE_TOKEN_RE.match(tok)), None)
        if date_idx is not None:
            flush()
            current_date = tokens[date_idx]
            absorb(tokens[:date_idx] + tokens[date_idx + 1:])
        elif current_date is not None:
            absorb(tokens)

    flush()
    return txs
