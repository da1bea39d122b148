import io
from typing import Any, Dict, List, Optional

import pdfplumber

from .errors import StatementDecodeError
from .models import Fragment


def word_to_fragment(word: Dict[str, Any], page_height: float) -> Fragment:
    # pdfplumber measures "bottom" from the top edge; fragments use PDF user space.
    return Fragment(text=word["text"], x=float(word["x0"]), y=float(page_height) - float(word["bottom"]))


class StatementDocument:
    """
    Thin pdfplumber wrapper exposing what adapters need: page count, the
    positioned fragments of a page and its plain text.
    """

    def __init__(self, pdf):
        self._pdf = pdf

    @property
    def page_count(self) -> int:
        return len(self._pdf.pages)

    def fragments(self, index: int) -> List[Fragment]:
        page = self._pdf.pages[index]
        words = page.extract_words() or []
        return [word_to_fragment(w, page.height) for w in words if (w.get("text") or "").strip()]

    def page_text(self, index: int) -> str:
        return self._pdf.pages[index].extract_text() or ""

    def close(self) -> None:
        self._pdf.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def open_document(data: bytes, password: Optional[str] = None) -> StatementDocument:
    """Open PDF bytes; anything pdfplumber cannot read becomes StatementDecodeError."""
    if not data:
        raise StatementDecodeError("Empty document.")
    try:
        pdf = pdfplumber.open(io.BytesIO(data), password=password)
    except Exception as exc:
        raise StatementDecodeError(f"Could not decode PDF: {exc}") from exc
    try:
        # pdfminer parses lazily; touching the page list surfaces broken files here.
        _ = len(pdf.pages)
    except Exception as exc:
        pdf.close()
        raise StatementDecodeError(f"Could not decode PDF: {exc}") from exc
    return StatementDocument(pdf)
