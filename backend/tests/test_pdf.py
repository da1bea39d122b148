import asyncio

import pytest

from spendlens import pdf as pdf_module
from spendlens.adapters.icici import IciciStatementAdapter
from spendlens.errors import StatementDecodeError
from spendlens.pdf import open_document, word_to_fragment
from spendlens.settings import PipelineConfig


def test_word_to_fragment_flips_to_bottom_origin():
    frag = word_to_fragment({'text': 'DR', 'x0': 460.0, 'bottom': 142.0}, 842.0)
    assert frag.text == 'DR'
    assert frag.x == 460.0
    assert frag.y == 700.0


def test_open_document_reads_pages_and_words(icici_pdf):
    with open_document(icici_pdf) as doc:
        assert doc.page_count == 2
        assert 'ICICI Bank' in doc.page_text(0)
        fragments = doc.fragments(0)

    texts = [f.text for f in fragments]
    assert 'YES' in texts and 'BANK' in texts
    assert all(' ' not in t for t in texts)

    by_text = {f.text: f for f in fragments}
    # Baselines were drawn at y=800 and y=40; fragments sit at the glyph bottom.
    assert by_text['ICICI'].y == pytest.approx(800, abs=4)
    assert by_text['15-03-2024'].y > by_text['Page'].y
    assert by_text['15-03-2024'].y == pytest.approx(by_text['UPI/NETFLIX/123'].y)


def test_open_document_rejects_empty_and_garbage():
    with pytest.raises(StatementDecodeError):
        open_document(b'')
    with pytest.raises(StatementDecodeError):
        open_document(b'definitely not a pdf')


def test_open_document_closes_handle_when_page_tree_is_broken(monkeypatch):
    class BrokenPdf:
        closed = False

        @property
        def pages(self):
            raise ValueError('bad page tree')

        def close(self):
            self.closed = True

    broken = BrokenPdf()
    monkeypatch.setattr(pdf_module.pdfplumber, 'open', lambda stream, password=None: broken)
    with pytest.raises(StatementDecodeError):
        open_document(b'%PDF-1.4')
    assert broken.closed is True


def test_rendered_statement_parses_without_footer_text(icici_pdf):
    adapter = IciciStatementAdapter(config=PipelineConfig(use_ml=False))
    assert adapter.can_parse(icici_pdf, 'statement.pdf') is True

    result = asyncio.run(adapter.parse(icici_pdf, lambda percent, message=None: None))
    assert result.account_number == 'XXXXXXXX1234'
    assert [t.description for t in result.transactions] == [
        'UPI/NETFLIX/123',
        'UPI/SWIGGY/paytm.s123 YES BANK',
        'NEFT/N123456789012/ACME SERVICES PVT',
    ]
    assert [t.id for t in result.transactions] == [
        'icici_XXXXXXXX1234_15032024_0',
        'icici_XXXXXXXX1234_16032024_1',
        'icici_XXXXXXXX1234_18032024_3',
    ]
    assert result.transactions[0].merchant == 'Netflix'
    assert result.transactions[2].amount == 25000.0
    assert result.transactions[2].notes == 'Reference: N123456789012'
    assert result.warnings == ['Skipped transaction on page 2: Invalid date format: 31-02-2024']
