import pytest

from spendlens.errors import StatementDecodeError
from statement_fakes import ICICI_PDF_PAGES, FakeDocument, build_statement_pdf, line


@pytest.fixture
def icici_pages():
    page_one = (
        line(780, 'Account', 'Number:', 'XXXXXXXX1234')
        + line(760, 'Date', 'Description', 'Amount', 'Type')
        + line(700, '15-03-2024', 'UPI/NETFLIX/123', '199.00', 'DR')
        + line(680, '16-03-2024', 'UPI/SWIGGY/paytm.s123', '450.00', 'DR')
        + line(668, 'YES BANK')
        + line(40, 'Page 1')
    )
    page_two = (
        line(700, '31-02-2024', 'UPI/ZOMATO/77', '320.00', 'DR')
        + line(680, '18-03-2024', 'NEFT/N123456789012/ACME SERVICES PVT', '25,000.00', 'CR')
    )
    return [page_one, page_two]


@pytest.fixture
def make_decoder():
    opened = []

    def factory(pages, texts=None):
        def decode(_data):
            doc = FakeDocument(pages, texts)
            opened.append(doc)
            return doc

        decode.opened = opened
        return decode

    return factory


@pytest.fixture
def failing_decoder():
    def decode(_data):
        raise StatementDecodeError('Could not decode PDF: broken xref')

    return decode


@pytest.fixture(scope='session')
def icici_pdf():
    return build_statement_pdf(ICICI_PDF_PAGES)
