import pytest

from spendlens.text_cleaning import clean_description, clean_spaces, is_system_text


def test_clean_description_removes_disclaimer():
    text = 'UPI/NETFLIX/123 This is a system-generated statement. Hence, it does not require any signature.'
    assert clean_description(text) == 'UPI/NETFLIX/123'


def test_clean_description_removes_page_footer_and_trailing_slashes():
    assert clean_description('UPI/ZOMATO/x// Page 3') == 'UPI/ZOMATO/x'


def test_clean_description_page_marker_in_middle_keeps_words_apart():
    assert clean_description('UPI/LULU Page 2 HYPERMARKET') == 'UPI/LULU HYPERMARKET'


def test_clean_description_collapses_whitespace():
    assert clean_description('  UPI/SWIGGY   /  YES   BANK ') == 'UPI/SWIGGY / YES BANK'


def test_clean_description_empty():
    assert clean_description('') == ''


def test_clean_spaces():
    assert clean_spaces('a \t b\n c') == 'a b c'


@pytest.mark.parametrize('text', [
    'This is a system-generated statement.',
    'Hence, it does not require any signature.',
    'Page 4',
    'signature. Page 2',
    'Account Number: XXXXXXXX1234',
    'Transaction date',
    'Date Description Amount Type',
    'From 01/03/2024 To 31/03/2024',
])
def test_is_system_text_matches_statement_furniture(text):
    assert is_system_text(text) is True


@pytest.mark.parametrize('text', ['UPI/NETFLIX/123', '199.00', '15-03-2024', 'Pages of history'])
def test_is_system_text_leaves_transaction_text(text):
    assert is_system_text(text) is False
