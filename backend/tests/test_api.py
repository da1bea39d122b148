import pytest
from fastapi.testclient import TestClient

import spendlens.main as main_module
from spendlens.adapters.base import AdapterRegistry
from spendlens.adapters.icici import IciciStatementAdapter
from spendlens.main import app
from spendlens.ml.merchant_extractor import EnhancedMerchantExtractor
from spendlens.ml.pipeline import MLTransactionPipeline
from spendlens.settings import PipelineConfig


@pytest.fixture
def client(monkeypatch):
    pipeline = MLTransactionPipeline(
        config=PipelineConfig(),
        merchant_extractor=EnhancedMerchantExtractor(use_ner=False),
    )
    monkeypatch.setattr(main_module, '_pipeline', pipeline)
    with TestClient(app) as c:
        yield c


def upload(client, name, data=b'%PDF-1.4 fake'):
    return client.post('/api/parse/statement', files={'file': (name, data, 'application/pdf')})


def test_health_ok(client):
    r = client.get('/health')
    assert r.status_code == 200
    assert r.json() == {'ok': True}


def test_request_id_is_echoed(client):
    r = client.get('/health', headers={'X-Request-ID': 'req-123'})
    assert r.headers['X-Request-ID'] == 'req-123'
    assert client.get('/health').headers.get('X-Request-ID')


def test_parse_rejects_non_pdf(client):
    r = upload(client, 'statement.csv', b'a,b,c')
    assert r.status_code == 400
    assert r.json()['detail'] == 'Please upload a PDF file.'


def test_parse_undecodable_icici_pdf_is_422(client):
    r = upload(client, 'icici_statement.pdf', b'definitely not a pdf')
    assert r.status_code == 422
    assert 'Could not decode PDF' in r.json()['detail']


def test_parse_without_matching_adapter_is_400(client):
    r = upload(client, 'statement.pdf', b'definitely not a pdf')
    assert r.status_code == 400
    assert r.json()['detail'] == 'No suitable parser found for this PDF.'


def test_parse_statement_success(client, monkeypatch, icici_pages, make_decoder):
    reg = AdapterRegistry()
    reg.register(IciciStatementAdapter(config=PipelineConfig(use_ml=False), decoder=make_decoder(icici_pages)))
    monkeypatch.setattr(main_module, 'registry', reg)

    r = upload(client, 'icici_statement.pdf')
    assert r.status_code == 200
    body = r.json()
    assert body['bank'] == 'ICICI'
    assert body['count'] == 3
    assert body['account_number'] == 'XXXXXXXX1234'
    assert body['transactions'][0]['date'] == '2024-03-15'
    assert body['transactions'][0]['merchant'] == 'Netflix'
    assert body['warnings'] == ['Skipped transaction on page 2: Invalid date format: 31-02-2024']


def test_enrich_transaction(client):
    r = client.post('/api/enrich', json={'description': 'UPI/NETFLIX/123', 'amount': 199.0})
    assert r.status_code == 200
    body = r.json()
    assert body['merchant']['normalized_merchant'] == 'Netflix'
    assert body['category']['category'] == 'Entertainment'
    assert body['confidence']['source'] == 'ml'


def test_enrich_validation(client):
    assert client.post('/api/enrich', json={'description': 'x', 'amount': -1}).status_code == 422
    assert client.post('/api/enrich', json={'description': '', 'amount': 10}).status_code == 422


def test_categorize_uses_rules(client):
    r = client.post('/api/categorize', json={'transactions': [
        {'description': 'UPI/SWIGGY/paytm.s123', 'amount': 450},
        {'description': 'ATM WDL 4521'},
    ]})
    assert r.status_code == 200
    rows = r.json()['transactions']
    assert rows[0]['merchant'] == 'Swiggy'
    assert rows[0]['category'] == 'Food & Dining'
    assert rows[0]['payment_method'] == 'Paytm'
    assert rows[1]['amount'] == 0.0
    assert rows[1]['category'] == 'Cash & ATM'


def test_ml_status(client):
    r = client.get('/api/ml/status')
    assert r.status_code == 200
    body = r.json()
    assert body['ready'] is True
    assert len(body['services']) == 3


def test_parse_rendered_statement_end_to_end(client, monkeypatch, icici_pdf):
    reg = AdapterRegistry()
    reg.register(IciciStatementAdapter(config=PipelineConfig(use_ml=False)))
    monkeypatch.setattr(main_module, 'registry', reg)

    r = upload(client, 'statement.pdf', icici_pdf)
    assert r.status_code == 200
    body = r.json()
    assert body['count'] == 3
    assert body['transactions'][1]['description'] == 'UPI/SWIGGY/paytm.s123 YES BANK'
