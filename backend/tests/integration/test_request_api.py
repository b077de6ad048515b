"""
Integration tests — 真实 HTTP 请求打到 Django View，验证完整流程。

用 Django test Client，走完：
  HTTP Request → urls.py → View → async_to_sync → Workflow → BackendClient → Response

marketplace 后端由 FakeBackend（httpx.MockTransport）代替，草稿 Redis 由 FakeRedis 代替。
每个测试验证：status_code + response body 的统一格式。
"""
import json
from unittest.mock import patch

import httpx
import pytest

from fulfillment.factory import open_workflow
from tests.conftest import BACKEND_URL, ok, raw_medicine, raw_pharmacy, raw_request

BILL = {
    'pharmacies': ['P1'],
    'medicines': [{'pharmacyId': 'P1', 'pharmacyName': 'City Pharmacy', 'name': 'Paracetamol',
                   'dosage': '500mg', 'quantity': 3, 'price': 10}],
    'totalAmount': 30,
    'message': 'Pharmacy request accepted. Selected pharmacies: City Pharmacy.',
}

SELECTION = {
    'selectedProviders': [{'id': 'P1', 'name': 'City Pharmacy', 'kind': 'pharmacy'}],
    'selectedLines': [{
        'providerId': 'P1',
        'providerName': 'City Pharmacy',
        'item': {'type': 'medicine', 'name': 'Paracetamol', 'dosage': '500mg'},
        'quantity': 3,
        'unitPrice': 10,
    }],
    'totalAmount': 30,
}

DRAFT_KEY = 'fulfillment:draft:R1:pharmacyData'


# -------------------------------------------------------------------
# Helper
# -------------------------------------------------------------------

@pytest.fixture
def backend(backend, fake_redis, settings):
    """把 views 里的 open_workflow 接到 FakeBackend + FakeRedis 上。"""
    settings.FULFILLMENT_BACKEND_URL = BACKEND_URL

    def fake_open_workflow():
        return open_workflow(transport=backend.transport(), redis_client=fake_redis)

    backend.add('GET', '/admin/requests', ok([]))
    with patch('fulfillment.views.open_workflow', fake_open_workflow):
        yield backend


@pytest.fixture
def pharmacy_catalog(backend):
    backend.add('GET', '/admin/pharmacies', ok([raw_pharmacy('P1')]))
    backend.add('GET', '/admin/inventory/pharmacies/P1', ok([
        raw_medicine(),
        raw_medicine('Amoxicillin', '250mg', 25),
    ]))
    return backend


def call(api_client, method, path, payload=None):
    """快捷方式：返回 (status_code, body_dict)。"""
    kwargs = {}
    if payload is not None:
        kwargs = {'data': json.dumps(payload), 'content_type': 'application/json'}
    response = getattr(api_client, method)(path, **kwargs)
    return response.status_code, json.loads(response.content)


# ===================================================================
# List / detail
# ===================================================================

class TestRequestList:

    def test_newest_first_with_actions(self, api_client, backend):
        backend.add('GET', '/admin/requests', ok([
            raw_request('R1', createdAt='2024-05-01T10:00:00Z'),
            raw_request('R2', status='accepted', createdAt='2024-05-02T10:00:00Z'),
        ]))

        status, body = call(api_client, 'get', '/api/requests/')

        assert status == 200
        assert body['count'] == 2
        assert [r['id'] for r in body['requests']] == ['R2', 'R1']
        assert body['requests'][0]['actions'] == ['generate_bill', 'cancel']

    def test_filters_forwarded(self, api_client, backend):
        call(api_client, 'get', '/api/requests/?status=pending&kind=book_test_visit&page=2')

        params = backend.called('GET', '/admin/requests')[0][2].url.params
        assert params['status'] == 'pending'
        assert params['type'] == 'book_test_visit'
        assert params['page'] == '2'

    @pytest.mark.parametrize('query', ['page=0', 'limit=abc', 'kind=invoice'])
    def test_bad_query_returns_400(self, api_client, backend, query):
        status, body = call(api_client, 'get', f'/api/requests/?{query}')

        assert status == 400
        assert body['type'] == 'validation_error'
        assert body['code'] == 'INVALID_QUERY_PARAM'
        assert backend.calls == []

    def test_backend_down_returns_502(self, api_client, backend):
        backend.add('GET', '/admin/requests', httpx.ConnectError('connection refused'))

        status, body = call(api_client, 'get', '/api/requests/')

        assert status == 502
        assert body['type'] == 'network_error'
        assert body['retryable'] is True

    def test_detail_not_found(self, api_client, backend):
        status, body = call(api_client, 'get', '/api/requests/R404/')

        assert status == 404
        assert body['code'] == 'NOT_FOUND'


# ===================================================================
# Accept / cancel
# ===================================================================

class TestAcceptAndCancel:

    def test_accept(self, api_client, backend):
        backend.add('GET', '/admin/requests/R1', ok(raw_request('R1')))
        backend.add('POST', '/admin/requests/R1/accept', ok(None))
        backend.add('GET', '/admin/requests', ok([raw_request('R1', status='accepted')]))

        status, body = call(api_client, 'post', '/api/requests/R1/accept/')

        assert status == 200
        assert body['request']['status'] == 'accepted'
        assert body['requests'][0]['status'] == 'accepted'

    def test_cancel_billed_request_is_state_error(self, api_client, backend):
        backend.add('GET', '/admin/requests/R1', ok(raw_request('R1', status='admin_responded', adminResponse=BILL)))

        status, body = call(api_client, 'post', '/api/requests/R1/cancel/', {'reason': 'Changed mind'})

        assert status == 409
        assert body['type'] == 'state_error'
        assert body['detail'] == {'from': 'bill_generated', 'to': 'cancelled'}
        assert not backend.called('POST', '/admin/requests/R1/cancel')

    def test_cancel_requires_reason(self, api_client, backend):
        backend.add('GET', '/admin/requests/R1', ok(raw_request('R1')))

        status, body = call(api_client, 'post', '/api/requests/R1/cancel/', {'reason': ' '})

        assert status == 400
        assert body['code'] == 'CANCEL_REASON_REQUIRED'

    def test_cancel(self, api_client, backend):
        backend.add('GET', '/admin/requests/R1', ok(raw_request('R1', status='accepted')))
        backend.add('POST', '/admin/requests/R1/cancel', ok(None))

        status, body = call(api_client, 'post', '/api/requests/R1/cancel/', {'reason': 'Out of stock'})

        assert status == 200
        assert body['request']['status'] == 'cancelled'
        assert body['request']['cancellation']['reason'] == 'Out of stock'
        assert backend.posted_json('/admin/requests/R1/cancel') == {'reason': 'Out of stock'}


# ===================================================================
# Providers
# ===================================================================

class TestProviders:

    def test_pharmacies_with_catalog(self, api_client, pharmacy_catalog):
        status, body = call(api_client, 'get', '/api/providers/pharmacy/')

        assert status == 200
        assert body['count'] == 1
        assert [item['name'] for item in body['providers'][0]['catalog']] == ['Paracetamol', 'Amoxicillin']

    def test_unknown_kind(self, api_client, backend):
        status, body = call(api_client, 'get', '/api/providers/hospital/')

        assert status == 400
        assert body['code'] == 'INVALID_PROVIDER_KIND'


# ===================================================================
# Editor + bill
# ===================================================================

class TestEditor:

    def test_open_empty_then_save_then_reopen(self, api_client, pharmacy_catalog, fake_redis):
        pharmacy_catalog.add('GET', '/admin/requests/R1', ok(raw_request('R1')))

        status, body = call(api_client, 'get', '/api/requests/R1/editor/')
        assert status == 200
        assert body['source'] == 'empty'
        assert body['draftsEnabled'] is True
        assert body['prescriptionMatches'][0]['item']['name'] == 'Paracetamol'

        status, body = call(api_client, 'put', '/api/requests/R1/editor/', {'selection': SELECTION})
        assert status == 200
        assert body['selection']['totalAmount'] == 30.0
        assert DRAFT_KEY in fake_redis.data

        status, body = call(api_client, 'get', '/api/requests/R1/editor/')
        assert body['source'] == 'draft'
        assert body['selection']['selectedLines'][0]['quantity'] == 3

    def test_put_unknown_provider_rejected(self, api_client, pharmacy_catalog, fake_redis):
        pharmacy_catalog.add('GET', '/admin/requests/R1', ok(raw_request('R1')))
        selection = dict(SELECTION, selectedProviders=[{'id': 'P9', 'name': 'Gone Pharmacy', 'kind': 'pharmacy'}])

        status, body = call(api_client, 'put', '/api/requests/R1/editor/', {'selection': selection})

        assert status == 400
        assert body['code'] == 'PROVIDER_NOT_AVAILABLE'
        assert DRAFT_KEY not in fake_redis.data

    def test_put_requires_selection(self, api_client, backend):
        status, body = call(api_client, 'put', '/api/requests/R1/editor/', {})

        assert status == 400
        assert body['code'] == 'INVALID_SELECTION'

    def test_redis_down_still_works(self, api_client, pharmacy_catalog, fake_redis):
        pharmacy_catalog.add('GET', '/admin/requests/R1', ok(raw_request('R1')))
        fake_redis.fail = True

        status, body = call(api_client, 'put', '/api/requests/R1/editor/', {'selection': SELECTION})

        assert status == 200
        assert body['draftsEnabled'] is False
        assert body['selection']['totalAmount'] == 30.0


class TestBill:

    def _stub_request(self, backend):
        pending = raw_request('R1')
        billed = raw_request('R1', status='admin_responded', adminResponse=BILL)

        def detail(request):
            responded = backend.called('POST', '/admin/requests/R1/respond')
            return 200, ok(billed if responded else pending)

        backend.add('GET', '/admin/requests/R1', detail)
        backend.add('POST', '/admin/requests/R1/respond', ok({'_id': 'R1', 'status': 'admin_responded'}))

    def test_generate_bill(self, api_client, pharmacy_catalog, fake_redis):
        self._stub_request(pharmacy_catalog)

        status, body = call(api_client, 'post', '/api/requests/R1/bill/', {'selection': SELECTION})

        assert status == 201
        assert body['status'] == 'bill_generated'
        assert body['response']['totalAmount'] == 30
        assert body['actions'] == ['confirm_payment']
        sent = pharmacy_catalog.posted_json('/admin/requests/R1/respond')
        assert sent['pharmacies'] == ['P1']
        assert sent['medicines'][0]['quantity'] == 3
        assert DRAFT_KEY not in fake_redis.data

    def test_bill_from_saved_draft(self, api_client, pharmacy_catalog):
        self._stub_request(pharmacy_catalog)
        call(api_client, 'put', '/api/requests/R1/editor/', {'selection': SELECTION})

        status, body = call(api_client, 'post', '/api/requests/R1/bill/', {'message': 'Ready by 5pm'})

        assert status == 201
        assert pharmacy_catalog.posted_json('/admin/requests/R1/respond')['message'] == 'Ready by 5pm'

    def test_invalid_quantity(self, api_client, pharmacy_catalog):
        self._stub_request(pharmacy_catalog)
        line = dict(SELECTION['selectedLines'][0], quantity='abc')

        status, body = call(api_client, 'post', '/api/requests/R1/bill/', {'selection': dict(SELECTION, selectedLines=[line])})

        assert status == 400
        assert body['code'] == 'INVALID_QUANTITY'
        assert not pharmacy_catalog.called('POST', '/admin/requests/R1/respond')

    def test_empty_selection(self, api_client, pharmacy_catalog):
        self._stub_request(pharmacy_catalog)

        status, body = call(api_client, 'post', '/api/requests/R1/bill/', {})

        assert status == 400
        assert body['code'] == 'NO_PROVIDER_SELECTED'

    def test_backend_rejects_bill(self, api_client, pharmacy_catalog):
        self._stub_request(pharmacy_catalog)
        pharmacy_catalog.add(
            'POST', '/admin/requests/R1/respond',
            {'success': False, 'message': 'Request already processed'}, status=400,
        )

        status, body = call(api_client, 'post', '/api/requests/R1/bill/', {'selection': SELECTION})

        assert status == 502
        assert body['code'] == 'BACKEND_REJECTED'
        assert body['message'] == 'Request already processed'


# ===================================================================
# Payment / assign
# ===================================================================

class TestPaymentAndAssign:

    def test_payment_confirmed(self, api_client, backend):
        backend.add('GET', '/admin/requests/R1', ok(raw_request('R1', status='admin_responded', adminResponse=BILL)))
        backend.add('POST', '/admin/requests/R1/payment-confirmed', ok(None))

        status, body = call(api_client, 'post', '/api/requests/R1/payment-confirmed/')

        assert status == 200
        assert body['status'] == 'payment_confirmed'
        assert body['paymentConfirmed'] is True
        assert body['actions'] == ['assign']
        assert len(backend.called('POST', '/admin/requests/R1/payment-confirmed')) == 1

    def test_payment_then_assign(self, api_client, backend):
        """payment-confirmed 之后重新 GET 详情是 payment_confirmed，assign 能直接走通。"""
        record = raw_request('R1', status='admin_responded', adminResponse=BILL)

        def mark_paid(request):
            record['paymentConfirmed'] = True
            return 200, ok(None)

        def mark_assigned(request):
            record['status'] = 'completed'
            return 200, ok(None)

        backend.add('GET', '/admin/requests/R1', lambda request: (200, ok(record)))
        backend.add('POST', '/admin/requests/R1/payment-confirmed', mark_paid)
        backend.add('POST', '/admin/requests/R1/assign', mark_assigned)

        status, _ = call(api_client, 'post', '/api/requests/R1/payment-confirmed/')
        assert status == 200

        status, body = call(api_client, 'get', '/api/requests/R1/')
        assert status == 200
        assert body['status'] == 'payment_confirmed'
        assert body['actions'] == ['assign']

        status, body = call(api_client, 'post', '/api/requests/R1/assign/')
        assert status == 201
        assert body['status'] == 'completed'
        assert body['orders'][0]['totalAmount'] == 30.0

        status, body = call(api_client, 'get', '/api/requests/R1/')
        assert body['status'] == 'completed'

    def test_payment_before_bill_is_state_error(self, api_client, backend):
        backend.add('GET', '/admin/requests/R1', ok(raw_request('R1')))

        status, body = call(api_client, 'post', '/api/requests/R1/payment-confirmed/')

        assert status == 409
        assert body['type'] == 'state_error'

    def test_assign(self, api_client, backend):
        backend.add('GET', '/admin/requests/R1', ok(raw_request('R1', status='confirmed', adminResponse=BILL)))
        backend.add('POST', '/admin/requests/R1/assign', ok(None))

        status, body = call(api_client, 'post', '/api/requests/R1/assign/')

        assert status == 201
        assert body['status'] == 'completed'
        assert body['count'] == 1
        assert body['orders'][0]['providerId'] == 'P1'
        assert backend.posted_json('/admin/requests/R1/assign')['orders'][0]['totalAmount'] == 30.0
