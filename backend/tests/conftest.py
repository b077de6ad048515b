"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
后端用 httpx.MockTransport 假装，Redis 用内存里的 FakeRedis 假装，
异步核心层在同步测试里用 asyncio.run 驱动。
"""
import json

import factory
import httpx
import pytest
from django.test import Client
from redis.exceptions import ConnectionError as RedisConnectionError

from fulfillment.client import BackendClient
from fulfillment.drafts import DraftStore
from fulfillment.types import (
    Contact,
    LabTest,
    Medicine,
    PatientSnapshot,
    PrescriptionSnapshot,
    Provider,
    ProviderKind,
    Request,
    RequestKind,
    RequestStatus,
)

BACKEND_URL = 'http://backend.test/api'


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class ContactFactory(factory.Factory):
    class Meta:
        model = Contact

    phone = '9800000000'
    email = factory.Sequence(lambda n: f'provider{n}@example.com')
    address = 'MG Road, Pune, MH'


class MedicineFactory(factory.Factory):
    class Meta:
        model = Medicine

    name = 'Paracetamol'
    dosage = '500mg'
    manufacturer = 'Cipla'
    available_quantity = 100
    unit_price = 10.0
    id = factory.Sequence(lambda n: f'med-{n}')


class LabTestFactory(factory.Factory):
    class Meta:
        model = LabTest

    name = 'CBC'
    description = 'Complete blood count'
    price = 500.0
    id = factory.Sequence(lambda n: f'test-{n}')


class PharmacyFactory(factory.Factory):
    class Meta:
        model = Provider

    id = factory.Sequence(lambda n: f'P{n + 1}')
    name = factory.Sequence(lambda n: f'City Pharmacy {n + 1}')
    kind = ProviderKind.PHARMACY
    contact = factory.SubFactory(ContactFactory)
    catalog = factory.LazyFunction(lambda: [MedicineFactory()])


class LaboratoryFactory(factory.Factory):
    class Meta:
        model = Provider

    id = factory.Sequence(lambda n: f'L{n + 1}')
    name = factory.Sequence(lambda n: f'Metro Labs {n + 1}')
    kind = ProviderKind.LABORATORY
    contact = factory.SubFactory(ContactFactory)
    catalog = factory.LazyFunction(lambda: [LabTestFactory()])


class PatientFactory(factory.Factory):
    class Meta:
        model = PatientSnapshot

    name = 'Asha Rao'
    phone = '9811111111'
    address = '12 Park Street, Kolkata, WB, 700016'
    email = 'asha@example.com'


class PrescriptionFactory(factory.Factory):
    class Meta:
        model = PrescriptionSnapshot

    doctor_name = 'Neel Shah'
    specialty = 'General Physician'
    diagnosis = 'Viral fever'
    symptoms = factory.LazyFunction(lambda: ['fever', 'body ache'])
    medications = factory.LazyFunction(lambda: [{'name': 'Paracetamol', 'dosage': '500mg'}])
    investigations = factory.LazyFunction(lambda: ['CBC'])
    advice = 'Rest and fluids'


class FulfillmentRequestFactory(factory.Factory):
    class Meta:
        model = Request

    id = factory.Sequence(lambda n: f'R{n + 1}')
    kind = RequestKind.MEDICINE_ORDER
    patient = factory.SubFactory(PatientFactory)
    prescription = factory.SubFactory(PrescriptionFactory)
    status = RequestStatus.PENDING


# ---------------------------------------------------------------------------
# Raw backend payloads（后端原始格式）
# ---------------------------------------------------------------------------

def ok(data=None, message='OK'):
    return {'success': True, 'data': data, 'message': message}


def raw_request(request_id='R1', type='order_medicine', status='pending', **extra):
    body = {
        '_id': request_id,
        'type': type,
        'status': status,
        'patientId': {
            'firstName': 'Asha',
            'lastName': 'Rao',
            'phone': '9811111111',
            'email': 'asha@example.com',
            'address': {'line1': '12 Park Street', 'city': 'Kolkata', 'state': 'WB', 'pincode': '700016'},
        },
        'prescriptionId': {
            'doctorId': {'firstName': 'Neel', 'lastName': 'Shah', 'specialization': 'General Physician'},
            'consultationId': {'diagnosis': 'Viral fever', 'symptoms': ['fever'], 'investigations': ['CBC']},
            'medications': [{'name': 'Paracetamol', 'dosage': '500mg'}],
            'createdAt': '2024-05-01T10:00:00.000Z',
        },
        'createdAt': '2024-05-01T10:00:00.000Z',
    }
    body.update(extra)
    return body


def raw_pharmacy(pharmacy_id='P1', name='City Pharmacy', **extra):
    body = {
        '_id': pharmacy_id,
        'pharmacyName': name,
        'status': 'approved',
        'isActive': True,
        'phone': '9800000000',
        'email': 'city@example.com',
        'address': {'line1': 'MG Road', 'city': 'Pune', 'state': 'MH'},
    }
    body.update(extra)
    return body


def raw_lab(lab_id='L1', name='Metro Labs', **extra):
    body = {
        '_id': lab_id,
        'labName': name,
        'status': 'approved',
        'isActive': True,
    }
    body.update(extra)
    return body


def raw_medicine(name='Paracetamol', dosage='500mg', price=10, quantity=100):
    return {'name': name, 'dosage': dosage, 'manufacturer': 'Cipla', 'price': price, 'quantity': quantity}


def raw_test(name='CBC', price=500):
    return {'name': name, 'description': '', 'price': price}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeBackend:
    """
    httpx.MockTransport 的路由表。

    routes 的 key 是 (method, path)，path 不带 /api 前缀；
    value 是 (status, body) 或者一个 callable(request) → (status, body)。
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, path, body=None, status=200):
        self.routes[(method, path)] = body if callable(body) else (status, body)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith('/api'):
            path = path[len('/api'):]
        self.calls.append((request.method, path, request))

        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404, json={'success': False, 'message': f'No route {path}'})
        if callable(route):
            status, body = route(request)
        else:
            status, body = route
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status, json=body)

    def transport(self):
        return httpx.MockTransport(self)

    def client(self):
        return BackendClient(BACKEND_URL, transport=self.transport())

    def called(self, method, path):
        return [call for call in self.calls if call[0] == method and call[1] == path]

    def posted_json(self, path):
        calls = self.called('POST', path)
        return json.loads(calls[-1][2].content) if calls else None


class FakeRedis:
    """redis.asyncio.Redis 的最小替身：get / set / delete / aclose。"""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError('redis is down')

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value.encode('utf-8') if isinstance(value, str) else value
        self.expiry[key] = ex
        return True

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def drafts(fake_redis):
    return DraftStore(fake_redis, ttl=3600)


@pytest.fixture
def pharmacy():
    return PharmacyFactory(
        id='P1',
        name='City Pharmacy',
        catalog=[
            MedicineFactory(name='Paracetamol', dosage='500mg', unit_price=10.0),
            MedicineFactory(name='Amoxicillin', dosage='250mg', unit_price=25.0),
        ],
    )


@pytest.fixture
def second_pharmacy():
    return PharmacyFactory(
        id='P2',
        name='Care Pharmacy',
        catalog=[MedicineFactory(name='Paracetamol', dosage='500mg', unit_price=12.0)],
    )


@pytest.fixture
def lab():
    return LaboratoryFactory(
        id='L1',
        name='Metro Labs',
        catalog=[
            LabTestFactory(name='CBC', price=500.0),
            LabTestFactory(name='Thyroid Profile', price=650.0),
        ],
    )


@pytest.fixture
def second_lab():
    return LaboratoryFactory(
        id='L2',
        name='Prime Diagnostics',
        catalog=[LabTestFactory(name='Lipid Panel', price=800.0)],
    )
