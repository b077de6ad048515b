"""
Response serializers — 核心层 dataclass → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
后端数据的解析在 fulfillment/intake/，选择快照的解析在 SelectionSnapshot.from_dict。
"""

from .lifecycle import available_actions, order_to_wire
from .selection import item_to_dict, line_to_dict, provider_to_dict


def _iso(value):
    return value.isoformat() if value else None


def serialize_bill(response):
    if response is None:
        return None
    return {
        'providers': [provider_to_dict(p) for p in response.providers],
        'lineItems': [line_to_dict(line) for line in response.lines],
        'totalAmount': response.total_amount,
        'message': response.message,
        'respondedAt': _iso(response.responded_at),
    }


def serialize_request(request):
    """Serialize one request with the actions currently allowed on it."""
    rx = request.prescription
    body = {
        'id': request.id,
        'kind': request.kind.value,
        'status': request.status.value,
        'paymentConfirmed': request.payment_confirmed,
        'patient': {
            'name': request.patient.name,
            'phone': request.patient.phone,
            'email': request.patient.email,
            'address': request.patient.address,
        },
        'prescription': {
            'doctorName': rx.doctor_name,
            'specialty': rx.specialty,
            'diagnosis': rx.diagnosis,
            'symptoms': rx.symptoms,
            'medications': rx.medications,
            'investigations': rx.investigations,
            'advice': rx.advice,
            'issuedAt': _iso(rx.issued_at),
        },
        'response': serialize_bill(request.response),
        'createdAt': _iso(request.created_at),
        'actions': available_actions(request),
    }
    if request.cancellation is not None:
        body['cancellation'] = {
            'reason': request.cancellation.reason,
            'by': request.cancellation.by,
            'at': _iso(request.cancellation.at),
        }
    return body


def serialize_request_page(page, filters):
    return {
        'count': len(page.items),
        'total': page.total,
        'totalPages': page.total_pages,
        'page': filters.page,
        'requests': [serialize_request(r) for r in page.items],
    }


def serialize_provider(provider):
    body = provider_to_dict(provider.ref())
    body['rating'] = provider.rating
    body['catalog'] = [item_to_dict(item) for item in provider.catalog]
    return body


def serialize_providers(providers):
    return {
        'count': len(providers),
        'providers': [serialize_provider(p) for p in providers],
    }


def serialize_editor(session):
    """Serialize an open editor: current selection, where it came from, and suggestions."""
    return {
        'request': serialize_request(session.request),
        'source': session.source,
        'selection': session.snapshot().to_dict(),
        'draftsEnabled': not session.memory_only,
        'prescriptionMatches': [
            {
                'prescribed': match.prescribed,
                'providerId': match.provider_id,
                'providerName': match.provider_name,
                'item': item_to_dict(match.item),
            }
            for match in session.prescription_matches()
        ],
    }


def serialize_orders(request, orders):
    return {
        'requestId': request.id,
        'status': request.status.value,
        'count': len(orders),
        'orders': [order_to_wire(order) for order in orders],
    }
