"""
HTTP 层 — 给控制台前端用的 JSON 接口。

每个 view 只做三件事：解析参数 → 在 async_to_sync 里跑核心层 → 序列化。
业务异常直接往外抛，由 exception_handler.unified_exception_handler 统一格式化。
"""

from asgiref.sync import async_to_sync
from django.http import JsonResponse
from rest_framework.views import APIView

from .exceptions import ValidationError
from .factory import open_workflow
from .repository import RequestFilters
from .selection import SelectionSnapshot
from .serializers import (
    serialize_editor,
    serialize_orders,
    serialize_providers,
    serialize_request,
    serialize_request_page,
)
from .types import ProviderKind, RequestKind


def _positive_int(params, name, default):
    raw = params.get(name)
    if raw in (None, ''):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = 0
    if value < 1:
        raise ValidationError(
            message=f"'{name}' must be a positive integer.",
            code='INVALID_QUERY_PARAM',
            detail={name: raw},
        )
    return value


def _parse_filters(params):
    kind = params.get('kind', '')
    if kind and kind not in {k.value for k in RequestKind}:
        raise ValidationError(
            message=f"Unknown request kind '{kind}'.",
            code='INVALID_QUERY_PARAM',
            detail={'kind': kind},
        )
    return RequestFilters(
        search=params.get('search', ''),
        status=params.get('status', ''),
        kind=kind,
        page=_positive_int(params, 'page', 1),
        limit=_positive_int(params, 'limit', 20),
    )


def _selection_from(data, required=True):
    raw = data.get('selection')
    if raw is None:
        if required:
            raise ValidationError(message="'selection' is required.", code='INVALID_SELECTION')
        return None
    return SelectionSnapshot.from_dict(raw)


# ── 核心层调用（async） ──────────────────────────────────────────────────

async def _list_requests(filters):
    async with open_workflow() as workflow:
        return await workflow.repository.list_active_page(filters)


async def _get_request(request_id):
    async with open_workflow() as workflow:
        return await workflow.repository.get(request_id)


async def _accept(request_id):
    async with open_workflow() as workflow:
        target = await workflow.repository.get(request_id)
        await workflow.lifecycle.accept(target)
        return target, workflow.repository.active


async def _cancel(request_id, reason):
    async with open_workflow() as workflow:
        target = await workflow.repository.get(request_id)
        await workflow.lifecycle.cancel(target, reason)
        return target, workflow.repository.active


async def _list_providers(kind, search):
    async with open_workflow() as workflow:
        return await workflow.catalog.list_providers(kind, {'search': search} if search else None)


async def _open_editor(request_id):
    async with open_workflow() as workflow:
        return await workflow.open_editor(request_id)


async def _save_editor(request_id, snapshot):
    async with open_workflow() as workflow:
        session = await workflow.open_editor(request_id)
        await session.replace(snapshot)
        return session


async def _submit_bill(request_id, snapshot, message):
    async with open_workflow() as workflow:
        session = await workflow.open_editor(request_id)
        if snapshot is not None:
            await session.replace(snapshot)
        await session.submit(message)
        return session.request


async def _confirm_payment(request_id):
    async with open_workflow() as workflow:
        target = await workflow.repository.get(request_id)
        return await workflow.lifecycle.confirm_payment(target)


async def _assign(request_id):
    async with open_workflow() as workflow:
        target = await workflow.repository.get(request_id)
        orders = await workflow.lifecycle.assign_orders(target)
        return target, orders


# ── Views ────────────────────────────────────────────────────────────────

class RequestListView(APIView):
    """GET /api/requests/ - Active requests, newest first"""

    def get(self, request):
        filters = _parse_filters(request.query_params)
        page = async_to_sync(_list_requests)(filters)
        return JsonResponse(serialize_request_page(page, filters))


class RequestDetailView(APIView):
    """GET /api/requests/<id>/ - One request with its allowed actions"""

    def get(self, request, request_id):
        target = async_to_sync(_get_request)(request_id)
        return JsonResponse(serialize_request(target))


class RequestAcceptView(APIView):
    """POST /api/requests/<id>/accept/ - pending → accepted"""

    def post(self, request, request_id):
        target, active = async_to_sync(_accept)(request_id)
        return JsonResponse({
            'request': serialize_request(target),
            'requests': [serialize_request(r) for r in active],
        })


class RequestCancelView(APIView):
    """POST /api/requests/<id>/cancel/ - pending/accepted → cancelled"""

    def post(self, request, request_id):
        reason = request.data.get('reason', '')
        target, active = async_to_sync(_cancel)(request_id, reason)
        return JsonResponse({
            'request': serialize_request(target),
            'requests': [serialize_request(r) for r in active],
        })


class ProviderListView(APIView):
    """GET /api/providers/<pharmacy|laboratory>/ - Approved providers with catalogs"""

    def get(self, request, kind):
        if kind not in {k.value for k in ProviderKind}:
            raise ValidationError(
                message=f"Unknown provider kind '{kind}'.",
                code='INVALID_PROVIDER_KIND',
                detail={'kind': kind},
            )
        providers = async_to_sync(_list_providers)(kind, request.query_params.get('search', ''))
        return JsonResponse(serialize_providers(providers))


class RequestEditorView(APIView):
    """
    GET /api/requests/<id>/editor/ - Open the bill editor (hydrated from bill, draft, or empty)
    PUT /api/requests/<id>/editor/ - Replace the in-progress selection and save it as a draft
    """

    def get(self, request, request_id):
        session = async_to_sync(_open_editor)(request_id)
        return JsonResponse(serialize_editor(session))

    def put(self, request, request_id):
        snapshot = _selection_from(request.data)
        session = async_to_sync(_save_editor)(request_id, snapshot)
        return JsonResponse(serialize_editor(session))


class RequestBillView(APIView):
    """POST /api/requests/<id>/bill/ - Generate the bill (→ bill_generated)"""

    def post(self, request, request_id):
        snapshot = _selection_from(request.data, required=False)
        updated = async_to_sync(_submit_bill)(request_id, snapshot, request.data.get('message', ''))
        return JsonResponse(serialize_request(updated), status=201)


class RequestPaymentConfirmedView(APIView):
    """POST /api/requests/<id>/payment-confirmed/ - Relay of the external payment event"""

    def post(self, request, request_id):
        target = async_to_sync(_confirm_payment)(request_id)
        return JsonResponse(serialize_request(target))


class RequestAssignView(APIView):
    """POST /api/requests/<id>/assign/ - Split the confirmed bill into per-provider orders (→ completed)"""

    def post(self, request, request_id):
        target, orders = async_to_sync(_assign)(request_id)
        return JsonResponse(serialize_orders(target, orders), status=201)
