"""
Fulfillment Lifecycle — request 状态机。

    pending ──► accepted ──► bill_generated ──► payment_confirmed ──► completed
       │            │
       └────────────┴──► cancelled

pending 也可以直接出账单（跳过 accept）。表里没有的迁移一律 StateError，
请求状态保持不变。

检查顺序（每个动作都一样）：
  1. 业务阻断（bill_generated 时重复出账单 → BlockError ALREADY_BILLED）
  2. 状态迁移是否合法（StateError）
  3. 前置条件（ValidationError，不发请求）
  4. 同一个 request 是否已有提交在进行中（BlockError SUBMIT_IN_PROGRESS）
"""

import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from .billing import calculate_total, format_amount
from .exceptions import BlockError, PersistenceError, StateError, ValidationError
from .selection import SelectionStore, is_valid_quantity
from .types import Cancellation, FulfillmentOrder, ProviderKind, Request, RequestStatus

logger = logging.getLogger(__name__)

# 提交守卫的 check-then-add 可能跨 async_to_sync 线程并发，用同一把锁保护
_IN_FLIGHT_LOCK = threading.Lock()

TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.ACCEPTED, RequestStatus.BILL_GENERATED, RequestStatus.CANCELLED},
    RequestStatus.ACCEPTED: {RequestStatus.BILL_GENERATED, RequestStatus.CANCELLED},
    RequestStatus.BILL_GENERATED: {RequestStatus.PAYMENT_CONFIRMED},
    RequestStatus.PAYMENT_CONFIRMED: {RequestStatus.COMPLETED},
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
}

# 前端按钮名 → 目标状态
ACTIONS = {
    "accept": RequestStatus.ACCEPTED,
    "generate_bill": RequestStatus.BILL_GENERATED,
    "cancel": RequestStatus.CANCELLED,
    "confirm_payment": RequestStatus.PAYMENT_CONFIRMED,
    "assign": RequestStatus.COMPLETED,
}

PHARMACY_MESSAGE = "Pharmacy request accepted. Selected pharmacies: {names}."
LAB_MESSAGE = (
    "Lab tests are available. Selected laboratories: {names}. "
    "Total amount: ₹{total}. Please confirm and proceed with payment."
)


def is_allowed(current, target) -> bool:
    return RequestStatus(target) in TRANSITIONS[RequestStatus(current)]


def ensure_transition(current, target) -> None:
    if not is_allowed(current, target):
        raise StateError(RequestStatus(current), RequestStatus(target))


def available_actions(request: Request) -> list:
    """给前端决定哪些按钮可点。已出账单的 request 不再提供 generate_bill。"""
    actions = []
    for action, target in ACTIONS.items():
        if not is_allowed(request.status, target):
            continue
        if action == "generate_bill" and request.has_committed_bill:
            continue
        actions.append(action)
    return actions


def default_message(store: SelectionStore) -> str:
    names = ", ".join(p.name for p in store.providers)
    if store.provider_kind is ProviderKind.LABORATORY:
        return LAB_MESSAGE.format(names=names, total=format_amount(store.total_amount))
    return PHARMACY_MESSAGE.format(names=names)


def build_respond_payload(store: SelectionStore, message: str = "") -> dict:
    """Selection Store → 后端 respond 接口的 body。"""
    message = (message or "").strip() or default_message(store)
    provider_ids = [p.id for p in store.providers]
    if store.provider_kind is ProviderKind.LABORATORY:
        return {
            "labs": provider_ids,
            "tests": [
                {
                    "labId": line.provider_id,
                    "labName": line.provider_name,
                    "testName": line.item.name,
                    "price": line.unit_price,
                }
                for line in store.lines
            ],
            "message": message,
        }
    return {
        "pharmacies": provider_ids,
        "medicines": [
            {
                "pharmacyId": line.provider_id,
                "pharmacyName": line.provider_name,
                "name": line.item.name,
                "dosage": line.item.dosage,
                "manufacturer": line.item.manufacturer,
                "quantity": line.quantity,
                "price": line.unit_price,
            }
            for line in store.lines
        ],
        "message": message,
    }


def build_fulfillment_orders(request: Request) -> list:
    """已确认账单按 provider 拆单：每家一张，只带自己的条目，附处方副本。"""
    response = request.response
    orders = []
    for provider in response.providers:
        lines = [line for line in response.lines if line.provider_id == provider.id]
        if not lines:
            continue
        orders.append(FulfillmentOrder(
            request_id=request.id,
            provider=provider,
            lines=lines,
            total_amount=calculate_total(lines),
            patient=request.patient,
            prescription=request.prescription,
        ))
    return orders


def order_to_wire(order: FulfillmentOrder) -> dict:
    rx = order.prescription
    return {
        "requestId": order.request_id,
        "providerId": order.provider.id,
        "providerName": order.provider.name,
        "providerType": order.provider.kind.value,
        "items": [
            {
                "name": line.item.name,
                "dosage": getattr(line.item, "dosage", ""),
                "quantity": line.quantity if line.is_medicine else 1,
                "price": line.unit_price,
            }
            for line in order.lines
        ],
        "totalAmount": order.total_amount,
        "patient": {
            "name": order.patient.name,
            "phone": order.patient.phone,
            "email": order.patient.email,
            "address": order.patient.address,
        },
        "prescription": {
            "doctorName": rx.doctor_name,
            "specialty": rx.specialty,
            "diagnosis": rx.diagnosis,
            "symptoms": rx.symptoms,
            "medications": rx.medications,
            "investigations": rx.investigations,
            "advice": rx.advice,
            "issuedAt": rx.issued_at.isoformat() if rx.issued_at else None,
        },
    }


class FulfillmentLifecycle:

    def __init__(self, repository, drafts=None, in_flight: Optional[set] = None):
        """in_flight 可由调用方传入共享集合，让多个 lifecycle 实例共用同一个提交守卫。"""
        self._repository = repository
        self._drafts = drafts
        self._in_flight = in_flight if in_flight is not None else set()

    def is_submitting(self, request_id: str) -> bool:
        return request_id in self._in_flight

    @asynccontextmanager
    async def _submitting(self, request_id: str):
        with _IN_FLIGHT_LOCK:
            if request_id in self._in_flight:
                raise BlockError(
                    message="Another action for this request is still in progress.",
                    code="SUBMIT_IN_PROGRESS",
                    detail={"request_id": request_id},
                )
            self._in_flight.add(request_id)
        try:
            yield
        finally:
            with _IN_FLIGHT_LOCK:
                self._in_flight.discard(request_id)

    # ── pending → accepted ───────────────────────────────────────────────

    async def accept(self, request: Request) -> Request:
        ensure_transition(request.status, RequestStatus.ACCEPTED)
        async with self._submitting(request.id):
            await self._repository.accept(request.id)
        self._log_transition(request, RequestStatus.ACCEPTED)
        request.status = RequestStatus.ACCEPTED
        return request

    # ── pending/accepted → bill_generated ────────────────────────────────

    def validate_bill(self, request: Request, store: SelectionStore) -> None:
        """
        Raises:
            ValidationError: 没选 provider / 没选条目 / lab 不止一家 /
                             有 medicine 数量不是正整数 / store 与 request 类型不符
        """
        if store.kind is not request.kind:
            raise ValidationError(
                message="Selection does not belong to this request type.",
                code="SELECTION_KIND_MISMATCH",
                detail={"request": request.kind.value, "selection": store.kind.value},
            )
        if not store.providers:
            raise ValidationError(
                message=f"Please select at least one {store.provider_kind.value} first.",
                code="NO_PROVIDER_SELECTED",
            )
        if not store.lines:
            raise ValidationError(
                message="Please select at least one item.",
                code="NO_ITEM_SELECTED",
            )
        if store.is_lab and len(store.providers) != 1:
            raise ValidationError(
                message="Exactly one laboratory must be selected.",
                code="SINGLE_LABORATORY",
                detail={"selected": [p.id for p in store.providers]},
            )
        invalid = [line.item.name for line in store.lines if line.is_medicine and not is_valid_quantity(line.quantity)]
        if invalid:
            raise ValidationError(
                message=f"Please enter a valid quantity for: {', '.join(invalid)}.",
                code="INVALID_QUANTITY",
                detail={"items": invalid},
            )

    async def generate_bill(self, request: Request, store: SelectionStore, message: str = "") -> Request:
        if request.status is RequestStatus.BILL_GENERATED and request.has_committed_bill:
            raise BlockError(
                message="This request has already been billed.",
                code="ALREADY_BILLED",
                detail={"request_id": request.id, "status": request.status.value},
            )
        ensure_transition(request.status, RequestStatus.BILL_GENERATED)
        self.validate_bill(request, store)

        payload = build_respond_payload(store, message)
        async with self._submitting(request.id):
            updated = await self._repository.respond(request.id, payload)

        self._log_transition(request, RequestStatus.BILL_GENERATED)
        await self._clear_draft(request)
        return updated

    # ── pending/accepted → cancelled ─────────────────────────────────────

    async def cancel(self, request: Request, reason: str) -> Request:
        ensure_transition(request.status, RequestStatus.CANCELLED)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError(
                message="Please provide a cancellation reason.",
                code="CANCEL_REASON_REQUIRED",
            )
        async with self._submitting(request.id):
            await self._repository.cancel(request.id, reason)

        self._log_transition(request, RequestStatus.CANCELLED)
        request.status = RequestStatus.CANCELLED
        request.cancellation = Cancellation(reason=reason, at=datetime.now(timezone.utc))
        return request

    # ── bill_generated → payment_confirmed ───────────────────────────────

    async def confirm_payment(self, request: Request) -> Request:
        """外部支付事件：转发给后端，之后重新拉取的 request 就是 payment_confirmed。"""
        ensure_transition(request.status, RequestStatus.PAYMENT_CONFIRMED)
        async with self._submitting(request.id):
            await self._repository.confirm_payment(request.id)

        self._log_transition(request, RequestStatus.PAYMENT_CONFIRMED)
        request.payment_confirmed = True
        request.status = RequestStatus.PAYMENT_CONFIRMED
        return request

    # ── payment_confirmed → completed ────────────────────────────────────

    async def assign_orders(self, request: Request) -> list:
        """
        以已确认账单为准拆单下发，不重新挑选 provider / 条目。

        Raises:
            StateError:      不在 payment_confirmed
            ValidationError: 账单为空
        """
        ensure_transition(request.status, RequestStatus.COMPLETED)
        if request.response is None or not request.response.lines:
            raise ValidationError(
                message="This request has no confirmed bill to assign.",
                code="NO_CONFIRMED_BILL",
                detail={"request_id": request.id},
            )
        orders = build_fulfillment_orders(request)
        async with self._submitting(request.id):
            await self._repository.assign(request.id, [order_to_wire(o) for o in orders])

        self._log_transition(request, RequestStatus.COMPLETED)
        request.status = RequestStatus.COMPLETED
        return orders

    # ── 内部 ──────────────────────────────────────────────────────────────

    async def _clear_draft(self, request: Request) -> None:
        if self._drafts is None:
            return
        try:
            await self._drafts.clear(request.id, request.kind.section)
        except PersistenceError as exc:
            logger.warning("[Lifecycle] draft for %s not cleared: %s", request.id, exc.message)

    @staticmethod
    def _log_transition(request: Request, target: RequestStatus) -> None:
        logger.info("[Lifecycle] request %s: %s -> %s", request.id, request.status.value, target.value)
