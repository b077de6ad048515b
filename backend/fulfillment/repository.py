"""
Request Repository — admin requests 的读取 + 变更调用。

规则：
  - 读出来的数据一律经过 intake.normalize_request，核心层只拿标准 Request；
  - 单条记录归一化失败（没有 id 等）只记日志跳过，不让整个列表失败；
  - 每次变更（accept / respond / cancel / confirm_payment / assign）成功后都完整重拉一次列表，
    不在本地 patch 冗余字段。重拉失败：清空列表，记日志，不影响变更本身的结果。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from .client import BackendClient, unwrap_page
from .exceptions import BaseAppException, NetworkError, ValidationError
from .intake import normalize_request
from .types import Page, Request

logger = logging.getLogger(__name__)

REQUESTS_PATH = "/admin/requests"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class RequestFilters:
    search: str = ""
    status: str = ""
    kind: str = ""
    page: int = 1
    limit: int = 20

    def to_params(self) -> dict:
        # 后端按 type / status 过滤；search 后端不支持，拉回来后在本地匹配
        return {
            "type": self.kind,
            "status": self.status,
            "page": self.page,
            "limit": self.limit,
        }


def matches_search(request: Request, search: str) -> bool:
    needle = search.strip().lower()
    if not needle:
        return True
    haystack = (
        request.id,
        request.patient.name,
        request.patient.phone,
        request.patient.email,
        request.prescription.doctor_name,
    )
    return any(needle in value.lower() for value in haystack if value)


class RequestRepository:

    def __init__(
        self,
        client: BackendClient,
        on_mutation: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._client = client
        self.on_mutation = on_mutation
        self.filters = RequestFilters()
        self.active: list[Request] = []

    # ── 读取 ──────────────────────────────────────────────────────────────

    async def list_active_page(self, filters: Optional[RequestFilters] = None) -> Page:
        filters = filters or RequestFilters()
        self.filters = filters

        data = await self._client.get(REQUESTS_PATH, params=filters.to_params())
        page = unwrap_page(data)

        requests = []
        for raw in page.items:
            try:
                requests.append(normalize_request(raw))
            except ValidationError as exc:
                logger.warning("[Repository] skipped request record: %s", exc.message)
        requests = [r for r in requests if matches_search(r, filters.search)]
        requests.sort(key=lambda r: r.created_at or _EPOCH, reverse=True)
        return Page(items=requests, total=page.total, total_pages=page.total_pages)

    async def list_active(self, filters: Optional[RequestFilters] = None) -> list[Request]:
        page = await self.list_active_page(filters)
        self.active = page.items
        return page.items

    async def get(self, request_id: str) -> Request:
        data = await self._client.get(f"{REQUESTS_PATH}/{request_id}")
        return normalize_request(data)

    # ── 变更 ──────────────────────────────────────────────────────────────

    async def accept(self, request_id: str) -> None:
        await self._client.post(f"{REQUESTS_PATH}/{request_id}/accept")
        logger.info("[Repository] accepted request %s", request_id)
        await self._refetch()

    async def respond(self, request_id: str, payload: dict) -> Request:
        """
        提交账单。payload 为后端格式：
            {pharmacies|labs: [ids], medicines|tests: [...], message}

        Raises:
            ValidationError: provider 或 line item 为空（不会发出请求）
        """
        provider_ids = payload.get("pharmacies") or payload.get("labs") or []
        line_items = payload.get("medicines") or payload.get("tests") or []
        if not provider_ids or not line_items:
            raise ValidationError(
                message="A bill needs at least one provider and one line item.",
                code="EMPTY_BILL",
                detail={"provider_ids": len(provider_ids), "line_items": len(line_items)},
            )

        data = await self._client.post(f"{REQUESTS_PATH}/{request_id}/respond", payload)
        logger.info("[Repository] responded to request %s with %d line(s)", request_id, len(line_items))
        await self._refetch()
        return await self._returned_or_fetched(request_id, data)

    async def cancel(self, request_id: str, reason: str) -> None:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError(
                message="A cancellation reason is required.",
                code="CANCEL_REASON_REQUIRED",
            )
        await self._client.post(f"{REQUESTS_PATH}/{request_id}/cancel", {"reason": reason})
        logger.info("[Repository] cancelled request %s", request_id)
        await self._refetch()

    async def confirm_payment(self, request_id: str) -> None:
        """把外部支付事件转发给后端；之后后端返回的 request 带 paymentConfirmed。"""
        await self._client.post(f"{REQUESTS_PATH}/{request_id}/payment-confirmed")
        logger.info("[Repository] payment confirmed for request %s", request_id)
        await self._refetch()

    async def assign(self, request_id: str, orders: list) -> None:
        """把 payment_confirmed 的账单按 provider 拆成的 fulfillment orders 发给后端。"""
        await self._client.post(f"{REQUESTS_PATH}/{request_id}/assign", {"orders": orders})
        logger.info("[Repository] assigned request %s to %d provider(s)", request_id, len(orders))
        await self._refetch()

    # ── 内部 ──────────────────────────────────────────────────────────────

    async def _returned_or_fetched(self, request_id: str, data) -> Request:
        # respond 回的 request 没有 populate（患者、处方只有 id），优先重新拉详情
        try:
            return await self.get(request_id)
        except NetworkError as exc:
            if isinstance(data, dict) and (data.get("_id") or data.get("id")):
                logger.warning("[Repository] detail fetch for %s failed, using respond data: %s", request_id, exc.message)
                return normalize_request(data)
            raise

    async def _refetch(self) -> None:
        try:
            if self.on_mutation is not None:
                await self.on_mutation()
            else:
                await self.list_active(self.filters)
        except BaseAppException as exc:
            logger.warning("[Repository] refetch after mutation failed: %s", exc.message)
            self.active = []
