"""
BackendClient — marketplace 后端的 HTTP 客户端（httpx.AsyncClient）。

后端所有接口都返回同一种信封：
    {"success": true,  "data": ..., "message": "..."}
    {"success": false, "message": "Request already processed"}

这里只做三件事：
  1. 发请求，传输层异常 → NetworkError
  2. 解信封，success=false → BackendRejectedError（可恢复）
  3. 列表接口的 data 可能是裸数组，也可能是 {items, pagination} → unwrap_page 统一
"""

import logging
from typing import Any, Optional

import httpx

from .exceptions import BackendRejectedError, BlockError, NetworkError
from .types import Page

logger = logging.getLogger(__name__)


def unwrap_page(data: Any) -> Page:
    """后端列表：裸数组 或 {items, pagination:{total, totalPages}}。"""
    if isinstance(data, list):
        return Page(items=data, total=len(data), total_pages=1)
    if not isinstance(data, dict):
        return Page(items=[], total=0, total_pages=1)

    items = data.get("items")
    if not isinstance(items, list):
        items = []
    pagination = data.get("pagination") or {}
    try:
        total = int(pagination.get("total", len(items)))
    except (TypeError, ValueError):
        total = len(items)
    try:
        total_pages = max(int(pagination.get("totalPages", 1)), 1)
    except (TypeError, ValueError):
        total_pages = 1
    return Page(items=items, total=total, total_pages=total_pages)


class BackendClient:

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get(self, path: str, params: Optional[dict] = None) -> Any:
        clean = {k: v for k, v in (params or {}).items() if v not in (None, "")}
        return await self._send("GET", path, params=clean)

    async def post(self, path: str, payload: Optional[dict] = None) -> Any:
        return await self._send("POST", path, json=payload or {})

    async def _send(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("[Backend] %s %s failed: %s", method, path, exc)
            raise NetworkError(
                message=f"Backend unreachable: {exc}",
                detail={"method": method, "path": path},
            ) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise NetworkError(
                message=f"Backend returned an unreadable response (HTTP {response.status_code}).",
                detail={"method": method, "path": path, "status": response.status_code},
            ) from exc

        if not isinstance(body, dict):
            body = {"success": response.is_success, "data": body}

        message = body.get("message") or f"Backend request failed (HTTP {response.status_code})."
        if response.status_code == 404:
            raise BlockError(
                message=message,
                code="NOT_FOUND",
                detail={"path": path},
                http_status=404,
            )
        if not response.is_success or body.get("success") is False:
            raise BackendRejectedError(
                message=message,
                detail={"method": method, "path": path, "status": response.status_code},
            )

        return body.get("data")
