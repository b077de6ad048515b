"""
Workflow 工厂 — 唯一读取 Django settings 的地方。

用法：
    async with open_workflow() as workflow:
        page = await workflow.repository.list_active_page(filters)

各组件只接受构造参数，不直接碰 settings，测试里可以直接拼装。
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as redis
from django.conf import settings

from .catalog import CatalogGateway
from .client import BackendClient
from .drafts import DEFAULT_PREFIX, DraftStore
from .editor import EditorSession
from .feed import RequestFeed
from .lifecycle import FulfillmentLifecycle
from .repository import RequestRepository

# 每个 HTTP 请求都会新建 workflow，提交守卫需要跨请求共享
SUBMITS_IN_FLIGHT: set = set()


@dataclass
class Workflow:
    client: BackendClient
    catalog: CatalogGateway
    repository: RequestRepository
    drafts: DraftStore
    lifecycle: FulfillmentLifecycle

    async def open_editor(self, request_id: str) -> EditorSession:
        request = await self.repository.get(request_id)
        return await EditorSession.open(request, self.catalog, self.lifecycle, drafts=self.drafts)

    def feed(self) -> RequestFeed:
        return RequestFeed(
            self.repository,
            refresh_interval=getattr(settings, "FULFILLMENT_REFRESH_INTERVAL", 30),
            debounce=getattr(settings, "FULFILLMENT_SEARCH_DEBOUNCE", 0.5),
        ).attach()

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.drafts.aclose()


def build_client(transport=None) -> BackendClient:
    return BackendClient(
        base_url=getattr(settings, "FULFILLMENT_BACKEND_URL", "http://localhost:5000/api"),
        token=getattr(settings, "FULFILLMENT_BACKEND_TOKEN", ""),
        timeout=float(getattr(settings, "FULFILLMENT_HTTP_TIMEOUT", 10)),
        transport=transport,
    )


def build_drafts(redis_client=None) -> DraftStore:
    if redis_client is None:
        redis_client = redis.from_url(getattr(settings, "REDIS_URL", "redis://localhost:6379/0"))
    return DraftStore(
        redis_client,
        prefix=getattr(settings, "FULFILLMENT_DRAFT_PREFIX", DEFAULT_PREFIX),
        ttl=int(getattr(settings, "FULFILLMENT_DRAFT_TTL", 604800)),
    )


def build_workflow(transport=None, redis_client=None) -> Workflow:
    client = build_client(transport)
    drafts = build_drafts(redis_client)
    repository = RequestRepository(client)
    return Workflow(
        client=client,
        catalog=CatalogGateway(
            client,
            provider_limit=getattr(settings, "FULFILLMENT_PROVIDER_PAGE_LIMIT", 100),
            catalog_limit=getattr(settings, "FULFILLMENT_CATALOG_PAGE_LIMIT", 1000),
        ),
        repository=repository,
        drafts=drafts,
        lifecycle=FulfillmentLifecycle(repository, drafts, in_flight=SUBMITS_IN_FLIGHT),
    )


@asynccontextmanager
async def open_workflow(transport=None, redis_client=None):
    workflow = build_workflow(transport, redis_client)
    try:
        yield workflow
    finally:
        await workflow.aclose()
