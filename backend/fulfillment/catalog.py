"""
Catalog Gateway — 只读。

list_providers 先拉已审核的 provider 列表，再并发拉每个 provider 的库存。
某个 provider 的库存拉失败不影响整体：该 provider 返回空 catalog，只记 warning。
"""

import asyncio
import logging
from typing import Optional

from .client import BackendClient, unwrap_page
from .exceptions import BaseAppException, ValidationError
from .intake import normalize_catalog_item, normalize_provider
from .types import Provider, ProviderKind

logger = logging.getLogger(__name__)

PROVIDER_PATHS = {
    ProviderKind.PHARMACY: "/admin/pharmacies",
    ProviderKind.LABORATORY: "/admin/laboratories",
}

CATALOG_PATHS = {
    ProviderKind.PHARMACY: "/admin/inventory/pharmacies/{provider_id}",
    ProviderKind.LABORATORY: "/admin/inventory/laboratories/{provider_id}",
}


class CatalogGateway:

    def __init__(self, client: BackendClient, provider_limit: int = 100, catalog_limit: int = 1000):
        self._client = client
        self._provider_limit = provider_limit
        self._catalog_limit = catalog_limit

    async def list_providers(self, kind, filter: Optional[dict] = None) -> list[Provider]:
        """
        返回已审核且启用的 provider，顺序与后端一致，catalog 已填好。

        Raises:
            NetworkError: provider 列表本身拉取失败
        """
        kind = ProviderKind(kind)
        params = {"status": "approved", "page": 1, "limit": self._provider_limit}
        params.update(filter or {})

        data = await self._client.get(PROVIDER_PATHS[kind], params=params)
        providers = []
        for raw in unwrap_page(data).items:
            try:
                provider = normalize_provider(raw, kind)
            except ValidationError as exc:
                logger.warning("[Catalog] skipped %s record: %s", kind.value, exc.message)
                continue
            if provider.is_approved and provider.is_active:
                providers.append(provider)

        catalogs = await asyncio.gather(*(self._catalog_or_empty(p) for p in providers))
        for provider, catalog in zip(providers, catalogs):
            provider.catalog = catalog

        logger.info("[Catalog] loaded %d %s providers", len(providers), kind.value)
        return providers

    async def list_catalog(self, provider_id: str, kind) -> list:
        kind = ProviderKind(kind)
        path = CATALOG_PATHS[kind].format(provider_id=provider_id)
        data = await self._client.get(path, params={"limit": self._catalog_limit})
        return [normalize_catalog_item(raw, kind) for raw in unwrap_page(data).items if isinstance(raw, dict)]

    async def _catalog_or_empty(self, provider: Provider) -> list:
        try:
            return await self.list_catalog(provider.id, provider.kind)
        except BaseAppException as exc:
            logger.warning(
                "[Catalog] failed to load items for %s %s: %s",
                provider.kind.value, provider.id, exc.message,
            )
            return []
