"""
Draft Persistence — Selection Store 的持久化镜像（Redis）。

只是个便利缓存：任何存储失败都转成 PersistenceError 抛出，
由调用方（EditorSession / FulfillmentLifecycle）捕获后只记日志。
没有草稿、Redis 挂了，整个流程照样能走完。

存储格式：
    key   = "{prefix}{request_id}:{section}"   例如 "fulfillment:draft:66f0...:pharmacyData"
    value = SelectionSnapshot.to_dict() 的 JSON
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from redis.exceptions import RedisError

from .exceptions import PersistenceError, ValidationError
from .selection import SelectionSnapshot
from .types import Request, SectionKey

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "fulfillment:draft:"


@dataclass(frozen=True)
class DraftKey:
    request_id: str
    section: SectionKey

    def __post_init__(self):
        if not self.request_id:
            raise ValidationError(message="Draft key needs a request id.", code="INVALID_DRAFT_KEY")
        object.__setattr__(self, "section", SectionKey(self.section))

    def __str__(self) -> str:
        return f"{self.request_id}:{self.section.value}"

    @classmethod
    def for_request(cls, request: Request) -> "DraftKey":
        return cls(request.id, request.kind.section)


class DraftStore:
    """
    Args:
        client: redis.asyncio.Redis（测试里用内存假实现，只需 get / set / delete / aclose）
        ttl:    秒；0 或 None 表示不过期
    """

    def __init__(self, client, prefix: str = DEFAULT_PREFIX, ttl: Optional[int] = None):
        self._client = client
        self._prefix = prefix
        self._ttl = ttl or None

    def storage_key(self, key: DraftKey) -> str:
        return f"{self._prefix}{key}"

    async def save(self, request_id: str, section, snapshot: SelectionSnapshot) -> None:
        key = DraftKey(request_id, section)
        try:
            value = json.dumps(snapshot.to_dict())
        except (TypeError, ValueError) as exc:
            raise PersistenceError(
                message=f"Draft {key} could not be serialized.",
                detail={"key": str(key), "error": str(exc)},
            ) from exc
        try:
            await self._client.set(self.storage_key(key), value, ex=self._ttl)
        except RedisError as exc:
            raise PersistenceError(
                message=f"Draft {key} could not be saved.",
                detail={"key": str(key), "error": str(exc)},
            ) from exc
        logger.debug("[Drafts] saved %s (%d line(s))", key, len(snapshot.lines))

    async def load(self, request_id: str, section) -> Optional[SelectionSnapshot]:
        """没有草稿返回 None；草稿损坏也当作没有（记 warning）。"""
        key = DraftKey(request_id, section)
        try:
            value = await self._client.get(self.storage_key(key))
        except RedisError as exc:
            raise PersistenceError(
                message=f"Draft {key} could not be loaded.",
                detail={"key": str(key), "error": str(exc)},
            ) from exc
        if value is None:
            return None

        try:
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            return SelectionSnapshot.from_dict(json.loads(value))
        except (UnicodeDecodeError, ValueError, ValidationError) as exc:
            logger.warning("[Drafts] ignoring corrupt draft %s: %s", key, exc)
            return None

    async def clear(self, request_id: str, section) -> None:
        key = DraftKey(request_id, section)
        try:
            await self._client.delete(self.storage_key(key))
        except RedisError as exc:
            raise PersistenceError(
                message=f"Draft {key} could not be cleared.",
                detail={"key": str(key), "error": str(exc)},
            ) from exc
        logger.debug("[Drafts] cleared %s", key)

    async def aclose(self) -> None:
        await self._client.aclose()
