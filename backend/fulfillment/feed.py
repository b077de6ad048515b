"""
RequestFeed — 工作台上的 active request 列表。

两个独立的后台任务：
  - 轮询：mount 后每 refresh_interval 秒刷新一次，unmount 时取消；
  - 搜索防抖：search() 只在最后一次调用 debounce 秒后才真正拉数据。

每次拉取前领一个递增的序号，结果回来时只有序号仍是最新的那次才会写入 state
和 repository.active。
后发先至的旧响应直接丢弃（按发出顺序取最新，而不是按完成顺序）。
"""

import asyncio
import itertools
import logging
from contextlib import suppress
from dataclasses import dataclass, field, replace
from typing import Optional

from .exceptions import BaseAppException
from .repository import RequestFilters

logger = logging.getLogger(__name__)


@dataclass
class FeedState:
    requests: list = field(default_factory=list)
    total: int = 0
    total_pages: int = 1
    error: Optional[BaseAppException] = None
    loading: bool = False

    @property
    def is_empty(self) -> bool:
        """没有数据且不是因为出错或还在加载 → 前端显示 "no items"。"""
        return not self.loading and self.error is None and not self.requests


class RequestFeed:

    def __init__(self, repository, refresh_interval: float = 30.0, debounce: float = 0.5,
                 filters: Optional[RequestFilters] = None):
        self._repository = repository
        self.refresh_interval = refresh_interval
        self.debounce = debounce
        self.filters = filters or RequestFilters()
        self.state = FeedState()
        self._sequence = itertools.count(1)
        self._latest = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None

    def attach(self) -> "RequestFeed":
        """让 repository 的每次变更都经由 feed 重拉，保证 state 跟着刷新。"""
        self._repository.on_mutation = self.refresh
        return self

    @property
    def mounted(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def refresh(self) -> bool:
        """拉一次列表。返回 True 表示结果已写入 state；被更新的请求覆盖则返回 False。"""
        token = next(self._sequence)
        self._latest = token
        self.state.loading = True
        filters = replace(self.filters)

        try:
            page = await self._repository.list_active_page(filters)
        except BaseAppException as exc:
            if token != self._latest:
                logger.debug("[Feed] discarded stale failure #%d (latest #%d)", token, self._latest)
                return False
            logger.warning("[Feed] refresh #%d failed: %s", token, exc.message)
            # 列表拉取失败：清空可见列表，给出可重试的错误
            self.state = FeedState(error=exc)
            self._repository.active = []
            return False

        if token != self._latest:
            logger.debug("[Feed] discarded stale response #%d (latest #%d)", token, self._latest)
            return False

        self._repository.active = page.items
        self.state = FeedState(requests=page.items, total=page.total, total_pages=page.total_pages)
        return True

    def search(self, text: str) -> asyncio.Task:
        """防抖搜索：取消上一次还没触发的，重新计时。"""
        self.filters = replace(self.filters, search=text or "", page=1)
        self._cancel_debounce()
        self._debounce_task = asyncio.create_task(self._debounced_refresh())
        return self._debounce_task

    async def set_filter(self, **changes) -> bool:
        """status / kind / page / limit 变化立即刷新（不防抖）。"""
        if "page" not in changes:
            changes["page"] = 1
        self.filters = replace(self.filters, **changes)
        return await self.refresh()

    def mount(self) -> asyncio.Task:
        if not self.mounted:
            self._poll_task = asyncio.create_task(self._poll())
            logger.debug("[Feed] mounted, polling every %ss", self.refresh_interval)
        return self._poll_task

    async def unmount(self) -> None:
        tasks = [t for t in (self._poll_task, self._debounce_task) if t is not None]
        self._poll_task = None
        self._debounce_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        logger.debug("[Feed] unmounted")

    async def _poll(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.refresh_interval)

    async def _debounced_refresh(self) -> bool:
        await asyncio.sleep(self.debounce)
        return await self.refresh()

    def _cancel_debounce(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
