"""
EditorSession — 打开一个 request 的账单编辑器。

open() 时决定 store 从哪里恢复（source）：
  response  已有服务器确认的账单 → 以账单为准，旧草稿不用也不删
  draft     有未提交的草稿
  empty     都没有

每次变更后把 store 镜像到草稿。草稿写失败只记一次 warning，
之后本次会话切到 memory-only，不再尝试写。
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .exceptions import PersistenceError
from .selection import SelectionSnapshot, SelectionStore
from .types import LabTest, Medicine, Provider, Request

logger = logging.getLogger(__name__)

SOURCE_RESPONSE = "response"
SOURCE_DRAFT = "draft"
SOURCE_EMPTY = "empty"


@dataclass
class PrescriptionMatch:
    prescribed: str
    provider_id: str
    provider_name: str
    item: Any


def _prescribed_name(entry: Any) -> str:
    if isinstance(entry, dict):
        return str(entry.get("name") or entry.get("testName") or entry.get("medicineName") or "").strip()
    return str(entry or "").strip()


def _names_match(prescribed: str, offered: str) -> bool:
    prescribed = prescribed.lower()
    offered = offered.strip().lower()
    if not prescribed or not offered:
        return False
    return prescribed == offered or prescribed in offered or offered in prescribed


class EditorSession:

    def __init__(self, request: Request, lifecycle, drafts=None, providers: Optional[list] = None):
        self.request = request
        self.store = SelectionStore(request.kind, providers or [])
        self.source = SOURCE_EMPTY
        self._lifecycle = lifecycle
        self._drafts = drafts
        self.memory_only = drafts is None
        self.closed = False

    @classmethod
    async def open(cls, request: Request, catalog, lifecycle, drafts=None) -> "EditorSession":
        providers = await catalog.list_providers(request.kind.provider_kind)
        session = cls(request, lifecycle, drafts=drafts, providers=providers)
        await session.hydrate()
        return session

    @property
    def section(self):
        return self.request.kind.section

    @property
    def providers(self) -> list[Provider]:
        return self.store.available

    async def hydrate(self) -> None:
        if self.request.has_committed_bill:
            self.store.load_snapshot(SelectionSnapshot.from_response(self.request))
            self.source = SOURCE_RESPONSE
            return

        snapshot = await self._load_draft()
        if snapshot is not None and not snapshot.is_empty:
            self.store.load_snapshot(snapshot)
            self.source = SOURCE_DRAFT
        else:
            self.source = SOURCE_EMPTY
        logger.debug("[Editor] opened %s from %s", self.request.id, self.source)

    def snapshot(self) -> SelectionSnapshot:
        return self.store.snapshot()

    # ── 变更（全部镜像到草稿） ────────────────────────────────────────────

    async def select_provider(self, provider_id: str):
        ref = self.store.select_provider(provider_id)
        await self._mirror()
        return ref

    async def deselect_provider(self, provider_id: str) -> None:
        self.store.deselect_provider(provider_id)
        await self._mirror()

    async def toggle_provider(self, provider_id: str) -> bool:
        selected = self.store.toggle_provider(provider_id)
        await self._mirror()
        return selected

    async def toggle_item(self, provider_id: str, item):
        line = self.store.toggle_item(provider_id, item)
        await self._mirror()
        return line

    async def set_quantity(self, provider_id: str, item, value: Any):
        line = self.store.set_quantity(provider_id, item, value)
        await self._mirror()
        return line

    async def replace(self, snapshot: SelectionSnapshot) -> None:
        """整体替换（HTTP PUT）：逐条重放校验，任何一条不合法则整体不生效。"""
        self.store.load_snapshot(snapshot, validate=True)
        await self._mirror()

    # ── 提交 ──────────────────────────────────────────────────────────────

    async def submit(self, message: str = "") -> Request:
        """
        出账单。失败时 store 原样保留，编辑器不关。
        成功后以服务器返回的账单重新 hydrate。
        """
        updated = await self._lifecycle.generate_bill(self.request, self.store, message)
        self.request = updated
        if updated.has_committed_bill:
            self.store.load_snapshot(SelectionSnapshot.from_response(updated))
            self.source = SOURCE_RESPONSE
        return updated

    async def assign(self) -> list:
        return await self._lifecycle.assign_orders(self.request)

    # ── 处方匹配 ──────────────────────────────────────────────────────────

    def prescription_matches(self) -> list[PrescriptionMatch]:
        """catalog 中与处方药品 / 检查项目名字匹配的条目，用于预选建议。"""
        rx = self.request.prescription
        if self.store.is_lab:
            prescribed = [_prescribed_name(entry) for entry in rx.investigations]
            item_type = LabTest
        else:
            prescribed = [_prescribed_name(entry) for entry in rx.medications]
            item_type = Medicine

        matches = []
        for name in filter(None, prescribed):
            for provider in self.store.available:
                for item in provider.catalog:
                    if isinstance(item, item_type) and _names_match(name, item.name):
                        matches.append(PrescriptionMatch(
                            prescribed=name,
                            provider_id=provider.id,
                            provider_name=provider.name,
                            item=item,
                        ))
        return matches

    def close(self) -> None:
        """丢弃内存中的 store；草稿保留。"""
        self.store.clear()
        self.closed = True

    # ── 草稿 ──────────────────────────────────────────────────────────────

    async def _load_draft(self) -> Optional[SelectionSnapshot]:
        if self.memory_only:
            return None
        try:
            return await self._drafts.load(self.request.id, self.section)
        except PersistenceError as exc:
            self._go_memory_only(exc)
            return None

    async def _mirror(self) -> None:
        if self.memory_only:
            return
        try:
            await self._drafts.save(self.request.id, self.section, self.store.snapshot())
        except PersistenceError as exc:
            self._go_memory_only(exc)

    def _go_memory_only(self, exc: PersistenceError) -> None:
        logger.warning(
            "[Editor] draft storage unavailable for %s, continuing in memory only: %s",
            self.request.id, exc.message,
        )
        self.memory_only = True
