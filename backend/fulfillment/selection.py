"""
Selection Store — 一个打开的 request 对应一个实例，编辑器关闭即丢弃。

store 里只有三样东西：
  providers     已选 provider（ProviderRef，有序、不重复）
  lines         已选条目（SelectionLine，有序，同一个 key 只有一行）
  total_amount  派生值，每次变更后用 billing.calculate_total 从头重算

规则：
  - 只能选 available 集合里的 provider（即 Catalog Gateway 返回的那些）；
  - toggle_item 对已选条目再点一次 = 取消（toggle 语义）；
  - lab request 全程只允许一个 laboratory；pharmacy request 可以多家；
  - medicine 的 quantity 原样保存用户输入，算钱时才转数字。

SelectionSnapshot 是 store 的值拷贝，也是草稿的存储格式：
    {"selectedProviders": [...], "selectedLines": [...], "totalAmount": 30.0}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .billing import calculate_total
from .exceptions import ValidationError
from .types import (
    Contact,
    LabTest,
    Medicine,
    Provider,
    ProviderKind,
    ProviderRef,
    Request,
    RequestKind,
    SelectionLine,
)

logger = logging.getLogger(__name__)


# ── quantity 输入规则 ──────────────────────────────────────────────────────

def normalize_quantity_input(value: Any) -> Any:
    """
    '' / None        → ''（输入框清空，保留空）
    正整数 / '3'     → int
    其他（'abc'、-5） → 原样保存，算钱时按 0
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer() and value > 0:
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return ""
        if stripped.isdecimal() and int(stripped) > 0:
            return int(stripped)
    return value


def is_valid_quantity(value: Any) -> bool:
    """提交时的检查：必须是 ≥ 1 的整数。"""
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def line_key(provider_id: str, item) -> tuple:
    if isinstance(item, Medicine):
        return (provider_id, item.name.strip().lower(), item.dosage)
    return (provider_id, item.name)


# ── 序列化 ─────────────────────────────────────────────────────────────────

def provider_to_dict(ref: ProviderRef) -> dict:
    return {
        "id": ref.id,
        "name": ref.name,
        "kind": ref.kind.value,
        "contact": {
            "phone": ref.contact.phone,
            "email": ref.contact.email,
            "address": ref.contact.address,
        },
    }


def _provider_from_dict(data: dict) -> ProviderRef:
    contact = data.get("contact") or {}
    return ProviderRef(
        id=str(data["id"]),
        name=data.get("name", ""),
        kind=ProviderKind(data.get("kind", ProviderKind.PHARMACY.value)),
        contact=Contact(
            phone=contact.get("phone", ""),
            email=contact.get("email", ""),
            address=contact.get("address", ""),
        ),
    )


def item_to_dict(item) -> dict:
    if isinstance(item, Medicine):
        return {
            "type": "medicine",
            "id": item.id,
            "name": item.name,
            "dosage": item.dosage,
            "manufacturer": item.manufacturer,
            "availableQuantity": item.available_quantity,
            "unitPrice": item.unit_price,
        }
    return {
        "type": "test",
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "price": item.price,
    }


def item_from_dict(data: dict):
    if data.get("type") == "test":
        return LabTest(
            name=data.get("name", ""),
            description=data.get("description", ""),
            price=data.get("price", 0.0),
            id=data.get("id", ""),
        )
    return Medicine(
        name=data.get("name", ""),
        dosage=data.get("dosage", ""),
        manufacturer=data.get("manufacturer", ""),
        available_quantity=data.get("availableQuantity", 0),
        unit_price=data.get("unitPrice", 0.0),
        id=data.get("id", ""),
    )


def line_to_dict(line: SelectionLine) -> dict:
    return {
        "providerId": line.provider_id,
        "providerName": line.provider_name,
        "item": item_to_dict(line.item),
        "quantity": line.quantity,
        "unitPrice": line.unit_price,
    }


def _line_from_dict(data: dict) -> SelectionLine:
    return SelectionLine(
        provider_id=str(data["providerId"]),
        provider_name=data.get("providerName", ""),
        item=item_from_dict(data.get("item") or {}),
        unit_price=data.get("unitPrice", 0.0),
        quantity=data.get("quantity", ""),
    )


@dataclass
class SelectionSnapshot:
    providers: list = field(default_factory=list)
    lines: list = field(default_factory=list)
    total_amount: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.providers and not self.lines

    def to_dict(self) -> dict:
        return {
            "selectedProviders": [provider_to_dict(p) for p in self.providers],
            "selectedLines": [line_to_dict(line) for line in self.lines],
            "totalAmount": self.total_amount,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SelectionSnapshot":
        """
        Raises:
            ValidationError: 结构不对（缺 id、字段类型错误）
        """
        if not isinstance(data, dict):
            raise ValidationError(message="Selection must be an object.", code="INVALID_SELECTION")
        try:
            return cls(
                providers=[_provider_from_dict(p) for p in data.get("selectedProviders") or []],
                lines=[_line_from_dict(line) for line in data.get("selectedLines") or []],
                total_amount=float(data.get("totalAmount") or 0.0),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ValidationError(
                message="Selection payload is malformed.",
                code="INVALID_SELECTION",
                detail={"error": str(exc)},
            ) from exc

    @classmethod
    def from_response(cls, request: Request) -> "SelectionSnapshot":
        """从已提交的账单恢复（账单是服务器确认过的，作为唯一可信来源）。"""
        response = request.response
        if response is None:
            return cls()
        lines = [
            SelectionLine(
                provider_id=line.provider_id,
                provider_name=line.provider_name,
                item=line.item,
                unit_price=line.unit_price,
                quantity=line.quantity,
            )
            for line in response.lines
        ]
        return cls(providers=list(response.providers), lines=lines, total_amount=calculate_total(lines))


# ── Store ──────────────────────────────────────────────────────────────────

class SelectionStore:

    def __init__(self, kind: RequestKind, available_providers: Optional[Iterable[Provider]] = None):
        self.kind = RequestKind(kind)
        self.providers: list[ProviderRef] = []
        self.lines: list[SelectionLine] = []
        self.total_amount = 0.0
        self._available: dict = {}
        if available_providers is not None:
            self.set_catalog(available_providers)

    @property
    def provider_kind(self) -> ProviderKind:
        return self.kind.provider_kind

    @property
    def is_lab(self) -> bool:
        return self.kind is RequestKind.LAB_TEST_ORDER

    @property
    def available(self) -> list[Provider]:
        return list(self._available.values())

    def set_catalog(self, providers: Iterable[Provider]) -> None:
        """替换可选 provider 集合。已选状态不动（草稿里的 provider 可能已下线，照样保留）。"""
        self._available = {p.id: p for p in providers if p.kind is self.provider_kind}

    # ── provider ─────────────────────────────────────────────────────────

    def is_selected(self, provider_id: str) -> bool:
        return any(p.id == provider_id for p in self.providers)

    def select_provider(self, provider_id: str) -> ProviderRef:
        existing = self._selected_ref(provider_id)
        if existing is not None:
            return existing

        provider = self._require_available(provider_id)
        if self.is_lab and self.providers:
            raise ValidationError(
                message=(
                    f"Only one laboratory can be selected per request; "
                    f"'{self.providers[0].name}' is already selected."
                ),
                code="SINGLE_LABORATORY",
                detail={"selected": self.providers[0].id, "attempted": provider_id},
            )
        ref = provider.ref()
        self.providers.append(ref)
        self._recompute()
        return ref

    def deselect_provider(self, provider_id: str) -> None:
        """取消 provider，同时移除它名下所有条目。"""
        self.providers = [p for p in self.providers if p.id != provider_id]
        self.lines = [line for line in self.lines if line.provider_id != provider_id]
        self._recompute()

    def toggle_provider(self, provider_id: str) -> bool:
        """返回 toggle 后是否处于选中状态。"""
        if self.is_selected(provider_id):
            self.deselect_provider(provider_id)
            return False
        self.select_provider(provider_id)
        return True

    # ── items ────────────────────────────────────────────────────────────

    def find_line(self, provider_id: str, item) -> Optional[SelectionLine]:
        key = line_key(provider_id, item)
        for line in self.lines:
            if line.key == key:
                return line
        return None

    def toggle_item(self, provider_id: str, item) -> Optional[SelectionLine]:
        """
        已选 → 移除，返回 None；未选 → 加入，返回新行。
        provider 还没选时自动选上（受 single-lab 和 available 约束）。

        Raises:
            ValidationError: 条目类型与 request 不符 / provider 不可选 /
                             lab 已选了别家 / 条目不在该 provider 的 catalog 里
        """
        self._check_item_kind(item)

        existing = self.find_line(provider_id, item)
        if existing is not None:
            self.lines.remove(existing)
            self._recompute()
            return None

        provider = self._require_available(provider_id)
        catalog_item = self._resolve_item(provider, item)
        ref = self.select_provider(provider_id)

        line = SelectionLine(
            provider_id=ref.id,
            provider_name=ref.name,
            item=catalog_item,
            unit_price=catalog_item.unit_price if isinstance(catalog_item, Medicine) else catalog_item.price,
            quantity="",
        )
        self.lines.append(line)
        self._recompute()
        return line

    def set_quantity(self, provider_id: str, item, value: Any) -> SelectionLine:
        line = self.find_line(provider_id, item)
        if line is None:
            raise ValidationError(
                message=f"'{item.name}' is not selected for this provider.",
                code="LINE_NOT_SELECTED",
                detail={"provider_id": provider_id, "item": item.name},
            )
        if not line.is_medicine:
            raise ValidationError(
                message="Quantity applies to medicines only.",
                code="QUANTITY_NOT_APPLICABLE",
                detail={"item": item.name},
            )
        line.quantity = normalize_quantity_input(value)
        self._recompute()
        return line

    def clear(self) -> None:
        self.providers = []
        self.lines = []
        self._recompute()

    # ── snapshot ─────────────────────────────────────────────────────────

    def snapshot(self) -> SelectionSnapshot:
        lines = [
            SelectionLine(
                provider_id=line.provider_id,
                provider_name=line.provider_name,
                item=line.item,
                unit_price=line.unit_price,
                quantity=line.quantity,
            )
            for line in self.lines
        ]
        return SelectionSnapshot(providers=list(self.providers), lines=lines, total_amount=self.total_amount)

    def load_snapshot(self, snapshot: SelectionSnapshot, validate: bool = False) -> None:
        """
        validate=False：原样恢复（草稿 / 已提交账单），不检查 provider 是否还在 catalog 里。
        validate=True： 逐条重放 select / toggle / set_quantity，任何一步不合法都抛
                        ValidationError，且 store 保持调用前的状态。
        """
        if not validate:
            self.providers = list(snapshot.providers)
            self.lines = [
                SelectionLine(
                    provider_id=line.provider_id,
                    provider_name=line.provider_name,
                    item=line.item,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                )
                for line in snapshot.lines
            ]
            self._recompute()
            return

        replay = SelectionStore(self.kind, self.available)
        for ref in snapshot.providers:
            replay.select_provider(ref.id)
        for line in snapshot.lines:
            if replay.find_line(line.provider_id, line.item) is not None:
                continue
            replay.toggle_item(line.provider_id, line.item)
            if line.is_medicine:
                replay.set_quantity(line.provider_id, line.item, line.quantity)
        self.providers = replay.providers
        self.lines = replay.lines
        self._recompute()

    def lines_for(self, provider_id: str) -> list[SelectionLine]:
        return [line for line in self.lines if line.provider_id == provider_id]

    # ── 内部 ──────────────────────────────────────────────────────────────

    def _recompute(self) -> None:
        self.total_amount = calculate_total(self.lines)

    def _selected_ref(self, provider_id: str) -> Optional[ProviderRef]:
        for ref in self.providers:
            if ref.id == provider_id:
                return ref
        return None

    def _require_available(self, provider_id: str) -> Provider:
        provider = self._available.get(provider_id)
        if provider is None:
            raise ValidationError(
                message=f"{self.provider_kind.value.capitalize()} {provider_id} is not available for selection.",
                code="PROVIDER_NOT_AVAILABLE",
                detail={"provider_id": provider_id},
            )
        return provider

    def _check_item_kind(self, item) -> None:
        expected = LabTest if self.is_lab else Medicine
        if not isinstance(item, expected):
            raise ValidationError(
                message=f"A {self.kind.value} request only accepts {expected.__name__} items.",
                code="ITEM_KIND_MISMATCH",
                detail={"item": getattr(item, "name", None)},
            )

    def _resolve_item(self, provider: Provider, item):
        """用 catalog 里的那份（价格以 catalog 为准），找不到则拒绝。"""
        key = line_key(provider.id, item)
        for candidate in provider.catalog:
            if isinstance(candidate, type(item)) and line_key(provider.id, candidate) == key:
                return candidate
        raise ValidationError(
            message=f"'{item.name}' is not in {provider.name}'s catalog.",
            code="ITEM_NOT_IN_CATALOG",
            detail={"provider_id": provider.id, "item": item.name},
        )
