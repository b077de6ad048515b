"""
BaseNormalizer — 所有实体 normalizer 的抽象基类。

后端同一个实体经常有好几种字段名（_id / id、patientId 被 populate 或没被 populate、
日期是 ISO 时间戳或者 YYYY-MM-DD……）。每种实体一个 normalizer，
把这些差异消化在这里，核心层拿到的永远是 types.py 里的标准结构。

每个新实体只需：
1. 继承 BaseNormalizer
2. 实现 transform()
3. 在 factory.py 的 _build_registry 注册一行
"""

import json
import re
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from ..exceptions import ValidationError

# ── 共用工具（normalizer 可直接复用） ─────────────────────────────────────
PLAIN_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
PRICE_JUNK_RE = re.compile(r"[^0-9.]")
NEGATIVE_PRICE_RE = re.compile(r"^[^0-9.-]*-")


def first(*values: Any, default: Any = None) -> Any:
    """返回第一个非空值（None / '' / {} / [] 都算空）。"""
    for value in values:
        if value is None:
            continue
        if isinstance(value, (str, dict, list)) and not value:
            continue
        return value
    return default


def text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    result = str(value).strip()
    return result or default


def as_dict(value: Any) -> dict:
    """populate 过的引用是 dict，没 populate 的是 id 字符串 → 统一成 dict。"""
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [value]


def ref_id(value: Any) -> str:
    """引用字段可能是 id 字符串，也可能是 populate 出来的对象。"""
    if isinstance(value, dict):
        return text(first(value.get("_id"), value.get("id")))
    return text(value)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    ISO 时间戳（带 Z 或偏移）或者纯 YYYY-MM-DD 都接受。
    纯日期按 UTC 零点处理；无法识别时返回 None。
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raw = str(value).strip()
    if PLAIN_DATE_RE.match(raw):
        return datetime.combine(date.fromisoformat(raw), time.min, tzinfo=timezone.utc)
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_price(value: Any) -> float:
    """价格可能是 '₹500' 这种带符号的字符串，先去掉非数字字符。负价格按 0 处理。"""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return max(float(value), 0.0)
    if NEGATIVE_PRICE_RE.match(str(value)):
        return 0.0
    cleaned = PRICE_JUNK_RE.sub("", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def parse_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def format_address(address: Any, keys=("line1", "line2", "city", "state", "pincode", "postalCode")) -> str:
    """地址对象 → 'line1, line2, city, state, pincode'；字符串原样返回。"""
    if not address:
        return ""
    if isinstance(address, str):
        return address.strip()
    if not isinstance(address, dict):
        return ""
    parts = []
    for key in keys:
        if key == "postalCode" and address.get("pincode"):
            continue
        part = text(address.get(key))
        if part:
            parts.append(part)
    return ", ".join(parts)


class BaseNormalizer(ABC):
    """
    三步流水线：parse → transform → validate

    子类必须实现 transform()；
    parse() 接受 dict / JSON 字符串 / bytes；
    validate() 默认只检查 id，子类可 super() 后追加检查。
    """

    # 子类声明自己对应的实体标识符（与 factory 注册键一致）
    entity: str = ""

    def __init__(self, raw: Any, **context: Any):
        self._raw = raw
        self._context = context
        self._parsed: dict = {}

    def parse(self) -> dict:
        raw = self._raw
        if isinstance(raw, (bytes, str)):
            try:
                raw = json.loads(raw)
            except ValueError as exc:
                raise ValidationError(
                    message=f"Malformed {self.entity} payload.",
                    code="MALFORMED_PAYLOAD",
                    detail={"error": str(exc)},
                ) from exc
        self._parsed = raw if isinstance(raw, dict) else {}
        return self._parsed

    @abstractmethod
    def transform(self) -> Any:
        """将 self._parsed 转换为标准结构。缺失字段一律给默认值，不传 None。"""

    def validate(self, result: Any) -> None:
        if hasattr(result, "id") and not getattr(result, "id"):
            raise ValidationError(
                message=f"{self.entity} record has no identifier.",
                code="MISSING_IDENTIFIER",
                detail={"entity": self.entity},
            )

    def process(self) -> Any:
        """parse → transform → validate，返回校验通过的标准结构。"""
        self.parse()
        result = self.transform()
        self.validate(result)
        return result
