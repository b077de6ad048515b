"""
工厂函数：根据实体名返回对应 Normalizer。

新增实体只需：
  1. 在 adapters.py 新建 Normalizer 类
  2. 在此处 _build_registry 加一行
  不需要修改任何核心代码。
"""

from typing import Any

from ..exceptions import ValidationError
from .base import BaseNormalizer


# ── 注册表 ──────────────────────────────────────────────────────────────────
# key: 实体名
# value: Normalizer 类（未实例化）
def _build_registry() -> dict[str, type[BaseNormalizer]]:
    # 延迟导入，避免循环依赖
    from .adapters import (
        BillNormalizer,
        LabTestNormalizer,
        MedicineNormalizer,
        ProviderNormalizer,
        RequestNormalizer,
    )

    return {
        "request":  RequestNormalizer,
        "provider": ProviderNormalizer,
        "medicine": MedicineNormalizer,
        "lab_test": LabTestNormalizer,
        "bill":     BillNormalizer,
    }


def get_normalizer(entity: str, raw: Any, **context: Any) -> BaseNormalizer:
    """
    根据 entity 返回已实例化的 Normalizer。

    Args:
        entity:  实体名，例如 "request"、"provider"
        raw:     后端原始数据（dict / JSON 字符串）
        context: 附加上下文，例如 provider 的 kind

    Raises:
        ValidationError: 未知的 entity
    """
    registry = _build_registry()
    normalizer_cls = registry.get(entity)

    if normalizer_cls is None:
        raise ValidationError(
            message=f"Unknown entity: {entity!r}.",
            code="UNKNOWN_ENTITY",
            detail={"known_entities": list(registry.keys())},
        )

    return normalizer_cls(raw, **context)
