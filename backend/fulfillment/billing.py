"""
Bill Calculator — 纯函数，输入 SelectionLine 列表，输出金额。

两套值分开：
  - line.quantity 保存用户原始输入（'' / 'abc' / -5 都原样保留），给输入框用；
  - 这里的 coerce_* 只在算钱时把它们转成数字，非法一律按 0 算。

总额永远是从头重算的 grand sum；per-provider 小计只用于展示分组。
"""

import math
from dataclasses import dataclass, field
from typing import Any, Iterable

from .types import SelectionLine


def to_number(value: Any) -> float:
    """任意输入 → float。None / '' / 非数字 / NaN / inf → 0。"""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def coerce_quantity(value: Any) -> float:
    """数量只接受正数，负数和 0 一样按 0 算。"""
    number = to_number(value)
    return number if number > 0 else 0.0


def line_amount(line: SelectionLine) -> float:
    price = to_number(line.unit_price)
    if line.is_medicine:
        return coerce_quantity(line.quantity) * price
    # 检验项目数量隐含为 1
    return price


def calculate_total(lines: Iterable[SelectionLine]) -> float:
    return sum((line_amount(line) for line in lines), 0.0)


def subtotals_by_provider(lines: Iterable[SelectionLine]) -> dict:
    """按 provider_id 分组小计，保持 provider 首次出现的顺序。"""
    subtotals: dict = {}
    for line in lines:
        subtotals[line.provider_id] = subtotals.get(line.provider_id, 0.0) + line_amount(line)
    return subtotals


@dataclass
class BillSummary:
    total: float
    medicines_total: float
    tests_total: float
    subtotals: dict = field(default_factory=dict)


def summarize(lines: Iterable[SelectionLine]) -> BillSummary:
    lines = list(lines)
    medicines_total = calculate_total(line for line in lines if line.is_medicine)
    tests_total = calculate_total(line for line in lines if not line.is_medicine)
    return BillSummary(
        total=calculate_total(lines),
        medicines_total=medicines_total,
        tests_total=tests_total,
        subtotals=subtotals_by_provider(lines),
    )


def format_amount(amount: float) -> str:
    """30.0 → '30'，30.5 → '30.5'。用于拼接给患者看的消息。"""
    amount = round(to_number(amount), 2)
    if amount.is_integer():
        return str(int(amount))
    return f"{amount:.2f}".rstrip("0")
