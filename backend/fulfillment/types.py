"""
Canonical data model — 核心层唯一认识的标准格式。

intake/ 下的 normalizer 负责把后端五花八门的字段名转成这里的结构；
catalog / repository / selection / lifecycle 只消费这些 dataclass，
永远不碰后端原始 dict。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


class RequestKind(str, Enum):
    MEDICINE_ORDER = "order_medicine"
    LAB_TEST_ORDER = "book_test_visit"

    @property
    def provider_kind(self) -> "ProviderKind":
        if self is RequestKind.LAB_TEST_ORDER:
            return ProviderKind.LABORATORY
        return ProviderKind.PHARMACY

    @property
    def section(self) -> "SectionKey":
        if self is RequestKind.LAB_TEST_ORDER:
            return SectionKey.LAB
        return SectionKey.PHARMACY


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    BILL_GENERATED = "bill_generated"
    PAYMENT_CONFIRMED = "payment_confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProviderKind(str, Enum):
    PHARMACY = "pharmacy"
    LABORATORY = "laboratory"


class SectionKey(str, Enum):
    """草稿分区：同一个 request 的 pharmacy 草稿和 lab 草稿互不覆盖。"""

    PHARMACY = "pharmacyData"
    LAB = "labData"


# ── Provider / Catalog ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Contact:
    phone: str = ""
    email: str = ""
    address: str = ""


@dataclass(frozen=True)
class Medicine:
    name: str
    dosage: str = ""
    manufacturer: str = ""
    available_quantity: int = 0
    unit_price: float = 0.0
    id: str = ""

    @property
    def price(self) -> float:
        return self.unit_price


@dataclass(frozen=True)
class LabTest:
    name: str
    description: str = ""
    price: float = 0.0
    id: str = ""


CatalogItem = Union[Medicine, LabTest]


@dataclass(frozen=True)
class ProviderRef:
    """Provider 的轻量引用，Selection Store 和账单里只存这个，不带 catalog。"""

    id: str
    name: str
    kind: ProviderKind
    contact: Contact = field(default_factory=Contact)


@dataclass
class Provider:
    id: str
    name: str
    kind: ProviderKind
    contact: Contact = field(default_factory=Contact)
    is_approved: bool = True
    is_active: bool = True
    rating: float = 0.0
    catalog: list = field(default_factory=list)

    def ref(self) -> ProviderRef:
        return ProviderRef(id=self.id, name=self.name, kind=self.kind, contact=self.contact)


# ── Selection ──────────────────────────────────────────────────────────────

@dataclass
class SelectionLine:
    """
    账单里的一行。

    item     是 CatalogItem 的值拷贝（frozen dataclass），不是活引用。
    quantity 只对 medicine 有意义：保留用户原始输入（'' 也保留），
             算钱时才由 billing.coerce_quantity 转成数字。
    """

    provider_id: str
    provider_name: str
    item: CatalogItem
    unit_price: float
    quantity: Any = ""

    @property
    def is_medicine(self) -> bool:
        return isinstance(self.item, Medicine)

    @property
    def key(self) -> tuple:
        if self.is_medicine:
            return (self.provider_id, self.item.name.strip().lower(), self.item.dosage)
        return (self.provider_id, self.item.name)


# ── Request ────────────────────────────────────────────────────────────────

@dataclass
class PatientSnapshot:
    name: str = "Unknown Patient"
    phone: str = ""
    address: str = ""
    email: str = ""


@dataclass
class PrescriptionSnapshot:
    doctor_name: str = "Doctor"
    specialty: str = "General Physician"
    diagnosis: str = ""
    symptoms: list = field(default_factory=list)
    medications: list = field(default_factory=list)
    investigations: list = field(default_factory=list)
    advice: str = ""
    issued_at: Optional[datetime] = None


@dataclass
class BillResponse:
    """已提交、服务器确认的账单。一旦生成不再修改，新账单整体替换。"""

    providers: list
    lines: list
    total_amount: float
    message: str = ""
    responded_at: Optional[datetime] = None


@dataclass
class Cancellation:
    reason: str
    by: str = "admin"
    at: Optional[datetime] = None


@dataclass
class Request:
    """
    一个 fulfillment 任务。

    raw 保存后端原始数据，用于排查问题，不参与业务逻辑。
    """

    id: str
    kind: RequestKind
    patient: PatientSnapshot
    prescription: PrescriptionSnapshot
    status: RequestStatus = RequestStatus.PENDING
    response: Optional[BillResponse] = None
    cancellation: Optional[Cancellation] = None
    payment_confirmed: bool = False
    created_at: Optional[datetime] = None
    raw: Any = field(default=None, repr=False, compare=False)

    @property
    def has_committed_bill(self) -> bool:
        if self.response is None or not self.response.lines:
            return False
        return self.payment_confirmed or self.status in (
            RequestStatus.BILL_GENERATED,
            RequestStatus.PAYMENT_CONFIRMED,
            RequestStatus.COMPLETED,
        )


@dataclass
class FulfillmentOrder:
    """payment_confirmed → completed 时，每个 provider 生成一张。"""

    request_id: str
    provider: ProviderRef
    lines: list
    total_amount: float
    patient: PatientSnapshot
    prescription: PrescriptionSnapshot


@dataclass
class Page:
    items: list
    total: int = 0
    total_pages: int = 1
