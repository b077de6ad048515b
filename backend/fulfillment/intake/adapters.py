"""
具体 normalizer 实现。

新增实体：在此文件添加一个类，然后在 factory.py 注册即可。

已注册实体：
  request   — RequestNormalizer    (admin requests，populate 或扁平两种形态)
  provider  — ProviderNormalizer   (pharmacy / laboratory，由 kind 区分字段名)
  medicine  — MedicineNormalizer   (pharmacy inventory 条目)
  lab_test  — LabTestNormalizer    (laboratory inventory 条目)
  bill      — BillNormalizer       (request.adminResponse → BillResponse)
"""

from typing import Any

from ..billing import calculate_total
from ..types import (
    BillResponse,
    Cancellation,
    Contact,
    LabTest,
    Medicine,
    PatientSnapshot,
    PrescriptionSnapshot,
    Provider,
    ProviderKind,
    ProviderRef,
    Request,
    RequestKind,
    RequestStatus,
    SelectionLine,
)
from .base import (
    BaseNormalizer,
    as_dict,
    as_list,
    first,
    format_address,
    parse_datetime,
    parse_int,
    parse_price,
    ref_id,
    text,
)

STATUS_ALIASES = {
    "pending": RequestStatus.PENDING,
    "accepted": RequestStatus.ACCEPTED,
    "admin_responded": RequestStatus.BILL_GENERATED,
    "bill_generated": RequestStatus.BILL_GENERATED,
    "confirmed": RequestStatus.PAYMENT_CONFIRMED,
    "paid": RequestStatus.PAYMENT_CONFIRMED,
    "payment_confirmed": RequestStatus.PAYMENT_CONFIRMED,
    "completed": RequestStatus.COMPLETED,
    "cancelled": RequestStatus.CANCELLED,
    "canceled": RequestStatus.CANCELLED,
}

PROVIDER_ADDRESS_KEYS = ("line1", "city", "state")


def detect_kind(raw: dict) -> RequestKind:
    if (
        raw.get("type") == RequestKind.LAB_TEST_ORDER.value
        or raw.get("requestType") == "lab"
        or raw.get("providerType") == ProviderKind.LABORATORY.value
    ):
        return RequestKind.LAB_TEST_ORDER
    return RequestKind.MEDICINE_ORDER


# ── RequestNormalizer ──────────────────────────────────────────────────────
#
# 后端格式示例（populate 过）:
# {
#   "_id": "66f0...", "type": "order_medicine", "status": "accepted",
#   "patientId": {"firstName": "Asha", "lastName": "Rao", "phone": "...", "address": {...}},
#   "prescriptionId": {
#     "doctorId": {"firstName": "Neel", "lastName": "Shah", "specialization": "Cardiology"},
#     "consultationId": {"diagnosis": "...", "symptoms": [...], "investigations": [...]},
#     "medications": [...], "createdAt": "2024-05-01T10:00:00.000Z"
#   },
#   "adminResponse": {...}, "paymentConfirmed": false, "createdAt": "2024-05-01"
# }
#
# 没 populate 时 patientId 只是一个 id 字符串，名字在 patientName / patientPhone 上。

class RequestNormalizer(BaseNormalizer):
    entity = "request"

    def _patient(self, raw: dict) -> PatientSnapshot:
        patient = as_dict(raw.get("patientId"))
        prescription_patient = as_dict(as_dict(raw.get("prescriptionId")).get("patientId"))

        first_name = text(patient.get("firstName"))
        last_name = text(patient.get("lastName"))
        if first_name and last_name:
            name = f"{first_name} {last_name}"
        else:
            name = text(first(patient.get("name"), raw.get("patientName"), first_name), "Unknown Patient")

        return PatientSnapshot(
            name=name,
            phone=text(first(patient.get("phone"), raw.get("patientPhone"))),
            email=text(first(patient.get("email"), raw.get("patientEmail"))),
            address=format_address(first(
                patient.get("address"),
                prescription_patient.get("address"),
                raw.get("patientAddress"),
                raw.get("address"),
                raw.get("deliveryAddress"),
            )),
        )

    def _prescription(self, raw: dict) -> PrescriptionSnapshot:
        rx = first(as_dict(raw.get("prescriptionId")), as_dict(raw.get("prescription")), default={})
        doctor = first(as_dict(rx.get("doctorId")), as_dict(rx.get("doctor")), default={})
        consultation = as_dict(rx.get("consultationId"))

        if doctor.get("firstName") and doctor.get("lastName"):
            doctor_name = f"{text(doctor['firstName'])} {text(doctor['lastName'])}"
        else:
            doctor_name = text(first(
                doctor.get("firstName"), doctor.get("name"), rx.get("doctorName"), raw.get("doctorName"),
            ), "Doctor")

        return PrescriptionSnapshot(
            doctor_name=doctor_name,
            specialty=text(first(
                doctor.get("specialization"), doctor.get("specialty"),
                rx.get("doctorSpecialty"), rx.get("specialty"),
            ), "General Physician"),
            diagnosis=text(first(consultation.get("diagnosis"), rx.get("diagnosis"))),
            symptoms=as_list(first(consultation.get("symptoms"), rx.get("symptoms"))),
            medications=as_list(first(rx.get("medications"), raw.get("medicines"), raw.get("items"))),
            investigations=as_list(first(consultation.get("investigations"), rx.get("investigations"), raw.get("tests"))),
            advice=text(first(consultation.get("advice"), rx.get("advice"), rx.get("notes"))),
            issued_at=parse_datetime(first(rx.get("issuedAt"), rx.get("createdAt"), raw.get("createdAt"))),
        )

    @staticmethod
    def _status(raw: dict, has_bill: bool, payment_confirmed: bool) -> RequestStatus:
        status = STATUS_ALIASES.get(text(raw.get("status")).lower(), RequestStatus.PENDING)
        # 后端出账单后仍写 accepted，只能靠 adminResponse 是否存在来区分
        if status is RequestStatus.ACCEPTED and has_bill:
            status = RequestStatus.BILL_GENERATED
        if payment_confirmed and status is RequestStatus.BILL_GENERATED:
            status = RequestStatus.PAYMENT_CONFIRMED
        return status

    @staticmethod
    def _cancellation(raw: dict) -> Cancellation:
        cancellation = as_dict(raw.get("cancellation"))
        return Cancellation(
            reason=text(first(cancellation.get("reason"), raw.get("cancellationReason"), raw.get("cancelReason"))),
            by=text(first(cancellation.get("by"), raw.get("cancelledBy")), "admin"),
            at=parse_datetime(first(cancellation.get("at"), raw.get("cancelledAt"), raw.get("updatedAt"))),
        )

    def transform(self) -> Request:
        raw = self._parsed
        kind = detect_kind(raw)

        admin_response = as_dict(raw.get("adminResponse"))
        response = BillNormalizer(admin_response, kind=kind).process() if admin_response else None
        has_bill = response is not None and bool(response.lines)

        payment_confirmed = raw.get("paymentConfirmed") is True or text(raw.get("paymentStatus")) == "paid"
        status = self._status(raw, has_bill, payment_confirmed)
        if status is RequestStatus.PAYMENT_CONFIRMED:
            payment_confirmed = True

        return Request(
            id=ref_id(raw),
            kind=kind,
            patient=self._patient(raw),
            prescription=self._prescription(raw),
            status=status,
            response=response,
            cancellation=self._cancellation(raw) if status is RequestStatus.CANCELLED else None,
            payment_confirmed=payment_confirmed,
            created_at=parse_datetime(raw.get("createdAt")),
            raw=raw,
        )


# ── ProviderNormalizer ─────────────────────────────────────────────────────
#
# pharmacy:   {"_id", "pharmacyName", "status": "approved", "isActive": true, "address": {...}}
# laboratory: {"_id", "labName",      "status": "approved", "isActive": true, ...}

class ProviderNormalizer(BaseNormalizer):
    entity = "provider"

    NAME_FIELDS = {
        ProviderKind.PHARMACY: "pharmacyName",
        ProviderKind.LABORATORY: "labName",
    }

    def transform(self) -> Provider:
        raw = self._parsed
        kind = ProviderKind(self._context.get("kind", ProviderKind.PHARMACY))
        is_approved = raw.get("isApproved") is True or text(raw.get("status")).lower() == "approved"

        return Provider(
            id=ref_id(raw),
            name=text(first(raw.get(self.NAME_FIELDS[kind]), raw.get("name"))),
            kind=kind,
            contact=Contact(
                phone=text(raw.get("phone")),
                email=text(raw.get("email")),
                address=format_address(raw.get("address"), keys=PROVIDER_ADDRESS_KEYS),
            ),
            is_approved=is_approved,
            is_active=raw.get("isActive") is not False,
            rating=parse_price(raw.get("rating")),
        )


# ── Catalog items ──────────────────────────────────────────────────────────
#
# 条目没有 id 也照样收（手工录入的库存有时没有），所以 validate 不做检查。

class MedicineNormalizer(BaseNormalizer):
    entity = "medicine"

    def transform(self) -> Medicine:
        raw = self._parsed
        return Medicine(
            name=text(raw.get("name")),
            dosage=text(raw.get("dosage")),
            manufacturer=text(raw.get("manufacturer")),
            available_quantity=parse_int(raw.get("quantity")),
            unit_price=parse_price(raw.get("price")),
            id=ref_id(raw),
        )

    def validate(self, result: Any) -> None:
        pass


class LabTestNormalizer(BaseNormalizer):
    entity = "lab_test"

    def transform(self) -> LabTest:
        raw = self._parsed
        return LabTest(
            name=text(first(raw.get("name"), raw.get("testName"))),
            description=text(raw.get("description")),
            price=parse_price(raw.get("price")),
            id=ref_id(raw),
        )

    def validate(self, result: Any) -> None:
        pass


# ── BillNormalizer ─────────────────────────────────────────────────────────
#
# adminResponse 的形态：
# {
#   "pharmacies": ["66f1..."] 或 [{"id", "name", "address", ...}],
#   "labs":       同上,
#   "medicines":  [{"pharmacyId", "pharmacyName", "name", "dosage", "quantity", "price"}],
#   "tests":      [{"labId", "labName", "testName", "price"}]   (旧数据叫 investigations),
#   "totalAmount": 30, "message": "...", "responseDate": "..."
# }
#
# providers 只给了 id 时，名字从 line 上的 pharmacyName / labName 找回来。

class BillNormalizer(BaseNormalizer):
    entity = "bill"

    def _provider_kind(self) -> ProviderKind:
        return RequestKind(self._context.get("kind", RequestKind.MEDICINE_ORDER)).provider_kind

    def _raw_providers(self, raw: dict) -> list:
        if self._provider_kind() is ProviderKind.LABORATORY:
            return as_list(first(raw.get("labs"), raw.get("lab")))
        return as_list(first(raw.get("pharmacies"), raw.get("pharmacy")))

    def _lines(self, raw: dict, fallback_id: str) -> list:
        lines = []
        if self._provider_kind() is ProviderKind.LABORATORY:
            for entry in as_list(first(raw.get("tests"), raw.get("investigations"))):
                entry = as_dict(entry)
                price = parse_price(entry.get("price"))
                lines.append(SelectionLine(
                    provider_id=text(first(entry.get("labId"), fallback_id)),
                    provider_name=text(entry.get("labName")),
                    item=LabTest(name=text(first(entry.get("testName"), entry.get("name")), "Test"), price=price),
                    unit_price=price,
                ))
        else:
            for entry in as_list(raw.get("medicines")):
                entry = as_dict(entry)
                price = parse_price(entry.get("price"))
                quantity = entry.get("quantity")
                lines.append(SelectionLine(
                    provider_id=text(first(entry.get("pharmacyId"), fallback_id)),
                    provider_name=text(entry.get("pharmacyName")),
                    item=Medicine(
                        name=text(entry.get("name")),
                        dosage=text(entry.get("dosage")),
                        manufacturer=text(entry.get("manufacturer")),
                        unit_price=price,
                    ),
                    unit_price=price,
                    quantity=quantity if quantity is not None else "",
                ))
        return lines

    def transform(self) -> BillResponse:
        raw = self._parsed
        kind = self._provider_kind()
        name_field = "labName" if kind is ProviderKind.LABORATORY else "pharmacyName"
        id_field = "labId" if kind is ProviderKind.LABORATORY else "pharmacyId"

        raw_providers = self._raw_providers(raw)
        fallback_id = ref_id(first(*raw_providers)) if raw_providers else ""
        if not fallback_id and raw_providers and isinstance(raw_providers[0], dict):
            fallback_id = text(raw_providers[0].get(id_field))
        lines = self._lines(raw, fallback_id)
        names_from_lines = {line.provider_id: line.provider_name for line in lines if line.provider_name}

        providers = []
        seen = set()
        for entry in raw_providers:
            data = as_dict(entry)
            provider_id = ref_id(entry) or text(data.get(id_field))
            if not provider_id or provider_id in seen:
                continue
            seen.add(provider_id)
            providers.append(ProviderRef(
                id=provider_id,
                name=text(first(data.get("name"), data.get(name_field), names_from_lines.get(provider_id))),
                kind=kind,
                contact=Contact(
                    phone=text(data.get("phone")),
                    email=text(data.get("email")),
                    address=format_address(data.get("address"), keys=PROVIDER_ADDRESS_KEYS),
                ),
            ))
        # 旧数据里 providers 列表可能是空的，只能从 line 上反推
        for line in lines:
            if line.provider_id and line.provider_id not in seen:
                seen.add(line.provider_id)
                providers.append(ProviderRef(id=line.provider_id, name=line.provider_name, kind=kind))

        provider_names = {provider.id: provider.name for provider in providers}
        for line in lines:
            if not line.provider_name:
                line.provider_name = provider_names.get(line.provider_id, "")

        total = raw.get("totalAmount")
        return BillResponse(
            providers=providers,
            lines=lines,
            total_amount=parse_price(total) if total is not None else calculate_total(lines),
            message=text(raw.get("message")),
            responded_at=parse_datetime(first(raw.get("responseDate"), raw.get("respondedAt"))),
        )

    def validate(self, result: Any) -> None:
        pass
