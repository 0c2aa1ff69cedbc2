"""
OPD billing: bill generation, line additions, discounts and payments.

These are single-document writes with no transaction around them. A payment
can land while a related appointment update fails; the discharge aggregator's
de-duplication is what compensates for that.
"""

import logging
import random
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from hospital_billing.config import TAX_RATE
from hospital_billing.errors import NotFoundError, PreconditionError
from hospital_billing.models import (
    PAYMENT_METHODS,
    Appointment,
    Bill,
    BillItem,
    LabOrder,
    LinkedRef,
    Patient,
    User,
    parse,
    to_document,
    utcnow,
)
from hospital_billing.store import DocumentStore, strip_unset, where

logger = logging.getLogger(__name__)

# Service pricing catalog (INR)
SERVICE_PRICES = {
    "consultation": {
        "general": 500.0,
        "specialist": 800.0,
        "emergency": 1200.0,
        "followup": 300.0,
    },
    "procedure": {
        "ecg": 300.0,
        "xray": 600.0,
        "ultrasound": 1000.0,
        "bloodPressure": 50.0,
        "dressing": 200.0,
    },
    "investigation": {
        "bloodTest": 400.0,
        "urineTest": 200.0,
        "cbcTest": 500.0,
        "liverFunction": 800.0,
        "kidneyFunction": 700.0,
    },
    "document": {
        "medicalCertificate": 100.0,
        "prescription": 50.0,
        "reportCopy": 50.0,
    },
}

SPECIALIST_DEPARTMENTS = ("cardiology", "neurology", "orthopedics", "pediatrics", "gynecology")

UNPAID_STATUSES = ("pending", "draft", "partially-paid")


def generate_bill_number(now: Optional[datetime] = None) -> str:
    """Human-readable bill number: BILL-YYYYMMDD-NNNN."""
    now = now or utcnow()
    return f"BILL-{now:%Y%m%d}-{random.randint(0, 9999):04d}"


def consultation_label(appointment_type: Optional[str]) -> str:
    return {"follow-up": "Follow-up", "emergency": "Emergency"}.get(appointment_type or "", "General")


def get_consultation_fee(appointment: Appointment, doctor_specialization: Optional[str] = None) -> float:
    """Consultation fee by appointment type, then by doctor specialization."""
    fees = SERVICE_PRICES["consultation"]
    if appointment.type == "follow-up":
        return fees["followup"]
    if appointment.type == "emergency":
        return fees["emergency"]
    specialization = (doctor_specialization or "").lower()
    if specialization and any(s in specialization for s in SPECIALIST_DEPARTMENTS):
        return fees["specialist"]
    return fees["general"]


def format_currency(amount: float) -> str:
    """Whole rupees with Indian digit grouping, e.g. 123456 -> ₹1,23,456."""
    sign = "-" if amount < 0 else ""
    digits = str(round(abs(amount)))
    head, tail = digits[:-3], digits[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return f"{sign}₹{','.join(groups + [tail])}"


def _doctor_specialization(store: DocumentStore, doctor_id: str) -> str:
    if not doctor_id:
        return ""
    try:
        doctor = parse(User, store.get("users", doctor_id))
    except Exception as e:
        # Falls back to the general fee; the bill is still produced
        logger.warning(f"Error fetching doctor info for {doctor_id}: {e}")
        return ""
    return (doctor.specialization or "") if doctor else ""


def generate_bill_from_appointment(
    store: DocumentStore,
    appointment: Union[Appointment, Dict[str, Any]],
    patient: Union[Patient, Dict[str, Any]],
    user: Mapping[str, Any],
    additional_items: Iterable[Union[BillItem, Dict[str, Any]]] = (),
) -> Bill:
    """Build a pending OPD bill for a completed appointment. Nothing is written."""
    if not isinstance(appointment, Appointment):
        appointment = parse(Appointment, appointment)
    if not isinstance(patient, Patient):
        patient = parse(Patient, patient)

    fee = get_consultation_fee(appointment, _doctor_specialization(store, appointment.doctorId))
    consultation = BillItem(
        id="item-1",
        serviceName=f"{consultation_label(appointment.type)} Consultation",
        serviceType="consultation",
        quantity=1,
        unitPrice=fee,
        totalPrice=fee,
        linkedTo=LinkedRef(type="appointment", id=appointment.id),
        description=f"Consultation with Dr. {appointment.doctorName} - {appointment.department or 'General'}",
    )
    extras = [item if isinstance(item, BillItem) else BillItem.model_validate(item) for item in additional_items]

    now = utcnow()
    visit_date = appointment.appointmentDate or now
    bill = Bill(
        id=store.new_id(),
        billNumber=generate_bill_number(now),
        patientId=patient.id,
        patientUhid=patient.uhid,
        patientName=patient.name,
        patientPhone=patient.phone,
        appointmentId=appointment.id,
        items=[consultation, *extras],
        taxRate=TAX_RATE,
        status="pending",
        createdAt=now,
        createdBy=user.get("uid") or user.get("id"),
        notes=f"OPD bill generated for appointment on {visit_date:%d/%m/%Y}",
    )
    return bill.recalculate()


def save_bill(store: DocumentStore, bill: Bill) -> None:
    """Persist a bill and, best-effort, point its appointment at it."""
    bill.recalculate()
    store.set("bills", bill.id, to_document(bill))
    logger.info(f"Bill {bill.billNumber} saved for patient {bill.patientId} (total {bill.total})")

    if bill.appointmentId:
        try:
            store.update("appointments", bill.appointmentId, {"billId": bill.id, "updatedAt": utcnow()})
        except NotFoundError:
            logger.warning(f"Bill {bill.id} references missing appointment {bill.appointmentId}")


def get_bill(store: DocumentStore, bill_id: str) -> Bill:
    bill = parse(Bill, store.get("bills", bill_id))
    if bill is None:
        raise NotFoundError("Bill not found", "bills", bill_id)
    return bill


def _store_totals(store: DocumentStore, bill: Bill, extra: Optional[Dict[str, Any]] = None) -> None:
    fields = {
        "items": [item.model_dump() for item in bill.items],
        "subtotal": bill.subtotal,
        "tax": bill.tax,
        "discount": bill.discount,
        "total": bill.total,
        "updatedAt": utcnow(),
    }
    fields.update(extra or {})
    store.update("bills", bill.id, fields)


def add_prescription_to_bill(
    store: DocumentStore,
    bill_id: str,
    prescription_id: str,
    medicines: Iterable[Mapping[str, Any]],
) -> Bill:
    """Append one pharmacy line per dispensed medicine ({name, quantity, price})."""
    bill = get_bill(store, bill_id)
    start = len(bill.items)
    for offset, med in enumerate(medicines, start=1):
        quantity = med.get("quantity") or 1
        price = med.get("price") or 0.0
        bill.items.append(BillItem(
            id=f"item-{start + offset}",
            serviceName=f"Medicine: {med['name']}",
            serviceType="pharmacy",
            quantity=quantity,
            unitPrice=price,
            totalPrice=quantity * price,
            linkedTo=LinkedRef(type="prescription", id=prescription_id),
        ))
    _store_totals(store, bill.recalculate())
    return bill


def add_lab_order_to_bill(store: DocumentStore, bill_id: str, lab_order: Union[LabOrder, Dict[str, Any]]) -> Bill:
    """Append one investigation line per test and mark the order as billed."""
    if not isinstance(lab_order, LabOrder):
        lab_order = parse(LabOrder, lab_order)
    bill = get_bill(store, bill_id)
    start = len(bill.items)
    for offset, test in enumerate(lab_order.tests, start=1):
        bill.items.append(BillItem(
            id=f"item-{start + offset}",
            serviceName=f"Lab Test: {test.testName}",
            serviceType="investigation",
            quantity=1,
            unitPrice=test.price,
            totalPrice=test.price,
            linkedTo=LinkedRef(type="labOrder", id=lab_order.id),
        ))
    _store_totals(store, bill.recalculate())
    store.update("labOrders", lab_order.id, {"billGenerated": True, "updatedAt": utcnow()})
    return bill


def apply_discount(store: DocumentStore, bill_id: str, amount: float, reason: str) -> Bill:
    """Set the bill discount; total = subtotal + tax - discount, never below zero."""
    if amount is None or amount < 0:
        raise PreconditionError("Discount cannot be negative")
    bill = get_bill(store, bill_id)
    bill.discount = amount
    bill.discountReason = reason
    bill.recalculate()
    _store_totals(store, bill, {"discountReason": reason})
    logger.info(f"Discount {bill.discount} applied to bill {bill_id}: {reason}")
    return bill


def process_bill_payment(
    store: DocumentStore,
    bill_id: str,
    payment_method: str,
    payment_details: Optional[Dict[str, Any]],
    paid_by: str,
) -> None:
    """Mark a bill paid. Unset payment detail fields are dropped before the write."""
    if payment_method not in PAYMENT_METHODS:
        raise ValueError(f"Unsupported payment method: {payment_method}")
    bill = get_bill(store, bill_id)
    if bill.status == "cancelled":
        raise PreconditionError("Cannot take payment for a cancelled bill")

    store.update("bills", bill_id, {
        "status": "paid",
        "paymentMethod": payment_method,
        "paymentDetails": strip_unset(payment_details),
        "paidAt": utcnow(),
        "paidBy": paid_by,
    })
    logger.info(f"✓ Bill {bill_id} paid by {payment_method}")


def get_patient_bills(store: DocumentStore, patient_id: str) -> List[Bill]:
    return [parse(Bill, doc) for doc in store.query("bills", where("patientId", "==", patient_id))]


def get_bill_by_appointment(store: DocumentStore, appointment_id: str) -> Optional[Bill]:
    docs = store.query("bills", where("appointmentId", "==", appointment_id))
    return parse(Bill, docs[0]) if docs else None


def get_unpaid_bills(store: DocumentStore) -> List[Bill]:
    return [parse(Bill, doc) for doc in store.query("bills", where("status", "in", list(UNPAID_STATUSES)))]
