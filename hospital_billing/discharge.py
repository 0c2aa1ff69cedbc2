"""
Discharge workflow: initiation, expense aggregation and the final bill.

    admitted --initiate_discharge--> discharge in progress
             --finalize_discharge_with_billing--> discharged (bed freed)

aggregate_discharge_expenses only reads. It pulls charges from seven places
(completed appointments, open bills, paid consultation bills, dispensed
prescriptions, completed lab orders, the bed stay and the legacy ``bills[]``
embedded in the patient document) and de-duplicates them so each charge shows
up once. finalize_discharge_with_billing is the only write and runs as a
single store transaction.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from hospital_billing.beds import bed_days, calculate_bed_charges, find_bed_for_patient
from hospital_billing.billing import (
    SERVICE_PRICES,
    consultation_label,
    format_currency,
    generate_bill_number,
)
from hospital_billing.config import TAX_RATE
from hospital_billing.errors import NotFoundError, PreconditionError
from hospital_billing.models import (
    PAYMENT_METHODS,
    Appointment,
    Bill,
    BillItem,
    DischargeExpenseAggregation,
    DischargeExpenseItem,
    InventoryItem,
    LabOrder,
    LegacyBill,
    LinkedRef,
    Patient,
    Prescription,
    parse,
    to_document,
    utcnow,
)
from hospital_billing.store import DocumentStore, Transaction, strip_unset, where

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SOURCE_SERVICE_TYPES = {
    "appointment": "consultation",
    "prescription": "pharmacy",
    "labOrder": "investigation",
    "bed": "accommodation",
}


def map_source_to_service_type(source: str) -> str:
    return SOURCE_SERVICE_TYPES.get(source, "other")


def _appointment_fee(appointment: Appointment) -> float:
    fees = SERVICE_PRICES["consultation"]
    if appointment.type == "follow-up":
        return fees["followup"]
    if appointment.type == "emergency":
        return fees["emergency"]
    return fees["general"]


def _line_text(item: BillItem) -> str:
    return f"{item.serviceName} - {item.description}" if item.description else item.serviceName


def _is_bed_line(name: Optional[str]) -> bool:
    return "bed" in (name or "").lower()


def _is_consultation_line(bill: Bill, item: BillItem) -> bool:
    linked = item.linkedTo is not None and item.linkedTo.type == "appointment"
    return linked or item.serviceType == "consultation" or bool(bill.appointmentId)


def _linked_appointment(bill: Bill, item: BillItem) -> Optional[str]:
    if item.linkedTo is not None and item.linkedTo.type == "appointment" and item.linkedTo.id:
        return item.linkedTo.id
    return bill.appointmentId


def _sort_key(when: Optional[datetime], doc_id: str) -> Tuple[datetime, str]:
    return (when or _EPOCH, doc_id)


def _in_stay(when: Optional[datetime], stay_start: Optional[datetime]) -> bool:
    """Undated charges are assumed to belong to the current stay."""
    if stay_start is None:
        return False
    return when is None or when >= stay_start


def _legacy_key(bill: LegacyBill, position: int) -> str:
    return bill.id or f"legacy-{position}"


def _inventory_prices(store: DocumentStore) -> Dict[str, float]:
    prices = {}
    for doc in store.query("inventory"):
        item = parse(InventoryItem, doc)
        if item.unit_cost is not None:
            prices.setdefault(item.name.strip().lower(), item.unit_cost)
    return prices


def aggregate_discharge_expenses(
    store: DocumentStore,
    patient_id: str,
    discharge_date: Optional[datetime] = None,
) -> DischargeExpenseAggregation:
    """
    Collect every outstanding charge for a patient into one reviewable list.

    Already-paid consultation lines are listed for reference but never count
    toward the subtotal. Item ids depend only on the underlying records, so
    two calls over the same data return the same items.
    """
    patient = parse(Patient, store.get("patients", patient_id))
    if patient is None:
        raise NotFoundError("Patient not found", "patients", patient_id)

    discharge_date = discharge_date or utcnow()
    stay_start = patient.bedAssignedAt
    items: List[DischargeExpenseItem] = []

    bills = sorted(
        (parse(Bill, doc) for doc in store.query("bills", where("patientId", "==", patient_id))),
        key=lambda b: _sort_key(b.createdAt, b.id),
    )
    live_bills = [b for b in bills if b.status != "cancelled"]

    # A paid line counts too: an earlier discharge bill settles the consultations it listed
    billed_appointments: Set[str] = {b.appointmentId for b in live_bills if b.appointmentId}
    linked_prescriptions: Set[str] = set()
    linked_lab_orders: Set[str] = set()
    # Open bills and legacy bills rolled up into an earlier paid discharge bill
    settled_bills: Set[str] = set()
    for bill in live_bills:
        for item in bill.items:
            if item.linkedTo is None or not item.linkedTo.id:
                continue
            if item.linkedTo.type == "appointment":
                billed_appointments.add(item.linkedTo.id)
            elif item.linkedTo.type == "prescription":
                linked_prescriptions.add(item.linkedTo.id)
            elif item.linkedTo.type == "labOrder":
                linked_lab_orders.add(item.linkedTo.id)
            elif item.linkedTo.type == "bill" and bill.status == "paid":
                settled_bills.add(item.linkedTo.id)

    open_bills = [b for b in bills if b.status not in ("paid", "cancelled") and b.id not in settled_bills]

    # Appointments that already have a line in this aggregation
    represented: Set[str] = set()
    processed_bill_ids: Set[str] = set()

    # 1. Completed appointments not billed anywhere yet
    appointments = sorted(
        (parse(Appointment, doc) for doc in store.query(
            "appointments",
            where("patientId", "==", patient_id),
            where("status", "==", "completed"),
        )),
        key=lambda a: _sort_key(a.appointmentDate, a.id),
    )
    for apt in appointments:
        if apt.billId or apt.id in billed_appointments:
            continue
        fee = _appointment_fee(apt)
        items.append(DischargeExpenseItem(
            id=f"apt-{apt.id}",
            source="appointment",
            description=f"{consultation_label(apt.type)} Consultation - Dr. {apt.doctorName}",
            date=apt.consultationEndTime or apt.appointmentDate,
            quantity=1,
            unitPrice=fee,
            total=fee,
            linkedTo=LinkedRef(type="appointment", id=apt.id),
        ))
        represented.add(apt.id)

    # 2. Lines of bills that are still open
    for bill in open_bills:
        for idx, item in enumerate(bill.items):
            consultation = _is_consultation_line(bill, item)
            if consultation and _linked_appointment(bill, item):
                represented.add(_linked_appointment(bill, item))
            items.append(DischargeExpenseItem(
                id=f"bill-{bill.id}-{idx}",
                source="appointment" if consultation else "bill",
                description=_line_text(item),
                date=bill.createdAt,
                quantity=item.quantity,
                unitPrice=item.unitPrice,
                total=item.totalPrice,
                linkedTo=LinkedRef(type="bill", id=bill.id),
                alreadyPaid=item.alreadyPaid,
            ))
        processed_bill_ids.add(bill.id)

    # 3. Consultations paid at OPD before admission, for reference only.
    # Only appointment bills qualify; a previous discharge bill has no appointmentId.
    if patient.status == "admitted":
        for bill in bills:
            if bill.status != "paid" or bill.id in processed_bill_ids or not bill.appointmentId:
                continue
            for idx, item in enumerate(bill.items):
                if item.alreadyPaid or not _is_consultation_line(bill, item):
                    continue
                appointment_id = _linked_appointment(bill, item)
                if appointment_id in represented:
                    continue
                items.append(DischargeExpenseItem(
                    id=f"bill-paid-consultation-{bill.id}-{idx}",
                    source="appointment",
                    description=f"{_line_text(item)} (already paid)",
                    date=bill.paidAt or bill.createdAt,
                    quantity=item.quantity,
                    unitPrice=item.unitPrice,
                    total=item.totalPrice,
                    linkedTo=LinkedRef(type="bill", id=bill.id),
                    alreadyPaid=True,
                ))
                represented.add(appointment_id)
            processed_bill_ids.add(bill.id)

    legacy_bills = [
        (position, legacy) for position, legacy in enumerate(patient.bills)
        if _legacy_key(legacy, position) not in settled_bills
    ]
    consumed: Set[Tuple[str, int]] = set()

    # 4. Medicines dispensed by the hospital pharmacy
    prescriptions = sorted(
        (parse(Prescription, doc) for doc in store.query(
            "prescriptions",
            where("patientId", "==", patient_id),
            where("status", "in", ["approved", "dispensed"]),
        )),
        key=lambda rx: _sort_key(rx.createdAt, rx.id),
    )
    prices = None
    for rx in prescriptions:
        if not rx.dispensedFromHospital or rx.id in linked_prescriptions:
            continue
        rx_date = rx.processedAt or rx.createdAt

        matched = []
        settled = False
        for position, legacy in legacy_bills:
            key = _legacy_key(legacy, position)
            lines = [
                (idx, line) for idx, line in enumerate(legacy.items)
                if line.prescriptionId == rx.id or (legacy.prescriptionId == rx.id and not line.prescriptionId)
            ]
            if not lines:
                continue
            if legacy.status == "paid":
                settled = True
            elif legacy.status != "cancelled":
                matched.extend((key, legacy, idx, line) for idx, line in lines)
        if settled:
            continue

        if matched:
            for key, legacy, idx, line in matched:
                items.append(DischargeExpenseItem(
                    id=f"rx-bill-{key}-{idx}",
                    source="prescription",
                    description=f"Medicine: {line.name or 'Prescription medicines'}",
                    date=legacy.date or rx_date,
                    quantity=line.qty,
                    unitPrice=line.price or 0.0,
                    total=line.total,
                    linkedTo=LinkedRef(type="prescription", id=rx.id),
                ))
                consumed.add((key, idx))
            continue

        if prices is None:
            prices = _inventory_prices(store)
        priced, unpriced = [], []
        for idx, med in enumerate(rx.medicines):
            price = prices.get(med.name.strip().lower(), med.price)
            if price is None:
                unpriced.append((idx, med))
            else:
                priced.append((idx, med, price))

        if not priced:
            logger.warning(f"No inventory pricing for prescription {rx.id} (patient {patient_id})")
            items.append(DischargeExpenseItem(
                id=f"rx-{rx.id}",
                source="prescription",
                description=f"Prescription #{rx.id[:8]} - {len(rx.medicines)} medicines (pricing unavailable)",
                date=rx_date,
                quantity=len(rx.medicines) or 1,
                unitPrice=0.0,
                total=0.0,
                linkedTo=LinkedRef(type="prescription", id=rx.id),
                pricingUnavailable=True,
            ))
            continue

        for idx, med, price in priced:
            quantity = med.quantity or 1
            items.append(DischargeExpenseItem(
                id=f"rx-{rx.id}-{idx}",
                source="prescription",
                description=f"Medicine: {med.name}",
                date=rx_date,
                quantity=quantity,
                unitPrice=price,
                total=round(quantity * price, 2),
                linkedTo=LinkedRef(type="prescription", id=rx.id),
            ))
        for idx, med in unpriced:
            logger.warning(f"No inventory price for {med.name} on prescription {rx.id}")
            items.append(DischargeExpenseItem(
                id=f"rx-{rx.id}-unpriced-{idx}",
                source="prescription",
                description=f"Medicine: {med.name} (pricing unavailable)",
                date=rx_date,
                quantity=med.quantity or 1,
                unitPrice=0.0,
                total=0.0,
                linkedTo=LinkedRef(type="prescription", id=rx.id),
                pricingUnavailable=True,
            ))

    # 5. Completed lab work not yet billed
    lab_orders = sorted(
        (parse(LabOrder, doc) for doc in store.query(
            "labOrders",
            where("patientId", "==", patient_id),
            where("status", "==", "completed"),
        )),
        key=lambda order: _sort_key(order.orderedAt, order.id),
    )
    for order in lab_orders:
        if order.billGenerated or order.id in linked_lab_orders:
            continue
        quantity = len(order.tests) or 1
        items.append(DischargeExpenseItem(
            id=f"lab-{order.id}",
            source="labOrder",
            description=f"Lab Tests: {', '.join(t.testName for t in order.tests)}",
            date=order.completedAt or order.orderedAt,
            quantity=quantity,
            unitPrice=round(order.totalAmount / quantity, 2),
            total=order.totalAmount,
            linkedTo=LinkedRef(type="labOrder", id=order.id),
        ))

    # 6. Bed stay, unless an open bill already charges it
    stay_charged = any(
        _in_stay(bill.createdAt, stay_start)
        and any(item.serviceType == "accommodation" or _is_bed_line(item.serviceName) for item in bill.items)
        for bill in open_bills
    )
    legacy_bed_charge = any(
        legacy.status not in ("paid", "cancelled")
        and _in_stay(legacy.date, stay_start)
        and any(_is_bed_line(line.name) for line in legacy.items)
        for _, legacy in legacy_bills
    )
    if patient.assignedBed and stay_start and not stay_charged and not legacy_bed_charge:
        total = calculate_bed_charges(patient, discharge_date)
        if total > 0:
            days = bed_days(stay_start, discharge_date)
            items.append(DischargeExpenseItem(
                id=f"bed-{patient_id}-{int(stay_start.timestamp())}",
                source="bed",
                description=(
                    f"Bed Charge - {patient.assignedBed} "
                    f"({days} {'day' if days == 1 else 'days'} @ {format_currency(patient.bedRatePerDay)}/day)"
                ),
                date=discharge_date,
                quantity=days,
                unitPrice=patient.bedRatePerDay,
                total=total,
                linkedTo=LinkedRef(type="bed", id=patient.assignedBed),
            ))
            stay_charged = True

    # 7. Whatever is left in the legacy embedded bills
    for position, legacy in legacy_bills:
        key = _legacy_key(legacy, position)
        if legacy.status in ("paid", "cancelled") or key in processed_bill_ids:
            continue
        for idx, line in enumerate(legacy.items):
            if (key, idx) in consumed:
                continue
            if (line.prescriptionId or legacy.prescriptionId) in linked_prescriptions:
                continue
            if _is_bed_line(line.name) and _in_stay(legacy.date, stay_start):
                if stay_charged:
                    continue
                stay_charged = True
            items.append(DischargeExpenseItem(
                id=f"patient-bill-{key}-{idx}",
                source="other",
                description=line.name or "Service",
                date=legacy.date,
                quantity=line.qty,
                unitPrice=line.price or 0.0,
                total=line.total,
                linkedTo=LinkedRef(type="bill", id=key),
            ))

    subtotal = round(sum(item.total for item in items if not item.alreadyPaid), 2)
    tax = round(subtotal * TAX_RATE, 2)
    return DischargeExpenseAggregation(
        items=items,
        subtotal=subtotal,
        tax=tax,
        taxRate=TAX_RATE,
        grandTotal=round(subtotal + tax, 2),
    )


def finalize_discharge_with_billing(
    store: DocumentStore,
    patient_id: str,
    expenses: Union[DischargeExpenseAggregation, Dict[str, Any]],
    payment_method: str,
    payment_details: Optional[Dict[str, Any]] = None,
    receptionist_id: str = "",
) -> Dict[str, str]:
    """
    Close the stay in ONE transaction:
    1. bills: new paid bill with one line per aggregated expense
    2. patients: status = "discharged", dischargeCompleted = True
    3. beds: status = "available", patient reference cleared

    Nothing is written when any check or write fails.
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValueError(f"Unsupported payment method: {payment_method}")
    if not isinstance(expenses, DischargeExpenseAggregation):
        expenses = DischargeExpenseAggregation.model_validate(expenses)

    bill_id = store.new_id()
    bill_number = generate_bill_number()
    details = strip_unset(payment_details)

    def _finalize(txn: Transaction) -> Bill:
        patient = parse(Patient, txn.get("patients", patient_id))
        if patient is None:
            raise NotFoundError("Patient not found", "patients", patient_id)
        if patient.status != "admitted":
            raise PreconditionError(f"Patient is not admitted (status: {patient.status})")
        if not patient.dischargeInitiated:
            raise PreconditionError("Discharge has not been initiated by a doctor")
        if patient.dischargeCompleted:
            raise PreconditionError("Discharge already completed")
        if not patient.assignedBed:
            raise PreconditionError("Patient has no assigned bed")

        bed = find_bed_for_patient(txn, patient_id, patient.assignedBed)
        if bed is None:
            raise NotFoundError(f"Bed {patient.assignedBed} not found", "beds")

        now = utcnow()
        bill = Bill(
            id=bill_id,
            billNumber=bill_number,
            patientId=patient_id,
            patientUhid=patient.uhid,
            patientName=patient.name,
            patientPhone=patient.phone,
            items=[
                BillItem(
                    id=f"item-{idx + 1}",
                    serviceName=expense.description,
                    serviceType=map_source_to_service_type(expense.source),
                    quantity=expense.quantity,
                    unitPrice=expense.unitPrice,
                    totalPrice=expense.total,
                    linkedTo=expense.linkedTo,
                    alreadyPaid=expense.alreadyPaid,
                )
                for idx, expense in enumerate(expenses.items)
            ],
            taxRate=expenses.taxRate,
            status="paid",
            paymentMethod=payment_method,
            paymentDetails=details,
            createdAt=now,
            createdBy=receptionist_id,
            paidAt=now,
            paidBy=receptionist_id,
            notes=f"Final discharge bill - Bed {patient.assignedBed}",
        ).recalculate()

        txn.set("bills", bill_id, to_document(bill))
        txn.update("patients", patient_id, {
            "status": "discharged",
            "dischargeCompleted": True,
            "dischargeCompletedAt": now,
            "updatedAt": now,
        })
        txn.update("beds", bed.id, {
            "status": "available",
            "patientId": None,
            "patientName": None,
            "updatedAt": now,
        })
        return bill

    bill = store.run_transaction(_finalize)
    logger.info(f"✓ Patient {patient_id} discharged with bill {bill.billNumber} (total {bill.total})")
    return {"billId": bill.id, "billNumber": bill.billNumber}


def initiate_discharge(store: DocumentStore, patient_id: str, doctor_id: str) -> None:
    """Doctor-side step that hands the patient over to reception for billing."""

    def _initiate(txn: Transaction) -> None:
        patient = parse(Patient, txn.get("patients", patient_id))
        if patient is None:
            raise NotFoundError("Patient not found", "patients", patient_id)
        if patient.status != "admitted":
            raise PreconditionError("Only admitted patients can be discharged")
        if patient.dischargeInitiated and not patient.dischargeCompleted:
            raise PreconditionError("Discharge already initiated")

        now = utcnow()
        txn.update("patients", patient_id, {
            "dischargeInitiated": True,
            "dischargeInitiatedBy": doctor_id,
            "dischargeInitiatedAt": now,
            # Left over from a previous stay
            "dischargeCompleted": False,
            "dischargeCompletedAt": None,
            "updatedAt": now,
        })

    store.run_transaction(_initiate)
    logger.info(f"Discharge initiated for patient {patient_id} by doctor {doctor_id}")


def get_discharge_ready_patients(store: DocumentStore) -> List[Patient]:
    """Admitted patients whose discharge was initiated and is awaiting billing."""
    docs = store.query(
        "patients",
        where("status", "==", "admitted"),
        where("dischargeInitiated", "==", True),
    )
    return [p for p in (parse(Patient, doc) for doc in docs) if not p.dischargeCompleted]


def can_doctor_initiate_discharge(patient: Union[Patient, Dict[str, Any]], doctor_id: str) -> bool:
    if not isinstance(patient, Patient):
        patient = parse(Patient, patient)
    return (
        patient.status == "admitted"
        and patient.assignedDoctor == doctor_id
        and not patient.dischargeInitiated
    )
