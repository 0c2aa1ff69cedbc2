"""
Revenue integrity: standard service catalog and unbilled service detection.

detect_unbilled_services is a pure function over already-loaded records;
find_unbilled_services loads them for one patient.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Literal, Optional, Set, Tuple

from pydantic import BaseModel

from hospital_billing.billing import get_consultation_fee
from hospital_billing.models import (
    Appointment,
    Bill,
    BillItem,
    LabOrder,
    LinkedRef,
    Patient,
    Prescription,
    Timestamp,
    parse,
    utcnow,
)
from hospital_billing.store import DocumentStore, new_document_id, where

logger = logging.getLogger(__name__)


class ServiceCatalogEntry(BaseModel):
    serviceCode: str
    serviceName: str
    category: str
    department: str
    price: float
    duration: Optional[int] = None
    requiresDoctor: bool = False
    active: bool = True


class UnbilledService(BaseModel):
    id: str
    patientId: str
    patientName: str = ""
    uhid: Optional[str] = None
    serviceType: Literal["appointment", "labOrder", "prescription"]
    serviceName: str
    expectedAmount: float
    performedAt: Timestamp = None
    performedBy: Optional[str] = None
    reason: str
    alertedAt: Timestamp = None
    status: Literal["pending", "billed", "waived"] = "pending"


STANDARD_SERVICES = [
    ServiceCatalogEntry(serviceCode="CONS-GEN", serviceName="General Consultation", category="consultation",
                        department="General Medicine", price=500, duration=15, requiresDoctor=True),
    ServiceCatalogEntry(serviceCode="CONS-SPEC", serviceName="Specialist Consultation", category="consultation",
                        department="Various", price=800, duration=20, requiresDoctor=True),
    ServiceCatalogEntry(serviceCode="CONS-EMER", serviceName="Emergency Consultation", category="consultation",
                        department="Emergency", price=1200, duration=30, requiresDoctor=True),
    ServiceCatalogEntry(serviceCode="BED-GEN", serviceName="General Ward Bed (per day)", category="accommodation",
                        department="Administration", price=1000),
    ServiceCatalogEntry(serviceCode="BED-PVT", serviceName="Private Room (per day)", category="accommodation",
                        department="Administration", price=2500),
    ServiceCatalogEntry(serviceCode="BED-ICU", serviceName="ICU Bed (per day)", category="accommodation",
                        department="Critical Care", price=5000),
    ServiceCatalogEntry(serviceCode="PROC-ECG", serviceName="ECG", category="procedure",
                        department="Cardiology", price=300, duration=10),
    ServiceCatalogEntry(serviceCode="PROC-XRAY", serviceName="X-Ray", category="procedure",
                        department="Radiology", price=600, duration=15),
    ServiceCatalogEntry(serviceCode="PROC-DRESS", serviceName="Wound Dressing", category="procedure",
                        department="General", price=200, duration=20),
    ServiceCatalogEntry(serviceCode="LAB-CBC", serviceName="Complete Blood Count", category="investigation",
                        department="Laboratory", price=400),
    ServiceCatalogEntry(serviceCode="LAB-LFT", serviceName="Liver Function Test", category="investigation",
                        department="Laboratory", price=800),
    ServiceCatalogEntry(serviceCode="LAB-KFT", serviceName="Kidney Function Test", category="investigation",
                        department="Laboratory", price=700),
]


def get_service_by_code(service_code: str) -> Optional[ServiceCatalogEntry]:
    for service in STANDARD_SERVICES:
        if service.serviceCode == service_code:
            return service
    return None


def create_billing_item(
    service: ServiceCatalogEntry,
    quantity: float = 1,
    linked_to: Optional[LinkedRef] = None,
) -> BillItem:
    """A bill line priced from the catalog."""
    return BillItem(
        id=f"item-{new_document_id()}",
        serviceName=service.serviceName,
        serviceType=service.category,
        quantity=quantity,
        unitPrice=service.price,
        totalPrice=service.price * quantity,
        linkedTo=linked_to,
    )


def _billed_references(bills: Iterable[Bill]) -> Set[Tuple[str, str]]:
    refs = set()
    for bill in bills:
        if bill.status == "cancelled":
            continue
        if bill.appointmentId:
            refs.add(("appointment", bill.appointmentId))
        for item in bill.items:
            if item.linkedTo is not None and item.linkedTo.id:
                refs.add((item.linkedTo.type, item.linkedTo.id))
    return refs


def detect_unbilled_services(
    patient: Patient,
    appointments: Iterable[Appointment],
    lab_orders: Iterable[LabOrder],
    prescriptions: Iterable[Prescription],
    bills: Iterable[Bill],
    now: Optional[datetime] = None,
) -> List[UnbilledService]:
    """Completed work with no bill line pointing at it."""
    now = now or utcnow()
    billed = _billed_references(bills)
    found = []

    for apt in appointments:
        if apt.patientId != patient.id or apt.status != "completed":
            continue
        if apt.billId or ("appointment", apt.id) in billed:
            continue
        found.append(UnbilledService(
            id=f"UB-APT-{apt.id}",
            patientId=patient.id,
            patientName=patient.name,
            uhid=patient.uhid,
            serviceType="appointment",
            serviceName=f"Consultation with {apt.doctorName}",
            expectedAmount=get_consultation_fee(apt),
            performedAt=apt.consultationEndTime or apt.appointmentDate,
            performedBy=apt.doctorName,
            reason="Completed appointment not billed",
            alertedAt=now,
        ))

    for order in lab_orders:
        if order.patientId != patient.id or order.status != "completed":
            continue
        if order.billGenerated or ("labOrder", order.id) in billed:
            continue
        found.append(UnbilledService(
            id=f"UB-LAB-{order.id}",
            patientId=patient.id,
            patientName=patient.name,
            uhid=patient.uhid,
            serviceType="labOrder",
            serviceName=f"Lab Tests: {', '.join(t.testName for t in order.tests)}",
            expectedAmount=order.totalAmount,
            performedAt=order.completedAt or order.orderedAt,
            performedBy=order.technicianName or "Lab",
            reason="Completed lab order not billed",
            alertedAt=now,
        ))

    for rx in prescriptions:
        if rx.patientId != patient.id or rx.status not in ("approved", "dispensed"):
            continue
        if not rx.dispensedFromHospital or ("prescription", rx.id) in billed:
            continue
        found.append(UnbilledService(
            id=f"UB-RX-{rx.id}",
            patientId=patient.id,
            patientName=patient.name,
            uhid=patient.uhid,
            serviceType="prescription",
            serviceName=f"Medicines: {len(rx.medicines)} items",
            expectedAmount=sum((med.price or 0) * (med.quantity or 1) for med in rx.medicines),
            performedAt=rx.processedAt or rx.createdAt,
            performedBy=rx.processedBy or "Pharmacist",
            reason="Dispensed prescription not billed",
            alertedAt=now,
        ))

    return found


def calculate_unbilled_amount(services: Iterable[UnbilledService]) -> float:
    return sum(s.expectedAmount for s in services if s.status == "pending")


def find_unbilled_services(store: DocumentStore, patient: Patient) -> List[UnbilledService]:
    by_patient = where("patientId", "==", patient.id)
    services = detect_unbilled_services(
        patient,
        [parse(Appointment, doc) for doc in store.query("appointments", by_patient)],
        [parse(LabOrder, doc) for doc in store.query("labOrders", by_patient)],
        [parse(Prescription, doc) for doc in store.query("prescriptions", by_patient)],
        [parse(Bill, doc) for doc in store.query("bills", by_patient)],
    )
    if services:
        logger.warning(f"{len(services)} unbilled services for patient {patient.id}")
    return services
