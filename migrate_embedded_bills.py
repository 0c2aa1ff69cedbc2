#!/usr/bin/env python3
"""
Move the legacy bills[] array embedded in patient documents into the bills collection.

Each patient is migrated in its own transaction: the new bill documents are
written and the embedded array is emptied together. Re-running is safe;
bills that already exist are left alone and migrated patients have no
embedded bills left.
"""

import sys

from hospital_billing.billing import generate_bill_number
from hospital_billing.models import Bill, BillItem, LegacyBill, LinkedRef, Patient, parse, to_document, utcnow
from hospital_billing.store import DocumentStore, Transaction

# Legacy free-text statuses -> bill status
STATUS_MAP = {
    "paid": "paid",
    "cancelled": "cancelled",
    "partially-paid": "partially-paid",
    "partial": "partially-paid",
    "draft": "draft",
}


def legacy_bill_id(patient_id: str, legacy: LegacyBill, position: int) -> str:
    return legacy.id or f"{patient_id}-legacy-{position}"


def legacy_service_type(name: str, prescription_id) -> str:
    if prescription_id:
        return "pharmacy"
    if "bed" in (name or "").lower():
        return "accommodation"
    return "other"


def convert_legacy_bill(patient: Patient, legacy: LegacyBill, position: int) -> Bill:
    items = []
    for idx, line in enumerate(legacy.items):
        prescription_id = line.prescriptionId or legacy.prescriptionId
        items.append(BillItem(
            id=f"item-{idx + 1}",
            serviceName=line.name or "Service",
            serviceType=legacy_service_type(line.name, prescription_id),
            quantity=line.qty,
            unitPrice=line.price or 0.0,
            totalPrice=line.total,
            linkedTo=LinkedRef(type="prescription", id=prescription_id) if prescription_id else None,
        ))

    created = legacy.date or utcnow()
    return Bill(
        id=legacy_bill_id(patient.id, legacy, position),
        billNumber=generate_bill_number(created),
        patientId=patient.id,
        patientUhid=patient.uhid,
        patientName=patient.name,
        patientPhone=patient.phone,
        items=items,
        status=STATUS_MAP.get((legacy.status or "").lower(), "pending"),
        createdAt=created,
        createdBy="migration",
        notes="Migrated from patient record",
    ).recalculate()


def migrate_patient(store: DocumentStore, patient_id: str) -> int:
    """Migrate one patient's embedded bills; returns how many bills were created."""

    def _migrate(txn: Transaction) -> int:
        patient = parse(Patient, txn.get("patients", patient_id))
        if patient is None or not patient.bills:
            return 0
        created = 0
        for position, legacy in enumerate(patient.bills):
            bill = convert_legacy_bill(patient, legacy, position)
            if txn.get("bills", bill.id) is not None:
                continue
            txn.set("bills", bill.id, to_document(bill))
            created += 1
        txn.update("patients", patient_id, {"bills": [], "embeddedBillsMigratedAt": utcnow()})
        return created

    return store.run_transaction(_migrate)


def migrate_all(store: DocumentStore) -> dict:
    patients = [doc for doc in store.query("patients") if doc.get("bills")]
    print(f"Patients with embedded bills: {len(patients)}\n")

    migrated = bills = errors = 0
    for doc in patients:
        try:
            count = migrate_patient(store, doc["id"])
            migrated += 1
            bills += count
            print(f"✓ {doc.get('name') or doc['id']}: {count} bills moved")
        except Exception as e:
            errors += 1
            print(f"✗ {doc['id']}: Error - {str(e)}")

    print(f"\nMigration complete: {migrated} patients, {bills} bills, {errors} errors")
    return {"patients": migrated, "bills": bills, "errors": errors}


def main() -> None:
    from hospital_billing.database import get_store

    result = migrate_all(get_store())
    if result["errors"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
