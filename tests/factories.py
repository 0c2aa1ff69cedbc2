"""Seed helpers for tests. Every helper writes straight into a MemoryStore and returns the stored dict."""

from datetime import datetime, timedelta, timezone

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
ONE_DAY = timedelta(days=1)


def seed_patient(store, patient_id="p1", **fields):
    doc = {
        "uhid": "UHID-202601-00001",
        "name": "Ravi Kumar",
        "phone": "9876543210",
        "assignedDoctor": "d1",
        "status": "stable",
        "history": [],
        "bills": [],
        **fields,
    }
    store.set("patients", patient_id, doc)
    return store.get("patients", patient_id)


def seed_bed(store, bed_id="b1", number="101", **fields):
    doc = {"number": number, "ward": "General", "floor": 1, "type": "general", "status": "available", **fields}
    store.set("beds", bed_id, doc)
    return store.get("beds", bed_id)


def seed_appointment(store, appointment_id="a1", patient_id="p1", **fields):
    doc = {
        "patientId": patient_id,
        "patientName": "Ravi Kumar",
        "doctorId": "d1",
        "doctorName": "Mehta",
        "department": "General Medicine",
        "appointmentDate": T0 - ONE_DAY,
        "timeSlot": "10:00-10:30",
        "type": "consultation",
        "status": "completed",
        **fields,
    }
    store.set("appointments", appointment_id, doc)
    return store.get("appointments", appointment_id)


def seed_admitted_patient(store, patient_id="p1", bed_id="b1", bed_number="101", assigned_at=T0, rate=1000,
                          **fields):
    """A patient in bed `bed_number` since `assigned_at`, with discharge already initiated by d1."""
    seed_bed(store, bed_id, bed_number, status="occupied", patientId=patient_id, patientName="Ravi Kumar")
    return seed_patient(
        store,
        patient_id,
        status="admitted",
        assignedBed=bed_number,
        admissionDate=assigned_at,
        bedAssignedAt=assigned_at,
        bedRatePerDay=rate,
        dischargeInitiated=True,
        dischargeInitiatedBy="d1",
        dischargeInitiatedAt=assigned_at + ONE_DAY,
        dischargeCompleted=False,
        **fields,
    )


def seed_bill(store, bill_id="bill1", patient_id="p1", items=None, status="pending", **fields):
    items = items if items is not None else [consultation_line("a1")]
    subtotal = sum(item["totalPrice"] for item in items)
    doc = {
        "billNumber": "BILL-20260104-0001",
        "patientId": patient_id,
        "patientName": "Ravi Kumar",
        "items": items,
        "subtotal": subtotal,
        "discount": 0.0,
        "tax": 0.0,
        "taxRate": 0.0,
        "total": subtotal,
        "status": status,
        "createdAt": T0 - ONE_DAY,
        **fields,
    }
    store.set("bills", bill_id, doc)
    return store.get("bills", bill_id)


def consultation_line(appointment_id, price=500.0):
    return {
        "id": "item-1",
        "serviceName": "General Consultation",
        "serviceType": "consultation",
        "quantity": 1,
        "unitPrice": price,
        "totalPrice": price,
        "linkedTo": {"type": "appointment", "id": appointment_id},
        "description": "Consultation with Dr. Mehta - General Medicine",
    }


def seed_prescription(store, prescription_id="rx1", patient_id="p1", medicines=None, **fields):
    doc = {
        "patientId": patient_id,
        "doctorId": "d1",
        "doctorName": "Mehta",
        "medicines": medicines if medicines is not None else [{"name": "Paracetamol 500mg", "dosage": "500mg"}],
        "status": "dispensed",
        "dispensedFromHospital": True,
        "createdAt": T0,
        "processedAt": T0 + ONE_DAY,
        **fields,
    }
    store.set("prescriptions", prescription_id, doc)
    return store.get("prescriptions", prescription_id)


def seed_inventory(store, name, cost):
    return store.add("inventory", {"name": name, "category": "Tablet", "quantity": 100, "cost": cost})


def seed_lab_order(store, order_id="lab1", patient_id="p1", **fields):
    doc = {
        "patientId": patient_id,
        "tests": [{"testName": "CBC", "price": 400}, {"testName": "LFT", "price": 500}],
        "status": "completed",
        "totalAmount": 900.0,
        "billGenerated": False,
        "orderedAt": T0,
        "completedAt": T0 + ONE_DAY,
        **fields,
    }
    store.set("labOrders", order_id, doc)
    return store.get("labOrders", order_id)
