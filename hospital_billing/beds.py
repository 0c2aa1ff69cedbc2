"""
Bed assignment and bed-day charging.

A bed and a patient only point at each other for lookup: the bed keeps the
patient id, the patient keeps the bed *number*. assign_bed and the discharge
finalizer are the only writers that touch both sides and both run inside a
store transaction.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from hospital_billing.config import DEFAULT_BED_RATE_PER_DAY
from hospital_billing.errors import NotFoundError, PreconditionError
from hospital_billing.models import Appointment, Bed, Patient, parse, to_datetime, utcnow
from hospital_billing.store import DocumentStore, Transaction, where

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def assign_bed(
    store: DocumentStore,
    bed_id: str,
    patient_id: str,
    appointment_id: str,
    rate_per_day: float = DEFAULT_BED_RATE_PER_DAY,
) -> None:
    """
    Admit a patient into a bed requested by one of their appointments.

    Updates in ONE transaction:
    1. beds: status = "occupied", patientId, patientName
    2. patients: assignedBed (bed number), status = "admitted", admissionDate,
       bedAssignedAt, bedRatePerDay, discharge flags reset for re-admission
    3. appointments: bedRequestStatus = "approved"

    Raises PreconditionError (NotFoundError for missing records) without
    writing anything when a check fails.
    """
    if rate_per_day is None or rate_per_day < 0:
        raise ValueError("Bed rate per day must be zero or more")

    def _assign(txn: Transaction) -> Bed:
        bed = parse(Bed, txn.get("beds", bed_id))
        patient = parse(Patient, txn.get("patients", patient_id))
        appointment = parse(Appointment, txn.get("appointments", appointment_id))

        if bed is None:
            raise NotFoundError("Bed not found", "beds", bed_id)
        if not bed.is_free:
            raise PreconditionError(f"Bed {bed.number} is not available (status: {bed.status})")

        if patient is None:
            raise NotFoundError("Patient not found", "patients", patient_id)
        if patient.status == "admitted" and patient.assignedBed and not patient.dischargeCompleted:
            raise PreconditionError(f"Patient is already admitted to bed {patient.assignedBed}")

        if appointment is None:
            raise NotFoundError("Appointment not found", "appointments", appointment_id)
        if appointment.patientId and appointment.patientId != patient_id:
            raise PreconditionError("Appointment belongs to a different patient")
        if not appointment.bedRequested or appointment.bedRequestStatus != "pending":
            raise PreconditionError("Appointment does not have a pending bed request")

        now = utcnow()
        txn.update("beds", bed_id, {
            "status": "occupied",
            "patientId": patient_id,
            "patientName": patient.name,
            "updatedAt": now,
        })
        txn.update("patients", patient_id, {
            "assignedBed": bed.number,
            "status": "admitted",
            "admissionDate": now,
            "bedAssignedAt": now,
            "bedRatePerDay": rate_per_day,
            "dischargeInitiated": False,
            "dischargeCompleted": False,
            "dischargeInitiatedAt": None,
            "dischargeInitiatedBy": None,
            "dischargeCompletedAt": None,
            "updatedAt": now,
        })
        txn.update("appointments", appointment_id, {
            "bedRequestStatus": "approved",
            "updatedAt": now,
        })
        return bed

    bed = store.run_transaction(_assign)
    logger.info(f"Bed {bed.number} assigned to patient {patient_id} at {rate_per_day}/day")


def get_pending_bed_requests(store: DocumentStore) -> List[Appointment]:
    """Appointments where bedRequested is set and the request is still pending."""
    docs = store.query(
        "appointments",
        where("bedRequested", "==", True),
        where("bedRequestStatus", "==", "pending"),
    )
    return [parse(Appointment, doc) for doc in docs]


def bed_days(assigned_at: Any, discharge_date: Any = None) -> int:
    """Days charged for a stay: partial days round up, at least one day."""
    start = to_datetime(assigned_at)
    end = to_datetime(discharge_date) or utcnow()
    return math.ceil(max(1.0, (end - start) / ONE_DAY))


def calculate_bed_charges(
    patient: Union[Patient, Dict[str, Any]],
    discharge_date: Optional[datetime] = None,
) -> float:
    """ceil(max(1, days since bedAssignedAt)) x bedRatePerDay, or 0 without a bed stay."""
    if not isinstance(patient, Patient):
        patient = parse(Patient, patient)
    if not patient.bedAssignedAt or not patient.bedRatePerDay:
        return 0.0
    return bed_days(patient.bedAssignedAt, discharge_date) * patient.bedRatePerDay


def find_bed_for_patient(reader, patient_id: str, bed_number: Optional[str]) -> Optional[Bed]:
    """Resolve a patient's bed by its patientId back-reference, falling back to the bed number.

    ``reader`` is a DocumentStore or a Transaction. A bed found by number that
    now points at another patient raises PreconditionError.
    """
    docs = reader.query("beds", where("patientId", "==", patient_id))
    if docs:
        return parse(Bed, docs[0])
    if not bed_number:
        return None

    # Older bed records store the number as an int
    numbers = [bed_number]
    if bed_number.isdigit():
        numbers.append(int(bed_number))
    beds = [parse(Bed, doc) for doc in reader.query("beds", where("number", "in", numbers))]
    if not beds:
        return None
    for bed in beds:
        if not bed.patientId:
            return bed
    raise PreconditionError(f"Bed {bed_number} is assigned to another patient ({beds[0].patientId})")
