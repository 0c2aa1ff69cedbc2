"""
Patient auto-registration when a doctor starts a consultation.

Safe to call repeatedly for the same appointment: the patient is looked up by
id, then by UHID, and the visit is only added to the history once.
"""

import logging
from typing import Any, Dict, Union

from hospital_billing.models import Appointment, Patient, parse, to_document, utcnow
from hospital_billing.store import DocumentStore, strip_unset, where
from hospital_billing.uhid import generate_uhid

logger = logging.getLogger(__name__)


def history_entry(appointment: Appointment) -> str:
    when = appointment.appointmentDate or utcnow()
    return f"{appointment.type} consultation on {when:%d/%m/%Y} - Dr. {appointment.doctorName}"


def _find_patient(store: DocumentStore, appointment: Appointment):
    if appointment.patientId:
        patient = parse(Patient, store.get("patients", appointment.patientId))
        if patient is not None:
            return patient
    if appointment.uhid:
        docs = store.query("patients", where("uhid", "==", appointment.uhid))
        if docs:
            return parse(Patient, docs[0])
    return None


def auto_register_patient_from_appointment(
    store: DocumentStore,
    appointment: Union[Appointment, Dict[str, Any]],
    doctor_id: str,
    doctor_name: str,
) -> str:
    """Return the id of the patient record for this appointment, creating it if needed."""
    if not isinstance(appointment, Appointment):
        appointment = parse(Appointment, appointment)
    entry = history_entry(appointment)
    now = utcnow()

    patient = _find_patient(store, appointment)
    if patient is not None:
        updates: Dict[str, Any] = {}
        if patient.assignedDoctor != doctor_id:
            updates["assignedDoctor"] = doctor_id
        if entry not in patient.history:
            updates["history"] = [*patient.history, entry]
        if updates:
            updates["updatedAt"] = now
            store.update("patients", patient.id, updates)
            logger.info(f"Patient {patient.id} linked to Dr. {doctor_name}")
        return patient.id

    patient = Patient(
        id=appointment.patientId or store.new_id(),
        uhid=appointment.uhid or generate_uhid(now),
        name=appointment.patientName or "",
        phone=appointment.patientPhone,
        assignedDoctor=doctor_id,
        status="stable",
        history=[entry],
        createdAt=now,
        updatedAt=now,
    )
    store.set("patients", patient.id, strip_unset(to_document(patient)))
    logger.info(f"✓ Registered patient {patient.id} ({patient.uhid}) under Dr. {doctor_name}")
    return patient.id


def is_patient_registered(store: DocumentStore, patient_id: str, doctor_id: str) -> bool:
    patient = parse(Patient, store.get("patients", patient_id))
    return patient is not None and patient.assignedDoctor == doctor_id
