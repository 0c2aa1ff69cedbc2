import logging
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from hospital_billing.appointments import book_appointment
from hospital_billing.beds import assign_bed, get_pending_bed_requests
from hospital_billing.billing import (
    apply_discount,
    generate_bill_from_appointment,
    get_bill_by_appointment,
    get_patient_bills,
    get_unpaid_bills,
    process_bill_payment,
    save_bill,
)
from hospital_billing.config import DEFAULT_BED_RATE_PER_DAY
from hospital_billing.database import get_store
from hospital_billing.discharge import (
    aggregate_discharge_expenses,
    finalize_discharge_with_billing,
    get_discharge_ready_patients,
    initiate_discharge,
)
from hospital_billing.errors import NotFoundError, PreconditionError
from hospital_billing.models import (
    Appointment,
    BillItem,
    DischargeExpenseAggregation,
    Patient,
    PaymentMethod,
    parse,
)
from hospital_billing.revenue import calculate_unbilled_amount, find_unbilled_services
from hospital_billing.store import DocumentStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Hospital Billing API")

# --- CORS Middleware ---
# For local development allow all origins to avoid CORS blocking from various dev servers.
# Narrow this before deploying to production.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Request bodies ---

class BedAssignmentRequest(BaseModel):
    patientId: str
    appointmentId: str
    bedRatePerDay: Optional[float] = Field(default=None, ge=0)


class InitiateDischargeRequest(BaseModel):
    doctorId: str


class FinalizeDischargeRequest(BaseModel):
    paymentMethod: PaymentMethod
    paymentDetails: Optional[Dict[str, Any]] = None
    receptionistId: str
    # Re-aggregated server-side when the reviewed list is not sent back
    expenses: Optional[DischargeExpenseAggregation] = None


class GenerateBillRequest(BaseModel):
    userId: str
    additionalItems: List[BillItem] = Field(default_factory=list)


class DiscountRequest(BaseModel):
    amount: float
    reason: str = ""


class PaymentRequest(BaseModel):
    paymentMethod: PaymentMethod
    paymentDetails: Optional[Dict[str, Any]] = None
    paidBy: str


def http_error(e: Exception, action: str) -> HTTPException:
    """Map a core exception onto the HTTP status the dashboard expects."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PreconditionError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False, include_input=False))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"✗ Failed to {action}: {e}")
    return HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")


@app.get("/health")
def health_check():
    return {"status": "ok"}


# --- Beds ---

@app.get("/api/beds/requests")
def list_bed_requests(store: DocumentStore = Depends(get_store)):
    """Appointments waiting for a bed."""
    try:
        requests = get_pending_bed_requests(store)
        return {"status": "success", "total": len(requests), "requests": requests}
    except Exception as e:
        raise http_error(e, "fetch bed requests")


@app.post("/api/beds/{bed_id}/assign")
def assign_bed_endpoint(bed_id: str, payload: BedAssignmentRequest, store: DocumentStore = Depends(get_store)):
    try:
        rate = DEFAULT_BED_RATE_PER_DAY if payload.bedRatePerDay is None else payload.bedRatePerDay
        assign_bed(store, bed_id, payload.patientId, payload.appointmentId, rate)
        return {"status": "success", "message": "Bed assigned", "bedId": bed_id, "bedRatePerDay": rate}
    except Exception as e:
        raise http_error(e, "assign bed")


# --- Discharge ---

@app.post("/api/discharge/{patient_id}/initiate")
def initiate_discharge_endpoint(patient_id: str, payload: InitiateDischargeRequest,
                                store: DocumentStore = Depends(get_store)):
    try:
        initiate_discharge(store, patient_id, payload.doctorId)
        return {"status": "success", "message": "Discharge initiated"}
    except Exception as e:
        raise http_error(e, "initiate discharge")


@app.get("/api/discharge/ready")
def discharge_ready(store: DocumentStore = Depends(get_store)):
    try:
        patients = get_discharge_ready_patients(store)
        return {"status": "success", "total": len(patients), "patients": patients}
    except Exception as e:
        raise http_error(e, "fetch discharge-ready patients")


@app.get("/api/discharge/{patient_id}/expenses", response_model=DischargeExpenseAggregation)
def discharge_expenses(patient_id: str, store: DocumentStore = Depends(get_store)):
    """Everything the patient owes, for reception to review before payment."""
    try:
        return aggregate_discharge_expenses(store, patient_id)
    except Exception as e:
        raise http_error(e, "aggregate discharge expenses")


@app.post("/api/discharge/{patient_id}/finalize")
def finalize_discharge(patient_id: str, payload: FinalizeDischargeRequest,
                       store: DocumentStore = Depends(get_store)):
    try:
        expenses = payload.expenses or aggregate_discharge_expenses(store, patient_id)
        result = finalize_discharge_with_billing(
            store,
            patient_id,
            expenses,
            payload.paymentMethod,
            payload.paymentDetails,
            payload.receptionistId,
        )
        return {"status": "success", **result}
    except Exception as e:
        raise http_error(e, "finalize discharge")


# --- Billing ---

@app.post("/api/billing/appointments/{appointment_id}/bill")
def bill_appointment(appointment_id: str, payload: GenerateBillRequest,
                     store: DocumentStore = Depends(get_store)):
    """Create the OPD bill for a finished consultation."""
    try:
        appointment = parse(Appointment, store.get("appointments", appointment_id))
        if appointment is None:
            raise NotFoundError("Appointment not found", "appointments", appointment_id)
        if appointment.status != "completed":
            raise PreconditionError("Only completed appointments can be billed")
        existing = get_bill_by_appointment(store, appointment_id)
        if appointment.billId or (existing is not None and existing.status != "cancelled"):
            raise PreconditionError("Appointment already has a bill")

        patient = parse(Patient, store.get("patients", appointment.patientId))
        if patient is None:
            raise NotFoundError("Patient not found", "patients", appointment.patientId)

        bill = generate_bill_from_appointment(store, appointment, patient, {"uid": payload.userId},
                                              payload.additionalItems)
        save_bill(store, bill)
        return {"status": "success", "bill": bill}
    except Exception as e:
        raise http_error(e, "generate bill")


@app.get("/api/billing/patient/{patient_id}/bills")
def patient_bills(patient_id: str, store: DocumentStore = Depends(get_store)):
    try:
        bills = get_patient_bills(store, patient_id)
        return {"status": "success", "total": len(bills), "bills": bills}
    except Exception as e:
        raise http_error(e, "fetch bills")


@app.get("/api/billing/unpaid")
def unpaid_bills(store: DocumentStore = Depends(get_store)):
    try:
        bills = get_unpaid_bills(store)
        return {"status": "success", "total": len(bills), "bills": bills}
    except Exception as e:
        raise http_error(e, "fetch unpaid bills")


@app.post("/api/billing/bills/{bill_id}/discount")
def discount_bill(bill_id: str, payload: DiscountRequest, store: DocumentStore = Depends(get_store)):
    try:
        bill = apply_discount(store, bill_id, payload.amount, payload.reason)
        return {"status": "success", "bill": bill}
    except Exception as e:
        raise http_error(e, "apply discount")


@app.post("/api/billing/bills/{bill_id}/payment")
def pay_bill(bill_id: str, payload: PaymentRequest, store: DocumentStore = Depends(get_store)):
    try:
        process_bill_payment(store, bill_id, payload.paymentMethod, payload.paymentDetails, payload.paidBy)
        return {"status": "success", "message": "Payment recorded", "billId": bill_id}
    except Exception as e:
        raise http_error(e, "process payment")


# --- Appointment Management Endpoints ---

@app.post("/appointments")
def create_appointment(appointment_data: dict = Body(...), store: DocumentStore = Depends(get_store)):
    """
    Book a new appointment.
    Rejects a slot that overlaps another live appointment of the same doctor.
    """
    try:
        appointment = book_appointment(store, appointment_data)
        return {
            "status": "success",
            "message": f"Appointment successfully booked for {appointment.patientName} with {appointment.doctorName}",
            "appointmentId": appointment.id,
            "queueNumber": appointment.queueNumber,
        }
    except Exception as e:
        raise http_error(e, "create appointment")


# --- Revenue integrity ---

@app.get("/api/revenue/patient/{patient_id}/unbilled")
def unbilled_services(patient_id: str, store: DocumentStore = Depends(get_store)):
    try:
        patient = parse(Patient, store.get("patients", patient_id))
        if patient is None:
            raise NotFoundError("Patient not found", "patients", patient_id)
        services = find_unbilled_services(store, patient)
        return {
            "status": "success",
            "services": services,
            "totalAmount": calculate_unbilled_amount(services),
        }
    except Exception as e:
        raise http_error(e, "detect unbilled services")
