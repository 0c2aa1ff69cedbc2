from datetime import date, datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

M = TypeVar("M", bound=BaseModel)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value: Any) -> Optional[datetime]:
    """Normalize the timestamp shapes found in stored documents to an aware UTC datetime.

    Accepts native datetimes/dates (naive values are taken as UTC), store
    timestamps such as ``{"seconds": ..., "nanoseconds": ...}``, ISO-8601
    strings and epoch numbers (seconds, or milliseconds for very large values).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            raise ValueError(f"Unrecognised timestamp: {value!r}")
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Unrecognised timestamp: {value!r}")
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if hasattr(value, "seconds") and hasattr(value, "nanoseconds"):
        # Firestore-style Timestamp objects
        return datetime.fromtimestamp(value.seconds + value.nanoseconds / 1e9, tz=timezone.utc)
    raise ValueError(f"Unrecognised timestamp: {value!r}")


def _none_to_empty_list(value: Any) -> Any:
    return [] if value is None else value


def _none_to_empty_dict(value: Any) -> Any:
    return {} if value is None else value


def _to_str(value: Any) -> Any:
    return value if value is None or isinstance(value, str) else str(value)


Timestamp = Annotated[Optional[datetime], BeforeValidator(to_datetime)]
ItemList = BeforeValidator(_none_to_empty_list)

PatientStatus = Literal["admitted", "discharged", "critical", "stable"]
BedStatus = Literal["available", "occupied", "maintenance", "reserved"]
BedType = Literal["general", "icu", "private", "emergency"]
AppointmentStatus = Literal["scheduled", "in-progress", "completed", "cancelled", "no-show"]
BedRequestStatus = Literal["pending", "approved"]
BillStatus = Literal["draft", "pending", "paid", "partially-paid", "cancelled"]
PaymentMethod = Literal["cash", "card", "upi", "insurance", "other"]
ServiceType = Literal["consultation", "procedure", "investigation", "pharmacy", "document", "accommodation", "other"]
ExpenseSource = Literal["appointment", "bill", "prescription", "labOrder", "bed", "other"]

PAYMENT_METHODS = ("cash", "card", "upi", "insurance", "other")


class Document(BaseModel):
    """A stored record. Unknown fields are kept so writes never drop data."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = ""


def parse(model: Type[M], doc: Optional[Dict[str, Any]]) -> Optional[M]:
    """Validate a raw document into its schema type; None passes through."""
    if doc is None:
        return None
    return model.model_validate(doc)


def to_document(model: BaseModel) -> Dict[str, Any]:
    """Field dict ready for DocumentStore.set (the id is the key, not a field)."""
    return model.model_dump(exclude={"id"})


class LinkedRef(BaseModel):
    type: str
    id: Optional[str] = None


# --- Patients & legacy embedded bills ---

class LegacyBillItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    quantity: Optional[float] = None
    price: Optional[float] = None
    prescriptionId: Optional[str] = None

    @property
    def qty(self) -> float:
        return self.quantity or 1

    @property
    def total(self) -> float:
        return self.qty * (self.price or 0)


class LegacyBill(BaseModel):
    """Ad-hoc charge block stored inside the patient document (pre `bills` collection)."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    status: Optional[str] = None
    date: Timestamp = None
    prescriptionId: Optional[str] = None
    items: Annotated[List[LegacyBillItem], ItemList] = Field(default_factory=list)


class Patient(Document):
    uhid: Optional[str] = None
    name: str = ""
    phone: Optional[str] = None
    assignedDoctor: Optional[str] = None
    status: Optional[PatientStatus] = "stable"
    assignedBed: Annotated[Optional[str], BeforeValidator(_to_str)] = None
    admissionDate: Timestamp = None
    bedAssignedAt: Timestamp = None
    bedRatePerDay: Optional[float] = None
    dischargeInitiated: Optional[bool] = False
    dischargeInitiatedBy: Optional[str] = None
    dischargeInitiatedAt: Timestamp = None
    dischargeCompleted: Optional[bool] = False
    dischargeCompletedAt: Timestamp = None
    history: Annotated[List[Any], ItemList] = Field(default_factory=list)
    bills: Annotated[List[LegacyBill], ItemList] = Field(default_factory=list)


# --- Beds ---

class Bed(Document):
    number: Annotated[str, BeforeValidator(_to_str)] = ""
    ward: Optional[str] = None
    floor: Optional[int] = None
    type: Optional[BedType] = None
    status: BedStatus = "available"
    patientId: Optional[str] = None
    patientName: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.status == "available" and not self.patientId


# --- Appointments ---

class Appointment(Document):
    patientId: str = ""
    patientName: Optional[str] = None
    patientPhone: Optional[str] = None
    uhid: Optional[str] = None
    doctorId: str = ""
    doctorName: Optional[str] = None
    department: Optional[str] = None
    appointmentDate: Timestamp = None
    timeSlot: Optional[str] = None
    type: str = "consultation"
    status: AppointmentStatus = "scheduled"
    queueNumber: Optional[int] = None
    billId: Optional[str] = None
    bedRequested: Optional[bool] = False
    bedRequestStatus: Optional[BedRequestStatus] = None
    consultationEndTime: Timestamp = None
    createdAt: Timestamp = None


# --- Bills ---

class BillItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    serviceName: str
    serviceType: ServiceType = "other"
    quantity: float = 1
    unitPrice: float = 0.0
    totalPrice: float = 0.0
    linkedTo: Optional[LinkedRef] = None
    description: Optional[str] = None
    # Informational line for a charge settled on an earlier bill
    alreadyPaid: bool = False


class Bill(Document):
    billNumber: str = ""
    patientId: str = ""
    patientUhid: Optional[str] = None
    patientName: Optional[str] = None
    patientPhone: Optional[str] = None
    appointmentId: Optional[str] = None
    items: Annotated[List[BillItem], ItemList] = Field(default_factory=list)
    subtotal: float = 0.0
    discount: float = 0.0
    discountReason: Optional[str] = None
    tax: float = 0.0
    taxRate: float = 0.0
    total: float = 0.0
    status: BillStatus = "pending"
    paymentMethod: Optional[PaymentMethod] = None
    paymentDetails: Annotated[Dict[str, Any], BeforeValidator(_none_to_empty_dict)] = Field(default_factory=dict)
    createdAt: Timestamp = None
    createdBy: Optional[str] = None
    paidAt: Timestamp = None
    paidBy: Optional[str] = None
    notes: Optional[str] = None

    def recalculate(self) -> "Bill":
        """Recompute subtotal, tax and total from the line items.

        total = subtotal + tax - discount, with the discount clamped so the
        total never goes below zero.
        """
        self.subtotal = round(sum(item.totalPrice for item in self.items if not item.alreadyPaid), 2)
        self.tax = round(self.subtotal * self.taxRate, 2)
        self.discount = min(max(self.discount or 0.0, 0.0), self.subtotal + self.tax)
        self.total = round(self.subtotal + self.tax - self.discount, 2)
        return self


# --- Clinical sources of charges ---

class Medicine(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    quantity: Optional[float] = None
    price: Optional[float] = None


class Prescription(Document):
    patientId: str = ""
    patientName: Optional[str] = None
    doctorId: Optional[str] = None
    doctorName: Optional[str] = None
    medicines: Annotated[List[Medicine], ItemList] = Field(default_factory=list)
    status: str = "pending"
    dispensedFromHospital: Optional[bool] = False
    createdAt: Timestamp = None
    processedAt: Timestamp = None
    processedBy: Optional[str] = None


class LabTest(BaseModel):
    model_config = ConfigDict(extra="allow")

    testName: str
    price: float = 0.0


class LabOrder(Document):
    patientId: str = ""
    tests: Annotated[List[LabTest], ItemList] = Field(default_factory=list)
    status: str = "pending"
    totalAmount: float = 0.0
    billGenerated: Optional[bool] = False
    orderedAt: Timestamp = None
    completedAt: Timestamp = None
    technicianName: Optional[str] = None


class InventoryItem(Document):
    name: str
    category: Optional[str] = None
    quantity: Optional[float] = None
    cost: Optional[float] = None
    # Pharmacy imports record the unit price under `price`
    price: Optional[float] = None

    @property
    def unit_cost(self) -> Optional[float]:
        return self.cost if self.cost is not None else self.price


class User(Document):
    name: Optional[str] = None
    role: Optional[str] = None
    specialization: Optional[str] = None


# --- Discharge aggregation (computed, never stored) ---

class DischargeExpenseItem(BaseModel):
    id: str
    source: ExpenseSource
    description: str
    date: Timestamp = None
    quantity: float = 1
    unitPrice: float = 0.0
    total: float = 0.0
    # Back-reference used for de-duplication only
    linkedTo: Optional[LinkedRef] = None
    pricingUnavailable: bool = False
    alreadyPaid: bool = False


class DischargeExpenseAggregation(BaseModel):
    items: List[DischargeExpenseItem] = Field(default_factory=list)
    subtotal: float = 0.0
    tax: float = 0.0
    taxRate: float = 0.0
    grandTotal: float = 0.0
