"""
Error types raised by the billing and discharge core.
The HTTP layer in main.py maps these onto status codes.
"""


class HospitalBillingError(Exception):
    """Base class for every error raised by hospital_billing."""


class PreconditionError(HospitalBillingError):
    """A record is not in the state an operation requires (bed taken, discharge not initiated, ...)."""


class NotFoundError(PreconditionError):
    """A referenced document does not exist."""

    def __init__(self, message: str, collection: str | None = None, doc_id: str | None = None):
        super().__init__(message)
        self.collection = collection
        self.doc_id = doc_id


class StoreError(HospitalBillingError):
    """The document store rejected an operation."""


class TransactionConflictError(StoreError):
    """A transaction kept losing to concurrent writers and gave up."""
