from typing import Iterable


class BillingProtocolError(ValueError):
    """Base class for faults that end a billing exchange.

    `message` is the text sent to (or received from) the peer after the `ERROR:` prefix.
    `outcome` is the metrics label used when the server records the failure.
    """
    outcome = "error"
    default_message = "Billing request failed."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# --- Request side (server surfaces these as ERROR: lines) ---

class MalformedRequest(BillingProtocolError):
    outcome = "malformed_request"
    default_message = "Invalid request format. Expected: patientId|visitDate|patientType|serviceCode"


class InvalidPatientId(BillingProtocolError):
    outcome = "invalid_patient_id"
    default_message = "Invalid patient ID. Must be a positive number."


class InvalidVisitDate(BillingProtocolError):
    outcome = "invalid_visit_date"
    default_message = "Invalid visit date. Expected format: YYYY-MM-DD."


class InvalidCategory(BillingProtocolError):
    outcome = "invalid_category"
    default_message = "Invalid patient type. Valid types: Outpatient, Inpatient, Emergency"


class InvalidServiceCode(BillingProtocolError):
    outcome = "invalid_service_code"
    default_message = "Invalid service code."

    @classmethod
    def for_valid_codes(cls, valid_codes: Iterable[str]) -> "InvalidServiceCode":
        return cls(f"Invalid service code. Valid codes: {', '.join(valid_codes)}")


class PatientNotFound(BillingProtocolError):
    outcome = "patient_not_found"
    default_message = "Patient ID not found in database."


class LookupFailure(BillingProtocolError):
    outcome = "lookup_failure"
    default_message = "Database connection failed."


class CalculationFault(BillingProtocolError):
    outcome = "calculation_fault"
    default_message = "Failed to calculate bill."


class PersistFailure(BillingProtocolError):
    outcome = "persist_failure"
    default_message = "Failed to save bill to database."


# --- Transport and client-side decoding ---

class TransportFailure(BillingProtocolError):
    outcome = "transport_failure"
    default_message = "Communication error."


class MalformedResponse(BillingProtocolError):
    outcome = "malformed_response"
    default_message = "Failed to parse bill data."


class UnknownResponse(BillingProtocolError):
    outcome = "unknown_response"
    default_message = "Unrecognized server response."


class ServerRejected(BillingProtocolError):
    """The server answered with an ERROR: line."""
    outcome = "server_rejected"
