"""
Patient-Flow Exception Hierarchy

Every failure raised by the engine is attributable to exactly one typed
cause. State-machine operations fail closed (the visit is left untouched);
collaborator failures are reported as DependencyFailure warnings next to an
already-committed record.
"""
from typing import Any, Dict, Optional


class PatientFlowError(Exception):
    """Base exception for all patient-flow errors."""

    code = "PATIENT_FLOW_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


class NotFound(PatientFlowError):
    """A referenced visit or sub-entity does not exist."""

    code = "NOT_FOUND"
    entity = "entity"

    def __init__(self, entity_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"{self.entity} not found: {entity_id}",
            details={f"{self.entity.lower().replace(' ', '_')}_id": entity_id, **(details or {})}
        )
        self.entity_id = entity_id


class VisitNotFound(NotFound):
    code = "VISIT_NOT_FOUND"
    entity = "Visit"


class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"
    entity = "Order"


class AlertNotFound(NotFound):
    code = "ALERT_NOT_FOUND"
    entity = "Alert"


class BundleItemNotFound(NotFound):
    code = "BUNDLE_ITEM_NOT_FOUND"
    entity = "Bundle item"


class ConsultationNotFound(NotFound):
    code = "CONSULTATION_NOT_FOUND"
    entity = "Consultation"


class NoteNotFound(NotFound):
    code = "NOTE_NOT_FOUND"
    entity = "Note"


class ActivationNotFound(NotFound):
    code = "ACTIVATION_NOT_FOUND"
    entity = "Activation"


class InvalidStateTransition(PatientFlowError):
    """Terminal-state mutation or an illegal status jump."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        requested: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"current": current, "requested": requested, **(details or {})}
        )
        self.current = current
        self.requested = requested


class ValidationError(PatientFlowError):
    """Malformed input, e.g. a triage assessment without vitals."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"field": field, **(details or {})}
        )
        self.field = field


class ResourceUnavailable(PatientFlowError):
    """No bed in the recommended zone; the visit stays queued."""

    code = "RESOURCE_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        zone: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"zone": zone, **(details or {})}
        )
        self.zone = zone


class DependencyFailure(PatientFlowError):
    """A downstream collaborator (paging, order routing) failed or timed out."""

    code = "DEPENDENCY_FAILURE"

    def __init__(
        self,
        message: str,
        dependency: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"dependency": dependency, **(details or {})}
        )
        self.dependency = dependency


class ConcurrentModification(PatientFlowError):
    """A commit found the stored record at a different version than it read."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(
        self,
        entity_id: str,
        expected_version: int,
        actual_version: int,
    ):
        super().__init__(
            message=f"Record {entity_id} changed underneath this update",
            details={
                "entity_id": entity_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            }
        )
