# errors.py - Domain error taxonomy with CE-DOMAIN-NUMBER codes
from typing import Any, Dict, Optional


# ============================================================
# ERROR CODE CATALOGUE
# CE-{DOMAIN}-{NUMBER}
# Domains: STORE, CAMP, TASK, SYS
# ============================================================

ERROR_CATALOGUE = {
    # Entity store
    "CE-STORE-001": {"message": "Record not found", "http_status": 404},
    "CE-STORE-002": {"message": "Record has dependents and cannot be deleted", "http_status": 409},
    "CE-STORE-003": {"message": "Required field missing or invalid", "http_status": 422},
    "CE-STORE-004": {"message": "Standard is retired", "http_status": 409},
    "CE-STORE-005": {"message": "Unique constraint violation", "http_status": 409},

    # Campaigns
    "CE-CAMP-001": {"message": "Requirement does not belong to campaign standard", "http_status": 422},
    "CE-CAMP-002": {"message": "Duplicate task instance outside the idempotent path", "http_status": 409},
    "CE-CAMP-003": {"message": "Campaign requirement selection is frozen", "http_status": 409},
    "CE-CAMP-004": {"message": "Idempotency key reused with a different campaign definition", "http_status": 409},
    "CE-CAMP-005": {"message": "Requirement is not applicable in this campaign", "http_status": 422},
    "CE-CAMP-006": {"message": "Campaign has task instances and cannot be deleted", "http_status": 409},

    # Task instances
    "CE-TASK-001": {"message": "Unknown task instance status", "http_status": 422},
    "CE-TASK-002": {"message": "Status transition not permitted", "http_status": 409},

    # System
    "CE-SYS-001": {"message": "Storage timeout, safe to retry", "http_status": 503},
    "CE-SYS-002": {"message": "Storage unavailable, safe to retry", "http_status": 503},
}


class ComplianceError(Exception):
    """Base class for every error the engine raises on purpose."""

    http_status = 500
    default_code = "CE-SYS-002"

    def __init__(self, message: str = None, code: str = None, details: Optional[Dict[str, Any]] = None):
        self.code = code or self.default_code
        self.message = message or ERROR_CATALOGUE.get(self.code, {}).get("message", "Error")
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(ComplianceError):
    """A referenced id does not resolve."""
    http_status = 404
    default_code = "CE-STORE-001"


class ConflictError(ComplianceError):
    """The operation would violate an invariant."""
    http_status = 409
    default_code = "CE-STORE-002"


class ValidationError(ComplianceError):
    """A required field is missing or malformed."""
    http_status = 422
    default_code = "CE-STORE-003"


class TransientError(ComplianceError):
    """Storage timed out or is unavailable; the caller may retry."""
    http_status = 503
    default_code = "CE-SYS-001"
    retry_after_seconds = 1


def not_found(entity: str, entity_id: str) -> NotFoundError:
    return NotFoundError(f"{entity} not found: {entity_id}", details={"entity": entity, "id": entity_id})
