# exceptions.py — Incident Ledger error taxonomy with ILG-DOMAIN-NUMBER codes
from typing import Optional, Dict, Any

# ============================================================
# ERROR CODE CATALOGUE
# ILG-{DOMAIN}-{NUMBER}
# Domains: INC, DATA, VAL, SYS
# ============================================================

ERROR_CATALOGUE = {
    "ILG-INC-001": {"message": "Incident not found", "severity": "info", "http_status": 404},
    # Rendered exactly like ILG-INC-001 to external callers
    "ILG-INC-002": {"message": "Incident belongs to another organisation", "severity": "warning", "http_status": 404},
    "ILG-DATA-001": {"message": "Incident version chain is inconsistent", "severity": "critical", "http_status": 500},
    "ILG-DATA-002": {"message": "Concurrent update conflict, please retry", "severity": "warning", "http_status": 503},
    "ILG-VAL-001": {"message": "Invalid incident content", "severity": "info", "http_status": 422},
    "ILG-SYS-001": {"message": "Verification token could not be generated", "severity": "critical", "http_status": 500},
}

PUBLIC_NOT_FOUND = "Incident not found"


class IncidentLedgerError(Exception):
    """Base class for every domain error raised by the incident core."""

    code = "ILG-SYS-000"
    public_detail = "Internal server error"

    def __init__(self, message: str = "", *, incident_id: Optional[str] = None,
                 operation: Optional[str] = None, **context: Any):
        self.message = message or ERROR_CATALOGUE.get(self.code, {}).get("message", self.public_detail)
        self.incident_id = incident_id
        self.operation = operation
        self.context = context
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return ERROR_CATALOGUE.get(self.code, {}).get("http_status", 500)

    @property
    def severity(self) -> str:
        return ERROR_CATALOGUE.get(self.code, {}).get("severity", "error")

    def log_context(self) -> Dict[str, Any]:
        """Diagnostic fields for operators. Never contains incident content."""
        return {
            "code": self.code,
            "incident_id": self.incident_id,
            "operation": self.operation,
            **self.context,
        }


class IncidentNotFoundError(IncidentLedgerError):
    code = "ILG-INC-001"
    public_detail = PUBLIC_NOT_FOUND


class IncidentAccessDeniedError(IncidentLedgerError):
    """The incident exists but another organisation owns it."""
    code = "ILG-INC-002"
    public_detail = PUBLIC_NOT_FOUND


class ConsistencyFaultError(IncidentLedgerError):
    """A version chain broke its invariants. Must never be repaired automatically."""
    code = "ILG-DATA-001"
    public_detail = "Internal server error"


class ConflictRetryError(IncidentLedgerError):
    """Concurrent writers kept racing and the retry budget ran out."""
    code = "ILG-DATA-002"
    public_detail = "The incident is being updated concurrently, please retry"


class ContentValidationError(IncidentLedgerError):
    code = "ILG-VAL-001"
    public_detail = "Invalid incident content"


class TokenGenerationError(IncidentLedgerError):
    code = "ILG-SYS-001"
    public_detail = "Internal server error"
