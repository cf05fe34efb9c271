"""
Error taxonomy for the portal.

Only login and the two mandatory patient lookups ever surface as request
failures. Every other upstream read degrades to "no data from this source".
"""

from __future__ import annotations

import json


class PortalError(Exception):
    status_code = 500
    error = "Internal server error"

    def __init__(self, details: str = "", *, error: str | None = None):
        super().__init__(details or error or self.error)
        self.details = details
        if error:
            self.error = error

    def to_dict(self) -> dict:
        return {"error": self.error, "details": self.details or None}


class AuthError(PortalError):
    error = "Authentication failed"


class ConfigurationError(AuthError):
    error = "Configuration error"


class ValidationError(PortalError):
    status_code = 400
    error = "Invalid request"


class NotFound(PortalError):
    """Patient absent from every lookup strategy. A legitimate negative result."""

    status_code = 200
    error = "Not found"


class UpstreamUnavailable(PortalError):
    """A required upstream call failed. ``status`` is None on transport errors."""

    error = "Failed to verify insurance number"

    def __init__(self, details: str = "", *, status: int | None = None, body: str = ""):
        super().__init__(details or body)
        self.status = status
        self.body = body

    def is_missing_resource(self) -> bool:
        # openIMIS answers Patient/{id} for an unknown id with 400, 404 or a
        # 500 OperationOutcome whose text reads "... is missing".
        if self.status in (400, 404):
            return True
        return self.status == 500 and is_operation_outcome_n_missing(self.body)


def is_operation_outcome_n_missing(text: str) -> bool:
    try:
        payload = json.loads(text)
    except (TypeError, ValueError):
        return False
    if not isinstance(payload, dict) or payload.get("resourceType") != "OperationOutcome":
        return False
    issues = payload.get("issue")
    if not isinstance(issues, list):
        return False
    for issue in issues:
        details = (issue or {}).get("details") or {}
        if "n is missing" in str(details.get("text") or "").lower():
            return True
    return False
