# errors.py — Application error taxonomy with SB-DOMAIN-NUMBER codes
from typing import List, Optional

# ============================================================
# ERROR CODE CATALOGUE
# SB-{DOMAIN}-{NUMBER}
# Domains: REQ, AUTH, RBAC, BOARD, DB, SYS
# ============================================================

ERROR_CATALOGUE = {
    "SB-REQ-001": {"message": "Bad request", "http_status": 400},
    "SB-REQ-002": {"message": "Resource not found", "http_status": 404},
    "SB-AUTH-001": {"message": "Authentication required", "http_status": 401},
    "SB-AUTH-002": {"message": "Insufficient permissions", "http_status": 403},
    "SB-BOARD-001": {"message": "Concurrent board update, retry the request", "http_status": 409},
    "SB-DB-001": {"message": "Data store unavailable", "http_status": 503},
    "SB-SYS-001": {"message": "Internal server error", "http_status": 500},
}


class AppError(Exception):
    """Base class for errors that map onto an HTTP response"""

    status_code = 500
    code = "SB-SYS-001"
    error = "internal"
    retryable = False

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or ERROR_CATALOGUE[self.code]["message"]
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"error": self.error, "code": self.code, "detail": self.detail}


class BadRequest(AppError):
    status_code = 400
    code = "SB-REQ-001"
    error = "bad_request"


class NotFound(AppError):
    status_code = 404
    code = "SB-REQ-002"
    error = "not_found"


class Unauthenticated(AppError):
    status_code = 401
    code = "SB-AUTH-001"
    error = "unauthenticated"


class Forbidden(AppError):
    """Authenticated but missing one or more required permissions"""

    status_code = 403
    code = "SB-AUTH-002"
    error = "forbidden"

    def __init__(self, missing: List[str], detail: Optional[str] = None):
        self.missing = list(missing)
        super().__init__(detail)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["missing"] = self.missing
        return body


class Conflict(AppError):
    status_code = 409
    code = "SB-BOARD-001"
    error = "conflict"
    retryable = True


class Internal(AppError):
    pass


class StoreUnavailable(Internal):
    status_code = 503
    code = "SB-DB-001"
    error = "store_unavailable"
    retryable = True
