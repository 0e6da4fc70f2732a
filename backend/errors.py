# errors.py — Structured API errors for authorization and tenant resolution
from enum import Enum as PyEnum
from typing import Dict, Optional


class DenyReason(str, PyEnum):
    NOT_AUTHENTICATED = "NotAuthenticated"
    NOT_A_MEMBER = "NotAMember"
    INSUFFICIENT_ROLE = "InsufficientRole"
    LAST_OWNER_PROTECTED = "LastOwnerProtected"
    CROSS_TENANT = "CrossTenant"


# CrossTenant answers 404 so a caller cannot confirm that a row exists in another tenant
STATUS_BY_REASON: Dict[DenyReason, int] = {
    DenyReason.NOT_AUTHENTICATED: 401,
    DenyReason.NOT_A_MEMBER: 403,
    DenyReason.INSUFFICIENT_ROLE: 403,
    DenyReason.LAST_OWNER_PROTECTED: 400,
    DenyReason.CROSS_TENANT: 404,
}


class AuthorizationError(Exception):
    """Raised when a request is denied; rendered as {"error": reason, "message": ...}."""

    def __init__(self, reason: DenyReason, message: Optional[str] = None):
        self.reason = reason
        self.message = message or reason.value
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_REASON[self.reason]


class TenantNotFound(Exception):
    """No tenant could be resolved for the request."""

    status_code = 404

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
