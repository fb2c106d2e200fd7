"""
Audit trail for login attempts.
"""

from airsafety.kernel.events.event_types import ClientInfo, LoginAuditEvent, LoginOutcome
from airsafety.kernel.events.audit_logger import AuditLogger

__all__ = [
    "AuditLogger",
    "ClientInfo",
    "LoginAuditEvent",
    "LoginOutcome",
]
