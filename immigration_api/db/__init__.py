"""
Database Package - SQLAlchemy
=============================

Persistence layer for users and immigration cases.
"""

from .models import (
    Base,
    User,
    Case, CaseDocument, CaseNote, CaseHistoryEntry, CaseNumberCounter,
    Role, CaseType, CaseStatus, CasePriority, DocumentStatus,
    STAFF_ROLES, TERMINAL_STATUSES,
    utcnow,
)
from .session import get_db, get_db_session, init_db, get_engine, reset_engine

__all__ = [
    # Base
    "Base",
    # Identity
    "User",
    # Case Management
    "Case", "CaseDocument", "CaseNote", "CaseHistoryEntry", "CaseNumberCounter",
    # Enums
    "Role", "CaseType", "CaseStatus", "CasePriority", "DocumentStatus",
    "STAFF_ROLES", "TERMINAL_STATUSES",
    # Helpers
    "utcnow",
    # Session
    "get_db", "get_db_session", "init_db", "get_engine", "reset_engine",
]
