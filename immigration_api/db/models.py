"""
SQLAlchemy Models for Database
==============================

Schema for immigration case management:
- User accounts (staff and clients) with roles
- Cases with embedded applicant/beneficiary/form/payment documents (JSON)
- Case documents, notes and an append-only status history
- Per-month case number counters

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Integer, Boolean, DateTime, Enum, ForeignKey, Index
)
from sqlalchemy.orm import relationship, declarative_base

# Use JSON for cross-database compatibility (works with both PostgreSQL and SQLite)
from sqlalchemy import JSON as JSONB

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================

class Role(str, enum.Enum):
    """Account roles"""
    ADMIN = "admin"
    ATTORNEY = "attorney"
    PARALEGAL = "paralegal"
    CLIENT = "client"


STAFF_ROLES = (Role.ADMIN, Role.ATTORNEY, Role.PARALEGAL)


class CaseType(str, enum.Enum):
    """Kind of immigration matter"""
    GREEN_CARD = "green_card"
    CITIZENSHIP = "citizenship"
    VISA = "visa"
    ASYLUM = "asylum"
    WORK_PERMIT = "work_permit"
    FAMILY_PETITION = "family_petition"
    DEPORTATION_DEFENSE = "deportation_defense"
    OTHER = "other"


class CaseStatus(str, enum.Enum):
    """Case lifecycle status"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    RFE_RECEIVED = "rfe_received"
    APPROVED = "approved"
    DENIED = "denied"
    APPEAL_PENDING = "appeal_pending"
    CLOSED = "closed"
    ON_HOLD = "on_hold"


TERMINAL_STATUSES = (CaseStatus.APPROVED, CaseStatus.DENIED, CaseStatus.CLOSED)


class CasePriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DocumentStatus(str, enum.Enum):
    """Review status of a case document"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVIEW = "needs_review"


# =============================================================================
# IDENTITY
# =============================================================================

class User(Base):
    """Staff member or client account"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(Enum(Role), default=Role.CLIENT, nullable=False)

    # Profile
    phone = Column(String(50), nullable=True)
    address = Column(JSONB, nullable=True)  # street/city/state/zip_code/country
    date_of_birth = Column(DateTime, nullable=True)
    languages = Column(JSONB, default=list)
    bar_number = Column(String(100), nullable=True)  # attorneys
    specializations = Column(JSONB, default=list)
    notification_prefs = Column(JSONB, default=lambda: {"email": True, "sms": False, "push": True})

    is_active = Column(Boolean, default=True, nullable=False)
    password_changed_at = Column(DateTime, nullable=True)
    password_reset_token_hash = Column(String(64), nullable=True, index=True)
    password_reset_expires = Column(DateTime, nullable=True)

    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# CASE MANAGEMENT
# =============================================================================

class Case(Base):
    """Immigration case"""
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_number = Column(String(20), nullable=False, unique=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    case_type = Column(Enum(CaseType), default=CaseType.OTHER, nullable=False)
    status = Column(Enum(CaseStatus), default=CaseStatus.DRAFT, nullable=False)
    priority = Column(Enum(CasePriority), default=CasePriority.MEDIUM, nullable=False)

    # Applicant profile is embedded; applicant_user_id links it to a client account
    applicant = Column(JSONB, default=dict)
    applicant_name = Column(String(255), nullable=True)
    applicant_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    beneficiaries = Column(JSONB, default=list)

    # Key dates
    filing_date = Column(DateTime, nullable=True)
    priority_date = Column(DateTime, nullable=True)
    biometrics_date = Column(DateTime, nullable=True)
    interview_date = Column(DateTime, nullable=True)
    received_date = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)
    decision_date = Column(DateTime, nullable=True)

    forms = Column(JSONB, default=list)
    uscis_info = Column(JSONB, default=dict)  # receipt_number/case_status/last_updated/processing_center
    payments = Column(JSONB, default=list)
    tags = Column(JSONB, default=list)
    is_archived = Column(Boolean, default=False, nullable=False)

    assigned_to_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    last_updated_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_cases_assigned_to", "assigned_to_id"),
        Index("ix_cases_created_by", "created_by_id"),
        Index("ix_cases_applicant_user", "applicant_user_id"),
        Index("ix_cases_due_date", "due_date"),
    )

    # Relationships
    assigned_to = relationship("User", foreign_keys=[assigned_to_id])
    created_by = relationship("User", foreign_keys=[created_by_id])
    documents = relationship(
        "CaseDocument", back_populates="case", cascade="all, delete-orphan",
        order_by="CaseDocument.upload_date",
    )
    notes = relationship(
        "CaseNote", back_populates="case", cascade="all, delete-orphan",
        order_by="CaseNote.created_at",
    )
    history = relationship(
        "CaseHistoryEntry", back_populates="case", cascade="all, delete-orphan",
        order_by="CaseHistoryEntry.id",
    )


class CaseDocument(Base):
    """Document reference attached to a case (file lives in external storage)"""
    __tablename__ = "case_documents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    file_url = Column(String(1024), nullable=False)
    file_type = Column(String(100), nullable=True)
    upload_date = Column(DateTime, default=utcnow)
    is_required = Column(Boolean, default=False)
    status = Column(Enum(DocumentStatus), default=DocumentStatus.PENDING, nullable=False)
    uploaded_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    case = relationship("Case", back_populates="documents")


class CaseNote(Base):
    """Note on a case; private notes are staff-only"""
    __tablename__ = "case_notes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    is_private = Column(Boolean, default=False, nullable=False)

    case = relationship("Case", back_populates="notes")


class CaseHistoryEntry(Base):
    """Append-only snapshot of the status a case had before a change"""
    __tablename__ = "case_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    previous_status = Column(Enum(CaseStatus), nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    updated_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    case = relationship("Case", back_populates="history")


class CaseNumberCounter(Base):
    """Last case number sequence issued per YYMM bucket"""
    __tablename__ = "case_number_counters"

    bucket = Column(String(4), primary_key=True)
    last_sequence = Column(Integer, nullable=False, default=0)
