"""
Pydantic Schemas for Immigration Case API
=========================================

Request bodies for the auth, user and case endpoints, plus the serializers
that turn ORM rows into the JSON placed under `data` in responses.

Embedded case documents (applicant, beneficiaries, forms, USCIS info,
payments) are validated here and stored as JSON.
"""

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from .access import AuthContext
from .auth import MAX_PASSWORD_BYTES
from .cases import days_until_due
from .db.models import (
    Case, CaseDocument, CaseHistoryEntry, CaseNote, CasePriority, CaseStatus,
    CaseType, DocumentStatus, Role, User,
)
from .errors import ValidationError


def check_password_strength(password: str) -> str:
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password too long (max {MAX_PASSWORD_BYTES} bytes)")
    if not re.search(r"\d", password):
        raise ValueError("Password must contain a number")
    if not re.search(r"[A-Z]", password):
        raise ValueError("Password must contain an uppercase letter")
    return password


def _to_naive_utc(value):
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# =============================================================================
# ENUMS (embedded documents)
# =============================================================================

class FormStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SUBMITTED = "submitted"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    CASH = "cash"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


# =============================================================================
# AUTH REQUESTS
# =============================================================================

class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class _NewPassword(BaseModel):
    password: str
    password_confirm: Optional[str] = None

    @field_validator("password")
    @classmethod
    def strong_password(cls, value):
        return check_password_strength(value)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password_confirm is not None and self.password_confirm != self.password:
            raise ValueError("Passwords are not the same!")
        return self


class RegisterRequest(_NewPassword):
    """Self-registration (role is always client) or admin staff registration"""
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    role: Optional[str] = Field(None, description="Honoured only on /auth/register-staff")
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[Address] = None

    def profile(self) -> Dict[str, Any]:
        profile: Dict[str, Any] = {}
        if self.phone:
            profile["phone"] = self.phone
        if self.address:
            profile["address"] = self.address.model_dump(exclude_none=True)
        return profile

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Maria Lopez",
                "email": "maria@example.com",
                "password": "Secret123",
                "password_confirm": "Secret123",
            }
        }


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UpdateMeRequest(BaseModel):
    """Profile update; password fields are accepted only to be rejected"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[Address] = None
    password: Optional[str] = None
    password_confirm: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class UpdatePasswordRequest(_NewPassword):
    current_password: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(_NewPassword):
    pass


class ChangeRoleRequest(BaseModel):
    role: Role


# =============================================================================
# CASE REQUESTS
# =============================================================================

class ApplicantProfile(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    middle_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    alien_number: Optional[str] = Field(None, description="USCIS A-Number")
    nationality: Optional[str] = None


class Beneficiary(ApplicantProfile):
    relationship: Optional[str] = None


class FormRecord(BaseModel):
    form_type: str
    form_number: Optional[str] = None
    status: FormStatus = FormStatus.NOT_STARTED
    completion_date: Optional[datetime] = None
    submission_date: Optional[datetime] = None


class UscisInfo(BaseModel):
    receipt_number: Optional[str] = None
    case_status: Optional[str] = None
    last_updated: Optional[datetime] = None
    processing_center: Optional[str] = None


class PaymentRecord(BaseModel):
    amount: float = Field(..., ge=0)
    currency: str = "USD"
    payment_date: Optional[datetime] = None
    payment_method: PaymentMethod = PaymentMethod.OTHER
    payment_status: PaymentStatus = PaymentStatus.PENDING
    description: Optional[str] = None
    receipt_url: Optional[str] = None


CASE_JSON_FIELDS = ("applicant", "beneficiaries", "forms", "uscis_info", "payments", "tags")


class _CaseFields(BaseModel):
    class Config:
        extra = "forbid"

    description: Optional[str] = None
    applicant: Optional[ApplicantProfile] = None
    applicant_user_id: Optional[str] = Field(None, description="Client account of the applicant")
    beneficiaries: Optional[List[Beneficiary]] = None
    filing_date: Optional[datetime] = None
    priority_date: Optional[datetime] = None
    biometrics_date: Optional[datetime] = None
    interview_date: Optional[datetime] = None
    received_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    decision_date: Optional[datetime] = None
    forms: Optional[List[FormRecord]] = None
    uscis_info: Optional[UscisInfo] = None
    payments: Optional[List[PaymentRecord]] = None
    tags: Optional[List[str]] = None
    is_archived: Optional[bool] = None

    @field_validator(
        "filing_date", "priority_date", "biometrics_date", "interview_date",
        "received_date", "due_date", "decision_date",
    )
    @classmethod
    def naive_utc(cls, value):
        return _to_naive_utc(value)

    def to_service_payload(self) -> Dict[str, Any]:
        """Fields the caller set; embedded documents in JSON form."""
        data = self.model_dump(exclude_unset=True)
        json_data = self.model_dump(exclude_unset=True, mode="json")
        for field in CASE_JSON_FIELDS:
            if field in data:
                data[field] = json_data[field]
        return data


class CaseCreate(_CaseFields):
    """Create case request"""
    title: str = Field(..., min_length=1, max_length=255)
    case_type: CaseType = CaseType.OTHER
    case_number: Optional[str] = Field(None, min_length=1, max_length=20)
    status: Optional[CaseStatus] = None
    priority: Optional[CasePriority] = None
    assigned_to_id: Optional[str] = None

    class Config:
        extra = "forbid"
        json_schema_extra = {
            "example": {
                "title": "H-1B petition for Maria Lopez",
                "case_type": "visa",
                "priority": "high",
                "applicant": {"first_name": "Maria", "last_name": "Lopez", "nationality": "MX"},
                "due_date": "2025-03-01T00:00:00",
            }
        }


class CaseUpdate(_CaseFields):
    """Partial case update (case number and assignee have their own routes)"""
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    case_type: Optional[CaseType] = None
    status: Optional[CaseStatus] = None
    priority: Optional[CasePriority] = None


class StatusUpdateRequest(BaseModel):
    status: CaseStatus


class PriorityUpdateRequest(BaseModel):
    priority: CasePriority


class AssignRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class DocumentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    file_url: str = Field(..., min_length=1, max_length=1024)
    description: Optional[str] = None
    file_type: Optional[str] = None
    is_required: bool = False
    status: Optional[DocumentStatus] = None


class DocumentStatusUpdate(BaseModel):
    status: DocumentStatus


class NoteCreate(BaseModel):
    content: str = Field(..., min_length=1)
    is_private: bool = False


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = "ok"
    version: str
    database: str = "ok"


# =============================================================================
# SERIALIZERS
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def user_summary(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role.value}


def user_to_dict(user: User) -> Dict[str, Any]:
    """Public view of a user (never includes password or reset fields)"""
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "phone": user.phone,
        "address": user.address,
        "languages": user.languages or [],
        "bar_number": user.bar_number,
        "specializations": user.specializations or [],
        "is_active": user.is_active,
        "last_login": _iso(user.last_login),
        "created_at": _iso(user.created_at),
    }


def document_to_dict(document: CaseDocument) -> Dict[str, Any]:
    return {
        "id": document.id,
        "name": document.name,
        "description": document.description,
        "file_url": document.file_url,
        "file_type": document.file_type,
        "upload_date": _iso(document.upload_date),
        "is_required": document.is_required,
        "status": document.status.value,
        "uploaded_by_id": document.uploaded_by_id,
    }


def note_to_dict(note: CaseNote) -> Dict[str, Any]:
    return {
        "id": note.id,
        "content": note.content,
        "created_by_id": note.created_by_id,
        "created_at": _iso(note.created_at),
        "is_private": note.is_private,
    }


def history_to_dict(entry: CaseHistoryEntry) -> Dict[str, Any]:
    return {
        "status": entry.previous_status.value,
        "updated_at": _iso(entry.updated_at),
        "updated_by_id": entry.updated_by_id,
    }


CASE_RESPONSE_FIELDS = (
    "id", "case_number", "title", "description", "case_type", "status", "priority",
    "applicant", "applicant_user_id", "beneficiaries",
    "filing_date", "priority_date", "biometrics_date", "interview_date",
    "received_date", "due_date", "decision_date", "days_until_due",
    "documents", "forms", "notes", "uscis_info", "payments", "tags", "is_archived",
    "assigned_to", "created_by", "last_updated_by_id", "history",
    "submitted_at", "created_at", "updated_at",
)


def parse_fields(fields: Optional[str]) -> Optional[List[str]]:
    """`fields=title,status` -> ["id", "title", "status"]; None keeps everything."""
    if not fields:
        return None
    selected = [f.strip() for f in fields.split(",") if f.strip()]
    unknown = [f for f in selected if f not in CASE_RESPONSE_FIELDS]
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(unknown)}")
    if "id" not in selected:
        selected.insert(0, "id")
    return selected


def case_to_dict(case: Case, auth: AuthContext, fields: Optional[List[str]] = None) -> Dict[str, Any]:
    """Serialize a case for `auth`; clients never see private notes."""
    notes = [n for n in case.notes if auth.is_staff or not n.is_private]
    data = {
        "id": case.id,
        "case_number": case.case_number,
        "title": case.title,
        "description": case.description,
        "case_type": case.case_type.value,
        "status": case.status.value,
        "priority": case.priority.value,
        "applicant": case.applicant or {},
        "applicant_user_id": case.applicant_user_id,
        "beneficiaries": case.beneficiaries or [],
        "filing_date": _iso(case.filing_date),
        "priority_date": _iso(case.priority_date),
        "biometrics_date": _iso(case.biometrics_date),
        "interview_date": _iso(case.interview_date),
        "received_date": _iso(case.received_date),
        "due_date": _iso(case.due_date),
        "decision_date": _iso(case.decision_date),
        "days_until_due": days_until_due(case),
        "documents": [document_to_dict(d) for d in case.documents],
        "forms": case.forms or [],
        "notes": [note_to_dict(n) for n in notes],
        "uscis_info": case.uscis_info or {},
        "payments": case.payments or [],
        "tags": case.tags or [],
        "is_archived": case.is_archived,
        "assigned_to": user_summary(case.assigned_to),
        "created_by": user_summary(case.created_by),
        "last_updated_by_id": case.last_updated_by_id,
        "history": [history_to_dict(h) for h in case.history],
        "submitted_at": _iso(case.submitted_at),
        "created_at": _iso(case.created_at),
        "updated_at": _iso(case.updated_at),
    }
    if fields:
        return {key: data[key] for key in fields}
    return data
