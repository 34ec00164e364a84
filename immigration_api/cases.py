"""
Case Lifecycle Service
======================

Create/read/update/delete, search, due-date and statistics operations on
immigration cases. Every read goes through the caller's scope (see access.py);
every update appends one status snapshot to the case history in the same
transaction as the change.

Case numbers look like `YYMM-NNNN`. The sequence per YYMM bucket lives in
`case_number_counters` and is advanced with a single atomic UPDATE.
"""

import logging
import math
import operator
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .access import (
    AuthContext, Permission, apply_scope, can_modify, can_view, require_permission,
)
from .config import get_settings
from .db.models import (
    Case, CaseDocument, CaseHistoryEntry, CaseNote, CaseNumberCounter,
    CasePriority, CaseStatus, CaseType, DocumentStatus, Role, STAFF_ROLES,
    TERMINAL_STATUSES, User, utcnow,
)
from .email_utils import send_case_assignment_email
from .errors import AppError, AuthorizationError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS STATE MACHINE
# =============================================================================

_OPEN_STATUSES = {
    CaseStatus.DRAFT, CaseStatus.SUBMITTED, CaseStatus.IN_REVIEW,
    CaseStatus.RFE_RECEIVED, CaseStatus.APPEAL_PENDING,
}

STATUS_TRANSITIONS = {
    CaseStatus.DRAFT: {CaseStatus.SUBMITTED, CaseStatus.ON_HOLD, CaseStatus.CLOSED},
    CaseStatus.SUBMITTED: {CaseStatus.IN_REVIEW, CaseStatus.ON_HOLD, CaseStatus.CLOSED},
    CaseStatus.IN_REVIEW: {
        CaseStatus.RFE_RECEIVED, CaseStatus.APPROVED, CaseStatus.DENIED, CaseStatus.ON_HOLD,
    },
    CaseStatus.RFE_RECEIVED: {
        CaseStatus.IN_REVIEW, CaseStatus.APPEAL_PENDING, CaseStatus.CLOSED, CaseStatus.ON_HOLD,
    },
    CaseStatus.APPROVED: {CaseStatus.APPEAL_PENDING, CaseStatus.CLOSED},
    CaseStatus.DENIED: {CaseStatus.APPEAL_PENDING, CaseStatus.CLOSED},
    CaseStatus.APPEAL_PENDING: {CaseStatus.IN_REVIEW, CaseStatus.CLOSED, CaseStatus.ON_HOLD},
    CaseStatus.ON_HOLD: _OPEN_STATUSES | {CaseStatus.CLOSED},
    CaseStatus.CLOSED: set(),
}


def is_valid_transition(current: CaseStatus, new: CaseStatus) -> bool:
    if current == new:
        return True
    return new in STATUS_TRANSITIONS.get(current, set())


# =============================================================================
# CASE NUMBERS
# =============================================================================

CASE_NUMBER_RE = re.compile(r"^\d{4}-\d{4}$")
MAX_CASE_SEQUENCE = 9999


def case_number_bucket(now: Optional[datetime] = None) -> str:
    return (now or utcnow()).strftime("%y%m")


def format_case_number(bucket: str, sequence: int) -> str:
    if not 1 <= sequence <= MAX_CASE_SEQUENCE:
        raise ValueError(f"Case sequence out of range: {sequence}")
    return f"{bucket}-{sequence:04d}"


# =============================================================================
# QUERY PARSING
# =============================================================================

RESERVED_QUERY_PARAMS = ("page", "sort", "limit", "fields")
MAX_DUE_WINDOW_DAYS = 3650

COMPARISON_OPERATORS = {
    "eq": operator.eq,
    "gte": operator.ge,
    "gt": operator.gt,
    "lte": operator.le,
    "lt": operator.lt,
}

_FILTER_KEY_RE = re.compile(r"^(?P<field>[a-z_]+)(?:\[(?P<op>[a-z]+)\])?$")


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("true", "1", "yes"):
        return True
    if value in ("false", "0", "no"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_datetime(raw: str) -> datetime:
    value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# field name -> (column, parser)
FILTERABLE_FIELDS: Dict[str, Tuple[Any, Callable[[str], Any]]] = {
    "status": (Case.status, CaseStatus),
    "case_type": (Case.case_type, CaseType),
    "priority": (Case.priority, CasePriority),
    "is_archived": (Case.is_archived, _parse_bool),
    "case_number": (Case.case_number, str),
    "assigned_to_id": (Case.assigned_to_id, str),
    "created_by_id": (Case.created_by_id, str),
    "applicant_user_id": (Case.applicant_user_id, str),
    "filing_date": (Case.filing_date, _parse_datetime),
    "priority_date": (Case.priority_date, _parse_datetime),
    "biometrics_date": (Case.biometrics_date, _parse_datetime),
    "interview_date": (Case.interview_date, _parse_datetime),
    "received_date": (Case.received_date, _parse_datetime),
    "due_date": (Case.due_date, _parse_datetime),
    "decision_date": (Case.decision_date, _parse_datetime),
    "submitted_at": (Case.submitted_at, _parse_datetime),
    "created_at": (Case.created_at, _parse_datetime),
    "updated_at": (Case.updated_at, _parse_datetime),
}

SORTABLE_FIELDS = dict(
    {name: column for name, (column, _) in FILTERABLE_FIELDS.items()},
    title=Case.title,
)

DATE_FIELDS = (
    "filing_date", "priority_date", "biometrics_date", "interview_date",
    "received_date", "due_date", "decision_date",
)

CREATE_FIELDS = (
    "case_number", "title", "description", "case_type", "status", "priority",
    "applicant", "applicant_user_id", "beneficiaries", "forms", "uscis_info",
    "payments", "tags", "assigned_to_id", "is_archived",
) + DATE_FIELDS

UPDATE_FIELDS = tuple(f for f in CREATE_FIELDS if f not in ("case_number", "assigned_to_id"))
REQUIRED_FIELDS = ("title", "case_type", "status", "priority", "is_archived")


def parse_filters(params: Mapping[str, str]) -> List[Tuple[Any, Callable, Any]]:
    """
    Turn query parameters into (column, comparator, value) triples.

    `status=approved` is equality, `due_date[lte]=2025-01-31` maps the
    bracketed operator to a comparison. Pagination/sort/fields keys are skipped.
    """
    parsed = []
    for key, raw in params.items():
        if key in RESERVED_QUERY_PARAMS:
            continue
        match = _FILTER_KEY_RE.match(key)
        if not match or match.group("field") not in FILTERABLE_FIELDS:
            raise ValidationError(f"Cannot filter on '{key}'")
        op_name = match.group("op") or "eq"
        if op_name not in COMPARISON_OPERATORS:
            raise ValidationError(f"Unsupported operator '{op_name}' in '{key}'")

        column, parse = FILTERABLE_FIELDS[match.group("field")]
        try:
            value = parse(raw)
        except ValueError:
            raise ValidationError(f"Invalid value for '{key}': {raw}")
        parsed.append((column, COMPARISON_OPERATORS[op_name], value))
    return parsed


def parse_sort(sort: Optional[str]) -> list:
    """Comma separated sort keys, `-` prefix for descending. Default newest first."""
    clauses = []
    for item in (sort or "-created_at").split(","):
        item = item.strip()
        if not item:
            continue
        descending = item.startswith("-")
        name = item.lstrip("-")
        column = SORTABLE_FIELDS.get(name)
        if column is None:
            raise ValidationError(f"Cannot sort on '{name}'")
        clauses.append(column.desc() if descending else column.asc())
    clauses.append(Case.id.asc())
    return clauses


def days_until_due(case: Case, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days (rounded up) until the due date, None when unset."""
    if not case.due_date:
        return None
    delta = case.due_date - (now or utcnow())
    return math.ceil(delta.total_seconds() / 86400)


def _escape_like(keyword: str) -> str:
    return keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


_ENUM_FIELDS = {"status": CaseStatus, "case_type": CaseType, "priority": CasePriority}


def _coerce_enums(data: Dict[str, Any]) -> Dict[str, Any]:
    for field, enum_cls in _ENUM_FIELDS.items():
        if data.get(field) is None:
            continue
        try:
            data[field] = enum_cls(data[field])
        except ValueError:
            raise ValidationError(f"Invalid {field}: {data[field]}")
    return data


def _applicant_name(applicant: Optional[dict]) -> Optional[str]:
    if not applicant:
        return None
    parts = [applicant.get("first_name"), applicant.get("last_name")]
    name = " ".join(p.strip() for p in parts if p and p.strip())
    return name or None


@dataclass
class CaseListResult:
    """One page of cases plus the scoped match count"""
    items: List[Case]
    total: int
    page: int
    limit: int


# =============================================================================
# CASE SERVICE
# =============================================================================

class CaseService:
    """Case store operations for an authenticated caller."""

    def __init__(self, db: Session, notifier=None):
        self.db = db
        self.settings = get_settings()
        self.notifier = notifier or send_case_assignment_email

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _load(self, case_id: str) -> Case:
        case = self.db.query(Case).filter(Case.id == case_id).first()
        if not case:
            raise NotFoundError("No case found with that ID")
        return case

    def _load_for_modify(self, auth: AuthContext, case_id: str) -> Case:
        case = self._load(case_id)
        if not can_modify(auth, case):
            logger.warning(f"Case access denied: {auth.user_id} cannot modify case {case_id}")
            raise AuthorizationError("You do not have permission to update this case")
        return case

    def _require_user(self, user_id: str, staff_only: bool = False) -> User:
        user = self.db.query(User).filter(User.id == user_id, User.is_active.is_(True)).first()
        if not user:
            raise ValidationError(f"No active user with ID {user_id}")
        if staff_only and user.role not in STAFF_ROLES:
            raise ValidationError("Cases can only be assigned to staff members")
        return user

    def _append_history(self, case: Case, auth: AuthContext) -> CaseHistoryEntry:
        entry = CaseHistoryEntry(
            previous_status=case.status,
            updated_at=utcnow(),
            updated_by_id=auth.user_id,
        )
        case.history.append(entry)
        return entry

    def _check_transition(self, case: Case, new_status: CaseStatus) -> None:
        if self.settings.enforce_status_transitions and not is_valid_transition(case.status, new_status):
            raise ValidationError(
                f"Cannot change case status from {case.status.value} to {new_status.value}"
            )

    def _apply_status(self, case: Case, new_status: CaseStatus) -> None:
        if new_status == CaseStatus.SUBMITTED and case.submitted_at is None:
            case.submitted_at = utcnow()
        case.status = new_status

    def _touch(self, case: Case, auth: AuthContext) -> None:
        case.updated_at = utcnow()
        case.last_updated_by_id = auth.user_id

    def _highest_existing_sequence(self, bucket: str) -> int:
        numbers = self.db.query(Case.case_number).filter(Case.case_number.like(f"{bucket}-%")).all()
        sequences = [int(n.split("-", 1)[1]) for (n,) in numbers if CASE_NUMBER_RE.match(n)]
        return max(sequences, default=0)

    def _next_sequence(self, bucket: str) -> int:
        """Advance the bucket counter atomically and return the new value."""
        for _ in range(3):
            result = self.db.execute(
                update(CaseNumberCounter)
                .where(CaseNumberCounter.bucket == bucket)
                .values(last_sequence=CaseNumberCounter.last_sequence + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return self.db.query(CaseNumberCounter.last_sequence).filter(
                    CaseNumberCounter.bucket == bucket
                ).scalar()

            # First case of the month
            start = self._highest_existing_sequence(bucket) + 1
            self.db.add(CaseNumberCounter(bucket=bucket, last_sequence=start))
            try:
                self.db.flush()
                return start
            except IntegrityError:
                # Another request created the bucket first; nothing else is pending yet
                self.db.rollback()
        raise AppError("Could not allocate a case number", 500)

    def generate_case_number(self, now: Optional[datetime] = None) -> str:
        bucket = case_number_bucket(now)
        while True:
            sequence = self._next_sequence(bucket)
            if sequence > MAX_CASE_SEQUENCE:
                self.db.rollback()
                logger.error("Case numbers exhausted for bucket %s", bucket)
                raise AppError(f"No case numbers left for {bucket}", 503)
            candidate = format_case_number(bucket, sequence)
            # Skip numbers already taken by manually numbered cases
            if not self.db.query(Case.id).filter(Case.case_number == candidate).first():
                return candidate

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create(self, auth: AuthContext, payload: Dict[str, Any]) -> Case:
        require_permission(auth, Permission.CASE_CREATE)
        unknown = set(payload) - set(CREATE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown case fields: {', '.join(sorted(unknown))}")

        data = _coerce_enums({k: v for k, v in payload.items() if v is not None})
        if data.get("assigned_to_id"):
            self._require_user(data["assigned_to_id"], staff_only=True)
        else:
            data["assigned_to_id"] = auth.user_id
        if data.get("applicant_user_id"):
            self._require_user(data["applicant_user_id"])

        status = data.pop("status", CaseStatus.DRAFT)
        case_number = data.pop("case_number", None)
        if case_number:
            if self.db.query(Case.id).filter(Case.case_number == case_number).first():
                raise ConflictError(f"Case number {case_number} already exists")
        else:
            case_number = self.generate_case_number()

        case = Case(
            case_number=case_number,
            status=status,
            created_by_id=auth.user_id,
            last_updated_by_id=auth.user_id,
            submitted_at=utcnow() if status == CaseStatus.SUBMITTED else None,
            **data,
        )
        case.applicant_name = _applicant_name(case.applicant)
        self.db.add(case)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Case number {case_number} already exists")
        self.db.refresh(case)
        logger.info(f"Case {case.case_number} ({case.id}) created by {auth.user_id}")
        return case

    def get(self, auth: AuthContext, case_id: str) -> Case:
        require_permission(auth, Permission.CASE_READ)
        case = self._load(case_id)
        if not can_view(auth, case):
            logger.warning(f"Case access denied: {auth.user_id} cannot view case {case_id}")
            raise AuthorizationError("You do not have permission to view this case")
        return case

    def list(
        self,
        auth: AuthContext,
        filters: Optional[Mapping[str, str]] = None,
        sort: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> CaseListResult:
        require_permission(auth, Permission.CASE_READ)
        page = page or 1
        limit = limit or self.settings.default_page_limit
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        limit = min(limit, self.settings.max_page_limit)

        query = apply_scope(self.db.query(Case), auth)
        for column, compare, value in parse_filters(filters or {}):
            query = query.filter(compare(column, value))

        total = query.count()
        skip = (page - 1) * limit
        if skip > 0 and skip >= total:
            raise NotFoundError("This page does not exist")

        items = query.order_by(*parse_sort(sort)).offset(skip).limit(limit).all()
        return CaseListResult(items=items, total=total, page=page, limit=limit)

    def update(self, auth: AuthContext, case_id: str, patch: Dict[str, Any]) -> Case:
        require_permission(auth, Permission.CASE_UPDATE)
        unknown = set(patch) - set(UPDATE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated here: {', '.join(sorted(unknown))}")

        patch = _coerce_enums(dict(patch))
        case = self._load_for_modify(auth, case_id)
        if patch.get("applicant_user_id"):
            self._require_user(patch["applicant_user_id"])
        empty = [f for f in REQUIRED_FIELDS if f in patch and patch[f] is None]
        if empty:
            raise ValidationError(f"Fields cannot be empty: {', '.join(empty)}")
        if patch.get("status") is not None:
            self._check_transition(case, patch["status"])

        self._append_history(case, auth)
        for field, value in patch.items():
            if field == "status":
                self._apply_status(case, value)
            else:
                setattr(case, field, value)
        if "applicant" in patch:
            case.applicant_name = _applicant_name(case.applicant)
        self._touch(case, auth)

        self.db.commit()
        self.db.refresh(case)
        logger.info(f"Case {case.id} updated by {auth.user_id}: {sorted(patch)}")
        return case

    def delete(self, auth: AuthContext, case_id: str) -> None:
        require_permission(auth, Permission.CASE_DELETE)
        case = self._load(case_id)
        self.db.delete(case)
        self.db.commit()
        logger.info(f"Case {case_id} deleted by {auth.user_id}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def search(self, auth: AuthContext, keyword: Optional[str]) -> List[Case]:
        require_permission(auth, Permission.CASE_READ)
        keyword = (keyword or "").strip()
        if not keyword:
            raise ValidationError("Please provide a search keyword")

        pattern = f"%{_escape_like(keyword)}%"
        note_match = CaseNote.content.ilike(pattern, escape="\\")
        if not auth.is_staff:
            note_match = note_match & CaseNote.is_private.is_(False)

        query = apply_scope(self.db.query(Case), auth).filter(or_(
            Case.title.ilike(pattern, escape="\\"),
            Case.description.ilike(pattern, escape="\\"),
            Case.case_number.ilike(pattern, escape="\\"),
            Case.applicant_name.ilike(pattern, escape="\\"),
            Case.notes.any(note_match),
        ))
        return query.order_by(Case.created_at.desc(), Case.id.asc()).all()

    def due_within(self, auth: AuthContext, days: int = 30) -> List[Case]:
        require_permission(auth, Permission.CASE_READ)
        if not 0 <= days <= MAX_DUE_WINDOW_DAYS:
            raise ValidationError(f"days must be between 0 and {MAX_DUE_WINDOW_DAYS}")

        now = utcnow()
        query = apply_scope(self.db.query(Case), auth).filter(
            Case.due_date.isnot(None),
            Case.due_date >= now,
            Case.due_date <= now + timedelta(days=days),
            Case.status.notin_(TERMINAL_STATUSES),
        )
        return query.order_by(Case.due_date.asc(), Case.id.asc()).all()

    def stats(self, auth: AuthContext) -> List[Dict[str, Any]]:
        """
        Per-status aggregates: count, average processing days
        (updated_at - submitted_at over cases that have both) and up to five
        sample cases.
        """
        require_permission(auth, Permission.CASE_STATS)
        query = apply_scope(
            self.db.query(
                Case.id, Case.title, Case.priority, Case.status,
                Case.submitted_at, Case.updated_at,
            ),
            auth,
        ).order_by(Case.created_at.desc())

        groups: Dict[CaseStatus, Dict[str, Any]] = {}
        for row in query.all():
            group = groups.setdefault(row.status, {"count": 0, "durations": [], "cases": []})
            group["count"] += 1
            if row.submitted_at and row.updated_at:
                group["durations"].append((row.updated_at - row.submitted_at).total_seconds() / 86400)
            if len(group["cases"]) < 5:
                group["cases"].append({
                    "id": row.id,
                    "title": row.title,
                    "priority": row.priority.value,
                })

        result = []
        for status, group in groups.items():
            durations = group["durations"]
            result.append({
                "status": status.value,
                "count": group["count"],
                "avg_processing_days": round(sum(durations) / len(durations), 2) if durations else None,
                "cases": group["cases"],
            })
        result.sort(key=lambda g: (-g["count"], g["status"]))
        return result

    def client_cases(self, auth: AuthContext, client_id: str) -> List[Case]:
        require_permission(auth, Permission.CASE_READ)
        if auth.role == Role.CLIENT and client_id != auth.user_id:
            raise AuthorizationError("You can only view your own cases")
        query = apply_scope(self.db.query(Case), auth).filter(Case.applicant_user_id == client_id)
        return query.order_by(Case.created_at.desc(), Case.id.asc()).all()

    # -------------------------------------------------------------------------
    # Status / assignment / priority
    # -------------------------------------------------------------------------

    def change_status(self, auth: AuthContext, case_id: str, status) -> Case:
        require_permission(auth, Permission.CASE_STATUS)
        return self.update(auth, case_id, {"status": status})

    def set_priority(self, auth: AuthContext, case_id: str, priority) -> Case:
        require_permission(auth, Permission.CASE_PRIORITY)
        return self.update(auth, case_id, {"priority": priority})

    def assign(self, auth: AuthContext, case_id: str, user_id: str) -> Case:
        require_permission(auth, Permission.CASE_ASSIGN)
        case = self._load(case_id)
        assignee = self._require_user(user_id, staff_only=True)

        self._append_history(case, auth)
        case.assigned_to_id = assignee.id
        self._touch(case, auth)
        self.db.commit()
        self.db.refresh(case)
        logger.info(f"Case {case.id} assigned to {assignee.id} by {auth.user_id}")

        if assignee.id != auth.user_id:
            sent = self.notifier(
                to_email=assignee.email,
                case_number=case.case_number,
                case_title=case.title,
                user_name=assignee.name,
            )
            if not sent:
                logger.warning(f"Assignment email for case {case.id} was not delivered")
        return case

    # -------------------------------------------------------------------------
    # Documents / notes / timeline
    # -------------------------------------------------------------------------

    def add_document(self, auth: AuthContext, case_id: str, data: Dict[str, Any]) -> CaseDocument:
        case = self.get(auth, case_id)
        data = {k: v for k, v in data.items() if v is not None}
        if not auth.is_staff:
            # Only staff review documents
            data.pop("status", None)
        if "status" in data:
            data["status"] = DocumentStatus(data["status"])
        if not data.get("name") or not data.get("file_url"):
            raise ValidationError("Document name and file_url are required")
        document = CaseDocument(uploaded_by_id=auth.user_id, **data)
        case.documents.append(document)
        self.db.commit()
        self.db.refresh(document)
        logger.info(f"Document {document.id} added to case {case.id} by {auth.user_id}")
        return document

    def list_documents(self, auth: AuthContext, case_id: str) -> List[CaseDocument]:
        return list(self.get(auth, case_id).documents)

    def update_document_status(self, auth: AuthContext, case_id: str, document_id: str,
                               status) -> CaseDocument:
        require_permission(auth, Permission.CASE_DOCUMENT_REVIEW)
        case = self._load_for_modify(auth, case_id)
        document = self.db.query(CaseDocument).filter(
            CaseDocument.id == document_id, CaseDocument.case_id == case.id
        ).first()
        if not document:
            raise NotFoundError("No document found with that ID")
        try:
            document.status = DocumentStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid document status: {status}")
        self.db.commit()
        self.db.refresh(document)
        return document

    def add_note(self, auth: AuthContext, case_id: str, content: str, is_private: bool = False) -> CaseNote:
        require_permission(auth, Permission.CASE_NOTES)
        case = self.get(auth, case_id)
        content = (content or "").strip()
        if not content:
            raise ValidationError("Note content is required")
        note = CaseNote(content=content, is_private=is_private, created_by_id=auth.user_id)
        case.notes.append(note)
        self.db.commit()
        self.db.refresh(note)
        return note

    def list_notes(self, auth: AuthContext, case_id: str) -> List[CaseNote]:
        require_permission(auth, Permission.CASE_NOTES)
        return list(self.get(auth, case_id).notes)

    def timeline(self, auth: AuthContext, case_id: str) -> List[CaseHistoryEntry]:
        return list(self.get(auth, case_id).history)


def get_case_service(db: Session) -> CaseService:
    """Factory function for CaseService"""
    return CaseService(db)
