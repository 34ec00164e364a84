"""
Case API Endpoints
==================

FastAPI router for immigration cases. Role scoping and ownership checks
live in CaseService; handlers only translate HTTP <-> service calls.

Query-string filtering on GET /cases:
    ?status=in_review&priority=high
    ?due_date[gte]=2025-01-01&due_date[lt]=2025-02-01
    ?sort=-priority,due_date&fields=title,status&page=2&limit=20
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from .access import AuthContext
from .cases import MAX_DUE_WINDOW_DAYS, CaseService
from .dependencies import get_cases, require_auth
from .schemas import (
    AssignRequest,
    CaseCreate,
    CaseUpdate,
    DocumentCreate,
    DocumentStatusUpdate,
    NoteCreate,
    PriorityUpdateRequest,
    StatusUpdateRequest,
    case_to_dict,
    document_to_dict,
    history_to_dict,
    note_to_dict,
    parse_fields,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cases", tags=["Cases"])


def _case_response(case, auth: AuthContext) -> dict:
    return {"status": "success", "data": {"case": case_to_dict(case, auth)}}


def _cases_response(cases, auth: AuthContext, fields=None, **extra) -> dict:
    payload = {"status": "success", "results": len(cases)}
    payload.update(extra)
    payload["data"] = {"cases": [case_to_dict(c, auth, fields) for c in cases]}
    return payload


# =============================================================================
# Collection routes (declared before /{case_id})
# =============================================================================

@router.post("", status_code=201)
def create_case(
    request: CaseCreate,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    case = cases.create(auth, request.to_service_payload())
    return _case_response(case, auth)


@router.get("")
def list_cases(
    request: Request,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    sort: Optional[str] = Query(None, description="e.g. -created_at,priority"),
    fields: Optional[str] = Query(None, description="e.g. title,status,due_date"),
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    selected = parse_fields(fields)
    result = cases.list(
        auth,
        filters=dict(request.query_params.items()),
        sort=sort,
        page=page,
        limit=limit,
    )
    return _cases_response(
        result.items, auth, selected,
        total=result.total, page=result.page, limit=result.limit,
    )


@router.get("/stats")
def case_stats(
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    return {"status": "success", "data": {"stats": cases.stats(auth)}}


@router.get("/due")
def cases_due(
    days: int = Query(30, ge=0, le=MAX_DUE_WINDOW_DAYS),
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    return _cases_response(cases.due_within(auth, days), auth)


@router.get("/search")
def search_cases(
    keyword: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    return _cases_response(cases.search(auth, keyword), auth)


@router.get("/client/{client_id}")
def client_cases(
    client_id: str,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    return _cases_response(cases.client_cases(auth, client_id), auth)


# =============================================================================
# Single case routes
# =============================================================================

@router.get("/{case_id}")
def get_case(
    case_id: str,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    return _case_response(cases.get(auth, case_id), auth)


@router.patch("/{case_id}")
def update_case(
    case_id: str,
    request: CaseUpdate,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    case = cases.update(auth, case_id, request.to_service_payload())
    return _case_response(case, auth)


@router.delete("/{case_id}", status_code=204)
def delete_case(
    case_id: str,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    cases.delete(auth, case_id)
    return Response(status_code=204)


@router.patch("/{case_id}/status")
def change_case_status(
    case_id: str,
    request: StatusUpdateRequest,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    return _case_response(cases.change_status(auth, case_id, request.status), auth)


@router.patch("/{case_id}/assign")
def assign_case(
    case_id: str,
    request: AssignRequest,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    return _case_response(cases.assign(auth, case_id, request.user_id), auth)


@router.patch("/{case_id}/priority")
def change_case_priority(
    case_id: str,
    request: PriorityUpdateRequest,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    return _case_response(cases.set_priority(auth, case_id, request.priority), auth)


@router.get("/{case_id}/timeline")
def case_timeline(
    case_id: str,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    history = cases.timeline(auth, case_id)
    return {
        "status": "success",
        "results": len(history),
        "data": {"history": [history_to_dict(h) for h in history]},
    }


# =============================================================================
# Documents and notes
# =============================================================================

@router.get("/{case_id}/documents")
def list_case_documents(
    case_id: str,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    documents = cases.list_documents(auth, case_id)
    return {
        "status": "success",
        "results": len(documents),
        "data": {"documents": [document_to_dict(d) for d in documents]},
    }


@router.post("/{case_id}/documents", status_code=201)
def add_case_document(
    case_id: str,
    request: DocumentCreate,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    document = cases.add_document(auth, case_id, request.model_dump(exclude_none=True))
    return {"status": "success", "data": {"document": document_to_dict(document)}}


@router.patch("/{case_id}/documents/{document_id}")
def review_case_document(
    case_id: str,
    document_id: str,
    request: DocumentStatusUpdate,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    document = cases.update_document_status(auth, case_id, document_id, request.status)
    return {"status": "success", "data": {"document": document_to_dict(document)}}


@router.get("/{case_id}/notes")
def list_case_notes(
    case_id: str,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    notes = cases.list_notes(auth, case_id)
    return {
        "status": "success",
        "results": len(notes),
        "data": {"notes": [note_to_dict(n) for n in notes]},
    }


@router.post("/{case_id}/notes", status_code=201)
def add_case_note(
    case_id: str,
    request: NoteCreate,
    auth: AuthContext = Depends(require_auth),
    cases: CaseService = Depends(get_cases),
):
    note = cases.add_note(auth, case_id, request.content, is_private=request.is_private)
    return {"status": "success", "data": {"note": note_to_dict(note)}}
