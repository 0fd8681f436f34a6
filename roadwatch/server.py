from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from roadwatch.config import DEFAULT_PAGE_LIMIT
from roadwatch.core.types import Actor, Report, Role, report_to_dict
from roadwatch.errors import Forbidden, RoadwatchError, ThrottleExceeded
from roadwatch.observability.internal_metrics import snapshot as metrics_snapshot
from roadwatch.observability.log_format import configure_logging
from roadwatch.security.auth import optional_actor
from roadwatch.service import ReportService
from roadwatch.storage import get_report_store
from roadwatch.workflow.dispatch import build_default_dispatcher
from roadwatch.workflow.transitions import allowed_triggers

# Load env vars
load_dotenv()

configure_logging()


app = FastAPI(
    title="Roadwatch Report API",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)
logger = logging.getLogger(__name__)
_service_lock = threading.Lock()


class CreateReportRequest(BaseModel):
    title: str
    description: str
    category: str
    address: str = ""
    severity: str = "medium"
    visibility: str = "public"


class EditReportRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    severity: Optional[str] = None
    visibility: Optional[str] = None


class AssignRequest(BaseModel):
    staff_id: str = Field(min_length=1)
    notes: str = ""


class ProgressRequest(BaseModel):
    progress: Any = None
    description: str = ""


class NotesRequest(BaseModel):
    notes: str = ""


class RejectRequest(BaseModel):
    reason: str = ""


def build_service() -> ReportService:
    return ReportService(get_report_store(), dispatcher=build_default_dispatcher())


def get_service(request: Request) -> ReportService:
    service = getattr(request.app.state, "service", None)
    if service is not None:
        return service
    with _service_lock:
        service = getattr(request.app.state, "service", None)
        if service is None:
            service = build_service()
            request.app.state.service = service
    return service


def _report_payload(report: Report) -> Dict[str, Any]:
    payload = report_to_dict(report)
    payload["allowed_triggers"] = [trigger.value for trigger in allowed_triggers(report.state)]
    return payload


@app.exception_handler(RoadwatchError)
def roadwatch_error_handler(request: Request, exc: RoadwatchError) -> JSONResponse:
    headers = None
    if isinstance(exc, ThrottleExceeded):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("Request failed: path=%s error_code=%s", request.url.path, exc.error_code)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()}, headers=headers)


@app.get("/")
def health_check():
    return {"status": "ok", "service": "Roadwatch API"}


@app.get("/health")
def health(service: ReportService = Depends(get_service)):
    return {
        "status": "ok",
        "service": "Roadwatch API",
        "store": service.store.name,
    }


@app.post("/reports", status_code=201)
def create_report(
    payload: CreateReportRequest,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    report = service.create_report(
        actor,
        title=payload.title,
        description=payload.description,
        category=payload.category,
        address=payload.address,
        severity=payload.severity,
        visibility=payload.visibility,
    )
    return _report_payload(report)


@app.get("/reports")
def list_reports(
    state: Optional[str] = None,
    category: Optional[str] = None,
    severity: Optional[str] = None,
    search: Optional[str] = None,
    mine: bool = False,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    result = service.page_reports(
        actor,
        page=page,
        limit=limit,
        state=state,
        category=category,
        severity=severity,
        search=search,
        mine=mine,
    )
    return {
        "count": len(result.items),
        "total": result.total,
        "page": result.page,
        "pages": result.pages,
        "limit": result.limit,
        "reports": [_report_payload(report) for report in result.items],
    }


@app.get("/reports/stats")
def report_stats(
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    return service.report_stats(actor)


@app.get("/reports/pending-review")
def pending_review(
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    reports = service.pending_review(actor)
    return {"count": len(reports), "reports": [_report_payload(report) for report in reports]}


@app.get("/reports/{report_id}")
def get_report(
    report_id: str,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    return _report_payload(service.get_report(actor, report_id))


@app.patch("/reports/{report_id}")
def edit_report(
    report_id: str,
    payload: EditReportRequest,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    changes = payload.model_dump(exclude_unset=True)
    return _report_payload(service.edit_report(actor, report_id, changes))


@app.delete("/reports/{report_id}")
def delete_report(
    report_id: str,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    service.delete_report(actor, report_id)
    return {"deleted": True, "report_id": report_id}


@app.get("/reports/{report_id}/qualified-staff")
def qualified_staff(
    report_id: str,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    staff = service.qualified_staff(actor, report_id)
    return {
        "report_id": report_id,
        "staff": [
            {"id": member.id, "name": member.name, "specialization": member.specialization.value}
            for member in staff
            if member.specialization is not None
        ],
    }


@app.post("/reports/{report_id}/assign")
def assign_report(
    report_id: str,
    payload: AssignRequest,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    return _report_payload(service.assign(actor, report_id, payload.staff_id, payload.notes))


@app.post("/reports/{report_id}/start")
def start_work(
    report_id: str,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    return _report_payload(service.start_work(actor, report_id))


@app.post("/reports/{report_id}/progress")
def update_progress(
    report_id: str,
    payload: ProgressRequest,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    return _report_payload(service.update_progress(actor, report_id, payload.progress, payload.description))


@app.post("/reports/{report_id}/submit")
def submit_for_review(
    report_id: str,
    payload: Optional[NotesRequest] = None,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    notes = payload.notes if payload is not None else ""
    return _report_payload(service.submit_for_review(actor, report_id, notes))


@app.post("/reports/{report_id}/approve")
def approve_report(
    report_id: str,
    payload: Optional[NotesRequest] = None,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    notes = payload.notes if payload is not None else ""
    return _report_payload(service.approve(actor, report_id, notes))


@app.post("/reports/{report_id}/reject")
def reject_report(
    report_id: str,
    payload: RejectRequest,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    return _report_payload(service.reject(actor, report_id, payload.reason))


@app.post("/reports/{report_id}/resume")
def resume_work(
    report_id: str,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    return _report_payload(service.resume_work(actor, report_id))


@app.get("/reports/{report_id}/feedback-eligibility")
def feedback_eligibility(
    report_id: str,
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    return service.feedback_eligibility(actor, report_id)


@app.get("/ops/metrics")
def ops_metrics(
    actor: Optional[Actor] = Depends(optional_actor),
    service: ReportService = Depends(get_service),
):
    service.admit(actor)
    if actor is None or actor.role is not Role.ADMIN:
        raise Forbidden("only administrators can read metrics", error_code="METRICS_FORBIDDEN")
    budgets: List[Dict[str, Any]] = [
        {"role": role.value, "window_ms": budget.window_ms, "max": budget.max_requests}
        for role, budget in sorted(service.governor.budgets.items(), key=lambda item: item[0].value)
    ]
    return {"metrics": metrics_snapshot(), "admission_budgets": budgets}
