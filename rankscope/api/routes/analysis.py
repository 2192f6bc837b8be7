"""Analysis job routes.

Endpoints:
    POST   /v1/analysis/jobs                    Submit a URL for analysis
    GET    /v1/analysis/jobs                    List jobs
    GET    /v1/analysis/jobs/{job_id}           Poll status + progress
    GET    /v1/analysis/jobs/{job_id}/stream    Server-Sent Events until finished
    GET    /v1/analysis/jobs/{job_id}/results   Keywords, statistics, full log
    GET    /v1/analysis/jobs/{job_id}/logs      Job log (optionally the last N)
    POST   /v1/analysis/jobs/{job_id}/cancel    Cancel a pending/running job
    DELETE /v1/analysis/jobs/{job_id}           Delete a finished job
    GET    /v1/analysis/stats                   Dashboard aggregates across jobs
"""

import json
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from rankscope.executor.errors import (
    InvalidInputError,
    NotFoundError,
    NotReadyError,
    PersistenceError,
    RankscopeError,
)
from rankscope.executor.schemas import (
    AnalysisResults,
    DashboardStats,
    JobStatus,
    JobView,
    LogEntry,
    SubmitRequest,
)
from rankscope.executor.service import AnalysisService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analysis", tags=["analysis"])


def get_service(request: Request) -> AnalysisService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Analysis service is not initialized")
    return service


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map the executor error taxonomy onto HTTP status codes."""
    try:
        yield
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NotReadyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidInputError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceError as e:
        logger.error(f"Job store unavailable: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")
    except RankscopeError as e:
        logger.error(f"Unhandled analysis error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/jobs", status_code=202)
def submit_job(body: SubmitRequest, request: Request):
    """Create a job and start it in the background.

    Returns immediately with the job id; poll or stream it for progress.
    """
    service = get_service(request)
    with translate_errors():
        job_id = service.submit(body.target_url, body.options)
    return {
        "job_id": job_id,
        "status": JobStatus.PENDING.value,
        "poll_url": f"/v1/analysis/jobs/{job_id}",
        "stream_url": f"/v1/analysis/jobs/{job_id}/stream",
    }


@router.get("/jobs", response_model=list[JobView])
def list_jobs(
    request: Request,
    status: Optional[JobStatus] = None,
    limit: int = Query(default=20, ge=1, le=200),
):
    service = get_service(request)
    with translate_errors():
        return service.list_jobs(status.value if status else None, limit)


@router.get("/stats", response_model=DashboardStats)
def get_stats(
    request: Request,
    recent: int = Query(default=10, ge=0, le=50),
):
    """Totals, distributions and recent analyses across all jobs."""
    service = get_service(request)
    with translate_errors():
        return service.dashboard_stats(recent_limit=recent)


@router.get("/jobs/{job_id}", response_model=JobView)
def get_job(job_id: str, request: Request):
    """Poll a job: status, overall and per-phase progress, recent logs."""
    service = get_service(request)
    with translate_errors():
        return service.poll(job_id)


@router.get("/jobs/{job_id}/stream")
def stream_job(job_id: str, request: Request):
    """Push job views as Server-Sent Events until the job finishes."""
    service = get_service(request)
    with translate_errors():
        service.poll(job_id)  # 404 before the stream starts

    def event_stream():
        try:
            for view in service.stream(job_id):
                yield f"data: {view.model_dump_json()}\n\n"
            yield "event: end\ndata: {}\n\n"
        except RankscopeError as e:
            logger.warning(f"Stream for job {job_id} aborted: {e}")
            yield f"event: error\ndata: {json.dumps({'message': str(e)})}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@router.get("/jobs/{job_id}/results", response_model=AnalysisResults)
def get_results(job_id: str, request: Request):
    """Results of a finished job; 409 while it is still pending or running."""
    service = get_service(request)
    with translate_errors():
        return service.fetch_results(job_id)


@router.get("/jobs/{job_id}/logs", response_model=list[LogEntry])
def get_logs(
    job_id: str,
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
):
    service = get_service(request)
    with translate_errors():
        return service.get_logs(job_id, limit)


@router.post("/jobs/{job_id}/cancel", response_model=JobView)
def cancel_job(job_id: str, request: Request):
    service = get_service(request)
    with translate_errors():
        return service.cancel(job_id)


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str, request: Request):
    service = get_service(request)
    with translate_errors():
        deleted = service.delete(job_id)
    if not deleted:
        raise HTTPException(
            status_code=409,
            detail=f"Job {job_id} is still pending or running; cancel it first",
        )
    return {"deleted": job_id}
