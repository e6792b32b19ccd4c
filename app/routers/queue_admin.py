"""
Queue Admin API Router
Queue statistics, send job listing and dead letter requeue
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session
import structlog
from app.middleware import get_correlation_id

from app.config import settings
from app.database import get_db
from app.models.send_job import SendJob
from app.services.errors import DeadLetterJobNotFound
from app.services.send_queue import JOB_STATUSES

logger = structlog.get_logger()


def require_admin_token(x_admin_token: Optional[str] = Header(None, alias="x-admin-token")):
    """
    Guard for admin endpoints. Disabled (503) until ADMIN_API_TOKEN is set.
    """
    if not settings.admin_api_token:
        raise HTTPException(status_code=503, detail="Admin API disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), settings.admin_api_token.encode()):
        logger.warning("admin_token_rejected")
        raise HTTPException(status_code=401, detail="Invalid admin token")


router = APIRouter(prefix="/api/v1/queue", tags=["queue"], dependencies=[Depends(require_admin_token)])


def _send_queue(request: Request):
    send_queue = getattr(request.app.state, "send_queue", None)
    if send_queue is None:
        raise HTTPException(status_code=503, detail="Send queue not configured")
    return send_queue


@router.get("/stats")
def queue_stats(request: Request):
    """
    Main queue and dead letter queue counts.
    """
    stats = _send_queue(request).get_stats()
    logger.info("queue_stats_retrieved", **{f"main_{k}": v for k, v in stats["main"].items()})
    return stats


@router.get("/jobs")
def list_send_jobs(
    status: Optional[str] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=200, description="Maximum number of jobs to return"),
    db: Session = Depends(get_db)
):
    """
    List recent send jobs with optional status filter.

    Args:
        status: Optional status filter (queued, active, completed, failed)
        limit: Maximum number of jobs to return (1-200, default 50)

    Returns:
        dict with total count, status breakdown, and job list
    """
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    if status and status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")

    query = db.query(SendJob)
    if status:
        query = query.filter(SendJob.status == status)

    total = query.count()
    jobs = query.order_by(SendJob.enqueued_at.desc()).limit(limit).all()

    status_counts = {}
    for status_value in JOB_STATUSES:
        status_counts[status_value] = db.query(SendJob).filter(SendJob.status == status_value).count()

    return {
        "total": total,
        "by_status": status_counts,
        "jobs": [
            {
                "job_id": job.job_id,
                "transaction_id": job.transaction_id,
                "status": job.status,
                "attempts": job.attempts,
                "last_error": job.last_error,
                "enqueued_at": job.enqueued_at.isoformat() if job.enqueued_at else None,
                "started_at": job.started_at.isoformat() if job.started_at else None,
                "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            }
            for job in jobs
        ]
    }


@router.get("/dead-letter")
def list_dead_letter_jobs(
    request: Request,
    limit: int = Query(50, ge=1, le=200, description="Maximum number of jobs to return")
):
    """
    List jobs that exhausted their retries, newest first.
    """
    entries = _send_queue(request).list_dead_letters(limit=limit)
    return {
        "total": len(entries),
        "jobs": [
            {
                "id": entry.id,
                "original_job_id": entry.original_job_id,
                "transaction_id": entry.transaction_id,
                "error_message": entry.error_message,
                "error_type": entry.error_type,
                "attempts_made": entry.attempts_made,
                "failed_at": entry.failed_at.isoformat() if entry.failed_at else None,
            }
            for entry in entries
        ]
    }


@router.post("/dead-letter/{dead_letter_id}/requeue")
def requeue_dead_letter_job(dead_letter_id: int, request: Request):
    """
    Move one job from the dead letter queue back onto the main queue.

    The transaction is reset from failed to pending and the job runs with no delay.

    Raises:
        404: Dead letter entry not found
        500: Broker rejected the message (entry restored)
    """
    send_queue = _send_queue(request)
    try:
        job_id = send_queue.requeue_dead_letter(dead_letter_id, correlation_id=get_correlation_id())
    except DeadLetterJobNotFound:
        raise HTTPException(status_code=404, detail="Dead letter job not found")
    except Exception as e:
        logger.error("dead_letter_requeue_error", dead_letter_id=dead_letter_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to requeue job")

    logger.info("dead_letter_job_requeued", dead_letter_id=dead_letter_id, job_id=job_id)
    return {
        "status": "requeued",
        "dead_letter_id": dead_letter_id,
        "job_id": job_id,
        "message": "Job re-enqueued for processing"
    }
