"""Deferred continuation of flows past delay nodes (RQ scheduled jobs)."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.models.flow_delay import FlowDelay

logger = logging.getLogger(__name__)

RUN_JOB = "apps.worker.jobs.run_flow_delay"


def get_flow_queue():
    from redis import Redis
    from rq import Queue

    s = get_settings()
    r = Redis(host=s.redis_host, port=s.redis_port)
    return Queue(s.rq_flow_queue_name or "flows", connection=r)


def delay_job_id(conversation_id: int, node_id: str) -> str:
    safe_node = re.sub(r"[^A-Za-z0-9_-]", "_", node_id)
    return f"flow-delay-{conversation_id}-{safe_node}"


def _cancel_job(queue: Any, job_id: str | None) -> None:
    if not job_id:
        return
    try:
        from rq.job import Job

        job = Job.fetch(job_id, connection=queue.connection)
        job.cancel()
    except Exception as e:
        # the row status is authoritative; the job re-checks it when it runs
        logger.warning("flow_delay_cancel_job_failed job_id=%s error=%s", job_id, type(e).__name__)


@dataclass
class PendingDelay:
    """A flushed delay row whose RQ job is enqueued once the caller has committed."""

    row: FlowDelay
    seconds: float
    replaced_job_ids: list[str] = field(default_factory=list)


def schedule_delay(
    db: Session,
    conversation_id: int,
    flow_id: str,
    node_id: str,
    seconds: float,
) -> PendingDelay:
    """Persist a delay row without committing; an earlier pending delay on the same node is replaced."""
    existing = db.execute(
        select(FlowDelay).where(
            FlowDelay.conversation_id == conversation_id,
            FlowDelay.node_id == node_id,
            FlowDelay.status == "scheduled",
        )
    ).scalars().all()
    replaced = []
    for row in existing:
        row.status = "cancelled"
        if row.job_id:
            replaced.append(row.job_id)

    row = FlowDelay(
        conversation_id=conversation_id,
        flow_id=flow_id,
        node_id=node_id,
        status="scheduled",
        run_at=datetime.utcnow() + timedelta(seconds=seconds),
        job_id=delay_job_id(conversation_id, node_id),
    )
    db.add(row)
    db.flush()
    return PendingDelay(row=row, seconds=seconds, replaced_job_ids=replaced)


def enqueue_delays(db: Session, pending: list[PendingDelay], *, queue: Any = None) -> None:
    """Enqueue jobs for delay rows the caller has already committed."""
    if not pending:
        return
    q = queue if queue is not None else get_flow_queue()
    failed = False
    for item in pending:
        for job_id in item.replaced_job_ids:
            _cancel_job(q, job_id)
        row = item.row
        try:
            q.enqueue_in(timedelta(seconds=item.seconds), RUN_JOB, row.id, job_id=row.job_id)
        except Exception as e:
            logger.exception("flow_delay_enqueue_failed delay_id=%s: %s", row.id, e)
            row.status = "error"
            row.error_message = str(e)[:200]
            failed = True
    if failed:
        db.commit()


def cancel_delays(db: Session, conversation_id: int, *, queue: Any = None) -> int:
    """Cancel every pending delay of a conversation. Returns how many were cancelled."""
    rows = db.execute(
        select(FlowDelay).where(
            FlowDelay.conversation_id == conversation_id,
            FlowDelay.status == "scheduled",
        )
    ).scalars().all()
    if not rows:
        return 0
    for row in rows:
        row.status = "cancelled"
    db.flush()
    try:
        q = queue if queue is not None else get_flow_queue()
    except Exception as e:
        logger.warning("flow_delay_queue_unavailable conversation_id=%s error=%s", conversation_id, type(e).__name__)
        q = None
    if q is not None:
        for row in rows:
            _cancel_job(q, row.job_id)
    logger.info("flow_delays_cancelled conversation_id=%s count=%s", conversation_id, len(rows))
    return len(rows)
