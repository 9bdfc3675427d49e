"""
Job Store - durable lifecycle record of every enrichment job.

Every status change is a compare-and-swap: the PATCH is filtered on both the
job id and the status the writer expects. PostgREST returns the rows it
changed, so an empty result means another writer got there first and the
caller must drop its write.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ...errors import InvalidTransitionError, JobNotFoundError, StaleStateError
from ...models import (
    EnrichmentJob,
    JobStatus,
    Provider,
    TERMINAL_STATUSES,
    is_allowed_transition,
)
from ...utils import to_iso, utc_now_iso
from .supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

JOBS_TABLE = "enrichment_jobs"

ABANDONED_ERROR = "Abandoned by caller"

MAX_ERROR_LENGTH = 1000


class JobStore:
    def __init__(self, db: SupabaseClient):
        self.db = db

    def create(
        self,
        profile_ids: List[int],
        organization_id: str,
        qualification_id: Optional[int] = None,
        provider: Optional[Provider] = None,
    ) -> EnrichmentJob:
        """Insert a new job in pending."""
        now = utc_now_iso()
        row = {
            "id": str(uuid.uuid4()),
            "profile_ids": list(profile_ids),
            "qualification_id": qualification_id,
            "organization_id": organization_id,
            "snapshot_id": None,
            "provider": Provider(provider).value if provider else None,
            "status": JobStatus.PENDING.value,
            "error": None,
            "summary": {},
            "created_at": now,
            "updated_at": now,
            "completed_at": None,
        }
        result = self.db.table(JOBS_TABLE).insert(row).execute()
        job = EnrichmentJob.model_validate(result.data[0] if result.data else row)
        logger.info("[JobStore] Created job %s for %d profiles (org %s)", job.id, len(profile_ids), organization_id)
        return job

    def get(self, job_id: str, organization_id: Optional[str] = None) -> Optional[EnrichmentJob]:
        """Fetch a job. With organization_id, a foreign job is reported as missing."""
        query = self.db.table(JOBS_TABLE).select("*").eq("id", job_id)
        if organization_id is not None:
            query = query.eq("organization_id", organization_id)
        result = query.execute()
        if not result.data:
            return None
        return EnrichmentJob.model_validate(result.data[0])

    def get_by_snapshot(self, snapshot_id: str) -> Optional[EnrichmentJob]:
        result = self.db.table(JOBS_TABLE).select("*").eq("snapshot_id", snapshot_id).execute()
        if not result.data:
            return None
        if len(result.data) > 1:
            logger.warning("[JobStore] %d jobs share snapshot %s, using the first", len(result.data), snapshot_id)
        return EnrichmentJob.model_validate(result.data[0])

    def list_stale(self, status: JobStatus, older_than: datetime, limit: int = 100) -> List[EnrichmentJob]:
        """Jobs sitting in status since before older_than."""
        result = (
            self.db.table(JOBS_TABLE)
            .select("*")
            .eq("status", JobStatus(status).value)
            .lt("updated_at", to_iso(older_than))
            .order("updated_at")
            .limit(limit)
            .execute()
        )
        return [EnrichmentJob.model_validate(row) for row in result.data or []]

    def transition(
        self,
        job_id: str,
        expected: JobStatus,
        target: JobStatus,
        **fields: Any,
    ) -> EnrichmentJob:
        """
        Move a job from expected to target, writing fields alongside.

        Raises:
            InvalidTransitionError: target is not reachable from expected
            JobNotFoundError: no such job
            StaleStateError: the job is no longer in expected
        """
        expected = JobStatus(expected)
        target = JobStatus(target)

        if not is_allowed_transition(expected, target):
            raise InvalidTransitionError(
                f"Transition {expected.value} -> {target.value} is not allowed", job_id
            )
        if fields.get("error") is not None and target != JobStatus.FAILED:
            raise InvalidTransitionError("error may only be set when failing a job", job_id)

        now = utc_now_iso()
        update: Dict[str, Any] = {**fields, "status": target.value, "updated_at": now}
        if target in TERMINAL_STATUSES:
            update["completed_at"] = now

        result = (
            self.db.table(JOBS_TABLE)
            .update(update)
            .eq("id", job_id)
            .eq("status", expected.value)
            .execute()
        )

        if result.data:
            logger.info("[JobStore] Job %s: %s -> %s", job_id, expected.value, target.value)
            return EnrichmentJob.model_validate(result.data[0])

        current = self.get(job_id)
        if current is None:
            raise JobNotFoundError(f"Job {job_id} not found", job_id)

        raise StaleStateError(
            f"Expected status {expected.value}, found {current.status.value}",
            job_id,
            current_status=current.status.value,
        )

    def take_over(self, job: EnrichmentJob) -> Optional[EnrichmentJob]:
        """
        Claim a job without changing its status by bumping updated_at.

        The write only lands if nobody touched the job since it was read, so
        updated_at works as a lease. Returns None when someone else did.
        """
        if job.updated_at is None:
            return None

        result = (
            self.db.table(JOBS_TABLE)
            .update({"updated_at": utc_now_iso()})
            .eq("id", job.id)
            .eq("status", job.status.value)
            .eq("updated_at", to_iso(job.updated_at))
            .execute()
        )
        if not result.data:
            return None
        return EnrichmentJob.model_validate(result.data[0])

    def fail(self, job_id: str, error: str, **fields: Any) -> EnrichmentJob:
        """Move a non-terminal job to failed, whatever state it is in."""
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", job_id)
        if job.is_terminal:
            raise StaleStateError(
                f"Job already {job.status.value}", job_id, current_status=job.status.value
            )

        logger.warning("[JobStore] Failing job %s: %s", job_id, error)
        return self.transition(
            job_id, job.status, JobStatus.FAILED, error=error[:MAX_ERROR_LENGTH], **fields
        )

    def abandon(self, job_id: str, organization_id: str) -> EnrichmentJob:
        """
        Stop local processing of a job. The external scrape keeps running;
        its delivery will be discarded because the job is terminal.
        """
        job = self.get(job_id, organization_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", job_id)
        return self.fail(job_id, ABANDONED_ERROR)
