"""
Job Dispatcher - accept an enrichment request and hand it to a provider.

Flow:
1. Validate input and fail fast when no provider has credentials
2. Resolve profile ids inside the caller's organization
3. Create the job in pending
4. Submit the deep scrape (or hand the job to the lookup worker)
5. Acknowledge with the job id - never wait for the results

No job is left in pending when dispatch() returns: it is either scraping
or failed.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from ..errors import NotConfiguredError, ProfilesNotFoundError, ProviderError, QueueError, ValidationError
from ..models import JobStatus, MessageKind, Provider, QueueMessage
from .db.job_store import JobStore
from .db.repositories import ProfileStore, QualificationStore
from .providers.apify_provider import DeepScrapeProvider
from .providers.lookup_provider import LookupProvider
from .providers.profile_urls import normalize_profile_url
from .queue_bridge import QueueBridge

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    job_id: str
    status: str
    profile_count: int
    snapshot_id: Optional[str] = None
    error: Optional[str] = None


def _clean_profile_ids(profile_ids: List[int]) -> List[int]:
    cleaned: List[int] = []
    for pid in profile_ids:
        if isinstance(pid, bool) or not isinstance(pid, int):
            raise ValidationError(f"Invalid profile id: {pid!r}")
        if pid not in cleaned:
            cleaned.append(pid)
    return cleaned


class JobDispatcher:
    def __init__(
        self,
        jobs: JobStore,
        profiles: ProfileStore,
        qualifications: QualificationStore,
        queue: QueueBridge,
        deep_scrape: DeepScrapeProvider,
        lookup: LookupProvider,
    ):
        self.jobs = jobs
        self.profiles = profiles
        self.qualifications = qualifications
        self.queue = queue
        self.deep_scrape = deep_scrape
        self.lookup = lookup

    def choose_provider(self) -> Provider:
        """Deep scrape when available, lookup otherwise."""
        if self.deep_scrape.is_configured():
            return Provider.DEEP_SCRAPE
        if self.lookup.is_configured():
            return Provider.LOOKUP
        raise NotConfiguredError("No enrichment provider configured (set APIFY_API_TOKEN or PDL_API_KEY)")

    async def dispatch(
        self,
        profile_ids: List[int],
        organization_id: str,
        qualification_id: Optional[int] = None,
    ) -> DispatchResult:
        """
        Create an enrichment job and submit it.

        Raises:
            ValidationError: empty/invalid ids or unknown qualification
            ProfilesNotFoundError: no requested profile exists in the organization
            NotConfiguredError: no provider credentials
        """
        if not profile_ids:
            raise ValidationError("profileIds required")
        if not organization_id:
            raise ValidationError("organization required")

        profile_ids = _clean_profile_ids(profile_ids)
        provider = self.choose_provider()

        if qualification_id is not None:
            if self.qualifications.get(qualification_id, organization_id) is None:
                raise ValidationError(f"Qualification {qualification_id} not found")

        profiles = [p for p in self.profiles.get_by_ids(profile_ids, organization_id) if p.profile_url]
        if not profiles:
            raise ProfilesNotFoundError("No profiles found")

        accepted_ids = [p.id for p in profiles]
        profile_urls = [normalize_profile_url(p.profile_url) for p in profiles]

        if len(accepted_ids) < len(profile_ids):
            logger.info(
                "[Dispatcher] %d of %d requested profiles accepted for org %s",
                len(accepted_ids), len(profile_ids), organization_id,
            )

        job = self.jobs.create(accepted_ids, organization_id, qualification_id, provider)

        message = QueueMessage(
            kind=MessageKind.COLLECT,
            job_id=job.id,
            organization_id=organization_id,
            profile_ids=accepted_ids,
            profile_urls=profile_urls,
            qualification_id=qualification_id,
        )

        if provider == Provider.DEEP_SCRAPE:
            return await self._submit_deep_scrape(job.id, message)
        return self._submit_lookup(job.id, message)

    async def _submit_deep_scrape(self, job_id: str, message: QueueMessage) -> DispatchResult:
        try:
            snapshot_id = await self.deep_scrape.submit(message.profile_urls)
        except ProviderError as e:
            failed = self.jobs.fail(job_id, e.message)
            return DispatchResult(
                job_id=job_id,
                status=failed.status.value,
                profile_count=len(message.profile_ids),
                error=failed.error,
            )

        try:
            self.jobs.transition(job_id, JobStatus.PENDING, JobStatus.SCRAPING, snapshot_id=snapshot_id)
        except httpx.HTTPError as e:
            return self._orphaned_scrape(job_id, snapshot_id, message, e)

        logger.info(
            "[Dispatcher] Job %s: scrape submitted for %d profiles, snapshot %s",
            job_id, len(message.profile_ids), snapshot_id,
        )

        try:
            self.queue.send(message.model_copy(update={"snapshot_id": snapshot_id}))
        except QueueError as e:
            # Webhook delivery and the stale-job sweep still settle the job
            logger.error("[Dispatcher] Job %s: could not enqueue delivery check: %s", job_id, e)

        return DispatchResult(
            job_id=job_id,
            status=JobStatus.SCRAPING.value,
            profile_count=len(message.profile_ids),
            snapshot_id=snapshot_id,
        )

    def _orphaned_scrape(
        self, job_id: str, snapshot_id: str, message: QueueMessage, cause: Exception
    ) -> DispatchResult:
        """The provider took the scrape but the job could not record it."""
        error = f"Scrape {snapshot_id} was started but could not be recorded: {cause}"
        logger.error("[Dispatcher] Job %s: %s", job_id, error)
        try:
            self.jobs.fail(job_id, error)
        except httpx.HTTPError as e:
            # The stale-job sweep fails it once the store is back
            logger.error("[Dispatcher] Job %s left pending, orphaned run %s: %s", job_id, snapshot_id, e)

        return DispatchResult(
            job_id=job_id,
            status=JobStatus.FAILED.value,
            profile_count=len(message.profile_ids),
            snapshot_id=snapshot_id,
            error=error,
        )

    def _submit_lookup(self, job_id: str, message: QueueMessage) -> DispatchResult:
        self.jobs.transition(job_id, JobStatus.PENDING, JobStatus.SCRAPING)

        try:
            self.queue.send(message.model_copy(update={"kind": MessageKind.LOOKUP}))
        except QueueError as e:
            failed = self.jobs.fail(job_id, f"Could not queue lookup enrichment: {e.message}")
            return DispatchResult(
                job_id=job_id,
                status=failed.status.value,
                profile_count=len(message.profile_ids),
                error=failed.error,
            )

        logger.info("[Dispatcher] Job %s: lookup enrichment queued for %d profiles", job_id, len(message.profile_ids))
        return DispatchResult(
            job_id=job_id,
            status=JobStatus.SCRAPING.value,
            profile_count=len(message.profile_ids),
        )
