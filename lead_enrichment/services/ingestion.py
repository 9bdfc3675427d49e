"""
Result Ingestor - turn a provider delivery into enrichment records.

A delivery is matched back to the job by its snapshot id (the Apify run id)
and each delivered record is matched to one of the job's profiles by its
canonical profile key. Records are stored in one provider-agnostic shape;
provider payloads never leave this module except as raw_response.

Redelivery converges: a job that already reached enriching is advanced
again, a job past enriching is left alone.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..errors import (
    DeliveryPendingError,
    JobNotFoundError,
    PartialDeliveryError,
    ProviderError,
    StaleStateError,
    ValidationError,
)
from ..models import EnrichmentJob, EnrichmentRecord, JobStatus, MessageKind, Profile, QueueMessage
from ..utils import utc_now
from .db.job_store import JobStore
from .db.repositories import EnrichmentRecordStore, ProfileStore
from .providers.apify_provider import DeepScrapeProvider
from .providers.lookup_provider import LookupProvider
from .providers.profile_urls import (
    canonical_profile_key,
    get_record_profile_url,
    is_urn_style_id,
    normalize_profile_url,
    record_profile_keys,
)
from .queue_bridge import QueueBridge

logger = logging.getLogger(__name__)

SOURCE_APIFY = "apify"
SOURCE_PDL = "pdl"
SOURCE_BRIGHTDATA = "brightdata"

# Apify run statuses
RUN_PENDING_STATUSES = {"READY", "RUNNING"}
RUN_FAILED_STATUSES = {"FAILED", "ABORTING", "ABORTED", "TIMING-OUT", "TIMED-OUT"}

NO_PROFILES_ENRICHED = "No profiles were enriched"


# ============================================
# Delivery source
# ============================================

@dataclass
class Delivery:
    state: str                  # "pending", "failed" or "ready"
    records: List[Dict[str, Any]] = field(default_factory=list)
    run_status: Optional[str] = None


class ApifyDeliverySource:
    """Reads the state and dataset of a deep-scrape run."""

    def __init__(self, provider: DeepScrapeProvider):
        self.provider = provider

    async def fetch(self, run_id: str) -> Delivery:
        try:
            run_info = await self.provider.client.run(run_id).get()
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Could not read Apify run {run_id}: {e}", retryable=True) from e

        if not run_info:
            raise ProviderError(f"Apify run {run_id} not found")

        status = run_info.get("status")
        if status in RUN_PENDING_STATUSES:
            return Delivery(state="pending", run_status=status)
        if status in RUN_FAILED_STATUSES:
            return Delivery(state="failed", run_status=status)
        if status != "SUCCEEDED":
            logger.warning("[Apify] Run %s has unexpected status %s, treating as pending", run_id, status)
            return Delivery(state="pending", run_status=status)

        dataset_id = run_info.get("defaultDatasetId")
        if not dataset_id:
            raise ProviderError(f"Apify run {run_id} has no default dataset")

        try:
            list_items_result = await self.provider.client.dataset(dataset_id).list_items()
        except Exception as e:
            raise ProviderError(f"Could not read dataset {dataset_id}: {e}", retryable=True) from e

        if hasattr(list_items_result, "items"):
            items = list(list_items_result.items or [])
        elif isinstance(list_items_result, dict):
            items = list(list_items_result.get("items") or [])
        else:
            items = list(list_items_result or [])

        logger.info("[Apify] Run %s delivered %d records", run_id, len(items))
        return Delivery(state="ready", records=items, run_status=status)


# ============================================
# Normalization
# ============================================

def _to_int(value: Any) -> Optional[int]:
    """'500+' -> 500, '1,234' -> 1234, junk -> None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    return int(digits) if digits else None


def _text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("name")
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _is_duration_or_junk(text: Optional[str]) -> bool:
    """Apify sometimes puts '8 yrs 1 mo' or 'Full-time' where the company name belongs."""
    if not text:
        return False
    lowered = text.lower().strip()
    if any(x in lowered for x in ["yrs", "mos", " yr", " mo", "year", "month"]):
        return True
    return lowered in ["full-time", "part-time", "contract", "self-employed", "freelance"]


def _format_date(value: Any) -> Optional[str]:
    """Apify {'month': 3, 'year': 2020} -> '2020-03'; strings pass through."""
    if isinstance(value, dict):
        year = value.get("year")
        if not year:
            return None
        month = value.get("month")
        return f"{year}-{int(month):02d}" if month else str(year)
    return _text(value)


def _is_error_entry(raw: Dict[str, Any]) -> bool:
    return bool(raw.get("error") or raw.get("error_code"))


def _normalize_apify(raw: Dict[str, Any]) -> Dict[str, Any]:
    first_name = (raw.get("firstName") or "").strip()
    last_name = (raw.get("lastName") or "").strip()

    experience = []
    current_company = None
    for pos in raw.get("positions") or []:
        time_period = pos.get("timePeriod") or {}
        title = _text(pos.get("title"))
        company = _text(pos.get("company")) or _text(pos.get("companyName"))

        # Swapped title/company: the title holds the real company name
        if _is_duration_or_junk(company) and title and not _is_duration_or_junk(title):
            company, title = title, None

        end_date = _format_date(time_period.get("endDate"))
        if end_date is None and current_company is None and company:
            current_company = company

        experience.append({
            "title": title,
            "company": company,
            "start_date": _format_date(time_period.get("startDate")),
            "end_date": end_date,
            "description": pos.get("description"),
            "location": pos.get("locationName"),
        })

    education = []
    for edu in raw.get("educations") or raw.get("education") or []:
        time_period = edu.get("timePeriod") or {}
        start = time_period.get("startDate") or {}
        end = time_period.get("endDate") or {}
        education.append({
            "school": _text(edu.get("schoolName")) or _text(edu.get("school")),
            "degree": edu.get("degreeName") or edu.get("degree"),
            "field_of_study": edu.get("fieldOfStudy"),
            "start_year": str(start["year"]) if isinstance(start, dict) and start.get("year") else None,
            "end_year": str(end["year"]) if isinstance(end, dict) and end.get("year") else None,
        })

    skills = [_text(s) for s in raw.get("skills") or []]

    return {
        "name": f"{first_name} {last_name}".strip() or _text(raw.get("fullName")),
        "headline": raw.get("headline"),
        "location": raw.get("geoLocationName") or raw.get("locationName"),
        "current_company": current_company or _text(raw.get("companyName")),
        "experience": experience,
        "education": education,
        "skills": [s for s in skills if s],
        "certifications": [
            {"name": _text(c.get("name")), "issuing_organization": _text(c.get("authority"))}
            for c in raw.get("certifications") or []
        ],
        "languages": [
            {"language": _text(lang.get("name")), "proficiency": lang.get("proficiency")}
            for lang in raw.get("languages") or []
        ],
        "connection_count": _to_int(raw.get("connectionsCount") or raw.get("connections")),
        "follower_count": _to_int(raw.get("followersCount") or raw.get("followers")),
        "about": raw.get("summary") or raw.get("about"),
    }


def _normalize_brightdata(raw: Dict[str, Any]) -> Dict[str, Any]:
    name = raw.get("name")
    if not name and (raw.get("first_name") or raw.get("last_name")):
        name = f"{raw.get('first_name') or ''} {raw.get('last_name') or ''}".strip()

    current_company = raw.get("current_company_name") or _text(raw.get("current_company"))

    experience = []
    for exp in raw.get("experience") or []:
        experience.append({
            "title": exp.get("title"),
            "company": _text(exp.get("company")),
            "start_date": exp.get("start_date"),
            "end_date": exp.get("end_date"),
            "description": exp.get("description"),
            "location": exp.get("location"),
            "positions": exp.get("positions") or [],
        })

    education = []
    for edu in raw.get("education") or []:
        education.append({
            "school": edu.get("school") or edu.get("title"),
            "degree": edu.get("degree"),
            "field_of_study": edu.get("field_of_study") or edu.get("field"),
            "start_year": edu.get("start_year"),
            "end_year": edu.get("end_year"),
        })

    skills = [_text(s) for s in raw.get("skills") or []]

    return {
        "name": name,
        "headline": raw.get("headline") or raw.get("position"),
        "location": raw.get("location") or raw.get("city"),
        "current_company": current_company,
        "experience": experience,
        "education": education,
        "skills": [s for s in skills if s],
        "certifications": [
            {"name": c.get("name") or c.get("title"), "issuing_organization": c.get("issuing_organization") or c.get("subtitle")}
            for c in raw.get("certifications") or []
        ],
        "languages": [
            {"language": lang.get("language") or lang.get("title"), "proficiency": lang.get("proficiency") or lang.get("subtitle")}
            for lang in raw.get("languages") or []
        ],
        "connection_count": _to_int(raw.get("connections")),
        "follower_count": _to_int(raw.get("followers")),
        "about": raw.get("about"),
    }


def _normalize_pdl(raw: Dict[str, Any]) -> Dict[str, Any]:
    experience = []
    for exp in raw.get("experience") or []:
        experience.append({
            "title": _text(exp.get("title")),
            "company": _text(exp.get("company")),
            "start_date": exp.get("start_date"),
            "end_date": exp.get("end_date"),
            "description": exp.get("summary"),
            "location": ", ".join(exp.get("location_names") or []) or None,
        })

    education = []
    for edu in raw.get("education") or []:
        degrees = edu.get("degrees") or []
        majors = edu.get("majors") or []
        education.append({
            "school": _text(edu.get("school")),
            "degree": degrees[0] if degrees else None,
            "field_of_study": majors[0] if majors else None,
            "start_year": (edu.get("start_date") or "")[:4] or None,
            "end_year": (edu.get("end_date") or "")[:4] or None,
        })

    languages = []
    for lang in raw.get("languages") or []:
        if isinstance(lang, dict):
            languages.append({"language": lang.get("name"), "proficiency": lang.get("proficiency")})
        elif lang:
            languages.append({"language": str(lang), "proficiency": None})

    return {
        "name": _text(raw.get("full_name")),
        "headline": raw.get("headline") or raw.get("job_title"),
        "location": raw.get("location_name"),
        "current_company": _text(raw.get("job_company_name")),
        "experience": experience,
        "education": education,
        "skills": [s for s in raw.get("skills") or [] if s],
        "certifications": [
            {"name": c.get("name"), "issuing_organization": c.get("organization")}
            for c in raw.get("certifications") or []
        ],
        "languages": languages,
        "connection_count": _to_int(raw.get("linkedin_connections")),
        "follower_count": None,
        "about": raw.get("summary"),
    }


def detect_source(raw: Dict[str, Any]) -> str:
    if "positions" in raw or "firstName" in raw or "publicIdentifier" in raw:
        return SOURCE_APIFY
    if "full_name" in raw or "job_title" in raw or "linkedin_username" in raw:
        return SOURCE_PDL
    return SOURCE_BRIGHTDATA


def normalize_profile(raw: Dict[str, Any], source: Optional[str] = None) -> EnrichmentRecord:
    """
    Map one delivered provider record into an EnrichmentRecord.

    Args:
        raw: provider record as delivered
        source: "apify", "pdl" or "brightdata"; detected from the keys when omitted
    """
    source = source or detect_source(raw)

    if source == SOURCE_APIFY:
        fields = _normalize_apify(raw)
    elif source == SOURCE_PDL:
        fields = _normalize_pdl(raw)
    else:
        fields = _normalize_brightdata(raw)

    profile_url = get_record_profile_url(raw)

    return EnrichmentRecord(
        source=source,
        profile_url=normalize_profile_url(profile_url) if profile_url else None,
        raw_response=raw,
        **fields,
    )


# ============================================
# Ingestor
# ============================================

@dataclass
class IngestionOutcome:
    job_id: Optional[str]
    status: str
    enriched: List[int] = field(default_factory=list)
    not_enriched: List[int] = field(default_factory=list)
    discarded: bool = False
    reason: Optional[str] = None


def _profile_keys(profile: Profile) -> List[str]:
    keys = []
    if profile.profile_url:
        key = canonical_profile_key(profile.profile_url)
        if key:
            keys.append(key)
    if profile.vanity_name:
        vanity = profile.vanity_name.strip()
        keys.append(vanity if is_urn_style_id(vanity) else vanity.lower())
    return keys


class ResultIngestor:
    def __init__(
        self,
        jobs: JobStore,
        profiles: ProfileStore,
        records: EnrichmentRecordStore,
        queue: QueueBridge,
        delivery: ApifyDeliverySource,
        lookup: LookupProvider,
        scrape_timeout_hours: int = 6,
    ):
        self.jobs = jobs
        self.profiles = profiles
        self.records = records
        self.queue = queue
        self.delivery = delivery
        self.lookup = lookup
        self.scrape_timeout = timedelta(hours=scrape_timeout_hours)

    def _discard(self, job: Optional[EnrichmentJob], reason: str) -> IngestionOutcome:
        logger.info("[Ingestor] Discarding delivery for job %s: %s", job.id if job else None, reason)
        return IngestionOutcome(
            job_id=job.id if job else None,
            status=job.status.value if job else "unknown",
            discarded=True,
            reason=reason,
        )

    def _is_expired(self, job: EnrichmentJob, now: datetime) -> bool:
        started = job.updated_at or job.created_at
        if started is None:
            return False
        return now - started > self.scrape_timeout

    def _timeout_message(self) -> str:
        hours = int(self.scrape_timeout.total_seconds() // 3600)
        return f"No delivery from provider within {hours} hours"

    async def collect(self, snapshot_id: str) -> IngestionOutcome:
        """
        Check a deep-scrape run and ingest it when it has finished.

        Raises:
            DeliveryPendingError: the run is still going (retry later)
            ProviderError: the run state could not be read
        """
        job = self.jobs.get_by_snapshot(snapshot_id)
        if job is None:
            return self._discard(None, f"unknown snapshot {snapshot_id}")

        if job.status == JobStatus.ENRICHING:
            return self._advance(job, IngestionOutcome(job_id=job.id, status=job.status.value))
        if job.status != JobStatus.SCRAPING:
            return self._discard(job, f"job is {job.status.value}")

        delivery = await self.delivery.fetch(snapshot_id)

        if delivery.state == "pending":
            if self._is_expired(job, utc_now()):
                failed = self.jobs.fail(job.id, self._timeout_message())
                return IngestionOutcome(job_id=job.id, status=failed.status.value, reason=failed.error)
            raise DeliveryPendingError(f"Snapshot {snapshot_id} is {delivery.run_status}", job.id)

        if delivery.state == "failed":
            failed = self.jobs.fail(job.id, f"Scrape run {snapshot_id} ended with status {delivery.run_status}")
            return IngestionOutcome(job_id=job.id, status=failed.status.value, reason=failed.error)

        return self.ingest(job, delivery.records, SOURCE_APIFY)

    async def ingest_lookup(self, job: EnrichmentJob) -> IngestionOutcome:
        """
        Run the lookup provider for every profile of a job, then ingest.

        Each match is stored as soon as it comes back, so a retry after a
        transient provider error only looks up the profiles still missing.
        """
        if job.status == JobStatus.ENRICHING:
            return self._advance(job, IngestionOutcome(job_id=job.id, status=job.status.value))
        if job.status != JobStatus.SCRAPING:
            return self._discard(job, f"job is {job.status.value}")

        profiles = self.profiles.get_by_ids(job.profile_ids, job.organization_id)
        looked_up = self._looked_up_this_job(job)

        raw_records = []
        for profile in profiles:
            if profile.id in looked_up:
                raw_records.append(looked_up[profile.id])
                continue

            try:
                result = await self.lookup.enrich_person(
                    profile_url=normalize_profile_url(profile.profile_url) if profile.profile_url else None,
                    name=profile.name,
                    company=profile.company,
                )
            except ValidationError as e:
                logger.info("[Ingestor] Job %s: profile %s skipped: %s", job.id, profile.id, e.message)
                continue

            if not result.found:
                continue

            record = dict(result.person or {})
            if profile.profile_url:
                record["inputUrl"] = profile.profile_url
            self.records.upsert(normalize_profile(record, SOURCE_PDL).model_copy(update={"profile_id": profile.id}))
            raw_records.append(record)

        return self.ingest(job, raw_records, SOURCE_PDL)

    def _looked_up_this_job(self, job: EnrichmentJob) -> Dict[int, Dict[str, Any]]:
        """Lookup results already stored by an earlier attempt of this job."""
        if job.created_at is None:
            return {}
        return {
            pid: record.raw_response
            for pid, record in self.records.get_many(job.profile_ids).items()
            if record.source == SOURCE_PDL
            and record.enriched_at is not None
            and record.enriched_at > job.created_at
        }

    def ingest(self, job: EnrichmentJob, raw_records: List[Dict[str, Any]], source: str) -> IngestionOutcome:
        """
        Store the delivered records of a job and advance it.

        Raises:
            StaleStateError: another writer moved the job meanwhile
        """
        if job.status == JobStatus.ENRICHING:
            return self._advance(job, IngestionOutcome(job_id=job.id, status=job.status.value))
        if job.status != JobStatus.SCRAPING:
            return self._discard(job, f"job is {job.status.value}")

        profiles = self.profiles.get_by_ids(job.profile_ids, job.organization_id)
        by_key: Dict[str, Profile] = {}
        for profile in profiles:
            for key in _profile_keys(profile):
                by_key.setdefault(key, profile)

        matched: Dict[int, Dict[str, Any]] = {}
        skipped = 0
        for raw in raw_records:
            if not isinstance(raw, dict) or _is_error_entry(raw):
                skipped += 1
                continue

            profile = next((by_key[k] for k in record_profile_keys(raw) if k in by_key), None)
            if profile is None:
                logger.debug("[Ingestor] Job %s: unmatched record %s", job.id, get_record_profile_url(raw))
                skipped += 1
                continue

            matched.setdefault(profile.id, raw)

        enriched: List[int] = []
        for profile in profiles:
            raw = matched.get(profile.id)
            if raw is None:
                continue
            record = normalize_profile(raw, source).model_copy(update={"profile_id": profile.id})
            self.records.upsert(record)
            self.profiles.mark_enriched(profile.id)
            enriched.append(profile.id)

        not_enriched = [pid for pid in job.profile_ids if pid not in enriched]
        if not_enriched:
            partial = PartialDeliveryError(
                f"{len(not_enriched)} of {len(job.profile_ids)} profiles returned no data",
                job.id,
                missing=not_enriched,
            )
            logger.info("[Ingestor] %s: %s", partial, partial.missing)

        summary = {
            **job.summary,
            "source": source,
            "delivered_records": len(raw_records),
            "skipped_records": skipped,
            "enriched": enriched,
            "not_enriched": not_enriched,
        }

        if not enriched:
            failed = self.jobs.fail(job.id, NO_PROFILES_ENRICHED, summary=summary)
            return IngestionOutcome(
                job_id=job.id,
                status=failed.status.value,
                not_enriched=not_enriched,
                reason=NO_PROFILES_ENRICHED,
            )

        job = self.jobs.transition(job.id, JobStatus.SCRAPING, JobStatus.ENRICHING, summary=summary)
        logger.info("[Ingestor] Job %s: enriched %d/%d profiles", job.id, len(enriched), len(job.profile_ids))

        outcome = IngestionOutcome(
            job_id=job.id,
            status=job.status.value,
            enriched=enriched,
            not_enriched=not_enriched,
        )
        return self._advance(job, outcome)

    def _advance(self, job: EnrichmentJob, outcome: IngestionOutcome) -> IngestionOutcome:
        """Complete an enrich-only job or hand a qualified one to scoring."""
        if job.qualification_id is None:
            completed = self.jobs.transition(job.id, JobStatus.ENRICHING, JobStatus.COMPLETED)
            outcome.status = completed.status.value
            return outcome

        self.queue.send(QueueMessage(
            kind=MessageKind.QUALIFY,
            job_id=job.id,
            organization_id=job.organization_id,
            profile_ids=job.summary.get("enriched") or job.profile_ids,
            qualification_id=job.qualification_id,
            snapshot_id=job.snapshot_id,
        ))
        outcome.status = job.status.value
        return outcome

    def expire_stale_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """
        Fail jobs stuck before delivery: scraping with no delivery inside the
        timeout, or left pending by a store outage during dispatch.

        Returns the failed job ids.
        """
        now = now or utc_now()
        expired = []
        stale = [
            *self.jobs.list_stale(JobStatus.PENDING, now - self.scrape_timeout),
            *self.jobs.list_stale(JobStatus.SCRAPING, now - self.scrape_timeout),
        ]
        for job in stale:
            try:
                self.jobs.fail(job.id, self._timeout_message())
            except (StaleStateError, JobNotFoundError):
                continue
            expired.append(job.id)

        if expired:
            logger.warning("[Ingestor] Expired %d stale jobs", len(expired))
        return expired
