# Services
#
# Organized by domain:
#   - db/          Supabase client, job store and row stores
#   - providers/   Enrichment providers (Apify deep scrape, PDL lookup)
#
# dispatcher.py, ingestion.py and qualification.py sit at the root as the
# three pipeline stages; queue_bridge.py connects them to the worker.

from dataclasses import dataclass
from typing import Optional

from ..config import Settings
from .db.job_store import JobStore
from .db.repositories import (
    EnrichmentRecordStore,
    ProfileStore,
    QualificationResultStore,
    QualificationStore,
)
from .db.supabase_client import SupabaseClient, build_supabase_client
from .dispatcher import DispatchResult, JobDispatcher
from .ingestion import ApifyDeliverySource, IngestionOutcome, ResultIngestor, normalize_profile
from .providers import DeepScrapeProvider, LookupProvider
from .qualification import OpenAIScorer, QualificationEngine, coerce_score
from .queue_bridge import QueueBridge


@dataclass
class Services:
    """Everything the API and the worker need, built once per process."""

    settings: Settings
    db: SupabaseClient
    jobs: JobStore
    profiles: ProfileStore
    records: EnrichmentRecordStore
    qualifications: QualificationStore
    results: QualificationResultStore
    queue: QueueBridge
    deep_scrape: DeepScrapeProvider
    lookup: LookupProvider
    scorer: OpenAIScorer
    dispatcher: JobDispatcher
    ingestor: ResultIngestor
    engine: QualificationEngine

    def close(self) -> None:
        self.db.close()


def build_services(settings: Settings, db: Optional[SupabaseClient] = None) -> Services:
    """
    Wire up stores, providers and pipeline stages from settings.

    Raises:
        ConfigurationError: no database credentials and no db given
    """
    db = db or build_supabase_client(settings)

    jobs = JobStore(db)
    profiles = ProfileStore(db)
    records = EnrichmentRecordStore(db)
    qualifications = QualificationStore(db)
    results = QualificationResultStore(db)
    queue = QueueBridge(
        db,
        visibility_timeout=settings.queue_visibility_timeout,
        max_attempts=settings.queue_max_attempts,
        backoff_base=settings.queue_backoff_base,
        backoff_max=settings.queue_backoff_max,
    )

    deep_scrape = DeepScrapeProvider(
        settings.apify_api_token,
        actor_id=settings.apify_profile_actor_id,
        webhook_url=settings.apify_webhook_url,
        webhook_secret=settings.webhook_secret,
        run_timeout_secs=settings.apify_run_timeout_secs,
    )
    lookup = LookupProvider(settings.pdl_api_key, base_url=settings.pdl_base_url)
    scorer = OpenAIScorer(settings.openai_api_key, model=settings.scoring_model)

    return Services(
        settings=settings,
        db=db,
        jobs=jobs,
        profiles=profiles,
        records=records,
        qualifications=qualifications,
        results=results,
        queue=queue,
        deep_scrape=deep_scrape,
        lookup=lookup,
        scorer=scorer,
        dispatcher=JobDispatcher(jobs, profiles, qualifications, queue, deep_scrape, lookup),
        ingestor=ResultIngestor(
            jobs,
            profiles,
            records,
            queue,
            ApifyDeliverySource(deep_scrape),
            lookup,
            scrape_timeout_hours=settings.scrape_timeout_hours,
        ),
        engine=QualificationEngine(
            jobs,
            records,
            qualifications,
            results,
            scorer,
            pass_threshold=settings.pass_threshold,
            lease_seconds=settings.qualify_lease_seconds,
        ),
    )


__all__ = [
    "Services",
    "build_services",
    "DispatchResult",
    "IngestionOutcome",
    "JobDispatcher",
    "QualificationEngine",
    "ResultIngestor",
    "coerce_score",
    "normalize_profile",
]
