from datetime import timedelta

import pytest

from lead_enrichment.errors import ProviderError
from lead_enrichment.models import JobStatus, MessageKind, QueueMessage
from lead_enrichment.services.db.job_store import JOBS_TABLE
from lead_enrichment.services.db.repositories import RESULTS_TABLE
from lead_enrichment.services.queue_bridge import QUEUE_TABLE
from lead_enrichment.utils import to_iso, utc_now
from lead_enrichment.worker import ACKED, DEAD, DEFERRED, DISCARDED, FAILED, RETRIED, EnrichmentWorker

from .conftest import ORG, apify_record


@pytest.fixture
def worker(services):
    return EnrichmentWorker(services, worker_id="test-worker", poll_interval=0)


def _age_job(db, job_id, hours):
    for row in db.rows(JOBS_TABLE):
        if row["id"] == job_id:
            row["updated_at"] = to_iso(utc_now() - timedelta(hours=hours))


async def _next(services):
    messages = services.queue.receive()
    assert messages, "queue is empty"
    return messages[0]


async def test_collect_delivered_run(services, seed, apify, worker, db):
    seed([1])
    result = await services.dispatcher.dispatch([1], ORG)
    apify.finish(result.snapshot_id, [apify_record(1)])

    outcome = await worker.handle(await _next(services))

    assert outcome == ACKED
    assert services.jobs.get(result.job_id).status == JobStatus.COMPLETED
    assert db.rows(QUEUE_TABLE) == []


async def test_pending_run_is_deferred(services, seed, worker, db):
    seed([1])
    result = await services.dispatcher.dispatch([1], ORG)

    outcome = await worker.handle(await _next(services))

    assert outcome == DEFERRED
    row = db.rows(QUEUE_TABLE)[0]
    assert row["status"] == "queued"
    assert row["attempts"] == 0
    assert row["visible_at"] > to_iso(utc_now())
    assert services.jobs.get(result.job_id).status == JobStatus.SCRAPING


async def test_long_running_scrape_never_runs_out_of_attempts(services, seed, worker, db):
    seed([1])
    result = await services.dispatcher.dispatch([1], ORG)
    _age_job(db, result.job_id, hours=1)
    message = (await _next(services)).model_copy(update={"attempts": services.queue.max_attempts})

    outcome = await worker.handle(message)

    assert outcome == DEFERRED
    row = db.rows(QUEUE_TABLE)[0]
    assert row["status"] == "queued"
    assert row["attempts"] == services.queue.max_attempts - 1
    assert services.jobs.get(result.job_id).status == JobStatus.SCRAPING


async def test_scrape_past_timeout_fails_instead_of_waiting(services, seed, worker, db):
    seed([1])
    result = await services.dispatcher.dispatch([1], ORG)
    _age_job(db, result.job_id, hours=7)

    outcome = await worker.handle(await _next(services))

    assert outcome == ACKED
    job = services.jobs.get(result.job_id)
    assert job.status == JobStatus.FAILED
    assert "6 hours" in job.error


async def test_retryable_error_out_of_attempts_fails_job(services, seed, worker, db, monkeypatch):
    seed([1])
    result = await services.dispatcher.dispatch([1], ORG)

    async def throttled(snapshot_id):
        raise ProviderError("Apify rate limit", status_code=429, retryable=True)

    monkeypatch.setattr(services.ingestor, "collect", throttled)
    message = (await _next(services)).model_copy(update={"attempts": services.queue.max_attempts})

    outcome = await worker.handle(message)

    assert outcome == DEAD
    assert db.rows(QUEUE_TABLE)[0]["status"] == "dead"
    job = services.jobs.get(result.job_id)
    assert job.status == JobStatus.FAILED
    assert "Gave up" in job.error


async def test_qualify_for_job_held_by_another_worker_is_deferred(services, seed, qualification, apify, worker, db):
    seed([1])
    result = await services.dispatcher.dispatch([1], ORG, qualification_id=qualification())
    apify.finish(result.snapshot_id, [apify_record(1)])
    services.queue.ack(await _next(services))
    await services.ingestor.collect(result.snapshot_id)
    # Someone else already started scoring
    services.jobs.transition(result.job_id, JobStatus.ENRICHING, JobStatus.QUALIFYING)

    outcome = await worker.handle(await _next(services))

    assert outcome == DEFERRED
    assert db.rows(QUEUE_TABLE)[0]["attempts"] == 0
    assert services.jobs.get(result.job_id).status == JobStatus.QUALIFYING


async def test_message_for_finished_job_is_dropped(services, seed, worker, db):
    seed([1])
    result = await services.dispatcher.dispatch([1], ORG)
    services.jobs.abandon(result.job_id, ORG)
    services.queue.send(QueueMessage(
        kind=MessageKind.QUALIFY, job_id=result.job_id, organization_id=ORG, qualification_id=1,
    ))
    # Skip the collect message, the qualify one is what matters here
    services.queue.ack(await _next(services))

    outcome = await worker.handle(await _next(services))

    assert outcome == DISCARDED
    assert db.rows(QUEUE_TABLE) == []


async def test_permanent_provider_error_fails_job(services, seed, worker, db, monkeypatch):
    seed([1])
    result = await services.dispatcher.dispatch([1], ORG)

    async def rejected(snapshot_id):
        raise ProviderError("Apify run not found", status_code=404)

    monkeypatch.setattr(services.ingestor, "collect", rejected)

    outcome = await worker.handle(await _next(services))

    assert outcome == FAILED
    assert services.jobs.get(result.job_id).error == "Apify run not found"
    assert db.rows(QUEUE_TABLE) == []


async def test_unexpected_error_is_retried(services, seed, worker, monkeypatch):
    seed([1])
    await services.dispatcher.dispatch([1], ORG)

    async def broken(snapshot_id):
        raise KeyError("defaultDatasetId")

    monkeypatch.setattr(services.ingestor, "collect", broken)

    assert await worker.handle(await _next(services)) == RETRIED


async def test_run_once_drives_job_to_completion(services, seed, qualification, apify, worker, db):
    seed([1, 2])
    qid = qualification()
    result = await services.dispatcher.dispatch([1, 2], ORG, qualification_id=qid)
    apify.finish(result.snapshot_id, [apify_record(1), apify_record(2)])

    await worker.run(once=True)

    job = services.jobs.get(result.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.summary["scored"] == 2
    assert len(db.rows(RESULTS_TABLE)) == 2
    assert db.rows(QUEUE_TABLE) == []
