from dataclasses import replace
from datetime import timedelta

import httpx
import pytest

from lead_enrichment.errors import DeliveryPendingError, ProviderError, StaleStateError
from lead_enrichment.models import JobStatus, MessageKind
from lead_enrichment.services import build_services, normalize_profile
from lead_enrichment.services.db.job_store import JOBS_TABLE
from lead_enrichment.services.db.repositories import ENRICHMENTS_TABLE, PROFILES_TABLE
from lead_enrichment.services.providers import LookupProvider
from lead_enrichment.services.queue_bridge import QUEUE_TABLE
from lead_enrichment.utils import to_iso, utc_now

from .conftest import ORG, apify_record, profile_url


async def _dispatched(services, profile_ids, qualification_id=None):
    result = await services.dispatcher.dispatch(profile_ids, ORG, qualification_id=qualification_id)
    return services.jobs.get(result.job_id)


def _age_job(db, job_id, hours):
    for row in db.rows(JOBS_TABLE):
        if row["id"] == job_id:
            row["updated_at"] = to_iso(utc_now() - timedelta(hours=hours))


# ============================================
# normalize_profile
# ============================================

def test_normalize_apify_profile():
    record = normalize_profile(apify_record(1), "apify")

    assert record.source == "apify"
    assert record.name == "Person 1"
    assert record.current_company == "Initech"
    assert record.location == "Berlin, Germany"
    assert record.connection_count == 500
    assert record.follower_count == 1200
    assert record.skills == ["Python", "Leadership"]
    assert record.experience[0]["start_date"] == "2020-03"
    assert record.experience[0]["end_date"] is None
    assert record.experience[1]["end_date"] == "2020-02"
    assert record.education[0]["school"] == "TU Berlin"
    assert record.profile_url == "https://www.linkedin.com/in/Person-1"
    assert record.raw_response["firstName"] == "Person"


def test_normalize_apify_swapped_company():
    raw = apify_record(1, positions=[{"title": "Acme Corp", "company": {"name": "3 yrs 2 mos"}, "timePeriod": {}}])

    record = normalize_profile(raw, "apify")

    assert record.current_company == "Acme Corp"


def test_normalize_brightdata_profile():
    raw = {
        "url": "https://www.linkedin.com/in/jane-doe",
        "name": "Jane Doe",
        "position": "CTO at Acme",
        "city": "Austin",
        "about": "Engineer",
        "connections": "500+",
        "followers": 2300,
        "current_company": {"name": "Acme"},
        "experience": [{"title": "CTO", "company": "Acme", "start_date": "Jan 2020"}],
        "education": [{"title": "MIT", "degree": "BSc", "start_year": "2008", "end_year": "2012"}],
    }

    record = normalize_profile(raw)

    assert record.source == "brightdata"
    assert record.headline == "CTO at Acme"
    assert record.current_company == "Acme"
    assert record.connection_count == 500
    assert record.education[0]["school"] == "MIT"


def test_normalize_pdl_person():
    raw = {
        "full_name": "jane doe",
        "job_title": "chief technology officer",
        "job_company_name": "acme",
        "location_name": "austin, texas, united states",
        "linkedin_url": "linkedin.com/in/jane-doe",
        "linkedin_connections": 812,
        "skills": ["python", "kubernetes"],
        "experience": [{"company": {"name": "acme"}, "title": {"name": "cto"}, "start_date": "2020-01"}],
        "education": [{"school": {"name": "mit"}, "degrees": ["bachelors"], "majors": ["physics"], "end_date": "2012"}],
    }

    record = normalize_profile(raw, "pdl")

    assert record.name == "jane doe"
    assert record.current_company == "acme"
    assert record.connection_count == 812
    assert record.experience[0] == {
        "title": "cto",
        "company": "acme",
        "start_date": "2020-01",
        "end_date": None,
        "description": None,
        "location": None,
    }
    assert record.education[0]["end_year"] == "2012"
    assert record.profile_url == "https://www.linkedin.com/in/jane-doe"


# ============================================
# Deep-scrape delivery
# ============================================

async def test_full_delivery_completes_enrich_only_job(services, seed, apify, db):
    seed([1, 2])
    job = await _dispatched(services, [1, 2])
    apify.finish(job.snapshot_id, [apify_record(1), apify_record(2)])

    outcome = await services.ingestor.collect(job.snapshot_id)

    assert outcome.status == "completed"
    assert outcome.enriched == [1, 2]
    job = services.jobs.get(job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.summary["not_enriched"] == []
    assert {r["profile_id"] for r in db.rows(ENRICHMENTS_TABLE)} == {1, 2}
    assert all(p["enriched_at"] for p in db.rows(PROFILES_TABLE))


async def test_partial_delivery(services, seed, apify, db):
    seed([1, 2])
    job = await _dispatched(services, [1, 2])
    apify.finish(job.snapshot_id, [apify_record(1)])

    outcome = await services.ingestor.collect(job.snapshot_id)

    assert outcome.enriched == [1]
    assert outcome.not_enriched == [2]
    job = services.jobs.get(job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.summary["enriched"] == [1]
    assert job.summary["not_enriched"] == [2]
    assert [r["profile_id"] for r in db.rows(ENRICHMENTS_TABLE)] == [1]


async def test_empty_delivery_fails_job(services, seed, apify):
    seed([1])
    job = await _dispatched(services, [1])
    apify.finish(job.snapshot_id, [{"url": profile_url(1), "error": "Profile not available"}])

    outcome = await services.ingestor.collect(job.snapshot_id)

    assert outcome.status == "failed"
    job = services.jobs.get(job.id)
    assert job.error == "No profiles were enriched"
    assert job.summary["not_enriched"] == [1]


async def test_delivery_matches_urn_profiles_through_input_url(services, seed, apify, db):
    urn = "ACoAAAEZSvUBnQ2RoBurjWCQRGhx-Rq8P6L7uEk"
    db.add_row(PROFILES_TABLE, {
        "id": 5,
        "organization_id": ORG,
        "profile_url": f"https://www.linkedin.com/in/{urn}",
        "vanity_name": None,
    })
    job = await _dispatched(services, [5])
    record = apify_record(5, url="https://www.linkedin.com/in/someone-else", input={"url": f"https://www.linkedin.com/in/{urn}"})
    apify.finish(job.snapshot_id, [record])

    outcome = await services.ingestor.collect(job.snapshot_id)

    assert outcome.enriched == [5]


async def test_qualified_job_hands_off_to_scoring(services, seed, qualification, apify, db):
    seed([1])
    qid = qualification()
    job = await _dispatched(services, [1], qualification_id=qid)
    apify.finish(job.snapshot_id, [apify_record(1)])

    outcome = await services.ingestor.collect(job.snapshot_id)

    assert outcome.status == "enriching"
    assert services.jobs.get(job.id).status == JobStatus.ENRICHING
    qualify = [row for row in db.rows(QUEUE_TABLE) if row["kind"] == MessageKind.QUALIFY.value]
    assert len(qualify) == 1
    assert qualify[0]["payload"]["qualification_id"] == qid


async def test_redelivery_after_completion_is_discarded(services, seed, apify, db):
    seed([1, 2])
    job = await _dispatched(services, [1, 2])
    apify.finish(job.snapshot_id, [apify_record(1), apify_record(2)])

    await services.ingestor.collect(job.snapshot_id)
    first_records = [dict(r) for r in db.rows(ENRICHMENTS_TABLE)]
    again = await services.ingestor.collect(job.snapshot_id)

    assert again.discarded
    assert len(db.rows(ENRICHMENTS_TABLE)) == 2
    assert [r["profile_id"] for r in db.rows(ENRICHMENTS_TABLE)] == [r["profile_id"] for r in first_records]
    assert services.jobs.get(job.id).status == JobStatus.COMPLETED


async def test_concurrent_ingest_loses_cleanly(services, seed, db):
    seed([1])
    job = await _dispatched(services, [1])

    services.ingestor.ingest(job, [apify_record(1)], "apify")
    # Second writer still holds the scraping snapshot of the job
    with pytest.raises(StaleStateError):
        services.ingestor.ingest(job, [apify_record(1)], "apify")

    assert len(db.rows(ENRICHMENTS_TABLE)) == 1
    assert services.jobs.get(job.id).status == JobStatus.COMPLETED


async def test_unknown_snapshot_is_discarded(services):
    outcome = await services.ingestor.collect("run-unknown")

    assert outcome.discarded
    assert outcome.job_id is None


async def test_running_scrape_is_pending(services, seed):
    seed([1])
    job = await _dispatched(services, [1])

    with pytest.raises(DeliveryPendingError):
        await services.ingestor.collect(job.snapshot_id)

    assert services.jobs.get(job.id).status == JobStatus.SCRAPING


async def test_running_scrape_past_timeout_fails(services, seed, db):
    seed([1])
    job = await _dispatched(services, [1])
    _age_job(db, job.id, hours=7)

    outcome = await services.ingestor.collect(job.snapshot_id)

    assert outcome.status == "failed"
    assert "6 hours" in services.jobs.get(job.id).error


async def test_failed_run_fails_job(services, seed, apify):
    seed([1])
    job = await _dispatched(services, [1])
    apify.finish(job.snapshot_id, [], status="ABORTED")

    outcome = await services.ingestor.collect(job.snapshot_id)

    assert outcome.status == "failed"
    assert "ABORTED" in services.jobs.get(job.id).error


async def test_expire_stale_jobs(services, seed, db):
    seed([1, 2])
    old = await _dispatched(services, [1])
    fresh = await _dispatched(services, [2])
    _age_job(db, old.id, hours=12)

    expired = services.ingestor.expire_stale_jobs()

    assert expired == [old.id]
    assert services.jobs.get(old.id).status == JobStatus.FAILED
    assert services.jobs.get(fresh.id).status == JobStatus.SCRAPING


def test_expire_job_left_pending(services, seed, db):
    seed([1])
    job = services.jobs.create([1], ORG)
    _age_job(db, job.id, hours=12)

    assert services.ingestor.expire_stale_jobs() == [job.id]
    assert services.jobs.get(job.id).status == JobStatus.FAILED


# ============================================
# Lookup provider path
# ============================================

async def test_ingest_lookup(settings, db, seed):
    seed([1, 2])
    services = build_services(replace(settings, apify_api_token=None, pdl_api_key="pdl-key"), db=db)

    def handler(request: httpx.Request) -> httpx.Response:
        if "person-1" in request.url.params.get("profile", ""):
            return httpx.Response(200, json={
                "status": 200,
                "likelihood": 9,
                "data": {"full_name": "person one", "job_company_name": "initech", "linkedin_url": "linkedin.com/in/person-1"},
            })
        return httpx.Response(404, json={"status": 404, "error": {"type": "not_found", "message": "none"}})

    services.ingestor.lookup = LookupProvider("pdl-key", transport=httpx.MockTransport(handler))
    job = await _dispatched(services, [1, 2])

    outcome = await services.ingestor.ingest_lookup(job)

    assert outcome.enriched == [1]
    assert outcome.not_enriched == [2]
    stored = db.rows(ENRICHMENTS_TABLE)[0]
    assert stored["source"] == "pdl"
    assert stored["name"] == "person one"


async def test_lookup_retry_skips_profiles_already_found(settings, db, seed):
    seed([1, 2])
    services = build_services(replace(settings, apify_api_token=None, pdl_api_key="pdl-key"), db=db)
    requested = []
    outage = {"on": True}

    def handler(request: httpx.Request) -> httpx.Response:
        profile = request.url.params.get("profile", "")
        requested.append(profile)
        if "person-2" in profile and outage["on"]:
            return httpx.Response(503, json={"status": 503, "error": {"type": "server_error", "message": "busy"}})
        name = "person one" if "person-1" in profile else "person two"
        return httpx.Response(200, json={"status": 200, "likelihood": 8, "data": {"full_name": name}})

    services.ingestor.lookup = LookupProvider("pdl-key", transport=httpx.MockTransport(handler))
    job = await _dispatched(services, [1, 2])

    with pytest.raises(ProviderError) as exc:
        await services.ingestor.ingest_lookup(job)
    assert exc.value.retryable
    assert [r["profile_id"] for r in db.rows(ENRICHMENTS_TABLE)] == [1]

    outage["on"] = False
    requested.clear()
    outcome = await services.ingestor.ingest_lookup(services.jobs.get(job.id))

    assert outcome.enriched == [1, 2]
    assert len(requested) == 1
    assert "person-2" in requested[0]
