import pytest

from lead_enrichment.config import Settings
from lead_enrichment.services import build_services
from lead_enrichment.services.db.repositories import PROFILES_TABLE, QUALIFICATIONS_TABLE

from .fakes import FakeApifyClient, FakeScorer, FakeSupabase

ORG = "org-acme"
OTHER_ORG = "org-globex"


def profile_url(profile_id: int) -> str:
    return f"https://www.linkedin.com/in/person-{profile_id}"


def apify_record(profile_id: int, **overrides):
    """A profile as the Apify scraper delivers it."""
    record = {
        "url": f"https://linkedin.com/in/Person-{profile_id}/",
        "firstName": "Person",
        "lastName": str(profile_id),
        "headline": "VP Engineering at Initech",
        "geoLocationName": "Berlin, Germany",
        "connectionsCount": 500,
        "followersCount": 1200,
        "summary": "Building platforms.",
        "positions": [
            {
                "title": "VP Engineering",
                "company": {"name": "Initech"},
                "timePeriod": {"startDate": {"month": 3, "year": 2020}},
            },
            {
                "title": "Engineering Manager",
                "company": {"name": "Hooli"},
                "timePeriod": {"startDate": {"year": 2015}, "endDate": {"month": 2, "year": 2020}},
            },
        ],
        "educations": [{"schoolName": "TU Berlin", "degreeName": "MSc", "fieldOfStudy": "Computer Science"}],
        "skills": ["Python", {"name": "Leadership"}],
    }
    record.update(overrides)
    return record


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def settings():
    return Settings(
        supabase_url="http://supabase.test",
        supabase_key="service-key",
        apify_api_token="apify-token",
        pdl_api_key=None,
        openai_api_key="sk-test",
        webhook_secret="s3cret",
    )


@pytest.fixture
def apify():
    return FakeApifyClient()


@pytest.fixture
def scorer():
    return FakeScorer()


@pytest.fixture
def services(settings, db, apify, scorer):
    services = build_services(settings, db=db)
    services.deep_scrape._client = apify
    services.scorer = scorer
    services.engine.scorer = scorer
    return services


@pytest.fixture
def seed(db):
    """Insert profiles (and optionally a qualification) for an organization."""

    def _seed(profile_ids, organization_id=ORG):
        for pid in profile_ids:
            db.add_row(PROFILES_TABLE, {
                "id": pid,
                "organization_id": organization_id,
                "profile_url": profile_url(pid),
                "vanity_name": f"person-{pid}",
                "name": f"Person {pid}",
                "company": "Initech",
                "enriched_at": None,
            })

    return _seed


@pytest.fixture
def qualification(db):
    def _qualification(qualification_id=7, organization_id=ORG, criteria=None):
        db.add_row(QUALIFICATIONS_TABLE, {
            "id": qualification_id,
            "organization_id": organization_id,
            "name": "Engineering leaders",
            "description": None,
            "criteria": criteria if criteria is not None else {
                "minConnections": 300,
                "requiredTitles": ["VP Engineering", "CTO"],
                "preferredSkills": ["Python"],
            },
        })
        return qualification_id

    return _qualification
