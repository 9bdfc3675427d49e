import json

import httpx
import pytest

from lead_enrichment.errors import ProviderError, ValidationError
from lead_enrichment.services.providers import (
    DeepScrapeProvider,
    LookupProvider,
    canonical_profile_key,
    extract_vanity_name,
    normalize_profile_url,
    record_profile_keys,
)

from .fakes import FakeApifyClient

URN = "ACoAAAEZSvUBnQ2RoBurjWCQRGhx-Rq8P6L7uEk"


# ============================================
# Profile URLs
# ============================================

def test_normalize_profile_url_variants():
    expected = "https://www.linkedin.com/in/jane-doe"
    assert normalize_profile_url("linkedin.com/in/jane-doe/") == expected
    assert normalize_profile_url("http://www.linkedin.com/in/jane-doe?trk=abc") == expected
    assert normalize_profile_url("https://de.linkedin.com/in/jane-doe/de") == expected
    assert normalize_profile_url("https://example.com/jane") == "https://example.com/jane"


def test_vanity_keys_ignore_case_but_urns_do_not():
    assert canonical_profile_key("https://www.linkedin.com/in/Jane-Doe") == "jane-doe"
    assert canonical_profile_key(f"https://www.linkedin.com/in/{URN}") == URN
    assert extract_vanity_name("https://www.linkedin.com/company/acme") is None


def test_record_keys_include_urn_and_input():
    record = {
        "url": "https://www.linkedin.com/in/jane-doe",
        "profileId": URN,
        "input": {"url": f"https://linkedin.com/in/{URN}"},
    }

    keys = record_profile_keys(record)

    assert keys[0] == "jane-doe"
    assert URN in keys


# ============================================
# Lookup provider (People Data Labs)
# ============================================

def _lookup(handler) -> LookupProvider:
    return LookupProvider("pdl-key", transport=httpx.MockTransport(handler))


async def test_lookup_found():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("X-Api-Key")
        return httpx.Response(200, json={"status": 200, "likelihood": 8, "data": {"full_name": "jane doe"}})

    result = await _lookup(handler).enrich_person(profile_url="https://www.linkedin.com/in/jane-doe")

    assert result.found
    assert result.likelihood == 8
    assert result.person == {"full_name": "jane doe"}
    assert seen["key"] == "pdl-key"
    assert "/v5/person/enrich" in seen["url"]
    assert "profile=" in seen["url"]


async def test_lookup_no_match_is_not_an_error():
    def handler(request):
        return httpx.Response(404, json={"status": 404, "error": {"type": "not_found", "message": "No records"}})

    result = await _lookup(handler).enrich_person(name="Nobody", company="Nowhere")

    assert not result.found
    assert result.person is None


async def test_lookup_bad_key():
    def handler(request):
        return httpx.Response(401, json={"error": {"type": "invalid_auth", "message": "bad key"}})

    with pytest.raises(ProviderError) as exc:
        await _lookup(handler).enrich_person(name="Jane Doe")

    assert exc.value.status_code == 401
    assert not exc.value.retryable


@pytest.mark.parametrize("status", [429, 500, 503])
async def test_lookup_transient_statuses_are_retryable(status):
    def handler(request):
        return httpx.Response(status, text="busy")

    with pytest.raises(ProviderError) as exc:
        await _lookup(handler).enrich_person(name="Jane Doe")

    assert exc.value.retryable


async def test_lookup_transport_failure_is_retryable():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(ProviderError) as exc:
        await _lookup(handler).enrich_person(name="Jane Doe")

    assert exc.value.retryable


async def test_lookup_without_key():
    provider = LookupProvider(None)

    assert not provider.is_configured()
    with pytest.raises(ProviderError):
        await provider.enrich_person(name="Jane Doe")


def test_lookup_params():
    assert LookupProvider.build_params(profile_url="u", name="ignored") == {"profile": "u"}
    assert LookupProvider.build_params(first_name="Jane", last_name="Doe", company="Acme") == {
        "first_name": "Jane",
        "last_name": "Doe",
        "company": "Acme",
    }
    with pytest.raises(ValidationError):
        LookupProvider.build_params(company="Acme")


# ============================================
# Deep-scrape provider (Apify)
# ============================================

async def test_submit_starts_actor_and_returns_run_id():
    client = FakeApifyClient()
    provider = DeepScrapeProvider(
        "token",
        actor_id="actor-1",
        webhook_url="https://api.test/webhooks/apify",
        webhook_secret="s3cret",
        client=client,
    )

    run_id = await provider.submit(["linkedin.com/in/jane-doe/", "https://www.linkedin.com/in/john"])

    assert run_id == "run-1"
    started = client.started[0]
    assert started["actor_id"] == "actor-1"
    assert started["run_input"]["urls"] == [
        {"url": "https://www.linkedin.com/in/jane-doe"},
        {"url": "https://www.linkedin.com/in/john"},
    ]
    webhook = started["webhooks"][0]
    assert webhook["request_url"] == "https://api.test/webhooks/apify"
    assert json.loads(webhook["headers_template"]) == {"X-Webhook-Secret": "s3cret"}


async def test_submit_without_webhook_url_sends_no_webhooks():
    client = FakeApifyClient()
    provider = DeepScrapeProvider("token", client=client)

    await provider.submit(["https://www.linkedin.com/in/jane-doe"])

    assert "webhooks" not in client.started[0]


async def test_submit_failure_becomes_provider_error():
    client = FakeApifyClient()
    client.start_error = RuntimeError("actor not found")
    provider = DeepScrapeProvider("token", client=client)

    with pytest.raises(ProviderError) as exc:
        await provider.submit(["https://www.linkedin.com/in/jane-doe"])

    assert "actor not found" in exc.value.message


async def test_submit_validates_input():
    provider = DeepScrapeProvider("token", client=FakeApifyClient())
    with pytest.raises(ValidationError):
        await provider.submit([])

    unconfigured = DeepScrapeProvider(None)
    assert not unconfigured.is_configured()
    with pytest.raises(ProviderError):
        await unconfigured.submit(["https://www.linkedin.com/in/jane-doe"])
