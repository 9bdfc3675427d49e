"""
Deep-Scrape Provider - Apify LinkedIn Profile Scraper actor.

Submit only: starting the actor returns a run id straight away and the data
shows up later in the run's dataset. The run id is the snapshot id that joins
the job to its delivery; waiting for and reading that delivery belongs to the
result ingestor.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from apify_client import ApifyClientAsync

from ...config import DEFAULT_PROFILE_ACTOR_ID
from ...errors import ProviderError, ValidationError
from .profile_urls import normalize_profile_url

logger = logging.getLogger(__name__)

# Terminal run events that should notify the webhook route
WEBHOOK_EVENT_TYPES = [
    "ACTOR.RUN.SUCCEEDED",
    "ACTOR.RUN.FAILED",
    "ACTOR.RUN.ABORTED",
    "ACTOR.RUN.TIMED_OUT",
]


class DeepScrapeProvider:
    """Starts Apify profile-scraper runs. Build it once with the token from Settings."""

    def __init__(
        self,
        api_token: Optional[str],
        actor_id: str = DEFAULT_PROFILE_ACTOR_ID,
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        run_timeout_secs: int = 1800,
        client: Optional[Any] = None,
    ):
        self.api_token = api_token
        self.actor_id = actor_id
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.run_timeout_secs = run_timeout_secs
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.api_token)

    @property
    def client(self):
        if self._client is None:
            if not self.api_token:
                raise ProviderError("APIFY_API_TOKEN not configured", status_code=401)
            self._client = ApifyClientAsync(self.api_token)
        return self._client

    def build_run_input(self, profile_urls: List[str]) -> Dict[str, Any]:
        return {
            "urls": [{"url": normalize_profile_url(url)} for url in profile_urls],
            "scrapeCompany": False,
            "findContacts": False,
        }

    def build_webhooks(self) -> Optional[List[Dict[str, Any]]]:
        if not self.webhook_url:
            return None
        webhook: Dict[str, Any] = {"event_types": WEBHOOK_EVENT_TYPES, "request_url": self.webhook_url}
        if self.webhook_secret:
            webhook["headers_template"] = json.dumps({"X-Webhook-Secret": self.webhook_secret})
        return [webhook]

    async def submit(self, profile_urls: List[str]) -> str:
        """
        Start a scrape of profile_urls and return the run id.

        Raises:
            ValidationError: no URLs given
            ProviderError: missing token or the run could not be started
        """
        if not profile_urls:
            raise ValidationError("No profile URLs to scrape")
        if not self.api_token:
            raise ProviderError("APIFY_API_TOKEN not configured", status_code=401)

        run_input = self.build_run_input(profile_urls)
        kwargs: Dict[str, Any] = {"run_input": run_input, "timeout_secs": self.run_timeout_secs}
        webhooks = self.build_webhooks()
        if webhooks:
            kwargs["webhooks"] = webhooks

        try:
            actor_client = self.client.actor(self.actor_id)
            run_info = await actor_client.start(**kwargs)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Apify actor start failed: {e}") from e

        run_id = run_info.get("id") if isinstance(run_info, dict) else getattr(run_info, "id", None)
        if not run_id:
            raise ProviderError("Apify actor start returned no run id")

        logger.info("[Apify] Started run %s for %d profiles", run_id, len(profile_urls))
        return run_id
