"""
Lookup Provider - People Data Labs person enrichment.

Synchronous request/response: one GET per person, keyed by profile URL or by
name + company. A "no match" answer is a normal result, not an error.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from ...config import PDL_API_BASE
from ...errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30.0


@dataclass
class LookupResult:
    found: bool
    likelihood: int = 0
    person: Optional[Dict[str, Any]] = None
    status_code: int = 200
    raw: Dict[str, Any] = field(default_factory=dict)


def _is_not_found(status_code: int, body: Any) -> bool:
    if status_code != 404:
        return False
    if not isinstance(body, dict):
        return False
    error = body.get("error")
    if isinstance(error, dict) and error.get("type") == "not_found":
        return True
    return body.get("status") == 404 and "data" not in body


class LookupProvider:
    """People Data Labs client. Build it once with the key from Settings."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = PDL_API_BASE,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def build_params(
        profile_url: Optional[str] = None,
        name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        company: Optional[str] = None,
    ) -> Dict[str, str]:
        """Profile URL wins; otherwise full name or first + last, plus company."""
        params: Dict[str, str] = {}

        if profile_url:
            params["profile"] = profile_url
            return params

        if name:
            params["name"] = name
        elif first_name and last_name:
            params["first_name"] = first_name
            params["last_name"] = last_name
        else:
            raise ValidationError("Lookup needs a profile URL, a name, or first and last name")

        if company:
            params["company"] = company

        return params

    async def enrich_person(
        self,
        *,
        profile_url: Optional[str] = None,
        name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        company: Optional[str] = None,
    ) -> LookupResult:
        """
        Look up one person.

        Returns:
            LookupResult with found=False when the provider has no match

        Raises:
            ValidationError: no identifying field given
            ProviderError: missing/invalid key, transport failure, or rejection
        """
        params = self.build_params(profile_url, name, first_name, last_name, company)

        if not self.api_key:
            raise ProviderError("PDL_API_KEY not configured", status_code=401)

        url = f"{self.base_url}/person/enrich"
        headers = {"X-Api-Key": self.api_key, "Accept": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"PDL request failed: {e}", retryable=True) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code == 200 and isinstance(body, dict):
            return LookupResult(
                found=True,
                likelihood=int(body.get("likelihood") or 0),
                person=body.get("data") or {},
                status_code=200,
                raw=body,
            )

        if _is_not_found(response.status_code, body):
            logger.info("[PDL] No match for %s", params.get("profile") or params.get("name") or "lookup")
            return LookupResult(found=False, status_code=404, raw=body or {})

        message = response.text[:300]
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = body["error"].get("message") or message

        if response.status_code in (401, 403):
            raise ProviderError(f"PDL rejected credentials: {message}", status_code=response.status_code)

        retryable = response.status_code == 429 or response.status_code >= 500
        raise ProviderError(
            f"PDL enrichment failed: {response.status_code} - {message}",
            status_code=response.status_code,
            retryable=retryable,
        )
