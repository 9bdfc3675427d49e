# Enrichment providers
from .apify_provider import DeepScrapeProvider
from .lookup_provider import LookupProvider, LookupResult
from .profile_urls import (
    canonical_profile_key,
    extract_vanity_name,
    normalize_profile_url,
    record_profile_keys,
)

__all__ = [
    "DeepScrapeProvider",
    "LookupProvider",
    "LookupResult",
    "canonical_profile_key",
    "extract_vanity_name",
    "normalize_profile_url",
    "record_profile_keys",
]
