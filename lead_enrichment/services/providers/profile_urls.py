"""
Profile URL utilities - how delivered provider records find their profile.

LinkedIn has two kinds of identifier in a profile URL:
1. Vanity name, e.g. 'zainjaffer' - human readable, case-insensitive
2. URN id, e.g. 'ACoAAAEZSvUBnQ2RoBurjWCQRGhx-Rq8P6L7uEk' - case-sensitive

Providers echo the URL back in different spellings (scheme, www, trailing
slash, query string, locale suffix), so matching is done on
canonical_profile_key() rather than on the raw string.
"""

import re
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

_IN_PATH = re.compile(r"/in/([^/?#]+)", re.IGNORECASE)
_URN_PREFIX = "ACoAA"


def normalize_profile_url(url: str) -> str:
    """
    Normalize a LinkedIn profile URL to https://www.linkedin.com/in/<id>.

    Non-LinkedIn URLs are returned stripped but otherwise untouched.
    """
    if not url:
        return url

    url = url.strip()

    vanity = extract_vanity_name(url)
    if not vanity:
        return url

    return f"https://www.linkedin.com/in/{vanity}"


def extract_vanity_name(url: str) -> Optional[str]:
    """Extract the id segment after /in/ (case preserved for URN ids)."""
    if not url:
        return None
    match = _IN_PATH.search(url)
    if not match:
        return None
    return unquote(match.group(1)).strip() or None


def is_urn_style_id(profile_id: str) -> bool:
    """URN-style ids start with 'ACoAA' and are ~39+ characters long."""
    if not profile_id:
        return False
    return profile_id.startswith(_URN_PREFIX) and len(profile_id) > 30


def canonical_profile_key(url: str) -> Optional[str]:
    """Key used to match a delivered record back to a profile row."""
    vanity = extract_vanity_name(url)
    if not vanity:
        return None
    if is_urn_style_id(vanity):
        return vanity
    return vanity.lower()


def get_record_profile_url(record: Dict[str, Any]) -> Optional[str]:
    """
    Find the profile URL in a delivered record.

    Priority order:
    1. url / linkedinUrl / linkedin_url / profileUrl (what the provider scraped)
    2. input.url / inputUrl (what we submitted)
    3. publicIdentifier (vanity only, URL rebuilt)
    """
    for key in ("url", "linkedinUrl", "linkedin_url", "profileUrl", "profile_url"):
        value = record.get(key)
        if isinstance(value, str) and extract_vanity_name(value):
            return value

    input_obj = record.get("input")
    if isinstance(input_obj, dict) and isinstance(input_obj.get("url"), str):
        return input_obj["url"]
    if isinstance(record.get("inputUrl"), str):
        return record["inputUrl"]

    public_id = record.get("publicIdentifier") or record.get("linkedin_username")
    if public_id:
        return f"https://www.linkedin.com/in/{public_id}"

    return None


def record_profile_keys(record: Dict[str, Any]) -> List[str]:
    """
    Every canonical key a delivered record can be matched on.

    A record scraped from a URN-style URL usually comes back with the vanity
    URL instead, so the URN profileId and the input URL are included too.
    """
    keys: List[str] = []

    candidates = [record.get(k) for k in ("url", "linkedinUrl", "linkedin_url", "profileUrl", "profile_url", "inputUrl")]
    input_obj = record.get("input")
    if isinstance(input_obj, dict):
        candidates.append(input_obj.get("url"))

    for value in candidates:
        if isinstance(value, str):
            key = canonical_profile_key(value)
            if key and key not in keys:
                keys.append(key)

    for id_field in ("profileId", "publicIdentifier", "linkedin_username"):
        value = record.get(id_field)
        if isinstance(value, str) and value.strip():
            key = value.strip() if is_urn_style_id(value.strip()) else value.strip().lower()
            if key not in keys:
                keys.append(key)

    return keys
