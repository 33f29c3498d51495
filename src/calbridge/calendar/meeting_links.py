"""Meeting link extraction from free-text event fields."""

from __future__ import annotations

import re
from collections.abc import Iterable
from urllib.parse import urlparse

DEFAULT_MEETING_LINK_DOMAINS: tuple[str, ...] = (
    "zoom.us",
    "meet.google.com",
    "teams.microsoft.com",
    "teams.live.com",
    "meet.jit.si",
    "whereby.com",
    "webex.com",
    "gotomeeting.com",
    "huddle01.com",
    "meetwith.xyz",
)

_URL_PATTERN = re.compile(r"https?://[^\s<>\"'()\[\]]+", re.IGNORECASE)


def _host_matches(host: str, domains: Iterable[str]) -> bool:
    normalized = host.lower().split(":")[0]
    for domain in domains:
        candidate = domain.lower().strip(".")
        if normalized == candidate or normalized.endswith(f".{candidate}"):
            return True
    return False


def is_meeting_link(url: str, domains: Iterable[str] = DEFAULT_MEETING_LINK_DOMAINS) -> bool:
    try:
        host = urlparse(url).netloc
    except ValueError:
        return False
    return bool(host) and _host_matches(host, domains)


def extract_meeting_link(
    text: str | None,
    domains: Iterable[str] = DEFAULT_MEETING_LINK_DOMAINS,
) -> str | None:
    """Return the first allow-listed meeting URL found in *text*.

    URLs on unknown domains are ignored.
    """
    if not text:
        return None
    allowed = tuple(domains)
    for match in _URL_PATTERN.finditer(text):
        url = match.group(0).rstrip(".,;:!?")
        if is_meeting_link(url, allowed):
            return url
    return None


def first_meeting_url(
    *,
    conference_uri: str | None,
    video_link: str | None,
    location: str | None,
    domains: Iterable[str] = DEFAULT_MEETING_LINK_DOMAINS,
) -> str | None:
    """Pick the meeting URL by precedence: conference data, video link, location text."""
    for candidate in (conference_uri, video_link):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return extract_meeting_link(location, domains)
