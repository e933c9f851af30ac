"""
Link extraction for Twitter/X URLs found in chat messages.

Pure functions, no I/O. Shortener links are returned as-is and
resolved later by the resolver.
"""

import re
from typing import Optional
from urllib.parse import urlsplit

SOCIAL_HOSTS = ("twitter.com", "x.com")
SHORTENER_HOST = "t.co"

# Characters dropped from the end of a match, e.g. a link closing a sentence
TRAILING_PUNCTUATION = ".,;!?"

# Host must not run on into a longer hostname (x.com.example.org)
_HOST_END = r"(?![\w-]|\.\w)"

SOCIAL_URL_RE = re.compile(
    r"https?://(?:www\.)?(?:twitter\.com|x\.com)" + _HOST_END + r"(?:[/?#]\S*)?",
    re.IGNORECASE,
)
SHORT_URL_RE = re.compile(r"https?://t\.co/[A-Za-z0-9]+", re.IGNORECASE)

STATUS_RE = re.compile(
    r"^(?P<scheme>https?)://(?P<host>[^/?#]+)/(?P<user>\w+)/status/(?P<id>\d+)",
    re.IGNORECASE,
)


def clean_url(url: str) -> str:
    """Strip trailing sentence punctuation from a matched URL."""
    return url.rstrip(TRAILING_PUNCTUATION)


def normalize_status_url(url: str) -> str:
    """
    Reduce a status link to scheme://host/username/status/id.

    Query strings, fragments and any path after the status id are
    dropped so tracking variants of one post collapse to one URL.
    URLs without a status segment are returned unchanged.
    """
    match = STATUS_RE.match(url)
    if not match:
        return url
    return "{scheme}://{host}/{user}/status/{id}".format(
        scheme=match.group("scheme").lower(),
        host=match.group("host").lower(),
        user=match.group("user"),
        id=match.group("id"),
    )


def extract_links(text: Optional[str]) -> set[str]:
    """
    Extract normalized candidate URLs from message text.

    Args:
        text: Message content, may be empty or None

    Returns:
        Set of social-media and shortener URLs; empty if none found
    """
    if not text:
        return set()

    links = set()
    for match in SOCIAL_URL_RE.finditer(text):
        links.add(normalize_status_url(clean_url(match.group(0))))
    for match in SHORT_URL_RE.finditer(text):
        links.add(clean_url(match.group(0)))
    return links


def is_shortener(url: str) -> bool:
    """True if the URL points at the link shortener and needs resolving."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return False
    return host is not None and host.lower() == SHORTENER_HOST
