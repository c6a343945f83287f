"""Pulls inline image URLs out of a learner's message text."""

import re
from urllib.parse import urlparse

from language_mate.schemas.messages import UrlAttachment

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".svg", ".ico", ".tiff")

_IMAGE_URL = re.compile(
    r"(https?://[^\s]+\.(?:jpg|jpeg|png|gif|webp|bmp|svg|ico|tiff)(?:\?[^\s]*)?(?:#[^\s]*)?)",
    re.IGNORECASE,
)
_WHITESPACE = re.compile(r"\s+")


def extract_image_urls(text: str) -> tuple[str, list[UrlAttachment]]:
    """Return the text with image URLs removed, plus one attachment per distinct URL."""
    urls: list[str] = []
    for match in _IMAGE_URL.finditer(text):
        if match.group(1) not in urls:
            urls.append(match.group(1))

    if not urls:
        return text, []

    cleaned = text
    for url in urls:
        cleaned = cleaned.replace(url, "")
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned, [UrlAttachment(url=url) for url in urls]


def is_valid_image_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    path = parsed.path.lower()
    return any(ext in path for ext in IMAGE_EXTENSIONS)
