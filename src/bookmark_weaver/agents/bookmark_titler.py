"""
Heuristic retitling of bookmarks whose titles carry no information.
"""

import re
from typing import Optional
from urllib.parse import urlparse

from bookmark_weaver.agents.emoji_naming import clean_label
from bookmark_weaver.agents.metadata_provider import extract_domain_label

GENERIC_TITLES = {
    "", "new tab", "new page", "bookmark", "bookmarks", "untitled", "index", "home", "homepage",
}

STOP_WORDS = {
    "the", "and", "for", "with", "from", "that", "this", "your", "you", "about",
    "into", "http", "https", "www", "com", "org", "net", "io", "co",
}


def looks_generic(value: str) -> bool:
    """True for empty, placeholder or bare-URL titles."""
    normalized = value.lower().strip()
    if normalized in GENERIC_TITLES or len(normalized) < 3:
        return True
    return bool(re.match(r"^https?://", normalized))


def looks_good_enough(value: str) -> bool:
    """True if a title is specific and short enough to keep as-is."""
    normalized = clean_label(value).replace("**", "")
    if looks_generic(normalized) or len(normalized) > 90:
        return False
    return len(normalized.split(" ")) <= 12


def _title_case(value: str) -> str:
    return " ".join(part[:1].upper() + part[1:] for part in value.split(" ") if part)


def _path_tokens(url: Optional[str]) -> list[str]:
    if not url:
        return []
    path = urlparse(url).path
    tokens = re.split(r"[-_\s/]+", path.lower())
    return [t for t in tokens if len(t) >= 3 and t not in STOP_WORDS][:4]


def _description_tokens(description: Optional[str]) -> list[str]:
    text = clean_label(description).lower()
    if not text:
        return []
    tokens = re.split(r"[^a-z0-9]+", text)
    return [t for t in tokens if len(t) >= 4 and t not in STOP_WORDS][:4]


def suggest_title(
    current_title: Optional[str],
    page_title: Optional[str] = None,
    description: Optional[str] = None,
    url: Optional[str] = None,
) -> Optional[str]:
    """
    Suggest a replacement title for a bookmark.

    Args:
        current_title: Title the user saved the bookmark with
        page_title: Title fetched from the page itself
        description: Fetched page description
        url: Bookmark URL

    Returns:
        A suggested title, or None when the current title is already fine
    """
    current = clean_label(current_title)
    if current and looks_good_enough(current):
        return None

    fetched = clean_label(page_title)
    if fetched and looks_good_enough(fetched):
        return fetched

    pieces = (_path_tokens(url) + _description_tokens(description))[:3]
    if pieces:
        return _title_case(" ".join(pieces))

    domain = extract_domain_label(url)
    if domain:
        return _title_case(domain)

    return current or "Saved Link"
