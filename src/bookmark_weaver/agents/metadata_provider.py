"""
Page metadata providers.

Fetches a page's title and description for the enrichment stage.
"""

from abc import ABC, abstractmethod
from typing import Optional, TypedDict
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from bookmark_weaver.config import get_logger

logger = get_logger(__name__)

MAX_DESCRIPTION_CHARS = 500


class PageMetadata(TypedDict):
    """Structured page metadata."""
    title: str
    description: str


class MetadataProvider(ABC):
    """Abstract base for page metadata providers."""

    @abstractmethod
    def fetch_metadata(self, url: str) -> PageMetadata:
        """
        Fetch metadata for a URL.

        Args:
            url: The page URL

        Returns:
            PageMetadata dict

        Raises:
            httpx.HTTPError: If the page cannot be fetched
        """
        pass

    def close(self) -> None:
        """Release any network resources held by the provider."""
        pass

    def _empty_metadata(self) -> PageMetadata:
        return PageMetadata(title="", description="")


def extract_domain_label(url: Optional[str]) -> Optional[str]:
    """
    Extract the registrable-domain label from a URL.

    Examples:
        https://github.com/user/repo → github
        https://docs.python.org/3/ → python
        https://localhost:8000 → localhost
    """
    if not url:
        return None
    hostname = urlparse(url).hostname or ""
    if hostname.startswith("www."):
        hostname = hostname[4:]
    parts = [part for part in hostname.split(".") if part]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return parts[-2]


class HtmlMetadataProvider(MetadataProvider):
    """Reads <title> and the description meta tags from a page's HTML."""

    def __init__(self, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        """
        Initialize the HTML provider.

        Args:
            timeout: Request timeout in seconds
            client: Optional pre-configured HTTP client
        """
        self.timeout = timeout
        self._client = client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": "BookmarkWeaver/0.1 (+metadata fetch)"},
        )

    def fetch_metadata(self, url: str) -> PageMetadata:
        """Fetch a page and parse its head for a title and description."""
        response = self._client.get(url)
        response.raise_for_status()

        content_type = response.headers.get("content-type", "").lower()
        if "html" not in content_type:
            logger.debug(f"Skipping non-HTML content ({content_type}) for {url}")
            return self._empty_metadata()

        return self.parse_html(response.text)

    def parse_html(self, html: str) -> PageMetadata:
        """Extract title and description from an HTML document."""
        soup = BeautifulSoup(html, "html.parser")

        title_tag = soup.find("title")
        title = title_tag.get_text(strip=True) if title_tag else ""

        description = ""
        for attrs in ({"name": "description"}, {"property": "og:description"}):
            meta = soup.find("meta", attrs=attrs)
            if meta and meta.get("content"):
                description = meta["content"].strip()
                break

        return PageMetadata(
            title=" ".join(title.split()),
            description=" ".join(description.split())[:MAX_DESCRIPTION_CHARS],
        )

    def close(self) -> None:
        self._client.close()
