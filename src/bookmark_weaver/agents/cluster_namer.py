"""
Folder naming for clustering runs.

Names come from a naming collaborator when one is configured and the group
is large enough, otherwise from a heuristic over domains and title keywords.
Collaborator output that fails validation also falls back to the heuristic.
"""

import hashlib
import re
import threading
from abc import ABC, abstractmethod
from collections import Counter
from typing import Optional, Sequence, TypeVar

import openai
from openai import OpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from bookmark_weaver.config import get_logger, get_settings
from bookmark_weaver.agents.bookmark_titler import STOP_WORDS
from bookmark_weaver.agents.emoji_naming import clean_label, emoji_prefix_label
from bookmark_weaver.agents.metadata_provider import extract_domain_label
from bookmark_weaver.agents.models import (
    ClusteringSettings,
    EmbeddedBookmark,
    NamingTone,
    OrganizationMode,
)

logger = get_logger(__name__)

T = TypeVar("T")

MAX_NAME_CHARS = 40
MAX_NAME_WORDS = 5
FALLBACK_NAME = "Saved Links"

GENERIC_NAMES = {
    "", "misc", "miscellaneous", "other", "others", "general", "various", "stuff",
    "bookmarks", "bookmark", "links", "folder", "new folder", "untitled", "cluster",
    "group", "items", "none", "n/a",
}

# Extra words that say nothing about a topic in bookmark titles
NAMING_STOP_WORDS = STOP_WORDS | {
    "how", "what", "why", "when", "are", "can", "all", "new", "best", "use", "using",
    "guide", "page", "home", "welcome", "official", "site", "html", "index", "just",
    "more", "our", "get", "not", "its", "was", "has", "have", "will",
}

TONE_INSTRUCTIONS = {
    NamingTone.CLEAR: "Use clear literal phrasing optimized for findability.",
    NamingTone.BALANCED: "Use concise modern phrasing with a little personality.",
    NamingTone.PLAYFUL: "Use playful but searchable phrasing. Keep at least one obvious topic word.",
}

TONE_TEMPERATURES = {
    NamingTone.CLEAR: 0.2,
    NamingTone.BALANCED: 0.5,
    NamingTone.PLAYFUL: 0.8,
}

MODE_INSTRUCTIONS = {
    OrganizationMode.TOPIC: "Name the specific shared topic (e.g. \"React Hooks\", not \"Development\").",
    OrganizationMode.CATEGORY: "Name a broad category (e.g. \"Development\", \"Travel\", \"Finance\").",
}


# ============================================================================
# Helpers
# ============================================================================

def sample_evenly(items: Sequence[T], count: int) -> list[T]:
    """
    Pick up to ``count`` items spread evenly across the sequence.

    Examples:
        sample_evenly(range(10), 3) → [0, 3, 6]
    """
    if count <= 0:
        return []
    if len(items) <= count:
        return list(items)
    stride = len(items) / count
    return [items[int(i * stride)] for i in range(count)]


def content_signature(samples: Sequence[EmbeddedBookmark]) -> str:
    """Order-independent hash of the samples' normalized titles and URLs."""
    parts = sorted(
        f"{' '.join(sample.title.lower().split())}|{sample.url.strip().lower()}"
        for sample in samples
    )
    return hashlib.sha1("\n".join(parts).encode("utf-8")).hexdigest()


def _keywords(text: str) -> set[str]:
    tokens = re.split(r"[^a-z0-9]+", text.lower())
    return {
        token for token in tokens
        if len(token) >= 3 and not token.isdigit() and token not in NAMING_STOP_WORDS
    }


def heuristic_name(samples: Sequence[EmbeddedBookmark], settings: ClusteringSettings) -> str:
    """
    Derive a folder name without a naming collaborator.

    Uses the dominant domain when it covers enough of the samples (more than
    half in topic mode, at least a third in category mode), otherwise the most
    frequent title keywords.

    Args:
        samples: Representative bookmarks of the group
        settings: Clustering settings (tone and organization mode)

    Returns:
        A non-empty folder name
    """
    if not samples:
        return FALLBACK_NAME

    domains = Counter(
        domain for domain in (extract_domain_label(sample.url) for sample in samples) if domain
    )
    top_domain, top_count = domains.most_common(1)[0] if domains else (None, 0)

    share = top_count / len(samples)
    if settings.organization_mode == OrganizationMode.CATEGORY:
        dominant = share >= 1 / 3
    else:
        dominant = share > 0.5
    if top_domain and dominant:
        return top_domain.title()

    keyword_counts: Counter[str] = Counter()
    for sample in samples:
        keyword_counts.update(_keywords(sample.title))
    if not keyword_counts:
        for sample in samples:
            keyword_counts.update(_keywords(sample.description or ""))

    # Repeated keywords first; a single sample's words only if nothing repeats
    repeated = [word for word, count in keyword_counts.most_common() if count >= 2]
    candidates = repeated or [word for word, _ in keyword_counts.most_common()]

    limit = 1 if settings.organization_mode == OrganizationMode.CATEGORY else 2
    words = [word.title() for word in candidates[:limit]]
    if words:
        joiner = " & " if settings.naming_tone == NamingTone.PLAYFUL and len(words) > 1 else " "
        return joiner.join(words)

    if top_domain:
        return top_domain.title()
    return FALLBACK_NAME


def validate_name(raw: Optional[str]) -> Optional[str]:
    """
    Clean a collaborator-suggested name.

    Returns:
        The cleaned name, or None if it is empty, generic, multi-line or too long
    """
    if raw is None or "\n" in raw.strip():
        return None
    name = clean_label(raw.replace("**", "").strip().rstrip("."))
    if not name or name.lower() in GENERIC_NAMES:
        return None
    if len(name) > MAX_NAME_CHARS or len(name.split()) > MAX_NAME_WORDS:
        return None
    return name


# ============================================================================
# Naming collaborators
# ============================================================================

class Namer(ABC):
    """Abstract base for folder-naming backends."""

    @abstractmethod
    def name(self, samples: Sequence[EmbeddedBookmark], settings: ClusteringSettings) -> str:
        """
        Suggest a name for a group of bookmarks.

        Args:
            samples: Representative bookmarks of the group
            settings: Clustering settings (tone and organization mode)

        Returns:
            Raw suggested name (validated by the caller)
        """
        pass


class OpenAINamer(Namer):
    """Names folders with an OpenAI chat model."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[OpenAI] = None,
    ):
        settings = get_settings()
        self.model = model or settings.openai_llm_model
        self.client = client or OpenAI(
            api_key=api_key or settings.openai_api_key,
            timeout=timeout or settings.naming_timeout_seconds,
            max_retries=0,
        )

    def build_prompt(self, samples: Sequence[EmbeddedBookmark], settings: ClusteringSettings) -> str:
        lines = []
        for sample in samples:
            line = f"- {sample.title or '(untitled)'} ({sample.url})"
            if sample.description:
                line += f": {sample.description[:120]}"
            lines.append(line)

        return "\n".join([
            "Generate a short, descriptive folder name (max 3 words) for a bookmark folder "
            "containing these items:",
            *lines,
            "",
            TONE_INSTRUCTIONS[settings.naming_tone],
            MODE_INSTRUCTIONS[settings.organization_mode],
            "Rules:",
            "- Return plain text only, no quotes.",
            "- Avoid generic names like \"Misc\", \"Other\" or \"Bookmarks\".",
        ])

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(openai.RateLimitError),
        reraise=True,
    )
    def name(self, samples: Sequence[EmbeddedBookmark], settings: ClusteringSettings) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": self.build_prompt(samples, settings)}],
            max_tokens=20,
            temperature=TONE_TEMPERATURES[settings.naming_tone],
        )
        return response.choices[0].message.content or ""


# ============================================================================
# Per-run naming
# ============================================================================

class ClusterNamer:
    """
    Names the clusters of a single clustering run.

    Identical sample sets reuse the name computed for the first one, so a
    run never asks the collaborator twice for the same content.

    Attributes:
        namer: Optional naming collaborator
        settings: Clustering settings for the run
        sample_size: Number of representative items per group
        min_items_for_llm: Groups smaller than this are named heuristically
    """

    def __init__(
        self,
        namer: Optional[Namer],
        settings: ClusteringSettings,
        sample_size: int = 8,
        min_items_for_llm: int = 3,
    ):
        self.namer = namer
        self.settings = settings
        self.sample_size = sample_size
        self.min_items_for_llm = min_items_for_llm

        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def name_group(self, items: Sequence[EmbeddedBookmark]) -> str:
        """
        Name a group of bookmarks.

        Args:
            items: Every bookmark under the cluster

        Returns:
            Final folder name (emoji-prefixed when enabled)
        """
        samples = sample_evenly(items, self.sample_size)
        signature = content_signature(samples)
        with self._lock:
            cached = self._cache.get(signature)
        if cached is not None:
            return cached

        name = self._generate(samples, len(items))
        if self.settings.use_emoji_names:
            context = " ".join(f"{sample.title} {sample.url}" for sample in samples)
            name = emoji_prefix_label(name, context, kind="folder")

        with self._lock:
            self._cache.setdefault(signature, name)
            return self._cache[signature]

    def _generate(self, samples: Sequence[EmbeddedBookmark], total: int) -> str:
        fallback = heuristic_name(samples, self.settings)
        if self.namer is None or total < self.min_items_for_llm:
            return fallback

        try:
            suggestion = self.namer.name(samples, self.settings)
        except Exception as e:
            logger.warning(f"Naming collaborator failed, using heuristic name '{fallback}': {e}")
            return fallback

        name = validate_name(suggestion)
        if name is None:
            logger.warning(f"Rejected folder name {suggestion!r}, using heuristic name '{fallback}'")
            return fallback
        return name
