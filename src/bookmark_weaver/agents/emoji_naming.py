"""
Keyword-based emoji prefixes for folder and bookmark names.
"""

import re
from typing import Optional

FOLDER_EMOJI = "📁"
BOOKMARK_EMOJI = "🔖"

KEYWORD_EMOJI_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("💻", ("code", "coding", "programming", "developer", "javascript", "typescript",
           "python", "api", "backend", "frontend", "software")),
    ("🤖", ("ai", "llm", "machine learning", "openai", "neural", "model")),
    ("🛒", ("shop", "shopping", "store", "buy", "cart", "product", "amazon")),
    ("💰", ("finance", "money", "invest", "stock", "crypto", "bank", "budget")),
    ("📚", ("learn", "learning", "tutorial", "docs", "documentation", "course", "guide", "book")),
    ("🎨", ("design", "ui", "ux", "figma", "color", "typography")),
    ("🎬", ("video", "youtube", "movie", "film", "watch")),
    ("🎵", ("music", "song", "playlist", "audio")),
    ("✈️", ("travel", "trip", "flight", "hotel", "vacation")),
    ("🍳", ("food", "recipe", "cook", "kitchen")),
    ("🏋️", ("fitness", "health", "workout", "gym")),
    ("🔒", ("security", "privacy", "auth", "encryption")),
    ("☁️", ("cloud", "aws", "gcp", "azure", "kubernetes", "docker")),
    ("📰", ("news", "article", "blog", "post")),
    ("💼", ("career", "job", "work", "resume", "interview")),
    ("🧰", ("tool", "utility", "kit")),
    ("🎮", ("game", "gaming")),
    ("📊", ("data", "analytics", "metrics", "dashboard", "report")),
]

KNOWN_EMOJIS = {emoji for emoji, _ in KEYWORD_EMOJI_RULES} | {FOLDER_EMOJI, BOOKMARK_EMOJI}


def clean_label(value: Optional[str]) -> str:
    """Strip surrounding quotes and collapse whitespace."""
    value = re.sub(r"^\s*[\"']|[\"']\s*$", "", value or "")
    return " ".join(value.split())


def has_leading_emoji(value: str) -> bool:
    """Check whether a label already starts with an emoji (or other pictograph)."""
    if not value:
        return False
    if any(value.startswith(emoji) for emoji in KNOWN_EMOJIS):
        return True
    return ord(value[0]) >= 0x2600


def pick_emoji(text: str, fallback: str) -> str:
    """Return the emoji of the first rule whose keyword occurs in text."""
    normalized = text.lower()
    for emoji, keywords in KEYWORD_EMOJI_RULES:
        if any(keyword in normalized for keyword in keywords):
            return emoji
    return fallback


def emoji_prefix_label(raw_label: Optional[str], context: str = "", kind: str = "folder") -> str:
    """
    Prefix a label with a matching emoji.

    Args:
        raw_label: Folder or bookmark name
        context: Extra text (titles, URLs) used to pick the emoji
        kind: "folder" or "bookmark", selects the fallback emoji

    Returns:
        The prefixed label (unchanged if empty or already prefixed)
    """
    label = clean_label(raw_label)
    if not label or has_leading_emoji(label):
        return label

    fallback = FOLDER_EMOJI if kind == "folder" else BOOKMARK_EMOJI
    emoji = pick_emoji(f"{label} {context}", fallback)
    return f"{emoji} {label}".strip()
