"""
Data models for bookmark organization.

This module defines the core data structures for representing bookmarks,
the shared vector cache, the cluster forest produced by a clustering run,
and the user-facing clustering settings.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


class BookmarkStatus(str, Enum):
    """Lifecycle states of a bookmark inside the pipeline.

    ``embedded`` and ``error`` are terminal. ``idle`` is the
    cancellation-recovery state: not processed, not retried.
    """
    PENDING = "pending"
    ENRICHED = "enriched"
    EMBEDDED = "embedded"
    ERROR = "error"
    IDLE = "idle"


class Bookmark(BaseModel):
    """Represents a user's bookmark and its processing state.

    Attributes:
        id: Unique identifier for the bookmark row
        user_id: Owner of the bookmark
        external_id: Identifier assigned by the browser (unique per user)
        url: The bookmarked URL as submitted
        title: The title as submitted by the user
        ai_title: Suggested replacement title when the original looks generic
        description: Page description gathered during enrichment
        content_hash: Hash of the canonical URL, key into the vector cache
        status: Current pipeline status
        created_at: When the bookmark was first ingested
    """

    id: str
    user_id: str
    external_id: str
    url: str
    title: str = ""
    ai_title: Optional[str] = None
    description: Optional[str] = None
    content_hash: str
    status: BookmarkStatus = BookmarkStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def display_title(self) -> str:
        """Title to show and to name folders with (AI title wins when present)."""
        return self.ai_title or self.title or self.url


class SharedVectorEntry(BaseModel):
    """A cross-user vector cache entry keyed by canonical URL hash."""

    content_hash: str
    url: str
    vector: Optional[list[float]] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_vector(self) -> bool:
        return self.vector is not None


class Cluster(BaseModel):
    """A folder in a user's cluster forest (root clusters have no parent)."""

    id: str
    user_id: str
    name: str
    parent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ClusterAssignment(BaseModel):
    """Membership of a bookmark in a leaf cluster."""

    cluster_id: str
    bookmark_id: str


class ClusteringRunState(str, Enum):
    """States of a single clustering run."""
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ClusteringRun(BaseModel):
    """Bookkeeping record for one clustering run of one user."""

    id: str
    user_id: str
    state: ClusteringRunState = ClusteringRunState.RUNNING
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None


class EmbeddedBookmark(BaseModel):
    """A bookmark joined with its cached vector, the clustering engine input."""

    bookmark_id: str
    url: str
    title: str = ""
    description: Optional[str] = None
    vector: list[float]

    model_config = ConfigDict(arbitrary_types_allowed=True)


class FolderDensity(str, Enum):
    """How many (and how large) folders the user wants."""
    LESS = "less"
    MEDIUM = "medium"
    MORE = "more"


class NamingTone(str, Enum):
    """Voice used when naming folders."""
    CLEAR = "clear"
    BALANCED = "balanced"
    PLAYFUL = "playful"


class OrganizationMode(str, Enum):
    """Whether folder names lean specific (topic) or broad (category)."""
    TOPIC = "topic"
    CATEGORY = "category"


class ClusteringSettings(BaseModel):
    """User-facing clustering profile.

    Unknown or malformed values fall back to the default for that field
    rather than rejecting the whole request.
    """

    folder_density: FolderDensity = FolderDensity.MEDIUM
    naming_tone: NamingTone = NamingTone.CLEAR
    organization_mode: OrganizationMode = OrganizationMode.TOPIC
    use_emoji_names: bool = False

    @field_validator('folder_density', 'naming_tone', 'organization_mode', mode='before')
    @classmethod
    def fallback_to_default(cls, v, info):
        """Replace values outside the enum with the field default."""
        enum_type = {
            'folder_density': FolderDensity,
            'naming_tone': NamingTone,
            'organization_mode': OrganizationMode,
        }[info.field_name]
        try:
            return enum_type(v)
        except (ValueError, TypeError):
            return cls.model_fields[info.field_name].default

    @field_validator('use_emoji_names', mode='before')
    @classmethod
    def coerce_emoji_flag(cls, v):
        """Treat anything that is not a real boolean as False."""
        return v if isinstance(v, bool) else False

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> "ClusteringSettings":
        """Build settings from an untrusted dict (None yields the defaults)."""
        if not isinstance(payload, dict):
            return cls()
        return cls.model_validate(payload)


class ClusteringDensityProfile(BaseModel):
    """Size constraints driving the recursive split.

    Attributes:
        target_leaf_size: Nodes at or below this size become leaves
        max_children: Upper bound on the number of children per split
        min_child_size: Groups smaller than this are merged into a sibling
        max_depth: Depth ceiling; deeper nodes are forced to leaves
    """

    target_leaf_size: int = Field(ge=1)
    max_children: int = Field(ge=2)
    min_child_size: int = Field(ge=1)
    max_depth: int = Field(default=6, ge=0)


_DENSITY_PRESETS: dict[FolderDensity, tuple[int, int, int]] = {
    FolderDensity.LESS: (24, 3, 4),
    FolderDensity.MEDIUM: (14, 4, 3),
    FolderDensity.MORE: (8, 6, 2),
}


def get_density_profile(
    settings: ClusteringSettings, max_depth: int = 6
) -> ClusteringDensityProfile:
    """
    Map a folder density preset to concrete split constraints.

    Args:
        settings: User clustering settings
        max_depth: Recursion depth ceiling

    Returns:
        Density profile for the clustering engine
    """
    target, max_children, min_child = _DENSITY_PRESETS[settings.folder_density]
    return ClusteringDensityProfile(
        target_leaf_size=target,
        max_children=max_children,
        min_child_size=min_child,
        max_depth=max_depth,
    )


class ClusteringResult(BaseModel):
    """Result of a clustering run.

    Attributes:
        run_id: Identifier of the clustering run
        clusters: All persisted clusters (internal nodes and leaves)
        assignments: Leaf memberships
        forced_leaf_count: Number of nodes made leaves by the depth ceiling or a failed split
        total_bookmarks: Number of bookmarks that entered the run
        timestamp: When the run finished
    """

    run_id: str
    clusters: list[Cluster] = Field(default_factory=list)
    assignments: list[ClusterAssignment] = Field(default_factory=list)
    forced_leaf_count: int = 0
    total_bookmarks: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class BookmarkNode(BaseModel):
    """A bookmark inside the nested folder view."""

    id: str
    title: str
    url: str
    duplicate: bool = False


class FolderNode(BaseModel):
    """A folder inside the nested folder view."""

    id: str
    name: str
    folders: list["FolderNode"] = Field(default_factory=list)
    bookmarks: list[BookmarkNode] = Field(default_factory=list)


class StructureView(BaseModel):
    """A page of a user's cluster forest.

    Attributes:
        user_id: Owner of the forest
        clusters: Clusters on this page (parents before children)
        assignments: Leaf assignments of the clusters on this page
        total_clusters: Number of clusters across all pages
        page: 1-based page number
        page_size: Clusters per page
        folders: Full nested tree (only when requested)
    """

    user_id: str
    clusters: list[Cluster] = Field(default_factory=list)
    assignments: list[ClusterAssignment] = Field(default_factory=list)
    total_clusters: int = 0
    page: int = 1
    page_size: int = 200
    folders: Optional[list[FolderNode]] = None
