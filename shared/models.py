"""
Data models for CommitRelay.

This module provides the types that flow through the delivery pipeline:
- Commit and file-level diff statistics extracted from a repository
- The push payload sent to the collection service
- Durable retry queue items and statistics
- Connection health state and retry policy
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChangeType(str, Enum):
    """How a file changed within a commit."""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class ConnectionState(str, Enum):
    """Coarse delivery health indicator."""
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"


class ProjectConfig(BaseModel):
    """A local repository paired with its remote project identifier."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1, description="Path to the local Git repository")
    name: str = Field(..., min_length=1, description="Remote project name")
    project_id: Optional[str] = Field(default=None, description="Remote project ID")

    @field_validator("path")
    @classmethod
    def expand_path(cls, v):
        return str(Path(v).expanduser())


class CommitFile(BaseModel):
    """Per-file line counts for a single commit."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    path: str = Field(..., min_length=1, description="File path relative to the repository")
    lines_added: int = Field(default=0, ge=0, description="Lines added")
    lines_deleted: int = Field(default=0, ge=0, description="Lines deleted")
    change_type: ChangeType = Field(default=ChangeType.MODIFIED, description="Change type")

    @classmethod
    def from_counts(cls, path: str, insertions: int, deletions: int) -> "CommitFile":
        """Build a file entry, inferring the change type from line counts.

        Renames cannot be told apart from counts alone, so they are reported
        as ``modified``.
        """
        insertions = insertions or 0
        deletions = deletions or 0

        if insertions > 0 and deletions == 0:
            change_type = ChangeType.ADDED
        elif deletions > 0 and insertions == 0:
            change_type = ChangeType.DELETED
        else:
            change_type = ChangeType.MODIFIED

        return cls(
            path=path,
            lines_added=insertions,
            lines_deleted=deletions,
            change_type=change_type,
        )


class CommitData(BaseModel):
    """A commit as reported to the collection service."""

    model_config = ConfigDict(frozen=True)

    sha: str = Field(..., min_length=7, max_length=64, description="Git commit hash")
    message: str = Field(default="", description="Commit message")
    author_name: str = Field(default="", description="Author name")
    author_email: str = Field(default="", description="Author email")
    author_date: str = Field(..., description="Author date, ISO 8601")
    files: List[CommitFile] = Field(default_factory=list, description="Changed files")

    @property
    def lines_added(self) -> int:
        return sum(f.lines_added for f in self.files)

    @property
    def lines_deleted(self) -> int:
        return sum(f.lines_deleted for f in self.files)


class PushStatsPayload(BaseModel):
    """One batch of commits for a project, oldest first."""

    project_id: Optional[str] = None
    project_name: Optional[str] = None
    session_id: Optional[str] = None
    commits: List[CommitData] = Field(default_factory=list)

    def to_request_body(self) -> Dict[str, Any]:
        """Serialize for the push-stats endpoint, omitting unset fields."""
        return self.model_dump(mode="json", exclude_none=True)


class ActiveSession(BaseModel):
    """The session currently open on the collection service."""

    session_id: str
    project_id: Optional[str] = None
    project_name: Optional[str] = None


class CommitBatch(BaseModel):
    """New commits found by one watcher in one extraction pass."""

    project: ProjectConfig
    commits: List[CommitData]


class QueuedItem(BaseModel):
    """A payload waiting for redelivery.

    Timestamps are written as ``createdAt``/``lastAttemptAt`` on disk; both the
    aliases and the field names are accepted on load.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, description="Unique, time-ordered item ID")
    payload: PushStatsPayload
    attempts: int = Field(default=1, ge=1, description="Delivery attempts so far")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )
    last_attempt_at: Optional[datetime] = Field(default=None, alias="lastAttemptAt")
    error: Optional[str] = None

    @field_validator("created_at", "last_attempt_at")
    @classmethod
    def ensure_timezone(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class QueueStats(BaseModel):
    """Summary of the retry queue."""

    pending: int = 0
    total_attempts: int = 0
    oldest_item: Optional[datetime] = None


class DeliveryResult(BaseModel):
    """Outcome of one logical delivery call."""

    success: bool
    status_code: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class RetryPolicy(BaseModel):
    """Backoff parameters for retryable delivery failures."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=5, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter_ratio: float = Field(default=0.3, ge=0, le=1)


class ConnectionHealth(BaseModel):
    """Connection health snapshot; replaced, never mutated."""

    model_config = ConfigDict(frozen=True)

    state: ConnectionState = ConnectionState.CONNECTED
    consecutive_failures: int = Field(default=0, ge=0)
    last_success: Optional[datetime] = None


__all__ = [
    'ChangeType', 'ConnectionState',
    'ProjectConfig', 'CommitFile', 'CommitData', 'PushStatsPayload',
    'ActiveSession', 'CommitBatch', 'QueuedItem', 'QueueStats',
    'DeliveryResult', 'RetryPolicy', 'ConnectionHealth',
]
