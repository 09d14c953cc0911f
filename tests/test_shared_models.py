"""
Unit tests for shared models module.

This module tests the pipeline data models: commit statistics, push payloads,
retry queue items and connection health.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from shared.models import (
    ActiveSession,
    ChangeType,
    CommitBatch,
    CommitData,
    CommitFile,
    ConnectionHealth,
    ConnectionState,
    ProjectConfig,
    PushStatsPayload,
    QueuedItem,
    RetryPolicy,
)


def make_commit(sha="a" * 40, files=None):
    return CommitData(
        sha=sha,
        message="Add feature",
        author_name="Dev",
        author_email="dev@example.com",
        author_date="2024-01-01T10:00:00+00:00",
        files=files or [],
    )


class TestProjectConfig:
    """Test cases for ProjectConfig."""

    def test_project_config_expands_user(self):
        project = ProjectConfig(path="~/src/app", name="app")
        assert project.path == str(Path.home() / "src" / "app")
        assert project.project_id is None

    def test_project_config_requires_name(self):
        with pytest.raises(ValidationError):
            ProjectConfig(path="/tmp/app", name="")

    def test_project_config_is_frozen(self):
        project = ProjectConfig(path="/tmp/app", name="app")
        with pytest.raises(ValidationError):
            project.name = "other"


class TestCommitFile:
    """Test cases for CommitFile."""

    @pytest.mark.parametrize(
        "insertions,deletions,expected",
        [
            (10, 0, ChangeType.ADDED),
            (0, 4, ChangeType.DELETED),
            (3, 2, ChangeType.MODIFIED),
            (0, 0, ChangeType.MODIFIED),
        ],
    )
    def test_from_counts_infers_change_type(self, insertions, deletions, expected):
        entry = CommitFile.from_counts("src/app.py", insertions, deletions)

        assert entry.change_type == expected.value
        assert entry.lines_added == insertions
        assert entry.lines_deleted == deletions

    def test_negative_counts_rejected(self):
        with pytest.raises(ValidationError):
            CommitFile(path="a.py", lines_added=-1)


class TestCommitData:
    """Test cases for CommitData."""

    def test_line_totals(self):
        commit = make_commit(files=[
            CommitFile.from_counts("a.py", 5, 1),
            CommitFile.from_counts("b.py", 2, 3),
        ])

        assert commit.lines_added == 7
        assert commit.lines_deleted == 4

    def test_short_sha_rejected(self):
        with pytest.raises(ValidationError):
            make_commit(sha="abc")


class TestPushStatsPayload:
    """Test cases for PushStatsPayload."""

    def test_request_body_omits_unset_fields(self):
        payload = PushStatsPayload(project_name="relay", commits=[make_commit()])

        body = payload.to_request_body()

        assert "session_id" not in body
        assert "project_id" not in body
        assert body["project_name"] == "relay"
        assert body["commits"][0]["sha"] == "a" * 40
        json.dumps(body)

    def test_request_body_change_type_is_string(self):
        payload = PushStatsPayload(commits=[make_commit(files=[CommitFile.from_counts("a.py", 1, 0)])])

        body = payload.to_request_body()

        assert body["commits"][0]["files"][0]["change_type"] == "added"


class TestQueuedItem:
    """Test cases for QueuedItem."""

    def test_aliases_on_dump(self):
        item = QueuedItem(id="1-abc", payload=PushStatsPayload())

        data = item.model_dump(mode="json", by_alias=True, exclude_none=True)

        assert "createdAt" in data
        assert "lastAttemptAt" not in data
        assert data["attempts"] == 1

    def test_load_from_alias_and_field_names(self):
        by_alias = QueuedItem.model_validate(
            {"id": "1", "payload": {}, "createdAt": "2024-01-01T00:00:00Z"}
        )
        by_name = QueuedItem(id="2", payload=PushStatsPayload(), created_at=datetime(2024, 1, 1))

        assert by_alias.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert by_name.created_at.tzinfo is not None

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            QueuedItem(id="1", payload=PushStatsPayload(), attempts=0)


class TestHealthAndPolicy:
    """Test cases for ConnectionHealth and RetryPolicy."""

    def test_connection_health_defaults(self):
        health = ConnectionHealth()

        assert health.state == ConnectionState.CONNECTED
        assert health.consecutive_failures == 0
        assert health.last_success is None

    def test_retry_policy_defaults(self):
        policy = RetryPolicy()

        assert policy.max_retries == 5
        assert policy.base_delay_ms == 1000
        assert policy.max_delay_ms == 30000
        assert policy.backoff_multiplier == 2.0

    def test_commit_batch_and_session(self):
        batch = CommitBatch(project=ProjectConfig(path="/tmp/x", name="x"), commits=[make_commit()])
        session = ActiveSession(session_id="s-1")

        assert batch.commits[0].sha == "a" * 40
        assert session.project_id is None


class TestErrors:
    """Test cases for the error hierarchy."""

    def test_retryable_classification(self):
        from shared.errors import ClientError, DeliveryError, ServerError, TransientNetworkError

        assert TransientNetworkError("timeout").is_retryable is True
        assert ServerError("HTTP 502", status_code=502).is_retryable is True
        assert ClientError("HTTP 400", status_code=400).is_retryable is False
        assert issubclass(ClientError, DeliveryError)
        assert ServerError("HTTP 502", status_code=502).status_code == 502
