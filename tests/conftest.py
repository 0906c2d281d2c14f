"""Shared fixtures for celebration tests."""
from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from loguru import logger

from scripts.celebrate import MergedPullRequest, Settings

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
INCOMING_WEBHOOK = "https://hooks.slack.com/services/T00000000/B00000000/XXXX"
WORKFLOW_WEBHOOK = "https://hooks.slack.com/workflows/T00000000/A00000000/XXXX"


def iso_hours_ago(hours: float, now: datetime = NOW) -> str:
    return (now - timedelta(hours=hours)).strftime("%Y-%m-%dT%H:%M:%SZ")


def make_record(
    number: int,
    *,
    merged_hours_ago: float | None = 1,
    updated_hours_ago: float | None = None,
    login: str | None = "octocat",
    title: str | None = None,
) -> dict[str, object]:
    """Build a REST pull request record relative to NOW."""
    if updated_hours_ago is None:
        updated_hours_ago = merged_hours_ago if merged_hours_ago is not None else 1
    user = None
    if login is not None:
        user = {"login": login, "avatar_url": f"https://avatars.example/{login}"}
    return {
        "number": number,
        "title": title or f"PR {number}",
        "user": user,
        "html_url": f"https://github.com/octocat/hello-world/pull/{number}",
        "merged_at": None if merged_hours_ago is None else iso_hours_ago(merged_hours_ago),
        "updated_at": iso_hours_ago(updated_hours_ago),
    }


def make_response(
    records: object,
    next_url: str | None = None,
    status_code: int = 200,
) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = records
    response.text = "" if status_code < 400 else "boom"
    response.links = {"next": {"url": next_url, "rel": "next"}} if next_url else {}
    return response


def make_pr(
    number: int,
    repository: str = "octocat/hello-world",
    author: str = "alice",
    merged_at: str = "2026-01-15T10:00:00Z",
    title: str | None = None,
) -> MergedPullRequest:
    return MergedPullRequest(
        title=title or f"PR {number}",
        number=number,
        author=author,
        author_avatar_url=f"https://avatars.example/{author}",
        url=f"https://github.com/{repository}/pull/{number}",
        merged_at=merged_at,
        repository=repository,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings.model_validate(
        {
            "GITHUB_TOKEN": "test-token",
            "SLACK_WEBHOOK_URL": INCOMING_WEBHOOK,
            "REPOS_TO_CHECK": "octocat/hello-world",
            "GITHUB_API_URL": "https://api.github.com",
        },
    )


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Collect formatted loguru messages emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]))
    yield messages
    logger.remove(handler_id)
