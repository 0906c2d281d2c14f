#!/usr/bin/env python3
"""Celebrate recently merged PRs in Slack."""
from __future__ import annotations

import argparse
import concurrent.futures
import json
import random
import sys
import time
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Literal, cast

import requests
from dotenv import load_dotenv
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
SLACK_WEBHOOK_PREFIX = "https://hooks.slack.com/"
DEFAULT_HOURS = 24
MAX_HOURS = 720
MAX_FETCH_CONCURRENCY = 16
PAGE_SIZE = 100
PR_SAFETY_LIMIT = 1000
SLACK_MAX_BLOCKS = 50
HTTP_TIMEOUT_SECONDS = 30
HTTP_ERROR_THRESHOLD = 400
REPO_PARTS = 2
UNKNOWN_AUTHOR = "Unknown"
CELEBRATION_EMOJIS = ["🎉", "🚀", "✨", "🎊", "🎈", "🌟", "💫", "🔥"]
CELEBRATION_HEADERS = [
    "Time to Celebrate!",
    "Victory Lap Time!",
    "Code Champions Alert!",
    "Merge Party!",
    "Ship It Sandwich!",
    "PR Power Hour!",
]
FOOTER_TEXT = "🙌 Amazing work everyone! Keep shipping! 🙌"
TEXT_RULE = "━━━━━━━━━━━━━━━━━━━━━━━━━━━━"
JSONDict = dict[str, object]
JSONList = list[object]


class MalformedRecordError(TypeError):
    """Raised when a GitHub payload field has an unexpected type."""

    def __init__(self, field: str, expected: str, value: object) -> None:
        """Create a malformed record error."""
        super().__init__(
            f"Malformed GitHub payload: {field} should be {expected}, "
            f"got {type(value).__name__}",
        )


def ensure_dict(value: object, field: str) -> JSONDict:
    """Return a JSON object or raise."""
    if not isinstance(value, dict):
        raise MalformedRecordError(field, "an object", value)
    return cast("JSONDict", value)


def ensure_list(value: object, field: str) -> JSONList:
    """Return a JSON array or raise."""
    if not isinstance(value, list):
        raise MalformedRecordError(field, "an array", value)
    return cast("JSONList", value)


def ensure_str(value: object, field: str, default: str = "") -> str:
    """Return a JSON string, with null mapped to default."""
    if value is None:
        return default
    if not isinstance(value, str):
        raise MalformedRecordError(field, "a string", value)
    return value


def ensure_int(value: object, field: str) -> int:
    """Return a JSON integer; booleans are rejected."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRecordError(field, "an integer", value)
    return value


class GitHubRequestError(RuntimeError):
    """Raised when a GitHub REST request fails."""

    def __init__(self, status_code: int, text: str) -> None:
        """Create a GitHub request error."""
        super().__init__(f"GitHub request failed ({status_code}): {text}")


class SlackWebhookError(RuntimeError):
    """Raised when a Slack webhook call fails."""

    def __init__(self, status_code: int, text: str) -> None:
        """Create a Slack webhook error."""
        super().__init__(f"Slack webhook failed ({status_code}): {text}")


class InvalidRepoFormatError(ValueError):
    """Raised when a repository entry is not in owner/name form."""

    def __init__(self, entry: str) -> None:
        """Create an invalid repository format error."""
        super().__init__(f"Invalid repo format: {entry}. Expected format: owner/repo")


class RepositoryRef(BaseModel):
    """A repository to check, identified by owner and name."""

    model_config = ConfigDict(frozen=True)

    owner: str = Field(min_length=1)
    name: str = Field(min_length=1)

    @property
    def full_name(self) -> str:
        """Return the owner/name form."""
        return f"{self.owner}/{self.name}"


def parse_repos(text: str) -> list[RepositoryRef]:
    """Parse a comma-separated owner/name list."""
    entries = [entry.strip() for entry in text.split(",") if entry.strip()]
    repos: list[RepositoryRef] = []
    for entry in entries:
        parts = entry.split("/")
        if len(parts) != REPO_PARTS or not all(part.strip() for part in parts):
            raise InvalidRepoFormatError(entry)
        repos.append(RepositoryRef(owner=parts[0].strip(), name=parts[1].strip()))
    return repos


class Settings(BaseSettings):
    """Environment-backed settings for the celebration run.

    Each value can also come from a GitHub Actions input, which the runner
    exposes as an ``INPUT_<NAME>`` environment variable. Empty values are
    treated as unset, so a blank input falls back to the plain variable.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )

    github_token: str = Field(
        min_length=1,
        validation_alias=AliasChoices("INPUT_GITHUB-TOKEN", "GITHUB_TOKEN"),
    )
    slack_webhook_url: str = Field(
        min_length=1,
        validation_alias=AliasChoices("INPUT_SLACK-WEBHOOK-URL", "SLACK_WEBHOOK_URL"),
    )
    repos_to_check: str = Field(
        min_length=1,
        validation_alias=AliasChoices("INPUT_REPOS-TO-CHECK", "REPOS_TO_CHECK"),
    )
    merge_window: int = Field(
        default=DEFAULT_HOURS,
        ge=1,
        le=MAX_HOURS,
        validation_alias=AliasChoices("INPUT_MERGE-WINDOW", "MERGE_WINDOW"),
    )
    github_api_url: str = Field(default=GITHUB_API_URL, alias="GITHUB_API_URL")
    fetch_concurrency: int = Field(
        default=1,
        ge=1,
        le=MAX_FETCH_CONCURRENCY,
        alias="FETCH_CONCURRENCY",
    )

    @field_validator("slack_webhook_url")
    @classmethod
    def check_slack_webhook_url(cls, value: str) -> str:
        """Reject URLs that are not Slack webhooks."""
        if not value.startswith(SLACK_WEBHOOK_PREFIX):
            msg = (
                "SLACK_WEBHOOK_URL must be a valid Slack webhook URL "
                f"(should start with {SLACK_WEBHOOK_PREFIX})"
            )
            raise ValueError(msg)
        return value

    @field_validator("repos_to_check")
    @classmethod
    def check_repos_to_check(cls, value: str) -> str:
        """Reject malformed repository lists at load time."""
        parse_repos(value)
        return value

    @property
    def repos(self) -> list[RepositoryRef]:
        """Return the configured repositories."""
        return parse_repos(self.repos_to_check)


def get_settings() -> Settings:
    """Load settings from environment variables."""
    return Settings.model_validate({})


def log_elapsed(message: str, start: float, **fields: object) -> None:
    """Log elapsed time with additional fields."""
    elapsed = f"{time.perf_counter() - start:.2f}s"
    logger.info(
        "{message} (elapsed {elapsed})",
        message=message,
        elapsed=elapsed,
        **fields,
    )


def parse_timestamp(value: str) -> datetime:
    """Parse a GitHub ISO-8601 timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def merge_cutoff(hours_back: float, now: datetime | None = None) -> datetime:
    """Return the earliest merge time still inside the window."""
    current = now or datetime.now(UTC)
    if current.tzinfo is None:
        current = current.replace(tzinfo=UTC)
    current = current.astimezone(UTC)
    return current - timedelta(hours=hours_back)


class MergedPullRequest(BaseModel):
    """A pull request merged inside the window."""

    title: str
    number: int = Field(gt=0)
    author: str
    author_avatar_url: str
    url: str
    merged_at: str
    repository: str

    @property
    def merged_time(self) -> datetime:
        """Return merged_at as a datetime."""
        return parse_timestamp(self.merged_at)


def github_headers(settings: Settings) -> dict[str, str]:
    """Return GitHub REST headers with authentication."""
    return {
        "Authorization": f"Bearer {settings.github_token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
    }


def fetch_pull_page(
    headers: dict[str, str],
    url: str,
    params: dict[str, str | int] | None,
) -> tuple[JSONList, str | None]:
    """Fetch one page of pull requests and the URL of the next page."""
    response = requests.get(
        url,
        headers=headers,
        params=params,
        timeout=HTTP_TIMEOUT_SECONDS,
    )
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        raise GitHubRequestError(response.status_code, response.text)
    records = ensure_list(response.json(), "pulls")
    next_link = response.links.get("next") or {}
    next_url = next_link.get("url") or None
    return records, next_url


def updated_before(record: object, cutoff: datetime) -> bool:
    """Return True when a PR record was last updated before the cutoff."""
    record_dict = ensure_dict(record, "pull_request")
    updated_at = ensure_str(record_dict.get("updated_at"), "updated_at")
    return parse_timestamp(updated_at) < cutoff


def merged_since(record: object, cutoff: datetime) -> bool:
    """Return True when a PR record was merged at or after the cutoff."""
    record_dict = ensure_dict(record, "pull_request")
    merged_at = ensure_str(record_dict.get("merged_at"), "merged_at")
    if not merged_at:
        return False
    return parse_timestamp(merged_at) >= cutoff


def parse_pull_record(record: object, repo: RepositoryRef) -> MergedPullRequest:
    """Parse a MergedPullRequest from a REST pull request record."""
    record_dict = ensure_dict(record, "pull_request")
    user = ensure_dict(record_dict.get("user") or {}, "user")
    return MergedPullRequest(
        title=ensure_str(record_dict.get("title"), "title"),
        number=ensure_int(record_dict.get("number"), "number"),
        author=ensure_str(user.get("login"), "user.login") or UNKNOWN_AUTHOR,
        author_avatar_url=ensure_str(user.get("avatar_url"), "user.avatar_url"),
        url=ensure_str(record_dict.get("html_url"), "html_url"),
        merged_at=ensure_str(record_dict.get("merged_at"), "merged_at"),
        repository=repo.full_name,
    )


def fetch_repo_prs(
    headers: dict[str, str],
    api_url: str,
    repo: RepositoryRef,
    cutoff: datetime,
) -> list[MergedPullRequest]:
    """Fetch PRs of one repository merged at or after the cutoff.

    Closed PRs are listed most recently updated first, so paging stops as
    soon as a page ends with a PR last updated before the cutoff. A PR cannot
    be merged without being updated, which makes update time a safe bound for
    merge time. At most ``PR_SAFETY_LIMIT`` records are read per repository.
    """
    records: JSONList = []
    url: str | None = f"{api_url.rstrip('/')}/repos/{repo.owner}/{repo.name}/pulls"
    params: dict[str, str | int] | None = {
        "state": "closed",
        "sort": "updated",
        "direction": "desc",
        "per_page": PAGE_SIZE,
    }
    while url:
        page, url = fetch_pull_page(headers, url, params)
        # The next link already carries the query string.
        params = None
        records.extend(page)
        if page and updated_before(page[-1], cutoff):
            break
        if len(records) >= PR_SAFETY_LIMIT:
            logger.warning(
                "Reached safety limit of {limit} PRs for {repo}",
                limit=PR_SAFETY_LIMIT,
                repo=repo.full_name,
            )
            break
    return [
        parse_pull_record(record, repo)
        for record in records
        if merged_since(record, cutoff)
    ]


def collect_repo_prs(
    headers: dict[str, str],
    api_url: str,
    repo: RepositoryRef,
    cutoff: datetime,
) -> list[MergedPullRequest]:
    """Fetch merged PRs for one repository, logging and skipping failures."""
    logger.info("Checking {repo} for merged PRs...", repo=repo.full_name)
    try:
        prs = fetch_repo_prs(headers, api_url, repo, cutoff)
    except (requests.RequestException, GitHubRequestError, TypeError, ValueError) as exc:
        logger.error(
            "Error fetching PRs for {repo}: {error}",
            repo=repo.full_name,
            error=exc,
        )
        return []
    logger.info(
        "Found {count} merged PRs in {repo}",
        count=len(prs),
        repo=repo.full_name,
    )
    return prs


def fetch_merged_prs(
    settings: Settings,
    repos: list[RepositoryRef],
    hours_back: float = DEFAULT_HOURS,
    *,
    now: datetime | None = None,
    max_workers: int = 1,
) -> list[MergedPullRequest]:
    """Fetch PRs merged within the window across repositories.

    Repositories are fetched in the given order, or with up to
    ``max_workers`` threads. A failing repository contributes nothing. The
    result is sorted by merge time, most recent first.
    """
    if not repos:
        return []
    cutoff = merge_cutoff(hours_back, now)
    headers = github_headers(settings)
    api_url = settings.github_api_url
    per_repo: list[list[MergedPullRequest]]
    if max_workers <= 1:
        per_repo = [
            collect_repo_prs(headers, api_url, repo, cutoff) for repo in repos
        ]
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            per_repo = list(
                executor.map(
                    lambda repo: collect_repo_prs(headers, api_url, repo, cutoff),
                    repos,
                ),
            )
    all_prs = [pr for prs in per_repo for pr in prs]
    all_prs.sort(key=lambda pr: pr.merged_time, reverse=True)
    return all_prs


class WebhookType(StrEnum):
    """Kinds of Slack webhook, which accept different payloads."""

    INCOMING = "incoming webhook"
    WORKFLOW = "workflow webhook"


class BlockMessage(BaseModel):
    """Block Kit payload for incoming webhooks."""

    kind: Literal["blocks"] = "blocks"
    text: str
    blocks: list[JSONDict]

    def to_payload(self) -> JSONDict:
        """Return the JSON body to post."""
        return {"text": self.text, "blocks": self.blocks}


class TextMessage(BaseModel):
    """Plain text payload for workflow webhooks."""

    kind: Literal["text"] = "text"
    message: str

    def to_payload(self) -> JSONDict:
        """Return the JSON body to post."""
        return {"message": self.message}


SlackMessage = BlockMessage | TextMessage


def detect_webhook_type(webhook_url: str) -> WebhookType:
    """Detect the webhook type from its URL."""
    if "/workflows/" in webhook_url or "/triggers/" in webhook_url:
        return WebhookType.WORKFLOW
    return WebhookType.INCOMING


def group_prs_by_repo(
    prs: list[MergedPullRequest],
) -> dict[str, list[MergedPullRequest]]:
    """Group PRs by repository in order of first appearance."""
    groups: dict[str, list[MergedPullRequest]] = {}
    for pr in prs:
        groups.setdefault(pr.repository, []).append(pr)
    return groups


def escape_mrkdwn(text: str) -> str:
    """Escape the characters Slack reserves for mrkdwn control sequences."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def plural(count: int, word: str) -> str:
    """Return word with an s unless count is one."""
    return word if count == 1 else f"{word}s"


def build_summary_line(prs: list[MergedPullRequest], hours_back: int) -> str:
    """Return the PR and contributor count line."""
    contributors = len({pr.author for pr in prs})
    return (
        f"*{len(prs)}* awesome {plural(len(prs), 'PR')} merged in the last "
        f"{hours_back} {plural(hours_back, 'hour')} by *{contributors}* "
        f"{plural(contributors, 'contributor')}!"
    )


def build_header_text() -> str:
    """Return a random celebration header."""
    emoji = random.choice(CELEBRATION_EMOJIS)
    header = random.choice(CELEBRATION_HEADERS)
    return f"{emoji} {header} {emoji}"


def build_block_message(prs: list[MergedPullRequest], hours_back: int) -> BlockMessage:
    """Build a Block Kit message for incoming webhooks."""
    header_text = build_header_text()
    summary = build_summary_line(prs, hours_back)
    header_blocks: list[JSONDict] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": header_text, "emoji": True},
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": summary}},
        {"type": "divider"},
    ]
    footer_blocks: list[JSONDict] = [
        {"type": "divider"},
        {"type": "context", "elements": [{"type": "mrkdwn", "text": FOOTER_TEXT}]},
    ]
    body: list[tuple[JSONDict, bool]] = []
    for repo, repo_prs in group_prs_by_repo(prs).items():
        body.append(
            ({"type": "section", "text": {"type": "mrkdwn", "text": f"*📦 {repo}*"}}, False),
        )
        for pr in repo_prs:
            title = escape_mrkdwn(pr.title)
            line = f"• <{pr.url}|#{pr.number}: {title}>\n  _by @{pr.author}_"
            body.append(({"type": "section", "text": {"type": "mrkdwn", "text": line}}, True))
    max_body = SLACK_MAX_BLOCKS - len(header_blocks) - len(footer_blocks)
    if len(body) > max_body:
        kept = body[: max_body - 1]
        hidden = sum(1 for _, is_pr in body[max_body - 1 :] if is_pr)
        more = f"_...and {hidden} more merged {plural(hidden, 'PR')}_"
        kept.append(({"type": "section", "text": {"type": "mrkdwn", "text": more}}, False))
        body = kept
    blocks = header_blocks + [block for block, _ in body] + footer_blocks
    return BlockMessage(text=f"{header_text}\n{summary}", blocks=blocks)


def build_text_message(prs: list[MergedPullRequest], hours_back: int) -> TextMessage:
    """Build a plain text message for workflow webhooks."""
    lines = [
        build_header_text(),
        "",
        build_summary_line(prs, hours_back),
        "",
        TEXT_RULE,
        "",
    ]
    for repo, repo_prs in group_prs_by_repo(prs).items():
        lines.extend([f"📦 *{repo}*", ""])
        for pr in repo_prs:
            lines.extend(
                [
                    f"  • #{pr.number}: {pr.title}",
                    f"    {pr.url}",
                    f"    _by @{pr.author}_",
                    "",
                ],
            )
    lines.extend([TEXT_RULE, "", FOOTER_TEXT])
    return TextMessage(message="\n".join(lines))


def build_message(
    webhook_url: str,
    prs: list[MergedPullRequest],
    hours_back: int,
) -> SlackMessage:
    """Build the message shape the webhook accepts."""
    if detect_webhook_type(webhook_url) is WebhookType.WORKFLOW:
        return build_text_message(prs, hours_back)
    return build_block_message(prs, hours_back)


def post_to_slack(webhook_url: str, message: SlackMessage) -> None:
    """Post a message to Slack via webhook."""
    response = requests.post(
        webhook_url,
        json=message.to_payload(),
        timeout=HTTP_TIMEOUT_SECONDS,
    )
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        raise SlackWebhookError(response.status_code, response.text)


def send_celebration(
    webhook_url: str,
    prs: list[MergedPullRequest],
    hours_back: int = DEFAULT_HOURS,
) -> None:
    """Send the celebration for merged PRs, if there are any."""
    if not prs:
        logger.info("No merged PRs found - skipping Slack notification")
        return
    message = build_message(webhook_url, prs, hours_back)
    post_to_slack(webhook_url, message)
    logger.info(
        "Successfully sent celebration for {count} PRs to Slack ({webhook_type})!",
        count=len(prs),
        webhook_type=detect_webhook_type(webhook_url).value,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="PR Merge Celebration")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print instead of posting to Slack",
    )
    return parser.parse_args(argv)


def run_celebration(args: argparse.Namespace, settings: Settings) -> list[MergedPullRequest]:
    """Execute the celebration workflow."""
    repos = settings.repos
    logger.info("Checking {count} repository(ies):", count=len(repos))
    for repo in repos:
        logger.info("  - {repo}", repo=repo.full_name)
    logger.info(
        "Looking back {hours} hours for merged PRs",
        hours=settings.merge_window,
    )
    start = time.perf_counter()
    merged_prs = fetch_merged_prs(
        settings,
        repos,
        settings.merge_window,
        max_workers=settings.fetch_concurrency,
    )
    log_elapsed("Fetched PRs", start, count=len(merged_prs))
    logger.info("Total merged PRs found: {count}", count=len(merged_prs))
    for pr in merged_prs:
        logger.info(
            "  - {repo}#{number}: {title} (by {author})",
            repo=pr.repository,
            number=pr.number,
            title=pr.title,
            author=pr.author,
        )
    if args.dry_run:
        logger.info("--- DRY RUN OUTPUT ---")
        if merged_prs:
            message = build_message(
                settings.slack_webhook_url,
                merged_prs,
                settings.merge_window,
            )
            logger.opt(raw=True).info(
                "{payload}\n",
                payload=json.dumps(message.to_payload(), indent=2, ensure_ascii=False),
            )
        return merged_prs
    send_celebration(settings.slack_webhook_url, merged_prs, settings.merge_window)
    return merged_prs


def main(argv: list[str] | None = None) -> int:
    """Run the celebration CLI."""
    logger.info("Starting PR Merge Celebration Bot")
    args = parse_args(argv)
    try:
        settings = get_settings()
        run_celebration(args, settings)
    except ValidationError as exc:
        logger.error("Invalid configuration: {error}", error=exc)
        return 1
    except (SlackWebhookError, requests.RequestException) as exc:
        logger.error("Error sending message to Slack: {error}", error=exc)
        return 1
    logger.info("PR celebration complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
