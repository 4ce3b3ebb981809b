from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import time
from typing import TypeVar, cast
from urllib.parse import urlencode

from prloop.config import ConfigError
from prloop.models import (
    CheckConclusion,
    CheckResult,
    PrContext,
    PrSnapshot,
    ReviewComment,
    ReviewThread,
)
from prloop.observability import log_event, log_warning_event
from prloop.shell import CommandError, run


LOGGER = logging.getLogger("prloop.github_gateway")
T = TypeVar("T")

_READ_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 1.0
_PAGE_SIZE = 100
_GHOST_LOGIN = "ghost"

_FAILING_RUN_CONCLUSIONS = {"failure", "timed_out", "action_required", "startup_failure"}
_NEUTRAL_RUN_CONCLUSIONS = {"neutral", "cancelled", "stale"}

_COMMENT_FIELDS = """
  pageInfo { hasNextPage endCursor }
  nodes { id body createdAt author { login } }
"""

PULL_REQUEST_QUERY = f"""
query($owner: String!, $name: String!, $number: Int!, $cursor: String) {{
  repository(owner: $owner, name: $name) {{
    pullRequest(number: $number) {{
      isDraft
      body
      headRefOid
      commits {{ totalCount }}
      lastCommit: commits(last: 1) {{ nodes {{ commit {{ oid committedDate }} }} }}
      reviewThreads(first: {_PAGE_SIZE}, after: $cursor) {{
        pageInfo {{ hasNextPage endCursor }}
        nodes {{
          id
          isResolved
          path
          line
          comments(first: {_PAGE_SIZE}) {{{_COMMENT_FIELDS}}}
        }}
      }}
    }}
  }}
}}
"""

THREAD_COMMENTS_QUERY = f"""
query($id: ID!, $cursor: String) {{
  node(id: $id) {{
    ... on PullRequestReviewThread {{
      comments(first: {_PAGE_SIZE}, after: $cursor) {{{_COMMENT_FIELDS}}}
    }}
  }}
}}
"""

REPLY_MUTATION = """
mutation($threadId: ID!, $body: String!) {
  addPullRequestReviewThreadReply(input: {pullRequestReviewThreadId: $threadId, body: $body}) {
    comment { id }
  }
}
"""

RESOLVE_MUTATION = """
mutation($threadId: ID!) {
  resolveReviewThread(input: {threadId: $threadId}) { thread { id isResolved } }
}
"""

DELETE_COMMENT_MUTATION = """
mutation($id: ID!) {
  deletePullRequestReviewComment(input: {id: $id}) { clientMutationId }
}
"""

UPDATE_COMMENT_MUTATION = """
mutation($id: ID!, $body: String!) {
  updatePullRequestReviewComment(input: {pullRequestReviewCommentId: $id, body: $body}) {
    pullRequestReviewComment { id }
  }
}
"""


class TransientFetchError(RuntimeError):
    """A GitHub read kept failing after the gateway's retries."""

    def __init__(self, message: str, *, operation: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts


@dataclass(frozen=True)
class GitHubGateway:
    read_attempts: int = _READ_ATTEMPTS
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    def resolve_pr_context(self, repo_arg: str | None, pr_arg: int | None) -> PrContext:
        if repo_arg is not None:
            owner, name = parse_repo_arg(repo_arg)
        else:
            owner, name = self._detect_repo()
        if pr_arg is not None:
            if pr_arg < 1:
                raise ConfigError("--pr must be a positive pull request number")
            number = pr_arg
        else:
            number = self._detect_pr_number()
        return PrContext(owner=owner, name=name, number=number)

    def fetch_snapshot(self, context: PrContext) -> PrSnapshot:
        pr_obj, threads = self._fetch_pull_request(context)
        head_sha = _as_string(pr_obj.get("headRefOid"))
        checks = self.fetch_checks(context, head_sha)

        commits_obj = _as_object_dict(pr_obj.get("commits")) or {}
        snapshot = PrSnapshot(
            context=context,
            is_draft=_as_bool(pr_obj.get("isDraft")),
            commit_count=_as_int(commits_obj.get("totalCount"), field="commits.totalCount"),
            last_pushed_at=_last_commit_time(pr_obj),
            description=_as_string(pr_obj.get("body")),
            head_sha=head_sha,
            checks=checks,
            threads=threads,
        )
        log_event(
            LOGGER,
            "snapshot_fetched",
            pr=context.describe(),
            is_draft=snapshot.is_draft,
            commit_count=snapshot.commit_count,
            check_count=len(checks),
            thread_count=len(threads),
        )
        return snapshot

    def fetch_checks(self, context: PrContext, head_sha: str) -> tuple[CheckResult, ...]:
        if not head_sha:
            return ()
        by_name: dict[str, CheckResult] = {}
        for check in self._list_check_runs(context, head_sha):
            by_name[check.name] = check
        for check in self._list_commit_statuses(context, head_sha):
            by_name[check.name] = check
        log_event(
            LOGGER,
            "github_read",
            endpoint="checks",
            pr=context.describe(),
            count=len(by_name),
        )
        return tuple(by_name.values())

    def post_reply(self, thread_id: str, message: str, *, resolve: bool = False) -> str:
        data = self._graphql(REPLY_MUTATION, {"threadId": thread_id, "body": message})
        reply_obj = _as_object_dict(data.get("addPullRequestReviewThreadReply")) or {}
        comment_obj = _as_object_dict(reply_obj.get("comment")) or {}
        comment_id = _as_string(comment_obj.get("id"))
        if not comment_id:
            raise RuntimeError("Unexpected GitHub response: reply returned no comment id")
        if resolve:
            self._graphql(RESOLVE_MUTATION, {"threadId": thread_id})
        log_event(
            LOGGER,
            "reply_posted",
            thread_id=thread_id,
            comment_id=comment_id,
            resolved=resolve,
        )
        return comment_id

    def update_description(self, context: PrContext, text: str) -> None:
        path = f"/repos/{context.owner}/{context.name}/pulls/{context.number}"
        self._api_json("PATCH", path, payload={"body": text})

    def set_draft_state(self, context: PrContext, *, is_draft: bool) -> None:
        cmd = ["gh", "pr", "ready", str(context.number), "--repo", context.full_name]
        if is_draft:
            cmd.append("--undo")
        run(cmd)

    def delete_comments(self, comment_ids: Sequence[str]) -> tuple[int, int]:
        deleted = 0
        failed = 0
        for comment_id in comment_ids:
            try:
                self._graphql(DELETE_COMMENT_MUTATION, {"id": comment_id})
            except RuntimeError as exc:
                log_warning_event(
                    LOGGER,
                    "github_comment_delete_failed",
                    comment_id=comment_id,
                    error_type=type(exc).__name__,
                )
                failed += 1
                continue
            deleted += 1
        return deleted, failed

    def update_comment(self, comment_id: str, body: str) -> None:
        self._graphql(UPDATE_COMMENT_MUTATION, {"id": comment_id, "body": body})

    def _detect_repo(self) -> tuple[str, str]:
        try:
            raw = run(["gh", "repo", "view", "--json", "owner,name"])
        except CommandError as exc:
            raise ConfigError(
                "Could not detect the repository; run inside a clone or pass --repo OWNER/NAME"
            ) from exc
        view = _as_object_dict(json.loads(raw)) or {}
        owner_obj = _as_object_dict(view.get("owner")) or {}
        owner = _as_string(owner_obj.get("login"))
        name = _as_string(view.get("name"))
        if not owner or not name:
            raise RuntimeError("Unexpected gh repo view output: missing owner or name")
        return owner, name

    def _detect_pr_number(self) -> int:
        # Without --repo, gh resolves the pull request of the checked-out branch.
        try:
            raw = run(["gh", "pr", "view", "--json", "number"])
        except CommandError as exc:
            raise ConfigError(
                "No pull request found for the current branch; create one or pass --pr"
            ) from exc
        view = _as_object_dict(json.loads(raw)) or {}
        return _as_int(view.get("number"), field="number")

    def _fetch_pull_request(
        self, context: PrContext
    ) -> tuple[dict[str, object], tuple[ReviewThread, ...]]:
        pr_obj: dict[str, object] | None = None
        threads: list[ReviewThread] = []
        cursor: str | None = None
        while True:
            data = self._read_graphql(
                "pull_request",
                PULL_REQUEST_QUERY,
                {
                    "owner": context.owner,
                    "name": context.name,
                    "number": context.number,
                    "cursor": cursor,
                },
            )
            repo_obj = _as_object_dict(data.get("repository")) or {}
            page_obj = _as_object_dict(repo_obj.get("pullRequest"))
            if page_obj is None:
                raise RuntimeError(f"Pull request {context.describe()} was not found")
            if pr_obj is None:
                pr_obj = page_obj

            connection = _as_object_dict(page_obj.get("reviewThreads")) or {}
            for node in _as_list(connection.get("nodes")):
                thread = self._parse_thread(node)
                if thread is not None:
                    threads.append(thread)

            cursor = _next_cursor(connection)
            if cursor is None:
                break

        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr=context.describe(),
            thread_count=len(threads),
        )
        return pr_obj, tuple(threads)

    def _parse_thread(self, node: object) -> ReviewThread | None:
        node_obj = _as_object_dict(node)
        if node_obj is None:
            return None
        thread_id = _as_string(node_obj.get("id"))
        comments_obj = _as_object_dict(node_obj.get("comments")) or {}
        comments = [_parse_comment(item) for item in _as_list(comments_obj.get("nodes"))]

        cursor = _next_cursor(comments_obj)
        while cursor is not None:
            data = self._read_graphql(
                "thread_comments",
                THREAD_COMMENTS_QUERY,
                {"id": thread_id, "cursor": cursor},
            )
            thread_obj = _as_object_dict(data.get("node"))
            if thread_obj is None:
                raise RuntimeError(f"Review thread {thread_id} was not found")
            page_obj = _as_object_dict(thread_obj.get("comments")) or {}
            comments.extend(_parse_comment(item) for item in _as_list(page_obj.get("nodes")))
            cursor = _next_cursor(page_obj)

        return ReviewThread(
            thread_id=thread_id,
            is_resolved=_as_bool(node_obj.get("isResolved")),
            comments=tuple(comment for comment in comments if comment is not None),
            path=_as_optional_str(node_obj.get("path")),
            line=_as_optional_int(node_obj.get("line")),
        )

    def _list_check_runs(self, context: PrContext, head_sha: str) -> list[CheckResult]:
        results: list[CheckResult] = []
        page = 1
        while True:
            query = urlencode(
                {"filter": "latest", "per_page": str(_PAGE_SIZE), "page": str(page)}
            )
            path = f"/repos/{context.owner}/{context.name}/commits/{head_sha}/check-runs?{query}"
            payload = _as_object_dict(self._read_json("check_runs", path))
            if payload is None:
                raise RuntimeError("Unexpected GitHub response: expected object for check runs")
            runs = _as_list(payload.get("check_runs"))
            for item in runs:
                run_obj = _as_object_dict(item)
                if run_obj is None:
                    continue
                results.append(
                    CheckResult(
                        name=_as_string(run_obj.get("name")),
                        conclusion=_check_run_conclusion(
                            _normalize_optional_lower_str(run_obj.get("status")),
                            _normalize_optional_lower_str(run_obj.get("conclusion")),
                        ),
                        url=_as_optional_str(run_obj.get("html_url"))
                        or _as_optional_str(run_obj.get("details_url")),
                    )
                )
            total = _as_optional_int(payload.get("total_count"))
            if len(runs) < _PAGE_SIZE or (total is not None and len(results) >= total):
                return results
            page += 1

    def _list_commit_statuses(self, context: PrContext, head_sha: str) -> list[CheckResult]:
        path = f"/repos/{context.owner}/{context.name}/commits/{head_sha}/status"
        payload = _as_object_dict(self._read_json("commit_status", path))
        if payload is None:
            raise RuntimeError("Unexpected GitHub response: expected object for commit status")
        results: list[CheckResult] = []
        for item in _as_list(payload.get("statuses")):
            status_obj = _as_object_dict(item)
            if status_obj is None:
                continue
            results.append(
                CheckResult(
                    name=_as_string(status_obj.get("context")),
                    conclusion=_commit_status_conclusion(
                        _normalize_optional_lower_str(status_obj.get("state"))
                    ),
                    url=_as_optional_str(status_obj.get("target_url")),
                )
            )
        return results

    def _read_json(self, operation: str, path: str) -> object:
        return self._with_read_retry(operation, lambda: self._api_json("GET", path))

    def _read_graphql(
        self, operation: str, query: str, variables: dict[str, object]
    ) -> dict[str, object]:
        def read() -> dict[str, object]:
            try:
                return self._graphql(query, variables)
            except (RuntimeError, ValueError) as exc:
                raise TransientFetchError(
                    f"GitHub GraphQL read failed for {operation}: {exc}", operation=operation
                ) from exc

        return self._with_read_retry(operation, read)

    def _with_read_retry(self, operation: str, read: Callable[[], T]) -> T:
        attempt = 1
        while True:
            try:
                return read()
            except TransientFetchError as exc:
                if attempt >= self.read_attempts:
                    raise TransientFetchError(
                        f"{exc} (gave up after {attempt} attempt(s))",
                        operation=operation,
                        attempts=attempt,
                    ) from exc
                delay = _RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1))
                log_event(
                    LOGGER,
                    "github_retry_scheduled",
                    operation=operation,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                time.sleep(delay)
                attempt += 1

    def _graphql(self, query: str, variables: dict[str, object]) -> dict[str, object]:
        body = json.dumps({"query": query, "variables": variables})
        raw = run(["gh", "api", "graphql", "--input", "-"], input_text=body)
        payload = _as_object_dict(json.loads(raw))
        if payload is None:
            raise RuntimeError("Unexpected GitHub response: expected object for GraphQL")
        errors = _as_list(payload.get("errors"))
        if errors:
            messages = []
            for error in errors:
                error_obj = _as_object_dict(error) or {}
                messages.append(_as_string(error_obj.get("message")) or "<unknown>")
            raise RuntimeError(f"GitHub GraphQL errors: {'; '.join(messages)}")
        data = _as_object_dict(payload.get("data"))
        if data is None:
            raise RuntimeError("Unexpected GitHub response: GraphQL payload has no data")
        return data

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False)
            try:
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_warning_event(
                    LOGGER,
                    "github_poll_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise TransientFetchError(
                    f"GitHub GET failed for path {path}: {exc}", operation=path
                ) from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload)
        return json.loads(raw) if raw.strip() else None


def parse_repo_arg(value: str) -> tuple[str, str]:
    owner, sep, name = value.strip().partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f"--repo must look like OWNER/NAME, got {value!r}")
    return owner, name


def _check_run_conclusion(status: str | None, conclusion: str | None) -> CheckConclusion:
    if status != "completed":
        return CheckConclusion.PENDING
    if conclusion == "success":
        return CheckConclusion.SUCCESS
    if conclusion in _FAILING_RUN_CONCLUSIONS:
        return CheckConclusion.FAILURE
    if conclusion == "skipped":
        return CheckConclusion.SKIPPED
    if conclusion in _NEUTRAL_RUN_CONCLUSIONS:
        return CheckConclusion.NEUTRAL
    # Completed without a known conclusion; treat as still settling.
    return CheckConclusion.PENDING


def _commit_status_conclusion(state: str | None) -> CheckConclusion:
    if state == "success":
        return CheckConclusion.SUCCESS
    if state in {"failure", "error"}:
        return CheckConclusion.FAILURE
    return CheckConclusion.PENDING


def _parse_comment(value: object) -> ReviewComment | None:
    comment_obj = _as_object_dict(value)
    if comment_obj is None:
        return None
    author_obj = _as_object_dict(comment_obj.get("author"))
    # Deleted accounts come back with a null author.
    author = _as_string(author_obj.get("login")) if author_obj else ""
    return ReviewComment(
        comment_id=_as_string(comment_obj.get("id")),
        author=author or _GHOST_LOGIN,
        body=_as_string(comment_obj.get("body")),
        created_at=_as_string(comment_obj.get("createdAt")),
    )


def _last_commit_time(pr_obj: dict[str, object]) -> datetime:
    last_commit = _as_object_dict(pr_obj.get("lastCommit")) or {}
    for node in _as_list(last_commit.get("nodes")):
        node_obj = _as_object_dict(node) or {}
        commit_obj = _as_object_dict(node_obj.get("commit")) or {}
        committed = _as_optional_str(commit_obj.get("committedDate"))
        if committed:
            return _parse_timestamp(committed)
    raise RuntimeError("Unexpected GitHub response: pull request has no head commit")


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _next_cursor(connection: dict[str, object]) -> str | None:
    page_info = _as_object_dict(connection.get("pageInfo")) or {}
    if page_info.get("hasNextPage") is not True:
        return None
    return _as_optional_str(page_info.get("endCursor"))


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _normalize_optional_lower_str(value: object) -> str | None:
    raw = _as_optional_str(value)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_list(value: object) -> list[object]:
    if not isinstance(value, list):
        return []
    return cast(list[object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise RuntimeError("Unexpected GitHub response type for optional int field")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(
                f"Unexpected GitHub response value for optional int field: {value}"
            ) from exc
    raise RuntimeError("Unexpected GitHub response type for optional int field")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise RuntimeError("Unexpected GitHub response type for bool field")
