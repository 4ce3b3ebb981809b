from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from threading import Event
import json

import pytest

from prloop import cli
from prloop.github_gateway import TransientFetchError
from prloop.models import (
    CheckConclusion,
    CheckResult,
    PrContext,
    PrSnapshot,
    ReviewComment,
    ReviewThread,
)
from prloop.status_block import STATUS_BLOCK_START, parse_status_block, update_status
from prloop.threads import NEWER_COMMENTS_ACKNOWLEDGEMENT, format_agent_message


CONTEXT = PrContext(owner="o", name="r", number=12)


@pytest.fixture(autouse=True)
def _isolated_cwd(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)


def _comment(comment_id: str, body: str, author: str = "alice") -> ReviewComment:
    return ReviewComment(
        comment_id=comment_id, author=author, body=body, created_at="2024-01-01T00:00:00Z"
    )


def _snapshot(*checks: CheckResult, **overrides: object) -> PrSnapshot:
    snapshot = PrSnapshot(
        context=CONTEXT,
        is_draft=True,
        commit_count=1,
        last_pushed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        description="Adds the widget.",
        head_sha="abc",
        checks=checks or (CheckResult(name="build", conclusion=CheckConclusion.SUCCESS),),
        threads=(),
    )
    return replace(snapshot, **overrides)  # type: ignore[arg-type]


class FakeGateway:
    def __init__(self, snapshot: PrSnapshot) -> None:
        self.snapshot = snapshot
        self.descriptions: list[str] = []
        self.replies: list[tuple[str, str, bool]] = []
        self.draft_states: list[bool] = []
        self.deleted: list[str] = []
        self.fetch_error: Exception | None = None

    def resolve_pr_context(self, repo_arg: str | None, pr_arg: int | None) -> PrContext:
        _ = repo_arg, pr_arg
        return CONTEXT

    def fetch_snapshot(self, context: PrContext) -> PrSnapshot:
        assert context == CONTEXT
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.snapshot

    def update_description(self, context: PrContext, text: str) -> None:
        _ = context
        self.descriptions.append(text)
        self.snapshot = replace(self.snapshot, description=text)

    def post_reply(self, thread_id: str, message: str, *, resolve: bool = False) -> str:
        self.replies.append((thread_id, message, resolve))
        return "C100"

    def delete_comments(self, comment_ids: Sequence[str]) -> tuple[int, int]:
        self.deleted.extend(comment_ids)
        return len(comment_ids), 0

    def update_comment(self, comment_id: str, body: str) -> None:
        _ = comment_id, body

    def set_draft_state(self, context: PrContext, *, is_draft: bool) -> None:
        _ = context
        self.draft_states.append(is_draft)


def _run(
    gateway: FakeGateway,
    *argv: str,
    environ: dict[str, str] | None = None,
    stop_event: Event | None = None,
) -> int:
    args = cli.build_parser().parse_args(list(argv))
    return cli.run_command(
        args,
        gateway=gateway,  # type: ignore[arg-type]
        environ={} if environ is None else environ,
        stop_event=stop_event,
    )


FAILING = CheckResult(name="build", conclusion=CheckConclusion.FAILURE)
PENDING = CheckResult(name="build", conclusion=CheckConclusion.PENDING)


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    parsed_wait = parser.parse_args(["-vv", "--pr", "5", "wait", "--until", "actionable-or-happy"])
    parsed_reply = parser.parse_args(["reply", "--thread-id", "T1", "--message", "hi", "--resolve"])
    parsed_default = parser.parse_args([])

    assert parsed_wait.verbose == 2
    assert parsed_wait.pr == 5
    assert parsed_wait.until == "actionable-or-happy"
    assert parsed_reply.command == "reply"
    assert parsed_reply.resolve is True
    assert parsed_default.command is None
    assert parsed_default.require_checks is None


def test_wait_alias_flags_are_mutually_exclusive() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(
            ["--wait-until-actionable", "--wait-until-actionable-or-happy"]
        )


def test_status_exit_codes(capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(FakeGateway(_snapshot())) == cli.EXIT_OK
    assert "## PR READY" in capsys.readouterr().out

    assert _run(FakeGateway(_snapshot(FAILING)), "status") == cli.EXIT_ACTIONABLE
    assert "## ACTION REQUIRED: Fix CI failures" in capsys.readouterr().out

    assert _run(FakeGateway(_snapshot(PENDING))) == cli.EXIT_WAITING
    assert "## WAITING" in capsys.readouterr().out


def test_status_json_output(capsys: pytest.CaptureFixture[str]) -> None:
    thread = ReviewThread(thread_id="T1", is_resolved=False, comments=(_comment("c1", "why?"),))

    code = _run(FakeGateway(_snapshot(threads=(thread,))), "--json")

    payload = json.loads(capsys.readouterr().out)
    assert code == cli.EXIT_ACTIONABLE
    assert payload["state"] == "actionable"
    assert payload["reasons"] == [{"kind": "thread_needs_response", "subject": "T1"}]
    assert payload["threads_needing_response"][0]["pending_comments"][0]["comment_id"] == "c1"


def test_require_checks_flag_turns_no_checks_into_waiting() -> None:
    gateway = FakeGateway(_snapshot(checks=()))
    assert _run(gateway) == cli.EXIT_OK
    assert _run(gateway, "--require-checks") == cli.EXIT_WAITING


def test_wait_returns_on_first_terminal_poll(capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(FakeGateway(_snapshot(FAILING)), "wait") == cli.EXIT_ACTIONABLE
    assert _run(FakeGateway(_snapshot(FAILING)), "--wait-until-actionable") == cli.EXIT_ACTIONABLE
    assert (
        _run(FakeGateway(_snapshot()), "wait", "--until", "actionable-or-happy") == cli.EXIT_OK
    )
    assert "## PR READY" in capsys.readouterr().out


@pytest.mark.parametrize(
    ("argv", "message"),
    [
        (
            ("--wait-until-actionable", "wait", "--until", "actionable-or-happy"),
            "Conflicting wait modes",
        ),
        (("--wait-until-actionable", "checks"), "cannot be combined with the 'checks' command"),
        (("--status-message", "Working"), "--status-message requires --maintain-status"),
        (("--min-wait-after-push", "10"), "min_wait_after_push_seconds must be >= 30"),
        (("--config", "missing.toml"), "Config file not found"),
        (("--exclude-checks", " "), "Check patterns must be non-empty"),
    ],
)
def test_configuration_errors_exit_2(
    argv: tuple[str, ...], message: str, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(FakeGateway(_snapshot()), *argv) == cli.EXIT_CONFIG
    assert message in capsys.readouterr().err


def test_wait_alias_matching_subcommand_is_accepted() -> None:
    gateway = FakeGateway(_snapshot(FAILING))
    assert _run(gateway, "--wait-until-actionable", "wait") == cli.EXIT_ACTIONABLE


def test_maintain_status_requires_draft(capsys: pytest.CaptureFixture[str]) -> None:
    gateway = FakeGateway(_snapshot(is_draft=False))

    code = _run(gateway, "--maintain-status", "--status-message", "Working")

    assert code == cli.EXIT_PRECONDITION
    assert "is not a draft" in capsys.readouterr().err
    assert gateway.descriptions == []


def test_maintain_status_writes_block_once() -> None:
    gateway = FakeGateway(_snapshot())

    code = _run(
        gateway,
        "--maintain-status",
        "--status-message",
        "Addressing review feedback",
        "wait",
        "--until",
        "actionable-or-happy",
    )

    assert code == cli.EXIT_OK
    assert len(gateway.descriptions) == 1
    written = gateway.descriptions[0]
    assert written.startswith("Adds the widget.\n\n" + STATUS_BLOCK_START)
    block = parse_status_block(written)
    assert block is not None
    assert block.status_message == "Addressing review feedback"


def test_maintain_status_skips_write_when_unchanged() -> None:
    gateway = FakeGateway(_snapshot(description=update_status("Body", None)))
    assert _run(gateway, "--maintain-status") == cli.EXIT_OK
    assert gateway.descriptions == []


def test_wait_cancelled_by_stop_event(capsys: pytest.CaptureFixture[str]) -> None:
    stop = Event()
    stop.set()

    code = _run(FakeGateway(_snapshot(PENDING)), "wait", stop_event=stop)

    assert code == cli.EXIT_CANCELLED
    assert "Polling cancelled" in capsys.readouterr().err


def test_fetch_failures_exit_4(capsys: pytest.CaptureFixture[str]) -> None:
    gateway = FakeGateway(_snapshot())
    gateway.fetch_error = TransientFetchError("HTTP 502", operation="pull_request", attempts=3)

    assert _run(gateway) == cli.EXIT_FETCH
    assert "failed to fetch PR state: HTTP 502" in capsys.readouterr().err


def test_unexpected_errors_exit_1(capsys: pytest.CaptureFixture[str]) -> None:
    gateway = FakeGateway(_snapshot())
    gateway.fetch_error = RuntimeError("Pull request o/r#12 was not found")

    assert _run(gateway) == cli.EXIT_UNEXPECTED
    assert "Error: Pull request o/r#12 was not found" in capsys.readouterr().err


class UnparseableReplyGateway(FakeGateway):
    def post_reply(self, thread_id: str, message: str, *, resolve: bool = False) -> str:
        _ = thread_id, message, resolve
        raise json.JSONDecodeError("Expecting value", "<html>bad gateway</html>", 0)


def test_unparseable_write_response_exits_1(capsys: pytest.CaptureFixture[str]) -> None:
    gateway = UnparseableReplyGateway(_snapshot())

    code = _run(gateway, "reply", "--thread-id", "T1", "--message", "Renamed.")

    assert code == cli.EXIT_UNEXPECTED
    assert "Error: Expecting value: line 1 column 1 (char 0)" in capsys.readouterr().err


def test_reply_posts_agent_message_and_resolves(capsys: pytest.CaptureFixture[str]) -> None:
    gateway = FakeGateway(_snapshot())

    code = _run(gateway, "reply", "--thread-id", "T1", "--message", "Renamed.", "--resolve")

    assert code == cli.EXIT_OK
    assert gateway.replies == [("T1", format_agent_message("Renamed."), True)]
    out = capsys.readouterr().out
    assert "✓ Reply posted (comment ID: C100)" in out
    assert "✓ Thread resolved" in out


def test_reply_with_newer_comments_keeps_thread_open(capsys: pytest.CaptureFixture[str]) -> None:
    thread = ReviewThread(
        thread_id="T1",
        is_resolved=False,
        comments=(
            _comment("c1", "please rename"),
            _comment("c2", "also add a test", author="bob"),
        ),
    )
    gateway = FakeGateway(_snapshot(threads=(thread,)))

    code = _run(
        gateway, "reply", "--in-reply-to", "c1", "--message", "Renamed.", "--resolve"
    )

    assert code == cli.EXIT_OK
    ((thread_id, body, resolve),) = gateway.replies
    assert thread_id == "T1"
    assert body == format_agent_message(f"Renamed.\n\n{NEWER_COMMENTS_ACKNOWLEDGEMENT}")
    assert resolve is False
    out = capsys.readouterr().out
    assert "## NEWER COMMENTS DETECTED" in out
    assert "**@bob** (comment `c2`):" in out
    assert "Thread resolved" not in out


def test_reply_json_without_newer_comments(capsys: pytest.CaptureFixture[str]) -> None:
    thread = ReviewThread(
        thread_id="T1",
        is_resolved=False,
        comments=(_comment("c1", "please rename"), _comment("c2", format_agent_message("ok"))),
    )
    gateway = FakeGateway(_snapshot(threads=(thread,)))

    code = _run(
        gateway,
        "--json",
        "reply",
        "--thread-id",
        "T1",
        "--in-reply-to",
        "c1",
        "--message",
        "Done",
        "--resolve",
    )

    assert code == cli.EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    assert payload == {
        "thread_id": "T1",
        "comment_id": "C100",
        "resolved": True,
        "newer_comments": [],
    }


@pytest.mark.parametrize(
    ("argv", "message"),
    [
        (("reply", "--message", "hi"), "reply needs --thread-id or --in-reply-to"),
        (("reply", "--message", "  ", "--thread-id", "T1"), "--message must be non-empty"),
        (("reply", "--message", "hi", "--in-reply-to", "nope"), "matches the reply target"),
        (
            ("reply", "--message", "hi", "--thread-id", "T1", "--in-reply-to", "nope"),
            "Comment nope not found in thread T1",
        ),
    ],
)
def test_reply_argument_errors(
    argv: tuple[str, ...], message: str, capsys: pytest.CaptureFixture[str]
) -> None:
    thread = ReviewThread(thread_id="T1", is_resolved=False, comments=(_comment("c1", "q"),))
    gateway = FakeGateway(_snapshot(threads=(thread,)))

    assert _run(gateway, *argv) == cli.EXIT_CONFIG
    assert message in capsys.readouterr().err
    assert gateway.replies == []


def test_ready_rejects_multiple_commits(capsys: pytest.CaptureFixture[str]) -> None:
    gateway = FakeGateway(_snapshot(commit_count=2))

    assert _run(gateway, "ready") == cli.EXIT_PRECONDITION

    err = capsys.readouterr().err
    assert "PR has 2 commits" in err
    assert "To squash all commits on this branch:" in err
    assert gateway.draft_states == []


def test_ready_failure_as_json(capsys: pytest.CaptureFixture[str]) -> None:
    gateway = FakeGateway(_snapshot(PENDING, commit_count=3))

    assert _run(gateway, "--json", "ready") == cli.EXIT_PRECONDITION

    payload = json.loads(capsys.readouterr().out)
    assert payload["error"] == "precondition"
    assert payload["code"] == "commit_count"
    assert [failure["code"] for failure in payload["failures"]] == [
        "commit_count",
        "checks_not_green",
    ]
    assert payload["failures"][1]["pending_checks"] == ["build"]


def test_ready_success(capsys: pytest.CaptureFixture[str]) -> None:
    agent_thread = ReviewThread(
        thread_id="T1",
        is_resolved=True,
        comments=(_comment("c1", format_agent_message("plan")),),
    )
    gateway = FakeGateway(
        _snapshot(
            threads=(agent_thread,),
            description=update_status("Adds the widget.", "Almost done"),
        )
    )

    assert _run(gateway, "--json", "ready") == cli.EXIT_OK

    payload = json.loads(capsys.readouterr().out)
    assert payload["deleted_comments"] == 1
    assert payload["deleted_thread_ids"] == ["T1"]
    assert payload["status_block_removed"] is True
    assert gateway.deleted == ["c1"]
    assert gateway.descriptions == ["Adds the widget."]
    assert gateway.draft_states == [False]


def test_ready_preserving_agent_threads(capsys: pytest.CaptureFixture[str]) -> None:
    agent_thread = ReviewThread(
        thread_id="T1",
        is_resolved=True,
        comments=(_comment("c1", format_agent_message("plan")),),
    )
    gateway = FakeGateway(_snapshot(threads=(agent_thread,)))

    assert _run(gateway, "ready", "--preserve-agent-threads") == cli.EXIT_OK

    assert gateway.deleted == []
    assert "✓ PR o/r#12 marked ready for review" in capsys.readouterr().out


def test_checks_command_applies_filters(capsys: pytest.CaptureFixture[str]) -> None:
    gateway = FakeGateway(
        _snapshot(
            CheckResult(name="build", conclusion=CheckConclusion.SUCCESS),
            CheckResult(name="flaky-e2e", conclusion=CheckConclusion.FAILURE),
        )
    )

    assert _run(gateway, "--exclude-checks", "flaky-*", "checks") == cli.EXIT_OK
    out = capsys.readouterr().out
    assert "## Success (1)" in out
    assert "flaky-e2e" not in out

    assert (
        _run(gateway, "--json", "checks", environ={"PRLOOP_INCLUDE_CHECKS": "flaky-*"})
        == cli.EXIT_OK
    )
    assert json.loads(capsys.readouterr().out) == [
        {"name": "flaky-e2e", "conclusion": "failure", "url": None}
    ]


def test_main_wires_logging_and_exit_code(monkeypatch: pytest.MonkeyPatch) -> None:
    modes: list[str | None] = []
    handlers: list[int] = []
    monkeypatch.setattr(cli.signal, "signal", lambda signum, handler: handlers.append(signum))
    monkeypatch.setattr(cli, "configure_logging", modes.append)
    monkeypatch.setattr(cli, "GitHubGateway", lambda: FakeGateway(_snapshot(FAILING)))

    with pytest.raises(SystemExit) as exc_info:
        cli.main(["-v", "status"])
    assert exc_info.value.code == cli.EXIT_ACTIONABLE

    monkeypatch.setattr(cli, "GitHubGateway", lambda: FakeGateway(_snapshot()))
    cli.main(["-vv"])
    cli.main([])
    assert modes == ["low", "high", None]
    assert handlers == [cli.signal.SIGTERM] * 3
