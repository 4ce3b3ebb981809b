from __future__ import annotations

import argparse
from collections.abc import Mapping
import json
import logging
import os
from pathlib import Path
import signal
import sys
from threading import Event
from typing import Literal

from prloop import status_block
from prloop.checks import CheckFilter
from prloop.config import (
    ConfigError,
    Settings,
    SettingsOverrides,
    flatten_pattern_args,
    load_settings,
)
from prloop.github_gateway import GitHubGateway, TransientFetchError
from prloop.models import Actionable, Classification, Happy, PrContext, ReviewComment
from prloop.observability import configure_logging, log_event, log_warning_event
from prloop.poll_loop import PollCancelledError, PollLoop, PollTimeoutError
from prloop.readiness import PreconditionError, ReadinessValidator, require_draft
from prloop.report import (
    checks_to_json,
    evaluation_to_json,
    failure_to_json,
    render_checks,
    render_newer_comments,
    render_readiness_failure,
    render_ready_result,
    render_status,
)
from prloop.state_machine import PrEvaluation, evaluate_snapshot
from prloop.threads import (
    NEWER_COMMENTS_ACKNOWLEDGEMENT,
    find_thread,
    find_thread_by_comment,
    format_agent_message,
    human_comments_after,
)


EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIG = 2
EXIT_PRECONDITION = 3
EXIT_FETCH = 4
EXIT_TIMEOUT = 5
EXIT_ACTIONABLE = 10
EXIT_WAITING = 11
EXIT_CANCELLED = 130

WaitUntil = Literal["actionable", "actionable-or-happy"]

LOGGER = logging.getLogger("prloop.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prloop",
        description="Drive a draft pull request through agent review iterations",
    )
    parser.add_argument("--repo", type=str, help="Repository as OWNER/NAME (default: detect)")
    parser.add_argument("--pr", type=int, help="Pull request number (default: current branch)")
    parser.add_argument(
        "--include-checks",
        action="append",
        metavar="PATTERNS",
        help="Only consider checks matching these globs (repeatable, comma separated)",
    )
    parser.add_argument(
        "--exclude-checks",
        action="append",
        metavar="PATTERNS",
        help="Ignore checks matching these globs (repeatable, comma separated)",
    )
    parser.add_argument(
        "--require-checks",
        action="store_true",
        default=None,
        help="Treat a PR with no checks as still waiting instead of green",
    )
    parser.add_argument("--poll-interval", type=float, help="Seconds between polls")
    parser.add_argument(
        "--min-wait-after-push",
        type=float,
        help="Seconds after the last push before green CI is trusted (minimum 30)",
    )
    parser.add_argument("--timeout", type=float, help="Give up waiting after this many seconds")
    parser.add_argument(
        "--maintain-status",
        action="store_true",
        help="Keep the agent status block in the PR description up to date (draft PRs only)",
    )
    parser.add_argument(
        "--status-message",
        type=str,
        help="Status line shown in the status block (requires --maintain-status)",
    )
    parser.add_argument("--config", type=Path, help="Path to a prloop.toml file")
    parser.add_argument("--json", action="store_true", help="Print machine readable JSON")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable runtime logging to stderr (-v key events, -vv everything)",
    )

    wait_alias = parser.add_mutually_exclusive_group()
    wait_alias.add_argument(
        "--wait-until-actionable",
        action="store_true",
        help="Same as `prloop wait --until actionable`",
    )
    wait_alias.add_argument(
        "--wait-until-actionable-or-happy",
        action="store_true",
        help="Same as `prloop wait --until actionable-or-happy`",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("status", help="Report the current PR state (default)")

    wait_parser = subparsers.add_parser("wait", help="Poll until the PR needs attention")
    wait_parser.add_argument(
        "--until",
        choices=("actionable", "actionable-or-happy"),
        default="actionable",
        help="Terminal condition for the wait",
    )

    reply_parser = subparsers.add_parser("reply", help="Reply to a review thread as the agent")
    reply_parser.add_argument("--thread-id", type=str, help="Review thread node id")
    reply_parser.add_argument("--message", type=str, required=True, help="Reply text")
    reply_parser.add_argument(
        "--resolve", action="store_true", help="Resolve the thread after replying"
    )
    reply_parser.add_argument(
        "--in-reply-to",
        type=str,
        help="Comment id being answered; newer human comments keep the thread open",
    )

    ready_parser = subparsers.add_parser("ready", help="Validate and mark the PR ready for review")
    ready_parser.add_argument(
        "--preserve-agent-threads",
        action="store_true",
        help="Keep resolved threads that only contain agent comments",
    )

    subparsers.add_parser("checks", help="List filtered checks grouped by conclusion")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(_verbose_mode(args.verbose))
    stop_event = Event()
    signal.signal(signal.SIGTERM, lambda _signum, _frame: stop_event.set())
    exit_code = run_command(args, gateway=GitHubGateway(), stop_event=stop_event)
    if exit_code != EXIT_OK:
        raise SystemExit(exit_code)


def run_command(
    args: argparse.Namespace,
    *,
    gateway: GitHubGateway,
    environ: Mapping[str, str] | None = None,
    stop_event: Event | None = None,
) -> int:
    as_json = bool(args.json)
    try:
        wait_until = _resolve_wait_until(args)
        if args.status_message is not None and not args.maintain_status:
            raise ConfigError("--status-message requires --maintain-status")
        settings = load_settings(
            _overrides_from_args(args),
            environ=os.environ if environ is None else environ,
            config_path=args.config,
        )
        check_filter = CheckFilter(
            include=settings.include_checks, exclude=settings.exclude_checks
        )
        context = gateway.resolve_pr_context(args.repo, args.pr)

        maintainer: StatusMaintainer | None = None
        if args.maintain_status:
            maintainer = StatusMaintainer(gateway, context, args.status_message)
            snapshot = gateway.fetch_snapshot(context)
            require_draft(snapshot)
            maintainer.refresh(snapshot.description)

        if wait_until is not None:
            return _cmd_wait(
                gateway,
                context,
                check_filter,
                settings,
                until=wait_until,
                maintainer=maintainer,
                stop_event=stop_event,
                as_json=as_json,
            )
        if args.command == "reply":
            return _cmd_reply(
                gateway,
                context,
                thread_id=args.thread_id,
                message=args.message,
                resolve=bool(args.resolve),
                in_reply_to=args.in_reply_to,
                as_json=as_json,
            )
        if args.command == "ready":
            return _cmd_ready(
                gateway,
                context,
                check_filter,
                settings,
                preserve_agent_threads=bool(args.preserve_agent_threads),
                as_json=as_json,
            )
        if args.command == "checks":
            return _cmd_checks(gateway, context, check_filter, as_json=as_json)
        return _cmd_status(gateway, context, check_filter, settings, as_json=as_json)
    except ConfigError as exc:
        _print_error(f"configuration error: {exc}")
        return EXIT_CONFIG
    except PreconditionError as exc:
        if as_json:
            print(json.dumps({"error": "precondition", **_precondition_payload(exc)}, indent=2))
        elif exc.report is not None:
            print(render_readiness_failure(exc.report), file=sys.stderr)
        else:
            _print_error(str(exc))
        return EXIT_PRECONDITION
    except TransientFetchError as exc:
        _print_error(f"failed to fetch PR state: {exc}")
        return EXIT_FETCH
    except PollTimeoutError as exc:
        _print_error(str(exc))
        if as_json:
            print(json.dumps(evaluation_to_json(exc.last_evaluation), indent=2))
        return EXIT_TIMEOUT
    except PollCancelledError as exc:
        _print_error(str(exc))
        return EXIT_CANCELLED
    except KeyboardInterrupt:
        log_event(LOGGER, "poll_cancelled", reason="keyboard_interrupt")
        _print_error("Interrupted")
        return EXIT_CANCELLED
    except (RuntimeError, json.JSONDecodeError) as exc:
        log_warning_event(LOGGER, "command_failed", error_type=type(exc).__name__)
        _print_error(str(exc))
        return EXIT_UNEXPECTED


class StatusMaintainer:
    """Writes the status block only when the description would change."""

    def __init__(self, gateway: GitHubGateway, context: PrContext, message: str | None) -> None:
        self._gateway = gateway
        self._context = context
        self._message = message

    def refresh(self, description: str) -> bool:
        # Logs a warning for a malformed block; upsert leaves stray markers alone.
        status_block.current_status_block(description)
        updated = status_block.update_status(description, self._message)
        if updated == description:
            return False
        self._gateway.update_description(self._context, updated)
        log_event(
            LOGGER,
            "status_block_updated",
            pr=self._context.describe(),
            has_message=self._message is not None,
        )
        return True

    def on_iteration(self, evaluation: PrEvaluation) -> None:
        self.refresh(evaluation.snapshot.description)


def _cmd_status(
    gateway: GitHubGateway,
    context: PrContext,
    check_filter: CheckFilter,
    settings: Settings,
    *,
    as_json: bool,
) -> int:
    evaluation = evaluate_snapshot(
        gateway.fetch_snapshot(context), check_filter, require_checks=settings.require_checks
    )
    _print_evaluation(evaluation, as_json=as_json)
    return _exit_code_for(evaluation.classification)


def _cmd_wait(
    gateway: GitHubGateway,
    context: PrContext,
    check_filter: CheckFilter,
    settings: Settings,
    *,
    until: WaitUntil,
    maintainer: StatusMaintainer | None,
    stop_event: Event | None,
    as_json: bool,
) -> int:
    loop = PollLoop(
        lambda: gateway.fetch_snapshot(context),
        check_filter,
        poll_interval_seconds=settings.poll_interval_seconds,
        settle_delay_seconds=settings.min_wait_after_push_seconds,
        require_checks=settings.require_checks,
        on_iteration=maintainer.on_iteration if maintainer is not None else None,
        stop_event=stop_event,
        timeout_seconds=settings.timeout_seconds,
    )
    if until == "actionable":
        evaluation = loop.wait_until_actionable()
    else:
        evaluation = loop.wait_until_actionable_or_happy()
    _print_evaluation(evaluation, as_json=as_json)
    return _exit_code_for(evaluation.classification)


def _cmd_reply(
    gateway: GitHubGateway,
    context: PrContext,
    *,
    thread_id: str | None,
    message: str,
    resolve: bool,
    in_reply_to: str | None,
    as_json: bool,
) -> int:
    if not message.strip():
        raise ConfigError("--message must be non-empty")
    newer_comments: tuple[ReviewComment, ...] = ()
    if in_reply_to is not None:
        snapshot = gateway.fetch_snapshot(context)
        if thread_id is not None:
            thread = find_thread(snapshot.threads, thread_id)
        else:
            thread = find_thread_by_comment(snapshot.threads, in_reply_to)
        if thread is None:
            raise ConfigError(f"No review thread on {context.describe()} matches the reply target")
        thread_id = thread.thread_id
        found = human_comments_after(thread, in_reply_to)
        if found is None:
            raise ConfigError(f"Comment {in_reply_to} not found in thread {thread_id}")
        newer_comments = found

    if thread_id is None:
        raise ConfigError("reply needs --thread-id or --in-reply-to")
    if newer_comments:
        # Someone is still talking; leave the thread open for the follow-up.
        message = f"{message}\n\n{NEWER_COMMENTS_ACKNOWLEDGEMENT}"
        resolve = False

    comment_id = gateway.post_reply(thread_id, format_agent_message(message), resolve=resolve)

    if as_json:
        payload = {
            "thread_id": thread_id,
            "comment_id": comment_id,
            "resolved": resolve,
            "newer_comments": [
                {"comment_id": c.comment_id, "author": c.author, "body": c.body}
                for c in newer_comments
            ],
        }
        print(json.dumps(payload, indent=2))
        return EXIT_OK

    print(f"Replying to thread {thread_id} on {context.describe()}")
    print(f"✓ Reply posted (comment ID: {comment_id})")
    if resolve:
        print("✓ Thread resolved")
    if newer_comments:
        print(render_newer_comments(thread_id, newer_comments))
    return EXIT_OK


def _cmd_ready(
    gateway: GitHubGateway,
    context: PrContext,
    check_filter: CheckFilter,
    settings: Settings,
    *,
    preserve_agent_threads: bool,
    as_json: bool,
) -> int:
    result = ReadinessValidator(gateway).mark_ready(
        context,
        check_filter,
        preserve_agent_threads=preserve_agent_threads,
        require_checks=settings.require_checks,
    )
    if as_json:
        payload = {
            "pr": context.describe(),
            "deleted_comments": result.deleted_comment_count,
            "failed_deletions": result.failed_deletion_count,
            "deleted_thread_ids": list(result.deleted_thread_ids),
            "stripped_comments": result.stripped_comment_count,
            "status_block_removed": result.status_block_removed,
            "warnings": list(result.warnings),
        }
        print(json.dumps(payload, indent=2))
        return EXIT_OK
    print(render_ready_result(result))
    return EXIT_OK


def _cmd_checks(
    gateway: GitHubGateway, context: PrContext, check_filter: CheckFilter, *, as_json: bool
) -> int:
    checks = check_filter.apply(gateway.fetch_snapshot(context).checks)
    if as_json:
        print(json.dumps(checks_to_json(checks), indent=2))
        return EXIT_OK
    print(render_checks(context, checks))
    return EXIT_OK


def _resolve_wait_until(args: argparse.Namespace) -> WaitUntil | None:
    alias: WaitUntil | None = None
    if args.wait_until_actionable:
        alias = "actionable"
    elif args.wait_until_actionable_or_happy:
        alias = "actionable-or-happy"

    if args.command == "wait":
        if alias is not None and alias != args.until:
            raise ConfigError("Conflicting wait modes between the root flag and `wait --until`")
        return args.until
    if alias is not None and args.command not in (None, "status"):
        raise ConfigError(f"Wait flags cannot be combined with the {args.command!r} command")
    return alias


def _overrides_from_args(args: argparse.Namespace) -> SettingsOverrides:
    return SettingsOverrides(
        include_checks=flatten_pattern_args(args.include_checks),
        exclude_checks=flatten_pattern_args(args.exclude_checks),
        require_checks=args.require_checks,
        poll_interval_seconds=args.poll_interval,
        min_wait_after_push_seconds=args.min_wait_after_push,
        timeout_seconds=args.timeout,
    )


def _print_evaluation(evaluation: PrEvaluation, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(evaluation_to_json(evaluation), indent=2))
        return
    print(render_status(evaluation))


def _exit_code_for(classification: Classification) -> int:
    if isinstance(classification, Happy):
        return EXIT_OK
    if isinstance(classification, Actionable):
        return EXIT_ACTIONABLE
    return EXIT_WAITING


def _precondition_payload(exc: PreconditionError) -> dict[str, object]:
    failures = exc.report.failures if exc.report is not None else (exc.failure,)
    return {
        "code": exc.code,
        "failures": [failure_to_json(failure) for failure in failures],
    }


def _print_error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def _verbose_mode(count: int) -> str | None:
    if count <= 0:
        return None
    return "low" if count == 1 else "high"
