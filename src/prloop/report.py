"""Human and machine readable renderings of PR state for the CLI."""

from __future__ import annotations

from collections.abc import Sequence

from prloop.checks import group_by_conclusion
from prloop.models import (
    Actionable,
    CheckConclusion,
    CheckResult,
    PrContext,
    ReviewComment,
    Waiting,
    classification_name,
)
from prloop.readiness import PreconditionFailure, ReadinessReport, ReadyResult
from prloop.state_machine import PrEvaluation
from prloop.threads import find_thread, pending_human_comments


_CONCLUSION_ORDER = (
    CheckConclusion.FAILURE,
    CheckConclusion.PENDING,
    CheckConclusion.SUCCESS,
    CheckConclusion.SKIPPED,
    CheckConclusion.NEUTRAL,
)
_CONCLUSION_SYMBOLS = {
    CheckConclusion.FAILURE: "✗",
    CheckConclusion.PENDING: "○",
    CheckConclusion.SUCCESS: "✓",
    CheckConclusion.SKIPPED: "-",
    CheckConclusion.NEUTRAL: "~",
}


def render_status(evaluation: PrEvaluation) -> str:
    snapshot = evaluation.snapshot
    classification = evaluation.classification
    lines = [f"# PR Analysis: {snapshot.context.describe()}", ""]

    if isinstance(classification, Actionable):
        if classification.thread_ids:
            lines.extend(_render_threads_needing_response(evaluation))
        if classification.failing_check_names:
            lines.append("## ACTION REQUIRED: Fix CI failures")
            lines.append("")
            lines.append(f"{len(classification.failing_check_names)} check(s) failed:")
            for check in evaluation.checks.checks:
                if check.name in classification.failing_check_names:
                    lines.append(_check_line(check))
            lines.append("")
            lines.append("Investigate the failures, then push fixes.")
        pending = evaluation.checks.pending_names
        if pending:
            lines.append("")
            lines.append(f"○ Note: {len(pending)} check(s) are still pending.")
    elif isinstance(classification, Waiting):
        lines.append("## WAITING: CI checks in progress")
        lines.append("")
        if classification.awaiting_checks:
            lines.append("No checks have reported yet and checks are required.")
        else:
            lines.append(f"{len(classification.pending_check_names)} check(s) pending:")
            for name in classification.pending_check_names:
                lines.append(f"  ○ {name}")
        lines.append("")
        lines.append("No action needed. Wait for CI to complete.")
    else:
        lines.append("## PR READY")
        lines.append("")
        lines.append("✓ All CI checks passed")
        lines.append("✓ No unaddressed review comments")
        lines.append("")
        lines.append("The PR is ready for merge or further review.")

    human_review_count = len(evaluation.threads.human_review_threads)
    if human_review_count:
        lines.append("")
        lines.append(f"📎 {human_review_count} thread(s) set aside for human review.")
    return "\n".join(lines)


def _render_threads_needing_response(evaluation: PrEvaluation) -> list[str]:
    threads = evaluation.threads.threads_needing_response
    lines = [
        "## ACTION REQUIRED: Respond to review comments",
        "",
        f"{len(threads)} thread(s) need a response.",
        "",
    ]
    for index, thread in enumerate(threads, start=1):
        lines.append(f"### Thread {index} - {thread.location}")
        lines.append(f"Thread ID: `{thread.thread_id}`")
        lines.append("")
        for comment in pending_human_comments(thread):
            lines.extend(_quote_comment(comment))
        if index < len(threads):
            lines.append("---")
            lines.append("")
    lines.append("To reply, use:")
    lines.append(
        '  prloop reply --thread-id <THREAD_ID> --in-reply-to <COMMENT_ID> --message "..."'
    )
    lines.append("")
    lines.append("--in-reply-to should be the ID of the last comment shown above.")
    return lines


def _quote_comment(comment: ReviewComment) -> list[str]:
    lines = [f"**@{comment.author}** (comment `{comment.comment_id}`):"]
    lines.extend(f"> {line}" for line in comment.body.splitlines() or [""])
    lines.append("")
    return lines


def _check_line(check: CheckResult) -> str:
    line = f"  {_CONCLUSION_SYMBOLS[check.conclusion]} {check.name}"
    if check.url:
        line += f" ({check.url})"
    return line


def render_checks(context: PrContext, checks: Sequence[CheckResult]) -> str:
    lines = [f"# CI Checks: {context.describe()}", ""]
    if not checks:
        lines.append("No checks found.")
        return "\n".join(lines)

    grouped = group_by_conclusion(checks)
    for conclusion in _CONCLUSION_ORDER:
        items = grouped[conclusion]
        if not items:
            continue
        lines.append(f"## {conclusion.value.capitalize()} ({len(items)})")
        lines.extend(_check_line(check) for check in items)
        lines.append("")
    return "\n".join(lines).rstrip("\n")


def render_newer_comments(thread_id: str, comments: Sequence[ReviewComment]) -> str:
    plural = len(comments) != 1
    lines = [
        "",
        "## NEWER COMMENTS DETECTED",
        "",
        (
            f"The following {len(comments)} comment{'s' if plural else ''} "
            f"{'were' if plural else 'was'} posted to thread `{thread_id}` while you were working."
        ),
        "",
    ]
    for comment in comments:
        lines.extend(_quote_comment(comment))
    lines.append("The thread was left unresolved; respond to these before resolving it.")
    return "\n".join(lines)


def render_readiness_failure(report: ReadinessReport) -> str:
    lines = [f"PR {report.context.describe()} is not ready:"]
    for failure in report.failures:
        lines.append(f"  ✗ {failure.message}")
    if any(failure.code == "commit_count" for failure in report.failures):
        lines.extend(_squash_instructions())
    return "\n".join(lines)


def _squash_instructions() -> list[str]:
    return [
        "",
        "To squash all commits on this branch:",
        "  git fetch origin",
        "  git reset --soft $(git merge-base HEAD origin/main) && git commit",
        "",
        "Describe the whole change in the squashed commit message, force-push, then wait",
        "for CI with `prloop wait --until actionable-or-happy --maintain-status`",
        "and run `prloop ready` again.",
    ]


def render_ready_result(result: ReadyResult) -> str:
    lines: list[str] = []
    if result.deleted_comment_count:
        lines.append(
            f"✓ Deleted {result.deleted_comment_count} comment(s) from "
            f"{len(result.deleted_thread_ids)} agent-only thread(s)"
        )
    if result.stripped_comment_count:
        lines.append(
            f"✓ Stripped the human-review marker from {result.stripped_comment_count} comment(s)"
        )
    if result.status_block_removed:
        lines.append("✓ Removed the status block from the PR description")
    lines.append(f"✓ PR {result.context.describe()} marked ready for review")
    lines.extend(f"  warning: {warning}" for warning in result.warnings)
    return "\n".join(lines)


def evaluation_to_json(evaluation: PrEvaluation) -> dict[str, object]:
    snapshot = evaluation.snapshot
    classification = evaluation.classification
    reasons: list[dict[str, str]] = []
    if isinstance(classification, Actionable):
        reasons = [
            {"kind": reason.kind, "subject": reason.subject} for reason in classification.reasons
        ]
    threads_payload = []
    for thread_id in evaluation.threads.thread_ids_needing_response:
        thread = find_thread(snapshot.threads, thread_id)
        if thread is None:
            continue
        threads_payload.append(
            {
                "thread_id": thread.thread_id,
                "location": thread.location,
                "pending_comments": [
                    {"comment_id": c.comment_id, "author": c.author, "body": c.body}
                    for c in pending_human_comments(thread)
                ],
            }
        )
    return {
        "state": classification_name(classification),
        "pr": {
            "owner": snapshot.context.owner,
            "name": snapshot.context.name,
            "number": snapshot.context.number,
            "is_draft": snapshot.is_draft,
            "commit_count": snapshot.commit_count,
            "head_sha": snapshot.head_sha,
        },
        "reasons": reasons,
        "check_status": evaluation.checks.status.value,
        "failing_checks": list(evaluation.checks.failing_names),
        "pending_checks": list(evaluation.checks.pending_names),
        "awaiting_checks": isinstance(classification, Waiting) and classification.awaiting_checks,
        "threads_needing_response": threads_payload,
        "human_review_thread_ids": [
            thread.thread_id for thread in evaluation.threads.human_review_threads
        ],
    }


def checks_to_json(checks: Sequence[CheckResult]) -> list[dict[str, object]]:
    return [
        {"name": check.name, "conclusion": check.conclusion.value, "url": check.url}
        for check in checks
    ]


def failure_to_json(failure: PreconditionFailure) -> dict[str, object]:
    return {
        "code": failure.code,
        "message": failure.message,
        "commit_count": failure.commit_count,
        "thread_ids": list(failure.thread_ids),
        "failing_checks": list(failure.failing_check_names),
        "pending_checks": list(failure.pending_check_names),
    }
