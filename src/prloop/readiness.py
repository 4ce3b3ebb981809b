from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
from typing import Literal, Protocol

from prloop.checks import CheckFilter, CheckStatus
from prloop.models import PrContext, PrSnapshot
from prloop.observability import log_event, log_warning_event
from prloop.state_machine import PrEvaluation, evaluate_snapshot
from prloop import status_block
from prloop.threads import (
    deletable_agent_threads,
    has_human_review_marker,
    strip_human_review_marker,
)


PreconditionCode = Literal["not_draft", "commit_count", "unresolved_threads", "checks_not_green"]

LOGGER = logging.getLogger("prloop.readiness")


@dataclass(frozen=True)
class PreconditionFailure:
    code: PreconditionCode
    message: str
    commit_count: int | None = None
    thread_ids: tuple[str, ...] = ()
    failing_check_names: tuple[str, ...] = ()
    pending_check_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReadinessReport:
    context: PrContext
    failures: tuple[PreconditionFailure, ...] = ()

    @property
    def is_ready(self) -> bool:
        return not self.failures

    @property
    def first_failure(self) -> PreconditionFailure | None:
        return self.failures[0] if self.failures else None


class PreconditionError(RuntimeError):
    def __init__(
        self,
        failure: PreconditionFailure,
        *,
        report: ReadinessReport | None = None,
    ) -> None:
        super().__init__(failure.message)
        self.failure = failure
        self.report = report

    @property
    def code(self) -> PreconditionCode:
        return self.failure.code


@dataclass(frozen=True)
class ReadyResult:
    context: PrContext
    deleted_comment_count: int = 0
    failed_deletion_count: int = 0
    deleted_thread_ids: tuple[str, ...] = ()
    stripped_comment_count: int = 0
    failed_strip_count: int = 0
    status_block_removed: bool = False
    warnings: tuple[str, ...] = ()


class ReadinessGateway(Protocol):
    def fetch_snapshot(self, context: PrContext) -> PrSnapshot: ...

    def delete_comments(self, comment_ids: Sequence[str]) -> tuple[int, int]: ...

    def update_comment(self, comment_id: str, body: str) -> None: ...

    def update_description(self, context: PrContext, text: str) -> None: ...

    def set_draft_state(self, context: PrContext, *, is_draft: bool) -> None: ...


def require_draft(snapshot: PrSnapshot) -> None:
    if not snapshot.is_draft:
        raise PreconditionError(_not_draft_failure(snapshot.context))


def validate_readiness(
    evaluation: PrEvaluation, *, require_checks: bool = False
) -> ReadinessReport:
    """Evaluate every readiness precondition, most fundamental first.

    All failures are collected so callers can show the whole picture, while
    ``first_failure`` names the one that blocks.
    """
    snapshot = evaluation.snapshot
    failures: list[PreconditionFailure] = []

    if not snapshot.is_draft:
        failures.append(_not_draft_failure(snapshot.context))

    if snapshot.commit_count != 1:
        failures.append(
            PreconditionFailure(
                code="commit_count",
                message=(
                    f"PR has {snapshot.commit_count} commits; squash to a single commit "
                    "before marking ready"
                ),
                commit_count=snapshot.commit_count,
            )
        )

    unresolved = evaluation.threads.unresolved_thread_ids
    if unresolved:
        failures.append(
            PreconditionFailure(
                code="unresolved_threads",
                message=(
                    f"PR has {len(unresolved)} unresolved review thread(s); "
                    "all threads must be resolved before marking ready"
                ),
                thread_ids=unresolved,
            )
        )

    checks = evaluation.checks
    checks_green = checks.status is CheckStatus.ALL_PASSING or (
        checks.status is CheckStatus.NO_CHECKS and not require_checks
    )
    if not checks_green:
        failures.append(
            PreconditionFailure(
                code="checks_not_green",
                message=_checks_message(
                    checks.status, checks.failing_names, checks.pending_names
                ),
                failing_check_names=checks.failing_names,
                pending_check_names=checks.pending_names,
            )
        )

    return ReadinessReport(context=snapshot.context, failures=tuple(failures))


class ReadinessValidator:
    def __init__(self, gateway: ReadinessGateway) -> None:
        self._gateway = gateway

    def check(
        self,
        context: PrContext,
        check_filter: CheckFilter,
        *,
        require_checks: bool = False,
    ) -> tuple[PrSnapshot, ReadinessReport]:
        snapshot = self._gateway.fetch_snapshot(context)
        evaluation = evaluate_snapshot(snapshot, check_filter, require_checks=require_checks)
        return snapshot, validate_readiness(evaluation, require_checks=require_checks)

    def mark_ready(
        self,
        context: PrContext,
        check_filter: CheckFilter,
        *,
        preserve_agent_threads: bool = False,
        require_checks: bool = False,
    ) -> ReadyResult:
        snapshot, report = self.check(context, check_filter, require_checks=require_checks)
        failure = report.first_failure
        if failure is not None:
            log_event(
                LOGGER,
                "readiness_failed",
                pr_number=context.number,
                code=failure.code,
                failure_count=len(report.failures),
            )
            raise PreconditionError(failure, report=report)

        # Deletion runs first; once stripped, a human-review thread looks deletable.
        deleted = 0
        failed_deletions = 0
        deleted_thread_ids: tuple[str, ...] = ()
        if not preserve_agent_threads:
            deletable = deletable_agent_threads(snapshot.threads)
            comment_ids = [cid for thread in deletable for cid in thread.comment_ids]
            if comment_ids:
                deleted, failed_deletions = self._gateway.delete_comments(comment_ids)
            deleted_thread_ids = tuple(thread.thread_id for thread in deletable)

        stripped, failed_strips = self._strip_human_review_markers(snapshot)

        removed = False
        if status_block.has_status_block(snapshot.description):
            self._gateway.update_description(context, status_block.remove(snapshot.description))
            removed = True

        self._gateway.set_draft_state(context, is_draft=False)

        warnings: list[str] = []
        if failed_deletions:
            warnings.append(f"{failed_deletions} comment deletion(s) failed")
        if failed_strips:
            warnings.append(f"{failed_strips} human-review marker update(s) failed")

        log_event(
            LOGGER,
            "pr_marked_ready",
            pr_number=context.number,
            deleted_comments=deleted,
            failed_deletions=failed_deletions,
            stripped_comments=stripped,
            status_block_removed=removed,
        )
        return ReadyResult(
            context=context,
            deleted_comment_count=deleted,
            failed_deletion_count=failed_deletions,
            deleted_thread_ids=deleted_thread_ids,
            stripped_comment_count=stripped,
            failed_strip_count=failed_strips,
            status_block_removed=removed,
            warnings=tuple(warnings),
        )

    def _strip_human_review_markers(self, snapshot: PrSnapshot) -> tuple[int, int]:
        stripped = 0
        failed = 0
        for thread in snapshot.threads:
            for comment in thread.comments:
                if not has_human_review_marker(comment.body):
                    continue
                try:
                    self._gateway.update_comment(
                        comment.comment_id, strip_human_review_marker(comment.body)
                    )
                except RuntimeError as exc:
                    log_warning_event(
                        LOGGER,
                        "human_review_marker_strip_failed",
                        comment_id=comment.comment_id,
                        error_type=type(exc).__name__,
                    )
                    failed += 1
                    continue
                stripped += 1
        return stripped, failed


def _not_draft_failure(context: PrContext) -> PreconditionFailure:
    return PreconditionFailure(
        code="not_draft",
        message=f"PR {context.describe()} is not a draft",
    )


def _checks_message(
    status: CheckStatus, failing: tuple[str, ...], pending: tuple[str, ...]
) -> str:
    if status is CheckStatus.HAS_FAILURE:
        return f"PR has {len(failing)} failing check(s): {', '.join(failing)}"
    if status is CheckStatus.HAS_PENDING:
        return (
            f"PR has {len(pending)} pending check(s): {', '.join(pending)}; "
            "wait for CI to complete before marking ready"
        )
    return "PR has no checks and checks are required"
