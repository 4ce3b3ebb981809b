from __future__ import annotations

from dataclasses import dataclass

from prloop.checks import CheckClassification, CheckFilter, CheckStatus, classify_checks
from prloop.models import (
    Actionable,
    ActionableReason,
    Classification,
    Happy,
    PrSnapshot,
    Waiting,
)
from prloop.threads import ThreadClassification, classify_threads


@dataclass(frozen=True)
class PrEvaluation:
    snapshot: PrSnapshot
    checks: CheckClassification
    threads: ThreadClassification
    classification: Classification


def classify_pr(
    snapshot: PrSnapshot,
    checks: CheckClassification,
    threads: ThreadClassification,
    *,
    require_checks: bool = False,
) -> Classification:
    """Combine check and thread state into one classification.

    A failing check or an unanswered human comment outranks pending checks:
    the agent can act on those immediately. Happy is never reported while any
    check is pending.
    """
    _ = snapshot
    if checks.status is CheckStatus.HAS_FAILURE or threads.threads_needing_response:
        reasons = [ActionableReason(kind="failing_check", subject=n) for n in checks.failing_names]
        reasons.extend(
            ActionableReason(kind="thread_needs_response", subject=thread_id)
            for thread_id in threads.thread_ids_needing_response
        )
        return Actionable(reasons=tuple(reasons))
    if checks.status is CheckStatus.HAS_PENDING:
        return Waiting(pending_check_names=checks.pending_names)
    if checks.status is CheckStatus.NO_CHECKS and require_checks:
        return Waiting(awaiting_checks=True)
    return Happy()


def evaluate_snapshot(
    snapshot: PrSnapshot,
    check_filter: CheckFilter,
    *,
    require_checks: bool = False,
) -> PrEvaluation:
    checks = classify_checks(snapshot.checks, check_filter)
    threads = classify_threads(snapshot.threads)
    return PrEvaluation(
        snapshot=snapshot,
        checks=checks,
        threads=threads,
        classification=classify_pr(snapshot, checks, threads, require_checks=require_checks),
    )
