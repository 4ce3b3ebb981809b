from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
import re

from prloop.config import ConfigError
from prloop.models import CheckConclusion, CheckResult


class CheckStatus(str, Enum):
    ALL_PASSING = "all_passing"
    HAS_FAILURE = "has_failure"
    HAS_PENDING = "has_pending"
    NO_CHECKS = "no_checks"


@dataclass(frozen=True)
class CheckClassification:
    status: CheckStatus
    checks: tuple[CheckResult, ...]
    failing_names: tuple[str, ...]
    pending_names: tuple[str, ...]

    @property
    def is_green(self) -> bool:
        return self.status in {CheckStatus.ALL_PASSING, CheckStatus.NO_CHECKS}


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a check-name glob where only ``*`` is special."""
    if not pattern.strip():
        raise ConfigError("Check patterns must be non-empty")
    literal_parts = pattern.split("*")
    return re.compile(".*".join(re.escape(part) for part in literal_parts), re.DOTALL)


def matches(name: str, patterns: Sequence[str]) -> bool:
    return any(compile_pattern(pattern).fullmatch(name) is not None for pattern in patterns)


@dataclass(frozen=True)
class CheckFilter:
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    _include_compiled: tuple[re.Pattern[str], ...] = field(
        default=(), init=False, repr=False, compare=False
    )
    _exclude_compiled: tuple[re.Pattern[str], ...] = field(
        default=(), init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "_include_compiled", tuple(compile_pattern(p) for p in self.include)
        )
        object.__setattr__(
            self, "_exclude_compiled", tuple(compile_pattern(p) for p in self.exclude)
        )

    def considers(self, name: str) -> bool:
        included = not self._include_compiled or any(
            pattern.fullmatch(name) is not None for pattern in self._include_compiled
        )
        if not included:
            return False
        return not any(pattern.fullmatch(name) is not None for pattern in self._exclude_compiled)

    def apply(self, checks: Iterable[CheckResult]) -> tuple[CheckResult, ...]:
        return tuple(check for check in checks if self.considers(check.name))


def classify_checks(
    checks: Iterable[CheckResult], check_filter: CheckFilter | None = None
) -> CheckClassification:
    active_filter = check_filter if check_filter is not None else CheckFilter()
    filtered = active_filter.apply(checks)
    failing = tuple(c.name for c in filtered if c.conclusion is CheckConclusion.FAILURE)
    pending = tuple(c.name for c in filtered if c.conclusion is CheckConclusion.PENDING)

    if not filtered:
        status = CheckStatus.NO_CHECKS
    elif failing:
        status = CheckStatus.HAS_FAILURE
    elif pending:
        status = CheckStatus.HAS_PENDING
    else:
        status = CheckStatus.ALL_PASSING

    return CheckClassification(
        status=status,
        checks=filtered,
        failing_names=failing,
        pending_names=pending,
    )


def group_by_conclusion(
    checks: Iterable[CheckResult],
) -> dict[CheckConclusion, tuple[CheckResult, ...]]:
    grouped: dict[CheckConclusion, list[CheckResult]] = {
        conclusion: [] for conclusion in CheckConclusion
    }
    for check in checks:
        grouped[check.conclusion].append(check)
    return {conclusion: tuple(items) for conclusion, items in grouped.items()}
