from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal


AGENT_MARKER = "🤖 From Agent:"
HUMAN_REVIEW_SHORTCODE = ":paperclip:"
HUMAN_REVIEW_EMOJI = "📎"

ActionableReasonKind = Literal["failing_check", "thread_needs_response"]


class CheckConclusion(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"
    SKIPPED = "skipped"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class PrContext:
    owner: str
    name: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def describe(self) -> str:
        return f"{self.full_name}#{self.number}"


@dataclass(frozen=True)
class CheckResult:
    name: str
    conclusion: CheckConclusion
    url: str | None = None


@dataclass(frozen=True)
class ReviewComment:
    comment_id: str
    author: str
    body: str
    created_at: str

    @property
    def is_from_agent(self) -> bool:
        return self.body.startswith(AGENT_MARKER)


@dataclass(frozen=True)
class ReviewThread:
    thread_id: str
    is_resolved: bool
    comments: tuple[ReviewComment, ...]
    path: str | None = None
    line: int | None = None

    @property
    def last_comment(self) -> ReviewComment | None:
        if not self.comments:
            return None
        return self.comments[-1]

    @property
    def comment_ids(self) -> tuple[str, ...]:
        return tuple(comment.comment_id for comment in self.comments)

    @property
    def location(self) -> str:
        if self.path and self.line is not None:
            return f"{self.path}:{self.line}"
        if self.path:
            return self.path
        return "unknown location"


@dataclass(frozen=True)
class PrSnapshot:
    context: PrContext
    is_draft: bool
    commit_count: int
    last_pushed_at: datetime
    description: str
    head_sha: str
    checks: tuple[CheckResult, ...]
    threads: tuple[ReviewThread, ...]


@dataclass(frozen=True)
class ActionableReason:
    kind: ActionableReasonKind
    subject: str

    def describe(self) -> str:
        if self.kind == "failing_check":
            return f"check {self.subject!r} failed"
        return f"thread {self.subject} needs a response"


@dataclass(frozen=True)
class Happy:
    pass


@dataclass(frozen=True)
class Waiting:
    pending_check_names: tuple[str, ...] = ()
    awaiting_checks: bool = False


@dataclass(frozen=True)
class Actionable:
    reasons: tuple[ActionableReason, ...]

    def __post_init__(self) -> None:
        if not self.reasons:
            raise ValueError("Actionable requires at least one reason")

    @property
    def failing_check_names(self) -> tuple[str, ...]:
        return tuple(reason.subject for reason in self.reasons if reason.kind == "failing_check")

    @property
    def thread_ids(self) -> tuple[str, ...]:
        return tuple(
            reason.subject for reason in self.reasons if reason.kind == "thread_needs_response"
        )


Classification = Happy | Waiting | Actionable


def classification_name(classification: Classification) -> str:
    if isinstance(classification, Happy):
        return "happy"
    if isinstance(classification, Waiting):
        return "waiting"
    return "actionable"


@dataclass(frozen=True)
class StatusBlock:
    status_message: str | None = None
