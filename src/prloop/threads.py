from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from prloop.models import (
    AGENT_MARKER,
    HUMAN_REVIEW_EMOJI,
    HUMAN_REVIEW_SHORTCODE,
    ReviewComment,
    ReviewThread,
)


NEWER_COMMENTS_ACKNOWLEDGEMENT = (
    "(Looks like you had something else to say here while I was working. "
    "I'll look at that now.)"
)


@dataclass(frozen=True)
class ThreadClassification:
    threads_needing_response: tuple[ReviewThread, ...]
    all_resolved: bool
    unresolved_thread_ids: tuple[str, ...]
    human_review_threads: tuple[ReviewThread, ...] = ()

    @property
    def thread_ids_needing_response(self) -> tuple[str, ...]:
        return tuple(thread.thread_id for thread in self.threads_needing_response)


def is_agent_comment(body: str) -> bool:
    return body.startswith(AGENT_MARKER)


def format_agent_message(message: str) -> str:
    return f"{AGENT_MARKER} {message}"


def has_human_review_marker(body: str) -> bool:
    return HUMAN_REVIEW_SHORTCODE in body or HUMAN_REVIEW_EMOJI in body


def strip_human_review_marker(body: str) -> str:
    return body.replace(HUMAN_REVIEW_SHORTCODE, "").replace(HUMAN_REVIEW_EMOJI, "")


def is_human_review_thread(thread: ReviewThread) -> bool:
    return any(has_human_review_marker(comment.body) for comment in thread.comments)


def needs_response(thread: ReviewThread) -> bool:
    if thread.is_resolved:
        return False
    last = thread.last_comment
    if last is None:
        # Nobody has asked anything yet.
        return False
    return not last.is_from_agent


def is_pure_agent(thread: ReviewThread) -> bool:
    if not thread.comments:
        return False
    return all(comment.is_from_agent for comment in thread.comments)


def human_comments_after(
    thread: ReviewThread, comment_id: str
) -> tuple[ReviewComment, ...] | None:
    for index, comment in enumerate(thread.comments):
        if comment.comment_id == comment_id:
            return tuple(c for c in thread.comments[index + 1 :] if not c.is_from_agent)
    return None


def pending_human_comments(thread: ReviewThread) -> tuple[ReviewComment, ...]:
    """Human comments posted after the agent's most recent reply in ``thread``."""
    last_agent_index = -1
    for index, comment in enumerate(thread.comments):
        if comment.is_from_agent:
            last_agent_index = index
    return tuple(c for c in thread.comments[last_agent_index + 1 :] if not c.is_from_agent)


def find_thread_by_comment(
    threads: Iterable[ReviewThread], comment_id: str
) -> ReviewThread | None:
    for thread in threads:
        if comment_id in thread.comment_ids:
            return thread
    return None


def find_thread(threads: Iterable[ReviewThread], thread_id: str) -> ReviewThread | None:
    for thread in threads:
        if thread.thread_id == thread_id:
            return thread
    return None


def classify_threads(threads: Iterable[ReviewThread]) -> ThreadClassification:
    considered: list[ReviewThread] = []
    human_review: list[ReviewThread] = []
    for thread in threads:
        if is_human_review_thread(thread):
            human_review.append(thread)
        else:
            considered.append(thread)

    return ThreadClassification(
        threads_needing_response=tuple(t for t in considered if needs_response(t)),
        all_resolved=all(t.is_resolved for t in considered),
        unresolved_thread_ids=tuple(t.thread_id for t in considered if not t.is_resolved),
        human_review_threads=tuple(human_review),
    )


def deletable_agent_threads(threads: Iterable[ReviewThread]) -> tuple[ReviewThread, ...]:
    return tuple(
        thread
        for thread in threads
        if thread.is_resolved and is_pure_agent(thread) and not is_human_review_thread(thread)
    )
