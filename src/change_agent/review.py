"""Review thread fingerprinting, severity policy and planning inputs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from .canonical import hash_text
from .models import ReviewPriorityEntry
from .schemas import (
    SEVERITY_ORDER,
    FingerprintComment,
    ReviewClassification,
    ReviewComment,
    ReviewPlanThread,
    ReviewThreadDetail,
    Severity,
    ThreadFingerprint,
)

EXCERPT_LENGTH = 160
DEFAULT_SEVERITY = Severity.SUGGESTION


@dataclass
class SeverityIndex:
    severity_by_thread: dict[str, Severity] = field(default_factory=dict)
    summary_by_thread: dict[str, str] = field(default_factory=dict)


@dataclass
class PolicySplit:
    actionable: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)
    auto_resolve: list[str] = field(default_factory=list)


def build_thread_fingerprints(comments: Iterable[ReviewComment]) -> list[ThreadFingerprint]:
    """Group unresolved comments by thread, keeping only a digest and an excerpt of each body."""
    by_thread: dict[str, ThreadFingerprint] = {}
    for comment in comments:
        fingerprint = by_thread.get(comment.thread_id)
        if fingerprint is None:
            fingerprint = ThreadFingerprint(thread_id=comment.thread_id, is_outdated=comment.is_outdated)
            by_thread[comment.thread_id] = fingerprint
        fingerprint.is_outdated = fingerprint.is_outdated or comment.is_outdated
        fingerprint.comments.append(
            FingerprintComment(
                id=comment.id,
                database_id=comment.database_id,
                path=comment.path,
                line=comment.line,
                body_digest=hash_text(comment.body),
                excerpt=comment.body[:EXCERPT_LENGTH],
            )
        )
    return list(by_thread.values())


def _infer_severity(thread_id: str, classification: ReviewClassification) -> Severity:
    if thread_id in classification.ignored_thread_ids:
        return Severity.NITPICK
    if thread_id in classification.needs_context_thread_ids:
        return Severity.QUESTION
    if thread_id in classification.actionable_thread_ids:
        return Severity.SUGGESTION
    return DEFAULT_SEVERITY


def build_severity_index(
    classification: ReviewClassification,
    fingerprints: Sequence[ThreadFingerprint],
) -> SeverityIndex:
    """Severity per thread: the classifier's verdict, else inferred from its buckets."""
    index = SeverityIndex()
    for thread in classification.threads:
        index.severity_by_thread[thread.thread_id] = thread.severity
        index.summary_by_thread[thread.thread_id] = thread.summary
    for fingerprint in fingerprints:
        if fingerprint.thread_id not in index.severity_by_thread:
            index.severity_by_thread[fingerprint.thread_id] = _infer_severity(
                fingerprint.thread_id, classification
            )
    return index


def build_severity_summary(severity_by_thread: Mapping[str, Severity]) -> dict[str, int]:
    summary = {severity.value: 0 for severity in SEVERITY_ORDER}
    for severity in severity_by_thread.values():
        summary[Severity(severity).value] += 1
    return summary


def apply_severity_policy(
    severity_by_thread: Mapping[str, Severity],
    policy: Mapping[str, str],
) -> PolicySplit:
    """Partition threads into exactly one of actionable, ignored or auto-resolve.

    A severity missing from the policy is treated as actionable.
    """
    split = PolicySplit()
    for thread_id, severity in severity_by_thread.items():
        action = policy.get(Severity(severity).value, "actionable")
        if action == "auto_resolve":
            split.auto_resolve.append(thread_id)
        elif action == "ignore":
            split.ignored.append(thread_id)
        else:
            split.actionable.append(thread_id)
    return split


def build_review_priority_list(
    fingerprints: Sequence[ThreadFingerprint],
    index: SeverityIndex,
) -> list[ReviewPriorityEntry]:
    by_id = {fingerprint.thread_id: fingerprint for fingerprint in fingerprints}
    entries: list[ReviewPriorityEntry] = []
    for thread_id, severity in index.severity_by_thread.items():
        fingerprint = by_id.get(thread_id)
        first = fingerprint.comments[0] if fingerprint is not None and fingerprint.comments else None
        entries.append(
            ReviewPriorityEntry(
                thread_id=thread_id,
                severity=Severity(severity).value,
                summary=index.summary_by_thread.get(thread_id) or None,
                path=first.path if first is not None else None,
                line=first.line if first is not None else None,
                is_outdated=fingerprint.is_outdated if fingerprint is not None else False,
            )
        )
    order = [severity.value for severity in SEVERITY_ORDER]
    entries.sort(key=lambda entry: (order.index(entry.severity), entry.thread_id))
    return entries


def select_threads_for_context(
    fingerprints: Sequence[ThreadFingerprint],
    needs_context_thread_ids: Sequence[str],
) -> list[str]:
    known = {fingerprint.thread_id for fingerprint in fingerprints}
    return [thread_id for thread_id in needs_context_thread_ids if thread_id in known]


def build_review_plan_threads(
    fingerprints: Sequence[ThreadFingerprint],
    detailed_threads: Sequence[ReviewThreadDetail],
    actionable_thread_ids: Sequence[str],
    ignored_thread_ids: Sequence[str],
) -> list[ReviewPlanThread]:
    """Planning input: full bodies where fetched, fingerprints otherwise."""
    by_id = {fingerprint.thread_id: fingerprint for fingerprint in fingerprints}
    detailed_by_id = {thread.thread_id: thread for thread in detailed_threads}
    actionable = set(actionable_thread_ids)
    threads: list[ReviewPlanThread] = []
    for thread_id in dict.fromkeys([*actionable_thread_ids, *ignored_thread_ids]):
        fingerprint = by_id.get(thread_id)
        if fingerprint is None:
            continue
        detailed = detailed_by_id.get(thread_id)
        if detailed is not None:
            comments: list[dict[str, object]] = [
                {
                    "id": comment.id,
                    "path": comment.path,
                    "line": comment.line,
                    "body_digest": hash_text(comment.body),
                    "body": comment.body,
                }
                for comment in detailed.comments
            ]
            is_outdated = detailed.is_outdated
        else:
            comments = [
                {
                    "id": comment.id,
                    "path": comment.path,
                    "line": comment.line,
                    "body_digest": comment.body_digest,
                    "excerpt": comment.excerpt,
                }
                for comment in fingerprint.comments
            ]
            is_outdated = fingerprint.is_outdated
        threads.append(
            ReviewPlanThread(
                thread_id=thread_id,
                actionable=thread_id in actionable,
                comments=comments,
                is_outdated=is_outdated,
            )
        )
    return threads
