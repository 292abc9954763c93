from change_agent.canonical import hash_text
from change_agent.review import (
    apply_severity_policy,
    build_review_plan_threads,
    build_review_priority_list,
    build_severity_index,
    build_severity_summary,
    build_thread_fingerprints,
    select_threads_for_context,
)
from change_agent.schemas import (
    ReviewClassification,
    ReviewThreadComment,
    ReviewThreadDetail,
    Severity,
    ThreadClassification,
)
from change_agent.settings import DEFAULT_SEVERITY_POLICY

from fakes import review_comment


def test_fingerprints_group_by_thread_and_keep_excerpts() -> None:
    long_body = "x" * 400
    comments = [
        review_comment("t1", "Rename this variable."),
        review_comment("t1", long_body).model_copy(update={"id": "c-t1-b", "is_outdated": True}),
        review_comment("t2", "Why this constant?"),
    ]

    fingerprints = build_thread_fingerprints(comments)

    assert [fingerprint.thread_id for fingerprint in fingerprints] == ["t1", "t2"]
    first = fingerprints[0]
    assert first.is_outdated is True
    assert len(first.comments) == 2
    assert first.comments[0].body_digest == hash_text("Rename this variable.")
    assert len(first.comments[1].excerpt) == 160


def test_severity_policy_partitions_every_thread_exactly_once() -> None:
    severities = {
        "t1": Severity.BLOCKING,
        "t2": Severity.QUESTION,
        "t3": Severity.SUGGESTION,
        "t4": Severity.NITPICK,
    }
    policies = [
        DEFAULT_SEVERITY_POLICY,
        {"blocking": "actionable", "question": "ignore", "suggestion": "auto_resolve", "nitpick": "auto_resolve"},
        {"nitpick": "ignore"},
    ]
    for policy in policies:
        split = apply_severity_policy(severities, policy)
        buckets = [set(split.actionable), set(split.ignored), set(split.auto_resolve)]
        assert set().union(*buckets) == set(severities)
        assert sum(len(bucket) for bucket in buckets) == len(severities)


def test_missing_policy_entry_is_actionable() -> None:
    split = apply_severity_policy({"t1": Severity.QUESTION}, {})
    assert split.actionable == ["t1"]


def test_severity_index_prefers_classifier_then_buckets() -> None:
    fingerprints = build_thread_fingerprints(
        [review_comment("t1"), review_comment("t2"), review_comment("t3"), review_comment("t4")]
    )
    classification = ReviewClassification(
        threads=[ThreadClassification(thread_id="t1", severity=Severity.BLOCKING, summary="Null deref")],
        ignored_thread_ids=["t2"],
        needs_context_thread_ids=["t3"],
    )

    index = build_severity_index(classification, fingerprints)

    assert index.severity_by_thread == {
        "t1": Severity.BLOCKING,
        "t2": Severity.NITPICK,
        "t3": Severity.QUESTION,
        "t4": Severity.SUGGESTION,
    }
    assert build_severity_summary(index.severity_by_thread) == {
        "blocking": 1,
        "question": 1,
        "suggestion": 1,
        "nitpick": 1,
    }


def test_priority_list_orders_by_severity_then_thread() -> None:
    fingerprints = build_thread_fingerprints([review_comment(thread) for thread in ("a", "b", "c", "d")])
    classification = ReviewClassification(
        threads=[
            ThreadClassification(thread_id="d", severity=Severity.BLOCKING),
            ThreadClassification(thread_id="a", severity=Severity.NITPICK),
            ThreadClassification(thread_id="c", severity=Severity.QUESTION),
            ThreadClassification(thread_id="b", severity=Severity.QUESTION),
        ]
    )

    entries = build_review_priority_list(fingerprints, build_severity_index(classification, fingerprints))

    assert [(entry.severity, entry.thread_id) for entry in entries] == [
        ("blocking", "d"),
        ("question", "b"),
        ("question", "c"),
        ("nitpick", "a"),
    ]
    assert entries[0].path == "src/app.py"


def test_context_selection_ignores_unknown_threads() -> None:
    fingerprints = build_thread_fingerprints([review_comment("t1")])
    assert select_threads_for_context(fingerprints, ["t9", "t1"]) == ["t1"]


def test_plan_threads_use_full_bodies_where_fetched() -> None:
    fingerprints = build_thread_fingerprints([review_comment("t1", "short"), review_comment("t2", "other")])
    detailed = [
        ReviewThreadDetail(
            thread_id="t1",
            comments=[ReviewThreadComment(id="c-t1", body="The full body of the thread.")],
        )
    ]

    threads = build_review_plan_threads(fingerprints, detailed, ["t1"], ["t2"])

    assert [(thread.thread_id, thread.actionable) for thread in threads] == [("t1", True), ("t2", False)]
    assert threads[0].comments[0]["body"] == "The full body of the thread."
    assert threads[1].comments[0]["excerpt"] == "other"
    assert "body" not in threads[1].comments[0]
