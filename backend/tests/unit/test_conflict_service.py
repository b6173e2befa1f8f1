from datetime import datetime, timedelta

import pytest

from ethicsflow.core.errors import Conflicted, DeclarationClosed, NotEligible, PermissionDenied, QuotaExceeded


def test_declared_conflict_removes_reviewer_and_holds_submission(
    workflow, under_review, reviewer_principal, payload, secretariat, fake_db
):
    submission_id, reviewers = under_review("Full Review")
    conflicted = reviewer_principal(reviewers[0])
    workflow.consensus.save_draft(conflicted, submission_id, {"protocol_answers": {"q1": "draft"}})

    out = workflow.conflicts.declare(conflicted, submission_id, {"has_official_role": True}, "Department head")

    assert out["conflicted"] is True
    assert out["resolution"] == {"removed_reviewer_ids": [reviewers[0]], "status": "conflict_of_interest"}
    assert reviewers[0] not in {a["reviewer_id"] for a in fake_db.rows("reviewer_assignments")}
    # 草稿随分配一起删除
    assert fake_db.rows("reviews") == []
    assert fake_db.rows("submissions")[0]["status"] == "conflict_of_interest"

    # 剩余审稿人在冲突期间仍可提交，但空出的名额让 isComplete 保持 false
    for reviewer_id in reviewers[1:5]:
        workflow.consensus.submit(reviewer_principal(reviewer_id), submission_id, payload())
    assert workflow.consensus.is_complete(submission_id) is False
    assert fake_db.rows("submissions")[0]["status"] == "conflict_of_interest"

    replacement = reviewers[5]
    result = workflow.conflicts.reassign(secretariat, submission_id, replacement)
    assert result["submission"]["status"] == "under_review"
    new_row = result["assignment"]
    assert new_row["reviewer_id"] == replacement
    assigned = datetime.fromisoformat(new_row["assigned_at"])
    assert datetime.fromisoformat(new_row["due_date"]) - assigned == timedelta(days=14)
    assert workflow.consensus.is_complete(submission_id) is False

    final = workflow.consensus.submit(reviewer_principal(replacement), submission_id, payload())
    assert final["outcome"] == "approved"
    assert fake_db.rows("submissions")[0]["status"] == "review_complete"


def test_all_false_declaration_is_inert(workflow, under_review, reviewer_principal, fake_db):
    submission_id, reviewers = under_review("Expedited")

    out = workflow.conflicts.declare(
        reviewer_principal(reviewers[0]), submission_id, {"has_stock_ownership": False}, None
    )

    assert out["conflicted"] is False
    assert out["resolution"] is None
    assert len(fake_db.rows("reviewer_assignments")) == 3
    assert fake_db.rows("submissions")[0]["status"] == "under_review"
    assert len(fake_db.rows("conflict_of_interest_forms")) == 1


def test_declaration_requires_active_assignment(workflow, under_review, reviewer_principal):
    submission_id, reviewers = under_review("Expedited")
    with pytest.raises(NotEligible):
        workflow.conflicts.declare(reviewer_principal(reviewers[4]), submission_id, {"has_official_role": True})


def test_declaration_closes_after_review_submitted(workflow, under_review, reviewer_principal, payload, fake_db):
    submission_id, reviewers = under_review("Expedited")
    reviewer = reviewer_principal(reviewers[0])
    workflow.consensus.submit(reviewer, submission_id, payload())

    with pytest.raises(DeclarationClosed):
        workflow.conflicts.declare(reviewer, submission_id, {"has_official_role": True})
    assert fake_db.rows("conflict_of_interest_forms") == []


def test_resolve_is_idempotent(workflow, under_review, secretariat, fake_db):
    submission_id, reviewers = under_review("Expedited")
    fake_db.seed(
        "conflict_of_interest_forms",
        {"submission_id": submission_id, "reviewer_id": reviewers[1], "has_social_relationship": True},
    )

    first = workflow.conflicts.resolve(secretariat, submission_id)
    second = workflow.conflicts.resolve(secretariat, submission_id)

    assert first["removed_reviewer_ids"] == [reviewers[1]]
    assert second == {"removed_reviewer_ids": [], "status": "conflict_of_interest"}
    transitions = [l["to_status"] for l in fake_db.rows("status_transition_logs")]
    assert transitions.count("conflict_of_interest") == 1


def test_resolve_requires_staff(workflow, under_review, reviewer_principal):
    submission_id, reviewers = under_review("Expedited")
    with pytest.raises(PermissionDenied):
        workflow.conflicts.resolve(reviewer_principal(reviewers[0]), submission_id)


def test_replacements_exclude_conflicted_and_assigned(workflow, under_review, reviewer_principal, secretariat):
    submission_id, reviewers = under_review("Expedited")
    workflow.conflicts.declare(reviewer_principal(reviewers[0]), submission_id, {"has_prior_work_experience": True})

    pool = [p["id"] for p in workflow.conflicts.available_replacements(secretariat, submission_id)]

    assert reviewers[0] not in pool
    assert reviewers[1] not in pool and reviewers[2] not in pool
    assert sorted(pool) == sorted(reviewers[3:])


def test_reassign_refuses_when_slots_are_full(workflow, under_review, secretariat, fake_db):
    submission_id, reviewers = under_review("Expedited")

    with pytest.raises(QuotaExceeded):
        workflow.conflicts.reassign(secretariat, submission_id, reviewers[3])
    assert len(fake_db.rows("reviewer_assignments")) == 3


def test_active_assignments_never_exceed_quota(workflow, under_review, reviewer_principal, secretariat, fake_db):
    submission_id, reviewers = under_review("Expedited")
    workflow.conflicts.declare(reviewer_principal(reviewers[0]), submission_id, {"has_official_role": True})

    workflow.conflicts.reassign(secretariat, submission_id, reviewers[3])
    with pytest.raises(QuotaExceeded):
        workflow.conflicts.reassign(secretariat, submission_id, reviewers[4])

    assert len(fake_db.rows("reviewer_assignments")) == 3
    assert fake_db.rows("submissions")[0]["status"] == "under_review"


def test_conflicted_reviewer_cannot_be_reassigned(workflow, under_review, reviewer_principal, secretariat):
    submission_id, reviewers = under_review("Expedited")
    workflow.conflicts.declare(reviewer_principal(reviewers[0]), submission_id, {"has_official_role": True})

    with pytest.raises(Conflicted) as exc:
        workflow.conflicts.reassign(secretariat, submission_id, reviewers[0])
    assert exc.value.context["reviewer_ids"] == [reviewers[0]]
