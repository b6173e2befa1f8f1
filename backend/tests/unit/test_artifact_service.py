import pytest

from ethicsflow.core.errors import ArtifactGenerationFailure, InvalidTransition, PermissionDenied
from ethicsflow.models.documents import APPROVAL_ARTIFACT_TITLES
from ethicsflow.services.artifact_service import artifact_path


def _artifact_types(fake_db):
    return sorted(d["document_type"] for d in fake_db.rows("uploaded_documents"))


def test_generation_is_idempotent(workflow, seed_submission, fake_db, generator):
    submission = seed_submission(status="review_complete", classification="Expedited")

    first = workflow.artifacts.generate_missing(submission["id"])
    second = workflow.artifacts.generate_missing(submission["id"])

    assert len(first) == 3
    assert second == []
    assert _artifact_types(fake_db) == ["certificate_of_approval", "form_0011", "form_0012"]
    assert len(generator.calls) == 3
    stored = fake_db.storage.objects["research-documents"]
    assert artifact_path(submission["id"], "certificate_of_approval") in stored


def test_generator_failure_does_not_roll_back_approval(
    workflow, seed_submission, secretariat, fake_db, generator
):
    generator.fail_kinds = {"form_0012"}
    submission = seed_submission(status="awaiting_classification")

    out = workflow.state_machine.classify(secretariat, submission["id"], "Exempted")

    assert out["status"] == "review_complete"
    row = fake_db.rows("submissions")[0]
    assert row["status"] == "review_complete"
    assert "form_0012" in row["artifact_error"]
    assert row["artifact_error_at"]
    assert _artifact_types(fake_db) == ["certificate_of_approval", "form_0011"]


def test_repair_regenerates_only_missing_kinds(workflow, seed_submission, secretariat, staff, fake_db, generator):
    generator.fail_kinds = {"form_0012"}
    submission = seed_submission(status="awaiting_classification")
    workflow.state_machine.classify(secretariat, submission["id"], "Exempted")

    generator.fail_kinds = set()
    generator.calls.clear()
    created = workflow.artifacts.repair(staff, submission["id"])

    assert [d["document_type"] for d in created] == ["form_0012"]
    assert generator.calls == ["form_0012"]
    assert _artifact_types(fake_db) == ["certificate_of_approval", "form_0011", "form_0012"]
    assert fake_db.rows("submissions")[0]["artifact_error"] is None


def test_failed_repair_raises_with_failed_kinds(workflow, seed_submission, staff, generator):
    submission = seed_submission(status="review_complete", classification="Expedited")
    generator.fail_kinds = {"certificate_of_approval"}

    with pytest.raises(ArtifactGenerationFailure) as exc:
        workflow.artifacts.repair(staff, submission["id"])

    assert exc.value.failed_kinds == ["certificate_of_approval"]
    assert exc.value.status_code == 502


def test_upload_failure_is_recorded(workflow, seed_submission, fake_db):
    submission = seed_submission(status="approved", classification="Full Review")
    fake_db.storage.fail_paths.add("/approval/form_0011")

    with pytest.raises(ArtifactGenerationFailure):
        workflow.artifacts.generate_missing(submission["id"])

    assert _artifact_types(fake_db) == ["certificate_of_approval", "form_0012"]
    assert "form_0011" in fake_db.rows("submissions")[0]["artifact_error"]


def test_artifacts_only_for_approved_submissions(workflow, seed_submission, staff):
    submission = seed_submission(status="under_review", classification="Expedited")
    with pytest.raises(InvalidTransition):
        workflow.artifacts.repair(staff, submission["id"])


def test_repair_requires_staff(workflow, seed_submission, researcher):
    submission = seed_submission(status="review_complete", classification="Expedited")
    with pytest.raises(PermissionDenied):
        workflow.artifacts.repair(researcher, submission["id"])


def test_repair_all_reports_per_submission(workflow, seed_submission, generator):
    done = seed_submission(status="review_complete", classification="Expedited")
    workflow.artifacts.generate_missing(done["id"])
    pending = seed_submission(status="review_complete", classification="Expedited")
    broken = seed_submission(status="approved", classification="Full Review", title="Broken")
    seed_submission(status="under_review", classification="Expedited")

    original = generator.generate

    def _flaky(kind, submission, reviews):
        if submission.get("id") == broken["id"]:
            raise RuntimeError("renderer down")
        return original(kind, submission, reviews)

    generator.generate = _flaky

    report = workflow.artifacts.repair_all()

    assert report["processed"] == 3
    assert report["repaired"] == [pending["id"]]
    assert report["failed"] == [broken["id"]]


def test_store_error_during_approval_still_completes(
    workflow, under_review, reviewer_principal, payload, staff, fake_db, monkeypatch
):
    submission_id, reviewers = under_review("Expedited")
    workflow.consensus.submit(reviewer_principal(reviewers[0]), submission_id, payload())
    workflow.consensus.submit(reviewer_principal(reviewers[1]), submission_id, payload())

    original = workflow.artifacts.missing_kinds
    calls = {"n": 0}

    def _flaky_missing(submission_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("connection reset")
        return original(submission_id)

    monkeypatch.setattr(workflow.artifacts, "missing_kinds", _flaky_missing)

    out = workflow.consensus.submit(reviewer_principal(reviewers[2]), submission_id, payload())

    assert out["outcome"] == "approved"
    row = fake_db.rows("submissions")[0]
    assert row["status"] == "review_complete"
    assert row["artifact_error"]
    assert fake_db.rows("uploaded_documents") == []

    created = workflow.artifacts.repair(staff, submission_id)
    assert len(created) == 3
    assert fake_db.rows("submissions")[0]["artifact_error"] is None


def test_repair_finishes_submission_left_in_approved(workflow, seed_submission, staff, fake_db, events):
    submission = seed_submission(status="approved", classification="Full Review")

    created = workflow.artifacts.repair(staff, submission["id"])

    assert len(created) == 3
    assert fake_db.rows("submissions")[0]["status"] == "review_complete"
    assert [e[0] for e in events].count("approved") == 1
    last_log = fake_db.rows("status_transition_logs")[-1]
    assert (last_log["from_status"], last_log["to_status"]) == ("approved", "review_complete")


def test_failed_repair_still_finishes_approval(workflow, seed_submission, staff, fake_db, generator):
    submission = seed_submission(status="approved", classification="Expedited")
    generator.fail_kinds = {"form_0011"}

    with pytest.raises(ArtifactGenerationFailure):
        workflow.artifacts.repair(staff, submission["id"])

    row = fake_db.rows("submissions")[0]
    assert row["status"] == "review_complete"
    assert "form_0011" in row["artifact_error"]


def test_repair_all_finishes_stuck_approvals(workflow, seed_submission, fake_db):
    done = seed_submission(status="review_complete", classification="Expedited")
    workflow.artifacts.generate_missing(done["id"])
    stuck = seed_submission(status="approved", classification="Expedited")
    workflow.artifacts.generate_missing(stuck["id"])

    report = workflow.artifacts.repair_all()

    assert report == {"processed": 2, "repaired": [stuck["id"]], "failed": []}
    statuses = {s["id"]: s["status"] for s in fake_db.rows("submissions")}
    assert statuses[stuck["id"]] == "review_complete"


def test_stored_file_names_match_rendered_titles(workflow, seed_submission, fake_db):
    submission = seed_submission(status="review_complete", classification="Expedited")

    workflow.artifacts.generate_missing(submission["id"])

    names = {d["document_type"]: d["file_name"] for d in fake_db.rows("uploaded_documents")}
    assert names == {kind: f"{title}.pdf" for kind, title in APPROVAL_ARTIFACT_TITLES.items()}
    assert names["form_0011"] == "Form 0011 - Protocol Review Summary.pdf"
