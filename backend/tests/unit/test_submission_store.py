import pytest

from ethicsflow.core.errors import NotFound
from ethicsflow.services.submission_store import SubmissionStore
from utils.fake_supabase import FakeSupabase


@pytest.fixture
def store_and_db():
    db = FakeSupabase()
    return SubmissionStore(db), db


def test_compare_and_set_only_writes_from_expected_status(store_and_db):
    store, db = store_and_db
    (row,) = db.seed("submissions", {"status": "classified"})

    assert store.compare_and_set_status(row["id"], expected="awaiting_classification", to_status="under_review") is None
    updated = store.compare_and_set_status(
        row["id"], expected="classified", to_status="under_review", extra={"required_reviewers": 3}
    )

    assert updated["status"] == "under_review"
    assert updated["required_reviewers"] == 3
    assert updated["updated_at"]


def test_field_updates_cannot_touch_status(store_and_db):
    store, db = store_and_db
    (row,) = db.seed("submissions", {"status": "approved"})

    with pytest.raises(ValueError):
        store.update_submission_fields(row["id"], {"status": "review_complete"})
    with pytest.raises(NotFound):
        store.update_submission_fields("missing", {"artifact_error": None})


def test_get_submission_not_found(store_and_db):
    store, _ = store_and_db
    with pytest.raises(NotFound):
        store.get_submission("nope")


def test_assignment_update_respects_expected_statuses(store_and_db):
    store, db = store_and_db
    (row,) = db.seed("reviewer_assignments", {"submission_id": "s", "reviewer_id": "r", "status": "review_complete"})

    assert store.update_assignment(row["id"], {"status": "review_complete"}, expected_statuses=["pending"]) is None
    assert store.update_assignment(row["id"], {"completed_at": "x"})["completed_at"] == "x"


def test_transition_log_failures_are_ignored(store_and_db, caplog):
    store, db = store_and_db
    db.fail("status_transition_logs", "insert")

    store.insert_transition_log({"submission_id": "s", "from_status": "a", "to_status": "b"})

    assert "transition log insert failed" in caplog.text


def test_reviewer_profiles_filtered_by_role(store_and_db):
    store, db = store_and_db
    db.seed(
        "user_profiles",
        {"id": "r1", "roles": ["reviewer"]},
        {"id": "r2", "roles": ["researcher", "reviewer"]},
        {"id": "x", "roles": ["researcher"]},
    )
    assert sorted(p["id"] for p in store.list_reviewer_profiles()) == ["r1", "r2"]
