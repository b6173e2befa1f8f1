import logging
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from ethicsflow.services.notification_service import NotificationService, register_notification_subscribers
from ethicsflow.services.submission_store import SubmissionStore
from ethicsflow.services.workflow_events import WorkflowEventBus
from utils.fake_supabase import FakeSupabase


def _client_raising(error: Exception) -> MagicMock:
    client = MagicMock()
    chain = MagicMock()
    client.table.return_value = chain
    chain.insert.return_value = chain
    chain.execute.side_effect = error
    return client


def test_unknown_event_cannot_be_subscribed():
    with pytest.raises(ValueError):
        WorkflowEventBus().subscribe("submission_archived", lambda e, p: None)


def test_failing_subscriber_is_logged_not_raised(caplog):
    bus = WorkflowEventBus()
    seen = []

    def _broken(event, payload):
        raise RuntimeError("smtp down")

    bus.subscribe("approved", _broken)
    bus.subscribe("approved", lambda event, payload: seen.append(payload["submission_id"]))

    with caplog.at_level(logging.ERROR, logger="ethicsflow.events"):
        bus.publish("approved", {"submission_id": "s-1"})

    assert seen == ["s-1"]
    assert "smtp down" in caplog.text


def test_subscriber_gets_a_copy_of_the_payload():
    bus = WorkflowEventBus()
    payload = {"submission_id": "s-1"}
    bus.subscribe("review_complete", lambda event, p: p.update({"submission_id": "mutated"}))
    bus.publish("review_complete", payload)
    assert payload == {"submission_id": "s-1"}


def test_notification_fk_errors_are_downgraded(caplog):
    error = APIError({"code": "23503", "message": "violates foreign key constraint", "details": None, "hint": None})
    service = NotificationService(_client_raising(error))

    with caplog.at_level(logging.WARNING, logger="ethicsflow.notifications"):
        res = service.create_notification(
            user_id="ghost", submission_id="s-1", type="approved", title="t", content="c"
        )

    assert res is None
    assert "missing auth user" in caplog.text


def test_notification_action_urls_are_relative():
    db = FakeSupabase()
    service = NotificationService(db)

    service.create_notification(
        user_id="u", submission_id="s-1", type="approved", title="t", content="c",
        action_url="https://portal.example/dashboard/submissions/s-1?tab=docs",
    )
    service.create_notification(user_id="u", submission_id=None, type="assignment_created", title="t", content="c")
    service.create_notification(
        user_id="u", submission_id=None, type="approved", title="t", content="c", action_url="javascript:alert(1)"
    )

    urls = [n["action_url"] for n in db.rows("notifications")]
    assert urls == ["/dashboard/submissions/s-1?tab=docs", "/dashboard?tab=reviewer", "/dashboard/notifications"]


def test_subscribers_notify_reviewer_and_owner():
    db = FakeSupabase()
    (submission,) = db.seed("submissions", {"user_id": "owner-1", "title": "Water quality study"})
    bus = WorkflowEventBus()
    register_notification_subscribers(bus, notifications=NotificationService(db), store=SubmissionStore(db))

    bus.publish("assignment_created", {"submission_id": submission["id"], "reviewer_id": "rev-1", "due_date": "2026-11-01"})
    bus.publish("revision_requested", {"submission_id": submission["id"], "comment": "Fix consent"})
    bus.publish("approved", {"submission_id": submission["id"]})

    rows = db.rows("notifications")
    assert [(n["user_id"], n["type"]) for n in rows] == [
        ("rev-1", "assignment_created"),
        ("owner-1", "revision_requested"),
        ("owner-1", "approved"),
    ]
    assert "Water quality study" in rows[0]["content"]
    assert "Fix consent" in rows[1]["content"]
