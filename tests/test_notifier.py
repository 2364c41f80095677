import asyncio
import logging

import pytest

from conftest import ORG, FakeStore, RecordingTransport, make_actor, make_task, make_user

from tasksync.schemas.notifications import EmailPayload, InAppPayload
from tasksync.services.notifier import AssignmentNotifier, unique_recipients


def build(failing: set[str] = frozenset(), enabled: bool = True):
    store = FakeStore()
    store.seed(make_user("u-actor"), make_user("u-other"), make_user("u-third"))
    transport = RecordingTransport(set(failing))
    return store, transport, AssignmentNotifier(store, transport, "https://app.example.com/", enabled=enabled)


def test_unique_recipients_keeps_order_and_drops_blanks() -> None:
    assert unique_recipients(["b", None, "a", "b", "", "a"]) == ["b", "a"]


def test_partition_self_and_other() -> None:
    store, transport, notifier = build()
    actor = make_actor("u-actor")
    task = make_task()

    delivered = asyncio.run(notifier.notify_assignment(task, ["u-actor", "u-other"], actor, ORG))

    in_app = [p for p in delivered if isinstance(p, InAppPayload)]
    emails = [p for p in delivered if isinstance(p, EmailPayload)]
    assert len(in_app) == 2
    assert [p.content for p in in_app if p.self_assigned] == [f"You assigned yourself to: {task.title}"]
    assert [p.content for p in in_app if not p.self_assigned] == [f"You've been assigned to: {task.title}"]
    assert [e.recipient_id for e in emails] == ["u-other"]
    assert [e.recipient_email for e in transport.emails] == ["u-other@example.com"]
    assert transport.emails[0].link == "https://app.example.com/dashboard/tasks/t-1"
    assert sorted(n.user_id for n in store.notifications.values()) == ["u-actor", "u-other"]


def test_duplicate_ids_get_one_notification_each() -> None:
    _, transport, notifier = build()
    task = make_task(assigned_to_id="u-other", assigned_to_ids=["u-other", "u-third"])
    asyncio.run(notifier.notify_assignment(task, task.assignee_ids + ["u-other"], make_actor("u-actor"), ORG))
    assert sorted(p.recipient_id for p in transport.pushes) == ["u-other", "u-third"]
    assert sorted(p.recipient_id for p in transport.emails) == ["u-other", "u-third"]


def test_self_assignment_never_emails() -> None:
    _, transport, notifier = build()
    asyncio.run(notifier.notify_assignment(make_task(), ["u-actor"], make_actor("u-actor"), ORG))
    assert len(transport.pushes) == 1
    assert transport.emails == []


def test_one_recipient_failure_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    _, transport, notifier = build(failing={"u-other"})
    with caplog.at_level(logging.ERROR, logger="tasksync.services.notifier"):
        delivered = asyncio.run(
            notifier.notify_assignment(make_task(), ["u-other", "u-third"], make_actor("u-actor"), ORG)
        )
    assert {p.recipient_id for p in delivered} == {"u-third"}
    assert {p.recipient_id for p in transport.emails} == {"u-third"}
    assert "u-other" in caplog.text


def test_missing_email_is_skipped() -> None:
    store, transport, notifier = build()
    store.seed(make_user("u-noemail").model_copy(update={"email": None}))
    asyncio.run(notifier.notify_assignment(make_task(), ["u-noemail"], make_actor("u-actor"), ORG))
    assert [p.recipient_id for p in transport.pushes] == ["u-noemail"]
    assert transport.emails == []


def test_disabled_notifier_is_a_noop() -> None:
    store, transport, notifier = build(enabled=False)
    assert asyncio.run(notifier.notify_assignment(make_task(), ["u-other"], make_actor("u-actor"), ORG)) == []
    assert store.calls == []
    assert transport.pushes == []


def test_unknown_payload_type_is_rejected() -> None:
    _, _, notifier = build()
    with pytest.raises(TypeError):
        asyncio.run(notifier.dispatch(object()))
