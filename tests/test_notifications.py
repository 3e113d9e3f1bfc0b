"""Tests for notification dispatch — proves fire-and-forget and the inbox."""

import logging
from concurrent.futures import ThreadPoolExecutor

import pytest
from pathlib import Path

from gigstream.models.notification import NotificationType
from gigstream.notifications.dispatcher import InboxNotifier, NotificationDispatcher


class ExplodingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    def notify(self, user_id, type, title, message, link) -> None:
        self.calls += 1
        raise ConnectionError("mail relay down")


class TestDispatcher:
    def test_delivers_to_inbox(self) -> None:
        inbox = InboxNotifier()
        NotificationDispatcher(inbox).dispatch(
            "seller", NotificationType.ORDER_PLACED, "New Order",
            "You have received a new order for Logo design", "/dashboard/orders/o1",
        )
        [n] = inbox.recent("seller")
        assert n.type == NotificationType.ORDER_PLACED
        assert n.link == "/dashboard/orders/o1"
        assert not n.is_read

    def test_failure_is_logged_and_swallowed(self, caplog: pytest.LogCaptureFixture) -> None:
        notifier = ExplodingNotifier()
        with caplog.at_level(logging.WARNING, logger="gigstream.notifications.dispatcher"):
            NotificationDispatcher(notifier).dispatch(
                "seller", NotificationType.ORDER_PLACED, "New Order", "msg",
            )
        assert notifier.calls == 1
        assert "not retried" in caplog.text

    def test_executor_failure_is_swallowed(self, caplog: pytest.LogCaptureFixture) -> None:
        notifier = ExplodingNotifier()
        with caplog.at_level(logging.WARNING, logger="gigstream.notifications.dispatcher"):
            with ThreadPoolExecutor(max_workers=1) as pool:
                NotificationDispatcher(notifier, executor=pool).dispatch(
                    "seller", NotificationType.ORDER_PLACED, "New Order", "msg",
                )
        assert notifier.calls == 1
        assert "not retried" in caplog.text

    def test_shut_down_executor_drops_notification(self) -> None:
        pool = ThreadPoolExecutor(max_workers=1)
        pool.shutdown()
        inbox = InboxNotifier()
        NotificationDispatcher(inbox, executor=pool).dispatch(
            "seller", NotificationType.ORDER_PLACED, "New Order", "msg",
        )
        assert inbox.recent("seller") == []


class TestInbox:
    def _fill(self, inbox: InboxNotifier, n: int) -> None:
        for i in range(n):
            inbox.notify("u1", NotificationType.ORDER_DELIVERED, f"t{i}", f"m{i}", "")

    def test_recent_is_newest_first_and_limited(self) -> None:
        inbox = InboxNotifier()
        self._fill(inbox, 12)
        recent = inbox.recent("u1", limit=10)
        assert len(recent) == 10
        assert recent[0].title == "t11"
        assert recent[-1].title == "t2"

    def test_mark_read(self) -> None:
        inbox = InboxNotifier()
        self._fill(inbox, 3)
        target = inbox.recent("u1")[0]
        assert inbox.mark_read("u1", target.notification_id)
        assert inbox.unread_count("u1") == 2
        assert not inbox.mark_read("u2", target.notification_id)

    def test_mark_all_read(self) -> None:
        inbox = InboxNotifier()
        self._fill(inbox, 3)
        assert inbox.mark_all_read("u1") == 3
        assert inbox.mark_all_read("u1") == 0
        assert inbox.unread_count("u1") == 0

    def test_persistence_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "notifications.json"
        inbox = InboxNotifier(storage_path=path)
        self._fill(inbox, 2)
        inbox.mark_read("u1", inbox.recent("u1")[0].notification_id)

        reloaded = InboxNotifier(storage_path=path)
        recent = reloaded.recent("u1")
        assert [n.title for n in recent] == ["t1", "t0"]
        assert recent[0].is_read
        assert not recent[1].is_read
