"""Notification dispatch — the fire-and-forget contract and an in-app inbox.

The order engine never depends on a notification being delivered. It
hands ``notify(user_id, type, title, message, link)`` to a dispatcher,
which:
- calls the configured sink once (no retries),
- logs and swallows any exception the sink raises,
- optionally runs the call on an executor so a slow sink never delays
  the primary operation.

``InboxNotifier`` is the bundled sink: it stores notifications per user
for the in-app notification dropdown (newest first, mark read / mark all
read). Email or push delivery would be another ``Notifier``.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Executor, Future
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol
from uuid import uuid4

from gigstream.models.notification import Notification, NotificationType


logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Anything that can deliver a notification to a user."""

    def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        link: str,
    ) -> None: ...


class InboxNotifier:
    """Thread-safe notification inbox with optional JSON persistence.

    With a ``storage_path`` the inbox is written after every change and
    loaded on construction, so a one-shot CLI process sees earlier
    notifications.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._lock = threading.Lock()
        self._by_user: dict[str, list[Notification]] = {}
        self._storage_path = storage_path

        if storage_path is not None and storage_path.exists():
            self._load_from_file(storage_path)

    def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        link: str,
    ) -> None:
        notification = Notification(
            notification_id=f"ntf_{uuid4().hex[:12]}",
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            link=link,
            created_utc=datetime.now(timezone.utc),
        )
        with self._lock:
            self._by_user.setdefault(user_id, []).append(notification)
            self._save()

    def recent(self, user_id: str, limit: int = 10) -> list[Notification]:
        """Newest first, at most ``limit``."""
        with self._lock:
            items = list(self._by_user.get(user_id, []))
        return list(reversed(items))[:limit]

    def unread_count(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for n in self._by_user.get(user_id, []) if not n.is_read)

    def mark_read(self, user_id: str, notification_id: str) -> bool:
        """Mark one notification read. Returns False if the user has no such id."""
        with self._lock:
            for n in self._by_user.get(user_id, []):
                if n.notification_id == notification_id:
                    n.is_read = True
                    self._save()
                    return True
        return False

    def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification read. Returns how many changed."""
        changed = 0
        with self._lock:
            for n in self._by_user.get(user_id, []):
                if not n.is_read:
                    n.is_read = True
                    changed += 1
            if changed:
                self._save()
        return changed

    def _save(self) -> None:
        if self._storage_path is None:
            return
        data = {
            user_id: [
                {
                    "notification_id": n.notification_id,
                    "type": n.type.value,
                    "title": n.title,
                    "message": n.message,
                    "link": n.link,
                    "is_read": n.is_read,
                    "created_utc": n.created_utc.isoformat() if n.created_utc else None,
                }
                for n in items
            ]
            for user_id, items in self._by_user.items()
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._storage_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._storage_path)

    def _load_from_file(self, path: Path) -> None:
        data = json.loads(path.read_text(encoding="utf-8"))
        for user_id, items in data.items():
            self._by_user[user_id] = [
                Notification(
                    notification_id=item["notification_id"],
                    user_id=user_id,
                    type=NotificationType(item["type"]),
                    title=item["title"],
                    message=item["message"],
                    link=item.get("link", ""),
                    is_read=bool(item.get("is_read", False)),
                    created_utc=(
                        datetime.fromisoformat(item["created_utc"])
                        if item.get("created_utc") else None
                    ),
                )
                for item in items
            ]


class NotificationDispatcher:
    """Fire-and-forget front for a Notifier.

    Usage:
        inbox = InboxNotifier()
        dispatcher = NotificationDispatcher(inbox)
        dispatcher.dispatch("seller-1", NotificationType.ORDER_PLACED,
                            "New Order", "You have received a new order", "/dashboard/orders/o1")
    """

    def __init__(self, notifier: Notifier, executor: Optional[Executor] = None) -> None:
        self._notifier = notifier
        self._executor = executor

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    def dispatch(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        link: str = "",
    ) -> None:
        """Deliver once. Never raises, never retries."""
        if self._executor is not None:
            try:
                future = self._executor.submit(
                    self._notifier.notify, user_id, type, title, message, link,
                )
            except RuntimeError:
                # Executor shut down
                logger.warning(
                    "Notification %s for %s dropped: executor unavailable",
                    type.value, user_id, exc_info=True,
                )
                return
            future.add_done_callback(
                lambda f: self._log_failure(f, user_id, type)
            )
            return

        try:
            self._notifier.notify(user_id, type, title, message, link)
        except Exception:
            logger.warning(
                "Notification %s for %s failed; not retried",
                type.value, user_id, exc_info=True,
            )

    @staticmethod
    def _log_failure(future: Future, user_id: str, type: NotificationType) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning(
                "Notification %s for %s failed; not retried",
                type.value, user_id, exc_info=exc,
            )
