"""In-app notification model."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class NotificationType(str, enum.Enum):
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_DELIVERED = "ORDER_DELIVERED"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    REVIEW_RECEIVED = "REVIEW_RECEIVED"


@dataclass
class Notification:
    notification_id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    link: str = ""
    is_read: bool = False
    created_utc: Optional[datetime] = None
