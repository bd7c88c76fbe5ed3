from __future__ import annotations

import math
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from murmur.config import Settings
from murmur.logging import get_logger
from murmur.service.errors import NotFoundError, RateLimitedError, ValidationError
from murmur.storage.errors import ConstraintViolation
from murmur.storage.models import Message

if TYPE_CHECKING:
    from murmur.storage.memory import MemoryStore
    from murmur.storage.postgres import PostgresStore

logger = get_logger(__name__)

MAX_CONTENT_LENGTH = 500


class MessageService:
    """Anonymous messages addressed to a registered receiver."""

    def __init__(self, store: "PostgresStore | MemoryStore", settings: Settings) -> None:
        self.store = store
        self.settings = settings

    @staticmethod
    def _clean_content(content: Optional[str]) -> str:
        trimmed = (content or "").strip()
        if not trimmed:
            raise ValidationError(
                "message content cannot be empty", detail={"field": "content"}
            )
        if len(trimmed) > MAX_CONTENT_LENGTH:
            raise ValidationError(
                f"message content must be at most {MAX_CONTENT_LENGTH} characters",
                detail={"field": "content"},
            )
        return trimmed

    @staticmethod
    def _check_receiver_id(receiver_id: str) -> str:
        try:
            return str(uuid.UUID(receiver_id))
        except (TypeError, ValueError, AttributeError) as exc:
            raise ValidationError(
                "invalid receiver id", detail={"field": "receiver_id"}
            ) from exc

    def send(self, receiver_id: str, content: Optional[str]) -> Message:
        """Store an anonymous message for ``receiver_id``.

        At most ``message_rate_limit`` messages per receiver are accepted in any
        rolling ``message_rate_window_seconds`` window; the count and insert run
        atomically in the store.
        """
        receiver_id = self._check_receiver_id(receiver_id)
        text = self._clean_content(content)
        if not self.store.get_user(receiver_id):
            raise NotFoundError("receiver not found")
        try:
            message = self.store.append_message(
                receiver_id,
                text,
                limit=self.settings.message_rate_limit,
                window_seconds=self.settings.message_rate_window_seconds,
            )
        except ConstraintViolation as exc:
            # Receiver deleted between lookup and insert
            raise NotFoundError("receiver not found") from exc
        if message is None:
            logger.info("message_rate_limited", receiver_id=receiver_id)
            raise RateLimitedError(
                "too many messages sent, please try again later",
                detail={"retry_after_seconds": self.settings.message_rate_window_seconds},
            )
        logger.info("message_sent", receiver_id=receiver_id, message_id=message.id)
        return message

    def _page_bounds(self, page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
        page = page if page and page > 0 else 1
        limit = limit if limit and limit > 0 else self.settings.default_page_size
        return page, min(limit, self.settings.max_page_size)

    def list_inbox(
        self, user_id: str, page: Optional[int] = None, limit: Optional[int] = None
    ) -> Tuple[List[Message], Dict[str, Any]]:
        """Return one page of received messages, newest first, with pagination info."""
        page, limit = self._page_bounds(page, limit)
        total = self.store.count_messages(user_id)
        items = self.store.list_messages(user_id, offset=(page - 1) * limit, limit=limit)
        total_pages = math.ceil(total / limit) if total else 0
        pagination = {
            "current_page": page,
            "total_pages": total_pages,
            "total_messages": total,
            "messages_per_page": limit,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        }
        return items, pagination
