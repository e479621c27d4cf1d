from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from chatjobs.logging import get_logger
from chatjobs.service.crypto import DecryptionError, TokenCipher
from chatjobs.service.errors import NotFoundError
from chatjobs.storage.models import BatchResult, Chat, Message, SessionUser, User, utcnow


class MemoryStore:
    """In-process document store used for tests and local development.

    Implements the same operations the workflow jobs call on the HTTP backend.
    Bearer tokens are accepted and ignored.
    """

    def __init__(self, *, cipher: Optional[TokenCipher] = None, clock=utcnow) -> None:
        self.logger = get_logger(__name__)
        self.cipher = cipher
        self._clock = clock
        self.users: Dict[str, User] = {}
        self.chats: Dict[str, Chat] = {}
        self.messages: Dict[str, Message] = {}
        # RLock so helpers may nest acquisitions within one thread
        self._data_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, external_id: str, *, email: str | None = None, name: str | None = None) -> User:
        with self._data_lock:
            user = User.new(external_id, email=email, name=name)
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def resolve_user(
        self, session_user: SessionUser, *, token: str | None = None
    ) -> Optional[str]:
        """Return the internal user id for a session identity, creating it on first sight."""
        with self._data_lock:
            for user in self.users.values():
                if user.external_id == session_user.id:
                    return user.id
            return self.create_user(
                session_user.id, email=session_user.email, name=session_user.name
            ).id

    def set_api_key(self, user_id: str, api_key: str) -> None:
        if not self.cipher:
            raise RuntimeError("encryption key unavailable; API key cannot be stored")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise NotFoundError("user not found", detail={"user_id": user_id})
            user.encrypted_api_key = self.cipher.encrypt(api_key)

    async def has_api_key(self, user_id: str, *, token: str | None = None) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            return bool(user and user.encrypted_api_key)

    async def get_or_decrypt_api_key(
        self, user_id: str, *, token: str | None = None
    ) -> Optional[str]:
        with self._data_lock:
            user = self.users.get(user_id)
            encrypted = user.encrypted_api_key if user else None
        if not encrypted or not self.cipher:
            return None
        try:
            return self.cipher.decrypt(encrypted)
        except DecryptionError:
            self.logger.warning("api_key_decrypt_failed", user_id=user_id)
            return None

    # ------------------------------------------------------------------
    # Chats and messages
    # ------------------------------------------------------------------

    def create_chat(self, user_id: str, *, title: str | None = None) -> Chat:
        with self._data_lock:
            chat = Chat.new(user_id, title=title)
            self.chats[chat.id] = chat
            return chat

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._data_lock:
            return self.chats.get(chat_id)

    def add_message(self, chat_id: str, user_id: str, role: str, content: str) -> Message:
        with self._data_lock:
            if chat_id not in self.chats:
                raise NotFoundError("chat not found", detail={"chat_id": chat_id})
            message = Message.new(chat_id, user_id, role, content)
            self.messages[message.id] = message
            return message

    def soft_delete_chat(self, chat_id: str, *, at: datetime | None = None) -> None:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat:
                raise NotFoundError("chat not found", detail={"chat_id": chat_id})
            chat.deleted_at = at or self._clock()

    def soft_delete_message(self, message_id: str, *, at: datetime | None = None) -> None:
        with self._data_lock:
            message = self.messages.get(message_id)
            if not message:
                raise NotFoundError("message not found", detail={"message_id": message_id})
            message.deleted_at = at or self._clock()

    async def get_first_user_message(
        self, chat_id: str, user_id: str, *, token: str | None = None
    ) -> Optional[str]:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat or chat.user_id != user_id or chat.deleted_at:
                return None
            candidates: List[Message] = [
                m
                for m in self.messages.values()
                if m.chat_id == chat_id and m.role == "user" and not m.deleted_at
            ]
        if not candidates:
            return None
        candidates.sort(key=lambda m: m.created_at)
        return candidates[0].content

    async def set_title(
        self,
        chat_id: str,
        user_id: str,
        title: str,
        *,
        force: bool = False,
        token: str | None = None,
    ) -> bool:
        """Write a generated title; returns False when a user-set title was kept.

        ``force`` overwrites unconditionally and marks the title as user-chosen,
        since forced writes come from an explicit user action.
        """
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat or chat.user_id != user_id or chat.deleted_at:
                raise NotFoundError("chat not found", detail={"chat_id": chat_id})
            if chat.title_set_by_user and not force:
                self.logger.info("title_write_skipped_user_set", chat_id=chat_id)
                return False
            chat.title = title
            chat.title_set_by_user = bool(force)
            chat.updated_at = self._clock()
            return True

    def rename_chat(self, chat_id: str, title: str) -> None:
        """User-initiated rename; protects the title from automatic overwrites."""
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat:
                raise NotFoundError("chat not found", detail={"chat_id": chat_id})
            chat.title = title
            chat.title_set_by_user = True

    # ------------------------------------------------------------------
    # Retention cleanup
    # ------------------------------------------------------------------

    async def delete_stale_batch(
        self,
        retention_days: int,
        batch_size: int,
        dry_run: bool,
        *,
        token: str | None = None,
    ) -> BatchResult:
        """Delete up to ``batch_size`` records soft-deleted before the cutoff.

        Chats are taken before messages; both count toward the batch. A dry run
        reports how many records the same call would delete.
        """
        cutoff = self._clock() - timedelta(days=retention_days)
        with self._data_lock:
            stale_chats = sorted(
                (c for c in self.chats.values() if c.deleted_at and c.deleted_at < cutoff),
                key=lambda c: c.deleted_at,
            )
            stale_messages = sorted(
                (m for m in self.messages.values() if m.deleted_at and m.deleted_at < cutoff),
                key=lambda m: m.deleted_at,
            )
            chat_ids = [c.id for c in stale_chats][:batch_size]
            remaining = batch_size - len(chat_ids)
            message_ids = [m.id for m in stale_messages][: max(0, remaining)]
            if not dry_run:
                for chat_id in chat_ids:
                    self.chats.pop(chat_id, None)
                for message_id in message_ids:
                    self.messages.pop(message_id, None)
        deleted = len(chat_ids) + len(message_ids)
        self.logger.info(
            "stale_batch_processed",
            dry_run=dry_run,
            deleted=deleted,
            cutoff=cutoff.isoformat(),
        )
        return BatchResult(deleted=deleted, dry_run=dry_run, cutoff_date=cutoff.date())
