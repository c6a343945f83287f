"""Durable storage for conversations, messages and per-conversation settings."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from language_mate.core.errors import MessageNotFoundError, StorageError
from language_mate.models.conversation import (
    ChatMessage,
    Conversation,
    ConversationSettingsRecord,
)
from language_mate.schemas.messages import (
    ConversationInfo,
    Message,
    MessageCreate,
    MessageMetadata,
    MessageUpdate,
)

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    async def create_conversation(
        self,
        language: str,
        title: str,
        model: str = "",
        chat_mate_prompt: str = "",
        editor_mate_prompt: str = "",
    ) -> ConversationInfo: ...

    async def get_conversation(self, conversation_id: str) -> ConversationInfo | None: ...

    async def list_conversations(self) -> list[ConversationInfo]: ...

    async def update_conversation(self, conversation_id: str, title: str) -> ConversationInfo | None: ...

    async def delete_conversation(self, conversation_id: str) -> bool: ...

    async def add_message(self, conversation_id: str, message: MessageCreate) -> Message: ...

    async def update_message(self, message_id: str, update: MessageUpdate) -> Message: ...

    async def delete_message(self, message_id: str) -> None: ...

    async def get_messages(self, conversation_id: str) -> list[Message]: ...

    async def get_conversation_settings(self, conversation_id: str) -> dict[str, Any] | None: ...

    async def update_conversation_settings(self, conversation_id: str, values: dict[str, Any]) -> None: ...


def _parse_id(value: str) -> int | None:
    return int(value) if value.isdigit() else None


def _to_info(conv: Conversation) -> ConversationInfo:
    return ConversationInfo(
        id=str(conv.id),
        title=conv.title,
        language=conv.language,
        model=conv.model,
        chat_mate_prompt=conv.chat_mate_prompt,
        editor_mate_prompt=conv.editor_mate_prompt,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
    )


def _to_message(row: ChatMessage) -> Message:
    return Message(
        id=str(row.id),
        type=row.type,
        content=row.content,
        reasoning=row.reasoning,
        attachments=row.attachments or [],
        parent_message_id=row.parent_message_id,
        metadata=MessageMetadata.model_validate(row.generation_metadata) if row.generation_metadata else None,
        timestamp=row.created_at,
    )


class SQLModelConversationStore:
    """ConversationStore backed by SQLModel tables."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self._engine) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Database error: {e}")
            raise StorageError(f"Could not save your changes: {e}") from e

    def _touch(self, session: Session, conversation_id: int) -> None:
        conv = session.get(Conversation, conversation_id)
        if conv:
            conv.updated_at = datetime.now(timezone.utc)
            session.add(conv)

    async def create_conversation(
        self,
        language: str,
        title: str,
        model: str = "",
        chat_mate_prompt: str = "",
        editor_mate_prompt: str = "",
    ) -> ConversationInfo:
        with self._session() as session:
            conv = Conversation(
                title=title,
                language=language,
                model=model,
                chat_mate_prompt=chat_mate_prompt,
                editor_mate_prompt=editor_mate_prompt,
            )
            session.add(conv)
            session.commit()
            session.refresh(conv)
            logger.debug(f"Created conversation {conv.id} ({language})")
            return _to_info(conv)

    async def get_conversation(self, conversation_id: str) -> ConversationInfo | None:
        cid = _parse_id(conversation_id)
        if cid is None:
            return None
        with self._session() as session:
            conv = session.get(Conversation, cid)
            return _to_info(conv) if conv else None

    async def list_conversations(self) -> list[ConversationInfo]:
        with self._session() as session:
            conversations = session.exec(
                select(Conversation).order_by(Conversation.updated_at.desc())  # type: ignore
            ).all()
            return [_to_info(c) for c in conversations]

    async def update_conversation(self, conversation_id: str, title: str) -> ConversationInfo | None:
        cid = _parse_id(conversation_id)
        if cid is None:
            return None
        with self._session() as session:
            conv = session.get(Conversation, cid)
            if not conv:
                return None
            conv.title = title
            conv.updated_at = datetime.now(timezone.utc)
            session.add(conv)
            session.commit()
            session.refresh(conv)
            return _to_info(conv)

    async def delete_conversation(self, conversation_id: str) -> bool:
        cid = _parse_id(conversation_id)
        if cid is None:
            return False
        with self._session() as session:
            conv = session.get(Conversation, cid)
            if not conv:
                return False
            record = session.get(ConversationSettingsRecord, cid)
            if record:
                session.delete(record)
            for msg in session.exec(select(ChatMessage).where(ChatMessage.conversation_id == cid)).all():
                session.delete(msg)
            session.delete(conv)
            session.commit()
            logger.debug(f"Deleted conversation {cid}")
            return True

    async def add_message(self, conversation_id: str, message: MessageCreate) -> Message:
        cid = _parse_id(conversation_id)
        with self._session() as session:
            if cid is None or session.get(Conversation, cid) is None:
                raise StorageError(f"Conversation '{conversation_id}' does not exist")
            row = ChatMessage(
                conversation_id=cid,
                type=message.type,
                content=message.content,
                reasoning=message.reasoning,
                parent_message_id=message.parent_message_id,
                attachments=[a.model_dump(mode="json") for a in message.attachments] or None,
                generation_metadata=message.metadata.model_dump() if message.metadata else None,
            )
            session.add(row)
            self._touch(session, cid)
            session.commit()
            session.refresh(row)
            return _to_message(row)

    async def update_message(self, message_id: str, update: MessageUpdate) -> Message:
        mid = _parse_id(message_id)
        with self._session() as session:
            row = session.get(ChatMessage, mid) if mid is not None else None
            if row is None:
                raise MessageNotFoundError(message_id)
            if update.content is not None:
                row.content = update.content
            if update.reasoning is not None:
                row.reasoning = update.reasoning or None
            if update.metadata is not None:
                row.generation_metadata = update.metadata.model_dump()
            session.add(row)
            self._touch(session, row.conversation_id)
            session.commit()
            session.refresh(row)
            return _to_message(row)

    async def delete_message(self, message_id: str) -> None:
        mid = _parse_id(message_id)
        with self._session() as session:
            row = session.get(ChatMessage, mid) if mid is not None else None
            if row is None:
                raise MessageNotFoundError(message_id)
            session.delete(row)
            session.commit()

    async def get_messages(self, conversation_id: str) -> list[Message]:
        cid = _parse_id(conversation_id)
        if cid is None:
            return []
        with self._session() as session:
            rows = session.exec(
                select(ChatMessage)
                .where(ChatMessage.conversation_id == cid)
                .order_by(ChatMessage.id)  # type: ignore
            ).all()
            return [_to_message(r) for r in rows]

    async def get_conversation_settings(self, conversation_id: str) -> dict[str, Any] | None:
        cid = _parse_id(conversation_id)
        if cid is None:
            return None
        with self._session() as session:
            record = session.get(ConversationSettingsRecord, cid)
            return dict(record.settings) if record else None

    async def update_conversation_settings(self, conversation_id: str, values: dict[str, Any]) -> None:
        cid = _parse_id(conversation_id)
        with self._session() as session:
            if cid is None or session.get(Conversation, cid) is None:
                raise StorageError(f"Conversation '{conversation_id}' does not exist")
            record = session.get(ConversationSettingsRecord, cid)
            if record is None:
                record = ConversationSettingsRecord(conversation_id=cid, settings=dict(values))
            else:
                # Reassign so the JSON column is flagged dirty
                record.settings = {**record.settings, **values}
                record.updated_at = datetime.now(timezone.utc)
            session.add(record)
            session.commit()
