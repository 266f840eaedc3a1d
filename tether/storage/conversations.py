"""SQL-backed conversation store (the loop's persistence collaborator)."""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from tether.runtime.schemas import ConversationEntry, Role, ToolCall, ToolResult
from tether.storage.database import Database
from tether.storage.models import Conversation, ConversationMessage

logger = logging.getLogger(__name__)


class SqlConversationStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        tool_calls: list[ToolCall] | None = None,
        tool_results: list[ToolResult] | None = None,
    ) -> None:
        async with self._db.session() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                session.add(Conversation(id=conversation_id))
                position = 0
            else:
                conversation.updated_at = func.now()
                position = await session.scalar(
                    select(func.count())
                    .select_from(ConversationMessage)
                    .where(ConversationMessage.conversation_id == conversation_id)
                ) or 0
            session.add(ConversationMessage(
                conversation_id=conversation_id,
                position=position,
                role=role,
                content=content,
                tool_calls=[c.model_dump() for c in tool_calls] if tool_calls else None,
                tool_results=[r.model_dump() for r in tool_results] if tool_results else None,
            ))
            await session.commit()
        logger.debug("Persisted %s message #%d for conversation %s", role, position, conversation_id)

    async def load(self, conversation_id: str) -> list[ConversationEntry]:
        """Stored turns of a conversation, oldest first."""
        async with self._db.session() as session:
            rows = await session.scalars(
                select(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
                .order_by(ConversationMessage.position)
            )
            return [_to_entry(row) for row in rows]


def _to_entry(row: ConversationMessage) -> ConversationEntry:
    entry = ConversationEntry(
        role=Role(row.role),
        content=row.content,
        tool_calls=[ToolCall.model_validate(c) for c in row.tool_calls] if row.tool_calls else None,
        tool_results=[ToolResult.model_validate(r) for r in row.tool_results] if row.tool_results else None,
    )
    if row.created_at is not None:
        entry = entry.model_copy(update={"timestamp": row.created_at})
    return entry
