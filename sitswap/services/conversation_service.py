"""Conversation collaborator: get-or-create a thread between two parties."""

import logging
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.models.message import Conversation

logger = logging.getLogger(__name__)


class ConversationService:
    async def find_conversation(
        self,
        db: AsyncSession,
        listing_id: UUID,
        user_a: UUID,
        user_b: UUID,
        match_id: UUID | None = None,
    ) -> Conversation | None:
        filters = [
            and_(
                Conversation.listing_id == listing_id,
                Conversation.participant1_id == user_a,
                Conversation.participant2_id == user_b,
            ),
            and_(
                Conversation.listing_id == listing_id,
                Conversation.participant1_id == user_b,
                Conversation.participant2_id == user_a,
            ),
        ]
        if match_id is not None:
            filters.insert(0, Conversation.match_id == match_id)

        result = await db.execute(select(Conversation).where(or_(*filters)).limit(1))
        return result.scalar_one_or_none()

    async def ensure_conversation(
        self,
        db: AsyncSession,
        listing_id: UUID,
        user_a: UUID,
        user_b: UUID,
        match_id: UUID | None = None,
    ) -> Conversation:
        """Return the parties' conversation for the listing, creating it if absent."""
        conversation = await self.find_conversation(db, listing_id, user_a, user_b, match_id)
        if conversation:
            return conversation

        conversation = Conversation(
            listing_id=listing_id,
            match_id=match_id,
            participant1_id=user_a,
            participant2_id=user_b,
            last_message_at=datetime.now(UTC),
        )
        db.add(conversation)
        await db.flush()
        logger.info(f"Created conversation {conversation.id} for listing {listing_id}")
        return conversation


conversation_service = ConversationService()
