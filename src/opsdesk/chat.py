# chat.py
# Transport-facing chat service: one persisted 1:1 transcript per user with
# the agent. Wraps Agent.run_for; authentication and model faults come back
# as failed ChatReply values instead of exceptions.

import logging
from typing import Sequence

from pydantic import BaseModel
from sqlalchemy import delete, select

from opsdesk import auth
from opsdesk.errors import AuthenticationError, ModelCallError
from opsdesk.harness import Agent, VoiceFormat
from opsdesk.models import Attachment, Message, Principal
from opsdesk.store import AgentConversation, AgentMessage

logger = logging.getLogger(__name__)

# Portal roles need an explicit AI_AGENT grant (their subscription add-on).
GATED_ROLES = frozenset({"CONTRACTOR", "PROPERTY_MANAGER"})

FAILURE_REPLY = "Sorry, I could not process your request right now. Please try again in a moment."
FORBIDDEN_REPLY = "AI Agent requires an active subscription that includes AI Agent access."


class ChatReply(BaseModel):
    success: bool
    message: str
    conversation_id: int | None = None


class ChatService:
    """
    Example:
        service = ChatService(Agent.from_config(config))
        reply = service.send(token, [Message(role="user", content="How many open leads?")])
    """

    def __init__(self, agent: Agent) -> None:
        self._agent = agent

    # ------------------------------------------------------------------
    # Transcript storage
    # ------------------------------------------------------------------

    def _conversation_id(self, principal: Principal) -> int:
        with self._agent.session_factory() as session:
            conversation = session.scalar(
                select(AgentConversation).where(AgentConversation.user_id == principal.id)
            )
            if conversation is None:
                conversation = AgentConversation(user_id=principal.id)
                session.add(conversation)
                session.commit()
            return conversation.id

    def _store(self, conversation_id: int, role: str, content: str, attachments: Sequence[Attachment] = ()) -> None:
        with self._agent.session_factory() as session:
            session.add(
                AgentMessage(
                    conversation_id=conversation_id,
                    role=role,
                    content=content,
                    attachments=[a.mime_type for a in attachments],
                )
            )
            session.commit()

    def history(self, credential: str) -> list[Message]:
        principal = self._agent.authenticator.resolve(credential)
        conversation_id = self._conversation_id(principal)
        with self._agent.session_factory() as session:
            rows = session.scalars(
                select(AgentMessage)
                .where(AgentMessage.conversation_id == conversation_id)
                .order_by(AgentMessage.id)
            ).all()
        return [Message(role=row.role, content=row.content) for row in rows]

    def clear_conversation(self, credential: str) -> int:
        """Delete the transcript's messages but keep the transcript. Returns the number removed."""
        principal = self._agent.authenticator.resolve(credential)
        conversation_id = self._conversation_id(principal)
        with self._agent.session_factory() as session:
            removed = session.execute(
                delete(AgentMessage).where(AgentMessage.conversation_id == conversation_id)
            ).rowcount
            session.commit()
        logger.info("Cleared %d agent message(s) for user %d", removed or 0, principal.id)
        return removed or 0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def send(
        self,
        credential: str,
        messages: Sequence[Message],
        attachments: Sequence[Attachment] | None = None,
        voice_input: bool = False,
        voice_format: VoiceFormat | None = None,
    ) -> ChatReply:
        attachments = list(attachments or ())

        try:
            principal = self._agent.authenticator.resolve(credential)
        except AuthenticationError as exc:
            return ChatReply(success=False, message=str(exc))

        if principal.role in GATED_ROLES and not principal.can(auth.AI_AGENT):
            return ChatReply(success=False, message=FORBIDDEN_REPLY)

        conversation_id = self._conversation_id(principal)

        if messages and messages[-1].role == "user":
            self._store(conversation_id, "user", messages[-1].content, attachments)

        try:
            result = self._agent.run_for(principal, messages, attachments, voice_input, voice_format)
        except ModelCallError:
            logger.exception("Agent run failed for user %d", principal.id)
            return ChatReply(success=False, message=FAILURE_REPLY, conversation_id=conversation_id)

        self._store(conversation_id, "assistant", result.text)
        return ChatReply(success=True, message=result.text, conversation_id=conversation_id)
