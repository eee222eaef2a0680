"""Data store boundary for the engine.

``SupportDataStore`` is the contract the engine needs from the platform's
relational store. ``InMemoryDataStore`` implements it with dictionaries and
one lock; it backs the API in development and the test-suite.

Two operations carry the only mutual exclusion in the system:

- ``transition_draft`` is a compare-and-set on ``status``;
- ``assign_conversation`` / ``release_conversation`` are the single place
  where ``Agent.current_load`` changes.
"""

from typing import Dict, List, Optional, Protocol
from datetime import datetime
import logging
import threading

from helpdesk_ai.exceptions import CapacityExceededError, DraftNotFoundError
from helpdesk_ai.models.schemas import (
    Agent, Availability, Classification, Contact, Conversation,
    ConversationStatus, Draft, DraftStatus, Message, SenderKind, Team,
    utc_now
)

logger = logging.getLogger(__name__)


class SupportDataStore(Protocol):
    """Abstraction over the platform's conversation and routing records."""

    async def get_message(self, message_id: str) -> Optional[Message]: ...

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def conversation_exists(self, conversation_id: str) -> bool: ...

    async def get_contact(self, contact_id: str) -> Optional[Contact]: ...

    async def get_recent_messages(self, conversation_id: str,
                                  limit: int) -> List[Message]: ...

    async def create_message(self, message: Message) -> Message: ...

    async def save_classification(self, classification: Classification) -> bool: ...

    async def get_latest_classification(self, conversation_id: str) -> Optional[Classification]: ...

    async def list_classifications(self, account_id: str,
                                   since: Optional[datetime] = None,
                                   until: Optional[datetime] = None) -> List[Classification]: ...

    async def get_teams(self, account_id: str) -> List[Team]: ...

    async def get_team(self, team_id: str) -> Optional[Team]: ...

    async def get_agent(self, agent_id: str) -> Optional[Agent]: ...

    async def get_team_agents(self, team_id: str) -> List[Agent]: ...

    async def save_draft(self, draft: Draft) -> bool: ...

    async def get_draft(self, draft_id: str) -> Optional[Draft]: ...

    async def get_pending_draft_for_message(self, message_id: str) -> Optional[Draft]: ...

    async def list_drafts(self, account_id: Optional[str] = None,
                          status: Optional[DraftStatus] = None,
                          since: Optional[datetime] = None,
                          until: Optional[datetime] = None) -> List[Draft]: ...

    async def transition_draft(self, draft_id: str, to_status: DraftStatus,
                               **changes) -> Optional[Draft]: ...

    async def assign_conversation(self, conversation_id: str,
                                  team_id: Optional[str],
                                  agent_id: Optional[str]) -> Conversation: ...

    async def release_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def update_conversation_status(self, conversation_id: str,
                                         status: ConversationStatus) -> Optional[Conversation]: ...


class InMemoryDataStore:
    """Dictionary-backed store; every method copies records in and out."""

    def __init__(self):
        self._lock = threading.RLock()
        self.messages: Dict[str, Message] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.contacts: Dict[str, Contact] = {}
        self.classifications: Dict[str, Classification] = {}
        self.drafts: Dict[str, Draft] = {}
        self.agents: Dict[str, Agent] = {}
        self.teams: Dict[str, Team] = {}

    # ---------------------------
    # Seeding helpers
    # ---------------------------

    def add_contact(self, contact: Contact) -> Contact:
        with self._lock:
            self.contacts[contact.id] = contact.model_copy(deep=True)
        return contact

    def add_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            self.conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    def add_message(self, message: Message) -> Message:
        with self._lock:
            self.messages[message.id] = message.model_copy(deep=True)
        return message

    def add_agent(self, agent: Agent) -> Agent:
        with self._lock:
            self.agents[agent.id] = agent.model_copy(deep=True)
        return agent

    def add_team(self, team: Team) -> Team:
        with self._lock:
            self.teams[team.id] = team.model_copy(deep=True)
        return team

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            conversation = self.conversations.get(conversation_id)
            if conversation and conversation.assignee_id:
                self._release_locked(conversation)
            self.conversations.pop(conversation_id, None)

    def set_agent_availability(self, agent_id: str,
                               availability: Availability) -> None:
        with self._lock:
            self.agents[agent_id].availability = availability

    # ---------------------------
    # Messages & conversations
    # ---------------------------

    async def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            message = self.messages.get(message_id)
            return message.model_copy(deep=True) if message else None

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self.conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    async def conversation_exists(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self.conversations

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        with self._lock:
            contact = self.contacts.get(contact_id)
            return contact.model_copy(deep=True) if contact else None

    async def get_recent_messages(self, conversation_id: str,
                                  limit: int) -> List[Message]:
        """Return the last ``limit`` messages, oldest first"""
        with self._lock:
            messages = [
                m.model_copy(deep=True) for m in self.messages.values()
                if m.conversation_id == conversation_id
            ]
        messages.sort(key=lambda m: (m.created_at, m.id))
        return messages[-limit:] if limit > 0 else []

    async def create_message(self, message: Message) -> Message:
        with self._lock:
            conversation = self.conversations.get(message.conversation_id)
            if conversation is None:
                raise KeyError(message.conversation_id)
            self.messages[message.id] = message.model_copy(deep=True)
            if (message.sender_kind == SenderKind.AGENT
                    and conversation.first_reply_at is None):
                conversation.first_reply_at = message.created_at
            conversation.updated_at = utc_now()
        return message

    # ---------------------------
    # Classifications
    # ---------------------------

    async def save_classification(self, classification: Classification) -> bool:
        with self._lock:
            if classification.conversation_id not in self.conversations:
                return False
            self.classifications[classification.id] = classification.model_copy(deep=True)
        return True

    async def get_latest_classification(self, conversation_id: str) -> Optional[Classification]:
        with self._lock:
            matches = [
                c for c in self.classifications.values()
                if c.conversation_id == conversation_id
            ]
        if not matches:
            return None
        latest = max(matches, key=lambda c: (c.created_at, c.id))
        return latest.model_copy(deep=True)

    async def list_classifications(self, account_id: str,
                                   since: Optional[datetime] = None,
                                   until: Optional[datetime] = None) -> List[Classification]:
        with self._lock:
            return [
                c.model_copy(deep=True) for c in self.classifications.values()
                if c.account_id == account_id
                and (since is None or c.created_at >= since)
                and (until is None or c.created_at <= until)
            ]

    # ---------------------------
    # Teams & agents
    # ---------------------------

    async def get_teams(self, account_id: str) -> List[Team]:
        with self._lock:
            teams = [t.model_copy(deep=True) for t in self.teams.values()
                     if t.account_id == account_id]
        return sorted(teams, key=lambda t: t.id)

    async def get_team(self, team_id: str) -> Optional[Team]:
        with self._lock:
            team = self.teams.get(team_id)
            return team.model_copy(deep=True) if team else None

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            agent = self.agents.get(agent_id)
            return agent.model_copy(deep=True) if agent else None

    async def get_team_agents(self, team_id: str) -> List[Agent]:
        with self._lock:
            team = self.teams.get(team_id)
            if team is None:
                return []
            return [
                self.agents[agent_id].model_copy(deep=True)
                for agent_id in team.member_ids
                if agent_id in self.agents
            ]

    async def assign_conversation(self, conversation_id: str,
                                  team_id: Optional[str],
                                  agent_id: Optional[str]) -> Conversation:
        """
        Assign a conversation to a team and, optionally, an agent.

        The capacity check and the load increment happen under one lock, so
        concurrent assignments can never push an agent above capacity. A
        previous assignee is released first.
        """
        with self._lock:
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                raise KeyError(conversation_id)

            if agent_id is not None and agent_id != conversation.assignee_id:
                agent = self.agents.get(agent_id)
                if agent is None:
                    raise KeyError(agent_id)
                if agent.current_load >= agent.max_capacity:
                    raise CapacityExceededError(
                        f"Agent {agent_id} is at capacity "
                        f"({agent.current_load}/{agent.max_capacity})"
                    )
                if conversation.assignee_id:
                    self._release_locked(conversation)
                agent.current_load += 1
                conversation.assignee_id = agent_id

            conversation.team_id = team_id
            conversation.updated_at = utc_now()
            return conversation.model_copy(deep=True)

    async def release_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                return None
            self._release_locked(conversation)
            return conversation.model_copy(deep=True)

    def _release_locked(self, conversation: Conversation) -> None:
        agent = self.agents.get(conversation.assignee_id) if conversation.assignee_id else None
        if agent is not None:
            agent.current_load = max(agent.current_load - 1, 0)
        conversation.assignee_id = None
        conversation.updated_at = utc_now()

    async def update_conversation_status(self, conversation_id: str,
                                         status: ConversationStatus) -> Optional[Conversation]:
        with self._lock:
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                return None
            if status in (ConversationStatus.RESOLVED, ConversationStatus.CLOSED):
                self._release_locked(conversation)
            conversation.status = status
            conversation.updated_at = utc_now()
            return conversation.model_copy(deep=True)

    # ---------------------------
    # Drafts
    # ---------------------------

    async def save_draft(self, draft: Draft) -> bool:
        with self._lock:
            if draft.conversation_id not in self.conversations:
                return False
            self.drafts[draft.id] = draft.model_copy(deep=True)
        return True

    async def get_draft(self, draft_id: str) -> Optional[Draft]:
        with self._lock:
            draft = self.drafts.get(draft_id)
            return draft.model_copy(deep=True) if draft else None

    async def get_pending_draft_for_message(self, message_id: str) -> Optional[Draft]:
        with self._lock:
            for draft in self.drafts.values():
                if (draft.message_id == message_id
                        and draft.status == DraftStatus.PENDING):
                    return draft.model_copy(deep=True)
        return None

    async def list_drafts(self, account_id: Optional[str] = None,
                          status: Optional[DraftStatus] = None,
                          since: Optional[datetime] = None,
                          until: Optional[datetime] = None) -> List[Draft]:
        with self._lock:
            drafts = [
                d.model_copy(deep=True) for d in self.drafts.values()
                if (account_id is None or d.account_id == account_id)
                and (status is None or d.status == status)
                and (since is None or d.created_at >= since)
                and (until is None or d.created_at <= until)
            ]
        return sorted(drafts, key=lambda d: (d.created_at, d.id))

    async def transition_draft(self, draft_id: str, to_status: DraftStatus,
                               **changes) -> Optional[Draft]:
        """
        Move a pending draft to ``to_status`` and apply ``changes``.

        Returns the updated draft, or None when the draft was no longer
        pending (the caller lost the race).
        """
        with self._lock:
            draft = self.drafts.get(draft_id)
            if draft is None:
                raise DraftNotFoundError(draft_id)
            if draft.status != DraftStatus.PENDING:
                return None
            updated = draft.model_copy(update={"status": to_status, **changes})
            self.drafts[draft_id] = updated
            return updated.model_copy(deep=True)
