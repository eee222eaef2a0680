"""Pytest configuration and fixtures."""

from typing import Any, Dict, List, Optional
from datetime import timedelta

import pytest

from helpdesk_ai.engine import SupportEngine
from helpdesk_ai.models.schemas import (
    Agent, Availability, Category, Contact, Conversation, KnowledgeArticle,
    Message, SenderKind, Team, utc_now
)
from helpdesk_ai.services.datastore import InMemoryDataStore
from helpdesk_ai.services.job_queue import InMemoryJobQueue
from helpdesk_ai.services.notification_service import InMemoryTransport
from helpdesk_ai.services.vector_index import InMemoryVectorIndex

ACCOUNT_ID = "acct-1"
OTHER_ACCOUNT_ID = "acct-2"

# Each axis counts one keyword, so similarity is fully predictable in tests
EMBEDDING_AXES = ["charge", "refund", "password", "login", "api", "error",
                  "pricing", "invoice"]


class FakeEmbeddingService:
    """Keyword-count embeddings; records every text it embeds."""

    def __init__(self):
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        lowered = text.lower()
        return [float(lowered.count(axis)) for axis in EMBEDDING_AXES]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]


class FakeLLM:
    """
    Scripted LLM. JSON-mode calls pop from ``json_responses``, free-text
    calls pop from ``text_responses``. Exceptions in the queues are raised.
    """

    model_name = "fake-model"

    def __init__(self,
                 json_responses: Optional[List[Any]] = None,
                 text_responses: Optional[List[Any]] = None):
        self.json_responses = list(json_responses or [])
        self.text_responses = list(text_responses or [])
        self.prompts: List[str] = []
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, prompt, response_schema_hint=None,
                       max_tokens=1024, temperature=0.3):
        self.prompts.append(prompt)
        self.calls.append({
            "json": response_schema_hint is not None,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        queue = self.json_responses if response_schema_hint is not None else self.text_responses
        if not queue:
            raise AssertionError("FakeLLM ran out of scripted responses")
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response()
        return response


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_embedder() -> FakeEmbeddingService:
    return FakeEmbeddingService()


@pytest.fixture
def datastore() -> InMemoryDataStore:
    """
    One account with a premium contact, an open conversation holding the
    duplicate-charge message, a Billing team and a full Technical team.
    """
    store = InMemoryDataStore()

    store.add_contact(Contact(
        id="contact-1", account_id=ACCOUNT_ID, name="Maria Virtanen",
        email="maria@example.com", tier="premium", conversation_count=4,
        avg_csat=4.6, created_at=utc_now() - timedelta(days=400)
    ))
    store.add_conversation(Conversation(
        id="conv-1", account_id=ACCOUNT_ID, contact_id="contact-1"
    ))
    store.add_message(Message(
        id="msg-1", conversation_id="conv-1", account_id=ACCOUNT_ID,
        sender_kind=SenderKind.CUSTOMER,
        content="I was charged twice for order #12345"
    ))

    for agent in [
        Agent(id="agent-alice", account_id=ACCOUNT_ID, name="Alice",
              availability=Availability.ONLINE, current_load=4,
              max_capacity=8, csat_score=4.9),
        Agent(id="agent-bob", account_id=ACCOUNT_ID, name="Bob",
              availability=Availability.ONLINE, current_load=1,
              max_capacity=8, csat_score=4.1),
        Agent(id="agent-carol", account_id=ACCOUNT_ID, name="Carol",
              availability=Availability.ONLINE, current_load=2,
              max_capacity=8, csat_score=4.5),
        Agent(id="agent-dave", account_id=ACCOUNT_ID, name="Dave",
              availability=Availability.OFFLINE, current_load=0,
              max_capacity=8, csat_score=5.0),
        Agent(id="agent-erin", account_id=ACCOUNT_ID, name="Erin",
              availability=Availability.ONLINE, current_load=5,
              max_capacity=5, csat_score=4.8),
    ]:
        store.add_agent(agent)

    store.add_team(Team(
        id="team-billing", account_id=ACCOUNT_ID, name="Billing",
        categories=[Category.BILLING],
        member_ids=["agent-alice", "agent-bob", "agent-carol", "agent-dave"]
    ))
    store.add_team(Team(
        id="team-tech", account_id=ACCOUNT_ID, name="Technical",
        categories=[Category.TECHNICAL],
        member_ids=["agent-erin"]
    ))
    return store


@pytest.fixture
def engine(datastore, fake_llm, fake_embedder) -> SupportEngine:
    return SupportEngine(
        datastore=datastore,
        llm_service=fake_llm,
        embedding_service=fake_embedder,
        vector_index=InMemoryVectorIndex(),
        queue=InMemoryJobQueue(),
        transport=InMemoryTransport()
    )


@pytest.fixture
def billing_article() -> KnowledgeArticle:
    return KnowledgeArticle(
        id="kb-duplicate-charge",
        account_id=ACCOUNT_ID,
        title="Duplicate charge",
        content=(
            "A duplicate charge is reversed automatically within 1-3 business days. "
            "You can follow the status on the billing page."
        ),
        category=Category.BILLING
    )


@pytest.fixture
def billing_payload() -> Dict[str, Any]:
    """Model output for the duplicate-charge message"""
    return {
        "category": "billing",
        "priority": "high",
        "sentiment": "negative",
        "language": "en",
        "confidence": 0.93,
        "reasoning": "Customer reports a duplicate charge",
        "suggested_team": "Billing",
        "suggested_agent": "Alice"
    }
