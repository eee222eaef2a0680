"""Unit tests for draft generation."""

from datetime import timedelta

import pytest

from helpdesk_ai.agents.draft_agent import (
    compute_draft_confidence, split_self_reported_confidence, tone_for,
    truncate_at_sentence
)
from helpdesk_ai.exceptions import LLMMalformedResponseError
from helpdesk_ai.models.schemas import (
    Category, Classification, DraftStatus, Language, Message, Priority,
    SenderKind, Sentiment, utc_now
)
from helpdesk_ai.services.notification_service import DRAFT_READY
from tests.conftest import ACCOUNT_ID

DRAFT_TEXT = (
    "Hi Maria, I'm sorry about the duplicate charge on order #12345. "
    "The extra charge will be refunded within 1-3 business days.\n"
    "Confidence: 0.9"
)


def _classification(**overrides) -> Classification:
    fields = dict(
        message_id="msg-1", conversation_id="conv-1", account_id=ACCOUNT_ID,
        category=Category.BILLING, priority=Priority.HIGH,
        sentiment=Sentiment.NEGATIVE, language=Language.EN, confidence=0.93
    )
    fields.update(overrides)
    return Classification(**fields)


class TestDraftHelpers:

    def test_confidence_uses_default_without_articles(self):
        assert compute_draft_confidence(None, []) == pytest.approx(0.7)

    def test_confidence_averages_model_and_relevance(self):
        assert compute_draft_confidence(0.9, [0.8, 1.0]) == pytest.approx(0.9)
        assert compute_draft_confidence(None, [0.8]) == pytest.approx(0.75)

    def test_confidence_is_deterministic(self):
        inputs = (0.61, [0.72, 0.83, 0.91])
        assert compute_draft_confidence(*inputs) == compute_draft_confidence(*inputs)

    @pytest.mark.parametrize("text, expected", [
        ("Thanks!\nConfidence: 0.8", 0.8),
        ("Thanks!\nConfidence: 85%", 0.85),
        ("Thanks!\n**Confidence**: 75", 0.75),
    ])
    def test_self_reported_confidence_parsed(self, text, expected):
        body, confidence = split_self_reported_confidence(text)
        assert body == "Thanks!"
        assert confidence == pytest.approx(expected)

    def test_no_confidence_line(self):
        assert split_self_reported_confidence(" Hello there. ") == ("Hello there.", None)

    def test_truncate_prefers_sentence_boundary(self):
        text = "First sentence here. Second sentence is quite a bit longer than that."
        assert truncate_at_sentence(text, 30) == "First sentence here."
        assert truncate_at_sentence("short", 40) == "short"

    def test_tone_rules(self):
        assert tone_for(None) == "friendly and professional"
        assert "empathetic" in tone_for(_classification(sentiment=Sentiment.ANGRY))
        urgent = tone_for(_classification(priority=Priority.URGENT,
                                          sentiment=Sentiment.NEUTRAL))
        assert urgent.startswith("urgent but calm")
        positive = tone_for(_classification(priority=Priority.LOW,
                                            sentiment=Sentiment.POSITIVE))
        assert "positive energy" in positive


class TestDraftAgent:
    """Test suite for the draft workflow."""

    @pytest.mark.asyncio
    async def test_grounded_draft_for_duplicate_charge(
            self, engine, fake_llm, datastore, billing_article):
        await engine.knowledge_agent.add_article(billing_article)
        await datastore.save_classification(_classification())
        fake_llm.text_responses.append(DRAFT_TEXT)

        draft = await engine.run_draft("msg-1")

        assert draft.status == DraftStatus.PENDING
        assert draft.knowledge_article_ids == ["kb-duplicate-charge"]
        assert "Confidence" not in draft.content
        assert draft.content.startswith("Hi Maria")
        # (0.9 self-reported + 1.0 relevance) / 2
        assert draft.confidence == pytest.approx(0.95)
        assert draft.expires_at > utc_now() + timedelta(hours=23)

        stored = await datastore.get_draft(draft.id)
        assert stored is not None

        prompt = fake_llm.prompts[0]
        assert "Duplicate charge" in prompt
        assert "Immediate refund for duplicate charges" in prompt
        assert "empathetic and reassuring" in prompt
        assert "English" in prompt
        assert fake_llm.calls[0]["json"] is False

    @pytest.mark.asyncio
    async def test_unclassified_message_gets_neutral_tone(self, engine, fake_llm):
        fake_llm.text_responses.append("Thanks for reaching out, we are on it.")

        draft = await engine.run_draft("msg-1")

        assert draft.knowledge_article_ids == []
        assert draft.confidence == pytest.approx(0.7)
        assert "friendly and professional" in fake_llm.prompts[0]
        assert "Not yet classified" in fake_llm.prompts[0]

    @pytest.mark.asyncio
    async def test_pending_draft_is_not_duplicated(self, engine, fake_llm, datastore):
        fake_llm.text_responses.append("First reply.")

        first = await engine.run_draft("msg-1")
        second = await engine.run_draft("msg-1")

        assert first.id == second.id
        assert len(fake_llm.prompts) == 1
        assert len(await datastore.list_drafts(ACCOUNT_ID)) == 1

    @pytest.mark.asyncio
    async def test_history_excludes_current_message(self, engine, fake_llm, datastore):
        now = utc_now()
        for i in range(7):
            datastore.add_message(Message(
                id=f"msg-old-{i}", conversation_id="conv-1",
                account_id=ACCOUNT_ID,
                sender_kind=SenderKind.CUSTOMER if i % 2 == 0 else SenderKind.AGENT,
                content=f"earlier turn {i}",
                created_at=now - timedelta(hours=10 - i)
            ))

        context = await engine.draft_agent.load_context("msg-1")

        assert [m.id for m in context.history] == [
            "msg-old-2", "msg-old-3", "msg-old-4", "msg-old-5", "msg-old-6"
        ]
        assert all(m.id != "msg-1" for m in context.history)

    @pytest.mark.asyncio
    async def test_draft_ready_goes_to_assignee(self, engine, fake_llm, datastore):
        await datastore.assign_conversation("conv-1", "team-billing", "agent-carol")
        fake_llm.text_responses.append("We are looking into it.")

        draft = await engine.run_draft("msg-1")

        events = engine.transport.named(DRAFT_READY)
        assert len(events) == 1
        assert events[0].recipient_id == "agent-carol"
        assert events[0].payload["id"] == draft.id

    @pytest.mark.asyncio
    async def test_empty_completion_is_malformed(self, engine, fake_llm, datastore):
        fake_llm.text_responses.append("   ")

        with pytest.raises(LLMMalformedResponseError):
            await engine.run_draft("msg-1")

        assert await datastore.list_drafts(ACCOUNT_ID) == []

    @pytest.mark.asyncio
    async def test_conversation_deleted_mid_flight(self, engine, fake_llm, datastore):
        def delete_then_answer():
            datastore.delete_conversation("conv-1")
            return "A reply nobody will read."

        fake_llm.text_responses.append(delete_then_answer)

        assert await engine.run_draft("msg-1") is None
        assert datastore.drafts == {}
        assert engine.transport.named(DRAFT_READY) == []
