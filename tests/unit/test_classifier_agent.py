"""Unit tests for the classifier agent and classification workflow."""

import pytest

from helpdesk_ai.agents.classifier_agent import coerce_confidence, coerce_enum
from helpdesk_ai.exceptions import (
    LLMMalformedResponseError, LLMTimeoutError, ReferenceNotFoundError
)
from helpdesk_ai.models.schemas import (
    Category, Language, Message, Priority, SenderKind, Sentiment
)
from helpdesk_ai.services.notification_service import CLASSIFICATION_COMPLETED


class TestPayloadCoercion:
    """Untrusted model output is coerced, never trusted."""

    @pytest.mark.parametrize("raw, expected", [
        (0.42, 0.42),
        (1.7, 1.0),
        (-0.3, 0.0),
        ("0.8", 0.8),
        ("very sure", 0.0),
        (None, 0.0),
        (True, 0.0),
        (float("nan"), 0.0),
    ])
    def test_confidence_is_clamped_or_zeroed(self, raw, expected):
        assert coerce_confidence(raw) == pytest.approx(expected)

    def test_unknown_category_maps_to_other(self):
        assert coerce_enum("refunds", Category, Category.OTHER) == Category.OTHER
        assert coerce_enum(" Billing ", Category, Category.OTHER) == Category.BILLING
        assert coerce_enum(42, Category, Category.OTHER) == Category.OTHER

    def test_parse_payload_defaults(self, engine):
        fields = engine.classifier_agent.parse_payload({
            "category": "unknown-thing",
            "priority": "critical",
            "sentiment": "meh",
            "language": "English",
            "confidence": 3,
            "suggested_team": "null",
        })

        assert fields["category"] == Category.OTHER
        assert fields["priority"] == Priority.URGENT
        assert fields["sentiment"] == Sentiment.NEUTRAL
        assert fields["language"] == Language.EN
        assert fields["confidence"] == 0.0
        assert fields["suggested_team"] is None
        assert fields["reasoning"] == "(Missing or invalid category, sentiment from model)"

    def test_parse_payload_keeps_confidence_when_all_fields_valid(self, engine):
        fields = engine.classifier_agent.parse_payload({
            "category": "technical",
            "priority": "medium",
            "sentiment": "angry",
            "language": "fi",
            "confidence": 3,
        })

        assert fields["priority"] == Priority.NORMAL
        assert fields["confidence"] == 1.0
        assert fields["reasoning"] == ""

    def test_parse_payload_accepts_fenced_json_text(self, engine):
        fields = engine.classifier_agent.parse_payload(
            '```json\n{"category": "sales", "priority": "low", "sentiment": "positive", '
            '"language": "en", "confidence": 0.7}\n```'
        )

        assert fields["category"] == Category.SALES
        assert fields["confidence"] == pytest.approx(0.7)


class TestClassifierAgent:
    """Test suite for classification and auto-assignment."""

    @pytest.mark.asyncio
    async def test_duplicate_charge_is_classified_and_auto_assigned(
            self, engine, fake_llm, datastore, billing_payload):
        """High-confidence billing message goes to the least loaded Billing agent."""
        fake_llm.json_responses.append(billing_payload)

        classification = await engine.run_classification("msg-1")

        assert classification.category == Category.BILLING
        assert classification.confidence >= 0.9
        assert classification.suggested_team_id == "team-billing"
        assert classification.suggested_agent_id == "agent-alice"

        conversation = await datastore.get_conversation("conv-1")
        # Router overrides the suggestion: Bob has the lowest load ratio
        assert conversation.assignee_id == "agent-bob"
        assert conversation.team_id == "team-billing"
        assert datastore.agents["agent-bob"].current_load == 2
        assert datastore.agents["agent-alice"].current_load == 4

    @pytest.mark.asyncio
    async def test_classification_prompt_includes_context(
            self, engine, fake_llm, billing_payload):
        fake_llm.json_responses.append(billing_payload)

        await engine.run_classification("msg-1")

        prompt = fake_llm.prompts[0]
        assert "I was charged twice for order #12345" in prompt
        assert "premium tier" in prompt
        assert "Billing: 3 agents online" in prompt
        assert "Technical: 1 agents online, 100% capacity used" in prompt
        assert fake_llm.calls[0]["json"] is True
        assert fake_llm.calls[0]["temperature"] == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_low_confidence_does_not_assign(
            self, engine, fake_llm, datastore, billing_payload):
        fake_llm.json_responses.append({**billing_payload, "confidence": 0.6})

        classification = await engine.run_classification("msg-1")

        assert classification.confidence == pytest.approx(0.6)
        conversation = await datastore.get_conversation("conv-1")
        assert conversation.assignee_id is None
        assert datastore.agents["agent-bob"].current_load == 1

    @pytest.mark.asyncio
    async def test_invalid_category_zeroes_confidence_and_skips_assignment(
            self, engine, fake_llm, datastore, billing_payload):
        fake_llm.json_responses.append(
            {**billing_payload, "category": "refunds", "confidence": 0.95}
        )

        classification = await engine.run_classification("msg-1")

        assert classification.category == Category.OTHER
        assert classification.confidence == 0.0
        assert "category" in classification.reasoning
        assert await datastore.get_latest_classification("conv-1") is not None
        conversation = await datastore.get_conversation("conv-1")
        assert conversation.assignee_id is None
        assert datastore.agents["agent-bob"].current_load == 1

    @pytest.mark.asyncio
    async def test_high_confidence_without_agent_does_not_assign(
            self, engine, fake_llm, datastore, billing_payload):
        fake_llm.json_responses.append({**billing_payload, "suggested_agent": None})

        await engine.run_classification("msg-1")

        conversation = await datastore.get_conversation("conv-1")
        assert conversation.assignee_id is None

    @pytest.mark.asyncio
    async def test_out_of_range_confidence_is_clamped_and_persisted(
            self, engine, fake_llm, datastore, billing_payload):
        fake_llm.json_responses.append({**billing_payload, "confidence": 7.5})

        await engine.run_classification("msg-1")

        stored = await datastore.get_latest_classification("conv-1")
        assert stored.confidence == 1.0

    @pytest.mark.asyncio
    async def test_malformed_output_persists_fallback(
            self, engine, fake_llm, datastore):
        fake_llm.json_responses.append(
            LLMMalformedResponseError("Response is not a JSON object",
                                      raw_response="Sure! It's billing.")
        )

        classification = await engine.run_classification("msg-1")

        assert classification.category == Category.OTHER
        assert classification.priority == Priority.NORMAL
        assert classification.sentiment == Sentiment.NEUTRAL
        assert classification.language == Language.UNKNOWN
        assert classification.confidence == 0.0
        assert classification.raw_response == "Sure! It's billing."
        assert await datastore.get_latest_classification("conv-1") is not None

    @pytest.mark.asyncio
    async def test_urgent_keywords_raise_priority_but_not_confidence(
            self, engine, fake_llm, datastore, billing_payload):
        datastore.add_message(Message(
            id="msg-down", conversation_id="conv-1", account_id="acct-1",
            sender_kind=SenderKind.CUSTOMER,
            content="Our checkout is down and customers cannot pay"
        ))
        fake_llm.json_responses.append({
            **billing_payload, "priority": "low", "confidence": 0.5
        })

        classification = await engine.run_classification("msg-down")

        assert classification.priority == Priority.HIGH
        assert classification.confidence == pytest.approx(0.5)
        assert "urgent keywords" in classification.reasoning

    @pytest.mark.asyncio
    async def test_transient_errors_propagate(self, engine, fake_llm, datastore):
        fake_llm.json_responses.append(LLMTimeoutError("too slow"))

        with pytest.raises(LLMTimeoutError):
            await engine.run_classification("msg-1")

        assert await datastore.get_latest_classification("conv-1") is None

    @pytest.mark.asyncio
    async def test_missing_message_is_referential_error(self, engine):
        with pytest.raises(ReferenceNotFoundError):
            await engine.run_classification("msg-missing")

    @pytest.mark.asyncio
    async def test_conversation_deleted_mid_flight_is_noop(
            self, engine, fake_llm, datastore, billing_payload):
        def delete_then_answer():
            datastore.delete_conversation("conv-1")
            return billing_payload

        fake_llm.json_responses.append(delete_then_answer)

        result = await engine.run_classification("msg-1")

        assert result is None
        assert datastore.classifications == {}
        assert engine.transport.named(CLASSIFICATION_COMPLETED) == []

    @pytest.mark.asyncio
    async def test_reclassification_creates_new_record(
            self, engine, fake_llm, datastore, billing_payload):
        """Re-running the same job yields a consistent new record."""
        fake_llm.json_responses.extend([
            {**billing_payload, "confidence": 0.5},
            {**billing_payload, "confidence": 0.6},
        ])

        first = await engine.run_classification("msg-1")
        second = await engine.run_classification("msg-1")

        assert first.id != second.id
        assert len(datastore.classifications) == 2
        latest = await datastore.get_latest_classification("conv-1")
        assert latest.confidence in (0.5, 0.6)

    @pytest.mark.asyncio
    async def test_completion_event_is_published(
            self, engine, fake_llm, billing_payload):
        fake_llm.json_responses.append(billing_payload)

        await engine.run_classification("msg-1")

        events = engine.transport.named(CLASSIFICATION_COMPLETED)
        assert len(events) == 1
        assert events[0].conversation_id == "conv-1"
        assert events[0].payload["category"] == "billing"
        assert events[0].payload["assignee_id"] == "agent-bob"
