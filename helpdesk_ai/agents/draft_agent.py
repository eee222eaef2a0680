from typing import List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import timedelta
import logging
import re

from config.settings import settings
from helpdesk_ai.exceptions import LLMMalformedResponseError, ReferenceNotFoundError
from helpdesk_ai.models.schemas import (
    Category, Classification, Conversation, Draft, Language, Message,
    Priority, SearchResult, SenderKind, Sentiment, utc_now
)
from helpdesk_ai.services.datastore import SupportDataStore
from helpdesk_ai.services.llm_service import GeminiLLMService
from helpdesk_ai.services.notification_service import (
    DRAFT_READY, NotificationService
)
from helpdesk_ai.agents.knowledge_agent import KnowledgeAgent

logger = logging.getLogger(__name__)

CATEGORY_POLICIES = {
    Category.BILLING: """- Immediate refund for duplicate charges (1-3 business days)
- Billing disputes reviewed within 24 hours
- Payment plan options available for outstanding balances
- Always verify account details before making changes""",
    Category.TECHNICAL: """- Escalate to the technical team if the issue requires engineering
- Provide clear step-by-step troubleshooting
- Offer to review screenshots or recordings to diagnose the issue
- Set realistic expectations for resolution time""",
    Category.SALES: """- Qualify the need before offering a demo or quote
- Highlight features relevant to what the customer asked
- Provide pricing information transparently
- Follow up within 24 hours""",
    Category.GENERAL: """- Be helpful and friendly
- Point to relevant help articles
- Escalate to a specialist team when unsure""",
}

LANGUAGE_NAMES = {
    Language.FI: "Finnish",
    Language.EN: "English",
    Language.SV: "Swedish",
    Language.DE: "German",
    Language.FR: "French",
    Language.ES: "Spanish",
}

_CONFIDENCE_LINE_RE = re.compile(
    r"^\s*\**confidence\**\s*[:=]\s*([0-9]*\.?[0-9]+)\s*(%?)\s*$",
    re.IGNORECASE | re.MULTILINE
)
_FENCE_RE = re.compile(r"^```[a-z]*\s*|\s*```$", re.IGNORECASE)


def tone_for(classification: Optional[Classification]) -> str:
    """Tone instruction derived from priority and sentiment"""
    if classification is None:
        return "friendly and professional"

    parts = []
    if classification.priority == Priority.URGENT:
        parts.append("urgent but calm, action-oriented")
    if classification.sentiment in (Sentiment.ANGRY, Sentiment.FRUSTRATED):
        parts.append("extra empathetic, apologetic if appropriate")
    elif classification.sentiment == Sentiment.NEGATIVE:
        parts.append("empathetic and reassuring")
    elif classification.sentiment == Sentiment.POSITIVE:
        parts.append("warm, match their positive energy")
    return "; ".join(parts) or "friendly and professional"


def split_self_reported_confidence(text: str) -> Tuple[str, Optional[float]]:
    """Strip a trailing ``Confidence: x`` line and return its value"""
    matches = list(_CONFIDENCE_LINE_RE.finditer(text))
    if not matches:
        return text.strip(), None

    last = matches[-1]
    value = float(last.group(1))
    if last.group(2) == "%" or value > 1.0:
        value = value / 100.0
    body = (text[:last.start()] + text[last.end():]).strip()
    return body, min(max(value, 0.0), 1.0)


def compute_draft_confidence(model_confidence: Optional[float],
                             relevances: List[float]) -> float:
    """
    Deterministic draft confidence.

    The model's self-reported value (or the configured default) is averaged
    with the mean relevance of the supporting articles when there are any.
    """
    model = (settings.DRAFT_DEFAULT_MODEL_CONFIDENCE
             if model_confidence is None else model_confidence)
    model = min(max(model, 0.0), 1.0)
    if relevances:
        mean_relevance = sum(relevances) / len(relevances)
        confidence = (model + mean_relevance) / 2
    else:
        confidence = model
    return round(min(max(confidence, 0.0), 1.0), 3)


def truncate_at_sentence(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars``, preferring a sentence boundary"""
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    boundary = max(cut.rfind(". "), cut.rfind("! "), cut.rfind("? "),
                   cut.rfind(".\n"))
    if boundary >= max_chars // 2:
        return cut[:boundary + 1].rstrip()
    return cut.rsplit(" ", 1)[0].rstrip() + "..."


@dataclass
class DraftContext:
    message: Message
    conversation: Conversation
    classification: Optional[Classification]
    history: List[Message] = field(default_factory=list)


class DraftAgent:
    """Agent responsible for writing reply drafts for human agents"""

    def __init__(self,
                 llm_service: GeminiLLMService,
                 datastore: SupportDataStore,
                 knowledge_agent: KnowledgeAgent,
                 notifications: NotificationService):
        self.name = "Draft Agent"
        self.llm_service = llm_service
        self.datastore = datastore
        self.knowledge_agent = knowledge_agent
        self.notifications = notifications
        self.max_response_length = settings.DRAFT_MAX_CHARS

    async def find_pending(self, message_id: str) -> Optional[Draft]:
        return await self.datastore.get_pending_draft_for_message(message_id)

    async def load_context(self, message_id: str) -> DraftContext:
        message = await self.datastore.get_message(message_id)
        if message is None:
            raise ReferenceNotFoundError("message", message_id)
        conversation = await self.datastore.get_conversation(message.conversation_id)
        if conversation is None:
            raise ReferenceNotFoundError("conversation", message.conversation_id)

        recent = await self.datastore.get_recent_messages(
            conversation.id, settings.DRAFT_HISTORY_FETCH
        )
        history = [m for m in recent if m.id != message.id]
        return DraftContext(
            message=message,
            conversation=conversation,
            classification=await self.datastore.get_latest_classification(
                conversation.id
            ),
            history=history[-settings.DRAFT_HISTORY_TURNS:]
        )

    async def retrieve_knowledge(self, context: DraftContext) -> List[SearchResult]:
        return await self.knowledge_agent.search(
            context.message.content,
            context.conversation.account_id
        )

    async def compose(self,
                      context: DraftContext,
                      search_results: List[SearchResult]) -> Draft:
        """Ask the model for a reply and score it"""
        prompt = self.build_prompt(context, search_results)
        response = await self.llm_service.complete(
            prompt,
            max_tokens=settings.DRAFT_MAX_TOKENS,
            temperature=settings.DRAFT_TEMPERATURE
        )
        if not isinstance(response, str):
            raise LLMMalformedResponseError("Draft completion was not text",
                                            raw_response=str(response))

        body, self_reported = split_self_reported_confidence(
            _FENCE_RE.sub("", response.strip())
        )
        content = truncate_at_sentence(body, self.max_response_length)
        if not content:
            raise LLMMalformedResponseError("Draft completion was empty",
                                            raw_response=response)

        relevances = [r.relevance for r in search_results]
        confidence = compute_draft_confidence(self_reported, relevances)
        reasoning = (
            f"Tone: {tone_for(context.classification)}. "
            f"Grounded on {len(search_results)} knowledge article(s)"
            + (f", model confidence {self_reported:.2f}" if self_reported is not None else "")
            + "."
        )

        return Draft(
            conversation_id=context.conversation.id,
            message_id=context.message.id,
            account_id=context.conversation.account_id,
            content=content,
            confidence=confidence,
            reasoning=reasoning,
            knowledge_article_ids=[r.article.id for r in search_results],
            expires_at=utc_now() + timedelta(hours=settings.DRAFT_TTL_HOURS)
        )

    async def persist(self, draft: Draft,
                      conversation: Conversation) -> Optional[Draft]:
        """Save the draft and tell the assignee; no-op if the conversation is gone"""
        if not await self.datastore.save_draft(draft):
            logger.info("Conversation %s no longer exists, dropping draft",
                        draft.conversation_id)
            return None

        # Re-read so the notification goes to the current assignee
        current = await self.datastore.get_conversation(conversation.id) or conversation
        logger.info("Saved draft %s for message %s (confidence %.2f)",
                    draft.id, draft.message_id, draft.confidence)
        await self.notifications.publish(
            DRAFT_READY,
            account_id=draft.account_id,
            conversation_id=draft.conversation_id,
            payload=draft.model_dump(mode="json"),
            recipient_id=current.assignee_id
        )
        return draft

    def build_prompt(self,
                     context: DraftContext,
                     search_results: List[SearchResult]) -> str:
        classification = context.classification
        if classification is not None:
            classification_text = (
                f"- Category: {classification.category.value}\n"
                f"- Priority: {classification.priority.value}\n"
                f"- Sentiment: {classification.sentiment.value}\n"
                f"- Language: {classification.language.value}"
            )
            policies = CATEGORY_POLICIES.get(classification.category, "")
            language = LANGUAGE_NAMES.get(classification.language,
                                          "the customer's own")
        else:
            classification_text = "- Not yet classified"
            policies = ""
            language = "the customer's own"

        history = "\n".join(
            f"{'Customer' if m.sender_kind == SenderKind.CUSTOMER else 'Agent'}: {m.content}"
            for m in context.history
        ) or "(no earlier messages)"

        articles = "\n\n".join(
            f"Article {i + 1}: {r.article.title}\n{r.excerpt}"
            for i, r in enumerate(search_results)
        ) or "No relevant articles found"

        policy_block = f"\nCOMPANY POLICIES:\n{policies}\n" if policies else ""

        return f"""You are drafting a response for a customer service agent.

CUSTOMER MESSAGE:
"{context.message.content}"

CLASSIFICATION:
{classification_text}

CONVERSATION HISTORY:
{history}

RELEVANT KNOWLEDGE BASE ARTICLES:
{articles}
{policy_block}
TASK:
Write a professional, empathetic response that:
1. Acknowledges the customer's issue
2. Provides a clear solution or next steps
3. Maintains a {tone_for(classification)} tone
4. Uses {language} language
5. Is at most {settings.DRAFT_MAX_WORDS} words

Return only the draft message text. On the final line, write
"Confidence: <number between 0 and 1>" for how well the knowledge above
supports your answer."""
