from typing import Any, Dict, List, Optional, Tuple, Type
from enum import Enum
import json
import logging
import math

from config.settings import settings
from helpdesk_ai.exceptions import LLMMalformedResponseError, ReferenceNotFoundError
from helpdesk_ai.models.schemas import (
    Agent, Category, Classification, ClassificationContext, Conversation,
    Language, Message, Priority, Sentiment, utc_now
)
from helpdesk_ai.services.datastore import SupportDataStore
from helpdesk_ai.services.llm_service import GeminiLLMService, parse_json_payload
from helpdesk_ai.services.notification_service import (
    CLASSIFICATION_COMPLETED, NotificationService
)
from helpdesk_ai.agents.routing_agent import RoutingAgent

logger = logging.getLogger(__name__)

CLASSIFICATION_SCHEMA_HINT = {
    "category": "billing | technical | sales | general | other",
    "priority": "urgent | high | normal | low",
    "sentiment": "positive | neutral | negative | angry | frustrated",
    "language": "fi | en | sv | de | fr | es",
    "confidence": "number between 0.0 and 1.0",
    "reasoning": "string",
    "suggested_team": "team name or null",
    "suggested_agent": "agent name or null",
}

PRIORITY_ALIASES = {"critical": "urgent", "medium": "normal"}
LANGUAGE_ALIASES = {
    "finnish": "fi", "english": "en", "swedish": "sv",
    "german": "de", "french": "fr", "spanish": "es",
}
PRIORITY_RANK = {
    Priority.LOW: 0, Priority.NORMAL: 1, Priority.HIGH: 2, Priority.URGENT: 3
}
ENUM_FIELDS = [
    ("category", Category, Category.OTHER, None),
    ("priority", Priority, Priority.NORMAL, PRIORITY_ALIASES),
    ("sentiment", Sentiment, Sentiment.NEUTRAL, None),
    ("language", Language, Language.UNKNOWN, LANGUAGE_ALIASES),
]


def coerce_enum(value: Any, enum_cls: Type[Enum], default: Optional[Enum],
                aliases: Optional[Dict[str, str]] = None) -> Optional[Enum]:
    """Map an untrusted value onto a closed enum, falling back to ``default``"""
    if not isinstance(value, str):
        return default
    key = value.strip().lower()
    if aliases:
        key = aliases.get(key, key)
    try:
        return enum_cls(key)
    except ValueError:
        return default


def coerce_confidence(value: Any) -> float:
    """Clamp numeric confidence to [0, 1]; anything non-numeric becomes 0"""
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return min(max(number, 0.0), 1.0)


def _optional_name(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.lower() in ("null", "none", "n/a"):
        return None
    return value


class ClassifierAgent:
    """Agent responsible for categorizing, prioritizing and routing messages"""

    def __init__(self,
                 llm_service: GeminiLLMService,
                 datastore: SupportDataStore,
                 routing_agent: RoutingAgent,
                 notifications: NotificationService):
        self.name = "Classifier Agent"
        self.llm_service = llm_service
        self.datastore = datastore
        self.routing_agent = routing_agent
        self.notifications = notifications
        self.high_priority_keywords = settings.HIGH_PRIORITY_KEYWORDS
        self.auto_assign_threshold = settings.AUTO_ASSIGN_CONFIDENCE_THRESHOLD

    async def classify_message(self, message_id: str) -> Optional[Classification]:
        """
        Classify one message and persist the result.

        Returns None when the conversation disappeared while the model was
        running. Transient LLM errors propagate to the job runner; malformed
        output is coerced and still persisted.
        """
        message = await self.datastore.get_message(message_id)
        if message is None:
            raise ReferenceNotFoundError("message", message_id)
        conversation = await self.datastore.get_conversation(message.conversation_id)
        if conversation is None:
            raise ReferenceNotFoundError("conversation", message.conversation_id)

        context = await self.build_context(message, conversation)
        prompt = self.build_prompt(message, context)

        try:
            payload = await self.llm_service.complete(
                prompt,
                response_schema_hint=CLASSIFICATION_SCHEMA_HINT,
                max_tokens=settings.CLASSIFICATION_MAX_TOKENS,
                temperature=settings.CLASSIFICATION_TEMPERATURE
            )
            raw_response = json.dumps(payload, default=str)
        except LLMMalformedResponseError as e:
            logger.warning("Malformed classification output for message %s: %s",
                           message_id, e)
            payload = {"reasoning": f"Unparseable model output: {e}"}
            raw_response = e.raw_response

        fields = self.parse_payload(payload)
        fields = self._apply_classification_rules(message, fields)
        team_id, agent_id = await self._resolve_suggestions(
            conversation.account_id,
            fields.pop("suggested_team"),
            fields.pop("suggested_agent"),
            context
        )

        classification = Classification(
            message_id=message.id,
            conversation_id=conversation.id,
            account_id=conversation.account_id,
            suggested_team_id=team_id,
            suggested_agent_id=agent_id,
            raw_response=raw_response,
            **fields
        )

        if not await self.datastore.save_classification(classification):
            logger.info("Conversation %s no longer exists, dropping classification",
                        conversation.id)
            return None

        logger.info("Classified message %s as %s/%s (confidence %.2f)",
                    message_id, classification.category.value,
                    classification.priority.value, classification.confidence)
        return classification

    def should_auto_assign(self, classification: Classification) -> bool:
        return (classification.confidence >= self.auto_assign_threshold
                and classification.suggested_agent_id is not None)

    async def auto_assign(self, classification: Classification) -> Optional[Conversation]:
        """Let the router confirm or replace the model's suggestion, then assign"""
        team_id = classification.suggested_team_id
        if team_id is None and classification.suggested_agent_id:
            team_id = await self._team_of_agent(classification.account_id,
                                                classification.suggested_agent_id)
        try:
            return await self.routing_agent.route_conversation(
                classification.conversation_id,
                team_id=team_id,
                category=classification.category
            )
        except ReferenceNotFoundError:
            logger.info("Conversation %s vanished before assignment",
                        classification.conversation_id)
            return None

    async def publish(self, classification: Classification,
                      conversation: Optional[Conversation] = None) -> None:
        payload = classification.model_dump(mode="json", exclude={"raw_response"})
        if conversation is not None:
            payload["assignee_id"] = conversation.assignee_id
            payload["team_id"] = conversation.team_id
        await self.notifications.publish(
            CLASSIFICATION_COMPLETED,
            account_id=classification.account_id,
            conversation_id=classification.conversation_id,
            payload=payload
        )

    async def build_context(self, message: Message,
                            conversation: Conversation) -> ClassificationContext:
        contact = await self.datastore.get_contact(conversation.contact_id)
        account_age_days = 0
        if contact is not None:
            account_age_days = max((utc_now() - contact.created_at).days, 0)

        hour = message.created_at.hour
        return ClassificationContext(
            contact=contact,
            account_age_days=account_age_days,
            is_business_hours=(settings.BUSINESS_HOURS_START <= hour
                               < settings.BUSINESS_HOURS_END),
            prior_classification=await self.datastore.get_latest_classification(
                conversation.id
            ),
            teams=await self.routing_agent.team_availability(conversation.account_id)
        )

    def build_prompt(self, message: Message,
                     context: ClassificationContext) -> str:
        contact = context.contact
        if contact is not None:
            csat = f" (avg CSAT: {contact.avg_csat})" if contact.avg_csat is not None else ""
            customer_lines = (
                f"- Customer: {contact.name or 'Anonymous'} ({contact.tier} tier)\n"
                f"- Account age: {context.account_age_days} days\n"
                f"- Previous conversations: {contact.conversation_count}{csat}"
            )
        else:
            customer_lines = "- Customer: Anonymous (standard tier)"

        team_lines = []
        for team in context.teams:
            agents = ", ".join(
                f"{a.name} ({a.current_load}/{a.max_capacity}, CSAT {a.csat_score})"
                for a in team.top_agents
            ) or "none available"
            team_lines.append(
                f"- {team.name}: {team.online_agents} agents online, "
                f"{team.utilization}% capacity used; top agents: {agents}"
            )

        prior = ""
        if context.prior_classification is not None:
            p = context.prior_classification
            prior = (
                f"\nPREVIOUS CLASSIFICATION: {p.category.value} / "
                f"{p.priority.value} / {p.sentiment.value}\n"
            )

        return f"""You are an AI assistant helping classify customer service messages.

CUSTOMER MESSAGE:
"{message.content}"

CONTEXT:
{customer_lines}
- Received: {message.created_at.isoformat()} ({'business hours' if context.is_business_hours else 'after hours'})
{prior}
AVAILABLE TEAMS:
{chr(10).join(team_lines) or '- No teams configured'}

TASK:
Classify the message. Choose the team with the lowest utilization and relevant
expertise, and the agent with the lowest load and best CSAT if one is available.

CLASSIFICATION GUIDELINES:
- URGENT: System down, payment failures, data loss, legal threats
- HIGH: Service disruption, billing issues, angry customers
- NORMAL: General questions, feature requests, minor issues
- LOW: Feedback, suggestions, non-time-sensitive inquiries

ONLY return valid JSON. No markdown, no explanations, no code blocks."""

    def parse_payload(self, payload: Any) -> Dict[str, Any]:
        """
        Validate an untrusted model payload.

        Unknown enum values fall back to other/normal/neutral/unknown and a
        missing or non-numeric confidence becomes 0. Any enum fallback also
        zeroes the confidence so the record never auto-assigns.
        """
        if isinstance(payload, str):
            try:
                payload = parse_json_payload(payload)
            except LLMMalformedResponseError:
                payload = {}
        if not isinstance(payload, dict):
            payload = {}

        fields = {}
        fallbacks = []
        for name, enum_cls, default, aliases in ENUM_FIELDS:
            value = coerce_enum(payload.get(name), enum_cls, None, aliases)
            if value is None:
                fallbacks.append(name)
                value = default
            fields[name] = value

        confidence = coerce_confidence(payload.get("confidence"))
        reasoning = payload.get("reasoning")
        reasoning = reasoning if isinstance(reasoning, str) else ""
        if fallbacks:
            confidence = 0.0
            reasoning = (
                f"{reasoning} (Missing or invalid {', '.join(fallbacks)} from model)"
            ).strip()

        return {
            **fields,
            "confidence": confidence,
            "reasoning": reasoning,
            "suggested_team": _optional_name(payload.get("suggested_team")),
            "suggested_agent": _optional_name(payload.get("suggested_agent")),
        }

    def _apply_classification_rules(self, message: Message,
                                     fields: Dict[str, Any]) -> Dict[str, Any]:
        """Raise low/normal priority to high when urgent keywords appear"""
        text = message.content.lower()
        keyword_found = any(
            keyword.lower() in text for keyword in self.high_priority_keywords
        )
        if keyword_found and PRIORITY_RANK[fields["priority"]] < PRIORITY_RANK[Priority.HIGH]:
            fields["priority"] = Priority.HIGH
            fields["reasoning"] = (
                f"{fields['reasoning']} (Elevated due to urgent keywords)"
            ).strip()
        return fields

    async def _resolve_suggestions(self,
                                   account_id: str,
                                   team_name: Optional[str],
                                   agent_name: Optional[str],
                                   context: ClassificationContext) -> Tuple[Optional[str], Optional[str]]:
        """Turn suggested team/agent names into ids of this account"""
        team_id = None
        if team_name:
            wanted = team_name.lower()
            for team in context.teams:
                if wanted in (team.name.lower(), team.team_id.lower()):
                    team_id = team.team_id
                    break

        agent_id = None
        if agent_name:
            wanted = agent_name.lower()
            for agent in await self._account_agents(context):
                if wanted in (agent.name.lower(), agent.id.lower()):
                    agent_id = agent.id
                    break
        return team_id, agent_id

    async def _account_agents(self, context: ClassificationContext) -> List[Agent]:
        agents: Dict[str, Agent] = {}
        for team in context.teams:
            for agent in await self.datastore.get_team_agents(team.team_id):
                agents.setdefault(agent.id, agent)
        return sorted(agents.values(), key=lambda a: a.id)

    async def _team_of_agent(self, account_id: str,
                             agent_id: str) -> Optional[str]:
        for team in await self.datastore.get_teams(account_id):
            if agent_id in team.member_ids:
                return team.id
        return None
