"""
AI Agents for the Classification & Routing Engine

- Classifier Agent: categorizes and prioritizes messages, triggers auto-assignment
- Knowledge Agent: indexes articles and retrieves relevant ones
- Routing Agent: picks the least loaded qualified agent
- Draft Agent: writes knowledge-grounded reply drafts
- Draft Lifecycle Agent: applies accept/edit/reject decisions and metrics
"""

from helpdesk_ai.agents.classifier_agent import ClassifierAgent
from helpdesk_ai.agents.knowledge_agent import KnowledgeAgent
from helpdesk_ai.agents.routing_agent import RoutingAgent
from helpdesk_ai.agents.draft_agent import DraftAgent
from helpdesk_ai.agents.draft_lifecycle_agent import DraftLifecycleAgent

__all__ = [
    "ClassifierAgent",
    "KnowledgeAgent",
    "RoutingAgent",
    "DraftAgent",
    "DraftLifecycleAgent"
]
