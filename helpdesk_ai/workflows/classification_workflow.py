from typing import List, Optional
from langgraph.graph import StateGraph, END
from typing_extensions import TypedDict
import logging

from helpdesk_ai.models.schemas import Classification, Conversation
from helpdesk_ai.agents.classifier_agent import ClassifierAgent

logger = logging.getLogger(__name__)


class ClassificationState(TypedDict):
    """State for the classification workflow"""
    message_id: str
    classification: Optional[Classification]
    conversation: Optional[Conversation]
    workflow_status: str
    error_messages: List[str]


class ClassificationWorkflow:
    """
    LangGraph pipeline: classify, optionally auto-assign, then announce.

    Transient LLM errors are not caught here; they propagate to the job
    runner, which owns retries.
    """

    def __init__(self, classifier_agent: ClassifierAgent):
        self.classifier_agent = classifier_agent
        self.workflow = self._build_workflow()

    def _build_workflow(self):
        workflow = StateGraph(ClassificationState)

        workflow.add_node("classify", self._classify_node)
        workflow.add_node("assign", self._assign_node)
        workflow.add_node("finalize", self._finalize_node)

        workflow.set_entry_point("classify")

        workflow.add_conditional_edges(
            "classify",
            self._route_after_classify,
            {
                "assign": "assign",
                "finalize": "finalize",
                "skip": END
            }
        )
        workflow.add_edge("assign", "finalize")
        workflow.add_edge("finalize", END)

        return workflow.compile()

    async def _classify_node(self, state: ClassificationState) -> ClassificationState:
        classification = await self.classifier_agent.classify_message(
            state["message_id"]
        )
        state["classification"] = classification
        state["workflow_status"] = "classified" if classification else "dropped"
        return state

    def _route_after_classify(self, state: ClassificationState) -> str:
        classification = state.get("classification")
        if classification is None:
            return "skip"
        if self.classifier_agent.should_auto_assign(classification):
            return "assign"
        return "finalize"

    async def _assign_node(self, state: ClassificationState) -> ClassificationState:
        conversation = await self.classifier_agent.auto_assign(
            state["classification"]
        )
        state["conversation"] = conversation
        if conversation is not None and conversation.assignee_id:
            state["workflow_status"] = "assigned"
        else:
            state["workflow_status"] = "team_queued"
        return state

    async def _finalize_node(self, state: ClassificationState) -> ClassificationState:
        await self.classifier_agent.publish(state["classification"],
                                            state.get("conversation"))
        if state["workflow_status"] == "classified":
            state["workflow_status"] = "completed"
        return state

    async def run(self, message_id: str) -> ClassificationState:
        initial_state = ClassificationState(
            message_id=message_id,
            classification=None,
            conversation=None,
            workflow_status="started",
            error_messages=[]
        )
        final_state = await self.workflow.ainvoke(initial_state)
        logger.debug("Classification workflow for %s finished: %s",
                     message_id, final_state["workflow_status"])
        return final_state
