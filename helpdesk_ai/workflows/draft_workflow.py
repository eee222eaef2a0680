from typing import List, Optional
from langgraph.graph import StateGraph, END
from typing_extensions import TypedDict
import logging

from helpdesk_ai.models.schemas import Draft, SearchResult
from helpdesk_ai.agents.draft_agent import DraftAgent, DraftContext

logger = logging.getLogger(__name__)


class DraftState(TypedDict):
    """State for the draft workflow"""
    message_id: str
    draft: Optional[Draft]
    context: Optional[DraftContext]
    search_results: List[SearchResult]
    workflow_status: str


class DraftWorkflow:
    """LangGraph pipeline: skip if a draft is pending, else retrieve, write, save"""

    def __init__(self, draft_agent: DraftAgent):
        self.draft_agent = draft_agent
        self.workflow = self._build_workflow()

    def _build_workflow(self):
        workflow = StateGraph(DraftState)

        workflow.add_node("check_existing", self._check_existing_node)
        workflow.add_node("retrieve_knowledge", self._retrieve_knowledge_node)
        workflow.add_node("compose", self._compose_node)
        workflow.add_node("persist", self._persist_node)

        workflow.set_entry_point("check_existing")

        workflow.add_conditional_edges(
            "check_existing",
            self._has_pending_draft,
            {
                "skip": END,
                "draft": "retrieve_knowledge"
            }
        )
        workflow.add_edge("retrieve_knowledge", "compose")
        workflow.add_edge("compose", "persist")
        workflow.add_edge("persist", END)

        return workflow.compile()

    async def _check_existing_node(self, state: DraftState) -> DraftState:
        existing = await self.draft_agent.find_pending(state["message_id"])
        if existing is not None:
            logger.info("Message %s already has pending draft %s, skipping",
                        state["message_id"], existing.id)
            state["draft"] = existing
            state["workflow_status"] = "skipped"
        return state

    def _has_pending_draft(self, state: DraftState) -> str:
        return "skip" if state["workflow_status"] == "skipped" else "draft"

    async def _retrieve_knowledge_node(self, state: DraftState) -> DraftState:
        context = await self.draft_agent.load_context(state["message_id"])
        state["context"] = context
        state["search_results"] = await self.draft_agent.retrieve_knowledge(context)
        return state

    async def _compose_node(self, state: DraftState) -> DraftState:
        state["draft"] = await self.draft_agent.compose(state["context"],
                                                        state["search_results"])
        return state

    async def _persist_node(self, state: DraftState) -> DraftState:
        saved = await self.draft_agent.persist(state["draft"],
                                               state["context"].conversation)
        state["draft"] = saved
        state["workflow_status"] = "completed" if saved else "dropped"
        return state

    async def run(self, message_id: str) -> DraftState:
        initial_state = DraftState(
            message_id=message_id,
            draft=None,
            context=None,
            search_results=[],
            workflow_status="started"
        )
        return await self.workflow.ainvoke(initial_state)
