"""Composition root and trigger operations of the classification engine."""

from typing import Dict, List, Optional
from datetime import datetime
from functools import lru_cache
import logging

from config.settings import settings
from helpdesk_ai.exceptions import ReferenceNotFoundError
from helpdesk_ai.models.schemas import (
    Classification, Conversation, ConversationStatus, Draft, Job, JobKind,
    PerformanceMetrics, SearchResult
)
from helpdesk_ai.agents.classifier_agent import ClassifierAgent
from helpdesk_ai.agents.draft_agent import DraftAgent
from helpdesk_ai.agents.draft_lifecycle_agent import DraftLifecycleAgent
from helpdesk_ai.agents.knowledge_agent import KnowledgeAgent
from helpdesk_ai.agents.routing_agent import RoutingAgent
from helpdesk_ai.services.datastore import InMemoryDataStore, SupportDataStore
from helpdesk_ai.services.embedding_service import EmbeddingService
from helpdesk_ai.services.job_queue import (
    InMemoryJobQueue, JobQueue, RedisJobQueue, build_job
)
from helpdesk_ai.services.llm_service import GeminiLLMService
from helpdesk_ai.services.notification_service import (
    EventTransport, InMemoryTransport, NotificationService, RedisTransport
)
from helpdesk_ai.services.vector_index import (
    ElasticsearchVectorIndex, InMemoryVectorIndex, VectorIndex
)
from helpdesk_ai.workflows.classification_workflow import ClassificationWorkflow
from helpdesk_ai.workflows.draft_workflow import DraftWorkflow
from helpdesk_ai.workflows.job_runner import JobRunner

logger = logging.getLogger(__name__)


class SupportEngine:
    """Wires the agents together and exposes the trigger operations"""

    def __init__(self,
                 datastore: SupportDataStore,
                 llm_service: GeminiLLMService,
                 embedding_service: EmbeddingService,
                 vector_index: VectorIndex,
                 queue: JobQueue,
                 transport: EventTransport):
        self.datastore = datastore
        self.llm_service = llm_service
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.queue = queue
        self.transport = transport
        self.notifications = NotificationService(transport)

        self.knowledge_agent = KnowledgeAgent(embedding_service, vector_index)
        self.routing_agent = RoutingAgent(datastore)
        self.classifier_agent = ClassifierAgent(
            llm_service, datastore, self.routing_agent, self.notifications
        )
        self.draft_agent = DraftAgent(
            llm_service, datastore, self.knowledge_agent, self.notifications
        )
        self.lifecycle_agent = DraftLifecycleAgent(
            datastore, self.knowledge_agent, self.notifications
        )

        self.classification_workflow = ClassificationWorkflow(self.classifier_agent)
        self.draft_workflow = DraftWorkflow(self.draft_agent)

    @classmethod
    def from_settings(cls,
                      datastore: Optional[SupportDataStore] = None) -> "SupportEngine":
        """Build an engine with the backends selected in settings"""
        embedding_service = EmbeddingService()
        if settings.VECTOR_BACKEND == "elasticsearch":
            vector_index = ElasticsearchVectorIndex(
                embedding_dim=embedding_service.get_embedding_dimension()
            )
        else:
            vector_index = InMemoryVectorIndex()

        if settings.QUEUE_BACKEND == "redis":
            queue, transport = RedisJobQueue(), RedisTransport()
        else:
            queue, transport = InMemoryJobQueue(), InMemoryTransport()

        return cls(
            datastore=datastore or InMemoryDataStore(),
            llm_service=GeminiLLMService(),
            embedding_service=embedding_service,
            vector_index=vector_index,
            queue=queue,
            transport=transport
        )

    async def startup(self) -> None:
        if isinstance(self.vector_index, ElasticsearchVectorIndex):
            if not await self.vector_index.initialize():
                logger.warning("Elasticsearch not connected; knowledge search will fail")
        if isinstance(self.queue, RedisJobQueue):
            await self.queue.connect()

    async def shutdown(self) -> None:
        for resource in (self.vector_index, self.queue, self.transport):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()

    # ---------------------------
    # Trigger operations
    # ---------------------------

    async def _enqueue(self, kind: JobKind, message_id: str) -> Job:
        if await self.datastore.get_message(message_id) is None:
            raise ReferenceNotFoundError("message", message_id)
        job = build_job(kind, message_id)
        if await self.queue.enqueue(job):
            logger.info("Enqueued %s job %s", kind.value, job.id)
        return await self.queue.get_job(job.id) or job

    async def classify(self, message_id: str) -> Job:
        """Durably enqueue classification of a message"""
        return await self._enqueue(JobKind.CLASSIFICATION, message_id)

    async def generate_draft(self, message_id: str) -> Job:
        """Durably enqueue draft generation for a message"""
        return await self._enqueue(JobKind.DRAFT, message_id)

    async def on_inbound_message(self, message_id: str) -> List[Job]:
        """Queue both jobs for a new customer message, classification first"""
        return [await self.classify(message_id),
                await self.generate_draft(message_id)]

    async def accept_draft(self, draft_id: str, agent_id: str,
                           edits: Optional[str] = None) -> Draft:
        if edits is not None:
            return await self.lifecycle_agent.accept_with_edits(
                draft_id, edits, agent_id
            )
        return await self.lifecycle_agent.accept(draft_id, agent_id)

    async def reject_draft(self, draft_id: str, agent_id: Optional[str] = None,
                           reason: Optional[str] = None) -> Draft:
        return await self.lifecycle_agent.reject(draft_id, agent_id, reason)

    async def update_conversation_status(self, conversation_id: str,
                                         status: ConversationStatus) -> Conversation:
        return await self.routing_agent.set_status(conversation_id, status)

    # ---------------------------
    # Job handlers
    # ---------------------------

    async def run_classification(self, message_id: str) -> Optional[Classification]:
        state = await self.classification_workflow.run(message_id)
        return state.get("classification")

    async def run_draft(self, message_id: str) -> Optional[Draft]:
        state = await self.draft_workflow.run(message_id)
        return state.get("draft")

    def build_job_runner(self, **overrides) -> JobRunner:
        return JobRunner(
            self.queue,
            {
                JobKind.CLASSIFICATION: self.run_classification,
                JobKind.DRAFT: self.run_draft,
            },
            **overrides
        )

    # ---------------------------
    # Read side
    # ---------------------------

    async def search_knowledge(self, account_id: str, query: str,
                               top_k: Optional[int] = None,
                               min_relevance: Optional[float] = None) -> List[SearchResult]:
        return await self.knowledge_agent.search(query, account_id, top_k,
                                                 min_relevance)

    async def performance(self, account_id: str,
                          since: Optional[datetime] = None,
                          until: Optional[datetime] = None) -> PerformanceMetrics:
        return await self.lifecycle_agent.get_performance_metrics(
            account_id, since, until
        )

    async def expire_stale_drafts(self) -> List[Draft]:
        return await self.lifecycle_agent.expire_stale()

    async def health(self) -> Dict[str, str]:
        return {
            "api": "healthy",
            "queue": type(self.queue).__name__,
            "vector_index": type(self.vector_index).__name__,
            "llm_model": getattr(self.llm_service, "model_name", "unknown"),
        }


@lru_cache(maxsize=1)
def get_engine() -> SupportEngine:
    """Process-wide engine built from settings"""
    return SupportEngine.from_settings()
