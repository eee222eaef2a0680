from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Category(str, Enum):
    BILLING = "billing"
    TECHNICAL = "technical"
    SALES = "sales"
    GENERAL = "general"
    OTHER = "other"


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    ANGRY = "angry"
    FRUSTRATED = "frustrated"


class Language(str, Enum):
    FI = "fi"
    EN = "en"
    SV = "sv"
    DE = "de"
    FR = "fr"
    ES = "es"
    UNKNOWN = "unknown"


class DraftStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EDITED = "edited"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Availability(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"
    AWAY = "away"


class SenderKind(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"


class ConversationStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


class JobKind(str, Enum):
    CLASSIFICATION = "classification"
    DRAFT = "draft"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------
# Conversation records
# ---------------------------

class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    account_id: str
    sender_kind: SenderKind
    sender_id: Optional[str] = None
    content: str
    draft_id: Optional[str] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    contact_id: str
    status: ConversationStatus = ConversationStatus.OPEN
    team_id: Optional[str] = None
    assignee_id: Optional[str] = None
    first_reply_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    @property
    def is_team_queued(self) -> bool:
        return self.team_id is not None and self.assignee_id is None


class Contact(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    tier: str = "standard"
    conversation_count: int = 0
    avg_csat: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now)


class Classification(BaseModel):
    id: str = Field(default_factory=new_id)
    message_id: str
    conversation_id: str
    account_id: str
    category: Category
    priority: Priority
    sentiment: Sentiment
    language: Language
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    suggested_team_id: Optional[str] = None
    suggested_agent_id: Optional[str] = None
    raw_response: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class Draft(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    message_id: str
    account_id: str
    content: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    status: DraftStatus = DraftStatus.PENDING
    knowledge_article_ids: List[str] = []
    original_content: Optional[str] = None
    sent_content: Optional[str] = None
    reviewed_by_agent_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    reviewed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


# ---------------------------
# Knowledge base
# ---------------------------

class KnowledgeArticle(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    title: str
    content: str
    category: Optional[Category] = None
    tags: List[str] = []
    published: bool = True
    helpful_count: int = 0
    not_helpful_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None


class SearchResult(BaseModel):
    article: KnowledgeArticle
    relevance: float
    excerpt: str = ""


# ---------------------------
# Routing
# ---------------------------

class Agent(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    name: str
    availability: Availability = Availability.OFFLINE
    current_load: int = Field(default=0, ge=0)
    max_capacity: int = Field(default=8, gt=0)
    skills: List[str] = []
    languages: List[str] = []
    csat_score: float = Field(default=0.0, ge=0.0, le=5.0)

    @property
    def load_ratio(self) -> float:
        return self.current_load / self.max_capacity

    @property
    def has_capacity(self) -> bool:
        return self.current_load < self.max_capacity


class Team(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    name: str
    categories: List[Category] = []
    member_ids: List[str] = []


class AgentSummary(BaseModel):
    id: str
    name: str
    current_load: int
    max_capacity: int
    csat_score: float


class TeamAvailability(BaseModel):
    team_id: str
    name: str
    categories: List[Category] = []
    online_agents: int
    utilization: int
    top_agents: List[AgentSummary] = []


class ClassificationContext(BaseModel):
    contact: Optional[Contact] = None
    account_age_days: int = 0
    is_business_hours: bool = True
    prior_classification: Optional[Classification] = None
    teams: List[TeamAvailability] = []


# ---------------------------
# Jobs & metrics
# ---------------------------

class Job(BaseModel):
    id: str
    kind: JobKind
    message_id: str
    priority: int = 1
    attempts: int = 0
    rate_limit_requeues: int = 0
    status: JobStatus = JobStatus.QUEUED
    last_error: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=utc_now)


class PerformanceMetrics(BaseModel):
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    total_drafts: int = 0
    accepted_drafts: int = 0
    edited_drafts: int = 0
    rejected_drafts: int = 0
    pending_drafts: int = 0
    expired_drafts: int = 0
    acceptance_rate: float = 0.0
    edit_rate: float = 0.0
    rejection_rate: float = 0.0
    avg_draft_confidence: float = 0.0
    total_classifications: int = 0
    avg_classification_confidence: float = 0.0
    time_saved_minutes: float = 0.0
    cost_savings_eur: float = 0.0


# ---------------------------
# API payloads
# ---------------------------

class AcceptDraftRequest(BaseModel):
    agent_id: str
    edited_content: Optional[str] = None


class RejectDraftRequest(BaseModel):
    agent_id: Optional[str] = None
    reason: Optional[str] = None


class ConversationStatusRequest(BaseModel):
    status: ConversationStatus


class KnowledgeSearchRequest(BaseModel):
    account_id: str
    query: str
    top_k: Optional[int] = None
    min_relevance: Optional[float] = None


class APIResponse(BaseModel):
    success: bool
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None
    meta: Dict[str, Any] = {}
