from fastapi import FastAPI, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging
import uvicorn

from helpdesk_ai.app_logging import init_logging
from helpdesk_ai.engine import SupportEngine, get_engine
from helpdesk_ai.exceptions import (
    DraftConflictError, DraftValidationError, ReferenceNotFoundError
)
from helpdesk_ai.models.schemas import (
    AcceptDraftRequest, APIResponse, ConversationStatusRequest,
    KnowledgeSearchRequest, RejectDraftRequest
)
from config.settings import settings

logger = logging.getLogger("helpdesk_ai.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    init_logging()
    logger.info("Starting Helpdesk AI engine API...")
    engine = get_engine()
    await engine.startup()
    logger.info("API startup complete")

    yield

    logger.info("Shutting down API...")
    await engine.shutdown()


app = FastAPI(
    title="Helpdesk AI Classification & Routing Engine",
    description="Classifies inbound messages, routes conversations and drafts replies",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware for the helpdesk web client
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReferenceNotFoundError)
async def not_found_handler(request: Request, exc: ReferenceNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=APIResponse(success=False, error=str(exc)).model_dump()
    )


@app.exception_handler(DraftConflictError)
async def conflict_handler(request: Request, exc: DraftConflictError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=APIResponse(
            success=False,
            error=str(exc),
            data={"draft_id": exc.draft_id, "status": exc.current_status}
        ).model_dump()
    )


@app.exception_handler(DraftValidationError)
async def validation_handler(request: Request, exc: DraftValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=APIResponse(success=False, error=str(exc)).model_dump()
    )


@app.get("/", response_model=APIResponse)
async def root():
    return APIResponse(
        success=True,
        message="Helpdesk AI engine is running",
        data={"version": "1.0.0", "status": "healthy"}
    )


@app.get("/health", response_model=APIResponse)
async def health_check(engine: SupportEngine = Depends(get_engine)):
    return APIResponse(
        success=True,
        message="Health check complete",
        data=await engine.health()
    )


@app.post("/messages/{message_id}/classify", response_model=APIResponse,
          status_code=status.HTTP_202_ACCEPTED)
async def classify_message(message_id: str,
                           engine: SupportEngine = Depends(get_engine)):
    """Queue classification of a message"""
    job = await engine.classify(message_id)
    return APIResponse(success=True, message="Classification queued",
                       data=job.model_dump(mode="json"))


@app.post("/messages/{message_id}/draft", response_model=APIResponse,
          status_code=status.HTTP_202_ACCEPTED)
async def generate_draft(message_id: str,
                         engine: SupportEngine = Depends(get_engine)):
    """Queue draft generation for a message"""
    job = await engine.generate_draft(message_id)
    return APIResponse(success=True, message="Draft generation queued",
                       data=job.model_dump(mode="json"))


@app.post("/messages/{message_id}/process", response_model=APIResponse,
          status_code=status.HTTP_202_ACCEPTED)
async def process_message(message_id: str,
                          engine: SupportEngine = Depends(get_engine)):
    """Queue classification and draft generation for a new inbound message"""
    jobs = await engine.on_inbound_message(message_id)
    return APIResponse(success=True, message="Message queued for processing",
                       data=[job.model_dump(mode="json") for job in jobs])


@app.get("/jobs/{job_id}", response_model=APIResponse)
async def get_job(job_id: str, engine: SupportEngine = Depends(get_engine)):
    job = await engine.queue.get_job(job_id)
    if job is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=APIResponse(
                success=False,
                error=f"job {job_id} not found or already completed"
            ).model_dump()
        )
    return APIResponse(success=True, data=job.model_dump(mode="json"))


@app.get("/drafts/{draft_id}", response_model=APIResponse)
async def get_draft(draft_id: str, engine: SupportEngine = Depends(get_engine)):
    draft = await engine.datastore.get_draft(draft_id)
    if draft is None:
        raise ReferenceNotFoundError("draft", draft_id)
    return APIResponse(success=True, data=draft.model_dump(mode="json"))


@app.post("/drafts/{draft_id}/accept", response_model=APIResponse)
async def accept_draft(draft_id: str,
                       request: AcceptDraftRequest,
                       engine: SupportEngine = Depends(get_engine)):
    """Accept a draft as-is, or with edits when ``edited_content`` is set"""
    draft = await engine.accept_draft(draft_id, request.agent_id,
                                      request.edited_content)
    return APIResponse(success=True, message=f"Draft {draft.status.value}",
                       data=draft.model_dump(mode="json"))


@app.post("/drafts/{draft_id}/reject", response_model=APIResponse)
async def reject_draft(draft_id: str,
                       request: RejectDraftRequest,
                       engine: SupportEngine = Depends(get_engine)):
    draft = await engine.reject_draft(draft_id, request.agent_id,
                                      request.reason)
    return APIResponse(success=True, message="Draft rejected",
                       data=draft.model_dump(mode="json"))


@app.post("/conversations/{conversation_id}/status", response_model=APIResponse)
async def update_conversation_status(conversation_id: str,
                                     request: ConversationStatusRequest,
                                     engine: SupportEngine = Depends(get_engine)):
    conversation = await engine.update_conversation_status(conversation_id,
                                                           request.status)
    return APIResponse(success=True, data=conversation.model_dump(mode="json"))


@app.post("/drafts/expire", response_model=APIResponse)
async def expire_drafts(engine: SupportEngine = Depends(get_engine)):
    """Sweep pending drafts past their expiry time"""
    expired = await engine.expire_stale_drafts()
    return APIResponse(success=True, message=f"Expired {len(expired)} drafts",
                       data=[d.id for d in expired])


@app.post("/knowledge/search", response_model=APIResponse)
async def search_knowledge(request: KnowledgeSearchRequest,
                           engine: SupportEngine = Depends(get_engine)):
    results = await engine.search_knowledge(request.account_id, request.query,
                                            request.top_k,
                                            request.min_relevance)
    return APIResponse(success=True,
                       data=[r.model_dump(mode="json") for r in results],
                       meta={"total": len(results)})


@app.get("/accounts/{account_id}/performance", response_model=APIResponse)
async def get_performance(account_id: str,
                          start_date: Optional[datetime] = None,
                          end_date: Optional[datetime] = None,
                          engine: SupportEngine = Depends(get_engine)):
    """Draft acceptance and classification statistics"""
    metrics = await engine.performance(account_id, start_date, end_date)
    return APIResponse(success=True, data=metrics.model_dump(mode="json"))


if __name__ == "__main__":
    uvicorn.run(
        "helpdesk_ai.main:app",
        host=settings.FASTAPI_HOST,
        port=settings.FASTAPI_PORT,
        reload=settings.AUTO_RELOAD,
        log_level=settings.LOG_LEVEL.lower()
    )
