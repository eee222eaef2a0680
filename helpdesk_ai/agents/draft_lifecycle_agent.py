from typing import List, Optional
from datetime import datetime
import logging

from config.settings import settings
from helpdesk_ai.exceptions import (
    DraftConflictError, DraftNotFoundError, DraftValidationError,
    ReferenceNotFoundError
)
from helpdesk_ai.models.schemas import (
    Draft, DraftStatus, Message, PerformanceMetrics, SenderKind, utc_now
)
from helpdesk_ai.services.datastore import SupportDataStore
from helpdesk_ai.services.notification_service import (
    DRAFT_STATUS_CHANGED, NotificationService
)
from helpdesk_ai.agents.knowledge_agent import KnowledgeAgent

logger = logging.getLogger(__name__)


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


def _mean(values: List[float]) -> float:
    return round(sum(values) / len(values), 3) if values else 0.0


class DraftLifecycleAgent:
    """Agent responsible for agent decisions on drafts and the quality loop"""

    def __init__(self,
                 datastore: SupportDataStore,
                 knowledge_agent: KnowledgeAgent,
                 notifications: NotificationService):
        self.name = "Draft Lifecycle Agent"
        self.datastore = datastore
        self.knowledge_agent = knowledge_agent
        self.notifications = notifications

    async def accept(self, draft_id: str, agent_id: str) -> Draft:
        """Send the draft as written"""
        draft = await self._load_pending(draft_id)
        return await self._send(draft, DraftStatus.ACCEPTED, draft.content,
                                agent_id)

    async def accept_with_edits(self, draft_id: str, edited_content: str,
                                agent_id: str) -> Draft:
        """
        Send an edited version of the draft.

        The original text stays on the draft for feedback analysis and the
        edited text is sent exactly as given.
        """
        if edited_content is None or not edited_content.strip():
            raise DraftValidationError("Edited content must not be blank")

        draft = await self._load_pending(draft_id)
        return await self._send(draft, DraftStatus.EDITED, edited_content,
                                agent_id)

    async def reject(self, draft_id: str, agent_id: Optional[str] = None,
                     reason: Optional[str] = None) -> Draft:
        """Discard the draft; no message is sent"""
        draft = await self._load_pending(draft_id)
        updated = await self.datastore.transition_draft(
            draft_id,
            DraftStatus.REJECTED,
            reviewed_by_agent_id=agent_id,
            rejection_reason=reason,
            reviewed_at=utc_now()
        )
        if updated is None:
            await self._raise_conflict(draft_id)

        logger.info("Draft %s rejected by %s", draft_id, agent_id)
        await self.knowledge_agent.record_feedback(updated.knowledge_article_ids,
                                                   helpful=False)
        await self._publish(updated)
        return updated

    async def expire_stale(self, now: Optional[datetime] = None,
                           account_id: Optional[str] = None) -> List[Draft]:
        """Move pending drafts past their ``expires_at`` to expired"""
        now = now or utc_now()
        expired = []
        for draft in await self.datastore.list_drafts(account_id=account_id,
                                                      status=DraftStatus.PENDING):
            if draft.expires_at is None or draft.expires_at > now:
                continue
            updated = await self.datastore.transition_draft(
                draft.id, DraftStatus.EXPIRED, reviewed_at=now
            )
            if updated is not None:
                expired.append(updated)
                await self._publish(updated)
        if expired:
            logger.info("Expired %d stale drafts", len(expired))
        return expired

    async def get_performance_metrics(self,
                                      account_id: str,
                                      since: Optional[datetime] = None,
                                      until: Optional[datetime] = None) -> PerformanceMetrics:
        """Draft outcome and classification statistics for an account"""
        drafts = await self.datastore.list_drafts(account_id=account_id,
                                                  since=since, until=until)
        classifications = await self.datastore.list_classifications(
            account_id, since=since, until=until
        )

        def count(status: DraftStatus) -> int:
            return sum(1 for d in drafts if d.status == status)

        total = len(drafts)
        accepted = count(DraftStatus.ACCEPTED)
        edited = count(DraftStatus.EDITED)
        rejected = count(DraftStatus.REJECTED)
        time_saved = accepted * settings.MINUTES_SAVED_PER_DRAFT

        return PerformanceMetrics(
            period_start=since,
            period_end=until,
            total_drafts=total,
            accepted_drafts=accepted,
            edited_drafts=edited,
            rejected_drafts=rejected,
            pending_drafts=count(DraftStatus.PENDING),
            expired_drafts=count(DraftStatus.EXPIRED),
            acceptance_rate=_rate(accepted, total),
            edit_rate=_rate(edited, total),
            rejection_rate=_rate(rejected, total),
            avg_draft_confidence=_mean([d.confidence for d in drafts]),
            total_classifications=len(classifications),
            avg_classification_confidence=_mean(
                [c.confidence for c in classifications]
            ),
            time_saved_minutes=time_saved,
            cost_savings_eur=round(
                time_saved / 60 * settings.AGENT_HOURLY_COST_EUR, 2
            )
        )

    async def _load_pending(self, draft_id: str) -> Draft:
        draft = await self.datastore.get_draft(draft_id)
        if draft is None:
            raise DraftNotFoundError(draft_id)
        if draft.status != DraftStatus.PENDING:
            raise DraftConflictError(draft_id, draft.status.value)
        return draft

    async def _raise_conflict(self, draft_id: str) -> None:
        current = await self.datastore.get_draft(draft_id)
        raise DraftConflictError(
            draft_id, current.status.value if current else None
        )

    async def _send(self, draft: Draft, status: DraftStatus,
                    content: str, agent_id: str) -> Draft:
        if not await self.datastore.conversation_exists(draft.conversation_id):
            raise ReferenceNotFoundError("conversation", draft.conversation_id)

        changes = {
            "reviewed_by_agent_id": agent_id,
            "reviewed_at": utc_now(),
            "sent_content": content,
        }
        if status == DraftStatus.EDITED:
            changes["original_content"] = draft.content

        updated = await self.datastore.transition_draft(draft.id, status,
                                                        **changes)
        if updated is None:
            await self._raise_conflict(draft.id)

        # Only the caller that won the transition sends the message
        try:
            await self.datastore.create_message(Message(
                conversation_id=draft.conversation_id,
                account_id=draft.account_id,
                sender_kind=SenderKind.AGENT,
                sender_id=agent_id,
                content=content,
                draft_id=draft.id
            ))
        except KeyError:
            logger.warning("Conversation %s deleted before draft %s was sent",
                           draft.conversation_id, draft.id)

        logger.info("Draft %s %s by agent %s", draft.id, status.value, agent_id)
        await self.knowledge_agent.record_feedback(updated.knowledge_article_ids,
                                                   helpful=True)
        await self._publish(updated)
        return updated

    async def _publish(self, draft: Draft) -> None:
        await self.notifications.publish(
            DRAFT_STATUS_CHANGED,
            account_id=draft.account_id,
            conversation_id=draft.conversation_id,
            payload={
                "draft_id": draft.id,
                "status": draft.status.value,
                "reviewed_by_agent_id": draft.reviewed_by_agent_id,
            }
        )
