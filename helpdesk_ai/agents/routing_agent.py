from typing import List, Optional
import logging

from config.settings import settings
from helpdesk_ai.exceptions import CapacityExceededError, ReferenceNotFoundError
from helpdesk_ai.models.schemas import (
    Agent, AgentSummary, Availability, Category, Conversation, ConversationStatus,
    Team, TeamAvailability
)
from helpdesk_ai.services.datastore import SupportDataStore

logger = logging.getLogger(__name__)


def agent_rank_key(agent: Agent):
    """Least loaded first, then best quality, then lowest id"""
    return (agent.load_ratio, -agent.csat_score, agent.id)


def eligible_agents(agents: List[Agent]) -> List[Agent]:
    """Online agents with spare capacity, best candidate first"""
    candidates = [
        a for a in agents
        if a.availability == Availability.ONLINE and a.has_capacity
    ]
    return sorted(candidates, key=agent_rank_key)


def team_utilization(agents: List[Agent]) -> int:
    """Team load as a rounded percentage of total capacity"""
    capacity = sum(a.max_capacity for a in agents)
    if capacity == 0:
        return 0
    return round(sum(a.current_load for a in agents) / capacity * 100)


class RoutingAgent:
    """Agent responsible for picking and assigning the best available agent"""

    def __init__(self, datastore: SupportDataStore):
        self.name = "Routing Agent"
        self.datastore = datastore
        self.top_agents_per_team = settings.TEAM_SUMMARY_TOP_AGENTS

    async def team_availability(self, account_id: str) -> List[TeamAvailability]:
        """Per-team online counts, utilization and best candidates"""
        summaries = []
        for team in await self.datastore.get_teams(account_id):
            agents = await self.datastore.get_team_agents(team.id)
            online = [a for a in agents if a.availability == Availability.ONLINE]
            summaries.append(TeamAvailability(
                team_id=team.id,
                name=team.name,
                categories=team.categories,
                online_agents=len(online),
                utilization=team_utilization(agents),
                top_agents=[
                    AgentSummary(
                        id=a.id,
                        name=a.name,
                        current_load=a.current_load,
                        max_capacity=a.max_capacity,
                        csat_score=a.csat_score
                    )
                    for a in eligible_agents(agents)[:self.top_agents_per_team]
                ]
            ))
        return summaries

    async def rank_teams(self,
                         account_id: str,
                         category: Optional[Category] = None) -> List[Team]:
        """
        Order the account's teams for a category.

        Teams that handle the category come first; when none does, every
        team is considered. Lower utilization wins, then more online agents.
        """
        teams = await self.datastore.get_teams(account_id)
        if category is not None:
            handling = [t for t in teams if category in t.categories]
            teams = handling or teams

        availability = {
            s.team_id: s for s in await self.team_availability(account_id)
        }
        return sorted(
            teams,
            key=lambda t: (availability[t.id].utilization,
                           -availability[t.id].online_agents,
                           t.id)
        )

    async def select_agent(self,
                           account_id: str,
                           team_id: Optional[str] = None,
                           category: Optional[Category] = None) -> Optional[Agent]:
        """
        Pick at most one agent for a new conversation.

        With a ``team_id`` only that team's members are considered. Without
        one, the teams are tried in ``rank_teams`` order. Returns None when
        nobody is online with spare capacity.
        """
        if team_id is not None:
            agents = await self.datastore.get_team_agents(team_id)
            candidates = eligible_agents(agents)
            return candidates[0] if candidates else None

        for team in await self.rank_teams(account_id, category):
            candidates = eligible_agents(
                await self.datastore.get_team_agents(team.id)
            )
            if candidates:
                return candidates[0]
        return None

    async def route_conversation(self,
                                 conversation_id: str,
                                 team_id: Optional[str] = None,
                                 category: Optional[Category] = None) -> Conversation:
        """
        Assign the conversation to the best available agent.

        If no agent qualifies the conversation is left team-queued. A pick
        that filled up concurrently is retried once with a fresh selection.
        """
        conversation = await self.datastore.get_conversation(conversation_id)
        if conversation is None:
            raise ReferenceNotFoundError("conversation", conversation_id)

        if team_id is None:
            ranked = await self.rank_teams(conversation.account_id, category)
            for team in ranked:
                if eligible_agents(await self.datastore.get_team_agents(team.id)):
                    team_id = team.id
                    break
            else:
                team_id = ranked[0].id if ranked else None

        for _ in range(2):
            agent = await self.select_agent(conversation.account_id,
                                            team_id=team_id,
                                            category=category)
            if agent is None:
                break
            try:
                assigned = await self.datastore.assign_conversation(
                    conversation_id, team_id, agent.id
                )
                logger.info("Assigned conversation %s to agent %s (team %s)",
                            conversation_id, agent.id, team_id)
                return assigned
            except CapacityExceededError:
                logger.info("Agent %s filled up concurrently, reselecting",
                            agent.id)

        logger.info("No agent available for conversation %s, team-queued on %s",
                    conversation_id, team_id)
        return await self.datastore.assign_conversation(conversation_id,
                                                        team_id, None)

    async def release(self, conversation_id: str) -> Optional[Conversation]:
        """Free the assignee's slot when a conversation is closed or moved"""
        return await self.datastore.release_conversation(conversation_id)

    async def set_status(self, conversation_id: str,
                         status: ConversationStatus) -> Conversation:
        """Move a conversation to a new status; resolving or closing frees the slot"""
        conversation = await self.datastore.update_conversation_status(
            conversation_id, status
        )
        if conversation is None:
            raise ReferenceNotFoundError("conversation", conversation_id)
        logger.info("Conversation %s is now %s", conversation_id, status.value)
        return conversation
