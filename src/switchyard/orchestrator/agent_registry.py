"""Agent registry for Switchyard.

Registers directors, workers and stewards, tracks their session state and
owns the one notification channel each agent receives dispatches on.

Registration persists the agent first and then provisions its channel
(``agent-{id}``). Channel provisioning is idempotent and retried: if it
fails part way, calling ``ensure_agent_channel`` later finds or creates the
channel and records its id on the agent, so an agent is never silently
left without a notification path.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any, TypeVar

import pydantic
import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from switchyard.database.models.agent import Agent
from switchyard.database.models.channel import Channel
from switchyard.database.queries.message import (
    create_channel,
    find_channel_by_name,
    get_channel,
)
from switchyard.database.queries.task import count_active_tasks_for_agent
from switchyard.errors import ConflictError, NotFoundError, ValidationError
from switchyard.ids import ID_PATTERN, EntityId
from switchyard.orchestrator.capabilities import (
    agent_has_all_languages,
    agent_has_all_skills,
    get_agent_capabilities,
)
from switchyard.orchestrator.types import (
    AgentCapabilities,
    AgentMetadata,
    AgentRole,
    DirectorMetadata,
    SessionStatus,
    StewardFocus,
    StewardMetadata,
    StewardTrigger,
    WorkerMetadata,
    WorkerMode,
    agent_metadata_adapter,
    parse_agent_metadata,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]

AGENT_CHANNEL_PREFIX = "agent-"
AGENT_CHANNEL_TAG = "agent-channel"
_AGENT_CHANNEL_RE = re.compile(r"^agent-(el-[0-9a-z]{3,8})$")

_MetadataT = TypeVar("_MetadataT", DirectorMetadata, WorkerMetadata, StewardMetadata)

CHANNEL_PROVISION_ATTEMPTS = 3


def agent_channel_name(agent_id: str) -> str:
    """Name of the dedicated channel of an agent."""
    return f"{AGENT_CHANNEL_PREFIX}{agent_id}"


def parse_agent_channel_name(name: str) -> str | None:
    """Extract the agent id from an agent channel name, or None."""
    match = _AGENT_CHANNEL_RE.match(name)
    if match is None or not ID_PATTERN.match(match.group(1)):
        return None
    return match.group(1)


def get_role_metadata(agent: Agent) -> AgentMetadata | None:
    """Parse the typed role metadata of an agent."""
    return parse_agent_metadata(agent.agent_metadata)


class AgentFilter(BaseModel):
    """Predicates for list_agents. Unset fields do not filter.

    Skill and language comparisons ignore case and surrounding whitespace.
    """

    role: AgentRole | None = None
    worker_mode: WorkerMode | None = None
    steward_focus: StewardFocus | None = None
    session_status: SessionStatus | None = None
    reports_to: str | None = None
    has_session: bool | None = None
    required_skills: list[str] | None = None
    required_languages: list[str] | None = None
    has_capacity: bool | None = None


class AgentRegistry:
    """CRUD and queries over registered agents.

    Attributes:
        session_factory: Callable returning new AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory
        self._logger = logger.bind(component="AgentRegistry")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_director(
        self,
        name: str,
        created_by: str,
        capabilities: AgentCapabilities | dict[str, Any] | None = None,
        reports_to: str | None = None,
        tags: list[str] | None = None,
        role_definition_ref: str | None = None,
    ) -> Agent:
        """Register the director agent.

        Raises:
            ConflictError: An agent with this name already exists.
            ValidationError: Invalid name or capabilities.
        """
        metadata = self._build_metadata(
            DirectorMetadata,
            capabilities=capabilities,
            role_definition_ref=role_definition_ref,
        )
        return await self._register(name, metadata, created_by, reports_to, tags)

    async def register_worker(
        self,
        name: str,
        created_by: str,
        worker_mode: WorkerMode = WorkerMode.EPHEMERAL,
        capabilities: AgentCapabilities | dict[str, Any] | None = None,
        reports_to: str | None = None,
        tags: list[str] | None = None,
        role_definition_ref: str | None = None,
    ) -> Agent:
        """Register a worker agent.

        Raises:
            ConflictError: An agent with this name already exists.
            ValidationError: Invalid name or capabilities.
        """
        metadata = self._build_metadata(
            WorkerMetadata,
            capabilities=capabilities,
            role_definition_ref=role_definition_ref,
            worker_mode=worker_mode,
        )
        return await self._register(name, metadata, created_by, reports_to, tags)

    async def register_steward(
        self,
        name: str,
        created_by: str,
        steward_focus: StewardFocus,
        triggers: Sequence[StewardTrigger | dict[str, Any]] | None = None,
        capabilities: AgentCapabilities | dict[str, Any] | None = None,
        reports_to: str | None = None,
        tags: list[str] | None = None,
        role_definition_ref: str | None = None,
    ) -> Agent:
        """Register a steward agent.

        Raises:
            ConflictError: An agent with this name already exists.
            ValidationError: Invalid name, capabilities or triggers.
        """
        metadata = self._build_metadata(
            StewardMetadata,
            capabilities=capabilities,
            role_definition_ref=role_definition_ref,
            steward_focus=steward_focus,
            triggers=list(triggers or []),
        )
        return await self._register(name, metadata, created_by, reports_to, tags)

    async def register_agent(
        self,
        role: AgentRole | str,
        name: str,
        created_by: str,
        **kwargs: Any,
    ) -> Agent:
        """Register an agent of the given role.

        Keyword arguments are passed to the role-specific register method.

        Raises:
            ValidationError: Unknown role.
        """
        try:
            role = AgentRole(role)
        except ValueError as e:
            raise ValidationError(f"Unknown agent role: {role!r}") from e

        if role is AgentRole.DIRECTOR:
            return await self.register_director(name, created_by, **kwargs)
        if role is AgentRole.WORKER:
            return await self.register_worker(name, created_by, **kwargs)
        return await self.register_steward(name, created_by, **kwargs)

    def _build_metadata(
        self,
        model: type[_MetadataT],
        **fields: Any,
    ) -> _MetadataT:
        fields = {k: v for k, v in fields.items() if v is not None}
        fields.setdefault("session_status", SessionStatus.IDLE)
        try:
            return model.model_validate(fields)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid {model.__name__}",
                details={"errors": e.errors(include_url=False)},
            ) from e

    async def _register(
        self,
        name: str,
        metadata: DirectorMetadata | WorkerMetadata | StewardMetadata,
        created_by: str,
        reports_to: str | None,
        tags: list[str] | None,
    ) -> Agent:
        name = name.strip() if name else ""
        if not name:
            raise ValidationError("Agent name must not be empty")

        async with self.session_factory() as session:
            existing = await self._get_by_name(session, name)
            if existing is not None:
                raise ConflictError(
                    f"Agent with name {name!r} already exists",
                    details={"name": name, "agent_id": existing.id},
                )
            agent = Agent(
                name=name,
                created_by=created_by,
                reports_to=reports_to,
                tags=list(tags or []),
                agent_metadata=metadata.to_json_dict(),
            )
            session.add(agent)
            await session.commit()

        self._logger.info(
            "agent_registered",
            agent_id=agent.id,
            name=name,
            role=metadata.agent_role,
        )

        return await self.ensure_agent_channel(agent.id, created_by)

    async def ensure_agent_channel(self, agent_id: EntityId, actor: str | None = None) -> Agent:
        """Make sure an agent has its dedicated channel recorded.

        Finds the ``agent-{id}`` channel or creates it, then stores its id
        on the agent. Safe to call repeatedly. Transient database errors are
        retried a few times before being raised.

        Args:
            agent_id: Agent to provision.
            actor: Member added next to the agent; defaults to its creator.

        Returns:
            The agent with ``channel_id`` set.

        Raises:
            NotFoundError: The agent does not exist.
        """
        attempt = 1
        while True:
            try:
                return await self._provision_channel(agent_id, actor)
            except SQLAlchemyError as e:
                if attempt >= CHANNEL_PROVISION_ATTEMPTS:
                    self._logger.error(
                        "agent_channel_provision_failed",
                        agent_id=agent_id,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                self._logger.warning(
                    "agent_channel_provision_retry",
                    agent_id=agent_id,
                    attempt=attempt,
                    error=str(e),
                )
                attempt += 1

    async def _provision_channel(self, agent_id: str, actor: str | None) -> Agent:
        async with self.session_factory() as session:
            agent = await self._get(session, agent_id)
            if agent is None:
                raise NotFoundError(f"Agent not found: {agent_id}", {"agent_id": agent_id})

            channel_id = (agent.agent_metadata or {}).get("channelId")
            if channel_id and await get_channel(session, channel_id) is not None:
                return agent

            name = agent_channel_name(agent.id)
            channel = await find_channel_by_name(session, name)
            if channel is None:
                creator = actor or agent.created_by
                channel = await create_channel(
                    session,
                    name=name,
                    created_by=creator,
                    members=[agent.id, creator],
                    visibility="private",
                    join_policy="invite-only",
                    description=f"Notification channel for agent {agent.name}",
                    tags=[AGENT_CHANNEL_TAG],
                    metadata={"agentId": agent.id},
                )

            agent.agent_metadata = {**agent.agent_metadata, "channelId": channel.id}
            await session.commit()

        self._logger.info("agent_channel_provisioned", agent_id=agent_id, channel_id=channel.id)
        return agent

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_agent(self, agent_id: EntityId) -> Agent | None:
        """Retrieve an agent by ID."""
        async with self.session_factory() as session:
            return await self._get(session, agent_id)

    async def get_agent_by_name(self, name: str) -> Agent | None:
        """Retrieve an agent by its unique name."""
        async with self.session_factory() as session:
            return await self._get_by_name(session, name)

    async def list_agents(self, agent_filter: AgentFilter | None = None) -> list[Agent]:
        """List agents, oldest first, matching every set predicate."""
        async with self.session_factory() as session:
            result = await session.execute(select(Agent).order_by(Agent.created_at.asc()))
            agents = [a for a in result.scalars().all() if a.agent_metadata]

            if agent_filter is None:
                return agents

            selected = []
            for agent in agents:
                if not self._matches(agent, agent_filter):
                    continue
                if agent_filter.has_capacity is not None:
                    active = await count_active_tasks_for_agent(session, agent.id)
                    limit = get_agent_capabilities(agent).max_concurrent_tasks
                    if (active < limit) != agent_filter.has_capacity:
                        continue
                selected.append(agent)
            return selected

    async def get_agents_by_role(self, role: AgentRole) -> list[Agent]:
        return await self.list_agents(AgentFilter(role=role))

    async def get_available_workers(self) -> list[Agent]:
        """Workers whose session is idle or was never started."""
        workers = await self.get_agents_by_role(AgentRole.WORKER)
        return [
            w
            for w in workers
            if w.agent_metadata.get("sessionStatus") in (None, SessionStatus.IDLE.value)
        ]

    async def get_stewards(self) -> list[Agent]:
        return await self.get_agents_by_role(AgentRole.STEWARD)

    async def get_director(self) -> Agent | None:
        """The director agent, or None if none is registered."""
        directors = await self.get_agents_by_role(AgentRole.DIRECTOR)
        return directors[0] if directors else None

    async def get_agent_channel(self, agent_id: EntityId) -> Channel | None:
        """Resolve an agent's notification channel.

        Uses the channel id recorded on the agent, falling back to a search
        by the ``agent-{id}`` name.
        """
        async with self.session_factory() as session:
            agent = await self._get(session, agent_id)
            if agent is None:
                return None
            channel_id = (agent.agent_metadata or {}).get("channelId")
            if channel_id:
                channel = await get_channel(session, channel_id)
                if channel is not None:
                    return channel
            return await find_channel_by_name(session, agent_channel_name(agent_id))

    async def get_agent_channel_id(self, agent_id: EntityId) -> str | None:
        channel = await self.get_agent_channel(agent_id)
        return channel.id if channel is not None else None

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def update_agent_session(
        self,
        agent_id: EntityId,
        session_id: str | None,
        status: SessionStatus,
    ) -> Agent:
        """Record the agent's current session and stamp last activity.

        Raises:
            NotFoundError: The agent or its agent metadata is missing.
        """
        agent = await self.update_agent_metadata(
            agent_id,
            {
                "sessionId": session_id,
                "sessionStatus": SessionStatus(status).value,
                "lastActivityAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        self._logger.info(
            "agent_session_updated",
            agent_id=agent_id,
            session_id=session_id,
            status=SessionStatus(status).value,
        )
        return agent

    async def update_agent_metadata(self, agent_id: EntityId, updates: dict[str, Any]) -> Agent:
        """Merge updates into an agent's role metadata.

        Keys are camelCase, as stored. A None value removes the key.

        Raises:
            NotFoundError: The agent or its agent metadata is missing.
            ValidationError: The merged metadata is invalid.
        """
        async with self.session_factory() as session:
            agent = await self._get(session, agent_id)
            if agent is None:
                raise NotFoundError(f"Agent not found: {agent_id}", {"agent_id": agent_id})
            if not agent.agent_metadata:
                raise NotFoundError(
                    f"Agent metadata not found: {agent_id}", {"agent_id": agent_id}
                )

            merged = {**agent.agent_metadata, **updates}
            merged = {k: v for k, v in merged.items() if v is not None}
            try:
                parsed = agent_metadata_adapter.validate_python(merged)
            except pydantic.ValidationError as e:
                raise ValidationError(
                    "Invalid agent metadata",
                    details={"agent_id": agent_id, "errors": e.errors(include_url=False)},
                ) from e

            agent.agent_metadata = {**merged, **parsed.to_json_dict()}
            await session.commit()
        return agent

    async def update_agent(
        self,
        agent_id: EntityId,
        name: str | None = None,
        tags: list[str] | None = None,
        reports_to: str | None = None,
    ) -> Agent:
        """Update an agent's name, tags or reporting line.

        Raises:
            NotFoundError: The agent does not exist.
            ConflictError: The new name is taken.
        """
        async with self.session_factory() as session:
            agent = await self._get(session, agent_id)
            if agent is None:
                raise NotFoundError(f"Agent not found: {agent_id}", {"agent_id": agent_id})

            if name is not None and name.strip() != agent.name:
                name = name.strip()
                if not name:
                    raise ValidationError("Agent name must not be empty")
                other = await self._get_by_name(session, name)
                if other is not None:
                    raise ConflictError(
                        f"Agent with name {name!r} already exists",
                        details={"name": name, "agent_id": other.id},
                    )
                agent.name = name
            if tags is not None:
                agent.tags = list(tags)
            if reports_to is not None:
                agent.reports_to = reports_to
            await session.commit()

        self._logger.info("agent_updated", agent_id=agent_id)
        return agent

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _get(session: AsyncSession, agent_id: str) -> Agent | None:
        result = await session.execute(select(Agent).where(Agent.id == EntityId(agent_id)))
        return result.scalar_one_or_none()

    @staticmethod
    async def _get_by_name(session: AsyncSession, name: str) -> Agent | None:
        result = await session.execute(select(Agent).where(Agent.name == name))
        return result.scalar_one_or_none()

    @staticmethod
    def _matches(agent: Agent, f: AgentFilter) -> bool:
        meta = agent.agent_metadata
        if f.role is not None and meta.get("agentRole") != f.role.value:
            return False
        if f.worker_mode is not None and meta.get("workerMode") != f.worker_mode.value:
            return False
        if f.steward_focus is not None and meta.get("stewardFocus") != f.steward_focus.value:
            return False
        if (
            f.session_status is not None
            and meta.get("sessionStatus") != f.session_status.value
        ):
            return False
        if f.reports_to is not None and agent.reports_to != f.reports_to:
            return False
        if f.has_session is not None and bool(meta.get("sessionId")) != f.has_session:
            return False
        if f.required_skills and not agent_has_all_skills(agent, f.required_skills):
            return False
        if f.required_languages and not agent_has_all_languages(
            agent, f.required_languages
        ):
            return False
        return True
