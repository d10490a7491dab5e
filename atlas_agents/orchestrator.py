"""
Agent Orchestrator - lifecycle state machine, task queue and module routing.

Lifecycle:
    DORMANT -> INITIALIZING -> ACTIVE <-> PAUSED
    any state -> ERROR, any state -> TERMINATED (final)

Entry points:
- start_agent: DORMANT/PAUSED -> INITIALIZING -> (init hook) -> ACTIVE + heartbeat.
  Already ACTIVE is a no-op. A failure anywhere in the sequence forces the
  agent to ERROR and re-raises the original error.
- stop_agent: cancel the agent's open tasks and set TERMINATED in one store step
- pause_agent / resume_agent: ACTIVE <-> PAUSED

Tasks are queued per agent and read back in scheduling order (priority
descending, oldest first within a priority). ``route_task`` picks the owner
of a module, which is the earliest-created ACTIVE agent bound to it.

Nothing here retries. Callers decide whether a failed call is worth repeating.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from .config import Config
from .errors import (
    InvalidStateError,
    NoModuleOwnerError,
    NotFoundError,
    ValidationError,
    logged_operation,
)
from .logging_utils import get_logger
from .persistence import DurableStore
from .schemas import Agent, AgentStatus, AgentTask, TaskRequest, TaskStatus, utc_now

logger = get_logger(__name__)

STARTABLE_STATUSES = (AgentStatus.DORMANT, AgentStatus.PAUSED)


def _coerce_status(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(field, value, f"expected one of {[s.value for s in enum_cls]}") from None


class AgentOrchestrator:
    """Drives agents through their lifecycle and owns their task queues.

    Subclasses override ``_initialize_agent`` to acquire per-agent resources
    during start-up.

    Args:
        store: Durable store holding agents and tasks
        now: Clock used for status changes, heartbeats and task timestamps
    """

    def __init__(self, store: DurableStore, now: Callable[[], datetime] = utc_now):
        self.store = store
        self.now = now

    async def _initialize_agent(self, agent: Agent) -> None:
        """Start-up hook run while the agent is INITIALIZING. Default does nothing."""
        return None

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    @logged_operation("get agent", context=("agent_id",))
    async def get_agent(self, agent_id: UUID) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent

    @logged_operation("list agents", context=("status", "module", "agent_type"))
    async def list_agents(
        self,
        status: Optional[Union[AgentStatus, str]] = None,
        module: Optional[str] = None,
        agent_type: Optional[str] = None,
    ) -> List[Agent]:
        """List agents newest first, filtered by any combination of status, module and type."""
        if status is not None:
            status = _coerce_status(AgentStatus, status, "status")
        return await self.store.list_agents(status=status, module=module, agent_type=agent_type)

    @logged_operation("update agent status", context=("agent_id", "status"), success_level=None)
    async def update_agent_status(self, agent_id: UUID, status: Union[AgentStatus, str]) -> Agent:
        """
        Persist a new status and stamp ``state["last_status_change"]``.

        Low-level primitive behind the lifecycle operations; it does not check
        whether the transition is allowed.

        Raises:
            ValidationError: ``status`` is not an AgentStatus value
            NotFoundError: Agent does not exist
        """
        status = _coerce_status(AgentStatus, status, "status")
        agent = await self.store.update_agent_status(agent_id, status, self.now())
        if agent is None:
            raise NotFoundError("agent", agent_id)
        logger.info(
            "Agent status updated",
            extra={"context": {"agent_id": str(agent_id), "status": status.value}},
        )
        return agent

    @logged_operation("start agent", context=("agent_id",), success_level=None)
    async def start_agent(self, agent_id: UUID) -> Agent:
        """
        Bring a DORMANT or PAUSED agent to ACTIVE.

        Returns:
            The agent after start-up (unchanged if it was already ACTIVE)

        Raises:
            NotFoundError: Agent does not exist
            InvalidStateError: Agent is INITIALIZING, ERROR or TERMINATED
        """
        agent = await self.get_agent(agent_id)

        if agent.status == AgentStatus.ACTIVE:
            logger.warning("Agent already active", extra={"context": {"agent_id": str(agent_id)}})
            return agent

        if agent.status not in STARTABLE_STATUSES:
            raise InvalidStateError(entity_id=agent_id, current=agent.status.value, attempted="start")

        try:
            agent = await self.update_agent_status(agent_id, AgentStatus.INITIALIZING)
            logger.info("Agent initializing", extra={"context": {"agent_id": str(agent_id)}})
            await self._initialize_agent(agent)
            await self.update_agent_status(agent_id, AgentStatus.ACTIVE)
            agent = await self.record_heartbeat(agent_id)
        except Exception:
            try:
                await self.update_agent_status(agent_id, AgentStatus.ERROR)
            except Exception as exc:
                logger.error(
                    "Failed to mark agent as ERROR",
                    extra={"context": {"agent_id": str(agent_id), "error": str(exc)}},
                )
            raise

        logger.info("Agent started successfully", extra={"context": {"agent_id": str(agent_id)}})
        return agent

    @logged_operation("stop agent", context=("agent_id",), success_level=None)
    async def stop_agent(self, agent_id: UUID) -> Agent:
        """
        Cancel the agent's PENDING/IN_PROGRESS tasks and mark it TERMINATED.

        Both changes commit together. Stopping a TERMINATED agent returns it
        unchanged.
        """
        agent = await self.get_agent(agent_id)
        if agent.status == AgentStatus.TERMINATED:
            logger.info("Agent already stopped", extra={"context": {"agent_id": str(agent_id)}})
            return agent

        terminated = await self.store.terminate_agent(agent_id, self.now())
        if terminated is None:
            raise NotFoundError("agent", agent_id)
        agent, cancelled = terminated
        logger.info(
            "Agent stopped",
            extra={"context": {"agent_id": str(agent_id), "cancelled_tasks": cancelled}},
        )
        return agent

    @logged_operation("pause agent", context=("agent_id",), success_level=None)
    async def pause_agent(self, agent_id: UUID) -> Agent:
        agent = await self.get_agent(agent_id)
        if agent.status != AgentStatus.ACTIVE:
            raise InvalidStateError(entity_id=agent_id, current=agent.status.value, attempted="pause")
        agent = await self.update_agent_status(agent_id, AgentStatus.PAUSED)
        logger.info("Agent paused", extra={"context": {"agent_id": str(agent_id)}})
        return agent

    @logged_operation("resume agent", context=("agent_id",), success_level=None)
    async def resume_agent(self, agent_id: UUID) -> Agent:
        agent = await self.get_agent(agent_id)
        if agent.status != AgentStatus.PAUSED:
            raise InvalidStateError(entity_id=agent_id, current=agent.status.value, attempted="resume")
        await self.update_agent_status(agent_id, AgentStatus.ACTIVE)
        agent = await self.record_heartbeat(agent_id)
        logger.info("Agent resumed", extra={"context": {"agent_id": str(agent_id)}})
        return agent

    @logged_operation("record heartbeat", context=("agent_id",))
    async def record_heartbeat(self, agent_id: UUID) -> Agent:
        agent = await self.store.record_heartbeat(agent_id, self.now())
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_request(task: Union[TaskRequest, Dict[str, Any]]) -> TaskRequest:
        if isinstance(task, TaskRequest):
            return task
        try:
            return TaskRequest.model_validate(task)
        except PydanticValidationError as exc:
            raise ValidationError("task", task, str(exc)) from exc

    @logged_operation("assign task", context=("agent_id",), success_level=None)
    async def assign_task(
        self, agent_id: UUID, task: Union[TaskRequest, Dict[str, Any]]
    ) -> AgentTask:
        """
        Queue a PENDING task on an ACTIVE agent.

        Args:
            agent_id: Target agent
            task: TaskRequest (or equivalent mapping) with type, payload, priority

        Returns:
            The stored task

        Raises:
            NotFoundError: Agent does not exist
            InvalidStateError: Agent is not ACTIVE
            ValidationError: Malformed request or priority outside 1-10
        """
        request = self._coerce_request(task)
        priority = request.priority if request.priority is not None else Config.DEFAULT_TASK_PRIORITY
        if not 1 <= priority <= 10:
            raise ValidationError("priority", priority, "must be between 1 and 10")

        agent = await self.get_agent(agent_id)
        if agent.status != AgentStatus.ACTIVE:
            raise InvalidStateError(
                entity_id=agent_id, current=agent.status.value, attempted="assign task to"
            )

        now = self.now()
        stored = await self.store.insert_task(
            AgentTask(
                agent_id=agent_id,
                type=request.type,
                payload=dict(request.payload),
                priority=priority,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Task assigned to agent",
            extra={
                "context": {
                    "agent_id": str(agent_id),
                    "task_id": str(stored.task_id),
                    "type": stored.type,
                    "priority": stored.priority,
                }
            },
        )
        return stored

    @logged_operation("get agent tasks", context=("agent_id", "status"))
    async def get_agent_tasks(
        self, agent_id: UUID, status: Optional[Union[TaskStatus, str]] = None
    ) -> List[AgentTask]:
        """Return the agent's tasks, highest priority first, oldest first within a priority."""
        if status is not None:
            status = _coerce_status(TaskStatus, status, "status")
        await self.get_agent(agent_id)
        return await self.store.list_tasks(agent_id, status)

    @logged_operation("get task", context=("task_id",))
    async def get_task(self, task_id: UUID) -> AgentTask:
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    @logged_operation("complete task", context=("task_id",), success_level=None)
    async def complete_task(self, task_id: UUID, result: Any = None) -> AgentTask:
        """Mark a task COMPLETED, storing ``result`` and ``completed_at`` together."""
        task = await self.store.complete_task(task_id, result, self.now())
        if task is None:
            raise NotFoundError("task", task_id)
        logger.info("Task completed", extra={"context": {"task_id": str(task_id)}})
        return task

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    @logged_operation("get module owner", context=("module",))
    async def get_module_owner(self, module: str) -> Optional[Agent]:
        """Return the earliest-created ACTIVE agent of ``module``, or None."""
        return await self.store.get_module_owner(module)

    @logged_operation("route task", success_level=None)
    async def route_task(self, task: Union[TaskRequest, Dict[str, Any]]) -> AgentTask:
        """
        Assign a task to the owner of ``task.module``.

        Raises:
            ValidationError: Task has no module
            NoModuleOwnerError: No ACTIVE agent is bound to the module
        """
        request = self._coerce_request(task)
        if not request.module:
            raise ValidationError("module", request.module, "task must specify a target module")

        owner = await self.get_module_owner(request.module)
        if owner is None:
            raise NoModuleOwnerError(request.module)

        assigned = await self.assign_task(owner.agent_id, request)
        logger.info(
            "Task routed",
            extra={
                "context": {
                    "module": request.module,
                    "agent_id": str(owner.agent_id),
                    "task_id": str(assigned.task_id),
                }
            },
        )
        return assigned
