"""Update workflow state machine for one remote Contao Manager.

Drives the ordered update pipeline:

    check-tasks -> check-manager -> update-manager (conditional)
    -> [composer-dry-run] -> composer-update -> check-migrations
    -> run-migrations (conditional) -> update-versions

Steps either finish inline or submit a remote task and hand over to a
TaskPoller. All work (step execution, poll results, poll failures) goes
through one asyncio.Queue drained by a single driver task, so a step
never starts the next one from inside its own call stack and no two
jobs interleave their state changes.

Step lifecycle: pending -> active -> complete | error | skipped
Run lifecycle:  not started -> running -> paused | complete | error
                paused -> running (resume / confirm / skip)

Example:
    async with ContaoManagerClient(site, store) as api:
        workflow = UpdateWorkflow(api)
        workflow.initialize(WorkflowConfig(perform_dry_run=True))
        workflow.start()
        await workflow.wait_until_idle()
        if workflow.has_pending_migrations:
            workflow.confirm_migrations()
            await workflow.wait_until_idle()
        await workflow.close()
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from contao_console.errors import ValidationError
from contao_console.services.manager_protocol import ManagerApi
from contao_console.services.poller import (
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    TaskPoller,
)
from contao_console.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

CHECK_TASKS = "check-tasks"
CHECK_MANAGER = "check-manager"
UPDATE_MANAGER = "update-manager"
COMPOSER_DRY_RUN = "composer-dry-run"
COMPOSER_UPDATE = "composer-update"
CHECK_MIGRATIONS = "check-migrations"
RUN_MIGRATIONS = "run-migrations"
UPDATE_VERSIONS = "update-versions"

SELF_UPDATE_TASK = "manager/self-update"
COMPOSER_UPDATE_TASK = "composer/update"

# Steps whose completion is reported by the task poller
_TASK_STEPS = frozenset({UPDATE_MANAGER, COMPOSER_DRY_RUN, COMPOSER_UPDATE})
# Steps whose completion is reported by the migration poller
_MIGRATION_STEPS = frozenset({CHECK_MIGRATIONS, RUN_MIGRATIONS})


def _now() -> datetime:
    return datetime.now(UTC)


class StepStatus(str, Enum):
    """Status of one workflow step.

    Lifecycle: pending -> active -> complete/error
               pending -> skipped (conditional steps)
               error -> active (retry) / complete (resolved by the user)
               any -> error (failures, including failed task cleanup)
    """

    pending = "pending"
    active = "active"
    complete = "complete"
    error = "error"
    skipped = "skipped"


VALID_STEP_TRANSITIONS: dict[StepStatus, list[StepStatus]] = {
    StepStatus.pending: [StepStatus.active, StepStatus.skipped],
    # active -> active when a paused step is executed again
    StepStatus.active: [StepStatus.active, StepStatus.complete, StepStatus.error],
    StepStatus.error: [StepStatus.active, StepStatus.complete],
    StepStatus.complete: [],
    StepStatus.skipped: [],
}


class _Superseded(Exception):
    """A remote call returned after the run was stopped or re-initialized."""


class InvalidStepTransition(Exception):
    """Raised when a step is moved to a status its lifecycle does not allow."""

    def __init__(self, step_id: str, current: StepStatus, attempted: StepStatus) -> None:
        self.step_id = step_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Step '{step_id}' cannot go from '{current.value}' to '{attempted.value}'"
        )


@dataclass
class WorkflowConfig:
    """Options chosen before a run starts."""

    perform_dry_run: bool = False
    with_deletes: bool = False


@dataclass
class WorkflowStep:
    """One entry of the step template. Position never changes; status and data do."""

    id: str
    title: str
    description: str
    status: StepStatus = StepStatus.pending
    conditional: bool = False
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None
    data: Any = None


@dataclass
class WorkflowState:
    """Complete state of one workflow run."""

    current_step: int = 0
    steps: list[WorkflowStep] = field(default_factory=list)
    is_running: bool = False
    is_paused: bool = False
    config: WorkflowConfig = field(default_factory=WorkflowConfig)
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None

    @property
    def current(self) -> WorkflowStep | None:
        if 0 <= self.current_step < len(self.steps):
            return self.steps[self.current_step]
        return None

    def step(self, step_id: str) -> WorkflowStep | None:
        return next((s for s in self.steps if s.id == step_id), None)

    def to_history_steps(self) -> list[dict[str, Any]]:
        """Summaries of every started step, in the site-history shape."""
        summaries = []
        for step in self.steps:
            if step.status == StepStatus.pending:
                continue
            summaries.append({
                "id": step.id,
                "title": step.title,
                "summary": step.error or step.description,
                "status": step.status.value,
                "startTime": step.start_time.isoformat() if step.start_time else None,
                "endTime": step.end_time.isoformat() if step.end_time else None,
                "error": step.error,
            })
        return summaries


def create_steps(config: WorkflowConfig) -> list[WorkflowStep]:
    """Build the step template for one run."""
    steps = [
        WorkflowStep(CHECK_TASKS, "Check Pending Tasks", "Verify no other tasks are running"),
        WorkflowStep(CHECK_MANAGER, "Check Manager Updates", "Check if Contao Manager needs updating"),
        WorkflowStep(
            UPDATE_MANAGER, "Update Manager", "Update Contao Manager to latest version",
            conditional=True,
        ),
    ]
    if config.perform_dry_run:
        steps.append(WorkflowStep(
            COMPOSER_DRY_RUN, "Composer Dry Run", "Test composer update without making changes",
        ))
    steps.extend([
        WorkflowStep(COMPOSER_UPDATE, "Composer Update", "Update all Composer packages"),
        WorkflowStep(
            CHECK_MIGRATIONS, "Check Database Migrations", "Check if database migrations are pending",
        ),
        WorkflowStep(
            RUN_MIGRATIONS, "Execute Database Migrations", "Execute pending database migrations",
            conditional=True,
        ),
        WorkflowStep(UPDATE_VERSIONS, "Update Version Info", "Refresh version information"),
    ])
    return steps


def _is_active(result: Any) -> bool:
    """Poll predicate; anything but a JSON object reporting ``active`` is terminal."""
    return isinstance(result, dict) and result.get("status") == "active"


def _describe_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"


Job = Callable[..., Awaitable[None]]
StateListener = Callable[[WorkflowState], None]


class UpdateWorkflow:
    """State machine for one update run against one site.

    Owns its pollers, its job queue and the driver task draining it; there
    is no module-level state. ``initialize`` creates a fresh run and
    ``close`` tears everything down.

    Args:
        api: Remote manager API.
        poll_interval: Seconds between status polls.
        poll_timeout: Soft deadline for one remote task.
        on_change: Called with the state after every change.
    """

    def __init__(
        self,
        api: ManagerApi,
        *,
        poll_interval: float = DEFAULT_INTERVAL_SECONDS,
        poll_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        on_change: StateListener | None = None,
    ) -> None:
        self._api = api
        self._poll_timeout = poll_timeout
        self._on_change = on_change
        self._state = WorkflowState()
        self._queue: asyncio.Queue[tuple[int, Job, tuple[Any, ...]]] = asyncio.Queue()
        self._driver: asyncio.Task[None] | None = None
        # Bumped whenever queued work must be dropped (stop, re-initialize)
        self._epoch = 0

        self._task_poller: TaskPoller[dict[str, Any] | None] = TaskPoller(
            api.get_task,
            _is_active,
            lambda result: self._schedule(self._handle_task_result, result),
            on_error=lambda e: self._schedule(self._handle_poll_error, e),
            on_timeout=lambda: self._schedule(self._handle_poll_timeout, "Task"),
            interval=poll_interval,
            timeout=poll_timeout,
            name="task",
        )
        self._migration_poller: TaskPoller[dict[str, Any] | None] = TaskPoller(
            api.get_migration,
            _is_active,
            lambda result: self._schedule(self._handle_migration_result, result),
            on_error=lambda e: self._schedule(self._handle_poll_error, e),
            on_timeout=lambda: self._schedule(self._handle_poll_timeout, "Migration"),
            interval=poll_interval,
            timeout=poll_timeout,
            name="migration",
        )

        self._executors: dict[str, Callable[[], Awaitable[None]]] = {
            CHECK_TASKS: self._execute_check_tasks,
            CHECK_MANAGER: self._execute_check_manager,
            UPDATE_MANAGER: self._execute_update_manager,
            COMPOSER_DRY_RUN: self._execute_composer_dry_run,
            COMPOSER_UPDATE: self._execute_composer_update,
            CHECK_MIGRATIONS: self._execute_check_migrations,
            RUN_MIGRATIONS: self._execute_run_migrations,
            UPDATE_VERSIONS: self._execute_update_versions,
        }

    # -- public surface ---------------------------------------------------

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def is_complete(self) -> bool:
        steps = self._state.steps
        return (
            bool(steps)
            and not self._state.is_running
            and all(s.status in (StepStatus.complete, StepStatus.skipped) for s in steps)
        )

    @property
    def has_pending_migrations(self) -> bool:
        """True while the run is halted waiting for confirm/skip of migrations."""
        return self.pending_migration is not None

    @property
    def pending_migration(self) -> dict[str, Any] | None:
        """The dry-run result awaiting a decision, if any."""
        check = self._state.step(CHECK_MIGRATIONS)
        current = self._state.current
        if (
            check is None
            or current is not check
            or check.status != StepStatus.complete
            or not self._state.is_paused
            or not isinstance(check.data, dict)
            or not check.data.get("hash")
        ):
            return None
        return check.data

    def initialize(self, config: WorkflowConfig | None = None) -> WorkflowState:
        """Create a fresh run from the step template, discarding any previous run."""
        self._stop_pollers()
        self._epoch += 1
        config = config or WorkflowConfig()
        self._state = WorkflowState(steps=create_steps(config), config=config)
        logger.info(
            "Initialized update workflow (dry run: %s, with deletes: %s)",
            config.perform_dry_run, config.with_deletes,
        )
        self._notify()
        return self._state

    def start(self) -> None:
        """Start (or retry) the run from the current step.

        Must be called from within a running event loop.
        """
        self._check_can_run()
        if self._state.is_running:
            logger.debug("Workflow already running, ignoring start")
            return
        self._state.is_running = True
        self._state.is_paused = False
        self._state.start_time = _now()
        self._state.end_time = None
        self._state.error = None
        self._notify()
        self._schedule(self._execute_current_step)

    def stop(self) -> None:
        """Pause the run: stop polling, keep every step status as it is."""
        self._stop_pollers()
        self._epoch += 1
        self._state.is_running = False
        self._state.is_paused = True
        self._state.end_time = _now()
        logger.info("Workflow paused at step %s", self._current_id())
        self._notify()

    def resume(self) -> None:
        """Continue a paused run from the step it stopped at.

        A task step that was still active resumes polling its remote task
        instead of submitting it a second time.
        """
        self._check_can_run()
        if self._state.is_running:
            return
        self._state.is_running = True
        self._state.is_paused = False
        self._state.end_time = None
        self._state.error = None
        self._notify()
        step = self._state.current
        if step is not None and step.status == StepStatus.active and step.id in _TASK_STEPS:
            logger.info("Resuming poll of %s", step.id)
            self._task_poller.start()
        elif step is not None and step.status == StepStatus.active and step.id in _MIGRATION_STEPS:
            logger.info("Resuming poll of %s", step.id)
            self._migration_poller.start()
        else:
            self._schedule(self._execute_current_step)

    async def clear_pending_tasks(self) -> None:
        """Delete the foreign task that blocked check-tasks, then continue."""
        step = self._state.current
        if step is None or step.id != CHECK_TASKS or step.status != StepStatus.error:
            raise ValidationError("No pending task is blocking the workflow")
        try:
            await self._call(self._api.delete_task)
        except _Superseded:
            return
        except Exception as e:
            self._fail_current_step(f"Failed to clear tasks: {e}")
            return
        logger.info("Cleared pending remote task")
        self._complete_current_step()
        self._state.is_running = True
        self._state.is_paused = False
        self._state.error = None
        self._state.end_time = None
        self._advance_and_continue()

    def confirm_migrations(self) -> None:
        """Run the pending migrations found by check-migrations."""
        if not self.has_pending_migrations:
            raise ValidationError("No database migrations are awaiting confirmation")
        logger.info("Database migrations confirmed")
        self._advance()
        self._resume_running()

    def skip_migrations(self) -> None:
        """Leave the pending migrations unapplied and continue."""
        if not self.has_pending_migrations:
            raise ValidationError("No database migrations are awaiting confirmation")
        logger.info("Database migrations skipped")
        self._mark_skipped(RUN_MIGRATIONS)
        self._advance()
        self._resume_running()

    async def wait_until_idle(self) -> None:
        """Wait until no job is queued and no poller is running."""
        while True:
            await self._queue.join()
            polling = [p for p in (self._task_poller, self._migration_poller) if p.is_polling]
            if not polling and self._queue.empty():
                return
            for poller in polling:
                await poller.wait()

    async def close(self) -> None:
        """Stop pollers and the driver task. The instance is unusable afterwards."""
        self._stop_pollers()
        self._epoch += 1
        driver, self._driver = self._driver, None
        if driver is not None and not driver.done():
            driver.cancel()
            await asyncio.wait({driver})

    def _check_can_run(self) -> None:
        if not self._state.steps:
            raise ValidationError("Workflow has not been initialized")
        if self.has_pending_migrations:
            raise ValidationError("Confirm or skip the pending database migrations first")
        if self.is_complete:
            raise ValidationError("Workflow already complete; initialize a new run")

    # -- scheduling -------------------------------------------------------

    def _schedule(self, job: Job, *args: Any) -> None:
        """Queue job for the driver; dropped if the epoch changes first."""
        if self._driver is None or self._driver.done():
            self._driver = asyncio.get_running_loop().create_task(
                self._drive(), name="update-workflow-driver",
            )
        self._queue.put_nowait((self._epoch, job, args))

    async def _drive(self) -> None:
        while True:
            epoch, job, args = await self._queue.get()
            try:
                if epoch == self._epoch:
                    await job(*args)
            except _Superseded:
                logger.debug("Discarded result of a stopped workflow run")
            except Exception as e:
                logger.error("Workflow job %s failed: %s", getattr(job, "__name__", job), e)
                self._fail_current_step(str(e) or type(e).__name__)
            finally:
                self._queue.task_done()

    async def _call(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Await a remote call; raise _Superseded if the run changed meanwhile."""
        epoch = self._epoch
        try:
            result = await fn(*args)
        except Exception:
            if epoch != self._epoch:
                raise _Superseded() from None
            raise
        if epoch != self._epoch:
            raise _Superseded()
        return result

    # -- state helpers ----------------------------------------------------

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self._state)
        except Exception:
            logger.exception("Workflow state listener failed")

    def _current_id(self) -> str | None:
        step = self._state.current
        return step.id if step else None

    def _set_status(self, step: WorkflowStep, status: StepStatus) -> None:
        if status not in VALID_STEP_TRANSITIONS[step.status]:
            raise InvalidStepTransition(step.id, step.status, status)
        step.status = status

    def _update_current_step(self, data: Any) -> None:
        step = self._state.current
        if step is not None:
            step.data = data
            self._notify()

    def _complete_current_step(self, data: Any = None) -> None:
        step = self._state.current
        if step is None:
            return
        self._set_status(step, StepStatus.complete)
        step.end_time = _now()
        step.error = None
        if data is not None:
            step.data = data
        logger.info("Step %s complete", step.id)
        self._notify()

    def _fail_current_step(self, message: str) -> None:
        message = sanitize_error_message(message) or "Unknown error"
        self._stop_pollers()
        step = self._state.current
        if step is not None:
            # A completed step can still fail while its remote task is cleaned up
            step.status = StepStatus.error
            step.error = message
            step.end_time = _now()
        self._state.is_running = False
        self._state.error = message
        self._state.end_time = _now()
        logger.error("Step %s failed: %s", step.id if step else None, message)
        self._notify()

    def _mark_skipped(self, step_id: str) -> None:
        step = self._state.step(step_id)
        if step is None or step.status == StepStatus.skipped:
            return
        self._set_status(step, StepStatus.skipped)
        step.end_time = _now()
        logger.info("Step %s skipped", step_id)
        self._notify()

    def _advance(self) -> None:
        """Move the cursor forward by one, then past any already-skipped steps."""
        state = self._state
        state.current_step += 1
        while state.current is not None and state.current.status == StepStatus.skipped:
            state.current_step += 1
        self._notify()

    def _advance_and_continue(self) -> None:
        self._advance()
        self._schedule(self._execute_current_step)

    def _resume_running(self) -> None:
        self._state.is_running = True
        self._state.is_paused = False
        self._state.end_time = None
        self._notify()
        self._schedule(self._execute_current_step)

    def _finish_run(self) -> None:
        self._state.is_running = False
        self._state.is_paused = False
        self._state.end_time = _now()
        logger.info("Update workflow complete")
        self._notify()

    def _stop_pollers(self) -> None:
        self._task_poller.stop()
        self._migration_poller.stop()

    # -- step dispatch ----------------------------------------------------

    async def _execute_current_step(self) -> None:
        state = self._state
        if not state.is_running:
            return
        step = state.current
        if step is None:
            self._finish_run()
            return
        if step.status == StepStatus.complete:
            # Finished before a stop interrupted its follow-up
            if step.id == CHECK_MIGRATIONS:
                self._route_after_migration_check(step.data)
            else:
                self._advance_and_continue()
            return

        self._set_status(step, StepStatus.active)
        step.start_time = _now()
        step.end_time = None
        step.error = None
        logger.info("Running step %s", step.id)
        self._notify()

        try:
            executor = self._executors.get(step.id)
            if executor is None:
                raise ValidationError(f"Unknown step: {step.id}")
            await executor()
        except _Superseded:
            logger.debug("Step %s superseded by stop/re-initialize", step.id)
        except Exception as e:
            self._fail_current_step(str(e) or type(e).__name__)

    async def _execute_check_tasks(self) -> None:
        task = await self._call(self._api.get_task)
        if task:
            self._update_current_step(task)
            self._fail_current_step("Pending tasks found. Please resolve before continuing.")
            return
        # None means 204 No Content: nothing is running
        self._complete_current_step()
        self._advance_and_continue()

    async def _execute_check_manager(self) -> None:
        self_update = await self._call(self._api.get_self_update)
        if (
            not isinstance(self_update, dict)
            or "current_version" not in self_update
            or "latest_version" not in self_update
        ):
            self._fail_current_step("Could not check manager update status")
            return

        self._complete_current_step(self_update)
        if self_update["current_version"] == self_update["latest_version"]:
            self._mark_skipped(UPDATE_MANAGER)
        self._advance_and_continue()

    async def _execute_update_manager(self) -> None:
        await self._call(self._api.put_task, SELF_UPDATE_TASK)
        self._task_poller.start()

    async def _execute_composer_dry_run(self) -> None:
        await self._call(self._api.put_task, COMPOSER_UPDATE_TASK, {"dry_run": True})
        self._task_poller.start()

    async def _execute_composer_update(self) -> None:
        await self._call(self._api.put_task, COMPOSER_UPDATE_TASK, {"dry_run": False})
        self._task_poller.start()

    async def _execute_check_migrations(self) -> None:
        # No hash: dry run that only reports what would change
        await self._call(self._api.start_migration, {})
        self._migration_poller.start()

    async def _execute_run_migrations(self) -> None:
        check = self._state.step(CHECK_MIGRATIONS)
        migration_hash = check.data.get("hash") if check and isinstance(check.data, dict) else None
        if not migration_hash:
            self._fail_current_step("No migration hash found from previous step")
            return
        await self._call(self._api.start_migration, {
            "hash": migration_hash,
            "withDeletes": self._state.config.with_deletes,
        })
        self._migration_poller.start()

    async def _execute_update_versions(self) -> None:
        result = await self._call(self._api.update_version_info)
        if isinstance(result, dict) and result.get("success") is False:
            self._fail_current_step(result.get("error") or "Failed to save version information")
            return
        self._complete_current_step(result)
        self._finish_run()

    # -- poll handlers ----------------------------------------------------

    async def _handle_task_result(self, result: dict[str, Any] | None) -> None:
        step = self._state.current
        if step is None or not self._state.is_running or step.id not in _TASK_STEPS:
            return
        self._update_current_step(result)
        status = result.get("status") if isinstance(result, dict) else None
        if status == "active":
            return

        if status == "complete":
            self._complete_current_step(result)
            try:
                await self._call(self._api.delete_task)
            except _Superseded:
                raise
            except Exception as e:
                self._fail_current_step(f"Failed to clean up task: {e}")
                return
            self._advance_and_continue()
        elif status == "error":
            self._fail_current_step(result.get("console") or "Task failed")
        else:
            self._fail_current_step(f"Task ended with unexpected status '{status}'")

    async def _handle_migration_result(self, result: dict[str, Any] | None) -> None:
        step = self._state.current
        if step is None or not self._state.is_running or step.id not in _MIGRATION_STEPS:
            return
        self._update_current_step(result)
        status = result.get("status") if isinstance(result, dict) else None
        if status == "active":
            return

        if status == "pending":
            if step.id != CHECK_MIGRATIONS:
                self._fail_current_step("Unexpected pending status during migration execution")
                return
            self._complete_current_step(result)
            if await self._cleanup_migration():
                self._route_after_migration_check(result)
        elif status == "complete":
            self._complete_current_step(result)
            if await self._cleanup_migration():
                self._advance_and_continue()
        elif status == "error":
            self._fail_current_step("Database migration failed")
        else:
            self._fail_current_step(f"Migration ended with unexpected status '{status}'")

    def _route_after_migration_check(self, result: Any) -> None:
        if not isinstance(result, dict) or not result.get("hash"):
            logger.info("No database migrations needed")
            self._mark_skipped(RUN_MIGRATIONS)
            self._advance_and_continue()
            return
        # Migrations are never applied without an explicit decision
        logger.info("Database migrations pending, waiting for confirmation")
        self._state.is_running = False
        self._state.is_paused = True
        self._notify()

    async def _cleanup_migration(self) -> bool:
        try:
            await self._call(self._api.delete_migration)
        except _Superseded:
            raise
        except Exception as e:
            self._fail_current_step(f"Failed to clean up migration task: {e}")
            return False
        return True

    async def _handle_poll_error(self, error: Exception) -> None:
        if not self._state.is_running:
            return
        self._fail_current_step(str(error) or type(error).__name__)

    async def _handle_poll_timeout(self, kind: str) -> None:
        if not self._state.is_running:
            return
        self._fail_current_step(f"{kind} timeout after {_describe_duration(self._poll_timeout)}")
