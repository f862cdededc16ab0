"""Tests for the update workflow state machine."""

import asyncio

import pytest

from contao_console.errors import ValidationError
from contao_console.services.workflow import (
    CHECK_MANAGER,
    CHECK_MIGRATIONS,
    CHECK_TASKS,
    COMPOSER_DRY_RUN,
    COMPOSER_UPDATE,
    COMPOSER_UPDATE_TASK,
    RUN_MIGRATIONS,
    SELF_UPDATE_TASK,
    UPDATE_MANAGER,
    UPDATE_VERSIONS,
    StepStatus,
    UpdateWorkflow,
    WorkflowConfig,
    create_steps,
)
from tests.helpers import FakeContaoManager


def _make_workflow(manager, **kwargs) -> UpdateWorkflow:
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("poll_timeout", 5.0)
    return UpdateWorkflow(manager, **kwargs)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class _HtmlTaskStatus(FakeContaoManager):
    """Answers task polls with a maintenance page once a task was submitted."""

    async def get_task(self):
        task = await super().get_task()
        return "<html>maintenance</html>" if task is not None else None


class _HtmlMigrationStatus(FakeContaoManager):
    async def get_migration(self):
        migration = await super().get_migration()
        return "<html>maintenance</html>" if migration is not None else None


def _statuses(workflow: UpdateWorkflow) -> dict[str, StepStatus]:
    return {step.id: step.status for step in workflow.state.steps}


class TestStepTemplate:
    """Tests for the step list built per run."""

    def test_default_order(self):
        ids = [s.id for s in create_steps(WorkflowConfig())]
        assert ids == [
            CHECK_TASKS, CHECK_MANAGER, UPDATE_MANAGER, COMPOSER_UPDATE,
            CHECK_MIGRATIONS, RUN_MIGRATIONS, UPDATE_VERSIONS,
        ]

    def test_dry_run_inserts_step_before_update(self):
        ids = [s.id for s in create_steps(WorkflowConfig(perform_dry_run=True))]
        assert ids.index(COMPOSER_DRY_RUN) == ids.index(COMPOSER_UPDATE) - 1

    def test_conditional_steps(self):
        conditional = {s.id for s in create_steps(WorkflowConfig()) if s.conditional}
        assert conditional == {UPDATE_MANAGER, RUN_MIGRATIONS}

    def test_initialize_resets_state(self):
        workflow = _make_workflow(FakeContaoManager())
        state = workflow.initialize()
        assert state.current_step == 0
        assert not state.is_running
        assert all(s.status == StepStatus.pending for s in state.steps)


class TestHappyPath:
    """Full runs against a cooperative manager."""

    @pytest.mark.asyncio
    async def test_no_migrations_skips_run_migrations_without_prompt(self):
        """Dry run reports an empty hash: run-migrations is skipped automatically."""
        manager = FakeContaoManager(migration_hash="")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        statuses = _statuses(workflow)
        assert statuses[RUN_MIGRATIONS] == StepStatus.skipped
        assert statuses[UPDATE_VERSIONS] == StepStatus.complete
        assert workflow.is_complete
        assert not workflow.state.is_paused
        assert manager.count("start_migration") == 1
        assert manager.count("update_version_info") == 1
        await workflow.close()

    @pytest.mark.asyncio
    async def test_calls_follow_step_order(self):
        manager = FakeContaoManager()
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        assert manager.call_names() == [
            "get_task",
            "get_self_update",
            "put_task", "get_task", "delete_task",
            "start_migration", "get_migration", "delete_migration",
            "update_version_info",
        ]
        put = next(c for c in manager.calls if c.method == "put_task")
        assert put.args == (COMPOSER_UPDATE_TASK, {"dry_run": False})
        assert manager.calls[5].args == ({},)
        await workflow.close()

    @pytest.mark.asyncio
    async def test_manager_up_to_date_skips_update_manager(self):
        manager = FakeContaoManager(current_version="1.9.2", latest_version="1.9.2")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        assert _statuses(workflow)[UPDATE_MANAGER] == StepStatus.skipped
        assert all(c.args[0] != SELF_UPDATE_TASK for c in manager.calls if c.method == "put_task")
        await workflow.close()

    @pytest.mark.asyncio
    async def test_outdated_manager_runs_self_update(self):
        manager = FakeContaoManager(current_version="1.8.0", latest_version="1.9.2")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        assert _statuses(workflow)[UPDATE_MANAGER] == StepStatus.complete
        tasks = [c.args[0] for c in manager.calls if c.method == "put_task"]
        assert tasks == [SELF_UPDATE_TASK, COMPOSER_UPDATE_TASK]
        assert workflow.is_complete
        await workflow.close()

    @pytest.mark.asyncio
    async def test_dry_run_precedes_update(self):
        manager = FakeContaoManager(polls_until_done=2)
        workflow = _make_workflow(manager)
        workflow.initialize(WorkflowConfig(perform_dry_run=True))
        workflow.start()
        await workflow.wait_until_idle()

        configs = [c.args[1] for c in manager.calls if c.method == "put_task"]
        assert configs == [{"dry_run": True}, {"dry_run": False}]
        assert _statuses(workflow)[COMPOSER_DRY_RUN] == StepStatus.complete
        assert workflow.is_complete
        await workflow.close()

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self):
        manager = FakeContaoManager(current_version="1.8.0", polls_until_done=2)
        positions: list[int] = []
        workflow = _make_workflow(
            manager, on_change=lambda state: positions.append(state.current_step),
        )
        workflow.initialize(WorkflowConfig(perform_dry_run=True))
        workflow.start()
        await workflow.wait_until_idle()

        assert positions == sorted(positions)
        assert positions[-1] == len(workflow.state.steps) - 1
        await workflow.close()

    @pytest.mark.asyncio
    async def test_history_summaries_cover_every_finished_step(self):
        manager = FakeContaoManager()
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        summaries = workflow.state.to_history_steps()
        assert [s["id"] for s in summaries] == [s.id for s in workflow.state.steps]
        assert summaries[0]["status"] == "complete"
        await workflow.close()


class TestMigrationDecision:
    """Pending migrations halt the run until confirmed or skipped."""

    @pytest.mark.asyncio
    async def test_pending_migrations_pause_run(self):
        manager = FakeContaoManager(migration_hash="abc123")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        state = workflow.state
        assert state.is_paused
        assert not state.is_running
        assert state.current.id == CHECK_MIGRATIONS
        assert workflow.has_pending_migrations
        assert workflow.pending_migration["hash"] == "abc123"
        assert _statuses(workflow)[RUN_MIGRATIONS] == StepStatus.pending
        assert manager.count("update_version_info") == 0
        await workflow.close()

    @pytest.mark.asyncio
    async def test_skip_migrations_advances_to_update_versions(self):
        manager = FakeContaoManager(migration_hash="abc123")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        workflow.skip_migrations()
        await workflow.wait_until_idle()

        statuses = _statuses(workflow)
        assert statuses[RUN_MIGRATIONS] == StepStatus.skipped
        assert statuses[UPDATE_VERSIONS] == StepStatus.complete
        assert manager.count("start_migration") == 1
        assert workflow.is_complete
        await workflow.close()

    @pytest.mark.asyncio
    async def test_confirm_migrations_executes_with_hash(self):
        manager = FakeContaoManager(migration_hash="abc123", polls_until_done=2)
        workflow = _make_workflow(manager)
        workflow.initialize(WorkflowConfig(with_deletes=True))
        workflow.start()
        await workflow.wait_until_idle()

        workflow.confirm_migrations()
        await workflow.wait_until_idle()

        payloads = [c.args[0] for c in manager.calls if c.method == "start_migration"]
        assert payloads == [{}, {"hash": "abc123", "withDeletes": True}]
        assert _statuses(workflow)[RUN_MIGRATIONS] == StepStatus.complete
        assert workflow.is_complete
        await workflow.close()

    @pytest.mark.asyncio
    async def test_start_refused_while_decision_pending(self):
        manager = FakeContaoManager(migration_hash="abc123")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        with pytest.raises(ValidationError, match="pending database migrations"):
            workflow.start()
        with pytest.raises(ValidationError):
            workflow.resume()
        await workflow.close()

    @pytest.mark.asyncio
    async def test_confirm_without_pending_migrations_raises(self):
        workflow = _make_workflow(FakeContaoManager())
        workflow.initialize()
        with pytest.raises(ValidationError):
            workflow.confirm_migrations()
        with pytest.raises(ValidationError):
            workflow.skip_migrations()

    @pytest.mark.asyncio
    async def test_failed_migration_marks_step_error(self):
        manager = FakeContaoManager(migration_hash="abc123", migration_result="error")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()
        workflow.confirm_migrations()
        await workflow.wait_until_idle()

        step = workflow.state.step(RUN_MIGRATIONS)
        assert step.status == StepStatus.error
        assert step.error == "Database migration failed"
        assert not workflow.state.is_running
        await workflow.close()

    @pytest.mark.asyncio
    async def test_missing_hash_fails_run_migrations(self):
        workflow = _make_workflow(FakeContaoManager())
        state = workflow.initialize()
        check = state.step(CHECK_MIGRATIONS)
        check.status = StepStatus.complete
        check.data = {"status": "pending"}
        state.current_step = [s.id for s in state.steps].index(RUN_MIGRATIONS)

        workflow.start()
        await workflow.wait_until_idle()

        step = state.step(RUN_MIGRATIONS)
        assert step.status == StepStatus.error
        assert step.error == "No migration hash found from previous step"
        await workflow.close()


class TestFailures:
    """Failures halt the run on the failing step."""

    @pytest.mark.asyncio
    async def test_pending_task_blocks_check_tasks(self):
        manager = FakeContaoManager()
        manager.task = {"name": "composer/install", "status": "active"}
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        step = workflow.state.step(CHECK_TASKS)
        assert step.status == StepStatus.error
        assert step.error == "Pending tasks found. Please resolve before continuing."
        assert step.data["name"] == "composer/install"
        assert workflow.state.current_step == 0
        assert not workflow.state.is_running
        await workflow.close()

    @pytest.mark.asyncio
    async def test_clear_pending_tasks_continues_run(self):
        manager = FakeContaoManager()
        manager.task = {"name": "composer/install", "status": "active"}
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        await workflow.clear_pending_tasks()
        await workflow.wait_until_idle()

        assert _statuses(workflow)[CHECK_TASKS] == StepStatus.complete
        assert workflow.is_complete
        await workflow.close()

    @pytest.mark.asyncio
    async def test_clear_pending_tasks_requires_blocked_step(self):
        workflow = _make_workflow(FakeContaoManager())
        workflow.initialize()
        with pytest.raises(ValidationError):
            await workflow.clear_pending_tasks()

    @pytest.mark.asyncio
    async def test_unreadable_self_update_fails_check_manager(self):
        manager = FakeContaoManager()
        manager.self_update = {"unexpected": True}
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        step = workflow.state.step(CHECK_MANAGER)
        assert step.status == StepStatus.error
        assert step.error == "Could not check manager update status"
        assert _statuses(workflow)[UPDATE_MANAGER] == StepStatus.pending
        await workflow.close()

    @pytest.mark.asyncio
    async def test_task_error_reports_console_output(self):
        manager = FakeContaoManager(task_result="error")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        step = workflow.state.step(COMPOSER_UPDATE)
        assert step.status == StepStatus.error
        assert "could not be resolved" in step.error
        assert workflow.state.error == step.error
        assert manager.count("start_migration") == 0
        await workflow.close()

    @pytest.mark.asyncio
    async def test_retry_after_error_continues_from_failed_step(self):
        manager = FakeContaoManager(task_result="error")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        manager.task_result = "complete"
        workflow.start()
        await workflow.wait_until_idle()

        assert _statuses(workflow)[COMPOSER_UPDATE] == StepStatus.complete
        assert manager.count("get_self_update") == 1
        assert workflow.is_complete
        await workflow.close()

    @pytest.mark.asyncio
    async def test_poll_error_fails_current_step(self):
        manager = FakeContaoManager()
        manager.configure_failure("get_migration")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        step = workflow.state.step(CHECK_MIGRATIONS)
        assert step.status == StepStatus.error
        assert "get_migration failed" in step.error
        assert not workflow.state.is_running
        await workflow.close()

    @pytest.mark.asyncio
    async def test_non_json_task_status_fails_current_step(self):
        manager = _HtmlTaskStatus()
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        step = workflow.state.step(COMPOSER_UPDATE)
        assert step.status == StepStatus.error
        assert "unexpected status" in step.error
        assert not workflow.state.is_running
        assert manager.count("put_task") == 1
        await workflow.close()

    @pytest.mark.asyncio
    async def test_non_json_migration_status_fails_current_step(self):
        manager = _HtmlMigrationStatus()
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        step = workflow.state.step(CHECK_MIGRATIONS)
        assert step.status == StepStatus.error
        assert not workflow.state.is_running
        await workflow.close()

    @pytest.mark.asyncio
    async def test_poll_timeout_fails_current_step(self):
        manager = FakeContaoManager(polls_until_done=10_000)
        workflow = _make_workflow(manager, poll_timeout=0.05)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        step = workflow.state.step(COMPOSER_UPDATE)
        assert step.status == StepStatus.error
        assert step.error == "Task timeout after 0.05 seconds"
        await workflow.close()

    @pytest.mark.asyncio
    async def test_failed_version_save_fails_update_versions(self):
        manager = FakeContaoManager()
        manager.version_info_result = {"success": False}
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        step = workflow.state.step(UPDATE_VERSIONS)
        assert step.status == StepStatus.error
        assert step.error == "Failed to save version information"
        assert not workflow.is_complete
        await workflow.close()

    @pytest.mark.asyncio
    async def test_error_message_is_sanitized(self):
        manager = FakeContaoManager()
        manager.configure_failure("get_task", RuntimeError("Authorization: Bearer s3cr3t-token"))
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()

        assert "s3cr3t" not in workflow.state.step(CHECK_TASKS).error
        await workflow.close()


class TestStopResume:
    """Cooperative stop and resume."""

    @pytest.mark.asyncio
    async def test_stop_keeps_step_status_and_resume_repolls(self):
        manager = FakeContaoManager(polls_until_done=10_000)
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await _wait_for(lambda: manager.count("put_task") == 1 and manager.count("get_task") >= 3)

        workflow.stop()
        state = workflow.state
        assert state.is_paused and not state.is_running
        assert state.current.id == COMPOSER_UPDATE
        assert state.current.status == StepStatus.active

        manager.polls_until_done = 1
        manager.remaining_task_polls = 1
        workflow.resume()
        await workflow.wait_until_idle()

        assert manager.count("put_task") == 1
        assert workflow.is_complete
        await workflow.close()

    @pytest.mark.asyncio
    async def test_response_after_stop_is_discarded(self):
        manager = FakeContaoManager(current_version="1.8.0")
        gate = manager.block("get_self_update")
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await _wait_for(lambda: manager.count("get_self_update") == 1)

        workflow.stop()
        gate.set()
        await workflow.wait_until_idle()

        assert workflow.state.current.id == CHECK_MANAGER
        assert _statuses(workflow)[CHECK_MANAGER] == StepStatus.active
        assert manager.count("put_task") == 0

        workflow.resume()
        await workflow.wait_until_idle()
        assert manager.count("get_self_update") == 2
        assert workflow.is_complete
        await workflow.close()

    @pytest.mark.asyncio
    async def test_start_before_initialize_raises(self):
        workflow = _make_workflow(FakeContaoManager())
        with pytest.raises(ValidationError, match="not been initialized"):
            workflow.start()

    @pytest.mark.asyncio
    async def test_start_after_completion_raises(self):
        workflow = _make_workflow(FakeContaoManager())
        workflow.initialize()
        workflow.start()
        await workflow.wait_until_idle()
        assert workflow.is_complete
        with pytest.raises(ValidationError, match="already complete"):
            workflow.start()
        await workflow.close()

    @pytest.mark.asyncio
    async def test_reinitialize_drops_running_work(self):
        manager = FakeContaoManager(polls_until_done=10_000)
        workflow = _make_workflow(manager)
        workflow.initialize()
        workflow.start()
        await _wait_for(lambda: manager.count("put_task") == 1)

        state = workflow.initialize()
        await workflow.wait_until_idle()
        assert all(s.status == StepStatus.pending for s in state.steps)
        assert not state.is_running
        await workflow.close()
