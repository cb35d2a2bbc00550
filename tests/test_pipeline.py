"""Tests for paneforge.pipeline module."""

import asyncio
from pathlib import Path

import pytest

from paneforge.description import PluginHost, ShellCommand
from paneforge.errors import PipelineCancelled, PipelineStepFailed, UnknownPaneName
from paneforge.pipeline import (
    SPAWN_FAILED_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    DryRunStepExecutor,
    PipelineSpec,
    PipelineStatus,
    SetupPipelineCoordinator,
    StepCompleted,
    SubprocessStepExecutor,
    is_pipeline_host,
    parse_commands,
    parse_pane_names,
)


class BlockingStepExecutor:
    """Step executor whose steps wait until released."""

    def __init__(self) -> None:
        self.commands: list[str] = []
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def run(self, command: str, shell: str, cwd: Path) -> int:
        self.commands.append(command)
        await self._gate.wait()
        return 0


class ResumeRecorder:
    """Resume callback that records names, rejecting those in ``unknown``."""

    def __init__(self, unknown: set[str] | None = None) -> None:
        self.names: list[str] = []
        self.unknown = unknown or set()

    def __call__(self, name: str) -> bool:
        if name in self.unknown:
            raise UnknownPaneName(name)
        self.names.append(name)
        return True


def make_pipeline(
    commands: list[str],
    executor: object,
    targets: list[str] | None = None,
    stop_on_failure: bool = True,
    resume: ResumeRecorder | None = None,
) -> tuple[SetupPipelineCoordinator, "asyncio.Queue[StepCompleted]", ResumeRecorder]:
    queue: asyncio.Queue[StepCompleted] = asyncio.Queue()
    recorder = resume or ResumeRecorder()
    spec = PipelineSpec(
        commands=commands,
        stop_on_failure=stop_on_failure,
        targets=targets or [],
        shell="sh",
        folder=Path("/tmp"),
    )
    pipeline = SetupPipelineCoordinator("Setup", 1, spec, executor, queue, recorder)  # type: ignore[arg-type]
    return pipeline, queue, recorder


async def drive(pipeline: SetupPipelineCoordinator, queue: "asyncio.Queue[StepCompleted]") -> None:
    """Feed completions back to the pipeline until no step is in flight."""
    while pipeline.in_flight:
        pipeline.handle(await asyncio.wait_for(queue.get(), timeout=5))


class TestParseCommands:
    """Tests for parse_commands function."""

    def test_quoted_lines(self) -> None:
        """Each quoted line should be one command."""
        raw = '"npm install"\n  "npm run build"\n'
        assert parse_commands(raw) == ["npm install", "npm run build"]

    def test_unquoted_lines(self) -> None:
        """Unquoted lines should be taken as-is."""
        assert parse_commands("make deps\nmake build") == ["make deps", "make build"]

    def test_single_line_split_on_and(self) -> None:
        """A single unquoted line should be split on &&."""
        assert parse_commands("cargo fetch && cargo build  &&cargo test") == [
            "cargo fetch",
            "cargo build",
            "cargo test",
        ]

    def test_quoted_line_keeps_and(self) -> None:
        """A quoted single line should not be split."""
        assert parse_commands('"cd api && make"') == ["cd api && make"]

    def test_comments_and_blanks_skipped(self) -> None:
        """Blank lines and // comments should be ignored."""
        assert parse_commands('// setup\n\n"a"\n// "b"\n') == ["a"]

    def test_empty(self) -> None:
        """No commands should give an empty list."""
        assert parse_commands("") == []


class TestParsePaneNames:
    """Tests for parse_pane_names function."""

    def test_names_deduplicated(self) -> None:
        """Names should be parsed one per line, duplicates dropped."""
        assert parse_pane_names('Start Server\n"Watch Tests"\nStart Server') == ["Start Server", "Watch Tests"]


class TestPipelineSpec:
    """Tests for PipelineSpec.from_configuration."""

    def test_defaults(self) -> None:
        """Missing options should use defaults."""
        spec = PipelineSpec.from_configuration({"commands": "a && b"}, "bash", Path("/work"))
        assert spec.commands == ["a", "b"]
        assert spec.stop_on_failure is False
        assert spec.targets == []
        assert spec.shell == "bash"
        assert spec.folder == Path("/work")
        assert spec.close_on_success is True

    def test_all_options(self) -> None:
        """Every option should be read."""
        spec = PipelineSpec.from_configuration(
            {
                "commands": '"a"\n"b"',
                "stop_on_failure": "true",
                "panes_to_run_on_completion": "Server",
                "shell": "zsh",
                "folder": "api",
                "close_on_success": "false",
            },
            "bash",
            Path("/work"),
        )
        assert spec.stop_on_failure is True
        assert spec.targets == ["Server"]
        assert spec.shell == "zsh"
        assert spec.folder == Path("/work/api")
        assert spec.close_on_success is False

    def test_is_pipeline_host(self) -> None:
        """Only plugins with a commands option host pipelines."""
        assert is_pipeline_host(PluginHost(location="setup", configuration={"commands": "a"}))
        assert not is_pipeline_host(PluginHost(location="status"))
        assert not is_pipeline_host(ShellCommand(program="bash"))


class TestCoordinator:
    """Tests for SetupPipelineCoordinator state transitions."""

    async def test_all_steps_succeed_then_resume(self, executor: DryRunStepExecutor) -> None:
        """Targets should be resumed once, only after the last step."""
        pipeline, queue, recorder = make_pipeline(["A", "B"], executor, targets=["Start Server"])
        assert pipeline.status == PipelineStatus.IDLE
        assert pipeline.start() is True
        assert pipeline.state == "running(0)"

        pipeline.handle(await queue.get())
        assert pipeline.state == "running(1)"
        assert recorder.names == []

        pipeline.handle(await queue.get())
        assert pipeline.status == PipelineStatus.SUCCEEDED
        assert recorder.names == ["Start Server"]
        assert pipeline.resumed == ["Start Server"]
        assert executor.commands == ["A", "B"]

    async def test_stop_on_failure(self) -> None:
        """A failing middle step should stop the pipeline without resuming targets."""
        executor = DryRunStepExecutor({"B": 2})
        pipeline, queue, recorder = make_pipeline(["A", "B", "C"], executor, targets=["Server"])
        pipeline.start()
        await drive(pipeline, queue)

        assert pipeline.state == "failed(1)"
        assert recorder.names == []
        assert executor.commands == ["A", "B"]
        assert isinstance(pipeline.error, PipelineStepFailed)
        assert pipeline.error.step_index == 1
        assert pipeline.error.exit_code == 2
        assert [r.status for r in pipeline.records] == ["succeeded", "failed", "pending"]

    async def test_continue_on_failure(self) -> None:
        """Without stop_on_failure the remaining steps should run and targets resume."""
        executor = DryRunStepExecutor({"B": 1})
        pipeline, queue, recorder = make_pipeline(["A", "B", "C"], executor, targets=["Server"], stop_on_failure=False)
        pipeline.start()
        await drive(pipeline, queue)

        assert pipeline.status == PipelineStatus.SUCCEEDED
        assert executor.commands == ["A", "B", "C"]
        assert pipeline.failed_count == 1
        assert recorder.names == ["Server"]

    async def test_toggle_stop_on_failure(self) -> None:
        """Changing the policy mid-run should apply to later steps."""
        executor = DryRunStepExecutor({"B": 1})
        pipeline, queue, _recorder = make_pipeline(["A", "B", "C"], executor, stop_on_failure=True)
        pipeline.set_stop_on_failure(False)
        pipeline.start()
        await drive(pipeline, queue)
        assert pipeline.status == PipelineStatus.SUCCEEDED

    async def test_empty_pipeline_succeeds_immediately(self, executor: DryRunStepExecutor) -> None:
        """A pipeline without steps should succeed on start."""
        pipeline, _queue, recorder = make_pipeline([], executor, targets=["Server"])
        pipeline.start()
        assert pipeline.status == PipelineStatus.SUCCEEDED
        assert recorder.names == ["Server"]

    async def test_start_twice(self, executor: DryRunStepExecutor) -> None:
        """Only an idle pipeline can start."""
        pipeline, queue, _recorder = make_pipeline(["A"], executor)
        assert pipeline.start() is True
        assert pipeline.start() is False
        await drive(pipeline, queue)

    async def test_unknown_target_skipped(self, executor: DryRunStepExecutor) -> None:
        """An unknown target should be skipped and the rest still resumed."""
        recorder = ResumeRecorder(unknown={"Ghost"})
        pipeline, queue, _recorder = make_pipeline(["A"], executor, targets=["Ghost", "Server"], resume=recorder)
        pipeline.start()
        await drive(pipeline, queue)
        assert pipeline.status == PipelineStatus.SUCCEEDED
        assert recorder.names == ["Server"]
        assert pipeline.resumed == ["Server"]

    async def test_executor_exception_counts_as_failure(self) -> None:
        """A step whose executor raises should fail with exit code 1."""

        class Broken:
            async def run(self, command: str, shell: str, cwd: Path) -> int:
                raise RuntimeError("boom")

        pipeline, queue, _recorder = make_pipeline(["A"], Broken())
        pipeline.start()
        await drive(pipeline, queue)
        assert isinstance(pipeline.error, PipelineStepFailed)
        assert pipeline.error.exit_code == 1

    async def test_steps_get_shell_and_folder(self, executor: DryRunStepExecutor) -> None:
        """Each step should run with the configured shell and folder."""
        pipeline, queue, _recorder = make_pipeline(["A"], executor)
        pipeline.start()
        await drive(pipeline, queue)
        assert executor.calls == [("A", "sh", Path("/tmp"))]


class TestStaleMessages:
    """Tests for rejection of out-of-date completions."""

    async def test_wrong_run_id_ignored(self, executor: DryRunStepExecutor) -> None:
        """A completion from another run should be ignored."""
        pipeline, queue, _recorder = make_pipeline(["A", "B"], executor)
        pipeline.start()
        assert pipeline.handle(StepCompleted(pipeline.host_pane_id, pipeline.run_id + 100, 0, 0)) is False
        assert pipeline.state == "running(0)"
        await drive(pipeline, queue)

    async def test_wrong_step_ignored(self, executor: DryRunStepExecutor) -> None:
        """A completion for a step that is not current should be ignored."""
        pipeline, queue, _recorder = make_pipeline(["A", "B"], executor)
        pipeline.start()
        assert pipeline.handle(StepCompleted(pipeline.host_pane_id, pipeline.run_id, 1, 0)) is False
        await drive(pipeline, queue)

    async def test_message_after_terminal_ignored(self, executor: DryRunStepExecutor) -> None:
        """Completions after the pipeline finished should be ignored."""
        pipeline, queue, _recorder = make_pipeline(["A"], executor)
        pipeline.start()
        await drive(pipeline, queue)
        assert pipeline.handle(StepCompleted(pipeline.host_pane_id, pipeline.run_id, 0, 1)) is False
        assert pipeline.status == PipelineStatus.SUCCEEDED

    def test_run_ids_increase(self, executor: DryRunStepExecutor) -> None:
        """Each instance should get a fresh run id."""
        first, _queue, _recorder = make_pipeline(["A"], executor)
        second, _queue, _recorder = make_pipeline(["A"], executor)
        assert second.run_id > first.run_id


class TestPauseAndCancel:
    """Tests for pausing and cancellation."""

    async def test_pause_holds_next_step(self, executor: DryRunStepExecutor) -> None:
        """A paused pipeline should finish the current step then wait."""
        pipeline, queue, _recorder = make_pipeline(["A", "B"], executor)
        pipeline.start()
        pipeline.pause()
        pipeline.handle(await queue.get())

        assert pipeline.state == "running(1)"
        assert pipeline.paused
        assert not pipeline.in_flight
        assert executor.commands == ["A"]

        assert pipeline.unpause() is True
        await drive(pipeline, queue)
        assert pipeline.status == PipelineStatus.SUCCEEDED
        assert executor.commands == ["A", "B"]

    async def test_paused_before_start(self, executor: DryRunStepExecutor) -> None:
        """Pausing before start should hold the first step."""
        pipeline, queue, _recorder = make_pipeline(["A"], executor)
        pipeline.pause()
        pipeline.start()
        assert not pipeline.in_flight
        pipeline.unpause()
        await drive(pipeline, queue)
        assert pipeline.status == PipelineStatus.SUCCEEDED

    async def test_cancel_running_step(self) -> None:
        """Cancelling should fail the pipeline and ignore the late completion."""
        executor = BlockingStepExecutor()
        pipeline, queue, recorder = make_pipeline(["A", "B"], executor, targets=["Server"])
        pipeline.start()
        await asyncio.sleep(0)

        assert pipeline.cancel() is True
        assert pipeline.state == "failed(0)"
        assert isinstance(pipeline.error, PipelineCancelled)
        assert pipeline.cancel() is False

        executor.release()
        await asyncio.sleep(0.01)
        while not queue.empty():
            assert pipeline.handle(queue.get_nowait()) is False
        assert recorder.names == []
        assert executor.commands == ["A"]

    def test_cancel_idle_is_noop(self, executor: DryRunStepExecutor) -> None:
        """Cancelling an idle pipeline should do nothing."""
        pipeline, _queue, _recorder = make_pipeline(["A"], executor)
        assert pipeline.cancel() is False
        assert pipeline.status == PipelineStatus.IDLE


class TestRerunStep:
    """Tests for rerunning a single step."""

    async def test_rerun_failed_step_keeps_pipeline_failed(self) -> None:
        """Rerunning the failed step should update its record but not revive the run."""
        executor = DryRunStepExecutor({"B": 2})
        pipeline, queue, recorder = make_pipeline(["A", "B", "C"], executor, targets=["Server"])
        pipeline.start()
        await drive(pipeline, queue)
        assert pipeline.state == "failed(1)"

        executor.exit_codes.clear()
        run_id = pipeline.run_id
        assert pipeline.rerun_step(1) is True
        assert pipeline.records[1].status == "running"
        await drive(pipeline, queue)

        assert pipeline.records[1].exit_code == 0
        assert pipeline.state == "failed(1)"
        assert pipeline.run_id == run_id
        assert executor.commands == ["A", "B", "B"]
        assert recorder.names == []

    async def test_rerun_refused_while_step_in_flight(self) -> None:
        """Only one step may run at a time."""
        executor = BlockingStepExecutor()
        pipeline, queue, _recorder = make_pipeline(["A", "B"], executor)
        pipeline.start()
        await asyncio.sleep(0)
        assert pipeline.rerun_step(0) is False
        executor.release()
        await drive(pipeline, queue)
        assert executor.commands == ["A", "B"]

    async def test_rerun_unfinished_step_refused(self, executor: DryRunStepExecutor) -> None:
        """A step that never ran has nothing to rerun."""
        pipeline, queue, _recorder = make_pipeline(["A", "B"], executor)
        pipeline.pause()
        pipeline.start()
        assert pipeline.rerun_step(1) is False
        with pytest.raises(IndexError):
            pipeline.rerun_step(5)

    async def test_unpause_during_rerun_launches_held_step(self, executor: DryRunStepExecutor) -> None:
        """A held step should start once the rerun finishes if the pipeline was unpaused meanwhile."""
        pipeline, queue, _recorder = make_pipeline(["A", "B"], executor)
        pipeline.start()
        pipeline.pause()
        await drive(pipeline, queue)
        assert pipeline.state == "running(1)"

        assert pipeline.rerun_step(0) is True
        assert pipeline.unpause() is False
        await drive(pipeline, queue)

        assert executor.commands == ["A", "A", "B"]
        assert pipeline.status == PipelineStatus.SUCCEEDED

    async def test_stale_rerun_ignored(self, executor: DryRunStepExecutor) -> None:
        """A rerun completion that was not asked for should be ignored."""
        pipeline, queue, _recorder = make_pipeline(["A"], executor)
        pipeline.start()
        await drive(pipeline, queue)
        message = StepCompleted(pipeline.host_pane_id, pipeline.run_id, 0, 1, rerun=True)
        assert pipeline.handle(message) is False
        assert pipeline.records[0].exit_code == 0

    async def test_cancel_kills_rerun(self, executor: DryRunStepExecutor) -> None:
        """Cancelling should stop a rerun even after the pipeline finished."""
        pipeline, queue, _recorder = make_pipeline(["A"], executor)
        pipeline.start()
        await drive(pipeline, queue)
        assert pipeline.status == PipelineStatus.SUCCEEDED

        assert pipeline.rerun_step(0) is True
        assert pipeline.in_flight
        assert pipeline.cancel() is False
        assert not pipeline.in_flight
        assert pipeline.status == PipelineStatus.SUCCEEDED
        await asyncio.sleep(0)


class TestSnapshot:
    """Tests for SetupPipelineCoordinator.to_dict."""

    async def test_to_dict(self) -> None:
        """Snapshots should report steps and outcome."""
        executor = DryRunStepExecutor({"B": 3})
        pipeline, queue, _recorder = make_pipeline(["A", "B"], executor, targets=["Server"])
        pipeline.start()
        await drive(pipeline, queue)
        data = pipeline.to_dict()

        assert data["state"] == "failed(1)"
        assert data["targets"] == ["Server"]
        assert data["resumed"] == []
        assert "exit code 3" in data["error"]
        assert [s["status"] for s in data["steps"]] == ["succeeded", "failed"]
        assert data["steps"][1]["exit_code"] == 3


class TestExecutors:
    """Tests for the step executors."""

    async def test_dry_run(self, tmp_path: Path) -> None:
        """The dry-run executor should record and succeed."""
        executor = DryRunStepExecutor()
        assert await executor.run("rm -rf build", "bash", tmp_path) == 0
        assert executor.commands == ["rm -rf build"]

    async def test_subprocess_exit_code(self, tmp_path: Path) -> None:
        """The subprocess executor should return the command's exit code."""
        executor = SubprocessStepExecutor()
        assert await executor.run("exit 3", "sh", tmp_path) == 3

    async def test_subprocess_runs_in_folder(self, tmp_path: Path) -> None:
        """Commands should run in the given directory."""
        executor = SubprocessStepExecutor()
        assert await executor.run("touch marker", "sh", tmp_path) == 0
        assert (tmp_path / "marker").exists()

    async def test_subprocess_timeout(self, tmp_path: Path) -> None:
        """A step over the timeout should be killed and report 124."""
        executor = SubprocessStepExecutor(timeout=0.2)
        assert await executor.run("sleep 5", "sh", tmp_path) == TIMEOUT_EXIT_CODE

    async def test_missing_shell(self, tmp_path: Path) -> None:
        """An unstartable shell should report 127."""
        executor = SubprocessStepExecutor()
        assert await executor.run("true", "/nonexistent/shell", tmp_path) == SPAWN_FAILED_EXIT_CODE


@pytest.mark.parametrize("status", [PipelineStatus.SUCCEEDED, PipelineStatus.FAILED])
def test_terminal_statuses(status: PipelineStatus) -> None:
    """Succeeded and failed should be terminal."""
    assert status.is_terminal
    assert not PipelineStatus.RUNNING.is_terminal
