"""Setup pipelines: ordered shell steps run from a plugin pane, gating dependent panes.

Each step runs as its own asyncio task and reports back by putting a
``StepCompleted`` message on the session queue. The coordinator's state only
changes when the session hands it such a message, so all state mutation stays
on the session's single control loop.
"""

import asyncio
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from paneforge.description import PluginHost
from paneforge.errors import PipelineCancelled, PipelineError, PipelineStepFailed, UnknownPaneName
from paneforge.telemetry import get_logger

logger = get_logger(__name__)

# Exit code reported for a step killed by the step timeout (matches coreutils timeout)
TIMEOUT_EXIT_CODE = 124
# Exit code reported when the shell itself could not be started
SPAWN_FAILED_EXIT_CODE = 127

# Every pipeline instance gets a fresh run id so late messages from a replaced
# instance can be told apart.
_run_id_counter = itertools.count(1)


class PipelineStatus(StrEnum):
    """Lifecycle of one pipeline instance."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {PipelineStatus.SUCCEEDED, PipelineStatus.FAILED}


def _unquote(line: str) -> str:
    if len(line) >= 2 and line[0] == line[-1] == '"':
        return line[1:-1].replace('\\"', '"')
    return line


def _config_lines(raw: str) -> list[tuple[str, bool]]:
    """Split a multi-line configuration value into (text, was_quoted) lines."""
    lines: list[tuple[str, bool]] = []
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("//"):
            continue
        lines.append((_unquote(stripped), stripped.startswith('"')))
    return lines


def parse_commands(raw: str) -> list[str]:
    """Parse the ``commands`` plugin option.

    One command per line, optionally wrapped in double quotes. A single unquoted
    line is split on ``&&`` instead.

    Args:
        raw: The option value.

    Returns:
        Commands in run order.
    """
    lines = _config_lines(raw)
    if len(lines) == 1 and not lines[0][1] and "&&" in lines[0][0]:
        return [part.strip() for part in lines[0][0].split("&&") if part.strip()]
    return [text for text, _quoted in lines]


def parse_pane_names(raw: str) -> list[str]:
    """Parse the ``panes_to_run_on_completion`` plugin option, one name per line."""
    names: list[str] = []
    for text, _quoted in _config_lines(raw):
        if text not in names:
            names.append(text)
    return names


def _flag(configuration: dict[str, str], key: str, default: bool) -> bool:
    value = configuration.get(key)
    if value is None:
        return default
    return value.strip().lower() == "true"


def is_pipeline_host(body: object) -> bool:
    """Whether a pane body is a plugin configured to run setup commands."""
    return isinstance(body, PluginHost) and "commands" in body.configuration


@dataclass
class PipelineSpec:
    """What a pipeline runs and whom it releases."""

    commands: list[str]
    stop_on_failure: bool = False
    targets: list[str] = field(default_factory=list)
    shell: str = "bash"
    folder: Path = field(default_factory=Path.cwd)
    close_on_success: bool = True

    @classmethod
    def from_configuration(
        cls,
        configuration: dict[str, str],
        default_shell: str,
        default_folder: Path,
    ) -> "PipelineSpec":
        """Build a spec from a plugin pane's configuration.

        Args:
            configuration: The plugin options.
            default_shell: Shell used when ``shell`` is not set.
            default_folder: Directory used when ``folder`` is not set; relative
                ``folder`` values are resolved against it.

        Returns:
            The pipeline spec.
        """
        folder = default_folder
        if configuration.get("folder"):
            folder_path = Path(configuration["folder"]).expanduser()
            folder = folder_path if folder_path.is_absolute() else default_folder / folder_path
        return cls(
            commands=parse_commands(configuration.get("commands", "")),
            stop_on_failure=_flag(configuration, "stop_on_failure", False),
            targets=parse_pane_names(configuration.get("panes_to_run_on_completion", "")),
            shell=configuration.get("shell") or default_shell,
            folder=folder,
            close_on_success=_flag(configuration, "close_on_success", True),
        )


@dataclass
class StepRecord:
    """Outcome of one step."""

    command: str
    exit_code: int | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def status(self) -> str:
        if self.exit_code is not None:
            return "succeeded" if self.exit_code == 0 else "failed"
        if self.started_at is not None:
            return "running"
        return "pending"

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.ended_at or datetime.now(UTC)
        return round((end - self.started_at).total_seconds(), 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "status": self.status,
            "exit_code": self.exit_code,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class StepCompleted:
    """Message from a step task back to the session loop."""

    host_pane_id: int
    run_id: int
    step_index: int
    exit_code: int
    rerun: bool = False


class StepExecutor(Protocol):
    """Runs one step command to completion and returns its exit code."""

    async def run(self, command: str, shell: str, cwd: Path) -> int: ...


class SubprocessStepExecutor:
    """Runs steps as local subprocesses: ``shell -c command`` in ``cwd``."""

    def __init__(self, timeout: float = 0.0) -> None:
        self.timeout = timeout

    async def run(self, command: str, shell: str, cwd: Path) -> int:
        """Run one command.

        Args:
            command: The command line.
            shell: Shell used to interpret it.
            cwd: Working directory.

        Returns:
            The exit code; 124 on timeout, 127 if the shell could not start.
        """
        try:
            proc = await asyncio.create_subprocess_exec(shell, "-c", command, cwd=str(cwd))
        except OSError as e:
            logger.error("Could not start %s for step %r: %s", shell, command, e)
            return SPAWN_FAILED_EXIT_CODE

        try:
            if self.timeout > 0:
                return await asyncio.wait_for(proc.wait(), timeout=self.timeout)
            return await proc.wait()
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Step %r timed out after %ss", command, self.timeout)
            return TIMEOUT_EXIT_CODE
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise


class DryRunStepExecutor:
    """Runs nothing; remembers what it was asked to run.

    Every step succeeds unless ``exit_codes`` presets a result for its command.
    """

    def __init__(self, exit_codes: dict[str, int] | None = None) -> None:
        self.exit_codes = exit_codes or {}
        self.commands: list[str] = []
        self.calls: list[tuple[str, str, Path]] = []

    async def run(self, command: str, shell: str, cwd: Path) -> int:
        self.commands.append(command)
        self.calls.append((command, shell, cwd))
        return self.exit_codes.get(command, 0)


ResumeCallback = Callable[[str], bool]


class SetupPipelineCoordinator:
    """State machine for one pipeline instance.

    ``idle -> running(i) -> succeeded | failed(i)``. Failed and succeeded are
    terminal; a retry is a new instance with a new run id.
    """

    def __init__(
        self,
        key: str,
        host_pane_id: int,
        spec: PipelineSpec,
        executor: StepExecutor,
        outbox: "asyncio.Queue[StepCompleted]",
        resume: ResumeCallback,
    ) -> None:
        self.key = key
        self.host_pane_id = host_pane_id
        self.spec = spec
        self.run_id = next(_run_id_counter)
        self.records = [StepRecord(command) for command in spec.commands]
        self.error: PipelineError | None = None
        self.resumed: list[str] = []
        self._executor = executor
        self._outbox = outbox
        self._resume = resume
        self._status = PipelineStatus.IDLE
        self._step_index: int | None = None
        self._paused = False
        self._task: asyncio.Task[None] | None = None
        self._rerun_index: int | None = None

    # === State ===

    @property
    def status(self) -> PipelineStatus:
        return self._status

    @property
    def step_index(self) -> int | None:
        return self._step_index

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def in_flight(self) -> bool:
        """Whether a step task is currently running."""
        return self._task is not None

    @property
    def state(self) -> str:
        """Readable state, e.g. ``running(1)`` or ``failed(2)``."""
        if self._status in {PipelineStatus.RUNNING, PipelineStatus.FAILED}:
            return f"{self._status.value}({self._step_index})"
        return self._status.value

    @property
    def succeeded_count(self) -> int:
        return sum(1 for r in self.records if r.exit_code == 0)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.records if r.exit_code not in (None, 0))

    @property
    def pending_count(self) -> int:
        return sum(1 for r in self.records if r.exit_code is None)

    # === Transitions ===

    def start(self) -> bool:
        """Leave idle and launch the first step. Must run inside the event loop.

        Returns:
            True if the pipeline started, False if it was not idle.
        """
        if self._status != PipelineStatus.IDLE:
            return False

        logger.info("[%s] pipeline started (run %d, %d steps)", self.key, self.run_id, len(self.records))
        self._status = PipelineStatus.RUNNING
        self._step_index = 0
        if not self.records:
            self._succeed()
        elif not self._paused:
            self._launch(0)
        return True

    def handle(self, message: StepCompleted) -> bool:
        """Apply a step completion.

        Args:
            message: Completion reported by a step task.

        Returns:
            True if the pipeline state changed.
        """
        if message.rerun:
            return self._handle_rerun(message)
        if (
            message.run_id != self.run_id
            or self._status != PipelineStatus.RUNNING
            or message.step_index != self._step_index
        ):
            logger.debug(
                "[%s] ignoring stale completion of step %d from run %d",
                self.key,
                message.step_index,
                message.run_id,
            )
            return False

        index = message.step_index
        record = self.records[index]
        record.exit_code = message.exit_code
        record.ended_at = datetime.now(UTC)
        self._task = None

        if message.exit_code != 0:
            if self.spec.stop_on_failure:
                self._fail(PipelineStepFailed(index, message.exit_code, record.command))
                return True
            logger.warning(
                "[%s] step %d exited with %d, continuing: %s",
                self.key,
                index,
                message.exit_code,
                record.command,
            )

        next_index = index + 1
        if next_index >= len(self.records):
            self._succeed()
            return True

        self._step_index = next_index
        if self._paused:
            logger.info("[%s] paused before step %d", self.key, next_index)
        else:
            self._launch(next_index)
        return True

    def cancel(self) -> bool:
        """Halt a pipeline because its host pane went away.

        An in-flight step is killed, whether part of the run or a rerun.

        Returns:
            True if the pipeline was running and is now failed.
        """
        if self._task is not None:
            self._task.cancel()
            self._task = None
            active = self._rerun_index if self._rerun_index is not None else self._step_index
            if active is not None:
                self.records[active].ended_at = datetime.now(UTC)
        self._rerun_index = None
        if self._status != PipelineStatus.RUNNING:
            return False
        self._fail(PipelineCancelled(self._step_index or 0))
        return True

    def pause(self) -> None:
        """Hold before the next step; a running step is allowed to finish."""
        self._paused = True

    def unpause(self) -> bool:
        """Release a pause, launching the held step if there is one.

        Returns:
            True if a step was launched.
        """
        self._paused = False
        if self._status == PipelineStatus.RUNNING and self._task is None and self._step_index is not None:
            self._launch(self._step_index)
            return True
        return False

    def set_stop_on_failure(self, value: bool) -> None:
        """Change the failure policy for steps that have not completed yet."""
        self.spec.stop_on_failure = value

    def rerun_step(self, index: int) -> bool:
        """Run one already-finished step again under the current run id.

        The result only updates that step's record: a finished pipeline stays
        finished, and a paused one stays on its held step.

        Args:
            index: Zero-based step index.

        Returns:
            True if the step was launched, False if a step is in flight or the
            step has not finished yet.

        Raises:
            IndexError: If there is no such step.
        """
        if not 0 <= index < len(self.records):
            raise IndexError(f"Pipeline {self.key!r} has no step {index}")
        if self._task is not None:
            logger.info("[%s] step in flight, rerun of step %d refused", self.key, index)
            return False
        if self.records[index].exit_code is None:
            logger.info("[%s] step %d has not finished, nothing to rerun", self.key, index)
            return False

        self.records[index].exit_code = None
        self._rerun_index = index
        self._launch(index, rerun=True)
        return True

    # === Internals ===

    def _handle_rerun(self, message: StepCompleted) -> bool:
        if message.run_id != self.run_id or message.step_index != self._rerun_index:
            logger.debug("[%s] ignoring stale rerun of step %d", self.key, message.step_index)
            return False

        record = self.records[message.step_index]
        record.exit_code = message.exit_code
        record.ended_at = datetime.now(UTC)
        self._task = None
        self._rerun_index = None
        logger.info("[%s] rerun of step %d exited with %d", self.key, message.step_index, message.exit_code)

        # An unpause that arrived during the rerun still owes the held step
        if self._status == PipelineStatus.RUNNING and not self._paused and self._step_index is not None:
            self._launch(self._step_index)
        return True

    def _launch(self, index: int, rerun: bool = False) -> None:
        record = self.records[index]
        record.started_at = datetime.now(UTC)
        record.ended_at = None
        logger.info("[%s] step %d/%d: %s", self.key, index + 1, len(self.records), record.command)
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._execute(index, record.command, rerun))

    async def _execute(self, index: int, command: str, rerun: bool) -> None:
        try:
            exit_code = await self._executor.run(command, self.spec.shell, self.spec.folder)
        except Exception:
            logger.exception("[%s] step %d raised", self.key, index)
            exit_code = 1
        await self._outbox.put(StepCompleted(self.host_pane_id, self.run_id, index, exit_code, rerun))

    def _succeed(self) -> None:
        self._status = PipelineStatus.SUCCEEDED
        if self.failed_count:
            logger.warning("[%s] pipeline finished with %d failed steps", self.key, self.failed_count)
        logger.info("[%s] pipeline succeeded, resuming %s", self.key, self.spec.targets)
        for name in self.spec.targets:
            try:
                self._resume(name)
            except UnknownPaneName as e:
                logger.warning("[%s] cannot resume target: %s", self.key, e)
                continue
            self.resumed.append(name)

    def _fail(self, error: PipelineError) -> None:
        self._status = PipelineStatus.FAILED
        self.error = error
        logger.error("[%s] %s", self.key, error)

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for the rendering layer."""
        return {
            "host_pane_id": self.host_pane_id,
            "run_id": self.run_id,
            "state": self.state,
            "status": self._status.value,
            "step_index": self._step_index,
            "paused": self._paused,
            "stop_on_failure": self.spec.stop_on_failure,
            "targets": list(self.spec.targets),
            "resumed": list(self.resumed),
            "error": str(self.error) if self.error else None,
            "steps": [r.to_dict() for r in self.records],
        }
