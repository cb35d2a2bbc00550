"""Start requests to the process layer, and the gate that holds suspended panes back."""

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from paneforge.description import EditorTarget, PluginHost
from paneforge.errors import UnknownPaneName
from paneforge.layouts import PaneNode, PaneRegistry
from paneforge.telemetry import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SpawnRequest:
    """Ask the process layer to create a terminal pane.

    With ``start_immediately=False`` the pane is created but its program is held
    until a later request for the same pane arrives with ``start_immediately=True``.
    """

    pane_id: int
    name: str
    program: str
    args: tuple[str, ...]
    cwd: Path
    start_immediately: bool

    @property
    def command_line(self) -> str:
        return shlex.join([self.program, *self.args])


@dataclass(frozen=True)
class LoadRequest:
    """Ask the process layer to load a plugin into a pane."""

    pane_id: int
    name: str
    location: str
    configuration: dict[str, str] = field(default_factory=dict)


LaunchRequest = SpawnRequest | LoadRequest


class ProcessLayer(Protocol):
    """The external process-multiplexing layer."""

    def spawn(self, request: SpawnRequest) -> None: ...

    def load(self, request: LoadRequest) -> None: ...


class RecordingProcessLayer:
    """Process layer that only records what it was asked to do.

    Used for dry runs and tests.
    """

    def __init__(self) -> None:
        self.requests: list[LaunchRequest] = []

    def spawn(self, request: SpawnRequest) -> None:
        self.requests.append(request)

    def load(self, request: LoadRequest) -> None:
        self.requests.append(request)

    def for_pane(self, pane_id: int) -> list[LaunchRequest]:
        """All requests issued for one pane, in order."""
        return [r for r in self.requests if r.pane_id == pane_id]

    def started(self, pane_id: int) -> list[LaunchRequest]:
        """Requests that actually start something in the pane."""
        return [r for r in self.for_pane(pane_id) if not isinstance(r, SpawnRequest) or r.start_immediately]


class SuspendedLaunchController:
    """Tracks each pane's suspended flag and issues start requests.

    The controller only decides *when* a start request goes out; creating the
    process is the process layer's job.
    """

    def __init__(
        self,
        registry: PaneRegistry,
        process_layer: ProcessLayer,
        default_shell: str = "bash",
        editor: str = "vi",
    ) -> None:
        self._registry = registry
        self._process_layer = process_layer
        self._default_shell = default_shell
        self._editor = editor
        self._suspended: dict[int, bool] = {}
        self._closed: set[int] = set()

    def track(self, pane: PaneNode) -> None:
        """Record a built pane's initial run state from its start mode."""
        self._suspended[pane.pane_id] = pane.start_suspended

    def forget(self, pane_id: int) -> None:
        """Stop tracking a pane that was closed; it can no longer be resumed."""
        self._suspended.pop(pane_id, None)
        self._closed.add(pane_id)

    def launch(self, pane: PaneNode) -> None:
        """Issue the initial request for a pane at session start.

        Terminal panes always get a spawn request; suspended ones are created with
        their program held. Suspended plugins are not loaded until resumed.
        """
        if pane.pane_id in self._closed:
            return
        suspended = self._suspended.get(pane.pane_id, pane.start_suspended)
        if isinstance(pane.body, PluginHost):
            if not suspended:
                self._process_layer.load(self._load_request(pane, pane.body))
            return
        self._process_layer.spawn(self._spawn_request(pane, start_immediately=not suspended))

    def resume(self, name: str) -> bool:
        """Start a suspended pane by name.

        Args:
            name: Pane name.

        Returns:
            True if a start request was issued, False if the pane was already running.

        Raises:
            UnknownPaneName: If no pane has that name, or the pane was closed.
        """
        pane = self._registry.lookup(name)
        return self.resume_id(pane.pane_id)

    def resume_id(self, pane_id: int) -> bool:
        """Start a suspended pane by runtime id. Idempotent.

        Raises:
            UnknownPaneName: If the pane was closed.
        """
        if pane_id in self._closed:
            raise UnknownPaneName(self._registry.get(pane_id).label)
        if not self._suspended.get(pane_id, False):
            logger.debug("Pane %d already running, resume ignored", pane_id)
            return False

        pane = self._registry.get(pane_id)
        self._suspended[pane_id] = False
        if isinstance(pane.body, PluginHost):
            self._process_layer.load(self._load_request(pane, pane.body))
        else:
            self._process_layer.spawn(self._spawn_request(pane, start_immediately=True))
        logger.info("Resumed pane %r", pane.label)
        return True

    def is_suspended(self, name: str) -> bool:
        """Whether the named pane is still held.

        Raises:
            UnknownPaneName: If no pane has that name.
        """
        return self._suspended.get(self._registry.lookup(name).pane_id, False)

    def is_running(self, pane_id: int) -> bool:
        return pane_id not in self._closed and not self._suspended.get(pane_id, False)

    def is_closed(self, pane_id: int) -> bool:
        return pane_id in self._closed

    def suspended_panes(self) -> list[str]:
        """Labels of all panes still held, in build order."""
        return [self._registry.get(pane_id).label for pane_id, held in self._suspended.items() if held]

    def _spawn_request(self, pane: PaneNode, start_immediately: bool) -> SpawnRequest:
        if isinstance(pane.body, EditorTarget):
            program = self._editor
            args: tuple[str, ...] = (pane.body.path,)
        else:
            program = pane.body.program or self._default_shell
            args = tuple(pane.body.args)
        return SpawnRequest(
            pane_id=pane.pane_id,
            name=pane.label,
            program=program,
            args=args,
            cwd=pane.cwd,
            start_immediately=start_immediately,
        )

    def _load_request(self, pane: PaneNode, plugin: PluginHost) -> LoadRequest:
        return LoadRequest(
            pane_id=pane.pane_id,
            name=pane.label,
            location=plugin.location,
            configuration=dict(plugin.configuration),
        )
