"""SessionState: builds a session from a description and owns all of its runtime state.

All mutation happens through this class on one control loop. Pipelines and the
launch controller refer to panes by name or id through the shared registry.
"""

import asyncio
import dataclasses
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from paneforge.config import Config
from paneforge.description import LayoutDescription, LayoutNode, PluginHost
from paneforge.errors import PipelineError, UnknownPaneName
from paneforge.floating import FloatingOverlayManager
from paneforge.geometry import Rect
from paneforge.launcher import ProcessLayer, RecordingProcessLayer, SuspendedLaunchController
from paneforge.layouts import (
    PaneNode,
    PaneRegistry,
    PaneTreeBuilder,
    RuntimeNode,
    StackNode,
    iter_panes,
    node_to_dict,
    pane_to_dict,
    resolve_cwd,
)
from paneforge.pipeline import (
    PipelineSpec,
    PipelineStatus,
    SetupPipelineCoordinator,
    StepCompleted,
    StepExecutor,
    SubprocessStepExecutor,
    is_pipeline_host,
)
from paneforge.telemetry import get_logger
from paneforge.templates import expand_tab

logger = get_logger(__name__)

SnapshotCallback = Callable[[dict[str, Any]], Any]


@dataclass
class TabState:
    """A resolved tab: its expanded layout, runtime tree and floating panes."""

    index: int
    name: str
    cwd: Path
    layout: LayoutNode
    root: RuntimeNode
    floating: list[int] = field(default_factory=list)


class SessionState:
    """One live session built from a layout description.

    Use ``SessionState.build`` to construct; build errors are raised before any
    request reaches the process layer. ``start`` issues the initial requests and
    activates pipelines whose host pane is showing.
    """

    def __init__(
        self,
        config: Config,
        viewport: Rect,
        cwd: Path,
        process_layer: ProcessLayer,
        executor: StepExecutor,
    ) -> None:
        self.config = config
        self.viewport = viewport
        self.cwd = cwd
        self.registry = PaneRegistry()
        self.builder = PaneTreeBuilder(self.registry)
        self.overlays = FloatingOverlayManager(self.registry, viewport)
        self.launcher = SuspendedLaunchController(
            self.registry,
            process_layer,
            default_shell=config.default_shell,
            editor=config.editor,
        )
        self.queue: asyncio.Queue[StepCompleted] = asyncio.Queue()
        self.tabs: list[TabState] = []
        self.active_tab = 0
        self._executor = executor
        self._pipelines: dict[int, SetupPipelineCoordinator] = {}
        self._pipeline_ids: dict[str, int] = {}
        self._tab_of: dict[int, int] = {}
        self._stack_of: dict[int, StackNode] = {}
        self._subscribers: list[SnapshotCallback] = []
        self._started = False

    # === Construction ===

    @classmethod
    def build(
        cls,
        description: LayoutDescription,
        config: Config | None = None,
        process_layer: ProcessLayer | None = None,
        executor: StepExecutor | None = None,
        cwd: Path | None = None,
    ) -> "SessionState":
        """Resolve a description into a session.

        Args:
            description: The validated layout description.
            config: Engine settings. Defaults to ``Config()``.
            process_layer: Where start requests go. Defaults to a recording layer.
            executor: Runs pipeline steps. Defaults to local subprocesses.
            cwd: Base directory for a relative session cwd. Defaults to the process cwd.

        Returns:
            The built, not yet started, session.

        Raises:
            LayoutOverconstrained: If sibling sizes cannot fit.
            MultipleInsertionPoints: If the tab template is ambiguous.
            DuplicatePaneName: If two panes share a name.
        """
        config = config or Config()
        viewport = Rect(0, 0, config.viewport_cols, config.viewport_rows)
        session = cls(
            config=config,
            viewport=viewport,
            cwd=resolve_cwd(cwd or Path.cwd(), description.cwd),
            process_layer=process_layer or RecordingProcessLayer(),
            executor=executor or SubprocessStepExecutor(timeout=config.step_timeout),
        )

        focused: int | None = None
        for index, tab in enumerate(description.tabs):
            name = tab.name or f"Tab #{index + 1}"
            tab_cwd = resolve_cwd(session.cwd, tab.cwd)
            layout = expand_tab(description.default_tab_template, tab)
            root = session.builder.build_tab(layout, viewport, tab_cwd, name)
            state = TabState(index=index, name=name, cwd=tab_cwd, layout=layout, root=root)

            for definition in tab.floating_panes:
                rect = session.overlays.place(definition)
                pane = session.builder.build_pane(definition, rect, tab_cwd, name, floating=True)
                session.overlays.register(pane)
                state.floating.append(pane.pane_id)

            session.tabs.append(state)
            if tab.focus and focused is None:
                focused = index
        session.active_tab = focused or 0

        for state in session.tabs:
            session._index_tab(state)
        for pane in session.registry:
            session.launcher.track(pane)
            if isinstance(pane.body, PluginHost) and is_pipeline_host(pane.body):
                session._add_pipeline(pane, pane.body)

        logger.info(
            "Built session: %d tabs, %d panes, %d pipelines",
            len(session.tabs),
            len(session.registry),
            len(session._pipelines),
        )
        return session

    def _index_tab(self, state: TabState) -> None:
        for pane in iter_panes(state.root):
            self._tab_of[pane.pane_id] = state.index
        for pane_id in state.floating:
            self._tab_of[pane_id] = state.index
        self._index_stacks(state.root)

    def _index_stacks(self, node: RuntimeNode) -> None:
        if isinstance(node, StackNode):
            for child in node.children:
                self._stack_of[child.pane_id] = node
        elif not isinstance(node, PaneNode):
            for child in node.children:
                self._index_stacks(child)

    def _pipeline_key(self, pane: PaneNode) -> str:
        if pane.name:
            return pane.name
        # Unnamed hosts use their generated label unless a named pane already took it
        key = pane.label
        while key in self.registry or key in self._pipeline_ids:
            key += "'"
        return key

    def _add_pipeline(self, pane: PaneNode, plugin: PluginHost) -> SetupPipelineCoordinator:
        spec = PipelineSpec.from_configuration(plugin.configuration, self.config.default_shell, pane.cwd)
        for target in spec.targets:
            if target not in self.registry:
                logger.warning("Pipeline %r targets unknown pane %r", pane.label, target)
        key = self._pipeline_key(pane)
        self._pipeline_ids[key] = pane.pane_id
        return self._new_pipeline(pane, spec, key)

    def _new_pipeline(self, pane: PaneNode, spec: PipelineSpec, key: str) -> SetupPipelineCoordinator:
        pipeline = SetupPipelineCoordinator(
            key=key,
            host_pane_id=pane.pane_id,
            spec=spec,
            executor=self._executor,
            outbox=self.queue,
            resume=self.launcher.resume,
        )
        self._pipelines[pane.pane_id] = pipeline
        return pipeline

    # === Lifecycle ===

    def start(self) -> None:
        """Issue initial requests for every pane and activate showing pipelines.

        Pipelines launch step tasks, so call this inside the event loop when the
        layout hosts any.
        """
        if self._started:
            return
        self._started = True
        for pane in self.registry:
            self.launcher.launch(pane)
        self._activate_pipelines()
        self._emit()

    def handle(self, message: StepCompleted) -> bool:
        """Apply one step completion to its pipeline.

        Args:
            message: Message taken from the session queue.

        Returns:
            True if session state changed.
        """
        pipeline = self._pipelines.get(message.host_pane_id)
        if pipeline is None:
            return False
        before = pipeline.status
        if not pipeline.handle(message):
            return False

        if pipeline.status == PipelineStatus.SUCCEEDED and before != PipelineStatus.SUCCEEDED:
            self._after_success(pipeline)
            # Released targets may themselves host pipelines
            self._activate_pipelines()
        self._emit()
        return True

    def _after_success(self, pipeline: SetupPipelineCoordinator) -> None:
        host = self.registry.get(pipeline.host_pane_id)
        if pipeline.spec.close_on_success and host.floating:
            self.overlays.hide_id(host.pane_id)

    async def run_until_idle(self) -> None:
        """Process step completions until no pipeline has a step in flight."""
        while any(p.in_flight for p in self._pipelines.values()):
            message = await self.queue.get()
            self.handle(message)

    # === Operator actions ===

    def resume(self, name: str) -> bool:
        """Start a suspended pane.

        Returns:
            True if the pane was started, False if it was already running.

        Raises:
            UnknownPaneName: If no pane has that name.
        """
        changed = self.launcher.resume(name)
        if changed:
            self._activate_pipelines()
            self._emit()
        return changed

    def show(self, name: str) -> bool:
        """Show a floating pane.

        Raises:
            UnknownPaneName: If no open floating pane has that name.
        """
        changed = self.overlays.show(name)
        if changed:
            self._activate_pipelines()
            self._emit()
        return changed

    def hide(self, name: str) -> bool:
        """Hide a floating pane.

        Raises:
            UnknownPaneName: If no open floating pane has that name.
        """
        changed = self.overlays.hide(name)
        if changed:
            self._emit()
        return changed

    def close(self, name: str) -> None:
        """Close a floating pane, cancelling any pipeline it hosts.

        Raises:
            UnknownPaneName: If no open floating pane has that name.
        """
        overlay = self.overlays.close(name)
        for state in self.tabs:
            if overlay.pane_id in state.floating:
                state.floating.remove(overlay.pane_id)
        self.launcher.forget(overlay.pane_id)
        pipeline = self._pipelines.get(overlay.pane_id)
        if pipeline is not None:
            pipeline.cancel()
        self._emit()

    def switch_stack_visible(self, container_id: int, pane_name: str) -> PaneNode:
        """Make a named pane the visible one in a stack.

        Raises:
            KeyError: If there is no stack with that id.
            UnknownPaneName: If the stack has no pane with that name.
        """
        pane = self.registry.stack(container_id).switch_visible(pane_name)
        self._activate_pipelines()
        self._emit()
        return pane

    def focus_tab(self, name: str) -> None:
        """Make the named tab the active one.

        Raises:
            ValueError: If no tab has that name.
        """
        for state in self.tabs:
            if state.name == name:
                self.active_tab = state.index
                self._activate_pipelines()
                self._emit()
                return
        raise ValueError(f"Unknown tab: {name!r}")

    # === Pipelines ===

    def pipeline(self, host_name: str) -> SetupPipelineCoordinator:
        """The current pipeline instance hosted by a pane.

        Raises:
            UnknownPaneName: If no pipeline is hosted under that name.
        """
        pane_id = self._pipeline_ids.get(host_name)
        if pane_id is None:
            raise UnknownPaneName(host_name)
        return self._pipelines[pane_id]

    @property
    def pipelines(self) -> list[SetupPipelineCoordinator]:
        return list(self._pipelines.values())

    @property
    def failures(self) -> list[PipelineError]:
        """Errors of all failed pipelines."""
        return [p.error for p in self._pipelines.values() if p.error is not None]

    def pause_pipeline(self, host_name: str) -> None:
        self.pipeline(host_name).pause()
        self._emit()

    def unpause_pipeline(self, host_name: str) -> None:
        self.pipeline(host_name).unpause()
        self._emit()

    def restart_pipeline(self, host_name: str, commands: list[str] | None = None) -> SetupPipelineCoordinator:
        """Replace a pipeline with a fresh instance, cancelling the old one if running.

        Args:
            host_name: Name of the hosting pane.
            commands: New step list for the fresh run. Defaults to the current one.

        Returns:
            The new instance (started if its host is showing).

        Raises:
            UnknownPaneName: If no pipeline is hosted under that name, or its
                host pane was closed.
        """
        old = self.pipeline(host_name)
        if self.launcher.is_closed(old.host_pane_id):
            raise UnknownPaneName(host_name)
        old.cancel()
        host = self.registry.get(old.host_pane_id)
        spec = dataclasses.replace(
            old.spec,
            commands=list(old.spec.commands if commands is None else commands),
            targets=list(old.spec.targets),
        )
        pipeline = self._new_pipeline(host, spec, old.key)
        if commands is not None:
            logger.info("[%s] step list replaced: %s", old.key, spec.commands)
        logger.info("[%s] pipeline restarted as run %d", old.key, pipeline.run_id)
        self._activate_pipelines()
        self._emit()
        return pipeline

    def rerun_step(self, host_name: str, index: int) -> bool:
        """Run one finished step of a pipeline again.

        Returns:
            True if the step was launched.

        Raises:
            UnknownPaneName: If no pipeline is hosted under that name.
            IndexError: If the pipeline has no such step.
        """
        launched = self.pipeline(host_name).rerun_step(index)
        if launched:
            self._emit()
        return launched

    def _host_showing(self, pane_id: int) -> bool:
        if self._tab_of.get(pane_id) != self.active_tab:
            return False
        if not self.launcher.is_running(pane_id):
            return False
        pane = self.registry.get(pane_id)
        if pane.floating:
            return self.overlays.is_visible(pane_id)
        stack = self._stack_of.get(pane_id)
        return stack is None or stack.visible is pane

    def _activate_pipelines(self) -> None:
        if not self._started:
            return
        # An empty pipeline succeeds on start and may release further hosts
        changed = True
        while changed:
            changed = False
            for pipeline in list(self._pipelines.values()):
                if pipeline.status == PipelineStatus.IDLE and self._host_showing(pipeline.host_pane_id):
                    pipeline.start()
                    changed = True
                    if pipeline.status == PipelineStatus.SUCCEEDED:
                        self._after_success(pipeline)

    # === Snapshots ===

    def subscribe(self, callback: SnapshotCallback) -> None:
        """Receive a fresh snapshot after every structural change."""
        self._subscribers.append(callback)

    def _emit(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.snapshot()
        for callback in self._subscribers:
            callback(snapshot)

    def snapshot(self) -> dict[str, Any]:
        """Pure-data view of the whole session for the rendering layer."""
        is_running = self.launcher.is_running
        tabs = []
        for state in self.tabs:
            floating = []
            for overlay in self.overlays.overlays():
                if overlay.pane_id in state.floating:
                    pane_data = pane_to_dict(self.registry.get(overlay.pane_id), is_running)
                    pane_data.update(self.overlays.to_dict(overlay.pane_id))
                    floating.append(pane_data)
            tabs.append(
                {
                    "name": state.name,
                    "cwd": str(state.cwd),
                    "active": state.index == self.active_tab,
                    "layout": node_to_dict(state.root, is_running),
                    "floating": floating,
                }
            )
        return {
            "viewport": self.viewport.to_dict(),
            "cwd": str(self.cwd),
            "active_tab": self.tabs[self.active_tab].name if self.tabs else None,
            "tabs": tabs,
            "suspended": self.launcher.suspended_panes(),
            "pipelines": {p.key: p.to_dict() for p in self._pipelines.values()},
        }
