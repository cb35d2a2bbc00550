"""Pane tree construction: description nodes to a runtime tree with concrete geometry."""

import itertools
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from paneforge.description import (
    EditorTarget,
    LayoutNode,
    Pane,
    PaneBody,
    PluginHost,
    ShellCommand,
    SplitContainer,
    StackContainer,
    TemplateInsertionPoint,
)
from paneforge.errors import DuplicatePaneName, UnknownPaneName
from paneforge.geometry import Rect, SplitDirection, split_rect
from paneforge.telemetry import get_logger

logger = get_logger(__name__)


class PaneKind(StrEnum):
    """What a leaf pane hosts."""

    COMMAND = "command"
    EDITOR = "editor"
    PLUGIN = "plugin"


@dataclass
class PaneNode:
    """A built leaf pane. ``cwd`` is resolved once at build time."""

    pane_id: int
    name: str
    body: PaneBody
    rect: Rect
    cwd: Path
    tab: str
    borderless: bool = False
    start_suspended: bool = False
    floating: bool = False

    @property
    def kind(self) -> PaneKind:
        if isinstance(self.body, EditorTarget):
            return PaneKind.EDITOR
        if isinstance(self.body, PluginHost):
            return PaneKind.PLUGIN
        return PaneKind.COMMAND

    @property
    def label(self) -> str:
        """Display label: the name, or a generated one for unnamed panes."""
        return self.name or f"pane-{self.pane_id}"


@dataclass
class StackNode:
    """Panes sharing one rectangle; ``visible_index`` selects the shown one."""

    container_id: int
    rect: Rect
    children: list[PaneNode] = field(default_factory=list)
    visible_index: int = -1

    @property
    def visible(self) -> PaneNode | None:
        if not self.children:
            return None
        return self.children[self.visible_index]

    def switch_visible(self, pane_name: str) -> PaneNode:
        """Make the named child the visible one.

        Args:
            pane_name: Name of a child pane.

        Returns:
            The now-visible pane.

        Raises:
            UnknownPaneName: If no child has that name.
        """
        for index, child in enumerate(self.children):
            if child.name and child.name == pane_name:
                self.visible_index = index
                return child
        raise UnknownPaneName(pane_name)


@dataclass
class SplitNode:
    """Children tiled along ``direction``."""

    container_id: int
    direction: SplitDirection
    rect: Rect
    children: list["RuntimeNode"] = field(default_factory=list)


RuntimeNode = SplitNode | StackNode | PaneNode


class PaneRegistry:
    """Session-wide arena of built panes, indexed by runtime id and by name.

    Everything outside the session refers to panes through this registry, by
    name or id, never by holding its own copy.
    """

    def __init__(self) -> None:
        self._panes: dict[int, PaneNode] = {}
        self._by_name: dict[str, int] = {}
        self._stacks: dict[int, StackNode] = {}

    def register(self, pane: PaneNode) -> None:
        """Add a pane.

        Raises:
            DuplicatePaneName: If a pane with the same name exists.
        """
        if pane.name:
            if pane.name in self._by_name:
                raise DuplicatePaneName(pane.name)
            self._by_name[pane.name] = pane.pane_id
        self._panes[pane.pane_id] = pane

    def register_stack(self, stack: StackNode) -> None:
        self._stacks[stack.container_id] = stack

    def get(self, pane_id: int) -> PaneNode:
        return self._panes[pane_id]

    def lookup(self, name: str) -> PaneNode:
        """Find a pane by name.

        Raises:
            UnknownPaneName: If no pane has that name.
        """
        pane_id = self._by_name.get(name)
        if pane_id is None:
            raise UnknownPaneName(name)
        return self._panes[pane_id]

    def stack(self, container_id: int) -> StackNode:
        """Find a stack container by id.

        Raises:
            KeyError: If there is no such stack.
        """
        return self._stacks[container_id]

    def names(self) -> list[str]:
        return list(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[PaneNode]:
        return iter(self._panes.values())

    def __len__(self) -> int:
        return len(self._panes)


def resolve_cwd(base: Path, override: str | None) -> Path:
    """Resolve a cwd override against its parent's cwd.

    Args:
        base: The inherited directory.
        override: An explicit directory, absolute or relative to ``base``.

    Returns:
        The effective directory.
    """
    if not override:
        return base
    path = Path(override).expanduser()
    if path.is_absolute():
        return path
    return base / path


class PaneTreeBuilder:
    """Builds runtime pane trees and registers every pane in the registry.

    Ids come from one counter shared by panes and containers, so every runtime
    node in a session has a distinct id.
    """

    def __init__(self, registry: PaneRegistry) -> None:
        self.registry = registry
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def build_tab(self, node: LayoutNode, rect: Rect, cwd: Path, tab_name: str) -> RuntimeNode:
        """Build the runtime tree for one tab's expanded layout.

        Args:
            node: The concrete (template-expanded) layout.
            rect: The tab's drawable area.
            cwd: The tab's effective working directory.
            tab_name: Tab name recorded on each pane.

        Returns:
            The runtime tree root.
        """
        if isinstance(node, TemplateInsertionPoint):
            logger.warning("Tab %r consists only of a children marker; it is left empty", tab_name)
            return SplitNode(self.next_id(), SplitDirection.HORIZONTAL, rect)
        return self._build(node, rect, cwd, tab_name)

    def build_pane(self, pane: Pane, rect: Rect, cwd: Path, tab_name: str, floating: bool = False) -> PaneNode:
        """Build and register one leaf pane.

        Raises:
            DuplicatePaneName: If the name is already taken in this session.
        """
        body = pane.body
        pane_cwd = resolve_cwd(cwd, body.cwd) if isinstance(body, ShellCommand) else cwd
        node = PaneNode(
            pane_id=self.next_id(),
            name=pane.name,
            body=body,
            rect=rect,
            cwd=pane_cwd,
            tab=tab_name,
            borderless=pane.borderless,
            start_suspended=pane.start_suspended,
            floating=floating,
        )
        self.registry.register(node)
        return node

    def _build(self, node: LayoutNode, rect: Rect, cwd: Path, tab_name: str) -> RuntimeNode:
        if isinstance(node, Pane):
            return self.build_pane(node, rect, cwd, tab_name)
        if isinstance(node, StackContainer):
            return self._build_stack(node, rect, cwd, tab_name)
        if isinstance(node, SplitContainer):
            return self._build_split(node, rect, cwd, tab_name)
        raise TypeError(f"Cannot build a {type(node).__name__} in tab {tab_name!r}")

    def _build_split(self, node: SplitContainer, rect: Rect, cwd: Path, tab_name: str) -> SplitNode:
        children = [c for c in node.children if not isinstance(c, TemplateInsertionPoint)]
        if len(children) != len(node.children):
            logger.warning("Ignoring children marker outside a template in tab %r", tab_name)

        split = SplitNode(self.next_id(), node.split_direction, rect)
        child_rects = split_rect(rect, node.split_direction, [c.size for c in children])
        for child, child_rect in zip(children, child_rects, strict=True):
            split.children.append(self._build(child, child_rect, cwd, tab_name))
        return split

    def _build_stack(self, node: StackContainer, rect: Rect, cwd: Path, tab_name: str) -> StackNode:
        stack = StackNode(self.next_id(), rect)
        expanded: list[int] = []
        for index, child in enumerate(node.children):
            stack.children.append(self.build_pane(child, rect, cwd, tab_name))
            if child.expanded:
                expanded.append(index)

        if len(expanded) > 1:
            logger.warning("Stack in tab %r has %d expanded panes; showing the first", tab_name, len(expanded))
        if expanded:
            stack.visible_index = expanded[0]
        elif stack.children:
            stack.visible_index = len(stack.children) - 1

        self.registry.register_stack(stack)
        return stack


def iter_panes(node: RuntimeNode) -> Iterator[PaneNode]:
    """Yield every leaf pane of a runtime tree in layout order."""
    if isinstance(node, PaneNode):
        yield node
    else:
        for child in node.children:
            yield from iter_panes(child)


def pane_to_dict(pane: PaneNode, is_running: Callable[[int], bool]) -> dict[str, Any]:
    """Snapshot one pane."""
    data: dict[str, Any] = {
        "kind": "pane",
        "pane_id": pane.pane_id,
        "name": pane.label,
        "body": pane.kind.value,
        "rect": pane.rect.to_dict(),
        "cwd": str(pane.cwd),
        "borderless": pane.borderless,
        "running": is_running(pane.pane_id),
    }
    if isinstance(pane.body, ShellCommand):
        data["program"] = pane.body.program
        data["args"] = list(pane.body.args)
    elif isinstance(pane.body, EditorTarget):
        data["path"] = pane.body.path
    elif isinstance(pane.body, PluginHost):
        data["location"] = pane.body.location
    return data


def node_to_dict(node: RuntimeNode, is_running: Callable[[int], bool]) -> dict[str, Any]:
    """Snapshot a runtime tree as plain data for the rendering layer.

    Args:
        node: Tree root.
        is_running: Reports whether a pane's process has been started.

    Returns:
        Nested dictionaries mirroring the tree.
    """
    if isinstance(node, PaneNode):
        return pane_to_dict(node, is_running)
    if isinstance(node, StackNode):
        visible = node.visible
        return {
            "kind": "stack",
            "container_id": node.container_id,
            "rect": node.rect.to_dict(),
            "visible": visible.pane_id if visible else None,
            "children": [pane_to_dict(c, is_running) for c in node.children],
        }
    return {
        "kind": "split",
        "container_id": node.container_id,
        "direction": node.direction.value,
        "rect": node.rect.to_dict(),
        "children": [node_to_dict(c, is_running) for c in node.children],
    }
