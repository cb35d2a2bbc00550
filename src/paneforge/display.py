"""Rich rendering of session snapshots and launch requests."""

from typing import Any

from rich.console import Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from paneforge.launcher import LaunchRequest, SpawnRequest

STATUS_STYLES = {
    "idle": "dim",
    "running": "bold cyan",
    "succeeded": "bold green",
    "failed": "bold red",
    "pending": "dim",
}


def _rect_label(rect: dict[str, int]) -> str:
    return f"{rect['cols']}x{rect['rows']}+{rect['x']}+{rect['y']}"


def _pane_text(pane: dict[str, Any], visible: bool | None = None) -> Text:
    text = Text()
    text.append(pane["name"], style="bold")
    text.append(f" [{pane['body']}]", style="dim")
    text.append(f" {_rect_label(pane['rect'])}", style="cyan")
    if pane["body"] == "command" and pane.get("program"):
        text.append(f" {' '.join([pane['program'], *pane.get('args', [])])}", style="green")
    elif pane["body"] == "editor":
        text.append(f" {pane['path']}", style="green")
    elif pane["body"] == "plugin":
        text.append(f" {pane['location']}", style="magenta")
    if not pane["running"]:
        text.append(" (suspended)", style="yellow")
    if visible is False:
        text.append(" (hidden)", style="dim")
    return text


def _add_node(tree: Tree, node: dict[str, Any]) -> None:
    if node["kind"] == "pane":
        tree.add(_pane_text(node))
    elif node["kind"] == "stack":
        branch = tree.add(Text(f"stack #{node['container_id']} {_rect_label(node['rect'])}", style="blue"))
        for child in node["children"]:
            branch.add(_pane_text(child, visible=child["pane_id"] == node["visible"]))
    else:
        label = f"split {node['direction']} #{node['container_id']} {_rect_label(node['rect'])}"
        branch = tree.add(Text(label, style="blue"))
        for child in node["children"]:
            _add_node(branch, child)


def build_tab_tree(tab: dict[str, Any]) -> Tree:
    """Build a tree of one tab's panes, floating panes included.

    Args:
        tab: One entry of a snapshot's ``tabs`` list.

    Returns:
        Rich tree rooted at the tab.
    """
    title = Text(tab["name"], style="bold magenta" if tab["active"] else "bold")
    if tab["active"]:
        title.append(" (active)", style="dim")
    tree = Tree(title)
    _add_node(tree, tab["layout"])
    if tab["floating"]:
        floating = tree.add(Text("floating", style="blue"))
        for pane in tab["floating"]:
            floating.add(_pane_text(pane, visible=pane["visible"]))
    return tree


def build_pipeline_panel(key: str, pipeline: dict[str, Any]) -> Panel:
    """Build a panel listing a pipeline's steps and their outcomes."""
    table = Table(show_header=False, show_edge=False, box=None, padding=(0, 1))
    table.add_column("#", justify="right", style="dim")
    table.add_column("Status", no_wrap=True)
    table.add_column("Command")
    table.add_column("Exit", justify="right")

    for index, step in enumerate(pipeline["steps"], start=1):
        exit_code = "" if step["exit_code"] is None else str(step["exit_code"])
        table.add_row(
            str(index),
            Text(step["status"], style=STATUS_STYLES.get(step["status"], "")),
            Text(step["command"]),
            exit_code,
        )

    subtitle = Text(pipeline["state"], style=STATUS_STYLES.get(pipeline["status"], ""))
    if pipeline["paused"]:
        subtitle.append(" paused", style="yellow")
    if pipeline["targets"]:
        subtitle.append(f" -> {', '.join(pipeline['targets'])}", style="dim")

    parts: list[Table | Text] = [table]
    if pipeline["error"]:
        parts.append(Text(pipeline["error"], style="red"))
    border = "red" if pipeline["status"] == "failed" else "green"
    return Panel(Group(*parts), title=f"Pipeline {key}", subtitle=subtitle, border_style=border)


def build_requests_table(requests: list[LaunchRequest]) -> Table:
    """Build a table of the requests sent to the process layer, in order."""
    table = Table(title="Launch Requests")
    table.add_column("Pane", style="cyan")
    table.add_column("Action")
    table.add_column("Target")
    table.add_column("Cwd", style="dim")

    for request in requests:
        if isinstance(request, SpawnRequest):
            action = "spawn" if request.start_immediately else "spawn (held)"
            table.add_row(request.name, action, request.command_line, str(request.cwd))
        else:
            table.add_row(request.name, "load", request.location, "")
    return table


def build_snapshot_view(snapshot: dict[str, Any]) -> Group:
    """Render a whole session snapshot: tab trees then pipeline panels."""
    parts: list[Tree | Panel | Text] = [build_tab_tree(tab) for tab in snapshot["tabs"]]
    if snapshot["suspended"]:
        parts.append(Text(f"Suspended: {', '.join(snapshot['suspended'])}", style="yellow"))
    parts.extend(build_pipeline_panel(key, data) for key, data in snapshot["pipelines"].items())
    return Group(*parts)
