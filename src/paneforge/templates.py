"""Tab template expansion."""

from paneforge.description import LayoutNode, Pane, SplitContainer, TabDefinition, TemplateInsertionPoint
from paneforge.errors import MultipleInsertionPoints
from paneforge.telemetry import get_logger

logger = get_logger(__name__)

# Child indexes from the root down to a node
NodePath = tuple[int, ...]


def find_insertion_points(node: LayoutNode, path: NodePath = ()) -> list[NodePath]:
    """Find every children marker, depth-first.

    Args:
        node: Root of the tree to search.
        path: Path of ``node`` itself.

    Returns:
        Paths of all markers in depth-first order.
    """
    if isinstance(node, TemplateInsertionPoint):
        return [path]
    if isinstance(node, SplitContainer):
        found: list[NodePath] = []
        for index, child in enumerate(node.children):
            found.extend(find_insertion_points(child, (*path, index)))
        return found
    return []


def node_at(node: LayoutNode, path: NodePath) -> LayoutNode:
    """Return the node at ``path``.

    Raises:
        IndexError: If the path does not exist in the tree.
    """
    current = node
    for index in path:
        if not isinstance(current, SplitContainer):
            raise IndexError(f"No child {index} under a {current.type} node")
        current = current.children[index]
    return current


def expand(template: LayoutNode, tab_content: LayoutNode) -> LayoutNode:
    """Substitute tab content at the template's children marker.

    Returns a new tree; neither input is modified. Content without its own size
    takes the marker's size. A template without a marker is returned as-is and
    the tab content is dropped with a warning.

    Args:
        template: The tab template.
        tab_content: The tab's own layout.

    Returns:
        The expanded tree.

    Raises:
        MultipleInsertionPoints: If the template has more than one marker.
    """
    points = find_insertion_points(template)
    if len(points) > 1:
        raise MultipleInsertionPoints(len(points))
    if not points:
        logger.warning("Tab template has no children marker; tab content is dropped")
        return template.model_copy(deep=True)

    path = points[0]
    marker = node_at(template, path)
    content = tab_content.model_copy(deep=True)
    if content.size.is_fill and not marker.size.is_fill:
        content.size = marker.size

    if not path:
        return content

    expanded = template.model_copy(deep=True)
    parent = node_at(expanded, path[:-1])
    if not isinstance(parent, SplitContainer):
        raise TypeError(f"Children marker parent must be a split, got {type(parent).__name__}")
    parent.children[path[-1]] = content
    return expanded


def expand_tab(template: LayoutNode | None, tab: TabDefinition) -> LayoutNode:
    """Produce a tab's concrete layout, applying the template if there is one.

    A tab without content gets a single default pane.
    """
    content: LayoutNode = tab.root if tab.root is not None else Pane()
    if template is None:
        if find_insertion_points(content):
            logger.warning("Tab %r contains a children marker outside a template; it is left empty", tab.name)
        return content.model_copy(deep=True)
    return expand(template, content)
