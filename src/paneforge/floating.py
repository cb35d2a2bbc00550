"""Floating overlay registry: placement, z-order and visibility."""

from dataclasses import dataclass
from typing import Any

from paneforge.description import FloatingPane
from paneforge.errors import UnknownPaneName
from paneforge.geometry import Rect, place_percent_rect
from paneforge.layouts import PaneNode, PaneRegistry
from paneforge.telemetry import get_logger

logger = get_logger(__name__)


@dataclass
class Overlay:
    """Runtime state of one floating pane."""

    pane_id: int
    rect: Rect
    visible: bool


class FloatingOverlayManager:
    """Tracks floating panes above the split tree.

    Later-registered overlays sit above earlier ones. Visibility here is
    independent of whether the pane's process has been started.
    """

    def __init__(self, registry: PaneRegistry, viewport: Rect) -> None:
        self._registry = registry
        self._viewport = viewport
        self._overlays: dict[int, Overlay] = {}
        self._z_order: list[int] = []

    def place(self, definition: FloatingPane) -> Rect:
        """Compute the absolute rectangle for a floating pane definition."""
        return place_percent_rect(
            self._viewport,
            definition.x,
            definition.y,
            definition.width,
            definition.height,
        )

    def register(self, pane: PaneNode) -> Overlay:
        """Register a built floating pane on top of the current stack.

        Suspended panes start hidden.
        """
        overlay = Overlay(pane_id=pane.pane_id, rect=pane.rect, visible=not pane.start_suspended)
        self._overlays[pane.pane_id] = overlay
        self._z_order.append(pane.pane_id)
        return overlay

    def _find(self, name: str) -> Overlay:
        pane = self._registry.lookup(name)
        overlay = self._overlays.get(pane.pane_id)
        if overlay is None:
            raise UnknownPaneName(name)
        return overlay

    def show(self, name: str) -> bool:
        """Make a floating pane visible.

        Args:
            name: Floating pane name.

        Returns:
            True if visibility changed.

        Raises:
            UnknownPaneName: If no open floating pane has that name.
        """
        overlay = self._find(name)
        if overlay.visible:
            return False
        overlay.visible = True
        logger.info("Floating pane %r shown", name)
        return True

    def hide(self, name: str) -> bool:
        """Hide a floating pane. Its process, if any, keeps running.

        Returns:
            True if visibility changed.

        Raises:
            UnknownPaneName: If no open floating pane has that name.
        """
        overlay = self._find(name)
        if not overlay.visible:
            return False
        overlay.visible = False
        logger.info("Floating pane %r hidden", name)
        return True

    def hide_id(self, pane_id: int) -> bool:
        """Hide an overlay by runtime id; for unnamed floating panes."""
        overlay = self._overlays.get(pane_id)
        if overlay is None or not overlay.visible:
            return False
        overlay.visible = False
        logger.info("Floating pane %d hidden", pane_id)
        return True

    def close(self, name: str) -> Overlay:
        """Destroy a floating pane and drop it from the z-order.

        Raises:
            UnknownPaneName: If no open floating pane has that name.
        """
        overlay = self._find(name)
        del self._overlays[overlay.pane_id]
        self._z_order.remove(overlay.pane_id)
        logger.info("Floating pane %r closed", name)
        return overlay

    def get(self, pane_id: int) -> Overlay | None:
        return self._overlays.get(pane_id)

    def is_visible(self, pane_id: int) -> bool:
        overlay = self._overlays.get(pane_id)
        return overlay is not None and overlay.visible

    def z_index(self, pane_id: int) -> int:
        return self._z_order.index(pane_id)

    def overlays(self) -> list[Overlay]:
        """All open overlays, bottom-most first."""
        return [self._overlays[pane_id] for pane_id in self._z_order]

    def to_dict(self, pane_id: int) -> dict[str, Any]:
        """Snapshot one overlay's placement and visibility."""
        overlay = self._overlays[pane_id]
        return {"rect": overlay.rect.to_dict(), "z": self.z_index(pane_id), "visible": overlay.visible}
