"""Tests for paneforge.floating module."""

from pathlib import Path

import pytest

from paneforge.description import FloatingPane
from paneforge.errors import UnknownPaneName
from paneforge.floating import FloatingOverlayManager
from paneforge.geometry import Rect
from paneforge.layouts import PaneNode, PaneRegistry, PaneTreeBuilder

VIEWPORT = Rect(0, 0, 100, 50)


@pytest.fixture
def registry() -> PaneRegistry:
    return PaneRegistry()


@pytest.fixture
def manager(registry: PaneRegistry) -> FloatingOverlayManager:
    return FloatingOverlayManager(registry, VIEWPORT)


def add_floating(
    manager: FloatingOverlayManager,
    registry: PaneRegistry,
    name: str,
    suspended: bool = False,
    builder: PaneTreeBuilder | None = None,
) -> PaneNode:
    definition = FloatingPane(name=name, start_suspended=suspended)
    builder = builder or PaneTreeBuilder(registry)
    pane = builder.build_pane(definition, manager.place(definition), Path("/work"), "t", floating=True)
    manager.register(pane)
    return pane


class TestPlacement:
    """Tests for overlay placement."""

    def test_place_from_percentages(self, manager: FloatingOverlayManager) -> None:
        """Percent coordinates should map onto the viewport."""
        rect = manager.place(FloatingPane(x=10, y=20, width=80, height=50))
        assert rect == Rect(10, 10, 80, 25)


class TestVisibility:
    """Tests for show, hide and close."""

    def test_registered_visible(self, manager: FloatingOverlayManager, registry: PaneRegistry) -> None:
        """A normal floating pane should start visible."""
        pane = add_floating(manager, registry, "Logs")
        assert manager.is_visible(pane.pane_id)

    def test_suspended_starts_hidden(self, manager: FloatingOverlayManager, registry: PaneRegistry) -> None:
        """A suspended floating pane should start hidden."""
        pane = add_floating(manager, registry, "Later", suspended=True)
        assert not manager.is_visible(pane.pane_id)

    def test_show_hide_report_changes(self, manager: FloatingOverlayManager, registry: PaneRegistry) -> None:
        """show and hide should report whether visibility changed."""
        pane = add_floating(manager, registry, "Logs")
        assert manager.hide("Logs") is True
        assert manager.hide("Logs") is False
        assert not manager.is_visible(pane.pane_id)
        assert manager.show("Logs") is True
        assert manager.show("Logs") is False

    def test_hide_by_id(self, manager: FloatingOverlayManager, registry: PaneRegistry) -> None:
        """Unnamed overlays should be hideable by id."""
        pane = add_floating(manager, registry, "")
        assert manager.hide_id(pane.pane_id) is True
        assert manager.hide_id(pane.pane_id) is False

    def test_close_removes_overlay(self, manager: FloatingOverlayManager, registry: PaneRegistry) -> None:
        """Closing should drop the overlay; later operations raise."""
        pane = add_floating(manager, registry, "Logs")
        overlay = manager.close("Logs")
        assert overlay.pane_id == pane.pane_id
        assert manager.get(pane.pane_id) is None
        with pytest.raises(UnknownPaneName):
            manager.show("Logs")

    def test_tiled_pane_is_not_an_overlay(self, manager: FloatingOverlayManager, registry: PaneRegistry) -> None:
        """Names of tiled panes should be rejected."""
        PaneTreeBuilder(registry).build_pane(FloatingPane(name="Tiled"), VIEWPORT, Path("/work"), "t")
        with pytest.raises(UnknownPaneName):
            manager.hide("Tiled")

    def test_unknown_name(self, manager: FloatingOverlayManager) -> None:
        """Unknown names should raise UnknownPaneName."""
        with pytest.raises(UnknownPaneName):
            manager.show("ghost")


class TestZOrder:
    """Tests for overlay stacking order."""

    def test_later_registered_on_top(self, manager: FloatingOverlayManager, registry: PaneRegistry) -> None:
        """Overlays should stack in registration order."""
        builder = PaneTreeBuilder(registry)
        first = add_floating(manager, registry, "first", builder=builder)
        second = add_floating(manager, registry, "second", builder=builder)
        assert manager.z_index(first.pane_id) == 0
        assert manager.z_index(second.pane_id) == 1
        assert [o.pane_id for o in manager.overlays()] == [first.pane_id, second.pane_id]

        manager.close("first")
        assert manager.z_index(second.pane_id) == 0

    def test_to_dict(self, manager: FloatingOverlayManager, registry: PaneRegistry) -> None:
        """Snapshots should carry rect, z and visibility."""
        pane = add_floating(manager, registry, "Logs")
        assert manager.to_dict(pane.pane_id) == {
            "rect": {"x": 25, "y": 12, "cols": 50, "rows": 25},
            "z": 0,
            "visible": True,
        }
