"""Size arithmetic: turning sibling size specifiers into concrete cell extents."""

import math
from dataclasses import dataclass
from enum import StrEnum

from paneforge.errors import LayoutOverconstrained


class SplitDirection(StrEnum):
    """Direction of a split container."""

    VERTICAL = "vertical"  # side-by-side, divides width
    HORIZONTAL = "horizontal"  # top/bottom, divides height


class SizeKind(StrEnum):
    """How a sibling asks for space."""

    FIXED = "fixed"
    PERCENT = "percent"
    FILL = "fill"


@dataclass(frozen=True)
class SizeSpec:
    """A size request: fixed cells, a percentage of the parent, or fill."""

    kind: SizeKind = SizeKind.FILL
    value: float = 0

    @classmethod
    def parse(cls, raw: "int | str | SizeSpec | None") -> "SizeSpec":
        """Parse a size as written in a layout description.

        ``30`` and ``"30"`` are fixed cell counts, ``"30%"`` is a percentage,
        ``None`` or ``"fill"`` means fill.

        Args:
            raw: The raw size value.

        Returns:
            The parsed SizeSpec.

        Raises:
            ValueError: If the value is malformed or out of range.
        """
        if raw is None:
            return cls()
        if isinstance(raw, SizeSpec):
            return raw
        if isinstance(raw, bool):
            raise ValueError(f"Invalid size: {raw!r}")
        if isinstance(raw, int):
            if raw < 0:
                raise ValueError(f"Size cannot be negative: {raw}")
            return cls(SizeKind.FIXED, raw)

        text = str(raw).strip()
        if text.lower() == "fill":
            return cls()
        if text.endswith("%"):
            try:
                percent = float(text[:-1])
            except ValueError:
                raise ValueError(f"Invalid percentage size: {raw!r}") from None
            if not 0 <= percent <= 100:
                raise ValueError(f"Percentage size must be between 0 and 100: {raw!r}")
            return cls(SizeKind.PERCENT, percent)
        if text.isdigit():
            return cls(SizeKind.FIXED, int(text))
        raise ValueError(f"Invalid size: {raw!r}")

    @property
    def is_fill(self) -> bool:
        return self.kind == SizeKind.FILL

    def __str__(self) -> str:
        if self.kind == SizeKind.FIXED:
            return str(int(self.value))
        if self.kind == SizeKind.PERCENT:
            return f"{self.value:g}%"
        return "fill"


FILL = SizeSpec()


@dataclass(frozen=True)
class Rect:
    """A rectangle of terminal cells."""

    x: int
    y: int
    cols: int
    rows: int

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary for snapshots."""
        return {"x": self.x, "y": self.y, "cols": self.cols, "rows": self.rows}


def resolve_extents(available: int, sizes: list[SizeSpec]) -> list[int]:
    """Resolve sibling size specifiers into extents summing to ``available``.

    Fixed and percentage requests are honored first (percentages round down).
    The remainder is shared evenly among fill slots, leftover cells going one
    each to the first fill slots. Without fill slots the remainder goes to the
    last sibling.

    Args:
        available: The extent to divide.
        sizes: One specifier per sibling, in order.

    Returns:
        One extent per sibling.

    Raises:
        LayoutOverconstrained: If fixed and percentage requests exceed ``available``.
        ValueError: If ``available`` is negative.
    """
    if available < 0:
        raise ValueError(f"Available extent cannot be negative: {available}")

    extents: list[int] = []
    fill_slots: list[int] = []
    used = 0
    for index, size in enumerate(sizes):
        if size.kind == SizeKind.FIXED:
            extent = int(size.value)
        elif size.kind == SizeKind.PERCENT:
            extent = math.floor(available * size.value / 100)
        else:
            fill_slots.append(index)
            extent = 0
        extents.append(extent)
        used += extent

    if used > available:
        raise LayoutOverconstrained(available, used)

    remainder = available - used
    if fill_slots:
        share, leftover = divmod(remainder, len(fill_slots))
        for position, index in enumerate(fill_slots):
            extents[index] = share + (1 if position < leftover else 0)
    elif extents:
        extents[-1] += remainder

    return extents


def split_rect(rect: Rect, direction: SplitDirection, sizes: list[SizeSpec]) -> list[Rect]:
    """Divide a rectangle among children along the split direction.

    Args:
        rect: The parent rectangle.
        direction: VERTICAL divides width, HORIZONTAL divides height.
        sizes: One specifier per child.

    Returns:
        One rectangle per child, in order, tiling ``rect`` exactly.
    """
    if direction == SplitDirection.VERTICAL:
        widths = resolve_extents(rect.cols, sizes)
        rects = []
        x = rect.x
        for width in widths:
            rects.append(Rect(x, rect.y, width, rect.rows))
            x += width
        return rects

    heights = resolve_extents(rect.rows, sizes)
    rects = []
    y = rect.y
    for height in heights:
        rects.append(Rect(rect.x, y, rect.cols, height))
        y += height
    return rects


def place_percent_rect(viewport: Rect, x: float, y: float, width: float, height: float) -> Rect:
    """Place a rectangle given in percentages of the viewport.

    The result is clipped to the viewport and is at least one cell in each dimension.

    Args:
        viewport: The full viewport rectangle.
        x: Left offset, percent of viewport width.
        y: Top offset, percent of viewport height.
        width: Width, percent of viewport width.
        height: Height, percent of viewport height.

    Returns:
        The placed rectangle in absolute cells.
    """
    left = min(math.floor(viewport.cols * x / 100), max(viewport.cols - 1, 0))
    top = min(math.floor(viewport.rows * y / 100), max(viewport.rows - 1, 0))
    cols = max(1, min(math.floor(viewport.cols * width / 100), viewport.cols - left))
    rows = max(1, min(math.floor(viewport.rows * height / 100), viewport.rows - top))
    return Rect(viewport.x + left, viewport.y + top, cols, rows)
