"""Layout description data model and YAML loading.

A description is a tree of tagged nodes (``type: split | stack | pane | children``)
validated with pydantic. Only structure is checked here; semantic rules (unique
names, a single insertion point, resolvable geometry) belong to the engine.
"""

import shlex
from pathlib import Path
from typing import Annotated, Any, Literal, cast

import yaml
from pydantic import (
    BaseModel,
    Discriminator,
    Field,
    PlainSerializer,
    PlainValidator,
    Tag,
    ValidationError,
    field_validator,
    model_validator,
)

from paneforge.errors import DescriptionError
from paneforge.geometry import FILL, SizeSpec, SplitDirection


def _serialize_size(size: SizeSpec) -> str | None:
    return None if size.is_fill else str(size)


Size = Annotated[SizeSpec, PlainValidator(SizeSpec.parse), PlainSerializer(_serialize_size)]


def _parse_percent(value: object) -> float:
    """Accept ``40``, ``40.5`` or ``"40%"`` and return the number."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid percentage: {value!r}")
    if isinstance(value, int | float):
        percent = float(value)
    else:
        text = str(value).strip().removesuffix("%")
        try:
            percent = float(text)
        except ValueError:
            raise ValueError(f"Invalid percentage: {value!r}") from None
    if not 0 <= percent <= 100:
        raise ValueError(f"Percentage must be between 0 and 100: {value!r}")
    return percent


Percent = Annotated[float, PlainValidator(_parse_percent)]


class ShellCommand(BaseModel):
    """Run a program in the pane. ``program=None`` means the default shell."""

    program: str | None = None
    args: list[str] = []
    cwd: str | None = None


class EditorTarget(BaseModel):
    """Open a file in the configured editor."""

    path: str


class PluginHost(BaseModel):
    """Load a plugin with a string-to-string configuration."""

    location: str
    configuration: dict[str, str] = {}

    @field_validator("configuration", mode="before")
    @classmethod
    def _stringify_values(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        result: dict[str, str] = {}
        for key, item in cast(dict[object, object], value).items():
            if isinstance(item, bool):
                result[str(key)] = "true" if item else "false"
            else:
                result[str(key)] = str(item)
        return result


PaneBody = ShellCommand | EditorTarget | PluginHost


class Pane(BaseModel):
    """A leaf pane."""

    type: Literal["pane"] = "pane"
    name: str = ""
    command: ShellCommand | None = None
    edit: EditorTarget | None = None
    plugin: PluginHost | None = None
    size: Size = FILL
    borderless: bool = False
    start_suspended: bool = False
    expanded: bool = False  # only meaningful inside a stack

    @field_validator("command", mode="before")
    @classmethod
    def _command_shorthand(cls, value: object) -> object:
        if isinstance(value, str):
            parts = shlex.split(value)
            if not parts:
                return {}
            return {"program": parts[0], "args": parts[1:]}
        return value

    @field_validator("edit", mode="before")
    @classmethod
    def _edit_shorthand(cls, value: object) -> object:
        if isinstance(value, str):
            return {"path": value}
        return value

    @field_validator("plugin", mode="before")
    @classmethod
    def _plugin_shorthand(cls, value: object) -> object:
        if isinstance(value, str):
            return {"location": value}
        return value

    @model_validator(mode="after")
    def _single_body(self) -> "Pane":
        bodies = [b for b in (self.command, self.edit, self.plugin) if b is not None]
        if len(bodies) > 1:
            raise ValueError("A pane can have only one of 'command', 'edit' or 'plugin'")
        return self

    @property
    def body(self) -> PaneBody:
        """The pane body; a bare pane runs the default shell."""
        return self.command or self.edit or self.plugin or ShellCommand()


class TemplateInsertionPoint(BaseModel):
    """Marks where a tab's own content goes inside a tab template."""

    type: Literal["children"] = "children"
    size: Size = FILL


class StackContainer(BaseModel):
    """Panes sharing one rectangle, one visible at a time."""

    type: Literal["stack"] = "stack"
    size: Size = FILL
    children: list[Pane] = []


class SplitContainer(BaseModel):
    """Children laid out along one axis."""

    type: Literal["split"] = "split"
    split_direction: SplitDirection = SplitDirection.HORIZONTAL
    size: Size = FILL
    children: list["LayoutNode"] = []


def _node_kind(value: Any) -> str:
    """Discriminate node variants, inferring the tag when ``type`` is omitted."""
    if isinstance(value, dict):
        data = cast(dict[str, Any], value)
        kind = data.get("type")
        if kind:
            return str(kind)
        return "split" if "children" in data else "pane"
    return str(getattr(value, "type", "pane"))


LayoutNode = Annotated[
    Annotated[SplitContainer, Tag("split")]
    | Annotated[StackContainer, Tag("stack")]
    | Annotated[Pane, Tag("pane")]
    | Annotated[TemplateInsertionPoint, Tag("children")],
    Discriminator(_node_kind),
]

SplitContainer.model_rebuild()


class FloatingPane(Pane):
    """A pane placed by percentage-of-viewport coordinates above the split tree."""

    x: Percent = 25.0
    y: Percent = 25.0
    width: Percent = 50.0
    height: Percent = 50.0


class TabDefinition(BaseModel):
    """One tab of the session."""

    name: str = ""
    cwd: str | None = None
    focus: bool = False
    root: LayoutNode | None = None
    floating_panes: list[FloatingPane] = []


class LayoutDescription(BaseModel):
    """Top-level layout description."""

    cwd: str | None = None
    default_tab_template: LayoutNode | None = None
    tabs: list[TabDefinition] = Field(default_factory=lambda: [TabDefinition()])


def parse_layout(data: object, source: str = "<layout>") -> LayoutDescription:
    """Validate raw description data.

    Args:
        data: Parsed YAML data.
        source: Label for error messages.

    Returns:
        The validated description.

    Raises:
        DescriptionError: If the data does not match the model.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise DescriptionError(f"{source}: layout must be a mapping, got {type(data).__name__}")
    try:
        return LayoutDescription.model_validate(data)
    except ValidationError as e:
        raise DescriptionError(f"{source}: invalid layout description\n{e}") from e


def load_layout(path: Path) -> LayoutDescription:
    """Load and validate a layout description from a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        The validated description.

    Raises:
        DescriptionError: If the file cannot be read, parsed or validated.
    """
    try:
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise DescriptionError(f"{path}: cannot read layout: {e}") from e
    except yaml.YAMLError as e:
        raise DescriptionError(f"{path}: YAML parse error: {e}") from e
    return parse_layout(raw, source=str(path))
