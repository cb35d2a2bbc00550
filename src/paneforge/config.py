"""Engine settings, read from layered YAML files.

Three layers are merged, later ones winning key by key:

- the user file, ``$XDG_CONFIG_HOME/paneforge/config.yaml``
- ``.paneforge.yaml`` in the project directory, shared with the team
- ``.paneforge.yaml.local`` in the project directory, personal

A project layer that sets ``ignore_parent_configs`` drops the user layer.
Invalid values never abort loading: each becomes a ``ConfigWarning`` and the
offending key falls back to its default.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from paneforge.xdg_paths import get_config_file_path

PROJECT_CONFIG_NAME = ".paneforge.yaml"
LOCAL_CONFIG_NAME = ".paneforge.yaml.local"


class LogLevel(StrEnum):
    """Accepted log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class ConfigWarning:
    """A problem found while reading one config layer."""

    file: str
    field_name: str
    message: str
    value: object = field(default=None, repr=False)


class Config(BaseModel):
    """Engine settings for paneforge."""

    default_shell: str = "bash"  # shell for bare panes and pipeline steps
    editor: str = "vi"  # program for edit panes
    viewport_cols: int = Field(default=120, ge=1)
    viewport_rows: int = Field(default=40, ge=1)
    step_timeout: float = Field(default=0.0, ge=0)  # seconds per pipeline step; 0 = no limit
    log_level: LogLevel = LogLevel.WARNING

    # Only honoured in project layers
    ignore_parent_configs: bool = False


@dataclass
class ConfigLayer:
    """One config file and what was read from it."""

    path: Path
    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[ConfigWarning] = field(default_factory=list)

    @classmethod
    def read(cls, path: Path) -> "ConfigLayer":
        """Read a layer. A missing file is an empty layer; unreadable ones carry a warning."""
        layer = cls(path)
        if not path.is_file():
            return layer
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            layer.warnings.append(ConfigWarning(str(path), "(file)", f"YAML parse error: {e}"))
            return layer
        except OSError as e:
            layer.warnings.append(ConfigWarning(str(path), "(file)", f"File read error: {e}"))
            return layer

        if raw is None:
            return layer
        if not isinstance(raw, dict):
            layer.warnings.append(
                ConfigWarning(str(path), "(file)", f"Expected a mapping, got {type(raw).__name__}")
            )
            return layer
        layer.data = raw
        return layer


def merge_settings(*layers: dict[str, Any]) -> dict[str, Any]:
    """Merge settings dicts left to right. Nested mappings merge; anything else is replaced.

    Inputs are left untouched.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[key] = merge_settings(current, value)
            else:
                merged[key] = value
    return merged


def config_layers(config_path: Path | None = None, project_dir: Path | None = None) -> list[ConfigLayer]:
    """Read the layers that apply, lowest precedence first.

    Args:
        config_path: User config file. Defaults to the XDG location.
        project_dir: Directory holding project config files, if any.

    Returns:
        The layers to merge, with the user layer dropped when a project layer
        asks for it.
    """
    user = ConfigLayer.read(config_path or get_config_file_path())
    if project_dir is None:
        return [user]

    project = [ConfigLayer.read(project_dir / name) for name in (PROJECT_CONFIG_NAME, LOCAL_CONFIG_NAME)]
    if any(layer.data.get("ignore_parent_configs") for layer in project):
        return project
    return [user, *project]


def _source_of(key: str, layers: list[ConfigLayer]) -> str:
    for layer in reversed(layers):
        if key in layer.data:
            return str(layer.path)
    return "merged config"


def load_config(
    config_path: Path | None = None,
    project_dir: Path | None = None,
    strict: bool = False,
) -> tuple[Config, list[ConfigWarning]]:
    """Load the effective configuration.

    Args:
        config_path: User config file. Defaults to the XDG location.
        project_dir: Directory holding ``.paneforge.yaml`` files.
        strict: Return plain defaults instead of keeping the valid keys when
            any value is invalid.

    Returns:
        The config and every warning collected from all layers.
    """
    layers = config_layers(config_path, project_dir)
    warnings = [w for layer in layers for w in layer.warnings]
    settings = merge_settings(*(layer.data for layer in layers))

    try:
        return Config.model_validate(settings), warnings
    except ValidationError as e:
        errors = e.errors()

    bad_keys: set[str] = set()
    for error in errors:
        loc = [str(part) for part in error["loc"]]
        if loc:
            bad_keys.add(loc[0])
        warnings.append(
            ConfigWarning(
                file=_source_of(loc[0], layers) if loc else "merged config",
                field_name=".".join(loc),
                message=error["msg"],
                value=error.get("input"),
            )
        )

    if strict:
        return Config(), warnings
    recovered = {key: value for key, value in settings.items() if key not in bad_keys}
    try:
        return Config.model_validate(recovered), warnings
    except ValidationError:
        return Config(), warnings


def display_config_warnings(warnings: list[ConfigWarning], console: Console) -> None:
    """Print config warnings as a table in a yellow panel. Prints nothing for no warnings."""
    if not warnings:
        return

    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("file", style="dim")
    table.add_column("field", style="bold")
    table.add_column("problem", style="yellow")
    for warning in warnings:
        problem = warning.message
        if warning.value is not None:
            problem += f" (got: {warning.value!r})"
        table.add_row(warning.file, warning.field_name, problem)

    console.print(Panel(table, title="[yellow]Config Warnings[/]", border_style="yellow"))


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Write a config as YAML, creating parent directories.

    Args:
        config: Settings to write.
        config_path: Target file. Defaults to the XDG location.
    """
    path = config_path or get_config_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(config.model_dump(mode="json"), default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
