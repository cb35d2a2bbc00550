"""XDG-compliant path management for paneforge."""

from pathlib import Path

from xdg_base_dirs import xdg_config_home

APP_NAME = "paneforge"


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    return xdg_config_home() / APP_NAME


def get_config_file_path() -> Path:
    """Get the config.yaml file path."""
    return get_config_dir() / "config.yaml"


def get_layouts_dir() -> Path:
    """Get the directory searched for named layout files."""
    return get_config_dir() / "layouts"


def ensure_directories() -> None:
    """Create config and layout directories if they don't exist."""
    get_config_dir().mkdir(parents=True, exist_ok=True)
    get_layouts_dir().mkdir(parents=True, exist_ok=True)
