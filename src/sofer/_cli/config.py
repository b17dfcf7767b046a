"""Configuration loading from pyproject.toml."""

import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from sofer._config import EngineConfig
from sofer._errors import ConfigError

__all__ = ["ConfigError", "SoferConfig", "find_pyproject_toml", "get_config", "load_config"]

_PATH_KEYS = ("outline", "templates", "output")
_LIMIT_KEYS = ("step-limit", "time-limit", "mutation-round-limit")


@dataclass(slots=True, frozen=True)
class SoferConfig:
    """Configuration loaded from pyproject.toml.

    All relative paths are resolved from the project root (directory containing pyproject.toml).
    """

    outline: Path | None = None
    templates: Path | None = None
    output: Path | None = None
    step_limit: int | None = None
    time_limit: float | None = None
    mutation_round_limit: int | None = None
    project_root: Path | None = None

    def engine_config(
        self,
        *,
        step_limit: int | None = None,
        time_limit: float | None = None,
    ) -> EngineConfig:
        """Build the engine configuration, letting CLI options win over the file."""
        defaults = EngineConfig()
        try:
            return EngineConfig(
                step_limit=_first(step_limit, self.step_limit, defaults.step_limit),
                time_limit=_first(time_limit, self.time_limit, defaults.time_limit),
                mutation_round_limit=_first(self.mutation_round_limit, defaults.mutation_round_limit),
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e


T = TypeVar("T")


def _first(*values: T | None) -> T:
    return next(value for value in values if value is not None)


def find_pyproject_toml(start_dir: Path | None = None) -> Path | None:
    """Find pyproject.toml by walking up from start_dir.

    Args:
        start_dir: Starting directory. Defaults to current working directory.

    Returns:
        Path to pyproject.toml if found, None otherwise.

    """
    if start_dir is None:
        start_dir = Path.cwd()

    current = start_dir.resolve()

    while True:
        candidate = current / "pyproject.toml"
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            # Reached filesystem root
            return None
        current = parent


def _parse_path(section: dict[str, object], key: str, project_root: Path) -> Path | None:
    if key not in section:
        return None
    value = section[key]
    if not isinstance(value, str):
        msg = f"Invalid [tool.sofer].{key}: expected string path"
        raise ConfigError(msg)
    path = Path(value)
    if not path.is_absolute():
        path = project_root / path
    return path


def _parse_limit(section: dict[str, object], key: str) -> int | float | None:
    if key not in section:
        return None
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = f"Invalid [tool.sofer].{key}: expected a number"
        raise ConfigError(msg)
    if key != "time-limit" and not isinstance(value, int):
        msg = f"Invalid [tool.sofer].{key}: expected an integer"
        raise ConfigError(msg)
    return value


def load_config(pyproject_path: Path) -> SoferConfig:
    """Load and validate [tool.sofer] config from pyproject.toml.

    Args:
        pyproject_path: Path to pyproject.toml

    Returns:
        Parsed SoferConfig

    Raises:
        ConfigError: If the configuration is invalid

    """
    project_root = pyproject_path.parent

    with pyproject_path.open("rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            msg = f"Invalid TOML in {pyproject_path}: {e}"
            raise ConfigError(msg) from e

    section = data.get("tool", {}).get("sofer", {})
    if not section:
        return SoferConfig(project_root=project_root)

    unknown = sorted(set(section) - set(_PATH_KEYS) - set(_LIMIT_KEYS))
    if unknown:
        msg = f"Unknown key(s) in [tool.sofer]: {', '.join(unknown)}"
        raise ConfigError(msg)

    step_limit = _parse_limit(section, "step-limit")
    time_limit = _parse_limit(section, "time-limit")
    mutation_round_limit = _parse_limit(section, "mutation-round-limit")

    return SoferConfig(
        outline=_parse_path(section, "outline", project_root),
        templates=_parse_path(section, "templates", project_root),
        output=_parse_path(section, "output", project_root),
        step_limit=None if step_limit is None else int(step_limit),
        time_limit=None if time_limit is None else float(time_limit),
        mutation_round_limit=None if mutation_round_limit is None else int(mutation_round_limit),
        project_root=project_root,
    )


def get_config() -> SoferConfig:
    """Get config from pyproject.toml in current directory or parents.

    Returns:
        SoferConfig (may be empty if no pyproject.toml or no [tool.sofer] section)

    """
    pyproject_path = find_pyproject_toml()
    if pyproject_path is None:
        return SoferConfig()
    return load_config(pyproject_path)
