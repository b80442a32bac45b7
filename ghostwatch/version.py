"""Single source of truth for the application version.

Prefers the installed distribution metadata; falls back to reading
pyproject.toml with tomllib when running from a source checkout.
"""

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def get_version() -> str:
    """Return the version string of the ghostwatch distribution."""
    try:
        return version("ghostwatch")
    except PackageNotFoundError:
        pyproject_path = _PROJECT_ROOT / "pyproject.toml"
        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]


__version__: str = get_version()
