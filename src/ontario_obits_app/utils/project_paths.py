#!filepath: src/ontario_obits_app/utils/project_paths.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# pyproject.toml sits beside configs/ in a checkout and in an editable install.
ROOT_MARKER = "pyproject.toml"


@dataclass(frozen=True, slots=True)
class ProjectPaths:
    """Where the obituary pipeline keeps its configs, prompts and database.

    Paths written in `configs/*.yaml` (the db file, the sources catalog)
    are relative to `root`, so cron and the CLI agree no matter which
    directory they start in.
    """

    root: Path

    @property
    def configs_dir(self) -> Path:
        return self.root / "configs"

    @property
    def prompts_dir(self) -> Path:
        return self.configs_dir / "prompts"

    @classmethod
    def discover(cls, start: Optional[Path] = None) -> ProjectPaths:
        """Walk up from `start` (default: this file) to the first directory holding pyproject.toml.

        Falls back to the working directory when no marker is found.
        """
        here = (start or Path(__file__)).resolve()
        for candidate in (here, *here.parents):
            if (candidate / ROOT_MARKER).is_file():
                return cls(root=candidate)
        return cls(root=Path.cwd().resolve())

    def resolve_relative(self, value: str | Path) -> Path:
        """Absolute form of a config path value, with `~` expanded."""
        p = Path(value).expanduser()
        return p.resolve() if p.is_absolute() else (self.root / p).resolve()
