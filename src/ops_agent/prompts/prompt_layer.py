"""Prompt templates loaded from .txt files in the templates/ directory."""

from __future__ import annotations

from pathlib import Path

TEMPLATES_DIR = Path(__file__).parent / "templates"


class PromptLibrary:
    """Template loader with a per-instance cache.

    Templates use ``str.format`` placeholders; literal braces are doubled.
    """

    def __init__(self, templates_dir: str | Path = TEMPLATES_DIR) -> None:
        self.templates_dir = Path(templates_dir)
        self._cache: dict[str, str] = {}

    def load(self, name: str) -> str:
        """Load a prompt template by name (without extension)."""
        if name not in self._cache:
            path = self.templates_dir / f"{name}.txt"
            self._cache[name] = path.read_text(encoding="utf-8").strip()
        return self._cache[name]

    def render(self, name: str, **kwargs: str) -> str:
        """Load a prompt template and fill in variables."""
        return self.load(name).format(**kwargs)
