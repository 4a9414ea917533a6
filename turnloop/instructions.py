"""Prompt templates for the hooks and the compactor.

Templates are looked up in layers, first match wins:
  1. Personal overrides in ``~/.turnloop/prompts/``
  2. Project overrides in ``<workspace>/.turnloop/prompts/``
  3. Defaults shipped in ``turnloop/prompts/``
"""

from __future__ import annotations

import os
from pathlib import Path


_PERSONAL_DIR = Path("~/.turnloop/prompts").expanduser()
PROJECT_PROMPTS_DIR = Path(".turnloop") / "prompts"


class _KeepUnknown(dict[str, str]):
    """``{placeholder}`` with no value is rendered as-is."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render prompt templates from the override layers."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
        workspace: Path | str | None = None,
    ):
        self.base_dir = self._default_dir(base_dir)
        self.personal_dir = Path(personal_dir or _PERSONAL_DIR).expanduser().resolve()
        self.project_dir = (
            (Path(workspace).expanduser() / PROJECT_PROMPTS_DIR).resolve() if workspace is not None else None
        )
        self._templates: dict[str, str] = {}

    @staticmethod
    def _default_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("TURNLOOP_PROMPTS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return Path(__file__).resolve().parent / "prompts"

    @property
    def layers(self) -> list[Path]:
        layers = [self.personal_dir]
        if self.project_dir is not None:
            layers.append(self.project_dir)
        layers.append(self.base_dir)
        return layers

    def resolve(self, name: str) -> Path:
        for layer in self.layers:
            candidate = layer / name
            if candidate.is_file():
                return candidate
        raise FileNotFoundError(f"Prompt template not found: {name} (searched {', '.join(map(str, self.layers))})")

    def load(self, name: str) -> str:
        if name not in self._templates:
            self._templates[name] = self.resolve(name).read_text(encoding="utf-8").strip()
        return self._templates[name]

    def render(self, name: str, **variables: object) -> str:
        """Fill ``{placeholder}`` fields; unknown placeholders are kept verbatim."""
        values = _KeepUnknown({key: str(value) for key, value in variables.items()})
        return self.load(name).format_map(values)


_loader: InstructionLoader | None = None


def get_instruction_loader() -> InstructionLoader:
    global _loader
    if _loader is None:
        _loader = InstructionLoader()
    return _loader
