from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from marathon.models import DEFAULT_PHASES

BackendName = Literal["claude", "openai"]

CONFIG_FILENAME = "marathon.toml"
SECTIONS = ("pipeline", "backend", "memory", "export")


@dataclass(slots=True)
class PipelineConfig:
    phases: list[str] = field(default_factory=lambda: list(DEFAULT_PHASES))
    step_delay_seconds: float = 0.5
    retry_delay_seconds: float = 1.0
    continue_on_rejection: bool = False
    critic_on_retry: bool = False


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "openai"
    model: str = ""
    max_retries: int = 0
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class MemoryConfig:
    summary_max_words: int = 200
    max_key_decisions: int = 20
    max_self_corrections: int = 20
    digest_chars: int = 150
    verdict_chars: int = 50
    decision_chars: int = 100
    rationale_chars: int = 200
    structured_decisions: bool = True


@dataclass(slots=True)
class ExportConfig:
    directory: str = ".marathon/sessions"


@dataclass(slots=True)
class MarathonConfig:
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    export: ExportConfig = field(default_factory=ExportConfig)

    @classmethod
    def default(cls) -> MarathonConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> MarathonConfig:
        return cls(
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            backend=BackendConfig(**data.get("backend", {})),
            memory=MemoryConfig(**data.get("memory", {})),
            export=ExportConfig(**data.get("export", {})),
        )

    def to_dict(self) -> dict:
        return {section: asdict(getattr(self, section)) for section in SECTIONS}


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: MarathonConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> MarathonConfig:
    if not path.exists():
        return MarathonConfig.default()
    return MarathonConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: MarathonConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
