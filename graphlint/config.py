"""Configuration for graphlint runs, loaded from TOML files.

Several files can be layered (later files win), followed by inline
``section.key=value`` overrides from the command line.  Anything left
unset falls back to :data:`DEFAULT_CONFIG`.
"""

from __future__ import annotations

import copy
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import toml
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError

from .errors import ConfigError

BASE_DIR = Path(os.environ.get("GRAPHLINT_HOME", str(Path.home() / ".graphlint"))).expanduser()
API_KEY_ENV = "GRAPHLINT_API_KEY"

DEFAULT_ANALYSES = [
    "summary",
    "security",
    "errors",
    "cleanliness",
    "concurrency",
    "performance",
    "api-design",
    "testing",
    "logging",
    "resources",
    "validation",
    "dependencies",
    "complexity",
]

DEFAULT_CONFIG: Dict[str, Any] = {
    "llm": {
        "provider": "openai",
        "base_url": "",
        "model": "gpt-4o-mini",
        "api_key": "",
        "max_tokens": 4096,
        "temperature": 0.0,
    },
    "cache": {
        "dir": str(BASE_DIR / "cache"),
        "enabled": True,
    },
    "output": {
        "json": "graphlint-report.json",
    },
    "run": {
        "checkpoint_every": 10,
        "concurrency": 1,
    },
    "analyses": [
        {"name": name, "prompt": f"builtin:{name}", "enabled": True}
        for name in DEFAULT_ANALYSES
    ],
}


@dataclass
class LLMConfig:
    provider: str = "openai"
    base_url: str = ""
    model: str = "gpt-4o-mini"
    api_key: str = ""
    max_tokens: int = 4096
    temperature: float = 0.0


@dataclass
class CacheConfig:
    dir: str = str(BASE_DIR / "cache")
    enabled: bool = True


@dataclass
class OutputConfig:
    json: str = "graphlint-report.json"


@dataclass
class RunConfig:
    checkpoint_every: int = 10
    concurrency: int = 1


@dataclass
class AnalysisPass:
    name: str
    prompt: str
    enabled: bool = True
    llm: Optional[LLMConfig] = None


@dataclass
class Config:
    llm: LLMConfig = field(default_factory=LLMConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    run: RunConfig = field(default_factory=RunConfig)
    analyses: List[AnalysisPass] = field(default_factory=list)

    def enabled_passes(self) -> List[AnalysisPass]:
        return [p for p in self.analyses if p.enabled]

    def llm_for(self, analysis: AnalysisPass) -> LLMConfig:
        return analysis.llm or self.llm

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["analyses"] = [
            {k: v for k, v in a.items() if v is not None} for a in data["analyses"]
        ]
        return data


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_override(override: str) -> Dict[str, Any]:
    """Turn ``llm.model=gpt-4o`` into ``{"llm": {"model": "gpt-4o"}}``."""
    if "=" not in override:
        raise ConfigError(f"invalid override '{override}', expected key=value")
    path, raw = override.split("=", 1)
    keys = [k.strip() for k in path.split(".") if k.strip()]
    if not keys:
        raise ConfigError(f"invalid override '{override}', empty key")
    try:
        value: Any = toml.loads(f"v = {raw}")["v"]
    except (ValueError, IndexError):
        value = raw

    result: Dict[str, Any] = {}
    cursor = result
    for key in keys[:-1]:
        cursor = cursor.setdefault(key, {})
    cursor[keys[-1]] = value
    return result


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LLMSettings(_Section):
    provider: StrictStr = "openai"
    base_url: StrictStr = ""
    model: StrictStr = "gpt-4o-mini"
    api_key: StrictStr = ""
    max_tokens: StrictInt = 4096
    temperature: float = 0.0


class CacheSettings(_Section):
    dir: StrictStr = str(BASE_DIR / "cache")
    enabled: StrictBool = True


class OutputSettings(_Section):
    json_path: StrictStr = Field(default="graphlint-report.json", alias="json")


class RunSettings(_Section):
    checkpoint_every: StrictInt = 10
    concurrency: StrictInt = 1


class AnalysisSettings(_Section):
    name: StrictStr
    prompt: StrictStr
    enabled: StrictBool = True
    llm: Optional[Dict[str, Any]] = None


class ConfigFile(_Section):
    """Schema of a merged configuration mapping, checked before use."""

    llm: LLMSettings = Field(default_factory=LLMSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)
    run: RunSettings = Field(default_factory=RunSettings)
    analyses: List[AnalysisSettings] = Field(default_factory=list)


def _describe(exc: ValidationError, where: str = "") -> str:
    problems = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error["loc"])
        if where:
            loc = f"{where}.{loc}" if loc else where
        problems.append(f"{loc}: {error['msg']}")
    return "; ".join(problems)


def _llm_from(data: Dict[str, Any], where: str) -> LLMConfig:
    try:
        settings = LLMSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {_describe(exc, where)}") from exc
    return LLMConfig(**settings.model_dump())


def config_from_dict(data: Dict[str, Any]) -> Config:
    """Build and validate a :class:`Config` from a merged mapping.

    Every section is type-checked first; a string where a number belongs,
    or an unknown key, raises :class:`ConfigError`.
    """
    try:
        parsed = ConfigFile.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {_describe(exc)}") from exc

    llm = LLMConfig(**parsed.llm.model_dump())
    if not llm.api_key:
        llm.api_key = os.environ.get(API_KEY_ENV, "")
    analyses = []
    for index, entry in enumerate(parsed.analyses):
        pass_llm = None
        if entry.llm is not None:
            pass_llm = _llm_from(_deep_merge(asdict(llm), entry.llm), f"analyses.{index}.llm")
        analyses.append(AnalysisPass(name=entry.name, prompt=entry.prompt, enabled=entry.enabled, llm=pass_llm))

    cfg = Config(
        llm=llm,
        cache=CacheConfig(**parsed.cache.model_dump()),
        output=OutputConfig(json=parsed.output.json_path),
        run=RunConfig(**parsed.run.model_dump()),
        analyses=analyses,
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: Config) -> None:
    names = [a.name for a in cfg.analyses]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"duplicate analysis pass name(s): {', '.join(duplicates)}")
    if not any(a.name == "summary" and a.enabled for a in cfg.analyses):
        raise ConfigError("an enabled 'summary' analysis pass is required")
    for llm in [cfg.llm] + [a.llm for a in cfg.analyses if a.llm is not None]:
        if llm.max_tokens <= 0:
            raise ConfigError("llm.max_tokens must be positive")
    if cfg.run.concurrency < 1:
        raise ConfigError("run.concurrency must be at least 1")
    if cfg.run.checkpoint_every < 1:
        raise ConfigError("run.checkpoint_every must be at least 1")


def load_config(paths: Sequence[Path] = (), overrides: Sequence[str] = ()) -> Config:
    """Load TOML files in order, apply inline overrides and validate.

    Raises:
        ConfigError: if a file is missing or unreadable, or validation fails.
    """
    merged = copy.deepcopy(DEFAULT_CONFIG)
    for path in paths:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"config file not found: {path}", details={"path": str(path)})
        try:
            with open(path, "r", encoding="utf-8") as f:
                merged = _deep_merge(merged, toml.load(f))
        except (OSError, ValueError) as exc:
            raise ConfigError(f"cannot read {path}: {exc}", details={"path": str(path)}) from exc
    for override in overrides:
        merged = _deep_merge(merged, _parse_override(override))
    return config_from_dict(merged)
