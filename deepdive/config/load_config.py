from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from deepdive.utils.template import PROMPT_VARIABLES, template_variables


class ConfigError(RuntimeError):
    pass


_REPO_ROOT = Path(__file__).resolve().parents[2]


def _as_int(value: Any, *, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid int for {key}: {value!r}")
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_positive_int(value: Any, *, key: str) -> int:
    n = _as_int(value, key=key)
    if n < 1:
        raise ConfigError(f"Invalid {key}: must be >= 1, got {n}")
    return n


@dataclass(frozen=True)
class LimitsConfig:
    max_depth: int
    max_topic_chars: int


@dataclass(frozen=True)
class OracleConfig:
    temperature: float
    timeout_s: float
    tool_name: str


@dataclass(frozen=True)
class WorkerConfig:
    concurrency: int = 4
    poll_interval_s: float = 0.2


@dataclass(frozen=True)
class PromptConfig:
    # system_template is used while decomposition is allowed; system_leaf_template at depth 0.
    system_template: str
    system_leaf_template: str
    user_template: str
    tool_description: str


@dataclass(frozen=True)
class AppConfig:
    limits: LimitsConfig
    oracle: OracleConfig
    worker: WorkerConfig
    prompts: PromptConfig


def default_config_path() -> Path:
    raw = os.getenv("DEEPDIVE_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return _REPO_ROOT / "config" / "default.toml"


def _prompt(prompts: dict[str, Any], name: str) -> str:
    key = f"prompts.{name}"
    text = _as_str(prompts.get(name), key=key)
    unknown = template_variables(text) - PROMPT_VARIABLES
    if unknown:
        raise ConfigError(f"{key} references unknown variables: {sorted(unknown)}")
    return text


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    limits = raw.get("limits", {})
    oracle = raw.get("oracle", {})
    worker = raw.get("worker", {})
    prompts = raw.get("prompts", {})

    max_depth = _as_int(limits.get("max_depth"), key="limits.max_depth")
    if max_depth < 0:
        raise ConfigError(f"Invalid limits.max_depth: must be >= 0, got {max_depth}")

    tool_name = _as_str(oracle.get("tool_name", "research"), key="oracle.tool_name").strip()
    if not tool_name:
        raise ConfigError("Invalid oracle.tool_name: empty string")

    user_template = _prompt(prompts, "user_template")
    if "topic" not in template_variables(user_template):
        raise ConfigError("prompts.user_template must reference {{topic}}")

    return AppConfig(
        limits=LimitsConfig(
            max_depth=max_depth,
            max_topic_chars=_as_positive_int(limits.get("max_topic_chars"), key="limits.max_topic_chars"),
        ),
        oracle=OracleConfig(
            temperature=_as_float(oracle.get("temperature"), key="oracle.temperature"),
            timeout_s=_as_float(oracle.get("timeout_s"), key="oracle.timeout_s"),
            tool_name=tool_name,
        ),
        worker=WorkerConfig(
            concurrency=_as_positive_int(worker.get("concurrency"), key="worker.concurrency"),
            poll_interval_s=_as_float(worker.get("poll_interval_s"), key="worker.poll_interval_s"),
        ),
        prompts=PromptConfig(
            system_template=_prompt(prompts, "system_template"),
            system_leaf_template=_prompt(prompts, "system_leaf_template"),
            user_template=user_template,
            tool_description=_as_str(prompts.get("tool_description"), key="prompts.tool_description"),
        ),
    )
