"""Worker configuration.

Values come from the process environment (a ``.env`` file in the working
directory is loaded first without overriding real variables) and may be
overridden by an optional YAML file whose keys are the snake_case field
names of :class:`WorkerConfig`.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .logging_config import parse_level, qualify_logger_name
from .secrets import load_secret

_HANDLE_RE = re.compile(r"^@[A-Za-z0-9_]{3,32}$")
_TRUE = {"1", "true", "yes", "on", "y"}
_FALSE = {"0", "false", "no", "off", "n"}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class WorkerConfig:
    telegram_token: str
    recordings_dir: Path = Path("/recordings")
    state_file: Path = Path("/app/data/state.json")
    temp_dir: Path = Path("/tmp/call_clips")
    telegram_chat_id: Optional[str] = None
    telegram_upload_max_bytes: int = 49 * 1024 * 1024
    participant_presets: tuple[str, ...] = field(default_factory=tuple)
    poll_interval_seconds: int = 30
    file_min_age_seconds: int = 60
    stability_wait_seconds: int = 5
    clip_duration_seconds: int = 10
    run_once: bool = False
    updates_timeout_seconds: int = 2
    openai_api_key: Optional[str] = None
    openai_transcribe_model: str = "gpt-4o-mini-transcribe"
    openai_summary_model: str = "gpt-4o-mini"
    openai_language: Optional[str] = None
    openai_audio_chunk_seconds: int = 900
    openai_summary_chunk_chars: int = 30000
    send_transcript_file: bool = True
    reminder_base_seconds: int = 300
    reminder_max_seconds: int = 14400
    reminder_timezone: str = "Europe/Moscow"
    reminder_night_start_hour: int = 23
    reminder_night_end_hour: int = 9
    log_level: str = "INFO"
    log_module_levels: Mapping[str, str] = field(default_factory=dict)

    @property
    def ai_enabled(self) -> bool:
        return bool(self.openai_api_key and self.openai_api_key.strip())


def parse_participant_presets(raw: Any) -> tuple[str, ...]:
    """Normalize a preset roster given as a string or a list.

    Bare handles get an ``@`` prefix; invalid handles are dropped.
    """
    if raw is None:
        return ()
    if isinstance(raw, str):
        tokens = re.split(r"[\s,;]+", raw)
    elif isinstance(raw, (list, tuple)):
        tokens = [str(t) for t in raw]
    else:
        raise ConfigError(f"participant_presets must be a string or list, got {type(raw).__name__}")
    out: list[str] = []
    for token in tokens:
        token = token.strip()
        if not token:
            continue
        handle = token if token.startswith("@") else f"@{token}"
        if _HANDLE_RE.match(handle) and handle not in out:
            out.append(handle)
    return tuple(out)


def parse_log_level(raw: Any) -> str:
    try:
        parse_level(str(raw))
    except ValueError as exc:
        raise ConfigError(f"Invalid log level {raw!r}") from exc
    return str(raw).strip().upper()


def parse_log_module_levels(raw: Any) -> Dict[str, str]:
    """``"conversation=DEBUG,messaging:INFO"`` or a mapping -> {logger: LEVEL}."""
    if raw is None:
        return {}
    if isinstance(raw, str):
        pairs = []
        for part in re.split(r"[;,]+", raw):
            part = part.strip()
            if not part:
                continue
            name, sep, level = part.partition("=") if "=" in part else part.partition(":")
            if not sep or not name.strip():
                raise ConfigError(f"Invalid log module level entry {part!r} (expected name=LEVEL)")
            pairs.append((name, level))
    elif isinstance(raw, Mapping):
        pairs = list(raw.items())
    else:
        raise ConfigError(f"log_module_levels must be a string or mapping, got {type(raw).__name__}")
    return {qualify_logger_name(str(name)): parse_log_level(level) for name, level in pairs}


def _str_env(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    value = _str_env(env, name)
    if value is None:
        return default
    try:
        return max(0, int(value))
    except ValueError as exc:
        raise ConfigError(f"Environment variable {name} must be integer, got {value!r}") from exc


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = _str_env(env, name)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"Environment variable {name} must be boolean, got {value!r}")


def _hour_env(env: Mapping[str, str], name: str, default: int) -> int:
    return max(0, min(23, _int_env(env, name, default)))


def config_from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "recordings_dir": Path(_str_env(env, "RECORDINGS_DIR") or "/recordings"),
        "state_file": Path(_str_env(env, "STATE_FILE") or "/app/data/state.json"),
        "temp_dir": Path(_str_env(env, "TEMP_DIR") or "/tmp/call_clips"),
        "telegram_chat_id": _str_env(env, "TELEGRAM_CHAT_ID"),
        "telegram_upload_max_bytes": _int_env(env, "TELEGRAM_UPLOAD_MAX_BYTES", 49 * 1024 * 1024),
        "participant_presets": parse_participant_presets(_str_env(env, "PARTICIPANT_PRESETS")),
        "poll_interval_seconds": _int_env(env, "POLL_INTERVAL_SECONDS", 30),
        "file_min_age_seconds": _int_env(env, "FILE_MIN_AGE_SECONDS", 60),
        "stability_wait_seconds": _int_env(env, "STABILITY_WAIT_SECONDS", 5),
        "clip_duration_seconds": _int_env(env, "CLIP_DURATION_SECONDS", 10),
        "run_once": _bool_env(env, "RUN_ONCE", False),
        "updates_timeout_seconds": _int_env(env, "UPDATES_TIMEOUT_SECONDS", 2),
        "openai_api_key": _str_env(env, "OPENAI_API_KEY"),
        "openai_transcribe_model": _str_env(env, "OPENAI_TRANSCRIBE_MODEL") or "gpt-4o-mini-transcribe",
        "openai_summary_model": _str_env(env, "OPENAI_SUMMARY_MODEL") or "gpt-4o-mini",
        "openai_language": _str_env(env, "OPENAI_TRANSCRIBE_LANGUAGE"),
        "openai_audio_chunk_seconds": _int_env(env, "OPENAI_AUDIO_CHUNK_SECONDS", 900),
        "openai_summary_chunk_chars": _int_env(env, "OPENAI_SUMMARY_CHUNK_CHARS", 30000),
        "send_transcript_file": _bool_env(env, "SEND_TRANSCRIPT_FILE", True),
        "reminder_base_seconds": _int_env(env, "REMINDER_BASE_SECONDS", 300),
        "reminder_max_seconds": _int_env(env, "REMINDER_MAX_SECONDS", 14400),
        "reminder_timezone": _str_env(env, "REMINDER_TIMEZONE") or "Europe/Moscow",
        "reminder_night_start_hour": _hour_env(env, "REMINDER_NIGHT_START_HOUR", 23),
        "reminder_night_end_hour": _hour_env(env, "REMINDER_NIGHT_END_HOUR", 9),
        "log_level": parse_log_level(_str_env(env, "LOG_LEVEL") or "INFO"),
        "log_module_levels": parse_log_module_levels(_str_env(env, "LOG_MODULE_LEVELS")),
    }
    token = _str_env(env, "TELEGRAM_BOT_TOKEN")
    if token is not None:
        values["telegram_token"] = token
    return values


def load_overrides(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must be a mapping")
    known = {f.name for f in fields(WorkerConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
    return dict(data)


def _yaml_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Config key {name} must be integer, got {value!r}")
    try:
        return max(0, int(value))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Config key {name} must be integer, got {value!r}") from exc


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(values)
    for name in ("recordings_dir", "state_file", "temp_dir"):
        if name in out and out[name] is not None:
            out[name] = Path(out[name])
    if "participant_presets" in out:
        out["participant_presets"] = parse_participant_presets(out["participant_presets"])
    if "log_level" in out:
        out["log_level"] = parse_log_level(out["log_level"])
    if "log_module_levels" in out:
        out["log_module_levels"] = parse_log_module_levels(out["log_module_levels"])
    if "telegram_chat_id" in out and out["telegram_chat_id"] is not None:
        out["telegram_chat_id"] = str(out["telegram_chat_id"])
    for f in fields(WorkerConfig):
        if f.type == "int" and f.name in out:
            out[f.name] = _yaml_int(f.name, out[f.name])
    for name in ("reminder_night_start_hour", "reminder_night_end_hour"):
        if name in out:
            out[name] = min(23, out[name])
    return out


def load_config(
    config_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    *,
    dotenv: bool = True,
) -> WorkerConfig:
    if env is None:
        if dotenv:
            load_dotenv(override=False)
        env = os.environ
        if config_path is None and env.get("CALLCLIPS_CONFIG"):
            config_path = Path(env["CALLCLIPS_CONFIG"])

    values = config_from_env(env)
    values.update(load_overrides(config_path))
    values = _coerce(values)

    if not values.get("telegram_token"):
        values["telegram_token"] = load_secret("telegram_token")
    if not values.get("telegram_token"):
        raise ConfigError("TELEGRAM_BOT_TOKEN is required (environment, config file or keyring).")
    if not values.get("openai_api_key"):
        values["openai_api_key"] = load_secret("openai_api_key")

    return WorkerConfig(**values)


def with_overrides(cfg: WorkerConfig, **changes: Any) -> WorkerConfig:
    return replace(cfg, **_coerce(changes))
