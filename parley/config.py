"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags < per-session overrides
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from parley.types import ConfigError


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ProviderConfig:
    name: str = ""
    model: str = ""
    endpoint: str = ""
    context_limit: int = 0
    timeout_seconds: float = 120.0
    context_limits: dict[str, int] = field(default_factory=dict)


@dataclass
class SessionConfig:
    process_tools: bool = True
    max_turns: int = 8
    max_tool_passes: int = 4
    allow_parallel_tools: bool = False
    tool_timeout_seconds: float = 30.0
    tool_filter: str = "-*"
    context_filter: str = "-*"


@dataclass
class ContextConfig:
    summarize_threshold: float = 0.80
    summarize_timeout_seconds: float = 60.0
    default_context_limit: int = 0


@dataclass
class GreetingConfig:
    enabled: bool = False
    timeout_seconds: float = 30.0


@dataclass
class LoggingConfig:
    level: str = "WARNING"
    trace: bool = False


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ParleyConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    greeting: GreetingConfig = field(default_factory=GreetingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'session.max_turns')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d

    def validate(self) -> list[str]:
        """Return a list of semantic problems; empty when the config is usable."""
        problems: list[str] = []
        if self.session.max_turns < 1:
            problems.append("session.max_turns must be >= 1")
        if self.session.max_tool_passes < 0:
            problems.append("session.max_tool_passes must be >= 0")
        if self.session.tool_timeout_seconds <= 0:
            problems.append("session.tool_timeout_seconds must be > 0")
        if not 0 < self.context.summarize_threshold <= 1:
            problems.append("context.summarize_threshold must be in (0, 1]")
        if self.provider.context_limit < 0 or self.context.default_context_limit < 0:
            problems.append("context limits must be >= 0")
        for model, limit in self.provider.context_limits.items():
            if not isinstance(limit, int) or limit <= 0:
                problems.append(f"provider.context_limits[{model}] must be a positive integer")
        if logging.getLevelName(self.logging.level.upper()) == f"Level {self.logging.level.upper()}":
            problems.append(f"logging.level is not a known level: {self.logging.level}")
        return problems


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise ConfigError(f"Unknown config key: {dotpath}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    try:
        if target_type is int:
            return int(value)
        if target_type is float:
            return float(value)
    except ValueError as e:
        raise ConfigError(f"Cannot convert {value!r} to {target_type.__name__}") from e
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section for {cls.__name__} must be a mapping")
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in raw.items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "PARLEY_PROVIDER_NAME":            ("provider.name", str),
    "PARLEY_PROVIDER_MODEL":           ("provider.model", str),
    "PARLEY_PROVIDER_ENDPOINT":        ("provider.endpoint", str),
    "PARLEY_PROVIDER_CONTEXT_LIMIT":   ("provider.context_limit", int),
    "PARLEY_PROVIDER_TIMEOUT":         ("provider.timeout_seconds", float),
    "PARLEY_SESSION_PROCESS_TOOLS":    ("session.process_tools", bool),
    "PARLEY_SESSION_MAX_TURNS":        ("session.max_turns", int),
    "PARLEY_SESSION_MAX_TOOL_PASSES":  ("session.max_tool_passes", int),
    "PARLEY_SESSION_PARALLEL_TOOLS":   ("session.allow_parallel_tools", bool),
    "PARLEY_SESSION_TOOL_TIMEOUT":     ("session.tool_timeout_seconds", float),
    "PARLEY_SESSION_TOOL_FILTER":      ("session.tool_filter", str),
    "PARLEY_SESSION_CONTEXT_FILTER":   ("session.context_filter", str),
    "PARLEY_CONTEXT_THRESHOLD":        ("context.summarize_threshold", float),
    "PARLEY_CONTEXT_SUMMARY_TIMEOUT":  ("context.summarize_timeout_seconds", float),
    "PARLEY_CONTEXT_DEFAULT_LIMIT":    ("context.default_context_limit", int),
    "PARLEY_GREETING_ENABLED":         ("greeting.enabled", bool),
    "PARLEY_GREETING_TIMEOUT":         ("greeting.timeout_seconds", float),
    "PARLEY_LOG_LEVEL":                ("logging.level", str),
    "PARLEY_LOG_TRACE":                ("logging.trace", bool),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ParleyConfig:
    """
    Build a ParleyConfig by layering sources in precedence order:

        defaults  <  config file  <  profile  <  env vars  <  CLI flags  <  per-session overrides

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides

    Raises
    ------
    ConfigError
        The file is not valid YAML, a section is malformed, or a value
        cannot be coerced.
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            try:
                with p.open("r", encoding="utf-8") as f:
                    file_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {p}: {e}") from e
            if not isinstance(file_data, dict):
                raise ConfigError(f"Config file {p} must contain a mapping")
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile and "profiles" in raw:
        profile_data = raw.get("profiles", {}).get(profile, {})
        if profile_data:
            raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    try:
        cfg = ParleyConfig(
            provider=_build_section(ProviderConfig, raw.get("provider", {})),
            session=_build_section(SessionConfig, raw.get("session", {})),
            context=_build_section(ContextConfig, raw.get("context", {})),
            greeting=_build_section(GreetingConfig, raw.get("greeting", {})),
            logging=_build_section(LoggingConfig, raw.get("logging", {})),
            profiles=raw.get("profiles", {}),
        )
    except TypeError as e:
        raise ConfigError(str(e)) from e

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg
