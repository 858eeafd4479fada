"""
Compliance Flow — Environment Config Loader

Three-tier configuration loading:
  1. Base file (compliance_flow.yaml)
  2. Per-environment overlay files (config/{CF_ENV}.yaml merged over base)
  3. Environment variable overrides (CF_ prefixed)

Usage:
    from engine.config import load_config, get_config_value

    cfg = load_config(base_path="compliance_flow.yaml", env="prod")
    threshold = get_config_value("decision.confidence_threshold", cfg, 0.70)
    settings = OrchestratorSettings.from_config(cfg)

Environment variables:
    CF_ENV                      — active profile (dev, staging, prod)
    CF_CONFIG_DIR               — directory for overlay files (default: config/)
    CF_<SECTION>__<KEY>         — nested overrides, "__" separates levels
                                  (e.g., CF_DECISION__CONFIDENCE_THRESHOLD=0.8)
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("compliance_flow.config")

DEFAULT_CONFIG_PATH = "compliance_flow.yaml"
ENV_PREFIX = "CF_"
ENV_SEPARATOR = "__"


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: str):
    """Set a nested dict value from a list of keys, parsing the value as YAML."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    try:
        d[keys[-1]] = yaml.safe_load(value)
    except yaml.YAMLError:
        d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for config/{env}.yaml or {config_dir}/{env}.yaml.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("CF_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("CF_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Load CF_ prefixed environment variables as config overrides.

    Naming convention:
      CF_SECTION__KEY=value → {"section": {"key": value}}
      CF_SECTION__SUB__KEY=value → {"section": {"sub": {"key": value}}}

    Single underscores stay inside a key (CF_RETRY__MAX_ATTEMPTS → retry.max_attempts).
    Values are parsed as YAML (numbers, booleans, lists).
    CF_ENV, CF_CONFIG_DIR and CF_VERSION are meta config and excluded.
    """
    excluded = {"CF_ENV", "CF_CONFIG_DIR", "CF_VERSION"}
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue
        path = [p for p in key[len(prefix):].lower().split(ENV_SEPARATOR) if p]
        if not path:
            continue
        _set_nested(overrides, path, value)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = DEFAULT_CONFIG_PATH,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (CF_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (compliance_flow.yaml)

    Returns:
        Merged configuration dict
    """
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)
    else:
        logger.warning("Base config %s not found, using built-in defaults", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    # Stamp active profile into config for observability
    config["_active_env"] = env or os.environ.get("CF_ENV", "default")
    config["_config_source"] = base_path

    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("approval.deadline_seconds", cfg, 86400)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed view
# ═══════════════════════════════════════════════════════════════════

@dataclass
class OrchestratorSettings:
    """Settings the orchestrator reads on construction."""
    db_path: str = "compliance_flow.db"
    approval_deadline_seconds: float = 86400.0
    sweep_interval_seconds: float = 60.0
    max_instance_retries: int = 3
    lease_seconds: float = 300.0
    retention_seconds: float = 30 * 86400.0
    enrichment_max_workers: int = 4
    worker_mode: str = "inline"
    worker_max_concurrent: int = 4

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> OrchestratorSettings:
        config = config or {}
        defaults = cls()
        settings = cls(
            db_path=str(get_config_value("store.db_path", config, defaults.db_path)),
            approval_deadline_seconds=float(get_config_value(
                "approval.deadline_seconds", config, defaults.approval_deadline_seconds)),
            sweep_interval_seconds=float(get_config_value(
                "approval.sweep_interval_seconds", config, defaults.sweep_interval_seconds)),
            max_instance_retries=int(get_config_value(
                "orchestrator.max_instance_retries", config, defaults.max_instance_retries)),
            lease_seconds=float(get_config_value(
                "orchestrator.lease_seconds", config, defaults.lease_seconds)),
            retention_seconds=float(get_config_value(
                "orchestrator.retention_seconds", config, defaults.retention_seconds)),
            enrichment_max_workers=int(get_config_value(
                "enrichment.max_workers", config, defaults.enrichment_max_workers)),
            worker_mode=str(get_config_value("worker.mode", config, defaults.worker_mode)),
            worker_max_concurrent=int(get_config_value(
                "worker.max_concurrent", config, defaults.worker_max_concurrent)),
        )
        settings.validate()
        return settings

    def validate(self):
        if self.approval_deadline_seconds <= 0:
            raise ValueError("approval.deadline_seconds must be positive")
        if self.sweep_interval_seconds < 0:
            raise ValueError("approval.sweep_interval_seconds must be >= 0 (0 disables the timer)")
        if self.max_instance_retries < 0:
            raise ValueError("orchestrator.max_instance_retries must be >= 0")
        if self.lease_seconds <= 0:
            raise ValueError("orchestrator.lease_seconds must be positive")
        if self.worker_mode not in ("inline", "thread"):
            raise ValueError(f"worker.mode must be inline or thread, got {self.worker_mode!r}")
