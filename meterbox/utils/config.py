#!/usr/bin/env python3
#
# meterbox/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading, app-level defaults and the hot-reloadable engine settings."""

from __future__ import annotations

import dataclasses
import logging
import os
import shlex
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Fixed constants
# ---------------------------------------------------------------------------
DEFAULT_PROXY_API = "127.0.0.1:10085"
DEFAULT_WG_COMMAND = ("wg", "show", "all", "dump")
DEFAULT_PORT = 8000


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	base_dir: Path
	data_dir: Path
	db_path: Path
	log_level: str = "INFO"
	port: int = DEFAULT_PORT
	proxy_api: str = DEFAULT_PROXY_API
	proxy_command: tuple[str, ...] = ()
	wg_command: tuple[str, ...] = DEFAULT_WG_COMMAND


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments."""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from settings.env.

	Behavior:
	- Ignores blank lines and comments (# ...)
	- Handles `export KEY=VALUE` syntax
	- Does not override already-set environment variables
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#"):
			continue
		if "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		value = _parse_value(value)
		if not key:
			continue
		os.environ.setdefault(key, value)


def _split_command(raw: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
	if not raw:
		return default
	parts = tuple(shlex.split(raw))
	if not parts:
		raise ConfigValidationError(f"Empty command: {raw!r}")
	return parts


def load_config() -> Config:
	"""Load configuration from environment variables (optionally via settings.env)."""
	load_dotenv()
	project_root = Path(__file__).resolve().parents[2]

	data_dir = Path(os.getenv("METERBOX_DATA_DIR", str(project_root / "data"))).resolve()
	db_path = (data_dir / "meterbox.db").resolve()

	try:
		if data_dir.exists() and not data_dir.is_dir():
			raise ConfigValidationError(f"Path exists but is not a directory: {data_dir}")
		data_dir.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create data directory: {exc}") from exc

	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = os.getenv("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	port_raw = os.getenv("METERBOX_PORT", str(DEFAULT_PORT))
	try:
		port = int(port_raw)
	except ValueError as exc:
		raise ConfigValidationError(f"METERBOX_PORT is not a number: {port_raw!r}") from exc
	if not 1 <= port <= 65535:
		raise ConfigValidationError(f"METERBOX_PORT out of range: {port}")

	return Config(
		base_dir=project_root,
		data_dir=data_dir,
		db_path=db_path,
		log_level=log_level,
		port=port,
		proxy_api=os.getenv("METERBOX_PROXY_API", DEFAULT_PROXY_API),
		proxy_command=_split_command(os.getenv("METERBOX_PROXY_COMMAND"), ()),
		wg_command=_split_command(os.getenv("METERBOX_WG_COMMAND"), DEFAULT_WG_COMMAND),
	)


# Global config singleton with thread-safe lazy initialization
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Get the global config singleton (thread-safe)."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:  # Double-checked locking
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Reset the cached config. Intended for tests only."""
	global _config
	with _config_lock:
		_config = None


# ---------------------------------------------------------------------------
# Engine settings (hot-reloadable, persisted in the settings table)
# ---------------------------------------------------------------------------

MIN_INTERVAL_SEC = 1


@dataclass(frozen=True)
class EngineSettings:
	"""Immutable snapshot of the runtime-tunable engine configuration.

	A new snapshot is swapped in as a whole; tasks read it at the start of
	their next tick and never see a half-applied update.
	"""
	proxy_interval_sec: int = 120
	wireguard_interval_sec: int = 60
	retention_interval_sec: int = 86400
	retention_enabled: bool = False
	retention_days: int = 90
	aggregation_enabled: bool = False
	aggregation_days: int = 7
	prune_buckets: bool = False
	active_threshold_bytes: int = 1024
	proxy_paused: bool = False
	wireguard_paused: bool = False
	run_history_limit: int = 50
	collector_timeout_sec: float = 10.0

	def interval_for(self, source: str) -> int:
		if source == "proxy":
			return self.proxy_interval_sec
		if source == "wireguard":
			return self.wireguard_interval_sec
		raise KeyError(source)

	def paused_for(self, source: str) -> bool:
		if source == "proxy":
			return self.proxy_paused
		if source == "wireguard":
			return self.wireguard_paused
		raise KeyError(source)

	def validate(self) -> "EngineSettings":
		"""Return self if all values are in range, else raise ConfigValidationError."""
		for name in ("proxy_interval_sec", "wireguard_interval_sec", "retention_interval_sec"):
			if getattr(self, name) < MIN_INTERVAL_SEC:
				raise ConfigValidationError(f"{name} must be >= {MIN_INTERVAL_SEC}")
		if self.retention_days < 1:
			raise ConfigValidationError("retention_days must be >= 1")
		if self.aggregation_days < 1:
			raise ConfigValidationError("aggregation_days must be >= 1")
		if self.active_threshold_bytes < 0:
			raise ConfigValidationError("active_threshold_bytes must be >= 0")
		if self.run_history_limit < 1:
			raise ConfigValidationError("run_history_limit must be >= 1")
		if self.collector_timeout_sec <= 0:
			raise ConfigValidationError("collector_timeout_sec must be > 0")
		return self


ENGINE_SETTING_FIELDS: dict[str, type] = {
	f.name: type(f.default) for f in dataclasses.fields(EngineSettings)
}


_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


def coerce_setting(name: str, value: Any) -> Any:
	"""Convert a raw (possibly string) value to the field's type."""
	if name not in ENGINE_SETTING_FIELDS:
		raise ConfigValidationError(f"Unknown setting: {name}")
	kind = ENGINE_SETTING_FIELDS[name]
	try:
		if kind is bool:
			if isinstance(value, bool):
				return value
			text = str(value).strip().lower()
			if text in _TRUE_STRINGS:
				return True
			if text in _FALSE_STRINGS:
				return False
			raise ValueError(f"not a boolean: {value!r}")
		if kind is int:
			if isinstance(value, bool):
				raise ValueError("bool is not an int setting")
			return int(value)
		return kind(value)
	except (TypeError, ValueError) as exc:
		raise ConfigValidationError(f"Invalid value for {name}: {value!r}") from exc


class SettingsHolder:
	"""Holds the current EngineSettings snapshot and swaps it atomically."""

	def __init__(self, initial: EngineSettings | None = None) -> None:
		self._current = (initial or EngineSettings()).validate()
		self._lock = threading.Lock()

	def current(self) -> EngineSettings:
		return self._current

	def apply(
		self,
		changes: dict[str, Any],
		*,
		persist: Callable[[EngineSettings], None] | None = None,
	) -> EngineSettings:
		"""Validate *changes*, run *persist* on the candidate, then swap it in.

		If *persist* raises, the current snapshot is left untouched.
		"""
		coerced = {name: coerce_setting(name, value) for name, value in changes.items()}
		with self._lock:
			updated = dataclasses.replace(self._current, **coerced).validate()
			if persist is not None:
				persist(updated)
			self._current = updated
		_log.info("SETTINGS updated %s", ", ".join(f"{k}={v}" for k, v in coerced.items()))
		return updated
