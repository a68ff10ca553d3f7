"""Tests for environment configuration and the engine settings snapshot."""

import pytest

from meterbox.db.sqlite_settings import load_engine_settings, save_engine_settings
from meterbox.utils.config import (
	DEFAULT_WG_COMMAND,
	ConfigValidationError,
	EngineSettings,
	SettingsHolder,
	coerce_setting,
	get_config,
	load_config,
	reset_config,
)


@pytest.fixture()
def env(monkeypatch, tmp_path):
	for key in ("METERBOX_PORT", "METERBOX_PROXY_COMMAND", "METERBOX_WG_COMMAND", "LOG_LEVEL"):
		monkeypatch.delenv(key, raising=False)
	monkeypatch.setenv("METERBOX_DATA_DIR", str(tmp_path / "data"))
	reset_config()
	yield monkeypatch
	reset_config()


class TestLoadConfig:

	def test_defaults(self, env, tmp_path):
		cfg = load_config()
		assert cfg.db_path == (tmp_path / "data" / "meterbox.db").resolve()
		assert cfg.data_dir.is_dir()
		assert cfg.port == 8000
		assert cfg.wg_command == DEFAULT_WG_COMMAND
		assert cfg.proxy_command == ()

	def test_commands_are_split_like_a_shell(self, env):
		env.setenv("METERBOX_WG_COMMAND", "sudo wg show all dump")
		env.setenv("METERBOX_PROXY_COMMAND", "xray api statsquery '--server=127.0.0.1:1'")
		cfg = load_config()
		assert cfg.wg_command == ("sudo", "wg", "show", "all", "dump")
		assert cfg.proxy_command[-1] == "--server=127.0.0.1:1"

	@pytest.mark.parametrize("port", ["http", "0", "70000"])
	def test_bad_port_rejected(self, env, port):
		env.setenv("METERBOX_PORT", port)
		with pytest.raises(ConfigValidationError):
			load_config()

	def test_unknown_log_level_falls_back(self, env):
		env.setenv("LOG_LEVEL", "chatty")
		assert load_config().log_level == "INFO"

	def test_singleton_until_reset(self, env):
		first = get_config()
		assert get_config() is first
		reset_config()
		assert get_config() is not first


class TestEngineSettings:

	def test_coerce_from_strings(self):
		assert coerce_setting("retention_enabled", "yes") is True
		assert coerce_setting("retention_days", "30") == 30
		assert coerce_setting("collector_timeout_sec", "2.5") == 2.5

	@pytest.mark.parametrize("raw", ["maybe", "2", "", "enabled"])
	def test_unrecognised_bool_string_is_rejected(self, raw):
		with pytest.raises(ConfigValidationError):
			coerce_setting("retention_enabled", raw)

	def test_false_strings_coerce_to_false(self):
		for raw in ("0", "false", "No", " off "):
			assert coerce_setting("prune_buckets", raw) is False

	def test_coerce_rejects_unknown_and_garbage(self):
		with pytest.raises(ConfigValidationError):
			coerce_setting("nope", 1)
		with pytest.raises(ConfigValidationError):
			coerce_setting("retention_days", "many")
		with pytest.raises(ConfigValidationError):
			coerce_setting("retention_days", True)

	def test_invalid_update_leaves_snapshot(self):
		holder = SettingsHolder()
		before = holder.current()
		with pytest.raises(ConfigValidationError):
			holder.apply({"proxy_interval_sec": 0})
		assert holder.current() is before

	def test_failed_persist_leaves_snapshot(self):
		holder = SettingsHolder()

		def broken(candidate):
			raise RuntimeError("disk full")

		with pytest.raises(RuntimeError):
			holder.apply({"retention_days": 5}, persist=broken)
		assert holder.current().retention_days == 90

	def test_round_trip_through_settings_table(self, store):
		changed = EngineSettings(wireguard_interval_sec=15, prune_buckets=True)
		with store.writer() as conn:
			save_engine_settings(conn, changed, ["wireguard_interval_sec", "prune_buckets"])
			loaded = load_engine_settings(conn)
		assert loaded == changed

	def test_bad_stored_value_falls_back_to_default(self, store):
		with store.writer() as conn:
			conn.execute("INSERT INTO settings (key, value, updated_at) VALUES ('retention_days', 'lots', 0)")
			conn.execute("INSERT INTO settings (key, value, updated_at) VALUES ('proxy_interval_sec', '30', 0)")
			loaded = load_engine_settings(conn)
		assert loaded.retention_days == 90
		assert loaded.proxy_interval_sec == 30

	def test_bad_stored_bool_falls_back_to_default(self, store):
		with store.writer() as conn:
			conn.execute("INSERT INTO settings (key, value, updated_at) VALUES ('retention_enabled', 'sometimes', 0)")
			loaded = load_engine_settings(conn)
		assert loaded.retention_enabled is EngineSettings().retention_enabled
