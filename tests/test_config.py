"""Configuration manager and logging setup."""

import io
import json

import pytest

from pangu.config import ConfigManager, ConfigValidationError, PanguConfig
from pangu.errors import ConfigError
from pangu.observability import (
    PanguLayer,
    configure_logging,
    get_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
    timed_operation,
)


class TestConfigManager:

    def test_defaults(self):
        manager = ConfigManager()
        assert manager.get("assembly.change_epsilon") == 1e-8
        assert manager.get("reservation.draft_lease_seconds") == 30.0
        assert manager.get("assembly.exchange_rates") == {0: 1.0, 1: 1000000.0, 2: 1000.0}
        assert manager.validate() == []

    def test_set_validates(self):
        manager = ConfigManager()
        manager.set("reservation.draft_lease_seconds", 10.0)
        assert manager.get("reservation.draft_lease_seconds") == 10.0
        with pytest.raises(ConfigValidationError):
            manager.set("reservation.draft_lease_seconds", -1.0)

    def test_invalid_path(self):
        with pytest.raises(ConfigError):
            ConfigManager().set("assembly.nope", 1)
        with pytest.raises(ConfigError):
            ConfigManager().get("nope")

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "pangu.yaml"
        path.write_text(
            "assembly:\n"
            "  default_gas: 2.5\n"
            "  exchange_rates: {0: 1.0, 1: 10.0, 2: 5.0}\n"
            "sync:\n"
            "  poll_interval_seconds: 1.0\n",
            encoding="utf-8",
        )
        manager = ConfigManager()
        manager.load_from_file(path)
        assert manager.get("assembly.default_gas") == 2.5
        assert manager.get("assembly.exchange_rates")[1] == 10.0
        assert manager.get("sync.poll_interval_seconds") == 1.0

    def test_unknown_key_in_file(self, tmp_path):
        path = tmp_path / "pangu.yaml"
        path.write_text("assembly:\n  gass: 1\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            ConfigManager().load_from_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            ConfigManager().load_from_file(tmp_path / "absent.yaml")

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PANGU_DEFAULT_GAS", "3.5")
        monkeypatch.setenv("PANGU_EXCHANGE_RATES", "0:1,1:10")
        config = PanguConfig()
        assert config.assembly.default_gas.get() == 3.5
        assert config.assembly.exchange_rates.get() == {0: 1.0, 1: 10.0}

    def test_reload_notifies_watchers(self, tmp_path):
        path = tmp_path / "pangu.yaml"
        path.write_text("wallet:\n  pending_spend_ttl_seconds: 10\n", encoding="utf-8")
        manager = ConfigManager()
        manager.load_from_file(path)
        seen = []
        manager.watch(seen.append)
        path.write_text("wallet:\n  pending_spend_ttl_seconds: 20\n", encoding="utf-8")
        manager.reload()
        assert seen == [manager.config]
        assert manager.get("wallet.pending_spend_ttl_seconds") == 20

    def test_yaml_and_schema_export(self):
        manager = ConfigManager()
        assert "draft_lease_seconds: 30.0" in manager.config.to_yaml()
        schema = manager.export_schema()
        lease = schema["properties"]["reservation"]["draft_lease_seconds"]
        assert lease["env_var"] == "PANGU_RESERVATION_LEASE"


class TestLogging:

    def test_json_events_carry_layer_context_and_correlation(self):
        stream = io.StringIO()
        configure_logging("debug", "json", stream)
        token = set_correlation_id("build-abc")
        try:
            get_logger("t", PanguLayer.ASSEMBLY).info("Hello", txid="00ff")
        finally:
            reset_correlation_id(token)
        event = json.loads(stream.getvalue().splitlines()[-1])
        assert event["message"] == "Hello"
        assert event["layer"] == "assembly"
        assert event["correlation_id"] == "build-abc"
        assert event["context"] == {"txid": "00ff"}

    def test_text_format(self):
        stream = io.StringIO()
        configure_logging("info", "text", stream)
        get_logger("t", PanguLayer.WALLET).warning("Careful", unit_id="u1")
        assert "Careful unit_id=u1" in stream.getvalue()

    def test_timed_operation_logs_failure(self):
        stream = io.StringIO()
        configure_logging("info", "json", stream)
        logger = get_logger("t", PanguLayer.SIGNING)

        @timed_operation(logger, "explode")
        def explode():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            explode()
        event = json.loads(stream.getvalue().splitlines()[-1])
        assert event["operation"] == "explode"
        assert event["level"] == "warning"
        assert "duration_ms" in event

    def test_correlation_id_created_on_demand(self):
        token = set_correlation_id("")
        try:
            assert get_correlation_id().startswith("corr-")
        finally:
            reset_correlation_id(token)
