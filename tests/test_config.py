"""Tests for config.py environment variable parsing, validation and logging setup."""

import json
import logging
import os
from unittest import mock

import pytest

from config import (
    REQUIRED_ENV_VARS,
    ConfigError,
    JsonLogFormatter,
    configure_logging,
    get_bool_env,
    get_float_env,
    get_int_env,
    missing_required_env_vars,
    validate_config,
)


class TestGetIntEnv:
    """Tests for get_int_env helper function."""

    def test_returns_default_when_env_not_set(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("NONEXISTENT_VAR", 42) == 42

    def test_parses_valid_integer(self):
        with mock.patch.dict(os.environ, {"TEST_INT": "123"}):
            assert get_int_env("TEST_INT", 0) == 123

    def test_returns_default_on_invalid_value(self, caplog):
        with mock.patch.dict(os.environ, {"TEST_INT": "abc"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 42) == 42
        assert "Invalid TEST_INT='abc'" in caplog.text

    def test_min_validation_enforced(self, caplog):
        with mock.patch.dict(os.environ, {"TEST_INT": "0"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 10, min_val=1) == 10
        assert "below minimum" in caplog.text

    def test_max_validation_enforced(self, caplog):
        with mock.patch.dict(os.environ, {"TEST_INT": "70000"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 3000, max_val=65535) == 3000
        assert "above maximum" in caplog.text

    def test_value_within_range_accepted(self):
        with mock.patch.dict(os.environ, {"TEST_INT": "8080"}):
            assert get_int_env("TEST_INT", 3000, min_val=1, max_val=65535) == 8080


class TestGetFloatEnv:
    """Tests for get_float_env helper function."""

    def test_parses_valid_float(self):
        with mock.patch.dict(os.environ, {"TEST_FLOAT": "2.5"}):
            assert get_float_env("TEST_FLOAT", 1.0) == 2.5

    @pytest.mark.parametrize("value", ["inf", "-inf", "nan", "abc"])
    def test_rejects_special_and_invalid(self, value):
        with mock.patch.dict(os.environ, {"TEST_FLOAT": value}):
            assert get_float_env("TEST_FLOAT", 1.0) == 1.0

    def test_min_validation_enforced(self):
        with mock.patch.dict(os.environ, {"TEST_FLOAT": "0.01"}):
            assert get_float_env("TEST_FLOAT", 15.0, min_val=0.1) == 15.0


class TestGetBoolEnv:
    @pytest.mark.parametrize("value", ["true", "TRUE", "1", "yes", "on", " true "])
    def test_truthy(self, value):
        with mock.patch.dict(os.environ, {"TEST_BOOL": value}):
            assert get_bool_env("TEST_BOOL", False) is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "off", ""])
    def test_falsy(self, value):
        with mock.patch.dict(os.environ, {"TEST_BOOL": value}):
            assert get_bool_env("TEST_BOOL", True) is False

    def test_default_when_unset(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_bool_env("TEST_BOOL", True) is True


class TestValidateConfig:
    """Startup fails fast when required settings are missing."""

    def _complete_env(self):
        return {name: "value" for name in REQUIRED_ENV_VARS}

    def test_complete_config_passes(self):
        with mock.patch.dict(os.environ, self._complete_env(), clear=True):
            assert missing_required_env_vars() == []
            validate_config()

    def test_lists_every_missing_variable(self):
        env = self._complete_env()
        del env["PUBLISHER_S3_BUCKET"]
        env["PUBLISHER_ORIGIN_SECRET"] = "   "

        with mock.patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigError) as exc_info:
                validate_config()

        message = str(exc_info.value)
        assert "PUBLISHER_S3_BUCKET" in message
        assert "PUBLISHER_ORIGIN_SECRET" in message
        assert "PUBLISHER_CDN_BASE_URL" not in message


class TestLogging:
    def test_json_formatter_includes_extra_fields(self):
        record = logging.LogRecord("worker.publisher", logging.INFO, __file__, 1, "Claimed job %s", (7,), None)
        record.job_id = 7

        entry = json.loads(JsonLogFormatter().format(record))

        assert entry["message"] == "Claimed job 7"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "worker.publisher"
        assert entry["job_id"] == 7

    def test_json_formatter_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            import sys

            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JsonLogFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]

    def test_configure_logging_sets_level_and_format(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_logging("debug", "json")
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JsonLogFormatter)

            configure_logging("nonsense", "text")
            assert root.level == logging.INFO
            assert not isinstance(root.handlers[0].formatter, JsonLogFormatter)
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
