# =============================================================================
# tests/unit/test_errors_and_settings.py
# Unit Tests for the exception hierarchy, settings and result containers
# =============================================================================

import logging
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from casefile_core.config import Settings
from casefile_core.errors import (
    CaseFileError,
    ConfigurationError,
    ErrorContext,
    FormOutdatedError,
    IncorrectFormatError,
    NetworkError,
    PersistenceError,
    ValidationError,
    handle_error,
    safe_execute,
)
from casefile_core.logging import LogContext, setup_logging
from casefile_core.services.base_service import BaseService, ServiceResult

ENV_KEYS = (
    "CASEFILE_DB_PATH", "CASEFILE_CACHE_DIR", "CASEFILE_GATEWAY", "SUPABASE_URL",
    "SUPABASE_KEY", "CASEFILE_API_URL", "CASEFILE_API_TOKEN", "CASEFILE_REQUEST_TIMEOUT",
    "CASEFILE_SYNC_BATCH_SIZE", "CASEFILE_SYNC_INTERVAL", "CASEFILE_FETCH_WORKERS",
    "CASEFILE_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    # Point dotenv at an empty file so a developer's .env does not leak in
    env_file = tmp_path / ".env"
    env_file.write_text("")
    return env_file


class TestExceptions:
    """Test error codes and serialization"""

    def test_codes(self):
        assert NetworkError("x").code == "NET_001"
        assert IncorrectFormatError("x").code == "FMT_001"
        assert PersistenceError("x").code == "STORE_001"
        assert ValidationError("x").code == "VAL_001"
        assert ConfigurationError("x").code == "CONFIG_001"
        assert CaseFileError("x").code == "CF_000"

    def test_recoverability(self):
        assert NetworkError("x").recoverable
        assert not PersistenceError("x").recoverable
        assert not ConfigurationError("x").recoverable

    def test_to_dict_and_str(self):
        error = NetworkError("Remote unreachable", endpoint="v1/form", status_code=502)

        data = error.to_dict()

        assert data["error_type"] == "NetworkError"
        assert data["details"] == {"endpoint": "v1/form", "status_code": 502}
        assert str(error).startswith("[NET_001] Remote unreachable")

    def test_all_share_base(self):
        for cls in (NetworkError, IncorrectFormatError, PersistenceError, ValidationError, ConfigurationError):
            assert issubclass(cls, CaseFileError)


class TestServiceResult:
    """Test the result container and BaseService.safe_execute"""

    def test_from_exception(self):
        result = ServiceResult.from_exception(ValidationError("Missing", fields=["Name"]))

        assert not result
        assert result.error_code == "VAL_001"
        assert result.metadata["fields"] == ["Name"]
        assert result.recoverable
        assert not ServiceResult.from_exception(PersistenceError("disk full")).recoverable

    def test_safe_execute_wraps_outcomes(self):
        class Echo(BaseService):
            pass

        service = Echo()

        assert service.safe_execute("echo", lambda: 3).data == 3
        failed = service.safe_execute("boom", lambda: 1 / 0)
        assert not failed.success
        assert failed.error_code == "UNKNOWN"

    def test_safe_execute_logs_failure_with_traceback(self, caplog):
        class Echo(BaseService):
            pass

        def fetch():
            raise NetworkError("down")

        with caplog.at_level(logging.INFO):
            result = Echo().safe_execute("Fetching counties", fetch)

        assert result.error_code == "NET_001"

        failed = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert failed[0].getMessage().startswith("Fetching counties... failed")
        assert failed[0].exc_info is not None


@pytest.fixture
def page(monkeypatch):
    """Streamlit calls made by the error handlers"""
    mock_st = MagicMock()
    mock_st.session_state = {}
    monkeypatch.setattr("casefile_core.errors.handlers.st", mock_st)
    return mock_st


class TestHandlers:
    """Test how errors reach the page"""

    def test_network_errors_are_warnings(self, page):
        info = handle_error(NetworkError("Remote unreachable"))

        assert info["code"] == "NET_001"
        page.warning.assert_called_once()
        assert "kept on this device" in page.warning.call_args[0][0]
        page.error.assert_not_called()

    def test_unrecoverable_errors_are_critical(self, page):
        handle_error(PersistenceError("disk full"))

        assert page.error.call_args[0][0].startswith("Critical Error: disk full")

    def test_debug_mode_shows_details(self, page):
        page.session_state["debug_mode"] = True

        handle_error(FormOutdatedError(10, 1, 2))

        page.json.assert_called_once_with({"form_id": 10, "view_version": 1, "current_version": 2})

    def test_safe_execute_returns_default(self, page):
        def fail():
            raise NetworkError("down")

        assert safe_execute(fail, default=[], error_message="Counties could not be loaded") == []
        assert page.warning.call_args[0][0].startswith("Counties could not be loaded")
        assert safe_execute(lambda x: x * 2, 4) == 8

    def test_error_context_records_and_suppresses(self, page):
        with ErrorContext("Saving answer") as ctx:
            raise FormOutdatedError(10, 1, 2)

        assert ctx.failed
        assert isinstance(ctx.error, FormOutdatedError)
        page.error.assert_called_once()
        page.success.assert_not_called()

    def test_error_context_success_message(self, page):
        with ErrorContext("Checking mandatory questions", success_message="Form complete") as ctx:
            pass

        assert not ctx.failed
        page.success.assert_called_once_with("Form complete")

    def test_error_context_lets_interrupts_through(self, page):
        with pytest.raises(KeyboardInterrupt):
            with ErrorContext("Saving answer"):
                raise KeyboardInterrupt


class TestLogging:
    """Test timed operation logging and log setup"""

    def test_context_labels_every_line(self, caplog):
        logger = logging.getLogger("casefile_core.test")

        with caplog.at_level(logging.DEBUG, logger="casefile_core.test"):
            with LogContext(logger, "Saving answers", level=logging.DEBUG, form=10, question=101) as ctx:
                pass

        messages = [r.getMessage() for r in caplog.records]
        assert messages[0] == "Saving answers [form=10 question=101]... started"
        assert messages[1].startswith("Saving answers [form=10 question=101]... completed")
        assert all(r.levelno == logging.DEBUG for r in caplog.records)
        assert ctx.elapsed is not None

    def test_failure_logged_at_error_and_reraised(self, caplog):
        logger = logging.getLogger("casefile_core.test")

        with caplog.at_level(logging.DEBUG, logger="casefile_core.test"):
            with pytest.raises(PersistenceError):
                with LogContext(logger, "Syncing answers", level=logging.DEBUG):
                    raise PersistenceError("disk full")

        assert caplog.records[-1].levelno == logging.ERROR
        assert "Syncing answers... failed" in caplog.records[-1].getMessage()

    def test_setup_logging_writes_daily_file(self, tmp_path):
        root = logging.getLogger()
        previous = (root.level, list(root.handlers))
        try:
            log_path = setup_logging(logging.DEBUG, log_dir=tmp_path / "logs")
            logging.getLogger("casefile_core.test").info("hello")
            for handler in root.handlers:
                handler.flush()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers = previous[1]
            root.setLevel(previous[0])

        assert log_path.parent == tmp_path / "logs"
        assert log_path.name.startswith("casefile_")
        assert "hello" in log_path.read_text()


class TestSettings:
    """Test configuration loading and validation"""

    def test_defaults(self, clean_env, mock_streamlit):
        settings = Settings.load(str(clean_env))

        assert settings.gateway_provider == "supabase"
        assert settings.sync_batch_size == 50
        assert settings.log_level_value == logging.INFO
        assert settings.log_dir == settings.db_path.parent / "logs"

    def test_environment_overrides(self, clean_env, mock_streamlit, monkeypatch):
        monkeypatch.setenv("CASEFILE_GATEWAY", "http")
        monkeypatch.setenv("CASEFILE_API_URL", "https://casefile.test/api")
        monkeypatch.setenv("CASEFILE_SYNC_INTERVAL", "5")
        monkeypatch.setenv("CASEFILE_DB_PATH", "/tmp/field.db")
        monkeypatch.setenv("CASEFILE_LOG_LEVEL", "debug")

        settings = Settings.load(str(clean_env))

        assert settings.remote_url == "https://casefile.test/api"
        assert settings.sync_interval == 5
        assert settings.db_path == Path("/tmp/field.db")
        assert settings.log_level_value == logging.DEBUG
        settings.validate()

    def test_streamlit_secrets_fill_gaps(self, clean_env, mock_streamlit, monkeypatch):
        mock_streamlit.secrets = {
            "supabase": {"url": "https://proj.supabase.co", "key": "anon"},
            "casefile": {"sync_batch_size": 10},
        }
        monkeypatch.setenv("SUPABASE_KEY", "from-env")

        settings = Settings.load(str(clean_env))

        assert settings.supabase_url == "https://proj.supabase.co"
        assert settings.supabase_key == "from-env"
        assert settings.sync_batch_size == 10
        assert settings.remote_url == "https://proj.supabase.co"

    def test_validate_rejects_bad_values(self):
        with pytest.raises(ConfigurationError):
            Settings(gateway_provider="http").validate()
        with pytest.raises(ConfigurationError):
            Settings(gateway_provider="carrier-pigeon").validate()
        with pytest.raises(ConfigurationError):
            Settings(
                gateway_provider="http", api_base_url="https://x", sync_batch_size=0
            ).validate()
