"""Tests for logging configuration."""

import json
import logging

import structlog

from adauth import __version__
from adauth.logging import (
    JSONFormatter,
    add_service_context,
    configure_logging,
    get_uvicorn_log_config,
    redact_secrets,
)


def test_json_formatter() -> None:
    """Test records are rendered as one JSON object."""
    record = logging.LogRecord(
        name="uvicorn.error",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="worker %s restarted",
        args=("1",),
        exc_info=None,
    )

    entry = json.loads(JSONFormatter().format(record))

    assert entry["event"] == "worker 1 restarted"
    assert entry["level"] == "warning"
    assert entry["logger"] == "uvicorn.error"
    assert entry["timestamp"].endswith("Z")


def test_uvicorn_log_config_uses_json_formatter() -> None:
    """Test uvicorn loggers share the JSON formatter."""
    config = get_uvicorn_log_config()

    assert config["formatters"]["json"]["()"] == "adauth.logging.JSONFormatter"
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        assert config["loggers"][name]["handlers"] == ["default"]
        assert config["loggers"][name]["propagate"] is False


def test_redact_secrets_masks_credentials() -> None:
    """Test credential keys are masked whatever the caller passed."""
    event = {
        "event": "Active Directory configuration loaded",
        "bind_password": "hunter2",
        "password": "pw",
        "authorization": "Basic YWxpY2U6cHc=",
        "username": "alice",
    }

    result = redact_secrets(None, "info", event)

    assert result["bind_password"] == "***"
    assert result["password"] == "***"
    assert result["authorization"] == "***"
    assert result["username"] == "alice"


def test_redact_secrets_leaves_empty_values() -> None:
    """Test an unset password is not shown as if one were configured."""
    result = redact_secrets(None, "info", {"event": "loaded", "bind_password": ""})

    assert result["bind_password"] == ""


def test_add_service_context() -> None:
    """Test events are tagged with the service name and version."""
    result = add_service_context(None, "info", {"event": "started"})

    assert result["service"] == "adauth"
    assert result["version"] == __version__


def test_configure_logging_redacts_rendered_output(capsys) -> None:
    """Test the configured pipeline never renders a password."""
    configure_logging()
    try:
        structlog.get_logger("adauth.test").warning(
            "Config loaded", bind_password="hunter2", url="ldap://dc"
        )
        output = capsys.readouterr().err
    finally:
        structlog.reset_defaults()
        logging.getLogger().handlers.clear()

    entry = json.loads(output.strip().splitlines()[-1])
    assert "hunter2" not in output
    assert entry["bind_password"] == "***"
    assert entry["service"] == "adauth"
    assert entry["url"] == "ldap://dc"
