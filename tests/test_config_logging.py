"""
Tests for settings and structured logging
"""

import json
import logging

import pytest
from pydantic import ValidationError

from medsync.config import MedSyncSettings
from medsync.logging_config import StructuredLogFormatter, configure_logging, sync_session_ctx


class TestSettings:
    """MedSyncSettings"""

    def test_defaults(self, tmp_path):
        settings = MedSyncSettings(data_dir=tmp_path)

        assert settings.session_ttl_seconds == 300
        assert settings.poll_interval_seconds == 2.0
        assert settings.sender_grace_seconds == 1.0
        assert settings.receiver_grace_seconds == 0.5
        assert settings.channel_label == "medications"
        assert settings.ice_servers[0] == "stun:stun.l.google.com:19302"
        assert settings.relay_db_path == tmp_path / "sync_sessions.db"

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEDSYNC_RELAY_URL", "http://192.168.1.20:8765")
        monkeypatch.setenv("MEDSYNC_POLL_INTERVAL_SECONDS", "0.5")

        settings = MedSyncSettings(data_dir=tmp_path)

        assert settings.relay_url == "http://192.168.1.20:8765"
        assert settings.poll_interval_seconds == 0.5

    def test_data_dir_created(self, tmp_path):
        target = tmp_path / "a" / "b"
        MedSyncSettings(data_dir=target)
        assert target.is_dir()

    def test_ttl_must_be_positive(self, tmp_path):
        with pytest.raises(ValidationError):
            MedSyncSettings(data_dir=tmp_path, session_ttl_seconds=0)


class TestStructuredLogFormatter:
    """JSON log lines carry the sync session id"""

    def _record(self, **extra):
        record = logging.LogRecord("medsync.test", logging.INFO, __file__, 10, "Answer received", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_includes_session_and_extras(self):
        token = sync_session_ctx.set("sess-42")
        try:
            line = StructuredLogFormatter().format(self._record(path="poll", role="sender"))
        finally:
            sync_session_ctx.reset(token)

        data = json.loads(line)
        assert data["message"] == "Answer received"
        assert data["session_id"] == "sess-42"
        assert data["path"] == "poll"
        assert data["role"] == "sender"

    def test_no_session_id_outside_transfer(self):
        data = json.loads(StructuredLogFormatter().format(self._record()))
        assert "session_id" not in data

    def test_configure_logging_installs_formatter(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging(level="debug", structured=True)

            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, StructuredLogFormatter)
            assert logging.getLogger("aioice").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
