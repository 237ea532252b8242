"""
Tests for the medsync command line
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from medsync import cli
from medsync.negotiation import SyncStatus
from medsync.orchestrator import SyncState


class TestReceiveCommand:
    """medsync receive"""

    def test_invalid_code_exits_without_network(self, tmp_path, capsys):
        with patch("medsync.cli.HttpSessionRelay") as relay_cls, \
                patch("medsync.cli.configure_logging"):
            exit_code = cli.main(["receive", "AB1", str(tmp_path / "records.json")])

        assert exit_code == 2
        relay_cls.assert_not_called()
        assert "Invalid pairing code" in capsys.readouterr().err

    def test_valid_code_runs_receiver(self, tmp_path):
        orchestrator = MagicMock()
        orchestrator.start_receiver = AsyncMock()
        orchestrator.wait_finished = AsyncMock(return_value=SyncState(status=SyncStatus.COMPLETED))
        relay = MagicMock()
        relay.close = AsyncMock()

        with patch("medsync.cli.HttpSessionRelay", return_value=relay), \
                patch("medsync.cli.SyncOrchestrator", return_value=orchestrator), \
                patch("medsync.cli.configure_logging"):
            exit_code = cli.main(["receive", "abc def", str(tmp_path / "records.json"), "--strategy", "merge"])

        assert exit_code == 0
        assert orchestrator.start_receiver.await_args[0][0] == "ABCDEF"
        relay.close.assert_awaited_once()


class TestSendCommand:
    """medsync send"""

    def test_empty_record_file_refused(self, tmp_path, capsys):
        with patch("medsync.cli.HttpSessionRelay") as relay_cls, \
                patch("medsync.cli.configure_logging"):
            exit_code = cli.main(["send", str(tmp_path / "missing.json")])

        assert exit_code == 1
        relay_cls.assert_not_called()
        assert "empty" in capsys.readouterr().err


class TestParser:
    """Argument parsing and helpers"""

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 1
        assert "medsync" in capsys.readouterr().out

    def test_relay_override(self):
        args = cli.build_parser().parse_args(["send", "r.json", "--relay", "http://10.0.0.2:8765"])
        assert cli._settings(args).relay_url == "http://10.0.0.2:8765"

    def test_strategy_choices(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["receive", "ABCDEF", "r.json", "--strategy", "both"])

    def test_status_printer_reports_errors(self, capsys):
        printer = cli.StatusPrinter()

        printer(SyncState(status=SyncStatus.WAITING, time_remaining=125))
        printer(SyncState(status=SyncStatus.ERROR, error="Code expired"))

        captured = capsys.readouterr()
        assert "Status: waiting" in captured.out
        assert "2:05" in captured.out
        assert "Error: Code expired" in captured.err
