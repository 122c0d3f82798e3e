"""Tests for the syncgc command line."""

import argparse
import json
import logging
import sys

import pytest

from syncgc.__main__ import LOG_LEVELS, JSONFormatter, _log_level, main
from syncgc.sync import ChangeStore, ChangeType


@pytest.fixture
def config_file(tmp_path):
    """Write a config pointing at a populated database."""
    db_path = tmp_path / "sync.db"
    store = ChangeStore(db_path)
    store.connect()
    with store.transaction():
        for i in range(150):
            store.append_change("items", str(i), ChangeType.CREATE)
    store.upsert_sync_node("local", "131", node_type="local")
    store.upsert_sync_node("peer-1", "140")
    store.close()

    path = tmp_path / "config.yaml"
    path.write_text(
        f"store:\n"
        f"  db_path: {db_path}\n"
        f"reclaim:\n"
        f"  continuation_delay_ms: 0\n"
    )
    return path


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["syncgc", *argv])
    return main()


class TestCLI:
    """Tests for CLI commands."""

    def test_no_command_prints_help(self, monkeypatch, capsys):
        assert _run(monkeypatch) == 1
        assert "usage" in capsys.readouterr().out

    def test_status_json(self, monkeypatch, capsys, config_file):
        """Test machine-readable status."""
        code = _run(monkeypatch, "-c", str(config_file), "status", "--json")

        data = json.loads(capsys.readouterr().out)
        assert code == 0
        assert data["watermark"] == 131
        assert data["eligible_changes"] == 130
        assert data["store"]["total_changes"] == 150
        assert data["store"]["total_nodes"] == 2

    def test_status_text(self, monkeypatch, capsys, config_file):
        """Test human-readable status."""
        code = _run(monkeypatch, "-c", str(config_file), "status")

        out = capsys.readouterr().out
        assert code == 0
        assert "Watermark: 131" in out
        assert "Eligible for reclamation: 130" in out

    def test_reclaim_json(self, monkeypatch, capsys, config_file):
        """Test draining from the command line."""
        code = _run(monkeypatch, "-c", str(config_file), "reclaim", "--json")

        data = json.loads(capsys.readouterr().out)
        assert code == 0
        assert data["deleted"] == 130
        assert data["passes"] == 2

        code = _run(monkeypatch, "-c", str(config_file), "status", "--json")
        data = json.loads(capsys.readouterr().out)
        assert data["store"]["min_rev"] == 131
        assert data["eligible_changes"] == 0

    def test_reclaim_reports_errors(self, monkeypatch, capsys, config_file):
        """Test that a failing drain exits non-zero."""
        store = ChangeStore(config_file.parent / "sync.db")
        store.connect()
        store.upsert_sync_node("broken", "not-a-revision")
        store.close()

        code = _run(monkeypatch, "-c", str(config_file), "reclaim")

        assert code == 1
        assert "Invalid revision marker" in capsys.readouterr().err

    def test_status_lists_oldest_changes(self, monkeypatch, capsys, config_file):
        """Test listing the head of the change log."""
        code = _run(
            monkeypatch, "-c", str(config_file), "status", "--json", "--changes", "3"
        )

        data = json.loads(capsys.readouterr().out)
        assert code == 0
        oldest = data["oldest_changes"]
        assert [c["rev"] for c in oldest] == [1, 2, 3]
        assert oldest[0]["table_name"] == "items"
        assert oldest[0]["obj_key"] == "0"
        assert oldest[0]["change_type"] == ChangeType.CREATE.value

    def test_status_omits_changes_by_default(self, monkeypatch, capsys, config_file):
        code = _run(monkeypatch, "-c", str(config_file), "status", "--json")

        assert code == 0
        assert json.loads(capsys.readouterr().out)["oldest_changes"] == []

    def test_status_text_lists_oldest_changes(self, monkeypatch, capsys, config_file):
        code = _run(monkeypatch, "-c", str(config_file), "status", "--changes", "2")

        out = capsys.readouterr().out
        assert code == 0
        assert "Oldest changes:" in out
        assert "rev 1: items/0" in out
        assert "rev 2: items/1" in out
        assert "rev 3:" not in out


class TestLogging:
    """Tests for CLI logging setup."""

    def _args(self, *argv):
        parser = argparse.ArgumentParser()
        parser.add_argument("-v", "--verbose", action="store_true")
        parser.add_argument("--log-level", choices=list(LOG_LEVELS), default=None)
        parser.add_argument("--json-logs", action="store_true")
        return parser.parse_args(list(argv))

    def test_default_level_is_info(self):
        assert _log_level(self._args()) == logging.INFO

    def test_verbose_enables_debug(self):
        assert _log_level(self._args("-v")) == logging.DEBUG

    def test_log_level_overrides_verbose(self):
        assert _log_level(self._args("-v", "--log-level", "warning")) == logging.WARNING

    def test_json_formatter(self):
        record = logging.LogRecord(
            "syncgc.sync.reclaimer", logging.INFO, __file__, 1,
            "deleted %d changes", (4,), None,
        )

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["component"] == "syncgc.sync.reclaimer"
        assert entry["message"] == "deleted 4 changes"
        assert "exception" not in entry

    def test_json_formatter_includes_exception(self):
        try:
            raise ValueError("bad marker")
        except ValueError:
            exc_info = sys.exc_info()
        record = logging.LogRecord(
            "syncgc", logging.ERROR, __file__, 1, "pass failed", (), exc_info,
        )

        entry = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad marker" in entry["exception"]
