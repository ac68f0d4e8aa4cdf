"""Tests for env and file system helpers."""

import io
import logging
import sys

from safepoint.utils.env import env_int, env_list, is_debug_mode
from safepoint.utils.fs import atomic_write, locked_append, safe_json_load
from safepoint.utils.log import configure_logging


class TestEnv:
    def test_env_int(self, monkeypatch):
        monkeypatch.setenv("SAFEPOINT_X", " 12 ")
        assert env_int("SAFEPOINT_X") == 12

    def test_env_int_malformed(self, monkeypatch, caplog):
        monkeypatch.setenv("SAFEPOINT_X", "twelve")
        with caplog.at_level(logging.WARNING):
            assert env_int("SAFEPOINT_X") is None
        assert "not an integer" in caplog.text

    def test_env_int_below_minimum(self, monkeypatch):
        monkeypatch.setenv("SAFEPOINT_X", "-1")
        assert env_int("SAFEPOINT_X") is None

    def test_env_list(self, monkeypatch):
        monkeypatch.setenv("SAFEPOINT_X", "a, ,b")
        assert env_list("SAFEPOINT_X") == ["a", "b"]
        assert env_list("SAFEPOINT_UNSET") is None

    def test_debug_mode(self, monkeypatch):
        assert not is_debug_mode()
        monkeypatch.setenv("SAFEPOINT_DEBUG", "yes")
        assert is_debug_mode()


class TestFs:
    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "nested" / "out.json"
        atomic_write(target, '{"a": 1}')
        assert safe_json_load(target) == {"a": 1}
        assert [p.name for p in target.parent.iterdir()] == ["out.json"]

    def test_safe_json_load_invalid(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        assert safe_json_load(bad) == {}
        assert safe_json_load(tmp_path / "missing.json", []) == []

    def test_locked_append(self, tmp_path):
        log = tmp_path / "state" / "log.md"
        with locked_append(log) as f:
            f.write("one\n")
        with locked_append(log) as f:
            f.write("two\n")
        assert log.read_text() == "one\ntwo\n"


class TestLogging:
    def test_reconfigure_after_stderr_closed(self, monkeypatch):
        first = io.StringIO()
        monkeypatch.setattr(sys, "stderr", first)
        configure_logging()
        first.close()

        second = io.StringIO()
        monkeypatch.setattr(sys, "stderr", second)
        configure_logging()
        logging.getLogger("safepoint.core").warning("still writable")

        assert "[safepoint] WARNING safepoint.core: still writable" in second.getvalue()
        handlers = [h for h in logging.getLogger("safepoint").handlers if getattr(h, "_safepoint", False)]
        assert len(handlers) == 1
