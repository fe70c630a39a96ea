"""Tests for structured logging."""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import threading
from pathlib import Path

from caplife.logging import setup_logging


def _records(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


class TestSetupLogging:
    def test_creates_log_file(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.info("registered", extra={"template_id": "tpl-web", "operation": "register"})
        for handler in logger.handlers:
            handler.flush()
        log_path = tmp_path / "caplife.log"
        assert log_path.exists()
        record = _records(log_path)[-1]
        assert record["msg"] == "registered"
        assert record["level"] == "INFO"
        assert record["logger"] == "caplife"
        assert record["template_id"] == "tpl-web"
        assert record["operation"] == "register"

    def test_json_format(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.warning("rollback", extra={"duration_ms": 42.5, "error": "boom"})
        for handler in logger.handlers:
            handler.flush()
        record = _records(tmp_path / "caplife.log")[-1]
        assert record["duration_ms"] == 42.5
        assert record["error"] == "boom"

    def test_unknown_extras_are_dropped(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.info("plain", extra={"unrelated": 1})
        for handler in logger.handlers:
            handler.flush()
        assert "unrelated" not in _records(tmp_path / "caplife.log")[-1]

    def test_child_loggers_propagate(self, tmp_path: Path) -> None:
        setup_logging(tmp_path)
        child = logging.getLogger("caplife.health")
        child.warning("Health failed for tpl-web v1", extra={"template_id": "tpl-web"})
        for handler in logging.getLogger("caplife").handlers:
            handler.flush()
        record = _records(tmp_path / "caplife.log")[-1]
        assert record["logger"] == "caplife.health"

    def test_idempotent_setup(self, tmp_path: Path) -> None:
        logger1 = setup_logging(tmp_path)
        logger2 = setup_logging(tmp_path)
        assert logger1 is logger2
        assert len(logger1.handlers) == 1

    def test_new_directory_replaces_handler(self, tmp_path: Path) -> None:
        first = tmp_path / "one"
        second = tmp_path / "two"
        first.mkdir()
        second.mkdir()
        setup_logging(first)
        logger = setup_logging(second)
        assert len(logger.handlers) == 1
        handler = logger.handlers[0]
        assert isinstance(handler, logging.handlers.RotatingFileHandler)
        assert handler.baseFilename == os.path.abspath(str(second / "caplife.log"))

    def test_no_duplicate_handlers_via_symlink(self, tmp_path: Path) -> None:
        real_dir = tmp_path / "real"
        real_dir.mkdir()
        link_dir = tmp_path / "link"
        os.symlink(str(real_dir), str(link_dir))
        logger1 = setup_logging(link_dir)
        logger2 = setup_logging(link_dir)
        assert logger1 is logger2
        assert len(logger1.handlers) == 1

    def test_no_duplicate_handlers_under_concurrency(self, tmp_path: Path) -> None:
        results: list[logging.Logger] = []
        barrier = threading.Barrier(4)

        def call_setup() -> None:
            barrier.wait()
            results.append(setup_logging(tmp_path))

        threads = [threading.Thread(target=call_setup) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 4
        assert all(r is results[0] for r in results)
        logger = logging.getLogger("caplife")
        file_handlers = [
            h
            for h in logger.handlers
            if isinstance(h, logging.handlers.RotatingFileHandler)
            and h.baseFilename == os.path.abspath(str(tmp_path / "caplife.log"))
        ]
        assert len(file_handlers) == 1, f"Expected 1 handler, got {len(file_handlers)}"

    def test_level_from_config(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path, level="warning")
        logger.info("quiet")
        logger.warning("loud", extra={"plan_id": "mig-1", "actor": "ops"})
        for handler in logger.handlers:
            handler.flush()
        [record] = _records(tmp_path / "caplife.log")
        assert (record["msg"], record["plan_id"], record["actor"]) == ("loud", "mig-1", "ops")

    def test_exception_names_its_type(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        try:
            raise KeyError("tpl-ghost")
        except KeyError:
            logger.exception("lookup failed")
        for handler in logger.handlers:
            handler.flush()
        assert _records(tmp_path / "caplife.log")[-1]["exception"] == "KeyError: 'tpl-ghost'"

    def teardown_method(self) -> None:
        """Clean up the caplife logger handlers and level between tests."""
        logger = logging.getLogger("caplife")
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)
