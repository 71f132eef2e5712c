"""Tests for build and run log writers."""

from unittest.mock import patch

import pytest

from ripple.workflow.run_logger import RunLogger, node_log_path, write_node_log


@pytest.fixture
def logs_dir(tmp_path):
    return tmp_path / "logs"


class TestWriteNodeLog:
    """Tests for per-node failure logs."""

    def test_writes_header_and_output(self, logs_dir):
        path = write_node_log(logs_dir, "utils", "[ERROR] BUILD FAILURE\n")

        assert path == logs_dir / "utils.log"
        content = path.read_text()
        lines = content.splitlines()
        assert lines[0] == "=== Build log for utils ==="
        assert lines[1].startswith("=== ") and lines[1].endswith(" ===")
        assert lines[2] == ""
        assert lines[3] == "[ERROR] BUILD FAILURE"

    def test_overwrites_previous_log(self, logs_dir):
        write_node_log(logs_dir, "utils", "first")
        write_node_log(logs_dir, "utils", "second")
        content = node_log_path(logs_dir, "utils").read_text()
        assert "second" in content
        assert "first" not in content

    def test_write_error_is_not_fatal(self, logs_dir, caplog):
        with patch("pathlib.Path.write_text", side_effect=OSError("read-only")):
            assert write_node_log(logs_dir, "utils", "x") is None
        assert "Could not write build log for utils" in caplog.text


class TestRunLogger:
    """Tests for RunLogger class."""

    def test_log_node_records_entry(self, logs_dir):
        logger = RunLogger(logs_dir, "20260101_120000", "build")
        logger.log_node("utils", "success", layer=1, duration_seconds=1.5)

        assert len(logger.entries) == 1
        assert logger.entries[0].node_id == "utils"
        assert logger.entries[0].layer == 1

    def test_log_path(self, logs_dir):
        logger = RunLogger(logs_dir, "20260101_120000", "build")
        assert logger.log_path == logs_dir / "run_20260101_120000.log"

    def test_write_skips_without_failures(self, logs_dir):
        logger = RunLogger(logs_dir, "20260101_120000", "build")
        logger.log_node("utils", "success")
        assert logger.has_failures is False
        assert logger.write() is None
        assert not logger.log_path.exists()

    def test_write_on_failure_lists_failed_nodes_only(self, logs_dir):
        logger = RunLogger(logs_dir, "20260101_120000", "build", flags=["--skip-tests"])
        logger.log_node("parent", "success", duration_seconds=2.0)
        logger.log_node(
            "utils",
            "failed",
            layer=1,
            error_message="exit code 1",
            output_log="line one\nline two",
            attempt=2,
        )

        path = logger.write()

        content = path.read_text()
        assert "=== Ripple Run Log ===" in content
        assert "Flags:     --skip-tests" in content
        assert "--- utils [FAILED] (layer 1, attempt 2) ---" in content
        assert "Error:     exit code 1" in content
        assert "  line two" in content
        assert "--- parent" not in content
        assert "Total: 2 | Succeeded: 1 | Skipped: 0 | Failed: 1" in content

    def test_verbose_writes_every_node(self, logs_dir):
        logger = RunLogger(logs_dir, "20260101_120000", "clone", verbose=True)
        logger.log_node("parent", "success")
        logger.log_node("docs", "skipped")

        content = logger.write().read_text()
        assert "Phase:     clone" in content
        assert "--- parent [SUCCESS]" in content
        assert "--- docs [SKIPPED]" in content
