"""Tests for the build manifest."""

import json
from unittest.mock import patch

import pytest

from ripple.exceptions import ManifestPersistenceError
from ripple.workflow.state import (
    SCHEMA_VERSION,
    Manifest,
    NodeState,
    Phase,
    PhaseState,
    PhaseStatus,
    load_manifest,
    save_manifest,
)


class TestPhaseTransitions:
    """Test mark/reset operations."""

    def test_success_records_fingerprint_and_clears_error(self, empty_manifest):
        m = empty_manifest
        m.mark_phase("utils", Phase.BUILD, error="boom")
        m.mark_phase("utils", Phase.BUILD, fingerprint="sha1")

        ps = m.phase_state("utils", "build")
        assert ps.status == "success"
        assert ps.error == ""
        assert ps.fingerprint == "sha1"
        assert ps.last_attempt

    def test_failure_keeps_last_success_fingerprint(self, empty_manifest):
        m = empty_manifest
        m.mark_phase("utils", "build", fingerprint="sha1")
        m.mark_phase("utils", "build", error="compilation failed")

        ps = m.phase_state("utils", "build")
        assert ps.status == "failed"
        assert ps.error == "compilation failed"
        assert m.fingerprint_of("utils") == "sha1"
        assert not m.is_succeeded_at("utils", "build", "sha1")

    def test_is_succeeded_at(self, empty_manifest):
        m = empty_manifest
        m.mark_phase("app", "build", fingerprint="sha2")
        assert m.is_succeeded_at("app", "build", "sha2")
        assert not m.is_succeeded_at("app", "build", "sha3")
        assert not m.is_succeeded_at("app", "build", None)
        assert not m.is_succeeded_at("other", "build", "sha2")

    def test_mark_skipped(self, empty_manifest):
        empty_manifest.mark_skipped("docs", "build")
        assert empty_manifest.phase_state("docs", "build").status == "skipped"
        assert empty_manifest.succeeded("build") == ["docs"]

    def test_phases_are_independent(self, empty_manifest):
        m = empty_manifest
        m.mark_phase("utils", Phase.CLONE, fingerprint="c1")
        m.mark_phase("utils", Phase.BUILD, error="failed")
        assert m.succeeded("clone") == ["utils"]
        assert m.failed("build") == ["utils"]

    def test_reset_failed(self, empty_manifest):
        m = empty_manifest
        m.mark_phase("parent", "build", fingerprint="p1")
        m.mark_phase("utils", "build", error="boom")
        m.mark_complete()

        assert m.reset_failed() == ["utils"]

        assert m.phase_state("utils", "build").status == "pending"
        assert m.phase_state("utils", "build").error == ""
        assert m.phase_state("parent", "build").status == "success"
        assert m.completed_at is None
        assert m.failed("build") == []
        assert m.pending("build") == ["utils"]

    def test_reset_all(self, empty_manifest):
        m = empty_manifest
        m.mark_phase("parent", "build", fingerprint="p1")
        m.mark_phase("utils", "clone", error="boom")
        m.reset_all()

        assert m.pending("build") == ["parent", "utils"]
        assert m.fingerprint_of("parent") == ""
        assert m.phase_state("utils", "clone").status == "pending"

    def test_mark_pending_clears_stale_error(self, empty_manifest):
        m = empty_manifest
        m.mark_phase("utils", "build", fingerprint="u1")
        m.mark_phase("utils", "build", error="exit code 1")
        m.mark_complete()

        m.mark_pending(["utils"], "build")

        ps = m.phase_state("utils", "build")
        assert ps.status == "pending"
        assert ps.error == ""
        assert ps.fingerprint == "u1"
        assert m.completed_at is None


class TestQueries:
    """Test pending/failed/succeeded/complete queries."""

    def test_ensure_nodes_populates_pending(self, empty_manifest):
        empty_manifest.ensure_nodes(["a", "b"], ["clone", "build"])
        assert empty_manifest.pending("clone") == ["a", "b"]
        assert empty_manifest.pending("build") == ["a", "b"]

    def test_pending_includes_failed(self, empty_manifest):
        m = empty_manifest
        m.ensure_nodes(["a", "b", "c"], ["build"])
        m.mark_phase("a", "build", fingerprint="x")
        m.mark_phase("b", "build", error="boom")
        assert m.pending("build") == ["b", "c"]
        assert m.failed("build") == ["b"]
        assert m.succeeded("build") == ["a"]

    def test_is_complete_requires_marker(self, empty_manifest):
        m = empty_manifest
        m.mark_phase("a", "build", fingerprint="x")
        m.mark_skipped("b", "build")
        assert not m.is_complete(["build"])
        m.mark_complete()
        assert m.is_complete(["build"])

    def test_is_complete_requires_every_phase(self, empty_manifest):
        m = empty_manifest
        m.mark_phase("a", "clone", fingerprint="x")
        m.mark_complete()
        assert m.is_complete(["clone"])
        assert not m.is_complete(["clone", "build"])

    def test_summary(self, empty_manifest):
        m = empty_manifest
        m.ensure_nodes(["a", "b", "c", "d"], ["build"])
        m.mark_phase("a", "build", fingerprint="x")
        m.mark_skipped("b", "build")
        m.mark_phase("c", "build", error="boom")

        s = m.summary("build")
        assert (s.total, s.ok, s.failed, s.pending) == (4, 2, 1, 1)


class TestSerialization:
    """Test to_dict/from_dict and legacy formats."""

    def test_roundtrip(self, empty_manifest):
        m = empty_manifest
        m.save_settings("build", {"skip_tests": True})
        m.mark_phase("parent", "build", fingerprint="p1")
        m.mark_phase("utils", "build", error="boom")
        m.mark_skipped("docs", "clone")
        m.mark_complete()

        restored = Manifest.from_json(m.to_json())

        assert restored.to_dict() == m.to_dict()
        assert restored.schema_version == SCHEMA_VERSION
        assert restored.settings_for("build") == {"skip_tests": True}
        assert restored.phase_state("utils", "build").error == "boom"

    def test_missing_fields_get_defaults(self):
        m = Manifest.from_dict({"nodes": {"a": {"phases": {"build": {}}}}})
        assert m.phase_state("a", "build").status == "pending"
        assert m.settings == {}
        assert m.completed_at is None

    def test_unknown_fields_and_statuses_are_tolerated(self):
        m = Manifest.from_dict({
            "schema_version": 2,
            "extra": "ignored",
            "nodes": {
                "a": {"phases": {"build": {"status": "exploded", "color": "red"}}},
            },
        })
        assert m.phase_state("a", "build").status == "pending"

    def test_v1_build_manifest_migration(self):
        old = {
            "version": 1,
            "updated_at": "2025-01-01T00:00:00Z",
            "repos": {
                "utils": {
                    "last_build_sha": "abc",
                    "last_build_time": "2025-01-01T00:00:00Z",
                    "artifact_version": "1.0.0",
                    "status": "success",
                },
                "app": {"last_build_sha": "def", "status": "failed", "error": "boom"},
            },
        }
        m = Manifest.from_dict(old)
        assert m.schema_version == SCHEMA_VERSION
        assert m.fingerprint_of("utils") == "abc"
        assert m.is_succeeded_at("utils", "build", "abc")
        assert m.phase_state("app", "build").status == "failed"
        assert m.phase_state("app", "build").error == "boom"
        assert m.fingerprint_of("app") == ""

    def test_v1_setup_manifest_migration(self):
        old = {
            "version": 1,
            "started_at": "2025-01-01T00:00:00Z",
            "skip_tests": True,
            "repos": {
                "utils": {
                    "clone_status": "success",
                    "install_status": "failed",
                    "install_error": "tests failed",
                    "commit_sha": "abc",
                },
            },
        }
        m = Manifest.from_dict(old)
        assert m.phase_state("utils", "clone").is_success()
        assert m.phase_state("utils", "build").error == "tests failed"
        assert m.settings == {"build": {"skip_tests": True}}

    def test_settings_are_kept_per_phase(self, empty_manifest):
        m = empty_manifest
        m.save_settings(Phase.BUILD, {"skip_tests": True})
        m.save_settings(Phase.CLONE, {})

        restored = Manifest.from_json(m.to_json())
        assert restored.settings_for(Phase.BUILD) == {"skip_tests": True}
        assert restored.settings_for("clone") == {}
        assert restored.settings_for("deploy") == {}

    def test_flat_settings_belong_to_build(self):
        m = Manifest.from_dict({"nodes": {}, "settings": {"skip_tests": True}})
        assert m.settings == {"build": {"skip_tests": True}}


class TestPersistence:
    """Test save/load with file I/O."""

    def test_save_and_load(self, tmp_path, empty_manifest):
        path = tmp_path / "home" / "build-manifest.json"
        empty_manifest.mark_phase("a", "build", fingerprint="x")
        save_manifest(empty_manifest, path)

        assert path.exists()
        assert not path.with_suffix(".json.tmp").exists()
        data = json.loads(path.read_text())
        assert data["nodes"]["a"]["phases"]["build"]["fingerprint"] == "x"

        loaded = load_manifest(path)
        assert loaded.is_succeeded_at("a", "build", "x")

    def test_load_missing_file_returns_fresh(self, tmp_path):
        m = load_manifest(tmp_path / "none.json")
        assert m.nodes == {}

    def test_load_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "build-manifest.json"
        path.write_text("{not json")
        with pytest.raises(ManifestPersistenceError):
            load_manifest(path)

    def test_load_or_new_degrades_with_warning(self, tmp_path, caplog):
        path = tmp_path / "build-manifest.json"
        path.write_text("[1, 2, 3]")
        m = Manifest.load_or_new(path)
        assert m.nodes == {}
        assert "starting from an empty manifest" in caplog.text

    def test_save_failure_raises_and_keeps_previous(self, tmp_path, empty_manifest):
        path = tmp_path / "build-manifest.json"
        save_manifest(empty_manifest, path)
        previous = path.read_text()

        empty_manifest.mark_phase("a", "build", fingerprint="x")
        with patch("ripple.workflow.state.open", side_effect=OSError("disk full"), create=True):
            with pytest.raises(ManifestPersistenceError, match="disk full"):
                save_manifest(empty_manifest, path)

        assert path.read_text() == previous


class TestNodeState:
    def test_phase_creates_pending_entry(self):
        state = NodeState()
        assert state.get("build") is None
        assert state.phase(Phase.BUILD).status == PhaseStatus.PENDING.value
        assert "build" in state.phases

    def test_phase_state_to_dict_omits_empty_fields(self):
        assert PhaseState().to_dict() == {"status": "pending"}
