"""Tests for the version ledger."""

import json
from unittest.mock import patch

import pytest

from appforge.errors import (
    AppExistsError,
    AppNotFoundError,
    LedgerReadFailure,
    LedgerWriteFailure,
    ValidationError,
    VersionNotFoundError,
)
from appforge.ledger import (
    App,
    DockerStatus,
    Version,
    VersionLedger,
    container_name_for,
    parse_version,
    version_bump,
)


def make_version(version="v1.0.0", files=("server.js",), **kwargs):
    return Version(
        version=version,
        prompt="todo app",
        files=list(files),
        file_hashes={f: f"hash-{f}-{version}" for f in files},
        docker_status=DockerStatus.RUNNING,
        is_active=True,
        **kwargs,
    )


@pytest.fixture
def ledger(tmp_path):
    return VersionLedger(tmp_path / "apps.json").open()


@pytest.fixture
def registered(ledger):
    ledger.register_app(App(name="todo", port=3100), make_version())
    return ledger


class TestVersionBump:
    """Tests for version identifiers."""

    def test_manifest_change_bumps_minor(self):
        assert version_bump("v1.2.3", {"package.json", "server.js"}) == "v1.3.0"

    def test_other_change_bumps_patch(self):
        assert version_bump("v1.2.3", {"src/App.jsx"}) == "v1.2.4"

    def test_major_never_moves(self):
        assert version_bump("v9.9.9", {"package.json"}).startswith("v9.")

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValidationError):
            parse_version("latest")

    def test_parse_accepts_missing_prefix(self):
        assert parse_version("1.0.2") == (1, 0, 2)

    def test_container_name(self):
        assert container_name_for("todo-list", "v1.0.1") == "todo-list-v1-0-1"


class TestLifecycle:
    """Tests for open / flush / close."""

    def test_fresh_ledger_seeds_next_port(self, tmp_path):
        ledger = VersionLedger(tmp_path / "apps.json", base_port=4000).open()
        assert ledger.data.next_port == 4000
        assert ledger.apps() == []

    def test_round_trip_uses_camel_case(self, registered, tmp_path):
        raw = json.loads((tmp_path / "apps.json").read_text())
        app = raw["apps"][0]
        assert app["currentVersion"] == "v1.0.0"
        assert app["versions"][0]["fileHashes"] == {"server.js": "hash-server.js-v1.0.0"}
        assert app["versions"][0]["dockerStatus"] == "running"
        assert raw["nextPort"] == 3100

        reopened = VersionLedger(tmp_path / "apps.json").open()
        assert reopened.current_version("todo").files == ["server.js"]

    def test_corrupt_file_raises_read_failure(self, tmp_path):
        path = tmp_path / "apps.json"
        path.write_text("{not json")
        with pytest.raises(LedgerReadFailure):
            VersionLedger(path).open()

    def test_unopened_ledger_raises(self, tmp_path):
        with pytest.raises(RuntimeError):
            VersionLedger(tmp_path / "apps.json").apps()

    def test_context_manager_flushes(self, tmp_path):
        path = tmp_path / "apps.json"
        with VersionLedger(path) as ledger:
            ledger.data.next_port = 3200
        assert json.loads(path.read_text())["nextPort"] == 3200


class TestQueries:
    """Tests for lookups."""

    def test_unknown_app(self, ledger):
        with pytest.raises(AppNotFoundError):
            ledger.require_app("ghost")
        assert ledger.get_app("ghost") is None

    def test_unknown_version_lists_available(self, registered):
        with pytest.raises(VersionNotFoundError) as exc_info:
            registered.get_version("todo", "v9.9.9")
        assert exc_info.value.details["available"] == ["v1.0.0"]

    def test_next_version_skips_taken_identifiers(self, registered):
        registered.commit("todo", make_version("v1.0.1"))
        registered.activate("todo", "v1.0.0")
        assert registered.next_version_for("todo", {"server.js"}) == "v1.0.2"


class TestMutations:
    """Tests for commit, activate and friends."""

    def test_register_duplicate(self, registered):
        with pytest.raises(AppExistsError):
            registered.register_app(App(name="todo", port=3101), make_version())

    def test_commit_moves_active_flag(self, registered):
        registered.commit("todo", make_version("v1.0.1", parent_version="v1.0.0"))
        app = registered.require_app("todo")
        assert app.current_version == "v1.0.1"
        assert [v.version for v in app.active_versions()] == ["v1.0.1"]
        assert app.get_version("v1.0.0").is_active is False

    def test_commit_rejects_duplicate_identifier(self, registered):
        with pytest.raises(ValidationError):
            registered.commit("todo", make_version("v1.0.0"))

    def test_activate(self, registered):
        registered.commit("todo", make_version("v1.0.1"))
        registered.update_version("todo", "v1.0.0", docker_status=DockerStatus.STOPPED)
        record = registered.activate("todo", "v1.0.0", container_name="todo-v1-0-0")
        assert record.is_active
        assert record.docker_status == DockerStatus.RUNNING
        assert registered.require_app("todo").current_version == "v1.0.0"
        assert len(registered.require_app("todo").active_versions()) == 1

    def test_update_version_rejects_immutable_fields(self, registered):
        with pytest.raises(ValidationError, match="files"):
            registered.update_version("todo", "v1.0.0", files=["other.js"])

    def test_update_version(self, registered):
        record = registered.update_version(
            "todo", "v1.0.0", docker_status=DockerStatus.FAILED, docker_error="boom", attempts=3
        )
        assert record.docker_error == "boom"
        assert record.attempts == 3

    def test_remove_app(self, registered):
        registered.remove_app("todo")
        assert registered.apps() == []

    def test_failed_flush_reverts_commit(self, registered):
        with patch.object(registered, "flush", side_effect=LedgerWriteFailure("disk full")):
            with pytest.raises(LedgerWriteFailure):
                registered.commit("todo", make_version("v1.0.1"))
        app = registered.require_app("todo")
        assert app.current_version == "v1.0.0"
        assert app.version_ids() == ["v1.0.0"]
        assert app.get_version("v1.0.0").is_active

    def test_unwritable_path_raises_write_failure(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        ledger = VersionLedger(blocker / "apps.json").open()
        with pytest.raises(LedgerWriteFailure):
            ledger.register_app(App(name="todo", port=3100), make_version())
        assert ledger.apps() == []


class TestPortAllocation:
    """Tests for allocate_port."""

    def test_skips_busy_and_taken_ports(self, registered):
        busy = {3101}
        port = registered.allocate_port(lambda p: p not in busy)
        # 3100 is held by "todo", 3101 is busy on the host
        assert port == 3102
        assert registered.data.next_port == 3103

    def test_exhausted_range(self, ledger):
        with pytest.raises(ValidationError):
            ledger.allocate_port(lambda p: False, max_attempts=5)
        assert ledger.data.next_port == 3100
