"""Tests for the imagevault CLI."""

import json

import pytest

from imagevault.cli.__main__ import build_parser, main


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "cli" / "vault.sqlite"
    monkeypatch.setenv("SQLITE_PATH", str(path))
    monkeypatch.setenv("ENCRYPTION_KEY", "cli-test-key")
    return path


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_logs_options(self):
        args = build_parser().parse_args(["logs", "--page", "2", "--status", "failed", "-o", "SAVE"])
        assert args.page == 2
        assert args.status == "failed"
        assert args.operation == "SAVE"


class TestOfflineCommands:
    def test_keygen(self, capsys):
        assert main(["keygen"]) == 0
        key = capsys.readouterr().out.strip()
        assert len(key) == 64
        int(key, 16)

    def test_config_masks_secrets(self, capsys, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "very-secret-password")
        assert main(["config"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["db_password"] == "ve****rd"
        assert "very-secret-password" not in json.dumps(data)


class TestDatabaseCommands:
    def test_init_then_status(self, db_path, capsys):
        assert main(["init"]) == 0
        assert "Schema at version 1.3.0" in capsys.readouterr().out
        assert db_path.exists()

        assert main(["status", "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["backend"] == "sqlite"
        assert data["schema_version"] == "1.3.0"
        assert data["connection"]["is_connected"] is True

    def test_status_fresh_database(self, db_path, capsys):
        assert main(["status"]) == 0
        out = capsys.readouterr().out
        assert "Connected:      yes" in out
        assert "Schema version: 0.0.0 (latest 1.3.0)" in out

    def test_validate(self, db_path, capsys):
        assert main(["validate"]) == 1
        assert "Missing table: images" in capsys.readouterr().out
        main(["migrate"])
        capsys.readouterr()
        assert main(["validate", "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["valid"] is True

    def test_rollback_and_history(self, db_path, capsys):
        main(["init"])
        assert main(["rollback", "1.1.0"]) == 0
        capsys.readouterr()
        assert main(["history", "--json"]) == 0
        versions = [record["version"] for record in json.loads(capsys.readouterr().out)]
        assert sorted(versions) == ["1.0.0", "1.1.0"]

    def test_bad_version(self, db_path, capsys):
        assert main(["migrate", "9.9.9"]) == 1
        assert "Unknown schema version" in capsys.readouterr().err

    def test_rollback_without_scripts(self, db_path, capsys):
        main(["init"])
        assert main(["rollback", "0.0.0"]) == 1
        assert "No rollback scripts" in capsys.readouterr().out

    def test_stats_and_logs(self, db_path, capsys):
        assert main(["stats", "--json"]) == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["total_images"] == 0
        assert stats["operations"]["by_operation"]["MIGRATE"] == 1

        assert main(["logs", "--operation", "MIGRATE", "--json"]) == 0
        page = json.loads(capsys.readouterr().out)
        assert page["total"] == 1
        assert page["data"][0]["status"] == "SUCCESS"

        assert main(["logs"]) == 0
        assert "MIGRATE" in capsys.readouterr().out

    def test_cleanup_logs(self, db_path, capsys):
        assert main(["cleanup-logs", "--days", "0"]) == 0
        assert "Removed" in capsys.readouterr().out

    def test_negative_cleanup_rejected(self, db_path, capsys):
        assert main(["cleanup-logs", "--days", "-1"]) == 1
        assert "non-negative" in capsys.readouterr().err

    def test_history_empty(self, db_path, capsys):
        assert main(["history"]) == 0
        assert "No migrations applied." in capsys.readouterr().out

    def test_backup_list_restore(self, db_path, capsys):
        main(["init"])
        capsys.readouterr()
        assert main(["backup", "--reason", "pre-upgrade", "--json"]) == 0
        info = json.loads(capsys.readouterr().out)
        assert info["reason"] == "pre-upgrade"

        assert main(["backups"]) == 0
        assert info["name"] in capsys.readouterr().out

        assert main(["restore", info["name"]]) == 0
        out = capsys.readouterr().out
        assert f"Restored from {info['name']}" in out
        assert "before-restore" in out

    def test_backups_empty(self, db_path, capsys):
        assert main(["backups"]) == 0
        assert "No backups found." in capsys.readouterr().out

    def test_restore_missing(self, db_path, capsys):
        assert main(["restore", "database_20240101_000000_000000_manual.sqlite"]) == 1
        assert "Backup not found" in capsys.readouterr().err
