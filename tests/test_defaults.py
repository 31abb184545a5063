import re

import pytest

from packrat.config import load, save_config
from packrat.defaults import (
    default_backup_groups,
    default_config,
    default_machine_name,
    detect_shell,
    generate_machine_id,
    migrate_config,
)


def test_default_config():
    cfg = default_config()
    assert re.fullmatch(r"[0-9a-f]{8}", cfg.general.machine_id)
    assert len(cfg.backups) == 5
    assert cfg.storage.backend == "rclone"
    assert cfg.storage.remote_base_path == "packrat-backups"
    assert cfg.versioning.retention_count == 50
    assert cfg.versioning.retention_days == 30
    assert cfg.encryption.key_source == "keyring"
    assert cfg.hooks[0].name == "dump-package-lists"
    assert cfg.hooks[0].when == "pre-backup"


def test_default_config_log_file():
    assert default_config("/var/log/packrat.log").general.log_file == "/var/log/packrat.log"


def test_detect_shell(monkeypatch):
    monkeypatch.setenv("SHELL", "/bin/zsh")
    assert detect_shell() == "zsh"
    monkeypatch.setenv("SHELL", "/usr/bin/fish")
    assert detect_shell() == "fish"
    monkeypatch.setenv("SHELL", "/bin/tcsh")
    assert detect_shell() == "bash"
    monkeypatch.delenv("SHELL")
    assert detect_shell() == "bash"


def test_generate_machine_id():
    ids = {generate_machine_id() for _ in range(20)}
    assert all(re.fullmatch(r"[0-9a-f]{8}", i) for i in ids)
    assert len(ids) > 1


def test_default_machine_name(monkeypatch):
    monkeypatch.setattr("socket.gethostname", lambda: "box")
    monkeypatch.setenv("USER", "alice")
    assert default_machine_name() == "alice-box"
    monkeypatch.delenv("USER")
    assert default_machine_name() == "box"


def test_default_machine_name_without_host(monkeypatch):
    def fail():
        raise OSError("no host")

    monkeypatch.setattr("socket.gethostname", fail)
    assert default_machine_name() == "unknown"


@pytest.mark.parametrize(
    "shell, paths",
    [
        ("zsh", ["~/.zsh_history"]),
        ("fish", ["~/.local/share/fish/fish_history"]),
        ("bash", ["~/.bash_history"]),
        ("ksh", ["~/.bash_history", "~/.zsh_history", "~/.local/share/fish/fish_history"]),
    ],
)
def test_default_backup_groups_history(shell, paths):
    groups = default_backup_groups(shell)
    assert groups[0].name == "shell-history"
    assert groups[0].paths == paths
    assert groups[0].interval == "30m"


def test_default_backup_groups_content():
    groups = {g.name: g for g in default_backup_groups("bash")}
    assert list(groups) == ["shell-history", "dotfiles", "ai-configs", "editor-configs", "gnupg"]
    assert groups["gnupg"].encrypt is True
    assert groups["gnupg"].interval == "6h"
    assert groups["editor-configs"].exclude == ["*.cache", "workspaceStorage/"]
    assert "~/.ssh/config" in groups["dotfiles"].paths


def test_migrate_config_returns_same_object():
    cfg = default_config()
    assert migrate_config(cfg) is cfg


def test_save_and_reload_default(tmp_path):
    cfg_path = tmp_path / "config.toml"
    cfg = default_config()
    cfg.storage.rclone_remote = "test-remote"

    save_config(cfg_path, cfg)
    loaded = load(cfg_path)
    assert loaded.storage.rclone_remote == "test-remote"
    assert [g.name for g in loaded.backups] == [g.name for g in cfg.backups]
    assert loaded.hooks[0].command == cfg.hooks[0].command
    assert loaded.general.parallel_uploads == 3