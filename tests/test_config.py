import os
from datetime import timedelta

import pytest

from packrat.config import (
    BackupGroup,
    Config,
    ConfigInvalidError,
    ConfigNotFoundError,
    EncryptionConfig,
    GeneralConfig,
    HookConfig,
    StorageConfig,
    expand_path,
    load,
    parse_duration,
    save_config,
    validate,
)

CONTENT = """
[general]
machine_name = "test-machine"
machine_id = "abcd1234"
log_level = "info"
log_file = "/tmp/packrat-test.log"

[scheduler]
enabled = true
default_interval = "1h"

[storage]
backend = "rclone"
rclone_remote = "gdrive"
remote_base_path = "packrat-backups"

[encryption]
enabled = false

[versioning]
strategy = "snapshot"
retention_count = 50
retention_days = 30

[notifications]
enabled = false

[[backup]]
name = "dotfiles"
paths = ["~/.bashrc", "~/.zshrc"]
encrypt = false
interval = "1h"
exclude = []
"""


def _base(**kwargs):
    return Config(
        general=GeneralConfig(machine_id="x", parallel_uploads=3),
        storage=StorageConfig(rclone_remote="x"),
        **kwargs,
    )


def test_load_and_validate(tmp_path):
    cfg_path = tmp_path / "config.toml"
    cfg_path.write_text(CONTENT)

    cfg = load(cfg_path)
    assert cfg.general.machine_id == "abcd1234"
    assert cfg.storage.rclone_remote == "gdrive"
    assert len(cfg.backups) == 1
    assert cfg.backups[0].name == "dotfiles"
    assert cfg.general.parallel_uploads == 3
    assert all(not p.startswith("~") for p in cfg.backups[0].paths)
    assert cfg.versioning.retention_count == 50
    validate(cfg)


def test_load_expands_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    cfg_path = tmp_path / "config.toml"
    cfg_path.write_text(CONTENT)
    cfg = load(cfg_path)
    assert cfg.backups[0].paths == [
        os.path.join(str(tmp_path), ".bashrc"),
        os.path.join(str(tmp_path), ".zshrc"),
    ]


@pytest.mark.parametrize(
    "cfg",
    [
        Config(storage=StorageConfig(rclone_remote="x")),
        Config(general=GeneralConfig(machine_id="x")),
        Config(
            general=GeneralConfig(machine_id="x"),
            storage=StorageConfig(rclone_remote="x"),
            backups=[BackupGroup(name="test", paths=["/tmp"], interval="badval")],
        ),
        Config(
            general=GeneralConfig(machine_id="x"),
            storage=StorageConfig(rclone_remote="x"),
            backups=[BackupGroup(name="test", paths=["/tmp"], interval="1m")],
        ),
        Config(
            general=GeneralConfig(machine_id="x"),
            storage=StorageConfig(rclone_remote="x"),
            hooks=[HookConfig(name="h", when="invalid")],
        ),
        Config(
            general=GeneralConfig(machine_id="x"),
            storage=StorageConfig(rclone_remote="x"),
            encryption=EncryptionConfig(enabled=True, key_source="file"),
        ),
    ],
    ids=[
        "missing machine_id",
        "missing rclone_remote",
        "bad interval",
        "interval too short",
        "invalid hook when",
        "encryption file mode without key_file",
    ],
)
def test_validate_errors(cfg):
    with pytest.raises(ConfigInvalidError):
        validate(cfg)


@pytest.mark.parametrize(
    "cfg, message",
    [
        (Config(storage=StorageConfig(rclone_remote="x")), "machine_id is required"),
        (Config(general=GeneralConfig(machine_id="x")), "rclone_remote is required"),
        (
            Config(
                general=GeneralConfig(machine_id="x", parallel_uploads=11),
                storage=StorageConfig(rclone_remote="x"),
            ),
            "parallel_uploads must be between 1 and 10",
        ),
        (_base(backups=[BackupGroup(name="test", paths=["/tmp"], interval="badval")]),
         "invalid interval"),
        (_base(backups=[BackupGroup(name="test", paths=["/tmp"], interval="1m")]),
         "at least 5m"),
        (_base(backups=[BackupGroup(paths=["/tmp"])]), "must have a name"),
        (_base(backups=[BackupGroup(name="empty")]), "has no paths"),
        (_base(hooks=[HookConfig(name="h", when="invalid")]), "invalid when value"),
        (_base(hooks=[HookConfig(name="h", when="pre-backup", fail_action="retry")]),
         "invalid fail_action"),
        (_base(hooks=[HookConfig(name="h", when="pre-backup", timeout="soon")]),
         "invalid timeout"),
        (_base(encryption=EncryptionConfig(enabled=True, key_source="file")),
         "key_file is required"),
        (_base(encryption=EncryptionConfig(enabled=True, key_source="vault")),
         "invalid key_source"),
    ],
)
def test_validate_error_messages(cfg, message):
    with pytest.raises(ConfigInvalidError, match=message):
        validate(cfg)


def test_validate_bad_default_interval():
    cfg = _base()
    cfg.scheduler.default_interval = "often"
    with pytest.raises(ConfigInvalidError, match="default_interval"):
        validate(cfg)


def test_validate_warns_on_duplicate_paths():
    cfg = _base(
        backups=[
            BackupGroup(name="a", paths=["/tmp/x"]),
            BackupGroup(name="b", paths=["/tmp/x"]),
        ]
    )
    with pytest.warns(UserWarning, match="appears in both"):
        validate(cfg)


def test_load_missing_file():
    with pytest.raises(ConfigNotFoundError):
        load("/nonexistent/config.toml")


def test_load_invalid_toml(tmp_path):
    cfg_path = tmp_path / "config.toml"
    cfg_path.write_text("[general\nmachine_id = ")
    with pytest.raises(ConfigInvalidError):
        load(cfg_path)


def test_load_wrong_type(tmp_path):
    cfg_path = tmp_path / "config.toml"
    cfg_path.write_text("[general]\nparallel_uploads = \"three\"\n")
    with pytest.raises(ConfigInvalidError, match="parallel_uploads"):
        load(cfg_path)


def test_save_and_reload(tmp_path):
    cfg_path = tmp_path / "nested" / "config.toml"
    cfg = _base(
        backups=[BackupGroup(name="dotfiles", paths=["/tmp/a"], interval="1h")],
        hooks=[HookConfig(name="h", when="pre-backup", command="true")],
    )
    cfg.storage.rclone_remote = "test-remote"

    save_config(cfg_path, cfg)
    loaded = load(cfg_path)
    assert loaded.storage.rclone_remote == "test-remote"
    assert loaded.backups == cfg.backups
    assert loaded.hooks == cfg.hooks
    assert cfg_path.stat().st_mode & 0o777 == 0o600


def test_to_dict_round_trip():
    cfg = _base(backups=[BackupGroup(name="g", paths=["/x"], exclude=["*.log"])])
    assert Config.from_dict(cfg.to_dict()) == cfg
    assert cfg.to_dict()["backup"][0]["exclude"] == ["*.log"]
    assert "hook" not in cfg.to_dict()


def test_get_interval():
    assert BackupGroup(interval="30m").get_interval("1h") == timedelta(minutes=30)
    assert BackupGroup().get_interval("2h") == timedelta(hours=2)
    assert BackupGroup().get_interval("") == timedelta(hours=1)
    assert BackupGroup(interval="junk").get_interval("2h") == timedelta(hours=1)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1h", timedelta(hours=1)),
        ("1h30m", timedelta(minutes=90)),
        ("90s", timedelta(seconds=90)),
        ("1.5h", timedelta(minutes=90)),
        ("-2m", timedelta(minutes=-2)),
        ("0", timedelta(0)),
        ("250ms", timedelta(milliseconds=250)),
        ("3us", timedelta(microseconds=3)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "badval", "5", "1x", "h", "-"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_expand_path(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert expand_path("~/file") == os.path.join(str(tmp_path), "file")
    assert expand_path("/abs/file") == "/abs/file"
    assert expand_path("") == ""