"""Default configuration values and configuration migration."""

import os
import secrets
import socket
from collections.abc import Callable

from packrat.config import (
    BackupGroup,
    Config,
    EncryptionConfig,
    GeneralConfig,
    HookConfig,
    NotificationConfig,
    SchedulerConfig,
    StorageConfig,
    VersioningConfig,
)

_HISTORY_PATHS = {
    "zsh": ["~/.zsh_history"],
    "fish": ["~/.local/share/fish/fish_history"],
    "bash": ["~/.bash_history"],
}

# Steps that bring an older configuration up to date, applied in order.
# The current format is the first one, so there are none yet.
_MIGRATIONS: tuple[Callable[[Config], Config], ...] = ()


def detect_shell() -> str:
    """Return the current shell name: bash, zsh or fish (bash when unknown)."""
    name = os.path.basename(os.environ.get("SHELL", ""))
    return name if name in ("zsh", "fish", "bash") else "bash"


def generate_machine_id() -> str:
    """Return a short random hex string for use as machine_id."""
    return secrets.token_hex(4)


def default_machine_name() -> str:
    """Return a readable machine name built from the user and host names."""
    try:
        hostname = socket.gethostname()
    except OSError:
        return "unknown"
    user = os.environ.get("USER", "")
    return f"{user}-{hostname}" if user else hostname


def default_backup_groups(shell: str) -> list[BackupGroup]:
    """Return the default backup groups, with history paths for the given shell."""
    history_paths = _HISTORY_PATHS.get(
        shell,
        ["~/.bash_history", "~/.zsh_history", "~/.local/share/fish/fish_history"],
    )
    return [
        BackupGroup(
            name="shell-history",
            paths=list(history_paths),
            interval="30m",
            encrypt=False,
        ),
        BackupGroup(
            name="dotfiles",
            paths=[
                "~/.bashrc",
                "~/.zshrc",
                "~/.bash_profile",
                "~/.profile",
                "~/.aliases",
                "~/.vimrc",
                "~/.tmux.conf",
                "~/.gitconfig",
                "~/.ssh/config",
            ],
            interval="1h",
            encrypt=False,
        ),
        BackupGroup(
            name="ai-configs",
            paths=["~/.claude/", "~/.gemini/", "~/.config/github-copilot/"],
            interval="2h",
            encrypt=True,
            exclude=["*.log", "*.cache"],
        ),
        BackupGroup(
            name="editor-configs",
            paths=[
                "~/.config/nvim/",
                "~/.config/Code/User/settings.json",
                "~/.config/Code/User/keybindings.json",
                "~/.config/Code/User/snippets/",
            ],
            interval="1h",
            encrypt=False,
            exclude=["*.cache", "workspaceStorage/"],
        ),
        BackupGroup(
            name="gnupg",
            paths=["~/.gnupg/"],
            interval="6h",
            encrypt=True,
            exclude=["*.lock", "S.gpg-agent*", "random_seed"],
        ),
    ]


def _default_hooks() -> list[HookConfig]:
    command = "\n".join(
        [
            "dpkg --get-selections > ~/.config/packrat/installed-packages.txt 2>/dev/null || true",
            "pip list --format=freeze > ~/.config/packrat/pip-packages.txt 2>/dev/null || true",
        ]
    )
    return [
        HookConfig(
            name="dump-package-lists",
            when="pre-backup",
            command=command,
            timeout="30s",
            fail_action="continue",
        )
    ]


def default_config(log_file: str = "") -> Config:
    """Return a configuration with sensible defaults."""
    return Config(
        general=GeneralConfig(
            machine_name=default_machine_name(),
            machine_id=generate_machine_id(),
            log_level="info",
            log_file=log_file,
        ),
        scheduler=SchedulerConfig(enabled=True, default_interval="1h"),
        storage=StorageConfig(backend="rclone", remote_base_path="packrat-backups"),
        encryption=EncryptionConfig(enabled=True, key_source="keyring"),
        versioning=VersioningConfig(strategy="snapshot", retention_count=50, retention_days=30),
        notifications=NotificationConfig(enabled=False, on_failure=True, on_success=False),
        backups=default_backup_groups(detect_shell()),
        hooks=_default_hooks(),
    )


def migrate_config(config: Config) -> Config:
    """Apply every pending migration step to the configuration and return it."""
    for step in _MIGRATIONS:
        config = step(config)
    return config