"""
Shared utility functions for the validator wallet.

Contains file helpers used across packages: owner-only permissions,
atomic JSON writes and secret file readers.
"""

import json
import os
from pathlib import Path

# Secure file permissions (Unix only)
SECURE_FILE_MODE = 0o600  # Owner read/write only
SECURE_DIR_MODE = 0o700


def set_secure_permissions(path: str | Path) -> None:
    """Set restrictive permissions on Unix systems."""
    if os.name == 'posix':
        mode = SECURE_DIR_MODE if Path(path).is_dir() else SECURE_FILE_MODE
        os.chmod(path, mode)


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) with owner-only permissions."""
    path.mkdir(parents=True, exist_ok=True)
    set_secure_permissions(path)
    return path


def write_json_atomic(path: Path, data) -> None:
    """
    Write JSON to a file atomically.

    Writes to a temp file next to the target, then replaces the target,
    so readers never see a half-written file.
    """
    temp_path = path.with_suffix(path.suffix + ".tmp")
    # Owner-only from creation, not just after the write
    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SECURE_FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    set_secure_permissions(temp_path)
    temp_path.replace(path)


def read_json(path: Path):
    """Load JSON from a file. Raises OSError or ValueError."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def read_secret_file(path: str | Path) -> str:
    """
    Read a password or mnemonic from a file.

    Trailing newlines (as left by editors and `echo`) are stripped;
    everything else is kept as-is.
    """
    with open(path, "r", encoding="utf-8") as f:
        return f.read().rstrip("\r\n")
