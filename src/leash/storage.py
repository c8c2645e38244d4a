"""Owner-only permissions for the ledger home and secrets directories."""

from __future__ import annotations

import os
from pathlib import Path


# SQLite WAL mode keeps live pages in sidecar files next to the database
SQLITE_SIDECAR_SUFFIXES = ("-wal", "-shm")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def secure_database_files(db_path: Path) -> None:
    """Restrict the ledger database and any WAL sidecars to the owner."""
    ensure_private_file(db_path)
    for suffix in SQLITE_SIDECAR_SUFFIXES:
        sidecar = db_path.with_name(db_path.name + suffix)
        if sidecar.exists():
            os.chmod(sidecar, 0o600)
