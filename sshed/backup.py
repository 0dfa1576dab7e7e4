"""Backup and restore of the SSH config and keychain as a .tgz archive.

The archive holds exactly two members, ``ssh_config_backup`` and
``keychain_backup``; restore maps them back onto the configured paths and
keeps the files it replaces as ``<path>.bak``.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import tempfile
from datetime import datetime
from pathlib import Path

from sshed.errors import CorruptError, NotFoundError, StorageError

logger = logging.getLogger(__name__)

CONFIG_MEMBER = "ssh_config_backup"
KEYCHAIN_MEMBER = "keychain_backup"
MEMBERS = (CONFIG_MEMBER, KEYCHAIN_MEMBER)


def create_backup(config_path: Path, keychain_path: Path, backup_dir: Path) -> Path:
    """Write ``sshed_backup_<timestamp>.tgz`` into *backup_dir* and return its path."""
    for path in (config_path, keychain_path):
        if not path.is_file():
            raise NotFoundError(f"{path} is not a regular file")

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    archive = backup_dir / f"sshed_backup_{timestamp}.tgz"

    try:
        backup_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(str(config_path), arcname=CONFIG_MEMBER, recursive=False)
            tar.add(str(keychain_path), arcname=KEYCHAIN_MEMBER, recursive=False)
        os.chmod(archive, 0o600)
    except OSError as exc:
        raise StorageError(f"Cannot write backup {archive}: {exc}") from exc

    logger.info("Wrote backup %s", archive)
    return archive


def _move_aside(path: Path) -> None:
    if path.exists():
        backup = path.with_name(path.name + ".bak")
        os.replace(path, backup)
        logger.info("Kept previous %s as %s", path, backup)


def restore_backup(archive: Path, config_path: Path, keychain_path: Path) -> None:
    """Restore both files from *archive* onto their configured paths."""
    if not archive.is_file():
        raise NotFoundError("backup file does not exist")

    with tempfile.TemporaryDirectory(prefix="sshed_restore_") as tmp:
        workdir = Path(tmp)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                members = tar.getmembers()
                names = {m.name for m in members}
                if names != set(MEMBERS) or not all(m.isfile() for m in members):
                    raise CorruptError(
                        f"{archive} must contain exactly {', '.join(MEMBERS)}"
                    )
                for member in members:
                    source = tar.extractfile(member)
                    if source is None:
                        raise CorruptError(f"{archive}: cannot read {member.name}")
                    with source, open(workdir / member.name, "wb") as target:
                        shutil.copyfileobj(source, target)
        except tarfile.TarError as exc:
            raise CorruptError(f"{archive} is not a valid backup: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Cannot read backup {archive}: {exc}") from exc

        try:
            for member, destination in ((CONFIG_MEMBER, config_path), (KEYCHAIN_MEMBER, keychain_path)):
                destination.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
                _move_aside(destination)
                shutil.move(str(workdir / member), str(destination))
            os.chmod(keychain_path, 0o600)
        except OSError as exc:
            raise StorageError(f"Cannot restore backup: {exc}") from exc

    logger.info("Restored %s and %s from %s", config_path, keychain_path, archive)
