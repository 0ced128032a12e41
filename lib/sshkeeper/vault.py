"""Moving keys between the active tree and the archived/ mirror."""

import errno
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Set, Tuple

from sshkeeper import ssh_config
from sshkeeper.errors import AlreadyExistsError, ConflictInUseError, NotFoundError
from sshkeeper.keystore import (
    ARCHIVE_DIR_NAME,
    KeyHandle,
    NotFound,
    meta_path,
    public_key_path,
    resolve,
)


@dataclass
class ArchiveEntry:
    """A key relocated under the archive root at its original relative path."""

    name: str
    path: Path
    source: Path
    has_public: bool = False
    has_meta: bool = False
    removed_dirs: List[Path] = field(default_factory=list)


def move_file(src: Path, dst: Path, overwrite: bool = False) -> None:
    """Move a single file, renaming when possible.

    Across filesystems the file is copied, the copy's size is checked, and
    only then is the source removed. A short copy is deleted so callers never
    see a truncated destination.
    """
    if dst.exists() and not overwrite:
        raise AlreadyExistsError(f"Destination already exists: {dst}")
    try:
        os.replace(src, dst)
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    expected = src.stat().st_size
    try:
        shutil.copy2(src, dst)
        if dst.stat().st_size != expected:
            raise OSError(f"Incomplete copy of {src} to {dst}")
    except OSError:
        dst.unlink(missing_ok=True)
        raise
    src.unlink()


def prune_empty_dirs(start: Path, stop: Path) -> List[Path]:
    """Remove empty directories from start upward, never removing stop itself.

    Returns:
        Directories that were removed, innermost first
    """
    removed = []
    stop = stop.absolute()
    current = start.absolute()
    while current != stop and stop in current.parents:
        try:
            if not current.is_dir() or any(current.iterdir()):
                break
            current.rmdir()
        except OSError:
            break
        removed.append(current)
        current = current.parent
    return removed


def _companion_moves(src_key: Path, dst_key: Path) -> List[Tuple[Path, Path]]:
    moves = [(src_key, dst_key)]
    for companion in (public_key_path, meta_path):
        if companion(src_key).exists():
            moves.append((companion(src_key), companion(dst_key)))
    return moves


def _move_all(moves: List[Tuple[Path, Path]], overwrite: bool) -> None:
    """Move a key and its companions as one unit.

    If any move fails, files already moved are put back before the error
    propagates, so the key never ends up split across both trees.
    """
    done = []
    try:
        for src, dst in moves:
            move_file(src, dst, overwrite=overwrite)
            done.append((src, dst))
    except (OSError, AlreadyExistsError):
        for src, dst in reversed(done):
            try:
                move_file(dst, src, overwrite=True)
            except OSError as rollback_error:
                raise OSError(
                    f"Could not restore {src} after a failed move; "
                    f"it remains at {dst}: {rollback_error}"
                ) from rollback_error
        raise


class ArchiveVault:
    """Archive and restore keys under ``<root>/archived``.

    Example:
        vault = ArchiveVault(Path.home() / '.ssh')
        entry = vault.archive(handle)
        handle = vault.unarchive(entry.name)
    """

    def __init__(self, root: Path):
        self.root = root.absolute()
        self.archive_root = self.root / ARCHIVE_DIR_NAME

    def archive(self, handle: KeyHandle, overwrite: bool = True) -> ArchiveEntry:
        """Move a key and its .pub/.meta companions into the archive.

        Args:
            handle: Resolved active key
            overwrite: Replace an archived key already stored at the same path

        Raises:
            AlreadyExistsError: archived copy exists and overwrite is False
            OSError: a move failed (everything already moved is put back)
        """
        rel_path = handle.path.relative_to(self.root)
        dest = self.archive_root / rel_path
        if dest.exists() and not overwrite:
            raise AlreadyExistsError(
                f"An archived key already exists at {ARCHIVE_DIR_NAME}/{rel_path.as_posix()}"
            )

        moves = _companion_moves(handle.path, dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            _move_all(moves, overwrite)
        except (OSError, AlreadyExistsError):
            prune_empty_dirs(dest.parent, self.archive_root)
            raise

        removed = prune_empty_dirs(handle.path.parent, self.root)
        return ArchiveEntry(
            name=rel_path.as_posix(),
            path=dest,
            source=handle.path,
            has_public=public_key_path(dest).exists(),
            has_meta=meta_path(dest).exists(),
            removed_dirs=removed,
        )

    def archive_unused(self, handle: KeyHandle, confirmation,
                       force: bool = False) -> Tuple[ArchiveEntry, Set[str]]:
        """Archive a key, asking first if SSH config hosts still reference it.

        Returns:
            The archive entry and the hosts that still point at the old path

        Raises:
            ConflictInUseError: the key is referenced and confirmation was declined
        """
        config_path = self.root / ssh_config.CONFIG_FILE_NAME
        hosts = ssh_config.find_hosts_using_key(config_path, handle.path, self.root)
        if hosts and not force:
            message = (f"Key '{handle.name}' is used by {len(hosts)} host(s): "
                       f"{', '.join(sorted(hosts))}. Archive anyway?")
            if not confirmation.confirm(message):
                raise ConflictInUseError(
                    f"Key {handle.name} is still used by: {', '.join(sorted(hosts))}", hosts
                )
        return self.archive(handle, overwrite=force), hosts

    def unarchive(self, name: str, force: bool = False) -> KeyHandle:
        """Restore an archived key to its original relative path.

        Raises:
            NotFoundError: nothing archived under that name
            AlreadyExistsError: an active key occupies the target and force is False
        """
        if not self.archive_root.is_dir():
            raise NotFoundError(
                f"Archive directory does not exist: {self.archive_root}. "
                "No keys have been archived yet."
            )

        result = resolve(name, self.archive_root, exclude_archived=False)
        if isinstance(result, NotFound):
            result.raise_('Archived key')

        target = self.root / result.name
        if target.exists() and not force:
            raise AlreadyExistsError(
                f"Key already exists at target location: {result.name}"
            )

        moves = _companion_moves(result.path, target)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            _move_all(moves, overwrite=force)
        except (OSError, AlreadyExistsError):
            prune_empty_dirs(target.parent, self.root)
            raise

        prune_empty_dirs(result.path.parent, self.archive_root)
        return KeyHandle.load(target, self.root)
