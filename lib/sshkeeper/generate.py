"""Creating new keys under the key root, optionally inside a use-case folder."""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from sshkeeper.errors import AlreadyExistsError, InvalidInputError
from sshkeeper.keystore import ARCHIVE_DIR_NAME, KeyHandle, public_key_path, validate_key_name
from sshkeeper.ssh_keys import (
    default_comment,
    generate_key,
    validate_bits,
    validate_key_type,
)
from sshkeeper.vault import move_file


def default_key_name(use: str, key_type: str) -> str:
    """Key filename derived from the last use segment: work/project-a -> id_project-a_ed25519."""
    last = validate_key_name(use).rsplit('/', 1)[-1]
    return f"id_{last}_{key_type}"


def key_location(use: Optional[str], name: Optional[str], key_type: str) -> str:
    """Relative key name for a generate request.

    Raises:
        InvalidInputError: neither name nor use given, a name containing a
            path separator, or a use path that is absolute, has '..' or points
            into the archive
    """
    if not name and not use:
        raise InvalidInputError("Either a key name or a use path must be given")
    if name and ('/' in name or '\\' in name or '..' in name):
        raise InvalidInputError(f"Invalid key name: must not contain path separators: {name}")
    if use:
        use = validate_key_name(use)
        if use == ARCHIVE_DIR_NAME or use.startswith(ARCHIVE_DIR_NAME + '/'):
            raise InvalidInputError(f"Cannot generate keys inside {ARCHIVE_DIR_NAME}/")
    name = name or default_key_name(use, key_type)
    return f"{use}/{name}" if use else name


def create_key(root: Path, key_type: str = 'ed25519', use: Optional[str] = None,
               name: Optional[str] = None, comment: Optional[str] = None,
               bits: Optional[int] = None, passphrase: str = '',
               force: bool = False) -> KeyHandle:
    """Generate a new keypair at root/<use>/<name>.

    ssh-keygen writes into a temporary directory first, so an existing key
    is only replaced once the new pair is complete.

    Raises:
        InvalidInputError: bad type, size or location
        AlreadyExistsError: the key or its .pub exists and force is False
        ExternalToolError: ssh-keygen failed
    """
    key_type = validate_key_type(key_type)
    if key_type == 'ed25519' and bits is not None:
        raise InvalidInputError("ED25519 does not support custom key size")
    bits = validate_bits(key_type, bits)

    rel_name = key_location(use, name, key_type)
    root = root.absolute()
    key_path = root / rel_name
    pub_path = public_key_path(key_path)
    if (key_path.exists() or pub_path.exists()) and not force:
        raise AlreadyExistsError(f"Key already exists: {key_path}")

    key_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    comment = comment or default_comment(key_path.name, rotated=False)

    tmp_dir = Path(tempfile.mkdtemp(prefix='.sshkeeper-generate-', dir=root))
    try:
        tmp_key = tmp_dir / key_path.name
        generate_key(tmp_key, key_type, comment, bits, passphrase)
        move_file(tmp_key, key_path, overwrite=True)
        if public_key_path(tmp_key).exists():
            move_file(public_key_path(tmp_key), pub_path, overwrite=True)
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)

    os.chmod(key_path, 0o600)
    if pub_path.exists():
        os.chmod(pub_path, 0o644)
    return KeyHandle.load(key_path, root)
