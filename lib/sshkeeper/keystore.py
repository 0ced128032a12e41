"""Key discovery: name resolution, header checks and listing under a key root."""

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from sshkeeper.errors import InvalidInputError, NotFoundError

ARCHIVE_DIR_NAME = 'archived'
BACKUP_DIR_NAME = 'config_backups'
PUBLIC_SUFFIX = '.pub'
META_SUFFIX = '.meta'

PRIVATE_KEY_MAGIC = b'-----BEGIN'

# Files that live in ~/.ssh but are never keys
NON_KEY_FILES = {'config', 'known_hosts', 'known_hosts.old', 'authorized_keys'}

ROTATABLE_TYPES = ('ed25519', 'rsa', 'ecdsa')

ENCRYPTION_MARKERS = ('ENCRYPTED', 'Proc-Type: 4,ENCRYPTED', 'DEK-Info:')


def public_key_path(key_path: Path) -> Path:
    return Path(f"{key_path}{PUBLIC_SUFFIX}")


def meta_path(key_path: Path) -> Path:
    return Path(f"{key_path}{META_SUFFIX}")


@dataclass
class KeyHandle:
    """A private key found under a key root.

    ``name`` is the '/'-separated path relative to the root the key was
    resolved against; ``path`` is absolute.
    """

    name: str
    path: Path
    algorithm: str
    has_public: bool
    has_meta: bool
    permissions: str
    encrypted: bool

    @classmethod
    def load(cls, path: Path, root: Path) -> 'KeyHandle':
        """Inspect a private key file and its companions."""
        path = path.absolute()
        return cls(
            name=path.relative_to(root.absolute()).as_posix(),
            path=path,
            algorithm=detect_type(path),
            has_public=public_key_path(path).is_file(),
            has_meta=meta_path(path).is_file(),
            permissions=get_permissions(path),
            encrypted=is_encrypted(path),
        )

    @property
    def pub_path(self) -> Path:
        return public_key_path(self.path)

    @property
    def meta_path(self) -> Path:
        return meta_path(self.path)

    @property
    def comment(self) -> Optional[str]:
        return extract_comment(self.pub_path)


@dataclass
class NotFound:
    """Result of a failed lookup, with the names that would have resolved."""

    name: str
    candidates: List[str] = field(default_factory=list)

    def raise_(self, what: str = 'Key') -> None:
        raise NotFoundError(f"{what} not found: {self.name}", self.candidates)


@dataclass
class ListKeysOptions:
    exclude_archived: bool = True
    exclude_meta: bool = True


def validate_key_name(name: str) -> str:
    """Normalise a logical key name, rejecting absolute paths and '..'.

    Returns:
        The name with backslashes and redundant slashes collapsed
    """
    cleaned = name.strip().replace('\\', '/')
    if not cleaned:
        raise InvalidInputError("Key name must not be empty")
    if cleaned.startswith('/') or cleaned.startswith('~'):
        raise InvalidInputError(f"Key name must be relative to the key root: {name}")
    parts = [p for p in cleaned.split('/') if p and p != '.']
    if '..' in parts:
        raise InvalidInputError(f"Key name must not contain '..': {name}")
    if not parts:
        raise InvalidInputError(f"Invalid key name: {name}")
    return '/'.join(parts)


def is_private_key(path: Path) -> bool:
    """True if the file starts with the PEM begin marker and is not a .pub file."""
    if path.name.endswith(PUBLIC_SUFFIX):
        return False
    try:
        with open(path, 'rb') as f:
            header = f.read(32)
    except OSError:
        return False
    return header.startswith(PRIVATE_KEY_MAGIC)


def _type_from_public_key(key_path: Path) -> str:
    pub_path = public_key_path(key_path)
    try:
        content = pub_path.read_text(errors='replace').strip()
    except OSError:
        return 'unknown'
    if content.startswith('ssh-ed25519'):
        return 'ed25519'
    if content.startswith('ssh-rsa'):
        return 'rsa'
    if content.startswith('ecdsa-sha2-'):
        return 'ecdsa'
    if content.startswith('ssh-dss'):
        return 'dsa'
    return 'unknown'


def detect_type(path: Path) -> str:
    """Detect the key algorithm from the PEM header.

    The OpenSSH container does not reveal the algorithm, so for those keys
    (and anything unrecognised) the .pub companion decides.
    """
    try:
        with open(path, encoding='utf-8', errors='replace') as f:
            for line in f:
                if 'OPENSSH PRIVATE KEY' in line or 'SSH2 ENCRYPTED PRIVATE KEY' in line:
                    break
                if 'RSA PRIVATE KEY' in line:
                    return 'rsa'
                if 'EC PRIVATE KEY' in line:
                    return 'ecdsa'
                if 'DSA PRIVATE KEY' in line:
                    return 'dsa'
    except OSError:
        return 'unknown'
    return _type_from_public_key(path)


def is_encrypted(path: Path) -> bool:
    """True if the first 512 bytes carry a passphrase-protection marker."""
    try:
        with open(path, 'rb') as f:
            head = f.read(512).decode('latin-1')
    except OSError:
        return False
    return any(marker in head for marker in ENCRYPTION_MARKERS)


def extract_comment(pub_path: Path) -> Optional[str]:
    """Return the comment field of a public key line, if any."""
    try:
        parts = pub_path.read_text(errors='replace').strip().split()
    except OSError:
        return None
    if len(parts) < 3:
        return None
    return ' '.join(parts[2:])


def get_permissions(path: Path) -> str:
    """POSIX permission string such as 'rw-------', or 'n/a'."""
    try:
        return stat.filemode(path.stat().st_mode)[1:]
    except OSError:
        return 'n/a'


def same_key_path(candidate: Path, key_path: Path) -> bool:
    """Compare two paths by their symlink-resolved form.

    Dangling references cannot be canonicalised, so they fall back to a
    normalised string comparison instead of raising.
    """
    try:
        return candidate.resolve(strict=True) == key_path.resolve(strict=True)
    except (OSError, RuntimeError):
        return os.path.normpath(candidate) == os.path.normpath(key_path)


def _is_under(path: Path, directory: Path) -> bool:
    try:
        path.relative_to(directory)
        return True
    except ValueError:
        return False


def _candidate_files(root: Path, exclude_archived: bool):
    archive_dir = root / ARCHIVE_DIR_NAME
    for path in sorted(root.rglob('*')):
        if exclude_archived and _is_under(path, archive_dir):
            continue
        if path.is_file():
            yield path


def list_keys(root: Path, options: Optional[ListKeysOptions] = None) -> List[Path]:
    """Private keys under root, sorted by path."""
    options = options or ListKeysOptions()
    if not root.is_dir():
        return []
    keys = []
    for path in _candidate_files(root, options.exclude_archived):
        if path.name in NON_KEY_FILES or path.name.endswith(PUBLIC_SUFFIX):
            continue
        if options.exclude_meta and path.name.endswith(META_SUFFIX):
            continue
        if is_private_key(path):
            keys.append(path)
    return keys


def list_active_key_names(root: Path) -> List[str]:
    """Relative names of all non-archived keys (usable for shell completion)."""
    return [p.relative_to(root).as_posix() for p in list_keys(root)]


def list_archived_key_names(root: Path) -> List[str]:
    """Relative names of archived keys, as they would be restored."""
    archive_dir = root / ARCHIVE_DIR_NAME
    return [
        p.relative_to(archive_dir).as_posix()
        for p in list_keys(archive_dir, ListKeysOptions(exclude_archived=False))
    ]


def resolve(name: str, root: Path, exclude_archived: bool = True) -> Union[KeyHandle, NotFound]:
    """Resolve a logical key name against a key root.

    ``root/name`` wins if it exists. Otherwise the tree is scanned in sorted
    order (skipping the archive subtree) for a private key whose filename
    equals the last segment of ``name``.

    Returns:
        KeyHandle on success, NotFound with candidate names otherwise

    Raises:
        InvalidInputError: malformed name, a path inside the archive, or a
            direct hit that is not a private key
    """
    name = validate_key_name(name)
    root = root.absolute()
    archive_dir = root / ARCHIVE_DIR_NAME

    direct = root / name
    if direct.is_file():
        if exclude_archived and _is_under(direct, archive_dir):
            raise InvalidInputError(f"Key is already archived: {name}")
        if not is_private_key(direct):
            raise InvalidInputError(f"Not a valid private key: {direct}")
        return KeyHandle.load(direct, root)

    filename = name.rsplit('/', 1)[-1]
    if root.is_dir():
        for path in _candidate_files(root, exclude_archived):
            if path.name == filename and is_private_key(path):
                return KeyHandle.load(path, root)

    if exclude_archived:
        candidates = list_active_key_names(root)
    else:
        candidates = [p.relative_to(root).as_posix()
                      for p in list_keys(root, ListKeysOptions(exclude_archived=False))]
    return NotFound(name, candidates)
