"""Host/IdentityFile handling for the OpenSSH client config."""

import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Set

from sshkeeper.errors import ConfigIOError
from sshkeeper.keystore import BACKUP_DIR_NAME, same_key_path

HOST_RE = re.compile(r'^host\s+(?P<name>.+)$', re.IGNORECASE)
IDENTITY_RE = re.compile(
    r'^(?P<keyword>identityfile)(?P<sep>\s*=\s*|\s+)(?P<value>.+)$', re.IGNORECASE
)

CONFIG_FILE_NAME = 'config'
BACKUP_TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
CONFIG_ENCODING = 'utf-8'
# Undecodable bytes survive a read-rewrite cycle unchanged
CONFIG_ERRORS = 'surrogateescape'


@dataclass
class ConfigHostEntry:
    """A Host block and the identity files it references."""

    host: str
    identity_files: List[Path] = field(default_factory=list)


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def expand_identity(value: str, key_root: Path) -> Path:
    """Turn an IdentityFile value into an absolute path.

    '~/' expands against the home directory; other relative values are
    taken relative to the key root.
    """
    value = _strip_quotes(value)
    if value.startswith('~/'):
        return Path.home() / value[2:]
    path = Path(value)
    if not path.is_absolute():
        path = key_root / path
    return path


def format_identity(key_path: Path, key_root: Path) -> str:
    """Render a key path the way it is written into the config.

    Keys under the conventional ~/.ssh directory are written as '~/.ssh/...';
    anything else gets its absolute path.
    """
    default_root = Path.home() / '.ssh'
    try:
        if key_root.absolute() == default_root.absolute():
            rel = key_path.absolute().relative_to(default_root.absolute())
            value = f"~/.ssh/{rel.as_posix()}"
        else:
            value = str(key_path.absolute())
    except ValueError:
        value = str(key_path.absolute())
    if ' ' in value:
        value = f'"{value}"'
    return value


def parse(config_text: str, key_root: Path) -> List[ConfigHostEntry]:
    """Parse config text into Host entries with their resolved identities.

    Only Host and IdentityFile are interpreted; identities that appear
    before the first Host line are ignored.
    """
    entries = []
    current = None
    for line in config_text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue
        host_match = HOST_RE.match(stripped)
        if host_match:
            current = ConfigHostEntry(host_match.group('name').strip())
            entries.append(current)
            continue
        identity_match = IDENTITY_RE.match(stripped)
        if current is not None and identity_match:
            current.identity_files.append(
                expand_identity(identity_match.group('value'), key_root)
            )
    return entries


def _read_config(config_path: Path) -> str:
    try:
        with open(config_path, encoding=CONFIG_ENCODING, errors=CONFIG_ERRORS,
                  newline='') as f:
            return f.read()
    except OSError as e:
        raise ConfigIOError(f"Cannot read SSH config {config_path}: {e}") from e


def find_hosts_using_key(config_path: Path, key_path: Path, key_root: Path) -> Set[str]:
    """Hosts whose IdentityFile resolves to key_path.

    Returns an empty set when the config file does not exist.
    """
    if not config_path.exists():
        return set()
    hosts = set()
    for entry in parse(_read_config(config_path), key_root):
        if any(same_key_path(identity, key_path) for identity in entry.identity_files):
            hosts.add(entry.host)
    return hosts


def _write_preserving_mode(path: Path, content: str) -> None:
    """Replace a file's content via a sibling temp file and rename."""
    fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, 'w', encoding=CONFIG_ENCODING, errors=CONFIG_ERRORS,
                       newline='') as f:
            f.write(content)
        shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def rewrite_identity(config_path: Path, new_key_path: Path, affected_hosts: Iterable[str],
                     key_root: Path, old_key_path: Optional[Path] = None) -> int:
    """Point IdentityFile lines of the affected hosts at new_key_path.

    Every other line, including comments, blank lines and indentation, is
    written back byte for byte. When old_key_path is given only the
    IdentityFile lines that referenced it are touched, so a host's other
    identities survive.

    Returns:
        Number of IdentityFile lines rewritten
    """
    affected = set(affected_hosts)
    if not affected:
        return 0

    text = _read_config(config_path)
    new_value = format_identity(new_key_path, key_root)
    output = []
    current_host = None
    updated = 0

    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        host_match = HOST_RE.match(stripped)
        if host_match:
            current_host = host_match.group('name').strip()
            output.append(line)
            continue

        identity_match = IDENTITY_RE.match(stripped)
        if current_host in affected and identity_match:
            if old_key_path is not None:
                current = expand_identity(identity_match.group('value'), key_root)
                if not same_key_path(current, old_key_path):
                    output.append(line)
                    continue
            indent = line[:len(line) - len(line.lstrip())]
            ending = line[len(line.rstrip('\r\n')):]
            output.append(
                f"{indent}{identity_match.group('keyword')}"
                f"{identity_match.group('sep')}{new_value}{ending}"
            )
            updated += 1
        else:
            output.append(line)

    if updated:
        try:
            _write_preserving_mode(config_path, ''.join(output))
        except OSError as e:
            raise ConfigIOError(f"Cannot write SSH config {config_path}: {e}") from e
    return updated


def backup(config_path: Path, archive_root: Path) -> Path:
    """Copy the config unchanged to archived/config_backups/config_<timestamp>.

    An existing backup is never replaced: a second backup within the same
    second gets a numeric suffix (config_<timestamp>_1, ...).

    Raises:
        ConfigIOError: the copy could not be made
    """
    backup_dir = archive_root / BACKUP_DIR_NAME
    timestamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
    backup_path = backup_dir / f'config_{timestamp}'
    suffix = 0
    while backup_path.exists():
        suffix += 1
        backup_path = backup_dir / f'config_{timestamp}_{suffix}'
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(config_path, backup_path)
    except OSError as e:
        raise ConfigIOError(f"Failed to backup SSH config: {e}") from e
    return backup_path
