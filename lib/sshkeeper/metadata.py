"""Key metadata stored in the .meta companion file.

The file uses ``key=value`` lines with ``#`` comments, the same layout
earlier key managers wrote, so existing .meta files keep loading.
"""

import getpass
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

from sshkeeper.keystore import meta_path

META_HEADER = '#SSH Key Metadata - Generated by sshkeeper'
CREATED_AT_FORMAT = '%Y-%m-%dT%H:%M:%SZ'

PROPERTY_RE = re.compile(r'^(?P<key>[^=:\s]+)\s*[=:]\s*(?P<value>.*)$')


class KeyUse(Enum):
    WORK = 'work'
    PERSONAL = 'personal'
    OTHER = 'other'

    @classmethod
    def parse(cls, value: Optional[str]) -> 'KeyUse':
        for use in cls:
            if value and value.strip().lower() == use.value:
                return use
        return cls.OTHER


def parse_use_path(use_path: Optional[str]) -> Tuple[KeyUse, Optional[str]]:
    """Split a use path into category and project.

    'work' -> (WORK, None), 'work/client/acme' -> (WORK, 'client/acme'),
    'lab/pi' -> (OTHER, 'lab/pi').
    """
    if not use_path or not use_path.strip():
        return KeyUse.OTHER, None
    normalized = use_path.strip()
    for use in (KeyUse.WORK, KeyUse.PERSONAL):
        if normalized.lower() == use.value:
            return use, None
        if normalized.lower().startswith(use.value + '/'):
            project = normalized[len(use.value) + 1:]
            return use, project or None
    return KeyUse.OTHER, normalized


def _escape(value: str) -> str:
    return re.sub(r'([\\=:#!])', r'\\\1', value)


def _unescape(value: str) -> str:
    return re.sub(r'\\(.)', r'\1', value)


def _parse_properties(text: str) -> Dict[str, str]:
    props = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped[0] in '#!':
            continue
        match = PROPERTY_RE.match(stripped)
        if match:
            props[match.group('key')] = _unescape(match.group('value'))
    return props


def _parse_created_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass
class KeyMetadata:
    """What a key is for and who created it.

    Example:
        KeyMetadata.create('work/project-a', 'CI deploy key').save(key_path)
        KeyMetadata.load(key_path).use_path  # 'work/project-a'
    """

    use: KeyUse = KeyUse.OTHER
    project: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @classmethod
    def create(cls, use_path: Optional[str] = None,
               description: Optional[str] = None) -> 'KeyMetadata':
        use, project = parse_use_path(use_path)
        return cls(
            use=use,
            project=project,
            description=description or None,
            created_at=datetime.now(timezone.utc).replace(microsecond=0),
            created_by=getpass.getuser(),
        )

    @property
    def use_path(self) -> str:
        if self.project:
            return f"{self.use.value}/{self.project}"
        return self.use.value

    @classmethod
    def load(cls, key_path: Path) -> Optional['KeyMetadata']:
        """Metadata for key_path, or None when there is no readable .meta file."""
        path = meta_path(key_path)
        if not path.is_file():
            return None
        try:
            props = _parse_properties(path.read_text(errors='replace'))
        except OSError:
            return None
        return cls(
            use=KeyUse.parse(props.get('use')),
            project=props.get('project') or None,
            description=props.get('description') or None,
            created_at=_parse_created_at(props.get('created_at')),
            created_by=props.get('created_by') or None,
        )

    def save(self, key_path: Path) -> Path:
        """Write the .meta companion next to key_path.

        Raises:
            OSError: the file could not be written
        """
        lines = [META_HEADER, f"use={_escape(self.use.value)}"]
        if self.project:
            lines.append(f"project={_escape(self.project)}")
        if self.description:
            lines.append(f"description={_escape(self.description)}")
        if self.created_at:
            stamp = self.created_at.astimezone(timezone.utc).strftime(CREATED_AT_FORMAT)
            lines.append(f"created_at={_escape(stamp)}")
        if self.created_by:
            lines.append(f"created_by={_escape(self.created_by)}")
        path = meta_path(key_path)
        path.write_text('\n'.join(lines) + '\n')
        return path
