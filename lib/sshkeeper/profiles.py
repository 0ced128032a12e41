"""Connection profiles stored as a JSON array, and their key references."""

import json
import os
import tempfile
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from typing import Iterable, List, Optional

from sshkeeper.errors import AlreadyExistsError, ConfigIOError, InvalidInputError, NotFoundError
from sshkeeper.keystore import same_key_path

DEFAULT_PORT = 22


@dataclass(frozen=True)
class ConnectionProfile:
    """One saved SSH connection.

    Example:
        profile = ConnectionProfile('prod', 'prod.example.com', 'deploy',
                                    ssh_key='/home/me/.ssh/id_ed25519')
        profile.to_ssh_command()
        # 'ssh -i /home/me/.ssh/id_ed25519 deploy@prod.example.com'
    """

    alias: str
    hostname: str
    username: str
    port: int = DEFAULT_PORT
    ssh_key: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'ConnectionProfile':
        try:
            return cls(
                alias=data['alias'],
                hostname=data['hostname'],
                username=data['username'],
                port=int(data.get('port') or DEFAULT_PORT),
                ssh_key=data.get('sshKey'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigIOError(f"Invalid profile record {data!r}: {e}") from e

    def to_dict(self) -> dict:
        data = asdict(self)
        data['sshKey'] = data.pop('ssh_key')
        return data

    def with_ssh_key(self, ssh_key: str) -> 'ConnectionProfile':
        return replace(self, ssh_key=ssh_key)

    @property
    def key_path(self) -> Optional[Path]:
        if not self.ssh_key:
            return None
        if self.ssh_key.startswith('~/'):
            return Path.home() / self.ssh_key[2:]
        return Path(self.ssh_key)

    def to_ssh_command(self) -> str:
        """Equivalent ssh command line for this profile."""
        cmd = 'ssh'
        if self.port and self.port != DEFAULT_PORT:
            cmd += f' -p {self.port}'
        if self.ssh_key:
            cmd += f' -i {self.ssh_key}'
        return f'{cmd} {self.username}@{self.hostname}'

    def ssh_args(self) -> List[str]:
        """Argument list that opens a session for this profile, with '~' expanded."""
        args = ['ssh']
        if self.port and self.port != DEFAULT_PORT:
            args += ['-p', str(self.port)]
        if self.key_path is not None:
            args += ['-i', str(self.key_path)]
        args.append(f'{self.username}@{self.hostname}')
        return args


class ProfileStore:
    """Whole-file JSON persistence for connection profiles.

    Every mutation loads a fresh snapshot, builds a new list and rewrites the
    file in one rename, so readers never observe a half-written store.
    """

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> List[ConnectionProfile]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding='utf-8') or '[]')
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigIOError(f"Malformed profile store {self.path}: {e}") from e
        except OSError as e:
            raise ConfigIOError(f"Cannot read profile store {self.path}: {e}") from e
        if not isinstance(data, list):
            raise ConfigIOError(f"Profile store {self.path} must contain a JSON array")
        return [ConnectionProfile.from_dict(item) for item in data]

    def save(self, profiles: Iterable[ConnectionProfile]) -> None:
        content = json.dumps([p.to_dict() for p in profiles], indent=2) + '\n'
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix='.profiles.', dir=self.path.parent)
            try:
                with os.fdopen(fd, 'w') as f:
                    f.write(content)
                os.replace(tmp_name, self.path)
            except OSError:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ConfigIOError(f"Cannot write profile store {self.path}: {e}") from e

    def get(self, alias: str) -> Optional[ConnectionProfile]:
        for profile in self.load():
            if profile.alias == alias:
                return profile
        return None

    def add(self, profile: ConnectionProfile) -> None:
        if not profile.alias:
            raise InvalidInputError("Profile alias must not be empty")
        profiles = self.load()
        if any(p.alias == profile.alias for p in profiles):
            raise AlreadyExistsError(
                f"Profile with alias '{profile.alias}' already exists in {self.path}"
            )
        self.save(profiles + [profile])

    def remove(self, alias: str) -> None:
        profiles = self.load()
        remaining = [p for p in profiles if p.alias != alias]
        if len(remaining) == len(profiles):
            raise NotFoundError(f"Profile not found: {alias}")
        self.save(remaining)


def find_profiles_using_key(profiles: Iterable[ConnectionProfile],
                            key_path: Path) -> List[ConnectionProfile]:
    """Profiles whose key field points at key_path (same matching as the SSH config)."""
    return [
        p for p in profiles
        if p.key_path is not None and same_key_path(p.key_path, key_path)
    ]


def update_key_path(store: ProfileStore, matched: Iterable[ConnectionProfile],
                    new_key_path: Path) -> int:
    """Repoint matched profiles at new_key_path and rewrite the store once.

    Returns:
        Number of profiles updated
    """
    aliases = {p.alias for p in matched}
    if not aliases:
        return 0
    updated = 0
    result = []
    for profile in store.load():
        if profile.alias in aliases:
            profile = profile.with_ssh_key(str(new_key_path))
            updated += 1
        result.append(profile)
    if updated:
        store.save(result)
    return updated
