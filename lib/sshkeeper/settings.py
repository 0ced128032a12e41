"""Parse ~/.sshkeeper/config.yml."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from sshkeeper.errors import InvalidInputError
from sshkeeper.ssh_keys import DEFAULT_BITS, DEFAULT_CONNECT_TIMEOUT, validate_bits

KNOWN_FIELDS = {
    'key_root', 'profiles_file', 'rsa_bits', 'ecdsa_bits',
    'connect_timeout', 'backup_config', 'test_connection',
}


def config_dir() -> Path:
    """Directory holding config.yml and profiles.json (SSHKEEPER_HOME overrides)."""
    override = os.environ.get('SSHKEEPER_HOME')
    if override:
        return Path(override).expanduser()
    return Path.home() / '.sshkeeper'


def _expand(value: str) -> Path:
    if value.startswith('~/'):
        return Path.home() / value[2:]
    return Path(value)


@dataclass
class Settings:
    """User settings. Every field has a default, so the file is optional."""

    key_root: Path = field(default_factory=lambda: Path.home() / '.ssh')
    profiles_file: Path = field(default_factory=lambda: config_dir() / 'profiles.json')
    rsa_bits: int = DEFAULT_BITS['rsa']
    ecdsa_bits: int = DEFAULT_BITS['ecdsa']
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT
    backup_config: bool = True
    test_connection: bool = True

    @property
    def default_bits(self) -> dict:
        return {'rsa': self.rsa_bits, 'ecdsa': self.ecdsa_bits}

    @classmethod
    def load(cls, directory: Optional[Path] = None) -> 'Settings':
        """Load config.yml from directory (default: config_dir()). Missing file means defaults."""
        config_file = (directory or config_dir()) / 'config.yml'
        if not config_file.exists():
            return cls()

        try:
            with open(config_file, encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise InvalidInputError(f"Cannot parse {config_file}: {e}") from e

        if not isinstance(data, dict):
            raise InvalidInputError(f"{config_file} must contain a mapping")
        unknown = set(data.keys()) - KNOWN_FIELDS
        if unknown:
            raise InvalidInputError(f"Unknown config.yml field(s): {', '.join(sorted(unknown))}")

        settings = cls()
        if data.get('key_root'):
            settings.key_root = _expand(str(data['key_root']))
        if data.get('profiles_file'):
            settings.profiles_file = _expand(str(data['profiles_file']))
        if 'rsa_bits' in data:
            settings.rsa_bits = validate_bits('rsa', int(data['rsa_bits']))
        if 'ecdsa_bits' in data:
            settings.ecdsa_bits = validate_bits('ecdsa', int(data['ecdsa_bits']))
        if 'connect_timeout' in data:
            settings.connect_timeout = int(data['connect_timeout'])
            if settings.connect_timeout <= 0:
                raise InvalidInputError("connect_timeout must be a positive number of seconds")
        if 'backup_config' in data:
            settings.backup_config = bool(data['backup_config'])
        if 'test_connection' in data:
            settings.test_connection = bool(data['test_connection'])
        return settings
