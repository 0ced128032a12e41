"""Wrappers around ssh-keygen, ssh and ssh-copy-id."""

import getpass
import socket
import subprocess
from pathlib import Path
from typing import List, Optional

from sshkeeper.errors import ExternalToolError, InvalidInputError
from sshkeeper.keystore import ROTATABLE_TYPES, public_key_path

DEFAULT_BITS = {'rsa': 4096, 'ecdsa': 256}
ECDSA_BITS = (256, 384, 521)
RSA_MIN_BITS = 2048
RSA_MAX_BITS = 16384

DEFAULT_CONNECT_TIMEOUT = 10


def validate_key_type(key_type: str) -> str:
    key_type = key_type.lower()
    if key_type not in ROTATABLE_TYPES:
        raise InvalidInputError(
            f"Invalid key type: {key_type} (valid types: {', '.join(ROTATABLE_TYPES)})"
        )
    return key_type


def validate_bits(key_type: str, bits: Optional[int]) -> Optional[int]:
    """Check a requested key size and fill in the default.

    Returns:
        The size to pass to ssh-keygen, or None for ed25519
    """
    if key_type == 'ed25519':
        return None
    if bits is None:
        return DEFAULT_BITS[key_type]
    if key_type == 'rsa' and not RSA_MIN_BITS <= bits <= RSA_MAX_BITS:
        raise InvalidInputError(
            f"RSA key size must be between {RSA_MIN_BITS} and {RSA_MAX_BITS} bits"
        )
    if key_type == 'ecdsa' and bits not in ECDSA_BITS:
        raise InvalidInputError("ECDSA key size must be 256, 384, or 521 bits")
    return bits


def default_comment(key_name: str, rotated: bool = True) -> str:
    label = f"rotated {key_name}" if rotated else key_name
    return f"{getpass.getuser()}@{socket.gethostname()} ({label})"


def format_command(command: List[str]) -> str:
    """Shell-style rendering of a command with the passphrase masked."""
    parts = []
    for i, arg in enumerate(command):
        if i > 0 and command[i - 1] == '-N':
            parts.append('"***"')
        elif not arg or any(c in arg for c in ' "\''):
            escaped = arg.replace('"', '\\"')
            parts.append(f'"{escaped}"')
        else:
            parts.append(arg)
    return ' '.join(parts)


def keygen_command(key_path: Path, key_type: str, comment: str,
                   bits: Optional[int] = None, passphrase: str = '') -> List[str]:
    command = [
        'ssh-keygen',
        '-t', key_type,
        '-f', str(key_path),
        '-C', comment,
        '-N', passphrase,  # Empty means no passphrase
    ]
    if bits is not None:
        command += ['-b', str(bits)]
    return command


def generate_key(key_path: Path, key_type: str, comment: str,
                 bits: Optional[int] = None, passphrase: str = '') -> List[str]:
    """Generate a keypair at key_path (public key gets .pub suffix).

    Returns:
        The command that was run

    Raises:
        ExternalToolError: ssh-keygen failed or produced no key
    """
    command = keygen_command(key_path, key_type, comment, bits, passphrase)
    try:
        result = subprocess.run(command, capture_output=True, text=True)
    except OSError as e:
        raise ExternalToolError(command, output=str(e)) from e
    if result.returncode != 0:
        raise ExternalToolError(command, result.returncode, result.stderr or result.stdout)
    if not key_path.exists():
        raise ExternalToolError(command, result.returncode, f"no key written to {key_path}")
    return command


def check_connection(host: str, key_path: Path,
                     timeout: int = DEFAULT_CONNECT_TIMEOUT) -> bool:
    """Try a non-interactive login to host using only key_path."""
    command = [
        'ssh',
        '-i', str(key_path),
        '-o', 'BatchMode=yes',
        '-o', 'IdentitiesOnly=yes',
        '-o', f'ConnectTimeout={timeout}',
        '-o', 'StrictHostKeyChecking=no',
        host,
        'exit',
    ]
    try:
        result = subprocess.run(
            command, capture_output=True, text=True, timeout=timeout + 5
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


def upload_public_key(pub_path: Path, target: str) -> List[str]:
    """Install a public key on target (user@host) with ssh-copy-id.

    Runs attached to the terminal so the operator can type a password.

    Raises:
        ExternalToolError: ssh-copy-id failed
    """
    command = ['ssh-copy-id', '-i', str(pub_path), target]
    try:
        result = subprocess.run(command)
    except OSError as e:
        raise ExternalToolError(command, output=str(e)) from e
    if result.returncode != 0:
        raise ExternalToolError(command, result.returncode)
    return command


def get_fingerprint(key_path: Path, hash_algo: str = 'sha256') -> Optional[str]:
    """SHA256 fingerprint of a key's public half, or None if unavailable."""
    pub_path = public_key_path(key_path)
    target = pub_path if pub_path.exists() else key_path
    try:
        result = subprocess.run(
            ['ssh-keygen', '-l', '-E', hash_algo, '-f', str(target)],
            capture_output=True, text=True, check=False
        )
    except OSError:
        return None
    parts = result.stdout.split()
    if result.returncode != 0 or len(parts) < 2:
        return None
    return parts[1]


def get_public_key(key_path: Path) -> str:
    """Read public key content.

    Args:
        key_path: Path to private key (will append .pub)
    """
    return public_key_path(key_path).read_text(errors='replace').strip()


def open_session(command: List[str]) -> int:
    """Run an interactive ssh command attached to the terminal.

    Returns:
        The exit status of ssh

    Raises:
        ExternalToolError: ssh could not be started
    """
    try:
        result = subprocess.run(command)
    except OSError as e:
        raise ExternalToolError(command, output=str(e)) from e
    return result.returncode
