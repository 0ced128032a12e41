"""Append-only audit trail of rotation sessions (rotation.log)."""

import sys
from datetime import datetime
from pathlib import Path
from typing import List

LOG_FILE_NAME = 'rotation.log'
TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'

LOG_TITLE = (
    "# SSH Key Rotation Log\n"
    "\n"
    "This file contains a history of all SSH key rotations performed by sshkeeper.\n"
)


def format_entry(status: str, message: str) -> str:
    timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)
    return f'[{timestamp}] {status} - {message}'


class RotationLog:
    """Collects operation lines for one invocation and appends them as a session.

    Example:
        log = RotationLog(Path.home() / '.ssh')
        log.record('ARCHIVED', 'Old key: id_rsa')
        log.write()
    """

    def __init__(self, key_root: Path):
        self.path = key_root / LOG_FILE_NAME
        self.started_at = datetime.now()
        self.entries: List[str] = []
        self._written = 0

    def record(self, status: str, message: str) -> str:
        """Add one operation line to this session and return it."""
        entry = format_entry(status, message)
        self.entries.append(entry)
        return entry

    def write(self) -> bool:
        """Append the entries recorded since the last write to the log file.

        The session header goes out with the first batch of entries, so this
        can be called after every key without splitting the session.

        Returns:
            False if nothing was written (no new entries or the file is unwritable)
        """
        pending = self.entries[self._written:]
        if not pending:
            return False
        chunk = ''.join(f'{e}\n' for e in pending)
        if not self._written:
            header = f"## Rotation Session - {self.started_at.strftime(TIMESTAMP_FORMAT)}\n"
            chunk = '\n' + header + '\n' + chunk
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            is_new = not self.path.exists() or self.path.stat().st_size == 0
            with open(self.path, 'a') as f:
                if is_new:
                    f.write(LOG_TITLE)
                f.write(chunk)
        except (IOError, OSError) as e:
            print(f"Warning: Failed to write rotation log: {e}", file=sys.stderr)
            return False
        self._written = len(self.entries)
        return True
