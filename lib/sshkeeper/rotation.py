"""Key rotation: replace an in-use key and repoint everything that referenced it.

The old key is only touched after the replacement has been generated (and,
if enabled, proven to log in), so an aborted rotation always leaves the
original key usable.
"""

import os
import shutil
import stat
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import click

from sshkeeper import ssh_config
from sshkeeper.errors import (
    AlreadyExistsError,
    ConfigIOError,
    ExternalToolError,
    NotFoundError,
    SshKeeperError,
)
from sshkeeper.keystore import ARCHIVE_DIR_NAME, ROTATABLE_TYPES, NotFound, public_key_path, resolve
from sshkeeper.profiles import ProfileStore, find_profiles_using_key, update_key_path
from sshkeeper.prompts import ClickConfirmation, ConfirmationPort
from sshkeeper.rotation_log import RotationLog, format_entry
from sshkeeper.ssh_keys import (
    DEFAULT_CONNECT_TIMEOUT,
    check_connection,
    default_comment,
    format_command,
    generate_key,
    keygen_command,
    upload_public_key,
    validate_bits,
    validate_key_type,
)
from sshkeeper.vault import ArchiveVault, move_file

HEADER_LINE = '═' * 65
HOST_PATTERN_CHARS = frozenset('*?!')


class RotationState(Enum):
    PENDING = 'pending'
    RESOLVED = 'resolved'
    TYPE_DETECTED = 'type-detected'
    REFERENCES_DISCOVERED = 'references-discovered'
    TESTED_OLD = 'tested-old'
    CONFIRMED = 'confirmed'
    CONFIG_BACKED_UP = 'config-backed-up'
    NEW_KEY_GENERATED = 'new-key-generated'
    TESTED_NEW = 'tested-new'
    OLD_ARCHIVED = 'old-archived'
    NEW_INSTALLED = 'new-installed'
    REFERENCES_UPDATED = 'references-updated'
    UPLOADED = 'uploaded'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    SIMULATED = 'simulated'


TERMINAL_STATES = {
    RotationState.SUCCEEDED, RotationState.FAILED,
    RotationState.CANCELLED, RotationState.SIMULATED,
}

OUTCOMES = {
    RotationState.SUCCEEDED: 'success',
    RotationState.FAILED: 'failed',
    RotationState.CANCELLED: 'cancelled',
    RotationState.SIMULATED: 'dry-run',
}


@dataclass
class RotationOptions:
    """Caller choices for one rotate invocation."""

    key_type: Optional[str] = None
    comment: Optional[str] = None
    bits: Optional[int] = None
    dry_run: bool = False
    force: bool = False
    test: bool = True
    backup: bool = True
    upload_targets: List[str] = field(default_factory=list)

    @staticmethod
    def parse_targets(value: Optional[str]) -> List[str]:
        """Split 'user@a, user@b' into targets."""
        if not value:
            return []
        return [t.strip() for t in value.split(',') if t.strip()]


@dataclass
class RotationRecord:
    """Everything that happened while rotating one key name."""

    key_name: str
    key_path: Optional[Path] = None
    original_type: Optional[str] = None
    original_comment: Optional[str] = None
    target_type: Optional[str] = None
    target_comment: Optional[str] = None
    affected_hosts: Set[str] = field(default_factory=set)
    affected_profiles: List[str] = field(default_factory=list)
    state: RotationState = RotationState.PENDING
    history: List[RotationState] = field(default_factory=list)
    operations: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    plan: List[str] = field(default_factory=list)
    backup_path: Optional[Path] = None
    archived_path: Optional[Path] = None
    failure: Optional[str] = None

    def advance(self, state: RotationState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Rotation of {self.key_name} already ended ({self.state.value})")
        self.state = state
        self.history.append(state)

    @property
    def outcome(self) -> Optional[str]:
        return OUTCOMES.get(self.state)

    @property
    def succeeded(self) -> bool:
        return self.state in (RotationState.SUCCEEDED, RotationState.SIMULATED)

    @property
    def partial(self) -> bool:
        """Key material was replaced but some references or uploads failed."""
        return self.state is RotationState.SUCCEEDED and bool(self.errors)


@dataclass
class BatchResult:
    records: List[RotationRecord] = field(default_factory=list)

    @property
    def successes(self) -> int:
        return sum(1 for r in self.records if r.succeeded)

    @property
    def failures(self) -> int:
        return len(self.records) - self.successes

    @property
    def exit_code(self) -> int:
        return 0 if self.failures == 0 else 1


class RotationAborted(SshKeeperError):
    """Stops a single key's rotation; the message is reported to the operator."""


def _directory_modes(directory: Path, stop: Path) -> Dict[Path, int]:
    """Permission bits of directory and its parents up to (excluding) stop."""
    modes = {}
    while directory != stop and stop in directory.parents:
        modes[directory] = stat.S_IMODE(directory.stat().st_mode)
        directory = directory.parent
    return modes


class RotationWorkflow:
    """Drives key rotation for one or more key names.

    Example:
        workflow = RotationWorkflow(Path.home() / '.ssh', ProfileStore(profiles_json),
                                    RotationOptions(dry_run=True))
        result = workflow.run(['id_rsa'])
    """

    def __init__(self, key_root: Path, profile_store: ProfileStore,
                 options: Optional[RotationOptions] = None,
                 confirmation: Optional[ConfirmationPort] = None,
                 rotation_log: Optional[RotationLog] = None,
                 out: Callable[..., None] = click.secho,
                 connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
                 default_bits: Optional[Dict[str, int]] = None):
        self.key_root = key_root.absolute()
        self.archive_root = self.key_root / ARCHIVE_DIR_NAME
        self.config_path = self.key_root / ssh_config.CONFIG_FILE_NAME
        self.profile_store = profile_store
        self.options = options or RotationOptions()
        self.confirmation = confirmation or ClickConfirmation()
        self.rotation_log = rotation_log or RotationLog(self.key_root)
        self.out = out
        self.connect_timeout = connect_timeout
        self.default_bits = default_bits or {}
        self.vault = ArchiveVault(self.key_root)

    # ------------------------------------------------------------------
    # Batch

    def run(self, key_names: List[str]) -> BatchResult:
        """Rotate each key in turn; one key's failure never stops the next."""
        result = BatchResult()
        if self.options.dry_run:
            self.out("=== DRY RUN MODE - No changes will be made ===", fg='yellow')
            self.out('')

        logged = False
        for name in key_names:
            self.out(HEADER_LINE, bold=True)
            self.out(f"  Rotating key: {name}", bold=True)
            self.out(HEADER_LINE, bold=True)
            self.out('')
            try:
                result.records.append(self.rotate(name))
            finally:
                # Persist per key so finished rotations stay on record
                if not self.options.dry_run and self.rotation_log.write():
                    logged = True
            self.out('')

        self.print_summary(result)
        if logged:
            self.out(f"✓ Rotation log updated: {self.rotation_log.path}", fg='green')
        return result

    def print_summary(self, result: BatchResult) -> None:
        self.out(HEADER_LINE, bold=True)
        self.out("  Rotation Summary", bold=True)
        self.out(HEADER_LINE, bold=True)
        self.out(f"Total keys processed: {len(result.records)}")
        self.out(f"Successful: {result.successes}", fg='green')
        self.out(f"Failed: {result.failures}", fg='red' if result.failures else None)
        for record in result.records:
            if record.partial:
                self.out(f"⚠ {record.key_name}: rotated, but {len(record.errors)} "
                         f"follow-up step(s) failed:", fg='yellow')
                for error in record.errors:
                    self.out(f"    - {error}", fg='yellow')
        self.out(f"{result.successes} successful, {result.failures} failed")
        self.out(HEADER_LINE, bold=True)

    # ------------------------------------------------------------------
    # Single key

    def rotate(self, name: str) -> RotationRecord:
        """Run one key through the state machine; never raises for expected failures."""
        record = RotationRecord(key_name=name)
        try:
            self._rotate(record)
        except SshKeeperError as e:
            self._fail(record, str(e))
        except OSError as e:
            self._fail(record, f"Rotation of {name} failed: {e}")
        return record

    def _log(self, record: RotationRecord, status: str, message: str) -> None:
        record.operations.append(format_entry(status, message))
        if not self.options.dry_run:
            self.rotation_log.record(status, message)

    def _fail(self, record: RotationRecord, message: str) -> None:
        self.out(f"✗ {message}", fg='red', err=True)
        record.failure = message
        record.advance(RotationState.FAILED)
        self._log(record, 'FAILED', f"{message} ({record.key_name})")

    def _rotate(self, record: RotationRecord) -> None:
        handle = self._resolve(record)
        key_type, bits = self._detect_type(record, handle)
        self._discover_references(record, handle)

        if self.options.test and record.affected_hosts and not self.options.dry_run:
            self._test_old_key(record, handle.path)

        if not self.options.force and not self.options.dry_run:
            message = (f"Rotate key '{record.key_name}' (affects {len(record.affected_hosts)} "
                       f"host(s) and {len(record.affected_profiles)} profile(s))?")
            if not self.confirmation.confirm(message):
                self.out("Rotation cancelled.")
                record.advance(RotationState.CANCELLED)
                self._log(record, 'CANCELLED', f"User cancelled rotation: {record.key_name}")
                return
            record.advance(RotationState.CONFIRMED)

        if self.options.dry_run:
            self._simulate(record, handle.path, key_type)
            return

        if self.options.backup and self.config_path.exists():
            try:
                record.backup_path = ssh_config.backup(self.config_path, self.archive_root)
            except ConfigIOError as e:
                raise RotationAborted(f"Config backup failed: {e}") from e
            record.advance(RotationState.CONFIG_BACKED_UP)
            rel = record.backup_path.relative_to(self.key_root).as_posix()
            self.out(f"✓ Backed up SSH config to: {rel}", fg='green')
            self._log(record, 'BACKUP', f"SSH config backed up: {record.backup_path.name}")

        # Inside the key root so installing is a rename, not a copy
        tmp_dir = Path(tempfile.mkdtemp(prefix='.sshkeeper-rotate-', dir=self.key_root))
        try:
            self._replace_key(record, handle, tmp_dir, key_type, bits)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

        self._update_references(record, handle.path)
        self._upload(record, public_key_path(handle.path))

        record.advance(RotationState.SUCCEEDED)
        self.out('')
        self.out(f"✓ Key rotation completed successfully: {record.key_name}", fg='green')
        self._log(record, 'SUCCESS', f"Completed rotation: {record.key_name}")

    def _resolve(self, record: RotationRecord):
        result = resolve(record.key_name, self.key_root)
        if isinstance(result, NotFound):
            if result.candidates:
                self.out("Available keys:", fg='yellow')
                for candidate in result.candidates:
                    self.out(f"  - {candidate}")
            raise NotFoundError(f"Key not found: {result.name}", result.candidates)
        record.key_name = result.name
        record.key_path = result.path
        record.advance(RotationState.RESOLVED)
        return result

    def _detect_type(self, record: RotationRecord, handle):
        record.original_type = handle.algorithm
        record.original_comment = handle.comment

        if self.options.key_type:
            key_type = validate_key_type(self.options.key_type)
        elif handle.algorithm in ROTATABLE_TYPES:
            key_type = handle.algorithm
        else:
            key_type = 'ed25519'
            self.out(f"⚠ Cannot regenerate a {handle.algorithm} key; "
                     f"using ed25519 instead", fg='yellow')
            self._log(record, 'WARNING',
                      f"{record.key_name} is {handle.algorithm}, rotating to ed25519")

        requested_bits = self.options.bits
        if requested_bits is None:
            requested_bits = self.default_bits.get(key_type)
        bits = validate_bits(key_type, requested_bits)

        record.target_type = key_type
        record.target_comment = (self.options.comment or handle.comment
                                 or default_comment(record.key_name))
        record.advance(RotationState.TYPE_DETECTED)

        self.out(f"Original key type: {record.original_type}")
        self.out(f"New key type: {record.target_type}")
        self.out(f"Comment: {record.target_comment}")
        self.out('')
        return key_type, bits

    def _discover_references(self, record: RotationRecord, handle) -> None:
        try:
            record.affected_hosts = ssh_config.find_hosts_using_key(
                self.config_path, handle.path, self.key_root
            )
        except ConfigIOError as e:
            self.out(f"⚠ {e}", fg='yellow')
            self._log(record, 'WARNING', str(e))

        try:
            profiles = find_profiles_using_key(self.profile_store.load(), handle.path)
            record.affected_profiles = [p.alias for p in profiles]
        except ConfigIOError as e:
            self.out(f"⚠ {e}", fg='yellow')
            self._log(record, 'WARNING', str(e))

        if record.affected_hosts:
            self.out("Hosts using this key in SSH config:", bold=True)
            for host in sorted(record.affected_hosts):
                self.out(f"  - {host}")
            self.out('')
        if record.affected_profiles:
            self.out("Connection profiles using this key:", bold=True)
            for alias in record.affected_profiles:
                self.out(f"  - {alias}")
            self.out('')
        record.advance(RotationState.REFERENCES_DISCOVERED)

    def _test_host(self, record: RotationRecord) -> Optional[str]:
        """First literal host pattern among the affected hosts.

        Wildcard and negated patterns ('*', 'web-?', '!bastion') name no
        single machine, so they cannot be connected to.
        """
        for host in sorted(record.affected_hosts):
            for pattern in host.split():
                if not HOST_PATTERN_CHARS.intersection(pattern):
                    return pattern
        return None

    def _test_old_key(self, record: RotationRecord, key_path: Path) -> None:
        host = self._test_host(record)
        if host is None:
            self.out("⚠ No connectable host among the affected hosts; "
                     "skipping connection tests", fg='yellow')
            self._log(record, 'WARNING',
                      f"Connection tests skipped for {record.key_name}: only host patterns")
            return
        self.out(f"Testing connection to {host} with old key...")
        if check_connection(host, key_path, self.connect_timeout):
            self.out("✓ Connection test passed", fg='green')
            self._log(record, 'TESTED', f"Old key connects to {host}")
        elif self.options.force:
            self.out("⚠ Connection test failed, but continuing due to --force", fg='yellow')
            self._log(record, 'WARNING', f"Old key connection test to {host} failed (forced)")
        else:
            raise RotationAborted(
                f"Connection test to {host} failed for {record.key_name}. "
                "Use --force to skip or --no-test to disable testing."
            )
        record.advance(RotationState.TESTED_OLD)
        self.out('')

    def _simulate(self, record: RotationRecord, key_path: Path, key_type: str) -> None:
        steps = []
        if self.options.backup and self.config_path.exists():
            stamp = datetime.now().strftime(ssh_config.BACKUP_TIMESTAMP_FORMAT)
            steps.append(f"Backup SSH config to: {ARCHIVE_DIR_NAME}/config_backups/config_{stamp}")
        steps.append(f"Generate new {key_type} key at: {key_path}")
        steps.append(f"Archive old key to: {ARCHIVE_DIR_NAME}/{record.key_name}")
        steps.append(f"Update {len(record.affected_hosts)} host(s) in SSH config")
        steps.append(f"Update {len(record.affected_profiles)} connection profile(s)")
        if self.options.upload_targets:
            steps.append(f"Upload new public key to: {', '.join(self.options.upload_targets)}")

        record.plan = [f"{i}. {step}" for i, step in enumerate(steps, 1)]
        self.out("[DRY RUN] Would perform the following:", fg='yellow')
        for line in record.plan:
            self.out(f"  {line}")
        record.advance(RotationState.SIMULATED)
        self._log(record, 'DRY-RUN', f"Simulated rotation: {record.key_name}")

    def _replace_key(self, record: RotationRecord, handle, tmp_dir: Path,
                     key_type: str, bits: Optional[int]) -> None:
        tmp_key = tmp_dir / handle.path.name
        tmp_pub = public_key_path(tmp_key)

        command = keygen_command(tmp_key, key_type, record.target_comment, bits)
        self.out(f"Equivalent SSH command: {format_command(command)}")
        try:
            generate_key(tmp_key, key_type, record.target_comment, bits)
        except ExternalToolError as e:
            raise RotationAborted(f"Failed to generate new key: {e}") from e
        record.advance(RotationState.NEW_KEY_GENERATED)
        self.out(f"✓ Generated new {key_type} key", fg='green')
        self._log(record, 'GENERATED', f"New {key_type} key for: {record.key_name}")

        host = self._test_host(record) if self.options.test else None
        if host is not None:
            self.out(f"Testing connection to {host} with new key...")
            if not check_connection(host, tmp_key, self.connect_timeout):
                raise RotationAborted(f"New key connection test to {host} failed")
            record.advance(RotationState.TESTED_NEW)
            self.out("✓ New key connection test passed", fg='green')
            self._log(record, 'TESTED', f"New key connects to {host}")

        dir_modes = _directory_modes(handle.path.parent, self.key_root)
        try:
            entry = self.vault.archive(handle, overwrite=True)
        except (OSError, AlreadyExistsError) as e:
            raise RotationAborted(f"Failed to archive old key: {e}") from e
        record.archived_path = entry.path
        record.advance(RotationState.OLD_ARCHIVED)
        self.out(f"✓ Archived old key to: {ARCHIVE_DIR_NAME}/{entry.name}", fg='green')
        self._log(record, 'ARCHIVED', f"Old key: {record.key_name}")

        try:
            # Archiving prunes directories it emptied; bring them back as they were
            for directory in reversed(entry.removed_dirs):
                directory.mkdir(exist_ok=True)
                if directory in dir_modes:
                    directory.chmod(dir_modes[directory])
            handle.path.parent.mkdir(parents=True, exist_ok=True)
            move_file(tmp_key, handle.path, overwrite=True)
            if tmp_pub.exists():
                move_file(tmp_pub, public_key_path(handle.path), overwrite=True)
        except OSError as e:
            self._restore_old_key(record)
            raise RotationAborted(f"Failed to install new key: {e}") from e

        self._set_permissions(record, handle.path)
        record.advance(RotationState.NEW_INSTALLED)
        self.out(f"✓ New key installed at: {handle.path}", fg='green')
        self._log(record, 'INSTALLED', f"New key at: {record.key_name}")

    def _restore_old_key(self, record: RotationRecord) -> None:
        try:
            self.vault.unarchive(record.key_name, force=True)
        except (OSError, SshKeeperError) as e:
            self._log(record, 'FAILED', f"Could not restore archived key {record.key_name}: {e}")
            self.out(f"✗ Old key is still in {ARCHIVE_DIR_NAME}/{record.key_name}; "
                     f"restore it with: sshkeeper unarchive {record.key_name} --force",
                     fg='red', err=True)
        else:
            self._log(record, 'RESTORED', f"Old key put back after failed install: {record.key_name}")

    def _set_permissions(self, record: RotationRecord, key_path: Path) -> None:
        try:
            os.chmod(key_path, 0o600)
            pub_path = public_key_path(key_path)
            if pub_path.exists():
                os.chmod(pub_path, 0o644)
        except OSError as e:
            self.out(f"⚠ Could not set key permissions: {e}", fg='yellow')
            self._log(record, 'WARNING', f"Permissions not set on {record.key_name}: {e}")

    def _update_references(self, record: RotationRecord, key_path: Path) -> None:
        if record.affected_hosts:
            try:
                count = ssh_config.rewrite_identity(
                    self.config_path, key_path, record.affected_hosts,
                    self.key_root, old_key_path=key_path,
                )
            except ConfigIOError as e:
                record.errors.append(f"SSH config not updated: {e}")
                self.out(f"✗ Failed to update SSH config: {e}", fg='red', err=True)
                self._log(record, 'FAILED', f"SSH config update for {record.key_name}: {e}")
            else:
                if count:
                    for host in sorted(record.affected_hosts):
                        self._log(record, 'UPDATED-HOST', f"SSH config host: {host}")
                    self.out(f"✓ Updated {count} host(s) in SSH config", fg='green')
                    self._log(record, 'UPDATED-CONFIG',
                              f"Updated {count} host(s) for: {record.key_name}")

        if record.affected_profiles:
            store_aliases = set(record.affected_profiles)
            try:
                matched = [p for p in self.profile_store.load() if p.alias in store_aliases]
                count = update_key_path(self.profile_store, matched, key_path)
            except ConfigIOError as e:
                record.errors.append(f"Connection profiles not updated: {e}")
                self.out(f"✗ Failed to update profiles: {e}", fg='red', err=True)
                self._log(record, 'FAILED', f"Profile update for {record.key_name}: {e}")
            else:
                if count:
                    for alias in record.affected_profiles:
                        self._log(record, 'UPDATED-PROFILE', f"Connection profile: {alias}")
                    self.out(f"✓ Updated {count} connection profile(s)", fg='green')
                    self._log(record, 'UPDATED-PROFILES',
                              f"Updated {count} profile(s) for: {record.key_name}")
        record.advance(RotationState.REFERENCES_UPDATED)

    def _upload(self, record: RotationRecord, pub_path: Path) -> None:
        if not self.options.upload_targets:
            return
        for target in self.options.upload_targets:
            self.out(f"Uploading public key to: {target}")
            self.out(f"Equivalent SSH command: "
                     f"{format_command(['ssh-copy-id', '-i', str(pub_path), target])}")
            try:
                upload_public_key(pub_path, target)
            except ExternalToolError as e:
                record.errors.append(f"Upload to {target} failed: {e}")
                self.out(f"✗ Failed to upload public key to: {target}", fg='red', err=True)
                self._log(record, 'UPLOAD-FAILED', f"Failed to upload to: {target}")
            else:
                self.out(f"✓ Uploaded public key to: {target}", fg='green')
                self._log(record, 'UPLOADED', f"Public key to: {target}")
        record.advance(RotationState.UPLOADED)
