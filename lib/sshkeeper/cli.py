#!/usr/bin/env python3
"""sshkeeper CLI - SSH key generation, archive and rotation."""

import sys
from pathlib import Path
from typing import List, Optional

import click

from sshkeeper.errors import SshKeeperError
from sshkeeper.generate import create_key
from sshkeeper.keystore import (
    ARCHIVE_DIR_NAME,
    KeyHandle,
    ListKeysOptions,
    NotFound,
    list_active_key_names,
    list_archived_key_names,
    list_keys,
    resolve,
)
from sshkeeper.metadata import KeyMetadata
from sshkeeper.profiles import ConnectionProfile, ProfileStore, DEFAULT_PORT
from sshkeeper.prompts import AutoConfirm, ClickConfirmation
from sshkeeper.rotation import HEADER_LINE, RotationOptions, RotationWorkflow
from sshkeeper.settings import Settings
from sshkeeper.ssh_keys import get_fingerprint, get_public_key, open_session
from sshkeeper.vault import ArchiveVault

SAFE_PERMISSIONS = 'rw-------'


def _fail(message: str) -> None:
    click.secho(f"❌ {message}", fg='red', err=True)
    sys.exit(1)


def _load_settings(path: Optional[str]) -> Settings:
    """Settings from config.yml, with --path taking precedence for the key root."""
    try:
        settings = Settings.load()
    except (SshKeeperError, ValueError, OSError) as e:
        _fail(f"Invalid configuration: {e}")
    if path:
        settings.key_root = Path(path).expanduser()
    settings.key_root = settings.key_root.absolute()
    return settings


def _complete_active_keys(ctx, param, incomplete: str) -> List[str]:
    root = Path(ctx.params.get('path') or Settings().key_root).expanduser()
    return [n for n in list_active_key_names(root) if n.startswith(incomplete)]


def _complete_archived_keys(ctx, param, incomplete: str) -> List[str]:
    root = Path(ctx.params.get('path') or Settings().key_root).expanduser()
    return [n for n in list_archived_key_names(root) if n.startswith(incomplete)]


def _resolve_or_fail(name: str, root: Path) -> KeyHandle:
    result = resolve(name, root)
    if isinstance(result, NotFound):
        if result.candidates:
            click.echo("Available keys:")
            for candidate in result.candidates:
                click.echo(f"  - {candidate}")
        result.raise_()
    return result


def _describe(handle: KeyHandle, long: bool) -> str:
    if not long:
        return handle.name
    flags = ['encrypted' if handle.encrypted else 'unencrypted']
    if handle.has_public:
        flags.append('pub')
    if handle.has_meta:
        flags.append('meta')
    return f"{handle.permissions}  {handle.algorithm:<8} {handle.name}  ({', '.join(flags)})"


path_option = click.option(
    '--path', '-p', type=click.Path(file_okay=False),
    help='Key root directory (default: ~/.ssh or key_root in config.yml)',
)


@click.group()
@click.version_option(package_name='sshkeeper')
def main():
    """Archive, restore and rotate SSH keys without breaking your SSH config."""
    pass


@main.command('list')
@path_option
@click.option('--long', '-l', 'long', is_flag=True, help='Show type, encryption and permissions')
@click.option('--all', '-a', 'show_archived', is_flag=True, help='Include archived keys')
def list_cmd(path: Optional[str], long: bool, show_archived: bool) -> None:
    """List private keys under the key root."""
    root = _load_settings(path).key_root
    if not root.is_dir():
        _fail(f"Key root does not exist: {root}")

    keys = list_keys(root)
    if not keys:
        click.echo("No keys found")
    else:
        click.echo(f"🔑 Active keys in {root}:")
        for key_path in keys:
            click.echo(f"  {_describe(KeyHandle.load(key_path, root), long)}")

    if show_archived:
        archive_root = root / ARCHIVE_DIR_NAME
        archived = list_keys(archive_root, ListKeysOptions(exclude_archived=False))
        click.echo(f"\n📦 Archived keys ({len(archived)}):")
        for key_path in archived:
            click.echo(f"  {_describe(KeyHandle.load(key_path, archive_root), long)}")


@main.command()
@click.argument('name', shell_complete=_complete_active_keys)
@path_option
def info(name: str, path: Optional[str]) -> None:
    """Show details and fingerprint of a key."""
    root = _load_settings(path).key_root
    try:
        handle = _resolve_or_fail(name, root)
    except SshKeeperError as e:
        _fail(str(e))

    click.echo(f"Name:        {handle.name}")
    click.echo(f"Path:        {handle.path}")
    click.echo(f"Type:        {handle.algorithm}")
    click.echo(f"Encrypted:   {'yes' if handle.encrypted else 'no'}")
    click.echo(f"Public key:  {'yes' if handle.has_public else 'missing'}")
    click.echo(f"Metadata:    {'yes' if handle.has_meta else 'no'}")
    click.echo(f"Permissions: {handle.permissions}")
    if handle.comment:
        click.echo(f"Comment:     {handle.comment}")
    metadata = KeyMetadata.load(handle.path)
    if metadata:
        click.echo(f"Use:         {metadata.use_path}")
        if metadata.description:
            click.echo(f"Description: {metadata.description}")
        if metadata.created_at:
            click.echo(f"Created:     {metadata.created_at.strftime('%Y-%m-%d %H:%M:%S %Z')}")
        if metadata.created_by:
            click.echo(f"Created by:  {metadata.created_by}")
    fingerprint = get_fingerprint(handle.path)
    if fingerprint:
        click.echo(f"Fingerprint: {fingerprint}")
    if handle.permissions not in (SAFE_PERMISSIONS, 'n/a'):
        click.secho(f"⚠️  Permissions are too open; run: chmod 600 {handle.path}", fg='yellow')
    if handle.has_public:
        click.echo("\n" + "=" * 60)
        click.echo(get_public_key(handle.path))
        click.echo("=" * 60)


@main.command()
@path_option
@click.option('--type', '-t', 'key_type', type=click.Choice(['ed25519', 'rsa', 'ecdsa'],
              case_sensitive=False), default='ed25519', show_default=True, help='Key algorithm')
@click.option('--use', '-u', help="Use-case folder, e.g. 'work' or 'work/project-a'")
@click.option('--name', '-n', help='Key filename (default: id_<last use segment>_<type>)')
@click.option('--comment', '-C', help='Key comment (default: user@hostname (name))')
@click.option('--description', '-d', help='Description stored in the .meta file')
@click.option('--bits', '-b', type=int, help='Key size for rsa/ecdsa')
@click.option('--passphrase', is_flag=True, help='Prompt for a passphrase (default: none)')
@click.option('--force', '-f', is_flag=True, help='Overwrite an existing key')
def generate(path: Optional[str], key_type: str, use: Optional[str], name: Optional[str],
             comment: Optional[str], description: Optional[str], bits: Optional[int],
             passphrase: bool, force: bool) -> None:
    """Generate a new key and record what it is for."""
    settings = _load_settings(path)
    if bits is None:
        bits = settings.default_bits.get(key_type.lower())
    secret = ''
    if passphrase:
        secret = click.prompt('Passphrase', hide_input=True, confirmation_prompt=True)

    try:
        handle = create_key(settings.key_root, key_type, use=use, name=name, comment=comment,
                            bits=bits, passphrase=secret, force=force)
    except SshKeeperError as e:
        _fail(str(e))
    except OSError as e:
        _fail(f"Failed to generate key: {e}")

    click.echo(f"✓ Generated {key_type.lower()} key: {handle.path}")
    click.echo(f"  Public key: {handle.pub_path}")
    metadata = KeyMetadata.create(use, description)
    try:
        metadata.save(handle.path)
    except OSError as e:
        click.secho(f"⚠️  Could not save key metadata: {e}", fg='yellow')
    else:
        click.echo(f"  Use:        {metadata.use_path}")


@main.command()
@click.argument('name', shell_complete=_complete_active_keys)
@path_option
@click.option('--force', '-f', is_flag=True,
              help='Archive even if hosts use the key, replacing any archived copy')
def archive(name: str, path: Optional[str], force: bool) -> None:
    """Move a key and its companions into archived/."""
    root = _load_settings(path).key_root
    vault = ArchiveVault(root)
    try:
        handle = _resolve_or_fail(name, root)
        entry, hosts = vault.archive_unused(handle, ClickConfirmation(), force=force)
    except SshKeeperError as e:
        _fail(str(e))
    except OSError as e:
        _fail(f"Failed to archive {name}: {e}")

    click.echo(f"✓ Archived {entry.name} to {ARCHIVE_DIR_NAME}/{entry.name}")
    for directory in entry.removed_dirs:
        click.echo(f"  Removed empty directory: {directory.relative_to(root)}")
    if hosts:
        click.secho("⚠️  These hosts still reference the archived key:", fg='yellow')
        for host in sorted(hosts):
            click.secho(f"  - {host}", fg='yellow')


@main.command()
@click.argument('name', shell_complete=_complete_archived_keys)
@path_option
@click.option('--force', '-f', is_flag=True, help='Overwrite an active key at the same path')
def unarchive(name: str, path: Optional[str], force: bool) -> None:
    """Restore an archived key to its original location."""
    root = _load_settings(path).key_root
    try:
        handle = ArchiveVault(root).unarchive(name, force=force)
    except SshKeeperError as e:
        if getattr(e, 'candidates', None):
            click.echo("Archived keys:")
            for candidate in e.candidates:
                click.echo(f"  - {candidate}")
        _fail(str(e))
    except OSError as e:
        _fail(f"Failed to restore {name}: {e}")

    click.echo(f"✓ Restored {handle.name} to {handle.path}")


@main.command()
@click.argument('names', nargs=-1, required=True, shell_complete=_complete_active_keys)
@path_option
@click.option('--type', '-t', 'key_type', type=click.Choice(['ed25519', 'rsa', 'ecdsa'],
              case_sensitive=False), help='New key type (default: same as old key)')
@click.option('--comment', '-C', help='Comment for the new key')
@click.option('--bits', '-b', type=int, help='Key size for rsa/ecdsa')
@click.option('--dry-run', is_flag=True, help='Show what would happen without changing anything')
@click.option('--force', '-f', is_flag=True,
              help='Skip confirmation and continue past a failed old-key test')
@click.option('--no-test', is_flag=True, help='Skip connection tests')
@click.option('--no-backup', is_flag=True, help='Do not back up the SSH config')
@click.option('--upload', help='Comma-separated user@host targets for ssh-copy-id')
def rotate(names, path: Optional[str], key_type: Optional[str], comment: Optional[str],
           bits: Optional[int], dry_run: bool, force: bool, no_test: bool,
           no_backup: bool, upload: Optional[str]) -> None:
    """Replace keys with new ones and update every reference to them."""
    settings = _load_settings(path)
    if not settings.key_root.is_dir():
        _fail(f"Key root does not exist: {settings.key_root}")

    options = RotationOptions(
        key_type=key_type,
        comment=comment,
        bits=bits,
        dry_run=dry_run,
        force=force,
        test=settings.test_connection and not no_test,
        backup=settings.backup_config and not no_backup,
        upload_targets=RotationOptions.parse_targets(upload),
    )
    workflow = RotationWorkflow(
        settings.key_root,
        ProfileStore(settings.profiles_file),
        options,
        confirmation=AutoConfirm() if force else ClickConfirmation(),
        connect_timeout=settings.connect_timeout,
        default_bits=settings.default_bits,
    )
    result = workflow.run(list(names))
    sys.exit(result.exit_code)


@main.group()
def profile():
    """Manage saved connection profiles."""
    pass


def _profile_store() -> ProfileStore:
    return ProfileStore(_load_settings(None).profiles_file)


def _complete_profiles(ctx, param, incomplete: str) -> List[str]:
    try:
        profiles = ProfileStore(Settings().profiles_file).load()
    except SshKeeperError:
        return []
    return sorted(p.alias for p in profiles if p.alias.startswith(incomplete))


@profile.command('add')
@click.argument('alias')
@click.argument('destination')
@click.option('--port', '-P', type=int, default=DEFAULT_PORT, show_default=True)
@click.option('--key', '-i', 'ssh_key', help='Private key used for this connection')
def profile_add(alias: str, destination: str, port: int, ssh_key: Optional[str]) -> None:
    """Save a profile for DESTINATION (user@host)."""
    if '@' not in destination:
        _fail(f"Destination must be user@host: {destination}")
    username, hostname = destination.split('@', 1)
    if ssh_key:
        ssh_key = str(Path(ssh_key).expanduser().absolute())
    try:
        _profile_store().add(ConnectionProfile(alias, hostname, username, port, ssh_key))
    except SshKeeperError as e:
        _fail(str(e))
    click.echo(f"✓ Added profile {alias}")


@profile.command('list')
def profile_list() -> None:
    """List saved profiles."""
    try:
        profiles = _profile_store().load()
    except SshKeeperError as e:
        _fail(str(e))
    if not profiles:
        click.echo("No profiles saved")
        return
    for p in profiles:
        click.echo(f"{p.alias:<20} {p.to_ssh_command()}")


@profile.command('remove')
@click.argument('alias', shell_complete=_complete_profiles)
def profile_remove(alias: str) -> None:
    """Delete a saved profile."""
    try:
        _profile_store().remove(alias)
    except SshKeeperError as e:
        _fail(str(e))
    click.echo(f"✓ Removed profile {alias}")


@profile.command('connect')
@click.argument('alias', shell_complete=_complete_profiles)
def profile_connect(alias: str) -> None:
    """Open an SSH session using a saved profile."""
    try:
        profiles = _profile_store().load()
    except SshKeeperError as e:
        _fail(str(e))
    found = next((p for p in profiles if p.alias == alias), None)
    if found is None:
        click.echo("Available profiles:")
        for p in profiles:
            click.echo(f"  - {p.alias} ({p.username}@{p.hostname})")
        _fail(f"Profile not found: {alias}")

    click.secho(HEADER_LINE, bold=True)
    click.secho("  SSH Connection", bold=True)
    click.secho(HEADER_LINE, bold=True)
    click.echo(f"Profile:  {found.alias}")
    click.echo(f"Hostname: {found.hostname}")
    click.echo(f"Username: {found.username}")
    if found.port != DEFAULT_PORT:
        click.echo(f"Port:     {found.port}")
    if found.ssh_key:
        click.echo(f"SSH key:  {found.ssh_key}")
    click.echo(f"\nEquivalent SSH command:\n  {found.to_ssh_command()}\n")
    click.secho(f"→ Connecting to {found.alias}...", fg='green')

    try:
        returncode = open_session(found.ssh_args())
    except SshKeeperError as e:
        _fail(str(e))
    sys.exit(returncode)


if __name__ == '__main__':
    main()
