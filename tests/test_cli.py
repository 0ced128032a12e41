import json
from unittest.mock import patch, MagicMock
from click.testing import CliRunner

from conftest import NEW_KEY_TEXT, make_key
from sshkeeper.cli import main


def test_cli_shows_help():
    """CLI should list its commands with --help"""
    result = CliRunner().invoke(main, ['--help'])
    assert result.exit_code == 0
    for command in ('list', 'info', 'generate', 'archive', 'unarchive', 'rotate', 'profile'):
        assert command in result.output


def test_list_shows_active_and_archived(key_root):
    make_key(key_root, 'id_a')
    make_key(key_root, 'work/id_b', 'ecdsa')
    make_key(key_root, 'archived/id_old')

    result = CliRunner().invoke(main, ['list', '-l', '-a'])

    assert result.exit_code == 0
    assert 'rw-------  ed25519  id_a  (unencrypted, pub)' in result.output
    assert 'ecdsa    work/id_b' in result.output
    assert 'Archived keys (1)' in result.output
    assert 'id_old' in result.output


def test_list_with_path_option(tmp_path, home):
    """--path overrides the default key root"""
    other = tmp_path / 'elsewhere'
    make_key(other, 'id_custom')
    make_key(home / '.ssh', 'id_default')

    result = CliRunner().invoke(main, ['list', '--path', str(other)])

    assert 'id_custom' in result.output
    assert 'id_default' not in result.output


def test_list_uses_key_root_from_config(home):
    (home / '.sshkeeper').mkdir()
    (home / '.sshkeeper' / 'config.yml').write_text('key_root: ~/keys\n')
    make_key(home / 'keys', 'id_configured')

    result = CliRunner().invoke(main, ['list'])

    assert 'id_configured' in result.output


def test_list_bad_config_fails(home):
    (home / '.sshkeeper').mkdir()
    (home / '.sshkeeper' / 'config.yml').write_text('nonsense: 1\n')

    result = CliRunner().invoke(main, ['list'])

    assert result.exit_code == 1
    assert 'Invalid configuration' in result.output


def test_info_shows_fingerprint_and_permission_warning(key_root):
    key = make_key(key_root, 'id_x', comment='me@laptop')
    key.chmod(0o644)
    output = '256 SHA256:abcdef me@laptop (ED25519)\n'

    with patch('subprocess.run', return_value=MagicMock(returncode=0, stdout=output)):
        result = CliRunner().invoke(main, ['info', 'id_x'])

    assert result.exit_code == 0
    assert 'Type:        ed25519' in result.output
    assert 'Fingerprint: SHA256:abcdef' in result.output
    assert 'Comment:     me@laptop' in result.output
    assert 'chmod 600' in result.output
    assert 'ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOld me@laptop' in result.output


def test_info_unknown_key_lists_candidates(key_root):
    make_key(key_root, 'id_a')

    result = CliRunner().invoke(main, ['info', 'id_zzz'])

    assert result.exit_code == 1
    assert '  - id_a' in result.output
    assert 'Key not found: id_zzz' in result.output


def test_archive_in_use_declined(key_root):
    """Declining the prompt for a referenced key leaves it in place"""
    make_key(key_root, 'id_x')
    (key_root / 'config').write_text("Host prod\n    IdentityFile ~/.ssh/id_x\n")

    result = CliRunner().invoke(main, ['archive', 'id_x'], input='n\n')

    assert result.exit_code == 1
    assert 'still used by: prod' in result.output
    assert (key_root / 'id_x').exists()


def test_archive_force_warns_about_hosts(key_root):
    make_key(key_root, 'work/id_x')
    (key_root / 'config').write_text("Host prod\n    IdentityFile ~/.ssh/work/id_x\n")

    result = CliRunner().invoke(main, ['archive', 'work/id_x', '--force'])

    assert result.exit_code == 0
    assert 'Archived work/id_x to archived/work/id_x' in result.output
    assert 'Removed empty directory: work' in result.output
    assert '  - prod' in result.output
    assert (key_root / 'archived' / 'work' / 'id_x').exists()


def test_archive_already_archived_path(key_root):
    make_key(key_root, 'archived/id_x')

    result = CliRunner().invoke(main, ['archive', 'archived/id_x'])

    assert result.exit_code == 1
    assert 'already archived' in result.output


def test_unarchive(key_root):
    make_key(key_root, 'archived/work/id_x')

    result = CliRunner().invoke(main, ['unarchive', 'id_x'])

    assert result.exit_code == 0
    assert (key_root / 'work' / 'id_x').exists()


def test_unarchive_conflict_needs_force(key_root):
    make_key(key_root, 'id_x', comment='active')
    make_key(key_root, 'archived/id_x', comment='archived')

    result = CliRunner().invoke(main, ['unarchive', 'id_x'])
    assert result.exit_code == 1
    assert 'already exists' in result.output

    result = CliRunner().invoke(main, ['unarchive', 'id_x', '--force'])
    assert result.exit_code == 0
    assert 'archived' in (key_root / 'id_x.pub').read_text()


def test_rotate_dry_run(key_root, tools):
    key = make_key(key_root, 'id_x')
    before = key.read_bytes()

    result = CliRunner().invoke(main, ['rotate', 'id_x', '--dry-run'])

    assert result.exit_code == 0
    assert 'DRY RUN MODE' in result.output
    assert '[DRY RUN] Would perform the following:' in result.output
    assert key.read_bytes() == before
    assert tools.calls == []


def test_rotate_force_batch(key_root, tools):
    """Exit status is 1 when any key in the batch fails"""
    make_key(key_root, 'key1')

    result = CliRunner().invoke(main, ['rotate', 'key1', 'key2', '--force', '--no-test'])

    assert result.exit_code == 1
    assert '1 successful, 1 failed' in result.output
    assert (key_root / 'key1').read_text() == NEW_KEY_TEXT
    assert 'Rotation log updated' in result.output


def test_rotate_prompts_without_force(key_root, tools):
    make_key(key_root, 'id_x')

    result = CliRunner().invoke(main, ['rotate', 'id_x', '--no-test'], input='n\n')

    assert result.exit_code == 1
    assert "Rotate key 'id_x' (affects 0 host(s) and 0 profile(s))?" in result.output
    assert 'Rotation cancelled.' in result.output
    assert tools.commands('ssh-keygen') == []


def test_rotate_rejects_unknown_type(key_root):
    result = CliRunner().invoke(main, ['rotate', 'id_x', '--type', 'dsa'])
    assert result.exit_code == 2


def test_profile_commands(home):
    runner = CliRunner()

    result = runner.invoke(main, ['profile', 'add', 'prod', 'deploy@prod.example.com',
                                  '--port', '2222', '--key', '/keys/id_x'])
    assert result.exit_code == 0

    result = runner.invoke(main, ['profile', 'add', 'prod', 'me@other'])
    assert result.exit_code == 1
    assert 'already exists' in result.output

    result = runner.invoke(main, ['profile', 'list'])
    assert 'ssh -p 2222 -i /keys/id_x deploy@prod.example.com' in result.output

    data = json.loads((home / '.sshkeeper' / 'profiles.json').read_text())
    assert data[0]['sshKey'] == '/keys/id_x'

    result = runner.invoke(main, ['profile', 'remove', 'prod'])
    assert result.exit_code == 0
    result = runner.invoke(main, ['profile', 'list'])
    assert 'No profiles saved' in result.output


def test_profile_add_requires_user_at_host(home):
    result = CliRunner().invoke(main, ['profile', 'add', 'prod', 'prod.example.com'])
    assert result.exit_code == 1
    assert 'user@host' in result.output


def test_generate_writes_key_and_metadata(key_root, tools):
    result = CliRunner().invoke(main, ['generate', '--use', 'work/project-a',
                                       '-d', 'CI deploy key', '-C', 'ci@build'])

    assert result.exit_code == 0
    key = key_root / 'work' / 'project-a' / 'id_project-a_ed25519'
    assert f'Generated ed25519 key: {key}' in result.output
    assert 'Use:        work/project-a' in result.output
    meta = (key_root / 'work' / 'project-a' / 'id_project-a_ed25519.meta').read_text()
    assert 'use=work\n' in meta
    assert 'project=project-a\n' in meta
    assert 'description=CI deploy key\n' in meta


def test_generate_requires_name_or_use(key_root, tools):
    result = CliRunner().invoke(main, ['generate'])

    assert result.exit_code == 1
    assert 'key name or a use path' in result.output
    assert tools.calls == []


def test_generate_existing_key_needs_force(key_root, tools):
    make_key(key_root, 'id_x')

    result = CliRunner().invoke(main, ['generate', '-n', 'id_x'])

    assert result.exit_code == 1
    assert 'Key already exists' in result.output


def test_generate_prompts_for_passphrase(key_root, tools):
    result = CliRunner().invoke(main, ['generate', '-n', 'id_x', '--passphrase'],
                                input='s3cret\ns3cret\n')

    assert result.exit_code == 0
    keygen = tools.commands('ssh-keygen')[0]
    assert keygen[keygen.index('-N') + 1] == 's3cret'
    assert 's3cret' not in result.output


def test_info_shows_metadata(key_root):
    make_key(key_root, 'id_x')
    (key_root / 'id_x.meta').write_text(
        "use=work\nproject=infra\ndescription=Deploys\n"
        "created_at=2026-03-01T09\\:30\\:00Z\ncreated_by=carol\n"
    )

    with patch('subprocess.run', return_value=MagicMock(returncode=1, stdout='')):
        result = CliRunner().invoke(main, ['info', 'id_x'])

    assert result.exit_code == 0
    assert 'Use:         work/infra' in result.output
    assert 'Description: Deploys' in result.output
    assert 'Created:     2026-03-01 09:30:00 UTC' in result.output
    assert 'Created by:  carol' in result.output


def test_archive_with_non_utf8_config(key_root):
    make_key(key_root, 'id_x')
    (key_root / 'config').write_bytes(b"# Caf\xe9\nHost prod\n    IdentityFile ~/.ssh/id_x\n")

    result = CliRunner().invoke(main, ['archive', 'id_x', '--force'])

    assert result.exit_code == 0
    assert '  - prod' in result.output
    assert (key_root / 'archived' / 'id_x').exists()


def test_profile_connect_runs_ssh(home):
    runner = CliRunner()
    runner.invoke(main, ['profile', 'add', 'prod', 'deploy@prod.example.com',
                         '--port', '2222', '--key', '/keys/id_x'])

    with patch('subprocess.run', return_value=MagicMock(returncode=0)) as mock_run:
        result = runner.invoke(main, ['profile', 'connect', 'prod'])

    assert result.exit_code == 0
    assert 'ssh -p 2222 -i /keys/id_x deploy@prod.example.com' in result.output
    assert mock_run.call_args[0][0] == [
        'ssh', '-p', '2222', '-i', '/keys/id_x', 'deploy@prod.example.com'
    ]


def test_profile_connect_passes_ssh_exit_status(home):
    runner = CliRunner()
    runner.invoke(main, ['profile', 'add', 'prod', 'deploy@prod.example.com'])

    with patch('subprocess.run', return_value=MagicMock(returncode=255)):
        result = runner.invoke(main, ['profile', 'connect', 'prod'])

    assert result.exit_code == 255


def test_profile_connect_unknown_alias(home):
    runner = CliRunner()
    runner.invoke(main, ['profile', 'add', 'prod', 'deploy@prod.example.com'])

    with patch('subprocess.run') as mock_run:
        result = runner.invoke(main, ['profile', 'connect', 'nope'])

    assert result.exit_code == 1
    assert 'Profile not found: nope' in result.output
    assert '  - prod (deploy@prod.example.com)' in result.output
    mock_run.assert_not_called()
