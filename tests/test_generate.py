import pytest
from pathlib import Path

from conftest import NEW_KEY_TEXT, make_key
from sshkeeper.errors import AlreadyExistsError, ExternalToolError, InvalidInputError
from sshkeeper.generate import create_key, default_key_name, key_location


def test_default_key_name():
    assert default_key_name('work/project-a', 'ed25519') == 'id_project-a_ed25519'
    assert default_key_name('personal', 'rsa') == 'id_personal_rsa'


def test_key_location():
    assert key_location('work', None, 'ecdsa') == 'work/id_work_ecdsa'
    assert key_location(None, 'id_ci', 'ed25519') == 'id_ci'
    assert key_location('work/a', 'id_ci', 'ed25519') == 'work/a/id_ci'


@pytest.mark.parametrize('use,name', [
    (None, None),
    (None, 'sub/id_x'),
    ('../elsewhere', 'id_x'),
    ('/etc', 'id_x'),
    ('archived/work', 'id_x'),
])
def test_key_location_rejects_bad_input(use, name):
    with pytest.raises(InvalidInputError):
        key_location(use, name, 'ed25519')


def test_create_key_under_use_folder(key_root, tools):
    handle = create_key(key_root, 'ed25519', use='work/project-a', comment='me@box')

    key = key_root / 'work' / 'project-a' / 'id_project-a_ed25519'
    assert handle.path == key
    assert handle.name == 'work/project-a/id_project-a_ed25519'
    assert handle.algorithm == 'ed25519'
    assert key.read_text() == NEW_KEY_TEXT
    assert key.stat().st_mode & 0o777 == 0o600
    assert Path(f'{key}.pub').stat().st_mode & 0o777 == 0o644
    assert key.parent.stat().st_mode & 0o777 == 0o700
    keygen = tools.commands('ssh-keygen')[0]
    assert keygen[keygen.index('-C') + 1] == 'me@box'
    assert keygen[keygen.index('-N') + 1] == ''
    assert not list(key_root.glob('.sshkeeper-generate-*'))


def test_create_rsa_key_uses_default_bits(key_root, tools):
    create_key(key_root, 'rsa', name='id_build')

    keygen = tools.commands('ssh-keygen')[0]
    assert keygen[-2:] == ['-b', '4096']
    assert (key_root / 'id_build').exists()


def test_create_key_passes_passphrase(key_root, tools):
    create_key(key_root, name='id_secret', passphrase='hunter2')

    keygen = tools.commands('ssh-keygen')[0]
    assert keygen[keygen.index('-N') + 1] == 'hunter2'


def test_ed25519_rejects_bits(key_root, tools):
    with pytest.raises(InvalidInputError, match='ED25519'):
        create_key(key_root, 'ed25519', name='id_x', bits=4096)
    assert tools.calls == []


def test_existing_key_needs_force(key_root, tools):
    key = make_key(key_root, 'id_x')
    before = key.read_bytes()

    with pytest.raises(AlreadyExistsError):
        create_key(key_root, name='id_x')
    assert key.read_bytes() == before
    assert tools.calls == []

    create_key(key_root, name='id_x', force=True)
    assert key.read_text() == NEW_KEY_TEXT


def test_keygen_failure_leaves_nothing_behind(key_root, tools):
    """A failed ssh-keygen must not replace an existing key"""
    key = make_key(key_root, 'id_x')
    before = key.read_bytes()
    tools.keygen_ok = False

    with pytest.raises(ExternalToolError):
        create_key(key_root, name='id_x', force=True)

    assert key.read_bytes() == before
    assert not list(key_root.glob('.sshkeeper-generate-*'))
