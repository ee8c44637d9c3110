import concurrent.futures

import pytest

from muffliato import crypto, spells
from muffliato.errors import (
    AlreadyExists,
    AuthenticationFailed,
    ConflictingOptions,
    DecryptionFailed,
    DeviceAlreadyExists,
    InvalidEmail,
    LastDeviceRevocation,
    NoAccess,
    NotInitialized,
    UserOrDeviceNotFound,
)
from muffliato.health import DeviceStatus, status
from muffliato.keeper import SecretKeeper
from muffliato.secrets import Secret
from muffliato.store import DeviceKeys

from conftest import write


def snapshot(root):
    """Every file below a directory and its contents."""
    return {path: path.read_bytes() for path in sorted(root.rglob('*')) if path.is_file()}


def encrypt(machine, *patterns):
    return SecretKeeper(machine.context()).encrypt(machine.private_key(), patterns)


def decrypt(machine, *patterns, force=False):
    return SecretKeeper(machine.context(force=force)).decrypt(machine.private_key(), patterns)


def register(granter, grantee):
    return spells.register(granter.context(), granter.private_key(), grantee.device_id())


def test_init_makes_the_first_device_active(alice):
    ctx = alice.context()
    registry = ctx.registry()
    device_id = alice.device_id()
    assert registry.devices[device_id].email == alice.email
    assert registry.devices[device_id].name == 'laptop'
    assert status(ctx.store, device_id) is DeviceStatus.ACTIVE
    assert ctx.keys.exists(registry.project_id)
    assert [e['op'] for e in ctx.audit.entries()] == ['create', 'bootstrap', 'init']


def test_init_twice(alice):
    with pytest.raises(AlreadyExists):
        spells.init_project(alice.context(), email=alice.email)


def test_init_requires_an_email(machine, project):
    with pytest.raises(InvalidEmail):
        spells.init_project(machine('nobody', '').context())
    assert not (project / '.muffliato').exists()


def test_init_dry_run(machine, project):
    carol = machine('carol', 'carol@example.com')
    spells.init_project(carol.context(dry_run=True), email=carol.email)
    assert snapshot(project) == {}


def test_create_requires_a_store(machine):
    with pytest.raises(NotInitialized):
        spells.create(machine('bob', 'bob@example.com').context(), email='bob@example.com')


def test_create_then_bootstrap_is_active(machine, project):
    carol = machine('carol', 'carol@example.com')
    ctx = carol.context()
    ctx.store.ensure()
    ctx.store.save_registry(spells.ProjectRegistry.new('example'))

    keypair = spells.create(ctx, email=carol.email)
    assert status(ctx.store, carol.device_id()) is DeviceStatus.PENDING

    spells.bootstrap(carol.context(), keypair.private)
    assert status(ctx.store, carol.device_id()) is DeviceStatus.ACTIVE


def test_bootstrap_only_once(alice, bob):
    with pytest.raises(AlreadyExists):
        spells.bootstrap(bob.context(), bob.private_key())


def test_create_leaves_device_pending(bob):
    ctx = bob.context()
    assert status(ctx.store, bob.device_id()) is DeviceStatus.PENDING
    with pytest.raises(NoAccess):
        ctx.unlock(bob.private_key())


def test_create_twice_needs_force(bob):
    with pytest.raises(DeviceAlreadyExists):
        spells.create(bob.context(), email=bob.email)


def test_forced_create_replaces_key_and_access(alice, bob):
    register(alice, bob)
    old = bob.private_key()
    device_id = bob.device_id()

    spells.create(bob.context(force=True), email=bob.email)

    ctx = bob.context()
    assert bob.device_id() == device_id
    assert crypto.fingerprint(bob.private_key().public_key()) != crypto.fingerprint(old.public_key())
    assert ctx.registry().devices[device_id].name == 'desktop'
    assert status(ctx.store, device_id) is DeviceStatus.PENDING
    assert not ctx.keys.staged_key_path(ctx.registry().project_id).exists()


def test_create_confirmed_interactively(bob):
    asked = []
    spells.create(bob.context(confirm=lambda message: asked.append(message) or True), email=bob.email)
    assert len(asked) == 1


def test_encrypt_then_decrypt(alice, secrets):
    report = encrypt(alice)
    assert sorted(report.succeeded) == sorted(Secret.from_path(p).ciphertext for p in secrets.values())

    original = secrets['root'].read_bytes()
    secrets['root'].unlink()
    decrypt(alice, str(secrets['root']) + '.muffliato')
    assert secrets['root'].read_bytes() == original == b"KEY=value\n"


def test_encrypt_is_selective(alice, secrets, project):
    before = snapshot(project)
    report = encrypt(alice, 'app/*.env')
    assert report.succeeded == [project / 'app' / 'prod.env.muffliato']
    after = snapshot(project)
    changed = {path for path in after if before.get(path) != after[path]}
    assert changed - {alice.context().store.audit_path} == {project / 'app' / 'prod.env.muffliato'}


def test_unchanged_files_are_skipped(alice, secrets):
    encrypt(alice)
    ciphertext = (secrets['root'].parent / '.env.muffliato').read_bytes()
    report = encrypt(alice, '.env')
    assert report.skipped and not report.succeeded
    assert (secrets['root'].parent / '.env.muffliato').read_bytes() == ciphertext


def test_decrypt_keeps_local_changes(alice, secrets):
    encrypt(alice)
    write(secrets['root'], "KEY=edited\n")

    report = decrypt(alice, '.env.muffliato')
    assert list(report.failed) == [secrets['root']]
    assert secrets['root'].read_text() == "KEY=edited\n"

    decrypt(alice, '.env.muffliato', force=True)
    assert secrets['root'].read_text() == "KEY=value\n"


def test_decrypt_reports_damaged_files(alice, secrets, project):
    encrypt(alice)
    write(project / 'app' / 'prod.env.muffliato', "damaged")
    secrets['root'].unlink()

    report = decrypt(alice)
    assert list(report.failed) == [secrets['app']]
    assert secrets['root'].read_text() == "KEY=value\n"


def test_encrypt_dry_run(alice, secrets, project):
    before = snapshot(project)
    report = SecretKeeper(alice.context(dry_run=True)).encrypt(alice.private_key())
    assert report.dry_run and len(report.succeeded) == 3
    assert snapshot(project) == before


def test_second_device_can_decrypt(alice, bob, secrets):
    encrypt(alice)
    register(alice, bob)
    assert status(bob.context().store, bob.device_id()) is DeviceStatus.ACTIVE

    for path in secrets.values():
        path.unlink()
    decrypt(bob)
    assert secrets['app'].read_text() == "DATABASE_URL=postgres://db/app\n"
    assert status(alice.context().store, alice.device_id()) is DeviceStatus.ACTIVE


def test_register_requires_access(alice, bob, machine):
    carol = machine('carol', 'carol@example.com')
    spells.create(carol.context(), email=carol.email)
    with pytest.raises(NoAccess):
        spells.register(bob.context(), bob.private_key(), carol.device_id())


def test_register_active_device_needs_force(alice, bob):
    register(alice, bob)
    with pytest.raises(AlreadyExists):
        register(alice, bob)
    spells.register(alice.context(force=True), alice.private_key(), bob.device_id())


def test_register_unknown_device(alice):
    with pytest.raises(UserOrDeviceNotFound):
        spells.register(alice.context(), alice.private_key(), 'no-such-device')


def test_register_user_by_email(alice, bob):
    devices = spells.register_user(alice.context(), alice.private_key(), bob.email)
    assert [d.device_id for d in devices] == [bob.device_id()]
    with pytest.raises(UserOrDeviceNotFound):
        spells.register_user(alice.context(), alice.private_key(), 'nobody@example.com')


def test_register_key_file_named_after_device(alice, bob, tmp_path):
    path = tmp_path / f"{bob.device_id()}.pub"
    path.write_bytes(bob.context().store.read_public_key(bob.device_id()))
    device = spells.register_key_file(alice.context(), alice.private_key(), path)
    assert device.device_id == bob.device_id()
    assert status(alice.context().store, bob.device_id()) is DeviceStatus.ACTIVE


def test_register_key_file_for_new_device(alice, tmp_path):
    keypair = crypto.generate_keypair()
    path = tmp_path / 'dave.pub'
    path.write_bytes(keypair.public_pem())

    with pytest.raises(UserOrDeviceNotFound):
        spells.register_key_file(alice.context(), alice.private_key(), path)

    device = spells.register_key_file(alice.context(), alice.private_key(), path, email='dave@example.com')
    ctx = alice.context()
    assert device.device_id != 'dave'
    assert ctx.registry().devices[device.device_id].email == 'dave@example.com'
    assert status(ctx.store, device.device_id) is DeviceStatus.ACTIVE
    assert crypto.unwrap(ctx.store.read_wrapped_key(device.device_id), keypair.private)


def test_rotate(alice, bob, secrets):
    encrypt(alice)
    register(alice, bob)
    bob_wrapped = bob.context().store.read_wrapped_key(bob.device_id())
    old = alice.private_key()

    spells.rotate(alice.context(force=True), old)

    ctx = alice.context()
    new = alice.private_key()
    assert crypto.fingerprint(new.public_key()) != crypto.fingerprint(old.public_key())
    assert ctx.invoker(new) == alice.device_id()
    with pytest.raises(DecryptionFailed):
        crypto.unwrap(ctx.store.read_wrapped_key(alice.device_id()), old)
    assert ctx.store.read_wrapped_key(bob.device_id()) == bob_wrapped

    secrets['root'].unlink()
    decrypt(alice, '.env.muffliato')
    assert secrets['root'].read_text() == "KEY=value\n"


def test_rotate_failure_keeps_old_key(alice, monkeypatch):
    ctx = alice.context(force=True)
    before = snapshot(ctx.store.directory)
    old = alice.private_key()

    def fail(*args, **kwargs):
        raise RuntimeError("interrupted")

    monkeypatch.setattr(crypto, 'wrap', fail)
    with pytest.raises(RuntimeError):
        spells.rotate(ctx, old)

    assert snapshot(ctx.store.directory) == before
    assert crypto.fingerprint(alice.private_key().public_key()) == crypto.fingerprint(old.public_key())


def test_rotate_needs_confirmation(alice):
    with pytest.raises(spells.PermissionDenied):
        spells.rotate(alice.context(), alice.private_key())


def test_rotate_dry_run(alice):
    ctx = alice.context(dry_run=True)
    before = snapshot(ctx.store.directory), snapshot(alice.settings.data_dir)
    old = alice.private_key()

    spells.rotate(ctx, old)

    assert (snapshot(ctx.store.directory), snapshot(alice.settings.data_dir)) == before
    assert ctx.invoker(old) == alice.device_id()


def test_rotate_keeps_old_key_when_it_cannot_be_replaced(alice, monkeypatch):
    ctx = alice.context(force=True)
    before = snapshot(ctx.store.directory)
    old = alice.private_key()
    project_id = ctx.registry().project_id

    def fail(*args, **kwargs):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(DeviceKeys, 'commit', fail)
    with pytest.raises(OSError):
        spells.rotate(ctx, old)

    assert snapshot(ctx.store.directory) == before
    assert not ctx.keys.staged_key_path(project_id).exists()
    device_id, _ = alice.context().unlock(alice.private_key())
    assert device_id == alice.device_id()


def test_rename_own_device(alice):
    device = spells.rename_device(alice.context(), alice.email, 'Work Laptop')
    assert device.name == 'work-laptop'

    ctx = alice.context()
    registry = ctx.registry()
    assert registry.devices[device.device_id].name == 'work-laptop'
    assert ctx.user.projects[registry.project_id].device_name == 'work-laptop'
    assert ctx.audit.entries()[-1]['op'] == 'rename'


def test_rename_other_device_by_id(alice, bob):
    spells.rename_device(alice.context(), bob.device_id(), 'workstation')
    registry = alice.context().registry()
    assert registry.devices[bob.device_id()].name == 'workstation'
    assert registry.devices[alice.device_id()].name == 'laptop'
    assert bob.context().user.projects[registry.project_id].device_name == 'desktop'


def test_rename_device_dry_run(alice, project):
    before = snapshot(project)
    assert spells.rename_device(alice.context(dry_run=True), alice.email, 'desktop').name == 'desktop'
    assert snapshot(project) == before


def test_rename_device_of_user_with_several(alice, bob, machine):
    laptop = machine('bob-laptop', bob.email)
    spells.create(laptop.context(), email=laptop.email, device_name='laptop')

    with pytest.raises(ConflictingOptions):
        spells.rename_device(alice.context(), bob.email, 'tower')
    with pytest.raises(AlreadyExists):
        spells.rename_device(alice.context(), bob.email, 'desktop', device_name='laptop')

    spells.rename_device(alice.context(), bob.email, 'tower', device_name='desktop')
    assert [d.name for d in alice.context().registry().devices_for(bob.email)] == ['laptop', 'tower']


def test_rename_unknown_device(alice):
    with pytest.raises(UserOrDeviceNotFound):
        spells.rename_device(alice.context(), 'nobody@example.com', 'anything')


def test_sync_rekeys_everything(alice, bob, secrets, project):
    encrypt(alice)
    register(alice, bob)
    ctx = alice.context()
    old_key = crypto.unwrap(ctx.store.read_wrapped_key(alice.device_id()), alice.private_key())
    old_ciphertext = (project / '.env.muffliato').read_bytes()

    result = spells.sync(ctx, alice.private_key())

    assert (result.files_changed, result.devices_changed) == (3, 2)
    new_key = crypto.unwrap(ctx.store.read_wrapped_key(alice.device_id()), alice.private_key())
    assert new_key != old_key
    assert crypto.unwrap(ctx.store.read_wrapped_key(bob.device_id()), bob.private_key()) == new_key
    assert (project / '.env.muffliato').read_bytes() != old_ciphertext
    assert crypto.sym_decrypt((project / '.env.muffliato').read_bytes(), new_key) == b"KEY=value\n"
    with pytest.raises(AuthenticationFailed):
        crypto.sym_decrypt((project / '.env.muffliato').read_bytes(), old_key)


def test_sync_failure_changes_nothing(alice, bob, secrets, project, monkeypatch):
    encrypt(alice)
    register(alice, bob)
    before = snapshot(project)
    calls = []
    sym_encrypt = crypto.sym_encrypt

    def fail_on_second(plaintext, key):
        calls.append(plaintext)
        if len(calls) == 2:
            raise RuntimeError("interrupted")
        return sym_encrypt(plaintext, key)

    monkeypatch.setattr(crypto, 'sym_encrypt', fail_on_second)
    with pytest.raises(RuntimeError):
        spells.sync(alice.context(), alice.private_key())
    assert snapshot(project) == before


def test_sync_with_damaged_ciphertext_changes_nothing(alice, secrets, project):
    encrypt(alice)
    write(project / 'app' / 'prod.env.muffliato', "damaged")
    before = snapshot(project)
    with pytest.raises(AuthenticationFailed):
        spells.sync(alice.context(), alice.private_key())
    assert snapshot(project) == before


def test_sync_dry_run(alice, secrets, project):
    encrypt(alice)
    before = snapshot(project)
    result = spells.sync(alice.context(dry_run=True), alice.private_key())
    assert result.dry_run and result.files_changed == 3
    assert snapshot(project) == before


def test_revoke(alice, bob, secrets, project):
    encrypt(alice)
    register(alice, bob)
    ctx = alice.context()
    bob_device = bob.device_id()
    bob_key = bob.private_key()
    bob_project_key = crypto.unwrap(ctx.store.read_wrapped_key(bob_device), bob_key)

    result = spells.revoke(alice.context(force=True), alice.private_key(), [bob_device])

    assert result.revoked == (bob_device,)
    assert result.devices_remaining == 1
    assert "change the secret values" in result.warning
    assert status(ctx.store, bob_device) is DeviceStatus.ABSENT
    assert bob_device not in ctx.registry().devices

    write(project / 'new.env', "NEW=secret\n")
    encrypt(alice, 'new.env')
    for path in (project / 'new.env.muffliato', project / '.env.muffliato'):
        with pytest.raises(AuthenticationFailed):
            crypto.sym_decrypt(path.read_bytes(), bob_project_key)

    for device_id in ctx.store.wrapped_key_ids():
        with pytest.raises(DecryptionFailed):
            crypto.unwrap(ctx.store.read_wrapped_key(device_id), bob_key)


def test_revoke_last_device(alice, bob):
    with pytest.raises(LastDeviceRevocation):
        spells.revoke(alice.context(force=True), alice.private_key(), [alice.device_id()])
    assert status(alice.context().store, alice.device_id()) is DeviceStatus.ACTIVE


def test_revoke_last_device_when_allowed(alice):
    spells.revoke(alice.context(force=True), alice.private_key(), [alice.device_id()], allow_lockout=True)
    assert alice.context().store.device_ids() == []


def test_revoke_needs_confirmation(alice, bob):
    register(alice, bob)
    with pytest.raises(spells.PermissionDenied):
        spells.revoke(alice.context(), alice.private_key(), [bob.device_id()])
    assert status(alice.context().store, bob.device_id()) is DeviceStatus.ACTIVE


def test_revoke_unknown_device(alice):
    with pytest.raises(UserOrDeviceNotFound):
        spells.revoke(alice.context(force=True), alice.private_key(), ['no-such-device'])


def test_revoke_by_email(alice, bob):
    device_ids = spells.find_device_ids(alice.context(), bob.email)
    assert device_ids == [bob.device_id()]
    assert spells.find_device_ids(alice.context(), bob.email, 'desktop') == [bob.device_id()]
    with pytest.raises(UserOrDeviceNotFound):
        spells.find_device_ids(alice.context(), bob.email, 'laptop')


def test_revoke_dry_run(alice, bob, secrets, project):
    encrypt(alice)
    register(alice, bob)
    before = snapshot(project)
    result = spells.revoke(alice.context(dry_run=True), alice.private_key(), [bob.device_id()])
    assert result.dry_run
    assert snapshot(project) == before


def test_concurrent_encrypt(alice, project):
    paths = [write(project / 'services' / f"service-{n:02}.env", f"TOKEN={n}\n" * 20) for n in range(50)]

    def run(_):
        return SecretKeeper(alice.context(force=True)).encrypt(alice.private_key(), ['services'])

    with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
        reports = list(executor.map(run, range(2)))

    assert all(report.ok for report in reports)
    ctx = alice.context()
    _, key = ctx.unlock(alice.private_key())
    for path in paths:
        ciphertext = Secret.from_path(path).ciphertext.read_bytes()
        assert crypto.sym_decrypt(ciphertext, key) == path.read_bytes()
    assert not [p for p in (project / 'services').iterdir() if p.name.endswith('.tmp')]
