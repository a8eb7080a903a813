#!/usr/bin/env python3
# SPDX-License-Identifier: LGPL-2.1-or-later

import os
import sys
from pathlib import Path

import pytest

from mokctl import store
from mokctl.errors import InvalidParameter, VerificationError
from mokctl.store import KeyMaterial, KeyMaterialStore, backup_path

def populate(material, prefix=b''):
    for path in material.paths():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(prefix + path.name.encode())

def snapshot(directory):
    return {p.name: p.read_bytes() for p in sorted(Path(directory).iterdir())}

def test_in_directory(tmp_path):
    m = KeyMaterial.in_directory(tmp_path, 'signing')
    assert m.private_key == tmp_path / 'signing.key'
    assert m.der_cert == tmp_path / 'signing.der'
    assert m.pem_cert == tmp_path / 'signing.pem'
    assert m.directory == tmp_path

def test_in_directory_defaults(tmp_path):
    assert KeyMaterial.in_directory(tmp_path).private_key.name == 'MOK.key'

@pytest.mark.parametrize('name', ['', 'a/b'])
def test_in_directory_bad_name(tmp_path, name):
    with pytest.raises(InvalidParameter):
        KeyMaterial.in_directory(tmp_path, name)

def test_siblings_only(tmp_path):
    with pytest.raises(InvalidParameter, match='single directory'):
        KeyMaterial(tmp_path / 'a.key', tmp_path / 'sub' / 'a.der', tmp_path / 'a.pem')

def test_backup_path():
    assert backup_path(Path('/x/MOK.key')) == Path('/x/MOK.key.old')

def test_rotate_nothing(tmp_path):
    s = KeyMaterialStore(KeyMaterial.in_directory(tmp_path / 'new'))
    assert s.rotate_and_prepare() == []
    assert (tmp_path / 'new').is_dir()
    assert s.backups() == []

def test_rotate_existing(tmp_path):
    m = KeyMaterial.in_directory(tmp_path)
    populate(m)
    s = KeyMaterialStore(m)

    assert s.rotate_and_prepare() == list(m.paths())
    assert s.existing() == []
    assert [b.name for b in s.backups()] == ['MOK.key.old', 'MOK.der.old', 'MOK.pem.old']
    assert backup_path(m.der_cert).read_bytes() == b'MOK.der'

def test_rotate_partial(tmp_path):
    m = KeyMaterial.in_directory(tmp_path)
    m.private_key.write_text('key')
    s = KeyMaterialStore(m)

    assert s.rotate_and_prepare() == [m.private_key]
    assert s.backups() == [backup_path(m.private_key)]

def test_rotate_failure_rolls_back(tmp_path, monkeypatch):
    m = KeyMaterial.in_directory(tmp_path)
    populate(m)
    before = snapshot(tmp_path)

    real_replace = os.replace
    calls = []

    def flaky_replace(src, dst):
        calls.append((src, dst))
        if len(calls) == 2:
            raise PermissionError(13, 'Permission denied', str(src))
        real_replace(src, dst)

    monkeypatch.setattr(store.os, 'replace', flaky_replace)

    with pytest.raises(PermissionError):
        KeyMaterialStore(m).rotate_and_prepare()

    assert snapshot(tmp_path) == before

def test_commit_complete(tmp_path):
    m = KeyMaterial.in_directory(tmp_path)
    populate(m)
    assert KeyMaterialStore(m).commit() == m

def test_commit_missing_and_empty(tmp_path):
    m = KeyMaterial.in_directory(tmp_path)
    m.private_key.write_text('key')
    m.der_cert.write_bytes(b'')

    with pytest.raises(VerificationError) as e:
        KeyMaterialStore(m).commit()
    assert f'{m.der_cert} (empty)' in str(e.value)
    assert f'{m.pem_cert} (missing)' in str(e.value)
    assert str(m.private_key) + ' ' not in str(e.value)

def test_discard_backups(tmp_path):
    m = KeyMaterial.in_directory(tmp_path)
    populate(m)
    s = KeyMaterialStore(m)
    s.rotate_and_prepare()
    populate(m, b'new ')
    s.commit()
    s.discard_backups()

    assert s.backups() == []
    assert m.private_key.read_bytes() == b'new MOK.key'

def test_restore_backups(tmp_path):
    m = KeyMaterial.in_directory(tmp_path)
    populate(m)
    before = snapshot(tmp_path)

    s = KeyMaterialStore(m)
    rotated = s.rotate_and_prepare()
    # A partially written new generation
    m.private_key.write_bytes(b'half a key')

    assert s.restore_backups(rotated) == list(m.paths())
    assert snapshot(tmp_path) == before

def test_restore_leaves_stale_backup(tmp_path):
    m = KeyMaterial.in_directory(tmp_path)
    stale = backup_path(m.private_key)
    stale.write_bytes(b'stale')

    s = KeyMaterialStore(m)
    rotated = s.rotate_and_prepare()
    assert rotated == []
    m.private_key.write_bytes(b'partial')

    assert s.restore_backups(rotated) == []
    assert not m.private_key.exists()
    assert stale.read_bytes() == b'stale'

if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
