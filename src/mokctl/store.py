# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import logging
import os
from pathlib import Path
from typing import Optional, Union

from .errors import InvalidParameter, VerificationError
from .tools import remove_quietly

log = logging.getLogger(__name__)

BACKUP_SUFFIX = '.old'


@dataclasses.dataclass(frozen=True)
class KeyMaterial:
    private_key: Path
    der_cert: Path
    pem_cert: Path

    def __post_init__(self) -> None:
        parents = {p.parent for p in self.paths()}
        if len(parents) != 1:
            raise InvalidParameter(
                f'Key material must live in a single directory, got {", ".join(sorted(map(str, parents)))}'
            )

    @classmethod
    def in_directory(cls, directory: Union[str, Path], name: str = 'MOK') -> 'KeyMaterial':
        if not name or '/' in name:
            raise InvalidParameter(f'Invalid key material name {name!r}')
        d = Path(directory)
        return cls(
            private_key=d / f'{name}.key',
            der_cert=d / f'{name}.der',
            pem_cert=d / f'{name}.pem',
        )

    @property
    def directory(self) -> Path:
        return self.private_key.parent

    def paths(self) -> tuple[Path, Path, Path]:
        return (self.private_key, self.der_cert, self.pem_cert)


def backup_path(path: Path) -> Path:
    return path.with_name(path.name + BACKUP_SUFFIX)


class KeyMaterialStore:
    """Owns the on-disk key, DER and PEM certificate and their .old backups.

    Regeneration goes through rotate_and_prepare() → (write) → commit() →
    discard_backups(). If anything between rotation and commit fails,
    restore_backups() puts the previous generation back.
    """

    def __init__(self, material: KeyMaterial) -> None:
        self.material = material

    def prepare_directory(self) -> None:
        self.material.directory.mkdir(mode=0o700, parents=True, exist_ok=True)

    def existing(self) -> list[Path]:
        return [p for p in self.material.paths() if p.exists()]

    def backups(self) -> list[Path]:
        return [b for p in self.material.paths() if (b := backup_path(p)).exists()]

    def rotate_and_prepare(self) -> list[Path]:
        self.prepare_directory()

        moved: list[Path] = []
        try:
            for path in self.material.paths():
                if not path.exists():
                    continue
                os.replace(path, backup_path(path))
                moved += [path]
                log.info('Moved %s to %s', path, backup_path(path))
        except OSError:
            # Put back what was already moved, the caller sees the original error
            for path in reversed(moved):
                os.replace(backup_path(path), path)
            raise

        if not moved:
            log.debug('No existing key material in %s', self.material.directory)
        return moved

    def commit(self) -> KeyMaterial:
        bad = []
        for path in self.material.paths():
            try:
                if path.stat().st_size == 0:
                    bad += [f'{path} (empty)']
            except FileNotFoundError:
                bad += [f'{path} (missing)']

        if bad:
            raise VerificationError(
                'Certificate generation reported success, but produced no usable output: ' + ', '.join(bad)
            )

        log.info('Key material in %s is complete', self.material.directory)
        return self.material

    def discard_backups(self) -> None:
        for backup in self.backups():
            backup.unlink()
            log.debug('Removed %s', backup)

    def restore_backups(self, rotated: Optional[list[Path]] = None) -> list[Path]:
        """Throw away partial output and move backups back into place.

        With rotated given (the return value of rotate_and_prepare()), only those
        artifacts are restored and anything else written since is removed, so that
        stale backups from an earlier run are left alone.
        """
        restored = []
        for path in self.material.paths():
            backup = backup_path(path)
            if rotated is not None and path not in rotated:
                remove_quietly(path)
                continue
            if not backup.exists():
                continue
            remove_quietly(path)
            os.replace(backup, path)
            restored += [path]
            log.warning('Restored %s from %s', path, backup)
        return restored
