# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=redefined-outer-name

import struct
from pathlib import Path

import pytest

from mokctl.generate import CertificateGenerator, CryptographyBackend
from mokctl.store import KeyMaterial, KeyMaterialStore
from mokctl.template import CertificateSubject, write_default_template


def make_material(directory: Path, cn: str = 'Test MOK') -> KeyMaterial:
    template = write_default_template(directory.with_name(directory.name + '.cnf'), CertificateSubject(common_name=cn))
    generator = CertificateGenerator(
        KeyMaterialStore(KeyMaterial.in_directory(directory)),
        CryptographyBackend(),
        template,
    )
    return generator.generate(rsa_bits=2048, validity_days=30)


@pytest.fixture
def material(tmp_path):
    return make_material(tmp_path / 'mok')


@pytest.fixture
def other_material(tmp_path):
    return make_material(tmp_path / 'other', cn='Someone else')


def make_pe(path: Path) -> Path:
    "Write a header-only PE32+ EFI application, enough for pefile to accept it"

    dos = bytearray(64)
    dos[0:2] = b'MZ'
    struct.pack_into('<I', dos, 0x3C, len(dos))

    file_header = struct.pack(
        '<HHIIIHH',
        0x8664,  # Machine: x86-64
        0,  # NumberOfSections
        0,
        0,
        0,
        240,  # SizeOfOptionalHeader
        0x22,  # EXECUTABLE_IMAGE | LARGE_ADDRESS_AWARE
    )
    optional_header = struct.pack(
        '<HBBIIIIIQIIHHHHHHIIIIHHQQQQII',
        0x20B,  # PE32+
        0, 0,
        0, 0, 0,
        0,  # AddressOfEntryPoint
        0,
        0x10000000,  # ImageBase
        0x1000,  # SectionAlignment
        0x200,  # FileAlignment
        0, 0, 0, 0, 0, 0,
        0,
        0x1000,  # SizeOfImage
        0x200,  # SizeOfHeaders
        0,
        10,  # Subsystem: EFI application
        0,
        0, 0, 0, 0,
        0,
        16,  # NumberOfRvaAndSizes
    ) + bytes(16 * 8)  # fmt: skip

    data = bytes(dos) + b'PE\0\0' + file_header + optional_header
    path.write_bytes(data.ljust(0x200, b'\0'))
    return path
