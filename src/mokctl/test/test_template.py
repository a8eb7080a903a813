#!/usr/bin/env python3
# SPDX-License-Identifier: LGPL-2.1-or-later

import sys
import textwrap

import pytest
from cryptography.x509.oid import NameOID

from mokctl.errors import InvalidParameter, MissingConfig
from mokctl.template import (
    DEFAULT_TEMPLATE,
    MODULE_SIGNING_OID,
    CertificateSubject,
    GenerationTemplate,
    write_default_template,
)

def test_subject_validation():
    assert CertificateSubject(country=' DE ').country == 'DE'

    with pytest.raises(InvalidParameter, match='exactly 2'):
        CertificateSubject(country='DEU')
    with pytest.raises(InvalidParameter, match='must not be empty'):
        CertificateSubject(organization='   ')
    with pytest.raises(InvalidParameter):
        CertificateSubject(common_name='x' * 65)

def test_subject_merge_and_items():
    base = CertificateSubject(country='NL', organization='Acme', common_name='old')
    merged = base.merged(CertificateSubject(common_name='new', email='root@example.com'))

    assert merged.items() == [
        ('C', 'NL'),
        ('O', 'Acme'),
        ('CN', 'new'),
        ('emailAddress', 'root@example.com'),
    ]

def test_subject_to_x509_name():
    name = CertificateSubject(country='FI', common_name='Kernel signing').to_x509_name()
    assert name.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == 'Kernel signing'
    assert name.get_attributes_for_oid(NameOID.COUNTRY_NAME)[0].value == 'FI'

    with pytest.raises(InvalidParameter, match='empty'):
        CertificateSubject().to_x509_name()

def test_default_template():
    t = GenerationTemplate.parse(DEFAULT_TEMPLATE)
    assert t.dn_section() == 'req_distinguished_name'
    assert t.subject.common_name == 'Secure Boot Machine Owner Key'
    assert t.extensions_section == 'mok_exts'
    assert MODULE_SIGNING_OID in t.extensions()['extendedKeyUsage']

def test_openssl_syntax(tmp_path):
    path = tmp_path / 'x509.genkey'
    path.write_text(textwrap.dedent('''\
        HOME = .
        [ req ]
        default_bits = 4096
        distinguished_name = req_dn
        prompt = no  # inline comment
        x509_extensions = myexts

        [ req_dn ]
        O = Example Org
        CN = Example kernel module signing key
        emailAddress = kernel@example.org

        [ myexts ]
        basicConstraints=critical,CA:FALSE
        keyUsage=digitalSignature
        subjectKeyIdentifier=hash
        authorityKeyIdentifier=keyid
        '''))

    t = GenerationTemplate.load(path)
    assert t.parser.get('default', 'HOME') == '.'
    assert t.parser.get('req', 'prompt') == 'no'
    assert t.subject == CertificateSubject(
        organization='Example Org',
        common_name='Example kernel module signing key',
        email='kernel@example.org',
    )

LONG_NAMES_TEMPLATE = textwrap.dedent('''\
    [ req ]
    distinguished_name = req_distinguished_name
    prompt = no
    x509_extensions = v3

    [ req_distinguished_name ]
    countryName = GB
    organizationName = Example Ltd
    commonName = Secure Boot Module Signature key

    [ v3 ]
    basicConstraints = critical,CA:FALSE
    extendedKeyUsage = codeSigning,1.3.6.1.4.1.311.10.3.6,1.3.6.1.4.1.2312.16.1.2
    ''')

def test_long_attribute_names():
    t = GenerationTemplate.parse(LONG_NAMES_TEMPLATE)
    assert t.subject == CertificateSubject(
        country='GB',
        organization='Example Ltd',
        common_name='Secure Boot Module Signature key',
    )

def test_with_subject_replaces_long_names():
    t = GenerationTemplate.parse(LONG_NAMES_TEMPLATE).with_subject(CertificateSubject(common_name='Override'))

    dn = dict(t.parser.items('req_distinguished_name'))
    assert 'commonName' not in dn
    assert dn['CN'] == 'Override'
    assert dn['countryName'] == 'GB'
    assert t.subject.common_name == 'Override'
    assert t.subject.organization == 'Example Ltd'

    again = GenerationTemplate.parse(t.dumps())
    assert again.subject == t.subject

def test_with_subject_does_not_touch_template(tmp_path):
    path = write_default_template(tmp_path / 'openssl.cnf')
    original = path.read_text()

    t = GenerationTemplate.load(path).with_subject(CertificateSubject(country='SE', common_name='Mine'))
    rendered = t.render(tmp_path / 'rendered.cnf')

    assert path.read_text() == original
    again = GenerationTemplate.load(rendered)
    assert again.subject == CertificateSubject(
        country='SE',
        organization='Machine Owner',
        common_name='Mine',
    )
    assert again.parser.get('req', 'prompt') == 'no'
    assert again.extensions() == GenerationTemplate.parse(DEFAULT_TEMPLATE).extensions()

def test_missing_template(tmp_path):
    with pytest.raises(MissingConfig, match='init-config'):
        GenerationTemplate.load(tmp_path / 'nope.cnf')

@pytest.mark.parametrize('text', [
    '',
    '[ req ]\ndefault_bits = 2048\n',
    '[ req ]\ndistinguished_name = dn\n',
    '[ req\nbroken',
])
def test_unusable_template(text):
    with pytest.raises(MissingConfig):
        GenerationTemplate.parse(text)

def test_write_default_template(tmp_path):
    path = tmp_path / 'sub' / 'openssl.cnf'
    write_default_template(path)
    assert path.read_text() == DEFAULT_TEMPLATE

    with pytest.raises(FileExistsError):
        write_default_template(path)

    write_default_template(path, CertificateSubject(common_name='Replaced'), force=True)
    assert GenerationTemplate.load(path).subject.common_name == 'Replaced'

if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
