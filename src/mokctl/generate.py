# SPDX-License-Identifier: LGPL-2.1-or-later

import datetime
import logging
import re
import subprocess
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, ObjectIdentifier

from .errors import GenerationError, InvalidParameter, MokError
from .store import KeyMaterial, KeyMaterialStore
from .template import MODULE_SIGNING_OID, CertificateSubject, GenerationTemplate
from .tools import find_tool, run_tool, temporary_umask, tool_failure

log = logging.getLogger(__name__)

RSA_BITS_MIN = 2048
RSA_BITS_MAX = 8192
VALIDITY_DAYS_MAX = 3650

DEFAULT_RSA_BITS = 2048
DEFAULT_VALIDITY_DAYS = 3650


def _parse_number(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise InvalidParameter(f'{what} must be a number, got {value!r}')
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r'\s*\d+\s*', value, re.ASCII):
        return int(value)
    raise InvalidParameter(f'{what} must be a number, got {value!r}')


def parse_rsa_bits(value: Any) -> int:
    bits = _parse_number(value, 'RSA key size')
    if not RSA_BITS_MIN <= bits <= RSA_BITS_MAX:
        raise InvalidParameter(f'RSA key size must be between {RSA_BITS_MIN} and {RSA_BITS_MAX}, got {bits}')
    return bits


def parse_validity_days(value: Any) -> int:
    days = _parse_number(value, 'Certificate validity')
    if not 1 <= days <= VALIDITY_DAYS_MAX:
        raise InvalidParameter(f'Certificate validity must be between 1 and {VALIDITY_DAYS_MAX} days, got {days}')
    return days


class CertificateBackend:
    def generate(
        self,
        template: GenerationTemplate,
        rsa_bits: int,
        validity_days: int,
        key: Path,
        der: Path,
    ) -> None:
        raise NotImplementedError()

    def to_pem(self, der: Path, pem: Path) -> None:
        raise NotImplementedError()

    @staticmethod
    def from_string(name: str, tools: Sequence[Path] = ()) -> 'CertificateBackend':
        if name == 'openssl':
            return OpenSSLBackend(tools=tools)
        elif name == 'cryptography':
            return CryptographyBackend()
        else:
            raise ValueError(f'Invalid certificate backend: {name!r}')


class OpenSSLBackend(CertificateBackend):
    def __init__(self, tools: Sequence[Path] = ()) -> None:
        self.tools = tools

    def _openssl(self) -> Union[str, Path]:
        try:
            return find_tool('openssl', tools=self.tools, msg='openssl, required for key generation, is not installed')
        except FileNotFoundError as e:
            raise GenerationError(str(e)) from e

    def _run(self, cmd: list[Union[str, Path]]) -> None:
        try:
            run_tool(cmd)
        except (subprocess.CalledProcessError, OSError) as e:
            raise GenerationError(tool_failure(e)) from e

    def generate(
        self,
        template: GenerationTemplate,
        rsa_bits: int,
        validity_days: int,
        key: Path,
        der: Path,
    ) -> None:
        with tempfile.TemporaryDirectory(prefix='mokctl') as tmp:
            config = template.render(Path(tmp) / 'openssl.cnf')
            cmd = [
                self._openssl(),
                'req', '-new', '-x509',
                '-newkey', f'rsa:{rsa_bits}',
                '-nodes',
                '-utf8',
                '-sha256',
                '-days', str(validity_days),
                '-config', config,
                '-outform', 'DER',
                '-keyout', key,
                '-out', der,
            ]  # fmt: skip
            with temporary_umask(0o077):
                self._run(cmd)

    def to_pem(self, der: Path, pem: Path) -> None:
        self._run([
            self._openssl(),
            'x509',
            '-inform', 'DER',
            '-in', der,
            '-outform', 'PEM',
            '-out', pem,
        ])  # fmt: skip


class CryptographyBackend(CertificateBackend):
    """Create the key and certificate in-process.

    Only the subject is taken from the template. The x509_extensions section
    is not interpreted: the certificate always carries the MOK extension set
    (CA:FALSE, digitalSignature, codeSigning plus the module signing OID, and
    a subject key identifier). Use OpenSSLBackend for custom extensions.
    """

    def generate(
        self,
        template: GenerationTemplate,
        rsa_bits: int,
        validity_days: int,
        key: Path,
        der: Path,
    ) -> None:
        name = template.subject.to_x509_name()
        now = datetime.datetime.now(datetime.timezone.utc)

        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=rsa_bits,
        )
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=validity_days))
            .serial_number(x509.random_serial_number())
            .public_key(private_key.public_key())
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=False,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING, ObjectIdentifier(MODULE_SIGNING_OID)]),
                critical=False,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
                critical=False,
            )
            .sign(
                private_key=private_key,
                algorithm=hashes.SHA256(),
            )
        )

        key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        with temporary_umask(0o077):
            key.write_bytes(key_pem)
        der.write_bytes(cert.public_bytes(serialization.Encoding.DER))

    def to_pem(self, der: Path, pem: Path) -> None:
        try:
            cert = x509.load_der_x509_certificate(der.read_bytes())
        except ValueError as e:
            raise GenerationError(f'Cannot convert {der} to PEM: {e}') from e
        pem.write_bytes(cert.public_bytes(serialization.Encoding.PEM))


class CertificateGenerator:
    def __init__(
        self,
        store: KeyMaterialStore,
        backend: CertificateBackend,
        template_path: Path,
    ) -> None:
        self.store = store
        self.backend = backend
        self.template_path = template_path

    def generate(
        self,
        subject: Optional[CertificateSubject] = None,
        rsa_bits: Any = DEFAULT_RSA_BITS,
        validity_days: Any = DEFAULT_VALIDITY_DAYS,
    ) -> KeyMaterial:
        bits = parse_rsa_bits(rsa_bits)
        days = parse_validity_days(validity_days)

        template = GenerationTemplate.load(self.template_path)
        if subject is not None:
            template = template.with_subject(subject)
        # Fail on an empty subject before anything on disk is touched
        template.subject.to_x509_name()

        material = self.store.material
        try:
            rotated = self.store.rotate_and_prepare()
        except OSError as e:
            raise GenerationError(f'Cannot move existing key material in {material.directory} aside: {e}') from e

        log.info('Generating %d-bit RSA key and certificate valid for %d days', bits, days)
        try:
            self.backend.generate(template, bits, days, material.private_key, material.der_cert)
            # If the backend silently produced nothing, let commit() report it
            if material.der_cert.exists():
                self.backend.to_pem(material.der_cert, material.pem_cert)
            self.store.commit()
        except (MokError, OSError) as e:
            self.store.restore_backups(rotated)
            if isinstance(e, MokError):
                raise
            raise GenerationError(f'Writing key material to {material.directory} failed: {e}') from e

        try:
            self.store.discard_backups()
        except OSError as e:
            raise GenerationError(f'New key material is in place, but old backups could not be removed: {e}') from e

        log.info('Wrote private key %s', material.private_key)
        log.info('Wrote certificate %s and %s', material.der_cert, material.pem_cert)
        return material
