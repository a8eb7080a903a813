# SPDX-License-Identifier: LGPL-2.1-or-later

"""Key/certificate pair matching.

A private key and a certificate belong together when they share the same RSA
modulus. The fingerprint is a SHA-256 digest over the big-endian modulus bytes,
so it does not matter whether the material is wrapped as PEM or DER.
"""

import dataclasses
import enum
import hashlib
import logging
from pathlib import Path
from typing import Callable, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import CertificateFormatError, InvalidCertificate, InvalidKey, KeyCertMismatch

log = logging.getLogger(__name__)


class CertFormat(enum.Enum):
    DER = 'der'
    PEM = 'pem'

    @property
    def other(self) -> 'CertFormat':
        return CertFormat.PEM if self is CertFormat.DER else CertFormat.DER


@dataclasses.dataclass(frozen=True)
class Fingerprint:
    digest: str

    @classmethod
    def of_modulus(cls, n: int) -> 'Fingerprint':
        raw = n.to_bytes((n.bit_length() + 7) // 8, 'big')
        return cls(hashlib.sha256(raw).hexdigest())

    def __str__(self) -> str:
        return ':'.join(self.digest[i : i + 2] for i in range(0, len(self.digest), 2))


_CERT_LOADERS: dict[CertFormat, Callable[[bytes], x509.Certificate]] = {
    CertFormat.DER: x509.load_der_x509_certificate,
    CertFormat.PEM: x509.load_pem_x509_certificate,
}


def _read(path: Union[str, Path], error: type[Exception]) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise error(f'Cannot read {path}: {e.strerror or e}') from e


def load_private_key(path: Union[str, Path]) -> rsa.RSAPrivateKey:
    data = _read(path, InvalidKey)

    loader = (
        serialization.load_pem_private_key
        if data.lstrip().startswith(b'-----BEGIN')
        else serialization.load_der_private_key
    )
    try:
        key = loader(data, password=None)
    except (ValueError, TypeError) as e:
        # TypeError is raised for encrypted keys when no password is given
        raise InvalidKey(f'{path} is not a usable private key: {e}') from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidKey(f'{path} is not an RSA private key')
    return key


def load_certificate(path: Union[str, Path], fmt: CertFormat) -> x509.Certificate:
    data = _read(path, InvalidCertificate)

    try:
        return _CERT_LOADERS[fmt](data)
    except ValueError as e:
        try:
            _CERT_LOADERS[fmt.other](data)
        except ValueError:
            raise InvalidCertificate(f'{path} is not a valid {fmt.name} certificate: {e}') from e
        raise CertificateFormatError(
            f'{path} is a {fmt.other.name} certificate, but a {fmt.name} certificate is required'
        ) from e


def fingerprint_of_private_key(path: Union[str, Path]) -> Fingerprint:
    key = load_private_key(path)
    return Fingerprint.of_modulus(key.private_numbers().public_numbers.n)


def fingerprint_of_certificate(path: Union[str, Path], fmt: CertFormat) -> Fingerprint:
    cert = load_certificate(path, fmt)
    public_key = cert.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise InvalidCertificate(f'{path} does not carry an RSA public key')
    return Fingerprint.of_modulus(public_key.public_numbers().n)


def matches(a: Fingerprint, b: Fingerprint) -> bool:
    return a == b


class KeyCertVerifier:
    def fingerprint_of_private_key(self, path: Path) -> Fingerprint:
        raise NotImplementedError()

    def fingerprint_of_certificate(self, path: Path, fmt: CertFormat) -> Fingerprint:
        raise NotImplementedError()

    def matches(self, a: Fingerprint, b: Fingerprint) -> bool:
        return matches(a, b)


class PairVerifier(KeyCertVerifier):
    def fingerprint_of_private_key(self, path: Path) -> Fingerprint:
        return fingerprint_of_private_key(path)

    def fingerprint_of_certificate(self, path: Path, fmt: CertFormat) -> Fingerprint:
        return fingerprint_of_certificate(path, fmt)


def verify_pair(
    verifier: KeyCertVerifier,
    key: Path,
    cert: Path,
    fmt: CertFormat,
    purpose: str,
) -> Fingerprint:
    """Check that key and cert form a pair, return the shared fingerprint.

    Format problems surface as InvalidKey/InvalidCertificate/CertificateFormatError,
    a modulus mismatch as KeyCertMismatch.
    """
    key_fp = verifier.fingerprint_of_private_key(key)
    cert_fp = verifier.fingerprint_of_certificate(cert, fmt)

    if not verifier.matches(key_fp, cert_fp):
        raise KeyCertMismatch(f'Private key {key} does not match certificate {cert}, refusing {purpose}')

    log.debug('Key %s matches certificate %s (%s)', key, cert, key_fp)
    return key_fp
