# SPDX-License-Identifier: LGPL-2.1-or-later


class MokError(Exception):
    pass


class InvalidParameter(MokError, ValueError):
    "RSA size, validity or subject value out of range"


class MissingConfig(MokError):
    "No usable certificate generation template"


class GenerationError(MokError):
    "Key or certificate creation failed, prior material is kept"


class VerificationError(GenerationError):
    "Generation reported success but the artifacts are missing or empty"


class InvalidKey(MokError):
    pass


class InvalidCertificate(MokError):
    pass


class CertificateFormatError(InvalidCertificate):
    "Certificate is valid, but DER was required and PEM supplied or vice versa"


class KeyCertMismatch(MokError):
    pass


class InvalidTarget(MokError):
    pass


class SignFailed(MokError):
    pass
