# SPDX-License-Identifier: LGPL-2.1-or-later

"""The OpenSSL "req" configuration used to create the MOK certificate.

The template is parsed into sections, the subject is overlaid structurally and
the result is written to a separate file. The template on disk is never
rewritten in place.
"""

import configparser
import dataclasses
import io
import logging
import re
import textwrap
from pathlib import Path
from typing import Optional, Union

from cryptography import x509
from cryptography.x509.oid import NameOID

from .errors import InvalidParameter, MissingConfig

log = logging.getLogger(__name__)

# Module signing OID used by the kernel's own x509.genkey
MODULE_SIGNING_OID = '1.3.6.1.4.1.2312.16.1.2'

IMPLICIT_SECTION = 'default'


@dataclasses.dataclass(frozen=True)
class CertificateSubject:
    country: Optional[str] = None
    state: Optional[str] = None
    locality: Optional[str] = None
    organization: Optional[str] = None
    common_name: Optional[str] = None
    email: Optional[str] = None

    # field name → (OpenSSL dn key, x509 OID)
    FIELDS = {
        'country': ('C', NameOID.COUNTRY_NAME),
        'state': ('ST', NameOID.STATE_OR_PROVINCE_NAME),
        'locality': ('L', NameOID.LOCALITY_NAME),
        'organization': ('O', NameOID.ORGANIZATION_NAME),
        'common_name': ('CN', NameOID.COMMON_NAME),
        'email': ('emailAddress', NameOID.EMAIL_ADDRESS),
    }

    # OpenSSL also takes the long attribute names in the dn section
    LONG_NAMES = {
        'country': 'countryName',
        'state': 'stateOrProvinceName',
        'locality': 'localityName',
        'organization': 'organizationName',
        'common_name': 'commonName',
    }

    @classmethod
    def dn_keys(cls, name: str) -> tuple[str, ...]:
        "All spellings of field name in an OpenSSL dn section, short one first"
        key = cls.FIELDS[name][0]
        long_name = cls.LONG_NAMES.get(name)
        return (key, long_name) if long_name else (key,)

    def __post_init__(self) -> None:
        for name in self.FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            if not isinstance(value, str) or not value.strip():
                raise InvalidParameter(f'Subject field {name} must not be empty')
            object.__setattr__(self, name, value.strip())

        if self.country is not None and len(self.country) != 2:
            raise InvalidParameter(f'Country must be exactly 2 characters, got {self.country!r}')
        if self.common_name is not None and len(self.common_name) > 64:
            raise InvalidParameter('Common name must not exceed 64 characters')

    def items(self) -> list[tuple[str, str]]:
        "Present fields as (OpenSSL dn key, value)"
        return [(key, v) for name, (key, _) in self.FIELDS.items() if (v := getattr(self, name)) is not None]

    def merged(self, other: 'CertificateSubject') -> 'CertificateSubject':
        "Fields set in other take precedence"
        return dataclasses.replace(
            self,
            **{name: v for name in self.FIELDS if (v := getattr(other, name)) is not None},
        )

    def to_x509_name(self) -> x509.Name:
        attrs = [
            x509.NameAttribute(oid, v) for name, (_, oid) in self.FIELDS.items() if (v := getattr(self, name))
        ]
        if not attrs:
            raise InvalidParameter('Certificate subject is empty')
        return x509.Name(attrs)

    @classmethod
    def from_mapping(cls, data: dict[str, str]) -> 'CertificateSubject':
        by_key = {key: name for name in cls.FIELDS for key in cls.dn_keys(name)}
        return cls(**{by_key[k]: v for k, v in data.items() if k in by_key and v})


DEFAULT_TEMPLATE = textwrap.dedent(f"""\
    # Certificate template for the Machine Owner Key.
    # Subject values below can be overridden on the mokctl command line
    # or in the [Subject] section of mokctl.conf.

    [ req ]
    default_bits = 2048
    distinguished_name = req_distinguished_name
    prompt = no
    string_mask = utf8only
    x509_extensions = mok_exts

    [ req_distinguished_name ]
    O = Machine Owner
    CN = Secure Boot Machine Owner Key

    [ mok_exts ]
    basicConstraints = critical,CA:FALSE
    keyUsage = digitalSignature
    extendedKeyUsage = codeSigning,{MODULE_SIGNING_OID}
    subjectKeyIdentifier = hash
    authorityKeyIdentifier = keyid
""")


def _make_parser() -> configparser.ConfigParser:
    cp = configparser.ConfigParser(
        comment_prefixes=('#', ';'),
        inline_comment_prefixes=('#',),
        delimiters=('=',),
        empty_lines_in_values=False,
        interpolation=None,
        strict=False,
        default_section='configparser-defaults-unused',
    )
    # Do not make keys lowercase
    cp.optionxform = lambda option: option  # type: ignore
    # OpenSSL allows "[ section ]"
    cp.SECTCRE = re.compile(r'\[\s*(?P<header>[^]]+?)\s*\]')
    return cp


class GenerationTemplate:
    def __init__(self, parser: configparser.ConfigParser, path: Optional[Path] = None) -> None:
        self.parser = parser
        self.path = path

    @classmethod
    def parse(cls, text: str, path: Optional[Path] = None) -> 'GenerationTemplate':
        cp = _make_parser()
        # Assignments before the first section header belong to OpenSSL's default section
        try:
            cp.read_string(f'[ {IMPLICIT_SECTION} ]\n' + text, source=str(path or '<template>'))
        except configparser.Error as e:
            raise MissingConfig(f'Cannot parse certificate template {path or ""}: {e}') from e

        template = cls(cp, path)
        template.dn_section()
        return template

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'GenerationTemplate':
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as e:
            raise MissingConfig(
                f'Certificate template {path} is not available ({e.strerror or e}), '
                'create one with "mokctl init-config"'
            ) from e
        return cls.parse(text, path)

    def dn_section(self) -> str:
        if not self.parser.has_section('req'):
            raise MissingConfig(f'Certificate template {self.path or ""} has no [req] section')
        name = self.parser.get('req', 'distinguished_name', fallback=None)
        if not name or not self.parser.has_section(name):
            raise MissingConfig(
                f'Certificate template {self.path or ""} does not define a distinguished_name section'
            )
        return name

    @property
    def subject(self) -> CertificateSubject:
        return CertificateSubject.from_mapping(dict(self.parser.items(self.dn_section())))

    @property
    def extensions_section(self) -> Optional[str]:
        name = self.parser.get('req', 'x509_extensions', fallback=None)
        return name if name and self.parser.has_section(name) else None

    def extensions(self) -> dict[str, str]:
        section = self.extensions_section
        return dict(self.parser.items(section)) if section else {}

    def with_subject(self, subject: CertificateSubject) -> 'GenerationTemplate':
        cp = _make_parser()
        cp.read_dict({s: dict(self.parser.items(s)) for s in self.parser.sections()})

        dn = self.dn_section()
        for name in subject.FIELDS:
            value = getattr(subject, name)
            if value is None:
                continue
            # "commonName = x" and "CN = y" would make two attributes
            for key in subject.dn_keys(name):
                cp.remove_option(dn, key)
            cp.set(dn, subject.FIELDS[name][0], value)
        # No prompting, the subject comes from the template
        cp.set('req', 'prompt', 'no')

        return GenerationTemplate(cp, None)

    def dumps(self) -> str:
        out = io.StringIO()
        self.parser.write(out, space_around_delimiters=True)
        return out.getvalue()

    def render(self, path: Path) -> Path:
        path.write_text(self.dumps())
        log.debug('Wrote generation config %s', path)
        return path


def write_default_template(
    path: Union[str, Path],
    subject: Optional[CertificateSubject] = None,
    force: bool = False,
) -> Path:
    path = Path(path)
    if path.exists() and not force:
        raise FileExistsError(f'{path} is present, refusing to overwrite')

    template = GenerationTemplate.parse(DEFAULT_TEMPLATE)
    if subject is not None:
        template = template.with_subject(subject)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(template.dumps() if subject is not None else DEFAULT_TEMPLATE)
    log.info('Wrote certificate template %s', path)
    return path
