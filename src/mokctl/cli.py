# SPDX-License-Identifier: LGPL-2.1-or-later
#
# This file is part of mokctl.
#
# mokctl is free software; you can redistribute it and/or modify it
# under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation; either version 2.1 of the License, or
# (at your option) any later version.
#
# mokctl is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with mokctl; If not, see <https://www.gnu.org/licenses/>.

# pylint: disable=unnecessary-lambda-assignment

import argparse
import builtins
import configparser
import dataclasses
import json
import logging
import sys
import textwrap
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Callable, Optional, Union

from . import __version__
from .errors import InvalidTarget, MokError, SignFailed
from .generate import (
    DEFAULT_RSA_BITS,
    DEFAULT_VALIDITY_DAYS,
    CertificateBackend,
    CertificateGenerator,
    parse_rsa_bits,
    parse_validity_days,
)
from .sign import (
    AllModules,
    BinaryImage,
    BinarySigner,
    SignFile,
    SigningDispatcher,
    SigningRequest,
    SigningTarget,
    SignResult,
    SingleModule,
)
from .store import KeyMaterial, KeyMaterialStore
from .template import CertificateSubject, write_default_template
from .verify import CertFormat, PairVerifier, load_certificate, verify_pair

log = logging.getLogger(__name__)

# When --config= is not given, the directories are searched in this order and the first file found is
# used.
DEFAULT_CONFIG_DIRS = ['/etc/mokctl', '/run/mokctl', '/usr/local/lib/mokctl', '/usr/lib/mokctl']
DEFAULT_CONFIG_FILE = 'mokctl.conf'

DEFAULT_DIRECTORY = Path('/var/lib/mokctl')
DEFAULT_TEMPLATE_NAME = 'openssl.cnf'


class Style:
    bold = '\033[0;1;39m' if sys.stderr.isatty() else ''
    red = '\033[31;1m' if sys.stderr.isatty() else ''
    reset = '\033[0m' if sys.stderr.isatty() else ''


@dataclasses.dataclass(frozen=True)
class ConfigItem:
    @staticmethod
    def config_set_if_unset(
        namespace: argparse.Namespace,
        dest: str,
        value: Any,
    ) -> None:
        "Set namespace.<dest> to value only if it was None"

        if getattr(namespace, dest) is None:
            setattr(namespace, dest, value)

    # arguments for argparse.ArgumentParser.add_argument()
    name: Union[str, tuple[str, str]]
    dest: Optional[str] = None
    metavar: Optional[str] = None
    type: Optional[Callable[[str], Any]] = None
    nargs: Optional[str] = None
    action: Optional[Union[str, builtins.type[argparse.Action]]] = None
    default: Any = None
    version: Optional[str] = None
    choices: Optional[tuple[str, ...]] = None
    help: Optional[str] = None

    # metadata for config file parsing
    config_key: Optional[str] = None

    def _names(self) -> tuple[str, ...]:
        return self.name if isinstance(self.name, tuple) else (self.name,)

    def argparse_dest(self) -> str:
        if self.dest:
            return self.dest
        return self._names()[0].lstrip('-').replace('-', '_')

    def add_to(self, parser: argparse.ArgumentParser) -> None:
        kwargs = {
            key: val
            for key in dataclasses.asdict(self)
            if (key not in ('name', 'config_key') and (val := getattr(self, key)) is not None)
        }
        args = self._names()
        parser.add_argument(*args, **kwargs)

    def apply_config(self, namespace: argparse.Namespace, key: str, value: str) -> None:
        assert key == self.config_key

        conv: Callable[[str], Any] = self.type or (lambda s: s)
        if self.choices and value not in self.choices:
            raise ValueError(f'Invalid value for {key}: {value!r} (expected one of {", ".join(self.choices)})')

        # --tools is the only option with multiple values, space-separated in the config file
        if self.action == 'append':
            self.config_set_if_unset(namespace, self.argparse_dest(), [conv(v) for v in value.split()])
        else:
            self.config_set_if_unset(namespace, self.argparse_dest(), conv(value))

    def config_example(self) -> tuple[Optional[str], Optional[str], Optional[str]]:
        if not self.config_key:
            return None, None, None
        section_name, key = self.config_key.split('/', 1)
        if self.choices:
            value = '|'.join(self.choices)
        else:
            value = self.metavar or self.argparse_dest().upper()
        return (section_name, key, value)


VERBS = ('genkey', 'init-config', 'verify', 'inspect', 'sign-modules', 'sign-module', 'sign-binary')

CONFIG_ITEMS = [
    ConfigItem(
        'verb',
        metavar='VERB',
        choices=VERBS,
        help=argparse.SUPPRESS,
    ),
    ConfigItem(
        'files',
        metavar='FILE',
        nargs='*',
        help=argparse.SUPPRESS,
    ),
    ConfigItem(
        '--version',
        action='version',
        version=f'mokctl {__version__}',
    ),
    ConfigItem(
        ('--verbose', '-v'),
        action='store_true',
        help='show debug messages',
    ),
    ConfigItem(
        '--config',
        metavar='PATH',
        type=Path,
        help='configuration file',
    ),
    ConfigItem(
        '--directory',
        metavar='DIR',
        type=Path,
        help=f'directory holding the key material [{DEFAULT_DIRECTORY}]',
        config_key='MOK/Directory',
    ),
    ConfigItem(
        '--name',
        metavar='NAME',
        help='base name of the key and certificate files [MOK]',
        config_key='MOK/Name',
    ),
    ConfigItem(
        '--template',
        metavar='PATH',
        type=Path,
        help=f'OpenSSL certificate template [DIR/{DEFAULT_TEMPLATE_NAME}]',
        config_key='MOK/Template',
    ),
    ConfigItem(
        '--rsa-bits',
        metavar='BITS',
        type=parse_rsa_bits,
        help=f'RSA key size, 2048…8192 [{DEFAULT_RSA_BITS}]',
        config_key='MOK/RSABits',
    ),
    ConfigItem(
        '--validity-days',
        metavar='DAYS',
        type=parse_validity_days,
        help=f'certificate validity in days, at most 3650 [{DEFAULT_VALIDITY_DAYS}]',
        config_key='MOK/ValidityDays',
    ),
    ConfigItem(
        '--backend',
        choices=('openssl', 'cryptography'),
        help='how to create the key and certificate [openssl]',
        config_key='MOK/Backend',
    ),
    ConfigItem(
        '--country',
        metavar='CC',
        help='certificate subject country (two letters)',
        config_key='Subject/Country',
    ),
    ConfigItem(
        '--state',
        metavar='STATE',
        help='certificate subject state or province',
        config_key='Subject/State',
    ),
    ConfigItem(
        '--locality',
        metavar='CITY',
        help='certificate subject locality',
        config_key='Subject/Locality',
    ),
    ConfigItem(
        '--organization',
        metavar='ORG',
        help='certificate subject organization',
        config_key='Subject/Organization',
    ),
    ConfigItem(
        '--common-name',
        metavar='CN',
        help='certificate subject common name',
        config_key='Subject/CommonName',
    ),
    ConfigItem(
        '--email',
        metavar='ADDRESS',
        help='certificate subject e-mail address',
        config_key='Subject/Email',
    ),
    ConfigItem(
        '--force',
        action='store_true',
        help='overwrite an existing certificate template',
    ),
    ConfigItem(
        '--sign-file',
        metavar='PATH',
        type=Path,
        help='kernel sign-file program [autodetected]',
        config_key='Signing/SignFile',
    ),
    ConfigItem(
        '--signtool',
        choices=('sbsign', 'systemd-sbsign'),
        help='program used to sign kernel images and EFI binaries [sbsign]',
        config_key='Signing/SignTool',
    ),
    ConfigItem(
        '--tools',
        type=Path,
        action='append',
        help='directories to search for signing tools',
        config_key='Signing/Tools',
    ),
]

CONFIGFILE_ITEMS = {item.config_key: item for item in CONFIG_ITEMS if item.config_key}


def apply_config(namespace: argparse.Namespace, filename: Union[str, Path, None] = None) -> None:
    if filename is None:
        if namespace.config:
            # Config set by the user, use that.
            filename = namespace.config
            log.debug('Using config file: %s', filename)
        else:
            # Try to look for a config file then use the first one found.
            for config_dir in DEFAULT_CONFIG_DIRS:
                filename = Path(config_dir) / DEFAULT_CONFIG_FILE
                if filename.is_file():
                    log.debug('Using found config file: %s', filename)
                    break
            else:
                # No config file specified or found, nothing to do.
                return

    cp = configparser.ConfigParser(
        comment_prefixes='#',
        inline_comment_prefixes='#',
        delimiters='=',
        empty_lines_in_values=False,
        interpolation=None,
        strict=False,
    )
    # Do not make keys lowercase
    cp.optionxform = lambda option: option  # type: ignore

    # The API is not great.
    read = cp.read(filename)
    if not read:
        raise OSError(f'Failed to read {filename}')

    for section_name, section in cp.items():
        for key, value in section.items():
            if item := CONFIGFILE_ITEMS.get(f'{section_name}/{key}'):
                item.apply_config(namespace, f'{section_name}/{key}', value)
            else:
                log.warning('Unknown config setting [%s] %s=', section_name, key)


def config_example() -> Iterator[str]:
    prev_section: Optional[str] = None
    for item in CONFIG_ITEMS:
        section, key, value = item.config_example()
        if section:
            if prev_section != section:
                if prev_section:
                    yield ''
                yield f'[{section}]'
                prev_section = section
            yield f'{key} = {value}'


def create_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description='Create a Machine Owner Key and sign kernel modules and EFI binaries with it',
        usage='\n  '
        + textwrap.dedent("""\
          mokctl {b}genkey{e} [--rsa-bits=BITS] [--validity-days=DAYS] [options…]
            mokctl {b}init-config{e} [--force] [options…]
            mokctl {b}verify{e} [options…]
            mokctl {b}inspect{e} [options…]
            mokctl {b}sign-modules{e} DIR [options…]
            mokctl {b}sign-module{e} MODULE… [options…]
            mokctl {b}sign-binary{e} IMAGE… [options…]
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
        epilog='\n  '.join(('config file:', *config_example())),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    for item in CONFIG_ITEMS:
        item.add_to(p)

    # Suppress printing of usage synopsis on errors
    p.error = lambda message: p.exit(2, f'{p.prog}: error: {message}\n')  # type: ignore

    return p


def subject_from_options(opts: argparse.Namespace) -> Optional[CertificateSubject]:
    fields = {
        name: value
        for name in CertificateSubject.FIELDS
        if (value := getattr(opts, name, None)) is not None
    }
    return CertificateSubject(**fields) if fields else None


def finalize_options(opts: argparse.Namespace) -> None:
    if opts.verb == 'sign-modules':
        if len(opts.files) != 1:
            raise ValueError('sign-modules takes exactly one directory')
    elif opts.verb in ('sign-module', 'sign-binary'):
        if not opts.files:
            raise ValueError(f'{opts.verb}: file(s) to sign must be specified')
    elif opts.files:
        raise ValueError(f'{opts.verb} does not take positional arguments')
    opts.files = [Path(f) for f in opts.files]

    if opts.directory is None:
        opts.directory = DEFAULT_DIRECTORY
    if opts.name is None:
        opts.name = 'MOK'
    if opts.template is None:
        opts.template = opts.directory / DEFAULT_TEMPLATE_NAME
    if opts.rsa_bits is None:
        opts.rsa_bits = DEFAULT_RSA_BITS
    if opts.validity_days is None:
        opts.validity_days = DEFAULT_VALIDITY_DAYS
    if opts.backend is None:
        opts.backend = 'openssl'
    if opts.signtool is None:
        opts.signtool = 'sbsign'
    if opts.tools is None:
        opts.tools = []

    opts.material = KeyMaterial.in_directory(opts.directory, opts.name)
    opts.subject = subject_from_options(opts)


def parse_args(args: Optional[list[str]] = None) -> argparse.Namespace:
    opts = create_parser().parse_args(args)
    apply_config(opts)
    finalize_options(opts)
    return opts


def generate_keys(opts: argparse.Namespace) -> None:
    generator = CertificateGenerator(
        KeyMaterialStore(opts.material),
        CertificateBackend.from_string(opts.backend, tools=opts.tools),
        opts.template,
    )
    material = generator.generate(opts.subject, opts.rsa_bits, opts.validity_days)

    print(f'Private key:          {material.private_key}')
    print(f'Certificate (DER):    {material.der_cert}')
    print(f'Certificate (PEM):    {material.pem_cert}')
    print(f'Enroll it with: mokutil --import {material.der_cert}')


def init_config(opts: argparse.Namespace) -> None:
    path = write_default_template(opts.template, opts.subject, force=opts.force)
    print(f'Wrote certificate template {path}')


def verify_material(opts: argparse.Namespace) -> None:
    material = opts.material
    verifier = PairVerifier()
    verify_pair(verifier, material.private_key, material.der_cert, CertFormat.DER, 'module signing')
    fp = verify_pair(verifier, material.private_key, material.pem_cert, CertFormat.PEM, 'binary signing')
    print(f'{material.private_key} matches {material.der_cert} and {material.pem_cert}')
    print(f'Fingerprint: {fp}')


def describe_material(material: KeyMaterial) -> dict[str, Any]:
    "Summary of the key material on disk, for the inspect verb"

    verifier = PairVerifier()
    desc: dict[str, Any] = {
        'directory': str(material.directory),
        'private_key': str(material.private_key),
    }

    try:
        key_fp = verifier.fingerprint_of_private_key(material.private_key)
        desc['key_fingerprint'] = str(key_fp)
    except MokError as e:
        key_fp = None
        desc['key_error'] = str(e)

    for name, path, fmt in (
        ('der', material.der_cert, CertFormat.DER),
        ('pem', material.pem_cert, CertFormat.PEM),
    ):
        entry: dict[str, Any] = {'path': str(path)}
        try:
            cert = load_certificate(path, fmt)
            fp = verifier.fingerprint_of_certificate(path, fmt)
        except MokError as e:
            entry['error'] = str(e)
        else:
            entry.update(
                subject=cert.subject.rfc4514_string(),
                serial=f'{cert.serial_number:x}',
                not_before=cert.not_valid_before_utc.isoformat(),
                not_after=cert.not_valid_after_utc.isoformat(),
                fingerprint=str(fp),
                matches_key=key_fp is not None and verifier.matches(key_fp, fp),
            )
        desc[name] = entry

    return desc


def make_target(verb: str, path: Path) -> SigningTarget:
    if verb == 'sign-modules':
        return AllModules(path)
    elif verb == 'sign-module':
        return SingleModule(path)
    elif verb == 'sign-binary':
        return BinaryImage(path)
    else:
        raise ValueError(f'{verb} is not a signing verb')


def sign_targets(opts: argparse.Namespace) -> SignResult:
    dispatcher = SigningDispatcher(
        module_signer=SignFile(opts.sign_file, tools=opts.tools),
        binary_signer=BinarySigner.from_string(opts.signtool, tools=opts.tools),
    )

    total = SignResult()
    for path in opts.files:
        request = SigningRequest.for_material(make_target(opts.verb, path), opts.material)
        try:
            result = dispatcher.sign(request)
        except (InvalidTarget, SignFailed) as e:
            # Only this target is affected, key material problems still abort the run
            result = SignResult(failed={path: str(e)})

        for p in result.succeeded:
            print(f'Signed {p}')
        for p, reason in result.failed.items():
            print(f'{Style.red}Failed {p}{Style.reset}: {reason}', file=sys.stderr)

        total.succeeded += result.succeeded
        total.failed.update(result.failed)

    return total


def run(opts: argparse.Namespace) -> int:
    if opts.verb == 'genkey':
        generate_keys(opts)
    elif opts.verb == 'init-config':
        init_config(opts)
    elif opts.verb == 'verify':
        verify_material(opts)
    elif opts.verb == 'inspect':
        json.dump(describe_material(opts.material), sys.stdout, indent=4)
        print()
    elif opts.verb in ('sign-modules', 'sign-module', 'sign-binary'):
        if not sign_targets(opts).ok:
            return 1
    else:
        assert False
    return 0


def main(args: Optional[list[str]] = None) -> None:
    opts = create_parser().parse_args(args)
    logging.basicConfig(
        level=logging.DEBUG if opts.verbose else logging.INFO,
        format='%(message)s',
    )

    try:
        apply_config(opts)
        finalize_options(opts)
        ret = run(opts)
    except (MokError, ValueError, OSError) as e:
        print(f'{Style.red}mokctl: {e}{Style.reset}', file=sys.stderr)
        ret = 1

    sys.exit(ret)


if __name__ == '__main__':
    main()
