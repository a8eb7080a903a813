# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import enum
import fnmatch
import logging
import os
import shutil
import struct
import subprocess
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Union

import pefile  # type: ignore

from .errors import InvalidTarget, MokError, SignFailed
from .store import KeyMaterial
from .tools import find_tool, remove_quietly, run_tool, tool_failure
from .verify import CertFormat, KeyCertVerifier, PairVerifier, verify_pair

log = logging.getLogger(__name__)

MODULE_PATTERN = '*.ko'
BINARY_PATTERNS = ('vmlinuz*', 'bzImage*', 'Image*', '*.efi')

# include/linux/module_signature.h
MODULE_SIG_MAGIC = b'~Module signature appended~\n'
MODULE_SIG_INFO = struct.Struct('>BBBBB3xI')

MODULE_SIGN_HASH = 'sha512'


class SigningMode(enum.Enum):
    ALL_MODULES = 'all-modules'
    SINGLE_MODULE = 'module'
    BINARY_IMAGE = 'binary'

    @property
    def cert_format(self) -> CertFormat:
        return CertFormat.PEM if self is SigningMode.BINARY_IMAGE else CertFormat.DER

    @property
    def purpose(self) -> str:
        return 'binary signing' if self is SigningMode.BINARY_IMAGE else 'module signing'


@dataclasses.dataclass(frozen=True)
class AllModules:
    directory: Path
    mode = SigningMode.ALL_MODULES


@dataclasses.dataclass(frozen=True)
class SingleModule:
    module: Path
    mode = SigningMode.SINGLE_MODULE


@dataclasses.dataclass(frozen=True)
class BinaryImage:
    image: Path
    mode = SigningMode.BINARY_IMAGE


SigningTarget = Union[AllModules, SingleModule, BinaryImage]


@dataclasses.dataclass(frozen=True)
class SigningRequest:
    target: SigningTarget
    key: Path
    certificate: Path

    @property
    def mode(self) -> SigningMode:
        return self.target.mode

    @classmethod
    def for_material(cls, target: SigningTarget, material: KeyMaterial) -> 'SigningRequest':
        "Pick the certificate in the format the mode needs"
        cert = material.pem_cert if target.mode.cert_format is CertFormat.PEM else material.der_cert
        return cls(target=target, key=material.private_key, certificate=cert)


@dataclasses.dataclass
class SignResult:
    succeeded: list[Path] = dataclasses.field(default_factory=list)
    failed: dict[Path, str] = dataclasses.field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def is_module(path: Path) -> bool:
    return fnmatch.fnmatchcase(path.name, MODULE_PATTERN)


def is_binary_name(path: Path) -> bool:
    name = path.name
    return any(fnmatch.fnmatchcase(name, p) for p in BINARY_PATTERNS) or name.lower().endswith('.efi')


def is_pe_image(path: Path) -> bool:
    try:
        pefile.PE(os.fspath(path), fast_load=True).close()
    except pefile.PEFormatError:
        return False
    return True


def strip_module_signature(data: bytes) -> bytes:
    "Remove an appended module signature, so that signing twice does not stack signatures"

    if not data.endswith(MODULE_SIG_MAGIC):
        return data

    end = len(data) - len(MODULE_SIG_MAGIC)
    if end < MODULE_SIG_INFO.size:
        return data

    *_, sig_len = MODULE_SIG_INFO.unpack_from(data, end - MODULE_SIG_INFO.size)
    start = end - MODULE_SIG_INFO.size - sig_len
    if start < 0:
        raise ValueError('Module signature length exceeds file size')
    return data[:start]


def find_modules(directory: Path) -> list[Path]:
    "Module files below directory, without symlinks such as the ones in weak-updates/"
    return sorted(p for p in directory.rglob(MODULE_PATTERN) if p.is_file() and not p.is_symlink())


class ModuleSigner:
    "Signs a module in place"

    def sign(self, key: Path, cert: Path, module: Path) -> None:
        raise NotImplementedError()


class SignFile(ModuleSigner):
    "The kernel's scripts/sign-file"

    def __init__(self, tool: Union[str, Path, None] = None, tools: Sequence[Path] = ()) -> None:
        self.tool = tool
        self.tools = tools

    @staticmethod
    def default_locations() -> list[Path]:
        release = os.uname().release
        return [
            Path(f'/lib/modules/{release}/build/scripts/sign-file'),
            Path(f'/usr/src/kernels/{release}/scripts/sign-file'),
            Path(f'/usr/src/linux-headers-{release}/scripts/sign-file'),
        ]

    def find(self) -> Union[str, Path]:
        if self.tool is not None:
            return self.tool
        return find_tool(
            'sign-file',
            *self.default_locations(),
            tools=self.tools,
            msg='{name}, required for module signing, is not installed (install the kernel headers)',
        )

    def sign(self, key: Path, cert: Path, module: Path) -> None:
        try:
            # Without a destination sign-file writes a sibling and renames it over the module
            cmd = [self.find(), MODULE_SIGN_HASH, key, cert, module]
            run_tool(cmd)
        except (subprocess.CalledProcessError, OSError) as e:
            raise SignFailed(f'Signing {module} failed: {tool_failure(e)}') from e


class BinarySigner:
    def sign(self, key: Path, cert: Path, image: Path, output: Path) -> None:
        raise NotImplementedError()

    @staticmethod
    def from_string(name: str, tools: Sequence[Path] = ()) -> 'BinarySigner':
        if name == 'sbsign':
            return SbSign(tools=tools)
        elif name == 'systemd-sbsign':
            return SystemdSbSign(tools=tools)
        else:
            raise ValueError(f'Invalid sign tool: {name!r}')


class SbSign(BinarySigner):
    def __init__(self, tools: Sequence[Path] = ()) -> None:
        self.tools = tools

    def sign(self, key: Path, cert: Path, image: Path, output: Path) -> None:
        try:
            tool = find_tool('sbsign', tools=self.tools, msg='sbsign, required for signing, is not installed')
            cmd = [
                tool,
                '--key', key,
                '--cert', cert,
                image,
                '--output', output,
            ]  # fmt: skip
            run_tool(cmd)
        except (subprocess.CalledProcessError, OSError) as e:
            raise SignFailed(f'Signing {image} failed: {tool_failure(e)}') from e


class SystemdSbSign(BinarySigner):
    def __init__(self, tools: Sequence[Path] = ()) -> None:
        self.tools = tools

    def sign(self, key: Path, cert: Path, image: Path, output: Path) -> None:
        try:
            tool = find_tool(
                'systemd-sbsign',
                '/usr/lib/systemd/systemd-sbsign',
                tools=self.tools,
                msg='systemd-sbsign, required for signing, is not installed',
            )
            cmd = [
                tool,
                'sign',
                '--private-key', key,
                '--certificate', cert,
                image,
                '--output', output,
            ]  # fmt: skip
            run_tool(cmd)
        except (subprocess.CalledProcessError, OSError) as e:
            raise SignFailed(f'Signing {image} failed: {tool_failure(e)}') from e


def _temporary_sibling(path: Path) -> Path:
    fd, name = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.name}.', suffix='.tmp')
    os.close(fd)
    return Path(name)


def _replace(signed: Path, original: Path) -> None:
    try:
        shutil.copymode(original, signed)
        os.replace(signed, original)
    except OSError as e:
        raise SignFailed(f'Cannot replace {original} with signed copy: {e}') from e


class SigningDispatcher:
    def __init__(
        self,
        module_signer: Optional[ModuleSigner] = None,
        binary_signer: Optional[BinarySigner] = None,
        verifier: Optional[KeyCertVerifier] = None,
    ) -> None:
        self.module_signer = module_signer or SignFile()
        self.binary_signer = binary_signer or SbSign()
        self.verifier = verifier or PairVerifier()

    def sign(self, request: SigningRequest) -> SignResult:
        mode = request.mode
        verify_pair(self.verifier, request.key, request.certificate, mode.cert_format, mode.purpose)

        target = request.target
        if isinstance(target, AllModules):
            return self._sign_all_modules(request, target.directory)
        elif isinstance(target, SingleModule):
            return self._sign_single_module(request, target.module)
        elif isinstance(target, BinaryImage):
            return self._sign_binary(request, target.image)
        else:
            assert False, f'Unknown signing target {target!r}'

    def _sign_all_modules(self, request: SigningRequest, directory: Path) -> SignResult:
        if not directory.is_dir():
            raise InvalidTarget(f'{directory} is not a directory')

        result = SignResult()
        modules = find_modules(directory)
        if not modules:
            log.warning('No kernel modules (%s) found below %s', MODULE_PATTERN, directory)

        for module in modules:
            try:
                self._sign_module(request, module)
            except MokError as e:
                log.error('%s', e)
                result.failed[module] = str(e)
            else:
                result.succeeded += [module]

        log.info('Signed %d of %d modules below %s', len(result.succeeded), len(modules), directory)
        return result

    def _sign_single_module(self, request: SigningRequest, module: Path) -> SignResult:
        if not is_module(module):
            raise InvalidTarget(f'{module} is not a kernel module (expected {MODULE_PATTERN})')
        if not module.is_file():
            raise InvalidTarget(f'{module} does not exist or is not a regular file')

        self._sign_module(request, module)
        return SignResult(succeeded=[module])

    def _sign_module(self, request: SigningRequest, module: Path) -> None:
        if module.is_symlink():
            # Sign the target, replacing the link would turn it into a copy
            module = module.resolve()

        tmp = None
        try:
            tmp = _temporary_sibling(module)
            try:
                tmp.write_bytes(strip_module_signature(module.read_bytes()))
            except (OSError, ValueError) as e:
                raise SignFailed(f'Cannot prepare {module} for signing: {e}') from e

            self.module_signer.sign(request.key, request.certificate, tmp)
            _replace(tmp, module)
            tmp = None
        except OSError as e:
            raise SignFailed(f'Cannot sign {module}: {e}') from e
        finally:
            remove_quietly(tmp)

        log.info('Signed %s', module)

    def _sign_binary(self, request: SigningRequest, image: Path) -> SignResult:
        if not is_binary_name(image):
            raise InvalidTarget(
                f'{image} does not look like a kernel image or EFI binary (expected {", ".join(BINARY_PATTERNS)})'
            )
        if not image.is_file():
            raise InvalidTarget(f'{image} does not exist or is not a regular file')
        if not is_pe_image(image):
            raise InvalidTarget(f'{image} is not a PE/EFI executable')

        output = None
        try:
            output = _temporary_sibling(image)
            self.binary_signer.sign(request.key, request.certificate, image, output)
            if output.stat().st_size == 0:
                raise SignFailed(f'Signing {image} produced no output')
            _replace(output, image)
            output = None
        except OSError as e:
            raise SignFailed(f'Cannot sign {image}: {e}') from e
        finally:
            remove_quietly(output)

        log.info('Signed %s', image)
        return SignResult(succeeded=[image])
