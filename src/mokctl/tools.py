# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Optional, Union

log = logging.getLogger(__name__)


def shell_join(cmd: Sequence[Union[str, Path]]) -> str:
    # TODO: drop in favour of shlex.join once shlex.join supports Path.
    return ' '.join(shlex.quote(str(x)) for x in cmd)


def find_tool(
    name: str,
    *fallbacks: Union[str, Path],
    tools: Sequence[Path] = (),
    msg: str = 'Tool {name} not installed!',
) -> Union[str, Path]:
    for d in tools:
        tool = Path(d) / name
        if tool.exists():
            return tool

    if shutil.which(name) is not None:
        return name

    for fallback in fallbacks:
        if Path(fallback).exists():
            return fallback

    raise FileNotFoundError(msg.format(name=name))


def run_tool(cmd: Sequence[Union[str, Path]]) -> None:
    log.info('+ %s', shell_join(cmd))
    subprocess.run(
        [os.fspath(c) for c in cmd],
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )


def tool_failure(e: Union[subprocess.CalledProcessError, OSError]) -> str:
    "Short description of why an external command failed"

    if isinstance(e, subprocess.CalledProcessError):
        cmd = e.cmd if isinstance(e.cmd, (list, tuple)) else [e.cmd]
        out = (e.output or '').strip()
        msg = f'{Path(cmd[0]).name} exited with status {e.returncode}'
        return f'{msg}: {out.splitlines()[-1]}' if out else msg
    return str(e)


@contextlib.contextmanager
def temporary_umask(mask: int) -> Iterator[None]:
    # Drop <mask> bits from umask
    old = os.umask(0)
    os.umask(old | mask)
    try:
        yield
    finally:
        os.umask(old)


def remove_quietly(path: Optional[Path]) -> None:
    if path is None:
        return
    with contextlib.suppress(FileNotFoundError):
        path.unlink()
