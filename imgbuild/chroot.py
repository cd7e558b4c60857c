# SPDX-License-Identifier: LGPL-2.1-or-later

import collections
import contextlib
import dataclasses
import functools
import logging
import os
import shutil
import subprocess
import sys
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Optional

from imgbuild.errors import ChrootSetupFailed, CleanupWarning, MountFailed
from imgbuild.lifecycle import ResourceHandle, ResourceKind, ResourceStack
from imgbuild.mounts import mount
from imgbuild.run import spawn
from imgbuild.util import PathString

CHROOT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# source, target inside the root, filesystem type, bind mount
CHROOT_MOUNTS = (
    ("proc", "proc", "proc", False),
    ("/sys", "sys", None, True),
    ("/dev", "dev", None, True),
    ("/dev/pts", "dev/pts", None, True),
)  # fmt: skip


@dataclasses.dataclass
class ExecutionHandle:
    root: Path
    stack: ResourceStack
    exited: bool = False


@dataclasses.dataclass(frozen=True)
class ChrootResult:
    returncode: int
    output: str
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0


def copy_resolv_conf(root: Path) -> None:
    src = Path("/etc/resolv.conf")
    dst = root / "etc/resolv.conf"

    if not src.exists() or not dst.parent.is_dir():
        return

    # A dangling symlink into /run inside the image would otherwise make us write to the host.
    if dst.is_symlink():
        dst.unlink()

    shutil.copyfile(src, dst)


def enter(root: PathString, *, network: bool = True) -> ExecutionHandle:
    root = Path(root)
    if not root.is_dir():
        raise ChrootSetupFailed(root, "root directory does not exist")

    stack = ResourceStack()

    try:
        for source, target, fstype, bind in CHROOT_MOUNTS:
            stack.acquire(functools.partial(mount, source, root / target, type=fstype, bind=bind))
    except MountFailed as e:
        stack.close(propagating=True)
        raise ChrootSetupFailed(root, str(e)) from e
    except BaseException:
        stack.close(propagating=True)
        raise

    if network:
        copy_resolv_conf(root)

    logging.debug(f"Prepared {root} for chroot")
    return ExecutionHandle(root, stack)


def run_in_chroot(
    handle: ExecutionHandle,
    command: str,
    *,
    env: Mapping[str, str] = {},
    output_lines: int = 200,
    echo: bool = True,
) -> ChrootResult:
    """Run a shell command with the image as filesystem root and / as working directory.

    Only the last output_lines lines of the combined stdout and stderr are kept. The exit status is always
    reported, however long the output gets.
    """
    if handle.exited:
        raise ChrootSetupFailed(handle.root, "execution context was already torn down")

    tail: collections.deque[str] = collections.deque(maxlen=output_lines)
    total = 0

    with spawn(
        ["chroot", handle.root, "/bin/sh", "-c", command],
        check=False,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        env={"PATH": CHROOT_PATH, "HOME": "/root", **env},
    ) as proc:
        assert proc.stdout
        for line in proc.stdout:
            total += 1
            tail.append(line.rstrip("\n"))
            if echo:
                sys.stderr.write(line)

    return ChrootResult(proc.returncode, "\n".join(tail), truncated=total > len(tail))


def exit(handle: ExecutionHandle) -> list[CleanupWarning]:
    if handle.exited:
        return []

    handle.exited = True
    handle.stack.close()
    logging.debug(f"Tore down chroot mounts in {handle.root}")
    return handle.stack.warnings


def chroot_resource(handle: ExecutionHandle) -> ResourceHandle:
    """Wrap an execution context so it can live on the same stack as the mounts it depends on."""

    def release() -> Optional[CleanupWarning]:
        if warnings := exit(handle):
            return CleanupWarning(os.fspath(handle.root), "; ".join(str(w) for w in warnings))
        return None

    return ResourceHandle(ResourceKind.chroot, os.fspath(handle.root), release)


@contextlib.contextmanager
def chroot_context(root: PathString, *, network: bool = True) -> Iterator[ExecutionHandle]:
    handle = enter(root, network=network)
    try:
        yield handle
    finally:
        exit(handle)
