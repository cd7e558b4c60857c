# SPDX-License-Identifier: LGPL-2.1-or-later

import functools
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Optional

from imgbuild.errors import CleanupWarning, MountFailed, MountFailure, ResourceUnavailable
from imgbuild.lifecycle import ResourceHandle, ResourceKind, signals_allowed
from imgbuild.run import run
from imgbuild.util import PathString


def is_mountpoint(path: PathString) -> bool:
    return os.path.ismount(path)


def partition_device(loopdev: str, partno: int) -> str:
    return f"{loopdev}p{partno}"


def settle_partitions(loopdev: str, *, timeout: float, interval: float = 0.5) -> None:
    """Re-read the partition table of a freshly attached loop device.

    The kernel needs a moment after attaching before the re-scan succeeds, so keep retrying, but never for
    longer than timeout seconds.
    """
    deadline = time.monotonic() + timeout

    while True:
        result = run(
            ["partprobe", loopdev],
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            log=False,
        )
        if result.returncode == 0:
            return

        if time.monotonic() + interval > deadline:
            raise ResourceUnavailable(
                loopdev,
                f"partition re-scan did not settle within {timeout:g}s: {result.stderr.strip() or 'partprobe failed'}",
            )

        logging.debug(f"Partition table of {loopdev} not ready yet, retrying")
        time.sleep(interval)


def detach_loop_device(loopdev: str) -> Optional[CleanupWarning]:
    os.sync()

    result = run(["losetup", "--detach", loopdev], check=False, stderr=subprocess.PIPE, log=False)
    if result.returncode != 0:
        return CleanupWarning(loopdev, f"losetup --detach failed: {result.stderr.strip()}")

    logging.debug(f"Detached {loopdev}")
    return None


def acquire_loop_device(image: PathString, *, settle_timeout: float = 5.0) -> ResourceHandle:
    image = Path(image)
    if not image.is_file():
        raise ResourceUnavailable(image, "image file does not exist")

    result = run(
        ["losetup", "--find", "--show", "--partscan", image],
        check=False,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        log=False,
    )
    loopdev = (result.stdout or "").strip()
    if result.returncode != 0 or not loopdev:
        raise ResourceUnavailable(
            image, f"could not allocate a loop device: {(result.stderr or '').strip() or 'losetup failed'}"
        )

    handle = ResourceHandle(ResourceKind.loop_device, loopdev, functools.partial(detach_loop_device, loopdev))

    try:
        # Interruptible even when acquired through ResourceStack.acquire().
        with signals_allowed():
            settle_partitions(loopdev, timeout=settle_timeout)
    except BaseException:
        # Not on any stack yet, so we have to undo the attach ourselves.
        if warning := handle.release():
            logging.warning(f"Cleanup: {warning}")
        raise

    logging.info(f"Attached {image} as {loopdev}")
    return handle


def unmount(mountpoint: PathString, *, remove: bool = False) -> Optional[CleanupWarning]:
    mountpoint = Path(mountpoint)
    warning: Optional[CleanupWarning] = None

    if is_mountpoint(mountpoint):
        result = run(["umount", mountpoint], check=False, stderr=subprocess.PIPE, log=False)
        if result.returncode != 0:
            # Never hang on a busy mount, detach it lazily instead and let the kernel finish the job.
            lazy = run(["umount", "--lazy", mountpoint], check=False, stderr=subprocess.PIPE, log=False)
            if lazy.returncode != 0:
                return CleanupWarning(
                    os.fspath(mountpoint), f"lazy unmount failed: {lazy.stderr.strip()}"
                )

            warning = CleanupWarning(
                os.fspath(mountpoint), f"unmount failed ({result.stderr.strip()}), fell back to lazy unmount"
            )

    if remove:
        try:
            mountpoint.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            warning = warning or CleanupWarning(os.fspath(mountpoint), f"could not remove mount point: {e}")

    return warning


def mount(
    device: PathString,
    mountpoint: PathString,
    *,
    options: Optional[str] = None,
    type: Optional[str] = None,
    bind: bool = False,
) -> ResourceHandle:
    device = os.fspath(device)
    mountpoint = Path(mountpoint)
    created = not mountpoint.exists()
    mountpoint.mkdir(parents=True, exist_ok=True)

    def fail(cause: MountFailure, detail: str) -> MountFailed:
        if created:
            mountpoint.rmdir()
        return MountFailed(device, mountpoint, cause, detail)

    if not bind and device.startswith("/dev/") and not Path(device).exists():
        raise fail(MountFailure.no_device, f"{device} does not exist")

    cmdline: list[PathString] = ["mount"]
    if type:
        cmdline += ["-t", type]
    if bind:
        cmdline += ["--bind"]
    if options:
        cmdline += ["-o", options]
    cmdline += [device, mountpoint]

    result = run(cmdline, check=False, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, log=False)
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise fail(MountFailure.classify(stderr), stderr)

    logging.debug(f"Mounted {device} on {mountpoint}")
    return ResourceHandle(
        ResourceKind.mount,
        os.fspath(mountpoint),
        functools.partial(unmount, mountpoint, remove=created),
    )


def release(handle: ResourceHandle) -> Optional[CleanupWarning]:
    return handle.release()
