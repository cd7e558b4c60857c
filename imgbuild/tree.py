# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import shutil
from pathlib import Path

from imgbuild.run import run
from imgbuild.util import PathString, make_executable


def copy_tree(src: Path, dst: Path) -> Path:
    """Copy src to dst with modes, ownership, timestamps and hard links intact. Symlinks are copied as is."""
    src = src.absolute()
    dst = dst.absolute()

    cmdline: list[PathString] = [
        "cp",
        "--recursive",
        "--no-dereference",
        "--preserve=mode,links,timestamps,ownership",
        "--reflink=auto",
        src,
        dst,
    ]

    # Merge into an existing destination directory instead of creating src.name inside it.
    if src.is_dir():
        cmdline += ["--no-target-directory"]

    dst.parent.mkdir(parents=True, exist_ok=True)
    run(cmdline)

    return dst


def rmtree(*paths: Path) -> None:
    if not paths:
        return

    paths = tuple(p.absolute() for p in paths)

    filtered = sorted({p for p in paths if p.exists() or p.is_symlink()})
    if filtered:
        run(["rm", "-rf", "--", *filtered])


def copy_hook(hook: Path, directory: Path) -> Path:
    """Copy a hook script into directory, which lives inside the root, and make it executable."""
    directory.mkdir(parents=True, exist_ok=True)
    dst = directory / hook.name

    shutil.copy2(hook, dst)
    make_executable(dst)

    logging.debug(f"Copied hook {hook} to {dst}")
    return dst
