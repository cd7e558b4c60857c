# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import os
from pathlib import Path

from imgbuild.errors import ResourceUnavailable
from imgbuild.lifecycle import ResourceHandle, run_scoped
from imgbuild.log import complete_step
from imgbuild.mounts import acquire_loop_device, mount, partition_device
from imgbuild.run import run
from imgbuild.tree import copy_tree

# The unprivileged user that owns the data partition in the image.
DATA_OWNER = "1000:1000"


def install_to_image(
    image: Path,
    source: Path,
    dest: str,
    *,
    partition: int = 3,
    settle_timeout: float = 5.0,
    mountpoint: Path,
    keep_on_failure: bool = False,
) -> Path:
    """Copy a directory tree into a partition of a raw disk image, owned by the image's default user."""
    if not source.is_dir():
        raise ResourceUnavailable(source, "source directory does not exist")

    def copy(handles: list[ResourceHandle]) -> Path:
        target = mountpoint / dest.lstrip("/")

        with complete_step(f"Copying {source} to {dest} on partition {partition}…"):
            copy_tree(source, target)
            run(["chown", "--recursive", DATA_OWNER, target])
            os.sync()

        return target

    target = run_scoped(
        [
            lambda handles: acquire_loop_device(image, settle_timeout=settle_timeout),
            lambda handles: mount(partition_device(handles[0].identifier, partition), mountpoint),
        ],
        copy,
        keep_on_failure=keep_on_failure,
    )

    logging.info(f"Installed {source} into {image} at {dest}")
    return target

