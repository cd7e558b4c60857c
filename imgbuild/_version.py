# SPDX-License-Identifier: LGPL-2.1-or-later
# The version is taken from $IMGBUILD_VERSION if set, otherwise from the installed distribution's metadata,
# as long as that metadata belongs to this copy of imgbuild. If neither is available, it is set to "0".

import importlib.metadata
import logging
import os
from importlib.metadata import PackageNotFoundError
from pathlib import Path
from typing import Optional


def version_from_metadata() -> Optional[str]:
    try:
        dist = importlib.metadata.distribution("imgbuild")

        # If the file importlib.metadata thinks we are talking about is not this one, let's pretend we didn't
        # find anything at all and fall back
        if dist.locate_file("imgbuild/_version.py") != Path(__file__):
            return None

        return importlib.metadata.version("imgbuild")
    except PackageNotFoundError:
        return None


def version_fallback() -> str:
    logging.debug("Unable to determine imgbuild version")
    return "0"


__version__ = os.getenv("IMGBUILD_VERSION") or version_from_metadata() or version_fallback()
