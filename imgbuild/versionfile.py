# SPDX-License-Identifier: LGPL-2.1-or-later

import datetime
import logging
import socket
from pathlib import Path
from typing import Optional

from imgbuild.util import read_env_file

VERSION_FILE = "etc/image-version"
DATE_FORMAT = "%Y-%m-%d_%H:%M:%S_UTC"


def write_version_file(
    path: Path,
    version: str,
    mode: str,
    *,
    now: Optional[datetime.datetime] = None,
    host: Optional[str] = None,
) -> None:
    now = now or datetime.datetime.now(datetime.timezone.utc)
    host = host or socket.gethostname()

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "\n".join(
            [
                f"VERSION={version}",
                f"BUILD_MODE={mode}",
                f"BUILD_DATE={now.astimezone(datetime.timezone.utc).strftime(DATE_FORMAT)}",
                f"BUILD_HOST={host}",
            ]
        )
        + "\n"
    )

    logging.info(f"Recorded image version {version} ({mode}) in {path}")


def read_version_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}

    return read_env_file(path)
