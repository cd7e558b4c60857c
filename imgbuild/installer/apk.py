# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
from collections.abc import Sequence

from imgbuild.context import BuildContext
from imgbuild.installer import PackageManager
from imgbuild.tree import rmtree


class Apk(PackageManager):
    @classmethod
    def executable(cls) -> str:
        return "apk"

    @classmethod
    def install(cls, context: BuildContext, packages: Sequence[str]) -> None:
        if not packages:
            return

        cls.invoke(context, "add", ["--no-cache", *packages], stage="dependencies")

    @classmethod
    def remove(cls, context: BuildContext, packages: Sequence[str]) -> None:
        if not packages:
            return

        cls.invoke(context, "del", packages, stage="purge")

    @classmethod
    def clean_cache(cls, context: BuildContext) -> None:
        # There's no cache to clean when the cache directory is not configured, which apk reports as an
        # error, so don't fail on it.
        result = cls.invoke(context, "cache", ["clean"], stage="purge", check=False)
        if not result.success:
            logging.debug(f"apk cache clean failed with exit code {result.returncode}, ignoring")

        cache = context.root / "var/cache/apk"
        if cache.is_dir():
            rmtree(*cache.iterdir())

    @classmethod
    def installed_packages(cls, context: BuildContext) -> set[str]:
        """The packages explicitly requested in the root, as recorded in apk's world file."""
        world = context.root / "etc/apk/world"
        if not world.exists():
            return set()

        # Entries may carry a version constraint (foo>=1.0) or a repository tag (foo@edge).
        packages = set()
        for entry in world.read_text().split():
            for sep in "<>=~@":
                entry = entry.split(sep, 1)[0]
            if entry:
                packages.add(entry)

        return packages
