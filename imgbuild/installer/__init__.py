# SPDX-License-Identifier: LGPL-2.1-or-later

import shlex
from collections.abc import Sequence

from imgbuild.chroot import ChrootResult, run_in_chroot
from imgbuild.context import BuildContext
from imgbuild.errors import PackageOperationFailed


class PackageManager:
    @classmethod
    def executable(cls) -> str:
        return "custom"

    @classmethod
    def finalize_environment(cls, context: BuildContext) -> dict[str, str]:
        return {"TERM": "dumb"}

    @classmethod
    def invoke(
        cls,
        context: BuildContext,
        operation: str,
        arguments: Sequence[str] = (),
        *,
        stage: str,
        check: bool = True,
    ) -> ChrootResult:
        assert context.chroot, "Package operations need an entered chroot"

        result = run_in_chroot(
            context.chroot,
            shlex.join([cls.executable(), operation, *arguments]),
            env=cls.finalize_environment(context),
            output_lines=context.config.output_lines,
        )
        if check and not result.success:
            raise PackageOperationFailed(
                operation,
                [a for a in arguments if not a.startswith("-")],
                result.returncode,
                result.output,
                stage=stage,
            )

        return result

    @classmethod
    def install(cls, context: BuildContext, packages: Sequence[str]) -> None:
        raise NotImplementedError

    @classmethod
    def remove(cls, context: BuildContext, packages: Sequence[str]) -> None:
        raise NotImplementedError

    @classmethod
    def clean_cache(cls, context: BuildContext) -> None:
        pass

    @classmethod
    def installed_packages(cls, context: BuildContext) -> set[str]:
        return set()
