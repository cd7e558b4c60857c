# SPDX-License-Identifier: LGPL-2.1-or-later

"""Failure kinds raised while assembling an image.

Every fatal error derives from ImgbuildError and carries the build stage it
aborted along with the exit code the process terminates with. Problems while
releasing a resource are not errors: they are recorded as CleanupWarning
instances and logged, and never change the verdict of a run.
"""

import enum
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from imgbuild.util import PathString, StrEnum


class ImgbuildError(Exception):
    kind = "ImgbuildError"
    stage = "build"
    exit_code = 1

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def describe(self) -> str:
        return f"{self.kind} (stage {self.stage}): {self.message}"


class ManifestSyntaxError(ImgbuildError):
    kind = "ManifestSyntaxError"
    stage = "parse"
    exit_code = 2

    def __init__(self, path: PathString, line: int, detail: str) -> None:
        super().__init__(f"{path}:{line}: {detail}")
        self.path = Path(path)
        self.line = line
        self.detail = detail


class ResourceUnavailable(ImgbuildError):
    kind = "ResourceUnavailable"
    stage = "acquire"
    exit_code = 3

    def __init__(self, resource: PathString, detail: str) -> None:
        super().__init__(f"{resource}: {detail}")
        self.resource = str(resource)
        self.detail = detail


class MountFailure(StrEnum):
    busy = enum.auto()
    corrupt = enum.auto()
    no_device = enum.auto()
    generic = enum.auto()

    @classmethod
    def classify(cls, output: str) -> "MountFailure":
        s = output.lower()

        if "busy" in s or "already mounted" in s:
            return cls.busy
        if any(m in s for m in ("bad superblock", "wrong fs type", "structure needs cleaning", "corrupt")):
            return cls.corrupt
        if "does not exist" in s or "no such" in s or "special device" in s:
            return cls.no_device

        return cls.generic


class MountFailed(ImgbuildError):
    kind = "MountFailed"
    stage = "acquire"
    exit_code = 4

    def __init__(self, device: PathString, mountpoint: PathString, cause: MountFailure, detail: str = "") -> None:
        message = f"Failed to mount {device} on {mountpoint} ({cause})"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.device = str(device)
        self.mountpoint = Path(mountpoint)
        self.cause = cause
        self.detail = detail


class ChrootSetupFailed(ImgbuildError):
    kind = "ChrootSetupFailed"
    stage = "chroot"
    exit_code = 5

    def __init__(self, root: PathString, detail: str) -> None:
        super().__init__(f"Could not prepare {root} for chroot: {detail}")
        self.root = Path(root)
        self.detail = detail


class DuplicateSourceName(ImgbuildError):
    kind = "DuplicateSourceName"
    stage = "stage-sources"
    exit_code = 6

    def __init__(self, name: str, paths: Sequence[Path]) -> None:
        super().__init__(
            f"Local sources {', '.join(map(str, paths))} share the staging name '{name}'"
        )
        self.name = name
        self.paths = list(paths)


class StepFailed(ImgbuildError):
    kind = "StepFailed"
    stage = "steps"
    exit_code = 7

    def __init__(self, index: int, hook_name: str, returncode: int, output: str = "") -> None:
        super().__init__(f"Step {index} ({hook_name}) failed with exit code {returncode}")
        self.index = index
        self.hook_name = hook_name
        self.returncode = returncode
        self.output = output


class PackageOperationFailed(ImgbuildError):
    kind = "PackageOperationFailed"
    exit_code = 8

    def __init__(
        self,
        operation: str,
        packages: Sequence[str],
        returncode: int,
        output: str = "",
        *,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(f"Package {operation} of {' '.join(packages)} failed with exit code {returncode}")
        self.operation = operation
        self.packages = list(packages)
        self.returncode = returncode
        self.output = output
        if stage:
            self.stage = stage


class CleanupWarning(Warning):
    def __init__(self, resource: str, detail: str) -> None:
        super().__init__(f"{resource}: {detail}")
        self.resource = resource
        self.detail = detail
