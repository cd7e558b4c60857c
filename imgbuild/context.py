# SPDX-License-Identifier: LGPL-2.1-or-later

import enum
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from imgbuild.chroot import ExecutionHandle
from imgbuild.config import Config
from imgbuild.manifest import BuildStep
from imgbuild.util import PathString, StrEnum


class PipelineStage(StrEnum):
    parsed = enum.auto()
    dependencies_installed = enum.auto()
    steps_running = enum.auto()
    purging = enum.auto()
    cleaned = enum.auto()
    failed = enum.auto()

    def is_terminal(self) -> bool:
        return self in (PipelineStage.cleaned, PipelineStage.failed)


TRANSITIONS = {
    PipelineStage.parsed: {PipelineStage.dependencies_installed},
    PipelineStage.dependencies_installed: {PipelineStage.steps_running, PipelineStage.purging},
    PipelineStage.steps_running: {PipelineStage.steps_running, PipelineStage.purging},
    PipelineStage.purging: {PipelineStage.cleaned},
}


class BuildContext:
    """State of a single pipeline run against one root filesystem."""

    def __init__(
        self,
        root: Path,
        config: Config,
        steps: Sequence[BuildStep],
        *,
        chroot: Optional[ExecutionHandle] = None,
    ) -> None:
        self.root = root
        self.config = config
        self.steps = list(steps)
        self.chroot = chroot
        self.skip_purge = config.keep_build_deps

        self.build_dependencies: list[str] = []
        self.preinstalled: set[str] = set()
        self.staged_sources: dict[str, Path] = {}

        self.stage = PipelineStage.parsed
        self.failed_stage: Optional[PipelineStage] = None
        self.current_step = 0

    @property
    def staging_dir(self) -> Path:
        return self.root / "tmp/build-sources"

    @property
    def hook_dir(self) -> Path:
        return self.root / "tmp"

    def in_root(self, path: PathString) -> str:
        """Translate a host path below the root into the path seen from inside the chroot."""
        return "/" + os.fspath(Path(path).relative_to(self.root))

    def advance(self, stage: PipelineStage) -> None:
        assert stage in TRANSITIONS.get(self.stage, set()), f"Invalid transition {self.stage} -> {stage}"

        if stage == PipelineStage.steps_running:
            self.current_step += 1

        self.stage = stage

    def fail(self) -> None:
        if self.stage.is_terminal():
            return

        self.failed_stage = self.stage
        self.stage = PipelineStage.failed
