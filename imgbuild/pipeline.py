# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import logging
import os
import shlex
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Callable, Optional

from imgbuild.chroot import chroot_resource, enter, run_in_chroot
from imgbuild.config import Config
from imgbuild.context import BuildContext, PipelineStage
from imgbuild.errors import DuplicateSourceName, StepFailed
from imgbuild.installer.apk import Apk
from imgbuild.lifecycle import ResourceHandle, run_scoped
from imgbuild.log import complete_step, log_step
from imgbuild.manifest import DEPENDENCY_DELIMITER, BuildStep, ParameterizedStep, parse_manifest
from imgbuild.mounts import acquire_loop_device, mount, partition_device
from imgbuild.tree import copy_hook, copy_tree, rmtree
from imgbuild.versionfile import VERSION_FILE, write_version_file


@dataclasses.dataclass(frozen=True)
class HookParameters:
    """The named values a parameterized hook is run with. Simple hooks get none of them."""

    name: str
    source: str
    revision: str
    install_dest: str
    dependencies: tuple[str, ...] = ()
    post_install: str = ""
    local_source: Optional[str] = None

    @classmethod
    def from_step(cls, step: ParameterizedStep, *, local_source: Optional[str] = None) -> "HookParameters":
        return cls(
            name=step.name,
            source=str(step.source),
            revision=step.source.revision,
            install_dest=step.install_dest,
            dependencies=tuple(sorted(step.dependencies)),
            post_install=step.post_install or "",
            local_source=local_source,
        )

    def to_environment(self) -> dict[str, str]:
        env = {
            "HOOK_NAME": self.name,
            "HOOK_GIT_REPO": self.source,
            "HOOK_GIT_TAG": self.revision,
            "HOOK_INSTALL_DEST": self.install_dest,
            "HOOK_DEP_LIST": DEPENDENCY_DELIMITER.join(self.dependencies),
            "HOOK_POST_INSTALL_CMDS": self.post_install,
        }

        if self.local_source is not None:
            env["HOOK_LOCAL_SOURCE"] = self.local_source

        return env


def local_sources(steps: Iterable[BuildStep]) -> dict[str, Path]:
    sources: dict[str, Path] = {}
    for step in steps:
        if not isinstance(step, ParameterizedStep) or step.source.local_path is None:
            continue

        name = step.source.package_name
        if name in sources and sources[name] != step.source.local_path:
            raise DuplicateSourceName(name, [sources[name], step.source.local_path])

        sources[name] = step.source.local_path

    return sources


def stage_local_sources(context: BuildContext) -> None:
    # Name clashes are detected before anything is copied.
    sources = local_sources(context.steps)
    if not sources:
        return

    with complete_step(f"Staging {len(sources)} local source(s) in {context.in_root(context.staging_dir)}"):
        for name, src in sources.items():
            dst = context.staging_dir / name
            logging.info(f"Staging {src} as {context.in_root(dst)}")
            copy_tree(src, dst)
            context.staged_sources[name] = dst


def aggregate_dependencies(steps: Iterable[BuildStep], baseline: Iterable[str] = ()) -> list[str]:
    deps = set(baseline)
    for step in steps:
        if isinstance(step, ParameterizedStep):
            deps |= step.dependencies

    return sorted(deps)


def install_build_dependencies(context: BuildContext) -> None:
    context.preinstalled = Apk.installed_packages(context)
    context.build_dependencies = aggregate_dependencies(context.steps, context.config.build_packages)

    with complete_step(f"Installing {len(context.build_dependencies)} build dependencies…"):
        logging.info(" ".join(context.build_dependencies))
        Apk.install(context, context.build_dependencies)


def hook_parameters(context: BuildContext, step: ParameterizedStep) -> HookParameters:
    local_source = None
    if step.source.is_local:
        local_source = context.in_root(context.staged_sources[step.name])

    return HookParameters.from_step(step, local_source=local_source)


def run_step(context: BuildContext, index: int, step: BuildStep) -> None:
    assert context.chroot, "Steps can only run in an entered chroot"

    env = hook_parameters(context, step).to_environment() if isinstance(step, ParameterizedStep) else {}
    hook = copy_hook(step.hook, context.hook_dir)

    with complete_step(f"Running step {index}/{len(context.steps)}: {step.name}"):
        result = run_in_chroot(
            context.chroot,
            f"cd {context.in_root(context.hook_dir)} && ./{shlex.quote(hook.name)}",
            env=env,
            output_lines=context.config.output_lines,
        )

    if not result.success:
        # The hook stays in place so a failed step can be rerun by hand.
        raise StepFailed(index, step.name, result.returncode, result.output)

    hook.unlink(missing_ok=True)


def run_steps(context: BuildContext) -> None:
    for index, step in enumerate(context.steps, start=1):
        context.advance(PipelineStage.steps_running)
        run_step(context, index, step)


def purge_build_dependencies(context: BuildContext) -> None:
    if context.skip_purge:
        log_step("Keeping build dependencies as requested")
        return

    keep = context.preinstalled | set(context.config.runtime_packages)
    purge = [p for p in context.build_dependencies if p not in keep]

    if kept := [p for p in context.build_dependencies if p in keep]:
        logging.info(f"Not purging packages that are needed at runtime: {' '.join(kept)}")

    with complete_step(f"Purging {len(purge)} build dependencies…"):
        Apk.remove(context, purge)
        Apk.clean_cache(context)


def cleanup_build(context: BuildContext) -> None:
    with complete_step("Removing build leftovers…"):
        rmtree(
            context.staging_dir,
            *context.root.glob("tmp/*-build"),
            *context.root.glob("root/*.tar.*"),
        )


def build(context: BuildContext) -> None:
    stage_local_sources(context)

    install_build_dependencies(context)
    context.advance(PipelineStage.dependencies_installed)

    run_steps(context)

    context.advance(PipelineStage.purging)
    purge_build_dependencies(context)
    cleanup_build(context)
    context.advance(PipelineStage.cleaned)

    if context.config.image_version:
        write_version_file(context.root / VERSION_FILE, context.config.image_version, context.config.build_mode)


def default_mountpoint(name: str) -> Path:
    return Path(tempfile.gettempdir()) / f"imgbuild-{name}-{os.getpid()}"


def run_pipeline(
    config: Config,
    *,
    debug: bool = False,
    mountpoint: Optional[Path] = None,
) -> Optional[BuildContext]:
    """
    Parse the manifest and run all of its steps against either config.rootfs or the root partition of
    config.image. Returns the final context, or None if the manifest has no steps.
    """
    # Parse first so a bad manifest never touches a resource.
    steps = parse_manifest(config.manifest)
    if not steps:
        log_step(f"{config.manifest} contains no steps, nothing to do")
        return None

    acquisitions: list[Callable[[list[ResourceHandle]], ResourceHandle]] = []

    if image := config.image:
        root = mountpoint or default_mountpoint("root")
        acquisitions += [
            lambda handles: acquire_loop_device(image, settle_timeout=config.settle_timeout),
            lambda handles: mount(partition_device(handles[0].identifier, config.root_partition), root),
        ]
    else:
        assert config.rootfs, "Either an image or a root directory is needed"
        root = config.rootfs

    context = BuildContext(root, config, steps)

    def enter_chroot(handles: list[ResourceHandle]) -> ResourceHandle:
        context.chroot = enter(root)
        return chroot_resource(context.chroot)

    acquisitions += [enter_chroot]

    try:
        run_scoped(acquisitions, lambda handles: build(context), keep_on_failure=debug)
    except BaseException:
        context.fail()
        raise

    return context
