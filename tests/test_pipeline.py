# SPDX-License-Identifier: LGPL-2.1-or-later

from pathlib import Path
from typing import Any

import pytest

import imgbuild.pipeline
from imgbuild.config import Config
from imgbuild.context import BuildContext, PipelineStage
from imgbuild.errors import DuplicateSourceName, ManifestSyntaxError, PackageOperationFailed, StepFailed
from imgbuild.manifest import parse_manifest_lines
from imgbuild.pipeline import HookParameters, aggregate_dependencies, purge_build_dependencies, run_pipeline
from imgbuild.versionfile import read_version_file

from . import Commands, FakeChroot, write_hook
from .conftest import FakeClock

LOOPDEV = "/dev/imgbuild-test-loop0"


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    for name in ("simple-hook", "generic", "A", "B", "C"):
        write_hook(tmp_path / f"{name}.sh")
    (tmp_path / "root").mkdir()
    return tmp_path


def build_config(workdir: Path, lines: list[str], **kwargs: Any) -> Config:
    manifest = workdir / "packages.txt"
    manifest.write_text("\n".join(lines) + "\n")
    return Config.default(manifest=manifest, rootfs=workdir / "root", **kwargs)


def test_hook_parameters_environment() -> None:
    params = HookParameters("app", "file:///src/app", "local", "/opt/app", ("cmake", "git"), "", "/tmp/build-sources/app")

    assert params.to_environment() == {
        "HOOK_NAME": "app",
        "HOOK_GIT_REPO": "file:///src/app",
        "HOOK_GIT_TAG": "local",
        "HOOK_INSTALL_DEST": "/opt/app",
        "HOOK_DEP_LIST": "cmake,git",
        "HOOK_POST_INSTALL_CMDS": "",
        "HOOK_LOCAL_SOURCE": "/tmp/build-sources/app",
    }
    assert "HOOK_LOCAL_SOURCE" not in HookParameters("app", "https://x/app.git", "v1", "/opt").to_environment()


def test_aggregate_dependencies(workdir: Path) -> None:
    steps = parse_manifest_lines(
        [
            "simple-hook.sh",
            "generic.sh|https://example.org/a.git|v1|/opt/a|zlib,cmake",
            "generic.sh|https://example.org/b.git|v1|/opt/b|cmake,boost",
        ],
        base=workdir,
    )

    assert aggregate_dependencies(steps, ["git", "cmake"]) == ["boost", "cmake", "git", "zlib"]
    assert aggregate_dependencies([], []) == []


def test_scenario(workdir: Path, chroot: FakeChroot) -> None:
    config = build_config(
        workdir,
        ["simple-hook.sh", "generic.sh|https://example/repo.git|v1.0|/opt/app|cmake|echo done"],
        build_packages=["build-base"],
    )

    context = run_pipeline(config)

    assert context is not None
    assert context.stage == PipelineStage.cleaned

    first, second = chroot.hooks()
    assert first.command == "cd /tmp && ./simple-hook.sh"
    assert first.env == {}
    assert second.command == "cd /tmp && ./generic.sh"
    assert second.env == {
        "HOOK_NAME": "repo",
        "HOOK_GIT_REPO": "https://example/repo.git",
        "HOOK_GIT_TAG": "v1.0",
        "HOOK_INSTALL_DEST": "/opt/app",
        "HOOK_DEP_LIST": "cmake",
        "HOOK_POST_INSTALL_CMDS": "echo done",
    }

    assert chroot.packages("add") == [["build-base", "cmake"]]
    assert chroot.packages("del") == [["build-base", "cmake"]]

    # Hooks are removed again once they ran successfully.
    assert not (workdir / "root/tmp/simple-hook.sh").exists()
    assert not (workdir / "root/tmp/generic.sh").exists()


def test_no_partial_continuation(workdir: Path, chroot: FakeChroot) -> None:
    config = build_config(workdir, ["A.sh", "B.sh", "C.sh"])
    chroot.fail("./B.sh", returncode=3)

    with pytest.raises(StepFailed) as e:
        run_pipeline(config)

    assert e.value.index == 2
    assert e.value.hook_name == "B"
    assert e.value.returncode == 3
    assert e.value.exit_code == 7
    assert [c.command for c in chroot.hooks()] == ["cd /tmp && ./A.sh", "cd /tmp && ./B.sh"]
    assert chroot.packages("del") == []
    assert (workdir / "root/tmp/B.sh").exists()


def test_manifest_error_touches_nothing(workdir: Path, chroot: FakeChroot, commands: Commands) -> None:
    config = build_config(workdir, ["A.sh", "missing.sh"])

    with pytest.raises(ManifestSyntaxError) as e:
        run_pipeline(config)

    assert e.value.line == 2
    assert chroot.calls == []
    assert commands.calls == []


def test_empty_manifest(workdir: Path, chroot: FakeChroot) -> None:
    config = build_config(workdir, ["# nothing to see here"])

    assert run_pipeline(config) is None
    assert chroot.calls == []


def test_duplicate_source_name(workdir: Path, chroot: FakeChroot, commands: Commands) -> None:
    (workdir / "one/app").mkdir(parents=True)
    (workdir / "two/app").mkdir(parents=True)
    config = build_config(
        workdir,
        [
            "generic.sh|file://one/app|local|/opt/one|",
            "generic.sh|file://two/app|local|/opt/two|",
        ],
    )

    with pytest.raises(DuplicateSourceName) as e:
        run_pipeline(config)

    assert e.value.name == "app"
    assert e.value.exit_code == 6
    assert chroot.calls == []
    assert commands.invoked("cp") == []


def test_local_sources_are_staged(workdir: Path, chroot: FakeChroot, commands: Commands) -> None:
    (workdir / "src/app").mkdir(parents=True)
    config = build_config(
        workdir,
        [
            "generic.sh|file://src/app|local|/opt/app|cmake",
            "generic.sh|file://src/app|local|/opt/app-debug|cmake",
        ],
    )

    run_pipeline(config)

    (cp,) = commands.invoked("cp")
    assert cp[-3:] == [str(workdir / "src/app"), str(workdir / "root/tmp/build-sources/app"), "--no-target-directory"]
    assert [c.env["HOOK_LOCAL_SOURCE"] for c in chroot.hooks()] == ["/tmp/build-sources/app"] * 2
    assert [c.env["HOOK_GIT_TAG"] for c in chroot.hooks()] == ["local"] * 2


def test_zero_local_sources(workdir: Path, chroot: FakeChroot, commands: Commands) -> None:
    run_pipeline(build_config(workdir, ["A.sh"]))
    assert commands.invoked("cp") == []


def test_purge_excludes_preinstalled_and_runtime_packages(workdir: Path, chroot: FakeChroot) -> None:
    world = workdir / "root/etc/apk/world"
    world.parent.mkdir(parents=True)
    world.write_text("alpine-base\ncmake>=3.20\n")

    config = build_config(
        workdir,
        ["generic.sh|https://example.org/app.git|v1|/opt/app|cmake,libfoo,zlib"],
        build_packages=["git"],
        runtime_packages=["zlib"],
    )

    run_pipeline(config)

    assert chroot.packages("add") == [["cmake", "git", "libfoo", "zlib"]]
    assert chroot.packages("del") == [["git", "libfoo"]]


def test_keep_build_deps_skips_purge(workdir: Path, chroot: FakeChroot) -> None:
    config = build_config(
        workdir,
        ["generic.sh|https://example.org/app.git|v1|/opt/app|cmake"],
        keep_build_deps=True,
    )

    context = run_pipeline(config)

    assert context is not None
    assert context.stage == PipelineStage.cleaned
    assert chroot.packages("del") == []
    assert not any(c.command.startswith("apk cache") for c in chroot.calls)


def test_purge_noop_when_skipped(workdir: Path, chroot: FakeChroot) -> None:
    config = build_config(workdir, ["A.sh"], keep_build_deps=True)
    context = BuildContext(workdir / "root", config, [])
    context.build_dependencies = ["cmake"]

    purge_build_dependencies(context)

    assert chroot.calls == []


def test_dependency_install_failure(workdir: Path, chroot: FakeChroot) -> None:
    chroot.fail("apk add", returncode=99)
    config = build_config(workdir, ["generic.sh|https://example.org/app.git|v1|/opt/app|nonexistent"])

    with pytest.raises(PackageOperationFailed) as e:
        run_pipeline(config)

    assert e.value.stage == "dependencies"
    assert "nonexistent" in e.value.packages
    assert chroot.hooks() == []


def test_cleanup_removes_leftovers(workdir: Path, chroot: FakeChroot, commands: Commands) -> None:
    root = workdir / "root"
    (root / "tmp/app-build").mkdir(parents=True)
    (root / "root").mkdir()
    (root / "root/app-1.0.tar.gz").touch()

    run_pipeline(build_config(workdir, ["A.sh"]))

    (rm,) = commands.invoked("rm")
    assert rm == ["rm", "-rf", "--", str(root / "root/app-1.0.tar.gz"), str(root / "tmp/app-build")]


def test_version_file(workdir: Path, chroot: FakeChroot) -> None:
    config = build_config(workdir, ["A.sh"], image_version="1.2.3", build_mode="full")

    run_pipeline(config)

    version = read_version_file(workdir / "root/etc/image-version")
    assert version["VERSION"] == "1.2.3"
    assert version["BUILD_MODE"] == "full"
    assert version["BUILD_DATE"].endswith("_UTC")


def test_no_version_file_by_default(workdir: Path, chroot: FakeChroot) -> None:
    run_pipeline(build_config(workdir, ["A.sh"]))
    assert not (workdir / "root/etc/image-version").exists()


def test_stage_transitions(workdir: Path) -> None:
    context = BuildContext(workdir / "root", Config.default(), [])

    context.advance(PipelineStage.dependencies_installed)
    context.advance(PipelineStage.steps_running)
    context.advance(PipelineStage.steps_running)
    assert context.current_step == 2

    with pytest.raises(AssertionError):
        context.advance(PipelineStage.cleaned)

    context.fail()
    assert context.stage == PipelineStage.failed
    assert context.failed_stage == PipelineStage.steps_running

    context.fail()
    assert context.failed_stage == PipelineStage.steps_running


def test_package_names_are_quoted(workdir: Path, chroot: FakeChroot) -> None:
    config = build_config(
        workdir,
        ["generic.sh|https://example.org/app.git|v1|/opt/app|cmake;touch$IFS/x"],
        build_packages=[],
    )

    run_pipeline(config)

    (add,) = [c.command for c in chroot.calls if c.command.startswith("apk add ")]
    assert add == "apk add --no-cache 'cmake;touch$IFS/x'"


@pytest.fixture
def image_config(workdir: Path, monkeypatch: Any) -> Config:
    image = workdir / "disk.raw"
    image.write_bytes(b"\0" * 4096)
    partition = workdir / "partition"
    partition.touch()
    monkeypatch.setattr(imgbuild.pipeline, "partition_device", lambda loopdev, n: partition)

    manifest = workdir / "packages.txt"
    manifest.write_text("A.sh\nB.sh\nC.sh\n")
    return Config.default(manifest=manifest, image=image)


def teardown_calls(commands: Commands) -> list[list[str]]:
    return [c.argv for c in commands.calls if c.argv[0] == "umount" or c.argv[:2] == ["losetup", "--detach"]]


@pytest.mark.usefixtures("mounted")
def test_image_mode_unwinds_after_failed_step(
    workdir: Path,
    image_config: Config,
    commands: Commands,
    clock: FakeClock,
) -> None:
    mnt = workdir / "mnt"
    commands.respond("losetup", "--find", stdout=f"{LOOPDEV}\n")
    commands.respond("chroot", str(mnt), "/bin/sh", "-c", "cd /tmp && ./B.sh", returncode=3)

    with pytest.raises(StepFailed) as e:
        run_pipeline(image_config, mountpoint=mnt)

    assert e.value.index == 2
    assert commands.invoked("chroot", str(mnt), "/bin/sh", "-c", "cd /tmp && ./C.sh") == []
    # Chroot mounts first, then the root partition, then the loop device, each exactly once.
    assert teardown_calls(commands) == [
        ["umount", str(mnt / "dev/pts")],
        ["umount", str(mnt / "dev")],
        ["umount", str(mnt / "sys")],
        ["umount", str(mnt / "proc")],
        ["umount", str(mnt)],
        ["losetup", "--detach", LOOPDEV],
    ]


@pytest.mark.usefixtures("mounted")
def test_image_mode_debug_keeps_resources_on_failure(
    workdir: Path,
    image_config: Config,
    commands: Commands,
    clock: FakeClock,
) -> None:
    mnt = workdir / "mnt"
    commands.respond("losetup", "--find", stdout=f"{LOOPDEV}\n")
    commands.respond("chroot", str(mnt), "/bin/sh", "-c", "cd /tmp && ./B.sh", returncode=3)

    with pytest.raises(StepFailed):
        run_pipeline(image_config, debug=True, mountpoint=mnt)

    assert teardown_calls(commands) == []
    assert (mnt / "tmp/B.sh").exists()


@pytest.mark.usefixtures("mounted")
def test_image_mode_debug_releases_on_success(
    workdir: Path,
    image_config: Config,
    commands: Commands,
    clock: FakeClock,
) -> None:
    mnt = workdir / "mnt"
    commands.respond("losetup", "--find", stdout=f"{LOOPDEV}\n")

    context = run_pipeline(image_config, debug=True, mountpoint=mnt)

    assert context is not None
    assert context.stage == PipelineStage.cleaned
    assert teardown_calls(commands)[-2:] == [["umount", str(mnt)], ["losetup", "--detach", LOOPDEV]]
    assert len(teardown_calls(commands)) == 6
