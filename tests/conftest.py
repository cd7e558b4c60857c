# SPDX-License-Identifier: LGPL-2.1-or-later

import os
from pathlib import Path
from typing import Any

import pytest

import imgbuild.chroot
import imgbuild.installer
import imgbuild.mounts
import imgbuild.pipeline
import imgbuild.run
from imgbuild.chroot import ExecutionHandle
from imgbuild.lifecycle import ResourceStack

from . import Commands, FakeChroot


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def commands(monkeypatch: Any) -> Commands:
    commands = Commands()
    monkeypatch.setattr(imgbuild.run, "spawn", commands.spawn)
    monkeypatch.setattr(imgbuild.chroot, "spawn", commands.spawn)
    monkeypatch.setattr(os, "sync", lambda: None)
    return commands


@pytest.fixture
def clock(monkeypatch: Any) -> FakeClock:
    clock = FakeClock()
    monkeypatch.setattr(imgbuild.mounts, "time", clock)
    return clock


@pytest.fixture
def mounted(monkeypatch: Any) -> None:
    """Pretend every existing directory is a mount point so unmounting actually runs umount."""
    monkeypatch.setattr(imgbuild.mounts, "is_mountpoint", lambda p: Path(p).is_dir())


@pytest.fixture
def chroot(monkeypatch: Any, commands: Commands) -> FakeChroot:
    fake = FakeChroot()
    monkeypatch.setattr(imgbuild.pipeline, "run_in_chroot", fake)
    monkeypatch.setattr(imgbuild.installer, "run_in_chroot", fake)
    monkeypatch.setattr(imgbuild.pipeline, "enter", lambda root: ExecutionHandle(Path(root), ResourceStack()))
    return fake
