# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import dataclasses
import io
import os
import subprocess
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Optional

from imgbuild.chroot import ChrootResult, ExecutionHandle
from imgbuild.util import _FILE, PathString


@dataclasses.dataclass(frozen=True)
class Call:
    argv: list[str]
    env: dict[str, str]


@dataclasses.dataclass
class Response:
    prefix: tuple[str, ...]
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    times: Optional[int] = None


class FakeProcess:
    def __init__(self, argv: list[str], response: Response) -> None:
        self.args = argv
        self.returncode = response.returncode
        self.output = response.stdout
        self.errors = response.stderr
        self.stdout = io.StringIO(response.stdout)

    def communicate(self, input: Optional[str] = None) -> tuple[str, str]:
        return self.output, self.errors

    def wait(self) -> int:
        return self.returncode


class Commands:
    """Records every command line that would have been executed and answers with canned responses."""

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.responses: list[Response] = []

    def respond(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        times: Optional[int] = None,
    ) -> None:
        # Later responses take precedence over earlier ones.
        self.responses.insert(0, Response(prefix, returncode, stdout, stderr, times))

    def lookup(self, argv: list[str]) -> Response:
        for response in self.responses:
            if tuple(argv[: len(response.prefix)]) != response.prefix:
                continue

            if response.times is not None:
                response.times -= 1
                if response.times == 0:
                    self.responses.remove(response)

            return response

        return Response(())

    @contextlib.contextmanager
    def spawn(
        self,
        cmdline: Sequence[PathString],
        check: bool = True,
        stdin: _FILE = None,
        stdout: _FILE = None,
        stderr: _FILE = None,
        env: Mapping[str, str] = {},
        log: bool = True,
        success_exit_status: Sequence[int] = (0,),
    ) -> Iterator[FakeProcess]:
        argv = [os.fspath(c) for c in cmdline]
        self.calls.append(Call(argv, dict(env)))
        proc = FakeProcess(argv, self.lookup(argv))

        yield proc

        if check and proc.returncode not in success_exit_status:
            raise subprocess.CalledProcessError(proc.returncode, argv)

    def invoked(self, *prefix: str) -> list[list[str]]:
        return [c.argv for c in self.calls if tuple(c.argv[: len(prefix)]) == prefix]


@dataclasses.dataclass(frozen=True)
class ChrootCall:
    root: Path
    command: str
    env: dict[str, str]


class FakeChroot:
    """Stands in for run_in_chroot(). Commands containing one of the failure needles exit non-zero."""

    def __init__(self) -> None:
        self.calls: list[ChrootCall] = []
        self.failures: dict[str, int] = {}

    def fail(self, needle: str, returncode: int = 1) -> None:
        self.failures[needle] = returncode

    def __call__(
        self,
        handle: ExecutionHandle,
        command: str,
        *,
        env: Mapping[str, str] = {},
        output_lines: int = 200,
        echo: bool = True,
    ) -> ChrootResult:
        self.calls.append(ChrootCall(handle.root, command, dict(env)))

        for needle, returncode in self.failures.items():
            if needle in command:
                return ChrootResult(returncode, f"{needle}: exited with {returncode}")

        return ChrootResult(0, "")

    def hooks(self) -> list[ChrootCall]:
        return [c for c in self.calls if c.command.startswith("cd /tmp && ")]

    def packages(self, operation: str) -> list[list[str]]:
        return [
            [a for a in c.command.split()[2:] if not a.startswith("-")]
            for c in self.calls
            if c.command.startswith(f"apk {operation} ")
        ]


def write_hook(path: Path, body: str = "true") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(0o755)
    return path
