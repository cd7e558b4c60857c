# SPDX-License-Identifier: LGPL-2.1-or-later

"""
Parser for the package manifest, a line oriented list of install hooks.

    # comment
    hooks/simple-hook.sh
    hooks/generic.sh|https://host/repo.git|v1.2.3|/opt/app|dep1,dep2|post_cmd1; post_cmd2
    hooks/generic.sh|file://../src/app|local|/opt/app|dep1,dep2

A line is either a bare hook path or a |-separated record of five or six fields: hook, source, revision,
install destination, comma-separated dependencies and an optional post-install command string. The last
field is taken verbatim up to the end of the line. Relative paths are relative to the directory containing
the manifest.
"""

import dataclasses
import enum
import os
from collections.abc import Iterable
from pathlib import Path
from typing import ClassVar, Optional, Union

from imgbuild.errors import ManifestSyntaxError
from imgbuild.util import PathString, StrEnum

FIELD_DELIMITER = "|"
DEPENDENCY_DELIMITER = ","
LOCAL_SCHEME = "file://"
LOCAL_REVISION = "local"


class StepKind(StrEnum):
    simple = enum.auto()
    parameterized = enum.auto()


@dataclasses.dataclass(frozen=True)
class SourceRef:
    url: str
    revision: str
    local_path: Optional[Path] = None

    @property
    def is_local(self) -> bool:
        return self.local_path is not None

    @property
    def package_name(self) -> str:
        if self.local_path is not None:
            return self.local_path.name

        return self.url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git")

    def __str__(self) -> str:
        if self.local_path is not None:
            return f"{LOCAL_SCHEME}{self.local_path}"
        return self.url


@dataclasses.dataclass(frozen=True)
class SimpleStep:
    hook: Path

    kind: ClassVar[StepKind] = StepKind.simple

    @property
    def name(self) -> str:
        return self.hook.name.removesuffix(".sh")


@dataclasses.dataclass(frozen=True)
class ParameterizedStep:
    hook: Path
    source: SourceRef
    install_dest: str
    dependencies: frozenset[str] = frozenset()
    post_install: Optional[str] = None

    kind: ClassVar[StepKind] = StepKind.parameterized

    def __post_init__(self) -> None:
        if not self.install_dest:
            raise ValueError("A parameterized step needs an install destination")

    @property
    def name(self) -> str:
        return self.source.package_name


BuildStep = Union[SimpleStep, ParameterizedStep]


def resolve_path(base: Path, value: str) -> Path:
    # Normalize without resolving symlinks, the basename of a local source is what names its staging directory.
    return Path(os.path.normpath(base / os.path.expanduser(value)))


def parse_dependencies(value: str) -> frozenset[str]:
    return frozenset(d.strip() for d in value.split(DEPENDENCY_DELIMITER) if d.strip())


def parse_source(value: str, revision: str, *, base: Path, path: Path, lineno: int) -> SourceRef:
    if not value:
        raise ManifestSyntaxError(path, lineno, "Missing source reference")

    if not value.startswith(LOCAL_SCHEME):
        return SourceRef(url=value, revision=revision)

    local = value.removeprefix(LOCAL_SCHEME)
    if not local:
        raise ManifestSyntaxError(path, lineno, f"Empty local source path in {value}")

    local_path = resolve_path(base, local)
    if not local_path.is_dir():
        raise ManifestSyntaxError(path, lineno, f"Local source not found: {local_path}")

    return SourceRef(url=f"{LOCAL_SCHEME}{local_path}", revision=revision, local_path=local_path)


def parse_manifest_line(line: str, lineno: int, *, base: Path, path: Optional[Path] = None) -> BuildStep:
    path = path or base
    fields = line.split(FIELD_DELIMITER, 5)

    if len(fields) not in (1, 5, 6):
        raise ManifestSyntaxError(
            path, lineno, f"Expected 1, 5 or 6 '{FIELD_DELIMITER}'-separated fields, got {len(fields)}"
        )

    hook_field = fields[0].strip()
    if not hook_field:
        raise ManifestSyntaxError(path, lineno, "Missing hook script")

    hook = resolve_path(base, hook_field)
    if not hook.is_file():
        raise ManifestSyntaxError(path, lineno, f"Hook script not found: {hook}")

    if len(fields) == 1:
        return SimpleStep(hook=hook)

    source, revision, dest, deps = (f.strip() for f in fields[1:5])
    post_install = fields[5] if len(fields) == 6 and fields[5].strip() else None

    if not dest:
        raise ManifestSyntaxError(path, lineno, "Missing install destination")
    if not dest.startswith("/"):
        raise ManifestSyntaxError(path, lineno, f"Install destination must be an absolute path: {dest}")

    return ParameterizedStep(
        hook=hook,
        source=parse_source(source, revision, base=base, path=path, lineno=lineno),
        install_dest=dest,
        dependencies=parse_dependencies(deps),
        post_install=post_install,
    )


def parse_manifest_lines(lines: Iterable[str], *, base: Path, path: Optional[Path] = None) -> list[BuildStep]:
    steps: list[BuildStep] = []

    for lineno, line in enumerate(lines, start=1):
        line = line.rstrip("\r\n")
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        steps.append(parse_manifest_line(line.lstrip(), lineno, base=base, path=path))

    return steps


def parse_manifest(path: PathString) -> list[BuildStep]:
    path = Path(os.path.abspath(path))

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ManifestSyntaxError(path, 0, "Manifest not found")
    except UnicodeDecodeError as e:
        raise ManifestSyntaxError(path, 0, f"Manifest is not valid UTF-8: {e}")

    return parse_manifest_lines(text.splitlines(), base=path.parent, path=path)


def format_step(step: BuildStep) -> str:
    """The canonical manifest line for a step."""
    if isinstance(step, SimpleStep):
        return os.fspath(step.hook)

    fields = [
        os.fspath(step.hook),
        str(step.source),
        step.source.revision,
        step.install_dest,
        DEPENDENCY_DELIMITER.join(sorted(step.dependencies)),
    ]
    if step.post_install is not None:
        fields.append(step.post_install)

    return FIELD_DELIMITER.join(fields)


def step_to_dict(step: BuildStep) -> dict[str, object]:
    d: dict[str, object] = {"Kind": str(step.kind), "Name": step.name, "Hook": os.fspath(step.hook)}

    if isinstance(step, ParameterizedStep):
        d |= {
            "Source": str(step.source),
            "Revision": step.source.revision,
            "Local": step.source.is_local,
            "InstallDestination": step.install_dest,
            "Dependencies": sorted(step.dependencies),
            "PostInstall": step.post_install,
        }

    return d
