# SPDX-License-Identifier: LGPL-2.1-or-later

import argparse
import dataclasses
import enum
import logging
import os
import textwrap
from collections.abc import Collection, Iterator, Sequence
from pathlib import Path
from typing import Any, Callable, Optional

from imgbuild._version import __version__
from imgbuild.log import Style, die
from imgbuild.util import StrEnum

DEFAULT_CONFIG = "imgbuild.conf"
DEFAULT_MANIFEST = "packages.txt"
DEFAULT_BUILD_PACKAGES = ("build-base", "cmake", "git", "linux-headers")


class Verb(StrEnum):
    build = enum.auto()
    install = enum.auto()
    summary = enum.auto()
    help = enum.auto()

    def needs_root(self) -> bool:
        return self in (Verb.build, Verb.install)


def try_parse_boolean(s: str) -> Optional[bool]:
    "Parse 1/true/yes/y/t/on as true and 0/false/no/n/f/off/None as false"

    s_l = s.lower()
    if s_l in {"1", "true", "yes", "y", "t", "on", "always"}:
        return True

    if s_l in {"0", "false", "no", "n", "f", "off", "never"}:
        return False

    return None


def parse_boolean(s: str) -> bool:
    value = try_parse_boolean(s)

    if value is None:
        die(f"Invalid boolean literal: {s!r}")

    return value


def parse_list(value: str) -> list[str]:
    return [p for p in value.replace(",", " ").split() if p]


def parse_number(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        die(f"Invalid number: {value!r}")

    if n <= 0:
        die(f"Number must be positive: {value!r}")

    return n


def parse_timeout(value: str) -> float:
    try:
        timeout = float(value)
    except ValueError:
        die(f"Invalid timeout: {value!r}")

    if not 0 < timeout <= 60:
        die(f"Timeout must be between 0 and 60 seconds: {value!r}")

    return timeout


@dataclasses.dataclass(frozen=True)
class ConfigSetting:
    dest: str
    section: str
    name: str
    parse: Callable[[str], Any]
    default: Any = None
    relative_to_config: bool = False


SETTINGS = (
    ConfigSetting("manifest", "Build", "Manifest", Path, Path(DEFAULT_MANIFEST), relative_to_config=True),
    ConfigSetting("build_packages", "Build", "BuildPackages", parse_list, list(DEFAULT_BUILD_PACKAGES)),
    ConfigSetting("runtime_packages", "Build", "RuntimePackages", parse_list, []),
    ConfigSetting("image_version", "Build", "ImageVersion", str),
    ConfigSetting("build_mode", "Build", "BuildMode", str, "incremental"),
    ConfigSetting("keep_build_deps", "Build", "KeepBuildDependencies", parse_boolean, False),
    ConfigSetting("root_partition", "Image", "RootPartition", parse_number, 2),
    ConfigSetting("settle_timeout", "Image", "SettleTimeout", parse_timeout, 5.0),
    ConfigSetting("output_lines", "Image", "OutputLines", parse_number, 200),
)
SETTINGS_LOOKUP_BY_NAME = {s.name: s for s in SETTINGS}


@dataclasses.dataclass(frozen=True)
class Args:
    verb: Verb
    debug: bool
    json: bool
    config: Optional[Path]


@dataclasses.dataclass(frozen=True)
class Config:
    manifest: Path
    build_packages: list[str]
    runtime_packages: list[str]
    image_version: Optional[str]
    build_mode: str
    keep_build_deps: bool
    root_partition: int
    settle_timeout: float
    output_lines: int
    rootfs: Optional[Path] = None
    image: Optional[Path] = None
    source: Optional[Path] = None
    dest: Optional[str] = None
    partition: int = 3

    @classmethod
    def default(cls, **overrides: Any) -> "Config":
        return cls(**({s.dest: s.default for s in SETTINGS} | overrides))

    def to_dict(self) -> dict[str, Any]:
        return {
            k: os.fspath(v) if isinstance(v, Path) else v
            for k, v in dataclasses.asdict(self).items()
        }


def parse_ini(path: Path, only_sections: Collection[str] = ()) -> Iterator[tuple[str, str, str]]:
    """
    We have our own parser instead of using configparser as the latter does not support specifying the same
    setting multiple times in the same configuration file.
    """
    section: Optional[str] = None
    setting: Optional[str] = None
    value: Optional[str] = None

    for line in textwrap.dedent(path.read_text()).splitlines():
        comment = line.find("#")
        if comment >= 0:
            line = line[:comment]

        if not line.strip():
            continue

        # If we have a section, setting and value, any line that's indented is considered part of the
        # setting's value.
        if section and setting and value is not None and line[0].isspace():
            value = f"{value}\n{line.strip()}"
            continue

        # So the line is not indented, that means we either found a new section or a new setting. Either way,
        # let's yield the previous setting and its value before parsing the new section/setting.
        if section and setting and value is not None:
            yield section, setting, value
            setting = value = None

        line = line.strip()

        if line[0] == "[":
            if line[-1] != "]":
                die(f"{line} is not a valid section")

            section = line[1:-1].strip()
            if not section:
                die("Section name cannot be empty or whitespace")

            continue

        if not section:
            die(f"Setting {line} is located outside of section")

        if only_sections and section not in only_sections:
            continue

        setting, delimiter, value = line.partition("=")
        if not delimiter:
            die(f"Setting {setting} must be followed by '='")
        if not setting:
            die(f"Missing setting name before '=' in {line}")

        setting = setting.strip()
        value = value.strip()

    if section and setting and value is not None:
        yield section, setting, value


def parse_config_file(path: Path) -> dict[str, Any]:
    config: dict[str, Any] = {}

    for section, name, value in parse_ini(path, only_sections={s.section for s in SETTINGS}):
        if not (s := SETTINGS_LOOKUP_BY_NAME.get(name)):
            die(f"{path.absolute()}: Unknown setting {name}")

        if section != s.section:
            logging.warning(f"{path.absolute()}: Setting {name} should be configured in [{s.section}], not [{section}].")

        parsed = s.parse(value)
        if s.relative_to_config and not Path(parsed).is_absolute():
            parsed = path.absolute().parent / parsed

        config[s.dest] = parsed

    return config


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imgbuild",
        description="Install packages into a bootable disk image",
        # the synopsis below is supposed to be indented by two spaces
        usage="\n  "
        + textwrap.dedent("""\
              imgbuild [options…] {b}build{e}    (--rootfs DIR | --image IMAGE)
                imgbuild [options…] {b}install{e}  --image IMAGE --source DIR --dest PATH
                imgbuild [options…] {b}summary{e}
                imgbuild [options…] {b}help{e}
                imgbuild -h | --help
                imgbuild --version
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
        argument_default=argparse.SUPPRESS,
    )

    parser.add_argument(
        "verb",
        type=Verb,
        choices=list(Verb),
        default=Verb.build,
        nargs="?",
        help=argparse.SUPPRESS,
    )
    parser.add_argument("--version", action="version", version="%(prog)s " + __version__, help=argparse.SUPPRESS)
    parser.add_argument(
        "--debug",
        help="Turn on debugging output and keep resources in place if the build fails",
        action="store_true",
        default=False,
    )
    parser.add_argument("--json", help="Show summary as JSON", action="store_true", default=False)
    parser.add_argument("--config", metavar="PATH", type=Path, default=None, help="Read settings from PATH")

    group = parser.add_argument_group("Build options")
    group.add_argument("-m", "--manifest", metavar="PATH", type=Path, help="Package manifest to process")
    group.add_argument("--rootfs", metavar="DIR", type=Path, help="Root filesystem directory to install into")
    group.add_argument("--image", metavar="PATH", type=Path, help="Raw disk image to attach and install into")
    group.add_argument(
        "--root-partition",
        metavar="N",
        type=parse_number,
        help="Partition of --image holding the root filesystem",
    )
    group.add_argument("--image-version", metavar="VERSION", help="Version to record in /etc/image-version")
    group.add_argument("--build-mode", metavar="MODE", help="Build mode to record in /etc/image-version")
    group.add_argument(
        "--keep-build-deps",
        action="store_const",
        const=True,
        help="Keep build dependencies after the hooks ran",
    )
    group.add_argument(
        "--build-packages",
        metavar="PACKAGES",
        type=parse_list,
        help="Baseline build packages installed before the hooks run",
    )
    group.add_argument(
        "--runtime-packages",
        metavar="PACKAGES",
        type=parse_list,
        help="Packages that must never be purged",
    )
    group.add_argument(
        "--settle-timeout",
        metavar="SECONDS",
        type=parse_timeout,
        help="Maximum time to wait for the partitions of an attached image",
    )
    group.add_argument(
        "--output-lines",
        metavar="N",
        type=parse_number,
        help="Number of lines of hook output kept for error reports",
    )

    group = parser.add_argument_group("Install options")
    group.add_argument("--source", metavar="DIR", type=Path, help="Directory to copy into the image")
    group.add_argument("--dest", metavar="PATH", help="Destination path inside the image")
    group.add_argument("--partition", metavar="N", type=parse_number, help="Partition to install into")

    return parser


def parse_config(argv: Sequence[str] = ()) -> tuple[Args, Config]:
    parser = create_argument_parser()
    ns = vars(parser.parse_args(argv))

    args = Args(
        verb=ns.pop("verb", Verb.build),
        debug=ns.pop("debug"),
        json=ns.pop("json"),
        config=ns.pop("config"),
    )

    if args.verb == Verb.help:
        parser.print_help()
        return args, Config.default()

    path = args.config
    if path is None and Path(DEFAULT_CONFIG).exists():
        path = Path(DEFAULT_CONFIG)

    settings: dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            die(f"{path} does not exist")
        settings |= parse_config_file(path)

    # Command line options win over the config file.
    settings |= ns

    return args, Config.default(**settings)
