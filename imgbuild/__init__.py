# SPDX-License-Identifier: LGPL-2.1-or-later

import json
import logging
import os
from typing import Any, Optional

from imgbuild.config import Args, Config, Verb
from imgbuild.install import install_to_image
from imgbuild.log import ARG_DEBUG, Style, die, log_notice
from imgbuild.manifest import format_step, parse_manifest, step_to_dict
from imgbuild.pipeline import default_mountpoint, run_pipeline
from imgbuild.run import find_binary
from imgbuild.versionfile import VERSION_FILE, read_version_file

REQUIRED_TOOLS = {
    "losetup": "attach disk images",
    "partprobe": "re-read partition tables",
    "mount": "mount partitions and special filesystems",
    "umount": "unmount partitions and special filesystems",
    "chroot": "run hooks inside the root filesystem",
    "cp": "copy source trees",
    "rm": "remove build leftovers",
}


def check_root() -> None:
    if os.geteuid() != 0:
        die("Must be run as root", hint="Loop devices, mounts and chroot all require root privileges")


def check_tool(*tools: str, reason: str, hint: Optional[str] = None) -> str:
    tool = find_binary(*tools)
    if not tool:
        die(f"Could not find '{tools[0]}' which is required to {reason}.", hint=hint)

    return tool


def check_tools(verb: Verb, config: Config) -> None:
    tools = dict(REQUIRED_TOOLS)

    # A plain directory never gets attached or mounted as a whole.
    if verb == Verb.build and not config.image:
        for tool in ("losetup", "partprobe"):
            tools.pop(tool)

    for tool, reason in tools.items():
        check_tool(tool, reason=reason)


def check_inputs(verb: Verb, config: Config) -> None:
    if verb == Verb.build:
        if not config.rootfs and not config.image:
            die("Either --rootfs or --image is required to build")
        if config.rootfs and config.image:
            die("--rootfs and --image cannot be used together")
        if config.rootfs and not config.rootfs.is_dir():
            die(f"Root filesystem {config.rootfs} is not a directory")

    if verb == Verb.install:
        if not config.image or not config.source or not config.dest:
            die("--image, --source and --dest are required to install")
        if not config.source.is_dir():
            die(f"Source {config.source} is not a directory")
        if not config.dest.startswith("/"):
            die(f"Destination {config.dest} must be an absolute path")

    if config.image and not config.image.is_file():
        die(f"Image {config.image} does not exist")


def run_build(args: Args, config: Config) -> None:
    context = run_pipeline(config, debug=args.debug)
    if not context:
        return

    if version := read_version_file(context.root / VERSION_FILE).get("VERSION"):
        log_notice(f"Image version {version}")

    log_notice(f"{Style.bold}Build finished{Style.reset}, ran {len(context.steps)} step(s)")


def run_install(args: Args, config: Config) -> None:
    assert config.image and config.source and config.dest

    install_to_image(
        config.image,
        config.source,
        config.dest,
        partition=config.partition,
        settle_timeout=config.settle_timeout,
        mountpoint=default_mountpoint(f"p{config.partition}"),
        keep_on_failure=args.debug,
    )


def summary(config: Config) -> str:
    lines = [
        f"{Style.bold}MANIFEST: {config.manifest}{Style.reset}",
        "",
        f"    Build packages: {' '.join(config.build_packages) or '(none)'}",
        f"  Runtime packages: {' '.join(config.runtime_packages) or '(none)'}",
        f"     Image version: {config.image_version or '(none)'}",
        f"        Build mode: {config.build_mode}",
        f"  Keep build deps.: {'yes' if config.keep_build_deps else 'no'}",
        f"    Root partition: {config.root_partition}",
        "",
        f"{Style.bold}STEPS:{Style.reset}",
    ]

    steps = parse_manifest(config.manifest)
    lines += [f"  {i:>3}. {format_step(step)}" for i, step in enumerate(steps, start=1)] or ["  (none)"]

    return "\n".join(lines)


def dump_json(d: dict[str, Any]) -> str:
    return json.dumps(d, indent=4, sort_keys=True)


def run_summary(args: Args, config: Config) -> None:
    if args.json:
        steps = [step_to_dict(step) for step in parse_manifest(config.manifest)]
        text = dump_json({"Config": config.to_dict(), "Steps": steps})
    else:
        text = summary(config)

    print(text)


def run_verb(args: Args, config: Config) -> None:
    ARG_DEBUG.set(args.debug)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.verb == Verb.help:
        return

    if args.verb == Verb.summary:
        return run_summary(args, config)

    check_inputs(args.verb, config)

    if args.verb.needs_root():
        check_root()
        check_tools(args.verb, config)

    if args.verb == Verb.build:
        return run_build(args, config)

    if args.verb == Verb.install:
        return run_install(args, config)

