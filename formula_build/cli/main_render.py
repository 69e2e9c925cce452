# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import argparse
import logging
import sys
from typing import TYPE_CHECKING

from .. import __version__, api
from ..config import get_or_merge_config
from ..exceptions import FormulaBuildException
from ..platform import Platform
from .logging import init_logging

if TYPE_CHECKING:
    from argparse import ArgumentParser, Namespace
    from typing import Sequence

    from ..config import Config


def get_render_parser() -> ArgumentParser:
    p = argparse.ArgumentParser(
        prog="formula-render",
        description="""
Tool for expanding the template formula.yaml file (containing Jinja syntax and
platform predicates) into the rendered recipe for one platform.""",
        conflict_handler="resolve",
    )
    p.add_argument(
        "-V",
        "--version",
        action="version",
        help="Show the formula-build version number and exit.",
        version=f"formula-build {__version__}",
    )
    p.add_argument(
        "--platform",
        help="Render for this platform (e.g. osx-arm64, linux-64) instead of the "
        "machine running formula-build.",
    )
    p.add_argument(
        "--os-version",
        help="Operating system version of --platform, e.g. 10.15 or 11.",
    )
    p.add_argument(
        "--croot",
        help="Build root folder.  Equivalent to FORMULA_BLD_PATH, but applies only "
        "to this call of formula-build.",
    )
    p.add_argument(
        "--cache-dir",
        help="Path to store the source files (archives, patches) that are downloaded.",
    )
    p.add_argument(
        "--prefix",
        help="Install prefix.  Defaults to <croot>/Cellar/<name>/<version>.",
    )
    p.add_argument(
        "--debug",
        action="store_true",
        help="Show debug output, including the output of every build step.",
    )
    p.add_argument(
        "--no-locking",
        dest="locking",
        default=True,
        action="store_false",
        help="Disable locking of the source cache, to avoid issues on shared "
        "filesystems.",
    )
    return p


def get_config(parser: ArgumentParser, parsed: Namespace, **kwargs) -> Config:
    """A Config for the options shared by the formula-build commands."""
    if parsed.os_version and not parsed.platform:
        parser.error("--os-version requires --platform")
    if parsed.platform:
        try:
            kwargs["host_platform"] = Platform.from_subdir(
                parsed.platform, parsed.os_version
            )
        except ValueError as e:
            parser.error(str(e))
    for key in ("croot", "cache_dir", "prefix"):
        value = getattr(parsed, key, None)
        if value:
            kwargs[key] = value
    return get_or_merge_config(
        None, debug=parsed.debug, locking=parsed.locking, **kwargs
    )


def parse_args(args: Sequence[str] | None) -> tuple[ArgumentParser, Namespace]:
    parser = get_render_parser()
    parser.add_argument(
        "-f",
        "--file",
        help="write YAML to file, given as argument here.\
              Overwrites existing files.",
    )
    # we do this one separately because we only allow one entry to formula render
    parser.add_argument(
        "recipe",
        metavar="RECIPE_PATH",
        help="Path to recipe directory or formula.yaml file.",
    )
    return parser, parser.parse_args(args)


def execute(args: Sequence[str] | None = None) -> int:
    parser, parsed = parse_args(args)
    init_logging(logging.DEBUG if parsed.debug else logging.WARNING)
    config = get_config(parser, parsed, verbose=False)

    platform = config.host_platform or Platform.current()
    recipe = api.render(parsed.recipe, config=config, platform=platform)
    output = api.output_yaml(recipe, parsed.file, platform=platform)
    print(output.rstrip())
    return 0


def main():
    try:
        return execute(sys.argv[1:])
    except FormulaBuildException as e:
        sys.exit(f"ERROR: {e.error_msg()}")
