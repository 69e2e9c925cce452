# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from .. import api, build
from ..exceptions import FormulaBuildException
from .logging import init_logging
from .main_render import get_config, get_render_parser

if TYPE_CHECKING:
    from argparse import ArgumentParser, Namespace
    from typing import Sequence


def parse_args(args: Sequence[str] | None) -> tuple[ArgumentParser, Namespace]:
    parser = get_render_parser()
    parser.prog = "formula-build"
    parser.description = """
Tool for building a package from a formula recipe.  The source and resources
are fetched and verified, patched, built, installed into the prefix and
relocated, and the installed server is put through its acceptance test."""
    parser.add_argument(
        "-s",
        "--source",
        action="store_true",
        help="Only obtain, patch and stage the source (but don't build).",
    )
    parser.add_argument(
        "-t",
        "--test",
        action="store_true",
        help="Test package (assumes package is already built and installed in the "
        "prefix).",
    )
    parser.add_argument(
        "--no-test",
        action="store_true",
        dest="notest",
        help="Do not test the package.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="do not display progress bar",
    )
    parser.add_argument(
        "--keep-old-work",
        action="store_true",
        help="Do not remove anything from environment, even after successful "
        "build and test.",
    )
    parser.add_argument(
        "--ready-timeout",
        type=float,
        help="Seconds to wait for the server under test to accept connections.",
    )
    parser.add_argument(
        "--grace-period",
        type=float,
        help="Seconds to wait after launching the server under test before probing it.",
    )
    parser.add_argument(
        "recipe",
        metavar="RECIPE_PATH",
        nargs="+",
        help="Path to recipe directory.  Pass 'purge' here to clean the "
        "work and test intermediates.",
    )
    return parser, parser.parse_args(args)


def source_action(recipe, config):
    work_dir = api.fetch_source(recipe, config=config)
    print("Source tree in:", work_dir)


def test_action(recipe, config):
    return api.test(recipe, config=config)


def execute(args: Sequence[str] | None = None) -> int:
    parser, parsed = parse_args(args)
    if parsed.debug:
        level = logging.DEBUG
    elif parsed.quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    init_logging(level)

    kwargs = {
        key: getattr(parsed, key)
        for key in ("ready_timeout", "grace_period")
        if getattr(parsed, key) is not None
    }
    config = get_config(
        parser,
        parsed,
        verbose=not parsed.quiet or parsed.debug,
        quiet=parsed.quiet,
        keep_old_work=parsed.keep_old_work,
        **kwargs,
    )

    if "purge" in parsed.recipe:
        build.clean_build(config)
        return 0

    for recipe in parsed.recipe:
        if parsed.test:
            test_action(recipe, config)
        elif parsed.source:
            source_action(recipe, config)
        else:
            api.build(recipe, config=config, notest=parsed.notest)
    return 0


def main():
    try:
        return execute(sys.argv[1:])
    except FormulaBuildException as e:
        sys.exit(f"ERROR: {e.error_msg()}")
