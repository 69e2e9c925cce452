# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from .. import api
from ..exceptions import FormulaBuildException
from .logging import init_logging
from .main_render import get_config, get_render_parser

if TYPE_CHECKING:
    from argparse import ArgumentParser, Namespace
    from typing import Sequence


def parse_args(args: Sequence[str] | None) -> tuple[ArgumentParser, Namespace]:
    parser = get_render_parser()
    parser.prog = "formula-livecheck"
    parser.description = """
Check the upstream download page of a recipe for a newer release.  Prints the
package name, the recipe's version and the newest version found, and exits
with status 1 when the recipe is outdated."""
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

    recipe = api.render(parsed.recipe, config=config)
    current, latest, outdated = api.livecheck(recipe, config=config)
    print(recipe.name, current, latest or "unknown")
    return 1 if outdated else 0


def main():
    try:
        return execute(sys.argv[1:])
    except FormulaBuildException as e:
        sys.exit(f"ERROR: {e.error_msg()}")
