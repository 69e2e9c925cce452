# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
"""
Module that does most of the heavy lifting for the ``formula-build`` command.
"""
from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass, field
from glob import glob
from os.path import isdir, join
from typing import TYPE_CHECKING

from . import environ, resources, source, utils
from .acceptance import run_acceptance_test
from .environ import EnvOverlay, select_overlay
from .exceptions import FormulaBuildException
from .platform import Platform
from .post import prefix_files, relocate
from .steps import StepsResult
from .steps import run as run_steps

if TYPE_CHECKING:
    from .acceptance import ProtocolClient
    from .config import Config
    from .metadata import Recipe


@dataclass
class BuildResult:
    recipe: Recipe
    platform: Platform
    prefix: str
    overlay: EnvOverlay = field(default_factory=EnvOverlay)
    steps: StepsResult = field(default_factory=StepsResult)
    relocated: list = field(default_factory=list)
    # None when the acceptance test was not run
    tested: bool | None = None
    elapsed: float = 0.0


def _move_failed_work(config: Config, stage):
    """Keep the work directory of a failed build around for inspection."""
    if not isdir(config.work_dir):
        return None
    dest = "{}_failed_{}".format(config.work_dir, (stage or "unknown").replace(" ", "_"))
    utils.rm_rf(dest)
    shutil.move(config.work_dir, dest)
    log = utils.get_logger(__name__)
    log.warning("Build failed; work directory left in %s", dest)
    return dest


def build_env(recipe: Recipe, config: Config, platform: Platform, overlay=None):
    """The environment build steps run in: the base environment, the staged
    resources' overlays, then the recipe's overlays for ``platform``."""
    base = environ.get_dict(config, recipe)
    overlay = (overlay or EnvOverlay()).merge(select_overlay(recipe.env, platform))
    return overlay.apply(base)


def build(
    recipe: Recipe,
    config: Config,
    platform: Platform | None = None,
    notest=False,
    source_only=False,
) -> BuildResult:
    """
    Build the package described by ``recipe``.

    Fetch and unpack the source, stage resources, apply patches, run the
    build steps, relocate installed files and run the acceptance test.  The
    first failing stage stops the build; its exception propagates.
    """
    log = utils.get_logger(__name__)
    platform = platform or config.host_platform or Platform.current()
    config.compute_build_id(recipe.name, recipe.pkg_version)
    result = BuildResult(recipe=recipe, platform=platform, prefix=config.prefix)

    print("BUILD START:", recipe.dist(), f"({platform})")
    start = time.time()
    try:
        src_dir = source.provide(recipe, config)
        result.overlay = resources.stage_all(
            recipe, platform, config, environ.get_dict(config, recipe)
        )
        source.apply_patches(
            src_dir, recipe.patches, config, platform, recipe_path=recipe.path
        )
        if source_only:
            log.info("Source tree in: %s", src_dir)
            return result

        env = build_env(recipe, config, platform, result.overlay)
        if config.prefix_is_default and not config.keep_old_work:
            # a reinstall starts from an empty keg
            utils.rm_rf(config.prefix)
        os.makedirs(config.prefix, exist_ok=True)
        result.steps = run_steps(recipe.steps, env, src_dir, config)
        log.info(
            "%d files installed into %s", len(prefix_files(config.prefix)), config.prefix
        )
        result.relocated = relocate(recipe.relocations, platform, config.prefix)

        if notest or recipe.test is None:
            log.info("Skipping acceptance test for %s", recipe.dist())
        else:
            result.tested = test(recipe, config, platform)
    except FormulaBuildException as e:
        _move_failed_work(config, e.stage)
        raise

    result.elapsed = time.time() - start
    caveats = recipe.caveats_for(platform)
    if caveats:
        log.warning("Caveats for %s:\n%s", recipe.name, caveats)
    print("BUILD END:", recipe.dist(), f"({utils.seconds2human(result.elapsed)})")
    return result


def test(
    recipe: Recipe,
    config: Config,
    platform: Platform | None = None,
    port=None,
    client: ProtocolClient | None = None,
):
    """
    Run the acceptance test of ``recipe`` against its installed prefix.
    """
    log = utils.get_logger(__name__)
    if recipe.test is None:
        print("Nothing to test for:", recipe.dist())
        return True
    platform = platform or config.host_platform or Platform.current()
    config.compute_build_id(recipe.name, recipe.pkg_version)

    binary = recipe.installed_path(config.prefix, recipe.test.binary, platform)
    env = environ.prepend_bin_path(environ.get_dict(config, recipe), config.prefix)
    log.debug("testing %s with PATH=%s", binary, env["PATH"])

    print("TEST START:", recipe.dist())
    run_acceptance_test(binary, recipe.test, config, port=port, client=client, env=env)
    print("TEST END:", recipe.dist())
    return True


def get_build_folders(croot):
    # remember, glob is not a regex.
    return glob(join(croot, "*_" + "[0-9]" * 10 + "*"))


def clean_build(config: Config, folders=None):
    if not folders:
        folders = get_build_folders(config.croot)
    for folder in folders:
        utils.rm_rf(folder)
