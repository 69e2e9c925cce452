# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
"""
Staging of auxiliary resources.

A resource is a secondary source archive that has to be built and installed
into a private prefix before the main build can run.  Staging it yields the
environment overlay the main build needs to find what was installed.
"""
from __future__ import annotations

import os
from os.path import join
from typing import TYPE_CHECKING

from . import steps
from .environ import EnvOverlay, prepend_bin_path
from .exceptions import BuildLockError, FormulaBuildException, StageError
from .platform import eval_selector
from .source import download_to_cache, unpack
from .utils import get_logger, rm_rf

if TYPE_CHECKING:
    from typing import Mapping

    from .config import Config
    from .metadata import Recipe, Resource
    from .platform import Platform

log = get_logger(__name__)


def stage(
    resource: Resource,
    platform: Platform,
    config: Config,
    env: Mapping[str, str],
    recipe_path=None,
) -> EnvOverlay:
    """Fetch, unpack and build ``resource`` if its predicate holds.

    Returns the resource's declared overlay, or an empty one when the
    resource does not apply to ``platform``.
    """
    if not eval_selector(resource.when, platform):
        log.info("Skipping resource %s on %s", resource.name, platform)
        return EnvOverlay()

    stage_dir = join(config.resources_dir, resource.name.replace("::", "-"))
    log.info("Staging resource %s in %s", resource.name, stage_dir)
    try:
        path, unhashed_fn = download_to_cache(
            config.src_cache,
            recipe_path,
            resource.url,
            resource.sha256,
            verbose=config.verbose,
            timeout=config.timeout,
            locking=config.locking,
        )
        rm_rf(stage_dir)
        unpack(path, stage_dir, unhashed_fn, croot=config.build_folder)
        os.makedirs(config.build_prefix, exist_ok=True)
        step_env = prepend_bin_path(
            dict(env, BUILD_PREFIX=config.build_prefix, RESOURCE_DIR=stage_dir),
            config.build_prefix,
        )
        steps.run(
            resource.steps,
            env=step_env,
            cwd=stage_dir,
            config=config,
            label=f"resource {resource.name}",
        )
    except BuildLockError:
        raise
    except (FormulaBuildException, OSError) as e:
        raise StageError(resource.name, e) from e
    return resource.env


def stage_all(
    recipe: Recipe, platform: Platform, config: Config, env: Mapping[str, str]
) -> EnvOverlay:
    """Stage every resource in declaration order and merge their overlays."""
    overlay = EnvOverlay()
    for resource in recipe.resources:
        overlay = overlay.merge(
            stage(resource, platform, config, env, recipe_path=recipe.path)
        )
    return overlay
