# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
"""
This file defines the public API for formula-build.  Adding or removing functions,
or Changing arguments to anything in here should also mean changing the major
version number.

Design philosophy: put variability into config.  Make each function here accept kwargs,
but only use those kwargs in config.  Config must change to support new features elsewhere.
"""
from __future__ import annotations

# imports are done locally to keep the api clean and limited strictly
#    to formula-build's functionality.
import os
from pathlib import Path
from typing import TYPE_CHECKING

# make the Config class available in the api namespace
from .config import Config, get_or_merge_config
from .metadata import Recipe
from .platform import Platform

if TYPE_CHECKING:
    from .build import BuildResult


def _platform(config: Config, platform: Platform | str | None, os_version=None):
    if isinstance(platform, str):
        return Platform.from_subdir(platform, os_version)
    return platform or config.host_platform or Platform.current()


def _recipe(recipe_path_or_recipe, config: Config, platform: Platform) -> Recipe:
    from .metadata import render_recipe

    if isinstance(recipe_path_or_recipe, Recipe):
        config.compute_build_id(
            recipe_path_or_recipe.name, recipe_path_or_recipe.pkg_version
        )
        return recipe_path_or_recipe
    return render_recipe(recipe_path_or_recipe, config, platform)


def render(
    recipe_path: str | os.PathLike | Path,
    config: Config | None = None,
    platform: Platform | str | None = None,
    **kwargs,
) -> Recipe:
    """Given path to a recipe, return the Recipe representing it, with jinja2
    templates evaluated for ``platform``."""
    config = get_or_merge_config(config, **kwargs)
    platform = _platform(config, platform)
    return _recipe(os.fspath(recipe_path), config, platform)


def output_yaml(recipe: Recipe, file_path=None, platform: Platform | None = None) -> str:
    """Dump a rendered recipe as YAML, optionally saving it to ``file_path``"""
    import yaml

    output = yaml.safe_dump(recipe.to_dict(platform), default_flow_style=False, sort_keys=False)
    if file_path:
        with open(file_path, "w") as f:
            f.write(output)
        return f"Wrote output to {file_path}"
    return output


def fetch_source(
    recipe_path_or_recipe,
    config: Config | None = None,
    platform: Platform | str | None = None,
    **kwargs,
) -> str:
    """Fetch, unpack and patch the source of a recipe, staging its resources.
    Returns the work directory."""
    from .build import build as _build

    config = get_or_merge_config(config, **kwargs)
    platform = _platform(config, platform)
    recipe = _recipe(recipe_path_or_recipe, config, platform)
    _build(recipe, config, platform, source_only=True)
    return config.work_dir


def build(
    recipe_path_or_recipe,
    config: Config | None = None,
    platform: Platform | str | None = None,
    notest: bool = False,
    **kwargs,
) -> BuildResult:
    """Run the build of a recipe: every stage from fetching to the acceptance test."""
    from .build import build as _build

    config = get_or_merge_config(config, **kwargs)
    platform = _platform(config, platform)
    recipe = _recipe(recipe_path_or_recipe, config, platform)
    return _build(recipe, config, platform, notest=notest)


def test(
    recipe_path_or_recipe,
    config: Config | None = None,
    platform: Platform | str | None = None,
    port=None,
    client=None,
    **kwargs,
) -> bool:
    """Run only the acceptance test, against an already installed prefix."""
    from .build import test as _test

    config = get_or_merge_config(config, **kwargs)
    platform = _platform(config, platform)
    recipe = _recipe(recipe_path_or_recipe, config, platform)
    return _test(recipe, config, platform, port=port, client=client)


def livecheck(
    recipe_path_or_recipe,
    config: Config | None = None,
    session=None,
    **kwargs,
) -> tuple[str, str | None, bool]:
    """Look up the newest upstream version.

    Returns ``(current, latest, outdated)``."""
    from .livecheck import is_outdated
    from .livecheck import livecheck as _livecheck

    config = get_or_merge_config(config, **kwargs)
    recipe = _recipe(recipe_path_or_recipe, config, _platform(config, None))
    latest = _livecheck(recipe, session=session, timeout=config.timeout)
    return recipe.version, latest, is_outdated(recipe, latest)
