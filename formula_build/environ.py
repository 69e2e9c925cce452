# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from os.path import join
from typing import TYPE_CHECKING

from .platform import eval_selector
from .utils import ensure_list

if TYPE_CHECKING:
    from typing import Iterable, Mapping

    from .config import Config
    from .metadata import Recipe
    from .platform import Platform

Pairs = tuple[tuple[str, str], ...]


def _pairs(mapping) -> Pairs:
    pairs = []
    for key, values in (mapping or {}).items():
        for value in ensure_list(values):
            pairs.append((str(key), str(value)))
    return tuple(pairs)


@dataclass(frozen=True)
class EnvOverlay:
    """Changes to layer over a base environment.

    ``prepend`` entries are search paths put in front of the variable,
    ``append`` entries are flags added to its end (space separated) and
    ``set`` entries replace it.  An overlay never touches ``os.environ``;
    :meth:`apply` returns a fresh mapping.
    """

    prepend: Pairs = ()
    append: Pairs = ()
    set: Pairs = ()

    @classmethod
    def from_dict(cls, data: Mapping | None) -> EnvOverlay:
        data = data or {}
        unknown = set(data) - {"prepend", "append", "set", "when"}
        if unknown:
            raise ValueError(f"Unknown environment actions: {sorted(unknown)}")
        return cls(
            prepend=_pairs(data.get("prepend")),
            append=_pairs(data.get("append")),
            set=_pairs(data.get("set")),
        )

    def __bool__(self):
        return bool(self.prepend or self.append or self.set)

    def merge(self, other: EnvOverlay) -> EnvOverlay:
        """A new overlay applying ``self`` and then ``other``."""
        return EnvOverlay(
            prepend=self.prepend + other.prepend,
            append=self.append + other.append,
            set=self.set + other.set,
        )

    def apply(self, base: Mapping[str, str]) -> dict[str, str]:
        env = dict(base)
        for key, value in self.set:
            env[key] = value
        for key, path in self.prepend:
            env[key] = path + os.pathsep + env[key] if env.get(key) else path
        for key, value in self.append:
            env[key] = env[key] + " " + value if env.get(key) else value
        return env

    def to_dict(self) -> dict[str, dict[str, list[str]]]:
        out = {}
        for action in ("prepend", "append", "set"):
            section = {}
            for key, value in getattr(self, action):
                section.setdefault(key, []).append(value)
            if section:
                out[action] = section
        return out


@dataclass(frozen=True)
class EnvEntry:
    overlay: EnvOverlay
    when: str | None = None


def select_overlay(entries: Iterable[EnvEntry], platform: Platform) -> EnvOverlay:
    """Merge, in order, the overlays whose predicate holds on ``platform``."""
    overlay = EnvOverlay()
    for entry in entries:
        if eval_selector(entry.when, platform):
            overlay = overlay.merge(entry.overlay)
    return overlay


def prepend_bin_path(env, prefix, prepend_prefix=False):
    env = dict(env)
    env["PATH"] = join(prefix, "bin") + os.pathsep + env.get("PATH", "")
    if sys.platform == "win32":
        env["PATH"] = (
            join(prefix, "Library", "bin")
            + os.pathsep
            + join(prefix, "Scripts")
            + os.pathsep
            + env["PATH"]
        )
        prepend_prefix = True  # windows has Python in the prefix.  Use it.
    if prepend_prefix:
        env["PATH"] = prefix + os.pathsep + env["PATH"]
    return env


def get_dict(config: Config, recipe: Recipe | None = None, base=None) -> dict[str, str]:
    """The base build environment: a snapshot of this process's environment
    plus the variables build steps rely on."""
    env = dict(os.environ if base is None else base)
    env.update(
        {
            "LANG": env.get("LANG", "C"),
            "CPU_COUNT": str(config.cpu_count),
            "MAKEFLAGS": env.get("MAKEFLAGS", f"-j{config.cpu_count}"),
            "BUILD_PREFIX": config.build_prefix,
            "SRC_DIR": config.work_dir,
        }
    )
    if recipe is not None:
        env.update(
            {
                "PREFIX": config.prefix,
                "PKG_NAME": recipe.name,
                "PKG_VERSION": recipe.version,
                "PKG_BUILDNUM": str(recipe.revision),
            }
        )
        if recipe.path:
            env["RECIPE_DIR"] = recipe.path
    return prepend_bin_path(env, config.build_prefix)
