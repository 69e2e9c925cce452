# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
"""
The platform a recipe is built for, and evaluation of the predicates
(``when:`` expressions) that recipes use to switch data on and off.

A :class:`Platform` is resolved once at the start of a build and handed to
each stage; nothing below inspects ``sys.platform`` on its own.
"""
from __future__ import annotations

import os
import platform as _platform
import re
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .exceptions import RecipeError
from .utils import get_logger

if TYPE_CHECKING:
    from typing import Any

log = get_logger(__name__)

# release codename -> first version carrying it
MACOS_RELEASES = {
    "el_capitan": (10, 11),
    "sierra": (10, 12),
    "high_sierra": (10, 13),
    "mojave": (10, 14),
    "catalina": (10, 15),
    "big_sur": (11,),
    "monterey": (12,),
    "ventura": (13,),
    "sonoma": (14,),
    "sequoia": (15,),
}

ARCH_ALIASES = {
    "x86_64": "64",
    "amd64": "64",
    "arm64": "arm64",
    "aarch64": "aarch64",
}

_missing_name_re = re.compile(r"name '(\w+)' is not defined")


def parse_version(value) -> tuple[int, ...]:
    """``"10.15.7"`` -> ``(10, 15, 7)``; trailing zeros are dropped so that
    ``"11.0"`` compares equal to ``"11"``."""
    if isinstance(value, tuple):
        parts = list(value)
    else:
        parts = [int(p) for p in re.findall(r"\d+", str(value))]
    while parts and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


@dataclass(frozen=True)
class Platform:
    system: str
    arch: str
    version: tuple[int, ...] = field(default=())

    @classmethod
    def current(cls) -> Platform:
        if sys.platform == "darwin":
            system = "osx"
            version = parse_version(_platform.mac_ver()[0])
        elif sys.platform == "win32":
            system = "win"
            version = parse_version(_platform.version())
        else:
            system = "linux"
            version = ()
        machine = _platform.machine().lower()
        return cls(system, ARCH_ALIASES.get(machine, machine), version)

    @classmethod
    def from_subdir(cls, subdir: str, version=None) -> Platform:
        """Build a platform from a conda-style subdir such as ``osx-arm64``."""
        try:
            system, arch = subdir.split("-", 1)
        except ValueError:
            raise ValueError(f"Invalid platform {subdir!r}, expected e.g. 'osx-arm64'")
        if system not in ("linux", "osx", "win"):
            raise ValueError(f"Unknown platform system {system!r} in {subdir!r}")
        return cls(system, ARCH_ALIASES.get(arch, arch), parse_version(version or ()))

    @property
    def subdir(self) -> str:
        return f"{self.system}-{self.arch}"

    @property
    def is_arm(self) -> bool:
        return self.arch in ("arm64", "aarch64")

    @property
    def codename(self) -> str | None:
        if self.system != "osx" or not self.version:
            return None
        key = self.version[:1] if self.version[0] >= 11 else self.version[:2]
        found = None
        for name, release in MACOS_RELEASES.items():
            if release <= key:
                found = name
        return found

    @property
    def bottle_tag(self) -> str | None:
        """Key into a recipe's prebuilt artifact checksums."""
        if self.system == "linux":
            return "{}_linux".format("aarch64" if self.is_arm else "x86_64")
        if self.system == "osx" and self.codename:
            return f"arm64_{self.codename}" if self.is_arm else self.codename
        return None

    def namespace(self) -> dict[str, Any]:
        d = dict(
            linux=self.system == "linux",
            osx=self.system == "osx",
            macos=self.system == "osx",
            win=self.system == "win",
            unix=self.system in ("linux", "osx"),
            arm64=self.is_arm,
            x86_64=self.arch == "64",
            os_version=self.version,
            version=parse_version,
            environ=os.environ,
        )
        d.update(MACOS_RELEASES)
        return d

    def __str__(self):
        if self.version:
            return "{} ({})".format(self.subdir, ".".join(map(str, self.version)))
        return self.subdir


def eval_selector(selector, platform: Platform) -> bool:
    """Evaluate a ``when:`` predicate against ``platform``.

    Empty predicates hold.  Names the namespace does not define are treated
    as ``False``.
    """
    if selector is None or selector == "":
        return True
    if isinstance(selector, bool):
        return selector
    namespace = platform.namespace()
    expression = str(selector)
    for _ in range(len(re.findall(r"\w+", expression)) + 1):
        try:
            # TODO: is there a way to do this without eval?  Eval allows arbitrary
            #    code execution.
            return bool(eval(expression, {"__builtins__": {}}, namespace))
        except NameError as e:
            missing = getattr(e, "name", None) or _missing_name_re.search(str(e))
            if missing is not None and not isinstance(missing, str):
                missing = missing.group(1)
            if not missing:
                raise RecipeError(f"Invalid predicate {selector!r}: {e}")
            log.debug("Treating unknown predicate name '%s' as if it was False.", missing)
            namespace[missing] = False
        except Exception as e:
            raise RecipeError(
                f"Invalid predicate:\n  [{selector}]\n"
                f"exception:\n  {e.__class__.__name__}: {e}"
            )
    raise RecipeError(f"Could not evaluate predicate {selector!r}")
