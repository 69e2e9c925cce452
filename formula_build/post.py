# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import os
import shutil
from os.path import exists, islink, join, lexists, normpath, relpath
from typing import TYPE_CHECKING

from .exceptions import RelocationError
from .platform import eval_selector
from .utils import get_logger

if TYPE_CHECKING:
    from typing import Iterable

    from .metadata import Relocation
    from .platform import Platform

log = get_logger(__name__)


def prefix_files(prefix):
    """
    Returns a set of all files in prefix.
    """
    res = set()
    prefix_rep = prefix + os.path.sep
    for root, dirs, files in os.walk(prefix):
        for fn in files:
            # this is relpath, just hacked to be faster
            res.add(join(root, fn).replace(prefix_rep, "", 1))
        for d in dirs:
            path = join(root, d)
            if islink(path):
                res.add(path.replace(prefix_rep, "", 1))
    return {normpath(path) for path in res}


def relocate(
    relocations: Iterable[Relocation], platform: Platform, prefix
) -> list[tuple[str, str]]:
    """Rename installed artifacts under ``prefix``.

    Only entries whose predicate holds on ``platform`` are acted on.  A source
    file that the build did not produce raises :class:`RelocationError`;
    entries before it have already been moved.
    """
    moved = []
    for relocation in relocations:
        if not eval_selector(relocation.when, platform):
            continue
        src = join(prefix, relocation.directory, relocation.name)
        dst = join(prefix, relocation.directory, relocation.new_name)
        if not lexists(src):
            raise RelocationError(src)
        if exists(dst):
            raise RelocationError(
                src, f"destination {relpath(dst, prefix)} already exists"
            )
        log.info("Relocating %s -> %s", relpath(src, prefix), relpath(dst, prefix))
        shutil.move(src, dst)
        moved.append((src, dst))
    return moved
