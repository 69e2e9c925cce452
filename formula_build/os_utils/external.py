# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import os
import stat
from os.path import expanduser, isfile, join

from ..utils import on_win


def find_executable(executable, prefix=None, path=None):
    """Look for ``executable`` in ``prefix/bin`` first, then on ``path``.

    ``path`` defaults to the ``PATH`` of this process; pass the ``PATH`` of a
    build environment to search that instead.
    """
    dir_paths = []
    if prefix:
        dir_paths.append(join(prefix, "Scripts" if on_win else "bin"))
    if path is None:
        path = os.environ.get("PATH", "")
    dir_paths.extend(p for p in path.split(os.pathsep) if p)

    exts = (".exe", ".bat", "") if on_win else ("",)
    for dir_path in dir_paths:
        for ext in exts:
            candidate = expanduser(join(dir_path, executable + ext))
            if isfile(candidate):
                st = os.stat(candidate)
                if on_win or st.st_mode & stat.S_IEXEC:
                    return candidate
    return None
