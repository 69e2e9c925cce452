# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
"""
Look up the newest upstream release of a recipe.

The recipe's ``livecheck`` section names a download page and a regular
expression whose first group captures a version from the page's links.
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING

import requests
from bs4 import BeautifulSoup

from .exceptions import FetchError, RecipeError
from .platform import parse_version
from .utils import get_logger

if TYPE_CHECKING:
    from .metadata import Recipe

log = get_logger(__name__)


def find_versions(html, regex):
    """All versions captured by ``regex`` from the links in ``html``."""
    try:
        pattern = re.compile(regex, re.IGNORECASE)
    except re.error as e:
        raise RecipeError(f"Invalid livecheck regex {regex!r}: {e}")
    if pattern.groups < 1:
        raise RecipeError(f"livecheck regex {regex!r} must capture the version")
    soup = BeautifulSoup(html, "html.parser")
    versions = set()
    for anchor in soup.find_all("a", href=True):
        m = pattern.search(anchor["href"])
        if m:
            versions.add(m.group(1))
    return sorted(versions, key=parse_version)


def livecheck(recipe: Recipe, session=None, timeout=30) -> str | None:
    """Newest version published upstream, or None when nothing matched."""
    if recipe.livecheck is None:
        raise RecipeError(f"{recipe.name} has no livecheck section")
    url = recipe.livecheck.url
    session = session or requests.Session()
    log.info("Checking %s for new releases of %s", url, recipe.name)
    try:
        response = session.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise FetchError(url, str(e)) from e
    versions = find_versions(response.content, recipe.livecheck.regex)
    if not versions:
        log.warning("No version matching %s found on %s", recipe.livecheck.regex, url)
        return None
    log.debug("versions found: %s", ", ".join(versions))
    return versions[-1]


def is_outdated(recipe: Recipe, latest) -> bool:
    return bool(latest) and parse_version(latest) > parse_version(recipe.version)
