# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import os
import re
import shutil
from os.path import basename, expanduser, isfile, join, normpath
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import TYPE_CHECKING, Iterable
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests
from tqdm import tqdm

from .exceptions import FetchError, IntegrityError, MissingDependency, PatchError, RecipeError
from .os_utils import external
from .platform import eval_selector
from .utils import (
    decompressible_exts,
    get_logger,
    locked,
    rm_rf,
    run_captured,
    sha256_checksum,
    tar_xf,
)

if TYPE_CHECKING:
    from .config import Config
    from .metadata import Patch, Recipe
    from .platform import Platform

log = get_logger(__name__)

ext_re = re.compile(r"(.*?)(\.(?:tar\.)?[^.]+)$")

CHUNK_SIZE = 1 << 16


def append_hash_to_fn(fn, hash_value):
    return ext_re.sub(rf"\1_{hash_value[:10]}\2", fn)


def url_basename(url):
    """File name for a URL, ignoring any query string."""
    name = basename(urlparse(url).path.rstrip("/")) if "://" in url else basename(url)
    return name or "download"


def _download(url, dest, recipe_path=None, verbose=False, timeout=900):
    if "://" not in url:
        path = expanduser(url)
        if not os.path.isabs(path):
            path = normpath(join(recipe_path or os.getcwd(), path))
        if not isfile(path):
            raise FetchError(url, f"no such file: {path}")
        shutil.copyfile(path, dest)
        return

    scheme = urlparse(url).scheme
    if scheme == "file":
        path = url2pathname(urlparse(url).path)
        if not isfile(path):
            raise FetchError(url, f"no such file: {path}")
        shutil.copyfile(path, dest)
        return
    if scheme not in ("http", "https"):
        raise FetchError(url, f"unsupported URL scheme '{scheme}'")

    try:
        with requests.get(url, stream=True, timeout=(30, timeout)) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length") or 0)
            with open(dest, "wb") as f, tqdm(
                total=total or None,
                unit="B",
                unit_scale=True,
                desc=url_basename(url),
                disable=not verbose,
                leave=False,
            ) as progress:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
                    progress.update(len(chunk))
    except requests.exceptions.RequestException as e:
        raise FetchError(url, str(e).strip()) from e
    except OSError as e:
        raise FetchError(url, f"could not write {dest}: {e}") from e


def download_to_cache(
    cache_folder,
    recipe_path,
    url,
    sha256=None,
    fn=None,
    verbose=False,
    timeout=900,
    locking=True,
):
    """Download a source to the local cache.

    The cached file name carries the expected checksum, so a second call with
    the same URL and checksum finds the file and does not transfer it again.
    Returns ``(path, unhashed_fn)``.
    """
    if verbose:
        log.debug("Source cache directory is: %s", cache_folder)
    os.makedirs(cache_folder, exist_ok=True)

    unhashed_fn = fn = fn or url_basename(url)
    if sha256 is not None:
        if not str(sha256).strip():
            raise RecipeError(f"Empty sha256 hash provided for {fn}")
        sha256 = str(sha256).strip().lower()
        fn = append_hash_to_fn(fn, sha256)
    else:
        log.warning(
            "No sha256 provided for %s.  Source download forced.  "
            "Add a hash to the recipe to use the source cache.",
            unhashed_fn,
        )
    path = join(cache_folder, fn)

    with locked(cache_folder, timeout=timeout, locking=locking):
        if sha256 and isfile(path):
            if sha256_checksum(path) == sha256:
                if verbose:
                    log.info("Found source in cache: %s", fn)
                return path, unhashed_fn
            log.warning("Cached %s does not match its checksum, downloading again", fn)
            rm_rf(path)

        if verbose:
            log.info("Downloading %s", url)
        partial = path + ".partial"
        try:
            _download(url, partial, recipe_path, verbose=verbose, timeout=timeout)
        except BaseException:
            rm_rf(partial)
            raise

        hashed = sha256_checksum(partial)
        if sha256 and hashed != sha256:
            rm_rf(partial)
            raise IntegrityError(url, sha256, hashed)

        # this is really a fallback.  If people don't provide the hash, we still need to
        #    prevent collisions in our source cache, but the end user will get no benefit
        #    from the cache.
        if not sha256:
            path = append_hash_to_fn(path, hashed)
        os.replace(partial, path)
        if verbose:
            log.info("Success")
    return path, unhashed_fn


def fetch(url, sha256, cache_folder, recipe_path=None, fn=None, **kwargs):
    """Fetch ``url`` into ``cache_folder`` and return the verified local path."""
    return download_to_cache(cache_folder, recipe_path, url, sha256, fn, **kwargs)[0]


def hoist_single_extracted_folder(nested_folder):
    """Moves all files/folders one level up.

    This is for when your archive extracts into its own folder, so that we don't need to
    know exactly what that folder is called."""
    parent = os.path.dirname(nested_folder)
    flist = os.listdir(nested_folder)
    with TemporaryDirectory() as tmpdir:
        for entry in flist:
            shutil.move(os.path.join(nested_folder, entry), os.path.join(tmpdir, entry))
        rm_rf(nested_folder)
        for entry in flist:
            shutil.move(os.path.join(tmpdir, entry), os.path.join(parent, entry))


def unpack(src_path, src_dir, unhashed_fn, croot=None):
    """Uncompress a downloaded source into ``src_dir``."""
    os.makedirs(src_dir, exist_ok=True)
    if croot:
        os.makedirs(croot, exist_ok=True)
    with TemporaryDirectory(dir=croot) as tmpdir:
        if src_path.lower().endswith(decompressible_exts):
            tar_xf(src_path, tmpdir)
        else:
            # In this case, the build steps will need to deal with unpacking the source
            log.warning(
                "Unrecognized source format. Source file will be copied to the SRC_DIR"
            )
            shutil.copy2(src_path, os.path.join(tmpdir, unhashed_fn))
        flist = os.listdir(tmpdir)
        if len(flist) == 1 and os.path.isdir(os.path.join(tmpdir, flist[0])):
            hoist_single_extracted_folder(os.path.join(tmpdir, flist[0]))
        for f in os.listdir(tmpdir):
            shutil.move(os.path.join(tmpdir, f), os.path.join(src_dir, f))


def provide(recipe: Recipe, config: Config):
    """
    given a recipe:
      - download (if necessary)
      - unpack
    into the work directory.  Patches are applied separately, after resources
    are staged.
    """
    src_dir = config.work_dir
    if recipe.source is None:
        log.info("no source - creating empty work folder")
        os.makedirs(src_dir, exist_ok=True)
        return src_dir
    path, unhashed_fn = download_to_cache(
        config.src_cache,
        recipe.path,
        recipe.source.url,
        recipe.source.sha256,
        recipe.source.fn,
        verbose=config.verbose,
        timeout=config.timeout,
        locking=config.locking,
    )
    unpack(path, src_dir, unhashed_fn, croot=config.build_folder)
    log.info("source tree in: %s", src_dir)
    return src_dir


def _guess_patch_strip_level(
    patches: Iterable[str | os.PathLike], src_dir: str | os.PathLike
) -> tuple[int, bool]:
    """Determine the patch strip level automatically."""
    patches = set(map(Path, patches))
    maxlevel = min(len(patch.parent.parts) for patch in patches)
    guessed = False
    if maxlevel == 0:
        patchlevel = 0
    else:
        histo = {i: 0 for i in range(maxlevel + 1)}
        for patch in patches:
            parts = patch.parts
            for level in range(maxlevel + 1):
                if Path(src_dir, *parts[-len(parts) + level :]).exists():
                    histo[level] += 1
        order = sorted(histo, key=histo.get, reverse=True)
        if histo[order[0]] == histo[order[1]]:
            log.info("Patch level ambiguous, selecting least deep")
            guessed = True
        patchlevel = min(
            key for key, value in histo.items() if value == histo[order[0]]
        )
    return patchlevel, guessed


def _get_patch_file_details(path):
    re_files = re.compile(r"^(?:---|\+\+\+) ([^\n\t]+)")
    files = []
    with open(path, errors="ignore") as f:
        for line in f.readlines():
            m = re_files.search(line)
            if m and m.group(1).strip() != "/dev/null":
                files.append(m.group(1).strip())
    return files


def apply_one_patch(src_dir, path, config: Config, level=None, name=None):
    name = name or basename(path)
    if not isfile(path):
        raise PatchError(name, f"no such patch: {path}")

    # While --binary was first introduced in patch 2.3 it wasn't until patch 2.6 that it
    # produced consistent results across OSes.
    patch_exe = config.patch or external.find_executable("patch")
    if not patch_exe:
        raise MissingDependency("Failed to find formula-build dependency: 'patch'")

    files = _get_patch_file_details(path)
    if not files:
        raise PatchError(name, "no file headers found, the patch is malformed")
    if level is None:
        level, _ = _guess_patch_strip_level(files, src_dir)

    # The patch is first dry-run so that a patch which does not apply leaves
    #     the tree as it was.  Nothing is rolled back once the real run starts.
    patch_args = [
        "--no-backup-if-mismatch",
        "--batch",
        f"-Np{level}",
        "-i",
        path,
        "--binary",
    ]
    env = dict(os.environ, LC_ALL="C")
    log.info("Applying patch: %s (strip level %d)", name, level)
    for extra_args in (["--dry-run"], []):
        returncode, output = run_captured([patch_exe] + patch_args + extra_args, env=env, cwd=src_dir)
        if returncode != 0:
            raise PatchError(name, output.strip() or f"patch exited with {returncode}")
        log.debug(output)


def apply_patches(src_dir, patches: Iterable[Patch], config: Config, platform: Platform, recipe_path=None):
    """Fetch and apply, in order, each patch whose predicate holds."""
    applied = []
    for patch in patches:
        if not eval_selector(patch.when, platform):
            log.debug("Skipping patch %s on %s", patch.name, platform)
            continue
        path, _ = download_to_cache(
            config.src_cache,
            recipe_path,
            patch.url,
            patch.sha256,
            verbose=config.verbose,
            timeout=config.timeout,
            locking=config.locking,
        )
        apply_one_patch(src_dir, path, config, level=patch.level, name=patch.name)
        applied.append(patch)
    return applied

