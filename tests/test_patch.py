# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
import hashlib
import shutil
from pathlib import Path

import pytest

from formula_build.exceptions import MissingDependency, PatchError
from formula_build.metadata import Patch
from formula_build.os_utils import external
from formula_build.source import (
    _guess_patch_strip_level,
    _get_patch_file_details,
    apply_one_patch,
    apply_patches,
)

pytestmark = pytest.mark.skipif(shutil.which("patch") is None, reason="patch is not installed")

GOOD_PATCH = (
    "--- a/lib/charset.c\n"
    "+++ b/lib/charset.c\n"
    "@@ -1,3 +1,4 @@\n"
    " #include \"includes.h\"\n"
    "+#include \"debug.h\"\n"
    " \n"
    " int charset;\n"
)

CONFLICTING_PATCH = (
    "--- a/lib/charset.c\n"
    "+++ b/lib/charset.c\n"
    "@@ -1,3 +1,3 @@\n"
    " #include \"includes.h\"\n"
    " \n"
    "-int missing_symbol;\n"
    "+int charset;\n"
)


@pytest.fixture
def src_tree(tmp_path):
    src = tmp_path / "src"
    (src / "lib").mkdir(parents=True)
    (src / "lib" / "charset.c").write_text('#include "includes.h"\n\nint charset;\n')
    return src


def write(path, text):
    path.write_text(text)
    return str(path)


def test_get_patch_file_details(tmp_path):
    path = write(tmp_path / "a.patch", GOOD_PATCH)
    assert _get_patch_file_details(path) == ["a/lib/charset.c", "b/lib/charset.c"]


@pytest.mark.parametrize(
    "patches,expected",
    [
        pytest.param(["a/lib/charset.c", "b/lib/charset.c"], 1, id="git style"),
        pytest.param(["lib/charset.c"], 0, id="plain"),
        pytest.param(["samba-4.14.7/lib/charset.c"], 1, id="versioned folder"),
    ],
)
def test_guess_patch_strip_level(src_tree, patches, expected):
    assert _guess_patch_strip_level(patches, src_tree)[0] == expected


def test_apply_one_patch(src_tree, tmp_path, testing_config):
    path = write(tmp_path / "fix.patch", GOOD_PATCH)
    apply_one_patch(str(src_tree), path, testing_config)
    assert (src_tree / "lib" / "charset.c").read_text() == (
        '#include "includes.h"\n#include "debug.h"\n\nint charset;\n'
    )
    assert not list(src_tree.rglob("*.orig"))
    assert not list(src_tree.rglob("*.rej"))


def test_apply_one_patch_conflict_leaves_tree_alone(src_tree, tmp_path, testing_config):
    before = (src_tree / "lib" / "charset.c").read_text()
    path = write(tmp_path / "bad.patch", CONFLICTING_PATCH)
    with pytest.raises(PatchError) as exc:
        apply_one_patch(str(src_tree), path, testing_config, level=1)
    assert exc.value.patch == "bad.patch"
    assert exc.value.diagnostic
    assert (src_tree / "lib" / "charset.c").read_text() == before
    assert not list(src_tree.rglob("*.rej"))


def test_apply_one_patch_malformed(src_tree, tmp_path, testing_config):
    path = write(tmp_path / "junk.patch", "this is not a diff\n")
    with pytest.raises(PatchError, match="malformed"):
        apply_one_patch(str(src_tree), path, testing_config)


def test_apply_one_patch_without_patch_tool(src_tree, tmp_path, testing_config, monkeypatch):
    monkeypatch.setattr(external, "find_executable", lambda *args, **kwargs: None)
    testing_config.patch = None
    path = write(tmp_path / "fix.patch", GOOD_PATCH)
    with pytest.raises(MissingDependency):
        apply_one_patch(str(src_tree), path, testing_config)


def test_apply_patches_honours_predicates(
    src_tree, tmp_path, testing_config, testing_platform, testing_recipe
):
    testing_config.compute_build_id(testing_recipe.name)
    recipe_dir = tmp_path / "recipe"
    recipe_dir.mkdir()
    write(recipe_dir / "fix.patch", GOOD_PATCH)
    sha256 = hashlib.sha256(GOOD_PATCH.encode()).hexdigest()
    patches = [
        Patch(url="fix.patch", sha256=sha256, when="osx"),
        Patch(url="fix.patch", sha256=sha256, level=1, when="linux"),
    ]
    applied = apply_patches(
        str(src_tree), patches, testing_config, testing_platform, recipe_path=str(recipe_dir)
    )
    assert applied == [patches[1]]
    assert "debug.h" in (src_tree / "lib" / "charset.c").read_text()


def test_apply_patches_stops_at_first_failure(
    src_tree, tmp_path, testing_config, testing_platform, testing_recipe
):
    testing_config.compute_build_id(testing_recipe.name)
    recipe_dir = tmp_path / "recipe"
    recipe_dir.mkdir()
    write(recipe_dir / "bad.patch", CONFLICTING_PATCH)
    write(recipe_dir / "fix.patch", GOOD_PATCH)
    with pytest.raises(PatchError):
        apply_patches(
            str(src_tree),
            [Patch(url="bad.patch", level=1), Patch(url="fix.patch", level=1)],
            testing_config,
            testing_platform,
            recipe_path=str(recipe_dir),
        )
    assert "debug.h" not in Path(src_tree, "lib", "charset.c").read_text()
