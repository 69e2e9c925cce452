# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
import os
import sys

import pytest
import yaml

from formula_build.cli import main_livecheck

DOWNLOAD_PAGE = b"""\
<html><body>
<a href="/pub/samba/stable/samba-4.14.7.tar.gz">samba-4.14.7.tar.gz</a>
<a href="/pub/samba/stable/samba-4.15.0.tar.gz">samba-4.15.0.tar.gz</a>
</body></html>
"""


def write_recipe(folder, version, url):
    recipe = {
        "package": {"name": "samba", "version": version},
        "livecheck": {"url": url, "regex": r"samba[._-]v?(\d+(?:\.\d+)+)\.t"},
    }
    with open(os.path.join(folder, "formula.yaml"), "w") as f:
        yaml.safe_dump(recipe, f)
    return folder


def test_livecheck_outdated(http_server, testing_workdir, capsys):
    http_server.add("download/index.html", DOWNLOAD_PAGE)
    recipe = write_recipe(testing_workdir, "4.14.7", http_server.url("download/"))
    assert main_livecheck.execute([recipe]) == 1
    assert capsys.readouterr().out.strip() == "samba 4.14.7 4.15.0"


def test_livecheck_up_to_date(http_server, testing_workdir, capsys):
    http_server.add("download/index.html", DOWNLOAD_PAGE)
    recipe = write_recipe(testing_workdir, "4.15.0", http_server.url("download/"))
    assert main_livecheck.execute([recipe]) == 0
    assert capsys.readouterr().out.strip() == "samba 4.15.0 4.15.0"


def test_livecheck_nothing_found(http_server, testing_workdir, capsys):
    http_server.add("download/index.html", b"<html></html>")
    recipe = write_recipe(testing_workdir, "4.14.7", http_server.url("download/"))
    assert main_livecheck.execute([recipe]) == 0
    assert capsys.readouterr().out.strip() == "samba 4.14.7 unknown"


def test_livecheck_fetch_error(http_server, testing_workdir, monkeypatch):
    recipe = write_recipe(testing_workdir, "4.14.7", http_server.url("missing/"))
    monkeypatch.setattr(sys, "argv", ["formula-livecheck", recipe])
    with pytest.raises(SystemExit) as exc:
        main_livecheck.main()
    assert str(exc.value.code).startswith("ERROR: fetch stage failed:")
