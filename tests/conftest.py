# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import hashlib
import http.server
import logging
import os
import stat
import sys
import tarfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from pytest import MonkeyPatch

import formula_build
from formula_build.cli.logging import init_logging
from formula_build.config import Config
from formula_build.metadata import AcceptanceTest, Exchange, Recipe, Source
from formula_build.platform import Platform
from formula_build.utils import reset_deduplicator, set_log_level

if TYPE_CHECKING:
    from typing import Iterator

tests_path = Path(__file__).parent
fake_server_script = tests_path / "scripts" / "fake_server.py"
samba_recipe = tests_path.parent / "recipes" / "samba"


@pytest.hookimpl
def pytest_report_header(config: pytest.Config):
    # ensuring the expected development formula-build is being run
    expected = tests_path.parent / "formula_build" / "__init__.py"
    assert expected.samefile(formula_build.__file__)
    return f"formula_build.__file__: {formula_build.__file__}"


@pytest.fixture(scope="function", autouse=True)
def isolated_environment(monkeypatch: MonkeyPatch, tmp_path: Path):
    """Keep the user's rc file and build root out of every test."""
    monkeypatch.setenv("FORMULARC", str(tmp_path / "formularc"))
    monkeypatch.setenv("FORMULA_BLD_PATH", str(tmp_path / "formula-bld"))
    reset_deduplicator()
    yield
    init_logging.cache_clear()
    set_log_level(logging.INFO)


@pytest.fixture(scope="function")
def testing_workdir(monkeypatch: MonkeyPatch, tmp_path: Path) -> str:
    """Create a workdir in a safe temporary folder; cd into it for the test."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    return str(workdir)


@pytest.fixture(scope="function")
def testing_config(testing_workdir: str) -> Config:
    return Config(
        croot=os.path.join(testing_workdir, "croot"),
        cache_dir=os.path.join(testing_workdir, "cache"),
        verbose=True,
        debug=False,
        ready_timeout=15,
        grace_period=0,
    )


@pytest.fixture(scope="function")
def testing_platform() -> Platform:
    return Platform("linux", "64")


@pytest.fixture(scope="function")
def osx_catalina() -> Platform:
    return Platform.from_subdir("osx-64", "10.15.7")


@pytest.fixture(scope="function")
def osx_big_sur_arm() -> Platform:
    return Platform.from_subdir("osx-arm64", "11.4")


class _Server:
    def __init__(self, root: Path):
        self.root = root
        self.requests: list[str] = []
        server = self

        class Handler(http.server.SimpleHTTPRequestHandler):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, directory=str(root), **kwargs)

            def do_GET(self):
                server.requests.append(self.path)
                super().do_GET()

            def log_message(self, *args):
                pass

        self.httpd = http.server.ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.port = self.httpd.server_address[1]
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    def url(self, name: str) -> str:
        return f"http://127.0.0.1:{self.port}/{name}"

    def add(self, name: str, content: bytes) -> str:
        path = self.root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return self.url(name)

    def count(self, name: str) -> int:
        return sum(1 for request in self.requests if request.split("?")[0] == f"/{name}")


@pytest.fixture(scope="function")
def http_server(tmp_path: Path) -> Iterator[_Server]:
    """Serve a temporary directory over HTTP and record every GET."""
    root = tmp_path / "served"
    root.mkdir()
    server = _Server(root)
    server.thread.start()
    yield server
    server.httpd.shutdown()
    server.httpd.server_close()


def sha256_of(path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


@pytest.fixture(scope="function")
def make_archive(tmp_path: Path):
    """Factory for ``.tar.gz`` archives with a single top-level folder.

    ``files`` maps relative paths to text; paths ending in ``.sh`` or named
    ``configure`` are made executable.  Returns ``(path, sha256)``.
    """

    def make(name: str, files: dict[str, str], top: str | None = None):
        top = top or name
        src = tmp_path / "archive-src" / name / top
        for relpath, content in files.items():
            path = src / relpath
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            if relpath.endswith(".sh") or path.name == "configure":
                path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        archive = tmp_path / "archives" / f"{name}.tar.gz"
        archive.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(src, arcname=top)
        return str(archive), sha256_of(archive)

    return make


def install_fake_server(dest) -> str:
    """Copy the fake server script to ``dest`` as an executable."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text(f"#!{sys.executable}\n" + fake_server_script.read_text())
    dest.chmod(0o755)
    return str(dest)


@pytest.fixture(scope="function")
def install_server():
    return install_fake_server


@pytest.fixture(scope="function")
def fake_server(tmp_path: Path) -> str:
    return install_fake_server(tmp_path / "prefix" / "sbin" / "fakesmbd")


@pytest.fixture(scope="session")
def samba_recipe_dir() -> str:
    return str(samba_recipe)


HTTP_TEST_CONFIG = "[test]\npath={{ testpath }}/data\nowner={{ user }}\n"


@pytest.fixture(scope="function")
def http_acceptance_test() -> AcceptanceTest:
    """An acceptance test run against the fake server through HTTP."""
    return AcceptanceTest(
        binary="sbin/smbd",
        exchange=Exchange(
            store="data/hello",
            content=b"hello",
            remote="hello",
            client="http",
        ),
        introspect=(("--build-options",), ("--version",)),
        dirs=("state", "data"),
        config_file="test.conf",
        config=HTTP_TEST_CONFIG,
        serve=("--configfile={{ config_file }}", "--port={{ port }}"),
        ready_timeout=15,
    )


@pytest.fixture(scope="function")
def testing_recipe(request: pytest.FixtureRequest, testing_workdir: str) -> Recipe:
    return Recipe(
        name=request.function.__name__.replace("_", "-"),
        version="1.0",
        path=testing_workdir,
    )


@pytest.fixture(scope="function")
def source_recipe(make_archive, testing_recipe: Recipe) -> Recipe:
    """A recipe whose source archive holds one file, ``hello.txt``."""
    archive, sha256 = make_archive("hello-1.0", {"hello.txt": "hello\n"})
    return Recipe(
        name=testing_recipe.name,
        version=testing_recipe.version,
        source=Source(url=archive, sha256=sha256),
        path=testing_recipe.path,
    )
