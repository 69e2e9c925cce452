# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
import os
import subprocess
import sys
import time
from dataclasses import replace
from pathlib import Path

import psutil
import pytest

from formula_build import acceptance
from formula_build.acceptance import (
    HttpClient,
    SmbClient,
    get_client,
    run_acceptance_test,
    terminate_process_tree,
    wait_until_ready,
)
from formula_build.exceptions import AcceptanceError, AcceptanceTimeoutError, RecipeError
from formula_build.utils import find_free_port

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses a posix shebang server")


@pytest.fixture
def acceptance_config(testing_config, testing_recipe):
    testing_config.compute_build_id(testing_recipe.name, testing_recipe.pkg_version)
    return testing_config


def server_pid(config):
    return int(Path(config.test_dir, "server.pid").read_text())


def assert_gone(pid):
    # the process may take a moment to be reaped by the kernel
    for _ in range(50):
        if not psutil.pid_exists(pid):
            return
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                return
        except psutil.NoSuchProcess:
            return
        time.sleep(0.1)
    pytest.fail(f"server process {pid} is still running")


class CountingClient(HttpClient):
    """Talks to the wrong port, and counts how often it was asked."""

    def __init__(self):
        super().__init__(timeout=5)
        self.calls = 0

    def retrieve(self, host, port, share, remote, dest, env=None):
        self.calls += 1
        super().retrieve(host, find_free_port(host), share, remote, dest, env=env)


def test_acceptance_passes(fake_server, http_acceptance_test, acceptance_config):
    assert run_acceptance_test(fake_server, http_acceptance_test, acceptance_config)
    testpath = Path(acceptance_config.test_dir)
    assert (testpath / "data" / "hello").read_bytes() == b"hello"
    assert (testpath / "got" / "hello").read_bytes() == b"hello"
    assert (testpath / "state").is_dir()
    config = (testpath / "test.conf").read_text()
    assert f"path={testpath}/data" in config
    assert "{{" not in config
    assert_gone(server_pid(acceptance_config))


def test_acceptance_on_given_port(fake_server, http_acceptance_test, acceptance_config):
    port = find_free_port()
    assert run_acceptance_test(fake_server, http_acceptance_test, acceptance_config, port=port)


def test_acceptance_wrong_port_fails_once(fake_server, http_acceptance_test, acceptance_config):
    client = CountingClient()
    with pytest.raises(AcceptanceError) as exc:
        run_acceptance_test(fake_server, http_acceptance_test, acceptance_config, client=client)
    assert exc.value.step == "exchange"
    assert not isinstance(exc.value, AcceptanceTimeoutError)
    assert client.calls == 1
    assert_gone(server_pid(acceptance_config))


def test_acceptance_content_mismatch(fake_server, http_acceptance_test, acceptance_config):
    class Tampering(HttpClient):
        def retrieve(self, host, port, share, remote, dest, env=None):
            super().retrieve(host, port, share, remote, dest, env=env)
            with open(dest, "ab") as f:
                f.write(b"!")

    with pytest.raises(AcceptanceError, match="expected b'hello'") as exc:
        run_acceptance_test(
            fake_server, http_acceptance_test, acceptance_config, client=Tampering()
        )
    assert exc.value.step == "exchange"


def test_acceptance_server_exits_early(fake_server, http_acceptance_test, acceptance_config):
    test = replace(http_acceptance_test, serve=("--exit-code=3",))
    with pytest.raises(AcceptanceError) as exc:
        run_acceptance_test(fake_server, test, acceptance_config)
    assert exc.value.step == "ready"
    assert not isinstance(exc.value, AcceptanceTimeoutError)
    assert "code 3" in str(exc.value)
    server_log = Path(acceptance_config.test_dir, acceptance.SERVER_LOG).read_text()
    assert "exiting early" in server_log


def test_acceptance_server_never_listens(fake_server, http_acceptance_test, acceptance_config):
    test = replace(
        http_acceptance_test,
        serve=http_acceptance_test.serve + ("--no-listen",),
        ready_timeout=2,
    )
    start = time.monotonic()
    with pytest.raises(AcceptanceTimeoutError) as exc:
        run_acceptance_test(fake_server, test, acceptance_config)
    assert time.monotonic() - start < 15
    assert exc.value.step == "ready"
    assert exc.value.timeout == 2
    assert_gone(server_pid(acceptance_config))


def test_acceptance_missing_binary(http_acceptance_test, acceptance_config, tmp_path):
    with pytest.raises(AcceptanceError) as exc:
        run_acceptance_test(str(tmp_path / "sbin" / "smbd"), http_acceptance_test, acceptance_config)
    assert exc.value.step == "introspect"


def test_acceptance_introspection_fails(fake_server, http_acceptance_test, acceptance_config):
    test = replace(http_acceptance_test, introspect=(("--exit-code", "4"),))
    with pytest.raises(AcceptanceError) as exc:
        run_acceptance_test(fake_server, test, acceptance_config)
    assert exc.value.step == "introspect"
    assert "exited with 4" in str(exc.value)
    # the server was never launched
    assert not os.path.exists(acceptance_config.test_dir)


def test_acceptance_introspection_hangs(fake_server, http_acceptance_test, acceptance_config):
    test = replace(http_acceptance_test, introspect=(("--hang",),), ready_timeout=1)
    start = time.monotonic()
    with pytest.raises(AcceptanceError) as exc:
        run_acceptance_test(fake_server, test, acceptance_config)
    assert time.monotonic() - start < 15
    assert exc.value.step == "introspect"
    assert "did not finish within 1" in str(exc.value)
    assert isinstance(exc.value.__cause__, subprocess.TimeoutExpired)
    assert not os.path.exists(acceptance_config.test_dir)


def test_acceptance_bad_config_template(fake_server, http_acceptance_test, acceptance_config):
    test = replace(http_acceptance_test, config="path={{ not_a_variable }}\n")
    with pytest.raises(AcceptanceError) as exc:
        run_acceptance_test(fake_server, test, acceptance_config)
    assert exc.value.step == "configure"


def test_acceptance_uses_config_timeout(fake_server, http_acceptance_test, acceptance_config):
    acceptance_config.ready_timeout = 1
    test = replace(
        http_acceptance_test,
        serve=http_acceptance_test.serve + ("--no-listen",),
        ready_timeout=None,
    )
    with pytest.raises(AcceptanceTimeoutError) as exc:
        run_acceptance_test(fake_server, test, acceptance_config)
    assert exc.value.timeout == 1


def test_wait_until_ready_grace_period():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    try:
        start = time.monotonic()
        with pytest.raises(AcceptanceTimeoutError):
            wait_until_ready(proc, "127.0.0.1", find_free_port(), timeout=0.2, grace_period=0.5)
        assert time.monotonic() - start >= 0.5
    finally:
        terminate_process_tree(proc.pid)
        proc.wait()


def test_terminate_process_tree_kills_children(tmp_path):
    pid_file = tmp_path / "child.pid"
    code = (
        "import subprocess, sys, time; "
        "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']); "
        f"open({str(pid_file)!r}, 'w').write(str(p.pid)); "
        "time.sleep(60)"
    )
    proc = subprocess.Popen([sys.executable, "-c", code])
    for _ in range(100):
        if pid_file.exists() and pid_file.read_text():
            break
        time.sleep(0.1)
    child = int(pid_file.read_text())
    terminate_process_tree(proc.pid)
    assert proc.wait(timeout=10) is not None
    assert_gone(child)


def test_terminate_process_tree_unknown_pid():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    terminate_process_tree(proc.pid)


def test_smbclient_command():
    client = SmbClient(executable="/usr/bin/smbclient")
    assert client.command("127.0.0.1", 4445, "test", "hello", "/tmp/got/hello") == [
        "/usr/bin/smbclient",
        "-p",
        "4445",
        "-N",
        "//127.0.0.1/test",
        "-c",
        "get hello /tmp/got/hello",
    ]


def test_http_client_url():
    client = HttpClient()
    assert client.url("127.0.0.1", 8000, "", "hello") == "http://127.0.0.1:8000/hello"
    assert client.url("::1", 80, "my share", "a b") == "http://::1:80/my%20share/a%20b"


def test_get_client():
    assert isinstance(get_client("smbclient"), SmbClient)
    assert isinstance(get_client("http"), HttpClient)
    with pytest.raises(RecipeError, match="ftp"):
        get_client("ftp")
