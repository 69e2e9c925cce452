# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
"""
Acceptance testing of an installed server.

The test introspects the installed binary, writes a scratch tree and a
runtime configuration, launches the server detached, waits until it accepts
connections, then fetches a stored file back through a protocol client and
compares it byte for byte.  The server and everything it spawned is torn down
whatever the outcome.
"""
from __future__ import annotations

import getpass
import os
import socket
import subprocess
import time
from os.path import basename, dirname, isfile, join
from typing import TYPE_CHECKING
from urllib.parse import quote

import jinja2
import psutil
import requests

from .exceptions import (
    AcceptanceError,
    AcceptanceTimeoutError,
    FormulaBuildException,
    MissingDependency,
    RecipeError,
)
from .os_utils import external
from .utils import find_free_port, get_logger, on_win, rm_rf, run_captured

if TYPE_CHECKING:
    from typing import Mapping

    from .config import Config
    from .metadata import AcceptanceTest

log = get_logger(__name__)

psutil_exceptions = (psutil.NoSuchProcess, psutil.AccessDenied)

SERVER_LOG = "server.log"


class ProtocolClient:
    """Retrieves one remote file from a running server."""

    name = None

    def retrieve(self, host, port, share, remote, dest, env=None):
        raise NotImplementedError


class SmbClient(ProtocolClient):
    name = "smbclient"

    def __init__(self, executable=None, timeout=60):
        self.executable = executable
        self.timeout = timeout

    def command(self, host, port, share, remote, dest):
        exe = self.executable or external.find_executable("smbclient")
        if not exe:
            raise MissingDependency("Failed to find formula-build dependency: 'smbclient'")
        return [
            exe,
            "-p",
            str(port),
            "-N",
            f"//{host}/{share}",
            "-c",
            f"get {remote} {dest}",
        ]

    def retrieve(self, host, port, share, remote, dest, env=None):
        cmd = self.command(host, port, share, remote, dest)
        log.info("Retrieving %s: %s", remote, " ".join(cmd))
        returncode, output = run_captured(
            cmd, env=env or os.environ, timeout=self.timeout
        )
        log.debug(output)
        if returncode != 0:
            raise AcceptanceError(
                "exchange",
                f"{' '.join(cmd)} exited with {returncode}\n{output.rstrip()}",
            )


class HttpClient(ProtocolClient):
    name = "http"

    def __init__(self, session=None, timeout=30):
        self.session = session or requests.Session()
        self.timeout = timeout

    def url(self, host, port, share, remote):
        path = "/".join(quote(part) for part in (share, remote) if part)
        return f"http://{host}:{port}/{path}"

    def retrieve(self, host, port, share, remote, dest, env=None):
        url = self.url(host, port, share, remote)
        log.info("Retrieving %s", url)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise AcceptanceError("exchange", f"GET {url} failed: {e}") from e
        with open(dest, "wb") as f:
            f.write(response.content)


CLIENTS = {
    SmbClient.name: SmbClient,
    HttpClient.name: HttpClient,
}


def get_client(kind) -> ProtocolClient:
    try:
        return CLIENTS[kind]()
    except KeyError:
        raise RecipeError(
            "Unknown exchange client {!r}; expected one of {}".format(
                kind, ", ".join(sorted(CLIENTS))
            )
        )


def terminate_process_tree(pid, timeout=5):
    """Stop ``pid`` and every process below it, killing what ignores SIGTERM."""
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil_exceptions:
        return
    for proc in procs:
        try:
            proc.terminate()
        except psutil_exceptions:
            continue
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil_exceptions:
            continue
    psutil.wait_procs(alive, timeout=timeout)


def wait_until_ready(proc, host, port, timeout, grace_period=0, interval=0.1):
    """Block until something accepts TCP connections on ``host:port``.

    ``grace_period`` seconds are waited out first.  Raises
    :class:`AcceptanceTimeoutError` once ``timeout`` seconds have passed and
    :class:`AcceptanceError` as soon as ``proc`` exits.
    """

    def check_alive():
        returncode = proc.poll()
        if returncode is not None:
            raise AcceptanceError(
                "ready", f"server exited with code {returncode} before accepting connections"
            )

    grace_end = time.monotonic() + grace_period
    while time.monotonic() < grace_end:
        check_alive()
        time.sleep(min(interval, max(grace_end - time.monotonic(), 0)))

    deadline = time.monotonic() + timeout
    while True:
        check_alive()
        remaining = deadline - time.monotonic()
        try:
            with socket.create_connection((host, port), timeout=max(min(remaining, 1.0), 0.01)):
                log.debug("server accepts connections on %s:%d", host, port)
                return
        except OSError:
            pass
        if time.monotonic() >= deadline:
            raise AcceptanceTimeoutError(port, timeout)
        time.sleep(interval)


def _server_log_tail(path, lines=20):
    if not isfile(path):
        return ""
    with open(path, errors="replace") as f:
        tail = f.readlines()[-lines:]
    return "".join(tail).rstrip()


def _render(template, context, what):
    try:
        return jinja2.Template(template, undefined=jinja2.StrictUndefined).render(
            **context
        )
    except jinja2.TemplateError as e:
        raise AcceptanceError("configure", f"Could not render {what}: {e}") from e


def _introspect(binary, test: AcceptanceTest, env, cwd, timeout=None):
    for args in test.introspect:
        cmd = [binary, *args]
        log.info("introspect: %s", " ".join(cmd))
        try:
            returncode, output = run_captured(cmd, env=env, cwd=cwd, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise AcceptanceError(
                "introspect", f"{' '.join(cmd)} did not finish within {timeout}s"
            ) from e
        except OSError as e:
            raise AcceptanceError("introspect", f"could not run {binary}: {e}") from e
        log.debug(output)
        if returncode != 0:
            raise AcceptanceError(
                "introspect",
                f"{' '.join(cmd)} exited with {returncode}\n{output.rstrip()}",
            )


def _prepare(test: AcceptanceTest, testpath, port):
    rm_rf(testpath)
    os.makedirs(testpath)
    for d in test.dirs:
        os.makedirs(join(testpath, d), exist_ok=True)
    store = join(testpath, test.exchange.store)
    os.makedirs(dirname(store), exist_ok=True)
    with open(store, "wb") as f:
        f.write(test.exchange.content)

    config_file = join(testpath, test.config_file)
    context = dict(
        testpath=testpath,
        port=port,
        user=getpass.getuser(),
        host=test.exchange.host,
        config_file=config_file,
    )
    if test.config:
        with open(config_file, "w") as f:
            f.write(_render(test.config, context, test.config_file))
    return context


def _launch(binary, test: AcceptanceTest, context, env, testpath):
    argv = [binary] + [_render(arg, context, "server arguments") for arg in test.serve]
    log.info("launching: %s", " ".join(argv))
    server_log = open(join(testpath, SERVER_LOG), "wb")
    kwargs = {} if on_win else {"start_new_session": True}
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=server_log,
            stderr=subprocess.STDOUT,
            cwd=testpath,
            env={str(k): str(v) for k, v in env.items()},
            **kwargs,
        )
    except OSError as e:
        server_log.close()
        raise AcceptanceError("launch", f"could not start {binary}: {e}") from e
    return proc, server_log


def _exchange(test: AcceptanceTest, client: ProtocolClient, port, testpath, env):
    exchange = test.exchange
    got_dir = join(testpath, "got")
    os.makedirs(got_dir, exist_ok=True)
    dest = join(got_dir, basename(exchange.remote))
    try:
        client.retrieve(exchange.host, port, exchange.share, exchange.remote, dest, env=env)
    except AcceptanceError:
        raise
    except (FormulaBuildException, OSError, subprocess.TimeoutExpired) as e:
        raise AcceptanceError("exchange", e) from e
    if not isfile(dest):
        raise AcceptanceError("exchange", f"{exchange.remote} was not retrieved")
    with open(dest, "rb") as f:
        got = f.read()
    if got != exchange.content:
        raise AcceptanceError(
            "exchange", f"retrieved {got!r}, expected {exchange.content!r}"
        )


def run_acceptance_test(
    binary,
    test: AcceptanceTest,
    config: Config,
    port=None,
    client: ProtocolClient | None = None,
    env: Mapping[str, str] | None = None,
) -> bool:
    """Run ``test`` against the installed ``binary``.

    Returns True on success; every failure raises :class:`AcceptanceError`
    naming the step that failed.  Nothing is retried.
    """
    env = dict(os.environ if env is None else env)
    testpath = config.test_dir
    client = client or get_client(test.exchange.client)
    port = port or find_free_port(test.exchange.host)
    ready_timeout = (
        test.ready_timeout if test.ready_timeout is not None else config.ready_timeout
    )
    grace_period = (
        test.grace_period if test.grace_period is not None else config.grace_period
    )

    if not isfile(binary):
        raise AcceptanceError("introspect", f"{binary} does not exist")
    _introspect(binary, test, env, cwd=dirname(binary), timeout=float(ready_timeout))
    context = _prepare(test, testpath, port)

    proc, server_log = _launch(binary, test, context, env, testpath)
    try:
        try:
            wait_until_ready(
                proc, test.exchange.host, port, float(ready_timeout), float(grace_period)
            )
            _exchange(test, client, port, testpath, env)
        except AcceptanceError:
            tail = _server_log_tail(join(testpath, SERVER_LOG))
            if tail:
                log.error("server output:\n%s", tail)
            raise
    finally:
        log.debug("stopping server (pid %d)", proc.pid)
        terminate_process_tree(proc.pid)
        proc.poll()
        server_log.close()
    log.info("acceptance test passed: retrieved %s", test.exchange.remote)
    return True
