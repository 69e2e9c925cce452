# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
import contextlib
import hashlib
import logging
import logging.config
import os
import shutil
import socket
import stat
import subprocess
import sys
import tarfile
import tempfile
from functools import lru_cache
from locale import getpreferredencoding
from os.path import abspath, expanduser, expandvars, isdir, isfile, islink, join

import filelock
import libarchive
import yaml

from .exceptions import BuildLockError, UnpackError

on_win = sys.platform == "win32"

codec = getpreferredencoding() or "utf-8"

_lock_folders = (
    join(expanduser("~"), ".formula_build", "locks"),
    join(tempfile.gettempdir(), "formula_build_locks"),
)

# This is the lowest common denominator of the formats supported by our
# libarchive/python-libarchive-c packages across all platforms
decompressible_exts = (
    ".7z",
    ".tar",
    ".tar.bz2",
    ".tar.gz",
    ".tar.lzma",
    ".tar.xz",
    ".tar.z",
    ".tar.zst",
    ".tgz",
    ".zip",
)


@lru_cache(maxsize=None)
def _load_rc(rc_path):
    if not isfile(rc_path):
        return {}
    with open(rc_path) as f:
        data = yaml.safe_load(f) or {}
    return data.get("formula_build", {}) or {}


def cc_formula_build():
    """The ``formula_build`` section of the user's rc file, or an empty dict."""
    rc_path = os.getenv("FORMULARC", join(expanduser("~"), ".formularc"))
    return _load_rc(abspath(expanduser(rc_path)))


def run_captured(popenargs, env, cwd=None, timeout=None):
    """Run one command with stderr folded into stdout.

    Returns ``(returncode, output)``; never raises on a non-zero exit.
    """
    proc = subprocess.run(
        [str(arg) for arg in popenargs],
        env={str(key): str(value) for key, value in env.items()},
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        timeout=timeout,
    )
    return proc.returncode, proc.stdout.decode(codec, errors="replace")


def seconds2human(s):
    m, s = divmod(s, 60)
    h, m = divmod(int(m), 60)
    return f"{h:d}:{m:02d}:{s:04.1f}"


def get_lock(folder, timeout=900):
    try:
        location = os.path.abspath(os.path.normpath(folder))
    except OSError:
        location = folder

    # Hash the entire filename to avoid collisions.
    lock_filename = hashlib.sha256(location.encode()).hexdigest()

    for locks_dir in _lock_folders:
        try:
            os.makedirs(locks_dir, exist_ok=True)
            lock_file = os.path.join(locks_dir, lock_filename)
            with open(lock_file, "w") as f:
                f.write("")
            return filelock.FileLock(lock_file, timeout)
        except OSError:
            continue
    raise BuildLockError(
        "Could not write locks folder to either system location ({}) "
        "or user location ({}).  Aborting.".format(*_lock_folders)
    )


@contextlib.contextmanager
def locked(folder, timeout=900, locking=True):
    if not locking:
        yield
        return
    lock = get_lock(folder, timeout=timeout)
    try:
        lock.acquire()
    except filelock.Timeout as e:
        raise BuildLockError(f"Failed to acquire lock on {folder}") from e
    try:
        yield
    finally:
        lock.release()


@contextlib.contextmanager
def tmp_chdir(dest):
    curdir = os.getcwd()
    try:
        os.chdir(dest)
        yield
    finally:
        os.chdir(curdir)


def _tar_xf_fallback(tarball, dir_path, mode="r:*"):
    with tarfile.open(tarball, mode) as t:
        members = t.getmembers()
        for member in members:
            if os.path.isabs(member.name) or ".." in member.name.split("/"):
                raise UnpackError(tarball, f"unsafe path {member.name}")
        t.extractall(path=dir_path, members=members)


def tar_xf(tarball, dir_path):
    flags = (
        libarchive.extract.EXTRACT_TIME
        | libarchive.extract.EXTRACT_PERM
        | libarchive.extract.EXTRACT_SECURE_NODOTDOT
        | libarchive.extract.EXTRACT_SECURE_SYMLINKS
        | libarchive.extract.EXTRACT_SECURE_NOABSOLUTEPATHS
    )
    if not os.path.isabs(tarball):
        tarball = os.path.join(os.getcwd(), tarball)
    try:
        with tmp_chdir(os.path.realpath(dir_path)):
            libarchive.extract_file(tarball, flags)
    except libarchive.exception.ArchiveError as e:
        if not tarball.lower().endswith(
            (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")
        ):
            raise UnpackError(tarball, e) from e
        try:
            _tar_xf_fallback(tarball, dir_path)
        except tarfile.TarError as te:
            raise UnpackError(tarball, te) from te


def sha256_checksum(filename, buffersize=65536):
    if islink(filename) and not isfile(filename):
        # symlink to nowhere so an empty file
        # this is the sha256 hash of an empty file
        return "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    if not isfile(filename):
        return None
    sha256 = hashlib.sha256()
    with open(filename, "rb") as f:
        for block in iter(lambda: f.read(buffersize), b""):
            sha256.update(block)
    return sha256.hexdigest()


def _make_writable_and_retry(func, path, exc_info):
    os.chmod(path, stat.S_IWRITE | stat.S_IREAD | stat.S_IEXEC)
    func(path)


def rm_rf(path):
    if islink(path) or isfile(path):
        os.unlink(path)
    elif isdir(path):
        shutil.rmtree(path, onerror=_make_writable_and_retry)


def ensure_list(arg, include_dict=True):
    """
    Ensure the object is a list. If not return it in a list.

    :param arg: Object to ensure is a list
    :type arg: any
    :param include_dict: Whether to treat `dict` as a `list`
    :type include_dict: bool, optional
    :return: `arg` as a `list`
    :rtype: list
    """
    if arg is None:
        return []
    elif isinstance(arg, (list, tuple, set)) or (include_dict and isinstance(arg, dict)):
        return list(arg)
    else:
        return [arg]


def find_free_port(host="127.0.0.1"):
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


# https://stackoverflow.com/a/31459386/1170370
class LessThanFilter(logging.Filter):
    def __init__(self, exclusive_maximum, name=""):
        super().__init__(name)
        self.max_level = exclusive_maximum

    def filter(self, record):
        # non-zero return means we log this message
        return 1 if record.levelno < self.max_level else 0


class GreaterThanFilter(logging.Filter):
    def __init__(self, exclusive_minimum, name=""):
        super().__init__(name)
        self.min_level = exclusive_minimum

    def filter(self, record):
        # non-zero return means we log this message
        return 1 if record.levelno > self.min_level else 0


# unclutter logs - show messages only once
class DuplicateFilter(logging.Filter):
    def __init__(self):
        super().__init__()
        self.msgs = set()

    def filter(self, record):
        msg = record.getMessage()
        log = msg not in self.msgs
        self.msgs.add(msg)
        return int(log)


dedupe_filter = DuplicateFilter()
info_debug_stdout_filter = LessThanFilter(logging.WARNING)
warning_error_stderr_filter = GreaterThanFilter(logging.INFO)
level_formatter = logging.Formatter("%(levelname)s: %(message)s")
default_log_level = logging.INFO

# set filelock's logger to only show warnings by default
logging.getLogger("filelock").setLevel(logging.WARN)
logging.getLogger("urllib3.connectionpool").setLevel(logging.WARN)


def reset_deduplicator():
    """Most of the time, we want the deduplication.  There are some cases (tests especially)
    where we want to be able to control the duplication."""
    dedupe_filter.msgs.clear()


def set_log_level(level):
    """Change the level of every formula_build logger, and of those created later."""
    global default_log_level
    default_log_level = level
    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if name.split(".")[0] == "formula_build" and isinstance(logger, logging.Logger):
            logger.setLevel(level)
            for handler in logger.handlers:
                handler.setLevel(level)


def get_logger(name, level=None, dedupe=True, add_stdout_stderr_handlers=True):
    level = default_log_level if level is None else level
    config_file = None
    if cc_formula_build().get("log_config_file"):
        config_file = abspath(
            expanduser(expandvars(cc_formula_build().get("log_config_file")))
        )
    # by loading config file here, and then only adding handlers later, people
    # should be able to override formula-build's logger settings here.
    if config_file:
        with open(config_file) as f:
            config_dict = yaml.safe_load(f)
        logging.config.dictConfig(config_dict)
        level = config_dict.get("loggers", {}).get(name, {}).get("level", level)
    log = logging.getLogger(name)
    log.setLevel(level)
    if dedupe:
        log.addFilter(dedupe_filter)

    # these are defaults.  They can be overridden by configuring a log config yaml file.
    top_pkg = name.split(".")[0]
    if top_pkg == "formula_build":
        # we don't want propagation in CLI, but we do want it in tests
        # this is a pytest limitation: https://github.com/pytest-dev/pytest/issues/3697
        logging.getLogger(top_pkg).propagate = "PYTEST_CURRENT_TEST" in os.environ
    if add_stdout_stderr_handlers and not log.handlers:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stdout_handler.addFilter(info_debug_stdout_filter)
        stderr_handler.addFilter(warning_error_stderr_filter)
        stderr_handler.setFormatter(level_formatter)
        stdout_handler.setLevel(level)
        stderr_handler.setLevel(level)
        log.addHandler(stdout_handler)
        log.addHandler(stderr_handler)
    return log
