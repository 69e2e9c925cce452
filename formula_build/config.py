# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
"""
Module to store formula build settings.
"""

import copy
import os
import time
from collections import namedtuple
from os.path import abspath, expanduser, expandvars, join

from .utils import cc_formula_build, get_logger, rm_rf

invocation_time = ""


def set_invocation_time():
    global invocation_time
    invocation_time = str(int(time.time() * 1000))


set_invocation_time()


# Don't "save" an attribute of this module for later, like build_prefix =
# formula_build.config.config.build_prefix, as that won't reflect any mutated
# changes.

_src_cache_root_default = None
ready_timeout_default = 30
grace_period_default = 0

Setting = namedtuple("ConfigSetting", "name, default")


def _get_default_settings():
    return [
        Setting("verbose", True),
        Setting("debug", False),
        Setting("quiet", False),
        Setting("timeout", 900),
        Setting("locking", True),
        Setting("set_build_id", True),
        Setting("keep_old_work", False),
        Setting(
            "_src_cache_root",
            abspath(expanduser(expandvars(cc_formula_build().get("cache_dir"))))
            if cc_formula_build().get("cache_dir")
            else _src_cache_root_default,
        ),
        Setting("_prefix", None),
        # these override the native build platform, which is useful in tests and
        #     for rendering a recipe for another machine.
        Setting("host_platform", None),
        # seconds the acceptance test waits for the server to accept connections
        Setting(
            "ready_timeout",
            float(cc_formula_build().get("ready_timeout", ready_timeout_default)),
        ),
        # fixed wait before probing, for servers that listen before they are usable
        Setting(
            "grace_period",
            float(cc_formula_build().get("grace_period", grace_period_default)),
        ),
        Setting("make", cc_formula_build().get("make", "make")),
        Setting("patch", cc_formula_build().get("patch", None)),
        Setting("cpu_count", os.cpu_count() or 1),
    ]


class Config:
    def __init__(self, **kwargs):
        super().__init__()
        self._build_id = ""
        self._pkg_name = None
        self._pkg_version = None
        self.set_keys(**kwargs)
        if self._src_cache_root:
            self._src_cache_root = os.path.expanduser(self._src_cache_root)

    def _set_attribute_from_kwargs(self, kwargs, attr, default):
        value = kwargs.get(
            attr, getattr(self, attr) if hasattr(self, attr) else default
        )
        setattr(self, attr, value)
        if attr in kwargs:
            del kwargs[attr]

    def set_keys(self, **kwargs):
        self._build_id = kwargs.pop("build_id", getattr(self, "_build_id", ""))
        source_cache = kwargs.pop("cache_dir", None)
        croot = kwargs.pop("croot", None)
        prefix = kwargs.pop("prefix", None)

        if source_cache:
            self._src_cache_root = os.path.abspath(
                os.path.normpath(os.path.expanduser(source_cache))
            )
        if croot:
            self._croot = os.path.abspath(os.path.normpath(os.path.expanduser(croot)))
        else:
            # set default value (not actually None)
            self._croot = getattr(self, "_croot", None)
        if prefix:
            kwargs["_prefix"] = os.path.abspath(os.path.expanduser(prefix))

        # handle known values better than unknown (allow defaults)
        for value in _get_default_settings():
            self._set_attribute_from_kwargs(kwargs, value.name, value.default)

        # dangle remaining keyword arguments as attributes on this class
        for name, value in kwargs.items():
            setattr(self, name, value)

    @property
    def croot(self):
        """This is where source caches and work folders live"""
        if not self._croot:
            _bld_root_env = os.getenv("FORMULA_BLD_PATH")
            _bld_root_rc = cc_formula_build().get("root-dir")
            if _bld_root_env:
                self._croot = abspath(expanduser(_bld_root_env))
            elif _bld_root_rc:
                self._croot = abspath(expanduser(expandvars(_bld_root_rc)))
            else:
                self._croot = abspath(expanduser("~/formula-bld"))
        return self._croot

    @croot.setter
    def croot(self, croot):
        """Set croot - if None is passed, then the default value will be used"""
        self._croot = croot

    @property
    def src_cache_root(self):
        return self._src_cache_root if self._src_cache_root else self.croot

    @src_cache_root.setter
    def src_cache_root(self, value):
        self._src_cache_root = value

    @property
    def src_cache(self):
        path = join(self.src_cache_root, "src_cache")
        os.makedirs(path, exist_ok=True)
        return path

    @property
    def build_id(self):
        """This is a per-build (almost) unique id, consisting of the package
        name and a timestamp."""
        return self._build_id

    @build_id.setter
    def build_id(self, _build_id):
        _build_id = _build_id.rstrip("/").rstrip("\\")
        self._build_id = _build_id

    def compute_build_id(self, package_name, pkg_version=None, reset=False):
        self._pkg_name = package_name
        self._pkg_version = pkg_version
        if self.set_build_id and (not self._build_id or reset):
            self._build_id = "_".join((package_name, invocation_time))
            if os.path.isdir(self.build_folder) and not self.keep_old_work:
                log = get_logger(__name__)
                log.debug("Removing stale build folder %s", self.build_folder)
                rm_rf(self.build_folder)
        return self._build_id

    @property
    def build_folder(self):
        """This is the core folder for a given build.
        It has the private prefix, the resources and the work directory."""
        return join(self.croot, self.build_id)

    @property
    def work_dir(self):
        return join(self.build_folder, "work")

    @property
    def resources_dir(self):
        return join(self.build_folder, "resources")

    @property
    def build_prefix(self):
        """Private prefix that staged resources install into."""
        return join(self.build_folder, "_build_env")

    @property
    def test_dir(self):
        """The temporary folder where the acceptance test runs."""
        return join(self.build_folder, "test_tmp")

    @property
    def prefix(self):
        """Where the package is installed."""
        if self._prefix:
            return self._prefix
        if not self._pkg_name:
            raise ValueError("prefix is unknown until compute_build_id() has been called")
        return join(self.croot, "Cellar", self._pkg_name, self._pkg_version or "")

    @prefix.setter
    def prefix(self, value):
        self._prefix = value

    @property
    def prefix_is_default(self):
        """True when the prefix is the per-version Cellar keg this build owns."""
        return not self._prefix

    def copy(self):
        new = copy.copy(self)
        return new


def get_or_merge_config(config, **kwargs):
    """Always returns a new object - never changes the config that might be passed in."""
    if not config:
        config = Config(**kwargs)
    else:
        # config always is a copy.  We don't want to mutate the user's config,
        # which may be used elsewhere.
        config = config.copy()
        if kwargs:
            config.set_keys(**kwargs)
    return config
