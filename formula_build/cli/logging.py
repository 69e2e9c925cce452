# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
from __future__ import annotations

import logging
import logging.config
import os
import os.path
from functools import lru_cache
from pathlib import Path

from yaml import safe_load

from ..utils import cc_formula_build, set_log_level


@lru_cache
def init_logging(level=logging.INFO) -> None:
    """
    Default initialization of logging for the formula-build CLI.

    When using formula-build as a CLI tool (not as a library) we wish to limit logging to
    avoid duplication and to otherwise offer some default behavior.  Handlers are added
    per module by ``formula_build.utils.get_logger``.

    This is a onetime initialization that should be called at the start of CLI execution.
    """
    logging.getLogger(None).setLevel(logging.WARNING)

    # load the logging configuration from the config file
    config_file = cc_formula_build().get("log_config_file")
    if config_file:
        config_file = Path(os.path.expandvars(config_file)).expanduser().resolve()
        logging.config.dictConfig(safe_load(config_file.read_text()))

    log = logging.getLogger("formula_build")
    log.setLevel(level)
    set_log_level(level)

    # we don't want propagation to the root logger in CLI, but we do want it in tests
    # this is a pytest limitation: https://github.com/pytest-dev/pytest/issues/3697
    log.propagate = "PYTEST_CURRENT_TEST" in os.environ
