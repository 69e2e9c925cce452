# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause

__version__ = "0.1.0"

__all__ = ["__version__"]
