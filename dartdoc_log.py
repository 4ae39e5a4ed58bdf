#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

Progress and error output for dartdoc.

`echo` writes progress messages (the "looking up <name>" line emitted before every backend request, the number of
declarations found, and so on) to stdout while verbosity is enabled. `error` writes diagnostics to stderr regardless
of verbosity, so a fatal backend failure is always reported. `set_verbosity` toggles the module-level `VERBOSE` flag;
the CLI turns it on unless `DARTDOC_QUIET` is set.
"""

from __future__ import annotations

import os
import sys


VERBOSE = False


def echo(*args, **kwargs):
    """
    Print a progress line (declarations found, "looking up <name>", output written) while verbosity is on.

    Output is flushed immediately so each line appears before the backend request it announces blocks.
    """

    if VERBOSE:
        kwargs["flush"] = True
        print(*args, **kwargs)


def error(*args, **kwargs):
    """
    Print a diagnostic to stderr, whatever the verbosity. Used for fatal backend and parse failures.
    """

    msg = " ".join(str(a) for a in args)
    sys.stderr.write(msg + "\n")
    sys.stderr.flush()


def set_verbosity(state: bool):
    global VERBOSE

    VERBOSE = state


def quiet_requested() -> bool:
    """
    Return `True` when the `DARTDOC_QUIET` environment variable asks for progress output to be suppressed.
    """

    value = os.getenv("DARTDOC_QUIET", "").strip().lower()
    return value in ("1", "true", "yes", "on")
