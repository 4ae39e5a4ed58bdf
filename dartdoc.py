#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

dartdoc adds generated documentation comments to the functions and methods of a Dart source file.

It is run with an API key and the path of one Dart file. After the user confirms that the source code may be sent to
the remote text-generation service, every function and method declaration is located, a comment is requested for
each one in turn, and the rewritten source is written to `output.dart` in the current directory. The input file is
never modified.

Generation settings can be overridden with `DARTDOC_*` environment variables (see `dartdoc_llm.GenerationConfig`), and
progress output silenced with `DARTDOC_QUIET=1`.
"""

from __future__ import annotations

from dartdoc_dart import generate_language_comments, process
from dartdoc_llm import CompletionClient, DartdocError, GenerationConfig, PromptTemplate, DEFAULT_TEMPLATE
from dartdoc_log import echo, error, quiet_requested, set_verbosity
from pathlib import Path
from typing import Optional, Sequence, TextIO
import argparse
import sys


USAGE = "dartdoc <openai api key> <path to dart file>"

WARNING = """\
WARNING: You are about to submit source code to OpenAI's servers.

Proceed? [N\\y]"""

OUTPUT_NAME = "output.dart"


# ---------------------------- CLI harness ----------------------------


def detect_line_ending(source_blob: str) -> str:
    """
    Return the most common line ending of a source text ('\n', '\r' or '\r\n').
    """

    count_rn = source_blob.count("\r\n")
    count_r = source_blob.count("\r") - count_rn  # bare \r not part of \r\n
    count_n = source_blob.count("\n") - count_rn  # bare \n not part of \r\n

    if count_rn > max(count_r, count_n):
        return "\r\n"
    return "\r" if count_r > count_n else "\n"


def confirm(stdin: Optional[TextIO] = None) -> bool:
    """
    Read one line from stdin and return `True` only if it starts with a lowercase 'y'.
    """

    stream = stdin if stdin is not None else sys.stdin
    line = stream.readline()
    return line[:1] == "y"


def generate_comments(
    client: CompletionClient,
    src_path: Path,
    dst_path: Path,
    template: PromptTemplate = DEFAULT_TEMPLATE,
) -> int:
    """
    Generate comments for one Dart file and write the result.

    Parameters:
    - `client`: The backend client.
    - `src_path`: The Dart file to annotate.
    - `dst_path`: Where the rewritten source is written.
    - `template`: Preamble and few-shot examples.

    Returns:
    - 0 if the operation was successful, or an error number.

    Raises:
    - `DartdocError`: If a declaration cannot be located or the backend fails. Nothing is written in that case.
    """

    echo(f"Loading source file '{str(src_path)}'...")
    if not src_path.is_file():
        error(f"Error: file not found: {src_path}")
        return 1

    unit, declarations = process(src_path)
    if unit is None:
        error(f"Error: nothing to analyse in {src_path}")
        return 1

    line_ending = detect_line_ending(unit.source)
    new_source = generate_language_comments(client, unit, declarations, template, line_ending)

    dst_path.write_bytes(new_source.encode("utf-8", errors="surrogateescape"))
    echo(f"Updated source written to {dst_path}")
    return 0


class _UsageError(Exception):
    pass


class _ArgumentParser(argparse.ArgumentParser):
    # Any argument mismatch is reported with the one-line usage, not argparse's error exit.
    def error(self, message):
        raise _UsageError(message)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Parameters:
    - argv: Optional list of strings to parse. If not provided, sys.argv[1:] is used.

    Returns:
    - An argparse.Namespace with `api_key` and `source`.

    Raises:
    - `_UsageError`: If the arguments are not exactly an API key and a source path.
    """

    p = _ArgumentParser(prog="dartdoc", usage=USAGE, add_help=False,
                        description="Add generated documentation comments to a Dart source file")
    p.add_argument("api_key", help="API key for the text-generation service")
    p.add_argument("source", help="Path to the Dart source file")

    # "--" keeps keys or paths starting with '-' positional; only the argument count matters.
    argv = sys.argv[1:] if argv is None else list(argv)
    return p.parse_args(["--", *argv])


def main(argv: Optional[Sequence[str]] = None, stdin: Optional[TextIO] = None) -> int:
    """
    Main entry point.

    Parameters:
    - argv: Optional sequence of command-line arguments (defaults to sys.argv[1:]).
    - stdin: Optional stream the confirmation is read from (defaults to sys.stdin).

    Returns:
    - 0 on success, on a usage error and when the user declines; 1 on a fatal error.
    """

    try:
        args = _parse_args(argv)
    except _UsageError:
        print(USAGE)
        return 0

    print(WARNING, flush=True)
    if not confirm(stdin):
        return 0

    set_verbosity(not quiet_requested())

    try:
        cfg = GenerationConfig.from_env()
    except ValueError as e:
        error(f"Error: {e}")
        return 1

    src_path = Path(args.source)
    dst_path = Path.cwd() / OUTPUT_NAME

    try:
        with CompletionClient(args.api_key, cfg) as client:
            return generate_comments(client, src_path, dst_path)
    except DartdocError as e:
        error(f"Error: {e}")
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
