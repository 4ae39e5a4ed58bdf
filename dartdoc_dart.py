#!/usr/bin/env python3
"""
Copyright 2025 7th software Ltd.

Licensed under the Apache License, Version 2.0 (the "License"); you may not use this file except in compliance with the
License. You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software distributed under the License is distributed on an
"AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the License for the specific
language governing permissions and limitations under the License.

This module locates function and method declarations in a Dart source file, asks a text-generation backend for a
documentation comment for each one, and splices the comments back into the original text.

# Highlights of Internal Workings

1. **Tree-sitter Setup**: the Dart grammar is loaded once from `tree_sitter_language_pack`.
2. **Source Model**: `AnalysisSession` normalises the input path, lists the files it analyses and parses each one on
   demand into a `ParsedUnit` (decoded text, raw bytes and the tree-sitter tree).
3. **Declaration Locator**: `locate_declarations` walks the tree top to bottom and builds a `Declaration` for every
   function and method. The range of a declaration starts at its first leading annotation, or at its return type when
   it has no annotations, and ends just after its closing brace or semicolon. The walk does not descend into the body
   of a declaration it has matched, so local functions are not reported and ranges never nest.
4. **Comment Generator**: `iter_docstrings` requests one comment per declaration, strictly one after another, and
   yields each reply as soon as it arrives.
5. **Rewriter**: `rewrite` copies the original text up to each declaration's start, emits the comment and a line
   terminator, and resumes copying from that same start, so the declaration itself follows its comment unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from dartdoc_llm import CompletionClient, DartdocError, PromptTemplate, DEFAULT_TEMPLATE, build_messages
from dartdoc_log import echo
from pathlib import Path
from tree_sitter import Language, Parser
from tree_sitter_language_pack import get_language
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple
import os


# ---- Tree-sitter setup ------------------------------------------------------


def _load_dart_language_and_parser() -> Tuple[Language, Parser]:
    """
    Load the Dart language and parser.

    Returns:
        A tuple containing the loaded `Language` instance and the initialised `Parser` instance.
    """

    lang: Any = get_language("dart")
    if not isinstance(lang, Language):
        lang = Language(lang)

    # Parser(Language) on current wheels, Parser().set_language(...) on older ones
    try:
        p = Parser(lang)
    except TypeError:
        p = Parser()
        p.set_language(lang)

    return lang, p


DART_LANGUAGE, DART_PARSER = _load_dart_language_and_parser()


# Node types of the tree-sitter Dart grammar that the locator cares about.
FUNCTION_SIGNATURES = ("function_signature", "getter_signature", "setter_signature")
METHOD_SIGNATURES = FUNCTION_SIGNATURES + ("operator_signature",)
ANNOTATIONS = ("annotation", "marker_annotation")
COMMENTS = ("comment", "documentation_comment")
MODIFIERS = ("external", "static", "abstract", "augment")
FUNCTION_BODY = "function_body"
SEMICOLON = ";"


# ---- Errors -----------------------------------------------------------------


class DeclarationShapeError(DartdocError):
    """Raised when a matched declaration lacks a node the locator relies on (name or return type)."""
    pass


class SourceSyntaxError(DeclarationShapeError):
    """Raised when the parser could not make sense of part of the source."""
    pass


# ---- Data model -------------------------------------------------------------


@dataclass(frozen=True)
class SourceRange:
    """
    Half-open `[begin, end)` span of character offsets into the original source text.
    """

    begin: int
    end: int

    def __post_init__(self) -> None:
        if self.begin < 0 or self.end < self.begin:
            raise ValueError(f"Invalid source range ({self.begin}, {self.end})")

    def __str__(self) -> str:
        return f"({self.begin}, {self.end})"


@dataclass(frozen=True)
class Declaration:
    """
    A located function or method.

    Attributes:
        name (str): The declaration's identifier (the operator symbol for operator methods).
        kind (str): "function" or "method".
        range (SourceRange): Where a comment is inserted (`begin`) and where the declaration ends (`end`).
    """

    name: str
    kind: str
    range: SourceRange


class DeclarationSequence(Sequence[Declaration]):
    """
    Declarations in the order the locator found them.

    The locator's single top-to-bottom walk yields ascending `begin` offsets. The sequence itself does not enforce this
    so that the rewriter's behaviour on any ordering stays observable; use `is_monotonic` and `has_overlaps` to check.
    """

    def __init__(self, declarations: Iterable[Declaration] = ()) -> None:
        self._items: Tuple[Declaration, ...] = tuple(declarations)

    def __getitem__(self, index):
        return self._items[index]

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"DeclarationSequence({list(self._items)!r})"

    def is_monotonic(self) -> bool:
        return all(a.range.begin <= b.range.begin for a, b in zip(self._items, self._items[1:]))

    def has_overlaps(self) -> bool:
        return any(a.range.end > b.range.begin for a, b in zip(self._items, self._items[1:]))


# ---- Source model -----------------------------------------------------------


@dataclass(frozen=True)
class ParsedUnit:
    """
    One parsed Dart file.

    Attributes:
        path (Optional[Path]): Where the source came from (`None` for in-memory sources).
        source (str): The decoded text. Undecodable bytes are kept as surrogate escapes so the text round-trips.
        source_bytes (bytes): The UTF-8 bytes tree-sitter parsed.
        tree (object): The tree-sitter tree.
    """

    path: Optional[Path]
    source: str
    source_bytes: bytes
    tree: object

    @property
    def root(self):
        return self.tree.root_node


def parse_source(source: str, path: Optional[Path] = None) -> ParsedUnit:
    """
    Parse Dart source text into a `ParsedUnit`.

    Parameters:
    - `source`: The Dart source code.
    - `path`: The file the source was read from, if any.

    Returns:
    - The parsed unit.
    """

    source_bytes = source.encode("utf-8", errors="surrogateescape")
    tree = DART_PARSER.parse(source_bytes)
    return ParsedUnit(path=path, source=source, source_bytes=source_bytes, tree=tree)


class AnalysisSession:
    """
    Parses the Dart files under one input path.

    The input path is made absolute and normalised. Units are parsed the first time they are asked for and cached.
    """

    def __init__(self, path) -> None:
        self.root = Path(os.path.normpath(os.path.abspath(os.fspath(path))))
        self._units: dict = {}

    def analyzed_files(self) -> List[Path]:
        """
        Return the files this session analyses: the input file itself, or nothing when it is not a file.
        """

        return [self.root] if self.root.is_file() else []

    def parsed_unit(self, path) -> ParsedUnit:
        """
        Return the parsed unit for `path`, reading and parsing it on first use.

        Raises:
        - `FileNotFoundError`: If the file does not exist.
        """

        key = Path(os.path.normpath(os.path.abspath(os.fspath(path))))
        unit = self._units.get(key)
        if unit is None:
            raw = key.read_bytes()
            unit = parse_source(raw.decode("utf-8", errors="surrogateescape"), key)
            self._units[key] = unit
        return unit


# ---- General utilities ------------------------------------------------------


def _row_of(point) -> int:
    """
    Return the 0-based row from a tree-sitter point (object with `.row`, or a `(row, column)` tuple).
    """

    try:
        return point.row
    except AttributeError:
        return point[0]


def _node_text(source_bytes: bytes, n) -> str:
    return source_bytes[n.start_byte:n.end_byte].decode("utf-8", errors="surrogateescape")


class _CharOffsets:
    """
    Converts tree-sitter byte offsets into character offsets of the decoded source.

    For non-ASCII sources a table mapping every byte offset to the index of the character it belongs to is built once.
    """

    def __init__(self, source_bytes: bytes) -> None:
        self._table: Optional[List[int]] = None
        if not source_bytes.isascii():
            text = source_bytes.decode("utf-8", errors="surrogateescape")
            table: List[int] = []
            for index, ch in enumerate(text):
                table.extend([index] * len(ch.encode("utf-8", errors="surrogateescape")))
            table.append(len(text))
            self._table = table

    def __call__(self, byte_offset: int) -> int:
        if self._table is None:
            return byte_offset
        return self._table[byte_offset]


# ---- Declaration locator ----------------------------------------------------


def _first_error_node(node):
    """
    Return the first `ERROR` or missing node in source order, or `None`.
    """

    if node.type == "ERROR" or node.is_missing:
        return node
    for c in node.children:
        if c.has_error or c.is_missing:
            found = _first_error_node(c)
            if found is not None:
                return found
    return None


def _first_child_of_type(n, types: Tuple[str, ...]):
    for c in n.children:
        if c.type in types:
            return c
    return None


def _match_declaration(node) -> Optional[Tuple[str, object]]:
    """
    Decide whether `node` starts a function or method declaration.

    Parameters:
    - `node`: A child node encountered during the walk.

    Returns:
    - A `(kind, signature)` tuple, where `signature` is the node carrying the name and return type, or `None`.

    Notes:
    - Class, mixin, extension and enum members wrap their signature in `method_signature` (with a body) or
      `declaration` (bodiless, e.g. abstract). Constructor signatures never match.
    """

    t = node.type
    if t in FUNCTION_SIGNATURES:
        return "function", node
    if t in ("method_signature", "declaration"):
        inner = _first_child_of_type(node, METHOD_SIGNATURES)
        if inner is not None:
            return "method", inner
    return None


def _terminator_index(children, index: int) -> Optional[int]:
    """
    Find the body or `;` that closes the declaration starting at `children[index]`.

    Returns:
    - The index of the terminating sibling, or `None` if the next non-comment sibling is neither.
    """

    for j in range(index + 1, len(children)):
        t = children[j].type
        if t in COMMENTS:
            continue
        if t == SEMICOLON:
            return j
        if t == FUNCTION_BODY:
            return _expression_body_end(children, j)
        return None
    return None


def _expression_body_end(children, j: int) -> int:
    # An `=> expr` body whose `;` the grammar left outside the body node ends at that sibling `;`.
    body = children[j]
    last = body.children[-1] if body.children else None
    if last is not None and last.type in (SEMICOLON, "block"):
        return j
    if j + 1 < len(children) and children[j + 1].type == SEMICOLON:
        return j + 1
    return j


def _name_node(signature):
    """
    Return the node holding a signature's name.

    The `name` field is used when the grammar provides it; otherwise the token after `get`/`set`/`operator`, and
    finally the last identifier before the parameter list.
    """

    n = signature.child_by_field_name("name")
    if n is not None:
        return n

    children = signature.children
    for i, c in enumerate(children[:-1]):
        if c.type in ("get", "set", "operator"):
            return children[i + 1]

    ident = None
    for c in children:
        if c.type in ("formal_parameter_list", "type_parameters"):
            break
        if c.type == "identifier":
            ident = c
    return ident


def _return_type_node(signature, name_node):
    """
    Return the first node of the signature's return type, or `None` if it has none.

    The return type is whatever named node precedes the name (or the `operator` keyword) inside the signature.
    """

    for c in signature.children:
        if c.start_byte >= name_node.start_byte or c.type == "operator":
            break
        if c.is_named and c.type not in COMMENTS + ANNOTATIONS + MODIFIERS:
            return c
    return None


def _leading_annotations(node) -> List[object]:
    """
    Collect the annotations attached to a declaration, in source order.

    Annotations are the run of `@...` siblings immediately preceding the declaration (comments and modifier keywords
    in between are skipped), plus any annotations the grammar nests as the declaration's own first children.
    """

    before: List[object] = []
    prev = node.prev_sibling
    while prev is not None:
        if prev.type in ANNOTATIONS:
            before.append(prev)
        elif prev.type not in COMMENTS + MODIFIERS:
            break
        prev = prev.prev_sibling
    before.reverse()

    inside: List[object] = []
    for c in node.children:
        if c.type in ANNOTATIONS:
            inside.append(c)
        elif c.type not in COMMENTS:
            break

    return before + inside


def _make_declaration(unit: ParsedUnit, offsets: _CharOffsets, kind: str, node, signature, terminator) -> Declaration:
    """
    Build the `Declaration` for one matched node.

    Parameters:
    - `unit`: The parsed unit being walked.
    - `offsets`: Byte to character offset converter for the unit.
    - `kind`: "function" or "method".
    - `node`: The matched node (the signature itself, or its `method_signature`/`declaration` wrapper).
    - `signature`: The function, getter, setter or operator signature.
    - `terminator`: The `function_body` or `;` closing the declaration.

    Raises:
    - `DeclarationShapeError`: If the signature has no name or no return type.
    """

    line = _row_of(signature.start_point) + 1

    name_node = _name_node(signature)
    if name_node is None:
        raise DeclarationShapeError(f"Unnamed {kind} declaration at line {line}")
    name = _node_text(unit.source_bytes, name_node)

    return_type = _return_type_node(signature, name_node)
    if return_type is None:
        raise DeclarationShapeError(
            f"The {kind} '{name}' at line {line} has no return type; add one so its comment can be placed"
        )

    annotations = _leading_annotations(node)
    begin = annotations[0].start_byte if annotations else return_type.start_byte
    end = terminator.end_byte

    return Declaration(name=name, kind=kind, range=SourceRange(offsets(begin), offsets(end)))


def locate_declarations(unit: ParsedUnit) -> DeclarationSequence:
    """
    Find every function and method declaration in a parsed unit.

    The tree is walked depth-first, top to bottom, so the result is ordered by ascending start offset. Bodies of
    matched declarations are not walked into.

    Parameters:
    - `unit`: The parsed Dart unit.

    Returns:
    - The located declarations.

    Raises:
    - `SourceSyntaxError`: If the tree contains syntax errors; no range is computed from a misparsed tree.
    - `DeclarationShapeError`: If a matched declaration has no name or no return type.
    """

    if unit.root.has_error:
        bad = _first_error_node(unit.root)
        line = _row_of(bad.start_point) + 1 if bad is not None else 1
        what = f"missing '{bad.type}'" if bad is not None and bad.is_missing else "unsupported or invalid syntax"
        raise SourceSyntaxError(f"Cannot parse {unit.path or 'source'}: {what} at line {line}")

    offsets = _CharOffsets(unit.source_bytes)
    found: List[Declaration] = []

    def walk(node) -> None:
        children = node.children
        i = 0
        while i < len(children):
            child = children[i]
            match = _match_declaration(child)
            j = _terminator_index(children, i) if match else None
            if j is None:
                walk(child)
                i += 1
                continue

            kind, signature = match
            found.append(_make_declaration(unit, offsets, kind, child, signature, children[j]))
            i = j + 1

    walk(unit.root)
    return DeclarationSequence(found)


def process(input_path) -> Tuple[Optional[ParsedUnit], DeclarationSequence]:
    """
    Locate the declarations of the first file analysed for `input_path`.

    Only one file is ever processed per run; further analysed files are ignored.

    Returns:
    - The parsed unit and its declarations, or `(None, DeclarationSequence())` if there is nothing to analyse.
    """

    session = AnalysisSession(input_path)
    for path in session.analyzed_files():
        unit = session.parsed_unit(path)
        return unit, locate_declarations(unit)
    return None, DeclarationSequence()


# ---- Comment generator ------------------------------------------------------


def generate_docstring(client: CompletionClient, template: PromptTemplate, name: str, procedure: str) -> str:
    """
    Request a documentation comment for one declaration.

    Parameters:
    - `client`: The backend client.
    - `template`: Preamble and few-shot examples.
    - `name`: The declaration's name.
    - `procedure`: The declaration's exact source text.

    Returns:
    - The backend's reply, verbatim.

    Raises:
    - `BackendError`: If the request fails.
    """

    echo(f"looking up {name}")
    return client.generate(build_messages(template, name, procedure))


def iter_docstrings(
    client: CompletionClient,
    source: str,
    declarations: Iterable[Declaration],
    template: PromptTemplate = DEFAULT_TEMPLATE,
) -> Iterator[str]:
    """
    Yield one generated comment per declaration, in order.

    Each request is only issued when the previous comment has been consumed, so a failure stops the run before any
    later declaration is requested.
    """

    for decl in declarations:
        procedure = source[decl.range.begin:decl.range.end]
        yield generate_docstring(client, template, decl.name, procedure)


# ---- Rewriter ---------------------------------------------------------------


def rewrite(source: str, declarations: Sequence[Declaration], comments: Iterable[str], line_ending: str = "\n") -> str:
    """
    Insert each comment immediately before its declaration.

    For every declaration in the given order the text from the cursor up to `range.begin` is copied, then the comment
    and `line_ending` are emitted, and the cursor is set to `range.begin`. The rest of the text is copied at the end.
    Declarations are not reordered: if a `begin` lies before the cursor nothing is copied for that gap and the text
    from that `begin` onwards is copied again at the end.

    Parameters:
    - `source`: The original text.
    - `declarations`: The declarations, normally as returned by `locate_declarations`.
    - `comments`: One comment per declaration, consumed lazily.
    - `line_ending`: Terminator written after each comment.

    Returns:
    - The rewritten text.

    Raises:
    - `ValueError`: If a range ends past the end of `source`, or there are fewer comments than declarations.
    """

    stream = iter(comments)
    parts: List[str] = []
    cursor = 0

    for decl in declarations:
        r = decl.range
        if r.end > len(source):
            raise ValueError(f"Range {r} of '{decl.name}' is outside the source (length {len(source)})")

        parts.append(source[cursor:r.begin])
        try:
            comment = next(stream)
        except StopIteration:
            raise ValueError(f"No comment supplied for '{decl.name}'") from None
        parts.append(comment)
        parts.append(line_ending)
        cursor = r.begin

    parts.append(source[cursor:])
    return "".join(parts)


# ---- Orchestrator -----------------------------------------------------------


def generate_language_comments(
    client: CompletionClient,
    unit: ParsedUnit,
    declarations: Optional[DeclarationSequence] = None,
    template: PromptTemplate = DEFAULT_TEMPLATE,
    line_ending: str = "\n",
) -> str:
    """
    Generate comments for every declaration of a unit and return the rewritten source.

    Parameters:
    - `client`: The backend client.
    - `unit`: The parsed Dart unit.
    - `declarations`: Pre-located declarations (located from `unit` when omitted).
    - `template`: Preamble and few-shot examples.
    - `line_ending`: Terminator written after each comment.

    Returns:
    - The rewritten source text.
    """

    if declarations is None:
        echo("Parsing Dart source with Tree-sitter...")
        declarations = locate_declarations(unit)
    echo(f"Found {len(declarations)} Dart declarations")

    comments = iter_docstrings(client, unit.source, declarations, template)
    return rewrite(unit.source, declarations, comments, line_ending)
