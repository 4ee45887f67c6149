"""Structural reader and writer for the runtime composition file.

The composition file is a CLI-owned TypeScript module that wires capability
symbols (providers, wrappers, init hooks, bindings) into the app runtime.
Edits happen only between marker comments::

    // @rns-marker:providers:start
    // @rns-owner id=auth.firebase kind=provider order=10 module=@rns/plugin-auth export=AuthProvider
    composition.providers.push({ id: "auth.firebase", symbol: AuthProvider, order: 10 });
    // @rns-marker:providers:end

The file is tokenised (comments, string and template literals, brackets) so
that marker and owner comments are recognised as comment tokens, statements
that span several lines stay one unit, and unbalanced input is rejected
instead of being edited blindly.  A tokenizer keeps the dependency set small
compared to a full TypeScript grammar such as tree-sitter-typescript; it
covers the subset the composition file uses and does not recognise regex
literals.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from rns.errors import CompositionParseError

MARKER_RE = re.compile(r"^//\s*@rns-marker:([A-Za-z0-9_-]+):(start|end)\s*$")
OWNER_RE = re.compile(r"^//\s*@rns-owner\b(.*)$")
_WORD_RE = re.compile(r"[A-Za-z0-9_$]")
_PAIRS = {")": "(", "]": "[", "}": "{"}


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@dataclass
class Token:
    """A lexical token.  ``line`` and ``end_line`` are 0-based line indexes."""

    kind: str
    text: str
    line: int
    end_line: int


def tokenize(source: str) -> list[Token]:
    """Split *source* into tokens, skipping whitespace.

    Raises:
        CompositionParseError: On unterminated strings, comments or template
            literals, and on unbalanced brackets.
    """
    tokens: list[Token] = []
    stack: list[tuple[str, int]] = []
    i = 0
    n = len(source)
    line = 0

    while i < n:
        ch = source[i]
        if ch == "\n":
            line += 1
            i += 1
            continue
        if ch in " \t\r\f\v":
            i += 1
            continue

        if source.startswith("//", i):
            j = source.find("\n", i)
            j = n if j == -1 else j
            tokens.append(Token("line_comment", source[i:j].rstrip("\r"), line, line))
            i = j
            continue

        if source.startswith("/*", i):
            j = source.find("*/", i + 2)
            if j == -1:
                raise CompositionParseError(f"Unterminated block comment at line {line + 1}")
            text = source[i:j + 2]
            tokens.append(Token("block_comment", text, line, line + text.count("\n")))
            line += text.count("\n")
            i = j + 2
            continue

        if ch in "'\"`":
            j = i + 1
            while j < n and source[j] != ch:
                if source[j] == "\\":
                    j += 2
                    continue
                if source[j] == "\n" and ch != "`":
                    raise CompositionParseError(f"Unterminated string literal at line {line + 1}")
                j += 1
            if j >= n:
                raise CompositionParseError(f"Unterminated string literal at line {line + 1}")
            text = source[i:j + 1]
            kind = "template" if ch == "`" else "string"
            tokens.append(Token(kind, text, line, line + text.count("\n")))
            line += text.count("\n")
            i = j + 1
            continue

        if ch in "([{":
            stack.append((ch, line))
            tokens.append(Token("open", ch, line, line))
            i += 1
            continue

        if ch in ")]}":
            if not stack or stack[-1][0] != _PAIRS[ch]:
                raise CompositionParseError(f"Unbalanced '{ch}' at line {line + 1}")
            stack.pop()
            tokens.append(Token("close", ch, line, line))
            i += 1
            continue

        if _WORD_RE.match(ch):
            j = i + 1
            while j < n and _WORD_RE.match(source[j]):
                j += 1
            tokens.append(Token("word", source[i:j], line, line))
            i = j
            continue

        tokens.append(Token("punct", ch, line, line))
        i += 1

    if stack:
        opener, opened_at = stack[-1]
        raise CompositionParseError(f"Unclosed '{opener}' opened at line {opened_at + 1}")
    return tokens


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------


def parse_owner_tag(comment: str) -> dict[str, str] | None:
    """Parse ``// @rns-owner key=value ...`` into a dict, or ``None``."""
    match = OWNER_RE.match(comment.strip())
    if not match:
        return None
    tags: dict[str, str] = {}
    for part in match.group(1).split():
        key, sep, value = part.partition("=")
        if sep:
            tags[key] = value
    return tags


@dataclass
class BlockItem:
    """One statement (or comment, or blank line) inside a marker block."""

    lines: list[str]
    start: int = 0
    words: set[str] = field(default_factory=set)
    owner: dict[str, str] | None = None

    @property
    def text(self) -> str:
        return "".join(self.lines)

    @property
    def end(self) -> int:
        return self.start + len(self.lines)

    @property
    def is_blank(self) -> bool:
        return not self.text.strip()


@dataclass
class MarkerBlock:
    name: str
    start_line: int
    end_line: int
    indent: str
    items: list[BlockItem]

    def owned(self) -> list[BlockItem]:
        return [item for item in self.items if item.owner is not None]

    def unowned(self) -> list[BlockItem]:
        return [item for item in self.items if item.owner is None]

    def words(self) -> set[str]:
        found: set[str] = set()
        for item in self.items:
            found |= item.words
        return found


@dataclass
class ImportDecl:
    """``import { a, b as c } from "module"`` reduced to what wiring needs."""

    module: str
    bindings: set[tuple[str, str]]
    line: int

    def imports(self, export_name: str, local_name: str | None = None) -> bool:
        return (export_name, local_name or export_name) in self.bindings


@dataclass
class CompositionDocument:
    lines: list[str]
    blocks: dict[str, MarkerBlock]
    imports: list[ImportDecl]

    def block(self, name: str) -> MarkerBlock:
        try:
            return self.blocks[name]
        except KeyError:
            raise CompositionParseError(
                f"Marker block '{name}' not found (expected "
                f"'// @rns-marker:{name}:start' ... '// @rns-marker:{name}:end')"
            ) from None

    def has_import(
        self, module: str, export_name: str, *, ignore_owned_in: str | None = None
    ) -> bool:
        """True if *export_name* is imported from *module* anywhere in the file.

        With *ignore_owned_in*, declarations that are owned entries of that
        marker block (generated imports) do not count.
        """
        owned_ranges: list[range] = []
        if ignore_owned_in and ignore_owned_in in self.blocks:
            owned_ranges = [
                range(item.start, item.end) for item in self.blocks[ignore_owned_in].owned()
            ]
        for decl in self.imports:
            if any(decl.line in span for span in owned_ranges):
                continue
            if decl.module == module and decl.imports(export_name):
                return True
        return False

    def render(self, bodies: dict[str, list[str]]) -> str:
        """Return the source with each named block's body replaced.

        Lines outside the replaced bodies, including the markers, are kept
        byte for byte.
        """
        out: list[str] = []
        replaced = {self.block(name).start_line: name for name in bodies}
        skip_until = -1
        for index, line in enumerate(self.lines):
            if index < skip_until:
                continue
            out.append(line)
            if index in replaced:
                block = self.blocks[replaced[index]]
                if not line.endswith("\n"):
                    out[-1] = line + "\n"
                out.extend(bodies[block.name])
                skip_until = block.end_line
        return "".join(out)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_imports(tokens: list[Token], first_on_line: set[int]) -> list[ImportDecl]:
    decls: list[ImportDecl] = []
    depth = 0
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok.kind == "open":
            depth += 1
        elif tok.kind == "close":
            depth -= 1
        is_import = (
            tok.kind == "word" and tok.text == "import" and depth == 0 and id(tok) in first_on_line
        )
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        # import("x") and import.meta are expressions, not declarations.
        if not is_import or nxt is None or nxt.text in ("(", "."):
            i += 1
            continue
        decl, i = _parse_import_at(tokens, i)
        decls.append(decl)
    return decls


def _parse_import_at(tokens: list[Token], start: int) -> tuple[ImportDecl, int]:
    line = tokens[start].line
    bindings: set[tuple[str, str]] = set()
    j = start + 1
    if tokens[j].kind == "word" and tokens[j].text == "type":
        j += 1
    while j < len(tokens):
        tok = tokens[j]
        if tok.kind == "string":
            return ImportDecl(module=tok.text[1:-1], bindings=bindings, line=line), j + 1
        if tok.kind == "punct" and tok.text == "*":
            if j + 2 < len(tokens) and tokens[j + 1].text == "as":
                bindings.add(("*", tokens[j + 2].text))
            j += 3
            continue
        if tok.kind == "open" and tok.text == "{":
            j += 1
            words: list[str] = []
            while tokens[j].text != "}":
                if tokens[j].text == ",":
                    if words:
                        bindings.add(_binding(words))
                    words = []
                elif tokens[j].kind == "word":
                    words.append(tokens[j].text)
                j += 1
            if words:
                bindings.add(_binding(words))
            j += 1
            continue
        if tok.kind == "word" and tok.text != "from":
            bindings.add(("default", tok.text))
        elif tok.kind not in ("word", "punct"):
            break
        j += 1
    raise CompositionParseError(f"Import at line {line + 1} has no module specifier")


def _binding(words: list[str]) -> tuple[str, str]:
    """``["a"]`` -> ("a", "a"); ``["a", "as", "b"]`` -> ("a", "b")."""
    if words[0] == "type" and len(words) > 1:
        words = words[1:]
    if len(words) >= 3 and words[-2] == "as":
        return (words[0], words[-1])
    return (words[0], words[0])


def _parse_block_items(
    lines: list[str], tokens_by_line: dict[int, list[Token]], start: int, end: int, name: str
) -> list[BlockItem]:
    items: list[BlockItem] = []
    current: list[str] = []
    item_start = start
    words: set[str] = set()
    depth = 0
    continue_until = -1

    for index in range(start, end):
        line_tokens = tokens_by_line.get(index, [])
        if not current:
            item_start = index
        current.append(lines[index])
        for tok in line_tokens:
            if tok.kind == "open":
                depth += 1
            elif tok.kind == "close":
                depth -= 1
            elif tok.kind == "word":
                words.add(tok.text)
            continue_until = max(continue_until, tok.end_line)
        if depth == 0 and index >= continue_until:
            items.append(BlockItem(lines=current, start=item_start, words=words))
            current, words = [], set()

    if current:
        raise CompositionParseError(
            f"Statement in marker block '{name}' is not closed before its end marker "
            f"(line {end + 1})"
        )

    # Attach owner comments to the statement that follows them.
    paired: list[BlockItem] = []
    pending: dict[str, str] | None = None
    pending_item: BlockItem | None = None
    for item in items:
        tag = parse_owner_tag(item.text) if len(item.lines) == 1 else None
        if tag is not None:
            pending, pending_item = tag, item
            continue
        if pending is not None and pending_item is not None:
            if item.is_blank:
                pending = pending_item = None
                paired.append(item)
                continue
            paired.append(
                BlockItem(
                    lines=pending_item.lines + item.lines,
                    start=pending_item.start,
                    words=item.words,
                    owner=pending,
                )
            )
            pending = pending_item = None
            continue
        paired.append(item)
    return paired


def parse_composition(source: str) -> CompositionDocument:
    """Parse the composition file into marker blocks and import declarations.

    Raises:
        CompositionParseError: On lexical errors, unmatched, nested or
            duplicated markers, or statements that straddle a marker.
    """
    tokens = tokenize(source)
    lines = source.splitlines(keepends=True)
    tokens_by_line: dict[int, list[Token]] = {}
    for tok in tokens:
        tokens_by_line.setdefault(tok.line, []).append(tok)

    blocks: dict[str, MarkerBlock] = {}
    open_marker: tuple[str, int] | None = None
    for tok in tokens:
        if tok.kind != "line_comment":
            continue
        match = MARKER_RE.match(tok.text.strip())
        if not match:
            continue
        if tokens_by_line[tok.line][0] is not tok:
            raise CompositionParseError(
                f"Marker at line {tok.line + 1} must be on its own line"
            )
        name, edge = match.group(1), match.group(2)
        if edge == "start":
            if open_marker is not None:
                raise CompositionParseError(
                    f"Marker '{name}' at line {tok.line + 1} opens inside block '{open_marker[0]}'"
                )
            if name in blocks:
                raise CompositionParseError(f"Duplicate marker block '{name}'")
            open_marker = (name, tok.line)
            continue
        if open_marker is None or open_marker[0] != name:
            raise CompositionParseError(
                f"End marker '{name}' at line {tok.line + 1} has no matching start"
            )
        start_line = open_marker[1]
        start_text = lines[start_line]
        indent = start_text[: len(start_text) - len(start_text.lstrip())]
        blocks[name] = MarkerBlock(
            name=name,
            start_line=start_line,
            end_line=tok.line,
            indent=indent,
            items=_parse_block_items(lines, tokens_by_line, start_line + 1, tok.line, name),
        )
        open_marker = None

    if open_marker is not None:
        raise CompositionParseError(
            f"Marker block '{open_marker[0]}' opened at line {open_marker[1] + 1} is never closed"
        )

    first_on_line = {id(line_tokens[0]) for line_tokens in tokens_by_line.values()}
    return CompositionDocument(
        lines=lines, blocks=blocks, imports=_parse_imports(tokens, first_on_line)
    )
