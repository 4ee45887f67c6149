"""Unit tests for the composition file reader/writer (rns.modulator.composition).

Tests cover:
- Tokenizer: comments, strings, templates, brackets, lexical errors
- Marker block discovery and marker errors
- Statement grouping (multi-line statements, owner comments)
- Import declaration parsing and has_import
- render() keeping every other byte intact
"""

from __future__ import annotations

import textwrap

import pytest

from rns.errors import CompositionParseError
from rns.modulator.composition import (
    parse_composition,
    parse_owner_tag,
    tokenize,
)

from conftest import COMPOSITION_SOURCE


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

class TestTokenize:
    @pytest.mark.unit
    def test_kinds(self):
        tokens = tokenize('import { A } from "m"; // note\n/* block */ `t${x}`;')
        kinds = [t.kind for t in tokens]
        assert kinds == [
            "word", "open", "word", "close", "word", "string", "punct",
            "line_comment", "block_comment", "template", "punct",
        ]

    @pytest.mark.unit
    def test_line_numbers_span_multiline_tokens(self):
        tokens = tokenize("/* a\nb */\nx")
        assert (tokens[0].line, tokens[0].end_line) == (0, 1)
        assert tokens[1].line == 2

    @pytest.mark.unit
    def test_brackets_inside_strings_ignored(self):
        tokens = tokenize('f("(", \'}\');')
        assert [t.text for t in tokens if t.kind in ("open", "close")] == ["(", ")"]

    @pytest.mark.unit
    def test_escaped_quote(self):
        tokens = tokenize(r'"a\"b"')
        assert tokens[0].text == r'"a\"b"'

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "source, message",
        [
            ("/* never closed", "Unterminated block comment"),
            ('"open', "Unterminated string"),
            ('"line\nbreak"', "Unterminated string"),
            ("f(]", "Unbalanced"),
            ("f(", "Unclosed"),
        ],
    )
    def test_lexical_errors(self, source, message):
        with pytest.raises(CompositionParseError, match=message):
            tokenize(source)


class TestOwnerTag:
    @pytest.mark.unit
    def test_parses_key_values(self):
        tag = parse_owner_tag("  // @rns-owner id=auth.firebase kind=provider order=10 module=@rns/x export=A")
        assert tag == {
            "id": "auth.firebase", "kind": "provider", "order": "10", "module": "@rns/x", "export": "A",
        }

    @pytest.mark.unit
    def test_not_an_owner_comment(self):
        assert parse_owner_tag("// just a comment") is None
        assert parse_owner_tag("// @rns-ownership id=x") is None


# ---------------------------------------------------------------------------
# Marker blocks
# ---------------------------------------------------------------------------

class TestMarkers:
    @pytest.mark.unit
    def test_finds_all_blocks(self):
        doc = parse_composition(COMPOSITION_SOURCE)
        assert sorted(doc.blocks) == ["bindings", "imports", "init", "providers", "wrappers"]
        assert doc.block("init").indent == "  "
        assert doc.block("providers").items == []

    @pytest.mark.unit
    def test_missing_block(self):
        doc = parse_composition(COMPOSITION_SOURCE)
        with pytest.raises(CompositionParseError, match="'screens' not found"):
            doc.block("screens")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "source, message",
        [
            ("// @rns-marker:a:start\n// @rns-marker:b:start\n// @rns-marker:b:end\n// @rns-marker:a:end\n",
             "opens inside block"),
            ("// @rns-marker:a:start\n// @rns-marker:a:end\n// @rns-marker:a:start\n// @rns-marker:a:end\n",
             "Duplicate marker"),
            ("// @rns-marker:a:end\n", "no matching start"),
            ("// @rns-marker:a:start\nx;\n", "never closed"),
            ("x; // @rns-marker:a:start\n// @rns-marker:a:end\n", "own line"),
        ],
    )
    def test_marker_errors(self, source, message):
        with pytest.raises(CompositionParseError, match=message):
            parse_composition(source)

    @pytest.mark.unit
    def test_statement_straddling_end_marker(self):
        source = "// @rns-marker:a:start\nf(\n// @rns-marker:a:end\n);\n"
        with pytest.raises(CompositionParseError, match="not closed before its end marker"):
            parse_composition(source)

    @pytest.mark.unit
    def test_marker_text_in_string_is_not_a_marker(self):
        doc = parse_composition('const s = "// @rns-marker:a:start";\n')
        assert doc.blocks == {}


# ---------------------------------------------------------------------------
# Block items
# ---------------------------------------------------------------------------

class TestBlockItems:
    SOURCE = textwrap.dedent("""\
        // @rns-marker:providers:start
        composition.providers.push({
          id: "manual",
          symbol: ManualProvider,
        });
        // a note

        // @rns-owner id=auth.firebase kind=provider order=20 module=@rns/a export=AuthProvider
        composition.providers.push({ id: "auth.firebase", symbol: AuthProvider, order: 20 });
        // @rns-owner id=orphan kind=provider order=1 module=@rns/o export=Orphan

        // @rns-marker:providers:end
    """)

    @pytest.mark.unit
    def test_multiline_statement_is_one_item(self):
        block = parse_composition(self.SOURCE).block("providers")
        first = block.items[0]
        assert len(first.lines) == 4
        assert "ManualProvider" in first.words

    @pytest.mark.unit
    def test_owner_comment_attaches_to_next_statement(self):
        block = parse_composition(self.SOURCE).block("providers")
        owned = block.owned()
        assert len(owned) == 1
        assert owned[0].owner["id"] == "auth.firebase"
        assert len(owned[0].lines) == 2
        assert "AuthProvider" in owned[0].words

    @pytest.mark.unit
    def test_orphan_owner_comment_is_dropped(self):
        block = parse_composition(self.SOURCE).block("providers")
        texts = "".join(item.text for item in block.items)
        assert "Orphan" not in texts
        assert "// a note" in texts

    @pytest.mark.unit
    def test_block_words(self):
        block = parse_composition(self.SOURCE).block("providers")
        assert {"ManualProvider", "AuthProvider"} <= block.words()


# ---------------------------------------------------------------------------
# Imports
# ---------------------------------------------------------------------------

class TestImports:
    SOURCE = textwrap.dedent("""\
        import React from "react";
        import { A, B as Bee, type C } from "@rns/x";
        import * as all from './star';
        import type { T } from "types";
        import {
          Multi,
        } from "multi";
        const lazy = import("./lazy");
        const text = "import { Fake } from 'fake'";
    """)

    @pytest.mark.unit
    def test_parses_declarations(self):
        doc = parse_composition(self.SOURCE)
        modules = [decl.module for decl in doc.imports]
        assert modules == ["react", "@rns/x", "./star", "types", "multi"]

    @pytest.mark.unit
    def test_bindings(self):
        doc = parse_composition(self.SOURCE)
        react, x, star, types, multi = doc.imports
        assert react.bindings == {("default", "React")}
        assert x.bindings == {("A", "A"), ("B", "Bee"), ("C", "C")}
        assert star.bindings == {("*", "all")}
        assert types.bindings == {("T", "T")}
        assert multi.imports("Multi")

    @pytest.mark.unit
    def test_has_import(self):
        doc = parse_composition(self.SOURCE)
        assert doc.has_import("@rns/x", "A")
        assert not doc.has_import("@rns/x", "B")
        assert not doc.has_import("fake", "Fake")

    @pytest.mark.unit
    def test_has_import_ignoring_owned(self):
        source = textwrap.dedent("""\
            // @rns-marker:imports:start
            // @rns-owner kind=import
            import { Gen } from "@rns/gen";
            // @rns-marker:imports:end
        """)
        doc = parse_composition(source)
        assert doc.has_import("@rns/gen", "Gen")
        assert not doc.has_import("@rns/gen", "Gen", ignore_owned_in="imports")


# ---------------------------------------------------------------------------
# render()
# ---------------------------------------------------------------------------

class TestRender:
    @pytest.mark.unit
    def test_no_change_round_trips(self):
        doc = parse_composition(COMPOSITION_SOURCE)
        assert doc.render({}) == COMPOSITION_SOURCE

    @pytest.mark.unit
    def test_replaces_only_body(self):
        doc = parse_composition(COMPOSITION_SOURCE)
        out = doc.render({"init": ["  initAuth();\n"]})
        assert "  // @rns-marker:init:start\n  initAuth();\n  // @rns-marker:init:end\n" in out
        assert out.replace("  initAuth();\n", "") == COMPOSITION_SOURCE

    @pytest.mark.unit
    def test_empty_body_clears_block(self):
        source = "// @rns-marker:a:start\nold();\n// @rns-marker:a:end\ntail();\n"
        doc = parse_composition(source)
        assert doc.render({"a": []}) == "// @rns-marker:a:start\n// @rns-marker:a:end\ntail();\n"
