#!/usr/bin/env python3

from __future__ import annotations

import textwrap
import unittest
from typing import Any, List, Sequence

from displaystr_gen import (
    DocComment,
    Group,
    Ident,
    Literal,
    ParseError,
    Punct,
    Token,
    TokenCursor,
    find_display_items,
    literal_value,
    render_tokens,
    split_top_level,
    tokenize,
)


def shapes(tokens: Sequence[Token]) -> List[Any]:
    out: List[Any] = []
    for token in tokens:
        if isinstance(token, Ident):
            out.append(("ident", token.text))
        elif isinstance(token, Punct):
            out.append(("punct", token.char, token.joint))
        elif isinstance(token, Literal):
            out.append(("literal", token.kind, token.text))
        elif isinstance(token, DocComment):
            out.append(("doc", token.text))
        else:
            out.append(("group", token.delimiter, shapes(token.tokens)))
    return out


class LexerTests(unittest.TestCase):
    def test_paths_and_spacing(self) -> None:
        self.assertEqual(
            shapes(tokenize("a::b => -x")),
            [
                ("ident", "a"),
                ("punct", ":", True),
                ("punct", ":", False),
                ("ident", "b"),
                ("punct", "=", True),
                ("punct", ">", False),
                ("punct", "-", False),
                ("ident", "x"),
            ],
        )

    def test_literal_kinds(self) -> None:
        source = r"""'c' '\n' b'q' "a\"b" r#"x"y"# b"z" br"w" c"v" 1u8 0xff 1.5e-3 2.max"""
        self.assertEqual(
            shapes(tokenize(source)),
            [
                ("literal", "char", "'c'"),
                ("literal", "char", r"'\n'"),
                ("literal", "byte", "b'q'"),
                ("literal", "str", r'"a\"b"'),
                ("literal", "raw_str", 'r#"x"y"#'),
                ("literal", "byte_str", 'b"z"'),
                ("literal", "byte_str", 'br"w"'),
                ("literal", "c_str", 'c"v"'),
                ("literal", "number", "1u8"),
                ("literal", "number", "0xff"),
                ("literal", "number", "1.5e-3"),
                ("literal", "number", "2"),
                ("punct", ".", False),
                ("ident", "max"),
            ],
        )

    def test_lifetimes_are_joint_quotes(self) -> None:
        self.assertEqual(
            shapes(tokenize("&'a str")),
            [("punct", "&", True), ("punct", "'", True), ("ident", "a"), ("ident", "str")],
        )

    def test_raw_identifier(self) -> None:
        self.assertEqual(shapes(tokenize("r#type")), [("ident", "r#type")])

    def test_comments_are_trivia_but_doc_comments_are_tokens(self) -> None:
        source = textwrap.dedent(
            """
            // plain
            /* outer /* nested */ still comment */
            //// not a doc comment
            /// outer doc
            //! inner doc
            /** block doc */
            A
            """
        )
        self.assertEqual(
            shapes(tokenize(source)),
            [
                ("doc", "/// outer doc"),
                ("doc", "//! inner doc"),
                ("doc", "/** block doc */"),
                ("ident", "A"),
            ],
        )

    def test_groups_nest_and_record_offsets(self) -> None:
        source = "f(a, [b], {c})"
        tokens = tokenize(source)
        self.assertEqual(
            shapes(tokens),
            [
                ("ident", "f"),
                (
                    "group",
                    "(",
                    [
                        ("ident", "a"),
                        ("punct", ",", False),
                        ("group", "[", [("ident", "b")]),
                        ("punct", ",", False),
                        ("group", "{", [("ident", "c")]),
                    ],
                ),
            ],
        )
        group = tokens[1]
        self.assertIsInstance(group, Group)
        self.assertEqual((group.start, group.end), (1, len(source)))

    def test_lexical_errors_carry_index(self) -> None:
        cases = [
            ("(]", "mismatched closing delimiter", 1),
            ("a)", "unexpected closing delimiter", 1),
            ("x (", "unclosed delimiter", 2),
            ('a "open', "unterminated literal", 2),
            ("/* open", "unterminated block comment", 0),
            ('r#"open"', "unterminated raw string literal", 0),
        ]
        for source, message, index in cases:
            with self.subTest(source=source):
                with self.assertRaises(ParseError) as ctx:
                    tokenize(source)
                self.assertIn(message, str(ctx.exception))
                self.assertEqual(ctx.exception.index, index)


class HelperTests(unittest.TestCase):
    def test_literal_value_decodes_escapes(self) -> None:
        (literal,) = tokenize(r'"tab\tnew\nline \u{41}\x42 \"q\" {{}}"')
        self.assertEqual(literal_value(literal), 'tab\tnew\nline AB "q" {{}}')

    def test_literal_value_keeps_raw_text(self) -> None:
        (literal,) = tokenize(r'r#"a\n"#')
        self.assertEqual(literal_value(literal), r"a\n")

    def test_literal_value_line_continuation(self) -> None:
        (literal,) = tokenize('"one \\\n      two"')
        self.assertEqual(literal_value(literal), "one two")

    def test_cursor(self) -> None:
        cursor = TokenCursor(tokenize("a b c"))
        self.assertEqual(cursor.peek(), Ident("a", 0, 1))
        self.assertEqual(cursor.peek(2), Ident("c", 4, 5))
        self.assertIsNone(cursor.peek(3))
        self.assertEqual(cursor.advance(), Ident("a", 0, 1))
        self.assertEqual([t.text for t in cursor.rest()], ["b", "c"])
        self.assertTrue(cursor.at_end())
        self.assertIsNone(cursor.advance())

    def test_split_top_level_respects_angle_brackets(self) -> None:
        parts = split_top_level(tokenize("A<B, C>, D -> E<F>, G,"))
        self.assertEqual(
            [render_tokens(part, "A<B, C>, D -> E<F>, G,") for part in parts],
            ["A<B, C>", "D -> E<F>", "G"],
        )

    def test_render_reproduces_source_layout(self) -> None:
        source = textwrap.dedent(
            """
            pub enum E {
                /// docs
                A(u8), // note
                B { x: Vec<u8> }, /* block */
            }
            """
        ).strip()
        self.assertEqual(render_tokens(tokenize(source), source), source)


class AttributeDiscoveryTests(unittest.TestCase):
    def test_recognized_attribute_forms(self) -> None:
        source = textwrap.dedent(
            """
            #[display]
            enum A { X = "x" }

            #[display(doc)]
            enum B { X = "x" }

            #[displaystr::display]
            enum C { X = "x" }

            #[other]
            enum D { X = "x" }

            #[display = "no"]
            enum F { X = "x" }

            mod inner {
                #[::displaystr::display(doc)]
                pub enum G { X = "x" }
            }

            #[display]
            struct Unit;
            """
        )
        items = find_display_items(tokenize(source))

        self.assertEqual(len(items), 5)
        self.assertEqual(
            [shapes(item.arguments) for item in items[:4]],
            [[], [("ident", "doc")], [], [("ident", "doc")]],
        )
        self.assertEqual([item.item[-2].text for item in items[:4]], ["A", "B", "C", "G"])
        self.assertEqual(source[items[0].start : items[0].end], '#[display]\nenum A { X = "x" }')
        self.assertEqual(shapes(items[4].item), [("ident", "struct"), ("ident", "Unit"), ("punct", ";", False)])


if __name__ == "__main__":
    unittest.main()
