#!/usr/bin/env python3
"""displaystr enum Display generator.

Input:  Rust source containing #[display] enums whose variants carry format
        templates (`Variant(..) = "..."`).
Output: transformed Rust source with the templates stripped and an
        `impl ::core::fmt::Display` generated after each tagged enum.
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import hashlib
import pathlib
import re
import sys
from typing import Iterable, List, Sequence, Tuple, Union

GENERATOR_VERSION = "0.1.0"
FORMAT_VERSION = "1"
ATTRIBUTE_PATHS = ("display", "displaystr::display")
DOC_FLAG = "doc"
DIGEST_PATTERN = re.compile(r"^// digest: ([0-9a-f]{64})$", re.MULTILINE)

MISSING_ENUM = "expected an `enum` item"
MISSING_DISCRIMINANT = 'expected this variant to have a string discriminant: `= "..."`'
EXPECTED_STRING = "expected string literal"
UNEXPECTED_TOKEN = "unexpected token"

PUNCT_CHARS = "~!@#$%^&*-=+|;:,.<>/?"
CLOSERS = {"(": ")", "[": "]", "{": "}"}
IDENT_PATTERN = re.compile(r"(?:r#)?[^\W\d]\w*")
NUMBER_PATTERN = re.compile(
    r"(?:0[xob][0-9a-fA-F_]+|\d[0-9_]*(?:\.\d[0-9_]*)?(?:[eE][+-]?[0-9_]*\d[0-9_]*)?)(?:[A-Za-z_]\w*)?"
)
RAW_STRING_START = re.compile(r'([bc]?)r(#*)"')
STRING_START = re.compile(r'([bc]?)"')
ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "0": "\0", "\\": "\\", "'": "'", '"': '"'}
SPACED_KEYWORDS = {"as", "dyn", "for", "impl", "in", "mut", "return", "where"}
INDENT = "    "


class ParseError(RuntimeError):
    def __init__(self, message: str, index: int) -> None:
        super().__init__(message)
        self.index = index


@dataclasses.dataclass(frozen=True)
class Ident:
    text: str
    start: int | None = None
    end: int | None = None


@dataclasses.dataclass(frozen=True)
class Punct:
    char: str
    joint: bool = False
    start: int | None = None
    end: int | None = None


@dataclasses.dataclass(frozen=True)
class Literal:
    text: str
    kind: str = "str"  # str | raw_str | byte_str | c_str | char | byte | number
    start: int | None = None
    end: int | None = None

    @property
    def is_string(self) -> bool:
        return self.kind in ("str", "raw_str")


@dataclasses.dataclass(frozen=True)
class DocComment:
    text: str
    start: int | None = None
    end: int | None = None


@dataclasses.dataclass(frozen=True)
class Group:
    delimiter: str  # ( | [ | {
    tokens: Tuple["Token", ...] = ()
    start: int | None = None
    end: int | None = None
    block: bool = False


Token = Union[Ident, Punct, Literal, DocComment, Group]


def is_punct(token: Token | None, char: str) -> bool:
    return isinstance(token, Punct) and token.char == char


def is_ident(token: Token | None, text: str) -> bool:
    return isinstance(token, Ident) and token.text == text


def is_group(token: Token | None, delimiter: str) -> bool:
    return isinstance(token, Group) and token.delimiter == delimiter


def location_of(token: Token | None, fallback: Token | None = None) -> int | None:
    if token is not None and token.start is not None:
        return token.start
    if fallback is not None:
        return fallback.start
    return None


def line_col(text: str, index: int) -> Tuple[int, int]:
    line = text.count("\n", 0, index) + 1
    line_start = text.rfind("\n", 0, index)
    if line_start < 0:
        line_start = -1
    col = index - line_start
    return line, col


def line_indent(text: str, index: int) -> str:
    line_start = text.rfind("\n", 0, index) + 1
    return re.match(r"[ \t]*", text[line_start:]).group(0)


def fail(path: pathlib.Path, text: str, error: ParseError) -> None:
    line, col = line_col(text, error.index)
    print(f"{path}:{line}:{col}: error: {error}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Lexer
# ---------------------------------------------------------------------------


def is_doc_comment_at(text: str, i: int) -> bool:
    if text.startswith("///", i):
        return not text.startswith("////", i)
    if text.startswith("/**", i):
        return not text.startswith("/***", i) and not text.startswith("/**/", i)
    return text.startswith("//!", i) or text.startswith("/*!", i)


def find_block_comment_end(text: str, i: int) -> int:
    n = len(text)
    j = i
    depth = 0
    while j < n:
        if text.startswith("/*", j):
            depth += 1
            j += 2
            continue
        if text.startswith("*/", j):
            depth -= 1
            j += 2
            if depth == 0:
                return j
            continue
        j += 1
    raise ParseError("unterminated block comment", i)


def skip_ws_comments(text: str, i: int) -> int:
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if is_doc_comment_at(text, i):
            return i
        if text.startswith("//", i):
            j = text.find("\n", i + 2)
            if j == -1:
                return n
            i = j + 1
            continue
        if text.startswith("/*", i):
            i = find_block_comment_end(text, i)
            continue
        return i
    return i


def find_quote_end(text: str, origin: int, i: int, quote: str) -> int:
    n = len(text)
    j = i
    while j < n:
        ch = text[j]
        if ch == "\\":
            j += 2
            continue
        if ch == quote:
            return j + 1
        j += 1
    raise ParseError("unterminated literal", origin)


def lex_token(text: str, i: int) -> Tuple[Token, int]:
    n = len(text)

    if is_doc_comment_at(text, i):
        if text[i + 1] == "/":
            end = text.find("\n", i)
            end = n if end == -1 else end
        else:
            end = find_block_comment_end(text, i)
        return DocComment(text[i:end].rstrip("\r"), i, end), end

    m = RAW_STRING_START.match(text, i)
    if m:
        terminator = '"' + m.group(2)
        close = text.find(terminator, m.end())
        if close == -1:
            raise ParseError("unterminated raw string literal", i)
        end = close + len(terminator)
        kind = {"": "raw_str", "b": "byte_str", "c": "c_str"}[m.group(1)]
        return Literal(text[i:end], kind, i, end), end

    m = STRING_START.match(text, i)
    if m:
        end = find_quote_end(text, i, m.end(), '"')
        kind = {"": "str", "b": "byte_str", "c": "c_str"}[m.group(1)]
        return Literal(text[i:end], kind, i, end), end

    if text.startswith("b'", i):
        end = find_quote_end(text, i, i + 2, "'")
        return Literal(text[i:end], "byte", i, end), end

    if text[i] == "'":
        if i + 1 < n and text[i + 1] == "\\":
            end = find_quote_end(text, i, i + 1, "'")
            return Literal(text[i:end], "char", i, end), end
        if i + 2 < n and text[i + 2] == "'":
            return Literal(text[i : i + 3], "char", i, i + 3), i + 3
        # lifetime or label: `'a` lexes as a joint quote followed by an identifier
        return Punct("'", True, i, i + 1), i + 1

    if text[i].isdigit():
        m = NUMBER_PATTERN.match(text, i)
        return Literal(m.group(0), "number", i, m.end()), m.end()

    m = IDENT_PATTERN.match(text, i)
    if m:
        return Ident(m.group(0), i, m.end()), m.end()

    ch = text[i]
    if ch in PUNCT_CHARS:
        joint = i + 1 < n and text[i + 1] in PUNCT_CHARS + "'"
        return Punct(ch, joint, i, i + 1), i + 1

    raise ParseError(f"unexpected character {ch!r}", i)


def tokenize(text: str) -> List[Token]:
    stack: List[Tuple[str, int, List[Token]]] = []
    tokens: List[Token] = []
    i = 0
    n = len(text)

    while True:
        i = skip_ws_comments(text, i)
        if i >= n:
            break
        ch = text[i]
        if ch in CLOSERS:
            stack.append((ch, i, tokens))
            tokens = []
            i += 1
            continue
        if ch in ")]}":
            if not stack:
                raise ParseError(f"unexpected closing delimiter '{ch}'", i)
            opener, open_index, outer = stack.pop()
            if CLOSERS[opener] != ch:
                raise ParseError(f"mismatched closing delimiter '{ch}'", i)
            outer.append(Group(opener, tuple(tokens), open_index, i + 1))
            tokens = outer
            i += 1
            continue
        token, i = lex_token(text, i)
        tokens.append(token)

    if stack:
        raise ParseError("unclosed delimiter", stack[-1][1])
    return tokens


def literal_value(literal: Literal) -> str:
    text = literal.text
    body = text[text.index('"') + 1 : text.rindex('"')]
    if literal.kind == "raw_str":
        return body

    out: List[str] = []
    i = 0
    n = len(body)
    while i < n:
        ch = body[i]
        if ch != "\\" or i + 1 >= n:
            out.append(ch)
            i += 1
            continue
        nxt = body[i + 1]
        if nxt in "\r\n":
            i += 2
            while i < n and body[i].isspace():
                i += 1
        elif nxt == "x":
            out.append(chr(int(body[i + 2 : i + 4], 16)))
            i += 4
        elif nxt == "u":
            close = body.index("}", i)
            out.append(chr(int(body[i + 3 : close].replace("_", ""), 16)))
            i = close + 1
        else:
            out.append(ESCAPES.get(nxt, nxt))
            i += 2
    return "".join(out)


def string_literal(value: str) -> Literal:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return Literal(f'"{escaped}"')


# ---------------------------------------------------------------------------
# Token cursor and shared scanning helpers
# ---------------------------------------------------------------------------


class TokenCursor:
    def __init__(self, tokens: Sequence[Token]) -> None:
        self.tokens = tuple(tokens)
        self.index = 0

    def peek(self, offset: int = 0) -> Token | None:
        j = self.index + offset
        if j < len(self.tokens):
            return self.tokens[j]
        return None

    def advance(self) -> Token | None:
        token = self.peek()
        if token is not None:
            self.index += 1
        return token

    def at_end(self) -> bool:
        return self.index >= len(self.tokens)

    def rest(self) -> List[Token]:
        remaining = list(self.tokens[self.index :])
        self.index = len(self.tokens)
        return remaining


def angle_delta(prev: Token | None, token: Token) -> int:
    if is_punct(token, "<"):
        return 1
    if is_punct(token, ">"):
        # `->` and `=>` are arrows, not closing brackets
        if isinstance(prev, Punct) and prev.joint and prev.char in "-=":
            return 0
        return -1
    return 0


def split_top_level(tokens: Sequence[Token], separator: str = ",") -> List[List[Token]]:
    parts: List[List[Token]] = [[]]
    depth = 0
    prev: Token | None = None
    for token in tokens:
        if depth == 0 and is_punct(token, separator):
            parts.append([])
        else:
            depth = max(0, depth + angle_delta(prev, token))
            parts[-1].append(token)
        prev = token
    if not parts[-1]:
        parts.pop()
    return parts


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Diagnostic:
    location: int | None  # source offset; None is the attribute call site
    message: str


class Diagnostics:
    def __init__(self) -> None:
        self.items: List[Diagnostic] = []

    def add(self, diagnostic: Diagnostic) -> Diagnostic:
        self.items.append(diagnostic)
        return diagnostic

    def report(self, location: int | None, message: str) -> Diagnostic:
        return self.add(Diagnostic(location, message))

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


class ExpansionError(Exception):
    def __init__(self, diagnostic: Diagnostic) -> None:
        super().__init__(diagnostic.message)
        self.diagnostic = diagnostic


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class ModifierRequest:
    generate_docs: bool = False


@dataclasses.dataclass
class Header:
    preserved: List[Token]
    name: Ident
    generics: List[Token] = dataclasses.field(default_factory=list)
    constraints: List[Token] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class Unit:
    pass


@dataclasses.dataclass(frozen=True)
class Positional:
    field_count: int


@dataclasses.dataclass(frozen=True)
class Named:
    fields: Tuple[str, ...]


VariantShape = Union[Unit, Positional, Named]


@dataclasses.dataclass(frozen=True)
class Template:
    literal: Literal
    extra_args: Tuple[Token, ...] = ()


@dataclasses.dataclass
class Variant:
    ident: Ident
    shape: VariantShape
    template: Template | Diagnostic
    attributes: List[Token] = dataclasses.field(default_factory=list)
    visibility: List[Token] = dataclasses.field(default_factory=list)
    fields: Group | None = None
    separator: Punct | None = None


class FieldScan(enum.Enum):
    BEFORE_COLON = "before_colon"
    INSIDE_TYPE = "inside_type"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_modifiers(tokens: Sequence[Token], diagnostics: Diagnostics) -> ModifierRequest:
    cursor = TokenCursor(tokens)
    first = cursor.advance()
    if first is None:
        return ModifierRequest()
    if not is_ident(first, DOC_FLAG):
        diagnostics.report(first.start, UNEXPECTED_TOKEN)
        return ModifierRequest()
    extra = cursor.advance()
    if extra is not None:
        diagnostics.report(extra.start, UNEXPECTED_TOKEN)
        return ModifierRequest()
    return ModifierRequest(generate_docs=True)


def take_generics(cursor: TokenCursor) -> List[Token]:
    if not is_punct(cursor.peek(), "<"):
        return []
    generics: List[Token] = []
    depth = 0
    while True:
        token = cursor.advance()
        if token is None:
            raise ExpansionError(Diagnostic(generics[0].start, "unclosed generic parameter list"))
        depth += angle_delta(generics[-1] if generics else None, token)
        generics.append(token)
        if depth == 0:
            return generics


def take_constraints(cursor: TokenCursor) -> List[Token]:
    if not is_ident(cursor.peek(), "where"):
        return []
    constraints: List[Token] = []
    while not is_group(cursor.peek(), "{"):
        token = cursor.advance()
        if token is None:
            raise ExpansionError(Diagnostic(constraints[0].start, "expected enum body"))
        constraints.append(token)
    return constraints


def parse_header(cursor: TokenCursor) -> Header:
    preserved: List[Token] = []
    while True:
        token = cursor.advance()
        if token is None:
            raise ExpansionError(Diagnostic(None, MISSING_ENUM))
        preserved.append(token)
        if is_punct(token, "#"):
            attribute = cursor.advance()
            if attribute is not None:
                preserved.append(attribute)
            continue
        if is_ident(token, "enum"):
            break

    name = cursor.advance()
    if not isinstance(name, Ident):
        raise ExpansionError(Diagnostic(location_of(name, token), "expected identifier after `enum`"))

    generics = take_generics(cursor)
    constraints = take_constraints(cursor)
    return Header(preserved=preserved, name=name, generics=generics, constraints=constraints)


def take_body(cursor: TokenCursor, header: Header) -> Group:
    body = cursor.advance()
    if not is_group(body, "{"):
        raise ExpansionError(Diagnostic(location_of(body, header.name), "expected enum body"))
    return body


def take_attributes(cursor: TokenCursor) -> List[Token]:
    attributes: List[Token] = []
    while True:
        token = cursor.peek()
        if isinstance(token, DocComment):
            attributes.append(cursor.advance())
        elif is_punct(token, "#") and is_group(cursor.peek(1), "["):
            attributes.append(cursor.advance())
            attributes.append(cursor.advance())
        else:
            return attributes


def take_visibility(cursor: TokenCursor) -> List[Token]:
    if not is_ident(cursor.peek(), "pub"):
        return []
    visibility = [cursor.advance()]
    if is_group(cursor.peek(), "("):
        visibility.append(cursor.advance())
    return visibility


def is_field_colon(tokens: Sequence[Token], index: int) -> bool:
    token = tokens[index]
    if not is_punct(token, ":"):
        return False
    # half of a `::` path separator
    if token.joint and index + 1 < len(tokens) and is_punct(tokens[index + 1], ":"):
        return False
    prev = tokens[index - 1] if index else None
    return not (is_punct(prev, ":") and prev.joint)


def scan_named_fields(tokens: Sequence[Token]) -> Tuple[str, ...]:
    names: List[str] = []
    state = FieldScan.BEFORE_COLON
    depth = 0
    for index, token in enumerate(tokens):
        prev = tokens[index - 1] if index else None
        if state is FieldScan.BEFORE_COLON:
            if isinstance(prev, Ident) and is_field_colon(tokens, index):
                names.append(prev.text)
                state = FieldScan.INSIDE_TYPE
                depth = 0
        elif depth == 0 and is_punct(token, ","):
            state = FieldScan.BEFORE_COLON
        else:
            depth = max(0, depth + angle_delta(prev, token))
    return tuple(names)


def count_positional_fields(tokens: Sequence[Token]) -> int:
    return len(split_top_level(tokens))


def extract_template(cursor: TokenCursor, eq: Token) -> Template | Diagnostic:
    token = cursor.peek()
    if token is None or is_punct(token, ","):
        return Diagnostic(location_of(token, eq), EXPECTED_STRING)
    cursor.advance()

    if isinstance(token, Literal) and token.is_string:
        return Template(token)

    if is_group(token, "("):
        inner = TokenCursor(token.tokens)
        first = inner.advance()
        if not (isinstance(first, Literal) and first.is_string):
            return Diagnostic(location_of(first, token), EXPECTED_STRING)
        rest = inner.rest()
        if rest and not is_punct(rest[0], ","):
            return Diagnostic(rest[0].start, "expected `,` after string literal")
        extra = rest[1:]
        if extra and is_punct(extra[-1], ","):
            extra = extra[:-1]
        return Template(first, tuple(extra))

    return Diagnostic(token.start, EXPECTED_STRING)


def skip_discriminant(cursor: TokenCursor) -> None:
    while not cursor.at_end() and not is_punct(cursor.peek(), ","):
        cursor.advance()


def starts_variant(cursor: TokenCursor) -> bool:
    token = cursor.peek()
    if isinstance(token, (Ident, DocComment)):
        return True
    return is_punct(token, "#") and is_group(cursor.peek(1), "[")


def skip_stray_tokens(cursor: TokenCursor) -> None:
    # stops before a separator or anything that can begin the next variant
    while not cursor.at_end() and not is_punct(cursor.peek(), ",") and not starts_variant(cursor):
        cursor.advance()


def parse_variant(cursor: TokenCursor, diagnostics: Diagnostics) -> Variant:
    attributes = take_attributes(cursor)
    visibility = take_visibility(cursor)

    ident = cursor.advance()
    if not isinstance(ident, Ident):
        anchor = (attributes + visibility)[-1] if attributes or visibility else None
        raise ExpansionError(Diagnostic(location_of(ident, anchor), "expected variant identifier"))

    following = cursor.peek()
    fields: Group | None = None
    shape: VariantShape
    if is_group(following, "("):
        fields = cursor.advance()
        shape = Positional(count_positional_fields(fields.tokens))
    elif is_group(following, "{"):
        fields = cursor.advance()
        shape = Named(scan_named_fields(fields.tokens))
    elif following is None or is_punct(following, "=") or is_punct(following, ","):
        shape = Unit()
    else:
        raise ExpansionError(Diagnostic(following.start, "unexpected token after variant identifier"))

    template: Template | Diagnostic
    if is_punct(cursor.peek(), "="):
        eq = cursor.advance()
        template = extract_template(cursor, eq)
        if isinstance(template, Diagnostic):
            skip_discriminant(cursor)
        elif not cursor.at_end() and not is_punct(cursor.peek(), ","):
            diagnostics.report(cursor.peek().start, UNEXPECTED_TOKEN)
            skip_stray_tokens(cursor)
    else:
        template = Diagnostic(ident.start, MISSING_DISCRIMINANT)
        skip_stray_tokens(cursor)

    if isinstance(template, Diagnostic):
        diagnostics.add(template)

    separator = cursor.advance() if is_punct(cursor.peek(), ",") else None
    return Variant(
        ident=ident,
        shape=shape,
        template=template,
        attributes=attributes,
        visibility=visibility,
        fields=fields,
        separator=separator,
    )


def parse_variants(body: Group, diagnostics: Diagnostics) -> List[Variant]:
    cursor = TokenCursor(body.tokens)
    variants: List[Variant] = []
    while not cursor.at_end():
        variants.append(parse_variant(cursor, diagnostics))
    return variants


# ---------------------------------------------------------------------------
# Code emission
# ---------------------------------------------------------------------------


def path_tokens(path: str) -> List[Token]:
    tokens: List[Token] = []
    for index, segment in enumerate(path.split("::")):
        if index:
            tokens.extend([Punct(":", joint=True), Punct(":", joint=True)])
        if segment:
            tokens.append(Ident(segment))
    return tokens


def comma_separated(items: Iterable[Sequence[Token]]) -> List[Token]:
    tokens: List[Token] = []
    for index, item in enumerate(items):
        if index:
            tokens.append(Punct(","))
        tokens.extend(item)
    return tokens


def strip_default(param: Sequence[Token]) -> List[Token]:
    depth = 0
    prev: Token | None = None
    for index, token in enumerate(param):
        if depth == 0 and is_punct(token, "=") and not token.joint:
            return list(param[:index])
        depth = max(0, depth + angle_delta(prev, token))
        prev = token
    return list(param)


def split_generics(generics: Sequence[Token]) -> Tuple[List[Token], List[Token]]:
    if not generics:
        return [], []

    impl_params: List[List[Token]] = []
    type_args: List[List[Token]] = []
    for param in split_top_level(generics[1:-1]):
        if not param:
            continue
        impl_params.append(strip_default(param))
        while len(param) > 2 and is_punct(param[0], "#"):
            param = param[2:]
        if is_punct(param[0], "'"):
            type_args.append(param[:2])
        elif is_ident(param[0], "const"):
            type_args.append(param[1:2])
        else:
            type_args.append(param[:1])

    def angled(parts: List[List[Token]]) -> List[Token]:
        return [Punct("<"), *comma_separated(parts), Punct(">")]

    return angled(impl_params), angled(type_args)


def emit_doc_comments(literal: Literal) -> List[Token]:
    return [DocComment(f"/// {line}".rstrip()) for line in literal_value(literal).split("\n")]


def emit_declaration(
    header: Header, body: Group, variants: Sequence[Variant], modifiers: ModifierRequest
) -> List[Token]:
    cleaned: List[Token] = []
    for variant in variants:
        cleaned.extend(variant.attributes)
        if modifiers.generate_docs and isinstance(variant.template, Template):
            cleaned.extend(emit_doc_comments(variant.template.literal))
        cleaned.extend(variant.visibility)
        cleaned.append(variant.ident)
        if variant.fields is not None:
            cleaned.append(variant.fields)
        if variant.separator is not None:
            cleaned.append(variant.separator)

    return [
        *header.preserved,
        header.name,
        *header.generics,
        *header.constraints,
        dataclasses.replace(body, tokens=tuple(cleaned)),
    ]


def emit_pattern(shape: VariantShape) -> Group:
    if isinstance(shape, Positional):
        bindings = [[Ident(f"_{i}")] for i in range(shape.field_count)]
        return Group("(", tuple(comma_separated(bindings)))
    if isinstance(shape, Named):
        return Group("{", tuple(comma_separated([Ident(name)] for name in shape.fields)))
    return Group("{")


def emit_arm(variant: Variant) -> List[Token]:
    template = variant.template
    if not isinstance(template, Template):
        template = Template(string_literal(""))

    arguments: List[Token] = [template.literal]
    if template.extra_args:
        arguments.append(Punct(","))
        arguments.extend(template.extra_args)

    return [
        *path_tokens(f"Self::{variant.ident.text}"),
        emit_pattern(variant.shape),
        Punct("=", joint=True),
        Punct(">"),
        Ident("f"),
        Punct("."),
        Ident("write_fmt"),
        Group(
            "(",
            (
                *path_tokens("::core::format_args"),
                Punct("!", joint=True),
                Group("(", tuple(arguments)),
            ),
        ),
        Punct(","),
    ]


def emit_routine(header: Header, variants: Sequence[Variant]) -> List[Token]:
    impl_generics, type_args = split_generics(header.generics)
    arms = [token for variant in variants for token in emit_arm(variant)]

    receiver = (
        Punct("&", joint=True),
        Ident("self"),
        Punct(","),
        Ident("f"),
        Punct(":"),
        Punct("&", joint=True),
        Ident("mut"),
        *path_tokens("::core::fmt::Formatter"),
    )
    method = (
        Ident("fn"),
        Ident("fmt"),
        Group("(", receiver),
        Punct("-", joint=True),
        Punct(">"),
        *path_tokens("::core::fmt::Result"),
        Group("{", (Ident("match"), Ident("self"), Group("{", tuple(arms), block=True)), block=True),
    )
    return [
        Ident("impl"),
        *impl_generics,
        *path_tokens("::core::fmt::Display"),
        Ident("for"),
        Ident(header.name.text),
        *type_args,
        *header.constraints,
        Group("{", method, block=True),
    ]


def emit_compile_error(diagnostic: Diagnostic) -> List[Token]:
    return [
        *path_tokens("::core::compile_error"),
        Punct("!", joint=True),
        Group("(", (string_literal(diagnostic.message),)),
        Punct(";"),
    ]


@dataclasses.dataclass
class Expansion:
    declaration: List[Token]
    diagnostics: List[Diagnostic]
    routine: List[Token]

    def tokens(self) -> List[Token]:
        tokens = list(self.declaration)
        for diagnostic in self.diagnostics:
            tokens.extend(emit_compile_error(diagnostic))
        tokens.extend(self.routine)
        return tokens


def expand_item(modifier_tokens: Sequence[Token], item_tokens: Sequence[Token]) -> Expansion:
    diagnostics = Diagnostics()
    modifiers = parse_modifiers(modifier_tokens, diagnostics)

    cursor = TokenCursor(item_tokens)
    header = parse_header(cursor)
    body = take_body(cursor, header)
    variants = parse_variants(body, diagnostics)

    return Expansion(
        declaration=emit_declaration(header, body, variants, modifiers),
        diagnostics=list(diagnostics),
        routine=emit_routine(header, variants),
    )


def expand(modifier_tokens: Sequence[Token], item_tokens: Sequence[Token]) -> List[Token]:
    try:
        return expand_item(modifier_tokens, item_tokens).tokens()
    except ExpansionError as e:
        return emit_compile_error(e.diagnostic)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def wants_space(before: Token | str | None, prev: Token | str, token: Token | str) -> bool:
    if isinstance(prev, str) or isinstance(token, str):
        return False
    if isinstance(prev, Punct):
        if prev.joint or prev.char in ".<#":
            return False
        if prev.char == ":" and is_punct(before, ":") and before.joint:
            return False
    if isinstance(token, Punct):
        if token.char in ",;.>":
            return False
        if token.char == ":":
            # only the leading colon of `::` after a keyword or operator is spaced
            if not token.joint:
                return False
            return isinstance(prev, Punct) or (isinstance(prev, Ident) and prev.text in SPACED_KEYWORDS)
        if token.char in "!<" and isinstance(prev, Ident):
            return False
    if isinstance(token, Group) and token.delimiter != "{" and isinstance(prev, Ident):
        return prev.text in SPACED_KEYWORDS
    return True


def separator(
    source: str,
    before: Token | str | None,
    prev: Token | str,
    prev_end: int | None,
    token: Token | str,
    start: int | None,
    preserve: bool,
) -> str:
    if prev_end is not None and start is not None and prev_end <= start:
        gap = source[prev_end:start]
        if skip_ws_comments(source, prev_end) == start:
            if preserve or "\n" not in gap:
                return gap
        elif preserve:
            run = gap[len(gap.rstrip()) :]
            if run:
                return run
    return " " if wants_space(before, prev, token) else ""


def split_lines(tokens: Sequence[Token]) -> List[List[Token]]:
    lines: List[List[Token]] = [[]]
    for token in tokens:
        lines[-1].append(token)
        if is_punct(token, ","):
            lines.append([])
    if not lines[-1]:
        lines.pop()
    return lines


def render_group(group: Group, source: str, indent: str, preserve: bool) -> str:
    close = CLOSERS[group.delimiter]
    if group.block:
        if not group.tokens:
            return group.delimiter + close
        inner = indent + INDENT
        lines = [render_sequence(line, source, inner, preserve) for line in split_lines(group.tokens)]
        return f"{group.delimiter}\n{inner}" + f"\n{inner}".join(lines) + f"\n{indent}{close}"

    pad = " " if group.delimiter == "{" and group.start is None and group.tokens else ""
    body = render_sequence(group.tokens, source, indent, preserve, enclosing=group)
    return f"{group.delimiter}{pad}{body}{pad}{close}"


def render_token(token: Token, source: str, indent: str, preserve: bool) -> str:
    if isinstance(token, Group):
        return render_group(token, source, indent, preserve)
    if isinstance(token, Punct):
        return token.char
    return token.text


def render_sequence(
    tokens: Sequence[Token],
    source: str,
    indent: str,
    preserve: bool,
    enclosing: Group | None = None,
) -> str:
    parts: List[str] = []
    before: Token | str | None = None
    prev: Token | str | None = None
    prev_end: int | None = None
    doc_indent = indent + INDENT
    broke_line = False
    if enclosing is not None:
        prev = enclosing.delimiter
        if enclosing.start is not None:
            prev_end = enclosing.start + 1

    for index, token in enumerate(tokens):
        if prev is not None:
            if isinstance(prev, DocComment) and prev.start is None:
                # generated doc comments end the line
                parts.append("\n" + doc_indent)
            elif isinstance(token, DocComment) and token.start is None:
                anchor = next((t for t in tokens[index:] if t.start is not None), None)
                gap = separator(source, before, prev, prev_end, anchor or token, location_of(anchor), preserve)
                if "\n" not in gap:
                    gap = "\n" + indent + INDENT
                    broke_line = True
                doc_indent = gap[gap.rfind("\n") + 1 :]
                parts.append(gap)
            else:
                parts.append(separator(source, before, prev, prev_end, token, token.start, preserve))
        parts.append(render_token(token, source, indent, preserve))
        before, prev, prev_end = prev, token, token.end

    if enclosing is not None and tokens:
        closer = CLOSERS[enclosing.delimiter]
        close_start = enclosing.end - 1 if enclosing.end is not None else None
        gap = separator(source, before, prev, prev_end, closer, close_start, preserve)
        if broke_line and "\n" not in gap:
            gap = "\n" + indent
        parts.append(gap)
    return "".join(parts)


def render_tokens(tokens: Sequence[Token], source: str = "", indent: str = "", preserve: bool = True) -> str:
    return render_sequence(tokens, source, indent, preserve)


def render_expansion(expansion: Expansion, source: str, indent: str = "") -> str:
    parts = [render_tokens(expansion.declaration, source, indent, preserve=True)]
    for diagnostic in expansion.diagnostics:
        parts.append(render_tokens(emit_compile_error(diagnostic), source, indent, preserve=False))
    parts.append(render_tokens(expansion.routine, source, indent, preserve=False))
    return f"\n\n{indent}".join(parts)


# ---------------------------------------------------------------------------
# Source substitution
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class DisplayItem:
    start: int
    end: int
    arguments: Tuple[Token, ...]
    item: List[Token]


def attribute_arguments(attribute: Group) -> Tuple[Token, ...] | None:
    tokens = list(attribute.tokens)
    arguments: Tuple[Token, ...] = ()
    if tokens and is_group(tokens[-1], "("):
        arguments = tokens.pop().tokens
    if not tokens or not all(isinstance(t, Ident) or is_punct(t, ":") for t in tokens):
        return None
    path = "".join(t.text if isinstance(t, Ident) else t.char for t in tokens)
    if path.lstrip(":") not in ATTRIBUTE_PATHS:
        return None
    return arguments


def find_display_items(tokens: Sequence[Token]) -> List[DisplayItem]:
    items: List[DisplayItem] = []
    i = 0
    n = len(tokens)

    while i < n:
        token = tokens[i]
        if is_punct(token, "#") and i + 1 < n and is_group(tokens[i + 1], "["):
            arguments = attribute_arguments(tokens[i + 1])
            if arguments is not None:
                j = i + 2
                item: List[Token] = []
                while j < n:
                    item.append(tokens[j])
                    j += 1
                    if is_group(item[-1], "{") or is_punct(item[-1], ";"):
                        break
                end = item[-1].end if item else tokens[i + 1].end
                items.append(DisplayItem(start=token.start, end=end, arguments=arguments, item=item))
                i = j
                continue
        if is_group(token, "{"):
            items.extend(find_display_items(token.tokens))
        i += 1

    return items


def at_call_site(diagnostic: Diagnostic, call_site: int) -> Diagnostic:
    if diagnostic.location is not None:
        return diagnostic
    return dataclasses.replace(diagnostic, location=call_site)


def apply_expansions(
    source: str, tokens: Sequence[Token], force_doc: bool = False
) -> Tuple[str, List[Diagnostic]]:
    pieces: List[str] = []
    diagnostics: List[Diagnostic] = []
    cursor = 0

    for found in find_display_items(tokens):
        pieces.append(source[cursor : found.start])
        indent = line_indent(source, found.start)
        arguments = found.arguments
        if force_doc and not arguments:
            arguments = (Ident(DOC_FLAG),)

        try:
            expansion = expand_item(arguments, found.item)
        except ExpansionError as e:
            diagnostic = at_call_site(e.diagnostic, found.start)
            diagnostics.append(diagnostic)
            pieces.append(render_tokens(emit_compile_error(diagnostic), source, indent, preserve=False))
        else:
            diagnostics.extend(at_call_site(d, found.start) for d in expansion.diagnostics)
            pieces.append(render_expansion(expansion, source, indent))
        cursor = found.end

    pieces.append(source[cursor:])
    return "".join(pieces), diagnostics


def compute_file_digest(source_bytes: bytes, force_doc: bool = False) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(FORMAT_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(b"doc" if force_doc else b"")
    h.update(b"\x00")
    h.update(source_bytes)
    return h.hexdigest()


def render_file(
    source_path: pathlib.Path, source_text: str, source_bytes: bytes, force_doc: bool = False
) -> Tuple[str, List[Diagnostic]]:
    tokens = tokenize(source_text)
    transformed, diagnostics = apply_expansions(source_text, tokens, force_doc)
    digest = compute_file_digest(source_bytes, force_doc)
    source_label = str(source_path)
    try:
        source_label = str(source_path.resolve().relative_to(pathlib.Path.cwd().resolve()))
    except ValueError:
        source_label = str(source_path.resolve())

    meta = (
        "// displaystr-generated\n"
        f"// source: {source_label}\n"
        f"// generator_version: {GENERATOR_VERSION}\n"
        f"// format_version: {FORMAT_VERSION}\n"
        f"// digest: {digest}\n\n"
    )
    return meta + transformed, diagnostics


def extract_existing_digest(text: str) -> str | None:
    m = DIGEST_PATTERN.search(text)
    if not m:
        return None
    return m.group(1)


def report(path: pathlib.Path, text: str, diagnostic: Diagnostic) -> None:
    line, col = line_col(text, diagnostic.location or 0)
    print(f"{path}:{line}:{col}: error: {diagnostic.message}", file=sys.stderr)


def run(args: argparse.Namespace) -> int:
    in_path = pathlib.Path(args.input)
    out_path = pathlib.Path(args.output)

    if not in_path.exists():
        print(f"error: input file does not exist: {in_path}", file=sys.stderr)
        return 1

    source_bytes = in_path.read_bytes()
    source_text = source_bytes.decode("utf-8")

    try:
        rendered, diagnostics = render_file(in_path, source_text, source_bytes, force_doc=args.doc)
    except ParseError as e:
        fail(in_path, source_text, e)
        return 1

    for diagnostic in diagnostics:
        report(in_path, source_text, diagnostic)
    status = 1 if diagnostics else 0

    if args.check:
        if not out_path.exists():
            print(f"{out_path} is missing (run generator)", file=sys.stderr)
            return 1
        existing = out_path.read_text(encoding="utf-8")
        if existing != rendered:
            print(f"{out_path} is out of date (run generator)", file=sys.stderr)
            return 1
        print(f"up-to-date: {out_path}")
        return status

    if out_path.exists():
        existing = out_path.read_text(encoding="utf-8")
        old_digest = extract_existing_digest(existing)
        new_digest = extract_existing_digest(rendered)
        if (old_digest and new_digest and old_digest == new_digest) or existing == rendered:
            print(f"unchanged: {out_path}")
            return status

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(rendered, encoding="utf-8")
    print(f"generated: {out_path}")
    return status


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate Display impls from .rs.displaystr sources")
    parser.add_argument("--in", dest="input", required=True, help="Input .rs.displaystr file")
    parser.add_argument("--out", dest="output", required=True, help="Output generated Rust file")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    parser.add_argument("--doc", action="store_true", help="Generate doc comments for every enum")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    return run(build_arg_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())
