"""Parser for declaration files.

Converts Nix-style attribute sets (or YAML) into an attribute tree:

    { config, pkgs, ... }:
    {
      networking.hostName = "nixos";
      environment.systemPackages = with pkgs; [ git curl ];
      environment.sessionVariables.XDG_CONFIG_HOME = "$HOME/.config";
    }
"""
import hashlib
import json
import logging
import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .errors import ConflictError, ParseError
from .schema import (
    AttributeNode,
    ListNode,
    MappingNode,
    Scalar,
    format_path,
    split_path,
    to_python,
)

logger = logging.getLogger(__name__)

KEYWORDS = {
    "true", "false", "null", "with", "let", "in", "rec", "inherit",
    "if", "then", "else", "assert", "or", "import",
}
UNSUPPORTED = {"let", "in", "inherit", "if", "then", "else", "assert", "import"}

_IDENT_START = re.compile(r"[A-Za-z_]")
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_'\-]*")
_NUMBER = re.compile(r"-?\d+(\.\d+)?([eE][+-]?\d+)?")
_VAR_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_PATH = re.compile(r"(\.\.?/|~/|/)[^\s;\]\}\)]*")
_PLAIN_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_'\-]*$")

YAML_SUFFIXES = {".yaml", ".yml"}


@dataclass
class Token:
    kind: str
    value: Any
    line: int
    column: int


@dataclass
class Template:
    """A string with unresolved interpolation parts.

    Parts are ("text", str) or ("ref", name, original_text).
    """
    parts: list[tuple] = field(default_factory=list)
    line: int = 0
    column: int = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Template):
            return NotImplemented
        return self.parts == other.parts

    def __hash__(self) -> int:
        return hash(tuple(self.parts))


def split_interpolation(text: str, escaped: frozenset = frozenset()) -> list[tuple]:
    """Split a decoded string into literal and reference parts.

    Recognises $NAME, ${NAME} and ${a.b.c}. Positions in escaped are
    dollar signs that were escaped in the source and stay literal.
    """
    parts: list[tuple] = []
    buf = ""
    i = 0
    while i < len(text):
        char = text[i]
        if char == "$" and i in escaped:
            buf += "$"
            i += 1
            continue
        if char == "$" and text.startswith("{", i + 1):
            end = text.find("}", i + 2)
            if end != -1:
                if buf:
                    parts.append(("text", buf))
                    buf = ""
                parts.append(("ref", text[i + 2:end].strip(), text[i:end + 1]))
                i = end + 1
                continue
        if char == "$":
            match = _VAR_NAME.match(text, i + 1)
            if match:
                if buf:
                    parts.append(("text", buf))
                    buf = ""
                parts.append(("ref", match.group(0), text[i:match.end()]))
                i = match.end()
                continue
        buf += char
        i += 1
    if buf or not parts:
        parts.append(("text", buf))
    return parts


def _string_value(parts: list[tuple], line: int, column: int) -> Union[str, Template]:
    if all(p[0] == "text" for p in parts):
        return "".join(p[1] for p in parts)
    return Template(parts, line, column)


class _Lexer:
    """Tokenizer for the Nix-style declaration syntax."""

    def __init__(self, text: str, source: Optional[str] = None):
        self.text = text
        self.source = source
        self.pos = 0
        self.line = 1
        self.column = 1

    def error(self, message: str, line: Optional[int] = None, column: Optional[int] = None) -> ParseError:
        return ParseError(
            message,
            line if line is not None else self.line,
            column if column is not None else self.column,
            self.source,
        )

    def _advance(self, count: int = 1) -> str:
        chunk = self.text[self.pos:self.pos + count]
        for char in chunk:
            if char == "\n":
                self.line += 1
                self.column = 1
            else:
                self.column += 1
        self.pos += count
        return chunk

    def _peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        return self.text[index] if index < len(self.text) else ""

    def _skip_space_and_comments(self) -> None:
        while self.pos < len(self.text):
            char = self._peek()
            if char in " \t\r\n":
                self._advance()
            elif char == "#":
                while self.pos < len(self.text) and self._peek() != "\n":
                    self._advance()
            elif char == "/" and self._peek(1) == "*":
                line, column = self.line, self.column
                end = self.text.find("*/", self.pos + 2)
                if end == -1:
                    raise self.error("unterminated comment", line, column)
                self._advance(end + 2 - self.pos)
            else:
                break

    def tokens(self) -> list[Token]:
        result = []
        while True:
            self._skip_space_and_comments()
            if self.pos >= len(self.text):
                result.append(Token("EOF", None, self.line, self.column))
                return result
            result.append(self._next_token())

    def _next_token(self) -> Token:
        line, column = self.line, self.column
        char = self._peek()
        rest = self.text[self.pos:]

        if rest.startswith("..."):
            self._advance(3)
            return Token("ELLIPSIS", "...", line, column)

        path_match = _PATH.match(rest)
        if path_match and not rest.startswith("/*"):
            if char != "/" or len(path_match.group(0)) > 1:
                self._advance(len(path_match.group(0)))
                return Token("PATH", path_match.group(0), line, column)

        if char in "{}[]=;:,.?@()":
            self._advance()
            return Token(char, char, line, column)

        if char == '"':
            return self._string(line, column)

        if char == "'" and self._peek(1) == "'":
            return self._indented_string(line, column)

        number_match = _NUMBER.match(rest)
        if number_match and (char.isdigit() or (char == "-" and self._peek(1).isdigit())):
            text = number_match.group(0)
            self._advance(len(text))
            if number_match.group(1) or number_match.group(2):
                value = float(text)
                if not math.isfinite(value):
                    raise self.error(f"number out of range: {text}", line, column)
                return Token("NUMBER", value, line, column)
            return Token("NUMBER", int(text), line, column)

        if _IDENT_START.match(char):
            ident = _IDENT.match(rest).group(0)
            self._advance(len(ident))
            return Token("IDENT", ident, line, column)

        raise self.error(f"unexpected character {char!r}")

    def _string(self, line: int, column: int) -> Token:
        self._advance()  # opening quote
        decoded = ""
        escaped = set()
        while True:
            if self.pos >= len(self.text):
                raise self.error("unterminated string", line, column)
            char = self._peek()
            if char == '"':
                self._advance()
                break
            if char == "\\":
                nxt = self._peek(1)
                self._advance(2)
                if nxt == "n":
                    decoded += "\n"
                elif nxt == "t":
                    decoded += "\t"
                elif nxt == "r":
                    decoded += "\r"
                elif nxt == "$":
                    escaped.add(len(decoded))
                    decoded += "$"
                else:
                    decoded += nxt
                continue
            if char == "$" and self._peek(1) == "{":
                end = self.text.find("}", self.pos)
                if end == -1:
                    raise self.error("unterminated interpolation", self.line, self.column)
                decoded += self._advance(end + 1 - self.pos)
                continue
            decoded += self._advance()
        parts = split_interpolation(decoded, frozenset(escaped))
        return Token("STRING", _string_value(parts, line, column), line, column)

    def _indented_string(self, line: int, column: int) -> Token:
        self._advance(2)
        raw = ""
        escaped = set()
        while True:
            if self.pos >= len(self.text):
                raise self.error("unterminated indented string", line, column)
            if self.text.startswith("'''", self.pos):
                raw += "''"
                self._advance(3)
                continue
            if self.text.startswith("''$", self.pos):
                escaped.add(len(raw))
                raw += "$"
                self._advance(3)
                continue
            if self.text.startswith("''", self.pos):
                self._advance(2)
                break
            raw += self._advance()

        text, escaped = _strip_indentation(raw, escaped)
        parts = split_interpolation(text, frozenset(escaped))
        return Token("STRING", _string_value(parts, line, column), line, column)


def _strip_indentation(text: str, escaped: set[int]) -> tuple[str, set[int]]:
    """Remove the common leading indentation, keeping escaped positions aligned."""
    lines = []
    start = 0
    for content in text.split("\n"):
        lines.append((start, content))
        start += len(content) + 1
    if lines and not lines[0][1].strip():
        lines = lines[1:]
    if lines and not lines[-1][1].strip():
        lines[-1] = (lines[-1][0], "")
    indents = [len(l) - len(l.lstrip(" ")) for _, l in lines if l.strip()]
    margin = min(indents) if indents else 0

    out = []
    kept = set()
    length = 0
    for start, content in lines:
        stripped = content[margin:]
        offset = start + len(content) - len(stripped)
        kept.update(length + i - offset for i in escaped if offset <= i < offset + len(stripped))
        out.append(stripped)
        length += len(stripped) + 1
    return "\n".join(out), kept


class DeclarationParser:
    """Parse declaration text into an attribute tree."""

    def parse(
        self,
        text: str,
        env: Optional[dict[str, str]] = None,
        source: Optional[str] = None,
    ) -> MappingNode:
        """
        Parse Nix-style declaration text.

        Args:
            text: Declaration file contents
            env: Variable table for $NAME interpolation
            source: File name used in error messages

        Returns:
            MappingNode root of the attribute tree

        Raises:
            ParseError: If the text is not a valid declaration
        """
        tree = self.parse_unresolved(text, source)
        return resolve_references(tree, env or {}, source)

    def parse_unresolved(self, text: str, source: Optional[str] = None) -> MappingNode:
        """Parse without resolving interpolation references."""
        tokens = _Lexer(text, source).tokens()
        return _Parser(tokens, source).parse_document()

    def parse_yaml(
        self,
        text: str,
        env: Optional[dict[str, str]] = None,
        source: Optional[str] = None,
    ) -> MappingNode:
        """Parse a YAML declaration. Dotted keys expand into nested mappings."""
        tree = self.parse_yaml_unresolved(text, source)
        return resolve_references(tree, env or {}, source)

    def parse_yaml_unresolved(self, text: str, source: Optional[str] = None) -> MappingNode:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            line = mark.line + 1 if mark else 0
            column = mark.column + 1 if mark else 0
            problem = getattr(e, "problem", None) or str(e)
            raise ParseError(f"invalid YAML: {problem}", line, column, source)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ParseError("top-level declaration must be a mapping", 1, 1, source)

        return _yaml_mapping(data, (), source)

    def load_file(
        self,
        path: Union[str, Path],
        env: Optional[dict[str, str]] = None,
        follow_imports: bool = True,
    ) -> MappingNode:
        """
        Load a declaration file, merging any files listed under `imports`.

        Imports are resolved relative to the importing file and merged with
        merge_trees(); a missing import is a ParseError.
        """
        path = Path(path).expanduser()
        tree = self._load_unresolved(path, follow_imports, set())
        return resolve_references(tree, env or {}, str(path))

    def _load_unresolved(
        self,
        path: Path,
        follow_imports: bool,
        seen: set[Path],
    ) -> MappingNode:
        resolved = path.resolve()
        seen.add(resolved)
        logger.debug(f"Loading declaration file {path}")

        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ParseError(f"file not found: {path}", source=str(path))
        except UnicodeDecodeError as e:
            raise ParseError(f"file is not valid UTF-8: {e}", source=str(path))

        if path.suffix in YAML_SUFFIXES:
            tree = self.parse_yaml_unresolved(text, str(path))
        else:
            tree = self.parse_unresolved(text, str(path))

        if not follow_imports or "imports" not in tree:
            return tree

        imports = tree.entries.pop("imports")
        if not isinstance(imports, ListNode):
            raise ParseError("imports must be a list", source=str(path))

        for item in imports.items:
            if not isinstance(item, Scalar) or not isinstance(item.value, str):
                raise ParseError(
                    f"import entries must be paths, found {to_python(item)!r}",
                    source=str(path),
                )
            target = Path(item.value).expanduser()
            if not target.is_absolute():
                target = path.parent / target
            if target.is_dir():
                target = target / "default.nix"
            if target.resolve() in seen:
                logger.debug(f"Skipping already imported file {target}")
                continue
            if not target.exists():
                raise ParseError(f"imported file not found: {target}", source=str(path))
            imported = self._load_unresolved(target, follow_imports, seen)
            tree = merge_trees(tree, imported)

        return tree


class _Parser:
    """Recursive-descent parser over lexer tokens."""

    def __init__(self, tokens: list[Token], source: Optional[str]):
        self.tokens = tokens
        self.source = source
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _peek(self, offset: int = 1) -> Token:
        index = min(self.index + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def _error(self, message: str, token: Optional[Token] = None) -> ParseError:
        token = token or self.current
        return ParseError(message, token.line, token.column, self.source)

    def _expect(self, kind: str) -> Token:
        token = self.current
        if token.kind != kind:
            found = "end of input" if token.kind == "EOF" else repr(token.value)
            raise self._error(f"expected {kind!r}, found {found}")
        self.index += 1
        return token

    def parse_document(self) -> MappingNode:
        if self._at_function_header():
            self._skip_function_header()

        if self.current.kind != "{" and not (
            self.current.kind == "IDENT" and self.current.value == "rec"
        ):
            raise self._error("top-level declaration must be an attribute set")

        root = self._parse_value()
        if self.current.kind != "EOF":
            raise self._error(f"unexpected {self.current.value!r} after declaration")
        return root

    def _at_function_header(self) -> bool:
        if self.current.kind != "{":
            return False
        offset = 1
        while True:
            token = self._peek(offset)
            if token.kind in ("IDENT", ",", "ELLIPSIS", "?", "NUMBER", "STRING"):
                offset += 1
                continue
            if token.kind == "}":
                return self._peek(offset + 1).kind == ":"
            return False

    def _skip_function_header(self) -> None:
        while self.current.kind != "}":
            self.index += 1
        self._expect("}")
        self._expect(":")

    def _parse_value(self) -> AttributeNode:
        token = self.current

        if token.kind == "IDENT" and token.value == "with":
            self.index += 1
            self._parse_dotted_ident()
            self._expect(";")
            return self._parse_value()

        if token.kind == "IDENT" and token.value == "rec":
            self.index += 1
            if self.current.kind != "{":
                raise self._error("expected attribute set after 'rec'")
            return self._parse_attrset()

        if token.kind == "{":
            return self._parse_attrset()

        if token.kind == "[":
            return self._parse_list()

        if token.kind == "(":
            self.index += 1
            value = self._parse_value()
            self._expect(")")
            return value

        if token.kind == "STRING":
            self.index += 1
            return Scalar(token.value)

        if token.kind == "NUMBER":
            self.index += 1
            return Scalar(token.value)

        if token.kind == "PATH":
            self.index += 1
            return Scalar(token.value)

        if token.kind == "IDENT":
            if token.value in UNSUPPORTED:
                raise self._error(f"unsupported construct '{token.value}'")
            if token.value == "true":
                self.index += 1
                return Scalar(True)
            if token.value == "false":
                self.index += 1
                return Scalar(False)
            if token.value == "null":
                self.index += 1
                return Scalar(None)
            return Scalar(self._parse_dotted_ident())

        found = "end of input" if token.kind == "EOF" else repr(token.value)
        raise self._error(f"expected a value, found {found}")

    def _parse_dotted_ident(self) -> str:
        parts = [self._expect("IDENT").value]
        while self.current.kind == "." and self._peek().kind == "IDENT":
            self.index += 1
            parts.append(self._expect("IDENT").value)
        return ".".join(parts)

    def _parse_list(self) -> ListNode:
        self._expect("[")
        items = []
        while self.current.kind != "]":
            if self.current.kind == "EOF":
                raise self._error("unterminated list")
            items.append(self._parse_value())
        self._expect("]")
        return ListNode(items)

    def _parse_attrset(self) -> MappingNode:
        self._expect("{")
        mapping = MappingNode()
        while self.current.kind != "}":
            if self.current.kind == "EOF":
                raise self._error("unterminated attribute set")
            key_token = self.current
            keys = self._parse_attrpath()
            self._expect("=")
            value = self._parse_value()
            self._expect(";")
            _assign(mapping, keys, value, key_token, self.source)
        self._expect("}")
        return mapping

    def _parse_attrpath(self) -> tuple[str, ...]:
        keys = [self._parse_attr_name()]
        while self.current.kind == ".":
            self.index += 1
            keys.append(self._parse_attr_name())
        return tuple(keys)

    def _parse_attr_name(self) -> str:
        token = self.current
        if token.kind == "IDENT":
            if token.value in UNSUPPORTED:
                raise self._error(f"unsupported construct '{token.value}'")
            self.index += 1
            return token.value
        if token.kind == "STRING":
            if isinstance(token.value, Template):
                raise self._error("interpolated attribute names are not supported")
            self.index += 1
            return token.value
        found = "end of input" if token.kind == "EOF" else repr(token.value)
        raise self._error(f"expected attribute name, found {found}")


def _assign(
    mapping: MappingNode,
    keys: tuple[str, ...],
    value: AttributeNode,
    token: Optional[Token],
    source: Optional[str],
) -> None:
    """Assign value at a key path, creating intermediate mappings."""
    line = token.line if token else 0
    column = token.column if token else 0
    node = mapping
    for depth, key in enumerate(keys[:-1]):
        child = node.entries.get(key)
        if child is None:
            child = MappingNode()
            node.entries[key] = child
        elif not isinstance(child, MappingNode):
            raise ParseError(
                f"attribute '{format_path(keys[:depth + 1])}' already defined",
                line, column, source,
            )
        node = child

    last = keys[-1]
    existing = node.entries.get(last)
    if existing is None:
        node.entries[last] = value
        return
    if isinstance(existing, MappingNode) and isinstance(value, MappingNode):
        for sub_key, sub_value in value.entries.items():
            _assign(existing, (sub_key,), sub_value, token, source)
        return
    raise ParseError(
        f"attribute '{format_path(keys)}' already defined", line, column, source
    )


def _yaml_mapping(data: dict, prefix: tuple[str, ...], source: Optional[str]) -> MappingNode:
    mapping = MappingNode()
    for raw_key, raw_value in data.items():
        keys = split_path(str(raw_key)) if isinstance(raw_key, str) else (str(raw_key),)
        if not keys:
            raise ParseError(f"empty key under '{format_path(prefix)}'", source=source)
        _assign(mapping, keys, _yaml_value(raw_value, prefix + keys, source), None, source)
    return mapping


def _yaml_value(value: Any, path: tuple[str, ...], source: Optional[str]) -> AttributeNode:
    if isinstance(value, dict):
        return _yaml_mapping(value, path, source)
    if isinstance(value, list):
        return ListNode([_yaml_value(v, path, source) for v in value])
    if isinstance(value, str):
        return Scalar(_yaml_string(value))
    if isinstance(value, float) and not math.isfinite(value):
        raise ParseError(f"'{format_path(path)}': non-finite number {value}", source=source)
    if value is None or isinstance(value, (bool, int, float)):
        return Scalar(value)
    return Scalar(str(value))


def _yaml_string(value: str) -> Union[str, Template]:
    # A backslash before a dollar sign keeps it literal
    decoded = ""
    escaped = set()
    for index, piece in enumerate(value.split("\\$")):
        if index:
            escaped.add(len(decoded))
            decoded += "$"
        decoded += piece
    return _string_value(split_interpolation(decoded, frozenset(escaped)), 0, 0)



# --- Reference resolution ---

def resolve_references(
    tree: MappingNode,
    env: dict[str, str],
    source: Optional[str] = None,
) -> MappingNode:
    """
    Resolve interpolation templates in a tree.

    Dotted references (optionally prefixed with 'config.') are looked up in
    the tree itself; plain names come from env, falling back to top-level
    tree keys. Anything unresolved is kept as written.
    """
    resolver = _Resolver(tree, env, source)
    return resolver.resolve_tree()


class _Resolver:
    def __init__(self, tree: MappingNode, env: dict[str, str], source: Optional[str]):
        self.tree = tree
        self.env = env
        self.source = source
        self._cache: dict[tuple[str, ...], str] = {}

    def resolve_tree(self) -> MappingNode:
        return self._resolve_node(self.tree, ())  # type: ignore[return-value]

    def _resolve_node(self, node: AttributeNode, path: tuple[str, ...]) -> AttributeNode:
        if isinstance(node, MappingNode):
            return MappingNode({
                k: self._resolve_node(v, path + (k,)) for k, v in node.entries.items()
            })
        if isinstance(node, ListNode):
            return ListNode([self._resolve_node(v, path) for v in node.items])
        if isinstance(node.value, Template):
            return Scalar(self._render_template(node.value, [path]))
        return node

    def _render_template(self, template: Template, stack: list[tuple[str, ...]]) -> str:
        out = ""
        for part in template.parts:
            if part[0] == "text":
                out += part[1]
            else:
                out += self._lookup(part[1], part[2], template, stack)
        return out

    def _lookup(
        self,
        name: str,
        original: str,
        template: Template,
        stack: list[tuple[str, ...]],
    ) -> str:
        if "." in name:
            keys = split_path(name)
            if keys and keys[0] == "config":
                keys = keys[1:]
            value = self._tree_value(keys, template, stack)
            return original if value is None else value

        if name in self.env:
            return self.env[name]

        value = self._tree_value((name,), template, stack)
        return original if value is None else value

    def _tree_value(
        self,
        keys: tuple[str, ...],
        template: Template,
        stack: list[tuple[str, ...]],
    ) -> Optional[str]:
        if not keys:
            return None
        if keys in self._cache:
            return self._cache[keys]
        node = self.tree.get_path(keys)
        if not isinstance(node, Scalar):
            return None
        if isinstance(node.value, Template):
            if keys in stack:
                cycle = " -> ".join(format_path(k) for k in stack + [keys])
                raise ParseError(
                    f"circular reference: {cycle}",
                    template.line, template.column, self.source,
                )
            value = self._render_template(node.value, stack + [keys])
        else:
            value = _scalar_text(node.value)
        self._cache[keys] = value
        return value


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


# --- Merging ---

def merge_trees(
    left: AttributeNode,
    right: AttributeNode,
    path: tuple[str, ...] = (),
) -> AttributeNode:
    """
    Total merge of two trees.

    Mappings merge key by key, lists concatenate, equal scalars collapse.
    Differing scalars or mismatched node types raise ConflictError.
    """
    if isinstance(left, MappingNode) and isinstance(right, MappingNode):
        merged = MappingNode(dict(left.entries))
        for key, value in right.entries.items():
            if key in merged.entries:
                merged.entries[key] = merge_trees(merged.entries[key], value, path + (key,))
            else:
                merged.entries[key] = value
        return merged

    if isinstance(left, ListNode) and isinstance(right, ListNode):
        return ListNode(list(left.items) + list(right.items))

    if left == right:
        return left

    raise ConflictError(
        format_path(path) or "<root>",
        _plain(left),
        _plain(right),
    )


def _plain(node: AttributeNode) -> Any:
    if isinstance(node, Scalar) and isinstance(node.value, Template):
        return "".join(p[1] if p[0] == "text" else p[2] for p in node.value.parts)
    if isinstance(node, Scalar):
        return node.value
    return to_python(node)


# --- Rendering ---

def render(tree: MappingNode) -> str:
    """Pretty-print a tree in canonical declaration syntax.

    parse(render(tree)) yields a tree equal to the input.
    """
    return _render_node(tree, 0) + "\n"


def _render_key(key: str) -> str:
    if _PLAIN_KEY.match(key) and key not in KEYWORDS:
        return key
    return _render_string(key)


def _render_string(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
        .replace("\r", "\\r")
        .replace("$", "\\$")
    )
    return f'"{escaped}"'


def _render_node(node: AttributeNode, indent: int) -> str:
    pad = "  " * (indent + 1)
    closing = "  " * indent

    if isinstance(node, MappingNode):
        if not node.entries:
            return "{ }"
        lines = [
            f"{pad}{_render_key(k)} = {_render_node(v, indent + 1)};"
            for k, v in node.entries.items()
        ]
        return "{\n" + "\n".join(lines) + "\n" + closing + "}"

    if isinstance(node, ListNode):
        if not node.items:
            return "[ ]"
        lines = [f"{pad}{_render_node(v, indent + 1)}" for v in node.items]
        return "[\n" + "\n".join(lines) + "\n" + closing + "]"

    value = node.value
    if isinstance(value, Template):
        raise ValueError("cannot render an unresolved template")
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"cannot render non-finite number {value}")
    if isinstance(value, (int, float)):
        return repr(value)
    return _render_string(value)


def compute_checksum(tree: MappingNode) -> str:
    """
    Compute SHA256 checksum of an attribute tree.

    Useful for recording which declaration produced a run.
    """
    config_str = json.dumps(to_python(tree), sort_keys=True, separators=(",", ":"))
    hash_bytes = hashlib.sha256(config_str.encode()).hexdigest()
    return f"sha256:{hash_bytes[:16]}"


def default_env() -> dict[str, str]:
    """Interpolation table from the current process environment."""
    return dict(os.environ)
