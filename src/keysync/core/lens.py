"""
Lens for OpenSSH authorized_keys files (see sshd(8), AUTHORIZED_KEYS FILE FORMAT).

Tree shape of one file:

    #comment = "text after the hash"
    #empty
    key = "AAAAB3NzaC1yc2E..."
        options
            no-agent-forwarding
            from = "1.2.3.4"
        type = "ssh-rsa"
        comment = "bob@host"

Every parsed line keeps its original text and terminator; render() reuses
them for nodes that were not touched.
"""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

from .errors import ParseError, PathError
from .tree import FileNode, Node

KEY_TYPE_RE = re.compile(r"(?:sk-)?(?:ssh|ecdsa)-[A-Za-z0-9-]+(?:@openssh\.com)?")
OPTION_NAME_RE = re.compile(r'[^\s",=]+')
WHITESPACE_RE = re.compile(r"\s")
LINE_BREAK_RE = re.compile(r"[\r\n]")

ENTRY = "key"
COMMENT = "#comment"
EMPTY = "#empty"


def _split_lines(text: str) -> List[Tuple[str, str]]:
    # Only "\n" ends a line for sshd; str.splitlines() would also split on \f, \x1c, ...
    out: List[Tuple[str, str]] = []
    parts = text.split("\n")
    for line in parts[:-1]:
        if line.endswith("\r"):
            out.append((line[:-1], "\r\n"))
        else:
            out.append((line, "\n"))
    if parts[-1]:
        out.append((parts[-1], ""))
    return out


def _scan_options(text: str) -> Tuple[Optional[str], str]:
    """Split a leading options field off `text`. Returns (options, rest); options is None when unterminated."""
    quoted = False
    i = 0
    while i < len(text):
        ch = text[i]
        if quoted and ch == "\\" and i + 1 < len(text):
            i += 2
            continue
        if ch == '"':
            quoted = not quoted
        elif not quoted and ch in " \t":
            return text[:i], text[i:]
        i += 1
    if quoted:
        return None, ""
    return text, ""


def _split_unquoted(text: str, sep: str) -> List[str]:
    parts: List[str] = []
    buf: List[str] = []
    quoted = False
    i = 0
    while i < len(text):
        ch = text[i]
        if quoted and ch == "\\" and i + 1 < len(text):
            buf.append(text[i:i + 2])
            i += 2
            continue
        if ch == '"':
            quoted = not quoted
        if ch == sep and not quoted:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
        i += 1
    parts.append("".join(buf))
    return parts


def _unquote(value: str) -> str:
    # sshd only treats \" as an escape inside quoted values
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1].replace('\\"', '"')
    return value


def _check_single_line(lens: str, what: str, text: str) -> None:
    if LINE_BREAK_RE.search(text):
        raise PathError(f"{lens} lens cannot render a {what} containing a line break")


def quote_option_value(value: str) -> str:
    return '"' + value.replace('"', '\\"') + '"'


class AuthorizedKeysLens:
    name = "Authorized_Keys"

    # ----- get direction ---------------------------------------------------

    def parse(self, text: str, source: str) -> List[Node]:
        nodes: List[Node] = []
        for lineno, (content, eol) in enumerate(_split_lines(text), start=1):
            nodes.append(self._parse_line(content, eol, source, lineno))
        return nodes

    def _parse_line(self, content: str, eol: str, source: str, lineno: int) -> Node:
        body = content.strip(" \t")
        if not body:
            return Node(EMPTY, raw=content, eol=eol)
        if body.startswith("#"):
            return Node(COMMENT, body[1:].strip(" \t"), raw=content, eol=eol)

        options: List[Tuple[str, Optional[str]]] = []
        first = body.split(None, 1)[0]
        rest = body
        if not KEY_TYPE_RE.fullmatch(first):
            opt_text, rest = _scan_options(body)
            if opt_text is None:
                raise ParseError(source, lineno, content, "unterminated quote in options")
            options = self._parse_options(opt_text, source, lineno, content)

        fields = rest.split(None, 2)
        if len(fields) < 2:
            raise ParseError(source, lineno, content, "expected key type and key material")
        ktype, material = fields[0], fields[1]
        if not KEY_TYPE_RE.fullmatch(ktype):
            raise ParseError(source, lineno, content, f"unknown key type {ktype!r}")
        comment = fields[2].rstrip() if len(fields) > 2 else None

        entry = Node(ENTRY, material, raw=content, eol=eol)
        if options:
            opts = entry.add("options")
            for label, value in options:
                opts.add(label, value)
        entry.add("type", ktype)
        if comment:
            entry.add("comment", comment)
        entry.clean()
        return entry

    @staticmethod
    def _parse_options(
        text: str, source: str, lineno: int, content: str
    ) -> List[Tuple[str, Optional[str]]]:
        out: List[Tuple[str, Optional[str]]] = []
        for item in _split_unquoted(text, ","):
            label, sep, value = item.partition("=")
            if not OPTION_NAME_RE.fullmatch(label):
                raise ParseError(source, lineno, content, f"malformed option {item!r}")
            out.append((label, _unquote(value) if sep else None))
        return out

    # ----- put direction ---------------------------------------------------

    def render(self, file_node: FileNode) -> str:
        out: List[str] = []
        last = len(file_node.children) - 1
        for i, node in enumerate(file_node.children):
            if node.raw is not None and not node.dirty:
                text = node.raw
            else:
                text = self.render_line(node)
            eol = node.eol
            if not eol and i < last:
                eol = "\n"
            out.append(text + eol)
        return "".join(out)

    def render_line(self, node: Node) -> str:
        """
        Text of one changed line, without terminator. Raises PathError for a
        node this grammar could not read back as the same line.
        """
        if node.label == EMPTY:
            return ""
        if node.label == COMMENT:
            text = f"# {node.value}" if node.value else "#"
            _check_single_line(self.name, "comment line", text)
            return text
        if node.label != ENTRY:
            raise PathError(f"{self.name} lens cannot render a node labelled {node.label!r}")

        ktype = node.value_of("type")
        if not ktype or not node.value:
            raise PathError(f"{self.name} lens needs both a type and a key value")
        if not KEY_TYPE_RE.fullmatch(ktype):
            raise PathError(f"{self.name} lens cannot render key type {ktype!r}")
        if WHITESPACE_RE.search(node.value):
            raise PathError(f"{self.name} lens cannot render key material containing whitespace")
        fields: List[str] = []
        opts = node.first("options")
        if opts is not None and opts.children:
            fields.append(",".join(self.render_option(o) for o in opts.children))
        fields.extend([ktype, node.value])
        comment = node.value_of("comment")
        if comment:
            _check_single_line(self.name, "comment", comment)
            fields.append(comment)
        return " ".join(fields)

    def render_option(self, node: Node) -> str:
        if not OPTION_NAME_RE.fullmatch(node.label):
            raise PathError(f"{self.name} lens cannot render option name {node.label!r}")
        if node.value is None:
            return node.label
        _check_single_line(self.name, f"option {node.label}", node.value)
        return f"{node.label}={quote_option_value(node.value)}"
