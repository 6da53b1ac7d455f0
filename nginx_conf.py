#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Lossless reader / writer for nginx style configuration files.

The file is parsed into a tree of blocks and directives. Every node keeps the
whitespace and comments that came before it, so serializing an untouched tree
gives back exactly the text that was read. The ensure_* helpers only ever add
nodes, they never move or rewrite what the operator wrote.


The MIT License

Copyright (c) 2020-2023 Chris Griffith

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in
all copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN
THE SOFTWARE.
"""

import fcntl
import logging
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path

from exceptions import ParseError, ValidationError, ConfigLockError

log = logging.getLogger("streaming_setup.nginx_conf")

DEFAULT_INDENT = "    "
DEFAULT_LOCK_TIMEOUT = 60


def normalize_selector(selector):
    return " ".join(selector.split())


class Directive(object):
    def __init__(self, name, args="", leading="", raw=None, line=None):
        self.name = name
        self.args = args
        self.leading = leading
        self.raw = raw if raw is not None else (f"{name} {args};" if args else f"{name};")
        self.line = line

    def __repr__(self):
        return f"<Directive {self.name} {self.args!r}>"


class _Container(object):
    def __init__(self):
        self.children = []

    def directives(self, name=None):
        return [c for c in self.children if isinstance(c, Directive) and (name is None or c.name == name)]

    def blocks(self, selector=None):
        if selector is not None:
            selector = normalize_selector(selector)
        return [c for c in self.children if isinstance(c, Block) and (selector is None or c.selector == selector)]


class Block(_Container):
    def __init__(self, selector, leading="", header=None, closing="", parent=None, line=None):
        super().__init__()
        self.selector = normalize_selector(selector)
        self.leading = leading
        self.header = header if header is not None else f"{self.selector} {{"
        # whitespace / comments between the last child and the closing brace
        self.closing = closing
        self.parent = parent
        self.line = line

    def __repr__(self):
        return f"<Block {self.selector!r} ({len(self.children)} children)>"


class ConfigDocument(_Container):
    def __init__(self):
        super().__init__()
        self.trailing = ""

    def __repr__(self):
        return f"<ConfigDocument ({len(self.children)} children)>"


class _Parser(object):
    def __init__(self, text):
        self.text = text
        self.pos = 0
        self.line = 1

    def parse(self):
        doc = ConfigDocument()
        doc.trailing = self._children(doc)
        return doc

    def _trivia(self):
        start, text = self.pos, self.text
        while self.pos < len(text):
            char = text[self.pos]
            if char == "#":
                end = text.find("\n", self.pos)
                self.pos = len(text) if end == -1 else end
            elif char.isspace():
                if char == "\n":
                    self.line += 1
                self.pos += 1
            else:
                break
        return text[start : self.pos]

    def _children(self, container, opened_at=None):
        while True:
            leading = self._trivia()
            if self.pos >= len(self.text):
                if opened_at is not None:
                    raise ParseError(
                        f"unexpected end of file, block '{container.selector}' opened on line {opened_at} is not closed",
                        self.line,
                    )
                return leading
            if self.text[self.pos] == "}":
                if opened_at is None:
                    raise ParseError("unexpected '}'", self.line)
                self.pos += 1
                return leading

            start_line = self.line
            raw = self._statement()
            body = raw[:-1].strip()
            if not body:
                raise ParseError(f"unexpected '{raw[-1]}'", self.line)

            if raw.endswith("{"):
                block = Block(body, leading=leading, header=raw, parent=container, line=start_line)
                container.children.append(block)
                block.closing = self._children(block, opened_at=start_line)
            else:
                name = body.split(None, 1)[0]
                args = body[len(name) :]
                container.children.append(
                    Directive(name, args.strip(), leading=leading, raw=raw, line=start_line)
                )

    def _statement(self):
        """Consume one directive or block header, including its ';' or '{'."""
        start, text = self.pos, self.text
        while self.pos < len(text):
            char = text[self.pos]
            if char in "\"'":
                self._quoted(char)
                continue
            if char == "$" and text.startswith("${", self.pos):
                end = text.find("}", self.pos)
                if end == -1:
                    raise ParseError("unterminated variable reference", self.line)
                self.pos = end + 1
                continue
            if char == "#" and self.pos > start and text[self.pos - 1].isspace():
                end = text.find("\n", self.pos)
                self.pos = len(text) if end == -1 else end
                continue
            if char == "\n":
                self.line += 1
            elif char in ";{":
                self.pos += 1
                return text[start : self.pos]
            elif char == "}":
                raise ParseError("unexpected '}', expecting ';'", self.line)
            self.pos += 1
        raise ParseError("unexpected end of file, expecting ';' or '}'", self.line)

    def _quoted(self, quote):
        start_line = self.line
        self.pos += 1
        while self.pos < len(self.text):
            char = self.text[self.pos]
            if char == "\\":
                if self.text.startswith("\n", self.pos + 1):
                    self.line += 1
                self.pos += 2
                continue
            if char == "\n":
                self.line += 1
            self.pos += 1
            if char == quote:
                return
        raise ParseError("unterminated quoted string", start_line)


def parse(text):
    """Parse configuration text into a ConfigDocument, raises ParseError on unbalanced input."""
    return _Parser(text).parse()


def serialize(doc):
    parts = []
    _emit(doc.children, parts)
    parts.append(doc.trailing)
    return "".join(parts)


def _emit(children, parts):
    for node in children:
        parts.append(node.leading)
        if isinstance(node, Block):
            parts.append(node.header)
            _emit(node.children, parts)
            parts.append(node.closing)
            parts.append("}")
        else:
            parts.append(node.raw)


def _root(node):
    while isinstance(node, Block):
        node = node.parent
    return node


def _own_indent(block):
    if "\n" in block.leading:
        return block.leading.rpartition("\n")[2]
    if not isinstance(block.parent, Block):
        return block.leading if not block.leading.strip() else ""
    return _own_indent(block.parent) + _indent_unit(block)


def _indent_unit(node):
    pending = list(_root(node).blocks())
    while pending:
        block = pending.pop(0)
        if "\n" in block.leading or not isinstance(block.parent, Block):
            outer = block.leading.rpartition("\n")[2]
            for child in block.children:
                if "\n" not in child.leading:
                    continue
                inner = child.leading.rpartition("\n")[2]
                if inner.startswith(outer) and len(inner) > len(outer):
                    return inner[len(outer) :]
        pending.extend(block.blocks())
    return DEFAULT_INDENT


def _child_indent(container):
    for child in container.children:
        if "\n" in child.leading:
            return child.leading.rpartition("\n")[2]
    if not isinstance(container, Block):
        return ""
    return _own_indent(container) + _indent_unit(container)


def _attach(container, index, node):
    root = not isinstance(container, Block)
    indent = _child_indent(container)
    children = container.children

    if index < len(children):
        following = children[index]
        head, newline, rest = following.leading.partition("\n")
        if newline:
            # a comment sharing the previous line stays on that line
            following.leading = newline + rest
        else:
            head = ""
            following.leading = "\n" + indent
    else:
        closing = container.closing if not root else container.trailing
        head, newline, rest = closing.partition("\n")
        if newline:
            closing = newline + rest
        else:
            head = closing.rstrip(" \t")
            closing = "\n" + ("" if root else _own_indent(container))
        if root:
            container.trailing = closing
        else:
            container.closing = closing

    if root:
        node.leading = head + ("\n\n" if children else ("\n" if head else ""))
    else:
        node.leading = head + "\n" + indent
    if isinstance(node, Block):
        node.parent = container
        node.closing = "\n" + indent
    children.insert(index, node)


def _directive_insert_index(block):
    # right after the last directive, or ahead of the nested blocks when there is none
    index = 0
    for position, child in enumerate(block.children):
        if isinstance(child, Directive):
            index = position + 1
    return index


def ensure_block_path(doc, path):
    """
    Walk (and create where missing) a chain of nested blocks, e.g. ["rtmp", "server", "application live"].
    Returns the innermost block.
    """
    current = doc
    for selector in path:
        matches = current.blocks(selector)
        if len(matches) > 1:
            log.warning(
                f"Found {len(matches)} '{normalize_selector(selector)}' blocks at the same level "
                f"(lines {', '.join(str(b.line) for b in matches)}), using the first one"
            )
        if matches:
            current = matches[0]
            continue
        block = Block(selector)
        _attach(current, len(current.children), block)
        log.debug(f"Added '{block.selector}' block")
        current = block
    return current


def has_directive(block, name, value=None):
    for directive in block.directives(name):
        if value is None or directive.args.split() == str(value).split():
            return True
    return False


def append_directive(block, name, value=""):
    directive = Directive(name, str(value).strip())
    _attach(block, _directive_insert_index(block), directive)
    return directive


def ensure_directives(block, directives, marker):
    """
    Add a group of directives to the block unless a directive named `marker` is already a direct child of it.
    New directives go right after the last existing directive (ahead of any nested block when there is none).
    Returns True when something was added.
    """
    if has_directive(block, marker):
        log.debug(f"'{marker}' already present in '{block.selector}', leaving it alone")
        return False
    index = _directive_insert_index(block)
    for name, value in directives:
        _attach(block, index, Directive(name, str(value).strip()))
        index += 1
    return bool(directives)


def find_blocks(container, selector):
    selector = normalize_selector(selector)
    for block in container.blocks():
        if block.selector == selector:
            yield block
        yield from find_blocks(block, selector)


def read_text(path):
    # nginx reads bytes, undecodable ones survive the round trip as surrogates
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


def read_document(path):
    return parse(read_text(path))


def atomic_write(path, text, validator=None):
    """
    Write `text` next to `path`, let `validator(temp_path) -> (ok, output)` look at it,
    then rename it over `path`. The original file is untouched if anything fails.
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
            if os.geteuid() == 0:
                stat = path.stat()
                os.chown(tmp_path, stat.st_uid, stat.st_gid)
        else:
            tmp_path.chmod(0o644)
        if validator:
            ok, output = validator(tmp_path)
            if not ok:
                raise ValidationError(f"New version of {path} was rejected", output)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    log.debug(f"Wrote {path}")


@contextmanager
def config_lock(path, timeout=DEFAULT_LOCK_TIMEOUT):
    path = Path(path)
    lock_path = path.with_name(f".{path.name}.lock")
    deadline = time.monotonic() + timeout
    with open(lock_path, "a") as lock_file:
        while True:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise ConfigLockError(
                        f"Could not lock {path} within {timeout} seconds, is another setup run in progress?"
                    )
                time.sleep(0.1)
        try:
            yield lock_path
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def mutate_config(path, mutator, validator=None, lock_timeout=DEFAULT_LOCK_TIMEOUT):
    """Locked read-modify-write of a config file. `mutator(doc)` returns True when it changed the document."""
    path = Path(path)
    with config_lock(path, lock_timeout):
        doc = read_document(path)
        if not mutator(doc):
            log.info(f"{path} already up to date, not rewriting")
            return False
        atomic_write(path, serialize(doc), validator=validator)
    log.info(f"Updated {path}")
    return True
