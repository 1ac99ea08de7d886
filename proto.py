"""
proto.py — Proto file reader for the PDP-7 UNIX image builder.

One directive per line; '#' starts a comment:

    name  dPPPP  uid  [inum]           directory (becomes current)
    name  -PPPP  uid  file  [inum]     regular file loaded from *file*
    name  iPPPP  uid  [inum]           special (device) file
    name  lPPPP  inum                  another name for i-node *inum*
    $                                  back up to the enclosing directory

PPPP are owner-read, owner-write, world-read, world-write as r/w or '-'.
uid is octal, except that -1 is kept as -1.  I-node numbers are decimal;
a link to -1 names the i-node created just before it.

Usage:
  from proto import build_image
  image = build_image("fs.proto", DirOptions(dot=True, dotdot=True))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from payload import load_words
from pdp7fs import FSError, Image, DirOptions, InodeFlag, LAST_INODE

logger = logging.getLogger(__name__)

KINDS = {"d": "dir", "-": "file", "i": "special", "l": "link"}

PERM_LETTERS = (
    ("r", InodeFlag.OWNER_READ),
    ("w", InodeFlag.OWNER_WRITE),
    ("r", InodeFlag.WORLD_READ),
    ("w", InodeFlag.WORLD_WRITE),
)

# Tokens after the mode: (minimum, maximum)
ARITY = {"dir": (1, 2), "file": (2, 3), "special": (1, 2), "link": (1, 1)}


class ProtoError(FSError):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


@dataclass
class Directive:
    """One parsed proto line."""
    kind: str
    line: int
    name: str = ""
    perms: int = 0
    uid: int = 0
    source: str | None = None
    inum: int | None = None


# ---------------------------------------------------------------------------
#  Field parsers
# ---------------------------------------------------------------------------

def parse_perms(text: str, lineno: int = 0) -> tuple[str, int]:
    """Decode a mode like 'drw-r' into (kind, permission bits)."""
    if len(text) != 1 + len(PERM_LETTERS):
        raise ProtoError(lineno, f"Bad mode {text!r}: expected 5 characters")
    kind = KINDS.get(text[0])
    if kind is None:
        raise ProtoError(lineno, f"Bad mode {text!r}: unknown type {text[0]!r}")
    perms = 0
    for ch, (letter, bit) in zip(text[1:], PERM_LETTERS):
        if ch == letter:
            perms |= bit
        elif ch != "-":
            raise ProtoError(lineno, f"Bad mode {text!r}: unexpected {ch!r}")
    return kind, perms


def parse_uid(text: str, lineno: int = 0) -> int:
    if text == "-1":
        return -1
    try:
        return int(text, 8)
    except ValueError:
        raise ProtoError(lineno, f"Bad uid {text!r}: expected octal") from None


def parse_inum(text: str, lineno: int = 0, allow_last: bool = False) -> int:
    try:
        n = int(text, 10)
    except ValueError:
        raise ProtoError(lineno, f"Bad i-node number {text!r}") from None
    if allow_last and n == LAST_INODE:
        return n
    if n < 1:
        raise ProtoError(lineno, f"Bad i-node number {text!r}")
    return n


# ---------------------------------------------------------------------------
#  Reader
# ---------------------------------------------------------------------------

def parse_line(lineno: int, text: str) -> Directive | None:
    tokens = text.split("#", 1)[0].split()
    if not tokens:
        return None
    if tokens == ["$"]:
        return Directive("up", lineno)
    if len(tokens) < 2:
        raise ProtoError(lineno, f"Incomplete directive: {text.strip()!r}")

    name, mode, args = tokens[0], tokens[1], tokens[2:]
    kind, perms = parse_perms(mode, lineno)
    lo, hi = ARITY[kind]
    if not lo <= len(args) <= hi:
        raise ProtoError(lineno, f"Wrong number of fields for {kind} {name!r}")

    d = Directive(kind, lineno, name=name, perms=perms)
    if kind == "link":
        d.inum = parse_inum(args[0], lineno, allow_last=True)
        return d
    d.uid = parse_uid(args.pop(0), lineno)
    if kind == "file":
        d.source = args.pop(0)
    if args:
        d.inum = parse_inum(args[0], lineno)
    return d


def read_proto(path: str | Path) -> str:
    """Read a proto file, which must be plain ASCII."""
    data = Path(path).read_bytes()
    try:
        return data.decode("ascii")
    except UnicodeDecodeError as e:
        lineno = data.count(b"\n", 0, e.start) + 1
        raise ProtoError(lineno, f"Non-ASCII byte 0x{data[e.start]:02x}") \
            from None


def parse_proto(source: str) -> list[Directive]:
    """Parse proto text into directives."""
    directives = []
    for lineno, raw in enumerate(source.split("\n"), 1):
        d = parse_line(lineno, raw)
        if d is not None:
            directives.append(d)
    return directives


# ---------------------------------------------------------------------------
#  Interpreter
# ---------------------------------------------------------------------------

def populate(image: Image, directives: list[Directive],
             base_dir: str | Path = "."):
    """Run *directives* against *image*.  Payload paths are relative
    to *base_dir*."""
    base_dir = Path(base_dir)
    for d in directives:
        logger.debug("line %d: %s %s", d.line, d.kind, d.name)
        if d.kind == "up":
            image.ascend()
        elif d.kind == "dir":
            image.make_dir(d.name, d.perms, d.uid, d.inum)
        elif d.kind == "file":
            words = load_words(base_dir / d.source)
            image.make_file(d.name, d.perms, d.uid, words, d.inum)
        elif d.kind == "special":
            image.make_special(d.name, d.perms, d.uid, d.inum)
        elif d.kind == "link":
            image.make_link(d.name, d.inum)


def build_image(path: str | Path, options: DirOptions | None = None,
                image: Image | None = None) -> Image:
    """Read the proto file at *path* and return the finished image."""
    path = Path(path)
    directives = parse_proto(read_proto(path))
    if image is None:
        image = Image(options)
    populate(image, directives, path.parent)
    image.finalize()
    return image
