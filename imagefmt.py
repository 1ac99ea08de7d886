"""
imagefmt.py — Output encodings for PDP-7 UNIX disk images.

Three formats, all covering blocks 0-7999 of the filesystem surface:

    list   Octal listing.  Per block, 8 lines of 8 words as %06o followed
           by the 16 characters those words hold (9-bit halves, anything
           unprintable shown as a space), then a blank line.
    ptr    Paper-tape triplets.  Each word is 3 bytes of 6 bits; the first
           byte of a word has bit 7 set.
    simh   SIMH RB09 native.  Each word is a 32-bit little-endian int.

The filesystem lives on side 1 of the RB09.  ptr and simh images are
therefore preceded by 8000 blocks of zero words standing in for side 0.
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import BinaryIO, TextIO

from pdp7fs import Image, NUM_BLOCKS, WORDS_PER_BLOCK, WORD_MASK

logger = logging.getLogger(__name__)

FORMATS = ("list", "ptr", "simh")

WORDS_PER_LINE = 8

_ZERO_BLOCK = [0] * WORDS_PER_BLOCK


# ── Word codecs ────────────────────────────────────────────────────────

def ptr_encode_word(word: int) -> bytes:
    """Encode one word as a paper-tape triplet."""
    return bytes((((word >> 12) & 0o77) | 0x80,
                  (word >> 6) & 0o77,
                  word & 0o77))


def ptr_decode_word(triplet: bytes) -> int:
    """Inverse of ptr_encode_word."""
    b1, b2, b3 = triplet[0], triplet[1], triplet[2]
    return ((b1 & 0o77) << 12) | ((b2 & 0o77) << 6) | (b3 & 0o77)


def simh_encode_word(word: int) -> bytes:
    return struct.pack("<I", word & WORD_MASK)


def simh_decode_word(data: bytes) -> int:
    return struct.unpack_from("<I", data)[0] & WORD_MASK


def word_to_ascii(word: int) -> str:
    """Render the two 9-bit characters of *word*."""
    out = []
    for c in ((word >> 9) & 0o777, word & 0o777):
        out.append(chr(c) if 0x20 <= c < 0x7F else " ")
    return "".join(out)


# ── Dumpers ────────────────────────────────────────────────────────────

def _format_line(words: list[int]) -> str:
    octal = " ".join(f"{w:06o}" for w in words)
    text = "".join(word_to_ascii(w) for w in words)
    return f"{octal}  {text}\n"


def dump_list(image: Image, out: TextIO):
    """Write the octal listing of every block."""
    for block in image.blocks:
        for i in range(0, WORDS_PER_BLOCK, WORDS_PER_LINE):
            out.write(_format_line(block[i : i + WORDS_PER_LINE]))
        out.write("\n")


def _dump_binary(image: Image, out: BinaryIO, encode):
    zero = b"".join(encode(w) for w in _ZERO_BLOCK)
    for _ in range(NUM_BLOCKS):
        out.write(zero)
    for block in image.blocks:
        out.write(b"".join(encode(w) for w in block))


def dump_ptr(image: Image, out: BinaryIO):
    """Write side 0 placeholder + image as paper-tape triplets."""
    _dump_binary(image, out, ptr_encode_word)


def dump_simh(image: Image, out: BinaryIO):
    """Write side 0 placeholder + image as SIMH 32-bit words."""
    _dump_binary(image, out, simh_encode_word)


def write_image(image: Image, path: str | Path, fmt: str = "list"):
    """Serialise *image* to *path* in format *fmt*."""
    if fmt == "list":
        with open(path, "w", encoding="ascii") as f:
            dump_list(image, f)
    elif fmt == "ptr":
        with open(path, "wb") as f:
            dump_ptr(image, f)
    elif fmt == "simh":
        with open(path, "wb") as f:
            dump_simh(image, f)
    else:
        raise ValueError(f"Unknown output format: {fmt!r} "
                         f"(choose from {', '.join(FORMATS)})")
    logger.info("wrote %s image to %s", fmt, path)
