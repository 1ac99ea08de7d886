"""
payload.py — Read host files into 18-bit word lists.

A file whose first byte looks like 10xxxxxx is taken to be a paper-tape
binary (see imagefmt.ptr_encode_word); anything else is ASCII text packed
two characters to a word.
"""

from __future__ import annotations

import logging
from pathlib import Path

from imagefmt import ptr_decode_word
from pdp7fs import pack_ascii

logger = logging.getLogger(__name__)

PTR_FRAME = 3


def is_ptr_binary(data: bytes) -> bool:
    return bool(data) and (data[0] & 0xC0) == 0x80


def decode_ptr(data: bytes, name: str = "<data>") -> list[int]:
    """Decode a paper-tape binary into words."""
    whole = len(data) - len(data) % PTR_FRAME
    if whole != len(data):
        logger.warning("%s: dropping %d trailing byte(s) of a partial word",
                       name, len(data) - whole)
    return [ptr_decode_word(data[i : i + PTR_FRAME])
            for i in range(0, whole, PTR_FRAME)]


def load_words(path: str | Path) -> list[int]:
    """Read *path* and return its contents as words."""
    data = Path(path).read_bytes()
    if is_ptr_binary(data):
        words = decode_ptr(data, str(path))
        kind = "binary"
    else:
        words = pack_ascii(data)
        kind = "ascii"
    logger.debug("loaded %s (%s, %d words)", path, kind, len(words))
    return words
