"""
pdp7fs.py — PDP-7 UNIX filesystem image construction.

Builds the in-memory image of an RB09 disk surface holding a PDP-7 UNIX
filesystem.  Everything is 18-bit words; nothing here knows about bytes.
Serialisation lives in imagefmt.py, proto parsing in proto.py.

Disk layout (8000 blocks × 64 words):
    Block 0          sysdata: word 0 = head of the free-block chain
    Block 1          unused
    Blocks 2-711     i-node table (5 i-nodes per block)
    Blocks 712-6399  data area (allocatable)
    Blocks 6400-7999 boot track: kernel image and display char table

I-node (12 words):
    +0   flags          used|large|special|dir + permission bits
    +1   block[7]       direct block numbers, or indirect when "large"
    +8   uid            18-bit, -1 stored as 0777777
    +9   nlks           negated link count, masked to 18 bits
    +10  size           size in words
    +11  uniq           unused here

Directory entry (8 words):
    +0   inum
    +1   name[4]        8 chars, two 9-bit chars per word, space padded
    +5   reserved[3]

Free-list block:
    +0   next free-list block (0 ends the chain)
    +1   free[9]        free block numbers, 0 padded
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────

NUM_BLOCKS = 8000
WORDS_PER_BLOCK = 64
WORD_MASK = 0o777777

SYSDATA_BLOCK = 0
FIRST_INODE_BLOCK = 2
NUM_INODE_BLOCKS = 710
FIRST_DATA_BLOCK = FIRST_INODE_BLOCK + NUM_INODE_BLOCKS    # 712
BOOT_BLOCK = 6400                                          # end of data area

INODE_SIZE = 12
INODES_PER_BLOCK = WORDS_PER_BLOCK // INODE_SIZE           # 5
MAX_INUM = NUM_INODE_BLOCKS * INODES_PER_BLOCK - 1         # 3549
NUM_POINTERS = 7
LARGE_THRESHOLD = NUM_POINTERS * WORDS_PER_BLOCK           # 448 words

DIRENT_SIZE = 8
DIRENTS_PER_BLOCK = WORDS_PER_BLOCK // DIRENT_SIZE
NAME_LEN = 8

FREE_PER_BLOCK = 9

# Char table sits this many words into the boot track
CHAR_TABLE_OFFSET = 3072

# I-node word offsets
I_FLAGS = 0
I_FIRST_BLOCK = 1
I_UID = 8
I_NLKS = 9
I_SIZE = 10

# add_entry() target meaning "the i-node filled most recently"
LAST_INODE = -1


class InodeFlag(enum.IntFlag):
    """Bits of the i-node flags word."""
    USED = 0o400000
    LARGE = 0o200000
    SPECIAL = 0o000040
    DIRECTORY = 0o000020
    OWNER_READ = 0o000010
    OWNER_WRITE = 0o000004
    WORLD_READ = 0o000002
    WORLD_WRITE = 0o000001

    FILE = 0
    PERM_MASK = OWNER_READ | OWNER_WRITE | WORLD_READ | WORLD_WRITE


# ── Errors ─────────────────────────────────────────────────────────────

class FSError(Exception):
    """Base class for fatal image-construction errors."""


class NoSpaceError(FSError):
    """The free-block pool cannot satisfy an allocation."""


class StructureError(FSError):
    """An on-disk structure limit was violated."""


# ── Data classes ───────────────────────────────────────────────────────

@dataclass
class Inode:
    """Decoded view of one 12-word i-node."""
    inum: int
    flags: int
    blocks: list[int]
    uid: int
    nlks: int
    size: int

    @property
    def used(self) -> bool:
        return bool(self.flags & InodeFlag.USED)

    @property
    def large(self) -> bool:
        return bool(self.flags & InodeFlag.LARGE)

    @property
    def is_dir(self) -> bool:
        return bool(self.flags & InodeFlag.DIRECTORY)

    @property
    def is_special(self) -> bool:
        return bool(self.flags & InodeFlag.SPECIAL)

    @property
    def links(self) -> int:
        """Number of names bound to the i-node (nlks holds it negated)."""
        return (-self.nlks) & WORD_MASK


@dataclass
class DirOptions:
    """Which implicit entries a new directory receives."""
    dot: bool = False
    dotdot: bool = False
    nodd: bool = False


@dataclass
class DirFrame:
    """Write cursor for the directory being populated."""
    block: int
    offset: int
    inum: int


# ── Helpers ────────────────────────────────────────────────────────────

def _blocks_needed(nwords: int) -> int:
    """Number of 64-word blocks needed to hold *nwords*."""
    return (nwords + WORDS_PER_BLOCK - 1) // WORDS_PER_BLOCK


def _chunks(seq: list[int], size: int) -> list[list[int]]:
    return [seq[i : i + size] for i in range(0, len(seq), size)]


def pack_chars(hi: int, lo: int) -> int:
    """Two 9-bit characters in one word, first in the high half."""
    return ((hi & 0o777) << 9) | (lo & 0o777)


def pack_name(name: str) -> list[int]:
    """Pack a directory entry name into 4 words (8 chars, space padded)."""
    padded = name[:NAME_LEN].ljust(NAME_LEN)
    return [pack_chars(ord(padded[i]), ord(padded[i + 1]))
            for i in range(0, NAME_LEN, 2)]


def unpack_name(words: list[int]) -> str:
    """Inverse of pack_name, trailing padding removed."""
    chars = []
    for w in words:
        chars.append(chr((w >> 9) & 0o777))
        chars.append(chr(w & 0o777))
    return "".join(chars).rstrip(" \x00")


def pack_ascii(data: bytes) -> list[int]:
    """Pack text two characters per word; an odd tail is padded with 0."""
    if len(data) % 2:
        data = bytes(data) + b"\x00"
    return [pack_chars(data[i], data[i + 1]) for i in range(0, len(data), 2)]


# ── Image ──────────────────────────────────────────────────────────────

class Image:
    """In-memory PDP-7 UNIX disk surface under construction."""

    def __init__(self, options: DirOptions | None = None):
        self.options = options or DirOptions()
        self.blocks = [[0] * WORDS_PER_BLOCK for _ in range(NUM_BLOCKS)]
        self.free: deque[int] = deque()
        self.dirstack: list[DirFrame] = []
        self.next_inum = 1
        self.last_inum = 0
        self.dd_inum = 0
        self.sealed = False
        self.init_freelist()

    # ── block store ────────────────────────────────────────────────

    def _check_open(self):
        if self.sealed:
            raise StructureError("Image already finalized")

    def read_word(self, block: int, offset: int) -> int:
        return self.blocks[block][offset]

    def write_word(self, block: int, offset: int, value: int):
        if not 0 <= block < NUM_BLOCKS:
            raise StructureError(f"Block {block} out of range")
        if not 0 <= offset < WORDS_PER_BLOCK:
            raise StructureError(f"Offset {offset} out of range")
        self.blocks[block][offset] = int(value) & WORD_MASK

    def write_words(self, blocks: list[int], words: list[int]):
        """Lay *words* across *blocks* in order, 64 per block."""
        for blk, chunk in zip(blocks, _chunks(words, WORDS_PER_BLOCK)):
            for off, w in enumerate(chunk):
                self.write_word(blk, off, w)

    # ── free list ──────────────────────────────────────────────────

    def init_freelist(self):
        """Mark every data-area block free, lowest first."""
        self.free = deque(range(FIRST_DATA_BLOCK, BOOT_BLOCK))

    @property
    def free_count(self) -> int:
        return len(self.free)

    def take_block(self) -> int | None:
        """Remove and return the lowest free block, or None if exhausted."""
        if not self.free:
            return None
        return self.free.popleft()

    def finalize(self) -> int:
        """Chain the remaining free blocks into free-list blocks.

        Each free-list block is itself taken from the pool it lists.
        Stores the chain head in sysdata word 0, seals the image and
        returns the head (0 when nothing is free).
        """
        self._check_open()
        groups: list[tuple[int, list[int]]] = []
        while self.free:
            container = self.free.popleft()
            listed = []
            while self.free and len(listed) < FREE_PER_BLOCK:
                listed.append(self.free.popleft())
            groups.append((container, listed))

        for i, (container, listed) in enumerate(groups):
            nxt = groups[i + 1][0] if i + 1 < len(groups) else 0
            slots = [nxt] + listed + [0] * (FREE_PER_BLOCK - len(listed))
            for off, w in enumerate(slots):
                self.write_word(container, off, w)

        head = groups[0][0] if groups else 0
        self.write_word(SYSDATA_BLOCK, 0, head)
        self.sealed = True
        logger.debug("free list: %d blocks in chain, head %d",
                     len(groups), head)
        return head

    # ── allocation ─────────────────────────────────────────────────

    def allocate(self, nwords: int) -> list[int]:
        """Allocate enough blocks to hold *nwords* words.

        Raises NoSpaceError without taking anything if the pool is short.
        """
        self._check_open()
        count = _blocks_needed(nwords)
        if count > len(self.free):
            raise NoSpaceError(
                f"No space for {count} blocks ({len(self.free)} free)")
        blocks = [self.take_block() for _ in range(count)]
        if blocks:
            logger.debug("allocated %d block(s): %s", count, blocks)
        return blocks

    def build_indirect(self, data_blocks: list[int]) -> list[int]:
        """Spread *data_blocks* over indirect blocks; return those."""
        count = _blocks_needed(len(data_blocks))
        if count > NUM_POINTERS:
            raise StructureError(
                f"File needs {count} indirect blocks (max {NUM_POINTERS})")
        indirect = self.allocate(count * WORDS_PER_BLOCK)
        self.write_words(indirect, data_blocks)
        return indirect

    # ── i-nodes ────────────────────────────────────────────────────

    @staticmethod
    def locate(inum: int) -> tuple[int, int]:
        """Return (block, offset) of i-node *inum*."""
        if not 1 <= inum <= MAX_INUM:
            raise StructureError(f"I-node number {inum} out of range")
        return (FIRST_INODE_BLOCK + inum // INODES_PER_BLOCK,
                INODE_SIZE * (inum % INODES_PER_BLOCK))

    def allocate_inode(self, explicit: int | None = None) -> int:
        """Issue an i-node number, honouring a pinned *explicit* one."""
        if explicit is not None:
            if explicit >= self.next_inum:
                self.next_inum = explicit + 1
                return explicit
            logger.warning("i-node %d already issued (next is %d), "
                           "allocating a new one", explicit, self.next_inum)
        inum = self.next_inum
        self.next_inum += 1
        return inum

    def fill_inode(self, inum: int, perms: int, itype: int, uid: int,
                   size: int, pointers: list[int]):
        """Write a fresh i-node."""
        self._check_open()
        if len(pointers) > NUM_POINTERS:
            raise StructureError(
                f"I-node {inum}: {len(pointers)} block pointers "
                f"(max {NUM_POINTERS})")
        block, off = self.locate(inum)
        flags = perms | itype | InodeFlag.USED
        if size > LARGE_THRESHOLD:
            flags |= InodeFlag.LARGE
        self.write_word(block, off + I_FLAGS, flags)
        slots = pointers + [0] * (NUM_POINTERS - len(pointers))
        for i, p in enumerate(slots):
            self.write_word(block, off + I_FIRST_BLOCK + i, p)
        self.write_word(block, off + I_UID, uid)
        self.write_word(block, off + I_NLKS, 0)
        self.write_word(block, off + I_SIZE, size)
        self.last_inum = inum
        logger.debug("i-node %d: flags %06o uid %d size %d blocks %s",
                     inum, int(flags), uid, size, pointers)

    def grow_size(self, inum: int, delta: int):
        block, off = self.locate(inum)
        self.write_word(block, off + I_SIZE,
                        self.read_word(block, off + I_SIZE) + delta)

    def bump_link(self, inum: int):
        """Count one more name for *inum* (the field runs negative)."""
        block, off = self.locate(inum)
        self.write_word(block, off + I_NLKS,
                        self.read_word(block, off + I_NLKS) - 1)

    def read_inode(self, inum: int) -> Inode:
        block, off = self.locate(inum)
        w = self.blocks[block][off : off + INODE_SIZE]
        return Inode(inum=inum, flags=w[I_FLAGS],
                     blocks=w[I_FIRST_BLOCK : I_FIRST_BLOCK + NUM_POINTERS],
                     uid=w[I_UID], nlks=w[I_NLKS], size=w[I_SIZE])

    # ── directories ────────────────────────────────────────────────

    @property
    def cwd(self) -> DirFrame:
        if not self.dirstack:
            raise StructureError("No current directory")
        return self.dirstack[-1]

    def _free_slot(self, frame: DirFrame) -> int:
        """First unused pointer slot of the directory in *frame*."""
        block, off = self.locate(frame.inum)
        for i in range(NUM_POINTERS):
            if self.read_word(block, off + I_FIRST_BLOCK + i) == 0:
                return i
        raise StructureError(
            f"Directory i-node {frame.inum} is full "
            f"({NUM_POINTERS * DIRENTS_PER_BLOCK} entries)")

    def _entry_blocks(self) -> int:
        """Blocks the current directory needs to take one more entry."""
        frame = self.cwd
        if frame.offset < WORDS_PER_BLOCK:
            return 0
        self._free_slot(frame)
        return 1

    def _reserve(self, name: str, nblocks: int):
        """Fail before anything is touched if *nblocks* are not free."""
        if nblocks > len(self.free):
            raise NoSpaceError(
                f"{name!r}: no space for {nblocks} blocks "
                f"({len(self.free)} free)")

    def _grow_dir(self, frame: DirFrame):
        """Give the directory in *frame* one more block."""
        block, off = self.locate(frame.inum)
        slot = self._free_slot(frame)
        (newblk,) = self.allocate(WORDS_PER_BLOCK)
        self.write_word(block, off + I_FIRST_BLOCK + slot, newblk)
        frame.block = newblk
        frame.offset = 0

    def add_entry(self, name: str, inum: int = LAST_INODE):
        """Bind *name* to *inum* in the current directory."""
        self._check_open()
        frame = self.cwd
        if inum == LAST_INODE:
            inum = self.last_inum
        if len(name) > NAME_LEN:
            logger.warning("name %r truncated to %d characters",
                           name, NAME_LEN)
        if frame.offset >= WORDS_PER_BLOCK:
            self._grow_dir(frame)
        entry = [inum] + pack_name(name)
        for i, w in enumerate(entry):
            self.write_word(frame.block, frame.offset + i, w)
        frame.offset += DIRENT_SIZE
        self.grow_size(frame.inum, DIRENT_SIZE)
        self.bump_link(inum)
        logger.debug("dir %d: %-8s -> %d", frame.inum, name, inum)

    def list_dir(self, inum: int) -> list[tuple[str, int]]:
        """Return the (name, i-node) entries of directory *inum*."""
        ino = self.read_inode(inum)
        if not ino.is_dir:
            raise StructureError(f"I-node {inum} is not a directory")
        entries = []
        for n in range(ino.size // DIRENT_SIZE):
            blk_idx, slot = divmod(n, DIRENTS_PER_BLOCK)
            blk = ino.blocks[blk_idx]
            off = slot * DIRENT_SIZE
            words = self.blocks[blk][off : off + DIRENT_SIZE]
            entries.append((unpack_name(words[1:5]), words[0]))
        return entries

    def make_dir(self, name: str, perms: int, uid: int,
                 inum: int | None = None) -> int:
        """Create a directory and make it current.  Returns its i-node."""
        self._check_open()
        if self.dirstack:
            extra = self._entry_blocks()
        elif self.dd_inum:
            raise StructureError(
                f"Directory {name!r} outside the top-level directory")
        else:
            extra = 0
        self._reserve(name, 1 + extra)
        (blk,) = self.allocate(WORDS_PER_BLOCK)
        inum = self.allocate_inode(inum)
        self.fill_inode(inum, perms, InodeFlag.DIRECTORY, uid, 0, [blk])

        if self.dirstack:
            parent = self.cwd.inum
            self.add_entry(name, inum)
        else:
            parent = inum
            self.dd_inum = inum
        self.dirstack.append(DirFrame(blk, 0, inum))

        opts = self.options
        if opts.dot:
            self.add_entry(".", inum)
        if opts.dotdot:
            self.add_entry("..", parent)
        if not opts.nodd:
            self.add_entry("dd", self.dd_inum)
        if opts.nodd and not opts.dot and not opts.dotdot:
            self.add_entry("..", parent)
        return inum

    def make_file(self, name: str, perms: int, uid: int, words: list[int],
                  inum: int | None = None) -> int:
        """Create a regular file holding *words*.  Returns its i-node."""
        self._check_open()
        ndata = _blocks_needed(len(words))
        nindirect = _blocks_needed(ndata) if ndata > NUM_POINTERS else 0
        if nindirect > NUM_POINTERS:
            raise StructureError(
                f"{name!r}: {len(words)} words needs {nindirect} indirect "
                f"blocks (max {NUM_POINTERS})")
        self._reserve(name, ndata + nindirect + self._entry_blocks())
        blocks = self.allocate(len(words))
        self.write_words(blocks, words)
        if len(blocks) > NUM_POINTERS:
            blocks = self.build_indirect(blocks)
        inum = self.allocate_inode(inum)
        self.fill_inode(inum, perms, InodeFlag.FILE, uid, len(words), blocks)
        self.add_entry(name, inum)
        return inum

    def make_special(self, name: str, perms: int, uid: int,
                     inum: int | None = None) -> int:
        """Create a device node.  Returns its i-node."""
        self._check_open()
        self._reserve(name, self._entry_blocks())
        inum = self.allocate_inode(inum)
        self.fill_inode(inum, perms, InodeFlag.SPECIAL, uid, 0, [])
        self.add_entry(name, inum)
        return inum

    def make_link(self, name: str, inum: int = LAST_INODE):
        self.add_entry(name, inum)

    def ascend(self):
        """Leave the current directory."""
        if not self.dirstack:
            raise StructureError("'$' with no directory to leave")
        self.dirstack.pop()

    # ── boot track ─────────────────────────────────────────────────

    def _load_boot_words(self, start: int, words: list[int]):
        end = start + len(words)
        if end > (NUM_BLOCKS - BOOT_BLOCK) * WORDS_PER_BLOCK:
            raise StructureError(
                f"Boot track overflow ({len(words)} words at {start})")
        for addr, w in enumerate(words, start):
            blk, off = divmod(addr, WORDS_PER_BLOCK)
            self.write_word(BOOT_BLOCK + blk, off, w)

    def load_boot_image(self, words: list[int]):
        """Place a kernel image at the start of the boot track."""
        self._load_boot_words(0, words)

    def load_char_table(self, words: list[int]):
        """Place the display character table inside the boot track."""
        self._load_boot_words(CHAR_TABLE_OFFSET, words)
