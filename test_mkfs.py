#!/usr/bin/env python3
"""
Command-line tests for mkfs.py.
"""
import contextlib
import io
import os
import tempfile
import unittest

from imagefmt import ptr_encode_word, simh_decode_word
from mkfs import main, make_parser
from pdp7fs import NUM_BLOCKS, WORDS_PER_BLOCK, BOOT_BLOCK

SIDE_WORDS = NUM_BLOCKS * WORDS_PER_BLOCK

PROTO = """\
dd   drwr-  -1  4
  system drwr- -1 3
    init  -rw-r  -1  init.txt
  $
  tty  irwrw  0
$
"""


class TestMkfsCLI(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.proto = self.path("proto")
        with open(self.proto, "w") as f:
            f.write(PROTO)
        with open(self.path("init.txt"), "wb") as f:
            f.write(b"init\n")

    def tearDown(self):
        self._tmp.cleanup()

    def path(self, name: str) -> str:
        return os.path.join(self.tmp, name)

    def run_main(self, *argv: str) -> str:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            main(list(argv))
        return out.getvalue()

    def test_defaults(self):
        args = make_parser().parse_args(["proto"])
        self.assertEqual(args.format, "list")
        self.assertEqual(args.output, "image.fs")
        self.assertFalse(args.dot or args.dotdot or args.nodd or args.debug)

    def test_simh_output(self):
        out = self.path("fs.rb09")
        msg = self.run_main("-f", "simh", "-o", out, self.proto)
        self.assertIn("Created", msg)
        self.assertEqual(os.path.getsize(out), 2 * SIDE_WORDS * 4)
        with open(out, "rb") as f:
            data = f.read()
        # sysdata word 0 on side 1: free list head after 3 blocks used
        base = SIDE_WORDS * 4
        self.assertEqual(simh_decode_word(data[base : base + 4]), 715)

    def test_ptr_output(self):
        out = self.path("fs.ptr")
        self.run_main("-f", "ptr", "-o", out, self.proto)
        self.assertEqual(os.path.getsize(out), 2 * SIDE_WORDS * 3)

    def test_list_output(self):
        out = self.path("fs.list")
        self.run_main("-o", out, "--dot", "--dotdot", self.proto)
        with open(out) as f:
            lines = f.read().split("\n")
        self.assertEqual(len(lines), NUM_BLOCKS * 9 + 1)

    def test_kernel_on_boot_track(self):
        kernel = self.path("sys.ptr")
        with open(kernel, "wb") as f:
            f.write(ptr_encode_word(0o740040) + ptr_encode_word(0o1234))
        out = self.path("fs.rb09")
        self.run_main("-f", "simh", "-o", out, "--kernel", kernel, self.proto)
        with open(out, "rb") as f:
            data = f.read()
        base = (SIDE_WORDS + BOOT_BLOCK * WORDS_PER_BLOCK) * 4
        self.assertEqual(simh_decode_word(data[base : base + 4]), 0o740040)
        self.assertEqual(simh_decode_word(data[base + 4 : base + 8]), 0o1234)

    def test_bad_proto_exits(self):
        with open(self.proto, "w") as f:
            f.write("dd drw 0\n")
        err = io.StringIO()
        out = self.path("never")
        with contextlib.redirect_stderr(err):
            with self.assertRaises(SystemExit) as cm:
                main(["-o", out, self.proto])
        self.assertEqual(cm.exception.code, 1)
        self.assertIn("Line 1", err.getvalue())
        self.assertFalse(os.path.exists(out))

    def test_non_ascii_proto_exits(self):
        with open(self.proto, "wb") as f:
            f.write(b"dd drwrw 0\n\xff\n")
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            with self.assertRaises(SystemExit) as cm:
                main(["-o", self.path("x"), self.proto])
        self.assertEqual(cm.exception.code, 1)
        self.assertIn("Line 2", err.getvalue())

    def test_missing_proto_exits(self):
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            with self.assertRaises(SystemExit) as cm:
                main(["-o", self.path("x"), self.path("nope")])
        self.assertEqual(cm.exception.code, 1)
        self.assertIn("pdp7mkfs: error:", err.getvalue())

    def test_bad_format_rejected(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                main(["-f", "tape", self.proto])
        self.assertEqual(cm.exception.code, 2)


if __name__ == "__main__":
    unittest.main()
