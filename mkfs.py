#!/usr/bin/env python3
"""
pdp7mkfs — build a PDP-7 UNIX filesystem image from a proto file.

Usage:
  python mkfs.py [-d] [--dot] [--dotdot] [--nodd] [-f list|ptr|simh]
                 [-o OUTPUT] [--kernel FILE] [--chartable FILE] PROTO
"""

from __future__ import annotations

import argparse
import logging
import sys

from imagefmt import FORMATS, write_image
from payload import load_words
from pdp7fs import FSError, Image, DirOptions
from proto import build_image

logger = logging.getLogger("pdp7mkfs")


def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdp7mkfs",
        description="Build a PDP-7 UNIX filesystem image",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python mkfs.py -f simh -o unixv0.rb09 proto\n"
               "  python mkfs.py --dot --dotdot -f ptr -o fs.ptr proto\n"
               "  python mkfs.py --kernel sys.ptr --chartable cas.ptr "
               "-f simh proto\n",
    )
    parser.add_argument("proto", help="Proto file describing the tree")
    parser.add_argument("-d", "--debug", action="store_true",
                        help="Log every allocation and entry")
    parser.add_argument("--dot", action="store_true",
                        help="Give each directory a '.' entry")
    parser.add_argument("--dotdot", action="store_true",
                        help="Give each directory a '..' entry")
    parser.add_argument("--nodd", action="store_true",
                        help="Omit the 'dd' entry in each directory")
    parser.add_argument("-f", "--format", default="list", choices=FORMATS,
                        help="Output format (default: list)")
    parser.add_argument("-o", "--output", default="image.fs",
                        help="Output path (default: image.fs)")
    parser.add_argument("--kernel", default=None, metavar="FILE",
                        help="Kernel image to place on the boot track")
    parser.add_argument("--chartable", default=None, metavar="FILE",
                        help="Display character table for the boot track")
    return parser


def run(args: argparse.Namespace) -> Image:
    options = DirOptions(dot=args.dot, dotdot=args.dotdot, nodd=args.nodd)
    image = Image(options)
    if args.kernel:
        image.load_boot_image(load_words(args.kernel))
    if args.chartable:
        image.load_char_table(load_words(args.chartable))
    build_image(args.proto, image=image)
    write_image(image, args.output, args.format)
    return image


def main(argv: list[str] | None = None):
    args = make_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
    try:
        image = run(args)
    except (FSError, OSError) as e:
        print(f"pdp7mkfs: error: {e}", file=sys.stderr)
        sys.exit(1)
    used = image.next_inum - 1
    print(f"Created {args.output} ({args.format}, highest i-node {used})")


if __name__ == "__main__":
    main()
