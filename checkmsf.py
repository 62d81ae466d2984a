"""List the streams of an MSF container (PDB file), or hex dump one of them."""

import argparse
import io
import logging
import sys

from msf import MsfFile, MsfError

log = logging.getLogger(__name__)


def hexdump(s, sep=" "):
    return sep.join(["%02x"%x for x in s])

def _ascii(s):
    return "".join(chr(c) if 0x20 <= c <= 0x7e else "." for c in s)

def chexdump(stream, st=0, abbreviate=True, stride=16, indent="", print_fn=print):
    """Hex dump everything left in stream, one line per stride bytes.

       Repeated lines are collapsed into a single '*'.
    """
    last = None
    skip = False
    off = st
    while True:
        val = stream.read(stride)
        if not val:
            break
        if val == last and abbreviate:
            if not skip:
                print_fn(indent+"%08x  *" % off)
                skip = True
        else:
            print_fn(indent+"%08x  %s  |%s|" % (
                off,
                "  ".join(hexdump(val[i:i+8], ' ').ljust(23)
                          for i in range(0, stride, 8)),
                _ascii(val).ljust(stride)))
            last = val
            skip = False
        off += len(val)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="checkmsf", description=__doc__)
    parser.add_argument("filename", help="MSF container, usually a .pdb file")
    parser.add_argument("stream", nargs="?", type=int, help="index of a stream to hex dump")
    parser.add_argument("--offset", type=lambda x: int(x, 0), default=0,
                        help="byte offset of the container inside the file (default: 0)")
    parser.add_argument("--superblock", action="store_true", help="print the decoded superblock")
    parser.add_argument("-v", "--verbose", action="store_true", help="show debug output")
    return parser, parser.parse_args(argv)


def main(argv=None):
    parser, args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(name)s: %(message)s")

    try:
        msf = MsfFile.open(args.filename, args.offset)
    except MsfError as e:
        print(f"Invalid MSF file: {e}")
        return 1
    except OSError as e:
        parser.error(f"can't open {args.filename}: {e.strerror}")

    with msf:
        if args.superblock:
            print(msf.superblock)

        if args.stream is not None:
            if not 0 <= args.stream < len(msf):
                parser.error(f"stream {args.stream} out of range, the file has {len(msf)} streams")
            log.debug("dumping stream %d (%d bytes)", args.stream, msf.getStream(args.stream).size)
            chexdump(io.BufferedReader(msf.getStream(args.stream).clone()))
            return 0

        print(f"Found {len(msf)} streams: ")
        for n, stream in enumerate(msf):
            print(f" * stream {n}: {stream.size} bytes")

    return 0


if __name__ == "__main__":
    sys.exit(main())
