# Parse Microsoft's Multi-stream format (container for PDB files)
# https://llvm.org/docs/PDB/MsfFile.html

from construct import *

import io
import logging
import os
import threading
import weakref

log = logging.getLogger(__name__)

# Two spellings of the product string have been seen in the wild
MSF_MAGIC = b"Microsoft C/C++ MSF 7.00\r\n\x1aDS\0\0\0" # 0x20 bytes
MSF_MAGIC_SPACED = b"Microsoft C / C++ MSF 7.00\r\n\x1aDS\0\0\0"
MAGICS = (MSF_MAGIC, MSF_MAGIC_SPACED)

BLOCK_SIZES = (0x200, 0x400, 0x800, 0x1000)


class MsfError(Exception):
    """Base class of everything open_msf raises for malformed input."""

class InvalidMagic(MsfError):
    pass

class TruncatedInput(MsfError):
    """Fewer bytes available than a fixed size field needs."""

class TruncatedSuperblock(TruncatedInput):
    pass

class TruncatedDirectory(TruncatedInput):
    """Block map or stream directory cut short."""

class InvalidSuperblock(MsfError):
    def __init__(self, block_size):
        super().__init__(f"invalid block size in superblock (expected one of {', '.join(map(str, BLOCK_SIZES))}, got {block_size})")
        self.block_size = block_size

class Unsupported(MsfError, io.UnsupportedOperation):
    """Write attempted on a read-only stream. Also an io.UnsupportedOperation, like any read-only file."""


def u32_array(count):
    # one read for the whole array, then decode from memory
    return FixedSized(count * 4, Array(count, Int32ul))


def read_magic(fd):
    """Try each accepted magic at the current position of fd.

       On success the position is left just after the magic.
       On failure the position is restored.
    """
    start = fd.tell()
    for magic in MAGICS:
        try:
            Const(magic).parse_stream(fd)
            return True
        except (ConstError, StreamError):
            fd.seek(start)
    return False


class Superblock:
    # Follows the magic. Block indices are 32bit in this (version 7) format.
    subcon = Struct(
        "BlockSize" / Int32ul,
        "FreeBlockMapBlock" / Int32ul, # normally 1 or 2, not checked
        "NumBlocks" / Int32ul,
        "NumDirectoryBytes" / Int32ul,
        Padding(4),
        "BlockMapAddr" / Int32ul, # block holding the directory's block list
    )

    def __init__(self, BlockSize, FreeBlockMapBlock, NumBlocks, NumDirectoryBytes, BlockMapAddr):
        self.BlockSize = BlockSize
        self.FreeBlockMapBlock = FreeBlockMapBlock
        self.NumBlocks = NumBlocks
        self.NumDirectoryBytes = NumDirectoryBytes
        self.BlockMapAddr = BlockMapAddr

    @classmethod
    def sizeof(cls):
        return cls.subcon.sizeof()

    @classmethod
    def parse_stream(cls, fd):
        try:
            c = cls.subcon.parse_stream(fd)
        except StreamError as e:
            raise TruncatedSuperblock("superblock is truncated, the file might be cut short") from e

        if c.BlockSize not in BLOCK_SIZES:
            raise InvalidSuperblock(c.BlockSize)

        return cls(c.BlockSize, c.FreeBlockMapBlock, c.NumBlocks, c.NumDirectoryBytes, c.BlockMapAddr)

    @property
    def NumDirectoryBlocks(self):
        return blocks_needed(self.NumDirectoryBytes, self.BlockSize)

    def __str__(self):
        return f"""Superblock:
    BlockSize: {self.BlockSize}
    FreeBlockMapBlock: {self.FreeBlockMapBlock}
    NumBlocks: {self.NumBlocks}
    NumDirectoryBytes: {self.NumDirectoryBytes}
    BlockMapAddr: {self.BlockMapAddr:#x}
    """


def blocks_needed(size, block_size):
    return (size + block_size - 1) // block_size

def resolve_blocks(indices, block_size, base_offset=0):
    return [idx * block_size + base_offset for idx in indices]

def translate(offset, block_size, blocks):
    """Map a logical offset to an absolute offset in the underlying file.

       blocks holds the absolute offset of each block, in logical order.
    """
    return blocks[offset // block_size] + offset % block_size


_locks = weakref.WeakKeyDictionary()
_locks_lock = threading.Lock()
_global_lock = threading.Lock()

def _lock_for(fd):
    # every ByteSource over the same file object must share a lock
    with _locks_lock:
        try:
            lock = _locks.get(fd)
            if lock is None:
                lock = _locks[fd] = threading.Lock()
            return lock
        except TypeError:
            # not weak-referenceable
            return _global_lock


def _raw_fileno(fd):
    # Only files whose bytes are the descriptor's bytes. gzip/bz2/lzma files
    # hand out the descriptor of the compressed data, and a BufferedRandom can
    # hold writes pread wouldn't see.
    if not hasattr(os, "pread"):
        return None
    raw = fd.raw if type(fd) is io.BufferedReader else fd
    if type(raw) is not io.FileIO:
        return None
    try:
        return raw.fileno()
    except (OSError, ValueError):
        return None


class ByteSource:
    """Positioned reads on a caller owned file object.

       Uses os.pread when fd is a plain OS file, so no cursor is shared.
       Otherwise each seek+read pair runs under a lock tied to the file object.
    """

    def __init__(self, fd):
        self.fd = fd
        self.fileno = _raw_fileno(fd)
        self.lock = _lock_for(fd)

    def read_at(self, offset, size):
        if self.fileno is not None:
            return os.pread(self.fileno, size, offset)
        with self.lock:
            self.fd.seek(offset)
            return self.fd.read(size)


class MsfStream(io.RawIOBase):
    """Read-only view of one logical stream.

       Reads never cross a block boundary in one physical read, since logically
       consecutive blocks can live anywhere in the file.
    """

    def __init__(self, source, size, block_size, blocks):
        super().__init__()
        if not isinstance(source, ByteSource):
            source = ByteSource(source)
        self.source = source
        self.size = size
        self.block_size = block_size
        self.blocks = list(blocks)
        self.pos = 0

    @property
    def length(self):
        return self.size

    @property
    def eof(self):
        """read() returns b"" both at the end and for read(0), this tells them apart."""
        return self.pos >= self.size

    def readable(self):
        return True

    def writable(self):
        return False

    def seekable(self):
        return True

    def read(self, size=-1):
        remaining = max(self.size - self.pos, 0)
        if size is None or size < 0 or size > remaining:
            size = remaining
        return super().read(size)

    def readinto(self, buffer):
        if self.closed:
            raise ValueError("I/O operation on closed stream")

        with memoryview(buffer) as mv, mv.cast("B") as view:
            return self._readinto(view)

    def _readinto(self, view):
        count = min(len(view), max(self.size - self.pos, 0))
        done = 0

        while done < count:
            block_offset = self.pos % self.block_size
            want = min(self.block_size - block_offset, count - done)
            data = self.source.read_at(translate(self.pos, self.block_size, self.blocks), want)

            view[done:done + len(data)] = data
            done += len(data)
            self.pos += len(data)

            if len(data) < want:
                # short physical read, the file is probably truncated
                break

        return done

    def seek(self, n, whence=io.SEEK_SET):
        if whence == io.SEEK_SET:
            pos = n
        elif whence == io.SEEK_CUR:
            pos = self.pos + n
        elif whence == io.SEEK_END:
            pos = self.size + n
        else:
            raise ValueError(f"invalid whence ({whence})")

        if pos < 0:
            raise ValueError(f"negative seek position {pos}")

        self.pos = pos
        return self.pos

    def tell(self):
        return self.pos

    def write(self, b):
        raise Unsupported("MSF streams are read-only")

    def truncate(self, size=None):
        raise Unsupported("MSF streams are read-only")

    def clone(self):
        return MsfStream(self.source, self.size, self.block_size, self.blocks)

    def __repr__(self):
        return f"<MsfStream size={self.size} blocks={len(self.blocks)}>"


class StreamDirectory:
    # The directory is itself an msf stream, located through the block map
    header = Struct(
        "NumStreams" / Int32ul,
        "StreamSizes" / u32_array(this.NumStreams),
    )

    @staticmethod
    def read_block_map(source, superblock, base_offset):
        block_size = superblock.BlockSize
        count = superblock.NumDirectoryBlocks
        offset = superblock.BlockMapAddr * block_size + base_offset

        try:
            indices = u32_array(count).parse(source.read_at(offset, count * 4))
        except StreamError as e:
            raise TruncatedDirectory("can't read the stream directory block map, the file might be truncated") from e

        return resolve_blocks(indices, block_size, base_offset)

    @classmethod
    def parse(cls, source, superblock, base_offset):
        block_size = superblock.BlockSize
        dir_blocks = cls.read_block_map(source, superblock, base_offset)
        dir_stream = MsfStream(source, superblock.NumDirectoryBytes, block_size, dir_blocks)

        streams = []
        try:
            header = cls.header.parse_stream(dir_stream)
            log.debug("directory: %d bytes, %d streams", superblock.NumDirectoryBytes, header.NumStreams)

            # block lists follow the sizes back to back, in stream order
            for size in header.StreamSizes:
                indices = u32_array(blocks_needed(size, block_size)).parse_stream(dir_stream)
                blocks = resolve_blocks(indices, block_size, base_offset)
                streams.append(MsfStream(source, size, block_size, blocks))
        except StreamError as e:
            raise TruncatedDirectory("can't read the stream directory, the file might be truncated") from e

        return streams


def _check_truncated_magic(fd, start):
    head = fd.read(max(map(len, MAGICS)))
    fd.seek(start)
    return any(len(head) < len(magic) and magic.startswith(head) for magic in MAGICS)

def _read_header(fd, offset=None):
    if offset is not None:
        fd.seek(offset)
    base_offset = fd.tell()

    if not read_magic(fd):
        if _check_truncated_magic(fd, base_offset):
            raise TruncatedInput("file is too short to hold an MSF header")
        raise InvalidMagic("invalid file magic, the file might not be a valid MSF")

    superblock = Superblock.parse_stream(fd)
    log.debug("msf at %#x, block size %d, %d blocks", base_offset, superblock.BlockSize, superblock.NumBlocks)
    return superblock, base_offset

def open_msf(fd, offset=None):
    """Open the MSF container starting at offset (default: the current position) of fd.

       Returns the list of streams, in directory order. Nothing is cached, every read goes
       back to fd, which must stay open as long as the streams are used.
    """
    return MsfFile.parse_stream(fd, offset).streams


class MsfFile:
    def __init__(self, fd, superblock, streams, owns_fd=False):
        self.fd = fd
        self.superblock = superblock
        self.streams = streams
        self.owns_fd = owns_fd

    @classmethod
    def parse_stream(cls, fd, offset=None):
        source = ByteSource(fd)
        # the header is read through fd's own cursor, which streams from
        # earlier opens of fd may be moving
        with source.lock:
            superblock, base_offset = _read_header(fd, offset)
        streams = StreamDirectory.parse(source, superblock, base_offset)
        return cls(fd, superblock, streams)

    @classmethod
    def open(cls, filename, offset=None):
        fd = open(filename, "rb")
        try:
            msf = cls.parse_stream(fd, offset)
        except BaseException:
            fd.close()
            raise
        msf.owns_fd = True
        return msf

    def getStream(self, idx):
        return self.streams[idx]

    def close(self):
        if self.owns_fd:
            self.fd.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __getitem__(self, idx):
        return self.streams[idx]

    def __iter__(self):
        return iter(self.streams)

    def __len__(self):
        return len(self.streams)
