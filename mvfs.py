"""
mvfs.py — on-disk format of the MVFS single-file disk image.

Defines the block layout, the three record codecs (superblock, inode,
directory entry), their checksums and the bitmap allocator.  Both the
builder and the patcher in mvfsutil.py go through this module, so an
image written by one is always readable by the other.

Image layout (block size 4096):
    Block 0                    Superblock (116 live bytes, zero-padded)
    Block 1                    Inode bitmap
    Block 2                    Data bitmap
    Blocks 3 .. 3+T-1          Inode table (T = ceil(inodes*128 / 4096))
    Blocks 3+T .. total-1      Data region

Superblock (block 0):
    +0   magic          u32  0x4D565346
    +4   version        u32  1
    +8   block_size     u32  4096
    +12  total_blocks   u64
    +20  inode_count    u64
    +28  ibm_start      u64  1
    +36  ibm_blocks     u64  1
    +44  dbm_start      u64  2
    +52  dbm_blocks     u64  1
    +60  itable_start   u64  3
    +68  itable_blocks  u64
    +76  data_start     u64
    +84  data_blocks    u64
    +92  root_inode     u64  1
    +100 mtime_epoch    u64
    +108 flags          u32  0
    +112 checksum       u32  crc32(block[0..4091]) with this field zeroed

Inode (128 bytes):
    +0   mode u16, +2 links u16, +4 uid u32, +8 gid u32, +12 size u64,
    +20  atime u64, +28 mtime u64, +36 ctime u64, +44 direct[12] u32,
    +92  reserved[3] u32, +104 proj_id u32, +108 uid16_gid16 u32,
    +112 xattr_ptr u64, +120 crc u64 (low 32 bits = crc32(bytes 0..119))

Directory entry (64 bytes):
    +0   inode_no u32 (0 = free), +4 type u8 (1 file, 2 dir),
    +5   name[58] NUL-padded, +63 checksum u8 (XOR of bytes 0..62)

Each bitmap is exactly one block.  4096 * 8 = 32768 bits is far more
than MAX_INODES or the largest data region, so a bitmap never needs a
second block.  This is a fixed limit of the format, not a computed one.
"""

from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────

BLOCK_SIZE = 4096
MAGIC = 0x4D565346
FS_VERSION = 1

INODE_SIZE = 128
DIRENT_SIZE = 64
DIRECT_MAX = 12
NAME_FIELD_LEN = 58
MAX_NAME_LEN = NAME_FIELD_LEN - 1       # room for the terminator
ROOT_INO = 1

INODE_BITMAP_START = 1
DATA_BITMAP_START = 2
INODE_TABLE_START = 3
BITMAP_BLOCKS = 1

MAX_FILE_SIZE = DIRECT_MAX * BLOCK_SIZE
DIRENTS_PER_BLOCK = BLOCK_SIZE // DIRENT_SIZE

# Policy limits for format, not structural ones
MIN_SIZE_KIB = 180
MAX_SIZE_KIB = 4096
SIZE_KIB_STEP = 4
MIN_INODES = 128
MAX_INODES = 512

# Inode modes
S_IFDIR = 0o040000
S_IFREG = 0o100000

# Directory entry types
DT_FILE = 1
DT_DIR = 2

DT_NAMES = {DT_FILE: "file", DT_DIR: "dir"}

_SUPERBLOCK = struct.Struct("<3I12Q2I")
_INODE = struct.Struct("<HHIIQQQQ12I3IIIQQ")
_DIRENT = struct.Struct("<IB58sB")

SUPERBLOCK_SIZE = _SUPERBLOCK.size
SB_CHECKSUM_OFFSET = SUPERBLOCK_SIZE - 4
INODE_CRC_OFFSET = INODE_SIZE - 8

assert SUPERBLOCK_SIZE == 116
assert _INODE.size == INODE_SIZE
assert _DIRENT.size == DIRENT_SIZE


# ── Errors ─────────────────────────────────────────────────────────────

class MVFSError(Exception):
    """Base class for every failure raised by the MVFS tools."""


class ConfigurationError(MVFSError, ValueError):
    """Format parameters out of range, or a layout with no data region."""


class NotFoundError(MVFSError, FileNotFoundError):
    """An image, host file or directory entry does not exist."""


class FormatError(MVFSError):
    """The bytes given are not a usable MVFS image."""


class ResourceExhausted(MVFSError):
    """No free inode, not enough data blocks, or the root directory is full."""


class NameTooLong(MVFSError, ValueError):
    """A file name does not fit in the directory entry name field."""


class FileTooLarge(MVFSError):
    """A file needs more blocks than an inode has direct pointers."""


class ImageIOError(MVFSError, OSError):
    """Reading or writing a file on the host failed."""


# ── Layout ─────────────────────────────────────────────────────────────

def blocks_needed(nbytes: int) -> int:
    """Number of 4096-byte blocks needed to hold *nbytes*."""
    return (nbytes + BLOCK_SIZE - 1) // BLOCK_SIZE


@dataclass(frozen=True)
class Layout:
    """Block counts and offsets of every region of an image."""
    total_blocks: int
    inode_count: int
    inode_table_blocks: int
    data_region_start: int
    data_region_blocks: int
    inode_bitmap_start: int = INODE_BITMAP_START
    inode_bitmap_blocks: int = BITMAP_BLOCKS
    data_bitmap_start: int = DATA_BITMAP_START
    data_bitmap_blocks: int = BITMAP_BLOCKS
    inode_table_start: int = INODE_TABLE_START

    @classmethod
    def derive(cls, total_blocks: int, inode_count: int) -> "Layout":
        """Lay out *total_blocks* blocks holding *inode_count* inodes.

        Only checks that at least one data block is left over; the policy
        limits on size and inode count are enforced by compute_layout().
        """
        itable = blocks_needed(inode_count * INODE_SIZE)
        data_start = INODE_TABLE_START + itable
        data_blocks = total_blocks - data_start
        if data_blocks < 1:
            raise ConfigurationError(
                f"Not enough blocks: {total_blocks} blocks cannot hold "
                f"{inode_count} inodes and a data region")
        return cls(total_blocks=total_blocks, inode_count=inode_count,
                   inode_table_blocks=itable, data_region_start=data_start,
                   data_region_blocks=data_blocks)

    @property
    def image_size(self) -> int:
        return self.total_blocks * BLOCK_SIZE


def compute_layout(size_kib: int, inode_count: int) -> Layout:
    """Validate format parameters and derive the image layout."""
    if not (MIN_SIZE_KIB <= size_kib <= MAX_SIZE_KIB) or size_kib % SIZE_KIB_STEP:
        raise ConfigurationError(
            f"size-kib must be between {MIN_SIZE_KIB}-{MAX_SIZE_KIB} "
            f"and a multiple of {SIZE_KIB_STEP}, got {size_kib}")
    if not (MIN_INODES <= inode_count <= MAX_INODES):
        raise ConfigurationError(
            f"inodes must be between {MIN_INODES}-{MAX_INODES}, "
            f"got {inode_count}")
    return Layout.derive(size_kib * 1024 // BLOCK_SIZE, inode_count)


# ── Checksums ──────────────────────────────────────────────────────────

def crc32(data: bytes | bytearray | memoryview) -> int:
    """CRC-32 (poly 0xEDB88320, init/final xor 0xFFFFFFFF) as unsigned."""
    return zlib.crc32(data) & 0xFFFFFFFF


def xor8(data: bytes | bytearray) -> int:
    """Running 8-bit XOR of *data*."""
    x = 0
    for b in data:
        x ^= b
    return x


# ── Bitmap helpers ─────────────────────────────────────────────────────

def bitmap_get(bmap: bytes | bytearray, index: int) -> bool:
    """Return True if bit *index* is set."""
    byte_idx, bit_idx = divmod(index, 8)
    if byte_idx >= len(bmap):
        return False
    return bool(bmap[byte_idx] & (1 << bit_idx))


def bitmap_set(bmap: bytearray, index: int):
    """Set bit *index*."""
    byte_idx, bit_idx = divmod(index, 8)
    bmap[byte_idx] |= (1 << bit_idx)


def bitmap_count(bmap: bytes | bytearray, limit: int) -> int:
    """Number of set bits among the first *limit*."""
    return sum(1 for i in range(limit) if bitmap_get(bmap, i))


def find_free_inode(bmap: bytes | bytearray, inode_count: int) -> int:
    """Return the lowest clear inode bit, skipping bit 0 (the root).

    The result is a 0-based index; the inode number is index + 1.
    """
    for i in range(1, inode_count):
        if not bitmap_get(bmap, i):
            return i
    raise ResourceExhausted("No free inodes available")


def find_free_data_blocks(bmap: bytes | bytearray, region_blocks: int,
                          count: int) -> list[int]:
    """Return the *count* lowest clear data-region indices.

    The bitmap is only read.  If fewer than *count* are free, nothing is
    returned and ResourceExhausted is raised.
    """
    found: list[int] = []
    for i in range(region_blocks):
        if len(found) == count:
            break
        if not bitmap_get(bmap, i):
            found.append(i)
    if len(found) < count:
        raise ResourceExhausted(
            f"Not enough free data blocks ({count} needed, "
            f"{len(found)} available)")
    return found


# ── Superblock ─────────────────────────────────────────────────────────

@dataclass
class Superblock:
    """Block 0 of an image."""
    total_blocks: int
    inode_count: int
    inode_bitmap_start: int
    inode_bitmap_blocks: int
    data_bitmap_start: int
    data_bitmap_blocks: int
    inode_table_start: int
    inode_table_blocks: int
    data_region_start: int
    data_region_blocks: int
    root_inode: int = ROOT_INO
    mtime_epoch: int = 0
    flags: int = 0
    checksum: int = 0
    magic: int = MAGIC
    version: int = FS_VERSION
    block_size: int = BLOCK_SIZE

    @classmethod
    def for_layout(cls, layout: Layout, mtime: int) -> "Superblock":
        return cls(
            total_blocks=layout.total_blocks,
            inode_count=layout.inode_count,
            inode_bitmap_start=layout.inode_bitmap_start,
            inode_bitmap_blocks=layout.inode_bitmap_blocks,
            data_bitmap_start=layout.data_bitmap_start,
            data_bitmap_blocks=layout.data_bitmap_blocks,
            inode_table_start=layout.inode_table_start,
            inode_table_blocks=layout.inode_table_blocks,
            data_region_start=layout.data_region_start,
            data_region_blocks=layout.data_region_blocks,
            mtime_epoch=mtime,
        )

    def pack(self) -> bytes:
        """Serialise into a full zero-padded block."""
        live = _SUPERBLOCK.pack(
            self.magic, self.version, self.block_size,
            self.total_blocks, self.inode_count,
            self.inode_bitmap_start, self.inode_bitmap_blocks,
            self.data_bitmap_start, self.data_bitmap_blocks,
            self.inode_table_start, self.inode_table_blocks,
            self.data_region_start, self.data_region_blocks,
            self.root_inode, self.mtime_epoch,
            self.flags, self.checksum,
        )
        return live + b"\x00" * (BLOCK_SIZE - len(live))

    @classmethod
    def unpack(cls, data: bytes | bytearray) -> "Superblock":
        if len(data) < SUPERBLOCK_SIZE:
            raise FormatError(
                f"Image too small for a superblock ({len(data)} bytes)")
        (magic, version, block_size,
         total_blocks, inode_count,
         ibm_start, ibm_blocks, dbm_start, dbm_blocks,
         it_start, it_blocks, data_start, data_blocks,
         root_inode, mtime, flags, checksum) = _SUPERBLOCK.unpack_from(data, 0)
        return cls(
            total_blocks=total_blocks, inode_count=inode_count,
            inode_bitmap_start=ibm_start, inode_bitmap_blocks=ibm_blocks,
            data_bitmap_start=dbm_start, data_bitmap_blocks=dbm_blocks,
            inode_table_start=it_start, inode_table_blocks=it_blocks,
            data_region_start=data_start, data_region_blocks=data_blocks,
            root_inode=root_inode, mtime_epoch=mtime, flags=flags,
            checksum=checksum, magic=magic, version=version,
            block_size=block_size,
        )

    def compute_checksum(self) -> int:
        # Covers the padded block, less the trailing 4 bytes of the block
        block = bytearray(self.pack())
        struct.pack_into("<I", block, SB_CHECKSUM_OFFSET, 0)
        return crc32(block[:BLOCK_SIZE - 4])

    def finalize(self) -> int:
        """Recompute and store the checksum.  Call after every other field."""
        self.checksum = self.compute_checksum()
        return self.checksum

    def verify(self) -> bool:
        return self.checksum == self.compute_checksum()

    def layout_errors(self) -> list[str]:
        """Return the ways this superblock breaks the region arithmetic."""
        errors = []
        if self.block_size != BLOCK_SIZE:
            errors.append(f"block size {self.block_size} != {BLOCK_SIZE}")
        if self.root_inode != ROOT_INO:
            errors.append(f"root inode {self.root_inode} != {ROOT_INO}")
        if self.inode_bitmap_blocks != BITMAP_BLOCKS \
                or self.data_bitmap_blocks != BITMAP_BLOCKS:
            errors.append("bitmaps must be exactly one block each")
        expected = [INODE_BITMAP_START, DATA_BITMAP_START, INODE_TABLE_START]
        actual = [self.inode_bitmap_start, self.data_bitmap_start,
                  self.inode_table_start]
        if actual != expected:
            errors.append(f"region starts {actual} != {expected}")
        if self.inode_count < 1:
            errors.append("no inodes")
        if self.inode_table_blocks * BLOCK_SIZE < self.inode_count * INODE_SIZE:
            errors.append(
                f"inode table ({self.inode_table_blocks} blocks) cannot hold "
                f"{self.inode_count} inodes")
        if self.data_region_start != self.inode_table_start + self.inode_table_blocks:
            errors.append(
                f"data region start {self.data_region_start} does not follow "
                f"the inode table")
        if self.data_region_blocks < 1:
            errors.append("empty data region")
        total = (1 + self.inode_bitmap_blocks + self.data_bitmap_blocks
                 + self.inode_table_blocks + self.data_region_blocks)
        if total != self.total_blocks:
            errors.append(
                f"regions add up to {total} blocks, superblock says "
                f"{self.total_blocks}")
        return errors


# ── Inode ──────────────────────────────────────────────────────────────

@dataclass
class Inode:
    """One 128-byte inode."""
    mode: int = 0
    links: int = 0
    uid: int = 0
    gid: int = 0
    size_bytes: int = 0
    atime: int = 0
    mtime: int = 0
    ctime: int = 0
    direct: list[int] = field(default_factory=lambda: [0] * DIRECT_MAX)
    reserved: list[int] = field(default_factory=lambda: [0] * 3)
    proj_id: int = 0
    uid16_gid16: int = 0
    xattr_ptr: int = 0
    crc: int = 0

    def __post_init__(self):
        if len(self.direct) != DIRECT_MAX:
            raise ConfigurationError(
                f"Inode needs {DIRECT_MAX} direct pointers, got {len(self.direct)}")
        if len(self.reserved) != 3:
            raise ConfigurationError(
                f"Inode needs 3 reserved words, got {len(self.reserved)}")

    @property
    def is_dir(self) -> bool:
        return (self.mode & 0o170000) == S_IFDIR

    @property
    def is_file(self) -> bool:
        return (self.mode & 0o170000) == S_IFREG

    @property
    def blocks(self) -> list[int]:
        """Direct pointers in use, in file order."""
        return [b for b in self.direct if b != 0]

    def set_blocks(self, blocks: list[int]):
        if len(blocks) > DIRECT_MAX:
            raise FileTooLarge(
                f"{len(blocks)} blocks exceed {DIRECT_MAX} direct pointers")
        self.direct = list(blocks) + [0] * (DIRECT_MAX - len(blocks))

    def pack(self) -> bytes:
        return _INODE.pack(
            self.mode, self.links, self.uid, self.gid, self.size_bytes,
            self.atime, self.mtime, self.ctime,
            *self.direct, *self.reserved,
            self.proj_id, self.uid16_gid16, self.xattr_ptr, self.crc,
        )

    @classmethod
    def unpack(cls, data: bytes | bytearray) -> "Inode":
        v = _INODE.unpack_from(data, 0)
        return cls(
            mode=v[0], links=v[1], uid=v[2], gid=v[3], size_bytes=v[4],
            atime=v[5], mtime=v[6], ctime=v[7],
            direct=list(v[8:20]), reserved=list(v[20:23]),
            proj_id=v[23], uid16_gid16=v[24], xattr_ptr=v[25], crc=v[26],
        )

    def compute_checksum(self) -> int:
        raw = bytearray(self.pack())
        raw[INODE_CRC_OFFSET:] = b"\x00" * 8
        return crc32(raw[:INODE_CRC_OFFSET])

    def finalize(self) -> int:
        """Recompute the checksum into the low half of the crc field."""
        c = self.compute_checksum()
        self.crc = c
        return c

    def verify(self) -> bool:
        return self.crc == self.compute_checksum()


# ── Directory entry ────────────────────────────────────────────────────

# Names are stored as raw bytes.  Host names that are not valid UTF-8 reach
# us as str with surrogate escapes (os.fsdecode) and are written back as the
# original bytes.
_NAME_ERRORS = "surrogateescape"


def _name_field(name: str) -> bytes:
    raw = name.encode("utf-8", _NAME_ERRORS)
    if len(raw) >= NAME_FIELD_LEN:
        raise NameTooLong(
            f"Filename too long: {name!r} ({len(raw)} bytes, "
            f"max {MAX_NAME_LEN})")
    return raw


def encode_name(name: str) -> bytes:
    """UTF-8 encode a new entry's *name*, enforcing the 57-byte limit."""
    raw = _name_field(name)
    if not raw:
        raise ConfigurationError("Empty file name")
    if b"\x00" in raw or b"/" in raw:
        raise ConfigurationError(f"Invalid file name: {name!r}")
    return raw


def display_name(name: str) -> str:
    """*name* with undecodable bytes shown as U+FFFD, safe to print."""
    return name.encode("utf-8", _NAME_ERRORS).decode("utf-8", "replace")


@dataclass
class DirEntry:
    """One 64-byte directory entry."""
    inode_no: int
    type: int
    name: str
    checksum: int = 0

    @property
    def is_free(self) -> bool:
        return self.inode_no == 0

    @property
    def type_name(self) -> str:
        return DT_NAMES.get(self.type, f"?{self.type}")

    def pack(self) -> bytes:
        return _DIRENT.pack(self.inode_no, self.type,
                            _name_field(self.name), self.checksum)

    @classmethod
    def unpack(cls, data: bytes | bytearray) -> "DirEntry":
        inode_no, dtype, raw_name, checksum = _DIRENT.unpack_from(data, 0)
        name = raw_name.split(b"\x00", 1)[0].decode("utf-8", _NAME_ERRORS)
        return cls(inode_no, dtype, name, checksum)

    def compute_checksum(self) -> int:
        return xor8(self.pack()[:DIRENT_SIZE - 1])

    def finalize(self) -> int:
        self.checksum = self.compute_checksum()
        return self.checksum

    def verify(self) -> bool:
        return self.checksum == self.compute_checksum()


def dirent_raw_checksum_ok(raw: bytes | bytearray) -> bool:
    """Check a dirent's stored XOR against its raw bytes."""
    return xor8(raw[:DIRENT_SIZE - 1]) == raw[DIRENT_SIZE - 1]
