"""
mvfsutil.py — build, patch and inspect MVFS disk images.

Image-level operations on top of the record codecs in mvfs.py:

    build_image / format_image    create a new empty image
    FSImage.add_file / add_file   insert one host file into the root directory
    FSImage.list_dir, read_file, info, check
                                  read-only inspection

The builder is a pure function of (size, inode count, time).  The patcher
decodes a whole image into memory, works out every allocation before it
changes anything, then re-encodes the whole image.  Nothing touches the
input file until the new image is complete in memory, and the output is
written to a temporary file that replaces the destination in one step.

Command-line entry points:

    mkfs-builder --image PATH --size-kib N --inodes N
    mkfs-adder   --input PATH --output PATH --file PATH
    mvfsutil     {format,add,ls,cat,info,check} ...
"""

from __future__ import annotations

import argparse
import logging
import os
import stat
import sys
import tempfile
import time
from pathlib import Path

from mvfs import (
    BLOCK_SIZE, DIRENT_SIZE, DIRENTS_PER_BLOCK, INODE_SIZE, MAGIC,
    MAX_FILE_SIZE, ROOT_INO, S_IFDIR, S_IFREG, DT_DIR, DT_FILE,
    DirEntry, Inode, Layout, Superblock,
    MVFSError, NotFoundError, FormatError,
    ResourceExhausted, FileTooLarge, ImageIOError,
    bitmap_count, bitmap_get, bitmap_set, blocks_needed, compute_layout,
    dirent_raw_checksum_ok, display_name, encode_name, find_free_data_blocks,
    find_free_inode,
)

log = logging.getLogger(__name__)


def _epoch_seconds() -> int:
    """Current Unix epoch in seconds."""
    return int(time.time())


# ── Host file I/O ──────────────────────────────────────────────────────

def _read_host_file(path: str | Path, what: str = "file") -> bytes:
    try:
        return Path(path).read_bytes()
    except FileNotFoundError as e:
        raise NotFoundError(f"{what.capitalize()} '{path}' not found") from e
    except OSError as e:
        raise ImageIOError(f"Cannot read {what} '{path}': {e.strerror or e}") from e


def _new_file_mode(path: Path) -> int:
    """Mode for the replacement of *path*: keep the old one, else follow umask."""
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except OSError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def _write_atomic(path: str | Path, data: bytes):
    """Write *data* to a temp file beside *path*, then rename it over *path*.

    A symlinked *path* is written through: the link's target is replaced.
    """
    target = Path(os.path.realpath(path))
    mode = _new_file_mode(target)
    try:
        fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp",
                                   dir=target.parent)
    except OSError as e:
        raise ImageIOError(
            f"Cannot create output image '{path}': {e.strerror or e}") from e
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fchmod(f.fileno(), mode)
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except OSError as e:
        os.unlink(tmp)
        raise ImageIOError(
            f"Cannot write output image '{path}': {e.strerror or e}") from e
    except BaseException:
        os.unlink(tmp)
        raise
    log.debug("wrote %d bytes to %s (mode %03o)", len(data), target, mode)


# ── Image builder ──────────────────────────────────────────────────────

def _root_inode(layout: Layout, now: int) -> Inode:
    root = Inode(mode=S_IFDIR, links=2, size_bytes=2 * DIRENT_SIZE,
                 atime=now, mtime=now, ctime=now)
    root.direct[0] = layout.data_region_start
    root.finalize()
    return root


def _root_dir_block() -> bytes:
    block = bytearray(BLOCK_SIZE)
    for slot, name in enumerate((".", "..")):
        entry = DirEntry(ROOT_INO, DT_DIR, name)
        entry.finalize()
        off = slot * DIRENT_SIZE
        block[off:off + DIRENT_SIZE] = entry.pack()
    return bytes(block)


def build_image(size_kib: int, inode_count: int, now: int | None = None) -> bytes:
    """Return the bytes of a freshly formatted image.

    Deterministic for a given *now* (epoch seconds, default: current time).
    """
    layout = compute_layout(size_kib, inode_count)
    if now is None:
        now = _epoch_seconds()

    sb = Superblock.for_layout(layout, now)
    sb.finalize()

    inode_bitmap = bytearray(BLOCK_SIZE)
    bitmap_set(inode_bitmap, 0)
    data_bitmap = bytearray(BLOCK_SIZE)
    bitmap_set(data_bitmap, 0)

    inode_table = bytearray(layout.inode_table_blocks * BLOCK_SIZE)
    inode_table[0:INODE_SIZE] = _root_inode(layout, now).pack()

    parts = [
        sb.pack(),
        bytes(inode_bitmap),
        bytes(data_bitmap),
        bytes(inode_table),
        _root_dir_block(),
        bytes((layout.data_region_blocks - 1) * BLOCK_SIZE),
    ]
    img = b"".join(parts)
    log.debug("built image: %d blocks, %d inodes, data region %d+%d",
              layout.total_blocks, layout.inode_count,
              layout.data_region_start, layout.data_region_blocks)
    return img


# ── In-memory image ────────────────────────────────────────────────────

class FSImage:
    """A whole MVFS image decoded into memory.

    The superblock is held as a value; bitmaps, inode table and data
    region are owned byte buffers that inodes and directory entries are
    decoded from and encoded back into.
    """

    def __init__(self, superblock: Superblock, inode_bitmap: bytearray,
                 data_bitmap: bytearray, inode_table: bytearray,
                 data_region: bytearray):
        self.sb = superblock
        self.inode_bitmap = inode_bitmap
        self.data_bitmap = data_bitmap
        self.inode_table = inode_table
        self.data_region = data_region

    # ── decoding / encoding ────────────────────────────────────────

    @classmethod
    def from_bytes(cls, data: bytes | bytearray) -> "FSImage":
        """Decode and validate *data* as an image."""
        sb = Superblock.unpack(data)
        if sb.magic != MAGIC:
            raise FormatError(
                f"Invalid file system magic number 0x{sb.magic:08X}")
        problems = sb.layout_errors()
        if problems:
            raise FormatError("Inconsistent superblock: " + "; ".join(problems))
        if len(data) < sb.total_blocks * BLOCK_SIZE:
            raise FormatError(
                f"Image truncated: {len(data)} bytes, superblock needs "
                f"{sb.total_blocks * BLOCK_SIZE}")

        def region(start: int, count: int) -> bytearray:
            return bytearray(data[start * BLOCK_SIZE:(start + count) * BLOCK_SIZE])

        img = cls(
            sb,
            region(sb.inode_bitmap_start, sb.inode_bitmap_blocks),
            region(sb.data_bitmap_start, sb.data_bitmap_blocks),
            region(sb.inode_table_start, sb.inode_table_blocks),
            region(sb.data_region_start, sb.data_region_blocks),
        )
        root_block = img.root_inode.direct[0]
        if not img._in_data_region(root_block):
            raise FormatError(
                f"Root directory block {root_block} is outside the data region")
        return img

    def to_bytes(self) -> bytes:
        """Encode superblock, bitmaps, inode table and data region in order."""
        return b"".join((
            self.sb.pack(),
            bytes(self.inode_bitmap),
            bytes(self.data_bitmap),
            bytes(self.inode_table),
            bytes(self.data_region),
        ))

    @classmethod
    def load(cls, path: str | Path) -> "FSImage":
        """Load an image from a file."""
        img = cls.from_bytes(_read_host_file(path, "input image"))
        log.debug("loaded %s: %d blocks, %d inodes",
                  path, img.sb.total_blocks, img.sb.inode_count)
        return img

    def save(self, path: str | Path):
        """Write the whole image to *path*, replacing it atomically."""
        _write_atomic(path, self.to_bytes())

    # ── inodes ─────────────────────────────────────────────────────

    def get_inode(self, ino: int) -> Inode:
        """Decode inode number *ino* (1-based)."""
        if not (1 <= ino <= self.sb.inode_count):
            raise NotFoundError(f"No inode {ino}")
        off = (ino - 1) * INODE_SIZE
        return Inode.unpack(self.inode_table[off:off + INODE_SIZE])

    def put_inode(self, ino: int, inode: Inode):
        """Encode *inode* into slot *ino*.  The caller finalizes first."""
        off = (ino - 1) * INODE_SIZE
        self.inode_table[off:off + INODE_SIZE] = inode.pack()

    @property
    def root_inode(self) -> Inode:
        return self.get_inode(ROOT_INO)

    # ── data blocks ────────────────────────────────────────────────

    def _in_data_region(self, block: int) -> bool:
        start = self.sb.data_region_start
        return start <= block < start + self.sb.data_region_blocks

    def _block_offset(self, block: int) -> int:
        """Offset into data_region of absolute block index *block*."""
        return (block - self.sb.data_region_start) * BLOCK_SIZE

    def read_block(self, block: int) -> bytes:
        off = self._block_offset(block)
        return bytes(self.data_region[off:off + BLOCK_SIZE])

    def _write_block(self, block: int, chunk: bytes):
        off = self._block_offset(block)
        padded = chunk + b"\x00" * (BLOCK_SIZE - len(chunk))
        self.data_region[off:off + BLOCK_SIZE] = padded

    # ── root directory ─────────────────────────────────────────────

    def _root_dir_offset(self) -> int:
        return self._block_offset(self.root_inode.direct[0])

    def _dir_slots(self) -> int:
        return self.root_inode.size_bytes // DIRENT_SIZE

    def _read_slot(self, slot: int) -> DirEntry:
        off = self._root_dir_offset() + slot * DIRENT_SIZE
        return DirEntry.unpack(self.data_region[off:off + DIRENT_SIZE])

    def _raw_slot(self, slot: int) -> bytes:
        off = self._root_dir_offset() + slot * DIRENT_SIZE
        return bytes(self.data_region[off:off + DIRENT_SIZE])

    def _write_slot(self, slot: int, entry: DirEntry):
        off = self._root_dir_offset() + slot * DIRENT_SIZE
        self.data_region[off:off + DIRENT_SIZE] = entry.pack()

    def list_dir(self) -> list[tuple[int, DirEntry]]:
        """Return (slot, entry) for every live root directory entry."""
        entries = []
        for slot in range(min(self._dir_slots(), DIRENTS_PER_BLOCK)):
            e = self._read_slot(slot)
            if not e.is_free:
                entries.append((slot, e))
        return entries

    def find(self, name: str) -> DirEntry | None:
        for _, e in self.list_dir():
            if e.name == name:
                return e
        return None

    def _find_dir_slot(self) -> tuple[int, bool]:
        """Pick the slot for a new entry: (slot, appended).

        The first free slot among existing entries is reused; otherwise
        the entry is appended, as long as the single block has room.
        """
        count = self._dir_slots()
        for slot in range(min(count, DIRENTS_PER_BLOCK)):
            if self._read_slot(slot).is_free:
                return slot, False
        if count >= DIRENTS_PER_BLOCK:
            raise ResourceExhausted(
                f"Root directory full ({DIRENTS_PER_BLOCK} entries)")
        return count, True

    # ── public API ─────────────────────────────────────────────────

    def add_file(self, name: str, data: bytes, now: int | None = None) -> DirEntry:
        """Insert *data* as root-directory file *name*.

        Returns the new directory entry.  Every check and allocation happens
        before the first change, so on any error the image is unchanged.
        """
        encode_name(name)
        nblocks = blocks_needed(len(data))
        if len(data) > MAX_FILE_SIZE:
            raise FileTooLarge(
                f"File too large: {len(data)} bytes needs {nblocks} blocks "
                f"(max {MAX_FILE_SIZE // BLOCK_SIZE} direct blocks)")

        inode_idx = find_free_inode(self.inode_bitmap, self.sb.inode_count)
        data_idxs = find_free_data_blocks(
            self.data_bitmap, self.sb.data_region_blocks, nblocks)
        slot, appended = self._find_dir_slot()
        ino = inode_idx + 1
        blocks = [self.sb.data_region_start + i for i in data_idxs]
        log.debug("add %r: inode %d, blocks %s, dir slot %d",
                  name, ino, blocks, slot)

        if now is None:
            now = _epoch_seconds()

        bitmap_set(self.inode_bitmap, inode_idx)
        for i in data_idxs:
            bitmap_set(self.data_bitmap, i)

        inode = Inode(mode=S_IFREG, links=1, size_bytes=len(data),
                      atime=now, mtime=now, ctime=now)
        inode.set_blocks(blocks)
        inode.finalize()
        self.put_inode(ino, inode)

        for n, block in enumerate(blocks):
            self._write_block(block, data[n * BLOCK_SIZE:(n + 1) * BLOCK_SIZE])

        entry = DirEntry(ino, DT_FILE, name)
        entry.finalize()
        self._write_slot(slot, entry)

        root = self.root_inode
        if appended:
            root.size_bytes += DIRENT_SIZE
        root.links += 1
        root.mtime = root.ctime = now
        root.finalize()
        self.put_inode(ROOT_INO, root)

        self.sb.mtime_epoch = now
        self.sb.finalize()
        return entry

    def read_file(self, name: str) -> bytes:
        """Return the contents of root-directory file *name*."""
        entry = self.find(name)
        if entry is None:
            raise NotFoundError(f"File not found: {name!r}")
        inode = self.get_inode(entry.inode_no)
        out = bytearray()
        for block in inode.blocks:
            out += self.read_block(block)
        return bytes(out[:inode.size_bytes])

    def info(self) -> dict:
        """Return superblock fields and usage counts."""
        sb = self.sb
        used_inodes = bitmap_count(self.inode_bitmap, sb.inode_count)
        used_blocks = bitmap_count(self.data_bitmap, sb.data_region_blocks)
        return {
            "magic": f"0x{sb.magic:08X}",
            "version": sb.version,
            "block_size": sb.block_size,
            "total_blocks": sb.total_blocks,
            "inode_count": sb.inode_count,
            "inode_table_blocks": sb.inode_table_blocks,
            "data_region_start": sb.data_region_start,
            "data_region_blocks": sb.data_region_blocks,
            "mtime_epoch": sb.mtime_epoch,
            "used_inodes": used_inodes,
            "free_inodes": sb.inode_count - used_inodes,
            "used_blocks": used_blocks,
            "free_blocks": sb.data_region_blocks - used_blocks,
            "entries": len(self.list_dir()),
        }

    def check(self) -> list[str]:
        """Verify checksums and bitmap consistency.  Returns error messages."""
        errors = []
        sb = self.sb
        if not sb.verify():
            errors.append(
                f"Superblock CRC MISMATCH: stored=0x{sb.checksum:08X} "
                f"computed=0x{sb.compute_checksum():08X}")

        for idx in range(sb.inode_count):
            if not bitmap_get(self.inode_bitmap, idx):
                continue
            ino = idx + 1
            inode = self.get_inode(ino)
            if not inode.verify():
                errors.append(
                    f"Inode {ino} CRC MISMATCH: stored=0x{inode.crc:08X} "
                    f"computed=0x{inode.compute_checksum():08X}")
            for block in inode.blocks:
                if not self._in_data_region(block):
                    errors.append(
                        f"Inode {ino} points at block {block} outside "
                        f"the data region")
                elif not bitmap_get(self.data_bitmap,
                                    block - sb.data_region_start):
                    errors.append(
                        f"Inode {ino} uses block {block} not marked in "
                        f"the data bitmap")
            if len(inode.blocks) < blocks_needed(inode.size_bytes):
                errors.append(
                    f"Inode {ino} has {len(inode.blocks)} blocks for "
                    f"{inode.size_bytes} bytes")

        for slot, entry in self.list_dir():
            if not dirent_raw_checksum_ok(self._raw_slot(slot)):
                errors.append(f"Entry {slot} {entry.name!r} checksum mismatch")
            if not (1 <= entry.inode_no <= sb.inode_count) or \
                    not bitmap_get(self.inode_bitmap, entry.inode_no - 1):
                errors.append(
                    f"Entry {slot} {entry.name!r} refers to unallocated "
                    f"inode {entry.inode_no}")
        return errors


# ── Convenience functions ──────────────────────────────────────────────

def format_image(path: str | Path, size_kib: int, inode_count: int,
                 now: int | None = None) -> FSImage:
    """Create a new image at *path*, overwriting whatever is there."""
    data = build_image(size_kib, inode_count, now)
    _write_atomic(path, data)
    return FSImage.from_bytes(data)


def add_file(input_path: str | Path, output_path: str | Path,
             file_path: str | Path, now: int | None = None) -> DirEntry:
    """Copy the image at *input_path* to *output_path* with *file_path* added.

    The entry is named after the base name of *file_path*.  *output_path*
    may be the same as *input_path*.
    """
    try:
        st = os.stat(file_path)
    except FileNotFoundError as e:
        raise NotFoundError(f"File '{file_path}' not found") from e
    except OSError as e:
        raise ImageIOError(
            f"Cannot stat file '{file_path}': {e.strerror or e}") from e
    if not stat.S_ISREG(st.st_mode):
        raise NotFoundError(f"'{file_path}' is not a regular file")
    if st.st_size > MAX_FILE_SIZE:
        raise FileTooLarge(
            f"File too large: {st.st_size} bytes "
            f"(max {MAX_FILE_SIZE // BLOCK_SIZE} direct blocks)")

    name = os.path.basename(os.fspath(file_path))
    encode_name(name)

    img = FSImage.load(input_path)
    data = _read_host_file(file_path)
    entry = img.add_file(name, data, now)
    img.save(output_path)
    return entry


def read_file(path: str | Path, name: str) -> bytes:
    """Open an image and read a root-directory file."""
    return FSImage.load(path).read_file(name)


def list_files(path: str | Path) -> list[DirEntry]:
    """Open an image and list its root directory."""
    return [e for _, e in FSImage.load(path).list_dir()]


# ── CLI ────────────────────────────────────────────────────────────────

class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on bad arguments."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"Error: {message}\n")


def _add_verbose(parser: argparse.ArgumentParser):
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(levelname)s: %(message)s",
    )


def _run(func, args) -> int:
    try:
        return func(args) or 0
    except MVFSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _cmd_format(args):
    fs = format_image(args.image, args.size_kib, args.inodes)
    print(f"File system image '{args.image}' created successfully")
    print(f"Total blocks: {fs.sb.total_blocks}, Inodes: {fs.sb.inode_count}")


def _cmd_add(args):
    entry = add_file(args.input, args.output, args.file)
    print(f"Added {display_name(entry.name)!r} as inode {entry.inode_no} "
          f"to '{args.output}'")


def _cmd_ls(args):
    img = FSImage.load(args.image)
    print(f"{'Name':<32} {'Type':<5} {'Inode':>5} {'Size':>8}  Blocks")
    print("-" * 64)
    for _, e in img.list_dir():
        inode = img.get_inode(e.inode_no)
        blocks = ",".join(str(b) for b in inode.blocks)
        print(f"{display_name(e.name):<32} {e.type_name:<5} {e.inode_no:>5} "
              f"{inode.size_bytes:>8}  {blocks}")


def _cmd_cat(args):
    data = read_file(args.image, args.name)
    sys.stdout.buffer.write(data)


def _cmd_info(args):
    for k, v in FSImage.load(args.image).info().items():
        print(f"  {k}: {v}")


def _cmd_check(args):
    errors = FSImage.load(args.image).check()
    if errors:
        for err in errors:
            print(f"  ERROR: {err}")
        print(f"{len(errors)} error(s) found")
        return 1
    print("All checksums OK")


def _format_args(p: argparse.ArgumentParser):
    p.add_argument("--image", required=True, help="Image file to create")
    p.add_argument("--size-kib", type=int, required=True,
                   help="Image size in KiB (180..4096, multiple of 4)")
    p.add_argument("--inodes", type=int, required=True,
                   help="Inode capacity (128..512)")


def _add_args(p: argparse.ArgumentParser):
    p.add_argument("--input", required=True, help="Existing image")
    p.add_argument("--output", required=True,
                   help="Destination image (may equal --input)")
    p.add_argument("--file", required=True, help="Host file to add")


def builder_main(argv: list[str] | None = None) -> int:
    """mkfs-builder: create a new empty image."""
    parser = _ArgumentParser(prog="mkfs-builder",
                             description="Create an empty MVFS image")
    _format_args(parser)
    _add_verbose(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)
    return _run(_cmd_format, args)


def adder_main(argv: list[str] | None = None) -> int:
    """mkfs-adder: add one host file to an image."""
    parser = _ArgumentParser(prog="mkfs-adder",
                             description="Add a file to an MVFS image")
    _add_args(parser)
    _add_verbose(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)
    return _run(_cmd_add, args)


def main(argv: list[str] | None = None) -> int:
    parser = _ArgumentParser(prog="mvfsutil",
                             description="MVFS disk image utility")
    _add_verbose(parser)
    sub = parser.add_subparsers(dest="cmd", parser_class=_ArgumentParser)

    p_fmt = sub.add_parser("format", help="Create an empty image")
    _format_args(p_fmt)
    p_fmt.set_defaults(func=_cmd_format)

    p_add = sub.add_parser("add", help="Add a file to an image")
    _add_args(p_add)
    p_add.set_defaults(func=_cmd_add)

    p_ls = sub.add_parser("ls", help="List the root directory")
    p_ls.add_argument("image", help="Disk image path")
    p_ls.set_defaults(func=_cmd_ls)

    p_cat = sub.add_parser("cat", help="Read a file from an image")
    p_cat.add_argument("image", help="Disk image path")
    p_cat.add_argument("name", help="File name to read")
    p_cat.set_defaults(func=_cmd_cat)

    p_info = sub.add_parser("info", help="Show superblock info")
    p_info.add_argument("image", help="Disk image path")
    p_info.set_defaults(func=_cmd_info)

    p_chk = sub.add_parser("check", help="Verify checksums and bitmaps")
    p_chk.add_argument("image", help="Disk image path")
    p_chk.set_defaults(func=_cmd_check)

    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.print_help()
        return 1
    _setup_logging(args.verbose)
    return _run(args.func, args)


if __name__ == "__main__":
    sys.exit(main())
