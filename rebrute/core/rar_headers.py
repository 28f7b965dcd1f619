"""
RAR Header Access
=================

Just enough of the RAR block layout for the search itself:

  - reading the compressed archive comment of a produced archive (phase 1)
  - rewriting fixed-offset RAR4 file header fields the compressor cannot be
    told to produce (host OS, attributes, LARGE flag + high size fields)

RAR4 block header (little-endian):
  0  HEAD_CRC   u16   low 16 bits of CRC32 over bytes 2..HEAD_SIZE
  2  HEAD_TYPE  u8
  3  HEAD_FLAGS u16
  5  HEAD_SIZE  u16
  7  ADD_SIZE   u32   only with LONG_BLOCK (PACK_SIZE for file headers)

RAR4 file / sub-block header continues with:
  11 UNP_SIZE u32, 15 HOST_OS u8, 16 FILE_CRC u32, 20 FTIME u32,
  24 UNP_VER u8, 25 METHOD u8, 26 NAME_SIZE u16, 28 ATTR u32,
  32 HIGH_PACK_SIZE u32, 36 HIGH_UNP_SIZE u32 (only with LHD_LARGE), name

RAR5 headers use variable-length integers and are only read, never patched.
"""

from __future__ import annotations

import logging
import os
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Tuple

from .errors import HeaderPatchError

logger = logging.getLogger(__name__)

MARKER_RAR4 = b"Rar!\x1a\x07\x00"
MARKER_RAR5 = b"Rar!\x1a\x07\x01\x00"

# RAR4 block types
HEAD_MARK = 0x72
HEAD_MAIN = 0x73
HEAD_FILE = 0x74
HEAD_COMMENT = 0x75
HEAD_NEWSUB = 0x7A
HEAD_ENDARC = 0x7B

# RAR4 flags
LONG_BLOCK = 0x8000
MHD_COMMENT = 0x0002
LHD_LARGE = 0x0100
LHD_WINDOWMASK = 0x00E0
LHD_DIRECTORY = 0x00E0

# RAR5 header types
RAR5_HEAD_SERVICE = 3
RAR5_HEAD_ENDARC = 5

# Windows attribute bits
ATTR_ARCHIVE = 0x20
ATTR_NOT_CONTENT_INDEXED = 0x2000

COMMENT_NAME = b"CMT"
COPY_CHUNK = 1024 * 1024


@dataclass
class Rar4Block:
    """One RAR4 block: its raw header and where its data area ends."""
    offset: int
    head_type: int
    flags: int
    head_size: int
    add_size: int
    header: bytes

    @property
    def data_offset(self) -> int:
        return self.offset + self.head_size

    @property
    def end(self) -> int:
        return self.offset + self.head_size + self.add_size

    @property
    def is_directory(self) -> bool:
        return self.head_type == HEAD_FILE and (self.flags & LHD_WINDOWMASK) == LHD_DIRECTORY

    @property
    def name(self) -> bytes:
        if self.head_type not in (HEAD_FILE, HEAD_NEWSUB) or self.head_size < 32:
            return b""
        name_size = struct.unpack_from('<H', self.header, 26)[0]
        start = 40 if self.flags & LHD_LARGE else 32
        return self.header[start:start + name_size]


def header_crc(header: bytes) -> int:
    """RAR4 header checksum: low half of the CRC32 of everything after HEAD_CRC."""
    return zlib.crc32(header[2:]) & 0xFFFF


def detect_format(path: Path) -> Optional[int]:
    """4 or 5 for a RAR archive signature at offset 0, None otherwise."""
    with open(path, 'rb') as f:
        head = f.read(len(MARKER_RAR5))
    if head.startswith(MARKER_RAR5):
        return 5
    if head.startswith(MARKER_RAR4):
        return 4
    return None


def iter_rar4_blocks(f: BinaryIO) -> Iterator[Rar4Block]:
    """Walk the blocks of a RAR4 volume after the marker block."""
    f.seek(0)
    if f.read(len(MARKER_RAR4)) != MARKER_RAR4:
        raise HeaderPatchError("Not a RAR4 volume")

    offset = len(MARKER_RAR4)
    while True:
        f.seek(offset)
        base = f.read(7)
        if len(base) < 7:
            return

        _, head_type, flags, head_size = struct.unpack('<HBHH', base)
        if head_size < 7:
            raise HeaderPatchError(f"Corrupt block header at offset {offset}")

        header = base + f.read(head_size - 7)
        if len(header) < head_size:
            raise HeaderPatchError(f"Truncated block header at offset {offset}")

        add_size = 0
        if head_type in (HEAD_FILE, HEAD_NEWSUB):
            if head_size < 32:
                raise HeaderPatchError(f"Short file header at offset {offset}")
            add_size = struct.unpack_from('<I', header, 7)[0]
            if flags & LHD_LARGE and head_size >= 40:
                add_size |= struct.unpack_from('<I', header, 32)[0] << 32
        elif flags & LONG_BLOCK and head_size >= 11:
            add_size = struct.unpack_from('<I', header, 7)[0]

        yield Rar4Block(offset, head_type, flags, head_size, add_size, header)

        if head_type == HEAD_ENDARC:
            return
        offset += head_size + add_size


def _read_vint(data: bytes, pos: int) -> Tuple[int, int]:
    value = 0
    shift = 0
    while pos < len(data):
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7
    raise HeaderPatchError("Truncated variable-length integer")


def _read_rar4_comment(f: BinaryIO) -> Optional[bytes]:
    for block in iter_rar4_blocks(f):
        if (
            block.head_type == HEAD_MAIN
            and block.flags & MHD_COMMENT
            and block.head_size >= 13 + 13
            and block.header[13 + 2] == HEAD_COMMENT
        ):
            # Old-style comment embedded in the main header
            comment_size = struct.unpack_from('<H', block.header, 13 + 5)[0]
            return block.header[13 + 13:13 + comment_size]

        if block.head_type == HEAD_NEWSUB and block.name == COMMENT_NAME:
            f.seek(block.data_offset)
            return f.read(block.add_size)

        if block.head_type == HEAD_FILE:
            # Comment sub-blocks precede the first file header
            return None
    return None


def _read_rar5_comment(f: BinaryIO) -> Optional[bytes]:
    offset = len(MARKER_RAR5)
    while True:
        f.seek(offset)
        prefix = f.read(4 + 3)
        if len(prefix) < 5:
            return None

        header_size, body_start = _read_vint(prefix, 4)
        body_start += offset
        f.seek(body_start)
        body = f.read(header_size)
        if len(body) < header_size:
            return None

        head_type, pos = _read_vint(body, 0)
        head_flags, pos = _read_vint(body, pos)
        if head_flags & 0x01:
            _, pos = _read_vint(body, pos)
        data_size = 0
        if head_flags & 0x02:
            data_size, pos = _read_vint(body, pos)

        if head_type == RAR5_HEAD_SERVICE:
            file_flags, pos = _read_vint(body, pos)
            _, pos = _read_vint(body, pos)      # unpacked size
            _, pos = _read_vint(body, pos)      # attributes
            if file_flags & 0x02:
                pos += 4                        # mtime
            if file_flags & 0x04:
                pos += 4                        # data CRC32
            _, pos = _read_vint(body, pos)      # compression info
            _, pos = _read_vint(body, pos)      # host OS
            name_length, pos = _read_vint(body, pos)
            if body[pos:pos + name_length] == COMMENT_NAME:
                f.seek(body_start + header_size)
                return f.read(data_size)

        if head_type == RAR5_HEAD_ENDARC:
            return None
        offset = body_start + header_size + data_size


def read_comment_payload(path: Path) -> Optional[bytes]:
    """Compressed comment bytes stored in an archive, or None."""
    with open(path, 'rb') as f:
        head = f.read(len(MARKER_RAR5))
        if head.startswith(MARKER_RAR5):
            return _read_rar5_comment(f)
        if head.startswith(MARKER_RAR4):
            return _read_rar4_comment(f)
    return None


def read_comment_method(path: Path) -> Optional[int]:
    """METHOD byte of a RAR4 comment sub-block (0x30 + compression level)."""
    with open(path, 'rb') as f:
        if f.read(len(MARKER_RAR4)) != MARKER_RAR4:
            return None
        for block in iter_rar4_blocks(f):
            if block.head_type == HEAD_NEWSUB and block.name == COMMENT_NAME:
                return block.header[25]
            if block.head_type == HEAD_FILE:
                return None
    return None


@dataclass(frozen=True)
class HeaderPatch:
    """
    Header values the compressor cannot be instructed to write.

    None leaves a field as the compressor wrote it. An exact
    file_attributes value wins over the individual attribute toggles.
    """
    host_os: Optional[int] = None
    file_attributes: Optional[int] = None
    set_archive_attribute: Optional[bool] = None
    set_not_content_indexed: Optional[bool] = None
    comment_host_os: Optional[int] = None
    comment_file_time: Optional[int] = None
    comment_attributes: Optional[int] = None
    large: Optional[bool] = None
    high_pack_size: int = 0
    high_unp_size: int = 0

    @property
    def is_noop(self) -> bool:
        return (
            self.host_os is None
            and self.file_attributes is None
            and self.set_archive_attribute is None
            and self.set_not_content_indexed is None
            and self.comment_host_os is None
            and self.comment_file_time is None
            and self.comment_attributes is None
            and not self.large
        )

    def _attributes(self, current: int) -> int:
        if self.file_attributes is not None:
            return self.file_attributes & 0xFFFFFFFF
        attrs = current
        if self.set_archive_attribute is True:
            attrs |= ATTR_ARCHIVE
        elif self.set_archive_attribute is False:
            attrs &= ~ATTR_ARCHIVE
        if self.set_not_content_indexed is True:
            attrs |= ATTR_NOT_CONTENT_INDEXED
        elif self.set_not_content_indexed is False:
            attrs &= ~ATTR_NOT_CONTENT_INDEXED
        return attrs & 0xFFFFFFFF

    def apply(self, block: Rar4Block) -> bytes:
        """Patched copy of a block header (unchanged bytes when nothing applies)."""
        if block.head_type == HEAD_FILE:
            return self._patch_file_header(block)
        if block.head_type == HEAD_NEWSUB and block.name == COMMENT_NAME:
            return self._patch_comment_header(block)
        return block.header

    def _patch_file_header(self, block: Rar4Block) -> bytes:
        header = bytearray(block.header)
        flags = block.flags

        if self.host_os is not None:
            header[15] = self.host_os

        if not block.is_directory:
            current = struct.unpack_from('<I', header, 28)[0]
            struct.pack_into('<I', header, 28, self._attributes(current))

        if self.large and not flags & LHD_LARGE:
            flags |= LHD_LARGE
            header[32:32] = struct.pack('<II', self.high_pack_size, self.high_unp_size)

        return _finish_header(header, flags, block.header)

    def _patch_comment_header(self, block: Rar4Block) -> bytes:
        header = bytearray(block.header)

        host_os = self.comment_host_os if self.comment_host_os is not None else self.host_os
        if host_os is not None:
            header[15] = host_os
        if self.comment_file_time is not None:
            struct.pack_into('<I', header, 20, self.comment_file_time & 0xFFFFFFFF)
        if self.comment_attributes is not None:
            struct.pack_into('<I', header, 28, self.comment_attributes & 0xFFFFFFFF)

        return _finish_header(header, block.flags, block.header)


def _finish_header(header: bytearray, flags: int, original: bytes) -> bytes:
    if bytes(header) == original:
        return original
    struct.pack_into('<H', header, 3, flags)
    struct.pack_into('<H', header, 5, len(header))
    struct.pack_into('<H', header, 0, header_crc(bytes(header)))
    return bytes(header)


def _copy_range(src: BinaryIO, dst: BinaryIO, length: int) -> None:
    while length > 0:
        chunk = src.read(min(COPY_CHUNK, length))
        if not chunk:
            raise HeaderPatchError("Unexpected end of volume while copying")
        dst.write(chunk)
        length -= len(chunk)


def patch_volume(path: Path, patch: HeaderPatch) -> bool:
    """
    Apply a HeaderPatch to every matching header of one RAR4 volume.

    Same-size edits are written in place. If a header grows (LARGE fields
    inserted) the volume is streamed into a sibling temp file which then
    replaces the original.

    Returns:
        True if the volume was modified

    Raises:
        HeaderPatchError: If the volume's block structure is malformed
        OSError: If the volume cannot be read or written
    """
    path = Path(path)
    if patch.is_noop:
        return False

    fmt = detect_format(path)
    if fmt == 5:
        logger.info(f"Header patching skipped for RAR5 volume {path.name}")
        return False
    if fmt != 4:
        raise HeaderPatchError(f"Not a RAR archive: {path.name}")

    edits: List[Tuple[int, int, bytes]] = []
    with open(path, 'rb') as f:
        for block in iter_rar4_blocks(f):
            patched = patch.apply(block)
            if patched != block.header:
                edits.append((block.offset, block.head_size, patched))

    if not edits:
        return False

    if all(len(new) == old_size for _, old_size, new in edits):
        with open(path, 'r+b') as f:
            for offset, _, new in edits:
                f.seek(offset)
                f.write(new)
        logger.debug(f"Patched {len(edits)} header(s) in place: {path.name}")
        return True

    temp_path = path.with_name(path.name + ".patching")
    total = path.stat().st_size
    try:
        with open(path, 'rb') as src, open(temp_path, 'wb') as dst:
            position = 0
            for offset, old_size, new in edits:
                src.seek(position)
                _copy_range(src, dst, offset - position)
                dst.write(new)
                position = offset + old_size
            src.seek(position)
            _copy_range(src, dst, total - position)
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            temp_path.unlink()

    logger.debug(f"Rewrote {path.name} with {len(edits)} patched header(s)")
    return True
