"""
HWP 5.0 parsing plugin using olefile.

HWP files are OLE compound documents. Body text lives in
``BodyText/SectionN`` streams as a sequence of tagged records, raw-deflate
compressed when the FileHeader says so. Paragraph text records are
UTF-16LE with inline control characters that have to be skipped.
"""

import io
import re
import struct
import zlib

import olefile
import structlog

from ..core.errors import CorruptDocumentError, UnsupportedFormatError

logger = structlog.get_logger(__name__)

HWP_SIGNATURE = b"HWP Document File"
HWPTAG_PARA_TEXT = 67

# FileHeader property flags (byte offset 36)
FLAG_COMPRESSED = 0x01
FLAG_PASSWORD = 0x02
FLAG_DISTRIBUTION = 0x04

# Control characters that occupy 8 wchars (the code plus 7 wchars of payload)
_EXTENDED_CONTROLS = frozenset([1, 2, 3, 4, 5, 6, 7, 8, 9, 11, 12, 14, 15, 16, 17, 18, 19, 20, 21, 22, 23])

_SECTION_NAME = re.compile(r"^Section(\d+)$")


def _read_header_flags(ole: "olefile.OleFileIO") -> int:
    if not ole.exists("FileHeader"):
        raise CorruptDocumentError("HWP FileHeader stream missing")

    header = ole.openstream("FileHeader").read()
    if not header.startswith(HWP_SIGNATURE) or len(header) < 40:
        raise CorruptDocumentError("Not an HWP 5.0 document")

    return header[36]


def _section_streams(ole: "olefile.OleFileIO") -> list[list[str]]:
    """BodyText section stream paths in numeric order."""
    sections = []
    for entry in ole.listdir():
        if len(entry) == 2 and entry[0] == "BodyText":
            match = _SECTION_NAME.match(entry[1])
            if match:
                sections.append((int(match.group(1)), entry))
    return [entry for _, entry in sorted(sections)]


def iter_records(data: bytes):
    """
    Yield (tag_id, payload) for each record in a section stream.

    Record header: 10-bit tag, 10-bit level, 12-bit size. A size of 0xFFF
    means the real size follows as a 32-bit integer.
    """
    offset = 0
    length = len(data)
    while offset + 4 <= length:
        header = struct.unpack_from("<I", data, offset)[0]
        offset += 4
        tag_id = header & 0x3FF
        size = (header >> 20) & 0xFFF
        if size == 0xFFF:
            if offset + 4 > length:
                break
            size = struct.unpack_from("<I", data, offset)[0]
            offset += 4
        yield tag_id, data[offset:offset + size]
        offset += size


def decode_para_text(payload: bytes) -> str:
    """Decode a PARA_TEXT record, dropping inline controls."""
    chars = []
    count = len(payload) // 2
    i = 0
    while i < count:
        code = struct.unpack_from("<H", payload, i * 2)[0]
        if code in _EXTENDED_CONTROLS:
            if code == 9:
                chars.append("\t")
            i += 8
            continue
        if code in (10, 13):
            chars.append("\n")
        elif code >= 32:
            chars.append(chr(code))
        i += 1
    return "".join(chars)


def extract_text_from_hwp(content: bytes) -> str:
    """
    Extract paragraph text from an HWP 5.0 document.

    Args:
        content: Raw .hwp bytes

    Returns:
        Paragraphs joined with newlines

    Raises:
        UnsupportedFormatError: Password-protected or distribution documents
        CorruptDocumentError: Anything olefile or zlib cannot read
    """
    if not olefile.isOleFile(io.BytesIO(content)):
        raise CorruptDocumentError("Not an OLE compound document")

    try:
        ole = olefile.OleFileIO(io.BytesIO(content))
    except OSError as e:
        raise CorruptDocumentError(f"OLE open failed: {e}") from e

    try:
        flags = _read_header_flags(ole)
        if flags & (FLAG_PASSWORD | FLAG_DISTRIBUTION):
            raise UnsupportedFormatError("Encrypted or distribution-only HWP document")
        compressed = bool(flags & FLAG_COMPRESSED)

        paragraphs = []
        for stream in _section_streams(ole):
            data = ole.openstream(stream).read()
            if compressed:
                try:
                    data = zlib.decompress(data, -15)
                except zlib.error as e:
                    raise CorruptDocumentError(f"Section decompress failed: {e}") from e

            for tag_id, payload in iter_records(data):
                if tag_id == HWPTAG_PARA_TEXT:
                    text = decode_para_text(payload).strip()
                    if text:
                        paragraphs.append(text)
    finally:
        ole.close()

    full_text = "\n".join(paragraphs)
    logger.debug("hwp_extracted", paragraphs=len(paragraphs), chars=len(full_text))
    return full_text
