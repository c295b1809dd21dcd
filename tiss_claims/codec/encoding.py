"""
Character set detection for operator return files.

Legacy operator systems still emit ISO-8859-1 or Windows-1252. Candidates are
tried from most to least specific:

1. UTF-8 byte order mark
2. Strict UTF-8
3. The encoding declared in the XML prolog
4. Windows-1252, when bytes only that code page uses are present
5. ISO-8859-1, which decodes anything
"""

import codecs
import re

UTF8 = "UTF-8"
WINDOWS_1252 = "WINDOWS-1252"
ISO_8859_1 = "ISO-8859-1"

_BOM = codecs.BOM_UTF8
_PROLOG_ENCODING = re.compile(rb"<\?xml[^>]*encoding=[\"']([A-Za-z0-9_.:-]+)[\"']", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")

# Printable in Windows-1252, C1 control codes in ISO-8859-1
_CP1252_MARKERS = frozenset({0x80, 0x82, 0x83, 0x84, 0x85, 0x91, 0x92, 0x93, 0x94})
_SCAN_LIMIT = 5000


def _canonical(name: str) -> str | None:
    try:
        info = codecs.lookup(name)
    except LookupError:
        return None
    return {
        "utf-8": UTF8,
        "utf-8-sig": UTF8,
        "cp1252": WINDOWS_1252,
        "latin-1": ISO_8859_1,
        "iso8859-1": ISO_8859_1,
    }.get(info.name, info.name.upper())


def declared_encoding(data: bytes) -> str | None:
    """Encoding named in the XML prolog, canonicalized, if any."""
    match = _PROLOG_ENCODING.search(data[:200])
    if not match:
        return None
    return _canonical(match.group(1).decode("ascii"))


def detect_encoding(data: bytes) -> str:
    """
    Detect the character set of a return file.

    Args:
        data: Raw file bytes

    Returns:
        Canonical encoding name (UTF-8, WINDOWS-1252, ISO-8859-1 or a
        declared codec name)
    """
    if data.startswith(_BOM):
        return UTF8

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    else:
        if not _CONTROL_CHARS.search(text):
            return UTF8

    declared = declared_encoding(data)
    if declared and declared != UTF8:
        try:
            data.decode(declared)
        except (UnicodeDecodeError, LookupError):
            pass
        else:
            return declared

    if any(b in _CP1252_MARKERS for b in data[:_SCAN_LIMIT]):
        return WINDOWS_1252
    return ISO_8859_1


def decode(data: bytes, encoding: str | None = None) -> tuple[str, str]:
    """
    Decode bytes to clean text.

    Returns:
        (text, encoding used)
    """
    encoding = encoding or detect_encoding(data)
    if data.startswith(_BOM):
        data = data[len(_BOM):]
    text = data.decode(encoding, errors="replace")
    return sanitize(text), encoding


def sanitize(text: str) -> str:
    """Remove control characters and normalize line endings."""
    text = _CONTROL_CHARS.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()
