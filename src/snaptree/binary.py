from __future__ import annotations

from enum import StrEnum, auto
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class BinaryCategory(StrEnum):
    """Coarse families of binary files, used to pick a rendering policy."""

    IMAGE = auto()
    MEDIA = auto()
    ARCHIVE = auto()
    EXEC = auto()
    FONT = auto()
    DATABASE = auto()
    CERT = auto()
    DOCUMENT = auto()
    OTHER = auto()


class BinaryAction(StrEnum):
    """What the loading stage does with a binary file."""

    PLACEHOLDER = auto()
    BASE64 = auto()
    COMMENT = auto()
    SKIP = auto()


_EXTENSIONS: dict[BinaryCategory, tuple[str, ...]] = {
    BinaryCategory.IMAGE: (".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".tif", ".tiff", ".psd", ".heic"),
    BinaryCategory.MEDIA: (".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".wav", ".flac", ".aac", ".ogg", ".mkv"),
    BinaryCategory.ARCHIVE: (".zip", ".tar", ".gz", ".tgz", ".bz2", ".xz", ".7z", ".rar", ".jar", ".war", ".dmg", ".iso"),
    BinaryCategory.EXEC: (".exe", ".dll", ".so", ".dylib", ".bin", ".o", ".obj", ".class", ".pyc", ".wasm"),
    BinaryCategory.FONT: (".ttf", ".otf", ".woff", ".woff2", ".eot"),
    BinaryCategory.DATABASE: (".db", ".sqlite", ".sqlite3", ".mdb"),
    BinaryCategory.CERT: (".der", ".p12", ".pfx", ".jks", ".keystore"),
    BinaryCategory.DOCUMENT: (".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods"),
}

EXT2CATEGORY: dict[str, BinaryCategory] = {ext: cat for cat, exts in _EXTENSIONS.items() for ext in exts}

MAGIC_SIGNATURES: tuple[tuple[bytes, BinaryCategory], ...] = (
    (b"\x89PNG\r\n\x1a\n", BinaryCategory.IMAGE),
    (b"\xff\xd8\xff", BinaryCategory.IMAGE),
    (b"GIF87a", BinaryCategory.IMAGE),
    (b"GIF89a", BinaryCategory.IMAGE),
    (b"BM", BinaryCategory.IMAGE),
    (b"\x00\x00\x01\x00", BinaryCategory.IMAGE),
    (b"%PDF", BinaryCategory.DOCUMENT),
    (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", BinaryCategory.DOCUMENT),
    (b"PK\x03\x04", BinaryCategory.ARCHIVE),
    (b"PK\x05\x06", BinaryCategory.ARCHIVE),
    (b"PK\x07\x08", BinaryCategory.ARCHIVE),
    (b"\x1f\x8b", BinaryCategory.ARCHIVE),
    (b"7z\xbc\xaf\x27\x1c", BinaryCategory.ARCHIVE),
    (b"Rar!\x1a\x07", BinaryCategory.ARCHIVE),
    (b"\x7fELF", BinaryCategory.EXEC),
    (b"MZ", BinaryCategory.EXEC),
    (b"\xfe\xed\xfa\xce", BinaryCategory.EXEC),
    (b"\xfe\xed\xfa\xcf", BinaryCategory.EXEC),
    (b"\xce\xfa\xed\xfe", BinaryCategory.EXEC),
    (b"\xcf\xfa\xed\xfe", BinaryCategory.EXEC),
    (b"\xca\xfe\xba\xbe", BinaryCategory.EXEC),
    (b"SQLite format 3\x00", BinaryCategory.DATABASE),
)

BOMS: tuple[tuple[bytes, str], ...] = (
    (b"\x00\x00\xfe\xff", "utf-32-be"),
    (b"\xff\xfe\x00\x00", "utf-32-le"),
    (b"\xef\xbb\xbf", "utf-8-sig"),
    (b"\xfe\xff", "utf-16-be"),
    (b"\xff\xfe", "utf-16-le"),
)

_ALLOWED_CONTROL = frozenset(b"\t\n\r\f\b")


def detect_bom(sample: bytes) -> str | None:
    """Encoding named by a byte-order mark at the start of ``sample``, if any."""
    for bom, encoding in BOMS:
        if sample.startswith(bom):
            return encoding
    return None


def category_from_extension(path: Path | str) -> BinaryCategory | None:
    suffix = str(path).rsplit(".", 1)
    if len(suffix) != 2:  # noqa: PLR2004
        return None
    return EXT2CATEGORY.get(f".{suffix[1].lower()}")


def category_from_magic(sample: bytes, *, strong_only: bool = False) -> BinaryCategory | None:
    """Category of the first matching signature.

    Signatures shorter than four bytes (``MZ``, ``BM``...) also start ordinary
    text, so ``strong_only`` skips them.
    """
    for signature, category in MAGIC_SIGNATURES:
        if strong_only and len(signature) < 4:  # noqa: PLR2004
            continue
        if sample.startswith(signature):
            return category
    return None


def non_printable_ratio(sample: bytes) -> float:
    """Share of ASCII control bytes; bytes >= 0x80 are treated as text."""
    if not sample:
        return 0.0
    suspicious = sum(1 for b in sample if b < 0x20 and b not in _ALLOWED_CONTROL)  # noqa: PLR2004
    return suspicious / len(sample)


def classify(
    path: Path | str,
    sample: bytes,
    threshold: float = 0.3,
) -> BinaryCategory | None:
    """Classify a file from its name and first bytes.

    The checks run in order: byte-order mark (text), extension, magic
    signature, NUL byte, then the ratio of non-printable bytes.

    Args:
        path: File name or path, used for the extension.
        sample: Leading bytes of the file.
        threshold: Non-printable ratio above which a file is binary.

    Returns:
        The binary category, or None for text.
    """
    if detect_bom(sample):
        return None
    by_ext = category_from_extension(path)
    if by_ext is not None:
        return by_ext
    looks_binary = b"\x00" in sample or non_printable_ratio(sample) > threshold
    by_magic = category_from_magic(sample, strong_only=not looks_binary)
    if by_magic is not None:
        return by_magic
    return BinaryCategory.OTHER if looks_binary else None
