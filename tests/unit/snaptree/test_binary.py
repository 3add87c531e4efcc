import pytest

from snaptree.binary import BinaryCategory, category_from_extension, classify, detect_bom, non_printable_ratio


@pytest.mark.unit
@pytest.mark.parametrize(
    ("path", "sample", "expected"),
    [
        ("logo.PNG", b"whatever", BinaryCategory.IMAGE),
        ("bundle.zip", b"", BinaryCategory.ARCHIVE),
        ("font.woff2", b"wOF2", BinaryCategory.FONT),
        ("noext", b"\x89PNG\r\n\x1a\n\x00\x00", BinaryCategory.IMAGE),
        ("program", b"\x7fELF\x02\x01\x01", BinaryCategory.EXEC),
        ("data.bin2", b"abc\x00def", BinaryCategory.OTHER),
        ("report", b"%PDF-1.7\n", BinaryCategory.DOCUMENT),
        ("main.py", b"print('hello')\n", None),
        ("notes.txt", b"MZ is a perfectly normal opening", None),
        ("bitmap-notes.md", b"BM stands for bitmap", None),
        ("utf16.txt", b"\xff\xfeh\x00i\x00", None),
    ],
)
def test_classify(path: str, sample: bytes, expected: BinaryCategory | None) -> None:
    assert classify(path, sample) == expected


@pytest.mark.unit
def test_non_printable_ratio_threshold() -> None:
    sample = bytes([1, 2, 3]) + b"abcdefg"

    assert non_printable_ratio(sample) == pytest.approx(0.3)
    assert non_printable_ratio(b"") == 0.0
    assert non_printable_ratio("café".encode()) == 0.0
    assert classify("mostly-control", bytes([1, 2, 3, 4]) + b"abcdef") == BinaryCategory.OTHER


@pytest.mark.unit
def test_detect_bom() -> None:
    assert detect_bom(b"\xef\xbb\xbfabc") == "utf-8-sig"
    assert detect_bom(b"\xff\xfe\x00\x00") == "utf-32-le"
    assert detect_bom(b"\xfe\xffx") == "utf-16-be"
    assert detect_bom(b"plain") is None


@pytest.mark.unit
def test_category_from_extension() -> None:
    assert category_from_extension("a/b/c.SQLite") == BinaryCategory.DATABASE
    assert category_from_extension("Makefile") is None
