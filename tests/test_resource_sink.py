"""Tests for the filesystem resource sink."""

from pathlib import Path

import pytest

from storage.resource_sink import FilesystemResourceSink, normalize_extension


class TestNormalizeExtension:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (".jpg", ".jpg"),
            ("PNG", ".png"),
            (" .WebP ", ".webp"),
            ("", ".bin"),
            (None, ".bin"),
            ("../x", ".bin"),
            (".tar.gz", ".bin"),
        ],
    )
    def test_normalize(self, value, expected) -> None:
        assert normalize_extension(value) == expected


class TestFilesystemResourceSink:
    def test_store_writes_file(self, tmp_path: Path, png_bytes: bytes) -> None:
        sink = FilesystemResourceSink(tmp_path / "images", public_prefix="/media/")

        reference = sink.store(png_bytes, ".png")

        assert reference.startswith("/media/")
        assert reference.endswith(".png")
        stored = tmp_path / "images" / reference.rsplit("/", 1)[1]
        assert stored.read_bytes() == png_bytes
        assert not list((tmp_path / "images").glob("*.part"))

    def test_every_store_creates_new_object(self, tmp_path: Path) -> None:
        sink = FilesystemResourceSink(tmp_path)

        first = sink.store(b"same", ".jpg")
        second = sink.store(b"same", ".jpg")

        assert first != second
        assert len(list(tmp_path.iterdir())) == 2
