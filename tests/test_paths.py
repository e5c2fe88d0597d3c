"""Tests for object path conventions."""

from datetime import date

import pytest

from chunkferry.errors import InvalidArgumentError
from chunkferry.paths import (
    FinalPath,
    chunk_path,
    chunk_prefix,
    clean_file_name,
    clean_folder_path,
    extract_hash,
    is_final_path,
)


class TestChunkPaths:
    """Test chunk path convention."""

    def test_chunk_path_is_session_and_number(self):
        assert chunk_path("abc", 1) == "abc/1"
        assert chunk_path("abc", 12) == "abc/12"

    def test_chunk_prefix(self):
        assert chunk_prefix("abc") == "abc/"
        assert chunk_path("abc", 3).startswith(chunk_prefix("abc"))

    def test_chunk_path_is_not_final(self):
        assert not is_final_path(chunk_path("abc", 1))


class TestCleanFolderPath:
    """Test folder path sanitising."""

    @pytest.mark.parametrize(
        ("raw", "cleaned"),
        [
            ("videos", "videos"),
            ("videos/2025", "videos/2025"),
            ("videos//raw/", "videos/raw"),
            ("./videos/./raw", "videos/raw"),
            ("a\\b", "a/b"),
        ],
    )
    def test_normalises(self, raw, cleaned):
        assert clean_folder_path(raw) == cleaned

    @pytest.mark.parametrize("raw", ["", "   ", "/etc", "\\share", ".", "../up", "a/../../b"])
    def test_rejects_unsafe(self, raw):
        with pytest.raises(InvalidArgumentError):
            clean_folder_path(raw)

    def test_internal_parent_reference_collapses(self):
        assert clean_folder_path("a/b/../c") == "a/c"


class TestCleanFileName:
    """Test file name validation."""

    def test_accepts_plain_name(self):
        assert clean_file_name("report.final.pdf") == "report.final.pdf"

    @pytest.mark.parametrize("raw", ["", ".", "..", "a/b.txt", "a\\b.txt"])
    def test_rejects_paths(self, raw):
        with pytest.raises(InvalidArgumentError):
            clean_file_name(raw)


class TestFinalPath:
    """Test the final object path convention."""

    def test_build_and_format(self):
        path = FinalPath.build("videos", "abc", "name.ext", date(2025, 8, 2))

        assert path.to_string() == "videos/2025/08/02/abc/name.ext"

    def test_build_cleans_folder(self):
        path = FinalPath.build("./videos//raw", "abc", "name.ext", date(2025, 1, 1))

        assert path.to_string() == "videos/raw/2025/01/01/abc/name.ext"

    def test_parse(self):
        path = FinalPath.from_string("docs/q3/2024/12/31/f00d/report.pdf")

        assert path.folder_path == "docs/q3"
        assert path.day == date(2024, 12, 31)
        assert path.content_hash == "f00d"
        assert path.file_name == "report.pdf"

    @pytest.mark.parametrize(
        "raw",
        [
            "abc/1",
            "videos/2025/08/abc/name.ext",
            "videos/2025/13/01/abc/name.ext",
            "videos/2025/02/30/abc/name.ext",
            "2025/08/12/abc/name.ext",
        ],
    )
    def test_parse_rejects_non_final(self, raw):
        with pytest.raises(InvalidArgumentError):
            FinalPath.from_string(raw)
        assert not is_final_path(raw)

    def test_is_final_path(self):
        assert is_final_path("videos/2025/08/12/abc/name.ext")


class TestExtractHash:
    """Test hash extraction from paths."""

    def test_second_to_last_segment(self):
        assert extract_hash("videos/2025/08/12/abc/name.ext") == "abc"

    def test_single_segment_has_no_hash(self):
        assert extract_hash("name.ext") is None
