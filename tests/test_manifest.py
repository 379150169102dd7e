"""Tests for manifest files and export file naming."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest

from pgp_export.errors import ManifestError
from pgp_export.manifest import (
    ManifestBuilder,
    count_data_rows,
    data_file_name,
    encrypted_file_name,
    manifest_file_name,
    run_timestamp,
)


class TestNaming:
    def test_timestamp(self):
        assert run_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == "20240102_030405"

    def test_data_file_name(self):
        assert data_file_name("orders", "20240102_030405", 0, "csv") == "orders_20240102_030405_001.csv"
        assert data_file_name("orders", "20240102_030405", 998, "parquet") == (
            "orders_20240102_030405_999.parquet"
        )

    def test_encrypted_and_manifest_names(self):
        assert encrypted_file_name("orders_20240102_030405_001.csv") == (
            "orders_20240102_030405_001.csv.pgp"
        )
        assert manifest_file_name("orders", "20240102_030405") == "orders_20240102_030405.tag"


class TestCountDataRows:
    """Tests for count_data_rows()."""

    def test_plain_rows(self, tmp_path):
        path = tmp_path / "a.csv"
        path.write_text("1|a\n2|b\n3|c\n")
        assert count_data_rows(path, delimiter="|") == 3

    def test_header_excluded(self, tmp_path):
        path = tmp_path / "a.csv"
        path.write_text("id|name\n1|a\n2|b\n")
        assert count_data_rows(path, delimiter="|", has_header=True) == 2

    def test_quoted_newlines(self, tmp_path):
        path = tmp_path / "a.csv"
        path.write_text('1,"multi\nline"\n2,plain\n')
        assert count_data_rows(path) == 2

    def test_empty_file(self, tmp_path):
        path = tmp_path / "a.csv"
        path.write_text("")
        assert count_data_rows(path, has_header=True) == 0


class TestManifestBuilder:
    """Tests for ManifestBuilder."""

    def test_entries_in_shard_order(self):
        builder = ManifestBuilder()
        builder.add("f_003.csv.pgp", 7, shard_id=2)
        builder.add("f_001.csv.pgp", 5, shard_id=0)
        builder.add("f_002.csv.pgp", 0, shard_id=1)

        assert builder.render() == "f_001.csv.pgp|5\nf_002.csv.pgp|0\nf_003.csv.pgp|7"
        assert builder.total_rows == 12
        assert len(builder) == 3

    def test_negative_count_rejected(self):
        with pytest.raises(ValueError):
            ManifestBuilder().add("f.csv.pgp", -1)

    def test_concurrent_adds(self):
        builder = ManifestBuilder()
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: builder.add(f"f_{i:03d}.csv.pgp", i, shard_id=i), range(100)))

        assert [e.shard_id for e in builder.entries] == list(range(100))
        assert builder.total_rows == sum(range(100))

    def test_write(self, tmp_path):
        builder = ManifestBuilder()
        builder.add("f_001.csv.pgp", 5)

        path = builder.write(tmp_path / "out", "f.tag")
        assert path.read_text() == "f_001.csv.pgp|5"

    def test_write_without_entries(self, tmp_path):
        with pytest.raises(ManifestError) as exc_info:
            ManifestBuilder().write(tmp_path, "f.tag")
        assert exc_info.value.phase == "finalizing"

    def test_write_failure(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        builder = ManifestBuilder()
        builder.add("f_001.csv.pgp", 1)

        with pytest.raises(ManifestError):
            builder.write(blocker / "sub", "f.tag")
