"""Tests for the export pipeline."""

import csv
import io
import tempfile

import pytest

from pgp_export import pipeline as pipeline_module
from pgp_export.errors import (
    AccessError,
    EncryptionError,
    ExportError,
    KeyImportError,
    SchemaError,
    UnsupportedFormatError,
)
from pgp_export.key_selection import KeyColumnSelector
from pgp_export.models.responses import ExportRequest, ExportRunResponse
from pgp_export.notifications import failure_subject, success_subject
from pgp_export.pipeline import ExportPipeline, Phase, process_name_for
from pgp_export.query import TableRef
from pgp_export.sharding import shard_counts

PROCESS_NAME = "ORDERS_PGP_ENCRYPTION"
TIMESTAMP = "20240102_030405"


def fake_decrypt(path):
    data = path.read_bytes()
    assert data.startswith(b"ENC:")
    return data[len(b"ENC:"):]


def csv_rows(data: bytes, delimiter="|"):
    return list(csv.reader(io.StringIO(data.decode()), delimiter=delimiter))


@pytest.fixture
def work_tmp(monkeypatch, tmp_path):
    """Temporary directories of a run go here, so leaks can be detected."""
    path = tmp_path / "work"
    path.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(path))
    return path


@pytest.fixture
def export_pipeline(store, audit, notifier, fixed_clock):
    return ExportPipeline(store, audit=audit, notifier=notifier, clock=fixed_clock)


@pytest.fixture
def make_request(fake_keys):
    def _make(**overrides) -> ExportRequest:
        data = {
            "source_table": "orders",
            "staging_stage": "@staging/orders",
            "output_stage": "@outbound/orders",
            "recipient_keys": fake_keys,
            "file_prefix": "orders",
            "n_shards": 3,
        }
        data.update(overrides)
        return ExportRequest.model_validate(data)

    return _make


def output_names(stages):
    return [p.name for p in stages["output"].list_files()]


def read_manifest(stages, name=f"orders_{TIMESTAMP}.tag"):
    lines = stages["output"].path_for(name).read_text().splitlines()
    return [(line.split("|")[0], int(line.split("|")[1])) for line in lines]


def test_process_name():
    assert process_name_for("orders") == PROCESS_NAME


# ============================================
# Successful runs
# ============================================


@pytest.mark.usefixtures("fake_gpg")
class TestSuccessfulRun:
    """Tests for runs that complete."""

    def test_csv_run(self, export_pipeline, make_request, orders_table, stages, audit, notifier, work_tmp):
        result = export_pipeline.run(make_request())

        assert result.succeeded
        assert result.phase == Phase.SUCCEEDED.value
        assert result.error is None
        assert result.process_name == PROCESS_NAME
        assert result.files_processed == 3
        assert result.total_rows == 100
        assert result.n_shards == 3
        assert result.fingerprint_columns == ["a", "b", "c", "d", "note"]
        assert [r.name for r in result.recipients] == ["partner", "client"]

        expected_files = [f"orders_{TIMESTAMP}_{n:03d}.csv.pgp" for n in (1, 2, 3)]
        assert result.files == expected_files
        assert result.manifest == f"orders_{TIMESTAMP}.tag"
        assert output_names(stages) == sorted(expected_files + [f"orders_{TIMESTAMP}.tag"])

        # Staging cleared, no temporary directories left behind
        assert stages["staging"].list_files() == []
        assert list(work_tmp.iterdir()) == []

    def test_manifest_matches_files(self, export_pipeline, make_request, orders_table, stages):
        export_pipeline.run(make_request())

        manifest = read_manifest(stages)
        assert [name for name, _ in manifest] == [
            f"orders_{TIMESTAMP}_{n:03d}.csv.pgp" for n in (1, 2, 3)
        ]
        assert sum(count for _, count in manifest) == 100

        all_rows = []
        for name, count in manifest:
            rows = csv_rows(fake_decrypt(stages["output"].path_for(name)))
            assert len(rows) == count
            all_rows.extend(rows)
        assert len({(row[0], row[1]) for row in all_rows}) == 100

    def test_shards_follow_fingerprint(self, export_pipeline, make_request, store, orders_table, stages):
        result = export_pipeline.run(make_request(key_columns=["a", "b"]))

        assert result.fingerprint_columns == ["a", "b"]
        expected = shard_counts(store, TableRef.parse(orders_table), 3, ["a", "b"])
        assert [count for _, count in read_manifest(stages)] == [count for _, count in expected]

    def test_parallel_workers(self, export_pipeline, make_request, orders_table, stages, work_tmp):
        result = export_pipeline.run(make_request(max_workers=3, key_columns=["a", "b"]))

        assert result.succeeded
        assert result.files_processed == 3
        manifest = read_manifest(stages)
        assert [name for name, _ in manifest] == result.files
        assert sum(count for _, count in manifest) == 100
        assert list(work_tmp.iterdir()) == []

    def test_header_and_delimiter(self, export_pipeline, make_request, orders_table, stages):
        export_pipeline.run(make_request(n_shards=2, include_header=True, delimiter=","))

        manifest = read_manifest(stages)
        assert sum(count for _, count in manifest) == 100
        for name, count in manifest:
            rows = csv_rows(fake_decrypt(stages["output"].path_for(name)), delimiter=",")
            assert rows[0] == ["a", "b", "c", "d", "note"]
            assert len(rows) == count + 1

    def test_parquet_has_no_manifest(self, export_pipeline, make_request, orders_table, stages):
        result = export_pipeline.run(make_request(file_format="parquet"))

        assert result.succeeded
        assert result.manifest is None
        assert output_names(stages) == [
            f"orders_{TIMESTAMP}_{n:03d}.parquet.pgp" for n in (1, 2, 3)
        ]

    def test_derived_shard_count(self, export_pipeline, make_request, orders_table):
        result = export_pipeline.run(make_request(n_shards=None))
        assert result.succeeded
        assert result.n_shards == 1
        assert result.files_processed == 1

    def test_saved_key_selection(self, export_pipeline, make_request, store, audit, orders_table):
        selection = KeyColumnSelector(store, audit).select(orders_table, sample_fraction=1.0)

        result = export_pipeline.run(make_request(use_saved_key=True))

        assert result.fingerprint_columns == list(selection.selected_columns)

    def test_saved_key_missing_falls_back_to_all_columns(self, export_pipeline, make_request, orders_table):
        result = export_pipeline.run(make_request(use_saved_key=True))
        assert result.fingerprint_columns == ["a", "b", "c", "d", "note"]

    def test_empty_table(self, export_pipeline, make_request, empty_table, stages, notifier):
        result = export_pipeline.run(make_request(source_table=empty_table, n_shards=None))

        assert result.succeeded
        assert result.total_rows == 0
        assert result.n_shards == 1
        assert result.files_processed == 0
        assert result.manifest is None
        assert output_names(stages) == []
        assert notifier.subjects == [success_subject("ORDERS_PGP_ENCRYPTION")]

    def test_audit_and_notification(self, export_pipeline, make_request, orders_table, audit, notifier):
        result = export_pipeline.run(make_request())

        logs = audit.list_process_logs(PROCESS_NAME)
        assert len(logs) == 1
        assert logs[0]["process_flag"] == "C"
        assert logs[0]["process_rows"] == 3
        assert logs[0]["process_date"] == "2024-01-02"
        assert "Detailed Execution Log:" in logs[0]["process_message"]
        assert logs[0]["details"]["run_id"] == result.run_id
        assert logs[0]["details"]["files"] == result.files

        assert notifier.subjects == [success_subject(PROCESS_NAME)]
        assert notifier.sent[0]["recipient"] == "data-exports@example.com"
        assert "Process completed successfully" in notifier.sent[0]["body"]

    def test_notify_recipient_override(self, export_pipeline, make_request, orders_table, notifier):
        export_pipeline.run(make_request(notify_recipient="ops@example.test"))
        assert notifier.sent[0]["recipient"] == "ops@example.test"

    def test_run_log(self, export_pipeline, make_request, orders_table):
        result = export_pipeline.run(make_request())

        assert f"Using timestamp for file naming: {TIMESTAMP}" in result.log
        phases = [line for line in result.log if line.startswith("PHASE: ")]
        assert phases == [
            "PHASE: validating",
            "PHASE: key_setup",
            "PHASE: analyzing",
            "PHASE: shards",
            "PHASE: finalizing",
        ]

    def test_result_serializes(self, export_pipeline, make_request, orders_table):
        response = ExportRunResponse.model_validate(export_pipeline.run(make_request()).to_dict())
        assert response.status == "succeeded"
        assert response.recipients[0].emails == ["partner@example.test"]
        assert response.duration_ms == 0

    def test_leftover_staging_files_removed(self, export_pipeline, make_request, orders_table, stages):
        stages["staging"].path_for("orders_old_001.csv").write_text("old\n")

        result = export_pipeline.run(make_request())

        assert result.succeeded
        assert stages["staging"].list_files() == []


# ============================================
# Failed runs
# ============================================


@pytest.mark.usefixtures("fake_gpg")
class TestFailedRun:
    """Tests for runs that abort."""

    def assert_failed(self, result, error_type, phase):
        assert not result.succeeded
        assert result.status == "failed"
        assert isinstance(result.error, error_type)
        assert result.phase == phase
        assert result.error.to_dict()["phase"] == phase

    def test_missing_output_stage(self, export_pipeline, make_request, orders_table, audit, notifier):
        result = export_pipeline.run(make_request(output_stage="@missing/orders"))

        self.assert_failed(result, AccessError, "validating")
        assert audit.list_process_logs(PROCESS_NAME)[0]["process_flag"] == "F"
        assert notifier.subjects == [failure_subject(PROCESS_NAME)]

    def test_missing_source_table(self, export_pipeline, make_request, temp_data_dir, stages):
        result = export_pipeline.run(make_request(source_table="no_such_table"))
        self.assert_failed(result, AccessError, "validating")

    def test_key_import_failure(self, export_pipeline, make_request, orders_table, stages, notifier, audit, work_tmp):
        stages["keys"].path_for("client.asc").write_text("garbage")

        result = export_pipeline.run(make_request())

        self.assert_failed(result, KeyImportError, "key_setup")
        assert result.files_processed == 0
        assert output_names(stages) == []
        assert stages["staging"].list_files() == []
        assert len(notifier.sent) == 1
        assert notifier.subjects == [failure_subject(PROCESS_NAME)]
        logs = audit.list_process_logs(PROCESS_NAME)
        assert logs[0]["process_flag"] == "F"
        assert "ERROR in key_setup" in logs[0]["process_message"]
        assert list(work_tmp.iterdir()) == []

    def test_missing_key_file(self, export_pipeline, make_request, orders_table):
        request = make_request(recipient_keys=[{"name": "partner", "path": "@keys/missing.asc"}])
        result = export_pipeline.run(request)
        self.assert_failed(result, KeyImportError, "key_setup")

    def test_no_recipient_keys(self, export_pipeline, make_request, orders_table):
        result = export_pipeline.run(make_request(recipient_keys=[]))
        self.assert_failed(result, KeyImportError, "key_setup")

    def test_unsupported_format(self, export_pipeline, make_request, orders_table, stages):
        result = export_pipeline.run(make_request(file_format="json"))

        self.assert_failed(result, UnsupportedFormatError, "analyzing")
        assert output_names(stages) == []

    def test_unknown_key_column(self, export_pipeline, make_request, orders_table):
        result = export_pipeline.run(make_request(key_columns=["a", "missing"]))

        self.assert_failed(result, SchemaError, "analyzing")
        assert result.error.details["unknown_columns"] == ["missing"]

    def test_shard_failure(self, export_pipeline, make_request, orders_table, stages, audit, notifier, fake_gpg, work_tmp):
        fake_gpg.fail_on_shard = 1

        result = export_pipeline.run(make_request())

        self.assert_failed(result, EncryptionError, "shards")
        assert result.error.details["shard_id"] == 1
        assert result.files_processed == 1
        assert result.manifest is None
        assert output_names(stages) == [f"orders_{TIMESTAMP}_001.csv.pgp"]
        assert stages["staging"].list_files() == []
        assert audit.list_process_logs(PROCESS_NAME)[0]["process_rows"] == 1
        assert notifier.subjects == [failure_subject(PROCESS_NAME)]
        assert list(work_tmp.iterdir()) == []

    def test_parallel_shard_failure(self, export_pipeline, make_request, orders_table, stages, fake_gpg, work_tmp):
        fake_gpg.fail_on_shard = 0

        result = export_pipeline.run(make_request(max_workers=3))

        self.assert_failed(result, EncryptionError, "shards")
        assert f"orders_{TIMESTAMP}.tag" not in output_names(stages)
        assert list(work_tmp.iterdir()) == []

    def test_unexpected_error_is_wrapped(self, export_pipeline, make_request, orders_table, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(pipeline_module, "count_data_rows", boom)
        result = export_pipeline.run(make_request())

        self.assert_failed(result, ExportError, "shards")
        assert result.error.message == "boom"
        assert result.error.details == {"cause": "RuntimeError"}


@pytest.mark.usefixtures("fake_gpg")
class TestFailureHandling:
    """Cleanup, audit and notification order on failure."""

    def test_cleanup_then_audit_then_notify(self, store, make_request, orders_table, fixed_clock, work_tmp, fake_gpg):
        events = []

        class RecordingAudit:
            def log_process(self, **kwargs):
                events.append(("audit", kwargs["flag"], list(work_tmp.iterdir())))

        class OrderNotifier:
            def notify(self, recipient, subject, body):
                events.append(("notify", subject, None))
                return True

        fake_gpg.fail_on_shard = 2
        result = ExportPipeline(
            store, audit=RecordingAudit(), notifier=OrderNotifier(), clock=fixed_clock
        ).run(make_request())

        assert not result.succeeded
        assert events == [
            ("audit", "F", []),
            ("notify", failure_subject(PROCESS_NAME), None),
        ]

    def test_audit_failure_does_not_mask_error(self, store, make_request, orders_table, notifier, fixed_clock):
        class BrokenAudit:
            def log_process(self, **kwargs):
                raise RuntimeError("audit down")

        result = ExportPipeline(store, audit=BrokenAudit(), notifier=notifier, clock=fixed_clock).run(
            make_request(output_stage="@missing/orders")
        )

        assert isinstance(result.error, AccessError)
        assert notifier.subjects == [failure_subject(PROCESS_NAME)]

    def test_notifier_failure_does_not_change_outcome(self, store, audit, make_request, orders_table, fixed_clock):
        class BrokenNotifier:
            def notify(self, recipient, subject, body):
                raise RuntimeError("smtp down")

        result = ExportPipeline(store, audit=audit, notifier=BrokenNotifier(), clock=fixed_clock).run(
            make_request()
        )

        assert result.succeeded
        assert audit.list_process_logs(PROCESS_NAME)[0]["process_flag"] == "C"


# ============================================
# End to end with GnuPG
# ============================================


class TestGnuPGExport:
    """Real keyring and encryption (skipped without a gpg binary)."""

    @pytest.fixture
    def pairs_table(self, make_table):
        return make_table(
            "pairs",
            """
            SELECT CAST(i // 10 AS INTEGER) AS a, CAST(i % 10 AS INTEGER) AS b, 'x' AS c
            FROM range(100) AS r(i)
            """,
        )

    def test_two_recipients_three_shards(
        self, store, audit, notifier, fixed_clock, pairs_table, stages, recipient_keys, gpg_recipients, decrypt
    ):
        selection = KeyColumnSelector(store, audit).select(pairs_table, sample_fraction=1.0)
        assert len(selection.selected_columns) == 2
        assert selection.exact_unique

        request = ExportRequest(
            source_table=pairs_table,
            staging_stage="@staging/orders",
            output_stage="@outbound/orders",
            recipient_keys=recipient_keys,
            file_prefix="pairs",
            n_shards=3,
            use_saved_key=True,
        )
        result = ExportPipeline(store, audit=audit, notifier=notifier, clock=fixed_clock).run(request)

        assert result.succeeded, result.error
        assert result.files_processed == 3
        assert sorted(result.fingerprint_columns) == ["a", "b"]
        assert {r.fingerprint for r in result.recipients} == {
            r["fingerprint"] for r in gpg_recipients
        }
        assert result.recipients[0].emails == ("exports@partner.example",)

        manifest = read_manifest(stages, f"pairs_{TIMESTAMP}.tag")
        assert len(manifest) == 3
        assert sum(count for _, count in manifest) == 100

        for name, count in manifest:
            path = stages["output"].path_for(name)
            plaintexts = [decrypt(recipient, path) for recipient in gpg_recipients]
            assert plaintexts[0] == plaintexts[1]
            assert len(csv_rows(plaintexts[0])) == count

    def test_key_import_failure_aborts_before_extraction(
        self, store, audit, notifier, fixed_clock, orders_table, stages, recipient_keys, monkeypatch
    ):
        stages["keys"].path_for("broken.asc").write_text("-----BEGIN PGP PUBLIC KEY BLOCK-----\nnope\n")
        extracts = []
        monkeypatch.setattr(
            pipeline_module.BatchExtractor,
            "extract",
            lambda *args, **kwargs: extracts.append(args),
        )

        request = ExportRequest(
            source_table=orders_table,
            staging_stage="@staging/orders",
            output_stage="@outbound/orders",
            recipient_keys=recipient_keys + [{"name": "broken", "path": "@keys/broken.asc"}],
            file_prefix="orders",
            n_shards=3,
        )
        result = ExportPipeline(store, audit=audit, notifier=notifier, clock=fixed_clock).run(request)

        assert not result.succeeded
        assert isinstance(result.error, KeyImportError)
        assert extracts == []
        assert output_names(stages) == []
        assert len(notifier.sent) == 1
        assert notifier.subjects == [failure_subject(PROCESS_NAME)]
        assert audit.list_process_logs(PROCESS_NAME)[0]["process_flag"] == "F"
