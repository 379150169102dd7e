"""Tests for the SQL builder."""

import pytest

from pgp_export.query import (
    TableRef,
    copy_to,
    count_distinct_fingerprints,
    fingerprint_sql,
    json_record_sql,
    list_columns,
    profile_columns,
    quote_identifier,
    quote_literal,
    sample_clause,
    shard_predicate,
)


class TestQuoting:
    """Tests for identifier and literal quoting."""

    def test_quote_identifier(self):
        assert quote_identifier("orders") == '"orders"'
        assert quote_identifier('we"ird') == '"we""ird"'

    def test_quote_identifier_rejects_empty(self):
        with pytest.raises(ValueError):
            quote_identifier("")

    def test_quote_literal(self):
        assert quote_literal("it's") == "'it''s'"


class TestTableRef:
    """Tests for table reference parsing."""

    def test_parse_one_part(self):
        ref = TableRef.parse("orders")
        assert ref == TableRef(name="orders")
        assert ref.schema_name == "main"
        assert ref.sql == '"orders"'

    def test_parse_three_parts(self):
        ref = TableRef.parse("analytics.sales.orders")
        assert ref.database == "analytics"
        assert ref.schema == "sales"
        assert ref.name == "orders"
        assert ref.sql == '"analytics"."sales"."orders"'
        assert str(ref) == "analytics.sales.orders"

    def test_parse_quoted_parts(self):
        ref = TableRef.parse('main."order.items"')
        assert ref.schema == "main"
        assert ref.name == "order.items"

    @pytest.mark.parametrize("reference", ["", "a..b", '"open', "a.b.c.d"])
    def test_parse_invalid(self, reference):
        with pytest.raises(ValueError):
            TableRef.parse(reference)

    def test_sibling_keeps_schema(self):
        ref = TableRef.parse("sales.orders")
        assert ref.sibling("v_orders") == TableRef(name="v_orders", schema="sales")


class TestFingerprintSql:
    """Tests for fingerprint and shard expressions."""

    def test_json_record_keeps_column_order(self):
        sql = json_record_sql(["b", "a"])
        assert sql == "CAST(json_object('b', \"b\", 'a', \"a\") AS VARCHAR)"

    def test_fingerprint_sql_uses_registered_function(self):
        assert fingerprint_sql(["id"]).startswith("row_fingerprint(")

    def test_duplicate_columns_rejected(self):
        with pytest.raises(ValueError):
            fingerprint_sql(["id", "id"])

    def test_empty_columns_rejected(self):
        with pytest.raises(ValueError):
            count_distinct_fingerprints(TableRef("t"), [])

    def test_shard_predicate_widens_to_hugeint(self):
        sql = shard_predicate("fp", 4, 3)
        assert sql == "(abs(CAST(fp AS HUGEINT)) % 4) = 3"

    @pytest.mark.parametrize("n_shards,shard_id", [(0, 0), (4, 4), (4, -1)])
    def test_shard_predicate_validates(self, n_shards, shard_id):
        with pytest.raises(ValueError):
            shard_predicate("fp", n_shards, shard_id)


class TestSampling:
    """Tests for sampling clauses and profile queries."""

    def test_full_scan_has_no_sample_clause(self):
        assert sample_clause(1.0) == ""

    def test_bernoulli_sample(self):
        assert sample_clause(0.02) == "USING SAMPLE 2 PERCENT (bernoulli)"

    def test_seeded_sample(self):
        assert sample_clause(0.5, seed=7) == "USING SAMPLE 50 PERCENT (bernoulli, 7)"

    @pytest.mark.parametrize("fraction", [0, -0.1, 1.5])
    def test_invalid_fraction(self, fraction):
        with pytest.raises(ValueError):
            sample_clause(fraction)

    def test_profile_query_has_two_aggregates_per_column(self):
        query = profile_columns(TableRef("t"), ["a", "b"], 0.1)
        assert query.sql.count("approx_count_distinct") == 2
        assert "null_rate_1" in query.sql
        assert "USING SAMPLE 10 PERCENT" in query.sql


class TestIntrospection:
    def test_list_columns_binds_names(self):
        query = list_columns(TableRef(name="orders", schema="sales"))
        assert query.params == ["sales", "orders"]
        assert "current_database()" in query.sql

    def test_list_columns_with_database(self):
        query = list_columns(TableRef.parse("db.sales.orders"))
        assert query.params == ["db", "sales", "orders"]


class TestCopyTo:
    """Tests for COPY TO statements."""

    def test_csv_options(self, tmp_path):
        query = copy_to("SELECT 1", tmp_path / "out.csv", "csv", delimiter="|", include_header=False)
        assert "FORMAT CSV" in query.sql
        assert "DELIMITER '|'" in query.sql
        assert "HEADER false" in query.sql

    def test_parquet_options(self, tmp_path):
        query = copy_to("SELECT 1", tmp_path / "out.parquet", "parquet")
        assert "FORMAT PARQUET" in query.sql
        assert "DELIMITER" not in query.sql

    def test_path_is_quoted(self, tmp_path):
        path = tmp_path / "it's.csv"
        query = copy_to("SELECT 1", path, "csv")
        assert quote_literal(str(path)) in query.sql

    def test_unknown_format(self, tmp_path):
        with pytest.raises(ValueError):
            copy_to("SELECT 1", tmp_path / "out.json", "json")
