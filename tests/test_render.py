"""Tests for sqlgate.render: cell stringification, rewrite rules, CSV and JSON output."""

import io
import json
from datetime import date, datetime, timedelta, timezone

from sqlgate.render import (
    ResultSet, RewriteRule, apply_rules, csv_rows, format_elapsed, iter_ndjson,
    json_rows, truncate_for_display, ui_output, value_to_string, write_csv,
)


def _fruit():
    return ResultSet(columns=["id", "value"], rows=[[1, "apple"], [2, "pear"]], num_rows=2)


class TestValueToString:

    def test_null_placeholder(self):
        assert value_to_string(None) == ""
        assert value_to_string(None, "(null)") == "(null)"

    def test_numbers(self):
        assert value_to_string(3) == "3"
        assert value_to_string(1.5) == "1.5"

    def test_utf8_bytes_are_text(self):
        assert value_to_string(b"hello") == "hello"
        assert value_to_string(memoryview("héllo".encode())) == "héllo"

    def test_binary_bytes_are_base64(self):
        assert value_to_string(b"\xff\xfe") == "//4"

    def test_midnight_is_a_date(self):
        assert value_to_string(datetime(2024, 1, 2, tzinfo=timezone.utc)) == "2024-01-02"

    def test_timestamp(self):
        t = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert value_to_string(t) == "2024-01-02T03:04:05Z"

    def test_timestamp_converted_to_utc(self):
        t = datetime(2024, 1, 2, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert value_to_string(t) == "2024-01-02"

    def test_date(self):
        assert value_to_string(date(2023, 12, 31)) == "2023-12-31"


class TestRewriteRules:

    def test_first_matching_rule_wins(self):
        rules = [
            RewriteRule(value=r"apple", apply=lambda c, s, m: "first"),
            RewriteRule(value=r"app", apply=lambda c, s, m: "second"),
        ]
        assert apply_rules("value", "apple", rules) == "first"

    def test_declining_rule_falls_through(self):
        rules = [
            RewriteRule(value=r"apple", apply=lambda c, s, m: None),
            RewriteRule(value=r"app", apply=lambda c, s, m: "second"),
        ]
        assert apply_rules("value", "apple", rules) == "second"

    def test_column_pattern(self):
        rule = RewriteRule(column=r"^name$", apply=lambda c, s, m: s.upper())
        assert apply_rules("name", "bob", [rule]) == "BOB"
        assert apply_rules("title", "bob", [rule]) == "bob"

    def test_rule_without_apply_stops_evaluation(self):
        rules = [
            RewriteRule(value=r"keep"),
            RewriteRule(apply=lambda c, s, m: "changed"),
        ]
        assert apply_rules("x", "keep me", rules) == "keep me"
        assert apply_rules("x", "other", rules) == "changed"

    def test_apply_sees_match(self):
        rule = RewriteRule(value=r"(\d+)", apply=lambda c, s, m: m.group(1))
        assert apply_rules("x", "id 42", [rule]) == "42"

    def test_no_rules(self):
        assert apply_rules("x", "text", []) == "text"


class TestUIOutput:

    def test_copy_with_strings(self):
        res = ResultSet(columns=["a", "b"], rows=[[1, None]], num_rows=1)
        out = ui_output(res, "(null)")
        assert out.rows == [["1", "(null)"]]
        assert res.rows == [[1, None]]

    def test_rules_applied(self):
        rule = RewriteRule(column="b", apply=lambda c, s, m: f"<{s}>")
        out = ui_output(_fruit(), rules=[rule])
        assert out.rows == [["1", "apple"], ["2", "pear"]]
        out = ui_output(ResultSet(columns=["a", "b"], rows=[[1, 2]]), rules=[rule])
        assert out.rows == [["1", "<2>"]]

    def test_none_passes_through(self):
        assert ui_output(None) is None

    def test_truncate_for_display(self):
        rows = [[i] for i in range(600)]
        res = ResultSet(columns=["n"], rows=rows, num_rows=600)
        out = truncate_for_display(res, 500)
        assert len(out.rows) == 500
        assert out.num_rows == 600
        assert out.truncated
        assert not res.truncated

    def test_small_result_not_truncated(self):
        res = _fruit()
        assert truncate_for_display(res, 500) is res


class TestCSV:

    def test_exact_output(self):
        buf = io.StringIO()
        write_csv(_fruit(), buf)
        assert buf.getvalue() == "id,value\n1,apple\n2,pear\n"

    def test_nulls_empty_and_quoting(self):
        res = ResultSet(columns=["a", "b"], rows=[[None, "x,y"]], num_rows=1)
        assert csv_rows(res) == [["a", "b"], ["", "x,y"]]
        buf = io.StringIO()
        write_csv(res, buf)
        assert buf.getvalue() == 'a,b\n,"x,y"\n'

    def test_empty(self):
        assert csv_rows(None) == []


class TestJSON:

    def test_one_object_per_line(self):
        lines = list(iter_ndjson(_fruit()))
        assert lines == ['{"id":1,"value":"apple"}\n', '{"id":2,"value":"pear"}\n']

    def test_utf8_bytes_become_strings(self):
        res = ResultSet(columns=["b"], rows=[[b"text"], [b"\xff\xfe"]], num_rows=2)
        assert list(json_rows(res)) == [{"b": "text"}, {"b": b"\xff\xfe"}]
        lines = [json.loads(line) for line in iter_ndjson(res)]
        assert lines == [{"b": "text"}, {"b": "//4="}]

    def test_timestamps_isoformat(self):
        t = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        res = ResultSet(columns=["t"], rows=[[t]], num_rows=1)
        assert json.loads(next(iter_ndjson(res))) == {"t": "2024-01-02T03:04:05+00:00"}

    def test_non_ascii_kept(self):
        res = ResultSet(columns=["v"], rows=[["héllo"]], num_rows=1)
        assert next(iter_ndjson(res)) == '{"v":"héllo"}\n'


class TestFormatElapsed:

    def test_units(self):
        assert format_elapsed(0.000123) == "100µs"
        assert format_elapsed(0.0123) == "12.3ms"
        assert format_elapsed(1.5) == "1.5s"
