"""Tests for sqlgate.uirules: stock HTML decorations for UI cells."""

from markupsafe import Markup

from sqlgate.render import ResultSet, apply_rules, ui_output
from sqlgate.uirules import (
    DEFAULT_RULES, format_json_text, format_sql_source, link_url_text, stripe_id_link,
)


def _render(text, column="x"):
    return apply_rules(column, text, DEFAULT_RULES)


class TestStripeLinks:

    def test_customer(self):
        out = _render("cus_Fak3Cu6t0m3rId")
        assert isinstance(out, Markup)
        assert 'href="https://dashboard.stripe.com/customers/cus_Fak3Cu6t0m3rId"' in out
        assert 'title="customer details in Stripe"' in out

    def test_invoice(self):
        out = _render("in_1f4k31nv0Ic3Num83r")
        assert "https://dashboard.stripe.com/invoices/in_1f4k31nv0Ic3Num83r" in out

    def test_other_prefix_untouched(self):
        assert _render("sub_fAk34sH3l1anDMn0tgNatKT") == "sub_fAk34sH3l1anDMn0tgNatKT"


class TestJSONText:

    def test_valid_json(self):
        out = apply_rules("x", '{"json":true}', [format_json_text])
        assert out == Markup("<tt>{&#34;json&#34;:true}</tt>")

    def test_invalid_json_declines(self):
        assert apply_rules("x", "a: b", [format_json_text]) == "a: b"

    def test_decline_falls_through_to_next_rule(self):
        text = "see: https://example.com"
        assert apply_rules("x", text, [format_json_text, format_sql_source]) == text


class TestSQLSource:

    def test_schema_text(self):
        out = _render("CREATE TABLE misc (x);")
        assert out == Markup("<code><pre>CREATE TABLE misc (x);</pre></code>")

    def test_select_across_lines(self):
        out = apply_rules("sql", "select *\n  from users", [format_sql_source])
        assert out.startswith("<code><pre>select *")

    def test_escapes_markup(self):
        out = apply_rules("sql", "select '<b>' from t", [format_sql_source])
        assert "&lt;b&gt;" in out


class TestURLText:

    def test_link(self):
        out = _render("https://example.com?q=1&r=2")
        assert out == Markup(
            '<a href="https://example.com?q=1&amp;r=2" referrerpolicy=no-referrer '
            'rel=noopener>https://example.com?q=1&amp;r=2</a>'
        )

    def test_not_a_url(self):
        assert apply_rules("x", "ftp://example.com", [link_url_text]) == "ftp://example.com"

    def test_embedded_url_untouched(self):
        assert apply_rules("x", "see https://example.com", [link_url_text]) == "see https://example.com"


class TestInUIOutput:

    def test_plain_text_stays_unescaped_str(self):
        res = ResultSet(columns=["x"], rows=[["<b>bold</b>"], ["cus_Abc"]], num_rows=2)
        out = ui_output(res, rules=DEFAULT_RULES)
        assert out.rows[0] == ["<b>bold</b>"]
        assert not isinstance(out.rows[0][0], Markup)
        assert isinstance(out.rows[1][0], Markup)

    def test_rule_order(self):
        assert DEFAULT_RULES[0] is stripe_id_link
        assert DEFAULT_RULES[-1] is link_url_text
