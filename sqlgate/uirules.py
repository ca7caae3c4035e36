"""
Stock rewrite rules for the HTML UI.

Rules return markupsafe.Markup when they emit HTML, so the template does
not escape them a second time. Everything else is escaped on output.
"""

import json
from urllib.parse import urlsplit

from markupsafe import Markup

from sqlgate.render import RewriteRule


def _stripe_link(col, s, m):
    kind = {"cus_": "customer", "in_1": "invoice"}.get(m.group(1))
    if kind is None:
        return s
    return Markup(
        '<a href="https://dashboard.stripe.com/{kind}s/{id}" '
        'title="{kind} details in Stripe" '
        'referrerpolicy=no-referrer rel=noopener>{id}</a>'
    ).format(kind=kind, id=s)


# Stripe customer and invoice IDs link to the Stripe dashboard.
stripe_id_link = RewriteRule(value=r"^(cus_|in_1)\w+$", apply=_stripe_link)

# SQL text (queries, schema definitions) renders preformatted.
format_sql_source = RewriteRule(
    value=r"(?is)\b(select\s+.*from|create\s+(table|view))\b",
    apply=lambda col, s, m: Markup("<code><pre>{}</pre></code>").format(s),
)


def _json_text(col, s, m):
    try:
        json.loads(s)
    except ValueError:
        return None  # fall through to the next rule
    return Markup("<tt>{}</tt>").format(s)


# Valid JSON text renders in teletype.
format_json_text = RewriteRule(value=r"null|true|false|[{},:\[\]]", apply=_json_text)


def _url_link(col, s, m):
    try:
        urlsplit(s)
    except ValueError:
        return s
    return Markup('<a href="{0}" referrerpolicy=no-referrer rel=noopener>{0}</a>').format(s)


# HTTP(S) URLs become links.
link_url_text = RewriteRule(value=r"^https?://\S+$", apply=_url_link)

DEFAULT_RULES = (stripe_id_link, format_sql_source, format_json_text, link_url_text)
