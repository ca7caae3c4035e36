"""
Named queries stored as annotated .sql files.

One file per query. The name is the file stem unless an annotation
overrides it:

    -- @name: recent-users
    -- @description: Users created in the last week
    SELECT * FROM users WHERE created > date('now', '-7 days');

Annotation lines and bare "--" lines are dropped from the SQL text.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from sqlgate.errors import ConfigError

log = logging.getLogger(__name__)

_ANNOTATION = re.compile(r"--\s*@(\w+):\s*(.+)")


@dataclass(frozen=True)
class NamedQuery:
    name: str
    sql: str
    description: str = ""


def parse_named_query(text: str, name: str) -> NamedQuery:
    """Parse annotated SQL text into a NamedQuery."""
    description = ""
    lines = []
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped.startswith("--") and "@" in stripped:
            m = _ANNOTATION.match(stripped)
            if m:
                key, value = m.group(1), m.group(2).strip()
                if key == "name":
                    name = value
                elif key == "description":
                    description = value
                continue
        if stripped == "--":
            continue
        lines.append(line)
    return NamedQuery(name=name, sql="\n".join(lines).strip(), description=description)


def load_named_queries(directory: str | Path) -> dict[str, str]:
    """Map query name -> SQL for every *.sql file in directory.

    Files are read in name order; an empty file is skipped. Two files
    claiming the same name is a ConfigError.
    """
    root = Path(directory).expanduser()
    if not root.is_dir():
        raise ConfigError(f"named query directory not found: {root}")

    out: dict[str, str] = {}
    for path in sorted(root.glob("*.sql")):
        q = parse_named_query(path.read_text(encoding="utf-8"), path.stem)
        if not q.sql:
            log.warning("skipping empty named query file %s", path)
            continue
        if q.name in out:
            raise ConfigError(f"duplicate named query {q.name!r} in {root}")
        out[q.name] = q.sql
        log.debug("loaded named query %r from %s", q.name, path.name)
    return out
