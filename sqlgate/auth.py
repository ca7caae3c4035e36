"""
Caller identity and per-source authorization.

identify(request) -> Caller | None
    Who is asking. None means not logged in (401).

authorize(source, caller) -> None
    Raises AuthError (403) when caller may not query source.

The gateway only consumes these two callables. The classes below are
the stock implementations: HeaderIdentity trusts a login set by a
fronting proxy; AccessMap and CapabilityGrants decide per source.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Sequence

from sqlgate.errors import AuthError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """An identified caller. Tagged callers are machines, not people."""

    login: str
    node: str = ""
    tagged: bool = False
    capabilities: Sequence[Mapping[str, Any]] = field(default_factory=tuple)

    @property
    def name(self) -> str:
        return self.node if self.tagged else self.login


IdentifyFunc = Callable[[Any], Optional[Caller]]
AuthorizeFunc = Callable[[str, Caller], None]


class HeaderIdentity:
    """Identify callers from request headers set by a trusted proxy.

    header carries the login name. When tag_header is present on a
    request, its value is the node name and the caller is tagged.
    caps_header, if configured, holds a JSON list of capability grants.
    """

    def __init__(self, header: str = "X-Sqlgate-User",
                 tag_header: str | None = None,
                 caps_header: str | None = None):
        self.header = header
        self.tag_header = tag_header
        self.caps_header = caps_header

    def __call__(self, request) -> Caller | None:
        login = request.headers.get(self.header, "").strip()
        node = request.headers.get(self.tag_header, "").strip() if self.tag_header else ""
        if not login and not node:
            return None
        caps = ()
        if self.caps_header and request.headers.get(self.caps_header):
            try:
                caps = tuple(json.loads(request.headers[self.caps_header]))
            except (ValueError, TypeError):
                log.warning("ignoring malformed %s header", self.caps_header)
        return Caller(login=login, node=node, tagged=bool(node), capabilities=caps)


def default_authorize(source: str, caller: Caller):
    """Any logged-in person may query any source. Tagged callers may not."""
    if caller.tagged:
        raise AuthError("tagged nodes are not authorized")


class AccessMap:
    """Per-source login lists.

    Sources absent from the map are open to any untagged caller; listed
    sources admit only the listed logins. Tagged callers never pass.
    """

    def __init__(self, access: Mapping[str, Sequence[str]]):
        self.access = {src: list(users) for src, users in access.items()}

    def authorize(self, source: str, caller: Caller):
        err = None
        try:
            if caller.tagged:
                raise AuthError(f"tagged nodes cannot query {source!r}")
            users = self.access.get(source)
            if users is not None and caller.name not in users:
                raise AuthError(f"not authorized for access to {source!r}")
        except AuthError as e:
            err = e
            raise
        finally:
            log.info("auth src=%r who=%r err=%s", source, caller.name, err)

    __call__ = authorize


class CapabilityGrants:
    """Admit callers holding a grant {"src": [...]} naming the source or "*"."""

    def authorize(self, source: str, caller: Caller):
        err = None
        try:
            rules = [r for r in caller.capabilities if isinstance(r, Mapping)]
            if not rules:
                raise AuthError("not authorized for access to sqlgate")
            if not any(s in ("*", source) for r in rules for s in r.get("src", ())):
                raise AuthError(f"not authorized for access to {source!r}")
        except AuthError as e:
            err = e
            raise
        finally:
            log.info("auth src=%r who=%r err=%s", source, caller.name, err)

    __call__ = authorize
