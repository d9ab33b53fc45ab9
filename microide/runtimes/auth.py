from __future__ import annotations

import hmac
from collections.abc import Mapping

TOKEN_HEADER = "x-auth-token"
TOKEN_QUERY_PARAM = "token"


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest((a or "").encode("utf-8"), (b or "").encode("utf-8"))


def presented_token(headers: Mapping[str, str], query: Mapping[str, str]) -> str:
    """Return the token a caller presented, or "" if none.

    Checked in order: ``x-auth-token`` header, ``Authorization: Bearer``,
    ``?token=`` query parameter. Values are returned as presented; the HTTP
    layer already trims surrounding whitespace from header values.
    """
    tok = headers.get(TOKEN_HEADER) or ""
    if tok:
        return tok
    scheme, _, cred = (headers.get("authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and cred:
        return cred
    return query.get(TOKEN_QUERY_PARAM) or ""


def require_token(
    expected: str, headers: Mapping[str, str], query: Mapping[str, str]
) -> None:
    got = presented_token(headers, query)
    # An empty expected token never authorizes anything.
    if not expected or not got or not constant_time_equals(got, expected):
        raise PermissionError("not_authenticated")
