"""
Server configuration rendering.

Two dialects are produced:

- the flat dialect, an ``authorization { users = [...] }`` table of
  username/password (or token) entries with optional permissions;
- the hierarchical dialect, an ``operator:`` token plus either a resolver
  directory section or a ``resolver_preload`` map of account tokens.

Rendering is a pure function of its inputs. Equal inputs always produce
byte-identical output, so callers can skip writes when nothing changed.
"""

from __future__ import annotations

import json
from typing import Optional

from pydantic import BaseModel

from natsauth.resources.models import Permissions


class FlatUser(BaseModel):
    """One entry of the flat authorization table."""

    username: str = ""
    password: str = ""
    token: str = ""
    permissions: Optional[Permissions] = None


class AccountJWT(BaseModel):
    """A signed account token destined for the preload map."""

    account_name: str
    account_id: str
    jwt: str


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def format_subject_list(subjects: list[str]) -> str:
    """Render one subject bare, several as a bracketed list."""
    if len(subjects) == 1:
        return _quote(subjects[0])
    return "[" + ", ".join(_quote(s) for s in subjects) + "]"


def _render_direction(name: str, allow: list[str], deny: list[str]) -> list[str]:
    if not allow and not deny:
        return []
    lines = [f"        {name}: {{"]
    if allow:
        lines.append(f"          allow: {format_subject_list(allow)}")
    if deny:
        lines.append(f"          deny: {format_subject_list(deny)}")
    lines.append("        }")
    return lines


def _render_permissions(permissions: Permissions) -> list[str]:
    body = _render_direction("publish", permissions.publish_allow, permissions.publish_deny)
    body += _render_direction("subscribe", permissions.subscribe_allow, permissions.subscribe_deny)
    return ["      permissions: {", *body, "      }"]


def render_token_auth_conf(users: list[FlatUser]) -> str:
    """Render the flat authorization table.

    Args:
        users: Entries in the order they should appear.

    Returns:
        The ``authorization`` block, or an empty string when there are no
        users.
    """
    if not users:
        return ""

    lines = ["authorization {", "  users = ["]
    for i, user in enumerate(users):
        lines.append("    {")
        if user.username:
            lines.append(f"      user: {_quote(user.username)}")
        if user.token:
            lines.append(f"      token: {_quote(user.token)}")
        elif user.password:
            lines.append(f"      password: {_quote(user.password)}")
        if user.permissions is not None and not user.permissions.is_empty():
            lines.extend(_render_permissions(user.permissions))
        lines.append("    }," if i < len(users) - 1 else "    }")
    lines.extend(["  ]", "}"])
    return "\n".join(lines) + "\n"


def render_resolver_section(resolver_dir: str) -> str:
    """Render the full-resolver section pointing at *resolver_dir*."""
    return (
        "resolver: {\n"
        "  type: full\n"
        f"  dir: {_quote(resolver_dir)}\n"
        "  allow_delete: false\n"
        '  interval: "2m"\n'
        "}\n"
    )


def render_jwt_auth_conf(operator_jwt: str, resolver_dir: str) -> str:
    """Render the hierarchical dialect with a directory resolver."""
    return f"operator: {operator_jwt}\n\n" + render_resolver_section(resolver_dir)


def render_jwt_auth_conf_with_preload(operator_jwt: str, accounts: list[AccountJWT]) -> str:
    """Render the hierarchical dialect with account tokens preloaded inline.

    Accounts are ordered by account id. The ``resolver_preload`` block is
    omitted entirely when there are no accounts.
    """
    text = f"operator: {operator_jwt}\n\n"
    if not accounts:
        return text

    ordered = sorted(accounts, key=lambda account: account.account_id)
    lines = ["resolver_preload: {"]
    for i, account in enumerate(ordered):
        entry = f"  {_quote(account.account_id)}: {_quote(account.jwt)}"
        lines.append(entry + ("," if i < len(ordered) - 1 else ""))
    lines.append("}")
    return text + "\n".join(lines) + "\n"


def render_mixed_auth_conf(
    operator_jwt: str,
    resolver_dir: str,
    users: list[FlatUser],
    accounts: Optional[list[AccountJWT]] = None,
) -> str:
    """Render the hierarchical section followed by the flat table.

    When *accounts* is given the hierarchical section uses the preload form,
    otherwise the directory resolver form.
    """
    if accounts is None:
        jwt_section = render_jwt_auth_conf(operator_jwt, resolver_dir)
    else:
        jwt_section = render_jwt_auth_conf_with_preload(operator_jwt, accounts)
    return jwt_section + "\n" + render_token_auth_conf(users)
