"""
NATS credentials files.

A credentials file bundles a user JWT and the user's nkey seed in one text
blob that client libraries accept as-is.
"""

from __future__ import annotations

import re

from natsauth.exceptions import IdentityError

_CREDS_TEMPLATE = """-----BEGIN NATS USER JWT-----
{jwt}
------END NATS USER JWT------

************************* IMPORTANT *************************
NKEY Seed printed below can be used to sign and prove identity.
NKEYs are sensitive and should be treated as secrets.

-----BEGIN USER NKEY SEED-----
{seed}
------END USER NKEY SEED------

*************************************************************
"""

_SECTION_RE = re.compile(
    r"\s*(?:[-]{3,}[^\n]*[-]{3,}\r?\n)([\w\-.=]+)(?:\r?\n[-]{3,}[^\n]*[-]{3,}(?:\r?\n|$))"
)


def generate_creds_file(user_jwt: str, user_seed: str) -> str:
    """Render the credentials file for a user token and seed."""
    return _CREDS_TEMPLATE.format(jwt=user_jwt, seed=user_seed)


def parse_creds_file(content: str) -> tuple[str, str]:
    """Extract ``(jwt, seed)`` from credentials file text.

    Raises:
        IdentityError: If either section is missing.
    """
    sections = [match.strip() for match in _SECTION_RE.findall(content)]
    if len(sections) < 2:
        raise IdentityError("Credentials file must contain a JWT and a seed section")
    return sections[0], sections[1]
