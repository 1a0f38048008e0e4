"""Rendering of server authorization configuration."""

from .render import (
    AccountJWT,
    FlatUser,
    format_subject_list,
    render_jwt_auth_conf,
    render_jwt_auth_conf_with_preload,
    render_mixed_auth_conf,
    render_resolver_section,
    render_token_auth_conf,
)
from .resolver import ResolverDirectory

__all__ = [
    "AccountJWT",
    "FlatUser",
    "ResolverDirectory",
    "format_subject_list",
    "render_jwt_auth_conf",
    "render_jwt_auth_conf_with_preload",
    "render_mixed_auth_conf",
    "render_resolver_section",
    "render_token_auth_conf",
]
