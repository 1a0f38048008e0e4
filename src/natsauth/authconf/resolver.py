"""
Local resolver directory.

Materialises operator and account tokens in the layout a full resolver
expects::

    <base_dir>/operator.jwt
    <base_dir>/accounts/<account id>.jwt
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Union

from natsauth.authconf.render import render_resolver_section
from natsauth.exceptions import StorageError

logger = logging.getLogger(__name__)

OPERATOR_JWT_FILE = "operator.jwt"
ACCOUNTS_DIR = "accounts"
JWT_SUFFIX = ".jwt"


class ResolverDirectory:
    """Reads and writes token files under a resolver base directory."""

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)

    @property
    def accounts_dir(self) -> Path:
        return self.base_dir / ACCOUNTS_DIR

    @property
    def operator_jwt_path(self) -> Path:
        return self.base_dir / OPERATOR_JWT_FILE

    def account_jwt_path(self, account_id: str) -> Path:
        return self.accounts_dir / f"{account_id}{JWT_SUFFIX}"

    def initialize(self) -> None:
        """Create the base and accounts directories.

        Raises:
            StorageError: If the directories cannot be created.
        """
        try:
            self.accounts_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to create resolver directory {self.base_dir}: {exc}") from exc

    def _write(self, path: Path, content: str) -> bool:
        if path.exists() and path.read_text() == content:
            return False
        try:
            path.write_text(content)
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc
        return True

    def write_operator_jwt(self, operator_jwt: str) -> bool:
        """Write the operator token. Returns True if the file changed."""
        self.initialize()
        return self._write(self.operator_jwt_path, operator_jwt)

    def write_account_jwt(self, account_id: str, account_jwt: str) -> bool:
        """Write an account token. Returns True if the file changed."""
        self.initialize()
        changed = self._write(self.account_jwt_path(account_id), account_jwt)
        if changed:
            logger.debug("Wrote account token %s", account_id)
        return changed

    def delete_account_jwt(self, account_id: str) -> bool:
        """Remove an account token; a missing file is not an error."""
        path = self.account_jwt_path(account_id)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}: {exc}") from exc
        return True

    def account_jwt_exists(self, account_id: str) -> bool:
        return self.account_jwt_path(account_id).is_file()

    def account_ids(self) -> list[str]:
        """Account ids that currently have a token file, sorted."""
        if not self.accounts_dir.is_dir():
            return []
        return sorted(p.stem for p in self.accounts_dir.glob(f"*{JWT_SUFFIX}"))

    def prune(self, keep: Iterable[str]) -> list[str]:
        """Delete account token files whose id is not in *keep*.

        Returns:
            The removed account ids.
        """
        wanted = set(keep)
        removed = [account_id for account_id in self.account_ids() if account_id not in wanted]
        for account_id in removed:
            self.delete_account_jwt(account_id)
            logger.info("Pruned stale account token %s", account_id)
        return removed

    def resolver_config(self) -> str:
        """The server configuration section pointing at this directory."""
        return render_resolver_section(str(self.base_dir))
