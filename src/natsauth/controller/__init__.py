"""
Reconciliation layer

Per-kind reconcilers for the operator → account → user hierarchy and the
engine that drives them:
- AuthConfig: operator keypair/token and the aggregate server configuration
- Account: operator-signed account tokens
- User: account-signed credentials files or flat username/password pairs
"""

from .base import Outcome, ReconcileResult, Reconciler, claims_hash, is_current
from .authconfig import AuthConfigReconciler, resolve_user_auth_type
from .account import AccountReconciler
from .user import UserReconciler
from .scheduler import WorkQueue
from .engine import ReconciliationEngine

__all__ = [
    "Outcome",
    "ReconcileResult",
    "Reconciler",
    "claims_hash",
    "is_current",
    "AuthConfigReconciler",
    "AccountReconciler",
    "UserReconciler",
    "resolve_user_auth_type",
    "WorkQueue",
    "ReconciliationEngine",
]
