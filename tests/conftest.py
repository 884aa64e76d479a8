from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional

import pytest

from framesync.audit import reset_audit_registry
from framesync.automation import (
    Action,
    ActionCommitter,
    ExecutionController,
    InMemoryAccountBook,
    PermissionEnforcer,
    StaticPermissionProvider,
    UserContext,
)
from framesync.storage import InMemoryKeyValueStore
from framesync.vault import MIN_KDF_ITERATIONS, SecureVault

ALL_GRANTS = ("transfers:execute", "transfers:high_value", "goals:modify", "notifications:send")


class RecordingCommitter(ActionCommitter):
    """Counts commit calls; optionally delegates to a book or raises."""

    def __init__(self, book: Optional[InMemoryAccountBook] = None, error: Optional[Exception] = None):
        self.book = book
        self.error = error
        self.calls: List[Action] = []
        self.credentials: List[Any] = []

    async def commit(self, action: Action, *, credential: Optional[Any] = None) -> Mapping[str, Any]:
        self.calls.append(action)
        self.credentials.append(credential)
        if self.error is not None:
            raise self.error
        if self.book is not None:
            return await self.book.commit(action, credential=credential)
        return {"ok": True}


def make_user(grants: Iterable[str] = ALL_GRANTS, authenticated: bool = True) -> UserContext:
    return UserContext(user_id="owner", authenticated=authenticated, grants=frozenset(grants))


def make_vault(store: Optional[InMemoryKeyValueStore] = None) -> SecureVault:
    return SecureVault(store or InMemoryKeyValueStore(), kdf_iterations=MIN_KDF_ITERATIONS)


def transfer(amount: Any = 500, source: str = "checking", destination: str = "savings") -> Action:
    return Action(
        action_type="transfer",
        payload={"source_account": source, "destination_account": destination, "amount": amount},
        rule_id="manual",
    )


def make_controller(
    *,
    book: Optional[InMemoryAccountBook] = None,
    grants: Iterable[str] = ALL_GRANTS,
    committer: Optional[ActionCommitter] = None,
    **kwargs: Any,
) -> ExecutionController:
    book = book or InMemoryAccountBook({"checking": Decimal("6000"), "savings": Decimal("0")})
    enforcer = PermissionEnforcer(StaticPermissionProvider(make_user(grants)))
    return ExecutionController(
        snapshots=book,
        enforcer=enforcer,
        committer=committer or book,
        **kwargs,
    )


@pytest.fixture(autouse=True)
def _reset_audit_writers():
    reset_audit_registry()
    yield
    reset_audit_registry()
