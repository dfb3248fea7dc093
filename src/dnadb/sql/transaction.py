"""
Transaction handles.

State machine: ``pending -> committed`` or ``pending -> rolled_back``.
Exactly one terminal call is legal; any use afterwards raises
:class:`TransactionStateError`. Nesting uses named savepoints inside the one
transaction rather than nested transaction objects.

Statements on one handle run one at a time in call order. The handle holds
a pooled connection from ``begin`` until its terminal call.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from dnadb.errors import OperationError, TransactionStateError
from dnadb.sql.config import IsolationLevel
from dnadb.sql.identifiers import validate_sql_identifier

if TYPE_CHECKING:
    from dnadb.sql.drivers import QueryResult
    from dnadb.sql.module import SQLModule

logger = logging.getLogger(__name__)


class TransactionStatus(StrEnum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction:
    """A unit of work on one pooled connection."""

    def __init__(self, module: SQLModule, handle: Any, isolation_level: IsolationLevel) -> None:
        self.id = f"txn_{uuid.uuid4().hex[:16]}"
        self.isolation_level = isolation_level
        self.status = TransactionStatus.PENDING
        self.started_at = datetime.now(UTC)
        self.savepoints: list[str] = []
        self._module = module
        self._handle = handle
        self._lock = asyncio.Lock()
        self._started_mono = time.monotonic()

    def __repr__(self) -> str:
        return f"Transaction(id={self.id!r}, status={self.status.value!r}, isolation={self.isolation_level.value!r})"

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def handle(self) -> Any:
        """The pooled connection this transaction runs on."""
        return self._handle

    @property
    def duration_ms(self) -> float:
        return (time.monotonic() - self._started_mono) * 1000

    # =========================================================================
    # Statements
    # =========================================================================

    async def query(self, sql: str, params: list[Any] | tuple[Any, ...] | None = None) -> QueryResult:
        self._check_pending("query")
        async with self._lock:
            self._check_pending("query")
            return await self._module._execute(self._handle, sql, list(params or []), in_transaction=True)

    async def execute_script(self, script: str) -> int:
        """Run a multi-statement script inside the transaction."""
        self._check_pending("execute_script")
        async with self._lock:
            self._check_pending("execute_script")
            return await self._module._execute_script(self._handle, script)

    # =========================================================================
    # Terminal calls
    # =========================================================================

    async def commit(self) -> None:
        self._check_pending("commit")
        async with self._lock:
            self._check_pending("commit")
            try:
                await self._module._execute(
                    self._handle, self._module.dialect.commit_statement(), [], in_transaction=True
                )
            except OperationError:
                logger.warning("Commit failed for %s, rolling back", self.id)
                await self._finish_with_rollback()
                raise
            self.status = TransactionStatus.COMMITTED
            self.savepoints.clear()
            await self._module._transaction_finished(self, discard_connection=False)

    async def rollback(self) -> None:
        self._check_pending("rollback")
        async with self._lock:
            self._check_pending("rollback")
            await self._finish_with_rollback()

    async def _finish_with_rollback(self) -> None:
        failed = True
        try:
            await self._module._execute(
                self._handle, self._module.dialect.rollback_statement(), [], in_transaction=True
            )
            failed = False
        finally:
            # Terminal even if ROLLBACK itself failed; the connection is discarded then
            self.status = TransactionStatus.ROLLED_BACK
            self.savepoints.clear()
            await self._module._transaction_finished(self, discard_connection=failed)

    # =========================================================================
    # Savepoints
    # =========================================================================

    async def savepoint(self, name: str) -> None:
        validate_sql_identifier(name, "savepoint name")
        self._check_pending("savepoint")
        if name in self.savepoints:
            raise TransactionStateError(f"Savepoint '{name}' already exists in transaction {self.id}")
        await self.query(f"SAVEPOINT {name}")
        self.savepoints.append(name)

    async def release_savepoint(self, name: str) -> None:
        """Release ``name``. Savepoints created after it are released with it."""
        index = self._savepoint_index(name)
        await self.query(f"RELEASE SAVEPOINT {name}")
        del self.savepoints[index:]

    async def rollback_to_savepoint(self, name: str) -> None:
        """Undo work since ``name``. The savepoint itself stays usable."""
        index = self._savepoint_index(name)
        await self.query(f"ROLLBACK TO SAVEPOINT {name}")
        del self.savepoints[index + 1 :]

    def _savepoint_index(self, name: str) -> int:
        self._check_pending("savepoint")
        try:
            return self.savepoints.index(name)
        except ValueError:
            raise TransactionStateError(f"Unknown savepoint '{name}' in transaction {self.id}") from None

    def _check_pending(self, action: str) -> None:
        if self.status != TransactionStatus.PENDING:
            raise TransactionStateError(
                f"Cannot {action}: transaction {self.id} is already {self.status.value}"
            )
