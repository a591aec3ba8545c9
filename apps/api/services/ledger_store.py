"""Ledger repository: per-user optimistic transactions over ledger documents.

Every mutation goes through ``run_transaction(uid, body)``. The body is a pure
function of a :class:`LedgerSnapshot` returning ``(LedgerWrites, result)``.
Commits are compare-and-set on the ``version`` column of each written row; a
lost race re-runs the body against a fresh snapshot.
"""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.identity import Identity as IdentityRow
from models.processed_transaction import ProcessedTransaction as ProcessedTransactionRow
from models.subscription import SubscriptionRecord as SubscriptionRow
from models.user_ledger import UserLedger as UserLedgerRow
from services.errors import TransactionConflictError
from services.ledger_types import (
    SUBSCRIPTION_ACTIVE,
    Identity,
    LedgerSnapshot,
    LedgerWrites,
    ProcessedTransaction,
    SubscriptionRecord,
    TransactionBody,
    T,
    UserLedger,
    as_utc,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class LedgerRepository(abc.ABC):
    """Storage contract shared by the SQL store and the in-memory fake."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    @abc.abstractmethod
    async def run_transaction(
        self,
        uid: str,
        body: TransactionBody[T],
        *,
        transaction_id: Optional[str] = None,
    ) -> T:
        """Run ``body`` atomically against the user's documents and return its result."""

    @abc.abstractmethod
    async def get_ledger(self, uid: str) -> Optional[UserLedger]:
        ...

    @abc.abstractmethod
    async def get_processed_transaction(self, transaction_id: str) -> Optional[ProcessedTransaction]:
        ...

    @abc.abstractmethod
    async def list_ledgers(self, after: Optional[str], limit: int) -> List[UserLedger]:
        ...

    @abc.abstractmethod
    async def list_due_subscriptions(
        self,
        now: datetime,
        limit: int,
        after: Optional[str] = None,
    ) -> List[SubscriptionRecord]:
        ...

    @abc.abstractmethod
    async def list_stuck_ledgers(self, cutoff: datetime, limit: int) -> List[UserLedger]:
        ...

    @abc.abstractmethod
    async def list_identities(self, after: Optional[str], limit: int) -> List[Identity]:
        ...

    @abc.abstractmethod
    async def save_identity(self, identity: Identity) -> None:
        """Insert or refresh the identity mirror row."""


class _StaleWrite(Exception):
    pass


_LEDGER_FIELDS = tuple(
    f.name for f in dataclasses.fields(UserLedger) if f.name not in {"uid", "version"}
)
_SUBSCRIPTION_FIELDS = tuple(
    f.name for f in dataclasses.fields(SubscriptionRecord) if f.name not in {"uid", "version"}
)


def _ledger_from_row(row: UserLedgerRow) -> UserLedger:
    return UserLedger(
        uid=row.uid,
        plan=row.plan,
        credits=row.credits,
        max_credits=row.max_credits,
        last_monthly_grant=as_utc(row.last_monthly_grant),
        active_generations=int(row.active_generations or 0),
        last_generation_at=as_utc(row.last_generation_at),
        last_slot_acquired_at=as_utc(row.last_slot_acquired_at),
        used_free_onboarding_generation=bool(row.used_free_onboarding_generation),
        created_at=as_utc(row.created_at),
        email=row.email,
        display_name=row.display_name,
        version=int(row.version or 0),
    )


def _subscription_from_row(row: SubscriptionRow) -> SubscriptionRecord:
    return SubscriptionRecord(
        uid=row.uid,
        product_id=row.product_id,
        plan=row.plan,
        purchase_date=as_utc(row.purchase_date),
        expires_date=as_utc(row.expires_date),
        original_transaction_id=row.original_transaction_id,
        last_credit_grant=as_utc(row.last_credit_grant),
        status=row.status,
        version=int(row.version or 0),
    )


def _processed_from_row(row: ProcessedTransactionRow) -> ProcessedTransaction:
    return ProcessedTransaction(
        transaction_id=row.transaction_id,
        uid=row.uid,
        product_id=row.product_id,
        credits_granted=int(row.credits_granted),
        processed_at=as_utc(row.processed_at),
    )


def _column_values(record: Any, names: tuple) -> Dict[str, Any]:
    values = {name: getattr(record, name) for name in names}
    # Leave server defaults in charge of unset timestamps.
    if values.get("created_at") is None:
        values.pop("created_at", None)
    return values


class SqlLedgerRepository(LedgerRepository):
    """SQLAlchemy-backed store using the request's AsyncSession."""

    def __init__(self, db: AsyncSession, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.db = db
        self.max_attempts = max(int(max_attempts), 1)

    async def run_transaction(
        self,
        uid: str,
        body: TransactionBody[T],
        *,
        transaction_id: Optional[str] = None,
    ) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                snapshot = await self._load_snapshot(uid, transaction_id)
                writes, result = body(snapshot)
                if not writes.is_empty:
                    await self._apply(snapshot, writes)
                await self.db.commit()
                return result
            except (_StaleWrite, IntegrityError, OperationalError) as exc:
                await self.db.rollback()
                logger.info(
                    "Ledger transaction for %s lost a race (attempt %s/%s): %s",
                    uid,
                    attempt,
                    self.max_attempts,
                    type(exc).__name__,
                )
            except Exception:
                await self.db.rollback()
                raise
        raise TransactionConflictError(f"Ledger transaction for {uid} did not settle. Please try again.")

    async def _load_snapshot(self, uid: str, transaction_id: Optional[str]) -> LedgerSnapshot:
        ledger_result = await self.db.execute(
            select(UserLedgerRow)
            .where(UserLedgerRow.uid == uid)
            .execution_options(populate_existing=True)
        )
        ledger_row = ledger_result.scalar_one_or_none()
        subscription_result = await self.db.execute(
            select(SubscriptionRow)
            .where(SubscriptionRow.uid == uid)
            .execution_options(populate_existing=True)
        )
        subscription_row = subscription_result.scalar_one_or_none()
        processed_row = None
        if transaction_id:
            processed_result = await self.db.execute(
                select(ProcessedTransactionRow).where(ProcessedTransactionRow.transaction_id == transaction_id)
            )
            processed_row = processed_result.scalar_one_or_none()
        return LedgerSnapshot(
            uid=uid,
            ledger=_ledger_from_row(ledger_row) if ledger_row else None,
            subscription=_subscription_from_row(subscription_row) if subscription_row else None,
            processed_transaction=_processed_from_row(processed_row) if processed_row else None,
        )

    async def _apply(self, snapshot: LedgerSnapshot, writes: LedgerWrites) -> None:
        if writes.processed_transaction is not None:
            record = writes.processed_transaction
            self.db.add(
                ProcessedTransactionRow(
                    transaction_id=record.transaction_id,
                    uid=record.uid,
                    product_id=record.product_id,
                    credits_granted=record.credits_granted,
                    processed_at=record.processed_at,
                )
            )
            await self.db.flush()

        if writes.ledger is not None:
            values = _column_values(writes.ledger, _LEDGER_FIELDS)
            if snapshot.ledger is None:
                self.db.add(UserLedgerRow(uid=snapshot.uid, version=1, **values))
                await self.db.flush()
            else:
                await self._compare_and_set(UserLedgerRow, UserLedgerRow.uid, snapshot.uid, snapshot.ledger.version, values)

        if writes.subscription is not None:
            values = _column_values(writes.subscription, _SUBSCRIPTION_FIELDS)
            if snapshot.subscription is None:
                self.db.add(SubscriptionRow(uid=snapshot.uid, version=1, **values))
                await self.db.flush()
            else:
                await self._compare_and_set(
                    SubscriptionRow, SubscriptionRow.uid, snapshot.uid, snapshot.subscription.version, values
                )

    async def _compare_and_set(self, model, key_column, key: str, seen_version: int, values: Dict[str, Any]) -> None:
        result = await self.db.execute(
            update(model)
            .where(key_column == key, model.version == seen_version)
            .values(version=seen_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _StaleWrite(f"{model.__tablename__}:{key}")

    async def get_ledger(self, uid: str) -> Optional[UserLedger]:
        result = await self.db.execute(
            select(UserLedgerRow).where(UserLedgerRow.uid == uid).execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _ledger_from_row(row) if row else None

    async def get_processed_transaction(self, transaction_id: str) -> Optional[ProcessedTransaction]:
        result = await self.db.execute(
            select(ProcessedTransactionRow).where(ProcessedTransactionRow.transaction_id == transaction_id)
        )
        row = result.scalar_one_or_none()
        return _processed_from_row(row) if row else None

    async def list_ledgers(self, after: Optional[str], limit: int) -> List[UserLedger]:
        query = select(UserLedgerRow).order_by(UserLedgerRow.uid).limit(max(int(limit), 1))
        if after:
            query = query.where(UserLedgerRow.uid > after)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return [_ledger_from_row(row) for row in result.scalars().all()]

    async def list_due_subscriptions(
        self,
        now: datetime,
        limit: int,
        after: Optional[str] = None,
    ) -> List[SubscriptionRecord]:
        query = (
            select(SubscriptionRow)
            .where(
                SubscriptionRow.status == SUBSCRIPTION_ACTIVE,
                SubscriptionRow.expires_date <= now,
            )
            .order_by(SubscriptionRow.uid)
            .limit(max(int(limit), 1))
        )
        if after:
            query = query.where(SubscriptionRow.uid > after)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return [_subscription_from_row(row) for row in result.scalars().all()]

    async def list_stuck_ledgers(self, cutoff: datetime, limit: int) -> List[UserLedger]:
        result = await self.db.execute(
            select(UserLedgerRow)
            .where(
                UserLedgerRow.active_generations > 0,
                UserLedgerRow.last_slot_acquired_at < cutoff,
            )
            .order_by(UserLedgerRow.uid)
            .limit(max(int(limit), 1))
            .execution_options(populate_existing=True)
        )
        return [_ledger_from_row(row) for row in result.scalars().all()]

    async def list_identities(self, after: Optional[str], limit: int) -> List[Identity]:
        query = select(IdentityRow).order_by(IdentityRow.id).limit(max(int(limit), 1))
        if after:
            query = query.where(IdentityRow.id > after)
        result = await self.db.execute(query)
        return [
            Identity(uid=row.id, email=row.email, display_name=row.display_name)
            for row in result.scalars().all()
        ]

    async def save_identity(self, identity: Identity) -> None:
        row = await self.db.get(IdentityRow, identity.uid)
        if row is None:
            self.db.add(IdentityRow(id=identity.uid, email=identity.email, display_name=identity.display_name))
        else:
            row.email = identity.email or row.email
            row.display_name = identity.display_name or row.display_name
        try:
            await self.db.commit()
        except IntegrityError:
            # Registered concurrently; the existing row wins.
            await self.db.rollback()


class InMemoryLedgerRepository(LedgerRepository):
    """Dictionary-backed store with the same optimistic transaction contract.

    Each transaction yields to the event loop between its read and its commit,
    so concurrent callers interleave the way they would against a real store.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.max_attempts = max(int(max_attempts), 1)
        self.ledgers: Dict[str, UserLedger] = {}
        self.subscriptions: Dict[str, SubscriptionRecord] = {}
        self.processed_transactions: Dict[str, ProcessedTransaction] = {}
        self.identities: Dict[str, Identity] = {}
        self.conflicts = 0

    def seed_ledger(self, ledger: UserLedger) -> UserLedger:
        stored = dataclasses.replace(ledger, version=max(ledger.version, 1))
        self.ledgers[ledger.uid] = stored
        return stored

    def seed_subscription(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        stored = dataclasses.replace(subscription, version=max(subscription.version, 1))
        self.subscriptions[subscription.uid] = stored
        return stored

    def seed_identity(self, identity: Identity) -> Identity:
        self.identities[identity.uid] = identity
        return identity

    async def run_transaction(
        self,
        uid: str,
        body: TransactionBody[T],
        *,
        transaction_id: Optional[str] = None,
    ) -> T:
        for _ in range(self.max_attempts):
            snapshot = LedgerSnapshot(
                uid=uid,
                ledger=self.ledgers.get(uid),
                subscription=self.subscriptions.get(uid),
                processed_transaction=self.processed_transactions.get(transaction_id) if transaction_id else None,
            )
            await asyncio.sleep(0)
            writes, result = body(snapshot)
            if writes.is_empty:
                return result
            await asyncio.sleep(0)
            if self._is_stale(snapshot, writes):
                self.conflicts += 1
                continue
            self._apply(snapshot, writes)
            return result
        raise TransactionConflictError(f"Ledger transaction for {uid} did not settle. Please try again.")

    def _is_stale(self, snapshot: LedgerSnapshot, writes: LedgerWrites) -> bool:
        if self.ledgers.get(snapshot.uid) is not snapshot.ledger:
            return True
        if self.subscriptions.get(snapshot.uid) is not snapshot.subscription:
            return True
        record = writes.processed_transaction
        return record is not None and record.transaction_id in self.processed_transactions

    def _apply(self, snapshot: LedgerSnapshot, writes: LedgerWrites) -> None:
        if writes.processed_transaction is not None:
            record = writes.processed_transaction
            self.processed_transactions[record.transaction_id] = record
        if writes.ledger is not None:
            seen = snapshot.ledger.version if snapshot.ledger else 0
            self.ledgers[snapshot.uid] = dataclasses.replace(writes.ledger, uid=snapshot.uid, version=seen + 1)
        if writes.subscription is not None:
            seen = snapshot.subscription.version if snapshot.subscription else 0
            self.subscriptions[snapshot.uid] = dataclasses.replace(
                writes.subscription, uid=snapshot.uid, version=seen + 1
            )

    async def get_ledger(self, uid: str) -> Optional[UserLedger]:
        return self.ledgers.get(uid)

    async def get_processed_transaction(self, transaction_id: str) -> Optional[ProcessedTransaction]:
        return self.processed_transactions.get(transaction_id)

    async def list_ledgers(self, after: Optional[str], limit: int) -> List[UserLedger]:
        uids = sorted(uid for uid in self.ledgers if after is None or uid > after)
        return [self.ledgers[uid] for uid in uids[: max(int(limit), 1)]]

    async def list_due_subscriptions(
        self,
        now: datetime,
        limit: int,
        after: Optional[str] = None,
    ) -> List[SubscriptionRecord]:
        due = [
            record
            for uid, record in sorted(self.subscriptions.items())
            if record.status == SUBSCRIPTION_ACTIVE
            and record.expires_date <= now
            and (after is None or uid > after)
        ]
        return due[: max(int(limit), 1)]

    async def list_stuck_ledgers(self, cutoff: datetime, limit: int) -> List[UserLedger]:
        stuck = [
            ledger
            for _, ledger in sorted(self.ledgers.items())
            if ledger.active_generations > 0
            and ledger.last_slot_acquired_at is not None
            and ledger.last_slot_acquired_at < cutoff
        ]
        return stuck[: max(int(limit), 1)]

    async def list_identities(self, after: Optional[str], limit: int) -> List[Identity]:
        uids = sorted(uid for uid in self.identities if after is None or uid > after)
        return [self.identities[uid] for uid in uids[: max(int(limit), 1)]]

    async def save_identity(self, identity: Identity) -> None:
        self.seed_identity(identity)


def get_ledger_repository(db: AsyncSession = Depends(get_db)) -> LedgerRepository:
    """FastAPI dependency binding the SQL store to the request's session."""
    return SqlLedgerRepository(db)
