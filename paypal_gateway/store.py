"""
Payment stores.

A store is a cache of the last-known ``PaymentRecord`` per PayPal order id.
The lifecycle manager only relies on ``get`` and ``put``.
"""
from typing import Dict, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Settings
from .db import create_engine_for, init_db, make_session_factory
from .models import PaymentRecord, PaymentRow


class PaymentStore(Protocol):
    async def get(self, payment_id: str) -> Optional[PaymentRecord]: ...

    async def put(self, payment_id: str, record: PaymentRecord) -> None: ...


class InMemoryPaymentStore:
    """Last-writer-wins dict; records are immutable so they are shared as-is."""

    def __init__(self):
        self._records: Dict[str, PaymentRecord] = {}

    async def get(self, payment_id: str) -> Optional[PaymentRecord]:
        return self._records.get(payment_id)

    async def put(self, payment_id: str, record: PaymentRecord) -> None:
        self._records[payment_id] = record

    async def close(self) -> None:
        return None


class SQLPaymentStore:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session = make_session_factory(engine)

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs) -> "SQLPaymentStore":
        return cls(create_engine_for(database_url, **engine_kwargs))

    async def init(self) -> None:
        await init_db(self.engine)

    async def get(self, payment_id: str) -> Optional[PaymentRecord]:
        async with self._session() as session:
            row = await session.get(PaymentRow, payment_id)
            return row.to_record() if row else None

    async def put(self, payment_id: str, record: PaymentRecord) -> None:
        row = PaymentRow.from_record(record)
        row.id = payment_id
        async with self._session() as session:
            await session.merge(row)
            await session.commit()

    async def close(self) -> None:
        await self.engine.dispose()


def build_store(settings: Settings):
    if settings.store_backend == "sql":
        return SQLPaymentStore.from_url(settings.database_url)
    if settings.store_backend != "memory":
        raise ValueError(f"Unknown store backend: {settings.store_backend!r}")
    return InMemoryPaymentStore()
