#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..utils.logging_config import get_logger
from .db_models import Base, SubmissionRecord

logger = get_logger(__name__)


class ExecutionState(str, Enum):
    """Lifecycle of one settlement attempt as stored in the ``state`` column."""

    # Signed and logged, not yet accepted by the node.
    PLANNED = "planned"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"
    # Never reached the mempool, or vanished from it.
    DROPPED = "dropped"


UNRESOLVED_STATES = (
    ExecutionState.PLANNED.value,
    ExecutionState.SUBMITTED.value,
    ExecutionState.TIMED_OUT.value,
)


class SubmissionStore:
    """
    Durable log of settlement submissions.
    A row is written before each broadcast so that a restart can reconcile
    in-flight transactions instead of submitting the same opportunity twice.
    """

    def __init__(self, db_url: str, echo: bool = False):
        self._db_url = db_url
        self._engine = create_async_engine(db_url, echo=echo)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._initialized = False
        safe_url = make_url(db_url).render_as_string(hide_password=True)
        logger.debug(f"SubmissionStore initialized for URL: {safe_url}")

    @classmethod
    def from_settings(cls, settings) -> "SubmissionStore":
        return cls(settings.database.url)

    async def initialize_db(self) -> None:
        """Creates the tables if they don't exist."""
        if self._initialized:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True
        logger.debug("Submission schema checked and initialized.")

    async def record_submission(self, data: Dict[str, Any], retries: int = 2) -> Optional[SubmissionRecord]:
        """
        Write a new submission row.

        Returns:
            The saved record, or None when every attempt failed.
        """
        await self.initialize_db()
        data = dict(data)
        data["state"] = ExecutionState(data.get("state", ExecutionState.SUBMITTED)).value
        attempt = 0
        while attempt <= retries:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        record = SubmissionRecord(**data)
                        session.add(record)
                    await session.refresh(record)
                    return record
            except Exception as e:
                attempt += 1
                logger.error(
                    f"Failed to record submission {data.get('tx_hash')}: {e} (attempt {attempt}/{retries + 1})"
                )
                if attempt > retries:
                    return None
                await asyncio.sleep(0.5 * attempt)
        return None

    async def update_state(
        self,
        tx_hash: str,
        state: ExecutionState,
        reason: Optional[str] = None,
        net_result: Optional[int] = None,
        block_number: Optional[int] = None,
    ) -> bool:
        await self.initialize_db()
        values: Dict[str, Any] = {"state": ExecutionState(state).value}
        if reason is not None:
            values["reason"] = reason
        if net_result is not None:
            values["net_result"] = str(net_result)
        if block_number is not None:
            values["block_number"] = block_number
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(SubmissionRecord).where(SubmissionRecord.tx_hash == tx_hash).values(**values)
                    )
            return result.rowcount > 0
        except Exception as e:
            logger.error(f"Failed to update submission {tx_hash} to {ExecutionState(state).value}: {e}")
            return False

    async def get_by_hash(self, tx_hash: str) -> Optional[SubmissionRecord]:
        await self.initialize_db()
        async with self._session_factory() as session:
            result = await session.execute(select(SubmissionRecord).where(SubmissionRecord.tx_hash == tx_hash))
            return result.scalar_one_or_none()

    async def unresolved(self, chain_id: Optional[int] = None) -> List[SubmissionRecord]:
        """Submissions still waiting on a receipt, oldest first."""
        await self.initialize_db()
        stmt = select(SubmissionRecord).where(SubmissionRecord.state.in_(UNRESOLVED_STATES))
        if chain_id is not None:
            stmt = stmt.where(SubmissionRecord.chain_id == chain_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(SubmissionRecord.id))
            return list(result.scalars().all())

    async def has_unresolved(self, candidate_key: str) -> bool:
        await self.initialize_db()
        stmt = (
            select(SubmissionRecord.id)
            .where(SubmissionRecord.candidate_key == candidate_key)
            .where(SubmissionRecord.state.in_(UNRESOLVED_STATES))
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.first() is not None

    async def payload_used(self, payload_hash: str) -> bool:
        await self.initialize_db()
        stmt = select(SubmissionRecord.id).where(SubmissionRecord.payload_hash == payload_hash).limit(1)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.first() is not None

    async def recent(self, limit: int = 50, states: Optional[Sequence[ExecutionState]] = None) -> List[SubmissionRecord]:
        await self.initialize_db()
        stmt = select(SubmissionRecord)
        if states:
            stmt = stmt.where(SubmissionRecord.state.in_([ExecutionState(s).value for s in states]))
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(SubmissionRecord.id.desc()).limit(limit))
            return list(result.scalars().all())

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("Closing submission store and disposing engine connections.")
