#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionRecord(Base):
    """One broadcast settlement transaction, written before it is sent."""

    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_hash = Column(String(66), unique=True, nullable=False, index=True)
    chain_id = Column(Integer, nullable=False)
    candidate_key = Column(String(128), nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    signer = Column(String(42), nullable=False)
    nonce = Column(Integer, nullable=False)
    payload_hash = Column(String(66), nullable=False, index=True)
    state = Column(String(16), nullable=False, index=True)
    # uint256 amounts do not fit a SQL integer.
    flash_amount = Column(String(80))
    expected_net = Column(String(80))
    net_result = Column(String(80))
    reason = Column(Text)
    block_number = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SubmissionRecord {self.tx_hash} {self.candidate_key} {self.state}>"
