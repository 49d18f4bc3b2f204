#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Swap aggregator client
====================================
Quote and assemble calls against an Odos-style smart order router. The
client only reads prices and builds call payloads; it never signs or
submits anything.
License: MIT
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..core.models import AmountSpec, Quote, SwapKind
from ..utils.custom_exceptions import QuoteExpired, QuoteServiceError, QuoteUnavailable
from ..utils.logging_config import get_logger
from ..utils.numbers import BPS_DENOMINATOR, add_bps
from ..utils.retry import CircuitBreaker

logger = get_logger(__name__)

API_NAME = "odos"
QUOTE_PATH = "/sor/quote/v2"
ASSEMBLE_PATH = "/sor/assemble"

_NO_ROUTE_MARKERS = ("no route", "no path", "not found", "insufficient liquidity", "cannot route")


@dataclass
class RateLimitTracker:
    """Tracks request usage against the provider's per-window limit."""

    requests_made: int = 0
    window_start: float = 0
    max_requests: int = 60
    window_duration: int = 60  # seconds
    backoff_until: float = 0
    clock: Callable[[], float] = time.time

    def can_make_request(self) -> bool:
        now = self.clock()
        if now < self.backoff_until:
            return False
        if now - self.window_start >= self.window_duration:
            self.requests_made = 0
            self.window_start = now
        return self.requests_made < self.max_requests

    def record_request(self, success: bool = True) -> None:
        now = self.clock()
        if now - self.window_start >= self.window_duration:
            self.requests_made = 0
            self.window_start = now
        self.requests_made += 1
        if not success and self.requests_made >= self.max_requests * 0.8:
            self.backoff_until = now + min(60, 2 ** max(0, self.requests_made - self.max_requests))

    def seconds_until_available(self) -> float:
        now = self.clock()
        if now < self.backoff_until:
            return self.backoff_until - now
        return max(0.0, self.window_duration - (now - self.window_start))


# ---------------------------------------------------------------------------
# Response shapes
# ---------------------------------------------------------------------------
class QuoteResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    path_id: str = Field(alias="pathId", min_length=1)
    in_tokens: List[str] = Field(default_factory=list, alias="inTokens")
    out_tokens: List[str] = Field(default_factory=list, alias="outTokens")
    in_amounts: List[int] = Field(alias="inAmounts", min_length=1)
    out_amounts: List[int] = Field(alias="outAmounts", min_length=1)
    gas_estimate: Optional[Decimal] = Field(default=None, alias="gasEstimate")
    price_impact: Optional[Decimal] = Field(default=None, alias="priceImpact")


class AssembledTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    to: str
    data: str = Field(min_length=3)
    value: int = 0


class AssembleResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction: AssembledTransaction


class AggregatorQuoteClient:
    """Async client for the swap aggregator's quote/assemble endpoints."""

    def __init__(
        self,
        settings,
        chain_id: int,
        user_address: str,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._chain_id = chain_id
        self._user_address = user_address
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self.rate_tracker = RateLimitTracker(max_requests=settings.rate_limit_per_minute, clock=clock)
        self._breaker = CircuitBreaker(
            failure_threshold=5, recovery_timeout=60.0, expected_exception=QuoteServiceError, name=API_NAME
        )
        self._post = self._breaker(self._post_json)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._settings.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._settings.api_key is not None:
            headers["Authorization"] = f"Bearer {self._settings.api_key.get_secret_value()}"
        return headers

    async def _post_json(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._settings.base_url.rstrip('/')}{path}"
        if not self.rate_tracker.can_make_request():
            raise QuoteServiceError(
                f"Rate limit reached, retry in {self.rate_tracker.seconds_until_available():.1f}s",
                api_name=API_NAME,
                endpoint=path,
                status_code=429,
            )

        session = await self._get_session()
        try:
            async with session.post(url, json=body, headers=self._headers()) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            self.rate_tracker.record_request(False)
            raise QuoteServiceError(
                f"Request to {API_NAME} timed out", api_name=API_NAME, endpoint=path, cause=e
            ) from e
        except aiohttp.ClientError as e:
            self.rate_tracker.record_request(False)
            raise QuoteServiceError(
                f"Network error with {API_NAME}: {e}", api_name=API_NAME, endpoint=path, cause=e
            ) from e

        if status == 429 or status >= 500:
            self.rate_tracker.record_request(False)
            raise QuoteServiceError(
                f"{API_NAME} returned HTTP {status}",
                api_name=API_NAME,
                endpoint=path,
                status_code=status,
                response_body=text,
            )

        self.rate_tracker.record_request(True)
        if status >= 400:
            lowered = text.lower()
            reason = "no route" if any(m in lowered for m in _NO_ROUTE_MARKERS) else f"HTTP {status}"
            raise QuoteUnavailable(
                f"{API_NAME} rejected the request: {reason}",
                api_name=API_NAME,
                endpoint=path,
                status_code=status,
                response_body=text,
            )

        try:
            return json.loads(text)
        except ValueError as e:
            raise QuoteServiceError(
                f"Malformed JSON from {API_NAME}",
                api_name=API_NAME,
                endpoint=path,
                status_code=status,
                response_body=text,
                cause=e,
            ) from e

    async def _request_quote(self, input_token: str, output_token: str, amount_in: int, slippage_bps: int) -> QuoteResponse:
        body = {
            "chainId": self._chain_id,
            "inputTokens": [{"tokenAddress": input_token, "amount": str(int(amount_in))}],
            "outputTokens": [{"tokenAddress": output_token, "proportion": 1}],
            "userAddr": self._user_address,
            "slippageLimitPercent": float(Decimal(slippage_bps) / Decimal(100)),
            "disableRFQs": self._settings.disable_rfqs,
            "compact": self._settings.compact,
        }
        raw = await self._post(QUOTE_PATH, body)
        try:
            parsed = QuoteResponse.model_validate(raw)
        except PydanticValidationError as e:
            raise QuoteServiceError(
                f"Unexpected quote response shape from {API_NAME}",
                api_name=API_NAME,
                endpoint=QUOTE_PATH,
                response_body=str(raw),
                cause=e,
            ) from e
        if parsed.out_amounts[0] <= 0 or parsed.in_amounts[0] <= 0:
            raise QuoteUnavailable("Route has empty amounts", api_name=API_NAME, endpoint=QUOTE_PATH)
        return parsed

    async def quote(
        self,
        input_token: str,
        output_token: str,
        amount_spec: AmountSpec,
        max_slippage_bps: int,
    ) -> Quote:
        """Quote a swap.

        The router only prices exact-input swaps. For exact-output the
        reverse direction is priced first to estimate the input, the
        estimate is inflated by the slippage buffer and re-quoted, and the
        route is rejected when it still falls short of the target output.
        """
        if not 0 <= max_slippage_bps < BPS_DENOMINATOR:
            raise ValueError("max_slippage_bps must be within [0, 10000)")

        if amount_spec.kind is SwapKind.EXACT_INPUT:
            response = await self._request_quote(input_token, output_token, amount_spec.amount, max_slippage_bps)
            input_amount = response.in_amounts[0]
            output_amount = response.out_amounts[0]
            max_input_amount = add_bps(input_amount, max_slippage_bps)
        else:
            reverse = await self._request_quote(output_token, input_token, amount_spec.amount, max_slippage_bps)
            estimated_input = add_bps(reverse.out_amounts[0], max_slippage_bps)
            response = await self._request_quote(input_token, output_token, estimated_input, max_slippage_bps)
            input_amount = response.in_amounts[0]
            output_amount = response.out_amounts[0]
            if output_amount < amount_spec.amount:
                raise QuoteUnavailable(
                    "insufficient output",
                    api_name=API_NAME,
                    endpoint=QUOTE_PATH,
                    details={"target_output": amount_spec.amount, "quoted_output": output_amount},
                )
            # the forward input already carries the slippage buffer
            max_input_amount = input_amount

        quote = Quote(
            input_token=input_token,
            output_token=output_token,
            swap_kind=amount_spec.kind,
            input_amount=input_amount,
            output_amount=output_amount,
            max_input_amount=max_input_amount,
            path_id=response.path_id,
            expires_at=self._clock() + self._settings.quote_ttl_seconds,
            chain_id=self._chain_id,
        )
        logger.debug(
            f"Quoted {input_token} -> {output_token}: in={input_amount} out={output_amount} "
            f"max_in={quote.max_input_amount} path={quote.path_id}"
        )
        return quote

    async def assemble(self, quote: Quote, receiver: str) -> bytes:
        """Build the swap call payload for ``quote``, executed by ``receiver``."""
        if quote.is_expired(self._clock()):
            raise QuoteExpired(details={"path_id": quote.path_id})

        body = {
            "userAddr": receiver,
            "pathId": quote.path_id,
            "simulate": False,
            "receiver": receiver,
        }
        raw = await self._post(ASSEMBLE_PATH, body)
        try:
            parsed = AssembleResponse.model_validate(raw)
        except PydanticValidationError as e:
            raise QuoteServiceError(
                f"Unexpected assemble response shape from {API_NAME}",
                api_name=API_NAME,
                endpoint=ASSEMBLE_PATH,
                response_body=str(raw),
                cause=e,
            ) from e

        data = parsed.transaction.data
        try:
            return bytes.fromhex(data[2:] if data.startswith("0x") else data)
        except ValueError as e:
            raise QuoteServiceError(
                "Assembled payload is not hex", api_name=API_NAME, endpoint=ASSEMBLE_PATH, cause=e
            ) from e

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            logger.debug("AggregatorQuoteClient session closed.")
        self._session = None
