"""
Source adapter base class.

An adapter turns one provider's paginated listing API into canonical
`TrackRecord`s. The base class owns everything that is the same for every
provider:

- credential short-circuit (no request is made without a required key)
- query/sort rotation driven by the per-source `Cursor` (sliding window over
  a corpus that is only reachable through pagination)
- a fixed pause between external calls, for provider rate limits
- a per-run cap on listing items processed
- error capture: item and query failures become strings in `errors`, never
  exceptions

Subclasses implement `run_query()` and keep their raw payload types local.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx

from harvest.config import SourceSettings
from harvest.core import HarvestError
from harvest.core.models import Cursor, SourceResult, TrackRecord
from harvest.core.normalize import sanitize


class SourceRequestError(HarvestError):
    """A listing or metadata call failed (non-2xx, bad payload, transport)."""


@dataclass(frozen=True, slots=True)
class QueryPlan:
    """One query of a run: which variant, which sort, where to start."""

    number: int
    query: str
    sort: str
    offset: int


@dataclass(slots=True)
class HarvestRun:
    """Mutable scratch state of a single `fetch()`; never outlives it."""

    max_items: int
    tracks: list[TrackRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    items_processed: int = 0
    seen_ids: set[str] = field(default_factory=set)

    @property
    def accepting(self) -> bool:
        return self.items_processed < self.max_items

    def add(self, partial: Mapping[str, Any]) -> TrackRecord | None:
        """Sanitize and keep a track; repeated ids within a run are dropped."""
        record = sanitize(partial)
        if record.id in self.seen_ids:
            return None
        self.seen_ids.add(record.id)
        self.tracks.append(record)
        return record


class SourceAdapter(ABC):
    name: ClassVar[str]
    id_prefix: ClassVar[str]
    queries: ClassVar[tuple[str, ...]] = ("",)
    sorts: ClassVar[tuple[str, ...]] = ("",)
    requires_credential: ClassVar[bool] = False
    # Env var read when the config names none.
    credential_env: ClassVar[str | None] = None

    def __init__(self, client: httpx.AsyncClient, settings: SourceSettings) -> None:
        self.client = client
        self.settings = settings
        self.logger = logging.getLogger(f"harvest.sources.{self.name}")
        self._requests = 0

    def credential_problem(self) -> str | None:
        if self.requires_credential and not self.settings.client_id:
            env = self.settings.credential_env or self.credential_env or f"{self.name.upper()}_CLIENT_ID"
            return f"{env} not set"
        return None

    def plan(self, cursor: Cursor) -> list[QueryPlan]:
        """Query plans for this run; only the first one continues the paged window."""
        count = max(1, self.settings.queries_per_run)
        return [
            QueryPlan(
                number=i + 1,
                query=self.queries[(cursor.query_index + i) % len(self.queries)],
                sort=self.sorts[(cursor.sort_index + i) % len(self.sorts)],
                offset=cursor.page_offset if i == 0 else 0,
            )
            for i in range(count)
        ]

    async def fetch(self, cursor: Cursor | None = None) -> SourceResult:
        cursor = cursor or Cursor.initial()

        problem = self.credential_problem()
        if problem:
            self.logger.error("%s; skipping source", problem)
            return SourceResult(source_name=self.name, errors=[problem], next_cursor=cursor)

        self._requests = 0
        run = HarvestRun(max_items=self.settings.max_items)
        plans = self.plan(cursor)
        exhausted = False
        succeeded = 0

        for plan in plans:
            if not run.accepting:
                break
            self.logger.info(
                "Query %d: %r (sort: %s, offset %d)",
                plan.number,
                plan.query[:60] or "*",
                plan.sort or "default",
                plan.offset,
            )
            try:
                short = await self.run_query(plan, run)
            except SourceRequestError as e:
                run.errors.append(str(e))
                self.logger.warning("Query %d failed: %s", plan.number, e)
                continue
            except Exception as e:  # noqa: BLE001 - one bad query must not end the run
                run.errors.append(f"Query {plan.number} error: {e}")
                self.logger.warning("Query %d error: %s", plan.number, e)
                continue
            if plan.number == 1:
                exhausted = short
            succeeded += 1

        if plans and not succeeded:
            # Retry the same window next run.
            self.logger.warning("All %d queries failed; keeping cursor", len(plans))
            next_cursor = cursor
        else:
            next_cursor = cursor.advance(
                queries=len(plans),
                query_count=len(self.queries),
                sort_count=len(self.sorts),
                page_size=self.settings.page_size * max(1, self.settings.max_pages),
                exhausted=exhausted,
            )
        self.logger.info("Fetched %d tracks with %d errors", len(run.tracks), len(run.errors))
        return SourceResult(
            source_name=self.name,
            tracks=run.tracks,
            errors=run.errors,
            next_cursor=next_cursor,
        )

    @abstractmethod
    async def run_query(self, plan: QueryPlan, run: HarvestRun) -> bool:
        """
        Harvest one query plan into `run`.

        Returns True when the listing came back short (window exhausted).
        Raise SourceRequestError for listing-level failures; record item-level
        failures in `run.errors` and keep going.
        """

    async def pause(self) -> None:
        """Fixed delay between external calls (not before the first one)."""
        if self._requests and self.settings.request_delay > 0:
            await asyncio.sleep(self.settings.request_delay)
        self._requests += 1

    async def _get(self, url: str, params: Mapping[str, Any] | None, what: str) -> httpx.Response:
        await self.pause()
        try:
            response = await self.client.get(
                url, params=params, timeout=self.settings.timeout, follow_redirects=True
            )
        except httpx.HTTPError as e:
            raise SourceRequestError(f"{what} request failed: {e}") from e
        if not response.is_success:
            raise SourceRequestError(f"{what} HTTP {response.status_code}")
        return response

    async def get_text(self, url: str, params: Mapping[str, Any] | None, what: str) -> str:
        response = await self._get(url, params, what)
        return response.text

    async def get_json(self, url: str, params: Mapping[str, Any] | None, what: str) -> Any:
        response = await self._get(url, params, what)
        try:
            return response.json()
        except ValueError as e:
            raise SourceRequestError(f"{what} JSON parse error") from e
