"""
Consolidated analysis cache keyed by Result id.

Several downstream analyzers (entity extraction, citation categorization,
per-entity sentiment) need overlapping data derived from the same raw
Result. The cache makes one consolidated computation per Result and serves
every later caller from it:

    memory hit           -> return
    computation running  -> await the same task (single-flight)
    stored row           -> load, remember, return
    otherwise            -> compute once, store (first writer wins), return

Entries never expire during a run; clear()/clear_all() drop them explicitly.
A failed computation is not cached, so the next caller retries it.

Example:
    >>> cache = AnalysisCache(db_path, HTTPConsolidatedAnalyzer(url, key).analyze)
    >>> analysis = await cache.get_or_compute(result_id)
    >>> analysis.sentiment_by_entity["Acme"]
"""

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from llm_answer_collector.exceptions import AnalysisBackendError, ResultNotFoundError
from llm_answer_collector.storage.db import (
    delete_cached_analyses,
    get_result,
    lookup_cached_analysis,
    store_cached_analysis,
)

logger = logging.getLogger(__name__)

# Receives the stored Result dict, returns the consolidated payload
AnalysisCompute = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


@dataclass
class ConsolidatedAnalysis:
    """
    Combined analysis of one Result.

    Attributes:
        result_id: Result the analysis was derived from
        entities: Entities (brands, products) mentioned in the answer
        citation_categories: Citation URL -> category data
        sentiment_by_entity: Entity name -> sentiment data
    """

    result_id: str
    entities: list[Any] = field(default_factory=list)
    citation_categories: dict[str, Any] = field(default_factory=dict)
    sentiment_by_entity: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, result_id: str, payload: dict[str, Any]) -> "ConsolidatedAnalysis":
        if not isinstance(payload, dict):
            raise AnalysisBackendError(
                f"Analysis of {result_id} returned {type(payload).__name__}, expected an object"
            )

        entities = payload.get("entities") or []
        citation_categories = payload.get("citation_categories") or {}
        sentiment_by_entity = payload.get("sentiment_by_entity") or {}

        if not isinstance(entities, list):
            raise AnalysisBackendError(f"Analysis of {result_id}: 'entities' must be a list")
        if not isinstance(citation_categories, dict) or not isinstance(sentiment_by_entity, dict):
            raise AnalysisBackendError(
                f"Analysis of {result_id}: 'citation_categories' and "
                f"'sentiment_by_entity' must be objects"
            )

        return cls(
            result_id=result_id,
            entities=entities,
            citation_categories=citation_categories,
            sentiment_by_entity=sentiment_by_entity,
        )


class AnalysisCache:
    """
    Get-or-compute cache with in-process single-flight and durable storage.

    Args:
        db_path: Store holding Results and cached analyses
        compute: Consolidated analysis call; invoked at most once per Result id
            while the entry is cached
    """

    def __init__(self, db_path: str, compute: AnalysisCompute):
        self.db_path = db_path
        self.compute = compute
        self._memory: dict[str, ConsolidatedAnalysis] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self.compute_count = 0

    async def get_or_compute(self, result_id: str) -> ConsolidatedAnalysis:
        """
        Return the consolidated analysis of a Result, computing it at most once.

        Raises:
            ResultNotFoundError: If the Result does not exist
            AnalysisBackendError: If the computation failed (not cached)
        """
        cached = self._memory.get(result_id)
        if cached is not None:
            logger.debug(f"Using cached consolidated analysis for result {result_id}")
            return cached

        task = self._in_flight.get(result_id)
        if task is None:
            task = asyncio.create_task(
                self._load_or_compute(result_id), name=f"analysis-{result_id}"
            )
            self._in_flight[result_id] = task
        else:
            logger.debug(f"Joining in-flight analysis for result {result_id}")

        # One caller's cancellation must not cancel the shared computation
        return await asyncio.shield(task)

    async def _load_or_compute(self, result_id: str) -> ConsolidatedAnalysis:
        try:
            with sqlite3.connect(self.db_path) as conn:
                stored = lookup_cached_analysis(conn, result_id)
                result = None if stored else get_result(conn, result_id)

            if stored is not None:
                analysis = ConsolidatedAnalysis.from_payload(result_id, stored)
                self._memory[result_id] = analysis
                return analysis

            if result is None:
                raise ResultNotFoundError(f"Result not found: {result_id}")

            logger.info(f"Computing consolidated analysis for result {result_id}")
            self.compute_count += 1
            try:
                payload = await self.compute(result)
            except AnalysisBackendError:
                raise
            except Exception as e:
                raise AnalysisBackendError(
                    f"Consolidated analysis of {result_id} failed: {e}"
                ) from e

            analysis = ConsolidatedAnalysis.from_payload(result_id, payload)

            with sqlite3.connect(self.db_path) as conn:
                stored_now = store_cached_analysis(
                    conn,
                    result_id,
                    entities=analysis.entities,
                    citation_categories=analysis.citation_categories,
                    sentiment_by_entity=analysis.sentiment_by_entity,
                )
                if not stored_now:
                    # Another process stored first; serve its row
                    analysis = ConsolidatedAnalysis.from_payload(
                        result_id, lookup_cached_analysis(conn, result_id)
                    )

            self._memory[result_id] = analysis
            return analysis
        finally:
            self._in_flight.pop(result_id, None)

    def clear(self, result_id: str) -> None:
        """Drop one cached analysis from memory and storage."""
        self._memory.pop(result_id, None)
        with sqlite3.connect(self.db_path) as conn:
            delete_cached_analyses(conn, result_id)
        logger.info(f"Cleared cached analysis for result {result_id}")

    def clear_all(self) -> int:
        """
        Drop every cached analysis.

        Returns:
            Number of stored rows deleted
        """
        self._memory.clear()
        with sqlite3.connect(self.db_path) as conn:
            deleted = delete_cached_analyses(conn)
        logger.info(f"Cleared {deleted} cached analyses")
        return deleted
