"""
Search client facade.

Wires one shared ``ReliabilityGate``, the result cache, the continuation-token
cache and the pagination orchestrator from a ``Config``. Hosts create one
client per backend and share it across concurrent searches.
"""

from __future__ import annotations

import inspect
import json
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog
from pydantic.alias_generators import to_camel
from structlog.contextvars import bound_contextvars

from searchgate.cache.token_cache import TokenCache
from searchgate.cache.ttl_cache import TTLCache
from searchgate.config.config import Config, PaginationOptions
from searchgate.observability import increment
from searchgate.pagination.orchestrator import PaginationInput, PaginationOrchestrator
from searchgate.protocols import PaginationResult, ReportHook
from searchgate.recovery.errors import ClassifiedError
from searchgate.reliability.rate_limiter import ReliabilityGate

logger = structlog.get_logger(__name__)


def _cache_key(operation: str, query: str, options: Mapping[str, Any], extra: Optional[Mapping[str, Any]] = None) -> str:
    return json.dumps(
        {"operation": operation, "query": query, "options": dict(options), "extra": dict(extra or {})},
        sort_keys=True,
        default=str,
    )


class SearchClient:
    """
    High-level entry point for paginated searches and cached lookups.

    Example:
        client = SearchClient(provider=my_provider)
        result = await client.search("python asyncio", {"region": "us-en"}, {"maxResults": 25})
    """

    def __init__(
        self,
        provider: Any,
        config: Optional[Config] = None,
        *,
        report_hook: Optional[ReportHook] = None,
        gate: Optional[ReliabilityGate] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.config = config or Config()
        self.report_hook = report_hook
        self._clock = clock

        sleep_kwargs: Dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        self.gate = gate or ReliabilityGate(self.config.reliability, clock=clock, **sleep_kwargs)
        self.result_cache: TTLCache[Any] = TTLCache(clock=clock, name="results")
        self.token_cache = TokenCache(
            max_entries=self.config.cache.token_cache_max_entries,
            max_age_seconds=self.config.cache.token_max_age_seconds,
            clock=clock,
        )
        self.orchestrator = PaginationOrchestrator(
            provider, self.gate, self.token_cache, clock=clock, **sleep_kwargs
        )

    # ------------------------------------------------------------------
    # Paginated search
    # ------------------------------------------------------------------

    def _pagination_for(self, pagination: PaginationInput) -> PaginationOptions:
        if pagination is None:
            return self.config.pagination
        if isinstance(pagination, PaginationOptions):
            return pagination
        base = self.config.pagination.model_dump()
        for key, value in pagination.items():
            name = next((n for n in PaginationOptions.model_fields if key in (n, to_camel(n))), key)
            base[name] = value
        return PaginationOrchestrator.validate_options(base, debug=self.config.pagination.debug_mode)

    async def search(
        self,
        query: str,
        options: Optional[Mapping[str, Any]] = None,
        pagination: PaginationInput = None,
        *,
        use_cache: bool = True,
        cache_ttl: Optional[float] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> PaginationResult:
        """
        Run a paginated search, serving repeated identical searches from the
        result cache.

        Raises:
            ClassifiedError: when the search fails without any result.
        """
        options = dict(options or {})
        pagination_options = self._pagination_for(pagination)
        key = _cache_key("search", query, options, pagination_options.model_dump())
        ttl = self.config.cache.result_ttl_seconds if cache_ttl is None else cache_ttl

        with bound_contextvars(search_id=uuid.uuid4().hex[:12]):
            started = self._clock()
            await self._report("search_started", {"operation": "search", "query": query, "options": options})

            if use_cache:
                cached = self.result_cache.get(key)
                if cached is not None:
                    logger.debug("Result cache hit", operation="search")
                    await self._report_completed(
                        "search",
                        query,
                        started,
                        cached.total_fetched,
                        from_cache=True,
                        details=cached.to_dict(include_results=False),
                    )
                    return cached

            try:
                result = await self.orchestrator.paginate(
                    query, options, pagination_options, should_continue=should_continue
                )
            except ClassifiedError as error:
                await self._report_failed("search", query, started, error)
                raise

            if use_cache and ttl > 0:
                self.result_cache.set(key, result, ttl)
            await self._report_completed(
                "search",
                query,
                started,
                result.total_fetched,
                from_cache=False,
                details=result.to_dict(include_results=False),
            )
            return result

    # ------------------------------------------------------------------
    # Non-paginated lookups
    # ------------------------------------------------------------------

    async def lookup(
        self,
        operation: str,
        query: str,
        fetch: Callable[[], Any],
        *,
        options: Optional[Mapping[str, Any]] = None,
        cache_ttl: Optional[float] = None,
        debug: bool = False,
    ) -> Any:
        """
        Run a single gated, retried and cached backend call.

        ``fetch`` is a zero-argument callable, sync or async. Results that
        are ``None`` or empty are not cached.
        """
        key = _cache_key(operation, query, options or {})
        cached = self.result_cache.get(key)
        if cached is not None:
            logger.debug("Result cache hit", operation=operation)
            return cached

        async def attempt() -> Any:
            if not await self.gate.check_and_wait(operation):
                raise self.gate.blocked_error(operation)
            started = self._clock()
            try:
                value = fetch()
                if inspect.isawaitable(value):
                    value = await value
            except Exception:
                self.gate.record_failure((self._clock() - started) * 1000)
                raise
            elapsed_ms = (self._clock() - started) * 1000
            if value:
                self.gate.record_success(elapsed_ms)
            else:
                self.gate.record_empty_result(elapsed_ms)
            return value

        started = self._clock()
        try:
            value = await self.gate.with_retry(attempt, operation_name=operation, debug=debug)
        except ClassifiedError as error:
            increment("errors_total", labels={"kind": error.kind.value})
            await self._report_failed(operation, query, started, error)
            raise

        result_count = len(value) if isinstance(value, (list, tuple)) else int(bool(value))
        await self._report_completed(operation, query, started, result_count, from_cache=False)
        if value:
            ttl = self.config.cache.result_ttl_seconds if cache_ttl is None else cache_ttl
            self.result_cache.set(key, value, ttl)
        return value

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "result_cache_size": self.result_cache.size(),
            "token_cache_size": self.token_cache.size(),
            "limiter": self.gate.get_metrics().to_dict(),
            "rate_limits": {
                operation: self.gate.rate_limit_status(operation) for operation in self.gate.config.operation_limits
            },
        }

    def clear_caches(self) -> None:
        self.result_cache.clear()
        self.token_cache.clear()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def _report_completed(
        self,
        operation: str,
        query: str,
        started: float,
        result_count: int,
        *,
        from_cache: bool,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        data: Dict[str, Any] = {
            "operation": operation,
            "query": query,
            "duration_ms": round((self._clock() - started) * 1000, 2),
            "result_count": result_count,
            "from_cache": from_cache,
        }
        if details is not None:
            data["pagination"] = details
        await self._report("search_completed", data)

    async def _report_failed(self, operation: str, query: str, started: float, error: ClassifiedError) -> None:
        await self._report(
            "search_failed",
            {
                "operation": operation,
                "query": query,
                "duration_ms": round((self._clock() - started) * 1000, 2),
                "error_kind": error.kind.value,
                "retryable": error.retryable,
            },
        )

    async def _report(self, event: str, data: Dict[str, Any]) -> None:
        if self.report_hook is None:
            return
        try:
            outcome = self.report_hook(event, data)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning("Report hook failed", report_event=event, error=str(e))
