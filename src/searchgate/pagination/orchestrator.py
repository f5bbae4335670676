"""
Pagination Orchestrator

Stitches sequential provider calls into one bounded result sequence. Pages
are continued with the backend's continuation token while it stays valid;
when the backend rejects the token the run falls back to tokenless,
offset-restricted requests for the remaining pages.

Every provider call goes through the shared ``ReliabilityGate`` and its
retry wrapper. Partial progress is preserved: a run that fails after
fetching some pages returns them with ``has_more=False``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from searchgate.cache.token_cache import TokenCache, fingerprint
from searchgate.config.config import PaginationOptions
from searchgate.observability import histogram, increment
from searchgate.pagination.provider import ProviderAdapter
from searchgate.protocols import OFFSET_OPTION, ErrorKind, PaginationResult, PaginationStrategy, SearchPage
from searchgate.recovery.classifier import classify_error
from searchgate.recovery.errors import ClassifiedError
from searchgate.reliability.rate_limiter import ReliabilityGate

logger = structlog.get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]
PaginationInput = Union[PaginationOptions, Mapping[str, Any], None]


class _PaginationRun:
    """Mutable bookkeeping for a single ``paginate`` call."""

    def __init__(self, query: str, provider_options: Mapping[str, Any], options: PaginationOptions, key: str):
        self.query = query
        self.provider_options = dict(provider_options)
        self.options = options
        self.key = key
        self.results: List[Any] = []
        self.pages_processed = 0
        self.token: Optional[str] = None
        self.last_token: Optional[str] = None
        self.tokenless = False
        # Pages fetched inside a token session: sent a token or received one.
        self.token_pages = 0
        self.strategy = PaginationStrategy.PRIMARY
        self.has_more = False

    def abandon_token(self, reason: str) -> None:
        if not self.tokenless:
            self.strategy = PaginationStrategy.HYBRID if self.token_pages else PaginationStrategy.FALLBACK
            logger.info(
                "Continuing without continuation token",
                reason=reason,
                page=self.pages_processed + 1,
                strategy=self.strategy.value,
            )
        self.tokenless = True
        self.token = None

    def request_options(self) -> Dict[str, Any]:
        """Provider options for the next page. Tokenless pages carry an offset."""
        if not self.tokenless:
            return dict(self.provider_options)
        return {**self.provider_options, OFFSET_OPTION: self.pages_processed * self.options.page_size}


class PaginationOrchestrator:
    """
    Drives multi-page searches against an opaque provider.

    Args:
        provider: Search provider, or a ``ProviderAdapter`` around one
        gate: Shared reliability gate; one instance per process and backend
        token_cache: Continuation-token cache shared across runs
        sleep: Awaitable sleep used for the pause between pages
        clock: Monotonic clock used to time provider calls
    """

    def __init__(
        self,
        provider: Any,
        gate: ReliabilityGate,
        token_cache: Optional[TokenCache] = None,
        *,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.adapter = provider if isinstance(provider, ProviderAdapter) else ProviderAdapter(provider)
        self.gate = gate
        self.token_cache = token_cache if token_cache is not None else TokenCache()
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def validate_options(pagination: PaginationInput, debug: bool = False) -> PaginationOptions:
        """Validate per-call pagination options. Violations raise INVALID_INPUT."""
        if isinstance(pagination, PaginationOptions):
            return pagination
        try:
            return PaginationOptions.model_validate(dict(pagination or {}))
        except ValidationError as e:
            raise classify_error(e, debug=debug, operation="paginate") from e

    async def paginate(
        self,
        query: str,
        provider_options: Optional[Mapping[str, Any]] = None,
        pagination: PaginationInput = None,
        *,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> PaginationResult:
        """
        Fetch up to ``max_results`` records across at most ``max_pages`` pages.

        Args:
            query: Already-built query text
            provider_options: Options forwarded to the provider (locale, region, ...)
            pagination: ``PaginationOptions`` or a mapping of them
            should_continue: Checked before every provider call, retries included.
                Once it returns False no further call is made.

        Returns:
            PaginationResult with the trimmed results.

        Raises:
            ClassifiedError: when the run fails before accumulating any result.
        """
        options = self.validate_options(pagination)
        provider_options = provider_options or {}
        key = fingerprint(query, provider_options)
        run = _PaginationRun(query, provider_options, options, key)
        run.token = self.token_cache.get(key)

        logger.info(
            "Pagination started",
            max_results=options.max_results,
            page_size=options.page_size,
            max_pages=options.max_pages,
            cached_token=run.token is not None,
        )

        while True:
            if run.pages_processed > 0:
                await self._pause(options)

            if run.pages_processed > 0 and run.token is None and not run.tokenless:
                run.abandon_token("no continuation token issued")

            try:
                page = await self._fetch_page(run, should_continue)
            except ClassifiedError as error:
                if error.kind is ErrorKind.TOKEN_ERROR and run.token is not None:
                    self.token_cache.delete(key)
                    run.last_token = None
                    run.abandon_token("continuation token rejected")
                    continue
                increment("errors_total", labels={"kind": error.kind.value})
                if not run.results:
                    logger.warning("Pagination failed", kind=error.kind.value, pages=run.pages_processed)
                    raise
                logger.warning(
                    "Pagination stopped early, returning partial results",
                    kind=error.kind.value,
                    pages=run.pages_processed,
                    accumulated=len(run.results),
                )
                run.has_more = False
                break

            if page is None:
                logger.info("Pagination cancelled by caller", pages=run.pages_processed)
                run.has_more = False
                break

            self._accept_page(run, page)

            if len(page.results) < options.page_size:
                run.has_more = False
                break
            if len(run.results) >= options.max_results or run.pages_processed >= options.max_pages:
                run.has_more = True
                break

        return self._finish(run)

    # ------------------------------------------------------------------
    # Page handling
    # ------------------------------------------------------------------

    async def _pause(self, options: PaginationOptions) -> None:
        delay_ms = float(options.delay_between_requests_ms)
        if options.jitter_between_requests:
            delay_ms += self.gate.jitter_ms()
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000.0)

    async def _fetch_page(
        self, run: _PaginationRun, should_continue: Optional[Callable[[], bool]]
    ) -> Optional[SearchPage]:
        """
        Fetch the next page through the gate's retry wrapper.

        Returns None when the caller asked to stop before a provider call.
        """
        debug = run.options.debug_mode
        token = run.token
        request_options = run.request_options()

        async def attempt() -> Optional[SearchPage]:
            if should_continue is not None and not should_continue():
                return None
            if not await self.gate.check_and_wait("search"):
                raise self.gate.blocked_error("search")
            return await self._call_provider(run.query, request_options, token, debug)

        def retry_unless_token_rejected(error: ClassifiedError) -> bool:
            # Token rejections are resolved by falling back, not by resending the token.
            return not (token is not None and error.kind is ErrorKind.TOKEN_ERROR)

        return await self.gate.with_retry(
            attempt,
            should_retry=retry_unless_token_rejected,
            operation_name="search",
            debug=debug,
        )

    async def _call_provider(
        self, query: str, options: Mapping[str, Any], token: Optional[str], debug: bool
    ) -> SearchPage:
        started = self._clock()
        try:
            page = await self.adapter.fetch(query, options, token)
        except Exception as exc:
            elapsed_ms = (self._clock() - started) * 1000
            error = classify_error(exc, debug=debug, operation="search")
            if error.kind is ErrorKind.TOKEN_ERROR and token is not None:
                # The backend answered; only the session was stale.
                self.gate.record_token_rejection(elapsed_ms)
                increment("provider_requests_total", labels={"outcome": "token_rejected"})
            else:
                self.gate.record_failure(elapsed_ms)
                increment("provider_requests_total", labels={"outcome": "failure"})
            if error is exc:
                raise
            raise error from exc

        elapsed_ms = (self._clock() - started) * 1000
        histogram("provider_latency_seconds", elapsed_ms / 1000)
        if page.is_empty:
            self.gate.record_empty_result(elapsed_ms)
            increment("provider_requests_total", labels={"outcome": "empty"})
        else:
            self.gate.record_success(elapsed_ms)
            increment("provider_requests_total", labels={"outcome": "success"})
        return page

    def _accept_page(self, run: _PaginationRun, page: SearchPage) -> None:
        sent_token = run.token is not None
        run.pages_processed += 1
        run.results.extend(page.results)
        increment("pages_fetched_total")

        if page.continuation_token:
            self.token_cache.set(run.key, page.continuation_token)
            run.last_token = page.continuation_token
            if not run.tokenless:
                run.token = page.continuation_token
        elif sent_token:
            run.last_token = run.token

        if sent_token or page.continuation_token:
            run.token_pages += 1

        logger.debug(
            "Page accepted",
            page=run.pages_processed,
            page_results=len(page.results),
            accumulated=len(run.results),
            tokenless=run.tokenless,
        )

    def _finish(self, run: _PaginationRun) -> PaginationResult:
        results = tuple(run.results[: run.options.max_results])
        result = PaginationResult(
            results=results,
            total_fetched=len(results),
            pages_processed=run.pages_processed,
            vqd_token=run.last_token,
            has_more=run.has_more,
            strategy=run.strategy,
        )
        increment("pagination_runs_total", labels={"strategy": run.strategy.value})
        logger.info(
            "Pagination finished",
            total_fetched=result.total_fetched,
            pages_processed=result.pages_processed,
            has_more=result.has_more,
            strategy=result.strategy.value,
        )
        return result
