"""
Integration tests for the search client: configuration, shared gate, caches,
orchestrator and reporting hook working together.
"""

import asyncio

import pytest
from searchgate import SearchClient
from searchgate.config import Config
from searchgate.protocols import CircuitState, ErrorKind, PaginationStrategy
from searchgate.recovery import ClassifiedError

from tests.helpers import FakeClock, HTTPError, RecordingSleep, ScriptedProvider, page


class RecordingHook:
    def __init__(self):
        self.events = []

    def __call__(self, event, data):
        self.events.append((event, data))

    @property
    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture
def config():
    return Config.from_mapping(
        {
            "failureThreshold": 2,
            "maxRetries": 1,
            "retryDelayMs": 10,
            "delayBetweenRequestsMs": 0,
            "jitterBetweenRequests": False,
            "maxResults": 20,
            "pageSize": 10,
            "maxPages": 3,
            "resultTtlSeconds": 60,
            "operationLimits": {},
        }
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hook():
    return RecordingHook()


def make_client(config, clock, script, hook=None):
    provider = ScriptedProvider(script)
    client = SearchClient(provider, config, report_hook=hook, clock=clock, sleep=RecordingSleep(clock))
    return client, provider


@pytest.mark.integration
class TestSearchClient:
    """End-to-end behavior of the client facade."""

    @pytest.mark.asyncio
    async def test_search_reports_and_caches(self, config, clock, hook):
        """Test a search is reported and a repeat is served from cache."""
        client, provider = make_client(config, clock, [page(10, token="t1"), page(10, token="t2")], hook)

        first = await client.search("python", {"region": "us-en"})
        second = await client.search("python", {"region": "us-en"})

        assert first.total_fetched == 20
        assert first.has_more is True
        assert second is first
        assert len(provider.calls) == 2
        assert hook.names == ["search_started", "search_completed", "search_started", "search_completed"]
        assert hook.events[1][1]["from_cache"] is False
        assert hook.events[3][1]["from_cache"] is True
        assert hook.events[1][1]["result_count"] == 20
        assert hook.events[1][1]["pagination"] == {
            "total_fetched": 20,
            "pages_processed": 2,
            "vqd_token": "t2",
            "has_more": True,
            "strategy": "primary",
        }

    @pytest.mark.asyncio
    async def test_cache_expires(self, config, clock):
        """Test cached results expire after the configured TTL."""
        client, provider = make_client(config, clock, [page(3), page(4)])

        await client.search("q")
        clock.advance(61)
        result = await client.search("q")

        assert result.total_fetched == 4
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_can_be_bypassed(self, config, clock):
        """Test use_cache=False always reaches the provider."""
        client, provider = make_client(config, clock, [page(3), page(3)])

        await client.search("q", use_cache=False)
        await client.search("q", use_cache=False)

        assert len(provider.calls) == 2
        assert client.result_cache.size() == 0

    @pytest.mark.asyncio
    async def test_pagination_overrides_merge_with_defaults(self, config, clock):
        """Test per-call overrides keep the configured defaults for the rest."""
        client, provider = make_client(config, clock, [page(10, token="t1"), page(10, token="t2")])

        result = await client.search("q", pagination={"maxPages": 1})

        assert result.pages_processed == 1
        assert result.has_more is True
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_misspelled_pagination_override_is_rejected(self, config, clock, hook):
        """Test an unknown override surfaces as INVALID_INPUT instead of being ignored."""
        client, provider = make_client(config, clock, [page(3)], hook)

        with pytest.raises(ClassifiedError) as exc_info:
            await client.search("q", pagination={"maxResult": 5})

        assert exc_info.value.kind is ErrorKind.INVALID_INPUT
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_failure_is_reported(self, config, clock, hook):
        """Test a failed search reports search_failed and raises."""
        client, _ = make_client(config, clock, [HTTPError(400, "bad")], hook)

        with pytest.raises(ClassifiedError) as exc_info:
            await client.search("q")

        assert exc_info.value.kind is ErrorKind.API_ERROR
        assert hook.names == ["search_started", "search_failed"]
        assert hook.events[1][1]["error_kind"] == "API_ERROR"

    @pytest.mark.asyncio
    async def test_hook_failures_do_not_break_search(self, config, clock):
        """Test exceptions inside the reporting hook are contained."""

        async def broken_hook(event, data):
            raise RuntimeError("telemetry down")

        client, _ = make_client(config, clock, [page(2)], broken_hook)

        result = await client.search("q")

        assert result.total_fetched == 2

    @pytest.mark.asyncio
    async def test_token_survives_across_searches(self, config, clock):
        """Test a token from one run continues the next run for the same query."""
        client, provider = make_client(config, clock, [page(10, token="t1"), page(3, token="t2")])

        await client.search("q", pagination={"maxPages": 1})
        await client.search("q", pagination={"maxPages": 2}, use_cache=False)

        assert provider.tokens_sent == [None, "t1"]
        assert client.token_cache.size() == 1

    @pytest.mark.asyncio
    async def test_concurrent_searches_share_the_gate(self, config, clock):
        """Test failures from parallel searches accumulate on one circuit."""

        async def always_down(query, options, continuation_token=None):
            await asyncio.sleep(0)
            raise HTTPError(503)

        client = SearchClient(always_down, config, clock=clock, sleep=RecordingSleep(clock))

        results = await asyncio.gather(
            *(client.search(f"q{i}") for i in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, ClassifiedError) for r in results)
        assert client.gate.circuit_state is CircuitState.OPEN
        assert any(r.kind is ErrorKind.CIRCUIT_OPEN for r in results)

        with pytest.raises(ClassifiedError) as exc_info:
            await client.search("later")
        assert exc_info.value.kind is ErrorKind.CIRCUIT_OPEN

    @pytest.mark.asyncio
    async def test_hybrid_run_through_client(self, config, clock):
        """Test token fallback through the full stack."""
        client, _ = make_client(
            config,
            clock,
            [page(10, token="t1"), ValueError("invalid vqd"), page(10, start=10)],
        )

        result = await client.search("q")

        assert result.strategy is PaginationStrategy.HYBRID
        assert result.total_fetched == 20


@pytest.mark.integration
class TestLookup:
    """Non-paginated cached lookups."""

    @pytest.mark.asyncio
    async def test_lookup_is_cached(self, config, clock, hook):
        """Test a lookup result is cached and reported."""
        client, _ = make_client(config, clock, [], hook)
        calls = []

        async def fetch():
            calls.append(1)
            return [{"word": "gate", "definition": "a barrier"}]

        first = await client.lookup("dictionary", "gate", fetch)
        second = await client.lookup("dictionary", "gate", fetch)

        assert first == second
        assert len(calls) == 1
        assert hook.names == ["search_completed"]
        assert client.gate.get_metrics().total_requests == 1

    @pytest.mark.asyncio
    async def test_lookup_retries_and_records(self, config, clock):
        """Test transient lookup failures are retried through the gate."""
        client, _ = make_client(config, clock, [])
        outcomes = [TimeoutError("slow"), {"price": 1.0}]

        def fetch():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = await client.lookup("stocks", "ACME", fetch)

        assert result == {"price": 1.0}
        metrics = client.gate.get_metrics()
        assert metrics.retries_executed == 1
        assert metrics.failure_count == 0

    @pytest.mark.asyncio
    async def test_empty_lookup_is_not_cached(self, config, clock):
        """Test empty results are recorded as empty and not cached."""
        client, _ = make_client(config, clock, [])

        assert await client.lookup("dictionary", "zzz", lambda: []) == []

        assert client.result_cache.size() == 0
        assert client.gate.get_metrics().consecutive_empty_results == 1

    @pytest.mark.asyncio
    async def test_lookup_quota_is_enforced(self, clock, hook):
        """Test a lookup beyond the operation's quota is refused as TOO_MANY_REQUESTS."""
        config = Config.from_mapping(
            {"maxRetries": 0, "operationLimits": {"dictionary": {"maxRequests": 1, "delayMs": 0, "retryAfterMs": 5000}}}
        )
        client, _ = make_client(config, clock, [], hook)

        assert await client.lookup("dictionary", "a", lambda: ["a"]) == ["a"]
        with pytest.raises(ClassifiedError) as exc_info:
            await client.lookup("dictionary", "b", lambda: ["b"])

        assert exc_info.value.kind is ErrorKind.TOO_MANY_REQUESTS
        assert exc_info.value.retry_after_ms == 5000
        assert hook.names == ["search_completed", "search_failed"]
        assert client.diagnostics()["rate_limits"]["dictionary"]["limited"] is True
        assert client.gate.get_metrics().failure_count == 0

    @pytest.mark.asyncio
    async def test_lookup_waits_out_quota_lockout_on_retry(self, clock):
        """Test the local retry waits out a lockout instead of failing the lookup."""
        config = Config.from_mapping(
            {
                "maxRetries": 1,
                "retryDelayMs": 10,
                "operationLimits": {"stocks": {"maxRequests": 1, "delayMs": 0, "retryAfterMs": 5000}},
            }
        )
        sleep = RecordingSleep(clock)
        client = SearchClient(ScriptedProvider([]), config, clock=clock, sleep=sleep)

        await client.lookup("stocks", "ACME", lambda: {"price": 1.0})
        result = await client.lookup("stocks", "INIT", lambda: {"price": 2.0})

        assert result == {"price": 2.0}
        assert sleep.total == pytest.approx(5.0)
        assert client.gate.get_metrics().retries_executed == 1

    @pytest.mark.asyncio
    async def test_diagnostics(self, config, clock):
        """Test the diagnostics snapshot."""
        client, _ = make_client(config, clock, [page(3, token="t")])
        await client.search("q")

        diagnostics = client.diagnostics()

        assert diagnostics["result_cache_size"] == 1
        assert diagnostics["token_cache_size"] == 1
        assert diagnostics["limiter"]["circuit_state"] == "closed"
        assert diagnostics["limiter"]["total_requests"] == 1

        client.clear_caches()
        assert client.diagnostics()["result_cache_size"] == 0
