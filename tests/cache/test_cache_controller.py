"""Tests for CacheController freshness, conditional refresh and single-flight."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta

import pytest

from refspine.cache import (
    CacheController,
    ConceptCacheStorage,
    ExpiryPolicy,
    FeatureCacheStorage,
    Fetched,
    FetchFailed,
    NotModified,
    stale_warning,
)
from refspine.core.errors import FetchError, SourceNotFoundError
from refspine.models import SyncStatus

from _support import ATM, PA, pressure_units, seed, square

KEY = ("watersheds", "ws-1")


class ScriptedFetcher:
    """Returns the queued outcomes in order and records the prior entries it saw."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.priors = []

    def __call__(self, prior):
        self.priors.append(prior)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def calls(self):
        return len(self.priors)


def payload(x0=0.0, name="Upper basin"):
    return {"geometry": square(x0, 0.0, x0 + 1.0, 1.0), "properties": {"name": name}}


@pytest.fixture
def controller(memory_store, clock):
    return CacheController(FeatureCacheStorage(memory_store), ExpiryPolicy(), clock)


class TestFreshness:
    def test_first_fetch_stores_entry(self, controller, clock):
        fetcher = ScriptedFetcher(Fetched(payload(), change_token='"v1"'))
        entry = controller.get_or_fetch(KEY, fetcher)

        assert fetcher.priors == [None]
        assert entry.payload == payload()
        assert entry.change_token == '"v1"'
        assert entry.last_modified == clock.now()
        assert entry.expiry == clock.now() + timedelta(days=30)
        assert entry.sync_status == SyncStatus.CURRENT

    def test_fresh_entry_is_served_without_fetching(self, controller, clock):
        fetcher = ScriptedFetcher(Fetched(payload()))
        controller.get_or_fetch(KEY, fetcher)
        clock.advance(days=29)

        controller.get_or_fetch(KEY, fetcher)

        assert fetcher.calls == 1
        assert controller.stats()["hits"] == 1

    def test_expired_entry_is_refetched_with_prior(self, controller, clock):
        fetcher = ScriptedFetcher(Fetched(payload(), change_token='"v1"'), NotModified('"v1"'))
        first = controller.get_or_fetch(KEY, fetcher)
        clock.advance(days=30)

        second = controller.get_or_fetch(KEY, fetcher)

        assert fetcher.calls == 2
        assert fetcher.priors[1].change_token == '"v1"'
        assert second.expiry == clock.now() + timedelta(days=30)
        assert second.last_fetched == clock.now()
        assert second.last_modified == first.last_modified

    def test_category_override(self, memory_store, clock):
        policy = ExpiryPolicy(overrides={"watersheds": timedelta(hours=6)})
        controller = CacheController(FeatureCacheStorage(memory_store), policy, clock)
        entry = controller.get_or_fetch(KEY, ScriptedFetcher(Fetched(payload())))
        assert entry.expiry == clock.now() + timedelta(hours=6)

    def test_is_fresh_and_peek(self, controller, clock):
        assert controller.peek(KEY) is None
        assert not controller.is_fresh(KEY)
        controller.get_or_fetch(KEY, ScriptedFetcher(Fetched(payload())))
        assert controller.is_fresh(KEY)
        clock.advance(days=31)
        assert not controller.is_fresh(KEY)


class TestConditionalRefresh:
    def test_identical_payload_keeps_last_modified(self, controller, clock):
        fetcher = ScriptedFetcher(Fetched(payload()), Fetched(payload()))
        first = controller.get_or_fetch(KEY, fetcher)
        clock.advance(days=31)

        second = controller.refresh(KEY, fetcher)

        assert second.last_modified == first.last_modified
        assert second.content_hash == first.content_hash
        assert second.last_fetched == clock.now()

    def test_changed_payload_advances_last_modified(self, controller, clock):
        fetcher = ScriptedFetcher(Fetched(payload()), Fetched(payload(x0=5.0)))
        first = controller.get_or_fetch(KEY, fetcher)
        clock.advance(hours=1)

        second = controller.refresh(KEY, fetcher)

        assert second.last_modified == clock.now()
        assert second.last_modified > first.last_modified
        assert second.content_hash != first.content_hash
        assert second.payload == payload(x0=5.0)

    def test_refresh_ignores_freshness(self, controller):
        fetcher = ScriptedFetcher(Fetched(payload()), Fetched(payload()))
        controller.get_or_fetch(KEY, fetcher)
        controller.refresh(KEY, fetcher)
        assert fetcher.calls == 2


class TestFailures:
    def test_failure_serves_prior_payload_marked_error(self, controller, clock):
        fetcher = ScriptedFetcher(Fetched(payload()), FetchError("connection reset"))
        first = controller.get_or_fetch(KEY, fetcher)
        clock.advance(days=31)

        entry = controller.get_or_fetch(KEY, fetcher)

        assert entry.payload == first.payload
        assert entry.sync_status == SyncStatus.ERROR
        assert entry.retry_after == clock.now() + timedelta(minutes=5)
        assert "connection reset" in entry.last_error
        warning = stale_warning(entry)
        assert warning is not None
        assert warning.key == "watersheds/ws-1"

    def test_no_refetch_during_error_backoff(self, controller, clock):
        fetcher = ScriptedFetcher(
            Fetched(payload()), FetchError("down"), NotModified()
        )
        controller.get_or_fetch(KEY, fetcher)
        clock.advance(days=31)
        controller.get_or_fetch(KEY, fetcher)

        clock.advance(minutes=4)
        controller.get_or_fetch(KEY, fetcher)
        assert fetcher.calls == 2

        clock.advance(minutes=2)
        recovered = controller.get_or_fetch(KEY, fetcher)
        assert fetcher.calls == 3
        assert recovered.sync_status == SyncStatus.CURRENT
        assert recovered.last_error is None
        assert stale_warning(recovered) is None

    def test_returned_fetch_failed_is_a_failure(self, controller, clock):
        fetcher = ScriptedFetcher(Fetched(payload()), FetchFailed(FetchError("timeout")))
        controller.get_or_fetch(KEY, fetcher)
        entry = controller.refresh(KEY, fetcher)
        assert entry.sync_status == SyncStatus.ERROR

    def test_failure_without_prior_raises(self, controller):
        with pytest.raises(FetchError):
            controller.get_or_fetch(KEY, ScriptedFetcher(FetchError("down")))
        assert controller.peek(KEY) is None

    def test_non_transient_error_without_prior_is_wrapped(self, controller):
        with pytest.raises(FetchError) as info:
            controller.get_or_fetch(KEY, ScriptedFetcher(SourceNotFoundError("gone")))
        assert isinstance(info.value.cause, SourceNotFoundError)

    def test_not_modified_without_prior_raises(self, controller):
        with pytest.raises(FetchError):
            controller.get_or_fetch(KEY, ScriptedFetcher(NotModified('"v1"')))


class TestSingleFlight:
    def test_concurrent_misses_share_one_fetch(self, controller):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_fetcher(prior):
            calls.append(prior)
            started.set()
            release.wait(timeout=5)
            return Fetched(payload())

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(controller.get_or_fetch, KEY, slow_fetcher) for _ in range(8)]
            assert started.wait(timeout=5)
            deadline = time.monotonic() + 5
            while controller.stats()["joined"] < 7 and time.monotonic() < deadline:
                time.sleep(0.01)
            release.set()
            results = [f.result(timeout=5) for f in futures]

        assert len(calls) == 1
        assert controller.stats()["joined"] == 7
        assert all(r.to_dict() == results[0].to_dict() for r in results)

    def test_waiters_see_the_leaders_error(self, controller):
        started = threading.Event()
        release = threading.Event()

        def failing_fetcher(prior):
            started.set()
            release.wait(timeout=5)
            raise FetchError("down")

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(controller.get_or_fetch, KEY, failing_fetcher) for _ in range(4)]
            assert started.wait(timeout=5)
            deadline = time.monotonic() + 5
            while controller.stats()["joined"] < 3 and time.monotonic() < deadline:
                time.sleep(0.01)
            release.set()
            errors = [f.exception(timeout=5) for f in futures]

        assert all(isinstance(e, FetchError) for e in errors)
        assert controller.stats()["fetches"] == 1


class TestInvalidate:
    def test_invalidate_marks_stale_and_returns_dependents(self, memory_store, controller, clock):
        controller.get_or_fetch(KEY, ScriptedFetcher(Fetched(payload())))
        storage = FeatureCacheStorage(memory_store)
        assert storage.add_dependent(KEY, "foi-2")
        assert storage.add_dependent(KEY, "foi-1")

        dependents = controller.invalidate(KEY)

        assert dependents == ["foi-1", "foi-2"]
        entry = controller.peek(KEY)
        assert entry.sync_status == SyncStatus.STALE
        assert not controller.is_fresh(KEY)

    def test_invalidate_unknown_key(self, controller):
        assert controller.invalidate(("watersheds", "nope")) == []

    def test_add_dependent_to_missing_entry(self, memory_store):
        assert FeatureCacheStorage(memory_store).add_dependent(KEY, "foi-1") is False


class TestConceptCacheStorage:
    @pytest.fixture
    def seeded(self, memory_store, clock):
        seed(memory_store, pressure_units(), clock.now())
        atm = memory_store.get_concept(ATM)
        atm.usage.record(clock.now(), observations=5)
        atm.broader_transitive = [PA]
        memory_store.upsert_concept(atm, atm.version)
        return memory_store

    def test_refresh_keeps_usage_and_closures(self, seeded, clock):
        controller = CacheController(ConceptCacheStorage(seeded), ExpiryPolicy(), clock)
        before = seeded.get_concept(ATM)
        changed = replace(before, labels=replace(before.labels, preferred={"en": "atmosphere"}))
        clock.advance(hours=1)

        controller.refresh(ATM, lambda prior: Fetched(changed.content_dict(), change_token='"e2"'))

        after = seeded.get_concept(ATM)
        assert after.label("en") == "atmosphere"
        assert after.usage.observation_count == 5
        assert after.broader_transitive == [PA]
        assert after.cache.change_token == '"e2"'
        assert after.last_modified == clock.now()

    def test_category_is_the_dimension(self, seeded, clock):
        policy = ExpiryPolicy(overrides={"pressure": timedelta(days=2)})
        controller = CacheController(ConceptCacheStorage(seeded), policy, clock)
        entry = controller.refresh(ATM, lambda prior: NotModified())
        assert entry.expiry == clock.now() + timedelta(days=2)

    def test_unchanged_content_keeps_last_modified(self, seeded, clock):
        controller = CacheController(ConceptCacheStorage(seeded), ExpiryPolicy(), clock)
        before = seeded.get_concept(ATM)
        clock.advance(hours=1)
        controller.refresh(ATM, lambda prior: Fetched(before.content_dict()))
        assert seeded.get_concept(ATM).last_modified == before.last_modified
