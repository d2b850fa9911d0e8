import threading
import time
import traceback
from unittest.mock import MagicMock, patch

import pytest

from docstore_testkit.config import ConnectionSettings
from docstore_testkit.errors import (
    ConfigurationLocked,
    ConnectError,
    HarnessDisposed,
    ReentrantConstruction,
    ServerReportedErrors,
)
from docstore_testkit.events import RecordingEventSink
from docstore_testkit.harness import DocumentStoreHarness, HarnessState
from docstore_testkit.indexes import IndexRegistry
from docstore_testkit.initializer import initialize_store
from docstore_testkit.models import ServerError, StoreStatistics
from tests.entities import Users_Search, create_fake_users

CONFIG_VALUES = {
    "seed_data": create_fake_users(),
    "index_descriptors": [Users_Search],
    "index_registry": IndexRegistry([Users_Search]),
    "connection_settings": ConnectionSettings(url="mongodb://localhost"),
    "wait_for_non_stale_results": False,
    "errors_as_warnings": True,
    "stale_index_timeout": 1.0,
}

# Values the frozen configuration holds when they differ from what was set.
SNAPSHOT_VALUES = {
    "seed_data": tuple(tuple(c) for c in CONFIG_VALUES["seed_data"]),
    "index_descriptors": (Users_Search,),
}


def _make_store(errors=()):
    store = MagicMock()
    store.get_statistics.return_value = StoreStatistics(
        database="UnitTests", document_count=0, index_count=0, errors=errors
    )
    return store


def _make_harness(store=None, **config):
    store = store or _make_store()
    factory = MagicMock(return_value=store)
    harness = DocumentStoreHarness(factory, RecordingEventSink(), **config)
    return harness, factory, store


class TestConfiguration:
    @pytest.mark.parametrize("field", sorted(CONFIG_VALUES))
    def test_set_before_construction(self, field):
        harness, _, _ = _make_harness()
        setattr(harness, field, CONFIG_VALUES[field])
        assert harness.state is HarnessState.UNCONSTRUCTED

    @pytest.mark.parametrize("field", sorted(CONFIG_VALUES))
    def test_set_after_construction_is_locked(self, field):
        harness, _, _ = _make_harness()
        harness.get_store()

        with pytest.raises(ConfigurationLocked) as exc_info:
            setattr(harness, field, CONFIG_VALUES[field])

        assert exc_info.value.field == field
        assert field in str(exc_info.value)

    def test_locked_after_failed_construction(self):
        harness, factory, _ = _make_harness()
        factory.side_effect = ConnectError("down")
        with pytest.raises(ConnectError):
            harness.get_store()

        with pytest.raises(ConfigurationLocked):
            harness.seed_data = []

    def test_construction_observes_configured_values(self):
        settings = ConnectionSettings(url="mongodb://localhost", database="Other")
        harness, factory, _ = _make_harness()
        harness.connection_settings = settings
        harness.index_descriptors = [Users_Search]
        harness.errors_as_warnings = True

        with patch("docstore_testkit.harness.initialize_store") as mock_init:
            harness.get_store()

        factory.assert_called_once_with(settings)
        config = mock_init.call_args.args[1]
        assert config.connection_settings == settings
        assert config.index_descriptors == (Users_Search,)
        assert config.errors_as_warnings is True
        assert config.database == "Other"

    @pytest.mark.parametrize("field", sorted(CONFIG_VALUES))
    def test_every_configured_value_reaches_construction(self, field):
        harness, _, _ = _make_harness()
        setattr(harness, field, CONFIG_VALUES[field])

        with patch("docstore_testkit.harness.initialize_store") as mock_init:
            harness.get_store()

        config = mock_init.call_args.args[1]
        expected = SNAPSHOT_VALUES.get(field, CONFIG_VALUES[field])
        assert getattr(config, field) == expected

    def test_seed_data_mutated_before_use_is_observed(self):
        seed = [[]]
        harness, _, _ = _make_harness()
        harness.seed_data = seed
        seed[0].append("late entity")

        with patch("docstore_testkit.harness.initialize_store") as mock_init:
            harness.get_store()

        assert mock_init.call_args.args[1].seed_data == (("late entity",),)


class TestConstruction:
    def test_unused_harness_constructs_nothing(self):
        harness, factory, _ = _make_harness()
        assert harness.state is HarnessState.UNCONSTRUCTED
        factory.assert_not_called()

    def test_same_store_every_time(self):
        harness, factory, store = _make_harness()
        with patch(
            "docstore_testkit.harness.initialize_store", wraps=initialize_store
        ) as mock_init:
            stores = [harness.get_store() for _ in range(5)]

        assert all(s is store for s in stores)
        assert harness.store is store
        factory.assert_called_once()
        mock_init.assert_called_once()
        store.initialize.assert_called_once()
        assert harness.state is HarnessState.READY
        assert harness.statistics.database == "UnitTests"

    def test_concurrent_first_access_constructs_once(self):
        store = _make_store()
        calls = []

        def slow_factory(settings):
            calls.append(settings)
            time.sleep(0.05)
            return store

        harness = DocumentStoreHarness(slow_factory, RecordingEventSink())
        results = []
        errors = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                results.append(harness.get_store())
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(results) == 8
        assert all(r is store for r in results)
        assert len(calls) == 1
        store.initialize.assert_called_once()

    def test_concurrent_callers_share_the_failure(self):
        calls = []

        def failing_factory(settings):
            calls.append(settings)
            time.sleep(0.05)
            raise ConnectError("server unreachable")

        harness = DocumentStoreHarness(failing_factory, RecordingEventSink())
        errors = []
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            try:
                harness.get_store()
            except ConnectError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert len(errors) == 4
        assert all(e is errors[0] for e in errors)
        assert harness.state is HarnessState.FAILED

    def test_initialization_failure_is_remembered(self):
        store = _make_store(errors=(ServerError(message="bad index"),))
        harness, factory, _ = _make_harness(store)

        with pytest.raises(ServerReportedErrors) as first:
            harness.get_store()
        with pytest.raises(ServerReportedErrors) as second:
            harness.session("a")

        assert first.value is second.value
        factory.assert_called_once()
        assert harness._sink.named("store.failed")

    def test_factory_calling_back_fails_fast(self):
        store = _make_store()
        seen = []

        def factory(settings):
            with pytest.raises(ConfigurationLocked):
                harness.seed_data = []
            try:
                harness.get_store()
            except ReentrantConstruction as exc:
                seen.append(exc)
            return store

        harness = DocumentStoreHarness(factory, RecordingEventSink())

        assert harness.get_store() is store
        assert len(seen) == 1
        assert harness.state is HarnessState.READY

    def test_remembered_failure_keeps_its_traceback(self):
        harness, factory, _ = _make_harness()
        factory.side_effect = ConnectError("down")

        depths = []
        for _ in range(3):
            with pytest.raises(ConnectError) as exc_info:
                harness.get_store()
            depths.append(len(traceback.extract_tb(exc_info.value.__traceback__)))

        assert depths[1] == depths[2]
        factory.assert_called_once()

    def test_disposed_harness_fails_fast(self):
        harness, _, _ = _make_harness()
        harness.get_store()
        harness.close()

        with pytest.raises(HarnessDisposed):
            harness.get_store()
        with pytest.raises(HarnessDisposed):
            harness.default_session


class TestSessions:
    def test_same_key_same_session(self):
        harness, _, store = _make_harness()
        store.open_session.side_effect = lambda: MagicMock()

        assert harness.session("a") is harness.session("a")
        assert harness.session("a") is not harness.session("b")
        assert store.open_session.call_count == 2

    def test_default_session(self):
        harness, _, store = _make_harness()
        store.open_session.side_effect = lambda: MagicMock()

        assert harness.default_session is harness.session("default")

    def test_session_triggers_construction(self):
        harness, factory, _ = _make_harness()
        harness.session("a")
        factory.assert_called_once()


class TestClose:
    def test_close_unused_harness_is_noop(self):
        harness, factory, _ = _make_harness()
        harness.close()

        factory.assert_not_called()
        assert harness.state is HarnessState.DISPOSED
        assert harness._sink.named("harness.closed")[0].fields == {"constructed": False}

    def test_close_releases_sessions_then_store(self):
        harness, _, store = _make_harness()
        sessions = {}

        def open_session():
            session = MagicMock()
            sessions[len(sessions)] = session
            return session

        store.open_session.side_effect = open_session
        harness.session("a")
        harness.session("b")

        harness.close()

        for session in sessions.values():
            session.close.assert_called_once()
        store.close.assert_called_once()
        assert harness.state is HarnessState.DISPOSED

    def test_close_attempts_every_session(self):
        harness, _, store = _make_harness()
        failing, healthy = MagicMock(), MagicMock()
        failing.close.side_effect = RuntimeError("session broken")
        store.open_session.side_effect = [failing, healthy]
        harness.session("a")
        harness.session("b")

        with pytest.raises(RuntimeError, match="session broken"):
            harness.close()

        failing.close.assert_called_once()
        healthy.close.assert_called_once()
        store.close.assert_called_once()
        assert harness._sink.named("session.close_failed")[0].fields["key"] == "a"

    def test_close_reports_server_errors_after_cleanup(self):
        harness, _, store = _make_harness()
        session = MagicMock()
        store.open_session.return_value = session
        harness.session("a")
        store.get_statistics.return_value = StoreStatistics(
            database="UnitTests",
            document_count=1,
            index_count=1,
            errors=(ServerError("Users/1", "Users/Search", "boom"),),
        )

        with pytest.raises(ServerReportedErrors):
            harness.close()

        session.close.assert_called_once()
        store.close.assert_called_once()

    def test_close_with_errors_as_warnings(self):
        harness, _, store = _make_harness(errors_as_warnings=True)
        harness.get_store()
        store.get_statistics.return_value = StoreStatistics(
            database="UnitTests",
            document_count=1,
            index_count=1,
            errors=(ServerError(message="boom"),),
        )

        harness.close()
        assert harness._sink.named("server_errors.ignored")

    def test_close_after_failed_construction_closes_store(self):
        store = _make_store()
        store.initialize.side_effect = ConnectError("down")
        harness, _, _ = _make_harness(store)
        with pytest.raises(ConnectError):
            harness.get_store()

        harness.close()
        store.close.assert_called_once()
        store.get_statistics.assert_not_called()

    def test_close_is_idempotent(self):
        harness, _, store = _make_harness()
        harness.get_store()
        harness.close()
        harness.close()
        store.close.assert_called_once()

    def test_context_manager(self):
        harness, _, store = _make_harness()
        with harness as h:
            h.get_store()
        store.close.assert_called_once()
