from datetime import datetime, timezone

import pytest

from docstore_testkit import (
    DocumentStoreHarness,
    HarnessState,
    IndexDefinition,
    IndexRegistry,
    InvalidIndexDescriptor,
    ServerReportedErrors,
)
from docstore_testkit.events import RecordingEventSink
from docstore_testkit.storage import MemoryDocumentStore
from tests import entities
from tests.entities import (
    FakeModel,
    User,
    User_SearchTransformer,
    Users_Search,
    Users_TagsSummary,
    create_fake_users,
)


class Users_Broken(IndexDefinition):
    entity_type = User

    def map(self, document):
        raise KeyError("nickname")


class Users_TupleMap(IndexDefinition):
    entity_type = User

    def map(self, document):
        yield ("name", document["name"])


def _expected_document_count(seed_data):
    # Each seeded collection also owns one identity document.
    return sum(len(collection) for collection in seed_data) + len(seed_data)


@pytest.fixture
def harness():
    harness = DocumentStoreHarness(sink=RecordingEventSink())
    yield harness
    harness.close()


class TestInitialization:
    def test_no_seed_data_and_no_indexes(self, harness):
        session = harness.default_session

        assert session is not None
        stats = harness.store.get_statistics()
        assert stats.document_count == 0
        assert stats.index_count == 0

    def test_seed_data_and_no_indexes(self, harness):
        seed = create_fake_users()
        harness.seed_data = seed

        harness.default_session
        stats = harness.store.get_statistics()

        assert stats.document_count == _expected_document_count(seed)
        assert stats.index_count == 0

    def test_seed_data_and_two_indexes(self, harness):
        seed = create_fake_users()
        harness.seed_data = seed
        harness.index_descriptors = [Users_Search, Users_TagsSummary]

        session = harness.default_session
        stats = harness.store.get_statistics()

        assert stats.document_count == _expected_document_count(seed)
        assert stats.index_count == 2
        assert stats.stale_indexes == ()

        star_wars = session.query(index=Users_TagsSummary, tag="star wars")
        assert star_wars == [{"tag": "star wars", "count": 2}]
        assert [u.name for u in session.query(index=Users_Search, name="Han Solo")] == [
            "Han Solo"
        ]

    def test_registry_from_modules(self, harness):
        harness.index_registry = IndexRegistry.from_modules(entities)
        harness.seed_data = create_fake_users()

        session = harness.default_session

        assert harness.store.get_statistics().index_count == 2
        transformed = session.query(User, transformer=User_SearchTransformer)
        assert transformed[0] == {"name": "Leah Culver", "tag_count": 2}

    def test_invalid_descriptor_builds_nothing(self, harness):
        harness.index_descriptors = [Users_Search, FakeModel]

        with pytest.raises(InvalidIndexDescriptor):
            harness.default_session

        assert harness.state is HarnessState.FAILED

    def test_seeding_skipped_when_store_has_data(self):
        def factory(settings):
            store = MemoryDocumentStore()
            store.initialize()
            session = store.open_session()
            session.store(FakeModel(name="Existing", age=1))
            session.commit()
            return store

        sink = RecordingEventSink()
        with DocumentStoreHarness(factory, sink, seed_data=create_fake_users()) as harness:
            harness.get_store()
            # One entity plus its identity document, no seed data.
            assert harness.store.get_statistics().document_count == 2
            assert harness.default_session.query(User) == []
            assert sink.named("seed.skipped")

    def test_broken_index_fails_initialization(self, harness):
        harness.seed_data = create_fake_users()
        harness.index_descriptors = [Users_Broken]

        with pytest.raises(ServerReportedErrors) as exc_info:
            harness.get_store()

        assert len(exc_info.value.errors) == 4
        assert exc_info.value.lines[0].startswith("Document: Users/1; Index: Users/Broken")

    def test_non_mapping_index_reports_server_errors(self, harness):
        harness.seed_data = create_fake_users()
        harness.index_descriptors = [Users_TupleMap, Users_Search]
        harness.stale_index_timeout = 5.0

        with pytest.raises(ServerReportedErrors) as exc_info:
            harness.get_store()

        assert {e.index_name for e in exc_info.value.errors} == {"Users/TupleMap"}
        assert len(exc_info.value.errors) == 4

    def test_broken_index_as_warnings(self):
        sink = RecordingEventSink()
        harness = DocumentStoreHarness(
            sink=sink,
            seed_data=create_fake_users(),
            index_descriptors=[Users_Broken],
            errors_as_warnings=True,
        )

        harness.get_store()
        harness.close()

        # Once at initialization, once at close.
        assert len(sink.named("server_errors.ignored")) == 2


class TestSessions:
    def test_two_sessions_share_the_store(self, harness):
        harness.seed_data = create_fake_users()
        user = User(name="Oren Eini", tags=["RavenDb", "Hibernating Rhinos"])
        first = harness.default_session
        second = harness.session("AnotherSession")

        first.store(user)
        first.commit()

        existing = second.load(User, user.id)
        assert existing is not None
        assert existing.id == user.id
        assert existing.name == user.name

    def test_identifiers_are_sequential_across_sessions(self, harness):
        now = datetime.now(timezone.utc)
        harness.seed_data = [[FakeModel(name="Anabel", age=25, created_on=now)]]

        session = harness.default_session
        session.store(FakeModel(name="Lily", age=5, created_on=now))
        session.store(FakeModel(name="Jett", age=7, created_on=now))
        session.commit()

        session.store(FakeModel(name="Jenson", age=3, created_on=now))
        session.commit()

        harness.session("pewpew").store(FakeModel(name="PewPew", age=69, created_on=now))
        harness.session("pewpew").commit()

        models = harness.session("hi").query(FakeModel)
        assert [(m.id, m.name) for m in models] == [
            ("FakeModels/1", "Anabel"),
            ("FakeModels/2", "Lily"),
            ("FakeModels/3", "Jett"),
            ("FakeModels/4", "Jenson"),
            ("FakeModels/5", "PewPew"),
        ]

    def test_close_closes_every_session(self):
        harness = DocumentStoreHarness(sink=RecordingEventSink())
        sessions = [harness.session(key) for key in ("a", "b", "c")]
        store = harness.store

        harness.close()

        assert all(s.closed for s in sessions)
        assert store.closed


class TestPytestFixture:
    def test_fixture_yields_unconfigured_harness(self, docstore_harness):
        assert docstore_harness.state is HarnessState.UNCONSTRUCTED
        docstore_harness.seed_data = create_fake_users()
        assert len(docstore_harness.default_session.query(User)) == 4
