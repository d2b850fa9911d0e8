"""Index and transformer definitions.

An index is declared as a class. The class itself is the descriptor a
test hands to the harness; the store instantiates it when building::

    class Users_ByName(IndexDefinition):
        entity_type = User
        fields = ("name",)

        def map(self, document):
            yield {"name": document["name"]}

Map/reduce indexes also override reduce(). Transformers reshape query
results and override transform().

Instead of listing descriptors one by one, a test can hand the harness an
IndexRegistry, built explicitly or from every definition declared in a
set of modules.
"""

from __future__ import annotations

from types import ModuleType
from typing import Any, ClassVar, Iterable, Iterator

from docstore_testkit.conventions import collection_name
from docstore_testkit.errors import InvalidIndexDescriptor


class IndexDefinition:
    """Base class for map and map/reduce index definitions.

    Attributes:
        name: Index name. Defaults to the class name with "_" turned into
            "/" (``Users_Search`` -> ``"Users/Search"``).
        entity_type: Entity class whose collection is indexed.
        collection: Explicit collection name, overrides entity_type.
        fields: Fields a server-side backend builds a secondary index on.
        pipeline: Aggregation pipeline a server-side backend exposes as a
            view, for map/reduce indexes.
    """

    name: ClassVar[str | None] = None
    entity_type: ClassVar[type | None] = None
    collection: ClassVar[str | None] = None
    fields: ClassVar[tuple[str, ...]] = ()
    pipeline: ClassVar[list[dict[str, Any]] | None] = None

    @classmethod
    def index_name(cls) -> str:
        return cls.name or cls.__name__.replace("_", "/")

    @classmethod
    def source_collection(cls) -> str | None:
        """Collection to map over; None maps every entity document."""
        if cls.collection:
            return cls.collection
        if cls.entity_type is not None:
            return collection_name(cls.entity_type)
        return None

    @classmethod
    def is_map_reduce(cls) -> bool:
        return cls.reduce is not IndexDefinition.reduce

    def map(self, document: dict[str, Any]) -> Iterable[dict[str, Any]]:
        """Produce index entries for one document (which includes its "id")."""
        raise NotImplementedError

    def reduce(
        self, results: list[dict[str, Any]]
    ) -> Iterable[dict[str, Any]]:
        """Fold mapped entries into reduce results."""
        raise NotImplementedError


class TransformerDefinition:
    """Base class for result transformers."""

    name: ClassVar[str | None] = None

    @classmethod
    def transformer_name(cls) -> str:
        return cls.name or cls.__name__.replace("_", "/")

    def transform(self, result: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


def is_index_definition(descriptor: object) -> bool:
    return (
        isinstance(descriptor, type)
        and issubclass(descriptor, IndexDefinition)
        and descriptor is not IndexDefinition
    )


def is_transformer_definition(descriptor: object) -> bool:
    return (
        isinstance(descriptor, type)
        and issubclass(descriptor, TransformerDefinition)
        and descriptor is not TransformerDefinition
    )


def invalid_descriptors(descriptors: Iterable[object]) -> tuple[object, ...]:
    return tuple(
        d
        for d in descriptors
        if not (is_index_definition(d) or is_transformer_definition(d))
    )


class IndexRegistry:
    """Ordered set of index and transformer definitions."""

    def __init__(self, definitions: Iterable[type] = ()) -> None:
        self._definitions: dict[type, None] = {}
        for definition in definitions:
            self.register(definition)

    @classmethod
    def from_modules(cls, *modules: ModuleType) -> IndexRegistry:
        """Collect every definition class declared in the given modules.

        Only classes defined in a module are picked up, not ones it
        imports from elsewhere.
        """
        registry = cls()
        for module in modules:
            for obj in vars(module).values():
                if getattr(obj, "__module__", None) != module.__name__:
                    continue
                if is_index_definition(obj) or is_transformer_definition(obj):
                    registry.register(obj)
        return registry

    def register(self, definition: type) -> type:
        """Add a definition. Returns it, so this works as a class decorator."""
        if invalid_descriptors([definition]):
            raise InvalidIndexDescriptor([definition])
        self._definitions[definition] = None
        return definition

    def __iter__(self) -> Iterator[type]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, definition: object) -> bool:
        return definition in self._definitions
