"""Entity conventions shared by every backend.

Entities are plain Python objects, usually dataclasses, with an ``id``
attribute. A store derives the collection an entity belongs to from its
class and hands out identifiers of the form ``"Users/1"``.
"""

from __future__ import annotations

import dataclasses
from typing import Any

IDENTITY_PREFIX = "@identities/"


def collection_name(entity_type: type) -> str:
    """Collection for an entity type: ``__collection__`` or the plural name.

    >>> collection_name(type("User", (), {}))
    'Users'
    """
    explicit = getattr(entity_type, "__collection__", None)
    if explicit:
        return explicit
    return _pluralize(entity_type.__name__)


def _pluralize(name: str) -> str:
    if name.endswith("y") and name[-2:-1] not in ("a", "e", "i", "o", "u"):
        return name[:-1] + "ies"
    if name.endswith(("s", "x", "z", "ch", "sh")):
        return name + "es"
    return name + "s"


def document_id(collection: str, number: int) -> str:
    return f"{collection}/{number}"


def identity_document_id(collection: str) -> str:
    return IDENTITY_PREFIX + collection


def id_sort_key(doc_id: str) -> tuple[str, int, str]:
    """Order "Users/2" before "Users/10"."""
    prefix, _, suffix = doc_id.rpartition("/")
    if suffix.isdigit():
        return (prefix, int(suffix), "")
    return (prefix, -1, suffix)


def to_document(entity: Any) -> dict[str, Any]:
    """Copy an entity's fields into a plain dict, without its id."""
    if dataclasses.is_dataclass(entity) and not isinstance(entity, type):
        fields = dataclasses.asdict(entity)
    else:
        fields = {
            key: value
            for key, value in vars(entity).items()
            if not key.startswith("_")
        }
    fields.pop("id", None)
    return fields


def from_document(entity_type: type, doc_id: str, fields: dict[str, Any]) -> Any:
    """Rebuild an entity of ``entity_type`` from stored fields."""
    return entity_type(id=doc_id, **fields)
