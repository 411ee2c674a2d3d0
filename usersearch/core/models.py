"""Data models for the search and asset pipelines."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .errors import DecodeError, FetchError


EntityId = Union[int, str]


@dataclass(frozen=True)
class Entity:
    """A remote-indexed record returned by a search call.

    Two entities with the same id are the same entity, even when the other
    fields differ between decodes.
    """
    id: EntityId
    login: str = field(compare=False)
    avatar_url: str = field(compare=False)

    def __hash__(self) -> int:
        return hash(self.id)

    @classmethod
    def from_mapping(cls, record: Mapping[str, Any]) -> "Entity":
        """Build an entity from one decoded JSON record."""
        if not isinstance(record, Mapping):
            raise DecodeError(f"Entity record must be an object, got {type(record).__name__}")

        try:
            entity_id = record['id']
            login = record['login']
            avatar_url = record['avatar_url']
        except KeyError as e:
            raise DecodeError(f"Entity record missing field: {e.args[0]}")

        # bool is an int subclass but never a valid identifier
        if isinstance(entity_id, bool) or not isinstance(entity_id, (int, str)):
            raise DecodeError(f"Invalid entity id: {entity_id!r}")
        if not isinstance(login, str):
            raise DecodeError(f"Invalid login for entity {entity_id!r}")
        if not isinstance(avatar_url, str) or not avatar_url:
            raise DecodeError(f"Invalid avatar_url for entity {entity_id!r}")

        return cls(id=entity_id, login=login, avatar_url=avatar_url)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'login': self.login,
            'avatar_url': self.avatar_url
        }


class SlotState(Enum):
    """Cache state of one entity's asset."""
    ABSENT = "absent"
    PENDING = "pending"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass(frozen=True)
class AssetSlot:
    """One entity's asset: state plus image bytes or the failure."""
    state: SlotState
    data: Optional[bytes] = None
    error: Optional[FetchError] = None

    @classmethod
    def absent(cls) -> "AssetSlot":
        return cls(SlotState.ABSENT)

    @classmethod
    def pending(cls) -> "AssetSlot":
        return cls(SlotState.PENDING)

    @classmethod
    def loaded(cls, data: bytes) -> "AssetSlot":
        return cls(SlotState.LOADED, data=data)

    @classmethod
    def failed(cls, error: FetchError) -> "AssetSlot":
        return cls(SlotState.FAILED, error=error)

    @property
    def blocks_fetch(self) -> bool:
        """True when a new request would not start a fetch."""
        return self.state in (SlotState.PENDING, SlotState.LOADED)


class QueryPhase(Enum):
    """Query controller states."""
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass(frozen=True)
class QueryState:
    """Snapshot of the query controller's state."""
    query: str = ""
    results: Tuple[Entity, ...] = ()
    loading: bool = False
    phase: QueryPhase = QueryPhase.IDLE
    last_error: Optional[FetchError] = None
    epoch: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query': self.query,
            'results': [e.to_dict() for e in self.results],
            'loading': self.loading,
            'phase': self.phase.value,
            'last_error': self.last_error.to_dict() if self.last_error else None,
            'epoch': self.epoch
        }
