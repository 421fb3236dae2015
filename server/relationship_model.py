from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable, Optional, Set

from relationship_errors import InvalidIdentifier, InvalidInput


@dataclass
class AddParams:
    # Upper bound on the set size after the add; None means unbounded.
    max_size: Optional[int] = None
    # Epoch seconds after which the backend may expire the whole item.
    ttl: Optional[float] = None


@dataclass
class RemoveParams:
    require_existing: bool = False


@dataclass
class ReadParams:
    # None falls back to the store's own default.
    consistent_read: Optional[bool] = None


@dataclass
class RelationshipItem:
    """One owner and the identifiers it references. Never stored with an empty set."""
    owner_id: str
    members: Set[str] = field(default_factory=set)
    ttl: Optional[float] = None


@dataclass(frozen=True)
class MutationResult:
    owner_id: str
    member_id: str
    # True when the call actually changed the stored set.
    changed: bool


class MemberSet(frozenset):
    """
    Result of a read. Behaves like a frozenset of identifiers and also says
    whether it reflects the most recent completed write (consistent=True)
    or may lag behind it.
    """

    def __new__(cls, members: Iterable[str] = (), consistent: bool = True):
        obj = super().__new__(cls, members)
        obj.consistent = consistent
        return obj

    def __repr__(self) -> str:
        return f"MemberSet({set(self)!r}, consistent={self.consistent})"


def validate_identifier(value: Any, field_name: str = "identifier") -> str:
    if not isinstance(value, str) or not value:
        raise InvalidIdentifier(field_name, value)
    return value


def validate_identifiers(values: Iterable[Any], field_name: str = "identifier") -> FrozenSet[str]:
    return frozenset(validate_identifier(v, field_name) for v in values)


def validate_max_size(value: Any, field_name: str = "max_size") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidInput(field_name, value, "a positive integer")
    return value


def validate_add_params(params: Optional[AddParams]) -> Optional[AddParams]:
    if params is None:
        return None
    if params.max_size is not None:
        validate_max_size(params.max_size)
    if params.ttl is not None and (isinstance(params.ttl, bool) or not isinstance(params.ttl, (int, float))):
        raise InvalidInput("ttl", params.ttl, "epoch seconds as a number")
    return params
