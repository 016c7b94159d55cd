from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, FrozenSet, List, Mapping, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # naive timestamps are taken to be UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class RuleKind(str, Enum):
    USER_IN_LIST = "user_in_list"
    GROUP_IN_LIST = "group_in_list"
    TIME_WINDOW = "time_window"
    PERCENTAGE_OF = "percentage_of"
    ATTRIBUTE = "attribute"


@dataclass(frozen=True)
class TargetingRule:
    kind: RuleKind
    enabled: bool = True
    values: FrozenSet[str] = frozenset()
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    subject_key: str = "subject"
    percentage: int = 0
    attr: Optional[str] = None
    op: str = "eq"
    value: Any = None


@dataclass(frozen=True)
class FlagDefinition:
    name: str
    enabled: bool
    rules: Tuple[TargetingRule, ...] = ()
    rollout_percentage: Optional[int] = None


@dataclass(frozen=True)
class FlagStore:
    """Immutable, versioned view of every known flag.

    A store is built once per successful reload and never changes afterwards;
    a newer store replaces it as a whole.
    """

    flags: Mapping[str, FlagDefinition] = field(default_factory=lambda: MappingProxyType({}))
    generation: int = 0
    loaded_at: Optional[datetime] = None

    def get(self, name: str) -> Optional[FlagDefinition]:
        return self.flags.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.flags

    def __len__(self) -> int:
        return len(self.flags)

    def names(self) -> List[str]:
        return sorted(self.flags)

    def snapshot(self) -> List[Tuple[str, bool, int]]:
        """(name, enabled, rule count) for every flag, ordered by name."""
        return [(name, self.flags[name].enabled, len(self.flags[name].rules)) for name in self.names()]


@dataclass(frozen=True)
class RequestContext:
    subject_id: Optional[str] = None
    groups: FrozenSet[str] = frozenset()
    now: datetime = field(default_factory=utcnow)
    attributes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "groups", frozenset(self.groups))
        object.__setattr__(self, "now", as_utc(self.now))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
