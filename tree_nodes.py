"""Nodes of the authorization tree: groups (clients) and items (users)."""
from dataclasses import dataclass, field
from enum import Enum


class GroupState(Enum):
    COLLAPSED = "collapsed"
    EXPANDING = "expanding"
    EXPANDED = "expanded"


@dataclass
class Group:
    id: int
    name: str = ""
    loaded: bool = False
    expanded: bool = False
    loading: bool = False

    @property
    def state(self) -> GroupState:
        if self.loading:
            return GroupState.EXPANDING
        if self.expanded and self.loaded:
            return GroupState.EXPANDED
        return GroupState.COLLAPSED


@dataclass(frozen=True)
class Item:
    id: int
    name: str = ""
    group_ids: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_user(cls, user: dict) -> "Item":
        """Display name is the contact name, falling back to the email."""
        return cls(
            id=user["id"],
            name=user.get("contact_name") or user.get("email") or "",
            group_ids=frozenset(user.get("client_ids") or ()),
        )
