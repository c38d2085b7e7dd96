"""Item references.

An item is a lead, a service file or a tray. All three share the placement
table, so a reference carries its kind explicitly and every consumer
dispatches on ``ItemKind`` instead of comparing raw strings.
"""
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Dict, Type

from database.models import Base, Lead, ServiceFile, Tray


class ItemKind(str, Enum):
    LEAD = "lead"
    SERVICE_FILE = "service_file"
    TRAY = "tray"


@dataclass(frozen=True)
class ItemRef:
    """Reference to one placeable item. Use the concrete subclasses."""
    id: int
    kind: ClassVar[ItemKind]

    @property
    def type(self) -> str:
        """Storage value of the kind (``pipeline_items.item_type``)."""
        return self.kind.value

    @property
    def model(self) -> Type[Base]:
        return ENTITY_MODELS[self.kind]

    @staticmethod
    def of(kind, item_id: int) -> "ItemRef":
        """Build a reference from a kind or its storage string.

        Raises:
            ValueError: unknown item type.
        """
        item_kind = ItemKind(kind)
        return REF_TYPES[item_kind](int(item_id))

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass(frozen=True)
class LeadRef(ItemRef):
    kind: ClassVar[ItemKind] = ItemKind.LEAD


@dataclass(frozen=True)
class ServiceFileRef(ItemRef):
    kind: ClassVar[ItemKind] = ItemKind.SERVICE_FILE


@dataclass(frozen=True)
class TrayRef(ItemRef):
    kind: ClassVar[ItemKind] = ItemKind.TRAY


REF_TYPES: Dict[ItemKind, Type[ItemRef]] = {
    ItemKind.LEAD: LeadRef,
    ItemKind.SERVICE_FILE: ServiceFileRef,
    ItemKind.TRAY: TrayRef,
}

ENTITY_MODELS: Dict[ItemKind, Type[Base]] = {
    ItemKind.LEAD: Lead,
    ItemKind.SERVICE_FILE: ServiceFile,
    ItemKind.TRAY: Tray,
}
