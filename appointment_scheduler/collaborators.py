"""Interfaces the engine consumes from the surrounding application, with in-memory versions."""

import logging
import threading
from typing import Dict, Iterable, List, Protocol

from appointment_scheduler.errors import InsufficientStockError, NotFoundError
from appointment_scheduler.models import Party, StockItem

logger = logging.getLogger(__name__)


class Directory(Protocol):
    def resolve_requester(self, requester_id: str) -> Party: ...

    def resolve_provider(self, provider_id: str) -> Party: ...


class Inventory(Protocol):
    def stock_level(self, item_id: str) -> int: ...

    def decrement_stock(self, item_id: str, quantity: int): ...


class InMemoryDirectory:
    def __init__(self, parties: Iterable[Party] = ()):
        self._parties: Dict[str, Party] = {p.id: p for p in parties}

    def add(self, party: Party):
        self._parties[party.id] = party

    @property
    def parties(self) -> List[Party]:
        return list(self._parties.values())

    def resolve_requester(self, requester_id: str) -> Party:
        return self._resolve(requester_id, "requester")

    def resolve_provider(self, provider_id: str) -> Party:
        return self._resolve(provider_id, "provider")

    def providers_by_specialty(self, specialty: str) -> List[Party]:
        wanted = specialty.strip().lower()
        return [
            p for p in self._parties.values()
            if p.role == "provider" and p.specialty and p.specialty.lower() == wanted
        ]

    def _resolve(self, party_id: str, role: str) -> Party:
        party = self._parties.get(party_id)
        if party is None or party.role != role:
            raise NotFoundError(f"No {role} with id {party_id}")
        return party


class InMemoryInventory:
    """Thread-safe stock counts keyed by item id."""

    def __init__(self, items: Iterable[StockItem] = ()):
        self._items: Dict[str, StockItem] = {item.id: item for item in items}
        self._lock = threading.Lock()

    def add(self, item: StockItem):
        with self._lock:
            self._items[item.id] = item

    @property
    def items(self) -> List[StockItem]:
        with self._lock:
            return [item.model_copy() for item in self._items.values()]

    def stock_level(self, item_id: str) -> int:
        with self._lock:
            return self._item(item_id).quantity

    def decrement_stock(self, item_id: str, quantity: int):
        with self._lock:
            item = self._item(item_id)
            if quantity > item.quantity:
                raise InsufficientStockError(item_id, quantity, item.quantity)
            item.quantity -= quantity
            if item.is_low:
                logger.warning(f"Stock for {item.name} ({item_id}) is low: {item.quantity} left")

    def low_stock(self) -> List[StockItem]:
        with self._lock:
            return [item.model_copy() for item in self._items.values() if item.is_low]

    def _item(self, item_id: str) -> StockItem:
        item = self._items.get(item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found in inventory")
        return item
