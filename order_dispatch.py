"""Supplier dispatch board.

Groups parsed order lines into one card per supplier and applies the
user's corrections (move, rename, edit, delete, add) until a card is
dispatched as a pending order.

External writes (supplier registration, catalog-item creation, order
persistence) go through a store object, see order_core.MemoryStore and
order_sheets.SheetsStore. A board change is only applied after the store
call it depends on has returned; a store exception propagates and
leaves the board as it was.
"""

import logging
from dataclasses import dataclass, field
from uuid import uuid4

from order_core import (
    PendingOrder, PendingOrderItem, STORE_TAGS,
    get_new_items_name, get_new_card_name, get_new_item_category,
    get_supplier_defaults, format_qty,
)
from order_parser import ParsedLine

log = logging.getLogger(__name__)


# ============================================================
# Errors
# ============================================================

class DispatchError(Exception):
    """Base class for errors reported back to the user."""


class PreconditionViolation(DispatchError):
    pass


class UnknownCardError(DispatchError, KeyError):
    def __str__(self):
        return f'No card with id {self.args[0]!r}'


class UnknownItemError(DispatchError, KeyError):
    def __str__(self):
        return f'No item with id {self.args[0]!r}'


# ============================================================
# Cards
# ============================================================

@dataclass(eq=False)
class DispatchCard:
    supplier_name: str
    items: list = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid4().hex)


def group_lines(lines, config=None):
    """Partition lines into supplier cards, in order of first appearance.

    Lines without a resolved supplier go to a single trailing card named
    'New Items'. Empty cards are never produced. The input is not mutated.
    """
    new_items_name = get_new_items_name(config)
    cards = {}
    unsorted = []
    for line in lines:
        if line.resolved_supplier:
            card = cards.get(line.resolved_supplier)
            if card is None:
                card = cards[line.resolved_supplier] = DispatchCard(line.resolved_supplier)
            card.items.append(line)
        else:
            unsorted.append(line)

    result = list(cards.values())
    if unsorted:
        result.append(DispatchCard(new_items_name, items=unsorted))
    return result


def format_card_message(card):
    """Plain-text order for a supplier chat: heading + one line per item."""
    lines = [card.supplier_name]
    for item in card.items:
        lines.append(f'{item.display_name} {format_qty(item.quantity)}')
    return '\n'.join(lines)


# ============================================================
# Board
# ============================================================

class DispatchBoard:
    """The working set of dispatch cards for one editing session.

    Each ParsedLine is on exactly one card. Mutations are not thread-safe;
    callers sharing a board must serialise them.
    """

    def __init__(self, cards, store, config=None):
        self.cards = list(cards)
        self.store = store
        self.config = config or {}
        self.new_items_name = get_new_items_name(self.config)

    @classmethod
    def from_lines(cls, lines, store, config=None):
        return cls(group_lines(lines, config), store, config)

    # --------------------------------------------------------
    # Lookup
    # --------------------------------------------------------

    def card(self, card_id):
        for card in self.cards:
            if card.id == card_id:
                return card
        raise UnknownCardError(card_id)

    def find_item(self, item_id):
        """Return (card, line) holding the line with *item_id*."""
        for card in self.cards:
            for line in card.items:
                if line.id == item_id:
                    return card, line
        raise UnknownItemError(item_id)

    def is_unassigned(self, card):
        return card.supplier_name == self.new_items_name

    # --------------------------------------------------------
    # Card-level transitions
    # --------------------------------------------------------

    def add_card(self, supplier_name=None):
        card = DispatchCard(supplier_name or get_new_card_name(self.config))
        self.cards.append(card)
        return card

    def discard_card(self, card_id):
        card = self.card(card_id)
        self.cards.remove(card)
        log.info('discarded card %s (%d items)', card.supplier_name, len(card.items))
        return card

    def rename_supplier(self, card_id, supplier_name):
        """Point a card at another supplier, registering it if unknown."""
        card = self.card(card_id)
        supplier_name = (supplier_name or '').strip()
        if not supplier_name:
            raise PreconditionViolation('Supplier name is required')
        if (supplier_name != self.new_items_name
                and self.store.find_supplier(supplier_name) is None):
            try:
                self.store.add_supplier(supplier_name)
            except Exception:
                log.warning('could not register supplier %r', supplier_name)
                raise
        log.info('renamed card %s -> %s', card.supplier_name, supplier_name)
        card.supplier_name = supplier_name
        resolved = None if self.is_unassigned(card) else supplier_name
        for line in card.items:
            line.resolved_supplier = resolved
        return card

    # --------------------------------------------------------
    # Item-level transitions
    # --------------------------------------------------------

    def move_item(self, item_id, to_card_id, index=None):
        """Move a line to another card (or reorder within the same card).

        Moving an uncatalogued line onto a named supplier card creates the
        catalog item first; the line is only moved once that succeeds.
        """
        source, line = self.find_item(item_id)
        dest = self.card(to_card_id)
        if dest is source:
            if index is not None:
                self.reorder_item(source.id, item_id, index)
            return line

        assigned = not self.is_unassigned(dest)
        if assigned and line.matched_item is None:
            self._require_name(line)
            category = line.resolved_category or get_new_item_category(self.config)
            try:
                created = self.store.create_item(line.extracted_name, category,
                                                 dest.supplier_name)
            except Exception:
                log.warning('could not create catalog item %r for %s',
                            line.extracted_name, dest.supplier_name)
                raise
            line.matched_item = created
            line.item_created = True
            line.resolved_category = created.category or category

        source.items.remove(line)
        if index is None:
            dest.items.append(line)
        else:
            dest.items.insert(index, line)
        line.resolved_supplier = dest.supplier_name if assigned else None
        log.info('moved %r from %s to %s', line.display_name,
                 source.supplier_name, dest.supplier_name)
        return line

    def reorder_item(self, card_id, item_id, new_index):
        card = self.card(card_id)
        for i, line in enumerate(card.items):
            if line.id == item_id:
                break
        else:
            raise UnknownItemError(item_id)
        card.items.insert(new_index, card.items.pop(i))
        return card

    def set_quantity(self, item_id, quantity):
        if quantity is None or quantity <= 0:
            raise PreconditionViolation(f'Quantity must be positive, got {quantity!r}')
        _, line = self.find_item(item_id)
        line.quantity = quantity
        return line

    def remove_item(self, item_id):
        card, line = self.find_item(item_id)
        card.items.remove(line)
        return line

    def add_item(self, card_id, catalog_item=None, name=None, quantity=1,
                 category=None):
        """Append a line chosen from the catalog, or a free-text new item."""
        card = self.card(card_id)
        if catalog_item is None and not (name or '').strip():
            raise PreconditionViolation('Item name is required')
        if quantity is None or quantity <= 0:
            raise PreconditionViolation(f'Quantity must be positive, got {quantity!r}')

        if catalog_item is not None:
            line = ParsedLine(raw_text=catalog_item.name,
                              extracted_name=catalog_item.name,
                              quantity=quantity, matched_item=catalog_item,
                              resolved_supplier=catalog_item.supplier or None,
                              resolved_category=catalog_item.category or None)
        else:
            name = name.strip()
            line = ParsedLine(raw_text=name, extracted_name=name,
                              quantity=quantity, resolved_category=category)
            if not self.is_unassigned(card):
                line.resolved_supplier = card.supplier_name
        card.items.append(line)
        return line

    # --------------------------------------------------------
    # Dispatch
    # --------------------------------------------------------

    def _require_name(self, line):
        if not (line.extracted_name or '').strip():
            raise PreconditionViolation(
                f'Line {line.raw_text.strip()!r} has no item name. '
                'Edit or remove it before it can be catalogued.')

    def _check_dispatchable(self, card):
        if self.is_unassigned(card):
            raise PreconditionViolation(
                'Cannot send the new items card to order. '
                'Assign its items to a supplier first.')
        if not card.items:
            raise PreconditionViolation(f'No items in card {card.supplier_name!r}')
        for line in card.items:
            if line.matched_item is None:
                self._require_name(line)

    def dispatch(self, card_id, store_tag=None):
        """Turn a card into a pending order and drop it from the board.

        Uncatalogued lines get a catalog item created under the card's
        supplier first. Each created item is linked to its line as soon as
        the store confirms it, so a retry after a failure does not create
        it twice.
        """
        card = self.card(card_id)
        self._check_dispatchable(card)
        if store_tag and store_tag not in STORE_TAGS:
            log.warning('unknown store tag %r on order for %s', store_tag,
                        card.supplier_name)

        pending_items = []
        for line in card.items:
            is_new = line.is_new_item
            if line.matched_item is None:
                category = line.resolved_category or get_new_item_category(self.config)
                try:
                    line.matched_item = self.store.create_item(
                        line.extracted_name, category, card.supplier_name)
                except Exception:
                    log.warning('could not create catalog item %r for %s',
                                line.extracted_name, card.supplier_name)
                    raise
                line.item_created = True
                line.resolved_category = line.matched_item.category or category
            pending_items.append(PendingOrderItem(item=line.matched_item,
                                                  quantity=line.quantity,
                                                  is_new_item=is_new))

        supplier = self.store.find_supplier(card.supplier_name)
        defaults = get_supplier_defaults(self.config)
        order = PendingOrder(
            supplier=card.supplier_name,
            items=pending_items,
            store_tag=store_tag,
            payment_method=supplier.payment_method if supplier else defaults['payment_method'],
            order_type=supplier.order_type if supplier else defaults['order_type'],
        )
        try:
            order = self.store.create_order(order)
        except Exception:
            log.warning('could not save order for %s', card.supplier_name)
            raise

        self.cards.remove(card)
        new_count = sum(1 for p in pending_items if p.is_new_item)
        log.info('dispatched %s: %d items (%d new)', card.supplier_name,
                 len(pending_items), new_count)
        return order

    def dispatch_all(self, store_tag=None):
        """Dispatch every card; empty cards are dropped.

        Every non-empty card is checked before any write, so a new items
        card that still holds lines fails the whole batch.
        """
        for card in self.cards:
            if card.items:
                self._check_dispatchable(card)

        self.cards = [c for c in self.cards if c.items]
        orders = []
        for card in list(self.cards):
            orders.append(self.dispatch(card.id, store_tag=store_tag))
        return orders
