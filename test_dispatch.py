"""
Tests for the supplier dispatch board.

    board = DispatchBoard.from_lines(parse_lines(text, catalog), store)
    board.move_item(line_id, card_id)
    order = board.dispatch(card_id, store_tag='cv2')

The store is an order_core.MemoryStore unless a test needs to make a
store call fail, in which case the relevant method is swapped for a Mock.
"""

from unittest.mock import Mock

import pytest

from order_core import MemoryStore, Supplier
from order_dispatch import (
    DispatchBoard, DispatchCard, PreconditionViolation, UnknownCardError,
    UnknownItemError, DispatchError, group_lines, format_card_message,
)
from order_parser import CatalogItem, ParsedLine, parse_lines


ORDER_TEXT = '\n'.join([
    'Cucumber 4pcs',
    'Eggs 30',
    'Tomato 5',
    'Xyzzy Widget 2',
    'Coca Cola 6',
])


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def catalog():
    return [
        CatalogItem('c1', 'Cucumber', 'Vegetables', 'Farm Fresh'),
        CatalogItem('c2', 'Tomato', 'Vegetables', 'Farm Fresh'),
        CatalogItem('c3', 'Eggs', 'Dairy', 'Happy Hens'),
        CatalogItem('c6', 'Coca Cola', 'Drinks', 'Bev Co'),
    ]


@pytest.fixture
def store(catalog):
    return MemoryStore(items=catalog, suppliers=[
        Supplier('Farm Fresh', payment_method='Cash', order_type='Pickup'),
        Supplier('Happy Hens'),
    ])


@pytest.fixture
def lines(catalog):
    return parse_lines(ORDER_TEXT, catalog)


@pytest.fixture
def board(lines, store):
    return DispatchBoard.from_lines(lines, store)


def card_named(board, name):
    return next(c for c in board.cards if c.supplier_name == name)


def line_named(board, name):
    for card in board.cards:
        for line in card.items:
            if line.display_name == name:
                return line
    raise AssertionError(f'no line {name!r}')


def names(card):
    return [l.display_name for l in card.items]


# ============================================================
# Grouping
# ============================================================

class TestGroupLines:
    def test_cards_in_first_appearance_order(self, lines):
        cards = group_lines(lines)
        assert [c.supplier_name for c in cards] == [
            'Farm Fresh', 'Happy Hens', 'Bev Co', 'New Items']
        assert names(cards[0]) == ['Cucumber', 'Tomato']
        assert names(cards[3]) == ['Xyzzy Widget']

    def test_every_line_on_exactly_one_card(self, lines):
        cards = group_lines(lines)
        placed = [l.id for c in cards for l in c.items]
        assert sorted(placed) == sorted(l.id for l in lines)
        assert len(placed) == len(set(placed))

    def test_no_new_items_card_when_all_matched(self, catalog):
        cards = group_lines(parse_lines('Eggs 30\nTomato 2', catalog))
        assert [c.supplier_name for c in cards] == ['Happy Hens', 'Farm Fresh']

    def test_no_empty_cards(self, lines):
        assert all(c.items for c in group_lines(lines))

    def test_empty_input(self):
        assert group_lines([]) == []

    def test_input_not_mutated(self, lines):
        before = list(lines)
        suppliers = [l.resolved_supplier for l in lines]
        group_lines(lines)
        assert lines == before
        assert [l.resolved_supplier for l in lines] == suppliers

    def test_new_items_name_from_config(self, lines):
        cards = group_lines(lines, {'new_items_name': 'Unsorted'})
        assert cards[-1].supplier_name == 'Unsorted'


def test_format_card_message(board):
    message = format_card_message(card_named(board, 'Farm Fresh'))
    assert message == 'Farm Fresh\nCucumber 4\nTomato 5'


# ============================================================
# Lookup
# ============================================================

class TestLookup:
    def test_unknown_card(self, board):
        with pytest.raises(UnknownCardError):
            board.card('nope')

    def test_unknown_card_is_a_key_error(self, board):
        with pytest.raises(KeyError):
            board.card('nope')

    def test_unknown_item(self, board):
        with pytest.raises(UnknownItemError):
            board.find_item('nope')

    def test_find_item(self, board):
        line = line_named(board, 'Eggs')
        card, found = board.find_item(line.id)
        assert found is line
        assert card.supplier_name == 'Happy Hens'


# ============================================================
# Card-level transitions
# ============================================================

class TestCards:
    def test_add_card_default_name(self, board):
        card = board.add_card()
        assert card.supplier_name == 'New Supplier'
        assert card.items == []
        assert board.cards[-1] is card

    def test_discard_card(self, board):
        card = card_named(board, 'Bev Co')
        board.discard_card(card.id)
        assert card not in board.cards

    def test_rename_registers_unknown_supplier(self, board, store):
        card = card_named(board, 'Bev Co')
        board.rename_supplier(card.id, 'Green Grocer')
        assert card.supplier_name == 'Green Grocer'
        supplier = store.find_supplier('Green Grocer')
        assert supplier.payment_method == 'COD'
        assert supplier.order_type == 'Delivery'
        assert [l.resolved_supplier for l in card.items] == ['Green Grocer']

    def test_rename_to_known_supplier_registers_nothing(self, board, store):
        card = card_named(board, 'Bev Co')
        board.rename_supplier(card.id, 'Happy Hens')
        assert len(store.suppliers) == 2

    def test_rename_blank_rejected(self, board):
        card = card_named(board, 'Bev Co')
        with pytest.raises(PreconditionViolation):
            board.rename_supplier(card.id, '   ')
        assert card.supplier_name == 'Bev Co'

    def test_rename_failure_leaves_card(self, board, store):
        store.add_supplier = Mock(side_effect=ConnectionError('offline'))
        card = card_named(board, 'Bev Co')
        with pytest.raises(ConnectionError):
            board.rename_supplier(card.id, 'Green Grocer')
        assert card.supplier_name == 'Bev Co'


# ============================================================
# Item-level transitions
# ============================================================

class TestMoveItem:
    def test_move_new_item_creates_catalog_item(self, board, store):
        """Dropping an unmatched line on a supplier card catalogues it there."""
        line = line_named(board, 'Xyzzy Widget')
        farm = card_named(board, 'Farm Fresh')
        board.move_item(line.id, farm.id)

        assert names(farm) == ['Cucumber', 'Tomato', 'Xyzzy Widget']
        assert card_named(board, 'New Items').items == []
        created = store.items[-1]
        assert (created.name, created.supplier, created.category) == (
            'Xyzzy Widget', 'Farm Fresh', 'New Item')
        assert line.matched_item is created
        assert line.resolved_supplier == 'Farm Fresh'

    def test_move_failure_leaves_board_unchanged(self, board, store):
        store.create_item = Mock(side_effect=ConnectionError('offline'))
        line = line_named(board, 'Xyzzy Widget')
        farm = card_named(board, 'Farm Fresh')
        unsorted = card_named(board, 'New Items')

        with pytest.raises(ConnectionError):
            board.move_item(line.id, farm.id)

        assert names(farm) == ['Cucumber', 'Tomato']
        assert unsorted.items == [line]
        assert line.matched_item is None
        assert line.resolved_supplier is None

    def test_move_matched_item_between_suppliers(self, board, store):
        line = line_named(board, 'Tomato')
        bev = card_named(board, 'Bev Co')
        board.move_item(line.id, bev.id)
        assert names(bev) == ['Coca Cola', 'Tomato']
        assert line.resolved_supplier == 'Bev Co'
        assert len(store.items) == 4

    def test_move_to_new_items_clears_supplier(self, board, store):
        line = line_named(board, 'Tomato')
        board.move_item(line.id, card_named(board, 'New Items').id)
        assert line.resolved_supplier is None
        assert line.matched_item is not None
        assert len(store.items) == 4

    def test_move_with_index(self, board):
        line = line_named(board, 'Eggs')
        farm = card_named(board, 'Farm Fresh')
        board.move_item(line.id, farm.id, index=0)
        assert names(farm) == ['Eggs', 'Cucumber', 'Tomato']

    def test_move_within_card_reorders(self, board):
        farm = card_named(board, 'Farm Fresh')
        board.move_item(line_named(board, 'Tomato').id, farm.id, index=0)
        assert names(farm) == ['Tomato', 'Cucumber']

    def test_unknown_destination(self, board):
        line = line_named(board, 'Tomato')
        with pytest.raises(UnknownCardError):
            board.move_item(line.id, 'nope')
        assert line in card_named(board, 'Farm Fresh').items


class TestEditItems:
    def test_reorder(self, board):
        farm = card_named(board, 'Farm Fresh')
        board.reorder_item(farm.id, line_named(board, 'Cucumber').id, 1)
        assert names(farm) == ['Tomato', 'Cucumber']

    def test_set_quantity(self, board):
        line = line_named(board, 'Eggs')
        board.set_quantity(line.id, 2.5)
        assert line.quantity == 2.5

    @pytest.mark.parametrize('qty', [0, -3, None])
    def test_set_quantity_rejects_non_positive(self, board, qty):
        line = line_named(board, 'Eggs')
        with pytest.raises(PreconditionViolation):
            board.set_quantity(line.id, qty)
        assert line.quantity == 30

    def test_remove_item(self, board):
        line = line_named(board, 'Eggs')
        board.remove_item(line.id)
        assert card_named(board, 'Happy Hens').items == []
        with pytest.raises(UnknownItemError):
            board.find_item(line.id)

    def test_add_catalog_item(self, board, catalog):
        hens = card_named(board, 'Happy Hens')
        line = board.add_item(hens.id, catalog_item=catalog[1], quantity=3)
        assert line.matched_item is catalog[1]
        assert names(hens) == ['Eggs', 'Tomato']

    def test_add_free_text_item(self, board):
        hens = card_named(board, 'Happy Hens')
        line = board.add_item(hens.id, name=' Duck Eggs ', quantity=12)
        assert line.extracted_name == 'Duck Eggs'
        assert line.matched_item is None
        assert line.resolved_supplier == 'Happy Hens'

    def test_add_item_needs_name(self, board):
        with pytest.raises(PreconditionViolation):
            board.add_item(card_named(board, 'Happy Hens').id, name='')

    def test_add_item_needs_positive_quantity(self, board):
        with pytest.raises(PreconditionViolation):
            board.add_item(card_named(board, 'Happy Hens').id, name='Duck', quantity=0)


# ============================================================
# Dispatch
# ============================================================

class TestDispatch:
    def test_dispatch_creates_pending_order(self, board, store):
        farm = card_named(board, 'Farm Fresh')
        order = board.dispatch(farm.id, store_tag='cv2')

        assert store.orders == [order]
        assert order.supplier == 'Farm Fresh'
        assert order.status == 'pending'
        assert order.store_tag == 'cv2'
        assert (order.payment_method, order.order_type) == ('Cash', 'Pickup')
        assert [(p.item.name, p.quantity, p.is_new_item) for p in order.items] == [
            ('Cucumber', 4, False), ('Tomato', 5, False)]
        assert farm not in board.cards

    def test_unregistered_supplier_gets_defaults(self, board):
        order = board.dispatch(card_named(board, 'Bev Co').id)
        assert (order.payment_method, order.order_type) == ('COD', 'Delivery')

    def test_supplier_defaults_from_config(self, lines, store):
        config = {'supplier_defaults': {'payment_method': 'Aba'}}
        board = DispatchBoard.from_lines(lines, store, config)
        order = board.dispatch(card_named(board, 'Bev Co').id)
        assert (order.payment_method, order.order_type) == ('Aba', 'Delivery')

    def test_new_items_card_cannot_be_dispatched(self, lines):
        store = Mock()
        board = DispatchBoard.from_lines(lines, store)
        with pytest.raises(PreconditionViolation):
            board.dispatch(card_named(board, 'New Items').id)
        store.create_item.assert_not_called()
        store.create_order.assert_not_called()
        assert len(board.cards) == 4

    def test_empty_new_items_card_still_rejected(self, board):
        card = board.add_card('New Items')
        with pytest.raises(PreconditionViolation, match='new items'):
            board.dispatch(card.id)

    def test_empty_card_rejected(self, board, store):
        card = board.add_card()
        with pytest.raises(PreconditionViolation):
            board.dispatch(card.id)
        assert store.orders == []

    def test_free_text_item_catalogued_on_dispatch(self, board, store):
        card = board.add_card()
        board.add_item(card.id, name='Mango', quantity=2)
        board.rename_supplier(card.id, 'Fruit Stand')
        order = board.dispatch(card.id)

        created = store.items[-1]
        assert (created.name, created.supplier, created.category) == (
            'Mango', 'Fruit Stand', 'New Item')
        assert order.items[0].item is created
        assert order.items[0].is_new_item

    def test_order_write_failure_keeps_card(self, board, store):
        store.create_order = Mock(side_effect=ConnectionError('offline'))
        farm = card_named(board, 'Farm Fresh')
        with pytest.raises(ConnectionError):
            board.dispatch(farm.id)
        assert farm in board.cards
        assert names(farm) == ['Cucumber', 'Tomato']

    def test_unknown_store_tag_logged(self, board, store, caplog):
        with caplog.at_level('WARNING', logger='order_dispatch'):
            order = board.dispatch(card_named(board, 'Bev Co').id, store_tag='zz9')
        assert order.store_tag == 'zz9'
        assert 'unknown store tag' in caplog.text

    def test_precondition_is_a_dispatch_error(self):
        assert issubclass(PreconditionViolation, DispatchError)


class TestNewItemFlag:
    def test_retry_after_failed_save_still_reports_new_item(self, board, store):
        """The catalog item is created once; the retried order still marks it new."""
        card = board.add_card()
        board.add_item(card.id, name='Mango', quantity=2)
        board.rename_supplier(card.id, 'Fruit Stand')
        save = store.create_order
        store.create_order = Mock(side_effect=ConnectionError('offline'))
        with pytest.raises(ConnectionError):
            board.dispatch(card.id)

        store.create_order = save
        order = board.dispatch(card.id)
        assert [i.name for i in store.items].count('Mango') == 1
        assert order.items[0].is_new_item

    def test_item_catalogued_on_move_reported_new(self, board):
        line = line_named(board, 'Xyzzy Widget')
        farm = card_named(board, 'Farm Fresh')
        board.move_item(line.id, farm.id)
        order = board.dispatch(farm.id)
        assert [(p.item.name, p.is_new_item) for p in order.items] == [
            ('Cucumber', False), ('Tomato', False), ('Xyzzy Widget', True)]


class TestLinesWithoutName:
    """
    Input:
        Tomato 5
        5
    The second line is a bare number: no name, unmatched, on New Items.
    """

    @pytest.fixture
    def board(self, catalog, store):
        store.create_item = Mock(side_effect=AssertionError('create_item called'))
        return DispatchBoard.from_lines(parse_lines('Tomato 5\n5', catalog), store)

    def test_move_onto_supplier_rejected(self, board, store):
        unsorted = card_named(board, 'New Items')
        line = unsorted.items[0]
        assert line.extracted_name == ''
        with pytest.raises(PreconditionViolation, match='no item name'):
            board.move_item(line.id, card_named(board, 'Farm Fresh').id)
        store.create_item.assert_not_called()
        assert unsorted.items == [line]
        assert names(card_named(board, 'Farm Fresh')) == ['Tomato']

    def test_dispatch_rejected(self, board, store):
        farm = card_named(board, 'Farm Fresh')
        farm.items.append(ParsedLine(raw_text='5', extracted_name='', quantity=5))
        with pytest.raises(PreconditionViolation):
            board.dispatch(farm.id)
        store.create_item.assert_not_called()
        assert store.orders == []
        assert farm in board.cards

    def test_dispatch_all_rejected_before_any_order(self, board, store):
        board.remove_item(card_named(board, 'New Items').items[0].id)
        hens = board.add_card('Happy Hens')
        hens.items.append(ParsedLine(raw_text='5', extracted_name='', quantity=5))
        with pytest.raises(PreconditionViolation):
            board.dispatch_all()
        assert store.orders == []

    def test_can_still_be_removed(self, board):
        line = card_named(board, 'New Items').items[0]
        board.remove_item(line.id)
        assert board.dispatch_all()[0].supplier == 'Farm Fresh'


class TestDispatchAll:
    def test_blocked_by_new_items(self, board, store):
        with pytest.raises(PreconditionViolation):
            board.dispatch_all()
        assert store.orders == []
        assert len(board.cards) == 4

    def test_dispatches_every_card(self, board, store):
        line = line_named(board, 'Xyzzy Widget')
        board.move_item(line.id, card_named(board, 'Farm Fresh').id)

        orders = board.dispatch_all(store_tag='o2')

        assert [o.supplier for o in orders] == ['Farm Fresh', 'Happy Hens', 'Bev Co']
        assert all(o.store_tag == 'o2' for o in orders)
        assert store.orders == orders
        assert board.cards == []

    def test_empty_cards_dropped(self, board, store):
        board.remove_item(line_named(board, 'Xyzzy Widget').id)
        board.add_card()
        orders = board.dispatch_all()
        assert len(orders) == 3
        assert board.cards == []


def test_card_identity():
    a, b = DispatchCard('Farm Fresh'), DispatchCard('Farm Fresh')
    assert a != b
    assert a.id != b.id
