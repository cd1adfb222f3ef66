"""Order core: config, catalog import, suppliers and the in-memory store.

Everything the dispatch board needs from the outside world lives behind
the store interface here: supplier lookup/registration, catalog-item
creation and pending-order persistence.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import yaml

from order_parser import CatalogItem

log = logging.getLogger(__name__)


# ============================================================
# Constants
# ============================================================

STORE_TAGS = ('cv2', 'o2', 'wb', 'sti', 'myym', 'leo')

NEW_ITEMS = 'New Items'
NEW_SUPPLIER = 'New Supplier'
NEW_ITEM_CATEGORY = 'New Item'

_DEFAULT_SUPPLIER_DEFAULTS = {
    'payment_method': 'COD',
    'order_type': 'Delivery',
}


# ============================================================
# Records
# ============================================================

@dataclass
class Supplier:
    name: str
    payment_method: Optional[str] = 'COD'
    order_type: Optional[str] = 'Delivery'
    id: str = field(default_factory=lambda: uuid4().hex)


@dataclass
class PendingOrderItem:
    item: CatalogItem
    quantity: float
    is_new_item: bool = False


@dataclass
class PendingOrder:
    supplier: str
    items: list = field(default_factory=list)
    status: str = 'pending'
    store_tag: Optional[str] = None
    payment_method: Optional[str] = None
    order_type: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Catalog:
    items: list = field(default_factory=list)
    categories: list = field(default_factory=list)
    suppliers: list = field(default_factory=list)


# ============================================================
# Config loading / saving
# ============================================================

def load_config(path):
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def save_config(config, path):
    """Write config back to YAML, minus sheet-managed and private keys."""
    sheet_fields = config.get('_sheet_fields', set())
    to_save = {k: v for k, v in config.items()
               if k not in sheet_fields and not k.startswith('_')}
    with open(path, 'w', encoding='utf-8') as f:
        yaml.dump(to_save, f, default_flow_style=False, sort_keys=False,
                  allow_unicode=True)


def load_config_with_sheets(path):
    """Load YAML config and overlay catalog data read from Google Sheets.

    Returns (config, client). client is None when the config has no
    google_sheets section.
    """
    config = load_config(path)
    gs = config.get('google_sheets')
    if not gs:
        return config, None

    import order_sheets

    client = order_sheets.authenticate(gs.get('credentials_file'),
                                       gs.get('token_file'))
    overlay = order_sheets.load_sheet_catalog(client, gs['spreadsheet_id'],
                                              gs.get('input', {}))
    config.update(overlay)
    config['_sheet_fields'] = set(overlay)
    log.info('loaded %s from sheet %s', ', '.join(sorted(overlay)) or 'nothing',
             gs['spreadsheet_id'])
    return config, client


# ============================================================
# Config accessors
# ============================================================

def get_new_items_name(config=None):
    return (config or {}).get('new_items_name', NEW_ITEMS)


def get_new_card_name(config=None):
    return (config or {}).get('new_card_name', NEW_SUPPLIER)


def get_new_item_category(config=None):
    return (config or {}).get('new_item_category', NEW_ITEM_CATEGORY)


def get_supplier_defaults(config=None):
    return {**_DEFAULT_SUPPLIER_DEFAULTS,
            **((config or {}).get('supplier_defaults') or {})}


def catalog_from_config(config):
    """Inline catalog entries from config['catalog'] as CatalogItems."""
    return [_item_from_dict(d) for d in (config or {}).get('catalog', [])
            if d.get('name')]


def suppliers_from_config(config):
    defaults = get_supplier_defaults(config)
    result = []
    for d in (config or {}).get('suppliers', []):
        if isinstance(d, str):
            d = {'name': d}
        if not d.get('name'):
            continue
        result.append(Supplier(
            name=d['name'],
            payment_method=d.get('payment_method', defaults['payment_method']),
            order_type=d.get('order_type', defaults['order_type']),
        ))
    return result


# ============================================================
# Catalog import
# ============================================================

def _item_from_dict(d):
    return CatalogItem(
        id=str(d.get('id') or uuid4().hex),
        name=str(d['name']).strip(),
        category=d.get('category') or '',
        supplier=d.get('supplier') or '',
    )


def _split_category(info):
    """'🥬Vegetables' → 'Vegetables'; the emoji prefix ends at the first capital."""
    for i, ch in enumerate(info):
        if ch.isupper():
            return info[i:].strip()
    return info.strip()


def load_catalog(data, config=None):
    """Build a Catalog from either export format.

    Current format: a mapping with exportInfo.version, an items list and
    categories / suppliers mappings keyed by id.
    Legacy format: [category_map, supplier_map], both keyed by item name.
    """
    defaults = get_supplier_defaults(config)

    if isinstance(data, dict) and (data.get('exportInfo') or {}).get('version'):
        items = [_item_from_dict(d) for d in data.get('items') or [] if d.get('name')]
        categories = [c['name'] for c in (data.get('categories') or {}).values()
                      if c.get('name')]
        suppliers = []
        for s in (data.get('suppliers') or {}).values():
            if not s.get('name'):
                continue
            suppliers.append(Supplier(
                name=s['name'],
                payment_method=(s.get('defaultPaymentMethod')
                                or s.get('paymentMethod')
                                or defaults['payment_method']),
                order_type=(s.get('defaultOrderType')
                            or s.get('orderType')
                            or defaults['order_type']),
                id=str(s.get('id') or uuid4().hex),
            ))
        return Catalog(items=items, categories=categories, suppliers=suppliers)

    if isinstance(data, list) and len(data) == 2:
        category_map, supplier_map = data
        items, categories, supplier_names = [], [], []
        for name, info in category_map.items():
            if name == 'item' or not isinstance(info, str):
                continue
            category = _split_category(info)
            supplier = supplier_map.get(name) or ''
            if category not in categories:
                categories.append(category)
            if supplier and supplier not in supplier_names:
                supplier_names.append(supplier)
            items.append(CatalogItem(id=uuid4().hex, name=name,
                                     category=category, supplier=supplier))
        suppliers = [Supplier(name=n, payment_method=defaults['payment_method'],
                              order_type=defaults['order_type'])
                     for n in supplier_names]
        return Catalog(items=items, categories=categories, suppliers=suppliers)

    raise ValueError('Invalid data format')


# ============================================================
# In-memory store
# ============================================================

class MemoryStore:
    """Catalog, supplier registry and pending orders held in process.

    Same interface as order_sheets.SheetsStore, so the dispatch board
    works against either.
    """

    def __init__(self, items=(), suppliers=(), config=None):
        self.config = config or {}
        self.items = list(items)
        self.suppliers = list(suppliers)
        self.orders = []

    @classmethod
    def from_config(cls, config):
        return cls(catalog_from_config(config), suppliers_from_config(config),
                   config=config)

    def find_supplier(self, name):
        for s in self.suppliers:
            if s.name == name:
                return s
        return None

    def add_supplier(self, name):
        if not name or not name.strip():
            raise ValueError('Supplier name is required')
        defaults = get_supplier_defaults(self.config)
        supplier = Supplier(name=name.strip(),
                            payment_method=defaults['payment_method'],
                            order_type=defaults['order_type'])
        self.suppliers.append(supplier)
        return supplier

    def create_item(self, name, category, supplier):
        if not name or not name.strip():
            raise ValueError('Item name is required')
        item = CatalogItem(id=uuid4().hex, name=name.strip(),
                           category=category or '', supplier=supplier or '')
        self.items.append(item)
        return item

    def create_order(self, order):
        self.orders.append(order)
        return order


# ============================================================
# Formatting
# ============================================================

def format_qty(q):
    if q is None:
        return '???'
    if isinstance(q, float) and q == int(q):
        return str(int(q))
    return str(q)
