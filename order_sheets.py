"""Google Sheets integration: read the catalog, write new items and orders.

Thin wrapper around gspread.  Every function takes explicit parameters
(no module-level state) so callers can mock the client trivially.
"""

import logging
from uuid import uuid4

import gspread

from order_core import (
    Supplier, catalog_from_config, suppliers_from_config,
    get_supplier_defaults, get_new_item_category,
)
from order_parser import CatalogItem

log = logging.getLogger(__name__)


# ============================================================
# Authentication
# ============================================================

def authenticate(credentials_file=None, token_file=None):
    """Return an authenticated gspread Client.

    If *credentials_file* is provided, uses gspread's OAuth flow
    (prints a URL on first run, caches the token in *token_file*).

    Otherwise falls back to Application Default Credentials, which work after:
        gcloud auth application-default login \\
            --scopes=https://www.googleapis.com/auth/spreadsheets
    """
    if credentials_file:
        token = token_file or 'token.json'

        def _no_browser_flow(client_config, scopes, port=0):
            """OAuth flow that prints the URL instead of opening a browser."""
            from google_auth_oauthlib.flow import InstalledAppFlow
            flow = InstalledAppFlow.from_client_config(client_config, scopes)
            flow.run_local_server(port=port, open_browser=False)
            return flow.credentials

        return gspread.oauth(
            credentials_filename=credentials_file,
            authorized_user_filename=token,
            flow=_no_browser_flow,
        )

    import google.auth
    from google.auth.transport.requests import Request
    scopes = ['https://www.googleapis.com/auth/spreadsheets']
    creds, _ = google.auth.default(scopes=scopes)
    creds.refresh(Request())
    return gspread.authorize(creds)


# ============================================================
# Readers
# ============================================================

def _get_worksheet(client, spreadsheet_id, sheet_name):
    """Open a spreadsheet by key and return the named worksheet."""
    return client.open_by_key(spreadsheet_id).worksheet(sheet_name)


def _cell(row, i):
    return row[i].strip() if len(row) > i and row[i] else ''


def read_catalog(client, spreadsheet_id, sheet_name, cell_range):
    """Read a four-column range (id, name, category, supplier) → item dicts.

    Rows without a name are skipped; rows without an id get a fresh one.

    >>> read_catalog(client, sid, 'Items', 'A2:D')
    [{'id': 'i1', 'name': 'Eggs', 'category': 'Dairy', 'supplier': 'Farm'}]
    """
    ws = _get_worksheet(client, spreadsheet_id, sheet_name)
    items = []
    for row in ws.get_values(cell_range):
        name = _cell(row, 1)
        if not name:
            continue
        items.append({
            'id': _cell(row, 0) or uuid4().hex,
            'name': name,
            'category': _cell(row, 2),
            'supplier': _cell(row, 3),
        })
    return items


def read_suppliers(client, spreadsheet_id, sheet_name, cell_range):
    """Read a three-column range (name, payment method, order type) → dicts.

    Missing payment method / order type cells are left out so config
    defaults apply.
    """
    ws = _get_worksheet(client, spreadsheet_id, sheet_name)
    suppliers = []
    for row in ws.get_values(cell_range):
        name = _cell(row, 0)
        if not name:
            continue
        entry = {'name': name}
        if _cell(row, 1):
            entry['payment_method'] = _cell(row, 1)
        if _cell(row, 2):
            entry['order_type'] = _cell(row, 2)
        suppliers.append(entry)
    return suppliers


_READERS = {
    'catalog': read_catalog,
    'suppliers': read_suppliers,
}


def load_sheet_catalog(client, spreadsheet_id, input_mappings):
    """Read all configured input ranges and return a dict to overlay on config.

    *input_mappings* comes from ``config['google_sheets']['input']``;
    unknown keys are ignored.
    """
    overlay = {}
    for field_name, mapping in input_mappings.items():
        reader = _READERS.get(field_name)
        if reader is None:
            log.warning('no sheet reader for %r, skipping', field_name)
            continue
        overlay[field_name] = reader(client, spreadsheet_id,
                                     mapping['sheet'], mapping['range'])
    return overlay


# ============================================================
# Writers
# ============================================================

def append_catalog_item(client, spreadsheet_id, sheet_name, item):
    """Append a single [id, name, category, supplier] row."""
    ws = _get_worksheet(client, spreadsheet_id, sheet_name)
    ws.append_row([item.id, item.name, item.category, item.supplier],
                  value_input_option='USER_ENTERED')


def append_supplier(client, spreadsheet_id, sheet_name, supplier):
    """Append a single [name, payment method, order type] row."""
    ws = _get_worksheet(client, spreadsheet_id, sheet_name)
    ws.append_row([supplier.name, supplier.payment_method or '',
                   supplier.order_type or ''],
                  value_input_option='USER_ENTERED')


def append_pending_order(client, spreadsheet_id, sheet_name, order):
    """Append one row per order item to the orders sheet.

    Columns: order id, created date, supplier, item, quantity, store,
    payment method, order type, status, new item flag.
    Returns the number of rows appended.
    """
    if not order.items:
        return 0

    created = order.created_at.strftime('%Y-%m-%d %H:%M')
    values = []
    for entry in order.items:
        values.append([
            order.id, created, order.supplier, entry.item.name, entry.quantity,
            order.store_tag or '', order.payment_method or '',
            order.order_type or '', order.status,
            'yes' if entry.is_new_item else '',
        ])
    ws = _get_worksheet(client, spreadsheet_id, sheet_name)
    ws.append_rows(values, value_input_option='USER_ENTERED')
    return len(values)


# ============================================================
# Store
# ============================================================

class SheetsStore:
    """Dispatch-board store backed by a spreadsheet.

    Uses config['google_sheets']['output'] for the target sheet names
    (items, suppliers, orders). Each write hits the sheet first and only
    updates the in-memory lists after gspread returns.
    """

    def __init__(self, client, config, items=(), suppliers=()):
        gs = config.get('google_sheets') or {}
        self.client = client
        self.config = config
        self.spreadsheet_id = gs['spreadsheet_id']
        self.output = gs.get('output') or {}
        self.items = list(items)
        self.suppliers = list(suppliers)

    @classmethod
    def from_config(cls, client, config):
        """Store seeded from a config loaded by load_config_with_sheets."""
        return cls(client, config, catalog_from_config(config),
                   suppliers_from_config(config))

    def _sheet(self, key):
        mapping = self.output.get(key)
        if not mapping:
            raise KeyError(f'google_sheets.output.{key} is not configured')
        return mapping['sheet']

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
        append_supplier(self.client, self.spreadsheet_id,
                        self._sheet('suppliers'), supplier)
        self.suppliers.append(supplier)
        return supplier

    def create_item(self, name, category, supplier):
        if not name or not name.strip():
            raise ValueError('Item name is required')
        item = CatalogItem(id=uuid4().hex, name=name.strip(),
                           category=category or get_new_item_category(self.config),
                           supplier=supplier or '')
        append_catalog_item(self.client, self.spreadsheet_id,
                            self._sheet('items'), item)
        self.items.append(item)
        return item

    def create_order(self, order):
        count = append_pending_order(self.client, self.spreadsheet_id,
                                     self._sheet('orders'), order)
        log.info('wrote %d order rows for %s', count, order.supplier)
        return order
