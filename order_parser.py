"""Bulk order parser.

Turns pasted, loosely-structured order text (chat messages, transcribed
handwritten lists) into catalog-matched order lines.
"""

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional
from uuid import uuid4

from rapidfuzz.distance import Levenshtein

log = logging.getLogger(__name__)


# ============================================================
# Vocabulary defaults
# ============================================================

UNITS = (
    'kg', 'g', 'l', 'ml', 'pc', 'pcs', 'can', 'cans', 'bt', 'bottle', 'bottles',
    'pk', 'pack', 'packs', 'jar', 'jars', 'bag', 'bags', 'small', 'big',
    'lb', 'lbs', 'oz',
)

STOPWORDS = ('for', 'of', 'the', 'a', 'an', 'and', 'to')

QUICK_UNITS = (
    'pcs', 'kg', 'g', 'l', 'bt', 'pk', 'jar', 'bag', 'small', 'big',
    'box', 'can', 'pack', 'piece', 'pieces',
)

STAFF_FOOD_MARKERS = ('staff food', 'food staff', 'food for staff')
STAFF_FOOD_CATEGORY = 'Staff Food'
STAFF_FOOD_SUPPLIER = 'Pisey'

DEFAULT_MATCHING = {
    'long_threshold': 0.4,
    'short_threshold': 0.5,
    'long_length': 8,
    'min_contains_length': 3,
}


# ============================================================
# Data model
# ============================================================

@dataclass(frozen=True)
class CatalogItem:
    id: str
    name: str
    category: str = ''
    supplier: str = ''


@dataclass(eq=False)
class ParsedLine:
    """One pasted line resolved against the catalog.

    Lines compare by identity: two lines with the same text are still two
    separate order lines. item_created is set once the dispatch board has
    catalogued the line's item, so it still counts as new after linking.
    """
    raw_text: str
    extracted_name: str
    quantity: float = 1
    matched_item: Optional[CatalogItem] = None
    resolved_supplier: Optional[str] = None
    resolved_category: Optional[str] = None
    item_created: bool = False
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def display_name(self):
        if self.matched_item is not None:
            return self.matched_item.name
        return self.extracted_name

    @property
    def is_new_item(self):
        return self.matched_item is None or self.item_created


@dataclass
class Extraction:
    name: str
    quantity: float = 1

    @property
    def has_name(self):
        """False when nothing usable as a product name was left over."""
        return bool(self.name) and not _NUMERIC_ONLY.match(self.name)


@dataclass
class QuickOrder:
    item: CatalogItem
    quantity: float


@dataclass
class ParseSummary:
    matched: int = 0
    suppliers: int = 0
    new_items: int = 0

    def message(self):
        def plural(n, word):
            return f'{n} {word}' + ('' if n == 1 else 's')
        return (f'Found {self.matched} items from {plural(self.suppliers, "supplier")}'
                f' and {plural(self.new_items, "new item")}')


# ============================================================
# Compiled vocabulary
# ============================================================

_NON_WORD = re.compile(r'[^\w\s-]')
_SEPARATORS = re.compile(r'[\s-]+')
_WHITESPACE = re.compile(r'\s+')
_NUMERIC_ONLY = re.compile(r'^[\d\s.,]+$')
_KHMER = re.compile(r'[\u1780-\u17FF]')


def _word_pattern(words):
    # Longest first so 'pcs' wins over 'pc'
    alternation = '|'.join(re.escape(w) for w in sorted(words, key=len, reverse=True))
    return re.compile(rf'\b(?:{alternation})\b', re.IGNORECASE)


class _Vocabulary:
    def __init__(self, units, stopwords):
        self.units = frozenset(u.lower() for u in units)
        self.unit_re = _word_pattern(units)
        self.stopword_re = _word_pattern(stopwords)
        unit_alt = '|'.join(re.escape(u) for u in sorted(units, key=len, reverse=True))
        # Letters glued to the digits ('2x', '3btl') are always dropped; a
        # spaced word only when it is a known unit.
        self.leading_re = re.compile(
            rf'^(?P<qty>\d+(?:\.\d+)?)(?:[a-zA-Z]+|\s*(?:{unit_alt})\b)?\s+(?P<name>.+)$',
            re.IGNORECASE)


@lru_cache(maxsize=32)
def _vocabulary(units, stopwords):
    return _Vocabulary(units, stopwords)


def _vocab(config):
    if not config:
        return _vocabulary(UNITS, STOPWORDS)
    return _vocabulary(tuple(config.get('units', UNITS)),
                       tuple(config.get('stopwords', STOPWORDS)))


def _matching_option(config, key):
    matching = (config or {}).get('matching') or {}
    return matching.get(key, DEFAULT_MATCHING[key])


# ============================================================
# Normalization
# ============================================================

def _normalize_once(text, vocab):
    s = text.lower().strip()
    s = vocab.unit_re.sub('', s)
    s = vocab.stopword_re.sub('', s)
    s = _NON_WORD.sub('', s).strip()
    if s.endswith('s'):
        s = s[:-1]
    return _SEPARATORS.sub(' ', s).strip()


def normalize(text, config=None):
    """Canonical form of a product name used for every comparison.

    Lowercases, drops unit words and stopwords, drops punctuation, strips
    one trailing plural 's' from the whole string and collapses
    whitespace and hyphens.

    The whole pass repeats until the text stops changing, so
    normalize(normalize(s)) == normalize(s). This deliberately strips more
    than one trailing "s": "glass" becomes "gla", and a unit exposed by
    the plural strip is removed too ("kgs" becomes "").
    """
    vocab = _vocab(config)
    result = _normalize_once(text or '', vocab)
    while True:
        again = _normalize_once(result, vocab)
        if again == result:
            return result
        result = again


# ============================================================
# Quantity / name extraction
# ============================================================

_ATTACHED = re.compile(r'^(?P<name>.*?[^\d\s.])(?P<qty>\d+(?:\.\d+)?)(?P<unit>[a-zA-Z]*)$')
_SPACED = re.compile(
    r'^(?P<name>.+?)\s+(?P<qty>\d+(?:\.\d+)?)(?:\s*(?P<unit>[a-zA-Z]+(?:\s+[a-zA-Z]+)*))?$')
_BARE = re.compile(r'^(?P<qty>\d+(?:\.\d+)?)\s*(?P<unit>[a-zA-Z]*)$')


def _split_unit(name, unit, vocab):
    """Drop trailing unit words; words that are not units stay in the name."""
    if not unit:
        return name
    kept = [w for w in unit.split() if w.lower() not in vocab.units]
    return ' '.join([name] + kept)


def _extract_attached(line, vocab):
    m = _ATTACHED.match(line)
    if m:
        return _split_unit(m.group('name'), m.group('unit'), vocab), m.group('qty')
    return None


def _extract_spaced(line, vocab):
    m = _SPACED.match(line)
    if m:
        return _split_unit(m.group('name'), m.group('unit'), vocab), m.group('qty')
    return None


def _extract_leading(line, vocab):
    m = vocab.leading_re.match(line)
    if m:
        return m.group('name'), m.group('qty')
    return None


def _extract_bare_number(line, vocab):
    m = _BARE.match(line)
    if m:
        return _split_unit('', m.group('unit'), vocab), m.group('qty')
    return None


# Order matters: the patterns overlap, first hit wins.
EXTRACTORS = [
    _extract_attached,
    _extract_spaced,
    _extract_leading,
    _extract_bare_number,
]


def _to_quantity(text):
    try:
        value = float(text)
    except (TypeError, ValueError):
        return 1
    if value <= 0:
        return 1
    return int(value) if value == int(value) else value


def extract(line, config=None):
    """Split a line into product name and quantity.

    >>> extract('Cucumber4pcs')
    Extraction(name='Cucumber', quantity=4)
    >>> extract('30 pcs Egg')
    Extraction(name='Egg', quantity=30)
    """
    vocab = _vocab(config)
    text = (line or '').strip()
    name, quantity = text, 1
    for strategy in EXTRACTORS:
        hit = strategy(text, vocab)
        if hit is not None:
            name, quantity = hit[0], _to_quantity(hit[1])
            break
    name = vocab.unit_re.sub('', name)
    name = _WHITESPACE.sub(' ', name).strip()
    return Extraction(name=name, quantity=quantity)


# ============================================================
# Catalog matching
# ============================================================

@dataclass(frozen=True)
class _Candidate:
    item: Optional[CatalogItem]
    normalized: str
    compact: str
    words: frozenset


def _candidate(item, text, config):
    normalized = normalize(text, config)
    return _Candidate(item=item, normalized=normalized,
                      compact=normalized.replace(' ', ''),
                      words=frozenset(normalized.split()))


def _prepare(catalog, config):
    return [_candidate(item, item.name, config) for item in catalog]


def similarity(a, b):
    """1 - distance / longest length; 0.0 for two empty strings."""
    if not a and not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def _match_exact(search, candidates, config):
    for c in candidates:
        if c.normalized == search.normalized:
            return c.item
    return None


def _match_word_overlap(search, candidates, config):
    for c in candidates:
        if not c.words:
            continue
        if search.words <= c.words or c.words <= search.words:
            return c.item
    return None


def _match_substring(search, candidates, config):
    for c in candidates:
        if not c.compact:
            continue
        if search.compact in c.compact or c.compact in search.compact:
            return c.item
    return None


def _match_edit_distance(search, candidates, config):
    long_length = _matching_option(config, 'long_length')
    best, best_score = None, 0.0
    for c in candidates:
        longest = max(len(search.compact), len(c.compact))
        if longest == 0:
            continue
        score = similarity(search.compact, c.compact)
        if longest >= long_length:
            threshold = _matching_option(config, 'long_threshold')
        else:
            threshold = _matching_option(config, 'short_threshold')
        # Strictly greater: ties keep the earliest catalog item
        if score > threshold and score > best_score:
            best, best_score = c.item, score
    return best


def _match_contains(search, candidates, config):
    if len(search.normalized) <= _matching_option(config, 'min_contains_length'):
        return None
    for c in candidates:
        if search.normalized in c.normalized:
            return c.item
    return None


# Evaluated in order; later stages only run when earlier ones miss.
MATCH_STAGES = [
    _match_exact,
    _match_word_overlap,
    _match_substring,
    _match_edit_distance,
    _match_contains,
]


def _match_candidates(search_name, candidates, config, stages):
    search = _candidate(None, search_name, config)
    # Trailing descriptors ("Milk fresh cold") get dropped one word at a
    # time while more than two words remain.
    attempts = len(search.normalized.split())
    while search.normalized and attempts > 0:
        attempts -= 1
        for stage in stages:
            item = stage(search, candidates, config)
            if item is not None:
                return item
        words = search.normalized.split()
        if len(words) <= 2:
            return None
        search = _candidate(None, ' '.join(words[:-1]), config)
    return None


def match(search_name, catalog, config=None, stages=None):
    """Best catalog item for *search_name*, or None.

    Runs exact, word-overlap, substring, edit-distance and containment
    checks in that order and returns the first hit. None is the normal
    answer for an item that is not in the catalog yet.
    """
    if stages is None:
        stages = MATCH_STAGES
    return _match_candidates(search_name, _prepare(catalog, config), config, stages)


# ============================================================
# Line parsing
# ============================================================

_BULLET = re.compile(r'^(?:[-•*●○■□▪▫⦿⦾]\s*|\[[ xX]\]\s*)+')
_LIST_NUMBER = re.compile(r'^\d+[.)-]\s*')


def _strip_bullet(text):
    return _BULLET.sub('', text).strip()


def is_khmer(text):
    return bool(_KHMER.search(text or ''))


def _is_staff_food_marker(text, markers):
    lower = text.lower()
    return any(marker.lower() in lower for marker in markers)


def parse_lines(raw_text, catalog, config=None):
    """Parse a pasted multi-line order into ParsedLines, in input order.

    A line containing a staff-food marker ("staff food", ...) opens the
    staff-food section and produces no output. Unmatched Khmer lines in
    that section get the staff-food category and supplier; every other
    unmatched line is left without supplier or category.
    """
    config = config or {}
    staff = config.get('staff_food') or {}
    markers = staff.get('markers', STAFF_FOOD_MARKERS)
    staff_category = staff.get('category', STAFF_FOOD_CATEGORY)
    staff_supplier = staff.get('supplier', STAFF_FOOD_SUPPLIER)

    candidates = _prepare(catalog, config)
    parsed = []
    in_staff_food = False

    for raw in (raw_text or '').splitlines():
        text = _strip_bullet(raw.strip())
        if not text:
            continue
        if _is_staff_food_marker(text, markers):
            in_staff_food = True
            continue

        extraction = extract(text, config)
        item = None
        if extraction.has_name:
            item = _match_candidates(extraction.name, candidates, config, MATCH_STAGES)

        line = ParsedLine(raw_text=raw, extracted_name=extraction.name,
                          quantity=extraction.quantity, matched_item=item)
        if item is not None:
            line.resolved_supplier = item.supplier or None
            line.resolved_category = item.category or None
        elif in_staff_food and is_khmer(extraction.name):
            line.resolved_supplier = staff_supplier
            line.resolved_category = staff_category

        log.debug('parsed %r -> %r x%s (%s)', raw, extraction.name,
                  extraction.quantity, item.name if item else 'no match')
        parsed.append(line)

    return parsed


def summarize(lines):
    matched = [l for l in lines if l.matched_item is not None]
    suppliers = {l.resolved_supplier for l in matched if l.resolved_supplier}
    return ParseSummary(matched=len(matched), suppliers=len(suppliers),
                        new_items=len(lines) - len(matched))


# ============================================================
# Text cleaning
# ============================================================

def clean_text(raw_text, config=None):
    """Tidy a pasted list: drop bullets, list numbers, checkboxes and units."""
    vocab = _vocab(config)
    cleaned = []
    for line in (raw_text or '').splitlines():
        text = line.strip()
        text = _strip_bullet(text)
        text = _LIST_NUMBER.sub('', text)
        text = _strip_bullet(text)
        text = vocab.unit_re.sub('', text)
        text = _WHITESPACE.sub(' ', text).strip()
        if text:
            cleaned.append(text)
    return '\n'.join(cleaned)


# ============================================================
# Quick single-line entry
# ============================================================

_QUICK = re.compile(r'^(.*?)(?:\s+|\s*-\s*)(\d+)(?:\s*([a-zA-Z]+))?$')


@lru_cache(maxsize=32)
def _trailing_unit_re(units):
    alternation = '|'.join(re.escape(u) for u in sorted(units, key=len, reverse=True))
    return re.compile(rf'\b(?:{alternation})$', re.IGNORECASE)


def parse_quick_order(text, catalog, config=None):
    """Resolve a one-line entry like 'Cucumber 4pcs' to (item, quantity).

    Only exact name equality and "catalog name contains the text" are
    tried, no fuzzy matching. Returns None when the text has no trailing
    number or nothing in the catalog fits.
    """
    units = tuple((config or {}).get('quick_units', QUICK_UNITS))
    m = _QUICK.match((text or '').strip())
    if not m:
        return None

    raw_name, qty, unit = m.groups()
    name = raw_name.strip()
    if unit and unit.lower() in {u.lower() for u in units}:
        name = re.sub(rf'\b{re.escape(unit)}$', '', name, flags=re.IGNORECASE).strip()
    name = _trailing_unit_re(units).sub('', name).strip()

    term = name.lower()
    if not term:
        return None
    found = next((i for i in catalog if i.name.lower() == term), None)
    if found is None:
        found = next((i for i in catalog if term in i.name.lower()), None)
    if found is None:
        return None
    return QuickOrder(item=found, quantity=_to_quantity(qty))
