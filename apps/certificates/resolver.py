"""Locate certificate records in the inbound archive and read their fields.

The archive schema is not ours and has drifted between versions of the
contact-form plugin, so every lookup walks an explicit, ordered list of
strategies. The first strategy that yields a usable value wins.
"""

import json
import logging
import re

from apps.certificates.codec import CertificateCodec, digits_to_serial
from apps.common.money import ZERO, to_money
from apps.records.store import InboundRecordStore

logger = logging.getLogger(__name__)

MONEY_IN_TEXT_RE = re.compile(r"\$\s*([0-9]+(?:\.[0-9]{1,2})?)")
NOT_MONEY_RE = re.compile(r"[^0-9.]")
FIELD_KEY_RE = re.compile(r"[^a-z0-9]+")

SERIAL_FIELD = "serial_number"
SERIAL_QUERY_KEYS = (
    "serial_number",
    "_field_serial_number",
    "field_serial_number",
    "serial-number",
    "serialnumber",
)
SERIAL_READ_KEYS = ("_serial_number", "_meta", *SERIAL_QUERY_KEYS)
LEGACY_META_BLOB_KEY = "_meta"

AMOUNT_FIELD = "gift_amount"
AMOUNT_FIELD_ALIASES = ("gift_amount", "giftamount", "gift_certificate_amount")
AMOUNT_ALTERNATE_KEYS = (
    "_field_gift_amount",
    "_field_gift-amount",
    "_fields",
    "fields",
    "_flamingo_fields",
    "message",
)
FIELD_BAG_KEYS = ("_fields", "fields", "_flamingo_fields")


def normalize_field_key(key):
    return FIELD_KEY_RE.sub("_", str(key).lower()).strip("_")


def _compact(key):
    return normalize_field_key(key).replace("_", "")


def field_key_matches(key, field_name):
    return _compact(key) == _compact(field_name)


def money_to_decimal(value):
    """Parse ``"$1,250.00"``-style text; anything unparseable is zero."""
    if isinstance(value, (int, float)):
        return to_money(value)
    cleaned = NOT_MONEY_RE.sub("", str(value or ""))
    return to_money(cleaned) if cleaned else ZERO


def money_in_text(text):
    if not isinstance(text, str) or not text:
        return ZERO
    match = MONEY_IN_TEXT_RE.search(text)
    return to_money(match.group(1)) if match else ZERO


def decode_bag(value):
    """Field bags are stored as serialized JSON; plain text stays as is."""
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str) and value.strip()[:1] in ("{", "["):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _bag_items(bag):
    if isinstance(bag, dict):
        return bag.items()
    if isinstance(bag, list):
        # Some plugin versions store [{"name": ..., "value": ...}, ...].
        items = []
        for entry in bag:
            if isinstance(entry, dict) and "name" in entry:
                items.append((entry["name"], entry))
            else:
                items.append(("", entry))
        return items
    return ()


def _unwrap(value):
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def find_in_bag(bag, field_name):
    """Depth-first search of a nested bag for ``field_name``; returns text or ``""``."""
    for key, value in _bag_items(bag):
        if key and field_key_matches(key, field_name):
            value = _unwrap(value)
            if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                return str(value)
        if isinstance(value, (dict, list)):
            nested = find_in_bag(value, field_name)
            if nested:
                return nested
    return ""


def find_amount_in_bag(bag):
    for key, value in _bag_items(bag):
        if key and normalize_field_key(key) in AMOUNT_FIELD_ALIASES:
            amount = money_to_decimal(_unwrap(value))
            if amount > 0:
                return amount
        if isinstance(value, (dict, list)):
            nested = find_amount_in_bag(value)
            if nested > 0:
                return nested
    return ZERO


def _amount_from_direct_field(record):
    return money_to_decimal(record.get_meta(AMOUNT_FIELD))


def _amount_from_alternate_keys(record):
    for key in AMOUNT_ALTERNATE_KEYS:
        raw = record.get_meta(key)
        if raw is None:
            continue
        bag = decode_bag(raw)
        amount = find_amount_in_bag(bag)
        if amount > 0:
            return amount
        if isinstance(bag, str):
            amount = money_in_text(bag) if not key.startswith("_field_") else money_to_decimal(bag)
            if amount > 0:
                return amount
    return ZERO


def _amount_from_record_text(record):
    for text in record.text_fields():
        amount = money_in_text(text)
        if amount > 0:
            return amount
    return ZERO


def _amount_from_any_meta_text(record):
    for values in record.meta.values():
        for value in values:
            amount = money_in_text(value)
            if amount > 0:
                return amount
    return ZERO


AMOUNT_STRATEGIES = (
    ("direct_field", _amount_from_direct_field),
    ("alternate_keys", _amount_from_alternate_keys),
    ("record_text", _amount_from_record_text),
    ("meta_text", _amount_from_any_meta_text),
)


def extract_amount(record):
    """Face value of ``record``; ``0`` means nothing usable was found."""
    if record is None:
        return ZERO
    for name, strategy in AMOUNT_STRATEGIES:
        amount = strategy(record)
        if amount > 0:
            logger.debug("Gift amount found", extra={"record_id": str(record.id), "strategy": name})
            return amount
    return ZERO


def extract_field(record, field_name):
    if record is None or not field_name:
        return ""
    wanted = normalize_field_key(field_name)

    direct = record.get_meta(wanted)
    if direct:
        return direct
    for key, values in record.meta.items():
        if field_key_matches(key, wanted) and values and values[0]:
            return values[0]

    for key in FIELD_BAG_KEYS:
        found = find_in_bag(decode_bag(record.get_meta(key)), wanted)
        if found:
            return found
    return ""


def _serial_from_read_keys(record):
    for key in SERIAL_READ_KEYS:
        value = record.get_meta(key)
        if not value:
            continue
        if key == LEGACY_META_BLOB_KEY:
            blob = decode_bag(value)
            if not isinstance(blob, dict) or SERIAL_FIELD not in blob:
                continue
            value = blob[SERIAL_FIELD]
        serial = digits_to_serial(value)
        if serial > 0:
            return serial
    return 0


def _serial_from_bags(record):
    for key in FIELD_BAG_KEYS:
        found = find_in_bag(decode_bag(record.get_meta(key)), SERIAL_FIELD)
        serial = digits_to_serial(found)
        if serial > 0:
            return serial
    return 0


def _serial_from_any_key(record):
    for key, values in record.meta.items():
        if normalize_field_key(key) != SERIAL_FIELD:
            continue
        for value in values:
            serial = digits_to_serial(value)
            if serial > 0:
                return serial
    return 0


SERIAL_STRATEGIES = (_serial_from_read_keys, _serial_from_bags, _serial_from_any_key)


def extract_serial(record):
    if record is None:
        return 0
    for strategy in SERIAL_STRATEGIES:
        serial = strategy(record)
        if serial > 0:
            return serial
    return 0


class ExternalRecordResolver:
    def __init__(self, store=None, codec=None):
        self.store = store or InboundRecordStore()
        self.codec = codec or CertificateCodec()

    def find_record_by_serial(self, serial, entered_code=""):
        candidates = self.codec.candidates(serial, entered_code)
        if not candidates:
            return None
        record = self.store.find_by_field_values(SERIAL_QUERY_KEYS, candidates)
        if record is None:
            record = self.store.search_values(candidates, marker=SERIAL_FIELD)
        return record

    extract_amount = staticmethod(extract_amount)
    extract_field = staticmethod(extract_field)
    extract_serial = staticmethod(extract_serial)
