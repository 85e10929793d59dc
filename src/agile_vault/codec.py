#!/usr/bin/env python3
"""Agile Keychain JSON codec.

Converts between the in-memory item model and the JSON stored in
``<uuid>.1password`` files, the decrypted item content, the
``encryptionKeys.js`` key list and the ``contents.js`` index rows.
"""

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import FormatError
from .items import (
    FieldType,
    FormFieldType,
    Item,
    ItemContent,
    ItemField,
    ItemSection,
    ItemUrl,
    WebFormField,
)
from .key_wrap import DEFAULT_SECURITY_LEVEL, EncryptionKeyEntry

FIELD_KIND_CODES = {
    FieldType.TEXT: "string",
    FieldType.PASSWORD: "concealed",
    FieldType.ADDRESS: "address",
    FieldType.DATE: "date",
    FieldType.MONTH_YEAR: "monthYear",
    FieldType.URL: "URL",
    FieldType.CREDIT_CARD_TYPE: "cctype",
    FieldType.PHONE_NUMBER: "phone",
    FieldType.GENDER: "gender",
    FieldType.EMAIL: "email",
    FieldType.MENU: "menu",
}
FIELD_KINDS = {code: kind for kind, code in FIELD_KIND_CODES.items()}

# Single-char codes for HTML input types in .1password files
FORM_FIELD_TYPE_CODES = {
    FormFieldType.TEXT: "T",
    FormFieldType.PASSWORD: "P",
    FormFieldType.EMAIL: "E",
    FormFieldType.CHECKBOX: "C",
    FormFieldType.INPUT: "I",
}
FORM_FIELD_TYPES = {code: kind for kind, code in FORM_FIELD_TYPE_CODES.items()}

INDEX_ROW_SIZE = 8
INDEX_RESERVED_PLACEHOLDER = 0


def parse_json(text: str, what: str) -> Any:
    """Parse JSON from a vault file, raising FormatError with context."""
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise FormatError(f"Invalid JSON in {what}: {e}") from e


def dump_compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def unix_timestamp(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp())


def date_from_unix(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


# -- items ----------------------------------------------------------------

def to_keychain_item(item: Item, encrypted: bytes, level: str = DEFAULT_SECURITY_LEVEL) -> Dict[str, Any]:
    """Build the JSON object for a ``.1password`` file.

    Args:
        item: The item to serialize
        encrypted: The ``Salted__`` blob holding the item's content
        level: Security level of the key used for ``encrypted``

    """
    return _drop_none({
        "createdAt": unix_timestamp(item.created_at),
        "updatedAt": unix_timestamp(item.updated_at),
        "title": item.title,
        "securityLevel": level,
        "encrypted": base64.b64encode(encrypted).decode("ascii"),
        "typeName": item.type_name,
        "uuid": item.uuid,
        "location": item.primary_location(),
        "folderUuid": item.folder_uuid,
        "faveIndex": item.fave_index,
        "trashed": item.trashed,
        "openContents": item.open_contents,
    })


def from_keychain_item(data: Dict[str, Any]) -> Item:
    """Parse a ``.1password`` JSON object. Content stays encrypted."""
    if not isinstance(data, dict) or "uuid" not in data:
        raise FormatError("Item file is missing the 'uuid' field")

    item = Item(
        uuid=data["uuid"],
        type_name=data.get("typeName", ""),
        title=data.get("title", ""),
        created_at=date_from_unix(data.get("createdAt")),
        updated_at=date_from_unix(data.get("updatedAt")),
        folder_uuid=data.get("folderUuid"),
        fave_index=data.get("faveIndex"),
        trashed=bool(data.get("trashed", False)),
        open_contents=data.get("openContents"),
    )
    if data.get("location"):
        item.locations.append(data["location"])

    # Some exports carry the content unencrypted
    if data.get("secureContents"):
        item.set_content(from_keychain_content(data["secureContents"]))
    return item


def item_security_level(data: Dict[str, Any]) -> str:
    return data.get("securityLevel") or DEFAULT_SECURITY_LEVEL


def item_encrypted_data(data: Dict[str, Any]) -> bytes:
    """Decode the ``encrypted`` field of a ``.1password`` object."""
    try:
        return base64.b64decode(data["encrypted"], validate=True)
    except KeyError as e:
        raise FormatError("Item file has no 'encrypted' field") from e
    except (binascii.Error, ValueError, TypeError) as e:
        raise FormatError("Item 'encrypted' field is not valid base64") from e


# -- content --------------------------------------------------------------

def to_keychain_field(item_field: ItemField) -> Dict[str, Any]:
    return {
        "k": FIELD_KIND_CODES[item_field.kind],
        "n": item_field.name,
        "t": item_field.title,
        "v": item_field.value,
    }


def from_keychain_field(data: Dict[str, Any]) -> ItemField:
    return ItemField(
        kind=FIELD_KINDS.get(data.get("k"), FieldType.TEXT),
        name=data.get("n", ""),
        title=data.get("t", ""),
        value=data.get("v"),
    )


def to_keychain_form_field(form_field: WebFormField) -> Dict[str, Any]:
    return {
        "id": form_field.id,
        "name": form_field.name,
        "type": FORM_FIELD_TYPE_CODES[form_field.type],
        "designation": form_field.designation,
        "value": form_field.value,
    }


def from_keychain_form_field(data: Dict[str, Any]) -> WebFormField:
    return WebFormField(
        id=data.get("id", ""),
        name=data.get("name", ""),
        type=FORM_FIELD_TYPES.get(data.get("type"), FormFieldType.TEXT),
        designation=data.get("designation", ""),
        value=data.get("value", ""),
    )


def to_keychain_content(content: ItemContent) -> Dict[str, Any]:
    """Convert ItemContent into the JSON blob that gets encrypted."""
    return _drop_none({
        "sections": [
            {
                "name": section.name,
                "title": section.title,
                "fields": [to_keychain_field(f) for f in section.fields],
            }
            for section in content.sections
        ],
        "URLs": [{"label": u.label, "url": u.url} for u in content.urls],
        "notesPlain": content.notes,
        "fields": [to_keychain_form_field(f) for f in content.form_fields],
        "htmlAction": content.html_action,
        "htmlMethod": content.html_method,
        "htmlID": content.html_id,
    })


def from_keychain_content(data: Dict[str, Any]) -> ItemContent:
    """Convert a decrypted JSON content blob into ItemContent."""
    if not isinstance(data, dict):
        raise FormatError("Item content is not a JSON object")

    content = ItemContent()
    for section in data.get("sections") or []:
        content.sections.append(ItemSection(
            name=section.get("name", ""),
            title=section.get("title", ""),
            fields=[from_keychain_field(f) for f in section.get("fields") or []],
        ))
    for item_url in data.get("URLs") or []:
        content.urls.append(ItemUrl(label=item_url.get("label", ""), url=item_url.get("url", "")))
    if data.get("notesPlain"):
        content.notes = data["notesPlain"]
    for form_field in data.get("fields") or []:
        content.form_fields.append(from_keychain_form_field(form_field))
    content.html_action = data.get("htmlAction") or None
    content.html_method = data.get("htmlMethod") or None
    content.html_id = data.get("htmlID") or None
    return content


# -- encryptionKeys.js ----------------------------------------------------

def parse_key_list(text: str) -> List[EncryptionKeyEntry]:
    """Parse encryptionKeys.js into its entries (all levels)."""
    key_list = parse_json(text, "encryptionKeys.js")
    if not isinstance(key_list, dict) or "list" not in key_list:
        raise FormatError("Missing `list` entry in encryptionKeys.js file")
    return [EncryptionKeyEntry.from_dict(entry) for entry in key_list["list"]]


def dump_key_list(entries: List[EncryptionKeyEntry]) -> str:
    """Serialize entries as ``{"list": [...], "<level>": "<identifier>"}``."""
    key_list: Dict[str, Any] = {"list": [entry.to_dict() for entry in entries]}
    for entry in entries:
        key_list[entry.level] = entry.identifier
    return json.dumps(key_list, indent=2)


# -- contents.js ----------------------------------------------------------

def parse_index(text: str) -> List[List[Any]]:
    rows = parse_json(text, "contents.js")
    if not isinstance(rows, list) or not all(isinstance(row, list) for row in rows):
        raise FormatError("contents.js must be a JSON array of rows")
    return rows


def dump_index(rows: List[List[Any]]) -> str:
    return dump_compact(rows)


def update_index_row(rows: List[List[Any]], item: Item) -> List[Any]:
    """Write ``item``'s overview into its row, appending a row if needed.

    The reserved slot (index 6) keeps whatever value an existing row has.
    """
    row = next((r for r in rows if r and r[0] == item.uuid), None)
    if row is None:
        row = [None] * INDEX_ROW_SIZE
        row[6] = INDEX_RESERVED_PLACEHOLDER
        rows.append(row)
    elif len(row) < INDEX_ROW_SIZE:
        row.extend([None] * (INDEX_ROW_SIZE - len(row)))

    row[0] = item.uuid
    row[1] = item.type_name
    row[2] = item.title
    row[3] = item.primary_location()
    row[4] = unix_timestamp(item.updated_at) or 0
    row[5] = item.folder_uuid
    row[7] = "Y" if item.trashed else "N"
    return row


def item_from_index_row(row: List[Any]) -> Item:
    """Build a lightweight item (overview fields only) from an index row."""
    row = list(row) + [None] * (INDEX_ROW_SIZE - len(row))
    item = Item(
        uuid=row[0],
        type_name=row[1],
        title=row[2],
        updated_at=date_from_unix(row[4]),
        folder_uuid=row[5],
        trashed=row[7] == "Y",
    )
    if row[3]:
        item.locations.append(row[3])
    return item
