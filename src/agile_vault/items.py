#!/usr/bin/env python3
"""Item data model - vault items and their (decrypted) content."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .crypto import new_uuid


class ItemTypes:
    """Type names used by the Agile Keychain format."""

    LOGIN = "webforms.WebForm"
    CREDIT_CARD = "wallet.financial.CreditCard"
    ROUTER = "wallet.computer.Router"
    SECURE_NOTE = "securenotes.SecureNote"
    PASSWORD = "passwords.Password"
    EMAIL = "wallet.onlineservices.Email.v2"
    BANK_ACCOUNT = "wallet.financial.BankAccountUS"
    DATABASE = "wallet.computer.Database"
    DRIVERS_LICENSE = "wallet.government.DriversLicense"
    MEMBERSHIP = "wallet.membership.Membership"
    HUNTING_LICENSE = "wallet.government.HuntingLicense"
    PASSPORT = "wallet.government.Passport"
    REWARD_PROGRAM = "wallet.membership.RewardProgram"
    SERVER = "wallet.computer.UnixServer"
    SOCIAL_SECURITY = "wallet.government.SsnUS"
    SOFTWARE_LICENSE = "wallet.computer.License"
    IDENTITY = "identities.Identity"
    FOLDER = "system.folder.Regular"
    SAVED_SEARCH = "system.folder.SavedSearch"
    # Marker left in place of a deleted item so deletions sync
    TOMBSTONE = "system.Tombstone"


class ChangeSource(Enum):
    """Origin of a save. Sync saves keep the timestamps they carry."""

    USER = "user"
    SYNC = "sync"


@dataclass
class ListItemsOptions:
    include_tombstones: bool = False


class FieldType(Enum):
    TEXT = "text"
    PASSWORD = "password"
    ADDRESS = "address"
    DATE = "date"
    MONTH_YEAR = "month-year"
    URL = "url"
    CREDIT_CARD_TYPE = "cctype"
    PHONE_NUMBER = "phone"
    GENDER = "gender"
    EMAIL = "email"
    MENU = "menu"


class FormFieldType(Enum):
    TEXT = "text"
    PASSWORD = "password"
    EMAIL = "email"
    CHECKBOX = "checkbox"
    INPUT = "input"


@dataclass
class ItemField:
    """A typed field inside an item section."""

    kind: FieldType = FieldType.TEXT
    name: str = ""
    title: str = ""
    value: Any = None


@dataclass
class ItemSection:
    name: str = ""
    title: str = ""
    fields: List[ItemField] = field(default_factory=list)


@dataclass
class WebFormField:
    """A saved HTML form input (login forms)."""

    id: str = ""
    name: str = ""
    type: FormFieldType = FormFieldType.TEXT
    designation: str = ""
    value: str = ""


@dataclass
class ItemUrl:
    label: str = ""
    url: str = ""


@dataclass
class ItemContent:
    """Decrypted part of an item."""

    sections: List[ItemSection] = field(default_factory=list)
    urls: List[ItemUrl] = field(default_factory=list)
    notes: Optional[str] = None
    form_fields: List[WebFormField] = field(default_factory=list)
    html_action: Optional[str] = None
    html_method: Optional[str] = None
    html_id: Optional[str] = None

    def _designated_value(self, designation: str) -> Optional[str]:
        for form_field in self.form_fields:
            if form_field.designation == designation:
                return form_field.value
        return None

    def username(self) -> Optional[str]:
        return self._designated_value("username")

    def password(self) -> Optional[str]:
        return self._designated_value("password")


def _now() -> datetime:
    # Vault files store whole seconds
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class Item:
    """A vault item.

    Only overview data lives here permanently. The encrypted content is
    fetched on demand through ``Vault.get_content()`` and cached in
    ``content`` once loaded or assigned.
    """

    uuid: str = field(default_factory=new_uuid)
    type_name: str = ItemTypes.LOGIN
    title: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    folder_uuid: Optional[str] = None
    fave_index: Optional[int] = None
    trashed: bool = False
    locations: List[str] = field(default_factory=list)
    open_contents: Optional[Dict[str, Any]] = None
    content: Optional[ItemContent] = field(default=None, repr=False, compare=False)

    def primary_location(self) -> str:
        return self.locations[0] if self.locations else ""

    def is_tombstone(self) -> bool:
        """True for the marker left behind by a removed item."""
        return self.type_name == ItemTypes.TOMBSTONE

    def set_content(self, content: ItemContent) -> None:
        self.content = content

    def update_timestamps(self) -> None:
        now = _now()
        if self.created_at is None:
            self.created_at = now
        self.updated_at = now

    def update_overview_from_content(self, content: ItemContent) -> None:
        """Refresh the overview's locations from the content's URLs."""
        self.locations = [item_url.url for item_url in content.urls]
