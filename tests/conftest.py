"""Pytest fixtures and utilities for agile-vault tests."""

import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from agile_vault.items import Item, ItemContent, ItemUrl, WebFormField, FormFieldType
from agile_vault.vault import Vault
from agile_vault.vfs import MemoryFileSystem

# Keeps PBKDF2 cheap; the on-disk format is the same at any work factor
TEST_ITERATIONS = 100
TEST_PASSWORD = "the master key"
TEST_HINT = "the usual"


@pytest.fixture
def temp_vault_dir():
    """Create a temporary directory for vault files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def memory_fs():
    return MemoryFileSystem()


@pytest_asyncio.fixture
async def new_vault(memory_fs):
    """A freshly created, still locked vault in memory."""
    return await Vault.create_vault(
        memory_fs, "test", TEST_PASSWORD, TEST_HINT, iterations=TEST_ITERATIONS
    )


@pytest_asyncio.fixture
async def unlocked_vault(new_vault):
    await new_vault.unlock(TEST_PASSWORD)
    yield new_vault
    await new_vault.lock()


@pytest.fixture
def audit_logger(temp_vault_dir):
    """Create an audit logger with temp log path."""
    from agile_vault.audit import AuditLogger
    return AuditLogger(temp_vault_dir / "logs" / "access.log")


@pytest.fixture
def make_login():
    """Factory for login items with their content already attached."""
    def _make_login(title="Example", url="https://example.com", username="jim", password="secret", uuid=None):
        item = Item(title=title) if uuid is None else Item(uuid=uuid, title=title)
        item.set_content(ItemContent(
            urls=[ItemUrl(label="website", url=url)],
            form_fields=[
                WebFormField(id="u", name="user", type=FormFieldType.TEXT, designation="username", value=username),
                WebFormField(id="p", name="pass", type=FormFieldType.PASSWORD, designation="password", value=password),
            ],
        ))
        return item
    return _make_login


def assert_log_entry(audit_logger, result, action, target=None):
    """Helper to verify a log entry exists."""
    for line in audit_logger.read_recent(100):
        parts = line.strip().split()
        if len(parts) >= 5 and parts[2] == result and parts[3] == action:
            if target is None or parts[4] == target:
                return True
    return False
