"""Tests for the key agent daemon and its client."""

import asyncio

import pytest
import pytest_asyncio

from agile_vault import crypto
from agile_vault.agent_daemon import KeyAgentServer, RemoteKeyAgent, ping_agent, send_request
from agile_vault.errors import AgentError, UnknownKeyError
from agile_vault.key_agent import CryptoParams
from agile_vault.protocol import parse_response
from agile_vault.vault import Vault

from conftest import TEST_ITERATIONS, TEST_PASSWORD, assert_log_entry


@pytest.fixture
def socket_path(temp_vault_dir):
    return temp_vault_dir / "agent" / "agent.sock"


@pytest_asyncio.fixture
async def server(socket_path, audit_logger):
    server = KeyAgentServer(socket_path=socket_path, audit_logger=audit_logger)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def remote(server, socket_path):
    return RemoteKeyAgent(socket_path)


class TestServerLifecycle:
    """Tests for starting and stopping the daemon."""

    @pytest.mark.asyncio
    async def test_start_creates_private_socket(self, server, socket_path):
        """Test the socket exists with owner-only permissions."""
        assert server.running
        assert socket_path.exists()
        assert oct(socket_path.stat().st_mode)[-3:] == "600"
        assert oct(socket_path.parent.stat().st_mode)[-3:] == "700"

    @pytest.mark.asyncio
    async def test_ping(self, server, socket_path):
        """Test a running agent answers ping."""
        assert await ping_agent(socket_path)

    @pytest.mark.asyncio
    async def test_ping_not_running(self, temp_vault_dir):
        """Test ping fails when no socket exists."""
        assert not await ping_agent(temp_vault_dir / "missing.sock")

    @pytest.mark.asyncio
    async def test_start_twice(self, server, socket_path):
        """Test a second server refuses to replace a live one."""
        with pytest.raises(AgentError, match="already running"):
            await KeyAgentServer(socket_path=socket_path).start()

    @pytest.mark.asyncio
    async def test_start_replaces_stale_socket(self, socket_path):
        """Test a leftover socket file from a dead agent is replaced."""
        socket_path.parent.mkdir(parents=True)
        socket_path.write_text("")

        server = KeyAgentServer(socket_path=socket_path)
        await server.start()
        try:
            assert await ping_agent(socket_path)
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_stop_forgets_keys(self, server, remote, socket_path):
        """Test stopping drops keys and removes the socket."""
        await remote.add_key("key1", b"secret")

        await server.stop()

        assert await server.agent.list_keys() == []
        assert not socket_path.exists()
        assert not server.running

    @pytest.mark.asyncio
    async def test_lifecycle_logged(self, server, audit_logger, socket_path):
        """Test start is recorded in the audit log."""
        assert assert_log_entry(audit_logger, "STARTED", "DAEMON", str(socket_path))


class TestRemoteKeyAgent:
    """Tests for the client side of the protocol."""

    @pytest.mark.asyncio
    async def test_add_list_forget(self, remote):
        """Test the key registry over the socket."""
        await remote.add_key("key1", b"key1")
        assert await remote.list_keys() == ["key1"]

        await remote.forget_keys()
        assert await remote.list_keys() == []

    @pytest.mark.asyncio
    async def test_encrypt_decrypt(self, remote):
        """Test encrypting and decrypting with a remote key."""
        await remote.add_key("key1", b"the master key")
        plaintext = b'{"secret":"secret-data"}'

        ciphertext = await remote.encrypt("key1", plaintext, CryptoParams())

        assert ciphertext.startswith(crypto.SALT_MARKER)
        assert crypto.decrypt_item_data(b"the master key", ciphertext) == plaintext
        assert await remote.decrypt("key1", ciphertext, CryptoParams()) == plaintext

    @pytest.mark.asyncio
    async def test_unknown_key(self, remote):
        """Test unknown key ids raise UnknownKeyError on the client."""
        with pytest.raises(UnknownKeyError) as exc_info:
            await remote.encrypt("missing", b"data", CryptoParams())
        assert exc_info.value.key_id == "missing"

    @pytest.mark.asyncio
    async def test_not_running(self, temp_vault_dir):
        """Test calls fail cleanly without a daemon."""
        remote = RemoteKeyAgent(temp_vault_dir / "missing.sock")

        with pytest.raises(AgentError, match="AGENT_NOT_RUNNING"):
            await remote.list_keys()

    @pytest.mark.asyncio
    async def test_invalid_request_line(self, server, socket_path):
        """Test malformed lines get an error response, not a hang-up."""
        line = await send_request(socket_path, "not json")

        assert '"INVALID_REQUEST"' in line

    @pytest.mark.asyncio
    async def test_concurrent_clients(self, remote):
        """Test several requests in flight at once."""
        await remote.add_key("key1", b"the master key")

        results = await asyncio.gather(*(
            remote.encrypt("key1", f"item {i}".encode(), CryptoParams()) for i in range(10)
        ))

        decrypted = [crypto.decrypt_item_data(b"the master key", r) for r in results]
        assert decrypted == [f"item {i}".encode() for i in range(10)]


class TestVaultWithRemoteAgent:
    """Tests for a vault whose keys live in the daemon."""

    @pytest.mark.asyncio
    async def test_vault_roundtrip(self, server, socket_path, memory_fs, make_login):
        """Test unlock, save and decrypt through the daemon."""
        vault = await Vault.create_vault(
            memory_fs, "remote", TEST_PASSWORD, "", iterations=TEST_ITERATIONS,
            agent=RemoteKeyAgent(socket_path),
        )
        await vault.unlock(TEST_PASSWORD)
        item = make_login(password="kept remotely")
        await vault.save_item(item)

        # A second client sees the vault as unlocked
        other = Vault(memory_fs, vault.path, agent=RemoteKeyAgent(socket_path))
        assert not await other.is_locked()
        assert (await other.get_content(item)).password() == "kept remotely"

        await other.lock()
        assert await vault.is_locked()


class TestRequestValidation:
    """Tests for malformed requests reaching the server."""

    @pytest.mark.asyncio
    async def test_payload_not_object(self, audit_logger):
        """Test a list payload gets INVALID_REQUEST instead of dropping the connection."""
        server = KeyAgentServer(audit_logger=audit_logger)

        line = await server._process_request('{"request_id":"1","action":"encrypt","payload":[1]}')

        response = parse_response(line)
        assert response.status == "error"
        assert response.error["code"] == "INVALID_REQUEST"
        assert assert_log_entry(audit_logger, "ERROR", "REQUEST", "-")

    @pytest.mark.asyncio
    async def test_payload_not_object_over_socket(self, server, socket_path):
        """Test the connection answers a list payload and keeps serving."""
        line = await send_request(socket_path, '{"request_id":"1","action":"encrypt","payload":[1]}')

        assert parse_response(line).error["code"] == "INVALID_REQUEST"
        assert await ping_agent(socket_path)
