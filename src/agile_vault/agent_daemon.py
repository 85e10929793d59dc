#!/usr/bin/env python3
"""Key Agent Daemon - Serves a key agent over a Unix socket.

Lets unlocked master keys live in a separate, longer-lived process than the
UI or CLI that drives the vault. Vaults reach it through RemoteKeyAgent,
which speaks the newline-delimited JSON protocol in ``protocol``.
"""

import argparse
import asyncio
import itertools
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .audit import AuditLogger
from .errors import AgentError
from .key_agent import CryptoParams, KeyAgent, SimpleKeyAgent
from .protocol import (
    Request,
    decode_bytes,
    encode_bytes,
    error_response,
    handle_request,
    parse_request,
    parse_response,
    raise_for_error,
    serialize_request,
    serialize_response,
)

# Daemon paths
AGENT_DIR = Path(os.environ.get("AGILE_VAULT_AGENT_DIR", Path.home() / ".agile-vault"))
SOCKET_PATH = AGENT_DIR / "agent.sock"
PID_FILE = AGENT_DIR / "agent.pid"
LOG_PATH = AGENT_DIR / "access.log"

# Constants
SOCKET_TIMEOUT = 5.0
MAX_LINE_SIZE = 1024 * 1024


class KeyAgentServer:
    """Accepts connections and answers key agent requests."""

    def __init__(
        self,
        agent: Optional[KeyAgent] = None,
        socket_path: Optional[Path] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.agent = agent or SimpleKeyAgent()
        self.socket_path = Path(socket_path or SOCKET_PATH)
        self.audit_logger = audit_logger
        self.server: Optional[asyncio.AbstractServer] = None

    @property
    def running(self) -> bool:
        return self.server is not None and self.server.is_serving()

    def _audit(self, result: str, action: str, target: str, reason: Optional[str] = None) -> None:
        if self.audit_logger:
            self.audit_logger.log_event("agent", result, action, target, reason)

    async def start(self) -> None:
        """Bind the socket (0600) and start accepting connections."""
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self.socket_path.parent.chmod(0o700)

        if self.socket_path.exists():
            if await ping_agent(self.socket_path):
                raise AgentError(f"Key agent already running on {self.socket_path}")
            # Left behind by a crashed daemon
            self.socket_path.unlink()

        self.server = await asyncio.start_unix_server(
            self._handle_connection,
            path=str(self.socket_path),
            limit=MAX_LINE_SIZE,
        )
        self.socket_path.chmod(0o600)
        self._audit("STARTED", "DAEMON", str(self.socket_path))

    async def stop(self) -> None:
        """Stop serving, drop all keys and remove the socket."""
        if self.server is None:
            return

        self.server.close()
        await self.server.wait_closed()
        self.server = None

        await self.agent.forget_keys()
        if self.socket_path.exists():
            self.socket_path.unlink()
        self._audit("STOPPED", "DAEMON", str(self.socket_path))

    async def serve_forever(self) -> None:
        if self.server is None:
            await self.start()
        await self.server.serve_forever()

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=SOCKET_TIMEOUT)
                if not line:
                    break
                response = await self._process_request(line.decode("utf-8").strip())
                writer.write((response + "\n").encode("utf-8"))
                await writer.drain()
        except (asyncio.TimeoutError, ConnectionError, asyncio.IncompleteReadError, ValueError):
            pass
        finally:
            writer.close()

    async def _process_request(self, request_str: str) -> str:
        try:
            request = parse_request(request_str)
        except ValueError as e:
            self._audit("ERROR", "REQUEST", "-", str(e))
            return serialize_response(error_response("unknown", "INVALID_REQUEST", str(e)))

        try:
            response = await handle_request(request, self.agent)
        except Exception as e:
            self._audit("ERROR", request.action.upper(), request.payload.get("id", "-"), str(e))
            return serialize_response(error_response(request.request_id, "AGENT_ERROR", str(e)))

        if response.status != "ok":
            self._audit("DENIED", request.action.upper(), request.payload.get("id", "-"), response.error["code"])
        return serialize_response(response)


class RemoteKeyAgent(KeyAgent):
    """KeyAgent client talking to a KeyAgentServer over its Unix socket."""

    def __init__(self, socket_path: Optional[Path] = None, timeout: float = SOCKET_TIMEOUT):
        self.socket_path = Path(socket_path or SOCKET_PATH)
        self.timeout = timeout
        self._request_ids = itertools.count(1)

    async def _call(self, action: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        request = Request(
            request_id=f"req-{action}-{next(self._request_ids)}",
            action=action,
            payload=payload or {},
        )
        line = await send_request(self.socket_path, serialize_request(request), self.timeout)
        return raise_for_error(parse_response(line))

    async def add_key(self, key_id: str, key: bytes) -> None:
        if isinstance(key, str):
            key = key.encode("utf-8")
        await self._call("add_key", {"id": key_id, "key": encode_bytes(key)})

    async def list_keys(self) -> List[str]:
        data = await self._call("list_keys")
        return data.get("keys", [])

    async def forget_keys(self) -> None:
        await self._call("forget_keys")

    async def encrypt(self, key_id: str, plaintext: bytes, params: CryptoParams) -> bytes:
        data = await self._call("encrypt", {
            "id": key_id,
            "data": encode_bytes(plaintext),
            "algorithm": params.algorithm.value,
        })
        return decode_bytes(data.get("data"), "data")

    async def decrypt(self, key_id: str, ciphertext: bytes, params: CryptoParams) -> bytes:
        data = await self._call("decrypt", {
            "id": key_id,
            "data": encode_bytes(ciphertext),
            "algorithm": params.algorithm.value,
        })
        return decode_bytes(data.get("data"), "data")


async def send_request(socket_path: Path, request_line: str, timeout: float = SOCKET_TIMEOUT) -> str:
    """Send one request line and return the response line.

    Raises:
        AgentError: If the daemon is not running, times out or hangs up

    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(socket_path), limit=MAX_LINE_SIZE),
            timeout=timeout,
        )
    except (FileNotFoundError, ConnectionRefusedError) as e:
        raise AgentError(f"AGENT_NOT_RUNNING: Key agent not running on {socket_path}") from e
    except asyncio.TimeoutError as e:
        raise AgentError("TIMEOUT: Timed out connecting to key agent") from e

    try:
        writer.write((request_line + "\n").encode("utf-8"))
        await writer.drain()
        response = await asyncio.wait_for(reader.readline(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise AgentError("TIMEOUT: Key agent request timed out") from e
    except (ConnectionError, OSError) as e:
        raise AgentError(f"CONNECTION_ERROR: {e}") from e
    finally:
        writer.close()

    if not response:
        raise AgentError("CONNECTION_ERROR: Key agent closed the connection")
    return response.decode("utf-8").strip()


async def ping_agent(socket_path: Optional[Path] = None) -> bool:
    """Check if a key agent is listening and responsive."""
    socket_path = Path(socket_path or SOCKET_PATH)
    if not socket_path.exists():
        return False

    request = Request(request_id="ping", action="ping")
    try:
        line = await send_request(socket_path, serialize_request(request), timeout=2.0)
        return parse_response(line).status == "ok"
    except (AgentError, ValueError):
        return False


def _write_pid(pid_file: Path) -> None:
    pid_file.write_text(str(os.getpid()))
    pid_file.chmod(0o600)


async def run_agent(socket_path: Path, log_path: Path, pid_file: Path) -> None:
    """Run a key agent server until SIGTERM/SIGINT."""
    server = KeyAgentServer(
        socket_path=socket_path,
        audit_logger=AuditLogger(log_path),
    )
    await server.start()
    _write_pid(pid_file)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, stop_event.set)

    print(f"[INFO] Key agent listening on {socket_path} (PID: {os.getpid()})")
    try:
        await stop_event.wait()
    finally:
        await server.stop()
        if pid_file.exists():
            pid_file.unlink()
        print("[INFO] Key agent stopped")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Agile Keychain key agent daemon")
    parser.add_argument("--socket", type=Path, default=SOCKET_PATH, help="Unix socket path")
    parser.add_argument("--log", type=Path, default=LOG_PATH, help="Access log path")
    parser.add_argument("--pid-file", type=Path, default=PID_FILE, help="PID file path")
    args = parser.parse_args(argv)

    try:
        asyncio.run(run_agent(args.socket, args.log, args.pid_file))
    except AgentError as e:
        print(str(e), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
