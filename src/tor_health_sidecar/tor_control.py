from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, Optional

from .config_manager import SidecarSettings
from .exceptions import (
    TorAuthenticationError,
    TorConnectionError,
    TorProtocolError,
)
from .logging_utils import get_logger

StreamPair = tuple[asyncio.StreamReader, asyncio.StreamWriter]
ConnectionFactory = Callable[[str, int], Awaitable[StreamPair]]

_CONNECT_TIMEOUT_SECONDS = 5.0
_IO_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncio.IncompleteReadError,
    asyncio.LimitOverrunError,
)


def quote_secret(secret: str) -> str:
    escaped = secret.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_reply(lines: Iterable[str]) -> dict[str, str]:
    """Turn the lines of a GETINFO reply into a key/value mapping.

    ``250-key=value`` lines contribute one pair each. ``250+key=`` opens a
    data block that runs until a lone ``.`` line; its lines are joined with
    newlines. ``250 OK`` ends the reply. Lines with other prefixes are
    ignored.
    """

    result: dict[str, str] = {}
    iterator = iter(lines)
    for raw in iterator:
        line = raw.strip()
        if line.startswith("250 "):
            break
        if line.startswith("250-"):
            key, sep, value = line[4:].partition("=")
            if sep:
                result[key] = value
        elif line.startswith("250+"):
            key = line[4:]
            if key.endswith("="):
                key = key[:-1]
            block: list[str] = []
            for data in iterator:
                data = data.strip()
                if data == ".":
                    break
                if data.startswith(".."):
                    data = data[1:]
                block.append(data)
            result[key] = "\n".join(block).strip()
    return result


class TorControlLink:
    """Own the single TCP connection to Tor's control port.

    Every exchange runs under one lock, so at most one command is on the
    wire at a time. The connection is opened lazily on the first command
    and discarded on any I/O or protocol failure; the next command
    reconnects.
    """

    def __init__(
        self,
        host: str,
        port: int,
        password: str = "",
        timeout_seconds: float = _CONNECT_TIMEOUT_SECONDS,
        open_connection: Optional[ConnectionFactory] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._password = password
        self._timeout = timeout_seconds
        self._open_connection = open_connection or asyncio.open_connection
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()
        self._logger = get_logger("control")

    @classmethod
    def from_settings(
        cls, settings: SidecarSettings, open_connection: Optional[ConnectionFactory] = None
    ) -> "TorControlLink":
        return cls(
            settings.control_host,
            settings.control_port,
            password=settings.control_password,
            timeout_seconds=settings.control_timeout_seconds,
            open_connection=open_connection,
        )

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    @property
    def is_connected(self) -> bool:
        return self._writer is not None

    async def connect(self) -> None:
        async with self._lock:
            await self._ensure_connected()

    async def send_command(self, command: str) -> list[str]:
        """Send one command and return the raw reply lines.

        Raises ``TorConnectionError`` on I/O failure and ``TorProtocolError``
        when the final status is not 2xx. Both discard the connection.
        """

        async with self._lock:
            await self._ensure_connected()
            lines = await self._exchange(command)
            status = lines[-1][:3] if lines else ""
            if not status.startswith("2"):
                await self._discard()
                verb = command.split(" ", 1)[0]
                reply = " | ".join(lines)
                raise TorProtocolError(f"{verb} failed: {reply}", status_code=status, reply=reply)
            return lines

    async def get_info(self, *keys: str) -> dict[str, str]:
        lines = await self.send_command(f"GETINFO {' '.join(keys)}")
        return parse_reply(lines)

    async def signal(self, name: str) -> None:
        await self.send_command(f"SIGNAL {name}")
        self._logger.info("Sent SIGNAL %s", name)

    async def close(self) -> None:
        async with self._lock:
            if self._writer is not None:
                self._logger.info("Closing control connection to %s", self.address)
            await self._discard()

    async def _ensure_connected(self) -> None:
        if self._writer is not None:
            return
        try:
            reader, writer = await asyncio.wait_for(
                self._open_connection(self._host, self._port), self._timeout
            )
        except _IO_ERRORS as error:
            raise TorConnectionError(
                f"failed to connect to tor control port {self.address}: {error}"
            ) from error
        self._reader, self._writer = reader, writer
        self._logger.debug("Connected to control port %s", self.address)

        if not self._password:
            return
        lines = await self._exchange(f"AUTHENTICATE {quote_secret(self._password)}")
        if not lines[0].startswith("250"):
            await self._discard()
            raise TorAuthenticationError(
                f"authentication failed: {lines[0]}", status_code=lines[0][:3], reply=lines[0]
            )
        self._logger.debug("Authenticated to control port %s", self.address)

    async def _exchange(self, command: str) -> list[str]:
        verb = command.split(" ", 1)[0]
        if self._writer is None:
            raise TorConnectionError(f"{verb} attempted without an open control connection")
        try:
            self._writer.write(f"{command}\r\n".encode("utf-8"))
            await asyncio.wait_for(self._writer.drain(), self._timeout)
            return await self._read_reply()
        except asyncio.CancelledError:
            # A partially read reply would desynchronise the next command.
            self._drop()
            raise
        except _IO_ERRORS as error:
            self._logger.warning("Control connection to %s lost during %s: %s", self.address, verb, error)
            await self._discard()
            raise TorConnectionError(f"{verb} exchange failed: {error!r}") from error

    async def _read_reply(self) -> list[str]:
        lines: list[str] = []
        while True:
            line = await self._read_line()
            lines.append(line)
            if len(line) < 4:
                return lines
            separator = line[3]
            if separator == "+":
                while True:
                    data = await self._read_line()
                    lines.append(data)
                    if data == ".":
                        break
            elif separator == " ":
                return lines

    async def _read_line(self) -> str:
        if self._reader is None:
            raise ConnectionResetError("control connection is not open")
        raw = await asyncio.wait_for(self._reader.readline(), self._timeout)
        if not raw:
            raise ConnectionResetError("control connection closed by peer")
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def _drop(self) -> Optional[asyncio.StreamWriter]:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is not None:
            writer.close()
        return writer

    async def _discard(self) -> None:
        writer = self._drop()
        if writer is None:
            return
        try:
            await asyncio.wait_for(writer.wait_closed(), self._timeout)
        except _IO_ERRORS as error:
            self._logger.debug("Error while closing control connection: %s", error)
