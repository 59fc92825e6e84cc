"""Addresses, streams and listeners shared by TCP and Unix sockets.

An address that starts with ``/`` is a Unix socket path. Anything else is a
socket address ``ip:port`` (``[ip6]:port`` for IPv6) or ``host:port``, in
which case the first resolved address is used.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import ipaddress
import logging
import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_BUF_SIZE = 8 * 1024

IpAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _parse_port(text: str) -> int | None:
    if not text or not text.isascii() or not text.isdigit():
        return None
    port = int(text)
    return port if port <= 0xFFFF else None


def _parse_socket_addr(text: str) -> tuple[IpAddress, int] | None:
    """Parse a literal ``ip:port`` or ``[ip6]:port``; None if it is not one."""
    if text.startswith("["):
        end = text.find("]:")
        if end < 0:
            return None
        host, port_text = text[1:end], text[end + 2:]
        try:
            ip: IpAddress = ipaddress.IPv6Address(host)
        except ValueError:
            return None
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep:
            return None
        try:
            ip = ipaddress.IPv4Address(host)
        except ValueError:
            return None
    port = _parse_port(port_text)
    if port is None:
        return None
    return ip, port


def _resolve(text: str) -> tuple[IpAddress, int] | None:
    host, sep, port_text = text.rpartition(":")
    port = _parse_port(port_text)
    if not sep or not host or port is None:
        return None
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (OSError, UnicodeError, OverflowError):
        return None
    for family, _, _, _, sockaddr in infos:
        if family in (socket.AF_INET, socket.AF_INET6):
            return ipaddress.ip_address(sockaddr[0].split("%")[0]), sockaddr[1]
    return None


def _format_socket(ip: IpAddress, port: int) -> str:
    if isinstance(ip, ipaddress.IPv6Address):
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def _format_sockname(name: Any) -> str:
    if isinstance(name, tuple):
        host = ipaddress.ip_address(str(name[0]).split("%")[0])
        return _format_socket(host, name[1])
    if isinstance(name, bytes):
        return os.fsdecode(name)
    return str(name)


@dataclass(frozen=True)
class UnifyAddr:
    """A TCP socket address (``ip`` and ``port``) or a Unix socket ``path``."""

    ip: IpAddress | None = None
    port: int = 0
    path: Path | None = None

    @property
    def is_path(self) -> bool:
        return self.path is not None

    def matches(self, other: str) -> bool:
        """Compare with a textual address; a bare IP matches any port."""
        if self.path is not None:
            return self.path == Path(other)
        parsed = _parse_socket_addr(other)
        if parsed is not None:
            return (self.ip, self.port) == parsed
        try:
            return self.ip == ipaddress.ip_address(other)
        except ValueError:
            return False

    def __str__(self) -> str:
        if self.path is not None:
            return str(self.path)
        assert self.ip is not None
        return _format_socket(self.ip, self.port)


def parse_addr(s: str) -> UnifyAddr:
    """Parse ``s`` into a UnifyAddr; raises ValueError when it is not an address."""
    if not s:
        raise ValueError("empty address")
    if s.startswith("/"):
        return UnifyAddr(path=Path(s))
    parsed = _parse_socket_addr(s) or _resolve(s)
    if parsed is None:
        raise ValueError(f"invalid socket address syntax: {s!r}")
    ip, port = parsed
    return UnifyAddr(ip=ip, port=port)


class UnifyStream:
    """A buffered TCP or Unix stream.

    Writes collect in a buffer of ``buf_size`` bytes and go out when it is
    full or on flush().
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        unix: bool,
        buf_size: int = DEFAULT_BUF_SIZE,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.is_unix = unix
        self.buf_size = buf_size if buf_size > 0 else DEFAULT_BUF_SIZE
        self._wbuf = bytearray()

    async def read_exact(self, n: int) -> bytes:
        """Read exactly ``n`` bytes; raises EOFError when the peer closes first."""
        if n <= 0:
            return b""
        return await self._reader.readexactly(n)

    async def write_all(self, data: bytes) -> None:
        """Queue ``data``, writing out the buffer once it reaches ``buf_size``."""
        if not len(data):
            return
        self._wbuf += data
        if len(self._wbuf) >= self.buf_size:
            await self.flush()

    async def flush(self) -> None:
        """Write out everything buffered and wait until the socket took it."""
        if self._wbuf:
            data = bytes(self._wbuf)
            self._wbuf.clear()
            self._writer.write(data)
        await self._writer.drain()

    async def shutdown_write(self) -> None:
        """Shut down the sending direction."""
        try:
            if self._writer.can_write_eof():
                self._writer.write_eof()
            else:
                self._writer.close()
        except RuntimeError as exc:
            raise OSError(str(exc)) from exc

    async def close(self) -> None:
        """Close both directions."""
        self._writer.close()
        with contextlib.suppress(OSError):
            await self._writer.wait_closed()

    def peer_addr(self) -> UnifyAddr:
        """Address of the peer; Unix sockets have none and raise OSError."""
        if self.is_unix:
            raise OSError(errno.EADDRNOTAVAIL, "unixsocket don't support peer_addr")
        name = self._writer.get_extra_info("peername")
        if name is None:
            raise OSError(errno.ENOTCONN, "peer address unknown")
        return parse_addr(_format_sockname(name))

    def __repr__(self) -> str:
        local = self._writer.get_extra_info("sockname")
        if self.is_unix:
            return _format_sockname(local) if local else "unixsocket addr unknown"
        if local is None:
            return "tcp addr unknown"
        peer = self._writer.get_extra_info("peername")
        if peer is None:
            return _format_sockname(local)
        return f"{_format_sockname(local)}->{_format_sockname(peer)}"


class UnifyListener:
    """A TCP or Unix listener handing out accepted UnifyStreams."""

    def __init__(self, *, unix: bool) -> None:
        self.is_unix = unix
        self._server: asyncio.base_events.Server | None = None
        self._queue: asyncio.Queue[UnifyStream | None] = asyncio.Queue()
        self._closed = False

    def _on_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._closed:
            writer.close()
            return
        self._queue.put_nowait(UnifyStream(reader, writer, unix=self.is_unix))

    async def accept(self) -> UnifyStream:
        """Wait for the next connection; raises OSError once the listener is closed."""
        if self._closed:
            raise OSError(errno.EBADF, "listener closed")
        stream = await self._queue.get()
        if stream is None:
            self._queue.put_nowait(None)
            raise OSError(errno.EBADF, "listener closed")
        return stream

    def local_addr(self) -> str:
        """The bound address as text."""
        sockets = self._server.sockets if self._server is not None else ()
        if not sockets:
            raise OSError(errno.EADDRNOTAVAIL, "listener has no address")
        name = sockets[0].getsockname()
        if not name:
            raise OSError(errno.EADDRNOTAVAIL, "listener has no address")
        return _format_sockname(name)

    async def close(self) -> None:
        """Stop listening; connections not yet accepted are closed."""
        if self._closed:
            return
        self._closed = True
        if self._server is not None:
            self._server.close()
        while not self._queue.empty():
            stream = self._queue.get_nowait()
            if stream is not None:
                await stream.close()
        self._queue.put_nowait(None)

    def __repr__(self) -> str:
        try:
            return f"listener {self.local_addr()}"
        except OSError:
            return "unix listener unknown" if self.is_unix else "tcp listener unknown"


def _remove_existing(path: Path) -> None:
    if path.exists() or path.is_symlink():
        path.unlink()


async def connect_stream(addr: str, timeout: float | None, buf_size: int = 0) -> UnifyStream:
    """Connect to ``addr``; raises ValueError for a bad address and OSError on failure."""
    parsed = parse_addr(addr)
    if parsed.path is None:
        coro = asyncio.open_connection(str(parsed.ip), parsed.port)
    else:
        coro = asyncio.open_unix_connection(str(parsed.path))
    reader, writer = await asyncio.wait_for(coro, timeout if timeout else None)
    return UnifyStream(reader, writer, unix=parsed.is_path, buf_size=buf_size)


async def bind_listener(addr: str) -> UnifyListener:
    """Listen on ``addr``.

    A Unix socket is bound at ``<path>_dup`` and hard-linked to ``path`` with
    mode 0666, so a restarting server can take over the path. Raises OSError.
    """
    try:
        parsed = parse_addr(addr)
    except ValueError as exc:
        raise OSError(f"addr {addr!r} invalid: {exc}") from exc
    listener = UnifyListener(unix=parsed.is_path)
    if parsed.path is None:
        listener._server = await asyncio.start_server(
            listener._on_conn, host=str(parsed.ip), port=parsed.port
        )
        return listener
    path = parsed.path
    _remove_existing(path)
    path_dup = Path(f"{path}_dup")
    _remove_existing(path_dup)
    server = await asyncio.start_unix_server(listener._on_conn, path=str(path_dup))
    try:
        os.link(path_dup, path)
    except OSError as exc:
        log.error("hard_link %s->%s error: %s", path_dup, path, exc)
        server.close()
        raise
    try:
        os.chmod(path, 0o666)
    except OSError as exc:
        log.error("cannot set permissions of %s: %s", path, exc)
        server.close()
        raise
    listener._server = server
    return listener