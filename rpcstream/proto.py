"""Wire format of the stream protocol: fixed headers, actions, codecs and error values.

Request header (32 bytes, little endian, packed)::

    magic(2) ver(1) format(1) action(4) seq(8) client_id(8) msg_len(4) blob_len(4)

When the highest bit of ``action`` is clear it holds the numeric action,
otherwise the lower bits hold the length of an action string that follows
the header.

Response header (20 bytes, little endian, packed)::

    magic(2) ver(1) flag(1) msg_len(4) seq(8) blob_len(4, signed)
"""

from __future__ import annotations

import json
import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

log = logging.getLogger(__name__)

PING_ACTION = 0
RPC_MAGIC = b"%M"
U32_HIGH_MASK = 1 << 31
RESP_FLAG_HAS_ERRNO = 1
RESP_FLAG_HAS_ERR_STRING = 2
RPC_ERR_PREFIX = "rpc_"

_U32 = 0xFFFFFFFF
_REQ_STRUCT = struct.Struct("<2sBBIQQII")
_RESP_STRUCT = struct.Struct("<2sBBIQi")

RPC_REQ_HEADER_LEN = _REQ_STRUCT.size
RPC_RESP_HEADER_LEN = _RESP_STRUCT.size


class RpcIntErr(StrEnum):
    """Errors raised by the framework itself; the text form travels on the wire."""

    UNREACHABLE = "rpc_unreachable"
    IO = "rpc_io_err"
    TIMEOUT = "rpc_timeout"
    METHOD = "rpc_method_notfound"
    VERSION = "rpc_version_not_supported"
    ENCODE = "rpc_encode_err"
    DECODE = "rpc_decode_err"


class RpcError(Exception):
    """An RPC failure: either a framework error or a user-defined error value."""

    def __init__(self, err: Any) -> None:
        super().__init__(err)
        self.err = err

    @property
    def rpc(self) -> RpcIntErr | None:
        """The framework error, or None for a user error."""
        return self.err if isinstance(self.err, RpcIntErr) else None

    @property
    def user(self) -> Any:
        """The user error value, or None for a framework error."""
        return None if isinstance(self.err, RpcIntErr) else self.err

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return (self.rpc is None) == (other.rpc is None) and self.err == other.err

    def __hash__(self) -> int:
        return hash((self.rpc is None, self.err))

    def __str__(self) -> str:
        return str(self.err)

    def __repr__(self) -> str:
        return f"RpcError({self.err!r})"


@dataclass(frozen=True)
class EncodedErr:
    """An error ready to be put on the wire.

    ``value`` is an errno (int), a framework error (RpcIntErr), raw bytes or a static string.
    """

    value: int | RpcIntErr | bytes | str

    def __post_init__(self) -> None:
        value = self.value
        if isinstance(value, bytearray | memoryview):
            object.__setattr__(self, "value", bytes(value))
        elif isinstance(value, bool) or not isinstance(value, int | bytes | str):
            raise TypeError(f"unsupported error value: {value!r}")

    @property
    def errno(self) -> int | None:
        """The numeric error, if this is one."""
        value = self.value
        return value if isinstance(value, int) else None

    def payload(self) -> bytes | None:
        """The error text sent after the header, or None for a numeric error."""
        value = self.value
        if isinstance(value, int):
            return None
        if isinstance(value, bytes):
            return value
        return str(value).encode()


class Codec(ABC):
    """Serialises structured messages."""

    @abstractmethod
    def encode(self, obj: Any) -> bytes:
        """Serialise ``obj``; raises RpcError(RpcIntErr.ENCODE) on failure."""

    @abstractmethod
    def decode(self, buf: bytes) -> Any:
        """Deserialise ``buf``; raises RpcError(RpcIntErr.DECODE) on failure."""


class JsonCodec(Codec):
    """Compact JSON codec."""

    def encode(self, obj: Any) -> bytes:
        try:
            return json.dumps(obj, separators=(",", ":")).encode()
        except (TypeError, ValueError) as exc:
            raise RpcError(RpcIntErr.ENCODE) from exc

    def decode(self, buf: bytes) -> Any:
        try:
            return json.loads(bytes(buf))
        except ValueError as exc:
            raise RpcError(RpcIntErr.DECODE) from exc


@dataclass(repr=False)
class ReqHead:
    """Fixed-length request header."""

    magic: bytes = RPC_MAGIC
    ver: int = 0
    format: int = 0
    action: int = 0
    seq: int = 0
    client_id: int = 0
    msg_len: int = 0
    blob_len: int = 0

    def to_bytes(self) -> bytes:
        return _REQ_STRUCT.pack(
            self.magic, self.ver, self.format, self.action,
            self.seq, self.client_id, self.msg_len, self.blob_len,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> ReqHead:
        if len(data) < RPC_REQ_HEADER_LEN:
            raise RpcError(RpcIntErr.IO)
        return cls(*_REQ_STRUCT.unpack_from(data))

    def get_action(self) -> int | None:
        """The numeric action, or None when a string action follows the header."""
        if self.action & U32_HIGH_MASK:
            return None
        return self.action

    @property
    def action_len(self) -> int:
        """Length of the action string following the header, 0 for numeric actions."""
        if self.action & U32_HIGH_MASK:
            return self.action ^ U32_HIGH_MASK
        return 0

    def __str__(self) -> str:
        text = (
            f"[client_id:{self.client_id}, seq:{self.seq}, "
            f"msg:{self.msg_len}, blob:{self.blob_len}"
        )
        num = self.get_action()
        if num is not None:
            return f"{text}, action:{num}]"
        return f"{text}action_len:{self.action_len}]"

    __repr__ = __str__


@dataclass(repr=False)
class RespHead:
    """Fixed-length response header.

    With flag RESP_FLAG_HAS_ERRNO, msg_len holds the errno and blob_len is 0.
    With flag RESP_FLAG_HAS_ERR_STRING, msg_len is 0 and an error string of
    blob_len bytes follows.
    """

    magic: bytes = RPC_MAGIC
    ver: int = 0
    flag: int = 0
    msg_len: int = 0
    seq: int = 0
    blob_len: int = 0

    def to_bytes(self) -> bytes:
        return _RESP_STRUCT.pack(
            self.magic, self.ver, self.flag, self.msg_len, self.seq, self.blob_len
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> RespHead:
        if len(data) < RPC_RESP_HEADER_LEN:
            raise RpcError(RpcIntErr.IO)
        return cls(*_RESP_STRUCT.unpack_from(data))

    @property
    def errno(self) -> int:
        """msg_len read as a signed 32-bit errno."""
        return self.msg_len - (1 << 32) if self.msg_len & U32_HIGH_MASK else self.msg_len

    def __str__(self) -> str:
        return f"[seq:{self.seq}, flag:{self.flag}, msg:{self.msg_len}, blob:{self.blob_len}]"

    __repr__ = __str__


def encode_request(codec: Codec, client_id: int, task: Any):
    """Encode a client task.

    Returns ``(header, action_bytes, msg, blob)`` where action_bytes and blob may be None.
    Raises RpcError(RpcIntErr.ENCODE) when the request cannot be serialised.
    """
    action = task.get_action()
    action_bytes: bytes | None = None
    if isinstance(action, str):
        action_bytes = action.encode()
        action_flag = len(action_bytes) | U32_HIGH_MASK
    else:
        action_flag = int(action) & _U32
    msg = bytes(task.encode_req(codec))
    blob = task.req_blob
    header = ReqHead(
        magic=RPC_MAGIC,
        ver=1,
        format=0,
        action=action_flag,
        seq=task.seq,
        client_id=client_id,
        msg_len=len(msg),
        blob_len=len(blob) if blob is not None else 0,
    )
    return header, action_bytes, msg, blob


def _check_head(head: ReqHead | RespHead) -> None:
    if head.magic != RPC_MAGIC:
        log.warning("rpc: wrong magic receive %r", head.magic)
        raise RpcError(RpcIntErr.IO)
    if head.ver != 1:
        log.warning("rpc: version %d not supported", head.ver)
        raise RpcError(RpcIntErr.VERSION)


def decode_req_head(data: bytes) -> ReqHead:
    """Parse and validate a request header."""
    head = ReqHead.from_bytes(data)
    _check_head(head)
    return head


def decode_resp_head(data: bytes) -> RespHead:
    """Parse and validate a response header."""
    head = RespHead.from_bytes(data)
    _check_head(head)
    return head


def encode_resp_err(seq: int, err: EncodedErr) -> tuple[RespHead, bytes | None]:
    """Build the header for an error response and the error text that follows it."""
    errno = err.errno
    if errno is not None:
        header = RespHead(
            magic=RPC_MAGIC, ver=1, flag=RESP_FLAG_HAS_ERRNO,
            seq=seq, msg_len=errno & _U32, blob_len=0,
        )
        return header, None
    text = err.payload()
    header = RespHead(
        magic=RPC_MAGIC, ver=1, flag=RESP_FLAG_HAS_ERR_STRING,
        seq=seq, msg_len=0, blob_len=len(text),
    )
    return header, text


def encode_resp_msg(seq: int, msg: bytes, blob: bytes | None) -> RespHead:
    """Build the header for a successful response."""
    return RespHead(
        magic=RPC_MAGIC, ver=1, flag=0, seq=seq,
        msg_len=len(msg), blob_len=len(blob) if blob is not None else 0,
    )