"""Multiplexed streaming RPC for asyncio over TCP and Unix sockets: wire protocol,
client and server connections, and a JSON codec."""

__version__ = "0.1.0"