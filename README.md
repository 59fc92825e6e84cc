# rpcstream

A low-level, multiplexed streaming RPC for `asyncio` that runs over TCP or Unix
domain sockets. It has no dependencies outside the standard library.

Each connection is a full-duplex stream. Every request carries a `seq` number
that is unique within its connection, and the client matches each response to its
request by that number. The client checks timeouts once a second, in batches. A
throttler can limit how many requests are in flight at once.

## Installation

```
pip install .
```

To run the tests, install the test extra:

```
pip install .[test]
pytest
```

## Example

```python
import asyncio

from rpcstream.client import ClientFactory, ClientTask
from rpcstream.client_impl import connect
from rpcstream.server import ServerFactory
from rpcstream.server_impl import ReqDispatchClosure, RpcServer, ServerTaskVariantFull
from rpcstream.tcp_client import TcpClient
from rpcstream.tcp_server import TcpServer


async def handle(task):
    task.resp = {"echo": task.req}
    task.set_result(None)          # None means success


async def main():
    server = RpcServer(
        ServerFactory(TcpServer, lambda: ReqDispatchClosure(ServerTaskVariantFull, handle))
    )
    addr = await server.listen("127.0.0.1:0")

    client = await connect(ClientFactory(TcpClient), addr)
    finished = asyncio.get_running_loop().create_future()
    task = ClientTask(action=1, req="hello", on_done=finished.set_result)
    await client.send_task(task, need_flush=True)
    print((await finished).result())   # {'echo': 'hello'}

    client.close()
    await client.wait_closed()
    await server.close()


asyncio.run(main())
```

## Wire protocol (`rpcstream.proto`)

Every request starts with a 32-byte `ReqHead`, which holds these fields:

- magic `%M`
- version (always 1)
- format
- action
- seq
- client id
- message length
- blob length

The action is either a non-negative number or the length of an action string that
follows the header. After that come the encoded message and an optional blob.
`encode_request` builds the pieces for a task, and `decode_req_head` parses a
header and checks it.

Every response starts with a 20-byte `RespHead`. On success, the message and an
optional blob follow it. On failure, the header carries an errno (flag
`RESP_FLAG_HAS_ERRNO`), or an error string follows it (flag
`RESP_FLAG_HAS_ERR_STRING`). The functions `encode_resp_msg`, `encode_resp_err`
and `decode_resp_head` cover the response side.

Errors are raised as `RpcError`:

- A framework error has an `RpcIntErr` value such as `IO`, `TIMEOUT`, `DECODE`,
  `ENCODE`, `VERSION` or `UNREACHABLE`.
- A user error carries any other value.

The module also defines `EncodedErr`, which is the on-wire form of an error.

Messages are serialised by a `Codec`. `JsonCodec` is the one the package
provides and the default everywhere.

## Client side

The client side is made of these classes and functions:

- **`rpcstream.client.ClientConfig`** holds the client settings:
  - `task_timeout` in seconds
  - `thresholds`, the in-flight limit, where 0 disables the throttler
  - the connect, read and write timeouts
  - `stream_buf_size`
- **`rpcstream.client.ClientFactory`** takes the transport class (`TcpClient`), a
  config, a codec factory and a client id. You can override `error_handle` to
  retry failed tasks. By default it calls `task.done()`.
- **`rpcstream.client.ClientTask`** holds one request. It has these parts:
  - an action, which is a number or a string
  - the request object
  - an optional request blob
  - an `on_done` callback
  - `accepts_resp_blob`, to receive a response blob into `resp_blob`

  After it completes, `result()` returns the decoded response or raises the stored
  `RpcError`. Subclass it to change how requests are encoded or responses decoded.
- **`rpcstream.client_impl.connect(factory, addr, server_id, last_resp_ts)`**
  opens a connection and returns an `RpcClient`.

`RpcClient` has these methods:

- **`send_task(task, need_flush)`** writes the task and registers it for its
  response. Do not call it concurrently. Requests are buffered, so call it with
  `need_flush=True` or call `flush_req()`.
- **`ping()`** writes a ping request and flushes it.
- **`will_block()` and `throttle()`** report on the throttler, and wait on it,
  when too many tasks are in flight.
- **`close()`** shuts the sending side. Tasks already sent still get their
  responses, or they time out. `wait_closed()` waits for the receive loop to end.
- **`set_error_and_exit()`** stops the receive loop at once and fails all pending
  tasks with `RpcIntErr.IO`.

`RpcClient` can also be used as an async context manager, which closes it on exit.

## Server side

The server side is made of these classes:

- **`rpcstream.server.ServerConfig`** holds the server settings:
  - read, write and idle timeouts
  - `server_close_wait`
  - `stream_buf_size`
- **`rpcstream.server.ServerFactory`** takes the transport class (`TcpServer`), a
  callable that returns a fresh `ReqDispatch` for each connection, and a config.
- **`rpcstream.server_impl.RpcServer`** runs the server:
  - `listen(addr)` starts accepting connections and returns the local address.
  - `close()` stops the listeners and tells the connection readers to exit.
    Pending responses are still written out. It waits up to `server_close_wait`
    seconds and returns the number of connections still alive.

Ping requests get an empty response without reaching the dispatcher. A request
that fails to decode or dispatch gets an `RpcIntErr.DECODE` error response.

These helpers are ready to use:

- **`ReqDispatchClosure(task_type, task_handle, codec, receiver)`** decodes each
  request into `task_type` and calls the handler. The handler may be a plain
  function or a coroutine function, and it reports failure by raising.
- **`ServerTaskVariant`** is a task container whose response message replaces the
  request message.
- **`ServerTaskVariantFull`** is a task container that keeps `req`, `req_blob`,
  `resp` and `resp_blob` side by side.
- **`RespReceiverTask` and `RespReceiverBuf`** encode the items that handlers send
  back. `RespReceiverBuf` takes items that are already encoded `RpcSvrResp`
  objects.

A handler finishes a task with `set_result(res)`. Pass `None` for success, or an
errno, an `RpcIntErr`, a string or another error value. The task then goes back
through its `RespNoti` to the connection writer.

## Transport

The transport for TCP and Unix sockets is in three modules:

- **`rpcstream.net`** contains:
  - `parse_addr`, which handles `ip:port`, `[ip6]:port`, `host:port` and absolute
    paths
  - `UnifyAddr`
  - `UnifyStream`, a buffered stream
  - `UnifyListener`
  - `connect_stream`
  - `bind_listener`

  An address that starts with `/` is a Unix socket path. A Unix socket is bound
  at `<path>_dup` and hard-linked to `<path>` with mode 0666.
- **`rpcstream.tcp_client.TcpClient`** is the client transport.
- **`rpcstream.tcp_server.TcpServer`** is the server transport.

## Limits

- The only codec is `JsonCodec`. Binary codecs are left to the user, who can
  subclass `Codec`.
- TCP and Unix sockets are the only transports.
- The package is a library. It has no command-line program and no ready-made
  service.