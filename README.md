# linkpoll

Building blocks for non-blocking network I/O on Linux, macOS and the BSDs:

- **`LinkBuffer`** (`linkpoll.linkbuffer`): a buffer made of linked nodes
  (`linkpoll.node.LinkBufferNode`). Reads can avoid copying (`next`, `peek`,
  `slice`). Writes reserve space first and then commit it (`malloc`,
  `malloc_ack`, `flush`).
- **`DefaultPoll`** (`linkpoll.poll`): a poller built on epoll, or on kqueue
  where epoll is missing. It sends readable, writable and hang-up events to
  registered `PollOperator` objects (`linkpoll.events`).
- **`Manager`** (`linkpoll.manager`): a set of pollers, each running in its
  own thread. It picks one with a random or round-robin policy
  (`linkpoll.loadbalance`).
- **`ZCReader` / `ZCWriter` / `IOReader` / `IOWriter`**
  (`linkpoll.readwriter`): adapters between ordinary binary streams and link
  buffers.
- **`linkpoll.sysio`**: socket helpers. It has `get_sys_fd_pairs`, `writev`,
  `readv`, `sendmsg`, `set_keep_alive`, `set_tcp_no_delay`,
  `set_default_sockopts`, `sys_socket` and the zero-copy options
  (`set_zero_copy` and `set_block_zero_copy_send`, on Linux only).

## Installation

```
pip install .
```

## Using a link buffer

A writer reserves space, fills it and flushes it. Only flushed bytes can be
read.

```python
from linkpoll.linkbuffer import LinkBuffer

buf = LinkBuffer(0)
dst = buf.malloc(5)
dst[:] = b"hello"
buf.flush()

assert len(buf) == 5
assert bytes(buf.next(5)) == b"hello"
buf.release()
```

`write_binary`, `write_string` and `write_byte` add data the same way. The
data becomes readable after `flush()`:

```python
buf.write_string("line one\n")
buf.flush()
line = buf.until(ord("\n"))      # memoryview of b"line one\n"
```

A read that asks for more bytes than the buffer holds raises
`LinkBufferError`. So does `until` when the delimiter is not there.
`read_binary` and `read_string` return copies. `next` and `peek` may return
views into the buffer, and those views stay valid only until the next
`release()`. `slice(n)` moves `n` bytes into a new read-only `LinkBuffer`
without copying them. `LinkBuffer` can be used as a context manager, which
calls `close()` on exit.

The minimum node capacity is global. Read it with
`linkpoll.node.get_link_buffer_cap()` and change it with
`linkpoll.node.set_link_buffer_cap()`.

## Adapting streams

```python
import io
from linkpoll.linkbuffer import LinkBuffer
from linkpoll.readwriter import IOReader, IOWriter

buf = LinkBuffer(1024)
IOWriter(buf).write(b"hello world")
data = io.BufferedReader(IOReader(buf)).read()
```

`ZCReader` wraps any object that has a `readinto` method. It fills an
internal link buffer in 4 KiB chunks when asked for data. It raises
`ConnectionEOFError` when `readinto` returns 0 before enough data has
arrived.

`ZCWriter` wraps any object that has a `write` method. It collects data in a
link buffer, and `flush()` commits that data and writes it to the stream.

## Pollers

```python
from linkpoll.events import PollEvent, PollOperator
from linkpoll.manager import get_manager, set_num_loops
from linkpoll.sysio import get_sys_fd_pairs

set_num_loops(2)
poll = get_manager().pick()

r, w = get_sys_fd_pairs()
op = PollOperator(fd=r, on_read=lambda p: print("readable"))
poll.control(op, PollEvent.READABLE)
```

`on_read` and `on_write` run on the poller's thread. `on_hup` runs in a
separate thread after the descriptor has been detached.

For connection-style operators, give `inputs`/`input_ack` and
`outputs`/`output_ack` instead of `on_read`/`on_write`. The poller then
calls `readv` and `sendmsg` on the descriptor for you.

`get_manager()` starts a shared manager the first time it is called. It uses
round robin and one poller per CPU when there are more than four CPUs, or a
single poller otherwise.

## What this package does not do

linkpoll has no connection, listener, dialer or server layer. It does not
accept sockets or manage connection lifetimes, and it has no command-line
tool. Callers open sockets, build `PollOperator` objects and register them
with a poller. Windows is not supported.

## Running the tests

```
pip install .[test]
pytest
```