"""L2CAP packet channel to an AirPods device."""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from enum import Enum
from typing import Callable

from .errors import AirPodsError, ConnectionClosedError, ConnectionLostError, RequestTimeoutError
from .protocol import Address

log = logging.getLogger(__name__)

PSM_CONTROL = 0x1001
"""Protocol service multiplexer of the AirPods control channel."""
L2CAP_MTU = 672
WRITE_TIMEOUT = 25.0
CONNECT_TIMEOUT = 10.0

_CHANNEL_SIZE = 128
_MAX_PREFIX = 8
_CLOSED = object()

Callback = Callable[[bytes], None]


class HookDisposition(Enum):
    """Whether a hook stays installed after it fired."""

    DISCARD = "discard"
    RETAIN = "retain"


class Hook:
    """A callback run for received packets that start with a prefix."""

    def __init__(
        self,
        callback: Callback,
        disposition: HookDisposition = HookDisposition.RETAIN,
        prefix: bytes = b"",
    ) -> None:
        self._callback = callback
        self.disposition = disposition
        self._prefix = b""
        self.prefix(prefix)

    @classmethod
    def once(cls, callback: Callback) -> Hook:
        """A hook that runs ``callback`` at most once and is then removed."""
        fired = False

        def call(data: bytes) -> None:
            nonlocal fired
            if not fired:
                fired = True
                callback(data)

        return cls(call, HookDisposition.DISCARD)

    def prefix(self, prefix: bytes) -> Hook:
        """Restrict the hook to packets starting with ``prefix`` (at most 8 bytes)."""
        prefix = bytes(prefix)
        if len(prefix) > _MAX_PREFIX:
            raise ValueError(f"hook prefix is limited to {_MAX_PREFIX} bytes, got {len(prefix)}")
        self._prefix = prefix
        return self

    def passthrough(self, data: bytes) -> HookDisposition:
        """Run the callback if ``data`` matches; say whether to keep the hook."""
        if bytes(data).startswith(self._prefix):
            self._callback(data)
            return self.disposition
        return HookDisposition.RETAIN


class Hooks:
    """An ordered set of hooks applied to every received packet."""

    def __init__(self) -> None:
        self._hooks: list[Hook] = []

    def install(self, hook: Hook) -> Hooks:
        self._hooks.append(hook)
        return self

    def prefix_once(self, prefix: bytes, callback: Callback) -> Hooks:
        return self.install(Hook.once(callback).prefix(prefix))

    def passthrough(self, data: bytes) -> None:
        self._hooks = [
            hook for hook in self._hooks if hook.passthrough(data) is HookDisposition.RETAIN
        ]

    def __len__(self) -> int:
        return len(self._hooks)


class L2CapReceiver:
    """Receiving half of a connection."""

    def __init__(self, queue: asyncio.Queue) -> None:
        self._queue = queue
        self._finished = False

    def _finish(self) -> None:
        self._finished = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    async def recv(self) -> bytes:
        """The next packet; raises once the connection is lost or closed."""
        if self._finished and self._queue.empty():
            raise ConnectionClosedError()
        item = await self._queue.get()
        if item is _CLOSED:
            raise ConnectionClosedError()
        if isinstance(item, BaseException):
            raise item
        return item


class L2CapSender:
    """Sending half of a connection; may be shared freely."""

    def __init__(self, commands: asyncio.Queue) -> None:
        self._commands = commands
        self._closed = False

    def _mark_closed(self) -> None:
        self._closed = True
        while not self._commands.empty():
            _, done = self._commands.get_nowait()
            if not done.done():
                done.set_exception(ConnectionClosedError())

    def is_connected(self) -> bool:
        return not self._closed

    async def send(self, data: bytes) -> None:
        """Send one packet and wait until it has been written."""
        if not self.is_connected():
            raise ConnectionClosedError()
        done = asyncio.get_running_loop().create_future()
        await self._commands.put((bytes(data), done))
        if self._closed and not done.done():
            done.set_exception(ConnectionClosedError())
        finished, _ = await asyncio.wait({done}, timeout=WRITE_TIMEOUT)
        if not finished:
            done.cancel()
            raise RequestTimeoutError()
        done.result()


class L2CapConnection:
    """An open channel: its receiver, its sender and the tasks serving them."""

    def __init__(
        self,
        receiver: L2CapReceiver,
        sender: L2CapSender,
        sock: socket.socket,
        tasks: tuple[asyncio.Task, ...],
    ) -> None:
        self.receiver = receiver
        self.sender = sender
        self._sock = sock
        self._tasks = tasks

    def close(self) -> None:
        """Stop the background tasks and close the socket."""
        self.sender._mark_closed()
        for task in self._tasks:
            task.cancel()
        self._sock.close()

    async def __aenter__(self) -> L2CapConnection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


async def _receive_loop(
    loop: asyncio.AbstractEventLoop,
    sock: socket.socket,
    label: str,
    receiver: L2CapReceiver,
    hooks: Hooks,
) -> None:
    try:
        while True:
            try:
                data = await loop.sock_recv(sock, L2CAP_MTU)
            except OSError as exc:
                log.debug("Receive from %s failed: %s", label, exc)
                return
            if not data:
                log.warning("Connection lost")
                await receiver._queue.put(ConnectionLostError())
                return
            log.debug("← %s: %s", label, data.hex())
            hooks.passthrough(data)
            await receiver._queue.put(data)
    finally:
        receiver._finish()


async def _send_loop(
    loop: asyncio.AbstractEventLoop,
    sock: socket.socket,
    label: str,
    sender: L2CapSender,
) -> None:
    try:
        while True:
            data, done = await sender._commands.get()
            log.debug("→ %s: %s", label, data.hex())
            try:
                await loop.sock_sendall(sock, data)
            except OSError as exc:
                log.warning("Failed to send data: %s", exc)
                if not done.done():
                    done.set_exception(exc)
            else:
                if not done.done():
                    done.set_result(None)
    finally:
        sender._mark_closed()


def attach(
    sock: socket.socket, hooks: Hooks | None = None, address: Address | str | None = None
) -> L2CapConnection:
    """Serve an already connected packet socket; must run inside an event loop."""
    loop = asyncio.get_running_loop()
    sock.setblocking(False)
    hooks = hooks if hooks is not None else Hooks()
    label = str(address) if address is not None else "?"
    receiver = L2CapReceiver(asyncio.Queue(_CHANNEL_SIZE))
    sender = L2CapSender(asyncio.Queue(_CHANNEL_SIZE))
    tasks = (
        loop.create_task(_receive_loop(loop, sock, label, receiver, hooks)),
        loop.create_task(_send_loop(loop, sock, label, sender)),
    )
    return L2CapConnection(receiver, sender, sock, tasks)


async def connect(
    hooks: Hooks | None, address: Address, psm: int | None = None
) -> L2CapConnection:
    """Open an L2CAP channel to ``address`` (default PSM: the control channel)."""
    family = getattr(socket, "AF_BLUETOOTH", None)
    protocol = getattr(socket, "BTPROTO_L2CAP", None)
    if family is None or protocol is None:
        raise OSError(errno.EAFNOSUPPORT, "Bluetooth sockets are not available")

    psm = PSM_CONTROL if psm is None else psm
    log.debug("Connecting to %s:%d", address, psm)
    loop = asyncio.get_running_loop()
    sock = socket.socket(family, socket.SOCK_SEQPACKET, protocol)
    sock.setblocking(False)
    try:
        await asyncio.wait_for(loop.sock_connect(sock, (str(address), psm)), CONNECT_TIMEOUT)
    except TimeoutError:
        sock.close()
        raise RequestTimeoutError() from None
    except BaseException:
        sock.close()
        raise
    return attach(sock, hooks, address)


__all__ = [
    "AirPodsError",
    "Hook",
    "HookDisposition",
    "Hooks",
    "L2CapConnection",
    "L2CapReceiver",
    "L2CapSender",
    "attach",
    "connect",
]