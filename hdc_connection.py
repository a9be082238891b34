#!/usr/bin/env python3
"""
HDC Connection Manager
Version: 1.0.0

Owns the lifetime of one deck session over a pluggable transport:
- Command round trips with timeout and device error handling
- Single command in flight, later callers queue FIFO
- Correlation ids so late replies to timed-out commands are discarded
- Push notifications delivered through a bounded FIFO mailbox; display
  timecode snapshots are coalesced so state deltas are never crowded out
- Coarse connection status (disconnected / connecting / ok / error)

The transport encodes commands and frames the wire protocol; this module only
sees Command objects, response dicts and notification events.
"""

import time
import uuid
import asyncio
import logging
import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, Callable, Union

DEFAULT_DECK_PORT = 9993

# Position snapshots; a newer one supersedes any still waiting in the mailbox
SNAPSHOT_EVENTS = frozenset({"displaytimecode"})


def event_name(kind: str) -> str:
    """'notify.displayTimecode' -> 'displaytimecode'"""
    return kind.rsplit('.', 1)[-1].replace('_', '').lower()


class ConnectionState(Enum):
    """Coarse connection state surfaced to the host."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OK = "ok"
    ERROR = "error"


class CommandKind(Enum):
    """Request/response commands understood by the transport."""
    DEVICE_INFO = "device_info"
    SLOT_INFO = "slot_info"
    TRANSPORT_INFO = "transport_info"
    CONFIGURATION_GET = "configuration_get"
    NOTIFY_SET = "notify_set"
    CLIPS_COUNT = "clips_count"
    CLIPS_GET = "clips_get"
    PLAY = "play"
    STOP = "stop"
    RECORD = "record"
    GOTO = "goto"
    JOG = "jog"
    SHUTTLE = "shuttle"
    SLOT_SELECT = "slot_select"
    CONFIGURATION = "configuration"
    FORMAT = "format"
    FORMAT_CONFIRM = "format_confirm"
    REMOTE = "remote"


@dataclass
class Command:
    """One device command; request_id correlates the reply."""
    kind: CommandKind
    params: Dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


class CommandError(Exception):
    """The deck rejected a command."""

    def __init__(self, code: int, name: str, message: str = ""):
        self.code = code
        self.name = name
        self.message = message
        text = f"{code} {name}"
        if message:
            text += f": {message}"
        super().__init__(text)


class CommandTimeout(TimeoutError):
    """No reply within the command timeout."""


class DeviceConnectionError(ConnectionError):
    """Transport unreachable, dropped, or not connected."""


@dataclass
class ConnectionStatus:
    """Connection status tracking."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    host: str = ""
    port: int = DEFAULT_DECK_PORT
    last_connected: float = 0
    last_attempt: float = 0
    total_failures: int = 0
    commands_sent: int = 0
    commands_failed: int = 0
    commands_timed_out: int = 0
    orphaned_responses: int = 0
    dropped_notifications: int = 0
    coalesced_notifications: int = 0
    transport_errors: int = 0
    error_message: str = ""


class DeviceTransport(ABC):
    """
    Black-box command/response plus event channel to the deck.

    Implementations call deliver_response() with the request_id of the command
    a reply answers, emit_event() for push notifications and emit_disconnected()
    when the link drops.
    """

    def __init__(self):
        self._connected = False
        self._response_handler: Optional[Callable[[str, Union[Dict[str, Any], Exception]], None]] = None
        self._event_handler: Optional[Callable[[str, Dict[str, Any]], None]] = None
        self._disconnect_handler: Optional[Callable[[Optional[Exception]], None]] = None
        self._error_handler: Optional[Callable[[Exception], None]] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def bind(self, on_response, on_event, on_disconnect, on_error):
        """Attach the connection manager's callbacks."""
        self._response_handler = on_response
        self._event_handler = on_event
        self._disconnect_handler = on_disconnect
        self._error_handler = on_error

    @abstractmethod
    async def open(self, host: str, port: int) -> Dict[str, Any]:
        """Connect and return the deck's connection info (model, protocol version, ...)."""
        ...

    @abstractmethod
    async def send(self, command: Command) -> None:
        """Write one command to the deck."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the link. Must be idempotent."""
        ...

    def deliver_response(self, request_id: str, result: Union[Dict[str, Any], Exception]):
        if self._response_handler:
            self._response_handler(request_id, result)

    def emit_event(self, kind: str, payload: Dict[str, Any]):
        if self._event_handler:
            self._event_handler(kind, payload)

    def emit_disconnected(self, error: Optional[Exception] = None):
        self._connected = False
        if self._disconnect_handler:
            self._disconnect_handler(error)

    def emit_error(self, error: Exception):
        if self._error_handler:
            self._error_handler(error)


class ConnectionManager:
    """Session lifetime, command round trips and notification delivery for one deck."""

    def __init__(self, transport: DeviceTransport, logger: logging.Logger,
                 command_timeout: float = 5.0, connect_timeout: float = 10.0,
                 mailbox_size: int = 256):
        self.transport = transport
        self.logger = logger
        self.command_timeout = command_timeout
        self.connect_timeout = connect_timeout
        self.status = ConnectionStatus()
        self.connection_info: Dict[str, Any] = {}

        self._command_lock = asyncio.Lock()
        self._pending: Dict[str, asyncio.Future] = {}
        self._mailbox: asyncio.Queue = asyncio.Queue(maxsize=mailbox_size)
        self._consumer_task: Optional[asyncio.Task] = None
        self._snapshots: Dict[str, Dict[str, Any]] = {}

        self.notification_handler: Optional[Callable[[str, Dict[str, Any]], Any]] = None
        self.connected_listeners: List[Callable[[Dict[str, Any]], Any]] = []
        self.disconnected_listeners: List[Callable[[Optional[Exception]], None]] = []
        self.error_listeners: List[Callable[[Exception], None]] = []

        self.transport.bind(self._on_response, self._on_event,
                            self._on_disconnect, self._on_error)

    @property
    def state(self) -> ConnectionState:
        return self.status.state

    @property
    def connected(self) -> bool:
        return self.status.state == ConnectionState.OK and self.transport.is_connected

    async def connect(self, host: str, port: int = DEFAULT_DECK_PORT) -> Dict[str, Any]:
        """Open the session and run connected listeners (subscription and initial fetch)."""
        if self.status.state in (ConnectionState.OK, ConnectionState.CONNECTING):
            raise DeviceConnectionError(f"Session already {self.status.state.value}")

        self.status.state = ConnectionState.CONNECTING
        self.status.host = host
        self.status.port = port
        self.status.last_attempt = time.time()
        self.logger.info(f"Connecting to deck at {host}:{port}")

        try:
            info = await asyncio.wait_for(self.transport.open(host, port), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self._mark_failed(f"No answer from {host}:{port} within {self.connect_timeout}s")
            raise DeviceConnectionError(self.status.error_message) from None
        except (OSError, ConnectionError) as e:
            self._mark_failed(f"Cannot connect to {host}:{port}: {e}")
            raise DeviceConnectionError(self.status.error_message) from e

        self.connection_info = dict(info or {})
        self.status.state = ConnectionState.OK
        self.status.last_connected = time.time()
        self.status.error_message = ""
        self._consumer_task = asyncio.create_task(self._consume_mailbox())
        self.logger.info(f"Connected to deck at {host}:{port}")

        for listener in list(self.connected_listeners):
            result = listener(self.connection_info)
            if asyncio.iscoroutine(result):
                await result

        return self.connection_info

    def _mark_failed(self, message: str):
        self.status.state = ConnectionState.ERROR
        self.status.error_message = message
        self.status.total_failures += 1
        self.logger.error(message)

    async def send_command(self, command: Command) -> Dict[str, Any]:
        """One round trip. Raises CommandError, CommandTimeout or DeviceConnectionError."""
        if not self.connected:
            raise DeviceConnectionError("Not connected to deck")

        async with self._command_lock:
            if not self.connected:
                raise DeviceConnectionError("Connection lost while command was queued")

            future = asyncio.get_running_loop().create_future()
            self._pending[command.request_id] = future
            self.status.commands_sent += 1
            self.logger.debug(f"-> {command.kind.value} {command.params}")

            try:
                try:
                    await self.transport.send(command)
                except (OSError, ConnectionError) as e:
                    raise DeviceConnectionError(f"Failed to send {command.kind.value}: {e}") from e

                return await asyncio.wait_for(future, timeout=self.command_timeout)

            except asyncio.TimeoutError:
                self.status.commands_timed_out += 1
                raise CommandTimeout(
                    f"No response to {command.kind.value} within {self.command_timeout}s"
                ) from None
            except CommandError:
                self.status.commands_failed += 1
                raise
            finally:
                self._pending.pop(command.request_id, None)

    def _on_response(self, request_id: str, result: Union[Dict[str, Any], Exception]):
        future = self._pending.get(request_id)
        if future is None or future.done():
            self.status.orphaned_responses += 1
            self.logger.debug(f"Discarding orphaned response for request {request_id}")
            return

        if isinstance(result, Exception):
            future.set_exception(result)
        else:
            future.set_result(result or {})

    def _on_event(self, kind: str, payload: Dict[str, Any]):
        if self.status.state != ConnectionState.OK:
            self.logger.debug(f"Dropping {kind} event outside an active session")
            return

        item = (kind, payload or {})
        if event_name(kind) in SNAPSHOT_EVENTS:
            if kind in self._snapshots:
                self._snapshots[kind] = payload or {}
                self.status.coalesced_notifications += 1
                return
            self._snapshots[kind] = payload or {}
            item = (kind, None)

        if self._mailbox.full():
            dropped_kind, dropped_payload = self._mailbox.get_nowait()
            self._mailbox.task_done()
            if dropped_payload is None:
                self._snapshots.pop(dropped_kind, None)
            self.status.dropped_notifications += 1
            self.logger.warning(f"Notification mailbox full - dropped oldest event ({dropped_kind})")

        self._mailbox.put_nowait(item)

    async def _consume_mailbox(self):
        """Deliver notifications to the handler one at a time, in arrival order."""
        while True:
            kind, payload = await self._mailbox.get()
            if payload is None:
                payload = self._snapshots.pop(kind, {})
            try:
                if self.notification_handler:
                    result = self.notification_handler(kind, payload)
                    if asyncio.iscoroutine(result):
                        await result
            except Exception as e:
                self.logger.error(f"Notification handler failed for {kind}: {e}")
            finally:
                self._mailbox.task_done()

    async def drain(self):
        """Wait until every queued notification has been handled."""
        await self._mailbox.join()

    def _on_disconnect(self, error: Optional[Exception] = None):
        if self.status.state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            return

        reason = str(error) if error else "remote closed the connection"
        self._teardown()
        self.status.state = ConnectionState.ERROR
        self.status.error_message = reason
        self.status.total_failures += 1
        self.logger.warning(f"Connection to deck lost: {reason} (Total failures: {self.status.total_failures})")

        for listener in list(self.disconnected_listeners):
            listener(error)

    def _on_error(self, error: Exception):
        self.status.transport_errors += 1
        self.logger.error(f"Transport error: {error}")
        for listener in list(self.error_listeners):
            listener(error)

    def disconnect(self):
        """Release the session. Synchronous and idempotent."""
        if self.status.state == ConnectionState.DISCONNECTED:
            return

        self.logger.info("Disconnecting from deck")
        self._teardown()
        self.status.state = ConnectionState.DISCONNECTED

        for listener in list(self.disconnected_listeners):
            listener(None)

    def _teardown(self):
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            self._consumer_task = None

        for future in self._pending.values():
            if not future.done():
                future.set_exception(DeviceConnectionError("Connection closed"))
        self._pending.clear()

        while not self._mailbox.empty():
            self._mailbox.get_nowait()
            self._mailbox.task_done()
        self._snapshots.clear()

        try:
            self.transport.close()
        except Exception as e:
            self.logger.warning(f"Error closing deck transport: {e}")


def load_transport_class(path: str):
    """Import a DeviceTransport subclass from 'package.module:ClassName' or 'package.module.ClassName'."""
    if ':' in path:
        module_name, class_name = path.split(':', 1)
    else:
        module_name, _, class_name = path.rpartition('.')
    if not module_name or not class_name:
        raise ImportError(f"Invalid transport path: {path}")

    module = importlib.import_module(module_name)
    try:
        transport_class = getattr(module, class_name)
    except AttributeError:
        raise ImportError(f"{module_name} has no attribute {class_name}") from None

    if not (isinstance(transport_class, type) and issubclass(transport_class, DeviceTransport)):
        raise TypeError(f"{path} is not a DeviceTransport")
    return transport_class
