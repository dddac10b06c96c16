# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/qmp/client.py
"""
QMP / QGA control channel client.

Commands are queued per peer and run by queue_execute(), which opens one
connection per peer, drives all of them from a single selectors loop and
closes every connection before it returns. QEMU serves a single client per
monitor socket, so no connection outlives a queue_execute() call.

Framing:

  qmp  one JSON object per line; replies echo the request id, the greeting
       and asynchronous events are interleaved with replies.
  qga  every command is preceded by `guest-sync-delimited {"id": N}`; the
       agent answers with 0xFF, `{"return": N}` and then the real reply.
"""
from __future__ import annotations

import enum
import itertools
import json
import logging
import selectors
import socket
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from ..core.exceptions import QMPError, QMPTimeoutError
from .commands import QUEUE_TIMEOUT, CommandSpec, resolve

log = logging.getLogger("kvmigrate.qmp")

DEFAULT_RUN_DIR = Path("/run/qemu-server")

_QGA_DELIM = b"\xff"
_RECV_SIZE = 65536
_CONNECT_RETRY_S = 0.1
# QEMU reports this for a migration that is still being set up; not an error.
_IMMEDIATE_COMPLETION = "Connection can not be completed immediately"


class PeerKind(str, enum.Enum):
    QMP = "qmp"
    QGA = "qga"


@dataclass(frozen=True)
class Peer:
    vmid: int
    kind: PeerKind = PeerKind.QMP

    @property
    def name(self) -> str:
        return f"VM {self.vmid}"

    def socket_path(self, run_dir: Path) -> Path:
        return Path(run_dir) / f"{self.vmid}.{self.kind.value}"


class ErrorMode(enum.IntEnum):
    """What queue_execute() does with per-peer errors."""
    RAISE = 0
    WARN = 1
    SILENT = 2


EventCallback = Callable[[Dict[str, Any]], None]
ResultCallback = Callable[[int, Optional[Dict[str, Any]]], None]


@dataclass
class QueuedCommand:
    peer: Peer
    spec: CommandSpec
    arguments: Dict[str, Any]
    callback: Optional[ResultCallback] = None
    future: Future = field(default_factory=Future)
    id: Optional[int] = None

    def complete(self, response: Optional[Dict[str, Any]]) -> None:
        if self.callback is not None:
            self.callback(self.peer.vmid, response)
        if not self.future.done():
            self.future.set_result(response)

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)


class ConnState(enum.Enum):
    CLOSED = "closed"
    OPENING = "opening"
    IDLE = "idle"
    AWAITING_REPLY = "awaiting-reply"
    ERRORED = "errored"


class PeerQueue:
    """Pending commands and connection state for one control socket."""

    def __init__(self, peer: Peer, path: Path):
        self.peer = peer
        self.path = path
        self.cmds: Deque[QueuedCommand] = deque()
        self.current: Optional[QueuedCommand] = None
        self.sock: Optional[socket.socket] = None
        self.state = ConnState.CLOSED
        self.error: Optional[str] = None
        self.error_is_timeout = False
        self.deadline = 0.0
        self.rbuf = bytearray()
        self.wbuf = bytearray()
        # ms-based start keeps ids increasing across connections, so stale
        # sync replies left in the agent channel compare lower
        self._ids = itertools.count(int(time.time() * 1000))

    @property
    def is_qga(self) -> bool:
        return self.peer.kind is PeerKind.QGA

    def next_id(self) -> int:
        return next(self._ids)

    def set_error(self, msg: str, *, timeout: bool = False) -> None:
        if self.error is None:
            self.error = msg.strip()
            self.error_is_timeout = timeout
        self.state = ConnState.ERRORED

    def exception(self) -> QMPError:
        cls = QMPTimeoutError if self.error_is_timeout else QMPError
        return cls(msg=self.error or "unknown error", context={"vmid": self.peer.vmid, "peer": self.peer.kind.value})

    def fail_pending(self) -> None:
        exc = self.exception()
        if self.current is not None:
            self.current.fail(exc)
            self.current = None
        while self.cmds:
            self.cmds.popleft().fail(exc)


class QMPClient:
    """
    Parallel command executor for QMP and QGA sockets.

        client = QMPClient(run_dir=Path("/run/qemu-server"))
        client.queue_cmd(Peer(100), "query-status")
        client.queue_cmd(Peer(101), "query-status")
        client.queue_execute()

        status = client.cmd(Peer(100), "query-migrate")
    """

    def __init__(
        self,
        *,
        run_dir: Path = DEFAULT_RUN_DIR,
        event_callback: Optional[EventCallback] = None,
        logger: Optional[Any] = None,
    ):
        self.run_dir = Path(run_dir)
        self.event_callback = event_callback
        self.logger = logger or log
        self._queues: Dict[str, PeerQueue] = {}
        self._selector: Optional[selectors.BaseSelector] = None

    # ------------------------------------------------------------------
    # queueing
    # ------------------------------------------------------------------

    def _queue_for(self, peer: Peer) -> PeerQueue:
        path = peer.socket_path(self.run_dir)
        q = self._queues.get(str(path))
        if q is None:
            q = self._queues[str(path)] = PeerQueue(peer, path)
        return q

    def queue_cmd(
        self,
        peer: Peer,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        callback: Optional[ResultCallback] = None,
    ) -> Future:
        """Enqueue a command; nothing is sent until queue_execute()."""
        command = QueuedCommand(peer=peer, spec=resolve(name), arguments=dict(arguments or {}), callback=callback)
        self._queue_for(peer).cmds.append(command)
        return command.future

    def cmd(
        self,
        peer: Peer,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        no_error: bool = False,
    ) -> Any:
        """
        Execute a single command and return the `return` member of the reply.

        With no_error=True a failure is returned as {"error": msg} (plus
        "error-is-timeout" when the command timed out) instead of raised.
        """
        spec = resolve(name)
        q = self._queue_for(peer)
        command = QueuedCommand(peer=peer, spec=spec, arguments=dict(arguments or {}))
        q.cmds.append(command)

        self.queue_execute(timeout or spec.timeout, ErrorMode.SILENT)

        if q.error is not None:
            if not no_error:
                exc = q.exception()
                raise type(exc)(msg=f"{peer.name} {peer.kind.value} command '{name}' failed - {q.error}", context=exc.context)
            result: Dict[str, Any] = {"error": q.error}
            if q.error_is_timeout:
                result["error-is-timeout"] = True
            return result

        response = command.future.result(timeout=0)
        if response is None:
            return None
        return response.get("return")

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def queue_execute(self, timeout: Optional[float] = QUEUE_TIMEOUT, error_mode: ErrorMode = ErrorMode.RAISE) -> None:
        """Run every queued command, then close all connections."""
        timeout = timeout or QUEUE_TIMEOUT
        self._selector = selectors.DefaultSelector()
        try:
            for q in self._queues.values():
                if not q.cmds:
                    continue
                q.error = None
                q.error_is_timeout = False
                q.current = None
                try:
                    self._open(q, timeout)
                except QMPError as e:
                    q.set_error(e.msg)
                    continue
                if not q.is_qga:
                    q.cmds.appendleft(QueuedCommand(peer=q.peer, spec=resolve("qmp_capabilities"), arguments={}))

            while self._check_queues():
                self._poll_once()
        finally:
            errors = self._teardown()

        if not errors:
            return
        if error_mode is ErrorMode.RAISE:
            cls = QMPTimeoutError if any(q.error_is_timeout for q in errors) else QMPError
            raise cls(msg="\n".join(q.error or "" for q in errors))
        if error_mode is ErrorMode.WARN:
            for q in errors:
                self.logger.warning("%s %s: %s", q.peer.name, q.peer.kind.value, q.error)

    def _teardown(self) -> List[PeerQueue]:
        errors: List[PeerQueue] = []
        for q in self._queues.values():
            self._close(q)
            if q.error is not None:
                q.fail_pending()
                errors.append(q)
        if self._selector is not None:
            self._selector.close()
            self._selector = None
        self._queues = {}
        return errors

    def _open(self, q: PeerQueue, timeout: float) -> None:
        q.state = ConnState.OPENING
        started = time.monotonic()
        count = 0
        while True:
            count += 1
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.setblocking(False)
            try:
                sock.connect(str(q.path))
                break
            except (BlockingIOError, InterruptedError):
                sock.close()
                if time.monotonic() - started >= timeout:
                    raise QMPError(
                        msg=f"unable to connect to {q.peer.name} {q.peer.kind.value} socket - timeout after {count} retries"
                    )
                time.sleep(_CONNECT_RETRY_S)
            except OSError as e:
                sock.close()
                raise QMPError(msg=f"unable to connect to {q.peer.name} {q.peer.kind.value} socket - {e.strerror or e}")

        q.sock = sock
        q.deadline = started + timeout
        q.rbuf.clear()
        q.wbuf.clear()
        q.state = ConnState.IDLE
        assert self._selector is not None
        self._selector.register(sock, selectors.EVENT_READ, q)

    def _close(self, q: PeerQueue) -> None:
        if q.sock is None:
            return
        if self._selector is not None:
            try:
                self._selector.unregister(q.sock)
            except (KeyError, ValueError):
                pass
        q.sock.close()
        q.sock = None
        if q.state is not ConnState.ERRORED:
            q.state = ConnState.CLOSED

    def _check_queues(self) -> int:
        """Send the next command on idle connections; return how many are busy."""
        running = 0
        for q in self._queues.values():
            if q.sock is None:
                continue
            if q.error is not None:
                self._close(q)
                continue
            if q.current is not None:
                running += 1
                continue
            if not q.cmds:
                self._close(q)
                continue
            try:
                self._send_next(q)
            except (OSError, TypeError, ValueError) as e:
                q.set_error(str(e))
                self._close(q)
                continue
            running += 1
        return running

    def _send_next(self, q: PeerQueue) -> None:
        assert q.sock is not None and self._selector is not None
        command = q.current = q.cmds.popleft()
        command.id = q.next_id()

        args = dict(command.arguments)
        fd = args.pop("fd", None) if command.spec.passes_fd else None

        if q.is_qga:
            payload = (
                json.dumps({"execute": "guest-sync-delimited", "arguments": {"id": command.id}})
                + "\n"
                + json.dumps({"execute": command.spec.name, "arguments": args})
                + "\n"
            )
        else:
            payload = json.dumps({"execute": command.spec.name, "arguments": args, "id": command.id}) + "\n"

        self.logger.debug("%s %s <- %s (id=%s)", q.peer.name, q.peer.kind.value, command.spec.name, command.id)
        q.state = ConnState.AWAITING_REPLY

        if fd is not None:
            socket.send_fds(q.sock, [payload.encode()], [int(fd)])
            return
        q.wbuf += payload.encode()
        self._selector.modify(q.sock, selectors.EVENT_READ | selectors.EVENT_WRITE, q)

    def _poll_once(self) -> None:
        assert self._selector is not None
        active = [q for q in self._queues.values() if q.sock is not None]
        if not active:
            return
        wait = max(0.0, min(q.deadline for q in active) - time.monotonic())
        for key, mask in self._selector.select(wait):
            q = key.data
            if mask & selectors.EVENT_WRITE:
                self._on_writable(q)
            if q.sock is not None and mask & selectors.EVENT_READ:
                self._on_readable(q)

        now = time.monotonic()
        for q in active:
            if q.sock is not None and q.error is None and now >= q.deadline:
                q.set_error("got timeout", timeout=True)
                q.rbuf.clear()

    def _on_writable(self, q: PeerQueue) -> None:
        assert q.sock is not None and self._selector is not None
        try:
            n = q.sock.send(q.wbuf)
        except BlockingIOError:
            return
        except OSError as e:
            q.set_error(f"write failed - {e.strerror or e}")
            return
        del q.wbuf[:n]
        if not q.wbuf:
            self._selector.modify(q.sock, selectors.EVENT_READ, q)

    def _on_readable(self, q: PeerQueue) -> None:
        assert q.sock is not None
        try:
            data = q.sock.recv(_RECV_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            q.set_error(f"read failed - {e.strerror or e}")
            return

        if not data:
            self._on_eof(q)
            return

        q.rbuf += data
        try:
            if q.is_qga:
                self._parse_qga(q)
            else:
                self._parse_qmp(q)
        except QMPError as e:
            q.set_error(e.msg)
        except ValueError as e:
            q.set_error(f"malformed response - {e}")

    def _require_current(self, q: PeerQueue) -> QueuedCommand:
        if q.current is None:
            raise QMPError(msg=f"unable to lookup current command for {q.peer.name} ({q.path})")
        return q.current

    def _parse_qmp(self, q: PeerQueue) -> None:
        while q.error is None:
            nl = q.rbuf.find(b"\n")
            if nl < 0:
                return
            line = bytes(q.rbuf[:nl]).strip()
            del q.rbuf[: nl + 1]
            if not line:
                continue

            obj = json.loads(line)
            if not isinstance(obj, dict):
                raise QMPError(msg=f"malformed response - {line[:80]!r}")
            if "QMP" in obj:
                continue

            err = obj.get("error")
            if isinstance(err, dict) and "desc" in err:
                desc = str(err["desc"]).strip()
                if _IMMEDIATE_COMPLETION in desc:
                    continue
                raise QMPError(msg=desc)

            if "event" in obj:
                if self.event_callback is not None:
                    self.event_callback(obj)
                continue

            current = self._require_current(q)
            cmdid = obj.get("id")
            if cmdid is None:
                raise QMPError(msg="received response without command id")
            if cmdid != current.id:
                raise QMPError(msg=f"got wrong command id '{cmdid}' (expected {current.id})")

            q.current = None
            q.state = ConnState.IDLE
            current.complete(obj)

    def _parse_qga(self, q: PeerQueue) -> None:
        while q.error is None:
            idx = q.rbuf.rfind(_QGA_DELIM)
            if idx < 0:
                return
            parts = bytes(q.rbuf[idx + 1:]).split(b"\n", 2)
            if len(parts) < 3:
                return
            sync_line, reply_line, rest = parts
            q.rbuf[:] = rest

            current = self._require_current(q)
            cmdid = json.loads(sync_line).get("return")
            if not cmdid:
                raise QMPError(msg="received response without command id")
            if cmdid < current.id:
                continue
            if cmdid != current.id:
                raise QMPError(msg=f"got wrong command id '{cmdid}' (expected {current.id})")

            reply = json.loads(reply_line)
            err = reply.get("error")
            if isinstance(err, dict) and "desc" in err:
                raise QMPError(msg=str(err["desc"]).strip())

            q.current = None
            q.state = ConnState.IDLE
            current.complete(reply)

    def _on_eof(self, q: PeerQueue) -> None:
        current = q.current
        if q.is_qga and current is not None and current.spec.allow_close:
            idx = q.rbuf.rfind(_QGA_DELIM)
            tail = bytes(q.rbuf[idx + 1:]) if idx >= 0 else b""
            if b"\n" in tail:
                try:
                    cmdid = json.loads(tail.split(b"\n", 1)[0]).get("return")
                except ValueError as e:
                    q.set_error(f"malformed response - {e}")
                else:
                    if not cmdid:
                        q.set_error("received response without command id")
                    else:
                        q.current = None
                        current.complete(None)
                self._close(q)
                if q.cmds and q.error is None:
                    q.set_error("Got EOF but command queue is not empty.")
                return

        q.set_error("client closed connection")
        self._close(q)
