#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
ruleproxy (single-file)

- TCP/UDP intercept proxy driven by byte-pattern rules.
- Rules: reset / close / ignore / rewrite, scoped to client, server or both directions.
- Every data chunk runs through the bound rule handlers in a fixed order and is then
  printed (raw or hexdump) with a directional header.

"""

from __future__ import annotations

import argparse
import asyncio
import ipaddress
import os
import signal
import socket
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Set, Tuple, Union

import yaml

import logging
from logging.handlers import RotatingFileHandler

__version__ = "1.0.0"

DEFAULT_HOST = "0.0.0.0"
READ_CHUNK = 64 * 1024
UNRESOLVED_ADDRESS = "<unresolved>"

# Module logger (configured in main())
LOG = logging.getLogger("ruleproxy")

# Throttled logging (best-effort; designed for single-threaded asyncio loop)
_LOG_THROTTLE_STATE: dict[str, tuple[float, int]] = {}
# key -> (last_ts, suppressed_count)


def log_throttled(
    level: int,
    key: str,
    msg: str,
    *args,
    interval_s: float = 2.0,
    exc_info: bool = False,
    **kwargs,
) -> None:
    """
    Log a message at most once per interval for a given key.

    Keeps a suppressed counter; when it logs again it appends:
      " (suppressed N similar messages)"
    """
    now = time.time()
    last_ts, suppressed = _LOG_THROTTLE_STATE.get(key, (0.0, 0))

    if (now - last_ts) < float(interval_s):
        _LOG_THROTTLE_STATE[key] = (last_ts, suppressed + 1)
        return

    _LOG_THROTTLE_STATE[key] = (now, 0)

    if suppressed:
        msg = f"{msg} (suppressed {suppressed} similar messages)"
    LOG.log(level, msg, *args, exc_info=exc_info, **kwargs)


def setup_logging(log_path: Optional[str] = None, level: str = "INFO") -> None:
    """Configure application logging.

    Traffic is printed to stdout, so diagnostics go either to a rotating log
    file (when a path is given) or to stderr.

    Args:
        log_path: Path to the log file, or None for stderr.
        level: Logging level name (e.g. INFO, DEBUG).
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(lvl)

    # Avoid duplicate handlers (e.g. tests calling main() repeatedly)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler: logging.Handler
    if log_path:
        d = os.path.dirname(log_path)
        if d:
            os.makedirs(d, exist_ok=True)
        handler = RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,   # 10 MB
            backupCount=5,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(fmt)
    root.addHandler(handler)

    LOG.debug("Logging initialized: %s level=%s", log_path or "<stderr>", logging.getLevelName(lvl))


class ConfigError(ValueError):
    """Invalid operator configuration; fatal at startup."""


# ==========================================================
# Rules
# ==========================================================

CLIENT = "client"
SERVER = "server"
BOTH = "both"
SCOPES = (CLIENT, SERVER, BOTH)

RESET = "reset"
CLOSE = "close"
IGNORE = "ignore"
REWRITE = "rewrite"
MATCH_ACTIONS = (RESET, CLOSE, IGNORE)
# evaluation priority of the rule classes within one scope
RULE_CLASSES = (RESET, CLOSE, IGNORE, REWRITE)


def to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if value is None:
        return b""
    return str(value).encode("utf-8")


def parse_rewrite_spec(spec: Any) -> Tuple[bytes, bytes]:
    """Split a ``STRING:REPLACE`` rewrite rule on its first colon."""
    raw = to_bytes(spec)
    pattern, sep, replacement = raw.partition(b":")
    if not sep:
        raise ConfigError(f"rewrite rule {spec!r} must be STRING:REPLACE")
    if not pattern:
        raise ConfigError(f"rewrite rule {spec!r} has an empty pattern")
    return pattern, replacement


@dataclass(frozen=True)
class MatchRule:
    pattern: bytes
    scope: str
    action: str

    def __post_init__(self) -> None:
        if not self.pattern:
            raise ConfigError(f"{self.action} rule ({self.scope}) has an empty pattern")
        if self.scope not in SCOPES:
            raise ConfigError(f"unknown rule scope {self.scope!r}")
        if self.action not in MATCH_ACTIONS:
            raise ConfigError(f"unknown match action {self.action!r}")

    def matches(self, data: Union[bytes, bytearray]) -> bool:
        return self.pattern in data


@dataclass(frozen=True)
class RewriteRule:
    pattern: bytes
    replacement: bytes
    scope: str

    def __post_init__(self) -> None:
        if not self.pattern:
            raise ConfigError(f"rewrite rule ({self.scope}) has an empty pattern")
        if self.scope not in SCOPES:
            raise ConfigError(f"unknown rule scope {self.scope!r}")

    def apply(self, data: bytearray) -> int:
        """Replace every occurrence of the pattern in place; returns the count."""
        n = data.count(self.pattern)
        if n:
            data[:] = data.replace(self.pattern, self.replacement)
        return n


Rule = Union[MatchRule, RewriteRule]


def _empty_scopes() -> Dict[str, list]:
    return {scope: [] for scope in SCOPES}


@dataclass
class RulesConfig:
    """Operator-supplied rule patterns, per rule class and scope.

    Match classes hold pattern lists, ``rewrite`` holds (pattern, replacement) pairs.
    """
    reset: Dict[str, List[bytes]] = field(default_factory=_empty_scopes)
    close: Dict[str, List[bytes]] = field(default_factory=_empty_scopes)
    ignore: Dict[str, List[bytes]] = field(default_factory=_empty_scopes)
    rewrite: Dict[str, List[Tuple[bytes, bytes]]] = field(default_factory=_empty_scopes)

    def category(self, rule_class: str) -> Dict[str, list]:
        if rule_class not in RULE_CLASSES:
            raise ConfigError(f"unknown rule class {rule_class!r}")
        return getattr(self, rule_class)

    def add(self, rule_class: str, scope: str, value: Any) -> None:
        if scope not in SCOPES:
            raise ConfigError(f"unknown rule scope {scope!r} for {rule_class} rules")
        if rule_class == REWRITE:
            if isinstance(value, tuple):
                entry = (to_bytes(value[0]), to_bytes(value[1]))
            else:
                entry = parse_rewrite_spec(value)
            self.rewrite[scope].append(entry)
        else:
            self.category(rule_class)[scope].append(to_bytes(value))

    def extend(self, other: "RulesConfig") -> None:
        for rule_class in RULE_CLASSES:
            for scope in SCOPES:
                self.category(rule_class)[scope].extend(other.category(rule_class)[scope])


class RuleSet:
    """
    Immutable rules grouped by (scope, rule class).

    Order inside a group is the operator's order; the order between groups is
    decided by EventBinder.
    """
    def __init__(self, rules: Optional[Dict[Tuple[str, str], Tuple[Rule, ...]]] = None):
        self._rules: Dict[Tuple[str, str], Tuple[Rule, ...]] = dict(rules or {})

    def get(self, scope: str, rule_class: str) -> Tuple[Rule, ...]:
        return self._rules.get((scope, rule_class), ())

    def counts(self) -> Dict[str, int]:
        return {f"{rc}_{scope}": len(rules) for (scope, rc), rules in self._rules.items() if rules}

    def __len__(self) -> int:
        return sum(len(rules) for rules in self._rules.values())


def build_rule_set(cfg: RulesConfig) -> RuleSet:
    rules: Dict[Tuple[str, str], Tuple[Rule, ...]] = {}
    for scope in SCOPES:
        for action in MATCH_ACTIONS:
            seen: Dict[bytes, MatchRule] = {}
            for pattern in cfg.category(action)[scope]:
                if pattern in seen:
                    LOG.debug("duplicate %s rule (%s) %r dropped", action, scope, pattern)
                    continue
                seen[pattern] = MatchRule(pattern, scope, action)
            rules[(scope, action)] = tuple(seen.values())

        # later replacements for the same pattern win, first position is kept
        replacements: Dict[bytes, bytes] = {}
        for pattern, replacement in cfg.rewrite[scope]:
            replacements[pattern] = replacement
        rules[(scope, REWRITE)] = tuple(
            RewriteRule(pattern, replacement, scope) for pattern, replacement in replacements.items()
        )
    return RuleSet(rules)


# ==========================================================
# Connection addresses
# ==========================================================

class AddressError(Exception):
    pass


@dataclass(frozen=True)
class SocketEndpoint:
    # socket.socket, asyncio.StreamWriter or asyncio transport with a peer
    handle: Any


@dataclass(frozen=True)
class DatagramEndpoint:
    sock: Any
    peer: Tuple[str, int]


ConnectionRef = Union[SocketEndpoint, DatagramEndpoint]


def connection_ref(connection: Any) -> ConnectionRef:
    """Normalize a transport connection handle into a ConnectionRef."""
    if isinstance(connection, (SocketEndpoint, DatagramEndpoint)):
        return connection
    if isinstance(connection, tuple):
        if len(connection) == 2 and isinstance(connection[1], tuple) and len(connection[1]) >= 2:
            sock, peer = connection
            return DatagramEndpoint(sock, (peer[0], peer[1]))
        raise AddressError(f"malformed datagram endpoint {connection!r}")
    if isinstance(connection, (socket.socket, asyncio.StreamWriter, asyncio.BaseTransport)):
        return SocketEndpoint(connection)
    raise AddressError(f"unsupported connection type {type(connection).__name__}")


def _peername(handle: Any) -> Any:
    if isinstance(handle, socket.socket):
        try:
            return handle.getpeername()
        except OSError as e:
            raise AddressError(f"socket has no peer: {e}") from e
    return handle.get_extra_info("peername")


def resolve_address(connection: Any) -> str:
    """Return ``host:port`` of the remote end of a connection."""
    ref = connection_ref(connection)
    if isinstance(ref, DatagramEndpoint):
        host, port = ref.peer
    else:
        peer = _peername(ref.handle)
        if not isinstance(peer, tuple) or len(peer) < 2:
            raise AddressError(f"no peer address for {type(ref.handle).__name__}: {peer!r}")
        host, port = peer[0], peer[1]
    return f"{host}:{port}"


# ==========================================================
# Proxy hook contract
# ==========================================================

CLIENT_CONNECT = "client_connect"
CLIENT_DISCONNECT = "client_disconnect"
SERVER_CONNECT = "server_connect"
SERVER_DISCONNECT = "server_disconnect"
CLIENT_DATA = "client_data"
SERVER_DATA = "server_data"
EVENTS = (CLIENT_CONNECT, CLIENT_DISCONNECT, SERVER_CONNECT, SERVER_DISCONNECT, CLIENT_DATA, SERVER_DATA)

# several requests on one chunk: the first listed wins
ACTION_PRECEDENCE = (CLOSE, RESET, IGNORE)


@dataclass
class _Dispatch:
    event: str
    requested: List[str] = field(default_factory=list)

    def request(self, action: str) -> None:
        if action not in self.requested:
            self.requested.append(action)

    def outcome(self) -> Optional[str]:
        for action in ACTION_PRECEDENCE:
            if action in self.requested:
                return action
        return None


CURRENT_DISPATCH: ContextVar[Optional[_Dispatch]] = ContextVar("CURRENT_DISPATCH", default=None)


class Proxy:
    """
    Event hooks and connection-control operations shared by the transports.

    Handlers are kept per event kind in registration order. dispatch_data()
    runs all of them on the same mutable buffer; reset()/close()/ignore()
    only record a request on the dispatch in flight, and the transport acts
    on it once the whole chain has run.
    """
    protocol = "none"
    connection_oriented = False

    def __init__(self, host: str = DEFAULT_HOST, port: int = 0,
                 server: Tuple[str, int] = ("127.0.0.1", 0)):
        self.host = host
        self.port = port
        self.server_host, self.server_port = server
        self._handlers: Dict[str, List[Callable[..., Any]]] = {ev: [] for ev in EVENTS}

    def __str__(self) -> str:
        return f"{self.host}:{self.port} <-> {self.server_host}:{self.server_port}"

    # hooks
    def on_client_connect(self, handler: Callable[[Any], Any]) -> Callable[[Any], Any]:
        self._handlers[CLIENT_CONNECT].append(handler)
        return handler

    def on_client_disconnect(self, handler: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
        self._handlers[CLIENT_DISCONNECT].append(handler)
        return handler

    def on_server_connect(self, handler: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
        self._handlers[SERVER_CONNECT].append(handler)
        return handler

    def on_server_disconnect(self, handler: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
        self._handlers[SERVER_DISCONNECT].append(handler)
        return handler

    def on_client_data(self, handler: Callable[[Any, Any, bytearray], Any]) -> Callable[[Any, Any, bytearray], Any]:
        self._handlers[CLIENT_DATA].append(handler)
        return handler

    def on_server_data(self, handler: Callable[[Any, Any, bytearray], Any]) -> Callable[[Any, Any, bytearray], Any]:
        self._handlers[SERVER_DATA].append(handler)
        return handler

    def on_data(self, handler: Callable[[Any, Any, bytearray], Any]) -> Callable[[Any, Any, bytearray], Any]:
        self.on_client_data(handler)
        self.on_server_data(handler)
        return handler

    def handlers(self, event: str) -> List[Callable[..., Any]]:
        return list(self._handlers[event])

    # control operations
    def reset(self) -> None:
        self._request(RESET)

    def close(self) -> None:
        self._request(CLOSE)

    def ignore(self) -> None:
        self._request(IGNORE)

    def _request(self, action: str) -> None:
        dispatch = CURRENT_DISPATCH.get()
        if dispatch is None:
            raise RuntimeError(f"{action}() called outside of a data event")
        dispatch.request(action)

    # dispatch
    def dispatch(self, event: str, *args: Any) -> None:
        for handler in self._handlers[event]:
            handler(*args)

    def dispatch_data(self, event: str, client: Any, server: Any, data: bytearray) -> Optional[str]:
        """Run every data handler for one chunk; returns the requested action, if any."""
        dispatch = _Dispatch(event)
        token = CURRENT_DISPATCH.set(dispatch)
        try:
            for handler in self._handlers[event]:
                handler(client, server, data)
        finally:
            CURRENT_DISPATCH.reset(token)
        return dispatch.outcome()

    # lifecycle
    async def open(self) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    async def serve_forever(self) -> None:
        await self.open()

        stop_ev = asyncio.Event()

        def _sig(*_):
            stop_ev.set()

        loop = asyncio.get_running_loop()
        for s in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(s, _sig)
            except NotImplementedError:
                pass

        try:
            await stop_ev.wait()
        finally:
            await self.stop()

    def start(self) -> None:
        """Blocking entry point: accept and forward until SIGINT/SIGTERM."""
        asyncio.run(self.serve_forever())


# ==========================================================
# Event binding
# ==========================================================

PRESENT = "present"

OUTGOING = "->"
INCOMING = "<-"


@dataclass(frozen=True)
class HandlerSpec:
    """One bound handler: which stage of which event it belongs to and the rule it runs."""
    event: str
    stage: str
    scope: Optional[str]
    rule: Optional[Rule]
    func: Callable[..., Any] = field(compare=False, repr=False)

    def __call__(self, *args: Any) -> Any:
        return self.func(*args)

    @property
    def label(self) -> str:
        if self.rule is None:
            return self.stage
        return f"{self.stage}:{self.scope}:{self.rule.pattern!r}"


class EventBinder:
    """
    Attach a RuleSet and a Presenter onto a proxy's event hooks.

    Data events get, in this order: reset, close, ignore and rewrite rules of
    the event's own direction, then the same four stages for both-scoped
    rules, then the presentation handler. The order is fixed here, once.
    """
    def __init__(self, rules: RuleSet, presenter: "Presenter"):
        self.rules = rules
        self.presenter = presenter

    def plan(self, proxy: Proxy) -> Dict[str, List[HandlerSpec]]:
        plan: Dict[str, List[HandlerSpec]] = {
            CLIENT_DATA: self._data_chain(proxy, CLIENT_DATA, CLIENT, OUTGOING),
            SERVER_DATA: self._data_chain(proxy, SERVER_DATA, SERVER, INCOMING),
        }
        if proxy.connection_oriented:
            plan[CLIENT_CONNECT] = [self._lifecycle(proxy, CLIENT_CONNECT, OUTGOING, "[connecting]")]
            plan[CLIENT_DISCONNECT] = [self._lifecycle(proxy, CLIENT_DISCONNECT, OUTGOING, "[disconnecting]")]
            plan[SERVER_CONNECT] = [self._lifecycle(proxy, SERVER_CONNECT, INCOMING, "[connected]")]
            plan[SERVER_DISCONNECT] = [self._lifecycle(proxy, SERVER_DISCONNECT, INCOMING, "[disconnected]")]
        return plan

    def bind(self, proxy: Proxy) -> Dict[str, List[HandlerSpec]]:
        plan = self.plan(proxy)
        register = {
            CLIENT_CONNECT: proxy.on_client_connect,
            CLIENT_DISCONNECT: proxy.on_client_disconnect,
            SERVER_CONNECT: proxy.on_server_connect,
            SERVER_DISCONNECT: proxy.on_server_disconnect,
            CLIENT_DATA: proxy.on_client_data,
            SERVER_DATA: proxy.on_server_data,
        }
        for event, chain in plan.items():
            for spec in chain:
                register[event](spec)
        LOG.info("bound %d rules to %s proxy %s %s", len(self.rules), proxy.protocol, proxy, self.rules.counts())
        return plan

    def _data_chain(self, proxy: Proxy, event: str, direction: str, arrow: str) -> List[HandlerSpec]:
        chain: List[HandlerSpec] = []
        for scope in (direction, BOTH):
            for action in MATCH_ACTIONS:
                for rule in self.rules.get(scope, action):
                    chain.append(HandlerSpec(event, action, scope, rule, self._match_handler(proxy, rule)))
            for rule in self.rules.get(scope, REWRITE):
                chain.append(HandlerSpec(event, REWRITE, scope, rule, self._rewrite_handler(rule)))
        chain.append(HandlerSpec(event, PRESENT, None, None, self._present_handler(proxy, arrow)))
        return chain

    @staticmethod
    def _match_handler(proxy: Proxy, rule: MatchRule) -> Callable[[Any, Any, bytearray], None]:
        control = getattr(proxy, rule.action)

        def handler(client: Any, server: Any, data: bytearray) -> None:
            if rule.matches(data):
                LOG.debug("%s rule (%s) matched %r", rule.action, rule.scope, rule.pattern)
                control()

        return handler

    @staticmethod
    def _rewrite_handler(rule: RewriteRule) -> Callable[[Any, Any, bytearray], None]:
        def handler(client: Any, server: Any, data: bytearray) -> None:
            if rule.apply(data):
                LOG.debug("rewrite rule (%s) %r -> %r applied", rule.scope, rule.pattern, rule.replacement)

        return handler

    def _present_handler(self, proxy: Proxy, arrow: str) -> Callable[[Any, Any, bytearray], None]:
        def handler(client: Any, server: Any, data: bytearray) -> None:
            self.presenter.present(arrow, client, str(proxy), data)

        return handler

    def _lifecycle(self, proxy: Proxy, event: str, arrow: str, label: str) -> HandlerSpec:
        def handler(client: Any, server: Any = None) -> None:
            self.presenter.present(arrow, client, str(proxy), event=label)

        return HandlerSpec(event, PRESENT, None, None, handler)


# ==========================================================
# Presentation: headers + raw/hexdump payload
# ==========================================================

def hexdump_lines(data: bytes, width: int = 16) -> List[str]:
    out: List[str] = []
    for off in range(0, len(data), width):
        chunk = data[off:off + width]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        hex_part = hex_part.ljust(width * 3 - 1)
        ascii_part = "".join(chr(b) if 32 <= b <= 126 else "." for b in chunk)
        out.append(f"{off:08x}  {hex_part}  |{ascii_part}|")
    out.append(f"{len(data):08x}")
    return out


def colorize(s: str, code: str) -> str:
    return f"\x1b[{code}m{s}\x1b[0m"


class Presenter:
    """
    Prints one header line per event and, for data events, the payload.

    Output is written as bytes so payloads are shown verbatim whatever their
    encoding.
    """
    COLORS = {OUTGOING: "36", INCOMING: "32"}

    def __init__(self, out: Optional[BinaryIO] = None, hexdump: bool = False, color: Optional[bool] = None,
                 silent: bool = False):
        self.out = out if out is not None else sys.stdout.buffer
        self.hexdump = hexdump
        self.silent = silent
        if color is None:
            isatty = getattr(self.out, "isatty", None)
            color = os.environ.get("NO_COLOR") is None and bool(isatty and isatty())
        self.color = color

    def address(self, connection: Any) -> str:
        try:
            return resolve_address(connection)
        except AddressError as e:
            log_throttled(logging.WARNING, "presenter.address", "cannot resolve connection address: %s", e)
            return UNRESOLVED_ADDRESS

    def header(self, arrow: str, connection: Any, proxy_identity: str, event: Optional[str] = None) -> str:
        line = f"{self.address(connection)} {arrow} {proxy_identity}"
        if event:
            line = f"{line} {event}"
        if self.color:
            line = colorize(line, self.COLORS.get(arrow, "0"))
        return line

    def present(self, arrow: str, connection: Any, proxy_identity: str,
                payload: Optional[Union[bytes, bytearray]] = None, event: Optional[str] = None) -> None:
        if self.silent:
            return
        out = self.out
        out.write(self.header(arrow, connection, proxy_identity, event).encode("utf-8") + b"\n")
        if payload is not None:
            data = bytes(payload)
            if self.hexdump:
                out.write("\n".join(hexdump_lines(data)).encode("ascii") + b"\n")
            else:
                out.write(data)
                if not data.endswith(b"\n"):
                    out.write(b"\n")
        out.flush()


# ==========================================================
# Transports
# ==========================================================

_EOF = "eof"
_BROKEN = "broken"


async def close_writer(writer: Optional[asyncio.StreamWriter]) -> None:
    if writer is None:
        return
    try:
        writer.close()
        await writer.wait_closed()
    except (OSError, RuntimeError):
        LOG.debug("close_writer failed", exc_info=True)


def _half_close(writer: asyncio.StreamWriter) -> None:
    try:
        if writer.can_write_eof():
            writer.write_eof()
    except OSError:
        LOG.debug("write_eof failed", exc_info=True)


class TCPProxy(Proxy):
    protocol = "tcp"
    connection_oriented = True

    def __init__(self, host: str = DEFAULT_HOST, port: int = 0,
                 server: Tuple[str, int] = ("127.0.0.1", 0), connect_timeout: float = 5.0):
        super().__init__(host, port, server)
        self.connect_timeout = connect_timeout
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()

    async def open(self) -> None:
        try:
            self._server = await asyncio.start_server(self._handle_client, host=self.host, port=self.port)
        except OSError:
            LOG.error("TCP proxy: cannot listen on %s:%s", self.host, self.port, exc_info=True)
            raise
        self.port = self._server.sockets[0].getsockname()[1]
        LOG.info("TCP proxy listening %s", self)

    async def stop(self) -> None:
        # stop accepting, then drop live connections before waiting on the server
        if self._server is not None:
            self._server.close()

        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = set()

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            await TCPConnection(self, reader, writer).run()
        except Exception:
            LOG.error("TCP proxy: connection from %s failed", writer.get_extra_info("peername"), exc_info=True)
        finally:
            if task is not None:
                self._tasks.discard(task)


class TCPConnection:
    """
    One accepted client connection and its upstream.

    Relays chunks both ways through proxy.dispatch_data(); a requested close
    ends the connection, a requested reset reconnects the upstream side only.
    """
    def __init__(self, proxy: TCPProxy, c_reader: asyncio.StreamReader, c_writer: asyncio.StreamWriter):
        self.proxy = proxy
        self.c_reader = c_reader
        self.c_writer = c_writer
        self.u_reader: Optional[asyncio.StreamReader] = None
        self.u_writer: Optional[asyncio.StreamWriter] = None

    async def run(self) -> None:
        proxy = self.proxy
        proxy.dispatch(CLIENT_CONNECT, self.c_writer)
        try:
            while True:
                try:
                    self.u_reader, self.u_writer = await asyncio.wait_for(
                        asyncio.open_connection(proxy.server_host, proxy.server_port),
                        timeout=proxy.connect_timeout,
                    )
                except (OSError, asyncio.TimeoutError) as e:
                    LOG.warning("TCP proxy: upstream %s:%s connect failed: %r",
                                proxy.server_host, proxy.server_port, e)
                    return
                proxy.dispatch(SERVER_CONNECT, self.c_writer, self.u_writer)

                try:
                    outcome = await self._relay()
                finally:
                    await close_writer(self.u_writer)
                    proxy.dispatch(SERVER_DISCONNECT, self.c_writer, self.u_writer)

                if outcome != RESET:
                    break
                LOG.info("TCP proxy: reset requested, reconnecting upstream %s:%s",
                         proxy.server_host, proxy.server_port)
        finally:
            proxy.dispatch(CLIENT_DISCONNECT, self.c_writer, self.u_writer)
            await close_writer(self.c_writer)

    async def _relay(self) -> Optional[str]:
        if self.u_reader is None or self.u_writer is None:
            return None
        t_client = asyncio.create_task(self._pump(CLIENT_DATA, self.c_reader, self.u_writer))
        t_server = asyncio.create_task(self._pump(SERVER_DATA, self.u_reader, self.c_writer))
        pending: Set[asyncio.Task] = {t_client, t_server}
        outcome: Optional[str] = None
        try:
            while pending and outcome is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for t in done:
                    result = t.result()
                    if t is t_client and result == _EOF:
                        # client finished sending; keep relaying the server side
                        _half_close(self.u_writer)
                        continue
                    outcome = result
        finally:
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        return outcome

    async def _pump(self, event: str, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> str:
        src = "client" if event == CLIENT_DATA else "upstream"
        while True:
            try:
                chunk = await reader.read(READ_CHUNK)
            except ConnectionError as e:
                LOG.debug("TCP proxy: %s read failed: %r", src, e)
                return _BROKEN
            if not chunk:
                return _EOF

            data = bytearray(chunk)
            action = self.proxy.dispatch_data(event, self.c_writer, self.u_writer, data)
            if action in (CLOSE, RESET):
                return action
            if action == IGNORE or not data:
                continue

            try:
                writer.write(bytes(data))
                await writer.drain()
            except ConnectionError as e:
                LOG.debug("TCP proxy: write to %s failed: %r", "upstream" if src == "client" else "client", e)
                return _BROKEN


_STOP = object()
_RECONNECT = object()


class _ListenProtocol(asyncio.DatagramProtocol):
    def __init__(self, proxy: "UDPProxy"):
        self.proxy = proxy

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.proxy._client_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        log_throttled(logging.WARNING, "udp.listen.error", "UDP proxy: listener error: %r", exc)


class _UpstreamProtocol(asyncio.DatagramProtocol):
    def __init__(self, session: "UDPSession"):
        self.session = session

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.session.server_datagram(data)

    def error_received(self, exc: Exception) -> None:
        LOG.debug("UDP proxy: upstream error for %s: %r", self.session.peer, exc)


class UDPProxy(Proxy):
    """Datagram proxy; one upstream socket (UDPSession) per client address."""
    protocol = "udp"
    connection_oriented = False

    def __init__(self, host: str = DEFAULT_HOST, port: int = 0,
                 server: Tuple[str, int] = ("127.0.0.1", 0), idle_timeout: float = 60.0):
        super().__init__(host, port, server)
        self.idle_timeout = idle_timeout
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._sessions: Dict[Tuple[str, int], UDPSession] = {}

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            self.transport, _ = await loop.create_datagram_endpoint(
                lambda: _ListenProtocol(self), local_addr=(self.host, self.port)
            )
        except OSError:
            LOG.error("UDP proxy: cannot listen on %s:%s", self.host, self.port, exc_info=True)
            raise
        self.port = self.transport.get_extra_info("sockname")[1]
        LOG.info("UDP proxy listening %s", self)

    async def stop(self) -> None:
        for session in list(self._sessions.values()):
            await session.stop()
        if self.transport is not None:
            self.transport.close()
            self.transport = None

    def _client_datagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        peer = (addr[0], addr[1])
        session = self._sessions.get(peer)
        if session is None:
            session = UDPSession(self, peer)
            self._sessions[peer] = session
            session.start()
        session.feed(data)

    def _forget(self, session: "UDPSession") -> None:
        if self._sessions.get(session.peer) is session:
            del self._sessions[session.peer]


class UDPSession:
    def __init__(self, proxy: UDPProxy, peer: Tuple[str, int]):
        self.proxy = proxy
        self.peer = peer
        # datagram-style connection handle for hooks
        self.client = (proxy.transport, peer)
        self.upstream: Optional[asyncio.DatagramTransport] = None
        self.last_activity = time.monotonic()
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    def feed(self, item: Any) -> None:
        self.last_activity = time.monotonic()
        self._queue.put_nowait(item)

    async def stop(self) -> None:
        self._closed = True
        self._queue.put_nowait(_STOP)
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _connect(self) -> None:
        loop = asyncio.get_running_loop()
        self.upstream, _ = await loop.create_datagram_endpoint(
            lambda: _UpstreamProtocol(self),
            remote_addr=(self.proxy.server_host, self.proxy.server_port),
        )

    def _disconnect(self) -> None:
        if self.upstream is not None:
            self.upstream.close()
            self.upstream = None

    async def _run(self) -> None:
        try:
            await self._connect()
            while not self._closed:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=self.proxy.idle_timeout)
                except asyncio.TimeoutError:
                    if time.monotonic() - self.last_activity >= self.proxy.idle_timeout:
                        LOG.debug("UDP proxy: session %s idle, expiring", self.peer)
                        break
                    continue

                if item is _STOP:
                    break
                if item is _RECONNECT:
                    await self._reconnect()
                    continue
                await self._client_data(item)
        except OSError:
            LOG.warning("UDP proxy: session %s failed", self.peer, exc_info=True)
        finally:
            self._closed = True
            self._disconnect()
            self.proxy._forget(self)

    async def _reconnect(self) -> None:
        LOG.info("UDP proxy: reset requested, reconnecting upstream for %s", self.peer)
        self._disconnect()
        await self._connect()

    async def _client_data(self, chunk: bytes) -> None:
        data = bytearray(chunk)
        action = self.proxy.dispatch_data(CLIENT_DATA, self.client, self.upstream, data)
        if action == CLOSE:
            self._closed = True
        elif action == RESET:
            await self._reconnect()
        elif action != IGNORE and data and self.upstream is not None:
            self.upstream.sendto(bytes(data))

    def server_datagram(self, chunk: bytes) -> None:
        if self._closed:
            return
        self.last_activity = time.monotonic()
        data = bytearray(chunk)
        action = self.proxy.dispatch_data(SERVER_DATA, self.client, self.upstream, data)
        if action == CLOSE:
            self._closed = True
            self._queue.put_nowait(_STOP)
        elif action == RESET:
            self._queue.put_nowait(_RECONNECT)
        elif action != IGNORE and data and self.proxy.transport is not None:
            self.proxy.transport.sendto(bytes(data), self.peer)


# ==========================================================
# Configuration
# ==========================================================

TRANSPORTS = ("tcp", "udp")


@dataclass
class ProxyConfig:
    transport: str = "tcp"
    host: str = DEFAULT_HOST
    port: Optional[int] = None
    server_host: Optional[str] = None
    server_port: Optional[int] = None
    hexdump: bool = False
    silent: bool = False
    color: Optional[bool] = None  # None => auto
    connect_timeout: float = 5.0
    udp_idle_timeout: float = 60.0
    rules: RulesConfig = field(default_factory=RulesConfig)

    @property
    def server(self) -> Tuple[str, int]:
        if not self.server_host:
            raise ConfigError("server is required (--server HOST[:PORT] or 'server' in config)")
        port = self.server_port if self.server_port is not None else self.port
        if port is None:
            raise ConfigError("server port unknown: give HOST:PORT or a listen port")
        return self.server_host, port


def _parse_port(value: Any, what: str, allow_zero: bool = False) -> int:
    try:
        port = int(str(value).strip(), 10)
    except ValueError as e:
        raise ConfigError(f"invalid {what} port {value!r}") from e
    low = 0 if allow_zero else 1
    if not (low <= port <= 65535):
        raise ConfigError(f"{what} port {port} out of range")
    return port


def parse_server(spec: str) -> Tuple[str, Optional[int]]:
    """Parse ``HOST``, ``HOST:PORT``, ``IPV6`` or ``[IPV6]:PORT``."""
    spec = (spec or "").strip()
    port_s: Optional[str] = None
    if spec.startswith("["):
        host, sep, rest = spec[1:].partition("]")
        if not sep:
            raise ConfigError(f"invalid server {spec!r}: missing ']'")
        if rest:
            if not rest.startswith(":"):
                raise ConfigError(f"invalid server {spec!r}")
            port_s = rest[1:]
    elif spec.count(":") == 1:
        host, port_s = spec.split(":")
    elif ":" in spec:
        # only an IPv6 literal may carry more than one colon without brackets
        try:
            ipaddress.ip_address(spec)
        except ValueError as e:
            raise ConfigError(f"invalid server {spec!r}: expected HOST[:PORT] or [IPV6]:PORT") from e
        host = spec
    else:
        host = spec
    if not host:
        raise ConfigError(f"invalid server {spec!r}: expected HOST[:PORT]")
    port = _parse_port(port_s, "server") if port_s is not None else None
    return host, port


def _parse_hostport(addr: str) -> Tuple[str, int]:
    host, sep, port_s = str(addr).rpartition(":")
    if not sep or not host:
        raise ConfigError(f"invalid listen address {addr!r}: expected HOST:PORT")
    return host.strip("[]"), _parse_port(port_s, "listen", allow_zero=True)


def _rules_from_yaml(raw: Any) -> RulesConfig:
    rules = RulesConfig()
    if raw is None:
        return rules
    if not isinstance(raw, dict):
        raise ConfigError("'rules' must be a mapping of rule class -> scope -> patterns")
    for rule_class, scopes in raw.items():
        if rule_class not in RULE_CLASSES:
            raise ConfigError(f"unknown rule class {rule_class!r}")
        if scopes is None:
            continue
        if not isinstance(scopes, dict):
            raise ConfigError(f"rules.{rule_class} must be a mapping of scope -> patterns")
        for scope, values in scopes.items():
            if values is None:
                continue
            if rule_class == REWRITE and isinstance(values, dict):
                for pattern, replacement in values.items():
                    rules.add(REWRITE, scope, (pattern, replacement))
                continue
            if not isinstance(values, list):
                values = [values]
            for value in values:
                rules.add(rule_class, scope, value)
    return rules


def load_config(path: str) -> ProxyConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("Config must be a mapping")

    cfg = ProxyConfig()
    transport = str(raw.get("transport", "tcp")).lower()
    if transport not in TRANSPORTS:
        raise ConfigError(f"unknown transport {transport!r} (expected tcp or udp)")
    cfg.transport = transport

    if raw.get("listen") is not None:
        cfg.host, cfg.port = _parse_hostport(str(raw["listen"]))
    if raw.get("host") is not None:
        cfg.host = str(raw["host"])
    if raw.get("port") is not None:
        cfg.port = _parse_port(raw["port"], "listen", allow_zero=True)
    if raw.get("server") is not None:
        cfg.server_host, cfg.server_port = parse_server(str(raw["server"]))

    cfg.hexdump = bool(raw.get("hexdump", False))
    cfg.silent = bool(raw.get("silent", False))
    color = raw.get("color", "auto")
    cfg.color = None if color in (None, "auto") else bool(color)
    try:
        cfg.connect_timeout = float(raw.get("connect_timeout", 5.0))
        cfg.udp_idle_timeout = float(raw.get("udp_idle_timeout", 60.0))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid timeout: {e}") from e

    cfg.rules = _rules_from_yaml(raw.get("rules"))
    return cfg


def config_from_args(args: argparse.Namespace) -> ProxyConfig:
    """Build the effective config: YAML file (if any), then CLI overrides and extra rules."""
    cfg = load_config(args.config) if args.config else ProxyConfig()

    if args.transport:
        cfg.transport = args.transport
    if args.host:
        cfg.host = args.host
    if args.port is not None:
        cfg.port = _parse_port(args.port, "listen", allow_zero=True)
    if args.server:
        cfg.server_host, cfg.server_port = parse_server(args.server)
    if args.silent:
        cfg.silent = True
    if args.hexdump:
        cfg.hexdump = True
    if args.color is not None:
        cfg.color = args.color

    cli_rules = RulesConfig()
    for rule_class in RULE_CLASSES:
        for scope in SCOPES:
            for value in getattr(args, f"{rule_class}_{scope}") or []:
                cli_rules.add(rule_class, scope, value)
    cfg.rules.extend(cli_rules)

    if cfg.port is None:
        raise ConfigError("listen port is required (--port or 'port'/'listen' in config)")
    if not cfg.server_host:
        raise ConfigError("server is required (--server HOST[:PORT] or 'server' in config)")
    return cfg


def build_proxy(cfg: ProxyConfig) -> Proxy:
    if cfg.port is None:
        raise ConfigError("listen port is required (--port or 'port'/'listen' in config)")
    if cfg.transport == "udp":
        return UDPProxy(cfg.host, cfg.port, cfg.server, idle_timeout=cfg.udp_idle_timeout)
    return TCPProxy(cfg.host, cfg.port, cfg.server, connect_timeout=cfg.connect_timeout)


def dump_example_config() -> str:
    example = {
        "transport": "tcp",
        "listen": "0.0.0.0:8080",
        "server": "www.example.com:80",
        "hexdump": False,
        "silent": False,
        "color": "auto",
        "connect_timeout": 5.0,
        "udp_idle_timeout": 60.0,
        "rules": {
            "reset": {"client": [], "server": [], "both": []},
            "close": {"client": [], "server": [], "both": ["QUIT"]},
            "ignore": {"client": ["User-Agent: curl"], "server": [], "both": []},
            "rewrite": {
                "client": {"GET": "POST"},
                "server": ["200 OK:403 Forbidden"],
                "both": {},
            },
        },
    }
    return yaml.safe_dump(example, sort_keys=False)


# ==========================================================
# CLI
# ==========================================================

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ruleproxy",
        description=(
            "TCP/UDP intercept proxy.\n"
            "Client and server data pass through reset / close / ignore / rewrite rules\n"
            "and are printed to stdout (raw or hexdump).\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    p.add_argument("--config", help="Path to config YAML (CLI options override it)")
    p.add_argument("--log", default=None, help="Path to log file (default: stderr)")
    p.add_argument("--log-level", default="INFO",
                   help="Log level: DEBUG, INFO, WARNING, ERROR (default: INFO)")

    t = p.add_mutually_exclusive_group()
    t.add_argument("-t", "--tcp", dest="transport", action="store_const", const="tcp",
                   help="TCP Proxy (default)")
    t.add_argument("-u", "--udp", dest="transport", action="store_const", const="udp",
                   help="UDP Proxy")

    p.add_argument("-x", "--hexdump", action="store_true", help="Enable hexdump output")
    p.add_argument("--silent", action="store_true",
                   help="Do not print traffic (rules still apply)")
    p.add_argument("--color", action=argparse.BooleanOptionalAction, default=None,
                   help="Colour headers (default: when stdout is a TTY)")
    p.add_argument("-H", "--host", metavar="HOST", help=f"Host to listen on (default: {DEFAULT_HOST})")
    p.add_argument("-p", "--port", metavar="PORT", help="Port to listen on")
    p.add_argument("-s", "--server", metavar="HOST[:PORT]", help="Server to forward connections to")

    for rule_class, flag in ((REWRITE, "-r"), (IGNORE, "-i"), (CLOSE, "-C"), (RESET, "-R")):
        metavar = "STRING:REPLACE" if rule_class == REWRITE else "STRING"
        title = rule_class.capitalize()
        p.add_argument(f"--{rule_class}-client", dest=f"{rule_class}_client", metavar=metavar,
                       nargs="+", action="extend", help=f"Client {rule_class} rules")
        p.add_argument(f"--{rule_class}-server", dest=f"{rule_class}_server", metavar=metavar,
                       nargs="+", action="extend", help=f"Server {rule_class} rules")
        p.add_argument(flag, f"--{rule_class}", dest=f"{rule_class}_both", metavar=metavar,
                       nargs="+", action="extend", help=f"{title} rules")

    g = p.add_mutually_exclusive_group()
    g.add_argument("--check", action="store_true", help="Validate configuration and exit.")
    g.add_argument("--dump-example-config", action="store_true", help="Print example config and exit.")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    try:
        setup_logging(args.log, args.log_level)
    except OSError as e:
        sys.stderr.write(f"[ruleproxy] setup_logging failed: {e!r}\n")

    if args.dump_example_config:
        print(dump_example_config())
        return 0

    try:
        cfg = config_from_args(args)
        rules = build_rule_set(cfg.rules)
        proxy = build_proxy(cfg)
    except (ConfigError, OSError, yaml.YAMLError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    if args.check:
        print("OK")
        return 0

    presenter = Presenter(hexdump=cfg.hexdump, color=cfg.color, silent=cfg.silent)
    EventBinder(rules, presenter).bind(proxy)

    try:
        proxy.start()
    except KeyboardInterrupt:
        pass
    except OSError as e:
        print(f"Proxy error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
