"""
Live view of watched positions.

Owners (wallet addresses) are watched; their position accounts at each
protocol are discovered by bulk fetch and then followed through a JSON-RPC
account subscription websocket. A bulk fetch replaces the owner's position
set; a notification updates only its own account's position. Both emit
Created / Updated / Deleted changes to registered handlers and to the event bus.

Channel states: DISCONNECTED -> CONNECTING -> CONNECTED <-> RECONNECTING -> STOPPED
"""
import asyncio
import base64
import inspect
import itertools
import json
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp
from aiohttp import WSMsgType

from sentinel.errors import DecodeError, OraclePriceUnavailable, ReserveUnavailable, TransportError
from sentinel.models.position_models import ChangeKind, Position, PositionChange, Protocol, position_id
from sentinel.oracle.price_resolver import PriceResolver
from sentinel.protocols.base import ProtocolAdapter
from sentinel.protocols.registry import build_adapters
from sentinel.services.event_bus import (
    MONITOR_STATE,
    POSITION_CREATED,
    POSITION_DELETED,
    POSITION_UPDATED,
    SOURCE_NOTIFICATION,
    SOURCE_POLL,
    InProcessEventBus,
)
from sentinel.services.reserve_cache import ReserveCache
from sentinel.services.rpc_client import SolanaRpcClient

logger = logging.getLogger(__name__)

EVENT_BY_KIND = {
    ChangeKind.CREATED: POSITION_CREATED,
    ChangeKind.UPDATED: POSITION_UPDATED,
    ChangeKind.DELETED: POSITION_DELETED,
}

ACCOUNT_FAILURES = (DecodeError, ReserveUnavailable, OraclePriceUnavailable)

ChangeHandler = Callable[[PositionChange], Optional[Awaitable[None]]]


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass
class BackoffPolicy:
    base_sec: float = 1.0
    max_sec: float = 30.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number `attempt` (1-based)."""
        return min(self.base_sec * (2 ** max(attempt - 1, 0)), self.max_sec)


@dataclass
class ProtocolScan:
    protocol: Protocol
    positions: Dict[str, Position] = field(default_factory=dict)
    accounts: Dict[str, Protocol] = field(default_factory=dict)
    failed: Set[str] = field(default_factory=set)


def _close(a: float, b: float, eps: float) -> bool:
    if math.isinf(a) or math.isinf(b):
        return a == b
    return abs(a - b) <= eps


def position_changed(previous: Position, current: Position, eps: float = 1e-9) -> bool:
    """Field-level change predicate used by the diff."""
    if not _close(previous.health_factor, current.health_factor, eps):
        return True
    if len(previous.collateral) != len(current.collateral) or len(previous.debt) != len(current.debt):
        return True
    if len(previous.perps) != len(current.perps):
        return True
    for old, new in zip(previous.collateral, current.collateral):
        if old.asset_id != new.asset_id or not _close(old.amount, new.amount, eps) or not _close(old.value_usd, new.value_usd, eps):
            return True
    for old, new in zip(previous.debt, current.debt):
        if old.asset_id != new.asset_id or not _close(old.amount, new.amount, eps) or not _close(old.value_usd, new.value_usd, eps):
            return True
    for old, new in zip(previous.perps, current.perps):
        if not _close(old.base_amount, new.base_amount, eps) or not _close(old.unrealized_pnl, new.unrealized_pnl, eps):
            return True
    return False


def diff_positions(
    previous: Dict[str, Position],
    current: Dict[str, Position],
    eps: float = 1e-9,
) -> List[PositionChange]:
    changes = []
    for pid, position in current.items():
        old = previous.get(pid)
        if old is None:
            changes.append(PositionChange(kind=ChangeKind.CREATED, position=position))
        elif position_changed(old, position, eps):
            changes.append(PositionChange(kind=ChangeKind.UPDATED, position=position, previous=old))
    for pid, old in previous.items():
        if pid not in current:
            changes.append(PositionChange(kind=ChangeKind.DELETED, position=old))
    return changes


class PositionMonitor:
    def __init__(
        self,
        rpc: SolanaRpcClient,
        cache: ReserveCache,
        prices: PriceResolver,
        ws_url: str,
        *,
        adapters: Optional[Dict[Protocol, ProtocolAdapter]] = None,
        event_bus: Optional[InProcessEventBus] = None,
        backoff: Optional[BackoffPolicy] = None,
        keepalive_interval_sec: float = 20.0,
        keepalive_timeout_sec: float = 10.0,
        change_epsilon: float = 1e-9,
        ws_connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.rpc = rpc
        self.cache = cache
        self.prices = prices
        self.ws_url = ws_url
        self.adapters = adapters if adapters is not None else build_adapters()
        self.event_bus = event_bus
        self.backoff = backoff or BackoffPolicy()
        self.keepalive_interval_sec = keepalive_interval_sec
        self.keepalive_timeout_sec = keepalive_timeout_sec
        self.change_epsilon = change_epsilon
        self._ws_connect = ws_connect
        self._sleep = sleep
        self._clock = clock

        self._watched: Dict[str, None] = {}
        self._positions: Dict[str, Dict[str, Position]] = {}
        self._accounts: Dict[str, Tuple[str, Protocol]] = {}
        self._handlers: List[ChangeHandler] = []
        self._apply_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

        self._ws = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._req_ids = itertools.count(1)
        self._pending: Dict[int, str] = {}
        self._subscriptions: Dict[int, str] = {}
        self._sub_by_account: Dict[str, int] = {}

        self.state = ChannelState.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_error: Optional[Exception] = None
        self.last_message_at: Optional[float] = None
        self.decode_failures = 0
        self.protocol_failures = 0

    # Watch list

    def watch(self, address: str) -> bool:
        if address in self._watched:
            return False
        self._watched[address] = None
        self._positions.setdefault(address, {})
        logger.info("monitor watch owner=%s total=%s", address, len(self._watched))
        return True

    def unwatch(self, address: str) -> bool:
        if address not in self._watched:
            return False
        del self._watched[address]
        self._positions.pop(address, None)
        dropped = [acct for acct, (owner, _) in self._accounts.items() if owner == address]
        for account in dropped:
            del self._accounts[account]
        if self.state == ChannelState.CONNECTED:
            self._spawn(self._sync_subscriptions())
        logger.info("monitor unwatch owner=%s accounts=%s", address, len(dropped))
        return True

    def watched(self) -> List[str]:
        return list(self._watched)

    def on_change(self, handler: ChangeHandler):
        self._handlers.append(handler)

    def list_all(self) -> List[Position]:
        out = []
        for owner in self._watched:
            out.extend(self._positions.get(owner, {}).values())
        return out

    def get(self, pid: str) -> Optional[Position]:
        for positions in self._positions.values():
            if pid in positions:
                return positions[pid]
        return None

    # Event delivery

    def _set_state(self, state: ChannelState):
        if state == self.state:
            return
        logger.info("monitor channel state %s -> %s", self.state.value, state.value)
        self.state = state
        if self.event_bus is not None:
            self.event_bus.publish_nowait(MONITOR_STATE, {"state": state.value}, source="position_monitor")

    async def _emit(self, change: PositionChange, source: str = SOURCE_NOTIFICATION):
        if self._stopping:
            return
        logger.info("position %s id=%s hf=%s", change.kind.value, change.position.id, change.position.health_factor)
        if self.event_bus is not None:
            self.event_bus.publish_nowait(
                EVENT_BY_KIND[change.kind],
                change,
                source=source,
                key=change.position.id,
            )
        for handler in list(self._handlers):
            try:
                result = handler(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("position change handler failed id=%s kind=%s", change.position.id, change.kind.value)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("monitor background task failed err=%s", task.exception())

    async def _apply(
        self,
        owner: str,
        build: Callable[[Dict[str, Position]], Optional[Dict[str, Position]]],
        source: str,
    ) -> List[PositionChange]:
        """Derive the owner's new set from the stored one under the lock, then diff and emit."""
        async with self._apply_lock:
            if owner not in self._watched:
                return []
            previous = self._positions.get(owner, {})
            current = build(previous)
            if current is None:
                return []
            changes = diff_positions(previous, current, self.change_epsilon)
            self._positions[owner] = dict(current)
            for change in changes:
                await self._emit(change, source)
        return changes

    # Decoding

    async def _positions_from_accounts(
        self,
        adapter: ProtocolAdapter,
        rows: Iterable[Tuple[str, bytes]],
    ) -> ProtocolScan:
        scan = ProtocolScan(protocol=adapter.protocol)
        decoded = []
        for address, data in rows:
            scan.accounts[address] = adapter.protocol
            try:
                decoded.append((address, adapter.decode_account(data, address)))
            except DecodeError as exc:
                self.decode_failures += 1
                scan.failed.add(position_id(adapter.protocol, address))
                logger.warning("decode failed protocol=%s account=%s kind=%s", adapter.protocol.value, address, exc.kind)

        missing = []
        for _, account in decoded:
            missing.extend(dep for dep in adapter.dependencies(account) if not self.cache.has(dep))
        if missing:
            await self.cache.refresh(missing)

        price_ids = []
        for _, account in decoded:
            price_ids.extend(adapter.price_ids(account, self.cache))
        prices = await self.prices.get_prices(price_ids) if price_ids else {}

        now = self._clock()
        for address, account in decoded:
            pid = position_id(adapter.protocol, address)
            try:
                position = adapter.build_position(account, self.cache, prices, now)
            except ACCOUNT_FAILURES as exc:
                scan.failed.add(pid)
                logger.warning("position build failed protocol=%s account=%s err=%s", adapter.protocol.value, address, exc)
                continue
            if position is not None and not position.is_empty:
                scan.positions[pid] = position
        return scan

    async def _fetch_protocol(self, owner: str, adapter: ProtocolAdapter) -> ProtocolScan:
        rows = await self.rpc.get_program_accounts(adapter.program_id, adapter.account_filters(owner))
        return await self._positions_from_accounts(adapter, rows)

    @staticmethod
    def _merge(previous: Dict[str, Position], scans: Dict[Protocol, Optional[ProtocolScan]]) -> Dict[str, Position]:
        """Combine per-protocol scans; failed protocols and failed accounts keep their previous snapshot."""
        merged: Dict[str, Position] = {}
        for protocol, scan in scans.items():
            if scan is None:
                merged.update({pid: p for pid, p in previous.items() if p.protocol == protocol})
                continue
            merged.update(scan.positions)
            for pid in scan.failed:
                if pid in previous:
                    merged[pid] = previous[pid]
        return merged

    async def fetch_all(self) -> List[Position]:
        """Query every protocol for every watched owner concurrently."""
        owners = list(self._watched)
        jobs = [(owner, adapter) for owner in owners for adapter in self.adapters.values()]
        results = await asyncio.gather(
            *(self._fetch_protocol(owner, adapter) for owner, adapter in jobs),
            return_exceptions=True,
        )

        per_owner: Dict[str, Dict[Protocol, Optional[ProtocolScan]]] = {owner: {} for owner in owners}
        for (owner, adapter), result in zip(jobs, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                self.protocol_failures += 1
                logger.warning("protocol fetch failed protocol=%s owner=%s err=%s", adapter.protocol.value, owner, result)
                per_owner[owner][adapter.protocol] = None
                continue
            per_owner[owner][adapter.protocol] = result
            # closed accounts drop out of the scan and lose their subscription
            closed = [
                account
                for account, (acct_owner, protocol) in self._accounts.items()
                if acct_owner == owner and protocol == adapter.protocol and account not in result.accounts
            ]
            for account in closed:
                del self._accounts[account]
            if closed:
                logger.info("accounts closed protocol=%s owner=%s count=%s", adapter.protocol.value, owner, len(closed))
            for account, protocol in result.accounts.items():
                self._accounts[account] = (owner, protocol)

        for owner, scans in per_owner.items():
            await self._apply(owner, lambda previous, scans=scans: self._merge(previous, scans), SOURCE_POLL)

        if self.state == ChannelState.CONNECTED:
            await self._sync_subscriptions()
        return self.list_all()

    async def process_account_update(self, account_address: str, data: Optional[bytes]):
        """Re-derive one account's position and diff the owner's set."""
        entry = self._accounts.get(account_address)
        if entry is None:
            logger.debug("notification for untracked account=%s", account_address)
            return
        owner, protocol = entry
        adapter = self.adapters[protocol]
        pid = position_id(protocol, account_address)

        position = None
        if data:
            scan = await self._positions_from_accounts(adapter, [(account_address, data)])
            if pid in scan.failed:
                return
            position = scan.positions.get(pid)

        def _upsert(previous: Dict[str, Position]) -> Optional[Dict[str, Position]]:
            # a bulk fetch may have closed the account while this one was decoding
            if self._accounts.get(account_address) != entry:
                return None
            current = dict(previous)
            if position is None:
                current.pop(pid, None)
            else:
                current[pid] = position
            return current

        await self._apply(owner, _upsert, SOURCE_NOTIFICATION)

    # Subscription channel

    async def start(self):
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self.reconnect_attempts = 0
        self.last_error = None
        self._task = asyncio.create_task(self._run())
        logger.info("position monitor started ws=%s owners=%s", self.ws_url, len(self._watched))

    async def stop(self):
        self._stopping = True
        ws = self._ws
        if ws is not None and not ws.closed:
            for sub_id in list(self._subscriptions):
                try:
                    await self._send(ws, "accountUnsubscribe", [sub_id])
                except (ConnectionError, RuntimeError, aiohttp.ClientError) as exc:
                    logger.debug("unsubscribe failed sub_id=%s err=%s", sub_id, exc)
            await ws.close()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for pending in list(self._tasks):
            pending.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._clear_subscriptions()
        self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._set_state(ChannelState.STOPPED)
        logger.info("position monitor stopped")

    @property
    def connected(self) -> bool:
        return self.state == ChannelState.CONNECTED

    async def _open(self):
        if self._ws_connect is not None:
            return await self._ws_connect(self.ws_url)
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(self.ws_url, autoping=False)

    async def _run(self):
        while not self._stopping:
            self._set_state(ChannelState.CONNECTING if self.reconnect_attempts == 0 else ChannelState.RECONNECTING)
            try:
                await self._connect_and_listen()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.last_error = exc
                logger.warning("subscription channel disconnected err=%s", exc)
            if self._stopping:
                break

            self.reconnect_attempts += 1
            if self.reconnect_attempts > self.backoff.max_attempts:
                self.last_error = TransportError(
                    f"reconnect attempts exhausted after {self.backoff.max_attempts} tries: {self.last_error}"
                )
                logger.error("subscription channel giving up attempts=%s", self.backoff.max_attempts)
                self._set_state(ChannelState.DISCONNECTED)
                return
            delay = self.backoff.delay(self.reconnect_attempts)
            self._set_state(ChannelState.RECONNECTING)
            logger.info("reconnecting in %.1fs attempt=%s/%s", delay, self.reconnect_attempts, self.backoff.max_attempts)
            await self._sleep(delay)

    async def _connect_and_listen(self):
        ws = await self._open()
        self._ws = ws
        self.reconnect_attempts = 0
        self._set_state(ChannelState.CONNECTED)
        await self._sync_subscriptions()

        keepalive = asyncio.create_task(self._keepalive(ws))
        try:
            while not self._stopping:
                msg = await asyncio.wait_for(ws.receive(), timeout=self.keepalive_interval_sec + self.keepalive_timeout_sec)
                self.last_message_at = self._clock()
                if msg.type == WSMsgType.TEXT:
                    await self._handle_message(msg.data)
                elif msg.type == WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.PONG:
                    continue
                elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    raise TransportError("subscription channel closed")
                elif msg.type == WSMsgType.ERROR:
                    raise TransportError(f"subscription channel error: {ws.exception()}")
        except asyncio.TimeoutError as exc:
            raise TransportError("keepalive timeout") from exc
        finally:
            keepalive.cancel()
            try:
                await keepalive
            except asyncio.CancelledError:
                pass
            self._clear_subscriptions()
            if self._ws is ws:
                self._ws = None
            if not ws.closed:
                await ws.close()

    async def _keepalive(self, ws):
        while not ws.closed:
            await asyncio.sleep(self.keepalive_interval_sec)
            try:
                await ws.ping()
            except (ConnectionError, RuntimeError, aiohttp.ClientError) as exc:
                logger.warning("keepalive ping failed err=%s", exc)
                return

    async def _send(self, ws, method: str, params: List[Any]) -> int:
        req_id = next(self._req_ids)
        await ws.send_str(json.dumps({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}))
        return req_id

    def _clear_subscriptions(self):
        self._pending.clear()
        self._subscriptions.clear()
        self._sub_by_account.clear()

    async def _sync_subscriptions(self):
        ws = self._ws
        if ws is None or ws.closed:
            return
        pending_accounts = set(self._pending.values())
        for account in list(self._accounts):
            if account in self._sub_by_account or account in pending_accounts:
                continue
            req_id = await self._send(ws, "accountSubscribe", [account, {"encoding": "base64", "commitment": "confirmed"}])
            self._pending[req_id] = account
        for account, sub_id in list(self._sub_by_account.items()):
            if account not in self._accounts:
                await self._send(ws, "accountUnsubscribe", [sub_id])
                self._sub_by_account.pop(account, None)
                self._subscriptions.pop(sub_id, None)

    async def _handle_message(self, raw: str):
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("subscription channel sent invalid json")
            return
        if not isinstance(message, dict):
            return

        if "id" in message and message.get("id") in self._pending:
            account = self._pending.pop(message["id"])
            if "error" in message:
                logger.warning("accountSubscribe rejected account=%s err=%s", account, message["error"])
                return
            sub_id = message.get("result")
            self._subscriptions[sub_id] = account
            self._sub_by_account[account] = sub_id
            logger.debug("subscribed account=%s sub_id=%s", account, sub_id)
            return

        if message.get("method") != "accountNotification":
            return
        params = message.get("params") or {}
        account = self._subscriptions.get(params.get("subscription"))
        if account is None:
            return
        value = (params.get("result") or {}).get("value")
        data = None
        if value and value.get("lamports", 1) > 0:
            encoded = value.get("data")
            if isinstance(encoded, list) and encoded:
                data = base64.b64decode(encoded[0])
        await self.process_account_update(account, data)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self.connected,
            "watched": len(self._watched),
            "positions": sum(len(p) for p in self._positions.values()),
            "subscriptions": len(self._subscriptions),
            "reconnect_attempts": self.reconnect_attempts,
            "last_error": str(self.last_error) if self.last_error else None,
            "last_message_at": self.last_message_at,
            "decode_failures": int(self.decode_failures),
            "protocol_failures": int(self.protocol_failures),
        }
