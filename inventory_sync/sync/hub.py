"""
Realtime inventory hub.

Tracks connected sessions, applies mutation messages through the store and
broadcasts the committed result to every other session. The same store
operations are exposed as plain coroutines for the HTTP surface.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar

from ..config import HubConfig
from ..exceptions import (
    ConnectionLimitError,
    EnvelopeError,
    RecordValidationError,
    StoreIOError,
    StoreTimeoutError,
)
from ..logging_utils import SessionLoggerAdapter
from ..models import InventoryDocument, InventoryItem, Promo, format_timestamp, utc_now
from ..store import InventoryStore
from . import envelope as env
from .auth import AuthValidator, build_auth_validator
from .envelope import Envelope, make_message, verify_signature

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_WINDOW_SECONDS = 60.0


class Transport(Protocol):
    """The parts of a WebSocket the hub uses (aiohttp's WebSocketResponse fits)."""

    @property
    def closed(self) -> bool: ...

    async def send_json(self, data: Any) -> None: ...

    async def ping(self, message: bytes = b"") -> None: ...

    async def close(self, *, code: int = 1000, message: bytes = b"") -> Any: ...


class SessionState(Enum):
    """Connection lifecycle states."""

    CONNECTING = "connecting"
    OPEN = "open"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass
class HubSession:
    """A connected realtime client."""

    session_id: str
    transport: Transport
    remote: str | None = None
    state: SessionState = SessionState.CONNECTING
    user_id: str | None = None
    auth_token: str | None = None
    connected_at: float = 0.0
    last_activity: float = 0.0
    connected_at_iso: str = field(default_factory=lambda: format_timestamp(utc_now()) or "")

    # Receive times inside the rate-limit window
    message_times: deque[float] = field(default_factory=deque)
    log: logging.LoggerAdapter = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.log = SessionLoggerAdapter(logger, self)

    @property
    def authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    @property
    def is_open(self) -> bool:
        return (
            self.state in (SessionState.OPEN, SessionState.AUTHENTICATED)
            and not self.transport.closed
        )


class InventoryHub:
    """Coordinates sessions, the store and broadcasts.

    Example with aiohttp:
        >>> hub = InventoryHub(InventoryStore(config.db_path), config)
        >>> app = create_app(hub, config)
        >>> web.run_app(app, port=config.port)

    Mutations from a session are written through the store first; only a
    committed write is mirrored and broadcast. A failed or timed-out write
    leaves the mirror untouched and nothing is broadcast.
    """

    def __init__(
        self,
        store: InventoryStore,
        config: HubConfig | None = None,
        auth_validator: AuthValidator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the hub.

        Args:
            store: Store that owns the document on disk
            config: Hub settings (defaults when None)
            auth_validator: Validates auth handshake data, returning the user id
                or None. Built from config when not given.
            clock: Monotonic clock, injectable for tests
        """
        self.store = store
        self.config = config or HubConfig()
        self.auth_validator = auth_validator or build_auth_validator(self.config)
        self._clock = clock

        self._sessions: dict[str, HubSession] = {}
        self._lock = asyncio.Lock()
        self._mirror: InventoryDocument | None = None
        self._connection_attempts: dict[str, deque[float]] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._started_at = clock()

    # Lifecycle

    async def start(self) -> None:
        """Load the mirror and start the heartbeat sweep."""
        try:
            self._mirror = await self.store.read()
            logger.info(
                f"Loaded {len(self._mirror.inventory)} items and "
                f"{len(self._mirror.promos)} promos from {self.store.path}"
            )
        except StoreIOError as e:
            logger.error(f"Failed to load document, reads will retry the store: {e.message}")
            self._mirror = None

        if self._heartbeat_task is None and self.config.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(
            f"Hub started (auth={'on' if self.config.require_auth else 'off'}, "
            f"rate_limit={'on' if self.config.enable_rate_limit else 'off'})"
        )

    async def stop(self) -> None:
        """Stop the heartbeat and close every session."""
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        async with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            await self._close_session(session, "Server shutting down")
        logger.info("Hub stopped")

    # Connections

    async def check_admission(self, remote: str | None) -> None:
        """Refuse a new connection when at capacity or rate limited.

        Raises:
            ConnectionLimitError: If the connection must be refused
        """
        async with self._lock:
            if len(self._sessions) >= self.config.max_connections:
                logger.warning(f"Connection limit reached ({self.config.max_connections})")
                raise ConnectionLimitError(remote, "connection limit reached")

            if not self.config.enable_rate_limit or remote is None:
                return
            attempts = self._connection_attempts.setdefault(remote, deque())
            if not self._within_rate(attempts, self.config.connection_rate_limit):
                logger.warning(f"Rate limited connection from {remote}")
                raise ConnectionLimitError(remote, "too many connection attempts")

    async def connect(self, transport: Transport, remote: str | None = None) -> HubSession:
        """Register a connection and send the welcome notice.

        Args:
            transport: Open WebSocket
            remote: Remote address, for logging and rate limiting

        Returns:
            The registered session
        """
        now = self._clock()
        session = HubSession(
            session_id=f"client_{uuid.uuid4().hex[:12]}",
            transport=transport,
            remote=remote,
            connected_at=now,
            last_activity=now,
        )
        session.state = (
            SessionState.OPEN if self.config.require_auth else SessionState.AUTHENTICATED
        )

        async with self._lock:
            self._sessions[session.session_id] = session
            total = len(self._sessions)
        session.log.info(f"Client connected - total: {total}")

        await self.send(
            session,
            make_message(
                env.WELCOME,
                {
                    "sessionId": session.session_id,
                    "message": "Connected to inventory realtime hub",
                    "features": {
                        "authRequired": self.config.require_auth,
                        "rateLimited": self.config.enable_rate_limit,
                        "types": sorted(env.MUTATION_TYPES | {env.AUTH, env.PING}),
                    },
                },
            ),
        )
        return session

    async def disconnect(self, session: HubSession) -> None:
        """Unregister a session. Safe to call more than once."""
        async with self._lock:
            removed = self._sessions.pop(session.session_id, None)
            remaining = len(self._sessions)
        session.state = SessionState.CLOSED
        if removed is not None:
            session.log.info(f"Client disconnected - remaining: {remaining}")

    def touch(self, session: HubSession) -> None:
        """Record activity (any frame, including pongs)."""
        session.last_activity = self._clock()

    # Messages

    async def handle_message(self, session: HubSession, payload: str | bytes | dict[str, Any]) -> None:
        """Validate and dispatch one incoming frame.

        Malformed, stale, mis-signed and rate-limited frames are dropped.
        """
        self.touch(session)

        if self.config.enable_rate_limit and not self._within_rate(
            session.message_times, self.config.rate_limit_per_minute
        ):
            session.log.warning("Message dropped: rate limit exceeded")
            return

        try:
            envelope = Envelope.parse(payload, max_clock_skew=self.config.max_clock_skew)
        except EnvelopeError as e:
            session.log.warning(f"Message dropped: {e.reason}")
            return

        if (
            envelope.signature
            and session.auth_token
            and not verify_signature(envelope.data, envelope.signature, session.auth_token)
        ):
            session.log.warning(f"Message dropped: bad signature on {envelope.type}")
            return

        if envelope.type == env.AUTH:
            await self._handle_auth(session, envelope)
        elif envelope.type == env.PING:
            await self.send(session, make_message(env.PONG, {"sessionId": session.session_id}))
        elif envelope.type in env.MUTATION_TYPES:
            await self._handle_mutation(session, envelope)
        elif envelope.type in env.SERVER_ONLY_TYPES:
            session.log.warning(f"Message dropped: {envelope.type} is server-only")
        else:
            delivered = await self.broadcast(envelope.raw, exclude=session)
            session.log.debug(f"Relayed {envelope.type} to {delivered} clients")

    async def _handle_auth(self, session: HubSession, envelope: Envelope) -> None:
        data = envelope.data if isinstance(envelope.data, dict) else {}
        user_id = self.auth_validator(data)

        if user_id is None:
            session.log.warning("Authentication failed")
            await self.send(session, make_message(env.AUTH_ERROR, {"message": "Authentication failed"}))
            return

        session.state = SessionState.AUTHENTICATED
        session.user_id = user_id
        token = data.get("token")
        session.auth_token = token if isinstance(token, str) else None
        session.log.info(f"Authenticated as {user_id}")
        await self.send(
            session,
            make_message(env.AUTH_SUCCESS, {"userId": user_id, "sessionId": session.session_id}),
        )

    async def _handle_mutation(self, session: HubSession, envelope: Envelope) -> None:
        if self.config.require_auth and not session.authenticated:
            session.log.warning(f"Unauthorized {envelope.type} update rejected")
            await self._send_error(session, envelope, "unauthenticated", "Authentication required")
            return

        session.log.info(f"Received {envelope.type} update from {session.user_id or session.session_id}")
        try:
            message = await self._apply_mutation(envelope.type, envelope.data)
        except RecordValidationError as e:
            session.log.warning(f"Invalid {envelope.type} update: {e.message}")
            await self._send_error(session, envelope, "invalid", e.message)
            return
        except (StoreIOError, StoreTimeoutError) as e:
            session.log.error(f"Failed to persist {envelope.type} update: {e.message}")
            await self._send_error(session, envelope, "store_failure", e.message)
            return

        delivered = await self.broadcast(message, exclude=session)
        session.log.info(f"Broadcast {envelope.type} update to {delivered} clients")
        await self.send(
            session,
            make_message(env.ACK, message["data"], requestId=envelope.request_id, ref=envelope.type),
        )

    async def _send_error(
        self, session: HubSession, envelope: Envelope, reason: str, detail: str
    ) -> None:
        await self.send(
            session,
            make_message(
                env.ERROR,
                {"reason": reason, "message": detail},
                requestId=envelope.request_id,
                ref=envelope.type,
            ),
        )

    # Broadcasting

    async def send(self, session: HubSession, message: dict[str, Any]) -> bool:
        """Send one message to one session.

        Returns:
            False if the session is closed or the send failed
        """
        if session.transport.closed:
            return False
        try:
            await session.transport.send_json(message)
            return True
        except (ConnectionError, RuntimeError) as e:
            session.log.warning(f"Send failed: {e}")
            return False

    async def broadcast(self, message: dict[str, Any], exclude: HubSession | None = None) -> int:
        """Send a message to every eligible open session except ``exclude``.

        When auth is required, only authenticated sessions receive broadcasts
        unless ``broadcast_to_unauthenticated`` is set. Sessions whose send
        fails are unregistered.

        Returns:
            Number of sessions the message was delivered to
        """
        async with self._lock:
            targets = [
                session
                for session in self._sessions.values()
                if session is not exclude and session.is_open and self._receives_broadcasts(session)
            ]

        delivered = 0
        dead: list[HubSession] = []
        for session in targets:
            if await self.send(session, message):
                delivered += 1
            else:
                dead.append(session)

        for session in dead:
            await self.disconnect(session)

        logger.debug(f"Broadcast {message.get('type')} to {delivered} clients")
        return delivered

    def _receives_broadcasts(self, session: HubSession) -> bool:
        if not self.config.require_auth or self.config.broadcast_to_unauthenticated:
            return True
        return session.authenticated

    # Request/response operations

    async def get_document(self) -> InventoryDocument:
        """Current document, from the mirror when loaded.

        Raises:
            StoreIOError: If the mirror is not loaded and the store cannot be read
            StoreTimeoutError: If the store read stalls
        """
        if self._mirror is None:
            self._mirror = await self._run_store("read", self.store.read())
        return InventoryDocument(
            inventory=list(self._mirror.inventory), promos=list(self._mirror.promos)
        )

    def last_known_document(self) -> InventoryDocument:
        """Mirror contents without touching the store (empty if never loaded)."""
        if self._mirror is None:
            return InventoryDocument.empty()
        return InventoryDocument(
            inventory=list(self._mirror.inventory), promos=list(self._mirror.promos)
        )

    async def get_promos(self) -> list[Promo]:
        return (await self.get_document()).promos

    async def upsert_inventory(self, payload: dict[str, Any] | list[dict[str, Any]]) -> InventoryDocument:
        """Upsert one item or a batch, broadcast, and return the refreshed document."""
        self._reject_deletion_marker(payload, "inventory")
        message = await self._apply_mutation(env.INVENTORY, payload)
        await self.broadcast(message)
        return await self.get_document()

    async def delete_inventory(self, item_id: str) -> InventoryDocument:
        """Delete an item, broadcast the deletion, and return the refreshed document."""
        message = await self._apply_mutation(env.INVENTORY, {"id": item_id, "deleted": True})
        await self.broadcast(message)
        return await self.get_document()

    async def upsert_promo(self, payload: dict[str, Any]) -> list[Promo]:
        """Upsert a promo (id required), broadcast, and return all promos."""
        if not isinstance(payload, dict) or not payload.get("id"):
            raise RecordValidationError("promo.id", "must be a non-empty string")
        self._reject_deletion_marker(payload, "promo")
        message = await self._apply_mutation(env.PROMO, payload)
        await self.broadcast(message)
        return await self.get_promos()

    async def delete_promo(self, promo_id: str) -> list[Promo]:
        """Delete a promo, broadcast the deletion, and return all promos."""
        message = await self._apply_mutation(env.PROMO, {"id": promo_id, "deleted": True})
        await self.broadcast(message)
        return await self.get_promos()

    async def _apply_mutation(self, kind: str, data: Any) -> dict[str, Any]:
        """Write a mutation through the store and refresh the mirror.

        Returns:
            The broadcast message carrying the canonical committed state
        """
        if kind == env.INVENTORY:
            if isinstance(data, dict) and data.get("deleted") is True:
                item_id = self._require_id(data, "inventory")
                inventory = await self._run_store(
                    "delete_inventory_item", self.store.delete_inventory_item(item_id)
                )
                await self._refresh_mirror(inventory=inventory)
                return make_message(env.INVENTORY, {"id": item_id, "deleted": True})

            if isinstance(data, list):
                self._reject_deletion_marker(data, "inventory")
            inventory = await self._run_store(
                "upsert_inventory_items", self.store.upsert_inventory_items(data)
            )
            await self._refresh_mirror(inventory=inventory)
            return make_message(env.INVENTORY, [item.to_dict() for item in inventory])

        if not isinstance(data, dict):
            raise RecordValidationError("promo", "must be a JSON object")

        if data.get("deleted") is True:
            promo_id = self._require_id(data, "promo")
            promos = await self._run_store("delete_promo", self.store.delete_promo(promo_id))
            await self._refresh_mirror(promos=promos)
            return make_message(env.PROMO, {"id": promo_id, "deleted": True})

        if not data.get("id"):
            created = await self._run_store("add_promo", self.store.add_promo(data))
            document = await self._run_store("read", self.store.read())
            await self._refresh_mirror(promos=document.promos)
            return make_message(env.PROMO, created.to_dict())

        promos = await self._run_store("upsert_promo", self.store.upsert_promo(data))
        await self._refresh_mirror(promos=promos)
        stored = next(p for p in promos if p.id == data["id"])
        return make_message(env.PROMO, stored.to_dict())

    async def _refresh_mirror(
        self,
        inventory: list[InventoryItem] | None = None,
        promos: list[Promo] | None = None,
    ) -> None:
        """Replace the written half of the mirror after a store commit.

        The other half is taken from the mirror as it stands now, since
        writes of the other kind may have committed while this one awaited
        the store.
        """
        current = self._mirror
        if current is None:
            self._mirror = await self._run_store("read", self.store.read())
            return
        self._mirror = InventoryDocument(
            inventory=current.inventory if inventory is None else inventory,
            promos=current.promos if promos is None else promos,
        )

    @staticmethod
    def _reject_deletion_marker(payload: Any, kind: str) -> None:
        """Deletion markers are only honoured on single realtime records."""
        records = payload if isinstance(payload, list) else [payload]
        if any(isinstance(record, dict) and "deleted" in record for record in records):
            raise RecordValidationError(f"{kind}.deleted", "use the delete operation to remove records")

    @staticmethod
    def _require_id(data: dict[str, Any], kind: str) -> str:
        record_id = data.get("id")
        if not isinstance(record_id, str) or not record_id:
            raise RecordValidationError(f"{kind}.id", "must be a non-empty string")
        return record_id

    async def _run_store(self, operation: str, coro: Awaitable[T]) -> T:
        """Run a store coroutine with the configured timeout.

        The store call is shielded: a timeout fails the caller but the
        load-modify-save cycle still runs to completion or failure, never
        halfway. If it commits late the mirror is dropped so the next read
        reloads from disk.

        Raises:
            StoreTimeoutError: If the call does not finish in time
        """
        task = asyncio.ensure_future(coro)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.config.store_timeout)
        except TimeoutError:
            logger.error(f"Store {operation} timed out after {self.config.store_timeout}s")
            task.add_done_callback(lambda t: self._on_late_store_result(operation, t))
            raise StoreTimeoutError(operation, self.config.store_timeout) from None

    def _on_late_store_result(self, operation: str, task: asyncio.Future[Any]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Timed-out store {operation} failed: {error}")
        else:
            logger.warning(f"Timed-out store {operation} committed late, reloading mirror on next read")
            self._mirror = None

    # Liveness

    async def sweep_idle(self) -> int:
        """Ping every session and close the ones idle past ``idle_timeout``.

        Returns:
            Number of sessions closed
        """
        now = self._clock()
        async with self._lock:
            sessions = list(self._sessions.values())

        closed = 0
        for session in sessions:
            if now - session.last_activity > self.config.idle_timeout:
                session.log.info("Disconnecting inactive client")
                await self._close_session(session, "Inactive connection")
                closed += 1
                continue
            if session.transport.closed:
                await self.disconnect(session)
                continue
            try:
                await session.transport.ping()
            except (ConnectionError, RuntimeError) as e:
                session.log.warning(f"Ping failed: {e}")
                await self.disconnect(session)
        return closed

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                await self.sweep_idle()
            except Exception:
                logger.exception("Heartbeat sweep failed")

    async def _close_session(self, session: HubSession, reason: str) -> None:
        try:
            await session.transport.close(code=1000, message=reason.encode())
        except (ConnectionError, RuntimeError) as e:
            session.log.warning(f"Close failed: {e}")
        await self.disconnect(session)

    def _within_rate(self, times: deque[float], limit: int) -> bool:
        """Record an event in a sliding one-minute window; False if over ``limit``."""
        now = self._clock()
        while times and now - times[0] >= RATE_WINDOW_SECONDS:
            times.popleft()
        if len(times) >= limit:
            return False
        times.append(now)
        return True

    # Introspection

    def health(self) -> dict[str, Any]:
        """Health summary for the /health endpoint."""
        sessions = list(self._sessions.values())
        return {
            "status": "ok",
            "clients": len(sessions),
            "authenticated": sum(1 for s in sessions if s.authenticated),
            "uptime": round(self._clock() - self._started_at, 3),
            "timestamp": format_timestamp(utc_now()),
        }

    def stats(self) -> dict[str, Any]:
        """Detailed statistics for the /stats endpoint. Secrets are never included."""
        now = self._clock()
        sessions = list(self._sessions.values())
        connection_times = [now - s.connected_at for s in sessions]
        return {
            **self.health(),
            "security": self.config.to_public_dict(),
            "rateLimitedAddresses": len(self._connection_attempts),
            "averageConnectionTime": (
                sum(connection_times) / len(connection_times) if connection_times else 0.0
            ),
            "storeWrites": self.store.write_count,
            "clientDetails": [
                {
                    "id": s.session_id,
                    "remote": s.remote,
                    "state": s.state.value,
                    "authenticated": s.authenticated,
                    "userId": s.user_id,
                    "connectedAt": s.connected_at_iso,
                    "connectedFor": round(now - s.connected_at, 3),
                    "idleFor": round(now - s.last_activity, 3),
                }
                for s in sessions
            ],
        }
