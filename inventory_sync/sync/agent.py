"""
Client-side inventory sync agent.

Keeps a local copy of inventory and promos, applies mutations
optimistically and confirms them with the hub over the realtime channel,
falling back to HTTP when the channel is down.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import aiohttp

from ..config import AgentConfig
from ..exceptions import EnvelopeError, HubConnectionError, HubRequestError, StoreIOError
from ..models import (
    InventoryDocument,
    InventoryItem,
    Promo,
    format_timestamp,
    merge_records,
    new_promo_id,
    utc_now,
    validate_inventory_patch,
    validate_promo_patch,
)
from ..resilience import RetryConfig, backoff_delay, retry_with_backoff
from ..store import read_json
from . import envelope as env
from .envelope import Envelope, make_message, sign_data

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[str, str], None]

SAMPLE_PROMOS: list[dict[str, Any]] = [
    {
        "id": "1",
        "modelIds": ["21", "22", "23"],
        "title": "Honda Winner X Mega Promo",
        "description": "FREE Registration + Xtreme Rice Cooker + Premium Helmet",
        "freebies": ["LTO Registration", "Xtreme Rice Cooker", "Premium Helmet"],
        "startDate": "2025-11-03T00:00:00+00:00",
        "endDate": "2025-12-31T00:00:00+00:00",
        "isActive": True,
    },
    {
        "id": "2",
        "modelIds": ["15"],
        "title": "CBR150R Racing Promo",
        "description": "FREE Racing Jacket + Gloves",
        "freebies": ["Racing Jacket", "Racing Gloves"],
        "startDate": "2025-11-01T00:00:00+00:00",
        "endDate": "2025-11-30T00:00:00+00:00",
        "isActive": True,
    },
]


class DataSource(Enum):
    """Where the current local state was loaded from."""

    API = "api"
    SEED = "seed"
    SAMPLE = "sample"


@dataclass
class PendingMutation:
    """An optimistic change waiting for the hub to confirm it."""

    request_id: str
    kind: str
    description: str
    # Previous record per id; None means the record did not exist
    snapshot: dict[str, dict[str, Any] | None]
    future: asyncio.Future[bool] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future()
    )


class InventorySyncAgent:
    """Local inventory cache kept in sync with the hub.

    Example:
        >>> agent = InventorySyncAgent(AgentConfig(api_base="http://localhost:8081"))
        >>> agent.on_notice(lambda level, message: print(level, message))
        >>> await agent.load_initial()
        >>> await agent.start()
        >>> await agent.update_quantity("inv_1_1", 4)
        >>> await agent.stop()

    Mutations return True once the hub confirms them. On failure the local
    change is reverted and an error notice is emitted.
    """

    def __init__(
        self,
        config: AgentConfig,
        session: aiohttp.ClientSession | None = None,
        sample_promos: list[dict[str, Any]] | None = None,
    ) -> None:
        """Initialize the agent.

        Args:
            config: Agent settings
            session: HTTP session to use; one is created (and closed) when None
            sample_promos: Promos shown when neither the hub nor a seed is reachable
        """
        self.config = config
        self._http = session
        self._owns_http = session is None
        self.sample_promos = sample_promos if sample_promos is not None else SAMPLE_PROMOS

        self._state: dict[str, list[dict[str, Any]]] = {env.INVENTORY: [], env.PROMO: []}
        self._pending: dict[str, PendingMutation] = {}
        self.source: DataSource | None = None

        # Realtime channel
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._running = False
        self._connection_task: asyncio.Task[None] | None = None
        self._reconnect_attempt = 0
        self._reconnect_backoff = RetryConfig(backoff_base=config.reconnect_delay)
        self._has_connected = False
        self.session_id: str | None = None
        self.authenticated = False

        # Listeners
        self._notice_listeners: list[NoticeCallback] = []
        self._inventory_listeners: list[Callable[[list[InventoryItem]], None]] = []
        self._promo_listeners: list[Callable[[list[Promo]], None]] = []

    # Local state

    @property
    def inventory(self) -> list[InventoryItem]:
        return [InventoryItem.from_dict(record) for record in self._state[env.INVENTORY]]

    @property
    def promos(self) -> list[Promo]:
        return [Promo.from_dict(record) for record in self._state[env.PROMO]]

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def get_item(self, item_id: str) -> InventoryItem | None:
        for record in self._state[env.INVENTORY]:
            if record.get("id") == item_id:
                return InventoryItem.from_dict(record)
        return None

    def available_colors(self, model_id: str) -> list[InventoryItem]:
        """Colors of ``model_id`` that are offered and in stock."""
        return [item for item in self.inventory if item.model_id == model_id and item.is_sellable]

    def stock_level(self, model_id: str, color_name: str) -> int:
        """Units in stock for one color of a model (0 when unknown)."""
        for item in self.inventory:
            if item.model_id == model_id and item.color_name == color_name:
                return item.quantity
        return 0

    def active_promos(self, model_id: str, now: datetime | None = None) -> list[Promo]:
        """Promos currently running for ``model_id``."""
        moment = now or utc_now()
        return [promo for promo in self.promos if promo.is_active_for(model_id, moment)]

    # Listeners

    def on_notice(self, callback: NoticeCallback) -> NoticeCallback:
        """Register a ``callback(level, message)`` for user-facing notices."""
        self._notice_listeners.append(callback)
        return callback

    def on_inventory_update(
        self, callback: Callable[[list[InventoryItem]], None]
    ) -> Callable[[list[InventoryItem]], None]:
        self._inventory_listeners.append(callback)
        return callback

    def on_promo_update(self, callback: Callable[[list[Promo]], None]) -> Callable[[list[Promo]], None]:
        self._promo_listeners.append(callback)
        return callback

    def _notify(self, level: str, message: str) -> None:
        log = logger.error if level == "error" else logger.info
        log(f"Notice [{level}]: {message}")
        for callback in self._notice_listeners:
            try:
                callback(level, message)
            except Exception:
                logger.exception("Notice listener failed")

    def _emit_update(self, kind: str) -> None:
        if kind == env.INVENTORY:
            listeners: list[Callable[[Any], None]] = list(self._inventory_listeners)
            value: Any = self.inventory
        else:
            listeners = list(self._promo_listeners)
            value = self.promos
        for callback in listeners:
            try:
                callback(value)
            except Exception:
                logger.exception(f"{kind} listener failed")

    # Loading

    async def load_initial(self) -> DataSource:
        """Load local state from the hub, then the seed, then sample data.

        Returns:
            The source that was used (also kept on ``source``)
        """
        retry = RetryConfig(
            max_retries=self.config.initial_load_retries,
            backoff_base=self.config.reconnect_delay,
            linear=True,
        )
        try:
            document = await retry_with_backoff(
                self._fetch_document, config=retry, context_msg=self.config.api_base
            )
        except HubConnectionError as e:
            logger.warning(f"Hub read failed, falling back to seed: {e.message}")
        else:
            self._replace_document(document)
            self.source = DataSource.API
            logger.info(f"Loaded {len(document.inventory)} items from hub")
            return self.source

        document = await self._load_seed()
        if document is not None:
            self._replace_document(document)
            self.source = DataSource.SEED
            logger.info(f"Loaded {len(document.inventory)} items from seed")
            return self.source

        self._replace_document(InventoryDocument.from_dict({"promos": self.sample_promos}))
        self.source = DataSource.SAMPLE
        self._notify("warning", "Inventory service unavailable, showing sample data")
        return self.source

    async def refresh(self) -> bool:
        """Re-read the document from the hub, replacing local state.

        Returns:
            False if the hub could not be read (local state is kept)
        """
        try:
            document = await self._fetch_document()
        except HubConnectionError as e:
            logger.warning(f"Refresh failed: {e.message}")
            return False
        self._replace_document(document)
        self.source = DataSource.API
        return True

    async def _fetch_document(self) -> InventoryDocument:
        body = await self._request("GET", "/inventory")
        return InventoryDocument.from_dict(body)

    async def _load_seed(self) -> InventoryDocument | None:
        if self.config.seed_url:
            try:
                async with self._get_http().get(
                    self.config.seed_url,
                    headers={"Cache-Control": "no-cache"},
                    timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
                ) as response:
                    if response.status == 200:
                        return InventoryDocument.from_dict(await response.json(content_type=None))
                    logger.warning(f"Seed URL returned {response.status}")
            except (aiohttp.ClientError, TimeoutError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to fetch seed from {self.config.seed_url}: {e}")

        if self.config.seed_path:
            try:
                data = await read_json(self.config.seed_path)
            except StoreIOError as e:
                logger.warning(f"Failed to read seed {self.config.seed_path}: {e.message}")
                return None
            if data is not None:
                return InventoryDocument.from_dict(data)
        return None

    def _replace_document(self, document: InventoryDocument) -> None:
        self._state[env.INVENTORY] = [item.to_dict() for item in document.inventory]
        self._state[env.PROMO] = [promo.to_dict() for promo in document.promos]
        self._emit_update(env.INVENTORY)
        self._emit_update(env.PROMO)

    # HTTP

    def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Any = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        """Call the hub, trying ``<path>`` then ``/api<path>``.

        A 404 or a network failure moves on to the next candidate.

        Raises:
            HubRequestError: If the hub answers with another error status
            HubConnectionError: If no candidate could be reached
        """
        http = self._get_http()
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
        last_error: HubConnectionError | None = None

        for prefix in ("", "/api"):
            url = f"{self.config.api_base}{prefix}{path}"
            try:
                async with http.request(
                    method, url, json=json_body, params=params, timeout=timeout
                ) as response:
                    if response.status == 404:
                        last_error = HubRequestError(url, 404, "not found")
                        continue
                    if response.status >= 400:
                        raise HubRequestError(url, response.status, await response.text())
                    return await response.json(content_type=None)
            except (aiohttp.ClientError, TimeoutError, json.JSONDecodeError) as e:
                logger.debug(f"{method} {url} failed: {e}")
                last_error = HubConnectionError(url, e)

        raise last_error or HubConnectionError(self.config.api_base)

    async def _send_http(self, kind: str, payload: dict[str, Any]) -> None:
        """Apply a mutation over HTTP and adopt the hub's answer."""
        path = "/inventory" if kind == env.INVENTORY else "/promo"
        if payload.get("deleted") is True:
            body = await self._request("DELETE", path, params={"id": payload["id"]})
        else:
            body = await self._request("POST", path, json_body=payload)

        if kind == env.INVENTORY:
            self._replace_document(InventoryDocument.from_dict(body))
        else:
            promos = body.get("promos") if isinstance(body, dict) else None
            if isinstance(promos, list):
                self._state[env.PROMO] = [
                    p.to_dict() for p in InventoryDocument.from_dict({"promos": promos}).promos
                ]
                self._emit_update(env.PROMO)

    # Mutations

    async def update_quantity(self, item_id: str, quantity: int) -> bool:
        """Set the stock of an item. Availability is left untouched."""
        return await self.upsert_item({"id": item_id, "quantity": quantity})

    async def update_availability(self, item_id: str, is_available: bool) -> bool:
        return await self.upsert_item({"id": item_id, "isAvailable": is_available})

    async def upsert_item(self, item: dict[str, Any] | InventoryItem) -> bool:
        """Insert or merge an inventory item by id.

        Raises:
            RecordValidationError: If the item is invalid (nothing changes)
        """
        payload = item.to_dict() if isinstance(item, InventoryItem) else dict(item)
        validate_inventory_patch(payload)

        local = dict(payload)
        if "quantity" in local:
            local["lastUpdated"] = format_timestamp(utc_now())
        return await self._mutate(
            env.INVENTORY, payload, local, f"Inventory item {payload['id']} updated"
        )

    async def delete_item(self, item_id: str) -> bool:
        return await self._mutate(
            env.INVENTORY, {"id": item_id, "deleted": True}, None, f"Inventory item {item_id} removed"
        )

    async def update_promo(self, promo: dict[str, Any] | Promo) -> bool:
        """Merge changes into an existing promo (``id`` required)."""
        payload = promo.to_dict() if isinstance(promo, Promo) else dict(promo)
        validate_promo_patch(payload)
        return await self._mutate(env.PROMO, payload, payload, f"Promo {payload['id']} updated")

    async def add_promo(self, promo: dict[str, Any] | Promo) -> Promo | None:
        """Create a promo, generating its id when absent.

        Returns:
            The stored promo, or None if the hub rejected it
        """
        payload = promo.to_dict() if isinstance(promo, Promo) else dict(promo)
        if not payload.get("id"):
            payload["id"] = new_promo_id()
        validate_promo_patch(payload)

        if not await self._mutate(env.PROMO, payload, payload, f"Promo {payload['id']} added"):
            return None
        return next((p for p in self.promos if p.id == payload["id"]), None)

    async def delete_promo(self, promo_id: str) -> bool:
        return await self._mutate(
            env.PROMO, {"id": promo_id, "deleted": True}, None, f"Promo {promo_id} removed"
        )

    async def _mutate(
        self,
        kind: str,
        payload: dict[str, Any],
        local: dict[str, Any] | None,
        description: str,
    ) -> bool:
        """Apply a change locally, then confirm it with the hub.

        Args:
            kind: ``inventory`` or ``promo``
            payload: Message data sent to the hub
            local: Patch merged into local state, or None to remove the record
            description: Text used in notices
        """
        record_id = payload["id"]
        pending = PendingMutation(
            request_id=uuid.uuid4().hex,
            kind=kind,
            description=description,
            snapshot={record_id: self._find(kind, record_id)},
        )

        if local is None:
            self._remove(kind, {record_id})
        else:
            self._merge(kind, [local])
        self._emit_update(kind)

        if self.connected:
            self._pending[pending.request_id] = pending
            try:
                await self._send(kind, payload, request_id=pending.request_id)
            except (ConnectionError, RuntimeError, aiohttp.ClientError) as e:
                logger.warning(f"Realtime send failed, using HTTP: {e}")
                self._pending.pop(pending.request_id, None)
            else:
                return await self._await_confirmation(pending)

        try:
            await self._send_http(kind, payload)
        except HubConnectionError as e:
            logger.error(f"{description} failed: {e.message}")
            self._rollback(pending, f"{description} failed, change reverted")
            return False

        self._notify("success", description)
        return True

    async def _await_confirmation(self, pending: PendingMutation) -> bool:
        try:
            return await asyncio.wait_for(
                asyncio.shield(pending.future), timeout=self.config.request_timeout
            )
        except TimeoutError:
            if self._pending.pop(pending.request_id, None) is not None:
                self._rollback(pending, f"{pending.description} not confirmed, change reverted")
            return False

    def _rollback(self, pending: PendingMutation, notice: str) -> None:
        records = self._state[pending.kind]
        for record_id, previous in pending.snapshot.items():
            position = next(
                (i for i, record in enumerate(records) if record.get("id") == record_id), None
            )
            if previous is None:
                if position is not None:
                    del records[position]
            elif position is None:
                records.append(previous)
            else:
                records[position] = previous
        self._emit_update(pending.kind)
        self._notify("error", notice)
        if not pending.future.done():
            pending.future.set_result(False)

    def _find(self, kind: str, record_id: str) -> dict[str, Any] | None:
        for record in self._state[kind]:
            if record.get("id") == record_id:
                return dict(record)
        return None

    def _merge(self, kind: str, patches: list[dict[str, Any]]) -> None:
        self._state[kind] = merge_records(self._state[kind], patches)

    def _remove(self, kind: str, ids: set[str]) -> None:
        self._state[kind] = [record for record in self._state[kind] if record.get("id") not in ids]

    def _drop_snapshots(self, kind: str, ids: set[str]) -> None:
        """Server state for ``ids`` supersedes any pending optimistic value."""
        for pending in self._pending.values():
            if pending.kind == kind:
                for record_id in ids & pending.snapshot.keys():
                    del pending.snapshot[record_id]

    # Realtime channel

    async def start(self) -> None:
        """Start the realtime connection loop."""
        if self._running:
            return
        self._running = True
        self._connection_task = asyncio.create_task(self._connection_loop())
        logger.info(f"Sync agent started: {self.config.ws_url}")

    async def stop(self) -> None:
        """Stop the connection loop and release the HTTP session."""
        self._running = False

        if self._connection_task:
            self._connection_task.cancel()
            try:
                await self._connection_task
            except asyncio.CancelledError:
                pass
            self._connection_task = None

        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        logger.info("Sync agent stopped")

    async def _connection_loop(self) -> None:
        """Connect, and reconnect with exponential backoff until attempts run out."""
        while self._running:
            try:
                await self._websocket_session()
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, HubConnectionError, OSError, TimeoutError) as e:
                logger.warning(f"Realtime connection error: {e}")

            if not self._running:
                break
            if self._reconnect_attempt >= self.config.max_reconnect_attempts:
                self._notify("error", "Realtime connection lost, changes will be sent over HTTP")
                self._running = False
                break

            delay = backoff_delay(self._reconnect_backoff, self._reconnect_attempt)
            self._reconnect_attempt += 1
            logger.info(
                f"Reconnecting in {delay}s "
                f"(attempt {self._reconnect_attempt}/{self.config.max_reconnect_attempts})"
            )
            await asyncio.sleep(delay)

    async def _websocket_session(self) -> None:
        async with self._get_http().ws_connect(self.config.ws_url, autoping=True) as ws:
            self._ws = ws
            self._reconnect_attempt = 0
            logger.info(f"Connected to {self.config.ws_url}")

            if self._has_connected:
                await self.refresh()
            self._has_connected = True

            heartbeat = asyncio.create_task(self._heartbeat_loop())
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await self.handle_message(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        raise HubConnectionError(self.config.ws_url, ws.exception())
            finally:
                heartbeat.cancel()
                self._ws = None
                self.authenticated = False
                self._fail_pending("Connection lost")
                logger.info("Realtime connection closed")

    async def _heartbeat_loop(self) -> None:
        while self.connected:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                await self._send(env.PING, {})
            except (ConnectionError, RuntimeError, aiohttp.ClientError) as e:
                logger.debug(f"Ping failed: {e}")
                return

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for mutation in pending:
            self._rollback(mutation, f"{mutation.description} failed ({reason}), change reverted")

    async def _send(self, message_type: str, data: Any, request_id: str | None = None) -> None:
        if self._ws is None or self._ws.closed:
            raise ConnectionError("Realtime channel is not connected")
        signature = sign_data(data, self.config.auth_token) if self.config.auth_token else None
        await self._ws.send_json(
            make_message(
                message_type,
                data,
                requestId=request_id,
                sessionId=self.session_id,
                userId=self.config.user_id,
                signature=signature,
            )
        )

    async def _authenticate(self) -> None:
        await self._send(
            env.AUTH,
            {
                "userId": self.config.user_id,
                "sessionId": self.session_id,
                "token": self.config.auth_token,
            },
        )

    async def handle_message(self, payload: str | bytes | dict[str, Any]) -> None:
        """Apply one message received from the hub."""
        try:
            envelope = Envelope.parse(payload)
        except EnvelopeError as e:
            logger.warning(f"Ignoring malformed message: {e.reason}")
            return

        data = envelope.data
        if envelope.type == env.WELCOME:
            self.session_id = data.get("sessionId") if isinstance(data, dict) else None
            if self.config.user_id or self.config.auth_token:
                await self._authenticate()
        elif envelope.type == env.AUTH_SUCCESS:
            self.authenticated = True
            logger.info("Realtime channel authenticated")
        elif envelope.type == env.AUTH_ERROR:
            self.authenticated = False
            self._notify("error", "Realtime authentication failed")
        elif envelope.type == env.PONG:
            logger.debug("Pong received")
        elif envelope.type == env.ACK:
            pending = self._pending.pop(envelope.request_id or "", None)
            ref = envelope.raw.get("ref") or (pending.kind if pending else None)
            if ref in env.MUTATION_TYPES:
                self._apply_remote(ref, data)
            if pending is not None:
                self._notify("success", pending.description)
                if not pending.future.done():
                    pending.future.set_result(True)
        elif envelope.type == env.ERROR:
            reason = data.get("message") if isinstance(data, dict) else None
            pending = self._pending.pop(envelope.request_id or "", None)
            if pending is not None:
                self._rollback(pending, f"{pending.description} rejected: {reason or 'unknown error'}")
            else:
                self._notify("error", f"Hub error: {reason or 'unknown error'}")
        elif envelope.type in env.MUTATION_TYPES:
            self._apply_remote(envelope.type, data)
        else:
            logger.debug(f"Ignoring {envelope.type} message")

    def _apply_remote(self, kind: str, data: Any) -> None:
        """Merge hub state (single record, list or ``{id, deleted}``) by id."""
        records = [
            record
            for record in (data if isinstance(data, list) else [data])
            if isinstance(record, dict) and record.get("id")
        ]
        if not records:
            return

        deleted = {record["id"] for record in records if record.get("deleted") is True}
        patches = [record for record in records if record.get("deleted") is not True]
        self._drop_snapshots(kind, {record["id"] for record in records})
        if deleted:
            self._remove(kind, deleted)
        if patches:
            self._merge(kind, patches)
        self._emit_update(kind)
