"""
Tests for InventorySyncAgent.

Covers the initial load fallbacks, optimistic updates with rollback,
broadcast merging, and a live round trip through a running hub.
"""

import asyncio
import json
import logging
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp.test_utils import TestServer

from inventory_sync.config import AgentConfig, HubConfig
from inventory_sync.exceptions import HubConnectionError, HubRequestError, RecordValidationError
from inventory_sync.resilience import RetryConfig
from inventory_sync.store import InventoryStore
from inventory_sync.sync.agent import SAMPLE_PROMOS, DataSource, InventorySyncAgent
from inventory_sync.sync.envelope import make_message
from inventory_sync.sync.hub import InventoryHub
from inventory_sync.sync.server import CONFIG_KEY, create_app

from conftest import SEED_DOCUMENT

UNREACHABLE = "http://127.0.0.1:9"


def offline_agent(seed_path=None, **overrides):
    config = AgentConfig(
        api_base=UNREACHABLE,
        seed_path=seed_path,
        initial_load_retries=0,
        reconnect_delay=0.01,
        request_timeout=1.0,
        **overrides,
    )
    agent = InventorySyncAgent(config)
    notices = []
    agent.on_notice(lambda level, message: notices.append((level, message)))
    return agent, notices


@pytest.fixture
async def hub_server(seeded_db_path):
    config = HubConfig(db_path=seeded_db_path, heartbeat_interval=0)
    app = create_app(InventoryHub(InventoryStore(seeded_db_path), config), config)
    async with TestServer(app) as server:
        yield server


def agent_for(server, **overrides):
    config = AgentConfig(
        api_base=str(server.make_url("/")),
        reconnect_delay=0.01,
        request_timeout=2.0,
        **overrides,
    )
    return InventorySyncAgent(config)


async def wait_for(condition, timeout=3.0):
    """Poll ``condition`` until it holds or the timeout passes."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class FakeSocket:
    """Stands in for a connected client WebSocket."""

    def __init__(self):
        self.closed = False
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


class TestInitialLoad:
    """Tests for load_initial fallbacks."""

    @pytest.mark.asyncio
    async def test_loads_from_hub(self, hub_server):
        agent = agent_for(hub_server)
        try:
            assert await agent.load_initial() == DataSource.API
            assert agent.source == DataSource.API
            assert [item.id for item in agent.inventory] == ["inv_1_1", "inv_1_2", "inv_21_1"]
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_falls_back_to_seed(self, seeded_db_path):
        agent, _ = offline_agent(seed_path=seeded_db_path)
        try:
            assert await agent.load_initial() == DataSource.SEED
            assert agent.get_item("inv_1_1").quantity == 5
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_falls_back_to_sample(self, temp_dir):
        agent, notices = offline_agent(seed_path=temp_dir / "missing.json")
        try:
            assert await agent.load_initial() == DataSource.SAMPLE
            assert agent.inventory == []
            assert [p.id for p in agent.promos] == [p["id"] for p in SAMPLE_PROMOS]
            assert notices and notices[0][0] == "warning"
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_retries_before_falling_back(self, seeded_db_path):
        agent, _ = offline_agent(seed_path=seeded_db_path)
        fetch = AsyncMock(side_effect=HubRequestError(f"{UNREACHABLE}/inventory", 503))
        try:
            with patch.object(agent, "_fetch_document", fetch):
                agent.config.initial_load_retries = 2
                assert await agent.load_initial() == DataSource.SEED
            assert fetch.await_count == 3
        finally:
            await agent.stop()


class TestQueries:
    """Tests for derived queries."""

    @pytest.fixture
    async def agent(self, seeded_db_path):
        agent, _ = offline_agent(seed_path=seeded_db_path)
        await agent.load_initial()
        yield agent
        await agent.stop()

    @pytest.mark.asyncio
    async def test_available_colors(self, agent):
        assert [item.color_name for item in agent.available_colors("1")] == ["Pearl White"]
        # In stock but not offered
        assert agent.available_colors("21") == []

    @pytest.mark.asyncio
    async def test_stock_level(self, agent):
        assert agent.stock_level("1", "Pearl White") == 5
        assert agent.stock_level("1", "Candy Red") == 0

    @pytest.mark.asyncio
    async def test_active_promos(self, agent):
        inside = datetime(2025, 11, 15, tzinfo=UTC)
        outside = datetime(2026, 1, 15, tzinfo=UTC)
        assert [p.id for p in agent.active_promos("21", inside)] == ["promo_winner"]
        assert agent.active_promos("21", outside) == []
        assert agent.active_promos("1", inside) == []


class TestOptimisticUpdates:
    """Tests for mutations, rollback and confirmation."""

    @pytest.fixture
    async def agent(self, seeded_db_path):
        agent, notices = offline_agent(seed_path=seeded_db_path)
        agent.notices = notices
        await agent.load_initial()
        yield agent
        await agent.stop()

    @pytest.mark.asyncio
    async def test_rollback_on_http_failure(self, agent):
        updates = []
        agent.on_inventory_update(lambda items: updates.append([i.quantity for i in items]))
        failing = AsyncMock(side_effect=HubRequestError("http://hub/inventory", 500))

        with patch.object(agent, "_request", failing):
            assert await agent.update_quantity("inv_1_1", 0) is False

        item = agent.get_item("inv_1_1")
        assert item.quantity == 5
        assert item.color_name == "Pearl White"
        # Optimistic value was shown, then reverted
        assert updates[0][0] == 0
        assert updates[-1][0] == 5
        assert agent.notices[-1][0] == "error"

    @pytest.mark.asyncio
    async def test_rollback_removes_new_item(self, agent):
        with patch.object(agent, "_request", AsyncMock(side_effect=HubRequestError("x", 500))):
            assert await agent.upsert_item({"id": "inv_9_1", "quantity": 1}) is False
        assert agent.get_item("inv_9_1") is None

    @pytest.mark.asyncio
    async def test_rollback_restores_deleted_promo(self, agent):
        with patch.object(agent, "_request", AsyncMock(side_effect=HubRequestError("x", 500))):
            assert await agent.delete_promo("promo_winner") is False
        assert [p.id for p in agent.promos] == ["promo_winner"]

    @pytest.mark.asyncio
    async def test_invalid_quantity_changes_nothing(self, agent):
        with pytest.raises(RecordValidationError):
            await agent.update_quantity("inv_1_1", -1)
        assert agent.get_item("inv_1_1").quantity == 5

    @pytest.mark.asyncio
    async def test_http_success_adopts_server_document(self, agent):
        document = json.loads(json.dumps(SEED_DOCUMENT))
        document["inventory"][0]["quantity"] = 0
        with patch.object(agent, "_request", AsyncMock(return_value=document)) as request:
            assert await agent.update_quantity("inv_1_1", 0) is True
        request.assert_awaited_once_with("POST", "/inventory", json_body={"id": "inv_1_1", "quantity": 0})
        assert agent.get_item("inv_1_1").quantity == 0
        assert agent.notices[-1][0] == "success"

    @pytest.mark.asyncio
    async def test_error_reply_rolls_back(self, agent):
        socket = FakeSocket()
        agent._ws = socket

        task = asyncio.create_task(agent.update_quantity("inv_1_1", 3))
        await wait_for(lambda: socket.sent)
        assert agent.get_item("inv_1_1").quantity == 3

        request_id = socket.sent[0]["requestId"]
        await agent.handle_message(
            make_message("error", {"reason": "store_failure", "message": "disk full"}, requestId=request_id)
        )

        assert await task is False
        assert agent.get_item("inv_1_1").quantity == 5
        assert "disk full" in agent.notices[-1][1]

    @pytest.mark.asyncio
    async def test_ack_confirms_and_merges(self, agent):
        socket = FakeSocket()
        agent._ws = socket

        task = asyncio.create_task(agent.update_availability("inv_1_2", False))
        await wait_for(lambda: socket.sent)
        sent = socket.sent[0]
        assert sent["type"] == "inventory"
        assert sent["data"] == {"id": "inv_1_2", "isAvailable": False}

        canonical = [dict(item, isAvailable=item["id"] != "inv_1_2") for item in SEED_DOCUMENT["inventory"]]
        await agent.handle_message(make_message("ack", canonical, requestId=sent["requestId"], ref="inventory"))

        assert await task is True
        assert agent.get_item("inv_1_2").is_available is False
        assert agent.get_item("inv_1_1").is_available is True

    @pytest.mark.asyncio
    async def test_add_promo_generates_id(self, agent):
        with patch.object(agent, "_request", AsyncMock(side_effect=lambda *a, **k: {"promos": [k["json_body"]]})):
            promo = await agent.add_promo({"title": "Helmet Promo", "modelIds": ["15"]})
        assert promo.id.startswith("promo_")
        assert [p.id for p in agent.promos] == [promo.id]


class TestBroadcastReception:
    """Tests for merging pushed updates."""

    @pytest.fixture
    async def agent(self, seeded_db_path):
        agent, _ = offline_agent(seed_path=seeded_db_path)
        await agent.load_initial()
        yield agent
        await agent.stop()

    @pytest.mark.asyncio
    async def test_single_record_merges_by_id(self, agent):
        await agent.handle_message(make_message("inventory", {"id": "inv_1_1", "quantity": 0}))
        item = agent.get_item("inv_1_1")
        assert item.quantity == 0
        assert item.color_name == "Pearl White"
        assert item.is_available is True

    @pytest.mark.asyncio
    async def test_list_appends_unknown_ids(self, agent):
        await agent.handle_message(
            make_message("inventory", [{"id": "inv_8_1", "modelId": "8", "quantity": 2, "isAvailable": True}])
        )
        assert [item.id for item in agent.inventory][-1] == "inv_8_1"
        assert len(agent.inventory) == 4

    @pytest.mark.asyncio
    async def test_deletions(self, agent):
        await agent.handle_message(make_message("inventory", {"id": "inv_1_2", "deleted": True}))
        await agent.handle_message(make_message("promo", {"id": "promo_winner", "deleted": True}))
        assert agent.get_item("inv_1_2") is None
        assert agent.promos == []

    @pytest.mark.asyncio
    async def test_promo_listener(self, agent):
        seen = []
        agent.on_promo_update(lambda promos: seen.append([p.title for p in promos]))
        await agent.handle_message(make_message("promo", {"id": "promo_winner", "title": "Renamed"}))
        assert seen == [["Renamed"]]

    @pytest.mark.asyncio
    async def test_malformed_message_ignored(self, agent):
        await agent.handle_message("{not json")
        await agent.handle_message(json.dumps({"type": "inventory", "data": {"id": "inv_1_1"}}))
        assert agent.get_item("inv_1_1").quantity == 5


class TestRealtime:
    """Round trips through a running hub."""

    @pytest.mark.asyncio
    async def test_update_reaches_other_agent(self, hub_server):
        writer = agent_for(hub_server, user_id="admin")
        reader = agent_for(hub_server)
        try:
            await writer.load_initial()
            await reader.load_initial()
            await writer.start()
            await reader.start()
            await wait_for(lambda: writer.connected and reader.connected and writer.authenticated)

            assert await writer.update_quantity("inv_1_1", 1) is True
            await wait_for(lambda: reader.get_item("inv_1_1").quantity == 1)
            assert reader.get_item("inv_1_1").color_name == "Pearl White"
        finally:
            await writer.stop()
            await reader.stop()

        stored = json.loads(hub_server.app[CONFIG_KEY].db_path.read_text())
        assert next(i for i in stored["inventory"] if i["id"] == "inv_1_1")["quantity"] == 1

    @pytest.mark.asyncio
    async def test_reconnect_gives_up_with_notice(self):
        agent, notices = offline_agent(max_reconnect_attempts=1)
        try:
            await agent.start()
            await wait_for(lambda: any(level == "error" for level, _ in notices))
            assert not agent.connected
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_reconnect_delays_follow_capped_backoff(self, caplog):
        agent, notices = offline_agent(max_reconnect_attempts=3)
        agent._reconnect_backoff = RetryConfig(backoff_base=0.01, backoff_max=0.02)
        agent._websocket_session = AsyncMock(side_effect=HubConnectionError("ws://down"))
        caplog.set_level(logging.INFO, logger="inventory_sync.sync.agent")
        try:
            await agent.start()
            await wait_for(lambda: any(level == "error" for level, _ in notices))
        finally:
            await agent.stop()

        delays = [r.getMessage().split()[2] for r in caplog.records if r.getMessage().startswith("Reconnecting in")]
        assert delays == ["0.01s", "0.02s", "0.02s"]
        assert agent._websocket_session.await_count == 4
