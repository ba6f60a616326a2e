from __future__ import annotations

import asyncio
import json
import logging

import httpx

from ble_scan_gateway import (
    BLEScanGateway,
    FilterCriteria,
    GatewayConfig,
    GatewayState,
    HTTPPublisher,
    ScanSession,
    ScanState,
    SortKey,
)

ENDPOINT = "http://collector.local/ingest"


def test_view_filters_and_sorts(radio) -> None:
    async def scenario() -> None:
        session = ScanSession(radio, criteria=FilterCriteria(rssi_floor=-70), sort_key=SortKey.RSSI)
        await session.start()
        radio.emit("00:00:00:00:00:01", -80, "far")
        radio.emit("00:00:00:00:00:02", -50, "near")
        radio.emit("00:00:00:00:00:03", -60, "mid")

        assert [d.name for d in session.view()] == ["near", "mid"]

        session.apply_preset("iBeacon")
        assert session.view() == []
        assert session.criteria.rssi_floor == -70

        session.clear_filters()
        assert len(session.view()) == 3

        await session.close()

    asyncio.run(scenario())


def test_eviction_sweep_runs_on_schedule(radio, clock) -> None:
    async def scenario() -> None:
        session = ScanSession(radio, clock=clock, eviction_interval_sec=0.01)
        await session.start()
        radio.emit("00:00:00:00:00:01", -60)
        radio.emit("00:00:00:00:00:02", -60)
        session.toggle_favorite("00:00:00:00:00:02")

        clock.now = 400.0
        await asyncio.sleep(0.05)

        assert [d.address for d in session.registry.snapshot()] == ["00:00:00:00:00:02"]
        await session.close()

    asyncio.run(scenario())


def test_session_forwards_filtered_view_and_tears_down(radio) -> None:
    bodies: list = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    def factory(config, logger):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HTTPPublisher(config.endpoint, logger, client=client)

    async def scenario() -> None:
        session = ScanSession(
            radio,
            criteria=FilterCriteria(rssi_floor=-70),
            sort_key=SortKey.RSSI,
            gateway_config=GatewayConfig(transport="http", endpoint=ENDPOINT),
            publisher_factory=factory,
        )
        async with session:
            assert session.forwarder.status.state is GatewayState.CONNECTED
            radio.emit("00:00:00:00:00:01", -80)
            radio.emit("00:00:00:00:00:02", -65)
            radio.emit("00:00:00:00:00:03", -45)
            await session.forwarder.publish_once()

        assert session.controller.state is ScanState.IDLE
        assert session.forwarder.status.state is GatewayState.DISABLED
        assert radio.detached

    asyncio.run(scenario())

    assert bodies[0] == []
    assert [d["id"] for d in bodies[1]] == ["00:00:00:00:00:03", "00:00:00:00:00:02"]


def test_app_builds_session_from_config(radio, caplog) -> None:
    config = {
        "filters": {"rssi_floor": -90, "preset": "Eddystone"},
        "sort_by": "last_seen",
        "gateway": {"enabled": False},
    }
    logger = logging.getLogger("BLEScanGateway.test")
    app = BLEScanGateway(config, logger, radio=radio)

    assert app.session.sort_key is SortKey.LAST_SEEN
    assert app.session.criteria == FilterCriteria(rssi_floor=-90, service_uuids="FEAA")
    assert app.session.gateway_config is None

    with caplog.at_level(logging.INFO, logger="BLEScanGateway.test"):
        app.log_status()
    assert "0 shown / 0 seen" in caplog.text


def test_gateway_not_enabled_when_scan_fails_to_start(radio) -> None:
    radio.fail_on_start = {1}
    requests: list = []

    def factory(config, logger):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: requests.append(request)))
        return HTTPPublisher(config.endpoint, logger, client=client)

    async def scenario() -> None:
        session = ScanSession(
            radio,
            gateway_config=GatewayConfig(transport="http", endpoint=ENDPOINT),
            publisher_factory=factory,
        )
        assert not await session.start()
        assert not session.forwarder.enabled
        assert session.forwarder.status.state is GatewayState.DISABLED
        await session.close()

    asyncio.run(scenario())

    assert requests == []
