from __future__ import annotations

import asyncio

import pytest

from ble_scan_gateway import AdvertisingPayload, DiscoveryEvent


class FakeRadio:
    """Radio stand-in that records calls and lets tests drive platform events."""

    def __init__(self) -> None:
        self.starts = 0
        self.stops = 0
        self.fail_on_start: set[int] = set()
        self.on_discovery = None
        self.on_stop = None
        self.detached = False
        self.running = False
        self.start_delay = 0.0

    def attach(self, on_discovery, on_stop) -> None:
        self.on_discovery = on_discovery
        self.on_stop = on_stop

    def detach(self) -> None:
        self.on_discovery = None
        self.on_stop = None
        self.detached = True

    async def start(self) -> None:
        self.starts += 1
        if self.starts in self.fail_on_start:
            raise RuntimeError("radio busy")
        self.running = True
        if self.start_delay:
            await asyncio.sleep(self.start_delay)

    async def stop(self) -> None:
        self.stops += 1
        self.running = False
        if self.on_stop is not None:
            self.on_stop()

    def emit(self, address: str, rssi: int | None, name: str | None = None,
             advertising: AdvertisingPayload | None = None) -> None:
        self.on_discovery(DiscoveryEvent(address, rssi, name, advertising or AdvertisingPayload()))

    def platform_stop(self) -> None:
        self.on_stop()


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def radio() -> FakeRadio:
    return FakeRadio()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
