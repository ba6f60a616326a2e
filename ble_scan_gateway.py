#!/usr/bin/env python3
"""
BLE Scan Gateway
Discovers nearby Bluetooth Low Energy (BLE) peripherals, keeps a live registry of
recently seen devices, decodes vendor-specific advertising payloads, filters and
sorts the registry and forwards the filtered view to an HTTP endpoint or an MQTT
topic on a timer.
"""

__version__ = "1.0.0"

import argparse
import asyncio
import json
import logging
import re
import signal
import sys
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

try:
    from bleak import BleakScanner
    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData
except ImportError:
    print("Error: bleak library not installed. Run: pip install bleak")
    sys.exit(1)

try:
    import paho.mqtt.client as mqtt
except ImportError:
    print("Error: paho-mqtt library not installed. Run: pip install paho-mqtt")
    sys.exit(1)

try:
    import httpx
except ImportError:
    print("Error: httpx library not installed. Run: pip install httpx")
    sys.exit(1)


# ANSI color codes for cross-platform colored output
class Colors:
    """ANSI color codes for terminal output."""
    GREEN = '\033[92m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


# Icons with colors for different log levels
ICON_SUCCESS = f"{Colors.GREEN}✓{Colors.RESET}"
ICON_ERROR = f"{Colors.RED}✗{Colors.RESET}"
ICON_WARNING = f"{Colors.YELLOW}⚠{Colors.RESET}"
ICON_INFO = f"{Colors.BLUE}ℹ{Colors.RESET}"
ICON_PUBLISH = f"{Colors.CYAN}{Colors.BOLD}⬆{Colors.RESET}"
ICON_RECEIVE = f"{Colors.CYAN}⬇{Colors.RESET}"

LOGGER_NAME = 'BLEScanGateway'

# Constants for configuration defaults
DEFAULT_LOG_LEVEL = 'WARNING'
DEFAULT_SCAN_DURATION_SEC = 30.0
DEFAULT_RESTART_DELAY_SEC = 0.1
DEFAULT_EVICTION_WINDOW_SEC = 300.0
DEFAULT_EVICTION_INTERVAL_SEC = 30.0
DEFAULT_STATUS_INTERVAL_SEC = 10.0
DEFAULT_GATEWAY_INTERVAL_SEC = 10
DEFAULT_MQTT_PORT = 1883
DEFAULT_QOS = 1
DEFAULT_KEEPALIVE = 60
DEFAULT_CLIENT_ID_PREFIX = 'ble_scanner'
DEFAULT_RSSI = -100
DEFAULT_RSSI_FLOOR = -100
UNKNOWN_NAME = 'Unknown'

# Connection timeouts
CONNECTION_TIMEOUT_SEC = 10
HTTP_TIMEOUT_SEC = 10.0
COUNTDOWN_TICK_SEC = 1.0

# BLE packet structure constants (AD types)
BLE_TYPE_FLAGS = 0x01
BLE_TYPE_UUID16_INCOMPLETE = 0x02
BLE_TYPE_UUID16_COMPLETE = 0x03
BLE_TYPE_UUID32_INCOMPLETE = 0x04
BLE_TYPE_UUID32_COMPLETE = 0x05
BLE_UUID_TYPE_INCOMPLETE_128 = 0x06
BLE_TYPE_UUID128_COMPLETE = 0x07
BLE_TYPE_SHORT_NAME = 0x08
BLE_TYPE_COMPLETE_NAME = 0x09
BLE_TYPE_TX_POWER = 0x0A
BLE_TYPE_SERVICE_DATA_16BIT = 0x16
BLE_TYPE_SERVICE_DATA_32BIT = 0x20
BLE_TYPE_SERVICE_DATA_128BIT = 0x21
BLE_TYPE_MANUFACTURER_DATA = 0xFF
BLE_FLAGS_LE_GENERAL_DISCOVERABLE = 0x06

# Manufacturer data carries the flags AD structure and the manufacturer AD
# header (length, 0xFF) ahead of the little-endian company ID.
MANUFACTURER_HEADER = bytes([0x02, BLE_TYPE_FLAGS, BLE_FLAGS_LE_GENERAL_DISCOVERABLE])
MANUFACTURER_COMPANY_ID_OFFSET = 5

# Valid advertised TX power range in dBm
TX_POWER_MIN_DBM = -30
TX_POWER_MAX_DBM = 20

BLUETOOTH_BASE_UUID_TAIL = '00001000800000805F9B34FB'

# Apple manufacturer data sub-types
COMPANY_ID_APPLE = 0x004C
APPLE_TYPE_IBEACON = 0x02
IBEACON_MIN_LENGTH = 21

COMPANY_NAMES = {
    0x004C: 'Apple Inc.',
    0x0059: 'Nordic Semiconductor ASA',
    0x0075: 'Samsung Electronics Co. Ltd.',
    0x0006: 'Microsoft',
    0x00E0: 'Google',
    0x0087: 'Garmin International',
    0x0157: 'Huawei Technologies Co. Ltd.',
    0x004F: 'APT Ltd.',
    0x000F: 'Broadcom',
    0x0046: 'Sony Corporation',
    0x0002: 'Intel Corporation',
    0x00D2: 'Fitbit',
    0x038F: 'Tile, Inc.',
}

APPLE_ADVERTISEMENT_TYPES = {
    0x10: 'Proximity (FindMy/AirTag)',
    0x12: 'FindMy network',
    0x07: 'AirPods',
    0x09: 'AirPlay',
}

SERVICE_NAMES = {
    '1800': 'Generic Access',
    '1801': 'Generic Attribute',
    '1802': 'Immediate Alert',
    '1803': 'Link Loss',
    '1804': 'Tx Power',
    '1805': 'Current Time Service',
    '1806': 'Reference Time Update Service',
    '1807': 'Next DST Change Service',
    '1808': 'Glucose',
    '1809': 'Health Thermometer',
    '180A': 'Device Information',
    '180D': 'Heart Rate',
    '180E': 'Phone Alert Status Service',
    '180F': 'Battery Service',
    '1810': 'Blood Pressure',
    '1812': 'Human Interface Device',
    '1813': 'Scan Parameters',
    '1814': 'Running Speed and Cadence',
    '1816': 'Cycling Speed and Cadence',
    '1818': 'Cycling Power',
    '1819': 'Location and Navigation',
    '181A': 'Environmental Sensing',
    '181D': 'Weight Scale',
    'FD6F': 'Exposure Notification',
    'FE2C': 'Google Fast Pair',
    'FEAA': 'Eddystone',
}

# Gateway transports
TRANSPORT_HTTP = 'http'
TRANSPORT_MQTT = 'mqtt'

# Validation limits
MAX_CLIENT_ID_LENGTH = 128
RSSI_FLOOR_RANGE = (-127, 20)

_HEX_PAIR_RE = re.compile(r'^[0-9a-f]{2}$')


def get_logger() -> logging.Logger:
    """Return the application logger."""
    return logging.getLogger(LOGGER_NAME)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AdvertisingPayload:
    """Decoded view of one advertising report.

    Byte fields hold the untrimmed bytes as reported; trailing zero padding is
    trimmed only when rendering or serializing.
    """
    local_name: Optional[str] = None
    tx_power_level: Optional[int] = None
    manufacturer_data: Optional[bytes] = None
    service_uuids: Tuple[str, ...] = ()
    service_data: Mapping[str, bytes] = field(default_factory=dict, hash=False)
    raw_data: Optional[bytes] = None

    def __post_init__(self):
        # read-only copy, so snapshot readers cannot alter a shared entry
        object.__setattr__(self, 'service_uuids', tuple(self.service_uuids))
        object.__setattr__(self, 'service_data', MappingProxyType(dict(self.service_data)))

    def to_dict(self) -> dict:
        """Convert to a JSON-ready dict with padding trimmed from every byte field."""
        data: dict = {}
        if self.local_name:
            data['localName'] = self.local_name
        if self.tx_power_level is not None:
            data['txPowerLevel'] = self.tx_power_level
        if self.manufacturer_data:
            data['manufacturerData'] = list(trim_trailing_zeros(self.manufacturer_data))
        if self.service_uuids:
            data['serviceUUIDs'] = list(self.service_uuids)
        if self.service_data:
            data['serviceData'] = {
                key: list(trim_trailing_zeros(value)) for key, value in self.service_data.items()
            }
        if self.raw_data:
            data['rawData'] = list(trim_trailing_zeros(self.raw_data))
        return data


@dataclass(frozen=True)
class DiscoveryEvent:
    """One observation of a peripheral, as reported by the radio."""
    address: str
    rssi: Optional[int]
    name: Optional[str] = None
    advertising: AdvertisingPayload = field(default_factory=AdvertisingPayload)


@dataclass(frozen=True)
class Device:
    """Registry entry for one physical peripheral."""
    address: str
    name: Optional[str]
    rssi: int
    first_seen: float
    last_seen: float
    advertising: AdvertisingPayload = field(default_factory=AdvertisingPayload)
    favorite: bool = False

    @property
    def display_name(self) -> str:
        return self.name or UNKNOWN_NAME

    def to_gateway_dict(self) -> dict:
        """Shape published to the remote collector."""
        return {
            'id': self.address,
            'name': self.name,
            'rssi': self.rssi,
            'advertising': self.advertising.to_dict(),
        }


@dataclass(frozen=True)
class IBeacon:
    """Apple iBeacon fields."""
    uuid: str
    major: int
    minor: int
    tx_power: Optional[int] = None


@dataclass(frozen=True)
class ManufacturerInfo:
    """Structured interpretation of manufacturer-specific data."""
    company_id: int
    company_name: Optional[str]
    data: bytes
    apple_type: Optional[int] = None
    type_name: Optional[str] = None
    ibeacon: Optional[IBeacon] = None


# ---------------------------------------------------------------------------
# Advertising decoder
# ---------------------------------------------------------------------------

def trim_trailing_zeros(data: Optional[bytes]) -> bytes:
    """Strip trailing zero padding from a byte sequence."""
    if not data:
        return b''
    return bytes(data).rstrip(b'\x00')


def bytes_to_hex(data: Optional[bytes]) -> str:
    """Render bytes as space-separated uppercase hex, padding trimmed."""
    return ' '.join(f'{b:02X}' for b in trim_trailing_zeros(data))


def bytes_to_hex_with_offsets(data: Optional[bytes]) -> str:
    """Render bytes as ``[n]=XX`` pairs so byte-pattern filters can be authored.

    Offsets are positions in the full (untrimmed) sequence; only trailing
    padding is dropped.
    """
    return ' '.join(f'[{i}]={b:02X}' for i, b in enumerate(trim_trailing_zeros(data)))


def to_signed_byte(value: int) -> int:
    return value - 256 if value > 127 else value


def normalize_tx_power(value) -> Optional[int]:
    """Convert a reported TX power to signed dBm, or None if it is implausible."""
    if value is None or isinstance(value, bool):
        return None
    try:
        power = to_signed_byte(int(value))
    except (TypeError, ValueError):
        return None
    if TX_POWER_MIN_DBM <= power <= TX_POWER_MAX_DBM:
        return power
    return None


def decode_company_id(
    manufacturer_data: Optional[bytes],
    offset: int = MANUFACTURER_COMPANY_ID_OFFSET
) -> Optional[int]:
    """Read the little-endian company ID from manufacturer data."""
    if not manufacturer_data or len(manufacturer_data) < offset + 2:
        return None
    return manufacturer_data[offset] | (manufacturer_data[offset + 1] << 8)


def company_name(company_id: int) -> Optional[str]:
    return COMPANY_NAMES.get(company_id)


def format_uuid(raw: bytes) -> str:
    """Format 16 bytes as an RFC 4122 hyphenated UUID string."""
    text = raw.hex()
    return f"{text[0:8]}-{text[8:12]}-{text[12:16]}-{text[16:20]}-{text[20:32]}"


def decode_ibeacon(data: bytes) -> Optional[IBeacon]:
    """Decode the bytes that follow the Apple iBeacon sub-type byte.

    Layout: length byte (0x15), 16-byte UUID, big-endian major, big-endian
    minor and an optional signed measured-power byte.
    """
    if len(data) < IBEACON_MIN_LENGTH:
        return None
    tx_power = to_signed_byte(data[21]) if len(data) > IBEACON_MIN_LENGTH else None
    return IBeacon(
        uuid=format_uuid(bytes(data[1:17])),
        major=int.from_bytes(data[17:19], byteorder='big'),
        minor=int.from_bytes(data[19:21], byteorder='big'),
        tx_power=tx_power,
    )


def decode_manufacturer(
    manufacturer_data: Optional[bytes],
    offset: int = MANUFACTURER_COMPANY_ID_OFFSET
) -> Optional[ManufacturerInfo]:
    """Interpret manufacturer data: company, Apple sub-type and iBeacon fields."""
    company_id = decode_company_id(manufacturer_data, offset)
    if company_id is None:
        return None

    data = bytes(manufacturer_data[offset + 2:])
    apple_type = None
    type_name = None
    ibeacon = None
    if company_id == COMPANY_ID_APPLE and data:
        apple_type = data[0]
        if apple_type == APPLE_TYPE_IBEACON:
            ibeacon = decode_ibeacon(data[1:])
            if ibeacon:
                type_name = 'iBeacon'
        else:
            type_name = APPLE_ADVERTISEMENT_TYPES.get(apple_type)

    return ManufacturerInfo(
        company_id=company_id,
        company_name=company_name(company_id),
        data=data,
        apple_type=apple_type,
        type_name=type_name,
        ibeacon=ibeacon,
    )


def decode_manufacturer_data(
    manufacturer_data: Optional[bytes],
    offset: int = MANUFACTURER_COMPANY_ID_OFFSET
) -> List[str]:
    """Human-readable lines describing manufacturer data."""
    info = decode_manufacturer(manufacturer_data, offset)
    if info is None:
        return []

    lines = [f"Company ID: 0x{info.company_id:04X}"]
    if info.company_name:
        lines.append(f"Manufacturer: {info.company_name}")
    if info.type_name:
        lines.append(f"Type: {info.type_name}")
    if info.ibeacon:
        lines.append(f"UUID: {info.ibeacon.uuid}")
        lines.append(f"Major: {info.ibeacon.major}")
        lines.append(f"Minor: {info.ibeacon.minor}")
        if info.ibeacon.tx_power is not None:
            lines.append(f"TX Power: {info.ibeacon.tx_power} dBm")

    data = trim_trailing_zeros(info.data)
    if data:
        lines.append(f"Data ({len(data)} bytes): {bytes_to_hex(data)}")
    return lines


def short_service_uuid(service_uuid: str) -> Optional[str]:
    """Return the 16-bit short form of a SIG UUID, or None for vendor UUIDs."""
    compact = service_uuid.replace('-', '').strip().upper()
    if len(compact) == 4:
        return compact
    if len(compact) == 8:
        return compact[4:8]
    if len(compact) == 32 and compact[8:] == BLUETOOTH_BASE_UUID_TAIL:
        return compact[4:8]
    return None


def decode_service_uuid(service_uuid: str) -> str:
    """Map a service UUID to its SIG-assigned name; unknown UUIDs pass through."""
    short = short_service_uuid(service_uuid)
    if short is None:
        return service_uuid
    return SERVICE_NAMES.get(short, service_uuid)


def uuid16_to_str(value: int) -> str:
    return f"0000{value:04x}-0000-1000-8000-00805f9b34fb"


def uuid32_to_str(value: int) -> str:
    return f"{value:08x}-0000-1000-8000-00805f9b34fb"


def uuid128_to_str(data: bytes) -> str:
    # 128-bit UUIDs are little-endian on air
    return str(uuid.UUID(bytes=bytes(data[::-1])))


def parse_ad_structures(raw: Optional[bytes]) -> List[Tuple[int, bytes]]:
    """Split a raw advertisement into (AD type, value) records.

    Parsing stops at the first zero-length record (padding) or at a record
    that runs past the end of the packet.
    """
    structures: List[Tuple[int, bytes]] = []
    if not raw:
        return structures

    i = 0
    while i < len(raw):
        length = raw[i]
        if length == 0 or i + 1 + length > len(raw):
            break
        structures.append((raw[i + 1], bytes(raw[i + 2:i + 1 + length])))
        i += 1 + length
    return structures


def encode_manufacturer_record(company_id: int, payload: bytes) -> bytes:
    """Build manufacturer data in the canonical layout (company ID at offset 5)."""
    record = bytearray(MANUFACTURER_HEADER)
    record.append(1 + 2 + len(payload))
    record.append(BLE_TYPE_MANUFACTURER_DATA)
    record.append(company_id & 0xFF)
    record.append((company_id >> 8) & 0xFF)
    record.extend(payload)
    return bytes(record)


def _split_uuids(data: bytes, width: int) -> List[str]:
    uuids = []
    for j in range(0, len(data) - width + 1, width):
        chunk = data[j:j + width]
        if width == 2:
            uuids.append(uuid16_to_str(int.from_bytes(chunk, byteorder='little')))
        elif width == 4:
            uuids.append(uuid32_to_str(int.from_bytes(chunk, byteorder='little')))
        else:
            uuids.append(uuid128_to_str(chunk))
    return uuids


def _service_data_entry(ad_type: int, value: bytes) -> Optional[Tuple[str, bytes]]:
    if ad_type == BLE_TYPE_SERVICE_DATA_16BIT and len(value) >= 2:
        return uuid16_to_str(int.from_bytes(value[:2], byteorder='little')), value[2:]
    if ad_type == BLE_TYPE_SERVICE_DATA_32BIT and len(value) >= 4:
        return uuid32_to_str(int.from_bytes(value[:4], byteorder='little')), value[4:]
    if ad_type == BLE_TYPE_SERVICE_DATA_128BIT and len(value) >= 16:
        return uuid128_to_str(value[:16]), value[16:]
    return None


def decode_advertising(
    raw_data: Optional[bytes] = None,
    *,
    local_name: Optional[str] = None,
    tx_power_level: Optional[int] = None,
    manufacturer_data: Optional[bytes] = None,
    service_uuids: Optional[Iterable[str]] = None,
    service_data: Optional[Dict[str, bytes]] = None
) -> AdvertisingPayload:
    """Build an AdvertisingPayload from raw bytes and/or platform-decoded fields.

    Fields reported separately by the platform take precedence; anything
    missing is recovered from the raw AD structures. A malformed record only
    drops the field it carries.
    """
    parsed_name = None
    parsed_tx = None
    parsed_mfg = None
    parsed_uuids: List[str] = []
    parsed_service_data: Dict[str, bytes] = {}

    for ad_type, value in parse_ad_structures(raw_data):
        if ad_type in (BLE_TYPE_COMPLETE_NAME, BLE_TYPE_SHORT_NAME):
            try:
                name = value.decode('utf-8')
            except UnicodeDecodeError:
                continue
            if parsed_name is None or ad_type == BLE_TYPE_COMPLETE_NAME:
                parsed_name = name
        elif ad_type == BLE_TYPE_TX_POWER and len(value) == 1:
            parsed_tx = value[0]
        elif ad_type == BLE_TYPE_MANUFACTURER_DATA and len(value) >= 2 and parsed_mfg is None:
            company_id = int.from_bytes(value[:2], byteorder='little')
            parsed_mfg = encode_manufacturer_record(company_id, value[2:])
        elif ad_type in (BLE_TYPE_UUID16_INCOMPLETE, BLE_TYPE_UUID16_COMPLETE):
            parsed_uuids.extend(_split_uuids(value, 2))
        elif ad_type in (BLE_TYPE_UUID32_INCOMPLETE, BLE_TYPE_UUID32_COMPLETE):
            parsed_uuids.extend(_split_uuids(value, 4))
        elif ad_type in (BLE_UUID_TYPE_INCOMPLETE_128, BLE_TYPE_UUID128_COMPLETE):
            parsed_uuids.extend(_split_uuids(value, 16))
        else:
            entry = _service_data_entry(ad_type, value)
            if entry:
                parsed_service_data[entry[0]] = entry[1]

    uuids = list(service_uuids) if service_uuids is not None else parsed_uuids
    data = dict(service_data) if service_data is not None else parsed_service_data

    return AdvertisingPayload(
        local_name=local_name or parsed_name,
        tx_power_level=normalize_tx_power(tx_power_level if tx_power_level is not None else parsed_tx),
        manufacturer_data=bytes(manufacturer_data) if manufacturer_data else parsed_mfg,
        service_uuids=tuple(uuids),
        service_data={str(k): bytes(v) for k, v in data.items()},
        raw_data=bytes(raw_data) if raw_data else None,
    )


def build_raw_advertisement(
    local_name: Optional[str],
    tx_power: Optional[int],
    manufacturer_data: Dict[int, bytes],
    service_uuids: Sequence[str],
    service_data: Dict[str, bytes]
) -> bytes:
    """Reconstruct a raw advertising packet from platform-decoded components.

    Used where the platform (bleak) only hands out decoded fields, so that
    byte-pattern filters have a packet to match against. The flags record and
    the first manufacturer record lead the packet.
    """
    packet = bytearray(MANUFACTURER_HEADER)

    for company_id, data in manufacturer_data.items():
        packet.append(1 + 2 + len(data))
        packet.append(BLE_TYPE_MANUFACTURER_DATA)
        packet.append(company_id & 0xFF)
        packet.append((company_id >> 8) & 0xFF)
        packet.extend(data)

    for uuid_str in service_uuids:
        short = short_service_uuid(uuid_str)
        if short is not None:
            packet.append(3)
            packet.append(BLE_TYPE_UUID16_COMPLETE)
            packet.extend(bytes.fromhex(short)[::-1])
            continue
        try:
            uuid_bytes = uuid.UUID(uuid_str).bytes
        except ValueError:
            continue
        packet.append(17)
        packet.append(BLE_UUID_TYPE_INCOMPLETE_128)
        packet.extend(uuid_bytes[::-1])

    for uuid_str, data in service_data.items():
        short = short_service_uuid(uuid_str)
        if short is not None:
            uuid_bytes = bytes.fromhex(short)
            ad_type = BLE_TYPE_SERVICE_DATA_16BIT
        else:
            try:
                uuid_bytes = uuid.UUID(uuid_str).bytes
            except ValueError:
                continue
            ad_type = BLE_TYPE_SERVICE_DATA_128BIT
        packet.append(1 + len(uuid_bytes) + len(data))
        packet.append(ad_type)
        packet.extend(uuid_bytes[::-1])
        packet.extend(data)

    if tx_power is not None:
        packet.extend([2, BLE_TYPE_TX_POWER, tx_power & 0xFF])

    if local_name:
        name_bytes = local_name.encode('utf-8')
        packet.append(1 + len(name_bytes))
        packet.append(BLE_TYPE_COMPLETE_NAME)
        packet.extend(name_bytes)

    return bytes(packet)


def discovery_from_bleak(device: BLEDevice, advertisement: AdvertisementData) -> DiscoveryEvent:
    """Normalize a bleak detection into a DiscoveryEvent."""
    manufacturer = dict(advertisement.manufacturer_data or {})
    service_uuids = list(advertisement.service_uuids or [])
    service_data = {k: bytes(v) for k, v in (advertisement.service_data or {}).items()}

    manufacturer_data = None
    if manufacturer:
        company_id, payload = next(iter(manufacturer.items()))
        manufacturer_data = encode_manufacturer_record(company_id, bytes(payload))

    raw_data = build_raw_advertisement(
        advertisement.local_name,
        advertisement.tx_power,
        {k: bytes(v) for k, v in manufacturer.items()},
        service_uuids,
        service_data,
    )

    payload = decode_advertising(
        raw_data,
        local_name=advertisement.local_name,
        tx_power_level=advertisement.tx_power,
        manufacturer_data=manufacturer_data,
        service_uuids=service_uuids,
        service_data=service_data,
    )
    return DiscoveryEvent(
        address=device.address,
        rssi=advertisement.rssi,
        name=device.name or advertisement.local_name,
        advertising=payload,
    )


def describe_advertising(payload: AdvertisingPayload) -> List[str]:
    """Human-readable field listing for one device's advertising payload."""
    lines: List[str] = []

    if payload.local_name:
        lines.append(f"Local Name: {payload.local_name}")

    if payload.tx_power_level is not None:
        lines.append(f"TX Power Level: {payload.tx_power_level} dBm")

    if payload.manufacturer_data:
        offsets = bytes_to_hex_with_offsets(payload.manufacturer_data)
        if offsets:
            lines.append(f"Manufacturer Data: {offsets}")
            lines.extend(f"  {line}" for line in decode_manufacturer_data(payload.manufacturer_data))

    if payload.service_uuids:
        lines.append(f"Service UUIDs ({len(payload.service_uuids)}): {', '.join(payload.service_uuids)}")
        lines.extend(f"  • {decode_service_uuid(u)} ({u})" for u in payload.service_uuids)

    for service_uuid, data in payload.service_data.items():
        hex_data = bytes_to_hex(data)
        if hex_data:
            lines.append(f"Service Data ({service_uuid}): {hex_data}")
            lines.append(f"  Service: {decode_service_uuid(service_uuid)}")

    if payload.raw_data:
        offsets = bytes_to_hex_with_offsets(payload.raw_data)
        if offsets:
            lines.append(f"Raw Advertisement: {len(offsets.split(' '))} bytes")
            lines.append(f"  Full packet: {offsets}")

    return lines


# ---------------------------------------------------------------------------
# Byte-pattern matcher
# ---------------------------------------------------------------------------

def parse_byte_pattern(pattern: str) -> Optional[List[Optional[int]]]:
    """Parse ``"aabbxxcc"`` into byte tokens, ``None`` marking a wildcard.

    Whitespace is ignored and case does not matter. Returns None when the
    pattern has odd length or a pair that is neither hex nor ``xx``.
    """
    clean = re.sub(r'\s', '', pattern or '').lower()
    if len(clean) % 2 != 0:
        return None

    tokens: List[Optional[int]] = []
    for i in range(0, len(clean), 2):
        pair = clean[i:i + 2]
        if pair == 'xx':
            tokens.append(None)
        elif _HEX_PAIR_RE.match(pair):
            tokens.append(int(pair, 16))
        else:
            return None
    return tokens


def matches_byte_pattern(data: Optional[bytes], pattern: str) -> bool:
    """Check whether the wildcard pattern occurs anywhere in ``data``."""
    tokens = parse_byte_pattern(pattern)
    if tokens is None:
        return False
    if not tokens:
        return True

    data = data or b''
    for offset in range(len(data) - len(tokens) + 1):
        if all(token is None or data[offset + i] == token for i, token in enumerate(tokens)):
            return True
    return False


# ---------------------------------------------------------------------------
# Device registry
# ---------------------------------------------------------------------------

class DeviceRegistry:
    """
    Authoritative map of currently visible devices, keyed by address.

    Entries are immutable; every mutation replaces the entry, so a snapshot
    handed out earlier never changes under its reader. Iteration order is
    discovery order.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None
    ):
        self._clock = clock
        self.logger = logger or get_logger()
        self._devices: Dict[str, Device] = {}

    def upsert(self, event: DiscoveryEvent, now: Optional[float] = None) -> Device:
        """Insert or update the device seen in ``event``."""
        now = self._clock() if now is None else now
        existing = self._devices.get(event.address)
        rssi = event.rssi if event.rssi is not None else DEFAULT_RSSI

        if existing is None:
            device = Device(
                address=event.address,
                name=event.name or event.advertising.local_name,
                rssi=rssi,
                first_seen=now,
                last_seen=now,
                advertising=event.advertising,
            )
            self.logger.debug(f"New device: {event.address} ({device.display_name})")
        else:
            device = replace(
                existing,
                name=event.name or event.advertising.local_name,
                rssi=rssi,
                last_seen=max(now, existing.first_seen),
                advertising=event.advertising,
            )

        self._devices[event.address] = device
        return device

    def evict_stale(
        self,
        now: Optional[float] = None,
        window: float = DEFAULT_EVICTION_WINDOW_SEC
    ) -> int:
        """
        Remove devices not seen within ``window`` seconds, keeping favorites.

        Returns:
            Number of devices removed.
        """
        now = self._clock() if now is None else now
        stale = [
            address for address, device in self._devices.items()
            if not device.favorite and now - device.last_seen > window
        ]
        for address in stale:
            del self._devices[address]
        if stale:
            self.logger.debug(f"Evicted {len(stale)} stale device(s)")
        return len(stale)

    def clear(self) -> None:
        """Remove every device, favorites included."""
        self._devices.clear()

    def toggle_favorite(self, address: str) -> Optional[bool]:
        """Flip the favorite flag; returns the new value, or None for unknown addresses."""
        device = self._devices.get(address)
        if device is None:
            return None
        device = replace(device, favorite=not device.favorite)
        self._devices[address] = device
        self.logger.info(
            f"{'Added' if device.favorite else 'Removed'} device {address} "
            f"{'to' if device.favorite else 'from'} favorites"
        )
        return device.favorite

    def get(self, address: str) -> Optional[Device]:
        return self._devices.get(address)

    def snapshot(self) -> Tuple[Device, ...]:
        """Point-in-time copy of all entries in discovery order."""
        return tuple(self._devices.values())

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, address: object) -> bool:
        return address in self._devices


# ---------------------------------------------------------------------------
# Filter / sort engine
# ---------------------------------------------------------------------------

class SortKey(Enum):
    INSERTION = 'insertion'
    RSSI = 'rssi'
    NAME = 'name'
    FIRST_SEEN = 'first_seen'
    LAST_SEEN = 'last_seen'


@dataclass(frozen=True)
class FilterCriteria:
    """Filter settings; every active criterion must hold (AND)."""
    rssi_floor: int = DEFAULT_RSSI_FLOOR
    name: str = ''
    address: str = ''
    named_only: bool = False
    service_uuids: str = ''
    company_id: str = ''
    raw_byte_pattern: str = ''


@dataclass(frozen=True)
class FilterPreset:
    name: str
    description: str
    company_id: str = ''
    service_uuid: str = ''
    byte_pattern: str = ''


FILTER_PRESETS: Dict[str, FilterPreset] = {
    preset.name.lower(): preset for preset in (
        FilterPreset('iBeacon', 'Apple iBeacon standard', company_id='0x004C', byte_pattern='4c000215'),
        FilterPreset('Sterisol', 'Sterisol iBeacon', company_id='0x004F', byte_pattern='4f000215'),
        FilterPreset('Eddystone', 'Google Eddystone beacon', service_uuid='FEAA'),
        FilterPreset('AirTag', 'Apple AirTag / FindMy', company_id='0x004C', byte_pattern='4c0012'),
        FilterPreset('FindMy', 'Apple FindMy network', company_id='0x004C', byte_pattern='4c0010'),
        FilterPreset('AirPods', 'Apple AirPods', company_id='0x004C', byte_pattern='4c0007'),
        FilterPreset('Fast Pair', 'Android Fast Pair', service_uuid='FE2C'),
        FilterPreset('Exposure', 'COVID Exposure Notification', service_uuid='FD6F'),
    )
}


def parse_company_id_filter(text: str) -> Optional[int]:
    """Parse a hex company ID such as ``0x004C`` or ``004c``."""
    value = (text or '').strip()
    if value[:2].lower() == '0x':
        value = value[2:]
    if not value or not re.fullmatch(r'[0-9a-fA-F]+', value):
        return None
    return int(value, 16)


def split_service_uuid_filter(text: str) -> List[str]:
    return [part.strip().lower() for part in (text or '').split(',') if part.strip()]


def device_matches(device: Device, criteria: FilterCriteria) -> bool:
    """Apply every active criterion to one device."""
    if device.rssi < criteria.rssi_floor:
        return False

    if criteria.name:
        if not device.name or criteria.name.lower() not in device.name.lower():
            return False

    if criteria.address and criteria.address.lower() not in device.address.lower():
        return False

    if criteria.named_only and not device.name:
        return False

    wanted_uuids = split_service_uuid_filter(criteria.service_uuids)
    if wanted_uuids:
        advertised = [u.lower() for u in device.advertising.service_uuids]
        if not any(w in u for w in wanted_uuids for u in advertised):
            return False

    if criteria.company_id.strip():
        wanted = parse_company_id_filter(criteria.company_id)
        actual = decode_company_id(device.advertising.manufacturer_data)
        if wanted is None or actual is None or actual != wanted:
            return False

    if criteria.raw_byte_pattern.strip():
        raw = device.advertising.raw_data
        if not raw or not matches_byte_pattern(raw, criteria.raw_byte_pattern):
            return False

    return True


def sort_devices(devices: Sequence[Device], sort_key: SortKey) -> List[Device]:
    if sort_key is SortKey.RSSI:
        return sorted(devices, key=lambda d: d.rssi, reverse=True)
    if sort_key is SortKey.NAME:
        return sorted(devices, key=lambda d: d.display_name.lower())
    if sort_key is SortKey.FIRST_SEEN:
        return sorted(devices, key=lambda d: d.first_seen)
    if sort_key is SortKey.LAST_SEEN:
        return sorted(devices, key=lambda d: d.last_seen, reverse=True)
    return list(devices)


def filter_and_sort(
    snapshot: Sequence[Device],
    criteria: FilterCriteria,
    sort_key: SortKey = SortKey.INSERTION
) -> List[Device]:
    """Filter a registry snapshot and order the result."""
    return sort_devices([d for d in snapshot if device_matches(d, criteria)], sort_key)


def active_filter_count(criteria: FilterCriteria) -> int:
    """Number of criteria that currently restrict the view."""
    return sum([
        criteria.rssi_floor > DEFAULT_RSSI_FLOOR,
        bool(criteria.name),
        bool(criteria.address),
        criteria.named_only,
        bool(criteria.service_uuids),
        bool(criteria.company_id),
        bool(criteria.raw_byte_pattern),
    ])


def apply_preset(criteria: FilterCriteria, preset_name: str) -> FilterCriteria:
    """Replace the text criteria with a named preset, keeping the RSSI floor."""
    preset = FILTER_PRESETS.get(preset_name.strip().lower())
    if preset is None:
        available = ', '.join(p.name for p in FILTER_PRESETS.values())
        raise ValueError(f"Unknown filter preset '{preset_name}'. Available: {available}")
    return FilterCriteria(
        rssi_floor=criteria.rssi_floor,
        service_uuids=preset.service_uuid,
        company_id=preset.company_id,
        raw_byte_pattern=preset.byte_pattern,
    )


def parse_sort_key(value: str) -> SortKey:
    try:
        return SortKey(value.strip().lower())
    except ValueError:
        choices = ', '.join(k.value for k in SortKey)
        raise ValueError(f"Invalid sort key '{value}'. Use one of: {choices}") from None


# ---------------------------------------------------------------------------
# Scan controller
# ---------------------------------------------------------------------------

class ScanState(Enum):
    IDLE = 'idle'
    SCANNING = 'scanning'


DiscoveryHandler = Callable[[DiscoveryEvent], None]
StopHandler = Callable[[], None]


class BleakRadio:
    """
    Radio scan primitive on top of bleak.

    Each start() opens a scan session bounded by ``scan_duration_sec``; when it
    runs out the scanner is stopped and the stop handler is notified, the way
    mobile platforms end a timed scan.
    """

    def __init__(
        self,
        scan_duration_sec: float = DEFAULT_SCAN_DURATION_SEC,
        adapter: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        scanner_factory: Callable[..., BleakScanner] = BleakScanner
    ):
        self.scan_duration_sec = scan_duration_sec
        self.adapter = adapter
        self.logger = logger or get_logger()
        self._scanner_factory = scanner_factory
        self._scanner = None
        self._session_task: Optional[asyncio.Task] = None
        self._on_discovery: Optional[DiscoveryHandler] = None
        self._on_stop: Optional[StopHandler] = None

    def attach(self, on_discovery: DiscoveryHandler, on_stop: StopHandler) -> None:
        self._on_discovery = on_discovery
        self._on_stop = on_stop

    def detach(self) -> None:
        self._on_discovery = None
        self._on_stop = None

    def _detection_callback(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        handler = self._on_discovery
        if handler is None:
            return
        try:
            handler(discovery_from_bleak(device, advertisement))
        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Error processing device {device.address}: {e}")

    async def start(self) -> None:
        # a new session replaces any scanner still held from the previous one
        self._cancel_session()
        if self._scanner is not None:
            await self._stop_scanner(notify=False)

        kwargs = {}
        if self.adapter:
            kwargs['adapter'] = self.adapter
            self.logger.info(f"Using Bluetooth adapter: {self.adapter}")

        self._scanner = self._scanner_factory(
            detection_callback=self._detection_callback,
            scanning_mode="active",
            **kwargs
        )
        await self._scanner.start()
        self._session_task = asyncio.get_running_loop().create_task(self._session_timeout())

    async def _session_timeout(self) -> None:
        await asyncio.sleep(self.scan_duration_sec)
        self._session_task = None
        self.logger.debug(f"Scan session ended after {self.scan_duration_sec}s")
        await self._stop_scanner()

    async def stop(self) -> None:
        self._cancel_session()
        await self._stop_scanner()

    def _cancel_session(self) -> None:
        if self._session_task:
            self._session_task.cancel()
            self._session_task = None

    async def _stop_scanner(self, notify: bool = True) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        finally:
            if notify and self._on_stop:
                self._on_stop()


class ScanController:
    """
    Owns the scan lifecycle and feeds discoveries into the registry.

    The radio scan is session-bounded; while auto-restart is on, every
    platform stop notification re-issues the scan after a short delay so
    callers see one continuous scan.
    """

    def __init__(
        self,
        radio,
        registry: DeviceRegistry,
        logger: Optional[logging.Logger] = None,
        permissions_granted: bool = True,
        restart_delay_sec: float = DEFAULT_RESTART_DELAY_SEC
    ):
        self.radio = radio
        self.registry = registry
        self.logger = logger or get_logger()
        self.permissions_granted = permissions_granted
        self.restart_delay_sec = restart_delay_sec

        self.state = ScanState.IDLE
        self.auto_restart = False
        self.last_error: Optional[str] = None
        self.restart_count = 0
        self._restart_task: Optional[asyncio.Task] = None
        self._restarting = False

        self.radio.attach(self._on_discovery, self._on_radio_stopped)

    @property
    def is_scanning(self) -> bool:
        return self.state is ScanState.SCANNING

    async def start(self) -> bool:
        """Start scanning with a fresh registry. Returns whether scanning is on."""
        if self.state is ScanState.SCANNING:
            self.logger.debug("Scan already running")
            return True

        await self._cancel_restart()

        if not self.permissions_granted:
            self.last_error = 'Bluetooth scan permission not granted'
            self.logger.warning(f"{ICON_WARNING} Cannot start scan: permission not granted")
            return False

        self.registry.clear()
        self.state = ScanState.SCANNING
        self.auto_restart = True
        self.last_error = None

        try:
            await self.radio.start()
        except Exception as e:
            self.state = ScanState.IDLE
            self.auto_restart = False
            self.last_error = str(e)
            self.logger.error(f"{ICON_ERROR} Failed to start BLE scan: {e}")
            return False

        self.logger.info(f"{ICON_SUCCESS} BLE scan started")
        return True

    async def stop(self) -> None:
        """Stop scanning and cancel any pending auto-restart."""
        self.auto_restart = False
        restarting = await self._cancel_restart()

        if self.state is ScanState.IDLE and not restarting:
            return

        try:
            await self.radio.stop()
            self.logger.info("BLE scan stopped")
        except Exception as e:
            self.last_error = str(e)
            self.logger.error(f"{ICON_ERROR} Error stopping BLE scan: {e}")
        finally:
            self.state = ScanState.IDLE

    async def close(self) -> None:
        """Stop scanning and release the radio listeners."""
        await self.stop()
        self.radio.detach()

    def _on_discovery(self, event: DiscoveryEvent) -> None:
        self.registry.upsert(event)
        self.logger.debug(
            f"{ICON_RECEIVE} BLE advertisement - Device: {event.address} ({event.name}), "
            f"RSSI: {event.rssi} dBm"
        )

    def _on_radio_stopped(self) -> None:
        self.state = ScanState.IDLE
        self.logger.debug(f"BLE scan stopped by platform, auto-restart: {self.auto_restart}")
        if not self.auto_restart:
            return
        if self._restart_task and not self._restart_task.done():
            return
        self._restart_task = asyncio.get_running_loop().create_task(self._restart_after_delay())

    async def _restart_after_delay(self) -> None:
        await asyncio.sleep(self.restart_delay_sec)
        if not self.auto_restart:
            return
        self._restarting = True
        try:
            await self.radio.start()
        except Exception as e:
            self.auto_restart = False
            self.state = ScanState.IDLE
            self.last_error = str(e)
            self.logger.error(f"{ICON_ERROR} Auto-restart scan error: {e}")
            return
        finally:
            self._restarting = False

        self.state = ScanState.SCANNING
        self.restart_count += 1
        self.logger.info(f"{ICON_INFO} BLE scan auto-restarted")

    async def _cancel_restart(self) -> bool:
        """Cancel a pending restart; returns True if it was already starting the radio."""
        task, self._restart_task = self._restart_task, None
        restarting = self._restarting
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
        return restarting


# ---------------------------------------------------------------------------
# Gateway forwarder
# ---------------------------------------------------------------------------

class GatewayError(Exception):
    """Raised by gateway publishers when a publish fails."""


@dataclass
class GatewayConfig:
    """Where and how often the filtered registry is forwarded."""
    transport: str = TRANSPORT_MQTT
    endpoint: Optional[str] = None
    broker: Optional[str] = None
    port: int = DEFAULT_MQTT_PORT
    topic: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    tls: bool = False
    interval_sec: int = DEFAULT_GATEWAY_INTERVAL_SEC
    connection_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'GatewayConfig':
        """Build and validate a config from a JSON document.

        Accepts the collector's provisioning payload (``broker``, ``port``,
        ``topic`` plus optional credentials) as well as HTTP configs.
        """
        if not isinstance(data, dict):
            raise ValueError("Gateway configuration must be a JSON object")

        transport = str(data.get('transport', TRANSPORT_HTTP if data.get('endpoint') else TRANSPORT_MQTT)).lower()
        if transport == TRANSPORT_MQTT:
            missing = [key for key in ('broker', 'topic') if not data.get(key)]
            if missing:
                raise ValueError(f"Gateway configuration missing required fields: {', '.join(missing)}")

        config = cls(
            transport=transport,
            endpoint=data.get('endpoint'),
            broker=data.get('broker'),
            port=data.get('port', DEFAULT_MQTT_PORT),
            topic=data.get('topic'),
            username=data.get('username') or None,
            password=data.get('password') or None,
            tls=data.get('tls', False),
            interval_sec=data.get('interval_sec', DEFAULT_GATEWAY_INTERVAL_SEC),
            connection_id=data.get('connection_id'),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ValueError if the configuration cannot be used."""
        if self.transport not in (TRANSPORT_HTTP, TRANSPORT_MQTT):
            raise ValueError(f"Unsupported gateway transport: {self.transport}")

        if isinstance(self.interval_sec, bool) or not isinstance(self.interval_sec, int) or self.interval_sec < 1:
            raise ValueError(f"Gateway interval_sec must be a positive integer, got: {self.interval_sec}")

        if self.transport == TRANSPORT_HTTP:
            if not self.endpoint or not isinstance(self.endpoint, str):
                raise ValueError("HTTP gateway requires an 'endpoint' URL")
            if not self.endpoint.startswith(('http://', 'https://')):
                raise ValueError(f"HTTP gateway endpoint must be an http(s) URL, got: {self.endpoint}")
            return

        if not self.broker or not isinstance(self.broker, str):
            raise ValueError("MQTT gateway requires a 'broker'")
        if not self.topic or not isinstance(self.topic, str):
            raise ValueError(f"MQTT topic must be a non-empty string, got: {self.topic}")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ValueError(f"MQTT port must be an integer in 1-65535, got: {self.port}")
        if not isinstance(self.tls, bool):
            raise ValueError(f"MQTT tls must be a boolean, got: {self.tls}")
        if self.connection_id is not None and not isinstance(self.connection_id, str):
            raise ValueError(f"MQTT connection_id must be a string, got: {self.connection_id}")


class GatewayState(Enum):
    DISABLED = 'disabled'
    AWAITING_CONNECTION = 'awaiting_connection'
    CONNECTED = 'connected'
    ERROR = 'error'


@dataclass
class GatewayStatus:
    """Observable forwarding state."""
    state: GatewayState = GatewayState.DISABLED
    last_publish: Optional[datetime] = None
    next_publish_in: Optional[int] = None
    error: Optional[str] = None


def serialize_devices(devices: Iterable[Device]) -> str:
    """JSON array published to the collector."""
    return json.dumps([device.to_gateway_dict() for device in devices], separators=(',', ':'))


class HTTPPublisher:
    """POSTs gateway payloads to an HTTP endpoint using httpx."""

    def __init__(
        self,
        endpoint: str,
        logger: logging.Logger,
        timeout: float = HTTP_TIMEOUT_SEC,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.endpoint = endpoint
        self.logger = logger
        self.timeout = timeout
        self.client = client
        self.last_error: Optional[str] = None

    async def connect(self) -> bool:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        self.logger.info(f"HTTP gateway ready: {self.endpoint}")
        return True

    async def publish(self, message: str) -> None:
        if self.client is None:
            raise GatewayError('HTTP client not started')
        try:
            response = await self.client.post(
                self.endpoint,
                content=message,
                headers={'Content-Type': 'application/json'}
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"HTTP request failed: {e}") from e

        if not response.is_success:
            raise GatewayError(f"HTTP {response.status_code} from {self.endpoint}")

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None


def _reason_code_value(rc) -> int:
    # paho-mqtt v2 passes ReasonCode objects
    try:
        return int(rc) if hasattr(rc, '__int__') else int(getattr(rc, 'value', rc))
    except (ValueError, TypeError):
        return -1


class MQTTPublisher:
    """Handles MQTT connection and publishing using paho-mqtt."""

    def __init__(
        self,
        broker: str,
        port: int,
        client_id: str,
        topic: str,
        logger: logging.Logger,
        username: Optional[str] = None,
        password: Optional[str] = None,
        tls: bool = False,
        qos: int = DEFAULT_QOS,
        keepalive: int = DEFAULT_KEEPALIVE,
        client_factory: Optional[Callable[..., mqtt.Client]] = None
    ):
        self.broker = broker
        self.port = port
        self.client_id = client_id
        self.topic = topic
        self.logger = logger
        self.username = username
        self.password = password
        self.tls = tls
        self.qos = qos
        self.keepalive = keepalive
        self._client_factory = client_factory or mqtt.Client

        self.connected = False
        self.client = None
        self.last_error: Optional[str] = None
        self.on_connection_lost: Optional[Callable[[str], None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connection_event: Optional[asyncio.Event] = None

    def _call_in_loop(self, func, *args) -> None:
        # paho callbacks run on its network thread
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(func, *args)

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        """Callback when connection is established."""
        rc_value = _reason_code_value(rc)
        if rc_value == 0:
            self.connected = True
            self.last_error = None
            if self._connection_event is not None:
                self._call_in_loop(self._connection_event.set)
            self.logger.info(f"{ICON_SUCCESS} Connected to MQTT broker: {self.broker}:{self.port}")
        else:
            self.connected = False
            self.last_error = f"MQTT connection refused: {rc}"
            self.logger.error(f"{ICON_ERROR} MQTT connection failed: {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        """Callback when connection is lost."""
        self.connected = False
        if _reason_code_value(rc) != 0:
            self.last_error = 'MQTT disconnected'
            self.logger.warning(f"{ICON_WARNING} Connection to MQTT broker lost (rc={rc})")
            if self.on_connection_lost is not None:
                self._call_in_loop(self.on_connection_lost, self.last_error)
        else:
            self.logger.info("Disconnected from MQTT broker")

    def _on_publish(self, client, userdata, mid, rc=None, properties=None):
        self.logger.debug(f"Message published successfully (mid={mid})")

    async def connect(self) -> bool:
        """Establish connection to MQTT broker."""
        self._loop = asyncio.get_running_loop()
        self._connection_event = asyncio.Event()
        try:
            self.logger.info(f"Connecting to MQTT broker: {self.broker}:{self.port}")

            self.client = self._client_factory(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.client_id,
                clean_session=True
            )
            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            self.client.on_publish = self._on_publish

            if self.username:
                self.client.username_pw_set(self.username, self.password)
                self.logger.info(f"Using authentication for user: {self.username}")
            if self.tls:
                self.client.tls_set()

            self.client.connect_async(self.broker, self.port, keepalive=self.keepalive)
            self.client.loop_start()

            try:
                await asyncio.wait_for(self._connection_event.wait(), timeout=CONNECTION_TIMEOUT_SEC)
                return True
            except asyncio.TimeoutError:
                self.last_error = self.last_error or f"MQTT connection timeout after {CONNECTION_TIMEOUT_SEC}s"
                self.logger.error(f"{ICON_ERROR} {self.last_error}")
                return False

        except Exception as e:
            self.last_error = f"MQTT failed: {e}"
            self.logger.error(f"{ICON_ERROR} Failed to connect to MQTT broker: {e}")
            return False

    async def publish(self, message: str) -> None:
        """Publish message to MQTT topic at QoS 1, not retained."""
        if not self.client or not self.connected:
            raise GatewayError('MQTT not connected')

        result = self.client.publish(topic=self.topic, payload=message, qos=self.qos, retain=False)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise GatewayError(f"MQTT publish failed: {mqtt.error_string(result.rc)}")

        self.logger.debug(
            f"MQTT publish queued - Topic: {self.topic}, QoS: {self.qos}, "
            f"Payload length: {len(message)} bytes"
        )

    async def close(self) -> None:
        """Disconnect from MQTT broker."""
        self.on_connection_lost = None
        if self.client:
            try:
                self.logger.info("Disconnecting from MQTT broker")
                self.client.disconnect()
                self.client.loop_stop()
            except Exception as e:
                self.logger.error(f"{ICON_ERROR} Error during disconnect: {e}")
            finally:
                self.connected = False
                self.client = None


def create_publisher(config: GatewayConfig, logger: logging.Logger):
    """Build the publisher for ``config.transport``."""
    if config.transport == TRANSPORT_HTTP:
        return HTTPPublisher(endpoint=config.endpoint, logger=logger)

    prefix = config.connection_id or DEFAULT_CLIENT_ID_PREFIX
    client_id = f"{prefix}_{int(time.time() * 1000)}"[-MAX_CLIENT_ID_LENGTH:]
    return MQTTPublisher(
        broker=config.broker,
        port=config.port,
        client_id=client_id,
        topic=config.topic,
        logger=logger,
        username=config.username,
        password=config.password,
        tls=config.tls,
    )


class GatewayForwarder:
    """
    Publishes the filtered registry to a remote collector on a timer.

    Failures are recorded in ``status`` and retried on the next tick; the
    forwarder never reconnects on its own, re-enabling with a config does.
    """

    def __init__(
        self,
        snapshot_provider: Callable[[], Sequence[Device]],
        logger: Optional[logging.Logger] = None,
        publisher_factory: Callable[[GatewayConfig, logging.Logger], object] = create_publisher
    ):
        self._snapshot_provider = snapshot_provider
        self.logger = logger or get_logger()
        self._publisher_factory = publisher_factory

        self.status = GatewayStatus()
        self.config: Optional[GatewayConfig] = None
        self.stats = {
            'publishes': 0,
            'publish_errors': 0,
            'devices_sent': 0,
        }
        self._publisher = None
        self._publish_task: Optional[asyncio.Task] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._publisher is not None

    async def enable(self, config: GatewayConfig) -> None:
        """Connect, publish once and arm the publish timer."""
        config.validate()
        if self.enabled:
            await self.disable()

        self.config = config
        publisher = self._publisher_factory(config, self.logger)
        self._publisher = publisher
        if hasattr(publisher, 'on_connection_lost'):
            publisher.on_connection_lost = self._on_connection_lost
        self.status = GatewayStatus(state=GatewayState.AWAITING_CONNECTION)
        self.logger.info(f"{ICON_INFO} Gateway forwarding enabled ({config.transport}, every {config.interval_sec}s)")

        connected = await publisher.connect()
        if publisher is not self._publisher:
            return
        if connected:
            await self.publish_once()
            if publisher is not self._publisher:
                return
        else:
            self._set_error(publisher.last_error or 'connection failed')

        self.status.next_publish_in = config.interval_sec
        loop = asyncio.get_running_loop()
        self._publish_task = loop.create_task(self._publish_loop(config.interval_sec))
        self._countdown_task = loop.create_task(self._countdown_loop(config.interval_sec))

    async def disable(self) -> None:
        """Cancel timers and close the transport; in-flight publishes may finish."""
        for task in (self._publish_task, self._countdown_task):
            if task is not None:
                task.cancel()
        self._publish_task = None
        self._countdown_task = None

        publisher, self._publisher = self._publisher, None
        self.status = GatewayStatus(state=GatewayState.DISABLED)
        if publisher is None:
            return

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        await publisher.close()
        self.logger.info("Gateway forwarding disabled")

    async def publish_once(self) -> bool:
        """Serialize the current snapshot and send it through the transport."""
        publisher = self._publisher
        if publisher is None:
            return False

        devices = list(self._snapshot_provider())
        payload = serialize_devices(devices)
        self.logger.debug(f"{ICON_PUBLISH} Publishing {len(devices)} device(s), {len(payload)} bytes")

        try:
            await publisher.publish(payload)
        except Exception as e:
            if publisher is not self._publisher:
                return False
            self.stats['publish_errors'] += 1
            self._set_error(str(e))
            self.logger.warning(f"{ICON_ERROR} Gateway publish failed: {e}")
            return False

        if publisher is not self._publisher:
            return True
        self.stats['publishes'] += 1
        self.stats['devices_sent'] += len(devices)
        self.status.state = GatewayState.CONNECTED
        self.status.error = None
        self.status.last_publish = datetime.now(timezone.utc)
        self.logger.info(f"{ICON_SUCCESS} Published {len(devices)} device(s)")
        return True

    def _set_error(self, message: str) -> None:
        self.status.state = GatewayState.ERROR
        self.status.error = message

    def _on_connection_lost(self, message: str) -> None:
        if self._publisher is None:
            return
        self._set_error(message)

    def _spawn_publish(self) -> None:
        task = asyncio.get_running_loop().create_task(self.publish_once())
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _publish_loop(self, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            self._spawn_publish()

    async def _countdown_loop(self, interval: int) -> None:
        while True:
            await asyncio.sleep(COUNTDOWN_TICK_SEC)
            remaining = self.status.next_publish_in
            if remaining is None or remaining <= 1:
                self.status.next_publish_in = interval
            else:
                self.status.next_publish_in = remaining - 1


# ---------------------------------------------------------------------------
# Scan session
# ---------------------------------------------------------------------------

class ScanSession:
    """
    Wires registry, scan controller, eviction sweep and gateway forwarder.

    ``close()`` is the single teardown point: it stops the scan, cancels the
    sweep, disables forwarding and detaches from the radio.
    """

    def __init__(
        self,
        radio,
        criteria: Optional[FilterCriteria] = None,
        sort_key: SortKey = SortKey.INSERTION,
        gateway_config: Optional[GatewayConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        eviction_window_sec: float = DEFAULT_EVICTION_WINDOW_SEC,
        eviction_interval_sec: float = DEFAULT_EVICTION_INTERVAL_SEC,
        permissions_granted: bool = True,
        logger: Optional[logging.Logger] = None,
        publisher_factory: Callable[[GatewayConfig, logging.Logger], object] = create_publisher
    ):
        self.logger = logger or get_logger()
        self.criteria = criteria or FilterCriteria()
        self.sort_key = sort_key
        self.gateway_config = gateway_config
        self.eviction_window_sec = eviction_window_sec
        self.eviction_interval_sec = eviction_interval_sec

        self.registry = DeviceRegistry(clock=clock, logger=self.logger)
        self.controller = ScanController(
            radio,
            self.registry,
            logger=self.logger,
            permissions_granted=permissions_granted
        )
        self.forwarder = GatewayForwarder(self.view, logger=self.logger, publisher_factory=publisher_factory)
        self._eviction_task: Optional[asyncio.Task] = None

    def view(self) -> List[Device]:
        """Filtered and sorted snapshot of the registry."""
        return filter_and_sort(self.registry.snapshot(), self.criteria, self.sort_key)

    async def start(self) -> bool:
        if self._eviction_task is None:
            self._eviction_task = asyncio.get_running_loop().create_task(self._eviction_loop())
        started = await self.controller.start()
        if started and self.gateway_config and not self.forwarder.enabled:
            await self.forwarder.enable(self.gateway_config)
        return started

    async def stop(self) -> None:
        await self.controller.stop()

    async def close(self) -> None:
        await self.controller.close()
        if self._eviction_task is not None:
            self._eviction_task.cancel()
            self._eviction_task = None
        await self.forwarder.disable()

    async def __aenter__(self) -> 'ScanSession':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def toggle_favorite(self, address: str) -> Optional[bool]:
        return self.registry.toggle_favorite(address)

    def clear(self) -> None:
        self.registry.clear()

    def apply_preset(self, preset_name: str) -> None:
        self.criteria = apply_preset(self.criteria, preset_name)
        self.logger.info(f"Applied preset: {preset_name}")

    def clear_filters(self) -> None:
        self.criteria = FilterCriteria()
        self.logger.info("All filters cleared")

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self.eviction_interval_sec)
            self.registry.evict_stale(window=self.eviction_window_sec)


def format_device_line(device: Device) -> str:
    favorite = '★ ' if device.favorite else ''
    return f"{favorite}{device.address} {device.display_name} {device.rssi} dBm"


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def build_filter_criteria(filters: dict) -> FilterCriteria:
    """Create FilterCriteria from the ``filters`` config section."""
    criteria = FilterCriteria(
        rssi_floor=filters.get('rssi_floor', DEFAULT_RSSI_FLOOR),
        name=filters.get('name', ''),
        address=filters.get('address', ''),
        named_only=filters.get('named_only', False),
        service_uuids=filters.get('service_uuids', ''),
        company_id=filters.get('company_id', ''),
        raw_byte_pattern=filters.get('raw_byte_pattern', ''),
    )
    if filters.get('preset'):
        criteria = apply_preset(criteria, filters['preset'])
    return criteria


class BLEScanGateway:
    """Main application: scans, logs the filtered view and forwards it."""

    def __init__(
        self,
        config: dict,
        logger: logging.Logger,
        radio=None
    ):
        self.config = config
        self.logger = logger

        scan_config = config.get('scan', {})
        gateway_section = config.get('gateway', {})
        gateway_config = None
        if gateway_section.get('enabled', False):
            gateway_config = GatewayConfig.from_dict(gateway_section)

        self.status_interval_sec = config.get('status_interval_sec', DEFAULT_STATUS_INTERVAL_SEC)
        self.radio = radio or BleakRadio(
            scan_duration_sec=scan_config.get('duration_sec', DEFAULT_SCAN_DURATION_SEC),
            adapter=scan_config.get('adapter'),
            logger=logger
        )
        self.session = ScanSession(
            self.radio,
            criteria=build_filter_criteria(config.get('filters', {})),
            sort_key=parse_sort_key(config.get('sort_by', SortKey.INSERTION.value)),
            gateway_config=gateway_config,
            eviction_window_sec=scan_config.get('eviction_window_sec', DEFAULT_EVICTION_WINDOW_SEC),
            eviction_interval_sec=scan_config.get('eviction_interval_sec', DEFAULT_EVICTION_INTERVAL_SEC),
            logger=logger
        )
        self.running = False

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, shutting down gracefully...")
            self.running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def log_status(self) -> None:
        devices = self.session.view()
        gateway = self.session.forwarder.status
        self.logger.info(
            f"{ICON_INFO} Devices: {len(devices)} shown / {len(self.session.registry)} seen, "
            f"filters active: {active_filter_count(self.session.criteria)}, "
            f"scan: {self.session.controller.state.value}, gateway: {gateway.state.value}"
            + (f" ({gateway.error})" if gateway.error else "")
        )
        for device in devices:
            self.logger.debug(f"  {format_device_line(device)}")
            for line in describe_advertising(device.advertising):
                self.logger.debug(f"    {line}")

    async def run(self) -> None:
        """Run the scan loop until a shutdown signal arrives."""
        self.logger.info("Starting BLE Scan Gateway")
        self._setup_signal_handlers()

        if not await self.session.start():
            self.logger.error(f"{ICON_ERROR} Could not start scanning: {self.session.controller.last_error}")
            await self.session.close()
            return

        self.running = True
        last_status_time = time.monotonic()
        try:
            while self.running:
                await asyncio.sleep(1.0)
                now = time.monotonic()
                if now - last_status_time >= self.status_interval_sec:
                    self.log_status()
                    last_status_time = now
        except Exception as e:
            self.logger.error(f"{ICON_ERROR} Error in scanning loop: {e}", exc_info=True)
        finally:
            await self.session.close()
            self.logger.info("Gateway stopped")
            self.logger.info(f"Final stats: {self.session.forwarder.stats}")


def _require_positive(section: dict, key: str, name: str) -> None:
    if key not in section:
        return
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{name} must be a positive number, got: {value}")


def load_config(config_path: str) -> dict:
    """Load and validate configuration from JSON file."""
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except FileNotFoundError as e:
        raise FileNotFoundError(f"Configuration file not found: {config_path}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in configuration file: {e}") from e

    if not isinstance(config, dict):
        raise ValueError("Configuration file must contain a JSON object")

    scan = config.get('scan', {})
    if not isinstance(scan, dict):
        raise ValueError("'scan' section must be an object")
    _require_positive(scan, 'duration_sec', 'scan.duration_sec')
    _require_positive(scan, 'eviction_window_sec', 'scan.eviction_window_sec')
    _require_positive(scan, 'eviction_interval_sec', 'scan.eviction_interval_sec')
    _require_positive(config, 'status_interval_sec', 'status_interval_sec')

    filters = config.get('filters', {})
    if not isinstance(filters, dict):
        raise ValueError("'filters' section must be an object")
    if 'rssi_floor' in filters:
        floor = filters['rssi_floor']
        if isinstance(floor, bool) or not isinstance(floor, int) or not RSSI_FLOOR_RANGE[0] <= floor <= RSSI_FLOOR_RANGE[1]:
            raise ValueError(f"filters.rssi_floor must be an integer dBm value, got: {floor}")
    for key in ('name', 'address', 'service_uuids', 'company_id', 'raw_byte_pattern', 'preset'):
        if key in filters and not isinstance(filters[key], str):
            raise ValueError(f"filters.{key} must be a string, got: {filters[key]}")
    if 'named_only' in filters and not isinstance(filters['named_only'], bool):
        raise ValueError(f"filters.named_only must be a boolean, got: {filters['named_only']}")
    if filters.get('preset'):
        apply_preset(FilterCriteria(), filters['preset'])

    if 'sort_by' in config:
        parse_sort_key(str(config['sort_by']))

    gateway = config.get('gateway', {})
    if not isinstance(gateway, dict):
        raise ValueError("'gateway' section must be an object")
    if gateway.get('enabled', False):
        GatewayConfig.from_dict(gateway)

    return config


def setup_logging(log_level: str = 'WARNING') -> logging.Logger:
    """Configure logging with appropriate level.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    logger = get_logger()

    numeric_level = getattr(logging, log_level.upper(), logging.WARNING)
    logger.setLevel(numeric_level)

    handler = logging.StreamHandler()
    handler.setLevel(numeric_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    return logger


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='BLE scanner with device registry, filters and HTTP/MQTT forwarding',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with a config file (WARNING level)
  %(prog)s -c config.json

  # Strongest devices first, iBeacons only, with device details
  %(prog)s -c config.json --sort rssi --preset ibeacon --log-level DEBUG

  # Scan locally without forwarding
  %(prog)s -c config.json --no-gateway

Configuration file format: See config.example.json
        """
    )

    parser.add_argument(
        '-c', '--config',
        required=True,
        help='Path to configuration JSON file'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=DEFAULT_LOG_LEVEL,
        help=f'Set logging level (default: {DEFAULT_LOG_LEVEL})'
    )

    parser.add_argument(
        '--sort',
        choices=[key.value for key in SortKey],
        help='Override sort order of the device view'
    )

    parser.add_argument(
        '--rssi-floor',
        type=int,
        help='Override minimum RSSI in dBm'
    )

    parser.add_argument(
        '--preset',
        help=f"Apply a filter preset ({', '.join(p.name for p in FILTER_PRESETS.values())})"
    )

    parser.add_argument(
        '--publish-interval',
        type=int,
        help='Override gateway publish interval in seconds'
    )

    parser.add_argument(
        '--no-gateway',
        action='store_true',
        help='Disable forwarding even if enabled in the config'
    )

    args = parser.parse_args()

    logger = setup_logging(log_level=args.log_level)

    try:
        logger.info(f"Loading configuration from: {args.config}")
        config = load_config(args.config)

        # Apply command-line overrides
        filters = config.setdefault('filters', {})
        if args.sort:
            config['sort_by'] = args.sort
        if args.rssi_floor is not None:
            filters['rssi_floor'] = args.rssi_floor
        if args.preset:
            filters['preset'] = args.preset
        gateway = config.setdefault('gateway', {})
        if args.publish_interval is not None:
            gateway['interval_sec'] = args.publish_interval
        if args.no_gateway:
            gateway['enabled'] = False

        app = BLEScanGateway(config, logger)
        asyncio.run(app.run())

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=(args.log_level == 'DEBUG'))
        sys.exit(1)


if __name__ == '__main__':
    main()
