from __future__ import annotations

from types import SimpleNamespace

import pytest

from ble_scan_gateway import (
    AdvertisingPayload,
    Device,
    build_raw_advertisement,
    bytes_to_hex,
    bytes_to_hex_with_offsets,
    decode_advertising,
    decode_company_id,
    decode_manufacturer,
    decode_manufacturer_data,
    decode_service_uuid,
    describe_advertising,
    discovery_from_bleak,
    encode_manufacturer_record,
    matches_byte_pattern,
    normalize_tx_power,
    parse_ad_structures,
)

BEACON_UUID = bytes.fromhex("e2c56db5dffb48d2b060d0f5a71096e0")
IBEACON_PAYLOAD = bytes([0x02, 0x15]) + BEACON_UUID + bytes([0x00, 0x01, 0x00, 0x02, 0xC5])
IBEACON_MANUFACTURER_DATA = bytes([0x02, 0x01, 0x06, 0x1A, 0xFF, 0x4C, 0x00]) + IBEACON_PAYLOAD
BATTERY_UUID = "0000180f-0000-1000-8000-00805f9b34fb"
EDDYSTONE_UUID = "0000feaa-0000-1000-8000-00805f9b34fb"


def test_hex_rendering_trims_padding() -> None:
    assert bytes_to_hex(b"\x01\xab\x00\x00") == "01 AB"
    assert bytes_to_hex_with_offsets(b"\x01\xab\x00\x00") == "[0]=01 [1]=AB"
    assert bytes_to_hex(b"\x00\x00") == ""
    assert bytes_to_hex(None) == ""


def test_tx_power_normalization() -> None:
    assert normalize_tx_power(252) == -4
    assert normalize_tx_power(20) == 20
    assert normalize_tx_power(-30) == -30
    assert normalize_tx_power(21) is None
    assert normalize_tx_power(200) is None
    assert normalize_tx_power(None) is None


def test_ibeacon_decode() -> None:
    assert decode_company_id(IBEACON_MANUFACTURER_DATA) == 0x004C

    info = decode_manufacturer(IBEACON_MANUFACTURER_DATA)
    assert info is not None
    assert info.company_name == "Apple Inc."
    assert info.type_name == "iBeacon"
    assert info.ibeacon.uuid == "e2c56db5-dffb-48d2-b060-d0f5a71096e0"
    assert info.ibeacon.major == 1
    assert info.ibeacon.minor == 2
    assert info.ibeacon.tx_power == -59


def test_ibeacon_decoded_lines() -> None:
    lines = decode_manufacturer_data(IBEACON_MANUFACTURER_DATA)
    assert lines[:7] == [
        "Company ID: 0x004C",
        "Manufacturer: Apple Inc.",
        "Type: iBeacon",
        "UUID: e2c56db5-dffb-48d2-b060-d0f5a71096e0",
        "Major: 1",
        "Minor: 2",
        "TX Power: -59 dBm",
    ]
    assert lines[7].startswith("Data (23 bytes): 02 15 E2 C5")


def test_apple_findmy_subtype() -> None:
    data = encode_manufacturer_record(0x004C, bytes([0x12, 0x19, 0x00]))
    info = decode_manufacturer(data)
    assert info.type_name == "FindMy network"
    assert info.ibeacon is None
    assert decode_manufacturer_data(data)[-1] == "Data (2 bytes): 12 19"


def test_short_apple_ibeacon_is_not_decoded() -> None:
    data = encode_manufacturer_record(0x004C, bytes([0x02, 0x15, 0x01, 0x02]))
    info = decode_manufacturer(data)
    assert info.apple_type == 0x02
    assert info.ibeacon is None
    assert "Type: iBeacon" not in decode_manufacturer_data(data)


def test_unknown_company_reported_numerically() -> None:
    lines = decode_manufacturer_data(encode_manufacturer_record(0x1234, b"\x01"))
    assert lines[0] == "Company ID: 0x1234"
    assert not any(line.startswith("Manufacturer:") for line in lines)


def test_short_manufacturer_data() -> None:
    assert decode_company_id(b"\x02\x01\x06\x03\xff\x4c") is None
    assert decode_manufacturer(b"\x4c\x00") is None
    assert decode_manufacturer_data(None) == []


def test_service_uuid_names() -> None:
    assert decode_service_uuid(BATTERY_UUID) == "Battery Service"
    assert decode_service_uuid("180D") == "Heart Rate"
    assert decode_service_uuid(EDDYSTONE_UUID) == "Eddystone"

    vendor = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
    assert decode_service_uuid(vendor) == vendor
    unknown = "0000ffff-0000-1000-8000-00805f9b34fb"
    assert decode_service_uuid(unknown) == unknown


def test_ad_structures_stop_at_truncated_record() -> None:
    raw = bytes.fromhex("020106" "0509" + b"Te".hex())
    assert parse_ad_structures(raw) == [(0x01, b"\x06")]


def test_decode_raw_advertisement() -> None:
    raw = bytes.fromhex("020106" "0509" + b"Test".hex() + "020afc" "03030f18" "05ff59000102" "0000")
    payload = decode_advertising(raw)

    assert payload.local_name == "Test"
    assert payload.tx_power_level == -4
    assert payload.service_uuids == (BATTERY_UUID,)
    assert payload.manufacturer_data == encode_manufacturer_record(0x0059, b"\x01\x02")
    assert decode_company_id(payload.manufacturer_data) == 0x0059
    # raw bytes are kept untrimmed so pattern offsets stay stable
    assert payload.raw_data == raw


def test_malformed_field_does_not_stop_decoding() -> None:
    raw = bytes.fromhex("020a64" "0409" + b"abc".hex() + "0309ff")
    payload = decode_advertising(raw)
    assert payload.tx_power_level is None
    assert payload.local_name == "abc"


def test_payload_dict_trims_padding() -> None:
    payload = AdvertisingPayload(
        local_name="X",
        tx_power_level=-4,
        manufacturer_data=b"\x01\x02\x00",
        service_uuids=("feaa",),
        service_data={"feaa": b"\x10\x00\x00"},
        raw_data=b"\x02\x01\x06\x00",
    )
    assert payload.to_dict() == {
        "localName": "X",
        "txPowerLevel": -4,
        "manufacturerData": [1, 2],
        "serviceUUIDs": ["feaa"],
        "serviceData": {"feaa": [16]},
        "rawData": [2, 1, 6],
    }
    assert AdvertisingPayload().to_dict() == {}


def test_reconstructed_packet_keeps_company_id_offset() -> None:
    raw = build_raw_advertisement(None, None, {0x004C: IBEACON_PAYLOAD}, [], {})
    assert raw == IBEACON_MANUFACTURER_DATA
    assert decode_company_id(raw) == 0x004C
    assert matches_byte_pattern(raw, "4c000215")


def test_reconstructed_packet_round_trips_services() -> None:
    raw = build_raw_advertisement("Beacon", -4, {}, [EDDYSTONE_UUID], {EDDYSTONE_UUID: b"\x10\x00"})
    payload = decode_advertising(raw)
    assert payload.local_name == "Beacon"
    assert payload.tx_power_level == -4
    assert payload.service_uuids == (EDDYSTONE_UUID,)
    assert dict(payload.service_data) == {EDDYSTONE_UUID: b"\x10\x00"}


def test_discovery_from_bleak() -> None:
    device = SimpleNamespace(address="AA:BB:CC:DD:EE:FF", name=None)
    advertisement = SimpleNamespace(
        local_name="Beacon",
        rssi=-61,
        tx_power=None,
        manufacturer_data={0x004C: IBEACON_PAYLOAD},
        service_uuids=[EDDYSTONE_UUID],
        service_data={EDDYSTONE_UUID: b"\x10\x00"},
    )

    event = discovery_from_bleak(device, advertisement)

    assert event.address == "AA:BB:CC:DD:EE:FF"
    assert event.rssi == -61
    assert event.name == "Beacon"
    assert event.advertising.manufacturer_data == IBEACON_MANUFACTURER_DATA
    assert event.advertising.service_uuids == (EDDYSTONE_UUID,)
    assert event.advertising.raw_data[5:7] == b"\x4c\x00"
    assert decode_manufacturer(event.advertising.manufacturer_data).ibeacon.major == 1


def test_describe_advertising() -> None:
    raw = bytes.fromhex("020106" "0509" + b"Test".hex() + "020afc" "03030f18" "05ff59000102" "0000")
    lines = describe_advertising(decode_advertising(raw))

    assert "Local Name: Test" in lines
    assert "TX Power Level: -4 dBm" in lines
    assert "  Company ID: 0x0059" in lines
    assert "  Manufacturer: Nordic Semiconductor ASA" in lines
    assert f"  • Battery Service ({BATTERY_UUID})" in lines
    assert "Raw Advertisement: 22 bytes" in lines
    assert describe_advertising(AdvertisingPayload()) == []


def test_payload_is_hashable_and_read_only() -> None:
    source = {EDDYSTONE_UUID: b"\x10\x00"}
    payload = AdvertisingPayload(service_uuids=[EDDYSTONE_UUID], service_data=source)
    source[EDDYSTONE_UUID] = b"\xff"

    assert payload.service_uuids == (EDDYSTONE_UUID,)
    assert payload.service_data[EDDYSTONE_UUID] == b"\x10\x00"
    with pytest.raises(TypeError):
        payload.service_data[EDDYSTONE_UUID] = b""

    device = Device("AA:BB:CC:DD:EE:FF", None, -60, 0.0, 0.0, payload)
    assert hash(device) == hash(Device("AA:BB:CC:DD:EE:FF", None, -60, 0.0, 0.0, payload))
