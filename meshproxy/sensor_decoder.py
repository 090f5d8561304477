"""Decoder for Sensor Status message parameters.

A Sensor Status payload is a run of concatenated property entries. Each entry is
either a standard Marshalled Property ID (Format A or Format B) followed by its
raw value, or the 4-byte vendor encoding some firmware uses for ambient
temperature. Only Present Ambient Temperature (0x004F) yields readings; every other
entry is parsed just far enough to step over it.
"""

import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Union

from meshproxy.interfaces.ble.exceptions import ErrorKind
from meshproxy.interfaces.ble.utils import hexstr

logger = logging.getLogger(__name__)

PRESENT_AMBIENT_TEMPERATURE = 0x004F

VENDOR_MARKER_MASK = 0xFE
VENDOR_MARKER = 0x02
VENDOR_ENTRY_SIZE = 4

FORMAT_A_LENGTH_ONE = 0xF
FORMAT_B_LENGTH_ONE = 0x7F

Buffer = Union[bytes, bytearray, memoryview]


class PropertyFormat(Enum):
    A = "A"
    B = "B"
    VENDOR_CUSTOM = "vendor_custom"


@dataclass(frozen=True)
class SensorProperty:
    """Location of one property value inside a Sensor Status payload."""

    property_id: int
    fmt: PropertyFormat
    length: int
    value_offset: int


@dataclass(frozen=True)
class SensorReading:
    source_address: int
    property_id: int
    value: float


def _vendor_property(data: bytes, offset: int) -> Optional[SensorProperty]:
    """Return the vendor entry at ``offset`` if it carries ambient temperature."""
    lead = data[offset]
    if (lead & VENDOR_MARKER_MASK) != VENDOR_MARKER or offset + 3 >= len(data):
        return None
    property_id = ((lead & 0x01) << 10) | (data[offset + 1] << 2) | (data[offset + 2] >> 6)
    if property_id != PRESENT_AMBIENT_TEMPERATURE:
        # 0x02/0x03 are also valid Format A headers
        return None
    return SensorProperty(property_id, PropertyFormat.VENDOR_CUSTOM, 2, offset + 2)


def iter_sensor_properties(data: Optional[Buffer]) -> Iterator[SensorProperty]:
    """
    Walk the property entries of a Sensor Status payload, left to right.

    Stops quietly at the first entry whose header or value would run past the end
    of the buffer. Never raises.
    """
    if not data:
        return
    data = bytes(data)
    size = len(data)
    offset = 0
    while offset < size:
        vendor = _vendor_property(data, offset)
        if vendor is not None:
            yield vendor
            offset += VENDOR_ENTRY_SIZE
            continue

        lead = data[offset]
        if lead >> 7 == 0:
            if offset + 1 >= size:
                logger.debug(
                    "%s: truncated Format A header at offset %d",
                    ErrorKind.MALFORMED_TRAILING.value,
                    offset,
                )
                return
            code = (lead >> 3) & 0x0F
            length = 1 if code == FORMAT_A_LENGTH_ONE else code + 1
            prop = SensorProperty(
                ((lead & 0x07) << 8) | data[offset + 1], PropertyFormat.A, length, offset + 2
            )
        else:
            if offset + 2 >= size:
                logger.debug(
                    "%s: truncated Format B header at offset %d",
                    ErrorKind.MALFORMED_TRAILING.value,
                    offset,
                )
                return
            code = lead & 0x7F
            length = 1 if code == FORMAT_B_LENGTH_ONE else code + 1
            prop = SensorProperty(
                data[offset + 1] | (data[offset + 2] << 8), PropertyFormat.B, length, offset + 3
            )

        if prop.value_offset + prop.length > size:
            logger.debug(
                "%s: property 0x%04X wants %d bytes at offset %d, only %d left",
                ErrorKind.MALFORMED_TRAILING.value,
                prop.property_id,
                prop.length,
                prop.value_offset,
                size - prop.value_offset,
            )
            return
        yield prop
        offset = prop.value_offset + prop.length


def _temperature(data: bytes, prop: SensorProperty) -> Optional[float]:
    start = prop.value_offset
    if prop.fmt is PropertyFormat.VENDOR_CUSTOM:
        raw = ((data[start] & 0x3F) << 2) | (data[start + 1] >> 6)
        return struct.unpack("<b", bytes([raw]))[0] * 0.5
    if prop.length == 1:
        return struct.unpack_from("<b", data, start)[0] * 0.5
    if prop.length == 2:
        return struct.unpack_from("<h", data, start)[0] * 0.01
    return None


def decode_sensor_status(
    data: Optional[Buffer], source_address: int = 0
) -> Iterator[SensorReading]:
    """
    Lazily decode the readings in a Sensor Status payload.

    Parameters:
        data: Raw Sensor Status parameters, possibly empty or truncated.
        source_address (int): Unicast address of the reporting element, copied into each reading.

    Yields:
        SensorReading: One per ambient temperature entry with a supported value length.
    """
    if not data:
        return
    data = bytes(data)
    logger.debug("Parsing Sensor Status from 0x%04X: %s", source_address, hexstr(data))
    for prop in iter_sensor_properties(data):
        if prop.property_id != PRESENT_AMBIENT_TEMPERATURE:
            continue
        value = _temperature(data, prop)
        if value is None:
            logger.debug(
                "%s: ambient temperature with unsupported length %d",
                ErrorKind.DECODE_SKIPPED.value,
                prop.length,
            )
            continue
        yield SensorReading(source_address, prop.property_id, value)


class SensorTelemetryDecoder:
    """Stateless wrapper bundling the decoder functions for injection into MeshInterface."""

    def decode(self, data: Optional[Buffer], source_address: int = 0) -> Iterator[SensorReading]:
        return decode_sensor_status(data, source_address)

    def iter_properties(self, data: Optional[Buffer]) -> Iterator[SensorProperty]:
        return iter_sensor_properties(data)


__all__ = [
    "PRESENT_AMBIENT_TEMPERATURE",
    "PropertyFormat",
    "SensorProperty",
    "SensorReading",
    "SensorTelemetryDecoder",
    "decode_sensor_status",
    "iter_sensor_properties",
]
