"""Card delay profiles, interconnection options and PCI VPD parsing."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from ptpaddons.base import PtpProfile

log = logging.getLogger(__name__)

PCI_VPD_ID_STRING_TAG = 0x82
PCI_VPD_RO_TAG = 0x90
PCI_VPD_RW_TAG = 0x91
PCI_VPD_END_TAG = 0x78
PCI_VPD_BLOCK_DESCRIPTOR_LEN = 3
PCI_VPD_KEYWORD_LEN = 2

HARDWARE: dict[str, str] = {
    "E810-XXVDA4T": """
partType: E810-XXVDA4T
externalInputs: # This always goes from connector to pin
- connector: SMA1
  pin: SMA1
  delayPs: 7658
- connector: SMA2
  pin: SMA2/U.FL2
  delayPs: 7385
- connector: u.FL2
  pin: SMA2/U.FL2
  delayPs: 9795
externalOutputs:  # This always goes from pin to connector
- pin: REF-SMA1
  connector: u.FL1
  delayPs: 1274
- pin: REF-SMA1
  connector: SMA1
  delayPs: 1376
- pin: REF-SMA2/U.FL2
  connector: SMA2
  delayPs: 2908
gnssInput:
  connector: GNSS
  pin: GNSS-1PPS
  delayPs: 6999
""",
}


@dataclass
class InputDelay:
    """External delay in front of an input connector."""

    connector: str = ""
    delay_ps: int = 0


@dataclass
class InputPhaseDelays:
    """Interconnection description of one card."""

    id: str = ""
    part: str = ""
    input: InputDelay | None = None
    gnss_input: bool = False
    phase_output_connectors: list[str] = field(default_factory=list)
    upstream_port: str = ""


@dataclass
class InternalLink:
    """Link between a card connector and a DPLL pin, with its delay."""

    connector: str = ""
    pin: str = ""
    delay_ps: int = 0


@dataclass
class InternalDelays:
    """Internal delay profile of a card model."""

    part_type: str = ""
    external_inputs: list[InternalLink] = field(default_factory=list)
    external_outputs: list[InternalLink] = field(default_factory=list)
    gnss_input: InternalLink = field(default_factory=InternalLink)


@dataclass
class DelayCompensation:
    """Phase adjustment to apply to one DPLL pin."""

    delay_ps: int
    pin_label: str
    iface: str
    direction: str
    clock_id: str


@dataclass
class Vpd:
    """Selected fields of PCI Vital Product Data."""

    identifier_string_descriptor: str = ""
    part_number: str = ""
    serial_number: str = ""
    vendor_specific1: str = ""
    vendor_specific2: str = ""


def _field(data: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Look up ``key``, falling back to a case-insensitive match."""
    if key in data:
        return data[key]
    folded = key.casefold()
    for name, value in data.items():
        if isinstance(name, str) and name.casefold() == folded:
            return value
    return default


def _as_int(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} must be an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{what} must be an integer, got {value!r}")
    return int(value)


def _as_str(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{what} must be a string, got {value!r}")
    return value


def _parse_card(data: Mapping[str, Any]) -> InputPhaseDelays:
    if not isinstance(data, Mapping):
        raise ValueError(f"interconnection entry must be a mapping, got {data!r}")
    raw_input = _field(data, "inputPhaseDelay")
    card_input = None
    if raw_input is not None:
        if not isinstance(raw_input, Mapping):
            raise ValueError(f"inputPhaseDelay must be a mapping, got {raw_input!r}")
        card_input = InputDelay(
            connector=_as_str(_field(raw_input, "connector"), "connector"),
            delay_ps=_as_int(_field(raw_input, "delayPs", 0), "delayPs"),
        )
    outputs = _field(data, "phaseOutputConnectors") or []
    if not isinstance(outputs, list):
        raise ValueError(f"phaseOutputConnectors must be a list, got {outputs!r}")
    gnss = _field(data, "gnssInput", False)
    if not isinstance(gnss, bool):
        raise ValueError(f"gnssInput must be a boolean, got {gnss!r}")
    return InputPhaseDelays(
        id=_as_str(_field(data, "id"), "id"),
        part=_as_str(_field(data, "Part"), "Part"),
        input=card_input,
        gnss_input=gnss,
        phase_output_connectors=[_as_str(c, "connector") for c in outputs],
        upstream_port=_as_str(_field(data, "upstreamPort"), "upstreamPort"),
    )


def parse_input_phase_delays(data: Iterable[Mapping[str, Any]] | None) -> list[InputPhaseDelays]:
    """Decode the ``interconnections`` list of plugin options."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"interconnections must be a list, got {data!r}")
    return [_parse_card(entry) for entry in data]


def _parse_link(data: Mapping[str, Any] | None) -> InternalLink:
    data = data or {}
    return InternalLink(
        connector=str(data.get("connector", "")),
        pin=str(data.get("pin", "")),
        delay_ps=int(data.get("delayPs", 0)),
    )


def init_internal_delays(part: str) -> InternalDelays:
    """Return the internal delay profile of the card model ``part``."""
    try:
        text = HARDWARE[part]
    except KeyError:
        raise ValueError(f"can't find delays for {part}") from None
    data = yaml.safe_load(text) or {}
    return InternalDelays(
        part_type=str(data.get("partType", "")),
        external_inputs=[_parse_link(x) for x in data.get("externalInputs") or []],
        external_outputs=[_parse_link(x) for x in data.get("externalOutputs") or []],
        gnss_input=_parse_link(data.get("gnssInput")),
    )


def find_internal_link(links: Iterable[InternalLink], connector: str) -> InternalLink | None:
    """Return the first link whose connector matches, ignoring case."""
    wanted = connector.casefold()
    return next((link for link in links if link.connector.casefold() == wanted), None)


def add_clock_id(iface: str, profile: PtpProfile) -> str:
    """Return the DPLL clock ID recorded in the profile for ``iface``."""
    try:
        return profile.ptp_settings[f"clockId[{iface}]"]
    except KeyError:
        raise ValueError(
            f"plugin E810 error: can't find clock ID for interface {iface}"
            " - are all pins configured?"
        ) from None


def _decode(data: bytes) -> str:
    return data.decode("latin-1")


def _slice(data: bytes, start: int, end: int) -> bytes:
    if end > len(data):
        raise ValueError(f"truncated VPD data: need {end} bytes, have {len(data)}")
    return data[start:end]


def parse_vpd_block(block: bytes) -> dict[str, str]:
    """Return the part number, serial number and vendor keywords of a VPD block."""
    result: dict[str, str] = {}
    offset = 0
    while offset < len(block):
        keyword = _decode(_slice(block, offset, offset + PCI_VPD_KEYWORD_LEN))
        length = _slice(block, offset + PCI_VPD_KEYWORD_LEN, offset + PCI_VPD_KEYWORD_LEN + 1)[0]
        value = _slice(
            block,
            offset + PCI_VPD_KEYWORD_LEN + 1,
            offset + length + PCI_VPD_BLOCK_DESCRIPTOR_LEN,
        )
        if keyword.startswith("V") or keyword in ("PN", "SN"):
            result[keyword] = _decode(value)
        offset += length + PCI_VPD_BLOCK_DESCRIPTOR_LEN
    return result


def parse_vpd(data: bytes) -> Vpd:
    """Extract identifying product data from a PCI VPD image."""
    vpd = Vpd()
    offset = 0
    while offset < len(data):
        descriptor = _slice(data, offset, offset + PCI_VPD_BLOCK_DESCRIPTOR_LEN)
        tag = descriptor[0]
        (length,) = struct.unpack_from("<H", descriptor, 1)
        start = offset + PCI_VPD_BLOCK_DESCRIPTOR_LEN
        block = _slice(data, start, start + length)
        offset = start + length
        if tag == PCI_VPD_ID_STRING_TAG:
            vpd.identifier_string_descriptor = _decode(block)
        elif tag == PCI_VPD_RO_TAG:
            fields = parse_vpd_block(block)
            vpd.serial_number = fields.get("SN", vpd.serial_number)
            vpd.part_number = fields.get("PN", vpd.part_number)
            vpd.vendor_specific1 = fields.get("V1", vpd.vendor_specific1)
            vpd.vendor_specific2 = fields.get("V2", vpd.vendor_specific2)
        elif tag == PCI_VPD_END_TAG:
            break
    return vpd


def get_hardware_fingerprint(device: str) -> str:
    """Return the card identity: the last word of VPD vendor field V1."""
    path = Path(f"/sys/class/net/{device}/device/vpd")
    try:
        data = path.read_bytes()
    except OSError as exc:
        log.error("%s", exc)
        return ""
    words = parse_vpd(data).vendor_specific1.split()
    return words[-1] if words else ""