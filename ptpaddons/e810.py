"""Plugin for E810 network cards: pin setup, DPLL settings, clock chain and u-blox setup."""

from __future__ import annotations

import json
import logging
import struct
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from ptpaddons.base import HwConfig, Plugin, PluginError, PtpProfile
from ptpaddons.clockchain import (
    SYSFS_NET,
    ClockChain,
    ClockChainError,
    ClockChainType,
    DpllBackend,
    DpllError,
    PinInfo,
    send_delay_compensation,
)
from ptpaddons.delays import InputPhaseDelays, parse_input_phase_delays

log = logging.getLogger(__name__)

PLUGIN_NAME = "e810"
CLOCK_ID_STR = "clockId"
UBXTOOL = "/usr/local/bin/ubxtool"
BASH = "/usr/bin/bash"

PCI_EXT_CAP_ID_DSN = 3
PCI_CFG_SPACE_SIZE = 256
PCI_EXT_CAP_NEXT_OFFSET = 2
PCI_EXT_CAP_OFFSET_SHIFT = 4
PCI_EXT_CAP_DATA_OFFSET = 4

ENABLE_E810_PTP_CONFIG = """
#!/bin/bash
set -eu

ETH=$(grep -e 000e -e 000f /sys/class/net/*/device/subsystem_device | awk -F"/" '{print $5}')

for DEV in $ETH; do
  if [ -f /sys/class/net/$DEV/device/ptp/ptp*/pins/U.FL2 ]; then
    echo 0 2 > /sys/class/net/$DEV/device/ptp/ptp*/pins/U.FL2
    echo 0 1 > /sys/class/net/$DEV/device/ptp/ptp*/pins/U.FL1
    echo 0 2 > /sys/class/net/$DEV/device/ptp/ptp*/pins/SMA2
    echo 0 1 > /sys/class/net/$DEV/device/ptp/ptp*/pins/SMA1
  fi
done

echo "Disabled all SMA and U.FL Connections"
"""

Runner = Callable[[list[str]], str]


@dataclass
class E810UblxCmd:
    """Arguments for one ubxtool run, and whether its output is reported."""

    report_output: bool = False
    args: list[str] = field(default_factory=list)


@dataclass
class E810Opts:
    """Options of the e810 plugin as given in a profile."""

    enable_default_config: bool = False
    ublx_cmds: list[E810UblxCmd] = field(default_factory=list)
    device_pins: dict[str, dict[str, str]] = field(default_factory=dict)
    dpll_settings: dict[str, int] = field(default_factory=dict)
    phase_offset_pins: dict[str, dict[str, str]] = field(default_factory=dict)
    input_delays: list[InputPhaseDelays] | None = None


def _get(data: Mapping[str, Any], key: str, default: Any = None) -> Any:
    if key in data:
        return data[key]
    folded = key.casefold()
    for name, value in data.items():
        if isinstance(name, str) and name.casefold() == folded:
            return value
    return default


def _string_map(value: Any, what: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{what} must be a mapping, got {value!r}")
    result = {}
    for key, item in value.items():
        if not isinstance(item, str):
            raise ValueError(f"{what}[{key}] must be a string, got {item!r}")
        result[str(key)] = item
    return result


def _nested_string_map(value: Any, what: str) -> dict[str, dict[str, str]]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{what} must be a mapping, got {value!r}")
    return {str(k): _string_map(v, f"{what}[{k}]") for k, v in value.items()}


def _unsigned_map(value: Any, what: str) -> dict[str, int]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{what} must be a mapping, got {value!r}")
    result = {}
    for key, item in value.items():
        if isinstance(item, bool) or not isinstance(item, int) or item < 0:
            raise ValueError(f"{what}[{key}] must be an unsigned integer, got {item!r}")
        result[str(key)] = item
    return result


def _parse_ublx_cmd(data: Any) -> E810UblxCmd:
    if not isinstance(data, Mapping):
        raise ValueError(f"ublxCmds entry must be a mapping, got {data!r}")
    report = _get(data, "reportOutput", False)
    if not isinstance(report, bool):
        raise ValueError(f"reportOutput must be a boolean, got {report!r}")
    args = _get(data, "args") or []
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise ValueError(f"args must be a list of strings, got {args!r}")
    return E810UblxCmd(report_output=report, args=list(args))


def parse_e810_opts(data: Mapping[str, Any] | None) -> E810Opts:
    """Decode the e810 plugin options of a profile."""
    if data is None:
        return E810Opts()
    if not isinstance(data, Mapping):
        raise ValueError(f"e810 options must be a mapping, got {data!r}")
    enable = _get(data, "enableDefaultConfig", False)
    if not isinstance(enable, bool):
        raise ValueError(f"enableDefaultConfig must be a boolean, got {enable!r}")
    cmds = _get(data, "ublxCmds") or []
    if not isinstance(cmds, list):
        raise ValueError(f"ublxCmds must be a list, got {cmds!r}")
    interconnections = _get(data, "interconnections")
    return E810Opts(
        enable_default_config=enable,
        ublx_cmds=[_parse_ublx_cmd(c) for c in cmds],
        device_pins=_nested_string_map(_get(data, "pins"), "pins"),
        dpll_settings=_unsigned_map(_get(data, "settings"), "settings"),
        phase_offset_pins=_nested_string_map(_get(data, "phaseOffsetPins"), "phaseOffsetPins"),
        input_delays=(
            None if interconnections is None else parse_input_phase_delays(interconnections)
        ),
    )


def default_ublx_cmds() -> list[E810UblxCmd]:
    """The ubxtool commands always run after gpspipe starts."""
    return [
        E810UblxCmd(args=["-p", "CFG-MSG,1,34,1"]),  # NAV-CLOCK every second
        E810UblxCmd(args=["-p", "CFG-MSG,1,3,1"]),  # NAV-STATUS every second
        E810UblxCmd(args=["-p", "CFG-MSG,0xf0,0x02,0"]),  # no SA messages
        E810UblxCmd(args=["-p", "CFG-MSG,0xf0,0x03,0"]),  # no SV messages
        E810UblxCmd(args=["-z", "CFG-MSGOUT-NMEA_ID_VTG_I2C,0"]),
        E810UblxCmd(args=["-z", "CFG-MSGOUT-NMEA_ID_GST_I2C,0"]),
        E810UblxCmd(args=["-z", "CFG-MSGOUT-NMEA_ID_ZDA_I2C,0"]),
        E810UblxCmd(args=["-z", "CFG-MSGOUT-NMEA_ID_GBS_I2C,0"]),
        E810UblxCmd(args=["-p", "SAVE"]),  # save configuration to storage
    ]


def _unpack(fmt: str, data: bytes, offset: int) -> int:
    try:
        (value,) = struct.unpack_from(fmt, data, offset)
    except struct.error as exc:
        raise ValueError(f"truncated PCI config space at offset {offset}") from exc
    return value


def parse_clock_id(config: bytes) -> int:
    """Return the device serial number from the PCI extended capabilities."""
    offset = PCI_CFG_SPACE_SIZE
    seen: set[int] = set()
    while True:
        if offset < PCI_CFG_SPACE_SIZE or offset in seen:
            raise ValueError("can't find DSN capability")
        seen.add(offset)
        cap_id = _unpack("<H", config, offset)
        if cap_id == PCI_EXT_CAP_ID_DSN:
            break
        if cap_id == 0:
            raise ValueError("can't find DSN capability")
        header = _unpack("<H", config, offset + PCI_EXT_CAP_NEXT_OFFSET)
        offset = header >> PCI_EXT_CAP_OFFSET_SHIFT
    return _unpack("<Q", config, offset + PCI_EXT_CAP_DATA_OFFSET)


def _read_clock_id(root: Path | None, device: str) -> int:
    if root is None:
        return 0
    path = root / device / "device" / "config"
    try:
        config = path.read_bytes()
    except OSError as exc:
        log.error("%s", exc)
        return 0
    try:
        return parse_clock_id(config)
    except ValueError:
        log.error("can't find DSN for device %s", device)
        return 0


def get_clock_id(device: str) -> int:
    """Return the DPLL clock ID of ``device``, or 0 when it cannot be read."""
    return _read_clock_id(Path(SYSFS_NET), device)


def load_pins(path: Path | str) -> list[PinInfo]:
    """Load a list of DPLL pins from a JSON file."""
    data = json.loads(Path(path).read_text())
    if not isinstance(data, list):
        raise ValueError(f"pin file {path} must hold a list")
    return [PinInfo.from_dict(item) for item in data]


def _run_command(command: list[str]) -> str:
    try:
        result = subprocess.run(
            command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
        )
    except OSError as exc:
        log.error("failed to run %s: %s", command[0], exc)
        return ""
    return result.stdout.decode(errors="replace")


class E810Plugin(Plugin):
    """Configures E810 cards and their DPLL clock chain from profile options."""

    def __init__(
        self,
        backend: DpllBackend | None = None,
        *,
        sysfs_root: Path | str | None = SYSFS_NET,
        runner: Runner | None = None,
    ) -> None:
        super().__init__(PLUGIN_NAME)
        self.backend = backend
        self.sysfs_root = None if sysfs_root is None else Path(sysfs_root)
        self.runner: Runner = runner or _run_command
        self.hwplugins: list[str] = []
        self.clock_chain: ClockChain | None = None

    def _options(self, profile: PtpProfile) -> E810Opts:
        try:
            return parse_e810_opts(profile.plugins.get(self.name))
        except ValueError as exc:
            log.error("e810 failed to unmarshal opts: %s", exc)
            return E810Opts()

    def _write_device_pins(self, root: Path, device: str, pins: dict[str, str]) -> None:
        device_dir = root / device / "device" / "ptp"
        for pin, value in pins.items():
            try:
                phcs = sorted(device_dir.iterdir())
            except OSError as exc:
                log.error("e810 failed to read %s: %s", device_dir, exc)
                continue
            for phc in phcs:
                pin_path = phc / "pins" / pin
                log.info("echo %s > %s", value, pin_path)
                try:
                    pin_path.write_text(value)
                except OSError as exc:
                    log.error("e810 failed to write %s to %s: %s", value, pin_path, exc)

    def _init_clock_chain(
        self, input_delays: list[InputPhaseDelays], profile: PtpProfile, root: Path | None
    ) -> ClockChain:
        chain = ClockChain(backend=self.backend, sysfs_root=root)
        chain.get_live_dpll_pins_info()
        try:
            compensations = chain.resolve_interconnections(input_delays, profile)
        except (ClockChainError, ValueError) as exc:
            log.error("fail to get delay compensations, %s", exc)
            compensations = []
        try:
            send_delay_compensation(compensations, chain.dpll_pins, self.backend)
        except (ClockChainError, DpllError) as exc:
            log.error("fail to send delay compensations, %s", exc)
        chain.get_leading_card_sdp()
        if chain.type == ClockChainType.TBC:
            profile.ptp_settings["clockType"] = "T-BC"
            log.info("about to init TBC pins")
            try:
                chain.init_pins_tbc()
            except (ClockChainError, DpllError) as exc:
                raise ClockChainError(
                    f"failed to initialize pins for T-BC operation: {exc}"
                ) from exc
            log.info("about to enter TBC Normal mode")
            try:
                chain.enter_normal_tbc()
            except (ClockChainError, DpllError) as exc:
                raise ClockChainError(f"failed to enter T-BC normal mode: {exc}") from exc
        else:
            profile.ptp_settings["clockType"] = "T-GM"
            log.info("about to init TGM pins")
            chain.init_pins_tgm()
        return chain

    def on_ptp_config_change(self, profile: PtpProfile) -> None:
        log.info("calling onPTPConfigChange for e810 plugin")
        if self.name not in profile.plugins:
            return
        opts = self._options(profile)
        settings = profile.ptp_settings
        # A "unitTest" setting turns off every sysfs access for this profile.
        root = None if "unitTest" in settings else self.sysfs_root

        if opts.enable_default_config:
            log.info(self.runner([BASH, "-c", ENABLE_E810_PTP_CONFIG]))

        if root is not None:
            for device, pins in opts.device_pins.items():
                settings[f"{CLOCK_ID_STR}[{device}]"] = str(_read_clock_id(root, device))
                self._write_device_pins(root, device, pins)

        for key, value in opts.dpll_settings.items():
            settings.setdefault(key, str(value))

        for iface, properties in opts.phase_offset_pins.items():
            if iface not in opts.device_pins:
                log.error(
                    "e810 phase offset pin filter initialization failed:"
                    " interface %s not found among %s",
                    iface, list(opts.device_pins),
                )
                break
            clock_id = _read_clock_id(self.sysfs_root, iface)
            for prop, value in properties.items():
                settings[f"{iface}.phaseOffsetFilter.{clock_id}.{prop}"] = value

        if opts.input_delays is None:
            log.error("no clock chain set")
            return
        self.clock_chain = self._init_clock_chain(opts.input_delays, profile, root)
        settings["leadingInterface"] = self.clock_chain.leading_nic.name
        settings["upstreamPort"] = self.clock_chain.leading_nic.upstream_port

    def after_run_ptp_command(self, profile: PtpProfile, command: str) -> None:
        log.info("calling AfterRunPTPCommandE810 for e810 plugin")
        if self.name not in profile.plugins:
            return
        opts = self._options(profile)
        if command == "gpspipe":
            log.info("AfterRunPTPCommandE810 doing ublx config for command: %s", command)
            for cmd in [*opts.ublx_cmds, *default_ublx_cmds()]:
                log.info("Running %s with args %s", UBXTOOL, ", ".join(cmd.args))
                output = self.runner([UBXTOOL, *cmd.args])
                if cmd.report_output:
                    log.info("Saving status to hwconfig: %s", output)
                    self.hwplugins.append(f"ublx data: {output}")
                else:
                    log.info("Not saving status to hwconfig: %s", output)
        elif command == "tbc-ho-exit":
            self._switch_tbc("exit", lambda chain: chain.enter_normal_tbc())
        elif command == "tbc-ho-entry":
            self._switch_tbc("enter", lambda chain: chain.enter_holdover_tbc())
        else:
            log.info("AfterRunPTPCommandE810 doing nothing for command: %s", command)

    def _switch_tbc(self, action: str, change: Callable[[ClockChain], Any]) -> None:
        if self.clock_chain is None:
            raise PluginError(f"e810: failed to {action} T-BC holdover")
        try:
            change(self.clock_chain)
        except ClockChainError as exc:
            raise PluginError(f"e810: failed to {action} T-BC holdover") from exc
        log.info("e810: %s T-BC holdover", action)

    def populate_hw_config(self, hwconfigs: list[HwConfig]) -> list[HwConfig]:
        hwconfigs.extend(HwConfig(device_id=PLUGIN_NAME, status=s) for s in self.hwplugins)
        return hwconfigs


def e810(name: str) -> E810Plugin:
    """Create the e810 plugin; ``name`` must be ``"e810"``."""
    if name != PLUGIN_NAME:
        raise PluginError("Plugin must be initialized as 'e810'")
    log.info("registering e810 plugin")
    return E810Plugin()