"""DPLL clock chain of the leading E810 card: pin control and delay compensation."""

from __future__ import annotations

import copy
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from ptpaddons.base import PtpProfile
from ptpaddons.delays import (
    DelayCompensation,
    InputPhaseDelays,
    add_clock_id,
    find_internal_link,
    init_internal_delays,
)

log = logging.getLogger(__name__)

PRIO_ENABLE = 0
PRIO_DISABLE = 255

SDP20 = "CVL-SDP20"
SDP21 = "CVL-SDP21"
SDP22 = "CVL-SDP22"
SDP23 = "CVL-SDP23"
GNSS = "GNSS-1PPS"
EEC_DPLL_INDEX = 0
PPS_DPLL_INDEX = 1
SDP22_PPS_ENABLE = "2 0 0 1 0"

INTERNAL_PIN_LABELS = (SDP20, SDP21, SDP22, SDP23, GNSS)

SYSFS_NET = Path("/sys/class/net")


class ClockChainError(Exception):
    """Raised when the clock chain cannot be resolved or configured."""


class DpllError(ClockChainError):
    """Raised when the DPLL device cannot be reached or refuses a command."""


class ClockChainType(enum.IntEnum):
    UNSET = 0
    TGM = 1
    TBC = 2


CLOCK_TYPES: dict[str, ClockChainType] = {
    "": ClockChainType.UNSET,
    "T-GM": ClockChainType.TGM,
    "T-BC": ClockChainType.TBC,  # also used for T-TSC
}


class PinDirection(enum.IntEnum):
    INPUT = 1
    OUTPUT = 2


class PinState(enum.IntEnum):
    CONNECTED = 1
    DISCONNECTED = 2
    SELECTABLE = 3


def _lookup(data: Mapping[str, Any], key: str, default: Any = None) -> Any:
    if key in data:
        return data[key]
    folded = key.casefold()
    for name, value in data.items():
        if isinstance(name, str) and name.casefold() == folded:
            return value
    return default


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


@dataclass
class PinParentDevice:
    """Relation of a pin to one of the DPLL devices it feeds or is fed by."""

    parent_id: int
    direction: int = PinDirection.INPUT
    prio: int | None = None
    state: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PinParentDevice":
        return cls(
            parent_id=int(_lookup(data, "parentId", 0)),
            direction=int(_lookup(data, "direction", PinDirection.INPUT)),
            prio=_optional_int(_lookup(data, "prio")),
            state=_optional_int(_lookup(data, "state")),
        )


@dataclass
class PinInfo:
    """A DPLL pin as reported by the device."""

    id: int
    clock_id: int
    board_label: str = ""
    parent_device: list[PinParentDevice] = field(default_factory=list)
    phase_adjust: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PinInfo":
        parents = _lookup(data, "parentDevice") or []
        return cls(
            id=int(_lookup(data, "id", 0)),
            clock_id=int(_lookup(data, "clockId", 0)),
            board_label=str(_lookup(data, "boardLabel", "") or ""),
            parent_device=[PinParentDevice.from_dict(p) for p in parents],
            phase_adjust=int(_lookup(data, "phaseAdjust", 0) or 0),
        )


@dataclass
class PinParentControl:
    """Desired enablement of a pin towards the EEC and PPS DPLLs."""

    eec_enabled: bool = False
    pps_enabled: bool = False


@dataclass
class PinControl:
    """Desired control of the pin with the given board label."""

    label: str
    parent_control: PinParentControl = field(default_factory=PinParentControl)


@dataclass
class PinParentCtl:
    """Setting for one parent of a pin: a priority for inputs, a state for outputs."""

    pin_parent_id: int
    prio: int | None = None
    state: int | None = None


@dataclass
class PinParentDeviceCtl:
    """A pin-set command for one pin."""

    id: int
    pin_parent_ctl: list[PinParentCtl] = field(default_factory=list)


@dataclass
class CardInfo:
    """The leading card of the chain and its internal DPLL pins."""

    name: str = ""
    dpll_clock_id: str = ""
    upstream_port: str = ""
    pins: dict[str, PinInfo] = field(default_factory=dict)


class DpllBackend(ABC):
    """Access to the DPLL subsystem.

    ``sysfs_root`` is where the network devices' sysfs entries live; ``None``
    means the card's sysfs outputs are left untouched.
    """

    sysfs_root: Path | None = SYSFS_NET

    @abstractmethod
    def dump_pins(self) -> list[PinInfo]:
        """Return every pin known to the DPLL subsystem."""

    @abstractmethod
    def set_pin(self, command: PinParentDeviceCtl) -> PinInfo:
        """Apply a pin-set command and return the pin as it now stands."""

    @abstractmethod
    def phase_adjust(self, pin_id: int, delay_ps: int) -> None:
        """Set the phase adjustment of a pin in picoseconds."""


class MemoryDpllBackend(DpllBackend):
    """A DPLL backend kept in memory, recording every command it receives."""

    def __init__(
        self, pins: Iterable[PinInfo] = (), *, sysfs_root: Path | None = None
    ) -> None:
        self.pins: list[PinInfo] = [copy.deepcopy(p) for p in pins]
        self.commands: list[PinParentDeviceCtl] = []
        self.phase_adjustments: list[tuple[int, int]] = []
        self.sysfs_root = sysfs_root

    def _pin(self, pin_id: int) -> PinInfo:
        for pin in self.pins:
            if pin.id == pin_id:
                return pin
        raise DpllError(f"no DPLL pin with id {pin_id}")

    def dump_pins(self) -> list[PinInfo]:
        return copy.deepcopy(self.pins)

    def set_pin(self, command: PinParentDeviceCtl) -> PinInfo:
        pin = self._pin(command.id)
        parents = {p.parent_id: p for p in pin.parent_device}
        for ctl in command.pin_parent_ctl:
            parent = parents.get(ctl.pin_parent_id)
            if parent is None:
                raise DpllError(
                    f"pin {command.id} has no parent device {ctl.pin_parent_id}"
                )
            if ctl.prio is not None:
                parent.prio = ctl.prio
            if ctl.state is not None:
                parent.state = ctl.state
        self.commands.append(copy.deepcopy(command))
        return copy.deepcopy(pin)

    def phase_adjust(self, pin_id: int, delay_ps: int) -> None:
        self._pin(pin_id).phase_adjust = delay_ps
        self.phase_adjustments.append((pin_id, delay_ps))


def set_pin_control_data(pin: PinInfo, control: PinParentControl) -> PinParentDeviceCtl:
    """Build the pin-set command that applies ``control`` to ``pin``."""
    command = PinParentDeviceCtl(id=pin.id)
    enable = False
    for index, parent in enumerate(pin.parent_device):
        if index == EEC_DPLL_INDEX:
            enable = control.eec_enabled
        elif index == PPS_DPLL_INDEX:
            enable = control.pps_enabled
        ctl = PinParentCtl(pin_parent_id=parent.parent_id)
        if parent.direction == PinDirection.INPUT:
            ctl.prio = PRIO_ENABLE if enable else PRIO_DISABLE
        else:
            ctl.state = PinState.CONNECTED if enable else PinState.DISCONNECTED
        command.pin_parent_ctl.append(ctl)
    return command


def batch_pin_set(commands: Iterable[PinParentDeviceCtl], backend: DpllBackend | None) -> None:
    """Send each pin-set command to the DPLL in turn."""
    if backend is None:
        raise DpllError("failed to dial DPLL: no DPLL backend available")
    for command in commands:
        log.info("DPLL pin command %r", command)
        reply = backend.set_pin(command)
        log.info("pin reply: %r", reply)


def send_delay_compensation(
    compensations: Iterable[DelayCompensation],
    pins: Iterable[PinInfo],
    backend: DpllBackend | None,
) -> None:
    """Apply each compensation to the pin with matching clock ID and label."""
    if backend is None:
        raise DpllError("failed to dial DPLL: no DPLL backend available")
    compensations = list(compensations)
    for pin in pins:
        for comp in compensations:
            try:
                desired = int(comp.clock_id)
            except ValueError as exc:
                raise ClockChainError(
                    f"failed to parse clock id {comp.clock_id}: {exc}"
                ) from exc
            if desired == pin.clock_id and pin.board_label.casefold() == comp.pin_label.casefold():
                try:
                    backend.phase_adjust(pin.id, comp.delay_ps)
                except DpllError as exc:
                    raise DpllError(
                        f"failed to send phase adjustment to {pin.board_label}"
                        f" clock id {desired}: {exc}"
                    ) from exc
                log.info(
                    "set phaseAdjust of pin %s at clock ID %x to %d ps",
                    pin.board_label, pin.clock_id, comp.delay_ps,
                )


def write_sysfs(path: str | Path, value: str) -> None:
    """Write ``value`` to a sysfs attribute."""
    log.info("writing %s to %s", value, path)
    try:
        Path(path).write_text(value)
    except OSError as exc:
        raise ClockChainError(f"e810 failed to write {value} to {path}: {exc}") from exc


@dataclass
class ClockChain:
    """The clock chain built around the leading card's DPLL."""

    type: ClockChainType = ClockChainType.UNSET
    leading_nic: CardInfo = field(default_factory=CardInfo)
    dpll_pins: list[PinInfo] = field(default_factory=list)
    backend: DpllBackend | None = None
    sysfs_root: Path | None = SYSFS_NET

    def get_live_dpll_pins_info(self) -> None:
        """Refresh the pin list from the DPLL."""
        if self.backend is None:
            raise DpllError("failed to dial DPLL: no DPLL backend available")
        try:
            self.dpll_pins = self.backend.dump_pins()
        except DpllError as exc:
            raise DpllError(f"failed to dump DPLL pins: {exc}") from exc

    def resolve_interconnections(
        self, input_delays: Iterable[InputPhaseDelays], profile: PtpProfile
    ) -> list[DelayCompensation]:
        """Work out the chain type, the leading card and the delays to compensate."""
        compensations: list[DelayCompensation] = []
        for card in input_delays:
            delays = init_internal_delays(card.part)
            if card.input is not None:
                connector = card.input.connector
                link = find_internal_link(delays.external_inputs, connector)
                if link is None:
                    raise ClockChainError(
                        f"plugin E810 error: can't find connector {connector}"
                        f" in the card {card.part} spec"
                    )
                compensations.append(DelayCompensation(
                    delay_ps=card.input.delay_ps + link.delay_ps,
                    pin_label=link.pin,
                    iface=card.id,
                    direction="input",
                    clock_id=add_clock_id(card.id, profile),
                ))
            else:
                self.leading_nic.name = card.id
                self.leading_nic.upstream_port = card.upstream_port
                clock_id = add_clock_id(card.id, profile)
                self.leading_nic.dpll_clock_id = clock_id
                if card.gnss_input:
                    self.type = ClockChainType.TGM
                    gnss = delays.gnss_input
                    compensations.append(DelayCompensation(
                        delay_ps=gnss.delay_ps,
                        pin_label=gnss.pin,
                        iface=card.id,
                        direction="input",
                        clock_id=clock_id,
                    ))
                else:
                    # Neither GNSS nor an external input: ptp4l drives the card.
                    self.type = ClockChainType.TBC
            for connector in card.phase_output_connectors:
                link = find_internal_link(delays.external_outputs, connector)
                if link is None:
                    raise ClockChainError(
                        f"plugin E810 error: can't find connector {connector}"
                        f" in the card {card.part} spec"
                    )
                compensations.append(DelayCompensation(
                    delay_ps=link.delay_ps,
                    pin_label=link.pin,
                    iface=card.id,
                    direction="output",
                    clock_id=add_clock_id(card.id, profile),
                ))
        return compensations

    def get_leading_card_sdp(self) -> None:
        """Collect the leading card's internal pins by board label."""
        try:
            clock_id = int(self.leading_nic.dpll_clock_id)
        except ValueError as exc:
            raise ClockChainError(
                f"invalid clock ID {self.leading_nic.dpll_clock_id!r}"
            ) from exc
        for pin in self.dpll_pins:
            if pin.clock_id == clock_id and pin.board_label in INTERNAL_PIN_LABELS:
                self.leading_nic.pins[pin.board_label] = pin

    def set_pins_control(self, pins: Iterable[PinControl]) -> list[PinParentDeviceCtl]:
        """Build pin-set commands for pins of the leading card."""
        commands = []
        for control in pins:
            pin = self.leading_nic.pins.get(control.label)
            if pin is None:
                raise ClockChainError(f"{control.label} pin not found in the leading card")
            commands.append(set_pin_control_data(pin, control.parent_control))
        return commands

    def enable_e810_outputs(self) -> None:
        """Enable the 1PPS output on SDP22 of every PHC of the leading card."""
        if self.sysfs_root is None:
            log.info("skip pin config: no sysfs root")
            return
        device_dir = Path(self.sysfs_root) / self.leading_nic.name / "device" / "ptp"
        try:
            phcs = sorted(device_dir.iterdir())
        except OSError as exc:
            raise ClockChainError(f"e810 failed to read {device_dir}: {exc}") from exc
        for phc in phcs:
            write_sysfs(phc / "period", SDP22_PPS_ENABLE)

    def _apply(self, controls: list[PinControl]) -> list[PinParentDeviceCtl]:
        commands = self.set_pins_control(controls)
        batch_pin_set(commands, self.backend)
        return commands

    def init_pins_tbc(self) -> list[PinParentDeviceCtl]:
        """Prepare the leading card for T-BC operation."""
        self.enable_e810_outputs()
        return self._apply([
            PinControl(GNSS, PinParentControl(False, False)),
            PinControl(SDP20, PinParentControl(False, False)),
            PinControl(SDP21, PinParentControl(False, False)),
        ])

    def enter_holdover_tbc(self) -> list[PinParentDeviceCtl]:
        """Switch the leading card's pins to T-BC holdover."""
        return self._apply([
            PinControl(SDP22, PinParentControl(False, False)),
            PinControl(SDP23, PinParentControl(True, True)),
            PinControl(SDP21, PinParentControl(True, True)),
        ])

    def enter_normal_tbc(self) -> list[PinParentDeviceCtl]:
        """Switch the leading card's pins to regular T-BC operation."""
        return self._apply([
            PinControl(SDP22, PinParentControl(False, True)),
            PinControl(SDP21, PinParentControl(False, False)),
            PinControl(SDP23, PinParentControl(False, False)),
        ])

    def init_pins_tgm(self) -> list[PinParentDeviceCtl]:
        """Prepare the leading card for T-GM operation from GNSS."""
        return self._apply([
            PinControl(GNSS, PinParentControl(True, True)),
            PinControl(SDP20, PinParentControl(False, False)),
            PinControl(SDP22, PinParentControl(False, False)),
            PinControl(SDP21, PinParentControl(True, True)),
            PinControl(SDP23, PinParentControl(True, True)),
        ])


def init_clock_chain(
    input_delays: Iterable[InputPhaseDelays],
    profile: PtpProfile,
    backend: DpllBackend | None,
) -> ClockChain:
    """Build the clock chain for a profile and put its pins in the initial state.

    The sysfs root used for the card's outputs is taken from the backend.
    """
    sysfs_root = backend.sysfs_root if backend is not None else SYSFS_NET
    chain = ClockChain(backend=backend, sysfs_root=sysfs_root)
    chain.get_live_dpll_pins_info()
    try:
        compensations = chain.resolve_interconnections(input_delays, profile)
    except (ClockChainError, ValueError) as exc:
        log.error("fail to get delay compensations, %s", exc)
        compensations = []
    try:
        send_delay_compensation(compensations, chain.dpll_pins, backend)
    except ClockChainError as exc:
        log.error("fail to send delay compensations, %s", exc)
    chain.get_leading_card_sdp()
    if chain.type == ClockChainType.TBC:
        profile.ptp_settings["clockType"] = "T-BC"
        log.info("about to init TBC pins")
        try:
            chain.init_pins_tbc()
        except ClockChainError as exc:
            raise ClockChainError(f"failed to initialize pins for T-BC operation: {exc}") from exc
        log.info("about to enter TBC Normal mode")
        try:
            chain.enter_normal_tbc()
        except ClockChainError as exc:
            raise ClockChainError(f"failed to enter T-BC normal mode: {exc}") from exc
    else:
        profile.ptp_settings["clockType"] = "T-GM"
        log.info("about to init TGM pins")
        chain.init_pins_tgm()
    return chain