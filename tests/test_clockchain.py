import pytest

from ptpaddons.base import PtpProfile
from ptpaddons.delays import DelayCompensation, parse_input_phase_delays
from ptpaddons.clockchain import (
    PRIO_DISABLE,
    PRIO_ENABLE,
    CardInfo,
    ClockChain,
    ClockChainError,
    ClockChainType,
    DpllError,
    MemoryDpllBackend,
    PinControl,
    PinDirection,
    PinInfo,
    PinParentControl,
    PinParentCtl,
    PinParentDevice,
    PinParentDeviceCtl,
    PinState,
    batch_pin_set,
    init_clock_chain,
    send_delay_compensation,
    set_pin_control_data,
    write_sysfs,
)

LEAD = 1234567890123456789
OTHER = 1111111111111111111

IN = PinDirection.INPUT
OUT = PinDirection.OUTPUT


def _pin(pin_id, clock, label, direction, parents=(0, 1)):
    return PinInfo(
        id=pin_id,
        clock_id=clock,
        board_label=label,
        parent_device=[PinParentDevice(parent_id=p, direction=direction) for p in parents],
    )


def _pins():
    return [
        _pin(1, LEAD, "CVL-SDP22", IN),
        _pin(2, LEAD, "CVL-SDP20", IN),
        _pin(3, LEAD, "CVL-SDP21", OUT),
        _pin(4, LEAD, "CVL-SDP23", OUT),
        _pin(5, LEAD, "GNSS-1PPS", IN),
        _pin(6, LEAD, "SMA1", IN),
        _pin(7, LEAD, "REF-SMA1", OUT),
        _pin(8, LEAD, "REF-SMA2/U.FL2", OUT),
        _pin(9, OTHER, "SMA1", IN, parents=(2, 3)),
        _pin(10, OTHER, "CVL-SDP22", IN, parents=(2, 3)),
    ]


def _profile():
    return PtpProfile(
        name="test",
        ptp_settings={"clockId[ens4f0]": str(LEAD), "clockId[ens5f0]": str(OTHER)},
    )


def _tbc_delays():
    return parse_input_phase_delays([
        {
            "id": "ens4f0",
            "Part": "E810-XXVDA4T",
            "upstreamPort": "ens4f1",
            "phaseOutputConnectors": ["SMA1", "SMA2"],
        },
        {
            "id": "ens5f0",
            "Part": "E810-XXVDA4T",
            "inputPhaseDelay": {"connector": "SMA1", "delayPs": 920},
        },
    ])


def _tgm_delays():
    return parse_input_phase_delays([
        {"id": "ens4f0", "Part": "E810-XXVDA4T", "gnssInput": True},
    ])


@pytest.fixture
def sysfs(tmp_path):
    (tmp_path / "ens4f0" / "device" / "ptp" / "ptp0").mkdir(parents=True)
    return tmp_path


@pytest.fixture
def tbc_chain(sysfs):
    backend = MemoryDpllBackend(_pins())
    profile = _profile()
    chain = ClockChain(backend=backend, sysfs_root=sysfs)
    chain.get_live_dpll_pins_info()
    compensations = chain.resolve_interconnections(_tbc_delays(), profile)
    send_delay_compensation(compensations, chain.dpll_pins, backend)
    chain.get_leading_card_sdp()
    chain.init_pins_tbc()
    chain.enter_normal_tbc()
    return chain, backend, profile, sysfs


def test_tbc_chain_resolved(tbc_chain):
    chain, *_ = tbc_chain
    assert chain.type == ClockChainType.TBC
    assert chain.leading_nic.dpll_clock_id == str(LEAD)
    assert len(chain.leading_nic.pins) == 5
    assert chain.leading_nic.upstream_port == "ens4f1"
    assert chain.leading_nic.name == "ens4f0"


def test_tbc_leading_pins_belong_to_leading_clock(tbc_chain):
    chain, *_ = tbc_chain
    assert chain.leading_nic.pins["CVL-SDP22"].id == 1
    assert all(p.clock_id == LEAD for p in chain.leading_nic.pins.values())


def test_tbc_enables_sdp22_output(tbc_chain):
    *_, sysfs = tbc_chain
    period = sysfs / "ens4f0" / "device" / "ptp" / "ptp0" / "period"
    assert period.read_text() == "2 0 0 1 0"


def test_tbc_phase_adjustments(tbc_chain):
    _, backend, _, _ = tbc_chain
    assert backend.phase_adjustments == [(7, 1376), (8, 2908), (9, 8578)]


def test_tbc_init_ends_in_normal_mode(tbc_chain):
    _, backend, _, _ = tbc_chain
    sdp22 = next(p for p in backend.pins if p.id == 1)
    assert [p.prio for p in sdp22.parent_device] == [PRIO_DISABLE, PRIO_ENABLE]
    sdp23 = next(p for p in backend.pins if p.id == 4)
    assert [p.state for p in sdp23.parent_device] == [PinState.DISCONNECTED] * 2


def test_holdover_and_normal_commands(tbc_chain):
    chain, backend, _, _ = tbc_chain
    commands = chain.enter_holdover_tbc()
    assert len(commands) == 3
    sdp23 = next(p for p in backend.pins if p.id == 4)
    assert [p.state for p in sdp23.parent_device] == [PinState.CONNECTED] * 2
    commands = chain.enter_normal_tbc()
    assert len(commands) == 3
    assert [p.state for p in sdp23.parent_device] == [PinState.DISCONNECTED] * 2


def test_tgm_chain():
    backend = MemoryDpllBackend(_pins())
    profile = _profile()
    chain = init_clock_chain(_tgm_delays(), profile, backend)
    assert chain.type == ClockChainType.TGM
    assert profile.ptp_settings["clockType"] == "T-GM"
    assert backend.phase_adjustments == [(5, 6999)]
    assert len(backend.commands) == 5
    gnss = next(p for p in backend.pins if p.id == 5)
    assert [p.prio for p in gnss.parent_device] == [PRIO_ENABLE, PRIO_ENABLE]


def test_init_pins_tgm_returns_five_commands():
    chain = ClockChain(dpll_pins=_pins(), backend=MemoryDpllBackend(_pins()))
    chain.leading_nic.dpll_clock_id = str(LEAD)
    chain.get_leading_card_sdp()
    assert [c.id for c in chain.init_pins_tgm()] == [5, 2, 1, 3, 4]


def test_resolve_unknown_connector():
    chain = ClockChain()
    delays = parse_input_phase_delays([
        {"id": "ens5f0", "Part": "E810-XXVDA4T",
         "inputPhaseDelay": {"connector": "SMA9", "delayPs": 1}},
    ])
    with pytest.raises(ClockChainError, match="can't find connector SMA9"):
        chain.resolve_interconnections(delays, _profile())


def test_resolve_unknown_output_connector():
    chain = ClockChain()
    delays = parse_input_phase_delays([
        {"id": "ens4f0", "Part": "E810-XXVDA4T", "phaseOutputConnectors": ["BNC"]},
    ])
    with pytest.raises(ClockChainError, match="can't find connector BNC"):
        chain.resolve_interconnections(delays, _profile())


def test_resolve_missing_clock_id():
    chain = ClockChain()
    delays = parse_input_phase_delays([{"id": "eth9", "Part": "E810-XXVDA4T"}])
    with pytest.raises(ValueError, match="can't find clock ID for interface eth9"):
        chain.resolve_interconnections(delays, _profile())


def test_resolve_bad_part():
    chain = ClockChain()
    delays = parse_input_phase_delays([{"id": "ens4f0", "Part": "Dummy"}])
    with pytest.raises(ValueError, match="can't find delays for Dummy"):
        chain.resolve_interconnections(delays, _profile())


def test_set_pin_control_data_input():
    command = set_pin_control_data(_pin(1, LEAD, "X", IN), PinParentControl(True, False))
    assert command == PinParentDeviceCtl(id=1, pin_parent_ctl=[
        PinParentCtl(pin_parent_id=0, prio=PRIO_ENABLE),
        PinParentCtl(pin_parent_id=1, prio=PRIO_DISABLE),
    ])


def test_set_pin_control_data_output():
    command = set_pin_control_data(_pin(3, LEAD, "X", OUT), PinParentControl(False, True))
    assert [c.state for c in command.pin_parent_ctl] == [PinState.DISCONNECTED, PinState.CONNECTED]
    assert all(c.prio is None for c in command.pin_parent_ctl)


def test_set_pins_control_missing_pin():
    chain = ClockChain(leading_nic=CardInfo(name="ens4f0"))
    with pytest.raises(ClockChainError, match="1 pin not found in the leading card"):
        chain.set_pins_control([PinControl("1", PinParentControl(False, False))])


def test_get_live_pins_without_backend():
    with pytest.raises(DpllError):
        ClockChain().get_live_dpll_pins_info()


def test_get_live_pins_from_backend():
    chain = ClockChain(backend=MemoryDpllBackend(_pins()))
    chain.get_live_dpll_pins_info()
    assert [p.id for p in chain.dpll_pins] == list(range(1, 11))


def test_get_leading_card_sdp_bad_clock_id():
    chain = ClockChain(leading_nic=CardInfo(dpll_clock_id="abc"))
    with pytest.raises(ClockChainError):
        chain.get_leading_card_sdp()


def test_write_sysfs_error(tmp_path):
    with pytest.raises(ClockChainError, match="e810 failed to write dummy"):
        write_sysfs(tmp_path / "missing" / "dummy", "dummy")


def test_write_sysfs_writes(tmp_path):
    target = tmp_path / "value"
    write_sysfs(target, "1 2")
    assert target.read_text() == "1 2"


def test_enable_outputs_missing_device(tmp_path):
    chain = ClockChain(leading_nic=CardInfo(name="ens4f0"), sysfs_root=tmp_path)
    with pytest.raises(ClockChainError, match="e810 failed to read"):
        chain.enable_e810_outputs()


def test_init_pins_tbc_fails_without_sysfs(tmp_path):
    chain = ClockChain(leading_nic=CardInfo(name="ens4f0"), sysfs_root=tmp_path,
                       backend=MemoryDpllBackend(_pins()))
    with pytest.raises(ClockChainError):
        chain.init_pins_tbc()


def test_batch_pin_set_without_backend():
    with pytest.raises(DpllError):
        batch_pin_set([PinParentDeviceCtl(id=1)], None)


def test_batch_pin_set_updates_backend():
    backend = MemoryDpllBackend(_pins())
    batch_pin_set([PinParentDeviceCtl(id=6, pin_parent_ctl=[PinParentCtl(0, prio=7)])], backend)
    sma1 = next(p for p in backend.pins if p.id == 6)
    assert sma1.parent_device[0].prio == 7
    assert sma1.parent_device[1].prio is None


def test_memory_backend_unknown_pin():
    with pytest.raises(DpllError, match="no DPLL pin with id 99"):
        MemoryDpllBackend(_pins()).set_pin(PinParentDeviceCtl(id=99))


def test_send_delay_compensation_bad_clock_id():
    comp = DelayCompensation(delay_ps=1, pin_label="SMA1", iface="x", direction="input", clock_id="xyz")
    with pytest.raises(ClockChainError, match="failed to parse clock id xyz"):
        send_delay_compensation([comp], _pins(), MemoryDpllBackend(_pins()))


def test_send_delay_compensation_matches_label_case_insensitively():
    backend = MemoryDpllBackend(_pins())
    comp = DelayCompensation(delay_ps=42, pin_label="sma1", iface="x", direction="input",
                             clock_id=str(LEAD))
    send_delay_compensation([comp], _pins(), backend)
    assert backend.phase_adjustments == [(6, 42)]


def test_pin_info_from_dict():
    pin = PinInfo.from_dict({
        "id": 3, "clockId": LEAD, "boardLabel": "CVL-SDP21",
        "parentDevice": [{"parentId": 0, "direction": 2}, {"ParentId": 1, "Direction": 2}],
    })
    assert pin == _pin(3, LEAD, "CVL-SDP21", OUT)