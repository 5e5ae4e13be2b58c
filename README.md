# ptpaddons

Hardware plugins for a PTP (IEEE 1588) daemon. A plugin reacts to changes
of a PTP profile, runs follow-up steps after the daemon starts a command,
and reports hardware status back to the daemon.

Two plugins are included:

- **reference** (`ptpaddons.base.ReferencePlugin`) records the string
  given as its options in a profile and reports it as hardware status.
- **e810** (`ptpaddons.e810.E810Plugin`) configures E810 cards: pin
  settings written through sysfs, DPLL settings and phase-offset filter
  entries added to the profile, u-blox GNSS receiver setup through
  `ubxtool`, and a clock chain that drives the DPLL pins for T-GM and
  T-BC operation, including holdover entry and exit.

## Installation

```
pip install ptpaddons
```

To run the test suite:

```
pip install "ptpaddons[test]"
pytest
```

## Plugins

Plugins are looked up by name in `ptpaddons.mapping.PLUGIN_MAPPING`:

```python
from ptpaddons.mapping import create_plugin

plugin = create_plugin("reference")
```

An unknown name raises `ptpaddons.base.PluginError`. The factories
`ptpaddons.base.reference(name)` and `ptpaddons.e810.e810(name)` accept
only their own name and raise `PluginError` for any other.

Every plugin subclasses `ptpaddons.base.Plugin` and has three hooks:

- `on_ptp_config_change(profile)` is called with a `PtpProfile` when the
  profile changes. Plugins may add entries to `profile.ptp_settings`.
- `after_run_ptp_command(profile, command)` is called after the daemon
  runs a command.
- `populate_hw_config(hwconfigs)` appends `HwConfig` records to the list
  and returns it.

`PtpProfile.from_dict(data)` builds a profile from its decoded YAML or
JSON form (`name`, `interface`, `ptp4lOpts`, `plugins`, `ptpSettings`, ...).

### The e810 plugin

Its options sit under `plugins: {e810: ...}` in a profile and are decoded
by `ptpaddons.e810.parse_e810_opts` into `E810Opts`:

- `enableDefaultConfig` runs a shell script that disables all SMA and
  U.FL connections.
- `pins` maps a device to pin values. For each device the plugin records
  `clockId[<device>]` in the PTP settings (the PCI device serial number,
  see `parse_clock_id` and `get_clock_id`) and writes each value to
  `<sysfs>/<device>/device/ptp/<phc>/pins/<pin>`.
- `settings` adds DPLL settings to the PTP settings unless already set.
- `phaseOffsetPins` adds `<iface>.phaseOffsetFilter.<clockId>.<property>`
  entries; the interface must also appear under `pins`.
- `interconnections` describes the cards and is used to build the clock
  chain. Afterwards `clockType`, `leadingInterface` and `upstreamPort` are
  set in the PTP settings.

`after_run_ptp_command` reacts to:

- `gpspipe`: runs `/usr/local/bin/ubxtool` with each of the profile's
  `ublxCmds` followed by `default_ublx_cmds()`. Output of commands with
  `reportOutput: true` is kept and reported by `populate_hw_config` as
  `HwConfig(device_id="e810", status="ublx data: ...")`.
- `tbc-ho-entry` and `tbc-ho-exit`: switch the clock chain into and out
  of T-BC holdover; a failure raises `PluginError`.

`E810Plugin(backend, sysfs_root=..., runner=...)` takes the DPLL backend,
the sysfs directory of network devices (default `/sys/class/net`; `None`
disables sysfs access) and a callable that runs a command given as an
argument list and returns its output. A profile whose PTP settings hold a
`unitTest` key is handled without touching sysfs.

## Internal delays and phase compensation

The delays between a card's connectors and its DPLL pins are known per
card model:

```python
from ptpaddons.delays import init_internal_delays, find_internal_link

delays = init_internal_delays("E810-XXVDA4T")
link = find_internal_link(delays.external_inputs, "SMA1")
print(link.pin, link.delay_ps)   # SMA1 7658
```

An unknown model raises `ValueError`. Connector names are matched without
regard to case. `add_clock_id(iface, profile)` returns the
`clockId[<iface>]` setting of a profile or raises `ValueError`.

## Clock chain

`ptpaddons.clockchain.init_clock_chain(input_delays, profile, backend)`
reads the DPLL pins, resolves the interconnections, works out whether the
leading card is a grandmaster (GNSS input, `ClockChainType.TGM`) or a
boundary clock (`ClockChainType.TBC`), sends delay compensation to the
DPLL and puts the leading card's pins in their initial state.

`ClockChain.enter_holdover_tbc()` and `ClockChain.enter_normal_tbc()`
switch a boundary clock's pins between holdover and normal operation and
return the pin-set commands sent. `set_pin_control_data(pin, control)`
builds a single command: a priority (0 or 255) for input parents, a
connected or disconnected state for output parents.

The DPLL is reached through a `DpllBackend` with `dump_pins`, `set_pin`
and `phase_adjust`. `MemoryDpllBackend` keeps pins in memory and records
every command and phase adjustment it receives; `ptpaddons.e810.load_pins`
loads pins for it from a JSON file. Errors raise `ClockChainError` or its
subclass `DpllError`.

## Vital Product Data

`ptpaddons.delays.parse_vpd` reads a PCI VPD image and returns a `Vpd`
holding the identifier string, part number, serial number and the first
two vendor-specific fields; truncated data raises `ValueError`.
`get_hardware_fingerprint(device)` reads the VPD of a network device from
sysfs and returns the last word of the first vendor-specific field, or an
empty string when the file cannot be read.

## What is not included

This package is a library of plugins, not a daemon. It has no command to
run, does not start or supervise ptp4l, phc2sys or ts2phc, and does not
talk to a cluster. It also has no backend that reaches a real DPLL device
over netlink: `DpllBackend` must be subclassed for that, and an
`E810Plugin` created without a backend raises `DpllError` when a profile
asks it to build a clock chain.