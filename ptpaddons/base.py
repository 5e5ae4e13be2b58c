"""Profile model and the plugin interface, with the reference plugin."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

log = logging.getLogger(__name__)


class PluginError(Exception):
    """Raised when a plugin cannot be created or cannot handle its options."""


@dataclass
class PtpProfile:
    """A PTP profile as delivered to the daemon for one node."""

    name: str = ""
    interface: str = ""
    ptp4l_opts: str = ""
    phc2sys_opts: str = ""
    ts2phc_opts: str = ""
    ptp4l_conf: str = ""
    ts2phc_conf: str = ""
    plugins: dict[str, Any] = field(default_factory=dict)
    ptp_settings: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PtpProfile":
        """Build a profile from its decoded YAML or JSON form."""

        def text(key: str) -> str:
            value = data.get(key)
            return "" if value is None else str(value)

        settings = data.get("ptpSettings") or {}
        return cls(
            name=text("name"),
            interface=text("interface"),
            ptp4l_opts=text("ptp4lOpts"),
            phc2sys_opts=text("phc2sysOpts"),
            ts2phc_opts=text("ts2phcOpts"),
            ptp4l_conf=text("ptp4lConf"),
            ts2phc_conf=text("ts2phcConf"),
            plugins=dict(data.get("plugins") or {}),
            ptp_settings={str(k): str(v) for k, v in settings.items()},
        )


@dataclass
class HwConfig:
    """Hardware status entry reported by a plugin."""

    device_id: str
    status: str = ""
    vendor_id: str = ""
    failed: bool = False


class Plugin:
    """A hardware plugin. Each hook does nothing unless a subclass overrides it."""

    def __init__(self, name: str) -> None:
        self.name = name

    def on_ptp_config_change(self, profile: PtpProfile) -> None:
        """React to a new profile; the default takes no action."""

    def populate_hw_config(self, hwconfigs: list[HwConfig]) -> list[HwConfig]:
        """Append this plugin's hardware status to ``hwconfigs`` and return it."""
        return hwconfigs

    def after_run_ptp_command(self, profile: PtpProfile, command: str) -> None:
        """React to a command run by the daemon; the default takes no action."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def _string_option(opts: Any, plugin_name: str) -> str:
    if opts is None:
        return ""
    if isinstance(opts, str):
        return opts
    raise PluginError(
        f"{plugin_name} plugin options must be a string, got {type(opts).__name__}"
    )


class ReferencePlugin(Plugin):
    """Plugin that records a reference string and reports it as hardware status."""

    def __init__(self) -> None:
        super().__init__("reference")
        self.reference_string = ""

    def _options(self, profile: PtpProfile) -> str:
        return _string_option(profile.plugins.get(self.name), self.name)

    def on_ptp_config_change(self, profile: PtpProfile) -> None:
        opts = self._options(profile)
        if opts:
            log.info("Saving status to hwconfig: %s", opts)
            self.reference_string = opts
        log.info("OnPTPConfigChangeGeneric: (%s)", opts)

    def populate_hw_config(self, hwconfigs: list[HwConfig]) -> list[HwConfig]:
        hwconfigs.append(HwConfig(device_id="reference", status=self.reference_string))
        log.info("PopulateHwConfigGeneric: (%s)", self.reference_string)
        return hwconfigs

    def after_run_ptp_command(self, profile: PtpProfile, command: str) -> None:
        opts = self._options(profile)
        log.info("AfterRunPTPCommandGeneric: (%s,%s)", command, opts)


def reference(name: str) -> ReferencePlugin:
    """Create the reference plugin; ``name`` must be ``"reference"``."""
    if name != "reference":
        raise PluginError("Plugin must be initialized as 'reference'")
    return ReferencePlugin()