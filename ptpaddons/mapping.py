"""Registry of the available hardware plugins."""

from __future__ import annotations

from typing import Callable

from ptpaddons.base import Plugin, PluginError, reference
from ptpaddons.e810 import e810

PLUGIN_MAPPING: dict[str, Callable[[str], Plugin]] = {
    "reference": reference,
    "e810": e810,
}


def create_plugin(name: str) -> Plugin:
    """Create the plugin registered under ``name``."""
    try:
        factory = PLUGIN_MAPPING[name]
    except KeyError:
        raise PluginError(f"unknown plugin {name!r}") from None
    return factory(name)