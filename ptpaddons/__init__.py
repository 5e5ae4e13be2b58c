"""Hardware plugins for a PTP daemon: reference and E810 plugins, DPLL clock chains, delays and VPD parsing."""

__version__ = "0.1.0"
__all__ = ["base", "delays", "clockchain", "e810", "mapping"]