"""Index shuffling, IPv4 range lists and RDP standard-security helpers."""

__version__ = "0.1.0"

__all__ = ["blackrock", "ranges", "ipv4", "crypto", "secure"]