"""Golden-image VM template builder for Proxmox VE."""

__version__ = "0.1.0"
