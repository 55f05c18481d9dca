"""Bluetooth Low Energy HCI host layer: transports, packets, controller commands and L2CAP signaling."""

__version__ = "0.1.0"
__all__ = ["hci", "l2cap", "packets", "transport"]