"""EchoRelay - reverse-tunnel relay between mobile clients and NAT-hidden laptops."""

__version__ = "0.1.0"
