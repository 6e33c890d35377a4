"""Building blocks for proxy tunnels: address metadata, user accounting, routing, forwarding and an HTTP proxy."""

__version__ = "0.1.0"