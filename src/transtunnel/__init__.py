"""TransTunnel — source/destination classification and fwmark routing for transparent proxying."""

__version__ = "0.1.0"
