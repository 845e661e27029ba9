"""Live network-topology graph builder."""

__version__ = "0.3.0"
