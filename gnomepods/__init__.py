"""AirPods protocol parsing, device state, L2CAP channel and battery estimation."""

__version__ = "0.1.5"