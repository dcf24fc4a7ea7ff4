"""Virtual ONVIF camera fleet: discovery, device façades and stream proxies."""

__version__ = "1.2.0"
