import logging
from typing import Mapping

from .base import Transport, TransportRequest, TransportResponse

DEFAULT_TIMEOUT = 30.0


def get_transport(config_section: Mapping[str, str]) -> Transport:
    """
    Factory function to get a transport instance based on the config.
    """
    transport_type = (config_section.get('type') or 'httpx').strip().lower()
    logging.info(f"Creating transport of type: {transport_type}")

    if transport_type == 'httpx':
        from .httpx_transport import HttpxTransport
        timeout = float(config_section.get('timeout') or DEFAULT_TIMEOUT)
        return HttpxTransport(base_url=config_section.get('base_url') or "", timeout=timeout)
    else:
        raise ValueError(f"Unsupported transport type: {transport_type}")


__all__ = ["Transport", "TransportRequest", "TransportResponse", "get_transport"]
