"""
Ephemeral port discovery for renderer instances.
"""

import logging
import socket

from .errors import PortExhaustion

logger = logging.getLogger(__name__)


def allocate_port(host: str = "127.0.0.1") -> int:
    """
    Find a TCP port the OS currently considers free.

    The listening socket is closed before returning, so the port is not held.
    The caller is expected to bind it right away.

    Raises:
        PortExhaustion: If no socket could be opened or bound.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, 0))
            s.listen(1)
            port = s.getsockname()[1]
    except OSError as e:
        raise PortExhaustion(f"unable to find free port for headless: {e}")
    logger.debug(f"Allocated port {port}")
    return port
