"""Utility functions"""
import logging
import random
import socket
import uuid
from typing import Optional

logger = logging.getLogger(__name__)


def new_instance_id() -> str:
    return f"i-{uuid.uuid4().hex[:12]}"


def find_free_port(start_port: int = 8000, max_attempts: int = 100) -> Optional[int]:
    """Find a bindable port at or above ``start_port``"""
    for port in range(start_port, start_port + max_attempts):
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind(('', port))
                return port
        except OSError:
            continue
    return None


def check_port_in_use(port: int) -> bool:
    """Check whether a port is already bound"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(('', port))
            return False
        except OSError:
            return True


def jittered_offset(interval: float) -> float:
    """Random start offset inside one interval, spreads periodic loops apart"""
    return random.uniform(0.0, max(0.0, interval))
