# utils/port_utils.py
"""Listener port checks run before the gateway binds its socket"""

import socket
import psutil
import logging
from typing import Optional, Dict

logger = logging.getLogger(__name__)

WILDCARD_HOSTS = frozenset({'', '0.0.0.0', '::'})


def _family_for(host: str) -> int:
    return socket.AF_INET6 if ':' in host else socket.AF_INET


def is_port_in_use(port: int, host: str = '127.0.0.1') -> bool:
    """True if the gateway could not bind host:port right now"""
    with socket.socket(_family_for(host), socket.SOCK_STREAM) as sock:
        sock.settimeout(1)
        try:
            sock.bind((host, port))
        except OSError as e:
            logger.debug(f"Bind {host}:{port} failed: {e}")
            return True
    return False


def _conflicts_with(listen_ip: str, host: str) -> bool:
    """A listener on listen_ip blocks a bind on host"""
    return listen_ip == host or listen_ip in WILDCARD_HOSTS or host in WILDCARD_HOSTS


def get_process_using_port(port: int, host: str = '0.0.0.0') -> Optional[Dict]:
    """
    Process whose listening socket blocks host:port.

    Args:
        port: TCP port
        host: Address the gateway wants to bind; wildcard hosts match any listener

    Returns:
        dict with name, pid, username and address, or None when the owner
        is unknown (no listener found, or the OS hides other users' sockets)
    """
    try:
        connections = psutil.net_connections(kind='inet')
    except (psutil.AccessDenied, OSError) as e:
        logger.debug(f"Cannot list connections for port {port}: {e}")
        return None

    for conn in connections:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr or not conn.pid:
            continue
        if conn.laddr.port != port or not _conflicts_with(conn.laddr.ip, host):
            continue

        try:
            process = psutil.Process(conn.pid)
            try:
                username = process.username()
            except psutil.AccessDenied:
                username = 'N/A'
            return {
                'name': process.name(),
                'pid': process.pid,
                'username': username,
                'address': f"{conn.laddr.ip}:{conn.laddr.port}",
            }
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return None


def check_port_availability(port: int, host: str = '127.0.0.1') -> tuple[bool, str]:
    """
    Returns:
        tuple: (available, human readable reason)
    """
    if not is_port_in_use(port, host):
        return True, "Port is free"

    owner = get_process_using_port(port, host)
    if not owner:
        return False, f"Port {port} is in use on {host}"

    message = f"Port {port} is used by {owner['name']} (PID: {owner['pid']}) on {owner['address']}"
    if owner['username'] != 'N/A':
        message += f", user: {owner['username']}"
    return False, message
