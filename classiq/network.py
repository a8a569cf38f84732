import ipaddress
import logging
from typing import List, Optional

from fastapi import Request

from .config import settings
from .errors import Forbidden

logger = logging.getLogger(__name__)

LOCAL_HOSTS = {"127.0.0.1", "::1", "localhost"}


def parse_networks(raw: Optional[str]) -> List[ipaddress._BaseNetwork]:
    networks: List[ipaddress._BaseNetwork] = []
    if not raw:
        return networks
    for item in raw.replace(";", ",").split(","):
        candidate = item.strip()
        if not candidate:
            continue
        try:
            networks.append(ipaddress.ip_network(candidate, strict=False))
        except ValueError:
            logger.warning("Ignoring malformed network %r", candidate)
    return networks


def normalize_ip(ip: Optional[str]) -> Optional[str]:
    if not ip:
        return None
    ip = ip.strip()
    if ip.startswith("::ffff:"):
        return ip[len("::ffff:"):]
    return ip


def ip_in_networks(ip: Optional[str], networks: List[ipaddress._BaseNetwork]) -> bool:
    """True when ``ip`` falls inside any of ``networks``.

    IPv4-mapped IPv6 addresses are matched against IPv4 networks as well.
    """
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(normalize_ip(ip))
    except ValueError:
        return False
    candidates = [addr]
    if addr.version == 6 and addr.ipv4_mapped:
        candidates.append(addr.ipv4_mapped)
    for candidate in candidates:
        for net in networks:
            if candidate.version == net.version and candidate in net:
                return True
    return False


def client_ip(request: Request) -> Optional[str]:
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return normalize_ip(first)
    host = getattr(request.client, "host", None)
    return normalize_ip(host)


def is_allowed(ip: Optional[str], raw_networks: Optional[str] = None) -> bool:
    networks = parse_networks(settings.allowed_networks if raw_networks is None else raw_networks)
    if not networks:
        return True
    if ip in LOCAL_HOSTS:
        return True
    return ip_in_networks(ip, networks)


def require_network(request: Request) -> None:
    ip = client_ip(request)
    if not is_allowed(ip):
        logger.info("Rejected request from %s outside allowed networks", ip)
        raise Forbidden("Access denied. Please connect to the college network.", required_network=True)
