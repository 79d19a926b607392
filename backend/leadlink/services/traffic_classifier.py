"""
Automated traffic detection.

Ad platforms (Meta in particular) fetch every advertised link from their own
crawlers to verify it. Those requests must be recorded but never turned into
CRM leads. Detection is prefix based; the prefix list is configuration.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, List, Optional, Union

logger = logging.getLogger(__name__)


class TrafficClassifier:
    """Classify caller addresses as platform verification probes.

    Entries are either plain string prefixes (``"173.252."``) or CIDR blocks
    (``"31.13.24.0/21"``).
    """

    def __init__(self, prefixes: Iterable[str]):
        self.prefixes: List[str] = []
        self.networks: List[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]] = []
        for entry in prefixes:
            entry = entry.strip()
            if not entry:
                continue
            if "/" in entry:
                try:
                    self.networks.append(ipaddress.ip_network(entry, strict=False))
                except ValueError:
                    logger.warning("Ignoring invalid probe network %r", entry)
                continue
            self.prefixes.append(entry)

    def is_automated_probe(self, address: Optional[str]) -> bool:
        """True when the address belongs to a known verification crawler."""
        if not address:
            return False
        if any(address.startswith(prefix) for prefix in self.prefixes):
            return True
        if not self.networks:
            return False
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            return False
        return any(ip in network for network in self.networks if network.version == ip.version)
