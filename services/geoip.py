# services/geoip.py
"""
IP geolocation for connecting players.

Uses the ip-api.com JSON endpoint (no API key required). Lookups are
best effort: every failure is logged and returns None.
"""

import ipaddress
import logging
from typing import Optional

import aiohttp

from services.collaborators import GeoLocator

logger = logging.getLogger(__name__)


def is_public_ip(ip: str) -> bool:
    """Check whether an address is routable on the public internet."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (address.is_private or address.is_loopback or address.is_unspecified
                or address.is_reserved or address.is_link_local or address.is_multicast)


class GeoIPService(GeoLocator):
    """ip-api.com client with a small in-memory cache."""

    def __init__(self, api_url: Optional[str] = None, timeout: Optional[float] = None):
        from config.settings import GEOIP_API_URL, GEOIP_TIMEOUT
        self.api_url = api_url or GEOIP_API_URL
        self.timeout = timeout if timeout is not None else GEOIP_TIMEOUT
        self._cache: dict[str, dict] = {}

    async def lookup(self, ip: str) -> Optional[dict]:
        """
        Look up the country of an IP address.

        Args:
            ip: IPv4 or IPv6 address without port

        Returns:
            {"country": ..., "country_code": ...} or None
        """
        if not ip or not is_public_ip(ip):
            return None

        if ip in self._cache:
            return self._cache[ip]

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.api_url.format(ip=ip)) as response:
                    if response.status != 200:
                        logger.error(f"GeoIP API error: {response.status}")
                        return None

                    data = await response.json()
                    if data.get('status') != 'success':
                        logger.debug(f"GeoIP lookup for {ip} failed: {data.get('message')}")
                        return None

                    result = {
                        "country": data.get('country'),
                        "country_code": data.get('countryCode'),
                    }
                    self._cache[ip] = result
                    return result

        except Exception as e:
            logger.error(f"Error looking up IP {ip}: {e}")
            return None
