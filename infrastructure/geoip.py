"""Async GeoIP country lookup around the synchronous geoip2 library.

geoip2 reads from a local .mmdb file and is blocking, so calls are wrapped
in asyncio.to_thread(). The reader is lazy-loaded on first use (double-checked
locking with asyncio.Lock). A missing database or failed lookup yields None,
which the redirect route treats as an unmatched region.
"""

import asyncio
from typing import Optional

import geoip2.database
import geoip2.errors
import maxminddb

from shared.logging import get_logger

log = get_logger(__name__)


class GeoIPService:
    def __init__(self, country_db_path: str) -> None:
        self._country_db_path = country_db_path
        self._country_reader: Optional[geoip2.database.Reader] = None
        self._country_loaded = False
        self._lock = asyncio.Lock()

    async def _get_country_reader(self) -> Optional[geoip2.database.Reader]:
        if not self._country_loaded:
            async with self._lock:
                if not self._country_loaded:
                    try:
                        self._country_reader = await asyncio.to_thread(
                            geoip2.database.Reader, self._country_db_path
                        )
                    except (OSError, maxminddb.InvalidDatabaseError) as e:
                        log.warning(
                            "geoip_country_db_unavailable",
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        self._country_reader = None
                    self._country_loaded = True
        return self._country_reader

    async def get_country_code(self, ip_address: str) -> Optional[str]:
        """ISO 3166-1 alpha-2 code for *ip_address*, or None."""
        if not ip_address:
            return None
        reader = await self._get_country_reader()
        if reader is None:
            return None
        try:
            result = await asyncio.to_thread(reader.country, ip_address)
            return result.country.iso_code
        except (
            geoip2.errors.AddressNotFoundError,
            ValueError,
            maxminddb.InvalidDatabaseError,
        ):
            return None

    def close(self) -> None:
        if self._country_reader is not None:
            self._country_reader.close()
            self._country_reader = None
            self._country_loaded = False
