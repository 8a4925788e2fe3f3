"""IP-to-location resolution for enriching tracked sessions.

Resolves IP addresses to a GeoLocation using:
1. Private/loopback/link-local detection (instant, marks the session local)
2. A CIDR→location table loaded from YAML (most specific network wins)

Results are cached per resolver so one evaluation pass only ever pays for a
dictionary lookup.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from sharewatch.session.models import GeoLocation

logger = logging.getLogger(__name__)

_Network = ipaddress.IPv4Network | ipaddress.IPv6Network

UNRESOLVED = GeoLocation()
PRIVATE = GeoLocation(is_private=True)


def is_private_ip(ip: str) -> bool:
    """True for RFC1918, loopback, link-local and unique-local addresses."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local


@dataclass(frozen=True)
class GeoEntry:
    network: _Network
    location: GeoLocation


@dataclass
class GeoResolver:
    """Resolves IP addresses to locations. Thread-safe; results are cached."""

    entries: list[GeoEntry] = field(default_factory=list)
    _cache: dict[str, GeoLocation] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def __post_init__(self) -> None:
        # Most specific prefix first so nested ranges override their parents.
        self.entries.sort(key=lambda e: e.network.prefixlen, reverse=True)

    @classmethod
    def from_yaml(cls, path: str | Path) -> GeoResolver:
        """Load a CIDR table.

        Format::

            networks:
              - cidr: 24.48.0.0/24
                country: US
                city: New York
                lat: 40.71
                lon: -74.0
        """
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Geo table is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("Geo table YAML must be a mapping")
        entries: list[GeoEntry] = []
        for raw in data.get("networks", []):
            if not isinstance(raw, dict) or "cidr" not in raw:
                continue
            try:
                network = ipaddress.ip_network(str(raw["cidr"]), strict=False)
            except ValueError as exc:
                raise ValueError(f"Invalid CIDR in geo table: {raw['cidr']}") from exc
            entries.append(
                GeoEntry(
                    network=network,
                    location=GeoLocation(
                        lat=_float_or_none(raw.get("lat")),
                        lon=_float_or_none(raw.get("lon")),
                        city=raw.get("city"),
                        country=raw.get("country"),
                    ),
                )
            )
        logger.info("Loaded %d geo network(s) from %s", len(entries), path)
        return cls(entries=entries)

    def resolve(self, ip: str) -> GeoLocation:
        """Resolve an IP address; unknown or malformed input yields UNRESOLVED."""
        with self._lock:
            cached = self._cache.get(ip)
        if cached is not None:
            return cached

        location = self._do_resolve(ip)
        with self._lock:
            self._cache[ip] = location
        return location

    def _do_resolve(self, ip: str) -> GeoLocation:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            logger.debug("Cannot geolocate malformed address %r", ip)
            return UNRESOLVED

        if is_private_ip(ip):
            return PRIVATE

        for entry in self.entries:
            if addr.version == entry.network.version and addr in entry.network:
                return entry.location
        return UNRESOLVED


def _float_or_none(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
