"""Data residency routing.

Resolution order:

1. Explicit subject mapping recorded in the mapping store
2. Structured data: country fields, phone country code, email ccTLD
3. Request context: IP geolocation, then Accept-Language

Nothing resolves to a default region. When every signal is missing or
ambiguous the router raises ``RegionUndetermined``.
"""

import ipaddress
import re
from collections import OrderedDict
from typing import Any, Protocol

import httpx
import structlog

from privata.compliance.audit import AuditSink
from privata.config import Settings, get_settings
from privata.db.base import CacheAdapter, StorageAdapter, StoreOptions
from privata.exceptions import RegionUndetermined, ResidencyViolation
from privata.models.audit import AuditAction
from privata.models.base import utc_now
from privata.models.region import Region, RequestContext

logger = structlog.get_logger(__name__)


# =============================================================================
# Country tables
# =============================================================================

_EU = {
    # EU member states
    "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR", "DE", "GR",
    "HU", "IE", "IT", "LV", "LT", "LU", "MT", "NL", "PL", "PT", "RO", "SK",
    "SI", "ES", "SE",
    # EEA and adequacy-aligned neighbours kept in the EU region
    "IS", "LI", "NO", "CH", "GB",
}
_US = {"US", "CA", "MX", "PR"}
_APAC = {
    "AU", "NZ", "JP", "KR", "CN", "HK", "MO", "TW", "SG", "MY", "TH", "VN",
    "PH", "ID", "IN", "PK", "BD", "LK", "NP", "KH", "LA", "MM", "BN", "MN",
}

COUNTRY_REGIONS: dict[str, Region] = {
    **{code: Region.EU for code in _EU},
    **{code: Region.US for code in _US},
    **{code: Region.APAC for code in _APAC},
}

_ISO3 = {
    "AUT": "AT", "BEL": "BE", "DEU": "DE", "DNK": "DK", "ESP": "ES", "FIN": "FI",
    "FRA": "FR", "GBR": "GB", "GRC": "GR", "IRL": "IE", "ITA": "IT", "NLD": "NL",
    "NOR": "NO", "POL": "PL", "PRT": "PT", "SWE": "SE", "CHE": "CH",
    "USA": "US", "CAN": "CA", "MEX": "MX",
    "AUS": "AU", "NZL": "NZ", "JPN": "JP", "KOR": "KR", "CHN": "CN", "SGP": "SG",
    "IND": "IN", "HKG": "HK", "TWN": "TW",
}

_COUNTRY_NAMES = {
    "united states": "US", "united states of america": "US", "usa": "US",
    "canada": "CA", "mexico": "MX",
    "united kingdom": "GB", "great britain": "GB", "england": "GB", "uk": "GB",
    "germany": "DE", "deutschland": "DE", "france": "FR", "spain": "ES",
    "españa": "ES", "italy": "IT", "italia": "IT", "netherlands": "NL",
    "belgium": "BE", "austria": "AT", "ireland": "IE", "portugal": "PT",
    "poland": "PL", "sweden": "SE", "denmark": "DK", "finland": "FI",
    "greece": "GR", "norway": "NO", "switzerland": "CH",
    "australia": "AU", "new zealand": "NZ", "japan": "JP", "south korea": "KR",
    "korea": "KR", "china": "CN", "hong kong": "HK", "taiwan": "TW",
    "singapore": "SG", "india": "IN", "malaysia": "MY", "thailand": "TH",
    "vietnam": "VN", "indonesia": "ID", "philippines": "PH",
}

# Dialing codes, matched longest prefix first.
PHONE_PREFIXES: dict[str, Region] = {
    "1": Region.US,
    # Europe
    "30": Region.EU, "31": Region.EU, "32": Region.EU, "33": Region.EU,
    "34": Region.EU, "36": Region.EU, "39": Region.EU, "40": Region.EU,
    "41": Region.EU, "43": Region.EU, "44": Region.EU, "45": Region.EU,
    "46": Region.EU, "47": Region.EU, "48": Region.EU, "49": Region.EU,
    "351": Region.EU, "352": Region.EU, "353": Region.EU, "354": Region.EU,
    "356": Region.EU, "357": Region.EU, "358": Region.EU, "359": Region.EU,
    "370": Region.EU, "371": Region.EU, "372": Region.EU, "385": Region.EU,
    "386": Region.EU, "420": Region.EU, "421": Region.EU, "423": Region.EU,
    # Asia-Pacific
    "60": Region.APAC, "61": Region.APAC, "62": Region.APAC, "63": Region.APAC,
    "64": Region.APAC, "65": Region.APAC, "66": Region.APAC, "81": Region.APAC,
    "82": Region.APAC, "84": Region.APAC, "86": Region.APAC, "91": Region.APAC,
    "92": Region.APAC, "852": Region.APAC, "853": Region.APAC, "855": Region.APAC,
    "856": Region.APAC, "880": Region.APAC, "886": Region.APAC,
}

# Generic TLDs (.com, .org) carry no residency signal.
_TLD_ALIASES = {"UK": "GB", "EU": "EU"}

# Primary language subtags that identify a region on their own. English,
# Spanish and Portuguese are spoken across regions and need a country subtag.
LANGUAGE_REGIONS: dict[str, Region] = {
    "de": Region.EU, "fr": Region.EU, "it": Region.EU, "nl": Region.EU,
    "pl": Region.EU, "sv": Region.EU, "da": Region.EU, "fi": Region.EU,
    "el": Region.EU, "cs": Region.EU, "sk": Region.EU, "hu": Region.EU,
    "ro": Region.EU, "bg": Region.EU, "hr": Region.EU, "sl": Region.EU,
    "et": Region.EU, "lv": Region.EU, "lt": Region.EU, "ga": Region.EU,
    "mt": Region.EU, "nb": Region.EU, "no": Region.EU,
    "ja": Region.APAC, "ko": Region.APAC, "zh": Region.APAC, "th": Region.APAC,
    "vi": Region.APAC, "id": Region.APAC, "ms": Region.APAC, "hi": Region.APAC,
}

_PHONE_DIGITS = re.compile(r"\D")


def region_for_country(value: Any) -> Region | None:
    """Map an ISO-2, ISO-3 or common country name to a region."""
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    code = raw.upper()
    if code in COUNTRY_REGIONS:
        return COUNTRY_REGIONS[code]
    if code in _ISO3:
        return COUNTRY_REGIONS.get(_ISO3[code])
    name = _COUNTRY_NAMES.get(raw.lower())
    return COUNTRY_REGIONS.get(name) if name else None


def region_for_phone(value: Any) -> Region | None:
    """Region from an international phone number (``+49 …`` or ``0049 …``)."""
    if not isinstance(value, str):
        return None
    number = value.strip()
    if number.startswith("+"):
        digits = _PHONE_DIGITS.sub("", number)
    elif number.startswith("00"):
        digits = _PHONE_DIGITS.sub("", number)[2:]
    else:
        # National format has no country code.
        return None
    for length in (3, 2, 1):
        region = PHONE_PREFIXES.get(digits[:length])
        if region is not None:
            return region
    return None


def region_for_email(value: Any) -> Region | None:
    """Region from the country-code TLD of an email domain."""
    if not isinstance(value, str) or "@" not in value:
        return None
    tld = value.rsplit("@", 1)[1].rsplit(".", 1)[-1].strip().upper()
    if len(tld) != 2:
        return None
    tld = _TLD_ALIASES.get(tld, tld)
    if tld == "EU":
        return Region.EU
    return COUNTRY_REGIONS.get(tld)


def region_for_language(header: str | None) -> Region | None:
    """Region from the highest-priority Accept-Language entry that maps."""
    if not header:
        return None
    entries = []
    for position, part in enumerate(header.split(",")):
        tag, _, params = part.strip().partition(";")
        if not tag or tag == "*":
            continue
        quality = 1.0
        if params.strip().startswith("q="):
            try:
                quality = float(params.strip()[2:])
            except ValueError:
                quality = 0.0
        entries.append((-quality, position, tag.strip()))

    for _, _, tag in sorted(entries):
        subtags = tag.replace("_", "-").split("-")
        if len(subtags) > 1 and len(subtags[1]) == 2:
            region = COUNTRY_REGIONS.get(subtags[1].upper())
            if region is not None:
                return region
        region = LANGUAGE_REGIONS.get(subtags[0].lower())
        if region is not None:
            return region
    return None


# =============================================================================
# IP geolocation
# =============================================================================


class GeoLocator(Protocol):
    """Resolve an IP address to an ISO country code."""

    async def country_for(self, ip_address: str) -> str | None: ...


def is_public_ip(value: str) -> bool:
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return False
    return address.is_global


class HttpGeoLocator:
    """GeoIP lookups against an HTTP JSON endpoint.

    ``url_template`` contains an ``{ip}`` placeholder; the response must carry
    the country as ``country_code``, ``countryCode`` or ``country``.
    """

    def __init__(
        self,
        url_template: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.url_template = url_template or self.settings.geoip_url
        if not self.url_template or "{ip}" not in self.url_template:
            raise ValueError("GeoIP url must contain an {ip} placeholder")
        self.timeout = timeout or self.settings.geoip_timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def country_for(self, ip_address: str) -> str | None:
        if not is_public_ip(ip_address):
            return None
        client = await self._get_client()
        try:
            response = await client.get(
                self.url_template.format(ip=ip_address), timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("GeoIP lookup failed", error=str(e))
            return None

        if not isinstance(data, dict):
            return None
        for key in ("country_code", "countryCode", "country"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Router
# =============================================================================


class RegionRouter:
    """Resolve and record the residency region of data subjects."""

    MODEL = "subject_region"
    CACHE_PREFIX = "region:"

    def __init__(
        self,
        store: StorageAdapter,
        audit: AuditSink,
        cache: CacheAdapter | None = None,
        locator: GeoLocator | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.audit = audit
        self.cache = cache
        self.settings = settings or get_settings()
        if locator is None and self.settings.geoip_url:
            locator = HttpGeoLocator(settings=self.settings)
        self.locator = locator
        # Per-process LRU of resolved addresses so repeated lookups never flip.
        # Misses are not kept: a failed lookup is retried on the next request.
        self._ip_regions: OrderedDict[str, Region] = OrderedDict()

    def _opts(self) -> StoreOptions:
        return StoreOptions(model=self.MODEL, consistency="strong")

    def _cache_key(self, subject_id: str) -> str:
        return f"{self.CACHE_PREFIX}{subject_id}"

    async def resolve(
        self,
        subject_id: str | None = None,
        data: dict[str, Any] | None = None,
        context: RequestContext | None = None,
        *,
        refresh: bool = False,
    ) -> Region:
        """Resolve the region for a subject, payload or request.

        Args:
            subject_id: Subject whose recorded mapping takes priority
            data: Structured payload (country, address, phone, email)
            context: Inbound request metadata
            refresh: Bypass the mapping cache

        Returns:
            Resolved region

        Raises:
            RegionUndetermined: If no signal maps to a region
        """
        signals: list[str] = []

        if subject_id:
            signals.append("subject-mapping")
            mapped = await self._mapped_region(subject_id, data, context, refresh)
            if mapped is not None:
                return mapped

        inferred = await self.infer(data, context, signals)
        if inferred is not None:
            return inferred

        logger.warning("Region undetermined", subject_id=subject_id, signals=signals)
        raise RegionUndetermined(
            f"No residency signal resolved (tried: {', '.join(signals) or 'none'})",
            signals=signals,
        )

    async def infer(
        self,
        data: dict[str, Any] | None = None,
        context: RequestContext | None = None,
        signals: list[str] | None = None,
    ) -> Region | None:
        """Infer a region from data, then context. None when nothing maps."""
        signals = signals if signals is not None else []
        if data:
            region = self.infer_from_data(data, signals)
            if region is not None:
                return region
        if context is not None:
            return await self.infer_from_context(context, signals)
        return None

    def infer_from_data(self, data: dict[str, Any], signals: list[str] | None = None) -> Region | None:
        signals = signals if signals is not None else []
        address = data.get("address") if isinstance(data.get("address"), dict) else {}
        for value in (
            data.get("country"),
            data.get("country_code"),
            data.get("countryCode"),
            address.get("country"),
            address.get("country_code"),
        ):
            if value is not None:
                signals.append("country")
                region = region_for_country(value)
                if region is not None:
                    return region

        for key in ("phone", "phone_number", "mobile"):
            if data.get(key):
                signals.append("phone")
                region = region_for_phone(data[key])
                if region is not None:
                    return region

        if data.get("email"):
            signals.append("email")
            return region_for_email(data["email"])
        return None

    async def infer_from_context(
        self, context: RequestContext, signals: list[str] | None = None
    ) -> Region | None:
        signals = signals if signals is not None else []
        if context.ip_address and self.locator is not None:
            signals.append("ip")
            region = await self._region_for_ip(context.ip_address)
            if region is not None:
                return region

        language = context.header("accept-language")
        if language:
            signals.append("accept-language")
            return region_for_language(language)
        return None

    async def _region_for_ip(self, ip_address: str) -> Region | None:
        if ip_address in self._ip_regions:
            self._ip_regions.move_to_end(ip_address)
            return self._ip_regions[ip_address]
        country = await self.locator.country_for(ip_address)
        region = region_for_country(country) if country else None
        if region is not None:
            self._ip_regions[ip_address] = region
            while len(self._ip_regions) > self.settings.geoip_memo_size:
                self._ip_regions.popitem(last=False)
        return region

    async def _mapped_region(
        self,
        subject_id: str,
        data: dict[str, Any] | None,
        context: RequestContext | None,
        refresh: bool,
    ) -> Region | None:
        cached = None if refresh else await self._cache_get(subject_id)
        if cached is not None:
            fresh = await self.infer(data, context)
            if fresh is None or fresh == cached:
                return cached
            # Cache and fresh signal disagree: only the store is trusted.
            logger.warning(
                "Cached region disagrees with inference, revalidating",
                subject_id=subject_id,
                cached=cached.value,
                inferred=fresh.value,
            )

        stored = await self.lookup(subject_id)
        if stored is None:
            if cached is not None:
                await self._cache_delete(subject_id)
            return None
        await self._cache_set(subject_id, stored)
        return stored

    async def lookup(self, subject_id: str) -> Region | None:
        """Recorded mapping straight from the store."""
        row = await self.store.find_by_id(subject_id, self._opts())
        return Region(row["region"]) if row else None

    async def assign(
        self,
        subject_id: str,
        region: Region | str,
        *,
        migrate: bool = False,
        actor_id: str | None = None,
    ) -> Region:
        """Record the subject's region.

        Re-assigning the same region is a no-op. Moving a subject to another
        region requires ``migrate=True``.

        Raises:
            ResidencyViolation: On an unrequested change of region
        """
        region = Region(region)
        current = await self.lookup(subject_id)
        if current == region:
            await self._cache_set(subject_id, region)
            return region
        if current is not None and not migrate:
            raise ResidencyViolation(subject_id, current.value, region.value)

        record = {
            "id": subject_id,
            "subject_id": subject_id,
            "region": region.value,
            "previous_region": current.value if current else None,
            "assigned_at": utc_now(),
        }
        opts = self._opts()
        tx = await self.store.begin(opts)
        tx_opts = opts.with_transaction(tx)
        try:
            if current is None:
                await self.store.create(record, tx_opts)
            else:
                await self.store.update(subject_id, record, tx_opts)
            await self.audit.record(
                AuditAction.REGION_ASSIGNED,
                entity_type=self.MODEL,
                entity_id=subject_id,
                subject_id=subject_id,
                actor_id=actor_id,
                region=region.value,
                details={
                    "region": region.value,
                    "previous_region": current.value if current else None,
                    "migrated": current is not None,
                },
            )
        except BaseException:
            await self.store.rollback(tx)
            raise
        await self.store.commit(tx)

        await self._cache_set(subject_id, region)
        logger.info(
            "Subject region assigned",
            subject_id=subject_id,
            region=region.value,
            previous=current.value if current else None,
        )
        return region

    # Cache access is best effort; the store is authoritative.

    async def _cache_get(self, subject_id: str) -> Region | None:
        if self.cache is None:
            return None
        try:
            value = await self.cache.get(self._cache_key(subject_id))
            return Region(value) if value else None
        except Exception as e:
            logger.warning("Region cache read failed", subject_id=subject_id, error=str(e))
            return None

    async def _cache_set(self, subject_id: str, region: Region) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(
                self._cache_key(subject_id),
                region.value,
                ttl=self.settings.region_cache_ttl_seconds,
            )
        except Exception as e:
            logger.warning("Region cache write failed", subject_id=subject_id, error=str(e))

    async def _cache_delete(self, subject_id: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.delete(self._cache_key(subject_id))
        except Exception as e:
            logger.warning("Region cache delete failed", subject_id=subject_id, error=str(e))
