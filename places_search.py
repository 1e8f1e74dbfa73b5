#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations
import json, logging, math, os, sys
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import ConnectTimeoutError, ReadTimeoutError
from urllib3.util.retry import Retry

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

# ---------------- Endpoints / UA ----------------
OVERPASS_URL = "https://overpass-api.de/api/interpreter"
USER_AGENT = f"places-search/{__version__} (personal use) https://openstreetmap.org"
DEFAULT_RADIUS_M = 2000
DEFAULT_TIMEOUT_S = 25
DEFAULT_CATEGORY = "restaurant"
GEOMETRY_KINDS = ("node", "way", "relation")

ProgressFn = Callable[[float], None]

# ---------------- Errors ----------------
class PlacesError(Exception):
    """Base class for everything the search pipeline raises."""

class InvalidParameter(PlacesError, ValueError):
    """Bad input to the query builder; nothing was sent."""

class RemoteQueryFailed(PlacesError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class RemoteQueryTimeout(RemoteQueryFailed):
    pass

class MalformedResponse(PlacesError):
    pass

class SearchCancelled(PlacesError):
    pass

# ---------------- Config ----------------
def _env_number(name: str, default: float, cast=float) -> Any:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise InvalidParameter(f"{name} must be a number, got {raw!r}") from None

class Settings:
    def __init__(
        self,
        overpass_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        default_radius_m: Optional[float] = None,
        retries: Optional[int] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.overpass_url: str = overpass_url or os.getenv("PLACES_OVERPASS_URL") or OVERPASS_URL
        self.timeout_s: float = timeout_s if timeout_s is not None else _env_number("PLACES_TIMEOUT_S", DEFAULT_TIMEOUT_S)
        self.default_radius_m: float = (default_radius_m if default_radius_m is not None
                                        else _env_number("PLACES_DEFAULT_RADIUS_M", DEFAULT_RADIUS_M))
        self.retries: int = retries if retries is not None else _env_number("PLACES_RETRIES", 0, int)
        self.user_agent: str = user_agent or os.getenv("PLACES_USER_AGENT") or USER_AGENT
        if not _is_positive_number(self.timeout_s):
            raise InvalidParameter(f"timeout must be a positive number, got {self.timeout_s!r}")
        if not _is_positive_number(self.default_radius_m):
            raise InvalidParameter(f"default radius must be a positive number, got {self.default_radius_m!r}")
        if self.retries < 0:
            raise InvalidParameter(f"retries must be >= 0, got {self.retries!r}")

    def __repr__(self) -> str:
        return (f"Settings(overpass_url={self.overpass_url!r}, timeout_s={self.timeout_s!r}, "
                f"default_radius_m={self.default_radius_m!r}, retries={self.retries!r})")

# ---------------- Data model ----------------
@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float

    def validate(self) -> "Coordinate":
        for name, v, bound in (("latitude", self.lat, 90.0), ("longitude", self.lon, 180.0)):
            if not _is_number(v) or not math.isfinite(v):
                raise InvalidParameter(f"{name} must be a finite number, got {v!r}")
            if not -bound <= v <= bound:
                raise InvalidParameter(f"{name} {v!r} is outside [-{bound:g}, {bound:g}]")
        return self

@dataclass(frozen=True)
class SearchRequest:
    center: Coordinate
    radius_m: float
    category: str

    def validate(self) -> "SearchRequest":
        _check_center(self.center)
        if not _is_positive_number(self.radius_m):
            raise InvalidParameter(f"radius must be a finite number > 0, got {self.radius_m!r}")
        if not isinstance(self.category, str) or not self.category.strip():
            raise InvalidParameter(f"category must be a non-empty string, got {self.category!r}")
        return self

@dataclass(frozen=True)
class RawElement:
    """One Overpass element as returned, before normalization.

    Nodes carry ``lat``/``lon`` directly; ways and relations carry a nested
    ``center`` when the query asks for ``out center``.
    """
    id: Any
    type: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    center: Optional[Coordinate] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_json(cls, o: Any) -> "RawElement":
        if not isinstance(o, dict):
            raise MalformedResponse(f"element is not an object: {o!r}")
        if "id" not in o:
            raise MalformedResponse(f"element has no id: {o!r}")
        lat = lon = None
        if "lat" in o and "lon" in o and _is_finite(o["lat"]) and _is_finite(o["lon"]):
            lat, lon = float(o["lat"]), float(o["lon"])
        center = None
        c = o.get("center")
        if isinstance(c, dict) and "lat" in c and "lon" in c and _is_finite(c["lat"]) and _is_finite(c["lon"]):
            center = Coordinate(float(c["lat"]), float(c["lon"]))
        tags = o.get("tags")
        tags = {str(k): v for k, v in tags.items() if isinstance(v, str)} if isinstance(tags, dict) else {}
        return cls(id=o["id"], type=o.get("type"), lat=lat, lon=lon, center=center, tags=tags)

    def coordinate(self) -> Optional[Coordinate]:
        if self.lat is not None and self.lon is not None:
            return Coordinate(self.lat, self.lon)
        if self.center is not None:
            return self.center
        return None

@dataclass(frozen=True)
class PlaceRecord:
    id: Any
    coordinate: Coordinate
    title: str
    description: str
    category: str
    address: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "lat": self.coordinate.lat, "lon": self.coordinate.lon,
                "title": self.title, "description": self.description,
                "category": self.category, "address": self.address}

@dataclass(frozen=True)
class CategoryDescriptor:
    key: str
    label: str
    color: str

CATEGORIES: Tuple[CategoryDescriptor, ...] = (
    CategoryDescriptor("restaurant", "🍽️ Restaurants", "red"),
    CategoryDescriptor("cafe", "☕ Cafes", "orange"),
    CategoryDescriptor("hotel", "🏨 Hotels", "blue"),
    CategoryDescriptor("tourist_attraction", "🎯 Attractions", "green"),
    CategoryDescriptor("hospital", "🏥 Hospitals", "red"),
    CategoryDescriptor("pharmacy", "💊 Pharmacies", "green"),
    CategoryDescriptor("bank", "🏦 Banks", "blue"),
    CategoryDescriptor("fuel", "⛽ Fuel", "yellow"),
)
_CATEGORY_INDEX = {c.key: c for c in CATEGORIES}

def get_categories() -> Tuple[CategoryDescriptor, ...]:
    return CATEGORIES

def category_by_key(key: str) -> Optional[CategoryDescriptor]:
    return _CATEGORY_INDEX.get(key)

# ---------------- Utils ----------------
def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)

def _is_finite(v: Any) -> bool:
    return _is_number(v) and math.isfinite(v)

def _is_positive_number(v: Any) -> bool:
    return _is_finite(v) and v > 0

def _is_timeout(e: requests.RequestException) -> bool:
    # an exhausted urllib3 Retry wraps read timeouts in MaxRetryError -> requests.ConnectionError
    if isinstance(e, requests.Timeout):
        return True
    reason = getattr(e.args[0], "reason", None) if e.args else None
    return isinstance(reason, (ReadTimeoutError, ConnectTimeoutError)) or isinstance(e.__context__, ReadTimeoutError)

def _check_center(center: Any) -> Coordinate:
    if not isinstance(center, Coordinate):
        raise InvalidParameter(f"center must be a Coordinate, got {type(center).__name__}")
    return center.validate()

def escape_for_overpass_string(s: str) -> str:
    return s.replace("\\", "\\\\").replace('"', '\\"')

def _fmt_num(x: float) -> str:
    return str(int(x)) if float(x).is_integer() else repr(float(x))

def haversine_m(a: Coordinate, b: Coordinate) -> float:
    R = 6371008.8; p1, p2 = math.radians(a.lat), math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat); dl = math.radians(b.lon - a.lon)
    x = math.sin(dphi/2)**2 + math.cos(p1)*math.cos(p2)*math.sin(dl/2)**2
    return R*(2*math.asin(math.sqrt(x)))

def fmt_meters(x: float) -> str:
    return f"{x:.0f} m" if x < 1000 else f"{x/1000:.2f} km"

def osm_url(c: Coordinate) -> str:
    return f"https://www.openstreetmap.org/?mlat={c.lat:.6f}&mlon={c.lon:.6f}#map=18/{c.lat:.6f}/{c.lon:.6f}"

# ---------------- Query builder ----------------
def build_query(center: Coordinate, radius_m: float = DEFAULT_RADIUS_M,
                category: str = DEFAULT_CATEGORY, timeout_s: float = DEFAULT_TIMEOUT_S) -> str:
    """Overpass QL selecting nodes, ways and relations tagged ``amenity=<category>``
    within ``radius_m`` meters of ``center``. Ways and relations report their centroid."""
    SearchRequest(center, radius_m, category).validate()
    if not _is_positive_number(timeout_s):
        raise InvalidParameter(f"timeout must be a positive number, got {timeout_s!r}")
    cat = escape_for_overpass_string(category.strip())
    around = f"(around:{_fmt_num(radius_m)},{center.lat!r},{center.lon!r})"
    blocks = "".join(f'  {k}["amenity"="{cat}"]{around};\n' for k in GEOMETRY_KINDS)
    return f"[out:json][timeout:{_fmt_num(timeout_s)}];\n(\n{blocks});\nout center meta;"

# ---------------- HTTP session ----------------
def make_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    s.headers.update({"User-Agent": settings.user_agent, "Accept": "application/json"})
    retry = Retry(total=settings.retries, connect=settings.retries, read=settings.retries,
                  backoff_factor=0.2, status_forcelist=(429,500,502,503,504),
                  allowed_methods=frozenset(["POST"]), raise_on_status=False)
    adapter = HTTPAdapter(pool_connections=4, pool_maxsize=4, max_retries=retry)
    s.mount("https://", adapter); s.mount("http://", adapter)
    return s

# ---------------- Search client ----------------
class PlacesClient:
    def __init__(self, settings: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or Settings()
        self.session = session or make_session(self.settings)

    def get_categories(self) -> Tuple[CategoryDescriptor, ...]:
        return get_categories()

    def fetch_elements(self, query: str) -> List[Dict[str, Any]]:
        url = self.settings.overpass_url
        logger.debug("POST %s (%d bytes of QL, timeout %ss)", url, len(query), self.settings.timeout_s)
        try:
            resp = self.session.post(url, data={"data": query}, timeout=self.settings.timeout_s)
        except requests.RequestException as e:
            if _is_timeout(e):
                logger.warning("Overpass request to %s timed out after %ss", url, self.settings.timeout_s)
                raise RemoteQueryTimeout(f"Overpass request timed out after {self.settings.timeout_s}s") from e
            logger.warning("Overpass request to %s failed: %s", url, e)
            raise RemoteQueryFailed(f"Overpass request failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            logger.warning("Overpass returned HTTP %s from %s", resp.status_code, url)
            raise RemoteQueryFailed(f"Overpass returned HTTP {resp.status_code}", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponse("Overpass response is not valid JSON") from e
        if not isinstance(data, dict) or not isinstance(data.get("elements"), list):
            raise MalformedResponse("Overpass response has no 'elements' list")
        return data["elements"]

    def normalize_elements(self, elements: List[Any], category: str,
                           on_progress: Optional[ProgressFn] = None,
                           cancel: Optional[Event] = None) -> List[PlaceRecord]:
        """Map raw elements to place records in order, reporting ``(i+1)/N`` per element.

        Elements with neither a direct coordinate nor a center are dropped.
        """
        parsed = [RawElement.from_json(o) for o in elements]
        total = len(parsed)
        out: List[PlaceRecord] = []
        for i, el in enumerate(parsed):
            if cancel is not None and cancel.is_set():
                raise SearchCancelled(f"search cancelled after {i} of {total} elements")
            if on_progress is not None:
                on_progress((i + 1) / total)
            coord = el.coordinate()
            if coord is None:
                continue
            tags = el.tags
            if "name" in tags: title = tags["name"]
            else: title = f"{category} #{el.id}"
            if "cuisine" in tags: description = tags["cuisine"]
            elif "description" in tags: description = tags["description"]
            else: description = ""
            out.append(PlaceRecord(
                id=el.id,
                coordinate=coord,
                title=title,
                description=description,
                category=tags["amenity"] if "amenity" in tags else category,
                address=tags["addr:street"] if "addr:street" in tags else "",
            ))
        if total - len(out):
            logger.debug("Dropped %d of %d elements without a coordinate", total - len(out), total)
        return out

    def search_nearby(self, center: Coordinate, radius_m: Optional[float] = None,
                      category: str = DEFAULT_CATEGORY, on_progress: Optional[ProgressFn] = None,
                      cancel: Optional[Event] = None) -> List[PlaceRecord]:
        radius = self.settings.default_radius_m if radius_m is None else radius_m
        query = build_query(center, radius, category, timeout_s=self.settings.timeout_s)
        category = category.strip()
        if cancel is not None and cancel.is_set():
            raise SearchCancelled("search cancelled before the request was sent")
        elements = self.fetch_elements(query)
        places = self.normalize_elements(elements, category, on_progress=on_progress, cancel=cancel)
        logger.debug(
            "search_nearby: lat=%.6f lon=%.6f radius_m=%s category=%s got %d/%d places",
            center.lat, center.lon, radius, category, len(places), len(elements),
        )
        return places

_default_client: Optional[PlacesClient] = None
_default_lock = Lock()

def get_default_client() -> PlacesClient:
    global _default_client
    with _default_lock:
        if _default_client is None:
            _default_client = PlacesClient()
        return _default_client

def search_nearby(center: Coordinate, radius_m: Optional[float] = None,
                  category: str = DEFAULT_CATEGORY, on_progress: Optional[ProgressFn] = None,
                  cancel: Optional[Event] = None) -> List[PlaceRecord]:
    return get_default_client().search_nearby(center, radius_m, category, on_progress=on_progress, cancel=cancel)

# ---------------- Entrypoint ----------------
def _print_progress(fraction: float) -> None:
    sys.stderr.write(f"\rnormalizing… {fraction*100:5.1f}%")
    if fraction >= 1.0: sys.stderr.write("\n")
    sys.stderr.flush()

def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(prog="places-search", add_help=True,
                                     description="Find places near a point (OpenStreetMap / Overpass)")
    parser.add_argument("--lat", type=float, help="Latitude of the search center")
    parser.add_argument("--lon", type=float, help="Longitude of the search center")
    parser.add_argument("--radius", type=float, default=None, help="Radius in meters (default 2000)")
    parser.add_argument("--category", default=DEFAULT_CATEGORY, help="amenity tag, e.g. cafe, pharmacy")
    parser.add_argument("--endpoint", default=None, help="Overpass interpreter URL")
    parser.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("--progress", action="store_true", help="Show normalization progress on stderr")
    parser.add_argument("--list-categories", action="store_true", help="Print the category catalog and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.list_categories:
        for c in get_categories():
            print(f"{c.key}\t{c.label}\t{c.color}")
        return 0
    if args.lat is None or args.lon is None:
        parser.error("--lat and --lon are required")

    center = Coordinate(args.lat, args.lon)
    try:
        client = PlacesClient(Settings(overpass_url=args.endpoint, timeout_s=args.timeout))
        places = client.search_nearby(center, args.radius, args.category,
                                      on_progress=_print_progress if args.progress else None)
    except InvalidParameter as e:
        print(f"Invalid parameter: {e}", file=sys.stderr)
        return 2
    except PlacesError as e:
        print(f"Search failed: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps([dict(p.to_dict(), url=osm_url(p.coordinate)) for p in places], ensure_ascii=False, indent=2))
        return 0
    if not places:
        print(f"No {args.category} found nearby.")
        return 0
    for i, p in enumerate(places, 1):
        dist = fmt_meters(haversine_m(center, p.coordinate))
        print(f"{i:>3}  {p.title}  {p.address or '(no address)'}  {dist}  {p.coordinate.lat:.5f},{p.coordinate.lon:.5f}")
    return 0

if __name__ == "__main__":
    sys.exit(main())
