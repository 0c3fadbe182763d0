"""
Proximity search over in-memory candidates.

Everything here is pure: callers fetch users or posts, hand them over as
candidates and get back the ones within a radius, closest first. Swapping the
full scan for a geospatial query only changes the fetching side.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

EARTH_RADIUS_KM = 6371


class InvalidCenterCoordinate(ValueError):
    """The reference point of a radius search is missing or malformed."""


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    def __str__(self) -> str:
        return f"{self.lat},{self.lng}"


@dataclass(frozen=True)
class Candidate:
    """Anything with an id and an optional "lat,lng" string."""

    id: str
    gps: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_document(cls, doc: Dict[str, Any], id_field: str = "_id", gps_field: str = "gps") -> "Candidate":
        return cls(id=str(doc.get(id_field)), gps=doc.get(gps_field), payload=doc)


@dataclass(frozen=True)
class ProximityResult:
    candidate: Candidate
    distance_km: float

    @property
    def id(self) -> str:
        return self.candidate.id


@dataclass(frozen=True)
class Page:
    items: List[ProximityResult]
    page: int
    page_size: int
    total_items: int
    total_pages: int


def parse_coordinate(raw: Optional[str]) -> Optional[Coordinate]:
    """Parse "lat,lng" into a Coordinate, None when it is not usable"""
    if not raw or not isinstance(raw, str):
        return None

    parts = raw.split(",")
    if len(parts) != 2:
        return None

    try:
        lat, lng = (float(part.strip()) for part in parts)
    except ValueError:
        return None

    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    # Out-of-range values are kept, they just produce odd distances.
    return Coordinate(lat, lng)


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Calculate distance between two points in kilometers"""
    lat1_rad = math.radians(a.lat)
    lon1_rad = math.radians(a.lng)
    lat2_rad = math.radians(b.lat)
    lon2_rad = math.radians(b.lng)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    # Rounding can push h just past 1 for antipodal points
    h = min(1.0, max(0.0, h))
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_KM * c


def _resolve_center(center: Union[Coordinate, str, None]) -> Coordinate:
    if isinstance(center, Coordinate):
        if math.isfinite(center.lat) and math.isfinite(center.lng):
            return center
        raise InvalidCenterCoordinate(f"Center coordinate is not finite: {center}")

    parsed = parse_coordinate(center)
    if parsed is None:
        raise InvalidCenterCoordinate(f"Center coordinate is not a valid 'lat,lng' string: {center!r}")
    return parsed


def find_within_radius(
    candidates: Iterable[Candidate],
    center: Union[Coordinate, str],
    radius_km: float,
) -> List[ProximityResult]:
    """
    Return the candidates within radius_km of center, closest first.

    Candidates without a usable location are skipped. Equal distances keep
    their input order.
    """
    origin = _resolve_center(center)
    if not math.isfinite(radius_km) or radius_km < 0:
        raise ValueError(f"radius_km must be a non-negative number, got {radius_km!r}")

    results = []
    for candidate in candidates:
        point = parse_coordinate(candidate.gps)
        if point is None:
            continue

        distance = distance_km(origin, point)
        if math.isfinite(distance) and distance <= radius_km:
            results.append(ProximityResult(candidate, distance))

    # sorted() is stable
    return sorted(results, key=lambda result: result.distance_km)


def total_pages(total_items: int, page_size: int) -> int:
    return max(1, math.ceil(total_items / page_size))


def paginate(results: Sequence[ProximityResult], page: int, page_size: int) -> Page:
    if page_size < 1:
        raise ValueError(f"page_size must be at least 1, got {page_size}")

    page = max(int(page), 1)
    start = (page - 1) * page_size

    return Page(
        items=list(results[start:start + page_size]),
        page=page,
        page_size=page_size,
        total_items=len(results),
        total_pages=total_pages(len(results), page_size),
    )


def exclude_self(candidates: Iterable, self_id: Optional[str]) -> list:
    """Drop every entry whose id equals self_id"""
    if not self_id:
        return list(candidates)
    self_id = str(self_id)
    return [candidate for candidate in candidates if candidate.id != self_id]
