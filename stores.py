"""Query building and business rules for store listings.

Everything here works on plain values and pymongo collections passed in by the
caller; nothing reads the Flask request or the logged-in user.
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pymongo import DESCENDING, ReturnDocument

logger = logging.getLogger(__name__)

STORES_PER_PAGE = 4
SEARCH_LIMIT = 5
NEAR_LIMIT = 10
NEAR_MAX_DISTANCE = 10000
NEAR_FIELDS = ("slug", "name", "description", "location", "photo")
TOP_STORES_LIMIT = 10
COORDINATE_LIMITS = {"lng": 180, "lat": 90}


class OwnershipError(Exception):
    """Raised when someone other than the author tries to change a store."""


class ParseError(ValueError):
    """Raised when a request parameter cannot be turned into the expected type."""


# Pagination -----------------------------------------------------------------


@dataclass(frozen=True)
class Page:
    skip: int
    limit: int
    total_pages: int
    effective_page: int
    out_of_range: bool

    @property
    def redirect_page(self) -> int:
        return max(self.total_pages, 1)


@dataclass
class PageResult:
    items: List[Any]
    total_count: int
    page: Page


def parse_page(raw: Any) -> int:
    """Return a usable 1-based page number; anything odd becomes page 1."""
    try:
        page = int(raw)
    except (TypeError, ValueError):
        return 1
    return page if page > 0 else 1


def paginate(requested_page: Any, page_size: int, total_count: int) -> Page:
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    page = parse_page(requested_page)
    skip = (page - 1) * page_size
    total_pages = math.ceil(total_count / page_size)
    out_of_range = skip > 0 and skip >= total_count
    return Page(
        skip=skip,
        limit=page_size,
        total_pages=total_pages,
        effective_page=page,
        out_of_range=out_of_range,
    )


# Ownership ------------------------------------------------------------------


def assert_owner(resource_author_id: Any, acting_user_id: Any) -> None:
    if resource_author_id is None or str(resource_author_id) != str(acting_user_id):
        raise OwnershipError("You must own a store in order to edit it!")


# Hearts ---------------------------------------------------------------------


@dataclass
class HeartResult:
    op: str
    hearts: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "hearts": [str(h) for h in self.hearts]}


def toggle_favorite(current_favorites: Iterable[Any], target_id: Any) -> str:
    current = {str(fav) for fav in current_favorites}
    return "remove" if str(target_id) in current else "add"


def heart_toggle_update(store_id: Any) -> List[Dict[str, Any]]:
    # Pipeline update: the membership test and the write happen in one step.
    hearts = {"$ifNull": ["$hearts", []]}
    return [
        {
            "$set": {
                "hearts": {
                    "$cond": [
                        {"$in": [store_id, hearts]},
                        {"$filter": {"input": hearts, "cond": {"$ne": ["$$this", store_id]}}},
                        {"$concatArrays": [hearts, [store_id]]},
                    ]
                }
            }
        }
    ]


def apply_heart_toggle(users, user_id: Any, store_id: Any) -> HeartResult:
    before = users.find_one_and_update(
        {"_id": user_id},
        heart_toggle_update(store_id),
        return_document=ReturnDocument.BEFORE,
    )
    if before is None:
        raise LookupError(f"User {user_id} not found")
    previous = list(before.get("hearts") or [])
    op = toggle_favorite(previous, store_id)
    if op == "remove":
        hearts = [h for h in previous if str(h) != str(store_id)]
    else:
        hearts = previous + [store_id]
    logger.info("User %s %s heart on store %s", user_id, op, store_id)
    return HeartResult(op=op, hearts=hearts)


# Query assembly -------------------------------------------------------------


@dataclass
class StoreQuery:
    filter: Dict[str, Any] = field(default_factory=dict)
    projection: Optional[Dict[str, Any]] = None
    sort: List[Any] = field(default_factory=list)
    skip: int = 0
    limit: int = 0

    def run(self, collection):
        cursor = collection.find(self.filter, self.projection)
        if self.sort:
            cursor = cursor.sort(self.sort)
        if self.skip:
            cursor = cursor.skip(self.skip)
        if self.limit:
            cursor = cursor.limit(self.limit)
        return list(cursor)


def listing_query(page: Page) -> StoreQuery:
    return StoreQuery(sort=[("created", DESCENDING)], skip=page.skip, limit=page.limit)


def tag_query(tag: Optional[str]) -> StoreQuery:
    return StoreQuery(filter={"tags": tag if tag else {"$exists": True}})


def tags_list_pipeline() -> List[Dict[str, Any]]:
    return [
        {"$unwind": "$tags"},
        {"$group": {"_id": "$tags", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
    ]


def text_search_query(q: Optional[str]) -> StoreQuery:
    score = {"$meta": "textScore"}
    return StoreQuery(
        filter={"$text": {"$search": q or ""}},
        projection={"score": score},
        sort=[("score", score)],
        limit=SEARCH_LIMIT,
    )


def parse_coordinate(raw: Any, name: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ParseError(f"{name} must be a number, got {raw!r}") from None
    if not math.isfinite(value):
        raise ParseError(f"{name} must be a finite number, got {raw!r}")
    limit = COORDINATE_LIMITS.get(name)
    if limit is not None and abs(value) > limit:
        raise ParseError(f"{name} must be between -{limit} and {limit}, got {raw!r}")
    return value


def geo_search_query(lng: Any, lat: Any) -> StoreQuery:
    coordinates = [parse_coordinate(lng, "lng"), parse_coordinate(lat, "lat")]
    return StoreQuery(
        filter={
            "location": {
                "$near": {
                    "$geometry": {"type": "Point", "coordinates": coordinates},
                    "$maxDistance": NEAR_MAX_DISTANCE,
                }
            }
        },
        projection={name: 1 for name in NEAR_FIELDS},
        limit=NEAR_LIMIT,
    )


def top_stores_pipeline() -> List[Dict[str, Any]]:
    return [
        {
            "$lookup": {
                "from": "reviews",
                "localField": "_id",
                "foreignField": "store",
                "as": "reviews",
            }
        },
        {"$match": {"reviews.1": {"$exists": True}}},
        {
            "$project": {
                "photo": 1,
                "name": 1,
                "slug": 1,
                "review_count": {"$size": "$reviews"},
                "average_rating": {"$avg": "$reviews.rating"},
            }
        },
        {"$sort": {"average_rating": -1}},
        {"$limit": TOP_STORES_LIMIT},
    ]


# Slugs ----------------------------------------------------------------------


def slugify(value: Optional[str]) -> str:
    ascii_name = (
        unicodedata.normalize("NFKD", (value or "").lower())
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    return re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-") or "store"


def unique_slug(collection, name: str, exclude_id: Any = None) -> str:
    slug = slugify(name)
    query: Dict[str, Any] = {"slug": {"$regex": f"^{re.escape(slug)}(-[0-9]+)?$"}}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    taken = {doc.get("slug") for doc in collection.find(query, {"slug": 1})}
    if slug not in taken:
        return slug
    suffixes = [int(other.rsplit("-", 1)[1]) for other in taken if other and other != slug]
    return f"{slug}-{max(suffixes, default=1) + 1}"


# Store form -----------------------------------------------------------------


@dataclass
class StoreForm:
    name: str = ""
    description: str = ""
    tags: List[str] = field(default_factory=list)
    address: str = ""
    lng_raw: str = ""
    lat_raw: str = ""

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "StoreForm":
        getlist = getattr(form, "getlist", None)
        tags = getlist("tags") if getlist else form.get("tags") or []
        if isinstance(tags, str):
            tags = [tags]
        return cls(
            name=(form.get("name") or "").strip(),
            description=(form.get("description") or "").strip(),
            tags=sorted({t.strip() for t in tags if t and t.strip()}),
            address=(form.get("address") or "").strip(),
            lng_raw=(form.get("lng") or "").strip(),
            lat_raw=(form.get("lat") or "").strip(),
        )

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "StoreForm":
        location = doc.get("location") or {}
        coordinates = location.get("coordinates") or ["", ""]
        return cls(
            name=doc.get("name") or "",
            description=doc.get("description") or "",
            tags=list(doc.get("tags") or []),
            address=location.get("address") or "",
            lng_raw=str(coordinates[0]),
            lat_raw=str(coordinates[1]),
        )

    def errors(self) -> List[str]:
        problems = []
        if not self.name:
            problems.append("Please supply a store name!")
        if not self.address:
            problems.append("You must supply an address!")
        try:
            self.coordinates()
        except ParseError:
            problems.append("You must supply coordinates!")
        return problems

    def coordinates(self) -> List[float]:
        return [parse_coordinate(self.lng_raw, "lng"), parse_coordinate(self.lat_raw, "lat")]

    def to_document(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "tags": self.tags,
            "location": {
                "type": "Point",
                "coordinates": self.coordinates(),
                "address": self.address,
            },
        }
