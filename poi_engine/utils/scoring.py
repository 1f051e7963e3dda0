"""POI quality scoring based on OSM tags.

Places with Wikipedia/Wikidata links or heritage status are notable; some
categories (viewpoints, monuments, castles...) are worth showing first.
"""

from poi_engine.models import POI

PREMIUM_TYPES = frozenset(
    {"viewpoint", "monument", "castle", "museum", "cathedral", "lighthouse"}
)

# Types counted as high value even without a wiki link
LANDMARK_TYPES = frozenset({"viewpoint", "monument"})

DEFAULT_NAME = "Point of interest"


def has_wiki(poi: POI) -> bool:
    return bool(poi.tags.get("wikipedia") or poi.tags.get("wikidata"))


def is_high_value(poi: POI) -> bool:
    """Heritage or wiki-linked POI, or a landmark category."""
    return bool(poi.tags.get("heritage")) or has_wiki(poi) or poi.type in LANDMARK_TYPES


def relevance_score(poi: POI) -> int:
    """Score used to rank search results and to pick between duplicates."""
    score = 0
    if has_wiki(poi):
        score += 15
    if poi.tags.get("heritage"):
        score += 20
    if poi.tags.get("website"):
        score += 5
    if poi.tags.get("image") or poi.tags.get("photo"):
        score += 10
    if poi.type in PREMIUM_TYPES:
        score += 10
    if poi.name and poi.name.strip() and poi.name != DEFAULT_NAME:
        score += 5
    return score


def representative_score(poi: POI) -> int:
    """Score used to pick the representative POIs of a cluster."""
    score = 0
    if poi.tags.get("heritage"):
        score += 20
    if has_wiki(poi):
        score += 15
    if poi.tags.get("tourism"):
        score += 10
    if poi.type in PREMIUM_TYPES:
        score += 15
    if poi.name and poi.name.strip():
        score += 5
    if poi.tags.get("image") or poi.tags.get("photo"):
        score += 10
    return score
