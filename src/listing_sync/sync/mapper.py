"""Field mapping from remote listings onto local entities.

Pure functions only: everything here turns a ``RemoteRecord`` into the
values the record applier writes (slug, meta values, taxonomy names,
repeated social/amenity groups, tags).  No store access.
"""

from __future__ import annotations

import re
import unicodedata

from .models import RemoteRecord

TYPES_TAXONOMY = "partners_types"
CATEGORIES_TAXONOMY = "partners_categories"
REGIONS_TAXONOMY = "partners_regions"
TAXONOMIES = (TYPES_TAXONOMY, CATEGORIES_TAXONOMY, REGIONS_TAXONOMY)

# local meta key -> remote field
META_FIELDS: dict[str, str] = {
    "listing_id": "LISTINGID",
    "type_id": "TYPEID",
    "type": "TYPENAME",
    "cat_id": "CATID",
    "category": "CATNAME",
    "sub_cat_id": "SUBCATID",
    "sub_cat": "SUBCATNAME",
    "region_id": "REGIONID",
    "region": "REGION",
    "acct_id": "ACCTID",
    "acct_status": "ACCTSTATUS",
    "sort_company": "SORTCOMPANY",
    "primary_contact_title": "PRIMARYCONTACTTITLE",
    "primary_contact_fullname": "PRIMARYCONTACTFULLNAME",
    "logo_file": "LOGOFILE",
    "photo_file": "PHOTOFILE",
    "phone": "PHONE",
    "alt_phone": "ALTPHONE",
    "toll_free": "TOLLFREE",
    "fax": "FAX",
    "email": "EMAIL",
    "web_url": "WEBURL",
    "addr1": "ADDR1",
    "addr2": "ADDR2",
    "addr3": "ADDR3",
    "city": "CITY",
    "state": "STATE",
    "zip": "ZIP",
    "latitude": "LATITUDE",
    "longitude": "LONGITUDE",
    "search_keywords": "LISTINGKEYWORDS",
}

VISITORS_GUIDE = "Visitors Guide"

_TYPE_KEYWORDS = (
    ("membership", "Membership Directory"),
    ("meeting", "Meeting Planners Guide"),
    ("travel", "Travel Planners Guide"),
)

_TYPE_SUFFIXES = {
    "Membership Directory": "-pd",
    "Meeting Planners Guide": "-mp",
    "Travel Planners Guide": "-tpg",
}

VIDEO_TYPE_ID = 10

SOCIAL_PREFIX = "social_media"
AMENITY_PREFIX = "amenities"


def slugify(text: str) -> str:
    """Lower-case ASCII slug with dash separators."""
    normalized = (
        unicodedata.normalize("NFKD", text)
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    normalized = normalized.lower().replace("&", " ")
    normalized = re.sub(r"[^a-z0-9\s_-]", "", normalized)
    return re.sub(r"[\s_-]+", "-", normalized).strip("-")


def normalize_type(type_name: str) -> str:
    """Map a listing type onto one of the four directory guides."""
    lowered = (type_name or "").lower()
    for keyword, label in _TYPE_KEYWORDS:
        if keyword in lowered:
            return label
    return VISITORS_GUIDE


def type_suffix(type_name: str) -> str:
    """Slug suffix identifying the guide a listing belongs to."""
    return _TYPE_SUFFIXES.get(normalize_type(type_name), "")


def type_name(record: RemoteRecord) -> str:
    attrs = record.attributes
    return attrs.get("TYPENAME") or attrs.get("LISTINGTYPENAME", "")


def entity_slug(record: RemoteRecord) -> str:
    slug = slugify(record.name)
    name = type_name(record)
    if name:
        slug += type_suffix(name)
    return slug


def build_meta(record: RemoteRecord) -> dict[str, str]:
    """Flat meta values for every mapped field (missing fields map to "")."""
    attrs = dict(record.attributes)
    if not attrs.get("TYPENAME") and attrs.get("LISTINGTYPENAME"):
        attrs["TYPENAME"] = attrs["LISTINGTYPENAME"]
    if not attrs.get("TYPEID") and attrs.get("LISTINGTYPEID"):
        attrs["TYPEID"] = attrs["LISTINGTYPEID"]
    return {key: attrs.get(field, "") for key, field in META_FIELDS.items()}


def social_links(record: RemoteRecord) -> list[tuple[str, str]]:
    """(service, value) pairs for URL-type social entries and videos.

    Video links are declared in the image list with type id 10.
    """
    links: list[tuple[str, str]] = []
    for item in record.social:
        value = _str(item.get("VALUE"))
        service = _str(item.get("SERVICE"))
        if not value:
            continue
        if _str(item.get("FIELDNAME")) != "URL" and service != "OpenTable":
            continue
        links.append((service, value))
    for media in record.images:
        if media.type_id.isdigit() and int(media.type_id) == VIDEO_TYPE_ID:
            if isinstance(media.media_file, str) and media.media_file:
                links.append((media.type_name, media.media_file))
    return links


def amenities(record: RemoteRecord) -> list[tuple[str, str]]:
    """(name, value) pairs of amenities that carry a value."""
    pairs = []
    for item in record.amenities:
        value = _str(item.get("VALUE"))
        if value:
            pairs.append((_str(item.get("NAME")), value))
    return pairs


def tags(record: RemoteRecord) -> str:
    """Comma-separated tag source names."""
    return ",".join(
        _str(item.get("SOURCENAME"))
        for item in record.tags
        if _str(item.get("SOURCENAME"))
    )


def group_meta(
    prefix: str, pairs: list[tuple[str, str]], name_key: str, value_key: str
) -> dict[str, str]:
    """Flatten repeated (name, value) pairs into indexed meta keys.

    >>> group_meta("amenities", [("Wifi", "Yes")], "amenity_name", "amenity_value")
    {'amenities_0_amenity_name': 'Wifi', 'amenities_0_amenity_value': 'Yes', 'amenities': '1'}
    """
    meta: dict[str, str] = {}
    for index, (name, value) in enumerate(pairs):
        meta[f"{prefix}_{index}_{name_key}"] = name
        meta[f"{prefix}_{index}_{value_key}"] = value
    if pairs:
        meta[prefix] = str(len(pairs))
    return meta


def _str(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""
