"""Version parsing, ordering and partial matching."""

import re
from datetime import date, datetime
from typing import Iterable, Optional

from mcp_python_runtime.errors import InvalidVersionError
from mcp_python_runtime.types import Version

VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)(?:\.(\d+))?(?:([a-zA-Z]+)(\d+)?)?$")
ASSET_VERSION_PATTERN = re.compile(r"(?:cpython|python)-(\d+\.\d+\.\d+)", re.IGNORECASE)


def parse_version(value: Optional[str]) -> Version:
    """Parse `M.m[.p][tagN]`; a missing patch marks the version partial."""
    if value is None or not value.strip():
        raise InvalidVersionError(value)

    match = VERSION_PATTERN.match(value.strip())
    if not match:
        raise InvalidVersionError(value)

    major, minor, patch, pre_tag, pre_num = match.groups()
    return Version(
        major=int(major),
        minor=int(minor),
        patch=int(patch) if patch is not None else 0,
        pre_tag=pre_tag,
        pre_num=int(pre_num) if pre_num is not None else None,
        partial=patch is None,
    )


def is_valid_version(value: Optional[str]) -> bool:
    try:
        parse_version(value)
        return True
    except InvalidVersionError:
        return False


def compare_versions(a: str | Version, b: str | Version) -> int:
    """Three-way compare on (major, minor, patch); pre-release tags are ignored."""
    left = a if isinstance(a, Version) else parse_version(a)
    right = b if isinstance(b, Version) else parse_version(b)
    return (left.key > right.key) - (left.key < right.key)


def normalize_version(value: str | Version) -> str:
    """Always three components, e.g. "3.12" -> "3.12.0"."""
    version = value if isinstance(value, Version) else parse_version(value)
    return str(version)


def is_partial(value: str) -> bool:
    return parse_version(value).partial


def matches_partial(full: str | Version, partial: str | Version) -> bool:
    """Same major and minor."""
    left = full if isinstance(full, Version) else parse_version(full)
    right = partial if isinstance(partial, Version) else parse_version(partial)
    return left.major == right.major and left.minor == right.minor


def version_matches(candidate: str, requested: str) -> bool:
    """Partial requests match by major.minor, full requests by the numeric triple."""
    wanted = parse_version(requested)
    if wanted.partial:
        return matches_partial(candidate, wanted)
    return compare_versions(candidate, wanted) == 0


def select_best_match(candidates: Iterable[str], requested: str) -> Optional[str]:
    """Highest candidate matching `requested`; latest patch wins."""
    matching = [c for c in candidates if is_valid_version(c) and version_matches(c, requested)]
    if not matching:
        return None
    return max(matching, key=lambda c: parse_version(c).key)


def sort_versions(versions: Iterable[str], descending: bool = True) -> list[str]:
    unique = {v for v in versions if is_valid_version(v)}
    return sorted(unique, key=lambda v: parse_version(v).key, reverse=descending)


def extract_version_from_asset(asset_name: str) -> Optional[str]:
    """Version embedded in a distribution file name, if any."""
    match = ASSET_VERSION_PATTERN.search(asset_name)
    return match.group(1) if match else None


UNKNOWN_BUILD_DATE = "unknown"
COMPACT_DATE_PATTERN = re.compile(r"\d{8}")
DASHED_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")


def normalize_build_date(value: Optional[str | date]) -> Optional[str]:
    """Canonical `YYYY-MM-DD`, or "unknown"; accepts compact and dashed strings or dates."""
    if value is None:
        return None
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")

    text = value.strip()
    if text.lower() == UNKNOWN_BUILD_DATE:
        return UNKNOWN_BUILD_DATE
    compact = text.replace("-", "")
    if not re.fullmatch(r"\d{8}", compact):
        raise ValueError(f"Invalid build date: {value!r}")
    parsed = datetime.strptime(compact, "%Y%m%d")
    return parsed.strftime("%Y-%m-%d")


def compact_build_date(value: Optional[str | date]) -> Optional[str]:
    """`YYYYMMDD` form used in directory names and tag matching."""
    normalized = normalize_build_date(value)
    if normalized is None or normalized == UNKNOWN_BUILD_DATE:
        return normalized
    return normalized.replace("-", "")


def extract_build_date(tag: str) -> Optional[str]:
    """Date embedded in a release tag, or None."""
    if match := COMPACT_DATE_PATTERN.search(tag):
        candidate = match.group(0)
    elif match := DASHED_DATE_PATTERN.search(tag):
        candidate = match.group(0)
    else:
        return None
    try:
        return normalize_build_date(candidate)
    except ValueError:
        return None
