"""Query-string encoding for FHIR search requests."""
from typing import Any, Mapping, Optional
from urllib.parse import urlencode


def _is_unset(value: Any) -> bool:
    # 0 doubles as "no count" for _count-style parameters; False is a real value
    if value is None or value == "":
        return True
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float)) and value == 0


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_query(filters: Optional[Mapping[str, Any]] = None) -> str:
    """
    Encode search filters as a form-encoded query string.

    Keys keep their insertion order and spaces become '+'. Keys whose value is
    None, an empty string or numeric 0 are left out entirely.

    Examples:
        >>> encode_query({"name": "John Doe", "gender": "male", "_count": 10})
        'name=John+Doe&gender=male&_count=10'
        >>> encode_query({"name": "John", "gender": None, "_count": 0})
        'name=John'
    """
    if not filters:
        return ""
    pairs = [(key, _render(value)) for key, value in filters.items() if not _is_unset(value)]
    return urlencode(pairs)
