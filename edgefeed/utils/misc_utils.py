# edgefeed/utils/misc_utils.py
import re
import hashlib
import uuid
from typing import Any


def _fragment(value: Any) -> str:
    # Keep the sign of numeric lines so +3.5 and -3.5 stay distinct
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        text = f"{value:g}"
        return text.replace("-", "m").replace("+", "p").replace(".", "_")
    return str(value).lower()


def generate_canonical_id(*args: Any) -> str:
    """Generates a consistent, URL-safe ID from one or more values."""
    combined = "_".join(_fragment(arg) for arg in args if arg is not None and arg != "")
    # Remove non-alphanumeric characters (except underscore)
    safe_string = re.sub(r"[^\w]+", "", combined.replace(" ", "_"))
    if len(safe_string) > 100:
        return hashlib.sha1(safe_string.encode()).hexdigest()[:16]  # Short hash
    return safe_string


def new_generation_tag() -> str:
    """Short random tag that scopes opportunity ids to one recompute."""
    return uuid.uuid4().hex[:8]
