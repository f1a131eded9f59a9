"""Response normalizer.

Pure functions that bound and restructure raw upstream responses.
"""

from .bounding import MAX_FIELD_CHARS, bound_text, is_truncated
from .citations import consolidate
from .pipeline import normalize_response
from .pricing import compute_cost
from .stripping import strip_sensitive

__all__ = [
    "MAX_FIELD_CHARS",
    "bound_text",
    "is_truncated",
    "consolidate",
    "normalize_response",
    "compute_cost",
    "strip_sensitive",
]
