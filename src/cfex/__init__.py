"""Control-flow normalization for obfuscated stack-VM method bodies."""

__version__ = "0.3.0"

from cfex.engine import (  # noqa: E402
    MethodNormalizer,
    NormalizationResult,
    normalize_method,
    normalize_methods,
)
from cfex.ir.model import MethodBody, has_dispatch  # noqa: E402

__all__ = [
    "MethodBody",
    "MethodNormalizer",
    "NormalizationResult",
    "has_dispatch",
    "normalize_method",
    "normalize_methods",
]
