# typing backports
from __future__ import annotations

import sys

# Multiple python version compatible import for typing.override
if sys.version_info >= (3, 12):
    from typing import override  # noqa: F401
else:
    from typing_extensions import override  # noqa: F401
