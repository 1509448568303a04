from __future__ import annotations

import hashlib
from typing import Union


def create_hash(data: Union[bytes, bytearray, memoryview, str]) -> str:
    # cache key for "already uploaded?", not a trust boundary
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.md5(data).hexdigest()
