"""Identity, time and vector helpers."""

import secrets
from datetime import datetime, timezone
from typing import Optional

import numpy as np


def generate_id() -> str:
    """24 hex chars of randomness. Treated as collision-free."""
    return secrets.token_hex(12)


def now() -> datetime:
    """Current UTC time. Patched in tests that need a fixed clock."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    # Fixed width so string order in SQLite equals time order
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def vector_to_blob(vector) -> bytes:
    """Serialize as a little-endian float32 sequence."""
    return np.asarray(vector, dtype="<f4").tobytes()


def blob_to_vector(blob: bytes) -> list[float]:
    return np.frombuffer(blob, dtype="<f4").tolist()
