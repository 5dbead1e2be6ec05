from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    """Owner and device a request or a local write is attributed to."""
    owner_id: str
    device_id: str
