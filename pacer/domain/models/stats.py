"""Read-only statistics snapshot handed to observers."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from pacer.domain.models.common import Mode


@dataclass(frozen=True)
class RateStats:
    """Point-in-time view of the client's throttling state."""

    requests_in_window: int
    rate_limit_hit_count: int
    current_delay_ms: float
    queue_depth: int
    cache_size: int
    in_flight: int = 0
    mode: Mode = Mode.NORMAL
    last_rate_limit_at: Optional[float] = None  # Unix timestamp of the latest 429

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data
