from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field


@dataclass
class RuntimeStats:
    started_at: float = field(default_factory=time.time)
    sessions_started: int = 0
    reconnects_scheduled: int = 0
    messages_processed: int = 0
    actions_executed: int = 0
    actions_failed: int = 0
    commands_executed: int = 0
    commands_denied: int = 0
    commands_failed: int = 0
    events_published: int = 0

    def uptime_seconds(self) -> int:
        return int(time.time() - self.started_at)

    def as_dict(self) -> dict[str, int]:
        data = asdict(self)
        data.pop("started_at", None)
        data["uptime_seconds"] = self.uptime_seconds()
        return data


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{days}d {hours}h {minutes}m {secs}s"
