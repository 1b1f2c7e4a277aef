"""Runtime settings, read once from the environment."""

from __future__ import annotations

import os

# Seconds a dropped participant keeps their seat before being removed
GRACE_PERIOD: float = float(os.getenv("POOLROOM_GRACE_PERIOD", "30"))

# How often the presence loop checks grace deadlines (seconds)
PRESENCE_TICK_INTERVAL: float = float(os.getenv("PRESENCE_TICK_INTERVAL", "1.0"))

# Most recent log entries kept per room
LOG_CAPACITY: int = int(os.getenv("POOLROOM_LOG_CAPACITY", "50"))

# Balance used when a room is created without a usable starting balance
DEFAULT_STARTING_BALANCE: int = int(os.getenv("POOLROOM_DEFAULT_BALANCE", "1000"))

# Outbound frames buffered per connection before it is treated as dead
SEND_QUEUE_SIZE: int = int(os.getenv("POOLROOM_SEND_QUEUE_SIZE", "256"))

RATE_LIMIT_ENABLED: bool = os.getenv("RATE_LIMIT_ENABLED", "1") != "0"
