from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppConfig:
    app_name: str = "FieldBookings"
    base_dir: Path = Path(os.environ.get("APP_BASE_DIR", Path.cwd()))

    data_dir: Path = base_dir / "data"
    store_path: Path = data_dir / "field_bookings.db"

    logs_dir: Path = base_dir / "logs"
    reports_dir: Path = base_dir / "reports"

    # ISO dates are used for completion stamps and payout history
    date_format: str = "%Y-%m-%d"

    # Store
    enable_wal: bool = True
    busy_timeout_ms: int = 10000


CONFIG = AppConfig()


def ensure_data_directories(config: AppConfig = CONFIG) -> None:
    """Create data, logs and reports directories. Call explicitly during startup.

    This avoids side-effects at module import time and makes the operation
    explicit and testable.
    """
    config.data_dir.mkdir(parents=True, exist_ok=True)
    config.logs_dir.mkdir(parents=True, exist_ok=True)
    config.reports_dir.mkdir(parents=True, exist_ok=True)
