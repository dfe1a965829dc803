# settings.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

HERE = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    pg_host: str = "localhost"
    pg_port: int = 5432
    pg_database: str = "inventory_DB"
    pg_user: str = "postgres"
    pg_password: str = "admin"
    store: str = "postgres"  # postgres | memory
    scanner_profile: str = "camera"
    scanner_profiles_path: str = str(HERE / "scanner_profiles.yaml")
    low_stock_default: int = 5
    log_level: str = "INFO"
    flask_debug: bool = False
    host: str = "0.0.0.0"
    port: int = 5000

    @classmethod
    def from_env(cls) -> "Settings":
        # Loads .env from project root without clobbering real env vars
        load_dotenv(dotenv_path=HERE / ".env", override=False)
        return cls(
            pg_host=os.getenv("PGHOST", cls.pg_host),
            pg_port=int(os.getenv("PGPORT", str(cls.pg_port))),
            pg_database=os.getenv("PGDATABASE", cls.pg_database),
            pg_user=os.getenv("PGUSER", cls.pg_user),
            pg_password=os.getenv("PGPASSWORD", cls.pg_password),
            store=os.getenv("INVENTORY_STORE", cls.store).strip().lower(),
            scanner_profile=os.getenv("SCANNER_PROFILE", cls.scanner_profile),
            scanner_profiles_path=os.getenv("SCANNER_PROFILES_PATH", cls.scanner_profiles_path),
            low_stock_default=int(os.getenv("LOW_STOCK_DEFAULT", str(cls.low_stock_default))),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            flask_debug=os.getenv("FLASK_DEBUG") == "1",
            host=os.getenv("HOST", cls.host),
            port=int(os.getenv("PORT", str(cls.port))),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
