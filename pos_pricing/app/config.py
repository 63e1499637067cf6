import os
from typing import List, Optional

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/pos_pricing')
        # Comma-separated list of allowed CORS origins for the cashier/kiosk clients.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Optional JSON file of store-wide rules, applied alongside customer rules.
        self.pricing_rules_file: Optional[str] = (os.getenv("PRICING_RULES_FILE") or "").strip() or None

settings = Settings()
