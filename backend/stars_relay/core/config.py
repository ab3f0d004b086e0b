from decimal import Decimal
from typing import Dict

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_name: str = "Stars Relay"
    debug: bool = False
    log_level: str = "INFO"

    # Fragment purchase workflow
    fragment_base_url: str = "https://fragment.com"
    fragment_api_hash: str = ""
    fragment_cookie_stel_ssid: str = ""
    fragment_cookie_stel_token: str = ""
    fragment_cookie_stel_ton_token: str = ""
    fragment_cookie_stel_dt: str = "-240"
    # Pause between status polls while waiting for Fragment to finish
    fragment_poll_interval_seconds: float = 2.0
    fragment_poll_max_attempts: int = 300
    # Completion heuristics (see CompletionTracker)
    fragment_confirmations_required: int = 3
    fragment_done_probe_every: int = 5
    fragment_max_processing_polls: int = 15

    # TON / toncenter
    ton_api_url: str = "https://toncenter.com/api/v2"
    ton_api_key: str = ""
    ton_chain_id: str = "-239"
    # Wallet identity (used when no signer provides the account)
    wallet_address: str = ""
    wallet_public_key: str = ""
    wallet_state_init: str = ""
    # Dotted path "package.module:ClassName" of a WalletSigner implementation
    wallet_signer: str = ""
    wallet_send_max_retries: int = 3
    wallet_send_timeout_seconds: int = 180
    wallet_confirm_timeout_seconds: int = 300

    # Outbound HTTP
    http_timeout_seconds: float = 15.0

    # Transaction monitor
    monitor_auto_start: bool = True
    monitor_interval_seconds: float = 60.0
    monitor_window_hours: int = 24
    monitor_fetch_limit: int = 50
    monitor_archival: bool = False
    monitor_max_attempts: int = 3
    processing_timeout_seconds: int = 30 * 60

    # Pricing
    stars_per_ton: Decimal = Decimal("100")
    use_live_exchange_rate: bool = False
    gas_fee: Decimal = Decimal("0.004")
    min_stars: int = 50
    max_stars: int = 1_000_000

    # Database (Tortoise ORM format)
    database_url: str = "sqlite://stars_relay.db"
    generate_schemas: bool = False

    @property
    def fragment_cookies(self) -> Dict[str, str]:
        cookies = {
            "stel_ssid": self.fragment_cookie_stel_ssid,
            "stel_token": self.fragment_cookie_stel_token,
            "stel_ton_token": self.fragment_cookie_stel_ton_token,
            "stel_dt": self.fragment_cookie_stel_dt,
        }
        return {key: value for key, value in cookies.items() if value}

    @property
    def cleaned_database_url(self) -> str:
        """Strip problematic query parameters like sslmode from database_url."""
        url = self.database_url
        if "?" in url:
            base, query = url.split("?", 1)
            params = query.split("&")
            filtered_params = [p for p in params if not p.startswith(("sslmode=", "ssl_mode="))]
            if filtered_params:
                return f"{base}?{'&'.join(filtered_params)}"
            return base
        return url

    @property
    def tortoise_config(self) -> dict:
        """Tortoise ORM configuration."""
        return {
            "connections": {
                "default": self.cleaned_database_url,
            },
            "apps": {
                "models": {
                    "models": ["stars_relay.models.ledger", "aerich.models"],
                    "default_connection": "default",
                },
            },
            "use_tz": True,
            "timezone": "UTC",
        }

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


settings = Settings()

# Entry point for the aerich migration CLI
TORTOISE_ORM = settings.tortoise_config
