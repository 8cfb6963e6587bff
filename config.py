from decimal import Decimal
from typing import Literal

from pydantic import PrivateAttr
from pydantic_settings import BaseSettings

from services.custody import CustodyConfig


class Settings(BaseSettings):
    app_name: str = "Bochica Escrow Settlement API"
    debug: bool = False
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./bochica_escrow.db"
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Custody: Fernet token of the hex master seed, and the passphrase it was encrypted with
    custody_master_secret_encrypted: str = ""
    custody_encryption_key: str = ""
    ss58_format: int = 0

    # Settlement asset (USDT on Asset Hub)
    settlement_asset_id: int = 1984
    settlement_asset_decimals: int = 6

    ledger_gateway_url: str = "http://127.0.0.1:8787"
    ledger_request_timeout_seconds: float = 10.0
    finality_timeout_seconds: float = 60.0
    finality_poll_interval_seconds: float = 2.0

    platform_fee_rate: Decimal = Decimal("0.02")
    loan_term_days: int = 30
    lending_model: Literal["loan", "direct"] = "loan"

    repayment_checker_api_key: str = ""
    repayment_check_delay_seconds: float = 1.0
    repayment_check_workers: int = 4
    repayment_poll_interval_seconds: int = 0

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    _is_sqlite: bool = PrivateAttr(default=False)

    def model_post_init(self, __context: object) -> None:
        _scheme = self.database_url.split(":")[0].lower()
        object.__setattr__(self, "_is_sqlite", "sqlite" in _scheme)

    @property
    def is_sqlite(self) -> bool:
        return self._is_sqlite

    def custody_config(self) -> CustodyConfig:
        return CustodyConfig(
            master_secret_encrypted=self.custody_master_secret_encrypted,
            encryption_key=self.custody_encryption_key,
            ss58_format=self.ss58_format,
        )

    def reconciler_config(self):
        # services.reconciler imports the ORM models, which import this module
        from services.reconciler import ReconcilerConfig

        return ReconcilerConfig(
            asset_id=self.settlement_asset_id,
            asset_decimals=self.settlement_asset_decimals,
            finality_timeout_seconds=self.finality_timeout_seconds,
            platform_fee_rate=self.platform_fee_rate,
            loan_term_days=self.loan_term_days,
            lending_model=self.lending_model,
            check_delay_seconds=self.repayment_check_delay_seconds,
            # SQLite allows a single writer
            check_workers=1 if self.is_sqlite else self.repayment_check_workers,
        )


settings = Settings()
