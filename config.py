import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _origins(raw: str) -> List[str]:
    return [o.strip() for o in raw.split(",") if o.strip()] or ["*"]


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "dankmymeme"
    eth_provider_url: str = "https://turbo.magma-rpc.com"
    pinata_jwt: str = ""
    pinata_url: str = "https://api.pinata.cloud/pinning/pinFileToIPFS"
    consumer_key: str = ""
    consumer_secret: str = ""
    callback_url: str = ""
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000
    intake_retries: int = 3
    rpc_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            eth_provider_url=os.getenv("ETH_PROVIDER_URL", cls.eth_provider_url),
            pinata_jwt=os.getenv("PINATA_JWT", ""),
            pinata_url=os.getenv("PINATA_URL", cls.pinata_url),
            consumer_key=os.getenv("CONSUMER_KEY", ""),
            consumer_secret=os.getenv("CONSUMER_SECRET", ""),
            callback_url=os.getenv("CALLBACK_URL", ""),
            cors_origins=_origins(os.getenv("CORS_ORIGINS", "*")),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            port=int(os.getenv("PORT", cls.port)),
            intake_retries=max(1, int(os.getenv("INTAKE_RETRIES", cls.intake_retries))),
            rpc_timeout=float(os.getenv("RPC_TIMEOUT", cls.rpc_timeout)),
        )
