import logging
from dataclasses import dataclass, field
from typing import Optional

from pymongo import MongoClient

from config import Settings
from contests import ContestService
from database import Store, connect
from ledger import VotingLedger
from services import ChainClient, PinataClient, TwitterClient

log = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything a request handler needs, built once at startup."""

    settings: Settings
    client: MongoClient
    store: Store = field(init=False)
    contests: ContestService = field(init=False)
    ledger: VotingLedger = field(init=False)
    chain: ChainClient = field(init=False)
    pinata: PinataClient = field(init=False)
    twitter: TwitterClient = field(init=False)

    def __post_init__(self):
        s = self.settings
        self.store = Store(self.client[s.database_name])
        self.contests = ContestService(self.store, intake_retries=s.intake_retries)
        self.ledger = VotingLedger(self.store)
        self.chain = ChainClient(s.eth_provider_url, timeout=s.rpc_timeout)
        self.pinata = PinataClient(s.pinata_jwt, s.pinata_url)
        self.twitter = TwitterClient(s.consumer_key, s.consumer_secret, s.callback_url, timeout=s.rpc_timeout)

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[MongoClient] = None) -> "AppContext":
        return cls(settings=settings, client=client or connect(settings.database_url))

    def start(self) -> None:
        self.store.ensure_indexes()
        log.info("using database %s, ethereum provider %s",
                 self.settings.database_name, self.settings.eth_provider_url)

    def close(self) -> None:
        self.client.close()
        log.info("database connection closed")
