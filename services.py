"""
Clients for the outside services the contest app leans on:

- ChainClient: wallet balances (JSON-RPC) and ENS reverse names
- PinataClient: pins uploaded memes to IPFS
- TwitterClient: OAuth 1.0a sign-in, posting, and reading a tweet's image
"""

import json
import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests
from requests_oauthlib import OAuth1Session

from errors import UpstreamFailure

log = logging.getLogger(__name__)

WEI_PER_ETHER = Decimal(10) ** 18

HEX_ADDRESS = re.compile(r"0x[0-9a-fA-F]{40}")


def short_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


def normalize_address(address: str) -> str:
    """Checksum form of a hex wallet address; other identifiers are only trimmed."""
    address = address.strip()
    if not HEX_ADDRESS.fullmatch(address):
        return address
    from web3 import Web3

    return Web3.to_checksum_address(address.lower())


class ChainClient:
    def __init__(self, rpc_url: str, timeout: float = 10, session: Optional[requests.Session] = None, ens=None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ens = ens

    def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        resp = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            log.error("rpc %s failed: %s", method, data["error"])
            raise UpstreamFailure("Error fetching balance")
        return data.get("result")

    def get_balance(self, address: str) -> Decimal:
        """Balance of address in ether units."""
        wei = self._rpc("eth_getBalance", [address, "latest"])
        return Decimal(int(wei, 16)) / WEI_PER_ETHER

    @property
    def ens(self):
        if self._ens is None:
            from web3 import Web3

            w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
            self._ens = w3.ens
        return self._ens

    def lookup_address(self, address: str) -> Optional[str]:
        """ENS reverse record of address, or None."""
        from web3 import Web3

        return self.ens.name(Web3.to_checksum_address(address))

    def display_name(self, address: str) -> str:
        return self.lookup_address(address) or short_address(address)


class PinataClient:
    def __init__(self, jwt: str, url: str, timeout: float = 60, session: Optional[requests.Session] = None):
        self.jwt = jwt
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def pin_file(self, data: bytes, filename: str) -> Dict[str, Any]:
        if not self.jwt:
            raise UpstreamFailure("IPFS pinning is not configured")
        resp = self.session.post(
            self.url,
            files={"file": (filename, data)},
            data={
                "pinataMetadata": json.dumps({"name": filename}),
                "pinataOptions": json.dumps({"cidVersion": 0}),
            },
            headers={"Authorization": f"Bearer {self.jwt}"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        body = resp.json()
        log.info("pinned %s as %s", filename, body.get("IpfsHash"))
        return {
            "ipfsHash": body["IpfsHash"],
            "pinSize": body.get("PinSize"),
            "timestamp": body.get("Timestamp"),
        }


class TwitterClient:
    REQUEST_TOKEN_URL = "https://api.twitter.com/oauth/request_token"
    AUTHORIZE_URL = "https://api.twitter.com/oauth/authorize"
    ACCESS_TOKEN_URL = "https://api.twitter.com/oauth/access_token"
    TWEETS_URL = "https://api.twitter.com/2/tweets"

    def __init__(self, consumer_key: str, consumer_secret: str, callback_url: str, timeout: float = 10):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.callback_url = callback_url
        self.timeout = timeout

    def _session(self, token: Optional[str] = None, secret: Optional[str] = None, **kwargs) -> OAuth1Session:
        if not self.consumer_key or not self.consumer_secret:
            raise UpstreamFailure("Twitter is not configured")
        return OAuth1Session(
            self.consumer_key,
            client_secret=self.consumer_secret,
            resource_owner_key=token,
            resource_owner_secret=secret,
            **kwargs,
        )

    def request_token(self) -> str:
        """Start the sign-in flow and return the URL the user must visit."""
        oauth = self._session(callback_uri=self.callback_url)
        oauth.fetch_request_token(self.REQUEST_TOKEN_URL)
        return oauth.authorization_url(self.AUTHORIZE_URL)

    def access_token(self, oauth_token: str, oauth_verifier: str) -> Dict[str, str]:
        oauth = self._session(oauth_token, verifier=oauth_verifier)
        tokens = oauth.fetch_access_token(self.ACCESS_TOKEN_URL)
        return {
            "access_token": tokens["oauth_token"],
            "access_token_secret": tokens["oauth_token_secret"],
        }

    def post_status(self, token: str, secret: str, text: str, media_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"text": text}
        if media_ids:
            body["media"] = {"media_ids": media_ids}
        resp = self._session(token, secret).post(self.TWEETS_URL, json=body, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json().get("data", {})

    def get_image_url(self, tweet_id: str, token: str, secret: str) -> Optional[str]:
        resp = self._session(token, secret).get(
            f"{self.TWEETS_URL}/{tweet_id}",
            params={"expansions": "attachments.media_keys", "media.fields": "url,preview_image_url"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        media = resp.json().get("includes", {}).get("media", [])
        for m in media:
            url = m.get("url") or m.get("preview_image_url")
            if url:
                return url
        return None
