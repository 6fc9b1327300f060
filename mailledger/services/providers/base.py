import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

import requests

from mailledger.core.exceptions import ProviderAuthError, ProviderError, TransientProviderError
from mailledger.schemas.mail_message import MailMessage, TokenGrant

logger = logging.getLogger(__name__)


SEARCH_SENDER_DOMAINS = (
    "sbi.co.in", "hdfcbank.com", "icicibank.com", "axisbank.com",
    "kotak.com", "paytm.com", "phonepe.com", "razorpay.com",
)
SEARCH_SUBJECT_KEYWORDS = ("transaction", "debited", "credited", "payment", "upi")


def raise_for_provider_status(response: requests.Response, context: str) -> None:
    """Map an HTTP failure from a provider onto our error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    if status in (400, 401):
        raise ProviderAuthError(f"{context} rejected ({status}): {response.text[:200]}")
    if status == 429 or status >= 500:
        raise TransientProviderError(f"{context} unavailable ({status})")
    raise ProviderError(f"{context} failed ({status}): {response.text[:200]}")


class MailProviderClient(ABC):
    """OAuth handshake plus read-only message access for one mail provider."""

    authorize_endpoint: str = ""
    token_endpoint: str = ""
    scopes: tuple = ()

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, timeout: int = 30):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    # ==================== OAUTH ====================
    def authorization_params(self, state: str) -> dict:
        return {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }

    def authorization_url(self, state: str) -> str:
        return f"{self.authorize_endpoint}?{urlencode(self.authorization_params(state))}"

    def exchange_code(self, code: str) -> TokenGrant:
        return self._request_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })

    def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        return self._request_token({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    def _request_token(self, data: dict) -> TokenGrant:
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **data,
        }
        try:
            response = requests.post(self.token_endpoint, data=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientProviderError(f"Token endpoint unreachable: {exc}") from exc

        raise_for_provider_status(response, "Token request")
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientProviderError("Token request returned a non-JSON body") from exc
        if not body.get("access_token"):
            raise ProviderAuthError("Token response carried no access token")

        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=int(body.get("expires_in") or 3600),
        )

    def _get_json(self, url: str, access_token: str, params: Optional[dict] = None, context: str = "Request") -> dict:
        try:
            response = requests.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientProviderError(f"{context} timed out or failed to connect: {exc}") from exc
        raise_for_provider_status(response, context)
        try:
            return response.json()
        except ValueError as exc:
            raise TransientProviderError(f"{context} returned a non-JSON body") from exc

    # ==================== MAILBOX ====================
    @abstractmethod
    def user_email(self, access_token: str) -> str:
        ...

    @abstractmethod
    def build_search_query(self, since: datetime) -> str:
        """Provider-native filter for transactional mail received after `since`"""

    @abstractmethod
    def list_message_ids(self, access_token: str, query: str, max_results: int) -> list[str]:
        ...

    @abstractmethod
    def fetch_message(self, access_token: str, message_id: str) -> MailMessage:
        ...
