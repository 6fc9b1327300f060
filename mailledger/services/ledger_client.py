import logging
from typing import Optional

import requests

from mailledger.core.config import settings
from mailledger.core.exceptions import LedgerApiError
from mailledger.core.security import SecurityUtils
from mailledger.schemas.ledger import LedgerTransactionCreate

logger = logging.getLogger(__name__)


class LedgerClient:
    """Creates transactions in the downstream ledger on behalf of a user."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = (base_url or settings.LEDGER_API_URL).rstrip("/")
        self.timeout = timeout or settings.LEDGER_TIMEOUT_SECONDS

    def create_transaction(self, user_id: int, payload: LedgerTransactionCreate) -> str:
        url = f"{self.base_url}/api/transactions"
        headers = {
            "Authorization": f"Bearer {SecurityUtils.create_service_token(user_id)}",
            "X-User-Id": str(user_id),
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(
                url,
                json=payload.model_dump(mode="json", by_alias=True),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise LedgerApiError(f"Ledger unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise LedgerApiError(f"Ledger rejected transaction ({response.status_code}): {response.text[:300]}")

        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerApiError("Ledger returned a non-JSON response") from exc

        # some ledger deployments wrap the entity in {"data": {...}}
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        ledger_id = data.get("id")
        if ledger_id is None:
            raise LedgerApiError("Ledger response carried no transaction id")
        return str(ledger_id)
