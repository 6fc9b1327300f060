from datetime import datetime, timezone
from typing import Optional

from mailledger.core.exceptions import ProviderError
from mailledger.schemas.mail_message import MailMessage
from mailledger.services.providers.base import MailProviderClient


GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_PAGE_SIZE = 100
OUTLOOK_SUBJECT_KEYWORDS = ("transaction", "debited", "credited", "payment")


def _parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OutlookClient(MailProviderClient):
    authorize_endpoint = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    token_endpoint = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    scopes = (
        "offline_access",
        "https://graph.microsoft.com/Mail.Read",
        "https://graph.microsoft.com/User.Read",
    )

    def authorization_params(self, state: str) -> dict:
        params = super().authorization_params(state)
        params["response_mode"] = "query"
        return params

    def _request_token(self, data: dict):
        # Microsoft wants the scope repeated on every token call
        return super()._request_token({**data, "scope": " ".join(self.scopes)})

    def user_email(self, access_token: str) -> str:
        me = self._get_json(f"{GRAPH_BASE_URL}/me", access_token, context="Graph /me")
        email = me.get("mail") or me.get("userPrincipalName")
        if not email:
            raise ProviderError("Graph /me returned no address")
        return email

    def build_search_query(self, since: datetime) -> str:
        since_utc = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        subjects = " or ".join(f"contains(subject,'{kw}')" for kw in OUTLOOK_SUBJECT_KEYWORDS)
        return f"receivedDateTime ge {since_utc} and ({subjects})"

    def list_message_ids(self, access_token: str, query: str, max_results: int) -> list[str]:
        ids: list[str] = []
        url = f"{GRAPH_BASE_URL}/me/messages"
        params = {
            "$filter": query,
            "$select": "id",
            "$top": min(GRAPH_PAGE_SIZE, max_results),
            "$orderby": "receivedDateTime desc",
        }

        while url and len(ids) < max_results:
            page = self._get_json(url, access_token, params=params, context="Graph list messages")
            ids.extend(m["id"] for m in page.get("value", []))
            # nextLink already carries the query string
            url = page.get("@odata.nextLink")
            params = None
        return ids[:max_results]

    def fetch_message(self, access_token: str, message_id: str) -> MailMessage:
        msg = self._get_json(
            f"{GRAPH_BASE_URL}/me/messages/{message_id}",
            access_token,
            params={"$select": "id,subject,from,body,receivedDateTime"},
            context="Graph get message",
        )
        sender = (msg.get("from") or {}).get("emailAddress") or {}
        return MailMessage(
            message_id=msg.get("id", message_id),
            subject=msg.get("subject") or "",
            sender=sender.get("address") or "",
            body=(msg.get("body") or {}).get("content") or "",
            received_at=_parse_graph_datetime(msg.get("receivedDateTime")),
        )
