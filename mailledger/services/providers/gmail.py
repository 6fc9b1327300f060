import base64
from datetime import datetime, timezone

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailledger.core.exceptions import ProviderAuthError, ProviderError, TransientProviderError
from mailledger.schemas.mail_message import MailMessage
from mailledger.services.providers.base import (
    MailProviderClient, SEARCH_SENDER_DOMAINS, SEARCH_SUBJECT_KEYWORDS,
)


GMAIL_PAGE_SIZE = 500


def _extract_body(payload: dict) -> str:
    """First non-empty body found walking the MIME tree depth-first."""
    if not payload:
        return ""

    if 'body' in payload and payload['body'].get('data'):
        try:
            raw = base64.urlsafe_b64decode(payload['body']['data'].encode('ASCII'))
        except ValueError:
            return ""
        return raw.decode(errors='ignore')
    if 'parts' in payload:
        for part in payload['parts']:
            body = _extract_body(part)
            if body:
                return body
    return ""


def _header(headers: list, name: str) -> str:
    return next((h['value'] for h in headers if h.get('name', '').lower() == name), '')


class GmailClient(MailProviderClient):
    authorize_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"
    userinfo_endpoint = "https://www.googleapis.com/oauth2/v2/userinfo"
    scopes = (
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/userinfo.email",
    )

    def authorization_params(self, state: str) -> dict:
        params = super().authorization_params(state)
        # offline + consent so Google always hands back a refresh token
        params.update({"access_type": "offline", "prompt": "consent"})
        return params

    def user_email(self, access_token: str) -> str:
        info = self._get_json(self.userinfo_endpoint, access_token, context="Gmail userinfo")
        email = info.get("email")
        if not email:
            raise ProviderError("Gmail userinfo returned no email address")
        return email

    def build_search_query(self, since: datetime) -> str:
        filters = [f"from:{d}" for d in SEARCH_SENDER_DOMAINS]
        filters += [f"subject:{kw}" for kw in SEARCH_SUBJECT_KEYWORDS]
        return f"after:{since.strftime('%Y/%m/%d')} ({' OR '.join(filters)})"

    def _build_service(self, access_token: str):
        creds = Credentials(token=access_token)
        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=self.timeout))
        return build('gmail', 'v1', http=http, cache_discovery=False)

    def _execute(self, request, context: str) -> dict:
        try:
            return request.execute(num_retries=0)
        except HttpError as exc:
            status = exc.resp.status
            if status == 401:
                raise ProviderAuthError(f"{context}: access token rejected") from exc
            if status == 429 or status >= 500:
                raise TransientProviderError(f"{context}: Gmail unavailable ({status})") from exc
            raise ProviderError(f"{context}: Gmail error ({status})") from exc
        except (httplib2.HttpLib2Error, OSError) as exc:
            raise TransientProviderError(f"{context}: {exc}") from exc

    def list_message_ids(self, access_token: str, query: str, max_results: int) -> list[str]:
        svc = self._build_service(access_token)

        ids: list[str] = []
        page_token = None
        while len(ids) < max_results:
            params = {
                "userId": "me",
                "q": query,
                "maxResults": min(GMAIL_PAGE_SIZE, max_results - len(ids)),
            }
            if page_token:
                params["pageToken"] = page_token

            resp = self._execute(svc.users().messages().list(**params), "Gmail list")
            ids.extend(m['id'] for m in resp.get('messages', []))
            page_token = resp.get('nextPageToken')
            if not page_token:
                break
        return ids[:max_results]

    def fetch_message(self, access_token: str, message_id: str) -> MailMessage:
        svc = self._build_service(access_token)
        msg = self._execute(
            svc.users().messages().get(userId='me', id=message_id, format='full'),
            "Gmail get",
        )
        payload = msg.get('payload', {})
        headers = payload.get('headers', [])

        internal_date = int(msg.get('internalDate', 0)) / 1000  # milliseconds → seconds

        return MailMessage(
            message_id=msg.get('id', message_id),
            subject=_header(headers, 'subject'),
            sender=_header(headers, 'from'),
            body=_extract_body(payload) or msg.get('snippet', ''),
            received_at=datetime.fromtimestamp(internal_date, tz=timezone.utc) if internal_date else None,
        )
