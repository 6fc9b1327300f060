import imaplib
import logging
from datetime import datetime, timezone
from email import message_from_bytes, policy
from email.utils import parsedate_to_datetime

from mailledger.core.exceptions import ProviderAuthError, ProviderError, TransientProviderError
from mailledger.schemas.mail_message import MailMessage
from mailledger.services.providers.base import MailProviderClient

logger = logging.getLogger(__name__)


YAHOO_IMAP_HOST = "imap.mail.yahoo.com"
YAHOO_IMAP_PORT = 993


def _message_text(msg) -> str:
    """Prefer the text/plain part, fall back to text/html."""
    part = msg.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode(errors="ignore")


class YahooClient(MailProviderClient):
    authorize_endpoint = "https://api.login.yahoo.com/oauth2/request_auth"
    token_endpoint = "https://api.login.yahoo.com/oauth2/get_token"
    userinfo_endpoint = "https://api.login.yahoo.com/openid/v1/userinfo"
    scopes = ("openid", "email", "mail-r")

    def _request_token(self, data: dict):
        return super()._request_token({"redirect_uri": self.redirect_uri, **data})

    def user_email(self, access_token: str) -> str:
        info = self._get_json(self.userinfo_endpoint, access_token, context="Yahoo userinfo")
        email = info.get("email")
        if not email:
            raise ProviderError("Yahoo userinfo returned no email address")
        return email

    def build_search_query(self, since: datetime) -> str:
        return f"SINCE {since.strftime('%d-%b-%Y')}"

    def _open(self, access_token: str) -> imaplib.IMAP4_SSL:
        address = self.user_email(access_token)
        auth_string = f"user={address}\x01auth=Bearer {access_token}\x01\x01"
        try:
            imap = imaplib.IMAP4_SSL(YAHOO_IMAP_HOST, YAHOO_IMAP_PORT, timeout=self.timeout)
        except OSError as exc:
            raise TransientProviderError(f"Yahoo IMAP unreachable: {exc}") from exc

        try:
            imap.authenticate("XOAUTH2", lambda _: auth_string.encode("utf-8"))
            imap.select("INBOX", readonly=True)
        except imaplib.IMAP4.error as exc:
            imap.shutdown()
            raise ProviderAuthError(f"Yahoo IMAP login rejected: {exc}") from exc
        return imap

    def _close(self, imap: imaplib.IMAP4_SSL) -> None:
        try:
            imap.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.debug(f"Yahoo IMAP logout failed: {exc}")

    def list_message_ids(self, access_token: str, query: str, max_results: int) -> list[str]:
        imap = self._open(access_token)
        try:
            status, data = imap.uid("search", None, *query.split(" ", 1))
        except imaplib.IMAP4.error as exc:
            raise ProviderError(f"Yahoo IMAP search failed: {exc}") from exc
        except OSError as exc:
            raise TransientProviderError(f"Yahoo IMAP search failed: {exc}") from exc
        finally:
            self._close(imap)

        if status != "OK" or not data or not data[0]:
            return []
        uids = data[0].decode().split()
        # newest first, like the other providers
        return list(reversed(uids))[:max_results]

    def fetch_message(self, access_token: str, message_id: str) -> MailMessage:
        imap = self._open(access_token)
        try:
            status, data = imap.uid("fetch", message_id, "(RFC822)")
        except imaplib.IMAP4.error as exc:
            raise ProviderError(f"Yahoo IMAP fetch failed: {exc}") from exc
        except OSError as exc:
            raise TransientProviderError(f"Yahoo IMAP fetch failed: {exc}") from exc
        finally:
            self._close(imap)

        raw = next((item[1] for item in data or [] if isinstance(item, tuple)), None)
        if status != "OK" or raw is None:
            raise ProviderError(f"Yahoo message {message_id} not found")

        msg = message_from_bytes(raw, policy=policy.default)
        received_at = None
        if msg["Date"]:
            try:
                received_at = parsedate_to_datetime(str(msg["Date"]))
            except (TypeError, ValueError):
                received_at = None
        if received_at is not None and received_at.tzinfo is None:
            received_at = received_at.replace(tzinfo=timezone.utc)

        return MailMessage(
            message_id=message_id,
            subject=str(msg["Subject"] or ""),
            sender=str(msg["From"] or ""),
            body=_message_text(msg),
            received_at=received_at,
        )
