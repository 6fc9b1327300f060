from mailledger.core.config import settings
from mailledger.core.constants import MailProvider
from mailledger.core.exceptions import UnsupportedProviderError
from mailledger.services.providers.base import MailProviderClient
from mailledger.services.providers.gmail import GmailClient
from mailledger.services.providers.outlook import OutlookClient
from mailledger.services.providers.yahoo import YahooClient


def get_provider_client(provider) -> MailProviderClient:
    """Client for the account's provider tag, configured from settings."""
    try:
        provider = MailProvider(str(getattr(provider, "value", provider)).upper())
    except ValueError as exc:
        raise UnsupportedProviderError(f"Unsupported provider: {provider}") from exc

    timeout = settings.PROVIDER_TIMEOUT_SECONDS
    if provider == MailProvider.GMAIL:
        return GmailClient(settings.GMAIL_CLIENT_ID, settings.GMAIL_CLIENT_SECRET, settings.GMAIL_REDIRECT_URI, timeout)
    if provider == MailProvider.OUTLOOK:
        return OutlookClient(settings.OUTLOOK_CLIENT_ID, settings.OUTLOOK_CLIENT_SECRET, settings.OUTLOOK_REDIRECT_URI, timeout)
    if provider == MailProvider.YAHOO:
        return YahooClient(settings.YAHOO_CLIENT_ID, settings.YAHOO_CLIENT_SECRET, settings.YAHOO_REDIRECT_URI, timeout)

    raise UnsupportedProviderError(f"Unsupported provider: {provider}")
