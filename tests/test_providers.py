import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import httplib2
import pytest
import requests
import responses
from googleapiclient.errors import HttpError

from mailledger.core.constants import MailProvider
from mailledger.core.exceptions import (
    ProviderAuthError, ProviderError, TransientProviderError, UnsupportedProviderError,
)
from mailledger.services.providers import yahoo
from mailledger.services.providers.gmail import GmailClient, _extract_body
from mailledger.services.providers.outlook import GRAPH_BASE_URL, OutlookClient
from mailledger.services.providers.registry import get_provider_client
from mailledger.services.providers.yahoo import YahooClient

SINCE = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def gmail():
    return GmailClient("gid", "gsecret", "http://localhost/callback/gmail", timeout=5)


@pytest.fixture
def outlook():
    return OutlookClient("oid", "osecret", "http://localhost/callback/outlook", timeout=5)


# ==================== REGISTRY ====================

def test_registry_resolves_known_providers():
    assert isinstance(get_provider_client(MailProvider.GMAIL), GmailClient)
    assert isinstance(get_provider_client("outlook"), OutlookClient)
    assert isinstance(get_provider_client("YAHOO"), YahooClient)


def test_registry_rejects_unknown_provider():
    with pytest.raises(UnsupportedProviderError):
        get_provider_client("hotmail")


# ==================== OAUTH ====================

def test_gmail_authorization_url_requests_offline_access(gmail):
    url = gmail.authorization_url("state-123")
    query = parse_qs(urlparse(url).query)

    assert url.startswith(GmailClient.authorize_endpoint)
    assert query["state"] == ["state-123"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert "https://www.googleapis.com/auth/gmail.readonly" in query["scope"][0]


@responses.activate
def test_exchange_code_returns_grant(gmail):
    responses.add(
        responses.POST,
        GmailClient.token_endpoint,
        json={"access_token": "at", "refresh_token": "rt", "expires_in": 1800},
    )

    grant = gmail.exchange_code("the-code")

    assert grant.access_token == "at"
    assert grant.refresh_token == "rt"
    assert grant.expires_in == 1800
    sent = parse_qs(responses.calls[0].request.body)
    assert sent["grant_type"] == ["authorization_code"]
    assert sent["code"] == ["the-code"]
    assert sent["client_secret"] == ["gsecret"]


@responses.activate
def test_refresh_without_rotation_has_no_refresh_token(gmail):
    responses.add(responses.POST, GmailClient.token_endpoint, json={"access_token": "at2"})

    grant = gmail.refresh_access_token("rt")

    assert grant.refresh_token is None
    assert grant.expires_in == 3600


@responses.activate
def test_invalid_grant_is_an_auth_error(gmail):
    responses.add(responses.POST, GmailClient.token_endpoint, status=400, json={"error": "invalid_grant"})

    with pytest.raises(ProviderAuthError):
        gmail.refresh_access_token("revoked")


@responses.activate
def test_token_endpoint_outage_is_transient(gmail):
    responses.add(responses.POST, GmailClient.token_endpoint, status=503)

    with pytest.raises(TransientProviderError):
        gmail.refresh_access_token("rt")


@responses.activate
def test_token_endpoint_timeout_is_transient(gmail):
    responses.add(responses.POST, GmailClient.token_endpoint, body=requests.ConnectTimeout("timed out"))

    with pytest.raises(TransientProviderError):
        gmail.refresh_access_token("rt")


@responses.activate
def test_token_endpoint_html_body_is_transient(gmail):
    responses.add(responses.POST, GmailClient.token_endpoint, status=200, body="<html>proxy login</html>")

    with pytest.raises(TransientProviderError, match="non-JSON"):
        gmail.refresh_access_token("rt")


@responses.activate
def test_outlook_token_calls_repeat_scope(outlook):
    responses.add(responses.POST, OutlookClient.token_endpoint, json={"access_token": "at", "refresh_token": "rt2"})

    outlook.refresh_access_token("rt")

    sent = parse_qs(responses.calls[0].request.body)
    assert "offline_access" in sent["scope"][0]


# ==================== GMAIL ====================

def test_gmail_search_query(gmail):
    query = gmail.build_search_query(SINCE)

    assert query.startswith("after:2024/03/01 (")
    assert "from:hdfcbank.com" in query
    assert "subject:debited" in query


def _b64(text):
    return base64.urlsafe_b64encode(text.encode()).decode()


def test_extract_body_walks_multipart_payload():
    payload = {
        "mimeType": "multipart/alternative",
        "body": {"size": 0},
        "parts": [
            {"mimeType": "text/plain", "body": {"size": 0}},
            {"mimeType": "text/html", "body": {"data": _b64("<p>Rs 10 debited</p>")}},
        ],
    }
    assert _extract_body(payload) == "<p>Rs 10 debited</p>"
    assert _extract_body({}) == ""


class _Request:
    def __init__(self, status=None, result=None):
        self.status = status
        self.result = result

    def execute(self, num_retries=0):
        if self.status:
            raise HttpError(httplib2.Response({"status": self.status}), b"{}")
        return self.result


@pytest.mark.parametrize(
    "status,error",
    [(401, ProviderAuthError), (429, TransientProviderError), (500, TransientProviderError), (404, ProviderError)],
)
def test_gmail_http_errors_are_classified(gmail, status, error):
    with pytest.raises(error):
        gmail._execute(_Request(status=status), "Gmail list")


def test_gmail_fetch_message_maps_headers(gmail, monkeypatch):
    message = {
        "id": "m1",
        "internalDate": "1710239400000",
        "payload": {
            "headers": [
                {"name": "From", "value": "HDFC Bank <alerts@hdfcbank.com>"},
                {"name": "Subject", "value": "Rs.1,250 debited"},
            ],
            "body": {"data": _b64("Your card ending 4321 was used")},
        },
    }

    class _Messages:
        def get(self, **kwargs):
            return _Request(result=message)

    class _Users:
        def messages(self):
            return _Messages()

    class _Service:
        def users(self):
            return _Users()

    monkeypatch.setattr(gmail, "_build_service", lambda token: _Service())

    msg = gmail.fetch_message("at", "m1")

    assert msg.sender == "HDFC Bank <alerts@hdfcbank.com>"
    assert msg.subject == "Rs.1,250 debited"
    assert msg.body == "Your card ending 4321 was used"
    assert msg.received_at == datetime(2024, 3, 12, 10, 30, tzinfo=timezone.utc)


# ==================== OUTLOOK ====================

def test_outlook_search_query(outlook):
    query = outlook.build_search_query(SINCE)

    assert query.startswith("receivedDateTime ge 2024-03-01T08:00:00Z and (")
    assert "contains(subject,'debited')" in query


@responses.activate
def test_outlook_listing_follows_next_link(outlook):
    responses.add(
        responses.GET,
        f"{GRAPH_BASE_URL}/me/messages",
        json={"value": [{"id": "a"}, {"id": "b"}], "@odata.nextLink": f"{GRAPH_BASE_URL}/me/messages?$skip=2"},
    )
    responses.add(responses.GET, f"{GRAPH_BASE_URL}/me/messages", json={"value": [{"id": "c"}]})

    ids = outlook.list_message_ids("at", "receivedDateTime ge 2024-03-01T00:00:00Z", 10)

    assert ids == ["a", "b", "c"]
    assert responses.calls[0].request.headers["Authorization"] == "Bearer at"


@responses.activate
def test_outlook_listing_respects_cap(outlook):
    responses.add(
        responses.GET,
        f"{GRAPH_BASE_URL}/me/messages",
        json={"value": [{"id": "a"}, {"id": "b"}, {"id": "c"}], "@odata.nextLink": f"{GRAPH_BASE_URL}/me/messages?$skip=3"},
    )

    assert outlook.list_message_ids("at", "q", 2) == ["a", "b"]
    assert len(responses.calls) == 1


@responses.activate
def test_outlook_fetch_message(outlook):
    responses.add(
        responses.GET,
        f"{GRAPH_BASE_URL}/me/messages/m1",
        json={
            "id": "m1",
            "subject": "Payment received",
            "from": {"emailAddress": {"address": "alerts@axisbank.com"}},
            "body": {"contentType": "html", "content": "<p>Rs 500 credited</p>"},
            "receivedDateTime": "2024-03-12T10:30:00Z",
        },
    )

    msg = outlook.fetch_message("at", "m1")

    assert msg.sender == "alerts@axisbank.com"
    assert msg.body == "<p>Rs 500 credited</p>"
    assert msg.received_at == datetime(2024, 3, 12, 10, 30, tzinfo=timezone.utc)


@responses.activate
def test_outlook_rejected_access_token(outlook):
    responses.add(responses.GET, f"{GRAPH_BASE_URL}/me/messages", status=401, json={"error": {"code": "InvalidAuthenticationToken"}})

    with pytest.raises(ProviderAuthError):
        outlook.list_message_ids("expired", "q", 10)



@responses.activate
def test_outlook_html_listing_is_transient(outlook):
    responses.add(responses.GET, f"{GRAPH_BASE_URL}/me/messages", status=200, body="<html>maintenance</html>")

    with pytest.raises(TransientProviderError, match="Graph list messages"):
        outlook.list_message_ids("at", "q", 10)

# ==================== YAHOO ====================

RAW_YAHOO_MESSAGE = (
    b"From: ICICI Bank <alerts@icicibank.com>\r\n"
    b"Subject: Rs 700 debited\r\n"
    b"Date: Tue, 12 Mar 2024 10:30:00 +0000\r\n"
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"\r\n"
    b"Rs 700 debited from your account ending 1234.\r\n"
)


class FakeImap:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.auth = None
        self.logged_out = False
        FakeImap.instances.append(self)

    def authenticate(self, mechanism, callback):
        self.auth = (mechanism, callback(None))

    def select(self, mailbox, readonly=False):
        return "OK", [b"3"]

    def uid(self, command, *args):
        if command == "search":
            return "OK", [b"101 102 103"]
        return "OK", [(b"103 (RFC822 {120}", RAW_YAHOO_MESSAGE), b")"]

    def logout(self):
        self.logged_out = True

    def shutdown(self):
        pass


@pytest.fixture
def yahoo_client(monkeypatch):
    FakeImap.instances = []
    monkeypatch.setattr(yahoo.imaplib, "IMAP4_SSL", FakeImap)
    monkeypatch.setattr(YahooClient, "user_email", lambda self, token: "me@yahoo.com")
    return YahooClient("yid", "ysecret", "http://localhost/callback/yahoo", timeout=5)


def test_yahoo_search_query(yahoo_client):
    assert yahoo_client.build_search_query(SINCE) == "SINCE 01-Mar-2024"


def test_yahoo_lists_newest_first_and_authenticates_with_xoauth2(yahoo_client):
    ids = yahoo_client.list_message_ids("at", "SINCE 01-Mar-2024", 2)

    assert ids == ["103", "102"]
    imap = FakeImap.instances[0]
    assert imap.auth == ("XOAUTH2", b"user=me@yahoo.com\x01auth=Bearer at\x01\x01")
    assert imap.logged_out


def test_yahoo_fetch_message(yahoo_client):
    msg = yahoo_client.fetch_message("at", "103")

    assert msg.message_id == "103"
    assert msg.subject == "Rs 700 debited"
    assert "alerts@icicibank.com" in msg.sender
    assert "ending 1234" in msg.body
    assert msg.received_at == datetime(2024, 3, 12, 10, 30, tzinfo=timezone.utc)
