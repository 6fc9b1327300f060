"""Shared fixtures: per-test SQLite database, fake provider, API client."""

import os
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet

# Settings are read at import time, so these must be set first
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mailledger.core.constants import MailProvider, ProcessingState, TransactionKind
from mailledger.core.database import Base
from mailledger.core.exceptions import ProviderAuthError
from mailledger.core.security import SecurityUtils, get_token_cipher
from mailledger.models.email_account import EmailAccount
from mailledger.models.extracted_transaction import ExtractedTransaction
from mailledger.schemas.mail_message import MailMessage, TokenGrant


# ============================================================================
# DATABASE
# ============================================================================


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'mailledger_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def cipher():
    return get_token_cipher()


@pytest.fixture
def make_account(db, cipher):
    """Create a connected account; token values are stored encrypted."""

    def _make(
        user_id=42,
        provider=MailProvider.GMAIL,
        email_address=None,
        access_token="access-ok",
        refresh_token="refresh-ok",
        expires_in=timedelta(hours=1),
        **overrides,
    ):
        now = datetime.now(timezone.utc)
        account = EmailAccount(
            user_id=user_id,
            provider=provider,
            email_address=email_address or f"user{user_id}-{access_token}@example.com",
            encrypted_access_token=cipher.encrypt(access_token),
            encrypted_refresh_token=cipher.encrypt(refresh_token),
            token_expires_at=now + expires_in if expires_in is not None else None,
            is_active=True,
            sync_from_date=now - timedelta(days=30),
            total_emails_processed=0,
            total_transactions_extracted=0,
        )
        for key, value in overrides.items():
            setattr(account, key, value)
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    return _make


@pytest.fixture
def make_candidate(db):
    def _make(account, message_id="msg-1", confidence=0.9, state=ProcessingState.UNPROCESSED, **overrides):
        row = ExtractedTransaction(
            email_account_id=account.id,
            email_message_id=message_id,
            email_subject="Rs.1,250 debited from your account",
            sender_email="alerts@hdfcbank.com",
            raw_email_content="raw",
            amount=1250,
            currency="INR",
            transaction_type=TransactionKind.DEBIT,
            merchant_name="Amazon",
            card_last4="4321",
            transaction_id="ABC123",
            description="Rs.1,250 debited from your account",
            category_suggestion="Shopping",
            transaction_date=datetime(2024, 3, 12, 10, 30, tzinfo=timezone.utc),
            confidence_score=confidence,
            processing_state=state,
            extracted_at=datetime.now(timezone.utc),
        )
        for key, value in overrides.items():
            setattr(row, key, value)
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    return _make


# ============================================================================
# FAKE MAIL PROVIDER
# ============================================================================


class FakeProviderClient:
    """
    In-memory provider. Mailboxes are keyed by access token so several
    accounts can share one client; refresh behaviour is keyed by refresh token.
    """

    def __init__(self):
        self.mailboxes = {}
        self.refresh_results = {}
        self.list_errors = {}
        self.fetch_errors = {}
        self.refresh_calls = []
        self.fetch_calls = []
        self.queries = []

    def add_message(self, access_token, message_id, sender, subject, body, received_at=None):
        self.mailboxes.setdefault(access_token, {})[message_id] = MailMessage(
            message_id=message_id,
            sender=sender,
            subject=subject,
            body=body,
            received_at=received_at or datetime(2024, 3, 12, 10, 30, tzinfo=timezone.utc),
        )

    def authorization_url(self, state):
        return f"https://provider.example/auth?state={state}"

    def exchange_code(self, code):
        return TokenGrant(access_token=f"access-{code}", refresh_token=f"refresh-{code}", expires_in=3600)

    def refresh_access_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        result = self.refresh_results.get(refresh_token)
        if isinstance(result, Exception):
            raise result
        if result is None:
            if refresh_token == "revoked":
                raise ProviderAuthError("invalid_grant")
            return TokenGrant(access_token="access-refreshed", refresh_token=None, expires_in=3600)
        return result

    def user_email(self, access_token):
        return f"{access_token}@example.com"

    def build_search_query(self, since):
        return f"after:{since.strftime('%Y/%m/%d')}"

    def list_message_ids(self, access_token, query, max_results):
        self.queries.append(query)
        if access_token in self.list_errors:
            raise self.list_errors[access_token]
        return list(self.mailboxes.get(access_token, {}))[:max_results]

    def fetch_message(self, access_token, message_id):
        self.fetch_calls.append(message_id)
        if message_id in self.fetch_errors:
            raise self.fetch_errors[message_id]
        return self.mailboxes[access_token][message_id]


@pytest.fixture
def fake_provider():
    return FakeProviderClient()


@pytest.fixture
def client_factory(fake_provider):
    return lambda provider: fake_provider


# ============================================================================
# API
# ============================================================================


@pytest.fixture
def auth_headers():
    token = SecurityUtils.create_access_token({"sub": "42"}, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api_client(session_factory):
    from fastapi.testclient import TestClient

    from mailledger.core.database import get_db
    from mailledger.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
