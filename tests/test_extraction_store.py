from datetime import datetime, timedelta, timezone
from decimal import Decimal

from mailledger.core.constants import ProcessingState, TransactionKind
from mailledger.schemas.extracted_transaction import TransactionCandidate
from mailledger.services import extraction_store


def _candidate(**overrides):
    data = dict(
        amount=Decimal("1250.00"),
        transaction_type=TransactionKind.DEBIT,
        card_last4="4321",
        transaction_id="ABC123",
        confidence_score=0.9,
        sender_email="alerts@hdfcbank.com",
        email_subject="Rs.1,250 debited",
        raw_email_content="body",
        transaction_date=datetime(2024, 3, 12, tzinfo=timezone.utc),
    )
    data.update(overrides)
    return TransactionCandidate(**data)


def test_save_then_exists(db, make_account):
    account = make_account()
    assert not extraction_store.exists(db, account.id, "m1")

    row = extraction_store.save(db, account.id, "m1", _candidate())

    assert row.id is not None
    assert row.processing_state == ProcessingState.UNPROCESSED
    assert row.amount == Decimal("1250.00")
    assert extraction_store.exists(db, account.id, "m1")


def test_duplicate_message_is_not_stored_twice(db, make_account):
    account = make_account()
    assert extraction_store.save(db, account.id, "m1", _candidate()) is not None
    assert extraction_store.save(db, account.id, "m1", _candidate(amount=Decimal("5"))) is None

    items, total = extraction_store.page_for_account(db, account.id)
    assert total == 1
    assert items[0].amount == Decimal("1250.00")


def test_same_message_id_on_another_account_is_allowed(db, make_account):
    a = make_account(access_token="a")
    b = make_account(access_token="b")
    assert extraction_store.save(db, a.id, "m1", _candidate()) is not None
    assert extraction_store.save(db, b.id, "m1", _candidate()) is not None


def test_claim_is_won_only_once(db, make_account, make_candidate):
    row = make_candidate(make_account())

    assert extraction_store.claim(db, row.id) is True
    assert extraction_store.claim(db, row.id) is False


def test_mark_processed_records_ledger_id(db, make_account, make_candidate):
    row = make_candidate(make_account())
    extraction_store.claim(db, row.id)

    assert extraction_store.mark_processed(db, row.id, 9001)

    db.refresh(row)
    assert row.processing_state == ProcessingState.PROCESSED
    assert row.created_transaction_id == "9001"
    assert row.processed_at is not None
    # processed is terminal
    assert not extraction_store.mark_failed(db, row.id, "late failure")


def test_mark_failed_clears_linkage_and_truncates(db, make_account, make_candidate):
    row = make_candidate(make_account(), created_transaction_id="stale")

    assert extraction_store.mark_failed(db, row.id, "x" * 5000)

    db.refresh(row)
    assert row.processing_state == ProcessingState.FAILED
    assert row.created_transaction_id is None
    assert len(row.error_message) == 1000


def test_reset_for_retry_only_from_failed(db, make_account, make_candidate):
    account = make_account()
    failed = make_candidate(account, "m1", state=ProcessingState.FAILED, error_message="boom")
    processed = make_candidate(account, "m2", state=ProcessingState.PROCESSED)

    assert extraction_store.reset_for_retry(db, failed.id)
    assert not extraction_store.reset_for_retry(db, processed.id)

    db.refresh(failed)
    assert failed.processing_state == ProcessingState.UNPROCESSED
    assert failed.error_message is None


def test_stale_claims_move_to_failed(db, make_account, make_candidate):
    account = make_account()
    now = datetime.now(timezone.utc)
    stale = make_candidate(account, "m1", state=ProcessingState.PROCESSING, claimed_at=now - timedelta(hours=1))
    fresh = make_candidate(account, "m2", state=ProcessingState.PROCESSING, claimed_at=now)

    assert extraction_store.release_stale_claims(db, timeout_seconds=900, now=now) == 1

    db.refresh(stale)
    db.refresh(fresh)
    assert stale.processing_state == ProcessingState.FAILED
    assert "review" in stale.error_message
    assert fresh.processing_state == ProcessingState.PROCESSING


def test_unprocessed_above_threshold_ordering(db, make_account, make_candidate):
    account = make_account()
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    newer_high = make_candidate(account, "m1", confidence=0.9, extracted_at=base + timedelta(minutes=5))
    older_high = make_candidate(account, "m2", confidence=0.9, extracted_at=base)
    highest = make_candidate(account, "m3", confidence=1.0, extracted_at=base + timedelta(minutes=9))
    make_candidate(account, "m4", confidence=0.75)
    make_candidate(account, "m5", confidence=0.95, state=ProcessingState.PROCESSED)

    rows = extraction_store.unprocessed_above_threshold(db, 0.8)

    assert [r.id for r in rows] == [highest.id, older_high.id, newer_high.id]


def test_user_queries_are_scoped_to_owner(db, make_account, make_candidate):
    mine = make_account(user_id=42, access_token="mine")
    theirs = make_account(user_id=7, access_token="theirs")
    own = make_candidate(mine, "m1")
    make_candidate(mine, "m2", state=ProcessingState.PROCESSED)
    make_candidate(theirs, "m3")

    assert [r.id for r in extraction_store.unprocessed_for_user(db, 42)] == [own.id]

    items, total = extraction_store.page_for_user(db, 42)
    assert total == 2
    items, total = extraction_store.page_for_user(db, 42, unprocessed_only=True)
    assert total == 1

    assert extraction_store.get_for_user(db, own.id, 7) is None
    assert extraction_store.get_for_user(db, own.id, 42).id == own.id


def test_paging(db, make_account, make_candidate):
    account = make_account()
    for i in range(5):
        make_candidate(account, f"m{i}", transaction_date=datetime(2024, 1, i + 1, tzinfo=timezone.utc))

    items, total = extraction_store.page_for_account(db, account.id, page=1, size=2)

    assert total == 5
    # newest transaction first
    assert [r.email_message_id for r in items] == ["m2", "m1"]


def test_distinct_senders(db, make_account, make_candidate):
    account = make_account()
    make_candidate(account, "m1", sender_email="b@axisbank.com")
    make_candidate(account, "m2", sender_email="a@hdfcbank.com")
    make_candidate(account, "m3", sender_email="a@hdfcbank.com")

    assert extraction_store.distinct_senders(db, [account.id]) == ["a@hdfcbank.com", "b@axisbank.com"]
    assert extraction_store.distinct_senders(db, []) == []


def test_stats_for_user(db, make_account, make_candidate):
    account = make_account(total_emails_processed=10, total_transactions_extracted=3)
    make_account(access_token="off", is_active=False)
    make_candidate(account, "m1", confidence=0.8)
    make_candidate(account, "m2", confidence=1.0, state=ProcessingState.PROCESSED)
    make_candidate(account, "m3", confidence=0.5, extracted_at=datetime.now(timezone.utc) - timedelta(days=3))

    stats = extraction_store.stats_for_user(db, 42)

    assert stats["connected_accounts"] == 2
    assert stats["active_accounts"] == 1
    assert stats["total_emails_processed"] == 10
    assert stats["total_transactions_extracted"] == 3
    assert stats["unprocessed_transactions"] == 2
    assert stats["extracted_last_24h"] == 2
    assert stats["average_confidence_last_24h"] == 0.9
