import re
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from email.utils import parseaddr
from typing import Optional

from bs4 import BeautifulSoup

from mailledger.core.constants import BANK_DOMAINS, TransactionKind
from mailledger.schemas.extracted_transaction import TransactionCandidate

logger = logging.getLogger(__name__)


FINANCIAL_KEYWORDS = (
    "bank", "card", "payment", "transaction", "debit", "credit",
    "atm", "upi", "neft", "rtgs", "imps", "wallet", "paytm", "phonepe",
)

# Longer phrases outweigh short generic words; ties go to the earlier kind
KIND_KEYWORDS = (
    (TransactionKind.DEBIT, ("debited", "debit", "spent", "purchase", "payment", "withdrawn")),
    (TransactionKind.CREDIT, ("credited", "credit", "received", "deposit", "refund", "cashback")),
    (TransactionKind.ATM_WITHDRAWAL, ("atm", "cash withdrawal", "withdrew")),
    (TransactionKind.ONLINE_PURCHASE, ("online", "ecommerce", "amazon", "flipkart", "swiggy", "zomato")),
    (TransactionKind.MOBILE_PAYMENT, ("upi", "paytm", "phonepe", "gpay", "bhim")),
    (TransactionKind.BILL_PAYMENT, ("bill payment", "electricity", "mobile recharge", "dth")),
    (TransactionKind.EMI_PAYMENT, ("emi", "loan", "installment")),
    (TransactionKind.SALARY_CREDIT, ("salary", "sal cr")),
    (TransactionKind.INTEREST_CREDIT, ("interest", "fd interest", "sb interest")),
    (TransactionKind.CHARGES, ("charges", "fee", "annual fee", "service charge")),
)

CATEGORY_PATTERNS = (
    (re.compile(r"\b(?:amazon|flipkart|myntra|ajio)\b"), "Shopping"),
    (re.compile(r"\b(?:swiggy|zomato|dominos|mcdonald)"), "Food & Dining"),
    (re.compile(r"\b(?:uber|ola|metro|bus)\b"), "Transportation"),
    (re.compile(r"\b(?:phonepe|paytm|gpay)\b"), "Digital Wallet"),
    (re.compile(r"\b(?:netflix|spotify|prime)\b"), "Entertainment"),
    (re.compile(r"\b(?:electricity|gas|water|mobile)\b"), "Utilities"),
    (re.compile(r"\b(?:hospital|medical|pharmacy)\b"), "Healthcare"),
    (re.compile(r"\b(?:petrol|fuel|hp|bharat)\b"), "Fuel"),
    (re.compile(r"\b(?:grocery|supermarket|dmart)\b"), "Groceries"),
)
DEFAULT_CATEGORY = "Other"

AMOUNT_PATTERN = re.compile(r"(?<![a-z])(?:rs\.?|inr|₹)\s*([0-9][0-9,]*(?:\.[0-9]{1,2})?)", re.IGNORECASE)
CARD_PATTERN = re.compile(r"\b(?:card|xxxx)\s*(?:ending\s*)?(?:with\s*)?([0-9]{4})\b", re.IGNORECASE)
ACCOUNT_PATTERN = re.compile(
    r"\b(?:account|a/c)\s*(?:no\.?|number)?\s*(?:ending\s*)?(?:with\s*)?(?:[x*]+)?([0-9]{4})\b",
    re.IGNORECASE,
)
TRANSACTION_ID_PATTERN = re.compile(
    r"\b(?:transaction|txn|ref|reference)\b\s*(?:id|no\.?|number)?:?\s*([a-zA-Z0-9]+)",
    re.IGNORECASE,
)
UPI_ID_PATTERN = re.compile(r"\bupi\s*(?:id|ref)?:?\s*([0-9]+)", re.IGNORECASE)
REFERENCE_PATTERN = re.compile(r"\b(?:rrn|ref no\.?|reference number):?\s*([a-zA-Z0-9]+)", re.IGNORECASE)

MERCHANT_PATTERNS = (
    re.compile(r"\b(?i:at|to|from)\s+([A-Z][A-Za-z&'\s]+?)\s+(?i:on|for|via)\b|\b(?i:at|to|from)\s+([A-Z][A-Za-z&'\s]+?)(?:\.|$)"),
    re.compile(r"\bmerchant[:\s]+([A-Za-z0-9][A-Za-z0-9&'\s]*?)(?:\s{2,}|[.,;]|$)", re.IGNORECASE),
    re.compile(r"\b([A-Z][A-Za-z\s]+?)\s+transaction\b"),
)
MERCHANT_STOPWORDS = {"your", "the", "a", "an", "this", "our", "dear", "you"}

DATE_PATTERNS = (
    re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{4}\b"),
    re.compile(r"\b\d{4}[/-]\d{1,2}[/-]\d{1,2}\b"),
    re.compile(r"\b\d{1,2}\s+(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+\d{4}\b", re.IGNORECASE),
)

DESCRIPTION_KEYWORDS = ("transaction", "payment", "debited", "credited")
DESCRIPTION_MAX_LENGTH = 500

# Confidence weights
WEIGHT_AMOUNT = 0.3
WEIGHT_BANK_DOMAIN = 0.2
WEIGHT_TRANSACTION_ID = 0.15
WEIGHT_ACCOUNT_OR_CARD = 0.15
WEIGHT_MERCHANT = 0.1
WEIGHT_KIND = 0.1


def clean_email_body(html: str) -> str:
    """Visible text of a (possibly HTML) body, whitespace collapsed to single spaces."""
    if not html:
        return ""
    text = html
    if "<" in html and ">" in html:
        soup = BeautifulSoup(html, "lxml")
        for tag in soup(["script", "style"]):
            tag.decompose()
        text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def sender_domain(sender: str) -> str:
    _, address = parseaddr(sender or "")
    if "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].strip().lower()


def is_bank_domain(domain: str) -> bool:
    return any(domain == d or domain.endswith("." + d) for d in BANK_DOMAINS)


def _contains_word(text: str, keyword: str, trailing_boundary: bool = True) -> bool:
    pattern = r"(?<![a-z0-9])" + re.escape(keyword)
    if trailing_boundary:
        pattern += r"(?![a-z0-9])"
    return re.search(pattern, text) is not None


def is_financial_email(sender: str, subject: str) -> bool:
    if not sender:
        return False
    if is_bank_domain(sender_domain(sender)):
        return True

    sender_l = sender.lower()
    subject_l = (subject or "").lower()
    return any(
        _contains_word(sender_l, kw, trailing_boundary=False) or _contains_word(subject_l, kw, trailing_boundary=False)
        for kw in FINANCIAL_KEYWORDS
    )


def extract_amount(text: str) -> Optional[Decimal]:
    match = AMOUNT_PATTERN.search(text or "")
    if not match:
        return None
    raw = match.group(1).replace(",", "")
    try:
        amount = Decimal(raw).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        logger.debug("Unparseable amount %r", match.group(1))
        return None
    return amount if amount > 0 else None


def classify_kind(content: str, subject: str) -> TransactionKind:
    combined = f"{content} {subject or ''}".lower()

    best_kind, best_score = TransactionKind.DEBIT, 0
    for kind, keywords in KIND_KEYWORDS:
        score = sum(len(kw) for kw in keywords if _contains_word(combined, kw))
        if score > best_score:
            best_kind, best_score = kind, score
    return best_kind


def extract_merchant(content: str, subject: str) -> Optional[str]:
    combined = f"{subject or ''} {content}".strip()

    for pattern in MERCHANT_PATTERNS:
        for match in pattern.finditer(combined):
            name = next((g for g in match.groups() if g), "")
            name = re.sub(r"\s+", " ", name).strip()
            if not (3 < len(name) < 50):
                continue
            if name.split(" ", 1)[0].lower() in MERCHANT_STOPWORDS:
                continue
            return name
    return None


def _first_group(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1) if match else None


def extract_transaction_id(content: str) -> Optional[str]:
    # "transaction of Rs" must not yield "of"
    for match in TRANSACTION_ID_PATTERN.finditer(content):
        candidate = match.group(1)
        if any(ch.isdigit() for ch in candidate):
            return candidate
    return _first_group(UPI_ID_PATTERN, content)


def build_description(content: str, subject: str) -> str:
    description = subject or ""
    if len(content) > 100:
        for sentence in content.split(". "):
            lowered = sentence.lower()
            if 20 < len(sentence) < 200 and any(kw in lowered for kw in DESCRIPTION_KEYWORDS):
                description = sentence.strip()
                break
    return description[:DESCRIPTION_MAX_LENGTH]


def suggest_category(merchant: Optional[str], content: str) -> str:
    search_text = f"{merchant or ''} {content}".lower()
    for pattern, label in CATEGORY_PATTERNS:
        if pattern.search(search_text):
            return label
    return DEFAULT_CATEGORY


def find_date_text(content: str) -> Optional[str]:
    for pattern in DATE_PATTERNS:
        match = pattern.search(content)
        if match:
            return match.group(0)
    return None


def score_confidence(
    *,
    bank_sender: bool,
    transaction_id: Optional[str],
    account_last4: Optional[str],
    card_last4: Optional[str],
    merchant: Optional[str],
) -> float:
    score = WEIGHT_AMOUNT + WEIGHT_KIND
    if bank_sender:
        score += WEIGHT_BANK_DOMAIN
    if transaction_id:
        score += WEIGHT_TRANSACTION_ID
    if account_last4 or card_last4:
        score += WEIGHT_ACCOUNT_OR_CARD
    if merchant:
        score += WEIGHT_MERCHANT
    return round(min(score, 1.0), 4)


def parse_transaction_email(
    sender: str,
    subject: str,
    body: str,
    received_at: Optional[datetime],
) -> Optional[TransactionCandidate]:
    """
    Turn one email into a transaction candidate, or None when it is not a
    transactional email or carries no amount.

    Extracted:
    - amount (mandatory), kind, merchant
    - last-4 account / card digits
    - transaction id, reference number
    - description, category suggestion and a confidence score
    """
    if not is_financial_email(sender, subject):
        logger.debug("Not a financial sender, skipping: %s", sender)
        return None

    content = clean_email_body(body)

    amount = extract_amount(content) or extract_amount(subject)
    if amount is None:
        logger.debug("No amount found in email from %s, skipping", sender)
        return None

    kind = classify_kind(content, subject)
    merchant = extract_merchant(content, subject)
    account_last4 = _first_group(ACCOUNT_PATTERN, content)
    card_last4 = _first_group(CARD_PATTERN, content)
    transaction_id = extract_transaction_id(content)
    reference = _first_group(REFERENCE_PATTERN, content)

    # Explicit dates are recognised but the received time is what gets recorded
    date_text = find_date_text(content)
    if date_text:
        logger.debug("Found date text %r, keeping received time", date_text)

    bank_sender = is_bank_domain(sender_domain(sender))
    confidence = score_confidence(
        bank_sender=bank_sender,
        transaction_id=transaction_id,
        account_last4=account_last4,
        card_last4=card_last4,
        merchant=merchant,
    )

    candidate = TransactionCandidate(
        amount=amount,
        transaction_type=kind,
        merchant_name=merchant,
        account_number_last4=account_last4,
        card_last4=card_last4,
        transaction_id=transaction_id,
        reference_number=reference,
        description=build_description(content, subject),
        category_suggestion=suggest_category(merchant, content),
        transaction_date=received_at,
        confidence_score=confidence,
        sender_email=sender[:255],
        email_subject=(subject or "")[:1000],
        raw_email_content=body,
    )
    logger.info(f"Parsed transaction: amount={amount}, type={kind.value}, confidence={confidence}")
    return candidate
