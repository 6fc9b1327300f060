from enum import Enum


class MailProvider(str, Enum):
    GMAIL = 'GMAIL'
    OUTLOOK = 'OUTLOOK'
    YAHOO = 'YAHOO'


class TransactionKind(str, Enum):
    DEBIT = 'DEBIT'
    CREDIT = 'CREDIT'
    TRANSFER = 'TRANSFER'
    ATM_WITHDRAWAL = 'ATM_WITHDRAWAL'
    ATM_DEPOSIT = 'ATM_DEPOSIT'
    ONLINE_PURCHASE = 'ONLINE_PURCHASE'
    MOBILE_PAYMENT = 'MOBILE_PAYMENT'
    BILL_PAYMENT = 'BILL_PAYMENT'
    EMI_PAYMENT = 'EMI_PAYMENT'
    INTEREST_CREDIT = 'INTEREST_CREDIT'
    SALARY_CREDIT = 'SALARY_CREDIT'
    DIVIDEND_CREDIT = 'DIVIDEND_CREDIT'
    REFUND = 'REFUND'
    CHARGES = 'CHARGES'
    FEES = 'FEES'


class ProcessingState(str, Enum):
    UNPROCESSED = 'unprocessed'
    PROCESSING = 'processing'   # claimed by one materializer attempt
    PROCESSED = 'processed'
    FAILED = 'failed'


class LedgerTransactionType(str, Enum):
    INCOME = 'INCOME'
    EXPENSE = 'EXPENSE'


class AccountStatus(str, Enum):
    CONNECTED = 'Connected'
    NEEDS_REFRESH = 'Needs Refresh'
    TOKEN_EXPIRED = 'Token Expired'
    DISCONNECTED = 'Disconnected'


# Sender domains of banks and payment apps we trust as transaction sources
BANK_DOMAINS = (
    "sbi.co.in", "hdfcbank.com", "icicibank.com", "axisbank.com", "kotak.com",
    "yesbank.in", "indusind.com", "pnb.co.in", "bankofbaroda.co.in", "canarabank.com",
    "unionbankofindia.co.in", "idfcfirstbank.com", "rbl.co.in", "sc.com", "citibank.co.in",
    "hsbc.co.in", "dbs.com", "americanexpress.com", "paytm.com", "phonepe.com",
    "gpay.com", "razorpay.com", "bharatpe.com", "cred.club",
)

# Ledger tag per sender domain
BANK_TAGS = {
    "sbi.co.in": "sbi",
    "hdfcbank.com": "hdfc",
    "icicibank.com": "icici",
    "axisbank.com": "axis",
    "kotak.com": "kotak",
    "paytm.com": "paytm",
    "phonepe.com": "phonepe",
}

EMAIL_EXTRACTED_TAG = "email-extracted"
