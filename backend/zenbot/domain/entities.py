from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum


class AccountClass(str, Enum):
    CARD = "card"
    CASH = "cash"
    UNKNOWN = "unknown"


class AccountChoice(str, Enum):
    """Account buttons offered on a proposal, keyed by their setting name."""

    CARD = "card"
    CASH = "cash"
    SHARED_CARD = "shared_card"

    @property
    def setting_name(self) -> str:
        return {
            AccountChoice.CARD: "default_card",
            AccountChoice.CASH: "default_cash",
            AccountChoice.SHARED_CARD: "shared_card",
        }[self]

    @property
    def fallback_name(self) -> str:
        return {
            AccountChoice.CARD: "Карта",
            AccountChoice.CASH: "Бумажник",
            AccountChoice.SHARED_CARD: "Общая карта",
        }[self]

    @classmethod
    def for_account_class(cls, account_class: AccountClass) -> AccountChoice:
        if account_class == AccountClass.CARD:
            return cls.CARD
        return cls.CASH


class AmountPattern(str, Enum):
    AMOUNT_CURRENCY = "amount_currency"
    CURRENCY_AMOUNT = "currency_amount"
    AMOUNT_ONLY = "amount_only"
    NONE = "none"


@dataclass(slots=True, frozen=True)
class ExtractedAmount:
    amount: Decimal | None
    matched_pattern: AmountPattern = AmountPattern.NONE
    currency: str | None = None

    @property
    def success(self) -> bool:
        return self.amount is not None


@dataclass(slots=True, frozen=True)
class CategoryCandidate:
    """A ZenMoney tag that may be offered as a category."""

    id: str
    title: str
    parent_id: str | None = None
    parent_title: str | None = None
    description: str | None = None

    @property
    def is_leaf(self) -> bool:
        return self.parent_id is not None


@dataclass(slots=True)
class SuggestionResult:
    success: bool
    tags: list[CategoryCandidate] = field(default_factory=list)
    confidence: float = 0.0
    raw_response: str | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class TagRef:
    id: str | None
    title: str


@dataclass(slots=True, frozen=True)
class AccountRef:
    name: str
    type: AccountClass


@dataclass(slots=True)
class TransactionProposal:
    """Structured guess derived from one user message."""

    tag: TagRef
    account: AccountRef
    amount: Decimal
    formatted_amount: str
    comment: str
    date: date
    additional_tags: list[CategoryCandidate] = field(default_factory=list)
    ai_confidence: float = 0.0


@dataclass(slots=True)
class RenderedProposal:
    message_text: str
    proposal: TransactionProposal
    ai_tags: list[CategoryCandidate]


@dataclass(slots=True, frozen=True)
class ProposalFields:
    """Fields recovered from a rendered proposal message."""

    tag_title: str
    account_name: str
    amount: Decimal
    formatted_amount: str
    comment: str


@dataclass(slots=True, frozen=True)
class BotUser:
    """Lightweight representation of an authorised Telegram user."""

    id: int
    telegram_id: str
    username: str | None
    first_name: str | None
    zenmoney_token: str | None
    is_admin: bool = False

    @property
    def display_name(self) -> str:
        return self.first_name or self.username or "Пользователь"


@dataclass(slots=True, frozen=True)
class AuthResult:
    authorized: bool
    user: BotUser | None = None


@dataclass(slots=True, frozen=True)
class LLMConfig:
    provider: str
    model: str
    api_key: str | None
    max_tokens: int = 1000
    temperature: float = 0.3
    timeout: float = 30.0


@dataclass(slots=True, frozen=True)
class LedgerAccount:
    id: str
    title: str
    instrument_id: int | None = None


@dataclass(slots=True)
class LedgerResult:
    success: bool
    response: dict | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class TokenValidation:
    valid: bool
    error: str | None = None


@dataclass(slots=True, frozen=True)
class SyncResult:
    success: bool
    count: int = 0
    error: str | None = None
