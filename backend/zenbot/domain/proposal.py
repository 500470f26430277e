"""Rendering, editing and re-reading of transaction proposal messages.

A proposal is sent to the chat as plain text with one field per line:

    Новая запись от 19.10.2026

    🛍️ <tag>
    👛 <account>
    💲 <amount>
    💬 <comment>

Once sent, the message text is the only durable copy of the proposal, so the
functions below locate fields purely by their line prefix.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from datetime import date
from decimal import Decimal

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.helpers import escape_markdown

from .amounts import detect_account_type, extract_amount, format_amount, parse_amount
from .callbacks import CallbackAction, CallbackIntent, encode_callback
from .entities import (
    AccountChoice,
    AccountClass,
    AccountRef,
    CategoryCandidate,
    ProposalFields,
    RenderedProposal,
    SuggestionResult,
    TagRef,
    TransactionProposal,
)
from .exceptions import ProposalParseError

DEFAULT_TAG_TITLE = "Продукты"
MAX_TAG_BUTTONS = 3

TAG_ICON = "🛍️"
ACCOUNT_ICON = "👛"
AMOUNT_ICON = "💲"
COMMENT_ICON = "💬"

HEADER_TEMPLATE = "Новая запись от {date}"
CANCELLED_HEADER = "❌ Запись отменена"
APPLIED_HEADER = "✅ Запись добавлена"

ACCOUNT_BUTTONS = (
    (AccountChoice.CARD, "💳"),
    (AccountChoice.CASH, "💵"),
    (AccountChoice.SHARED_CARD, "🪪"),
)


def _line_pattern(icon: str) -> re.Pattern[str]:
    # Telegram clients may drop or add the emoji variation selector on edit.
    base = re.escape(icon.replace("\ufe0f", ""))
    return re.compile(rf"^({base}\ufe0f?[ \t]?)(.*)$", re.MULTILINE)


TAG_LINE_RE = _line_pattern(TAG_ICON)
ACCOUNT_LINE_RE = _line_pattern(ACCOUNT_ICON)
AMOUNT_LINE_RE = _line_pattern(AMOUNT_ICON)
COMMENT_LINE_RE = _line_pattern(COMMENT_ICON)

_FIELD_ORDER = (
    ("tag", TAG_LINE_RE),
    ("account", ACCOUNT_LINE_RE),
    ("amount", AMOUNT_LINE_RE),
    ("comment", COMMENT_LINE_RE),
)


def resolve_account_name(choice: AccountChoice, account_names: Mapping[AccountChoice, str | None]) -> str:
    name = account_names.get(choice)
    if name and name.strip():
        return name.strip()
    return choice.fallback_name


def render_proposal_text(
    tag_title: str,
    account_name: str,
    formatted_amount: str,
    comment: str,
    on_date: date,
) -> str:
    return "\n".join(
        [
            HEADER_TEMPLATE.format(date=on_date.strftime("%d.%m.%Y")),
            "",
            f"{TAG_ICON} {tag_title}",
            f"{ACCOUNT_ICON} {account_name}",
            f"{AMOUNT_ICON} {formatted_amount}",
            f"{COMMENT_ICON} {comment}",
        ]
    )


def create_proposal(
    user_text: str,
    suggestion: SuggestionResult | None,
    account_names: Mapping[AccountChoice, str | None],
    today: date | None = None,
) -> RenderedProposal:
    """Build the proposal for ``user_text`` and its rendered message text.

    ``account_names`` maps account choices to the names configured for the
    user; blank or missing names fall back to the built-in defaults.
    """
    today = today or date.today()
    extracted = extract_amount(user_text)
    amount = extracted.amount if extracted.amount is not None else Decimal(0)
    formatted = format_amount(amount)

    account_class = detect_account_type(user_text)
    choice = AccountChoice.for_account_class(account_class)
    account_name = resolve_account_name(choice, account_names)

    ranked = list(suggestion.tags) if suggestion and suggestion.success else []
    if ranked:
        tag = TagRef(id=ranked[0].id, title=ranked[0].title)
    else:
        tag = TagRef(id=None, title=DEFAULT_TAG_TITLE)

    proposal = TransactionProposal(
        tag=tag,
        account=AccountRef(
            name=account_name,
            type=account_class if account_class != AccountClass.UNKNOWN else AccountClass.CASH,
        ),
        amount=amount,
        formatted_amount=formatted,
        comment=user_text,
        date=today,
        additional_tags=ranked[1:],
        ai_confidence=suggestion.confidence if suggestion else 0.0,
    )
    text = render_proposal_text(tag.title, account_name, formatted, user_text, today)
    return RenderedProposal(message_text=text, proposal=proposal, ai_tags=ranked)


def build_keyboard(ai_tags: Sequence[CategoryCandidate]) -> InlineKeyboardMarkup:
    rows: list[list[InlineKeyboardButton]] = []
    tag_row = [
        InlineKeyboardButton(
            tag.title,
            callback_data=encode_callback(CallbackIntent(CallbackAction.SELECT_TAG, tag_id=tag.id)),
        )
        for tag in list(ai_tags)[:MAX_TAG_BUTTONS]
    ]
    if tag_row:
        rows.append(tag_row)

    controls = [
        InlineKeyboardButton(
            label,
            callback_data=encode_callback(CallbackIntent(CallbackAction.SELECT_ACCOUNT, account=choice)),
        )
        for choice, label in ACCOUNT_BUTTONS
    ]
    controls.append(InlineKeyboardButton("✅", callback_data=encode_callback(CallbackIntent(CallbackAction.APPLY))))
    controls.append(InlineKeyboardButton("❌", callback_data=encode_callback(CallbackIntent(CallbackAction.CANCEL))))
    controls.append(InlineKeyboardButton("✏️", callback_data=encode_callback(CallbackIntent(CallbackAction.EDIT))))
    rows.append(controls)
    return InlineKeyboardMarkup(rows)


def _replace_field(pattern: re.Pattern[str], message_text: str, value: str) -> str:
    return pattern.sub(lambda match: f"{match.group(1)}{value}", message_text, count=1)


def update_tag(message_text: str, new_tag_title: str) -> str:
    """Swap the category line; text without a category line is returned as is."""
    return _replace_field(TAG_LINE_RE, message_text, new_tag_title)


def update_account(message_text: str, new_account_name: str) -> str:
    """Swap the account line; text without an account line is returned as is."""
    return _replace_field(ACCOUNT_LINE_RE, message_text, new_account_name)


def parse_proposal(message_text: str) -> ProposalFields:
    """Recover the four proposal fields from a rendered message.

    The category, account, amount and comment lines must appear in that order
    on consecutive lines. The comment runs to the end of the message.
    Raises :class:`ProposalParseError` when the layout does not match.
    """
    lines = (message_text or "").split("\n")
    start = next((index for index, line in enumerate(lines) if TAG_LINE_RE.match(line)), None)
    if start is None:
        raise ProposalParseError("Category line not found", missing=tuple(name for name, _ in _FIELD_ORDER))

    values: dict[str, str] = {}
    missing: list[str] = []
    for offset, (name, pattern) in enumerate(_FIELD_ORDER):
        index = start + offset
        match = pattern.match(lines[index]) if index < len(lines) else None
        if match is None:
            missing.append(name)
            continue
        if name == "comment":
            values[name] = "\n".join([match.group(2), *lines[index + 1 :]])
        else:
            values[name] = match.group(2).strip()

    for name, _ in _FIELD_ORDER:
        if name in values and not values[name].strip():
            missing.append(name)
    if missing:
        raise ProposalParseError(f"Proposal fields missing: {', '.join(missing)}", missing=tuple(missing))

    amount = parse_amount(values["amount"])
    if amount is None:
        raise ProposalParseError(f"Amount is not a number: {values['amount']!r}", missing=("amount",))

    return ProposalFields(
        tag_title=values["tag"],
        account_name=values["account"],
        amount=amount,
        formatted_amount=values["amount"],
        comment=values["comment"],
    )


def render_cancelled(message_text: str) -> str:
    """Strike through every non-blank line; the result is MarkdownV2."""
    parse_proposal(message_text)
    struck = [
        f"~{escape_markdown(line, version=2)}~"
        for line in message_text.split("\n")
        if line.strip()
    ]
    return escape_markdown(CANCELLED_HEADER, version=2) + "\n\n" + "\n".join(struck)


def render_applied(fields: ProposalFields) -> str:
    return "\n".join(
        [
            APPLIED_HEADER,
            "",
            fields.tag_title,
            fields.account_name,
            fields.formatted_amount,
            fields.comment,
        ]
    )


def render_commit_failed(error: str | None) -> str:
    return (
        "❌ Ошибка при создании записи в ZenMoney\n\n"
        f"{error or 'Неизвестная ошибка'}\n\n"
        "💡 Проверьте настройки подключения к ZenMoney API."
    )


def render_parse_failed(error: ProposalParseError) -> str:
    return f"⚠️ Не удалось разобрать запись: {error}\n\nОтправьте сообщение с тратой заново."
