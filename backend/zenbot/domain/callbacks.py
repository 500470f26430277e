"""Inline button payloads.

Every ``callback_data`` the bot emits is produced by :func:`encode_callback`
and read back by :func:`decode_callback`, so the coordinator only ever sees a
typed :class:`CallbackIntent`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .entities import AccountChoice

TAG_PREFIX = "tx:tag:"
ACCOUNT_PREFIX = "tx:account:"


class CallbackAction(str, Enum):
    SELECT_TAG = "select_tag"
    SELECT_ACCOUNT = "select_account"
    APPLY = "apply"
    CANCEL = "cancel"
    EDIT = "edit"
    SYNC_TAGS = "sync_tags"
    SYNC_ACCOUNTS = "sync_accounts"
    SKIP_SETUP = "skip_setup"


@dataclass(slots=True, frozen=True)
class CallbackIntent:
    action: CallbackAction
    tag_id: str | None = None
    account: AccountChoice | None = None


_FIXED_PAYLOADS = {
    "tx:apply": CallbackAction.APPLY,
    "tx:cancel": CallbackAction.CANCEL,
    "tx:edit": CallbackAction.EDIT,
    "setup:tags": CallbackAction.SYNC_TAGS,
    "setup:accounts": CallbackAction.SYNC_ACCOUNTS,
    "setup:skip": CallbackAction.SKIP_SETUP,
}
_FIXED_DATA = {action: data for data, action in _FIXED_PAYLOADS.items()}


def encode_callback(intent: CallbackIntent) -> str:
    if intent.action == CallbackAction.SELECT_TAG:
        if not intent.tag_id:
            raise ValueError("Tag selection requires a tag id")
        return f"{TAG_PREFIX}{intent.tag_id}"
    if intent.action == CallbackAction.SELECT_ACCOUNT:
        if intent.account is None:
            raise ValueError("Account selection requires an account choice")
        return f"{ACCOUNT_PREFIX}{intent.account.value}"
    return _FIXED_DATA[intent.action]


def decode_callback(data: str | None) -> CallbackIntent | None:
    """Return the intent behind ``data`` or ``None`` for unknown payloads."""
    if not data:
        return None
    if data.startswith(TAG_PREFIX):
        tag_id = data[len(TAG_PREFIX) :]
        if not tag_id:
            return None
        return CallbackIntent(CallbackAction.SELECT_TAG, tag_id=tag_id)
    if data.startswith(ACCOUNT_PREFIX):
        try:
            choice = AccountChoice(data[len(ACCOUNT_PREFIX) :])
        except ValueError:
            return None
        return CallbackIntent(CallbackAction.SELECT_ACCOUNT, account=choice)
    action = _FIXED_PAYLOADS.get(data)
    if action is None:
        return None
    return CallbackIntent(action)
