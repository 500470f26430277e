from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, aliased

from .models import (
    AccountModel,
    AISettingsModel,
    SettingModel,
    TagModel,
    UserModel,
    UserSettingModel,
)
from .schemas import ZenMoneyAccount, ZenMoneyTag


def get_user_by_telegram_id(db: Session, telegram_id: str) -> UserModel | None:
    return db.scalar(select(UserModel).where(UserModel.telegram_id == telegram_id))


def get_active_user(db: Session, telegram_id: str) -> UserModel | None:
    return db.scalar(
        select(UserModel).where(UserModel.telegram_id == telegram_id, UserModel.is_active.is_(True))
    )


def touch_user(db: Session, user: UserModel, username: str | None = None) -> UserModel:
    user.last_activity = datetime.now(timezone.utc)
    if username and user.username != username:
        user.username = username
    db.commit()
    db.refresh(user)
    return user


def activate_user(
    db: Session,
    telegram_id: str,
    username: str | None = None,
    first_name: str | None = None,
) -> UserModel:
    user = get_user_by_telegram_id(db, telegram_id)
    if user is None:
        user = UserModel(telegram_id=telegram_id, username=username, first_name=first_name)
        db.add(user)
    elif username:
        user.username = username
    user.is_active = True
    db.commit()
    db.refresh(user)
    return user


def update_user_token(db: Session, user_id: int, token: str) -> UserModel | None:
    user = db.get(UserModel, user_id)
    if user is None:
        return None
    user.zenmoney_token = token
    db.commit()
    db.refresh(user)
    return user


def get_setting(db: Session, name: str) -> str | None:
    setting = db.get(SettingModel, name)
    return setting.parameter_value if setting else None


def set_setting(db: Session, name: str, value: str | None) -> SettingModel:
    setting = db.get(SettingModel, name)
    if setting is None:
        setting = SettingModel(parameter_name=name)
        db.add(setting)
    setting.parameter_value = value
    db.commit()
    db.refresh(setting)
    return setting


def get_user_setting(db: Session, user_id: int, name: str) -> str | None:
    return db.scalar(
        select(UserSettingModel.parameter_value).where(
            UserSettingModel.user_id == user_id,
            UserSettingModel.parameter_name == name,
        )
    )


def set_user_setting(db: Session, user_id: int, name: str, value: str | None) -> UserSettingModel:
    setting = db.scalar(
        select(UserSettingModel).where(
            UserSettingModel.user_id == user_id,
            UserSettingModel.parameter_name == name,
        )
    )
    if setting is None:
        setting = UserSettingModel(user_id=user_id, parameter_name=name)
        db.add(setting)
    setting.parameter_value = value
    db.commit()
    db.refresh(setting)
    return setting


def list_tags_with_parents(db: Session, user_id: int) -> list[tuple[TagModel, str | None]]:
    """Return each tag of the user paired with its parent's title."""
    parent = aliased(TagModel)
    stmt = (
        select(TagModel, parent.title)
        .outerjoin(
            parent,
            (parent.zm_id == TagModel.parent_id) & (parent.user_id == TagModel.user_id),
        )
        .where(TagModel.user_id == user_id)
        .order_by(TagModel.title)
    )
    return [(tag, parent_title) for tag, parent_title in db.execute(stmt)]


def _match_title(rows: Iterable, title: str):
    # SQLite lower() folds ASCII only, so Cyrillic titles are compared here.
    needle = title.strip().casefold()
    for row in rows:
        if row.title.strip().casefold() == needle:
            return row
    return None


def get_tag_by_title(db: Session, user_id: int, title: str) -> TagModel | None:
    exact = db.scalar(
        select(TagModel).where(TagModel.user_id == user_id, TagModel.title == title.strip()).limit(1)
    )
    if exact is not None:
        return exact
    return _match_title(db.scalars(select(TagModel).where(TagModel.user_id == user_id)), title)


def list_accounts(db: Session, user_id: int, include_archived: bool = False) -> list[AccountModel]:
    stmt = select(AccountModel).where(AccountModel.user_id == user_id)
    if not include_archived:
        stmt = stmt.where(AccountModel.archive.is_(False))
    return list(db.scalars(stmt.order_by(AccountModel.title)))


def get_account_by_title(db: Session, user_id: int, title: str) -> AccountModel | None:
    return _match_title(list_accounts(db, user_id), title)


def count_tags(db: Session, user_id: int) -> int:
    return db.scalar(select(func.count()).select_from(TagModel).where(TagModel.user_id == user_id)) or 0


def count_accounts(db: Session, user_id: int) -> int:
    return (
        db.scalar(select(func.count()).select_from(AccountModel).where(AccountModel.user_id == user_id))
        or 0
    )


def replace_tags(db: Session, user_id: int, tags: Iterable[ZenMoneyTag]) -> int:
    db.execute(delete(TagModel).where(TagModel.user_id == user_id))
    count = 0
    for tag in tags:
        db.add(
            TagModel(
                user_id=user_id,
                zm_id=tag.id,
                title=tag.title,
                parent_id=tag.parent,
                color=tag.color,
                icon=tag.icon,
            )
        )
        count += 1
    db.commit()
    return count


def replace_accounts(db: Session, user_id: int, accounts: Iterable[ZenMoneyAccount]) -> int:
    db.execute(delete(AccountModel).where(AccountModel.user_id == user_id))
    count = 0
    for account in accounts:
        db.add(
            AccountModel(
                user_id=user_id,
                zm_id=account.id,
                title=account.title,
                type=account.type,
                instrument_id=account.instrument,
                balance=account.balance or 0.0,
                archive=account.archive,
            )
        )
        count += 1
    db.commit()
    return count


def get_active_ai_settings(db: Session) -> AISettingsModel | None:
    return db.scalar(
        select(AISettingsModel)
        .where(AISettingsModel.is_active.is_(True))
        .order_by(AISettingsModel.id.desc())
        .limit(1)
    )
