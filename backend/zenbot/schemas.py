from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ZenMoneyTag(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    parent: Optional[str] = None
    color: Optional[int] = None
    icon: Optional[str] = None


class ZenMoneyAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    type: Optional[str] = None
    instrument: Optional[int] = None
    balance: Optional[float] = 0.0
    archive: bool = False


class ZenMoneyUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int


class ZenMoneyTransaction(BaseModel):
    """Expense transaction in the shape accepted by ``/v8/diff``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    user: int
    date: date
    income: float = 0
    outcome: float = Field(gt=0)
    income_account: str = Field(alias="incomeAccount")
    outcome_account: str = Field(alias="outcomeAccount")
    income_instrument: int = Field(alias="incomeInstrument")
    outcome_instrument: int = Field(alias="outcomeInstrument")
    tag: Optional[list[str]] = None
    comment: Optional[str] = Field(default=None, max_length=4096)
    payee: Optional[str] = None
    merchant: Optional[str] = None
    original_payee: Optional[str] = Field(default=None, alias="originalPayee")
    op_income: Optional[float] = Field(default=None, alias="opIncome")
    op_outcome: Optional[float] = Field(default=None, alias="opOutcome")
    op_income_instrument: Optional[int] = Field(default=None, alias="opIncomeInstrument")
    op_outcome_instrument: Optional[int] = Field(default=None, alias="opOutcomeInstrument")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    reminder_marker: Optional[str] = Field(default=None, alias="reminderMarker")
    income_bank_id: Optional[str] = Field(default=None, alias="incomeBankID")
    outcome_bank_id: Optional[str] = Field(default=None, alias="outcomeBankID")
    deleted: bool = False
    hold: Optional[bool] = None
    viewed: bool = False
    created: int
    changed: int

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
