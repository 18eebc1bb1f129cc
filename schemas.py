import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Scope(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: Optional[int] = None
    entity_tag: Optional[str] = Field(default=None, max_length=100)

    @property
    def is_valid(self) -> bool:
        # Exactly one of the two selects what a balance query covers.
        return (self.entity_id is None) != (not self.entity_tag)

    @property
    def cache_key(self) -> str:
        if self.entity_id is not None:
            return f"balance:entity:{self.entity_id}"
        return f"balance:tag:{self.entity_tag}"


class LinkCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    link_id: Optional[int] = None
    link_token: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.link_id is not None and bool(self.link_token)


class BalanceLine(BaseModel):
    currency: str
    date: Optional[dt.date] = None
    status: bool
    amount: Decimal


class EntityBalances(BaseModel):
    entity_id: int
    entity_name: str
    entity_tag: str
    balances: list[BalanceLine] = Field(default_factory=list)


ENTITY_BALANCES_ADAPTER = TypeAdapter(list[EntityBalances])


class DetailedBalance(BaseModel):
    currency: str
    entity_id: int
    entity_tag: str
    entity_name: str
    status: bool
    balance: Decimal


class AccountTotal(BaseModel):
    account: bool
    amount: Decimal


class CurrencySummary(BaseModel):
    currency: str
    balances: list[AccountTotal] = Field(default_factory=list)


class EntityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    tag_name: str


class OperationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    observations: Optional[str] = None
    date: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    currency: str
    amount: Decimal
    date: Optional[datetime] = None
    operation: Optional[OperationOut] = None
    from_entity: EntityOut
    to_entity: EntityOut


class MovementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    direction: int
    account: bool
    type: Optional[str] = None
    transaction: TransactionOut


class MovementPage(BaseModel):
    movements: list[MovementOut] = Field(default_factory=list)
    total_rows: int = 0
