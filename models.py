from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class PermissionName(str, Enum):
    admin = "ADMIN"
    accounts_visualize = "ACCOUNTS_VISUALIZE"
    accounts_visualize_some = "ACCOUNTS_VISUALIZE_SOME"


PERMISSION_NAME_ENUM = SAEnum(
    PermissionName,
    name="permissionname",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    parent_name: Mapped[Optional[str]] = mapped_column(
        ForeignKey("tags.name", onupdate="CASCADE")
    )

    parent: Mapped[Optional["Tag"]] = relationship(
        "Tag", remote_side=[name], back_populates="children"
    )
    children: Mapped[list["Tag"]] = relationship("Tag", back_populates="parent")
    entities: Mapped[list["Entity"]] = relationship("Entity", back_populates="tag")


class Entity(Base, TimestampMixin):
    __tablename__ = "entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    tag_name: Mapped[str] = mapped_column(
        ForeignKey("tags.name", onupdate="CASCADE"), nullable=False
    )

    tag: Mapped["Tag"] = relationship("Tag", back_populates="entities")

    __table_args__ = (Index("ix_entities_tag_name", "tag_name"),)


class Operation(Base, TimestampMixin):
    __tablename__ = "operations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    observations: Mapped[Optional[str]] = mapped_column(Text)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="operation"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_id: Mapped[Optional[int]] = mapped_column(ForeignKey("operations.id"))
    from_entity_id: Mapped[int] = mapped_column(
        ForeignKey("entities.id"), nullable=False
    )
    to_entity_id: Mapped[int] = mapped_column(ForeignKey("entities.id"), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    operation: Mapped[Optional["Operation"]] = relationship(
        "Operation", back_populates="transactions"
    )
    from_entity: Mapped["Entity"] = relationship(
        "Entity", foreign_keys=[from_entity_id]
    )
    to_entity: Mapped["Entity"] = relationship("Entity", foreign_keys=[to_entity_id])
    movements: Mapped[list["Movement"]] = relationship(
        "Movement", back_populates="transaction"
    )

    __table_args__ = (
        Index("ix_transactions_from_entity", "from_entity_id"),
        Index("ix_transactions_to_entity", "to_entity_id"),
        Index("ix_transactions_currency", "currency"),
        CheckConstraint(
            "from_entity_id <> to_entity_id", name="ck_transactions_distinct_entities"
        ),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )


class Movement(Base, TimestampMixin):
    __tablename__ = "movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    direction: Mapped[int] = mapped_column(Integer, nullable=False)
    # True is the cash (box) account, False the current account.
    account: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    type: Mapped[Optional[str]] = mapped_column(String(40))

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="movements"
    )

    __table_args__ = (
        Index("ix_movements_transaction", "transaction_id"),
        CheckConstraint("direction IN (1, -1)", name="ck_movements_direction"),
    )


class Link(Base, TimestampMixin):
    __tablename__ = "links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shared_entity_id: Mapped[int] = mapped_column(
        ForeignKey("entities.id"), nullable=False
    )
    password: Mapped[str] = mapped_column(String(200), nullable=False)

    shared_entity: Mapped["Entity"] = relationship("Entity")


class Permission(Base, TimestampMixin):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(120), nullable=False)
    name: Mapped[PermissionName] = mapped_column(PERMISSION_NAME_ENUM, nullable=False)
    entities_ids_json: Mapped[Optional[str]] = mapped_column(Text)
    entities_tags_json: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (Index("ix_permissions_user", "user_id"),)
