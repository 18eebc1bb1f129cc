"""Shared fixtures for building small ledgers in memory."""

import json
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest

from database import Base, build_engine, make_sessionmaker
from models import Entity, Link, Movement, Operation, Permission, Tag, Transaction


def make_engine():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


class LedgerBuilder:
    def __init__(self, session) -> None:
        self.session = session

    def tag(self, name: str, parent: Optional[str] = None) -> Tag:
        tag = Tag(name=name, parent_name=parent)
        self.session.add(tag)
        self.session.commit()
        return tag

    def entity(self, name: str, tag: str) -> Entity:
        entity = Entity(name=name, tag_name=tag)
        self.session.add(entity)
        self.session.commit()
        self.session.refresh(entity)
        return entity

    def transfer(
        self,
        source: Entity,
        target: Entity,
        amount,
        *,
        currency: str = "USD",
        legs: tuple[tuple[int, bool], ...] = ((-1, False),),
        when: Optional[datetime] = datetime(2025, 1, 5, 10, 0),
        operation_date: Optional[datetime] = None,
    ) -> Transaction:
        operation = None
        if operation_date is not None:
            operation = Operation(date=operation_date)
            self.session.add(operation)
        txn = Transaction(
            from_entity_id=source.id,
            to_entity_id=target.id,
            currency=currency,
            amount=Decimal(str(amount)),
            date=when,
            operation=operation,
        )
        txn.movements = [
            Movement(direction=direction, account=account)
            for direction, account in legs
        ]
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def link(self, entity: Entity, password: str) -> Link:
        link = Link(shared_entity_id=entity.id, password=password)
        self.session.add(link)
        self.session.commit()
        self.session.refresh(link)
        return link

    def permission(
        self,
        user_id: str,
        name,
        *,
        entity_ids: Optional[list[int]] = None,
        tags: Optional[list[str]] = None,
    ) -> Permission:
        permission = Permission(
            user_id=user_id,
            name=name,
            entities_ids_json=json.dumps(entity_ids) if entity_ids else None,
            entities_tags_json=json.dumps(tags) if tags else None,
        )
        self.session.add(permission)
        self.session.commit()
        return permission


@pytest.fixture
def engine():
    return make_engine()


@pytest.fixture
def session(engine):
    SessionLocal = make_sessionmaker(engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def ledger(session):
    return LedgerBuilder(session)
