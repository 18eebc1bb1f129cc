from __future__ import annotations

import hmac
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import Date, and_, case, func, not_, or_, select
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session, aliased, joinedload
from sqlalchemy.sql.expression import ColumnElement, FunctionElement

from cache import BalanceCache, TagSnapshotCache
from models import (
    Entity,
    Link,
    Movement,
    Operation,
    Permission,
    PermissionName,
    Tag,
    Transaction,
)
from schemas import (
    AccountTotal,
    BalanceLine,
    CurrencySummary,
    DetailedBalance,
    EntityBalances,
    LinkCredentials,
    MovementOut,
    MovementPage,
    Scope,
)
from sessions import SessionUser
from tag_tree import TagNode, tag_closure, tags_closure

logger = logging.getLogger(__name__)

NOT_SIGNED_IN_MESSAGE = "User is not signed in or the link is not valid"
INSUFFICIENT_GRANT_MESSAGE = (
    "User does not have sufficient permissions to view this account"
)


class day_trunc(FunctionElement):
    type = Date()
    name = "day_trunc"
    inherit_cache = True


@compiles(day_trunc)
def _compile_day_trunc(element, compiler, **kw):
    return "CAST(date_trunc('day', %s) AS DATE)" % compiler.process(
        element.clauses, **kw
    )


@compiles(day_trunc, "sqlite")
def _compile_day_trunc_sqlite(element, compiler, **kw):
    return "date(%s)" % compiler.process(element.clauses, **kw)


def _contributions(
    from_is_self: ColumnElement, to_is_self: ColumnElement
) -> tuple[ColumnElement, ColumnElement]:
    """Split a movement's amount into what it adds to and takes from a side.

    The side is whoever ``from_is_self`` / ``to_is_self`` select: money
    leaving with direction -1 or arriving with direction +1 counts in its
    favour, the two mirrored cases count against it.
    """
    credit = case(
        (and_(from_is_self, Movement.direction == -1), Transaction.amount),
        (and_(to_is_self, Movement.direction == 1), Transaction.amount),
        else_=0,
    )
    debit = case(
        (and_(from_is_self, Movement.direction == 1), Transaction.amount),
        (and_(to_is_self, Movement.direction == -1), Transaction.amount),
        else_=0,
    )
    return credit, debit


def _net_balance(
    from_is_self: ColumnElement, to_is_self: ColumnElement
) -> ColumnElement:
    credit, debit = _contributions(from_is_self, to_is_self)
    return func.sum(credit) - func.sum(debit)


def _scope_sides(
    entity_id: Optional[int], tag_names: Optional[Iterable[str]]
) -> tuple[ColumnElement, ColumnElement]:
    if entity_id is not None:
        return (
            Transaction.from_entity_id == entity_id,
            Transaction.to_entity_id == entity_id,
        )
    inside = select(Entity.id).where(Entity.tag_name.in_(sorted(tag_names or ())))
    return (
        Transaction.from_entity_id.in_(inside),
        Transaction.to_entity_id.in_(inside),
    )


def _crossing(from_in: ColumnElement, to_in: ColumnElement) -> ColumnElement:
    return or_(and_(from_in, not_(to_in)), and_(not_(from_in), to_in))


def _effective_date() -> ColumnElement:
    return func.coalesce(Transaction.date, Operation.date)


def _json_list(raw: Optional[str]) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return []
    return value if isinstance(value, list) else []


class TagService:
    def __init__(
        self, session: Session, cache: Optional[TagSnapshotCache] = None
    ) -> None:
        self.session = session
        self.cache = cache
        self._snapshot: Optional[tuple[TagNode, ...]] = None

    def snapshot(self) -> tuple[TagNode, ...]:
        if self._snapshot is not None:
            return self._snapshot
        snapshot = self.cache.get() if self.cache else None
        if snapshot is None:
            rows = self.session.execute(
                select(Tag.name, Tag.parent_name).order_by(Tag.name)
            ).all()
            snapshot = tuple(TagNode(row.name, row.parent_name) for row in rows)
            if self.cache:
                self.cache.put(snapshot)
        self._snapshot = snapshot
        return snapshot

    def closure(self, tag_name: str) -> set[str]:
        return tag_closure(tag_name, self.snapshot())

    def closure_of(self, tag_names: Iterable[str]) -> set[str]:
        return tags_closure(tag_names, self.snapshot())


class BalanceService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def entity_balances(
        self,
        *,
        entity_id: Optional[int] = None,
        tag_names: Optional[Iterable[str]] = None,
        by_day: bool = True,
    ) -> list[EntityBalances]:
        tag_names = sorted(tag_names) if tag_names is not None else None
        if entity_id is None and not tag_names:
            return []

        balance = _net_balance(
            Transaction.from_entity_id == Entity.id,
            Transaction.to_entity_id == Entity.id,
        )
        day = day_trunc(_effective_date())
        group_columns = [
            Entity.id,
            Entity.name,
            Entity.tag_name,
            Transaction.currency,
            Movement.account,
        ]
        stmt = (
            select(
                Entity.id.label("entity_id"),
                Entity.name.label("entity_name"),
                Entity.tag_name.label("entity_tag"),
                Transaction.currency.label("currency"),
                Movement.account.label("account"),
                balance.label("balance"),
            )
            .select_from(Entity)
            .join(
                Transaction,
                or_(
                    Transaction.from_entity_id == Entity.id,
                    Transaction.to_entity_id == Entity.id,
                ),
            )
            .join(Movement, Movement.transaction_id == Transaction.id)
            .outerjoin(Operation, Transaction.operation_id == Operation.id)
            .where(Transaction.currency.is_not(None))
        )
        if entity_id is not None:
            stmt = stmt.where(Entity.id == entity_id)
        if tag_names:
            stmt = stmt.where(Entity.tag_name.in_(tag_names))
        if by_day:
            stmt = (
                stmt.add_columns(day.label("day"))
                .group_by(*group_columns, day)
                .order_by(day, Entity.id, Transaction.currency, Movement.account)
            )
        else:
            stmt = stmt.group_by(*group_columns).order_by(
                Entity.id, Transaction.currency, Movement.account
            )

        grouped: dict[int, EntityBalances] = {}
        for row in self.session.execute(stmt):
            if not row.currency:
                continue
            item = grouped.get(row.entity_id)
            if item is None:
                item = EntityBalances(
                    entity_id=row.entity_id,
                    entity_name=row.entity_name,
                    entity_tag=row.entity_tag,
                )
                grouped[row.entity_id] = item
            item.balances.append(
                BalanceLine(
                    currency=row.currency,
                    date=row.day if by_day else None,
                    status=row.account,
                    amount=Decimal(row.balance or 0),
                )
            )
        return list(grouped.values())

    def detailed_balance(
        self,
        *,
        account_type: bool,
        entity_id: Optional[int] = None,
        tag_names: Optional[Iterable[str]] = None,
    ) -> list[DetailedBalance]:
        """Balances of the scope against each counterparty outside it.

        Amounts are seen from the scope's side, so for a single entity the
        lines add up to its own balance on that account.
        """
        tag_names = sorted(tag_names) if tag_names is not None else None
        if entity_id is None and not tag_names:
            return []

        from_in, to_in = _scope_sides(entity_id, tag_names)
        counterparty = aliased(Entity)
        counterparty_id = case(
            (from_in, Transaction.to_entity_id), else_=Transaction.from_entity_id
        )
        stmt = (
            select(
                Transaction.currency.label("currency"),
                counterparty.id.label("entity_id"),
                counterparty.tag_name.label("entity_tag"),
                counterparty.name.label("entity_name"),
                Movement.account.label("account"),
                _net_balance(from_in, to_in).label("balance"),
            )
            .select_from(Transaction)
            .join(Movement, Movement.transaction_id == Transaction.id)
            .join(counterparty, counterparty.id == counterparty_id)
            .where(
                _crossing(from_in, to_in),
                Movement.account == account_type,
                Transaction.currency.is_not(None),
            )
            .group_by(
                Transaction.currency,
                counterparty.id,
                counterparty.tag_name,
                counterparty.name,
                Movement.account,
            )
            .order_by(Transaction.currency, counterparty.id)
        )
        return [
            DetailedBalance(
                currency=row.currency,
                entity_id=row.entity_id,
                entity_tag=row.entity_tag,
                entity_name=row.entity_name,
                status=row.account,
                balance=Decimal(row.balance or 0),
            )
            for row in self.session.execute(stmt)
        ]


@dataclass
class MovementFilters:
    account: Optional[bool] = None
    currency: Optional[str] = None
    day_in_past: Optional[date] = None


class MovementService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _conditions(
        self,
        entity_id: Optional[int],
        tag_names: Optional[Iterable[str]],
        filters: MovementFilters,
    ) -> list[ColumnElement]:
        from_in, to_in = _scope_sides(entity_id, tag_names)
        conditions = [_crossing(from_in, to_in)]
        if filters.account is not None:
            conditions.append(Movement.account == filters.account)
        if filters.currency:
            conditions.append(Transaction.currency == filters.currency)
        if filters.day_in_past is not None:
            cutoff = datetime.combine(filters.day_in_past + timedelta(days=1), time.min)
            conditions.append(_effective_date() < cutoff)
        return conditions

    def _query(self, *columns):
        return (
            select(*columns)
            .select_from(Movement)
            .join(Transaction, Movement.transaction_id == Transaction.id)
            .outerjoin(Operation, Transaction.operation_id == Operation.id)
        )

    def page(
        self,
        *,
        entity_id: Optional[int] = None,
        tag_names: Optional[Iterable[str]] = None,
        page_size: int,
        page_number: int,
        filters: Optional[MovementFilters] = None,
    ) -> tuple[list[Movement], int]:
        if page_size < 1 or page_number < 1:
            raise ValueError("Page size and page number must be positive")
        tag_names = sorted(tag_names) if tag_names is not None else None
        if entity_id is None and not tag_names:
            return [], 0

        conditions = self._conditions(
            entity_id, tag_names, filters or MovementFilters()
        )
        total_rows = self.session.execute(
            self._query(func.count(Movement.id)).where(*conditions)
        ).scalar_one()
        stmt = (
            self._query(Movement)
            .options(
                joinedload(Movement.transaction).joinedload(Transaction.operation),
                joinedload(Movement.transaction).joinedload(Transaction.from_entity),
                joinedload(Movement.transaction).joinedload(Transaction.to_entity),
            )
            .where(*conditions)
            .order_by(Movement.id.desc())
            .offset((page_number - 1) * page_size)
            .limit(page_size)
        )
        return list(self.session.scalars(stmt).all()), int(total_rows or 0)

    def by_currency(
        self,
        currency: str,
        *,
        entity_id: Optional[int] = None,
        tag_names: Optional[Iterable[str]] = None,
        limit: int = 5,
    ) -> list[Movement]:
        movements, _ = self.page(
            entity_id=entity_id,
            tag_names=tag_names,
            page_size=limit,
            page_number=1,
            filters=MovementFilters(currency=currency),
        )
        return movements


@dataclass(frozen=True)
class Grant:
    name: PermissionName
    entity_ids: frozenset[int] = frozenset()
    entity_tags: tuple[str, ...] = ()


class PermissionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def grants_for(self, user_id: str) -> list[Grant]:
        stmt = (
            select(Permission)
            .where(Permission.user_id == user_id)
            .order_by(Permission.id)
        )
        grants = []
        for permission in self.session.scalars(stmt):
            entity_ids = frozenset(
                int(value)
                for value in _json_list(permission.entities_ids_json)
                if isinstance(value, int) or str(value).isdigit()
            )
            entity_tags = tuple(
                str(value) for value in _json_list(permission.entities_tags_json)
            )
            grants.append(Grant(permission.name, entity_ids, entity_tags))
        return grants


class LinkService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def is_valid(self, credentials: LinkCredentials, shared_entity_id: int) -> bool:
        if not credentials.is_complete:
            return False
        link = self.session.scalar(
            select(Link).where(
                Link.id == credentials.link_id,
                Link.shared_entity_id == shared_entity_id,
            )
        )
        if not link:
            return False
        return hmac.compare_digest(
            link.password.encode("utf-8"), str(credentials.link_token).encode("utf-8")
        )


class AccessLevel(str, Enum):
    session = "SESSION"
    any_session_or_link = "ANY_SESSION_OR_LINK"
    fine_grained_grant = "FINE_GRAINED_GRANT"


class Unauthorized(Exception):
    message = NOT_SIGNED_IN_MESSAGE

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)


class NotSignedIn(Unauthorized):
    message = NOT_SIGNED_IN_MESSAGE


class InsufficientPermissions(Unauthorized):
    message = INSUFFICIENT_GRANT_MESSAGE


class AuthorizationGate:
    def __init__(self, session: Session, tags: TagService) -> None:
        self.session = session
        self.tags = tags

    def authorize(
        self,
        scope: Scope,
        level: AccessLevel,
        user: Optional[SessionUser] = None,
        link: Optional[LinkCredentials] = None,
    ) -> None:
        if user is not None:
            if level != AccessLevel.fine_grained_grant:
                return
            if self._grants_cover(user, scope):
                return
            logger.info(
                f"authorization_denied: user={user.id} scope={scope.cache_key} "
                f"level={level.value}"
            )
            raise InsufficientPermissions()

        if (
            level != AccessLevel.session
            and link is not None
            and scope.entity_id is not None
            and LinkService(self.session).is_valid(link, scope.entity_id)
        ):
            return
        logger.info(
            f"authorization_denied: user=anonymous scope={scope.cache_key} "
            f"level={level.value}"
        )
        raise NotSignedIn()

    def _grants_cover(self, user: SessionUser, scope: Scope) -> bool:
        entity_tag: Optional[str] = None
        entity_loaded = False
        for grant in PermissionService(self.session).grants_for(user.id):
            if grant.name in (
                PermissionName.admin,
                PermissionName.accounts_visualize,
            ):
                return True
            if grant.name != PermissionName.accounts_visualize_some:
                continue
            if scope.entity_id is not None:
                if scope.entity_id in grant.entity_ids:
                    return True
                if not entity_loaded:
                    entity = self.session.get(Entity, scope.entity_id)
                    entity_tag = entity.tag_name if entity else None
                    entity_loaded = True
                if entity_tag and entity_tag in self.tags.closure_of(
                    grant.entity_tags
                ):
                    return True
            elif scope.entity_tag:
                if scope.entity_tag in self.tags.closure_of(grant.entity_tags):
                    return True
        return False


class LedgerQueryService:
    """Authorizes, resolves and answers every balance and movement read."""

    def __init__(
        self,
        session: Session,
        user: Optional[SessionUser] = None,
        *,
        balance_cache: Optional[BalanceCache] = None,
        tag_cache: Optional[TagSnapshotCache] = None,
    ) -> None:
        self.session = session
        self.user = user
        self.balance_cache = balance_cache
        self.tags = TagService(session, tag_cache)
        self.gate = AuthorizationGate(session, self.tags)
        self.balances = BalanceService(session)
        self.movements = MovementService(session)

    def _resolve(self, scope: Scope) -> tuple[Optional[int], Optional[set[str]]]:
        if scope.entity_id is not None:
            return scope.entity_id, None
        return None, self.tags.closure(scope.entity_tag)

    def _authorize(
        self, scope: Scope, level: AccessLevel, link: Optional[LinkCredentials]
    ) -> None:
        self.gate.authorize(scope, level, user=self.user, link=link)

    def get_current_accounts(
        self,
        scope: Scope,
        *,
        page_size: int,
        page_number: int,
        filters: Optional[MovementFilters] = None,
        link: Optional[LinkCredentials] = None,
    ) -> MovementPage:
        if not scope.is_valid:
            return MovementPage()
        self._authorize(scope, AccessLevel.any_session_or_link, link)
        entity_id, tag_names = self._resolve(scope)
        movements, total_rows = self.movements.page(
            entity_id=entity_id,
            tag_names=tag_names,
            page_size=page_size,
            page_number=page_number,
            filters=filters,
        )
        return MovementPage(
            movements=[MovementOut.model_validate(m) for m in movements],
            total_rows=total_rows,
        )

    def get_balances_by_entities(
        self, scope: Scope, *, link: Optional[LinkCredentials] = None
    ) -> list[EntityBalances]:
        if not scope.is_valid:
            return []
        self._authorize(scope, AccessLevel.fine_grained_grant, link)
        entity_id, tag_names = self._resolve(scope)
        return self.balances.entity_balances(entity_id=entity_id, tag_names=tag_names)

    def get_balances_by_entities_for_card(
        self, scope: Scope, *, link: Optional[LinkCredentials] = None
    ) -> list[EntityBalances]:
        if not scope.is_valid:
            return []
        self._authorize(scope, AccessLevel.any_session_or_link, link)
        if self.balance_cache is not None:
            cached = self.balance_cache.get(scope.cache_key)
            if cached is not None:
                return cached
        entity_id, tag_names = self._resolve(scope)
        result = self.balances.entity_balances(entity_id=entity_id, tag_names=tag_names)
        if self.balance_cache is not None:
            self.balance_cache.put(scope.cache_key, result)
        return result

    def get_detailed_balance(
        self,
        scope: Scope,
        account_type: bool,
        *,
        link: Optional[LinkCredentials] = None,
    ) -> list[DetailedBalance]:
        if not scope.is_valid:
            return []
        self._authorize(scope, AccessLevel.any_session_or_link, link)
        entity_id, tag_names = self._resolve(scope)
        return self.balances.detailed_balance(
            account_type=account_type, entity_id=entity_id, tag_names=tag_names
        )

    def get_movements_by_currency(
        self, scope: Scope, currency: str, *, limit: int = 5
    ) -> list[MovementOut]:
        if not scope.is_valid:
            return []
        self._authorize(scope, AccessLevel.session, None)
        entity_id, tag_names = self._resolve(scope)
        movements = self.movements.by_currency(
            currency, entity_id=entity_id, tag_names=tag_names, limit=limit
        )
        return [MovementOut.model_validate(m) for m in movements]

    def get_balance_summary(
        self,
        scope: Scope,
        *,
        day_in_past: Optional[date] = None,
        link: Optional[LinkCredentials] = None,
    ) -> list[CurrencySummary]:
        entities = self.get_balances_by_entities_for_card(scope, link=link)
        totals: dict[str, dict[bool, Decimal]] = {}
        for entity in entities:
            for line in entity.balances:
                if day_in_past and line.date and line.date > day_in_past:
                    continue
                by_account = totals.setdefault(line.currency, {})
                by_account[line.status] = (
                    by_account.get(line.status, Decimal("0")) + line.amount
                )
        return [
            CurrencySummary(
                currency=currency,
                balances=[
                    AccountTotal(account=account, amount=amount)
                    for account, amount in sorted(totals[currency].items())
                ],
            )
            for currency in sorted(totals)
        ]
