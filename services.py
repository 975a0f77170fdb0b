from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
from database import atomic
from errors import Conflict, NotFound
from installments import build_schedule
from ledger import AccountTotals, fold_budget_actuals, fold_totals, fold_totals_by_account
from models import (
    Account,
    Budget,
    Category,
    Tag,
    Transaction,
    TransactionGroupType,
    TransactionType,
    TransferDirection,
    transaction_tags,
)
from money import ensure_positive, from_cents, normalize_tags, to_cents
from periods import covering_window, month_window, to_utc_naive
from schemas import (
    AccountIn,
    AccountTotalsView,
    AccountUpdate,
    AccountView,
    BudgetIn,
    BudgetUpdate,
    BudgetView,
    CategoryIn,
    CategoryNode,
    CategoryUpdate,
    CategoryView,
    PageMeta,
    TagView,
    TransactionIn,
    TransactionUpdate,
    TransactionView,
)


logger = logging.getLogger(__name__)


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    if getattr(orig, "pgcode", None) == "23505":
        return True
    message = str(orig)
    return "UNIQUE constraint failed" in message or "Duplicate entry" in message


@contextmanager
def unique_conflict(resource: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        if _is_unique_violation(exc):
            logger.info(f"unique_conflict: resource={resource}")
            raise Conflict(
                f"{resource} already exists with the provided unique fields"
            ) from exc
        raise


class OwnershipGuard:
    """Loads a row only when it belongs to the requesting user.

    A row owned by someone else is reported exactly like a missing one.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _owned(self, model, entity_id: Optional[int], label: str):
        row = self.session.get(model, entity_id) if entity_id is not None else None
        if not row or row.user_id != self.user_id:
            raise NotFound(f"{label} not found")
        return row

    def account(self, account_id: Optional[int]) -> Account:
        return self._owned(Account, account_id, "Account")

    def category(self, category_id: Optional[int]) -> Category:
        return self._owned(Category, category_id, "Category")

    def budget(self, budget_id: Optional[int]) -> Budget:
        return self._owned(Budget, budget_id, "Budget")

    def tag(self, tag_id: Optional[int]) -> Tag:
        return self._owned(Tag, tag_id, "Tag")

    def transaction(self, transaction_id: Optional[int]) -> Transaction:
        return self._owned(Transaction, transaction_id, "Transaction")


def _like_pattern(text: str) -> str:
    escaped = (
        text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )
    return f"%{escaped}%"


@dataclass(frozen=True)
class Pagination:
    page: int
    page_size: int

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.page_size

    @classmethod
    def from_params(
        cls,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        *,
        default_page_size: int = 20,
        max_page_size: int = 200,
    ) -> "Pagination":
        page = max(page or 1, 1)
        size = page_size if page_size is not None else default_page_size
        size = min(max(size, 1), max_page_size)
        return cls(page=page, page_size=size)

    def meta(self, total: int) -> PageMeta:
        return PageMeta(
            page=self.page,
            page_size=self.page_size,
            total=total,
            page_count=max(1, math.ceil(total / self.page_size)),
        )


@dataclass
class TransactionFilters:
    types: list[TransactionType] = field(default_factory=list)
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    tags: list[str] = field(default_factory=list)
    query: Optional[str] = None


def _totals_view(totals: AccountTotals) -> AccountTotalsView:
    return AccountTotalsView(
        income=from_cents(totals.income),
        expense=from_cents(totals.expense),
        transfer_in=from_cents(totals.transfer_in),
        transfer_out=from_cents(totals.transfer_out),
        transfer_net=from_cents(totals.transfer_net),
    )


def _account_view(account: Account, totals: AccountTotals) -> AccountView:
    return AccountView(
        id=account.id,
        name=account.name,
        type=account.type,
        initial_balance=from_cents(account.initial_balance_cents),
        created_at=account.created_at,
        balance=from_cents(totals.balance(account.initial_balance_cents)),
        totals=_totals_view(totals),
    )


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.guard = OwnershipGuard(session, user_id)

    def _grouped_sums(self, account_id: Optional[int] = None):
        stmt = (
            select(
                Transaction.account_id,
                Transaction.type,
                Transaction.transfer_direction,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
            )
            .where(Transaction.user_id == self.user_id)
            .group_by(
                Transaction.account_id,
                Transaction.type,
                Transaction.transfer_direction,
            )
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        return self.session.execute(stmt).all()

    def list_all(self) -> list[AccountView]:
        accounts = self.session.scalars(
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.asc(), Account.id.asc())
        ).all()
        totals_by_account = fold_totals_by_account(self._grouped_sums())
        return [
            _account_view(account, totals_by_account.get(account.id, AccountTotals()))
            for account in accounts
        ]

    def get(self, account_id: int) -> AccountView:
        account = self.guard.account(account_id)
        totals = fold_totals(
            (row[1], row[2], row[3]) for row in self._grouped_sums(account.id)
        )
        return _account_view(account, totals)

    def create(self, data: AccountIn) -> AccountView:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type.strip(),
            initial_balance_cents=to_cents(data.initial_balance),
        )
        with unique_conflict("Account"), atomic(self.session):
            self.session.add(account)
        return _account_view(account, AccountTotals())

    def update(self, account_id: int, data: AccountUpdate) -> AccountView:
        account = self.guard.account(account_id)
        with unique_conflict("Account"), atomic(self.session):
            if data.name is not None:
                account.name = data.name.strip()
            if data.type is not None:
                account.type = data.type.strip()
            if data.initial_balance is not None:
                account.initial_balance_cents = to_cents(data.initial_balance)
        return self.get(account_id)

    def delete(self, account_id: int) -> None:
        account = self.guard.account(account_id)
        booked = select(Transaction.id).where(
            Transaction.user_id == self.user_id,
            Transaction.account_id == account.id,
        )
        with atomic(self.session):
            self.session.execute(
                delete(transaction_tags).where(
                    transaction_tags.c.transaction_id.in_(booked)
                )
            )
            self.session.execute(
                delete(Transaction).where(
                    Transaction.user_id == self.user_id,
                    Transaction.account_id == account.id,
                )
            )
            self.session.execute(
                update(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.transfer_account_id == account.id,
                )
                .values(transfer_account_id=None)
            )
            self.session.delete(account)
        logger.info(f"account_deleted: user_id={self.user_id} account_id={account_id}")


class CategoryTreeCache:
    """Per-user read-through cache for category trees; stale reads are fine."""

    def __init__(self, ttl_secs: Optional[float] = None) -> None:
        self._ttl_secs = ttl_secs
        self._entries: dict[int, tuple[float, list[CategoryNode]]] = {}
        self._lock = threading.Lock()

    @property
    def ttl_secs(self) -> float:
        if self._ttl_secs is None:
            return get_settings().category_tree_ttl_secs
        return self._ttl_secs

    def get(self, user_id: int) -> Optional[list[CategoryNode]]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            stored_at, tree = entry
            if time.monotonic() - stored_at > self.ttl_secs:
                del self._entries[user_id]
                return None
            return tree

    def put(self, user_id: int, tree: list[CategoryNode]) -> None:
        with self._lock:
            self._entries[user_id] = (time.monotonic(), tree)

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


category_tree_cache = CategoryTreeCache()


def build_category_tree(categories: list[Category]) -> list[CategoryNode]:
    nodes = {
        c.id: CategoryNode(id=c.id, name=c.name, parent_id=c.parent_id)
        for c in categories
    }
    roots: list[CategoryNode] = []
    for category in categories:
        node = nodes[category.id]
        if category.parent_id is None:
            roots.append(node)
            continue
        parent = nodes.get(category.parent_id)
        if parent is not None:
            parent.children.append(node)
    return roots


class CategoryService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        cache: Optional[CategoryTreeCache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.guard = OwnershipGuard(session, user_id)
        self.cache = cache if cache is not None else category_tree_cache

    def _ordered(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.parent_id.asc().nulls_first(), Category.name.asc())
        )
        return self.session.scalars(stmt).all()

    def list_all(self) -> list[CategoryView]:
        return [
            CategoryView(id=c.id, name=c.name, parent_id=c.parent_id)
            for c in self._ordered()
        ]

    def tree(self) -> list[CategoryNode]:
        cached = self.cache.get(self.user_id)
        if cached is not None:
            return cached
        tree = build_category_tree(self._ordered())
        self.cache.put(self.user_id, tree)
        return tree

    def _assert_no_cycle(self, category_id: int, parent_id: int) -> None:
        seen: set[int] = set()
        current: Optional[int] = parent_id
        while current is not None and current not in seen:
            if current == category_id:
                raise Conflict("Category cannot be moved below one of its descendants")
            seen.add(current)
            current = self.session.scalar(
                select(Category.parent_id).where(
                    Category.id == current, Category.user_id == self.user_id
                )
            )

    def create(self, data: CategoryIn) -> CategoryView:
        if data.parent_id is not None:
            self.guard.category(data.parent_id)
        category = Category(
            user_id=self.user_id, name=data.name.strip(), parent_id=data.parent_id
        )
        with unique_conflict("Category"), atomic(self.session):
            self.session.add(category)
        self.cache.invalidate(self.user_id)
        return CategoryView(
            id=category.id, name=category.name, parent_id=category.parent_id
        )

    def update(self, category_id: int, data: CategoryUpdate) -> CategoryView:
        category = self.guard.category(category_id)
        reparent = "parent_id" in data.model_fields_set
        if reparent and data.parent_id is not None:
            if data.parent_id == category.id:
                raise Conflict("Category cannot be its own parent")
            self.guard.category(data.parent_id)
            self._assert_no_cycle(category.id, data.parent_id)
        with unique_conflict("Category"), atomic(self.session):
            if data.name is not None:
                category.name = data.name.strip()
            if reparent:
                category.parent_id = data.parent_id
        self.cache.invalidate(self.user_id)
        return CategoryView(
            id=category.id, name=category.name, parent_id=category.parent_id
        )

    def delete(self, category_id: int) -> None:
        category = self.guard.category(category_id)
        with atomic(self.session):
            self.session.execute(
                update(Category)
                .where(
                    Category.user_id == self.user_id,
                    Category.parent_id == category.id,
                )
                .values(parent_id=None)
            )
            self.session.execute(
                update(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id == category.id,
                )
                .values(category_id=None)
            )
            self.session.execute(
                delete(Budget).where(
                    Budget.user_id == self.user_id,
                    Budget.category_id == category.id,
                )
            )
            self.session.delete(category)
        self.cache.invalidate(self.user_id)


class TagService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.guard = OwnershipGuard(session, user_id)

    def list_all(self) -> list[TagView]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return [TagView(id=t.id, name=t.name) for t in self.session.scalars(stmt)]

    def resolve(self, names: list[str]) -> list[Tag]:
        """Get-or-create one tag row per normalized name; flushes, never commits."""
        wanted = normalize_tags(names)
        if not wanted:
            return []
        existing = {
            tag.name: tag
            for tag in self.session.scalars(
                select(Tag).where(Tag.user_id == self.user_id, Tag.name.in_(wanted))
            )
        }
        tags: list[Tag] = []
        for name in wanted:
            tag = existing.get(name)
            if tag is None:
                tag = Tag(user_id=self.user_id, name=name)
                self.session.add(tag)
                existing[name] = tag
            tags.append(tag)
        self.session.flush()
        return tags

    def delete(self, tag_id: int) -> None:
        tag = self.guard.tag(tag_id)
        with atomic(self.session):
            self.session.execute(
                delete(transaction_tags).where(transaction_tags.c.tag_id == tag.id)
            )
            self.session.delete(tag)


# Fields that would break the two-leg symmetry of a transfer group.
TRANSFER_LOCKED_FIELDS = (
    "type",
    "amount",
    "account_id",
    "category_id",
    "target_account_id",
    "installments_total",
    "installment_number",
)
TRANSFER_METADATA_FIELDS = ("notes", "attachment_url", "recurrence_rrule")


def transaction_view(txn: Transaction) -> TransactionView:
    return TransactionView(
        id=txn.id,
        group_id=txn.group_id,
        group_type=txn.group_type,
        type=txn.type,
        amount=from_cents(txn.amount_cents),
        occurred_at=txn.occurred_at,
        account_id=txn.account_id,
        account_name=txn.account.name,
        transfer_account_id=txn.transfer_account_id,
        transfer_account_name=(
            txn.transfer_account.name if txn.transfer_account else None
        ),
        transfer_direction=txn.transfer_direction,
        category_id=txn.category_id,
        category_name=txn.category.name if txn.category else None,
        notes=txn.notes,
        tags=sorted(tag.name for tag in txn.tags),
        attachment_url=txn.attachment_url,
        installments_total=txn.installments_total,
        installment_number=txn.installment_number,
        recurrence_rrule=txn.recurrence_rrule,
    )


class TransactionService:
    """Ledger rows, including the grouped writes for transfers and plans.

    A transfer is stored as an OUT row on the source account and an IN row
    on the target account per installment, all sharing one group id. An
    installment plan is N rows sharing one group id. Both kinds of group
    are written in a single database transaction. Transfer groups accept
    only metadata edits and are always deleted as a whole; rows of an
    installment plan are edited and deleted one at a time.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.guard = OwnershipGuard(session, user_id)
        self.tags = TagService(session, user_id)

    def _load(self):
        return select(Transaction).options(
            joinedload(Transaction.account),
            joinedload(Transaction.transfer_account),
            joinedload(Transaction.category),
            selectinload(Transaction.tags),
        ).execution_options(populate_existing=True)

    def get(self, transaction_id: int) -> TransactionView:
        txn = self.session.scalar(
            self._load().where(
                Transaction.user_id == self.user_id,
                Transaction.id == transaction_id,
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return transaction_view(txn)

    def create(self, data: TransactionIn) -> TransactionView:
        self.guard.account(data.account_id)
        if data.category_id is not None:
            self.guard.category(data.category_id)
        amount_cents = ensure_positive(to_cents(data.amount))

        total = data.installments_total if data.installments_total else 1
        has_installments = total > 1
        if has_installments and data.installment_number not in (None, 1):
            raise Conflict(
                "When creating installment plans provide only installmentsTotal "
                "or set installmentNumber to 1"
            )
        if amount_cents < total:
            raise Conflict(
                "Amount is too small for the requested number of installments"
            )
        schedule = build_schedule(
            from_cents(amount_cents), total, to_utc_naive(data.occurred_at)
        )

        if data.type == TransactionType.transfer:
            if data.target_account_id is None:
                raise Conflict("Transfers require targetAccountId")
            if data.target_account_id == data.account_id:
                raise Conflict("Transfers require different source and target accounts")
            self.guard.account(data.target_account_id)

        group_id: Optional[str] = None
        group_type: Optional[TransactionGroupType] = None
        if data.type == TransactionType.transfer:
            group_id = str(uuid.uuid4())
            group_type = TransactionGroupType.transfer
        elif has_installments:
            group_id = str(uuid.uuid4())
            group_type = TransactionGroupType.installment

        created: list[Transaction] = []
        with atomic(self.session):
            tags = self.tags.resolve(data.tags)
            for installment in schedule:
                common = dict(
                    user_id=self.user_id,
                    type=data.type,
                    amount_cents=installment.amount_cents,
                    occurred_at=installment.occurred_at,
                    notes=data.notes,
                    attachment_url=data.attachment_url,
                    installments_total=(
                        total if has_installments else data.installments_total
                    ),
                    installment_number=(
                        installment.installment_number
                        if has_installments
                        else data.installment_number
                    ),
                    recurrence_rrule=data.recurrence_rrule,
                    group_id=group_id,
                    group_type=group_type,
                )
                if data.type == TransactionType.transfer:
                    source = Transaction(
                        **common,
                        account_id=data.account_id,
                        transfer_account_id=data.target_account_id,
                        transfer_direction=TransferDirection.outgoing,
                        tags=list(tags),
                    )
                    target = Transaction(
                        **common,
                        account_id=data.target_account_id,
                        transfer_account_id=data.account_id,
                        transfer_direction=TransferDirection.incoming,
                        tags=list(tags),
                    )
                    self.session.add_all([source, target])
                    created.append(source)
                else:
                    row = Transaction(
                        **common,
                        account_id=data.account_id,
                        category_id=data.category_id,
                        tags=list(tags),
                    )
                    self.session.add(row)
                    created.append(row)
            self.session.flush()

        if group_id:
            logger.info(
                f"transaction_group_created: user_id={self.user_id} "
                f"group_id={group_id} group_type={group_type.value} "
                f"installments={len(schedule)}"
            )
        return self.get(created[0].id)

    def update(self, transaction_id: int, data: TransactionUpdate) -> TransactionView:
        existing = self.guard.transaction(transaction_id)
        supplied = data.model_fields_set
        if data.account_id is not None:
            self.guard.account(data.account_id)
        if data.category_id is not None:
            self.guard.category(data.category_id)

        if existing.group_type == TransactionGroupType.transfer:
            return self._update_transfer_group(existing, data, supplied)

        with atomic(self.session):
            if data.type is not None:
                existing.type = data.type
            if data.account_id is not None:
                existing.account_id = data.account_id
            if "category_id" in supplied:
                existing.category_id = data.category_id
            if data.amount is not None:
                cents = to_cents(data.amount)
                if existing.type != TransactionType.transfer:
                    ensure_positive(cents)
                existing.amount_cents = cents
            if data.occurred_at is not None:
                existing.occurred_at = to_utc_naive(data.occurred_at)
            for name in TRANSFER_METADATA_FIELDS:
                if name in supplied:
                    setattr(existing, name, getattr(data, name))
            if data.installments_total is not None:
                existing.installments_total = data.installments_total
            if data.installment_number is not None:
                existing.installment_number = data.installment_number
            if data.tags is not None:
                existing.tags = self.tags.resolve(data.tags)
        return self.get(transaction_id)

    def _update_transfer_group(
        self, existing: Transaction, data: TransactionUpdate, supplied: set[str]
    ) -> TransactionView:
        locked = [name for name in TRANSFER_LOCKED_FIELDS if name in supplied]
        if locked:
            raise Conflict(
                "Transfers can only update metadata (notes, tags, attachmentUrl, "
                "occurredAt, recurrence). Delete and recreate to change amount "
                "or accounts."
            )

        values: dict[str, object] = {
            name: getattr(data, name)
            for name in TRANSFER_METADATA_FIELDS
            if name in supplied
        }
        if data.occurred_at is not None:
            values["occurred_at"] = to_utc_naive(data.occurred_at)
        if not values and data.tags is None:
            return self.get(existing.id)

        in_group = (
            Transaction.user_id == self.user_id,
            Transaction.group_id == existing.group_id,
        )
        with atomic(self.session):
            if values:
                self.session.execute(
                    update(Transaction).where(*in_group).values(**values)
                )
            if data.tags is not None:
                tags = self.tags.resolve(data.tags)
                for row in self.session.scalars(select(Transaction).where(*in_group)):
                    row.tags = list(tags)
        logger.info(
            f"transfer_group_updated: user_id={self.user_id} "
            f"group_id={existing.group_id} fields={sorted(values)}"
        )
        return self.get(existing.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.guard.transaction(transaction_id)
        if txn.group_type == TransactionGroupType.transfer and txn.group_id:
            group_id = txn.group_id
            in_group = (
                Transaction.user_id == self.user_id,
                Transaction.group_id == group_id,
            )
            with atomic(self.session):
                self.session.execute(
                    delete(transaction_tags).where(
                        transaction_tags.c.transaction_id.in_(
                            select(Transaction.id).where(*in_group)
                        )
                    )
                )
                result = self.session.execute(delete(Transaction).where(*in_group))
            logger.info(
                f"transfer_group_deleted: user_id={self.user_id} "
                f"group_id={group_id} rows={result.rowcount}"
            )
            return
        with atomic(self.session):
            self.session.delete(txn)

    def list(
        self, filters: TransactionFilters, pagination: Pagination
    ) -> tuple[list[TransactionView], PageMeta]:
        conditions = [Transaction.user_id == self.user_id]
        if filters.types:
            conditions.append(Transaction.type.in_(filters.types))
        if filters.account_id:
            conditions.append(Transaction.account_id == filters.account_id)
        if filters.category_id:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.date_from:
            conditions.append(Transaction.occurred_at >= to_utc_naive(filters.date_from))
        if filters.date_to:
            conditions.append(Transaction.occurred_at <= to_utc_naive(filters.date_to))
        if filters.min_amount is not None:
            conditions.append(Transaction.amount_cents >= to_cents(filters.min_amount))
        if filters.max_amount is not None:
            conditions.append(Transaction.amount_cents <= to_cents(filters.max_amount))
        tag_names = normalize_tags(filters.tags)
        if tag_names:
            conditions.append(Transaction.tags.any(Tag.name.in_(tag_names)))
        if filters.query:
            like = _like_pattern(filters.query)
            notes = func.lower(func.coalesce(Transaction.notes, ""))
            url = func.lower(func.coalesce(Transaction.attachment_url, ""))
            matches = [
                notes.like(like, escape="\\"),
                url.like(like, escape="\\"),
                Transaction.account.has(func.lower(Account.name).like(like, escape="\\")),
                Transaction.category.has(
                    func.lower(Category.name).like(like, escape="\\")
                ),
            ]
            query_tag = normalize_tags([filters.query])
            if query_tag:
                matches.append(Transaction.tags.any(Tag.name == query_tag[0]))
            conditions.append(or_(*matches))

        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        rows = self.session.scalars(
            self._load()
            .where(*conditions)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .offset(pagination.skip)
            .limit(pagination.page_size)
        ).all()
        return [transaction_view(txn) for txn in rows], pagination.meta(total)


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.guard = OwnershipGuard(session, user_id)

    @staticmethod
    def _view(budget: Budget, actual_cents: int) -> BudgetView:
        return BudgetView(
            id=budget.id,
            category_id=budget.category_id,
            category_name=budget.category.name,
            month=budget.month,
            year=budget.year,
            planned_amount=from_cents(budget.planned_amount_cents),
            actual_amount=from_cents(actual_cents),
        )

    def actual_for(self, category_id: int, year: int, month: int) -> int:
        window = month_window(year, month)
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.category_id == category_id,
                    Transaction.occurred_at >= window.start,
                    Transaction.occurred_at < window.end,
                )
            ).scalar_one()
            or 0
        )

    def get(self, budget_id: int) -> BudgetView:
        budget = self.guard.budget(budget_id)
        return self._view(
            budget, self.actual_for(budget.category_id, budget.year, budget.month)
        )

    def list(
        self, *, year: Optional[int] = None, month: Optional[int] = None
    ) -> list[BudgetView]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.year.desc(), Budget.month.desc(), Budget.id.asc())
        )
        if year:
            stmt = stmt.where(Budget.year == year)
        if month:
            stmt = stmt.where(Budget.month == month)
        budgets = self.session.scalars(stmt).all()
        if not budgets:
            return []

        start, end = covering_window((b.year, b.month) for b in budgets)
        rows = self.session.execute(
            select(
                Transaction.category_id,
                Transaction.occurred_at,
                Transaction.amount_cents,
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.category_id.in_(sorted({b.category_id for b in budgets})),
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
        ).all()
        actuals = fold_budget_actuals(rows)
        return [
            self._view(budget, actuals.get((budget.category_id, budget.year, budget.month), 0))
            for budget in budgets
        ]

    def create(self, data: BudgetIn) -> BudgetView:
        self.guard.category(data.category_id)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            year=data.year,
            month=data.month,
            planned_amount_cents=to_cents(data.planned_amount),
        )
        with unique_conflict("Budget"), atomic(self.session):
            self.session.add(budget)
        return self.get(budget.id)

    def update(self, budget_id: int, data: BudgetUpdate) -> BudgetView:
        budget = self.guard.budget(budget_id)
        if data.category_id is not None:
            self.guard.category(data.category_id)
        with unique_conflict("Budget"), atomic(self.session):
            if data.category_id is not None:
                budget.category_id = data.category_id
            if data.year is not None:
                budget.year = data.year
            if data.month is not None:
                budget.month = data.month
            if data.planned_amount is not None:
                budget.planned_amount_cents = to_cents(data.planned_amount)
        self.session.refresh(budget)
        return self.get(budget_id)

    def delete(self, budget_id: int) -> None:
        budget = self.guard.budget(budget_id)
        with atomic(self.session):
            self.session.delete(budget)
