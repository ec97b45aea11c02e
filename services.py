from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import Select, and_, case, func, or_, select
from sqlalchemy.orm import Session, joinedload

from ledger_version import bump_mutation_version, current_mutation_version
from models import (
    Account,
    AmountOperator,
    Category,
    Merchant,
    Tag,
    Transaction,
    TransactionType,
    transaction_tags,
)
from schemas import AccountIn, CategoryIn, FilterSpec, Totals, TransactionIn

logger = logging.getLogger(__name__)

REVERSE_CHRONOLOGICAL = (
    Transaction.date.desc(),
    Transaction.occurred_at.desc(),
    Transaction.id.desc(),
)


def get_current_user_id() -> int:
    return 1


@dataclass
class TransactionPage:
    items: list[Transaction]
    page: int
    per_page: int
    has_next: bool
    has_previous: bool
    total_count: Optional[int] = None

    @property
    def total_pages(self) -> Optional[int]:
        if self.total_count is None:
            return None
        return max(1, -(-self.total_count // self.per_page))


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Account]:
        stmt = (
            select(Account).where(Account.user_id == self.user_id).order_by(Account.name)
        )
        if not include_archived:
            stmt = stmt.where(Account.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def create(self, data: AccountIn) -> Account:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Account name cannot be empty")
        existing = self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id,
                func.lower(Account.name) == clean_name.lower(),
            )
        )
        if existing:
            raise ValueError("Account with this name already exists")
        account = Account(user_id=self.user_id, name=clean_name)
        self.session.add(account)
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(account)
        return account

    def archive(self, account_id: int) -> None:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        account.archived_at = datetime.utcnow()
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.order, Category.name)
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            order=data.order,
        )
        self.session.add(category)
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(category)
        return category

    def archive(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        category.archived_at = datetime.utcnow()
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()


class MerchantService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Merchant]:
        stmt = (
            select(Merchant)
            .where(Merchant.user_id == self.user_id)
            .order_by(Merchant.name)
        )
        return self.session.scalars(stmt).all()

    def get_or_create(self, name: str) -> Merchant:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Merchant name cannot be empty")

        stmt = select(Merchant).where(
            Merchant.user_id == self.user_id,
            func.lower(Merchant.name) == clean_name.lower(),
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        merchant = Merchant(user_id=self.user_id, name=clean_name)
        self.session.add(merchant)
        self.session.flush()
        return merchant


class TagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return self.session.scalars(stmt).all()

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def create(self, name: str, color: Optional[str] = None) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        if self.session.scalar(stmt):
            raise ValueError("Tag already exists")

        tag = Tag(user_id=self.user_id, name=clean_name, color=color)
        self.session.add(tag)
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.session.get(Tag, tag_id)
        if not tag or tag.user_id != self.user_id:
            raise ValueError("Tag not found")

        self.session.execute(
            transaction_tags.delete().where(transaction_tags.c.tag_id == tag.id)
        )
        self.session.delete(tag)
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def mutation_version(self) -> str:
        return current_mutation_version(self.session, self.user_id)

    def _base_conditions(self) -> list:
        return [
            Transaction.user_id == self.user_id,
            Transaction.deleted_at.is_(None),
        ]

    def _apply_filters(self, stmt: Select, spec: FilterSpec) -> Select:
        stmt = stmt.where(*self._base_conditions())
        if spec.start_date:
            stmt = stmt.where(Transaction.date >= spec.start_date)
        if spec.end_date:
            stmt = stmt.where(Transaction.date <= spec.end_date)
        if spec.search:
            term = spec.search.lower()
            stmt = stmt.where(
                or_(
                    func.lower(func.coalesce(Transaction.note, "")).contains(
                        term, autoescape=True
                    ),
                    Transaction.merchant.has(
                        func.lower(Merchant.name).contains(term, autoescape=True)
                    ),
                )
            )
        if spec.amount_cents is not None:
            if spec.amount_operator == AmountOperator.greater_than:
                stmt = stmt.where(Transaction.amount_cents > spec.amount_cents)
            elif spec.amount_operator == AmountOperator.less_than:
                stmt = stmt.where(Transaction.amount_cents < spec.amount_cents)
            else:
                stmt = stmt.where(Transaction.amount_cents == spec.amount_cents)
        if spec.account_ids:
            stmt = stmt.where(Transaction.account_id.in_(spec.account_ids))
        if spec.category_ids:
            stmt = stmt.where(Transaction.category_id.in_(spec.category_ids))
        if spec.merchant_ids:
            stmt = stmt.where(Transaction.merchant_id.in_(spec.merchant_ids))
        if spec.tag_ids:
            stmt = stmt.where(Transaction.tags.any(Tag.id.in_(spec.tag_ids)))
        if spec.types:
            stmt = stmt.where(Transaction.type.in_(spec.types))
        return stmt

    def _with_relations(self, stmt: Select) -> Select:
        return stmt.options(
            joinedload(Transaction.account),
            joinedload(Transaction.category),
            joinedload(Transaction.merchant),
            joinedload(Transaction.tags),
        )

    def list(
        self,
        spec: FilterSpec,
        page: int = 1,
        per_page: int = 50,
        *,
        total_count: Optional[int] = None,
    ) -> TransactionPage:
        """Return one page of matching transactions, most recent first.

        One extra row is fetched to tell whether a next page exists, so no
        count query runs here. Pass ``total_count`` (e.g. from cached totals)
        to expose exact page counts.
        """
        page = max(page, 1)
        per_page = max(per_page, 1)
        offset = (page - 1) * per_page
        stmt = (
            self._with_relations(self._apply_filters(select(Transaction), spec))
            .order_by(*REVERSE_CHRONOLOGICAL)
            .offset(offset)
            .limit(per_page + 1)
        )
        items = self.session.scalars(stmt).unique().all()
        has_next = len(items) > per_page
        return TransactionPage(
            items=list(items[:per_page]),
            page=page,
            per_page=per_page,
            has_next=has_next,
            has_previous=page > 1,
            total_count=total_count,
        )

    def all_matching(self, spec: FilterSpec) -> list[Transaction]:
        stmt = self._with_relations(
            self._apply_filters(select(Transaction), spec)
        ).order_by(*REVERSE_CHRONOLOGICAL)
        return list(self.session.scalars(stmt).unique().all())

    def locate(self, spec: FilterSpec, record_id: int, per_page: int) -> Optional[int]:
        """Return the 1-based page of ``record_id`` under ``spec``.

        ``None`` means the record is missing, deleted, or filtered out; the
        caller decides whether to relax the filter.
        """
        target = self.session.execute(
            self._apply_filters(
                select(Transaction.date, Transaction.occurred_at, Transaction.id),
                spec,
            ).where(Transaction.id == record_id)
        ).first()
        if target is None:
            return None

        ahead = or_(
            Transaction.date > target.date,
            and_(
                Transaction.date == target.date,
                Transaction.occurred_at > target.occurred_at,
            ),
            and_(
                Transaction.date == target.date,
                Transaction.occurred_at == target.occurred_at,
                Transaction.id > target.id,
            ),
        )
        rank = self.session.execute(
            self._apply_filters(select(func.count(Transaction.id)), spec).where(ahead)
        ).scalar_one()
        return int(rank) // max(per_page, 1) + 1

    def totals(self, spec: FilterSpec) -> Totals:
        stmt = self._apply_filters(
            select(
                func.count(Transaction.id),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.income,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.expense,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ),
            ),
            spec,
        )
        count, income, expense = self.session.execute(stmt).one()
        return Totals(
            transaction_count=int(count or 0),
            income_cents=int(income or 0),
            expense_cents=int(expense or 0),
            computed_at=datetime.utcnow(),
        )

    def _validate(self, data: TransactionIn) -> None:
        category = self.session.get(Category, data.category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.type != data.type:
            raise ValueError("Category type mismatch")
        if data.account_id is not None:
            account = self.session.get(Account, data.account_id)
            if not account or account.user_id != self.user_id:
                raise ValueError("Account not found")

    def _assign(self, txn: Transaction, data: TransactionIn) -> None:
        txn.date = data.date
        txn.occurred_at = data.occurred_at
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.category_id = data.category_id
        txn.account_id = data.account_id
        txn.note = data.note.strip() if data.note and data.note.strip() else None
        if data.merchant and data.merchant.strip():
            txn.merchant = MerchantService(self.session, self.user_id).get_or_create(
                data.merchant
            )
        else:
            txn.merchant = None

        tag_service = TagService(self.session, self.user_id)
        tags: list[Tag] = []
        tag_ids: set[int] = set()
        for name in data.tags:
            if not name.strip():
                continue
            tag = tag_service.get_or_create(name)
            if tag.id not in tag_ids:
                tags.append(tag)
                tag_ids.add(tag.id)
        txn.tags = tags

    def create(self, data: TransactionIn) -> Transaction:
        self._validate(data)
        txn = Transaction(user_id=self.user_id)
        self._assign(txn, data)
        self.session.add(txn)
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_created: id={txn.id} user={self.user_id}")
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = self._with_relations(select(Transaction)).where(
            Transaction.user_id == self.user_id, Transaction.id == transaction_id
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalars(stmt).unique().first()
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._validate(data)
        self._assign(txn, data)
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_updated: id={txn.id} user={self.user_id}")
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise ValueError("Transaction not found")
        if txn.deleted_at is not None:
            return
        txn.deleted_at = datetime.utcnow()
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()
        logger.info(f"transaction_deleted: id={txn.id} user={self.user_id}")

    def restore(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise ValueError("Transaction not found")
        if txn.deleted_at is None:
            return
        txn.deleted_at = None
        bump_mutation_version(self.session, self.user_id)
        self.session.commit()
        logger.info(f"transaction_restored: id={txn.id} user={self.user_id}")
