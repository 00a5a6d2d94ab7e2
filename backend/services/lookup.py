"""
Entity resolution by generated primary id or on-chain alias.

Clients hold whichever identifier they saw last: the numeric id the API
returned, or the id the contract emitted. Every route resolves through here
instead of guessing which one it was given.
"""
from dataclasses import dataclass
from typing import Any, Union

from sqlalchemy.orm import Session

from models import Invoice, SellOrder
from services.errors import InvoiceNotFound, OrderNotFound


@dataclass(frozen=True)
class FoundByPrimaryId:
    entity: Any


@dataclass(frozen=True)
class FoundByAlias:
    entity: Any


@dataclass(frozen=True)
class NotFound:
    ref: str


Resolution = Union[FoundByPrimaryId, FoundByAlias, NotFound]


def _resolve(db: Session, model, alias_column, ref, for_update: bool) -> Resolution:
    ref = str(ref).strip()

    def query():
        q = db.query(model)
        return q.with_for_update() if for_update else q

    if ref.isdigit():
        entity = query().filter(model.id == int(ref)).first()
        if entity is not None:
            return FoundByPrimaryId(entity)
    entity = query().filter(alias_column == ref).first()
    if entity is not None:
        return FoundByAlias(entity)
    return NotFound(ref)


def resolve_invoice(db: Session, ref, for_update: bool = False) -> Resolution:
    return _resolve(db, Invoice, Invoice.on_chain_id, ref, for_update)


def resolve_order(db: Session, ref, for_update: bool = False) -> Resolution:
    return _resolve(db, SellOrder, SellOrder.on_chain_order_id, ref, for_update)


def get_invoice(db: Session, ref, for_update: bool = False) -> Invoice:
    found = resolve_invoice(db, ref, for_update)
    if isinstance(found, NotFound):
        raise InvoiceNotFound(f"Invoice {found.ref} not found", ref=found.ref)
    return found.entity


def get_order(db: Session, ref, for_update: bool = False) -> SellOrder:
    found = resolve_order(db, ref, for_update)
    if isinstance(found, NotFound):
        raise OrderNotFound(f"Order {found.ref} not found", ref=found.ref)
    return found.entity
