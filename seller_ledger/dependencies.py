from __future__ import annotations

from datetime import date

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from seller_ledger.db import get_db
from seller_ledger.services.fee_category_service import FeeCategoryLookup, load_fee_category_lookup


def get_fee_category_lookup(db: Session = Depends(get_db)) -> FeeCategoryLookup:
    return load_fee_category_lookup(db)


def query_list(request: Request, name: str) -> list[str]:
    values: list[str] = []
    for raw in request.query_params.getlist(name):
        values.extend(part.strip() for part in raw.split(',') if part.strip())
    return values


def query_date(request: Request, name: str) -> date | None:
    raw = request.query_params.get(name, '').strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f'Invalid {name} date') from exc
