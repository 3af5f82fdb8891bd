from __future__ import annotations

from datetime import date, timedelta

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from seller_ledger.db import get_db
from seller_ledger.dependencies import get_fee_category_lookup, query_date, query_list
from seller_ledger.services.fee_category_service import FeeCategoryLookup
from seller_ledger.services.reconciliation_service import compute_profit_summary, load_order_balance
from seller_ledger.services.verification_service import run_verification

router = APIRouter(tags=['reports'])

DEFAULT_RANGE_DAYS = 30


def _account_id(request: Request) -> str:
    account_id = request.query_params.get('account_id', '').strip()
    if not account_id:
        raise HTTPException(status_code=400, detail='account_id is required')
    return account_id


@router.get('/reports/profit')
def profit_report(
    request: Request,
    db: Session = Depends(get_db),
    fee_categories: FeeCategoryLookup = Depends(get_fee_category_lookup),
):
    account_id = _account_id(request)
    to_date = query_date(request, 'to') or date.today()
    from_date = query_date(request, 'from') or to_date - timedelta(days=DEFAULT_RANGE_DAYS)
    try:
        summary = compute_profit_summary(
            db,
            account_id,
            start_date=from_date,
            end_date=to_date,
            fee_categories=fee_categories,
            marketplace_ids=query_list(request, 'marketplace_ids'),
            skus=query_list(request, 'skus'),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return summary.as_dict()


@router.get('/reports/verification')
def verification_report(
    request: Request,
    db: Session = Depends(get_db),
    fee_categories: FeeCategoryLookup = Depends(get_fee_category_lookup),
):
    report = run_verification(db, _account_id(request), fee_categories=fee_categories)
    return report.to_dict()


@router.get('/orders/{amazon_order_id}/balance')
def order_balance(
    amazon_order_id: str,
    request: Request,
    db: Session = Depends(get_db),
    fee_categories: FeeCategoryLookup = Depends(get_fee_category_lookup),
):
    account_id = request.query_params.get('account_id', '').strip() or None
    try:
        balance = load_order_balance(db, amazon_order_id, fee_categories=fee_categories, account_id=account_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return balance.as_dict()
