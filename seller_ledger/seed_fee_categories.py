from seller_ledger.config import configure_logging
from seller_ledger.db import SessionLocal
from seller_ledger.services.fee_category_service import seed_fee_categories


def seed() -> tuple[int, int]:
    with SessionLocal() as db:
        created, updated = seed_fee_categories(db)
        db.commit()
    return created, updated


def main() -> None:
    configure_logging()
    created, updated = seed()
    print(f'Fee category seed complete: created={created}, updated={updated}')


if __name__ == '__main__':
    main()
