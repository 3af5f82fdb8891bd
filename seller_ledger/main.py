from fastapi import FastAPI

from seller_ledger.routers import reports

app = FastAPI(title='Seller Ledger')

app.include_router(reports.router)
