from fastapi import FastAPI
from routers import invoices, onboarding, payments

app = FastAPI(
    title="CFDI Lifecycle API",
    description="Build, sign, stamp, cancel and query CFDI 4.0 invoices and payment complements",
    version="1.0.0",
)

# Include routers
app.include_router(invoices.router, prefix="/invoices", tags=["Invoices"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(onboarding.router, prefix="/onboarding", tags=["Onboarding"])

@app.get("/")
async def root():
    return {"message": "CFDI lifecycle service"}
