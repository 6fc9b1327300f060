from mailledger.core.database import Base, engine
from fastapi import FastAPI
from mailledger.routes.email_accounts import email_auth_router
from mailledger.routes.extraction import extraction_router

# Register models with the metadata before create_all
import mailledger.models.email_account
import mailledger.models.extracted_transaction


app = FastAPI(title="MailLedger API", version="1.0.0")

Base.metadata.create_all(bind=engine)

# Include all routers
app.include_router(email_auth_router)
app.include_router(extraction_router)


@app.get("/")
def root():
    return {"message": "MailLedger API is running"}
