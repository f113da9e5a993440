from fastapi import Request

from billcore.services.billing.cycle import BillingCycles


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_billing(request: Request) -> BillingCycles:
    return request.app.state.billing
