from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from starlette.middleware.trustedhost import TrustedHostMiddleware

from creatorpay.core.config import settings
from creatorpay.core.logging import configure_logging
from creatorpay.api.router import router
from creatorpay.db.session import SessionLocal
from creatorpay.services.gateway import get_payment_gateway
from creatorpay.services.renewals import RenewalWorker


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    worker = None
    if settings.BILLING_SCHEDULER_ENABLED:
        worker = RenewalWorker(SessionLocal, get_payment_gateway)
        await worker.start()
    try:
        yield
    finally:
        if worker is not None:
            await worker.stop()


app = FastAPI(
    title="creatorpay",
    version="0.1.0",
    lifespan=lifespan,
)

allowed_hosts = [h.strip() for h in settings.ALLOWED_HOSTS.split(",") if h.strip()]
if not allowed_hosts:
    allowed_hosts = ["*"]
app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response: Response = await call_next(request)
    if settings.SECURITY_HEADERS_ENABLED:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "frame-ancestors 'none'; base-uri 'self'"
        if settings.ENV != "dev":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response

app.include_router(router)

@app.get("/health")
def health():
    return {"ok": True, "billingProvider": settings.BILLING_PROVIDER}
