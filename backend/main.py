from contextlib import asynccontextmanager

from fastapi import FastAPI

from fulfillment.db.config import get_sweep_interval_seconds
from fulfillment.db.init_db import init_db
from fulfillment.db.session import SessionLocal, engine
from fulfillment.routes.checkout_r import router as checkout_router
from fulfillment.routes.order_events_r import router as order_events_router
from fulfillment.routes.pago_movil_r import router as pago_movil_router
from fulfillment.routes.payment_claims_r import router as payment_claims_router
from fulfillment.routes.stock_r import router as stock_router
from fulfillment.routes.stock_reservations_r import router as stock_reservations_router
from fulfillment.services.expiry_sweeper import ExpirySweeper


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(engine)
    sweeper = ExpirySweeper(SessionLocal, interval_seconds=get_sweep_interval_seconds())
    sweeper.start()
    app.state.expiry_sweeper = sweeper
    try:
        yield
    finally:
        sweeper.shutdown()


app = FastAPI(
    title="Fulfillment API",
    version="0.1.0",
    description="Reservas de stock y verificacion de Pago Movil.",
    lifespan=lifespan,
)

app.include_router(checkout_router)
app.include_router(pago_movil_router)
app.include_router(stock_router)
app.include_router(stock_reservations_router)
app.include_router(payment_claims_router)
app.include_router(order_events_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
