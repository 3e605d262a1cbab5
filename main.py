from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from datetime import date, datetime, time, timezone
from typing import Optional
import analytics, cache, database, schemas
import os
import logging

# Configuración de Logs
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

SERVICE_NAME = "Grocery Price Signals API"
PORT = int(os.getenv("PORT", "3000"))

app = FastAPI(title=SERVICE_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_as_of(as_of: Optional[date] = None) -> datetime:
    """Fecha de referencia de las ventanas; sin parámetro, el reloj al recibir el request"""
    if as_of is None:
        return datetime.now()
    return datetime.combine(as_of, time())


# --- ERRORES: siempre {"error": ...} ---

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logging.error(f"❌ Error de base de datos en {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logging.exception(f"💥 Error inesperado en {request.url.path}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


# --- ENDPOINTS ---

@app.get("/api/ingredients", response_model=list[schemas.IngredientSummary])
def get_ingredients(db: Session = Depends(database.get_db), as_of: datetime = Depends(get_as_of)):
    """Ingredientes con número de productos y precio efectivo mínimo histórico"""
    logging.info("📋 Getting ingredients list...")
    rows = cache.remember(
        cache.cache_key("ingredients", as_of),
        lambda: jsonable_encoder(analytics.list_ingredients(db, as_of)),
    )
    logging.info(f"✅ Found {len(rows)} ingredients")
    return rows


@app.get(
    "/api/ingredient-price-history/{ingredient}/{days}",
    response_model=schemas.PriceHistoryResponse,
    response_model_exclude_unset=True,
)
def get_price_history(
    ingredient: str,
    days: str,
    db: Session = Depends(database.get_db),
    as_of: datetime = Depends(get_as_of),
):
    try:
        window = analytics.validate_days(days)
    except analytics.InvalidParameter as e:
        raise HTTPException(status_code=400, detail=str(e))

    logging.info(f"📈 Getting price history for {ingredient} ({window} days)...")
    result = cache.remember(
        cache.cache_key("price-history", as_of, ingredient, window),
        lambda: jsonable_encoder(analytics.price_history(db, ingredient, window, as_of)),
    )
    logging.info(f"✅ Found {len(result['price_history'])} price points for {ingredient}")
    return result


@app.get("/api/buy-now-signals", response_model=list[schemas.BuyNowSignal])
def get_buy_now_signals(db: Session = Depends(database.get_db), as_of: datetime = Depends(get_as_of)):
    """Productos en mínimo histórico, en el cuartil más barato o con gran descuento"""
    logging.info("🎯 Finding buy now signals...")
    rows = cache.remember(
        cache.cache_key("buy-now", as_of),
        lambda: jsonable_encoder(analytics.buy_now_signals(db, as_of)),
    )
    logging.info(f"✅ Found {len(rows)} buy now signals")
    return rows


@app.get("/api/wait-signals", response_model=list[schemas.WaitSignal])
def get_wait_signals(db: Session = Depends(database.get_db), as_of: datetime = Depends(get_as_of)):
    """Productos caros ahora o con una oferta probablemente cercana"""
    logging.info("⏳ Finding wait signals...")
    rows = cache.remember(
        cache.cache_key("wait", as_of),
        lambda: jsonable_encoder(analytics.wait_signals(db, as_of)),
    )
    logging.info(f"✅ Found {len(rows)} wait signals")
    return rows


@app.get("/api/expiring-deals", response_model=list[schemas.ExpiringDeal])
def get_expiring_deals(db: Session = Depends(database.get_db), as_of: datetime = Depends(get_as_of)):
    logging.info("⏰ Finding expiring deals...")
    rows = cache.remember(
        cache.cache_key("expiring", as_of),
        lambda: jsonable_encoder(analytics.expiring_deals(db, as_of)),
    )
    logging.info(f"✅ Found {len(rows)} expiring deals")
    return rows


@app.get("/health", response_model=schemas.HealthStatus)
def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc),
        "service": SERVICE_NAME,
    }


@app.on_event("startup")
def startup_event():
    logging.info("🔥 Aplicación iniciando... Verificando conexión a la base de datos")
    if database.check_connection():
        logging.info("✅ Database connected successfully")


if __name__ == "__main__":
    import uvicorn

    logging.info(f"🛒 {SERVICE_NAME} running on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
