import datetime as dt
from pydantic import BaseModel
from typing import Optional


class ProductInfo(BaseModel):
    ingredient: Optional[str] = None
    brand: Optional[str] = None
    full_name: Optional[str] = None
    package_size: Optional[float] = None
    unit: Optional[str] = None


class IngredientSummary(BaseModel):
    ingredient: str
    category: Optional[str] = None
    product_count: int
    min_effective_price: Optional[float] = None
    standard_unit: str
    price_trend: str


class PriceHistoryPoint(ProductInfo):
    sku: str
    price: float
    loyalty_price: Optional[float] = None
    effective_price: float
    deal_savings_percentage: Optional[float] = None
    date: dt.date
    deal_valid_until: Optional[dt.date] = None
    price_per_standard_unit: Optional[float] = None


class PriceStats(BaseModel):
    data_points: int
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    avg_price: Optional[float] = None
    current_price: Optional[float] = None
    deal_count: int


class DealPattern(BaseModel):
    """Sin datos suficientes solo se envían frequency y recommendation."""
    frequency: str
    recommendation: str
    total_deals: Optional[int] = None
    avg_days_between_deals: Optional[int] = None
    days_since_last_deal: Optional[int] = None


class PriceHistoryResponse(BaseModel):
    price_history: list[PriceHistoryPoint]
    stats: PriceStats
    deal_pattern: DealPattern


class BuyNowSignal(ProductInfo):
    sku: str
    price: float
    loyalty_price: Optional[float] = None
    deal_savings_percentage: Optional[float] = None
    deal_valid_until: Optional[dt.date] = None
    effective_price: float
    historic_low: float
    avg_historical_price: float
    price_25th_percentile: float
    rank: int
    reason: str
    potential_savings: Optional[float] = None


class WaitSignal(ProductInfo):
    sku: str
    price: float
    loyalty_price: Optional[float] = None
    current_price: float
    avg_price: float
    min_price: float
    price_75th_percentile: float
    deal_count: int
    total_observations: int
    days_since_deal: Optional[int] = None
    reason: str
    expected_price: float


class ExpiringDeal(ProductInfo):
    sku: str
    price: float
    loyalty_price: Optional[float] = None
    deal_savings_percentage: float
    deal_valid_until: dt.date
    days_until_expiry: int


class HealthStatus(BaseModel):
    status: str
    timestamp: dt.datetime
    service: str
