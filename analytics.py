import logging
import math
import re
from collections import defaultdict
from datetime import datetime, time, timedelta
from typing import Iterable, Optional

from sqlalchemy import and_, case, distinct, false, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import PriceObservation, Product

# Ventanas fijas (días)
SIGNAL_WINDOW_DAYS = 60
DEAL_PATTERN_DAYS = 90
EXPIRY_HORIZON_DAYS = 5
MAX_LOOKBACK_DAYS = 3650

# Umbrales de compra
NEAR_LOW_FACTOR = 1.05
GREAT_DEAL_PCT = 20
EXCELLENT_DEAL_PCT = 25
BUY_LIMIT = 20

# Umbrales de espera: el texto usa 1.1x y el filtro 1.15x, son distintos a propósito
ABOVE_AVERAGE_REASON_FACTOR = 1.1
ABOVE_AVERAGE_FILTER_FACTOR = 1.15
WAIT_DEAL_PCT = 15
FREQUENT_DEALS_MIN = 3
DEAL_DUE_DAYS = 14
DEAL_DUE_MIN_DEALS = 2
WAIT_LIMIT = 15

EXPIRING_DEAL_PCT = 10
EXPIRING_LIMIT = 20

PATTERN_DEAL_PCT = 15
OVERDUE_FACTOR = 1.5

MASS_UNITS = {"g", "gr", "kg"}
VOLUME_UNITS = {"ml", "l"}
PER_THOUSAND_UNITS = {"g", "gr", "ml"}
PER_ONE_UNITS = {"kg", "l"}


class InvalidParameter(ValueError):
    pass


def validate_days(raw) -> int:
    """Los días se interpolan en la ventana: solo enteros decimales dentro de rango."""
    text = str(raw).strip()
    if not re.fullmatch(r"[0-9]+", text):
        raise InvalidParameter(f"days must be a whole number, got {raw!r}")
    days = int(text)
    if days > MAX_LOOKBACK_DAYS:
        raise InvalidParameter(f"days must be between 0 and {MAX_LOOKBACK_DAYS}")
    return days


def standard_unit_price(effective_price: Optional[float], package_size: Optional[float], unit: Optional[str]):
    """Precio por kg o por litro según la unidad del envase; "each" queda igual."""
    if effective_price is None:
        return None
    u = (unit or "").lower().strip()
    if u in PER_THOUSAND_UNITS or u in PER_ONE_UNITS:
        if not package_size or package_size <= 0:
            return None
        per_unit = effective_price / package_size
        return per_unit * 1000 if u in PER_THOUSAND_UNITS else per_unit
    return effective_price


def standard_unit_for(units: Iterable[Optional[str]]) -> str:
    families = set()
    for unit in units:
        u = (unit or "").lower().strip()
        if u in MASS_UNITS:
            families.add("kg")
        elif u in VOLUME_UNITS:
            families.add("l")
        else:
            families.add("each")
    if len(families) == 1:
        return families.pop()
    return "unit"


def percentile_cont(values: list, fraction: float):
    """Percentil continuo con interpolación lineal, igual que PERCENTILE_CONT en SQL."""
    if not values:
        return None
    ordered = sorted(values)
    position = fraction * (len(ordered) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return ordered[lower]
    weight = position - lower
    return ordered[lower] + (ordered[upper] - ordered[lower]) * weight


def window_start(as_of: datetime, days: int) -> datetime:
    return datetime.combine(as_of.date() - timedelta(days=days), time.min)


def window_end(as_of: datetime) -> datetime:
    return datetime.combine(as_of.date() + timedelta(days=1), time.min)


def _scraped_by(as_of: datetime):
    # nada posterior al día de referencia cuenta, aunque ya esté en el store
    return PriceObservation.scraped_at < window_end(as_of)


def _in_window(as_of: datetime, days: int):
    if days == 0:
        # una ventana de cero días no contiene observaciones
        return false()
    return and_(PriceObservation.scraped_at >= window_start(as_of, days), _scraped_by(as_of))


def _matches_ingredient(ingredient: str):
    return func.lower(Product.ingredient) == func.lower(ingredient)


def _product_fields(product: Product) -> dict:
    return {
        "sku": product.sku,
        "ingredient": product.ingredient,
        "brand": product.brand,
        "full_name": product.full_name,
        "package_size": product.package_size,
        "unit": product.unit,
    }


def _latest_observations(db: Session, as_of: datetime, *criteria):
    """Última observación (mayor scraped_at) de cada SKU con ingrediente."""
    ranked = db.query(
        PriceObservation.id.label("id"),
        func.row_number().over(
            partition_by=PriceObservation.sku,
            order_by=(PriceObservation.scraped_at.desc(), PriceObservation.id.desc()),
        ).label("rn"),
    ).filter(_scraped_by(as_of)).subquery()

    return (
        db.query(PriceObservation, Product)
        .join(ranked, ranked.c.id == PriceObservation.id)
        .join(Product, Product.sku == PriceObservation.sku)
        .filter(ranked.c.rn == 1, Product.ingredient.isnot(None), *criteria)
    )


def _window_by_sku(db: Session, as_of: datetime, days: int) -> dict:
    rows = (
        db.query(
            PriceObservation.sku,
            PriceObservation.effective_price.label("effective_price"),
            PriceObservation.deal_savings_percentage,
            PriceObservation.scraped_at,
        )
        .join(Product, Product.sku == PriceObservation.sku)
        .filter(Product.ingredient.isnot(None), _in_window(as_of, days))
        .all()
    )
    by_sku = defaultdict(list)
    for row in rows:
        by_sku[row.sku].append(row)
    return by_sku


def list_ingredients(db: Session, as_of: datetime) -> list[dict]:
    groups = (
        db.query(
            Product.ingredient,
            Product.category,
            func.count(distinct(Product.sku)).label("product_count"),
            func.min(PriceObservation.effective_price).label("min_effective_price"),
        )
        .join(PriceObservation, PriceObservation.sku == Product.sku)
        .filter(Product.ingredient.isnot(None), _scraped_by(as_of))
        .group_by(Product.ingredient, Product.category)
        .order_by(Product.ingredient)
        .all()
    )

    units = defaultdict(set)
    unit_rows = (
        db.query(Product.ingredient, Product.category, Product.unit)
        .join(PriceObservation, PriceObservation.sku == Product.sku)
        .filter(Product.ingredient.isnot(None), _scraped_by(as_of))
        .distinct()
        .all()
    )
    for ingredient, category, unit in unit_rows:
        units[(ingredient, category)].add(unit)

    return [
        {
            "ingredient": g.ingredient,
            "category": g.category,
            "product_count": g.product_count,
            "min_effective_price": g.min_effective_price,
            "standard_unit": standard_unit_for(units[(g.ingredient, g.category)]),
            "price_trend": "Stable",
        }
        for g in groups
    ]


def price_history(db: Session, ingredient: str, days: int, as_of: datetime) -> dict:
    in_window = _in_window(as_of, days)
    matches = _matches_ingredient(ingredient)

    rows = (
        db.query(PriceObservation, Product)
        .join(Product, Product.sku == PriceObservation.sku)
        .filter(matches, in_window)
        .order_by(PriceObservation.scraped_at, Product.brand)
        .all()
    )
    history = []
    for obs, product in rows:
        point = _product_fields(product)
        point.update({
            "price": obs.price,
            "loyalty_price": obs.loyalty_price,
            "effective_price": obs.effective_price,
            "deal_savings_percentage": obs.deal_savings_percentage,
            "date": obs.scraped_at.date(),
            "deal_valid_until": obs.deal_valid_until,
            "price_per_standard_unit": standard_unit_price(
                obs.effective_price, product.package_size, product.unit
            ),
        })
        history.append(point)

    effective = PriceObservation.effective_price
    data_points, min_price, max_price, avg_price, deal_count = (
        db.query(
            func.count(PriceObservation.id),
            func.min(effective),
            func.max(effective),
            func.avg(effective),
            func.count(case((PriceObservation.deal_savings_percentage > 0, 1))),
        )
        .select_from(PriceObservation)
        .join(Product, Product.sku == PriceObservation.sku)
        .filter(matches, in_window)
        .one()
    )

    # Precio actual: última observación hasta as_of, sin importar el inicio de la ventana
    current_price = (
        db.query(effective)
        .select_from(PriceObservation)
        .join(Product, Product.sku == PriceObservation.sku)
        .filter(matches, _scraped_by(as_of))
        .order_by(PriceObservation.scraped_at.desc())
        .limit(1)
        .scalar()
    )

    return {
        "price_history": history,
        "stats": {
            "data_points": data_points or 0,
            "min_price": min_price,
            "max_price": max_price,
            "avg_price": float(avg_price) if avg_price is not None else None,
            "current_price": current_price,
            "deal_count": deal_count or 0,
        },
        "deal_pattern": analyze_deal_pattern(db, ingredient, as_of),
    }


def classify_deal_pattern(deal_dates: list, today) -> dict:
    """Frecuencia y recomendación a partir de las fechas de ofertas, en orden."""
    gaps = [(later - earlier).days for earlier, later in zip(deal_dates, deal_dates[1:])]
    if not gaps:
        return {
            "frequency": "RARE",
            "recommendation": "Buy when needed, deals are unpredictable",
        }

    total_deals = len(deal_dates)
    if total_deals >= 4:
        frequency = "FREQUENT"
    elif total_deals >= 2:
        frequency = "OCCASIONAL"
    else:
        frequency = "RARE"

    avg_gap = sum(gaps) / len(gaps)
    days_since_last = (today - deal_dates[-1]).days

    if frequency == "FREQUENT":
        if days_since_last > avg_gap * OVERDUE_FACTOR:
            recommendation = "Deal likely soon - consider waiting"
        else:
            recommendation = "Regular deal pattern - buy when discounted"
    elif frequency == "OCCASIONAL":
        recommendation = "Deals are less predictable - buy at 15%+ discount"
    else:
        recommendation = "Buy when needed, deals are rare"

    return {
        "total_deals": total_deals,
        "avg_days_between_deals": math.floor(avg_gap + 0.5),
        "days_since_last_deal": days_since_last,
        "frequency": frequency,
        "recommendation": recommendation,
    }


def analyze_deal_pattern(db: Session, ingredient: str, as_of: datetime) -> dict:
    # Un fallo aquí no debe tumbar el historial de precios
    try:
        scraped = (
            db.query(PriceObservation.scraped_at)
            .join(Product, Product.sku == PriceObservation.sku)
            .filter(
                _matches_ingredient(ingredient),
                PriceObservation.deal_savings_percentage > PATTERN_DEAL_PCT,
                _in_window(as_of, DEAL_PATTERN_DAYS),
            )
            .order_by(PriceObservation.scraped_at)
            .all()
        )
        return classify_deal_pattern([s.date() for (s,) in scraped], as_of.date())
    except Exception:
        logging.exception(f"Error analyzing deal pattern for {ingredient}")
        try:
            db.rollback()
        except SQLAlchemyError:
            logging.exception("Rollback failed after deal pattern error")
        return {
            "frequency": "UNKNOWN",
            "recommendation": "Unable to analyze deal pattern",
        }


def buy_now_signals(db: Session, as_of: datetime) -> list[dict]:
    window = _window_by_sku(db, as_of, SIGNAL_WINDOW_DAYS)
    signals = []

    for obs, product in _latest_observations(db, as_of).all():
        observations = window.get(obs.sku)
        if not observations:
            continue

        prices = [o.effective_price for o in observations]
        historic_low = min(prices)
        avg_price = sum(prices) / len(prices)
        p25 = percentile_cont(prices, 0.25)
        effective = obs.effective_price
        savings = obs.deal_savings_percentage

        near_low = effective <= historic_low * NEAR_LOW_FACTOR
        bottom_quartile = effective <= p25
        great_deal = savings is not None and savings >= GREAT_DEAL_PCT
        excellent_deal = savings is not None and savings >= EXCELLENT_DEAL_PCT
        if not (near_low or bottom_quartile or great_deal):
            continue

        if near_low:
            reason = "At historic low"
        elif bottom_quartile:
            reason = "Bottom 25% of prices"
        elif excellent_deal:
            reason = "Excellent deal (25%+ off)"
        elif great_deal:
            reason = "Great deal (20%+ off)"
        else:
            reason = "Good value"

        signal = _product_fields(product)
        signal.update({
            "price": obs.price,
            "loyalty_price": obs.loyalty_price,
            "deal_savings_percentage": savings,
            "deal_valid_until": obs.deal_valid_until,
            "effective_price": effective,
            "historic_low": historic_low,
            "avg_historical_price": avg_price,
            "price_25th_percentile": p25,
            "rank": 1 if near_low else 2 if excellent_deal else 3,
            "reason": reason,
            "potential_savings": avg_price - effective,
        })
        signals.append(signal)

    signals.sort(key=lambda s: (
        s["rank"],
        s["potential_savings"] is None,
        -(s["potential_savings"] or 0),
    ))
    return signals[:BUY_LIMIT]


def wait_signals(db: Session, as_of: datetime) -> list[dict]:
    window = _window_by_sku(db, as_of, SIGNAL_WINDOW_DAYS)
    today = as_of.date()
    signals = []

    for obs, product in _latest_observations(db, as_of).all():
        observations = window.get(obs.sku)
        if not observations:
            continue

        prices = [o.effective_price for o in observations]
        avg_price = sum(prices) / len(prices)
        min_price = min(prices)
        p75 = percentile_cont(prices, 0.75)
        deal_days = [
            o.scraped_at.date() for o in observations
            if o.deal_savings_percentage is not None and o.deal_savings_percentage > WAIT_DEAL_PCT
        ]
        deal_count = len(deal_days)
        days_since_deal = (today - max(deal_days)).days if deal_days else None
        current = obs.effective_price

        expensive_with_deals = current >= p75 and deal_count >= FREQUENT_DEALS_MIN
        well_above_average = current > avg_price * ABOVE_AVERAGE_FILTER_FACTOR
        deal_due = (
            days_since_deal is not None
            and days_since_deal >= DEAL_DUE_DAYS
            and deal_count >= DEAL_DUE_MIN_DEALS
        )
        if not (expensive_with_deals or well_above_average or deal_due):
            continue

        if expensive_with_deals:
            reason = "Frequent deals, currently expensive"
        elif current > avg_price * ABOVE_AVERAGE_REASON_FACTOR:
            reason = "Above average price"
        elif deal_due:
            reason = "Deal likely due soon"
        else:
            reason = "Price may drop"

        signal = _product_fields(product)
        signal.update({
            "price": obs.price,
            "loyalty_price": obs.loyalty_price,
            "current_price": current,
            "avg_price": avg_price,
            "min_price": min_price,
            "price_75th_percentile": p75,
            "deal_count": deal_count,
            "total_observations": len(observations),
            "days_since_deal": days_since_deal,
            "reason": reason,
            "expected_price": min_price,
        })
        signals.append(signal)

    signals.sort(key=lambda s: (
        -(s["current_price"] - s["min_price"]),
        s["days_since_deal"] is None,
        -(s["days_since_deal"] or 0),
    ))
    return signals[:WAIT_LIMIT]


def expiring_deals(db: Session, as_of: datetime) -> list[dict]:
    today = as_of.date()
    horizon = today + timedelta(days=EXPIRY_HORIZON_DAYS)

    rows = (
        _latest_observations(
            db,
            as_of,
            PriceObservation.deal_valid_until >= today,
            PriceObservation.deal_valid_until <= horizon,
            PriceObservation.deal_savings_percentage > EXPIRING_DEAL_PCT,
        )
        .order_by(
            PriceObservation.deal_valid_until.asc(),
            PriceObservation.deal_savings_percentage.desc(),
        )
        .limit(EXPIRING_LIMIT)
        .all()
    )

    deals = []
    for obs, product in rows:
        deal = _product_fields(product)
        deal.update({
            "price": obs.price,
            "loyalty_price": obs.loyalty_price,
            "deal_savings_percentage": obs.deal_savings_percentage,
            "deal_valid_until": obs.deal_valid_until,
            "days_until_expiry": (obs.deal_valid_until - today).days,
        })
        deals.append(deal)
    return deals
