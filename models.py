from sqlalchemy import Column, Integer, String, Float, Date, DateTime, ForeignKey, Index, func
from sqlalchemy.ext.hybrid import hybrid_property
from database import Base

# Tablas pobladas por el scraper externo; esta API solo las lee.


class Product(Base):
    __tablename__ = "products"
    sku = Column(String, primary_key=True)
    ingredient = Column(String, nullable=True, index=True)  # NULL = fuera de analytics
    category = Column(String)
    brand = Column(String)
    full_name = Column(String)
    package_size = Column(Float)
    unit = Column(String)  # g, kg, ml, l, each


class PriceObservation(Base):
    __tablename__ = "price_history"
    id = Column(Integer, primary_key=True)
    sku = Column(String, ForeignKey("products.sku"), nullable=False)
    scraped_at = Column(DateTime, nullable=False)
    price = Column(Float, nullable=False)
    loyalty_price = Column(Float, nullable=True)
    deal_savings_percentage = Column(Float, nullable=True)
    deal_valid_until = Column(Date, nullable=True)

    __table_args__ = (Index("ix_price_history_sku_scraped_at", "sku", "scraped_at"),)

    @hybrid_property
    def effective_price(self):
        return self.loyalty_price if self.loyalty_price is not None else self.price

    @effective_price.expression
    def effective_price(cls):
        return func.coalesce(cls.loyalty_price, cls.price)
