"""
Database models for the booking funnel event store
SQLAlchemy ORM models for page-view events and currency rates
"""
from sqlalchemy import BigInteger, Boolean, Column, Float, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PageView(Base):
    """
    Page-view event - one row per tracked page view on the booking site.
    Booking fields are only populated on confirmation pages.
    """
    __tablename__ = "pageviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    time = Column(BigInteger, nullable=False, index=True)  # Unix seconds (UTC)
    client_id = Column(String, nullable=True, index=True)
    channel = Column(String, nullable=True)
    logged_in = Column(Boolean, nullable=False, default=False)
    booking_step = Column(String, nullable=True)  # search, room_select, checkout, confirmation
    confirmation_no = Column(String, nullable=True)
    nights = Column(Float, nullable=True)
    payment = Column(Float, nullable=True)
    currency = Column(String, nullable=True)

    def __repr__(self):
        return f"<PageView(id={self.id}, time={self.time}, client_id='{self.client_id}')>"


class Currency(Base):
    """
    Currency entity - exchange rate used to convert booking payments to USD
    """
    __tablename__ = "currencies"

    code = Column(String, primary_key=True)
    exchange_rate_to_usd = Column(Float, nullable=False)

    def __repr__(self):
        return f"<Currency(code='{self.code}', rate={self.exchange_rate_to_usd})>"
