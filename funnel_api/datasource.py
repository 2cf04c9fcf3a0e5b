"""
SQL-backed data source for funnel metrics and charts.

Every public method takes ('YYYY-MM-DD', 'YYYY-MM-DD') and returns a Result
dict. Database errors are reported as success: false results, never raised.
"""
import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Tuple

from sqlalchemy import and_, case, distinct, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from funnel_api.models import Currency, PageView

logger = logging.getLogger("datasource")

SECONDS_PER_DAY = 86400

# Funnel steps in order; conversion is relative to the first step
FUNNEL_STEPS = ["search", "room_select", "checkout", "confirmation"]


def to_unix_bounds(from_date: str, to_date: str) -> Tuple[int, int]:
    """Unix seconds covering whole days: from 00:00:00 to 23:59:59 UTC."""
    start = datetime.combine(date.fromisoformat(from_date), time.min, tzinfo=timezone.utc)
    end = datetime.combine(date.fromisoformat(to_date), time.min, tzinfo=timezone.utc)
    return int(start.timestamp()), int(end.timestamp()) + SECONDS_PER_DAY - 1


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _has_value(column):
    return and_(column.isnot(None), column != "")


class SqlDataSource:
    """
    Funnel queries against the pageviews table.

    Args:
        session_factory: sessionmaker bound to the event database
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _run(
        self,
        name: str,
        from_date: str,
        to_date: str,
        query: Callable[[Session, int, int], Dict[str, Any]],
        empty: Dict[str, Any],
    ) -> Dict[str, Any]:
        logger.info(f"Querying {name} from {from_date} to {to_date}")
        start_ts, end_ts = to_unix_bounds(from_date, to_date)
        try:
            with self._session_factory() as session:
                payload = query(session, start_ts, end_ts)
        except SQLAlchemyError as e:
            logger.error(f"Error in {name}: {e}")
            return {**empty, "success": False, "error": str(e), "cached": False}
        return {**payload, "success": True, "query_time": _now_iso(), "cached": False}

    @staticmethod
    def _in_range(start_ts: int, end_ts: int):
        return and_(PageView.time >= start_ts, PageView.time <= end_ts)

    @staticmethod
    def _usd_amount():
        """Payment converted to USD; USD and unknown currencies use rate 1.0."""
        rate = case(
            (func.upper(PageView.currency) == "USD", 1.0),
            else_=func.coalesce(Currency.exchange_rate_to_usd, 1.0),
        )
        return PageView.payment * rate

    @staticmethod
    def _currency_join():
        return func.upper(Currency.code) == func.upper(PageView.currency)

    # ------------------------------------------------------------------
    # Scalar metrics
    # ------------------------------------------------------------------

    def unique_visitors(self, from_date: str, to_date: str) -> Dict[str, Any]:
        """Distinct visitors in range."""
        def query(session, start_ts, end_ts):
            stmt = select(func.count(distinct(PageView.client_id))).where(
                self._in_range(start_ts, end_ts), _has_value(PageView.client_id)
            )
            return {"unique_visitors": int(session.execute(stmt).scalar() or 0)}

        return self._run("unique_visitors", from_date, to_date, query, {"unique_visitors": 0})

    def total_bookings(self, from_date: str, to_date: str) -> Dict[str, Any]:
        """Distinct confirmation numbers in range."""
        def query(session, start_ts, end_ts):
            stmt = select(func.count(distinct(PageView.confirmation_no))).where(
                self._in_range(start_ts, end_ts), _has_value(PageView.confirmation_no)
            )
            return {"total_bookings": int(session.execute(stmt).scalar() or 0)}

        return self._run("total_bookings", from_date, to_date, query, {"total_bookings": 0})

    def room_nights(self, from_date: str, to_date: str) -> Dict[str, Any]:
        """Nights booked in range."""
        def query(session, start_ts, end_ts):
            stmt = select(func.coalesce(func.sum(PageView.nights), 0.0)).where(
                self._in_range(start_ts, end_ts),
                PageView.nights.isnot(None),
                _has_value(PageView.confirmation_no),
            )
            return {"room_nights": float(session.execute(stmt).scalar() or 0)}

        return self._run("room_nights", from_date, to_date, query, {"room_nights": 0})

    def total_revenue(self, from_date: str, to_date: str) -> Dict[str, Any]:
        """Booking revenue in USD."""
        def query(session, start_ts, end_ts):
            stmt = (
                select(func.coalesce(func.sum(self._usd_amount()), 0.0))
                .select_from(PageView)
                .outerjoin(Currency, self._currency_join())
                .where(self._in_range(start_ts, end_ts), PageView.payment > 0)
            )
            return {"total_revenue": round(float(session.execute(stmt).scalar() or 0), 2)}

        return self._run("total_revenue", from_date, to_date, query, {"total_revenue": 0})

    # ------------------------------------------------------------------
    # Chart series
    # ------------------------------------------------------------------

    def unique_visitors_by_channel(self, from_date: str, to_date: str) -> Dict[str, Any]:
        def query(session, start_ts, end_ts):
            visitors = func.count(distinct(PageView.client_id))
            stmt = (
                select(func.coalesce(PageView.channel, "unknown"), visitors)
                .where(self._in_range(start_ts, end_ts), _has_value(PageView.client_id))
                .group_by(func.coalesce(PageView.channel, "unknown"))
                .order_by(visitors.desc())
            )
            rows = session.execute(stmt).all()
            return {"data": [{"channel": channel, "visitors": int(count)} for channel, count in rows]}

        return self._run("unique_visitors_by_channel", from_date, to_date, query, {"data": []})

    def logged_in_vs_out(self, from_date: str, to_date: str) -> Dict[str, Any]:
        def query(session, start_ts, end_ts):
            stmt = (
                select(PageView.logged_in, func.count(distinct(PageView.client_id)))
                .where(self._in_range(start_ts, end_ts), _has_value(PageView.client_id))
                .group_by(PageView.logged_in)
            )
            counts = {bool(flag): int(count) for flag, count in session.execute(stmt).all()}
            return {"data": [
                {"status": "Logged In", "visitors": counts.get(True, 0)},
                {"status": "Logged Out", "visitors": counts.get(False, 0)},
            ]}

        return self._run("logged_in_vs_out", from_date, to_date, query, {"data": []})

    def booking_funnel(self, from_date: str, to_date: str) -> Dict[str, Any]:
        def query(session, start_ts, end_ts):
            stmt = (
                select(PageView.booking_step, func.count(distinct(PageView.client_id)))
                .where(
                    self._in_range(start_ts, end_ts),
                    PageView.booking_step.in_(FUNNEL_STEPS),
                    _has_value(PageView.client_id),
                )
                .group_by(PageView.booking_step)
            )
            counts = {step: int(count) for step, count in session.execute(stmt).all()}
            top = counts.get(FUNNEL_STEPS[0], 0)
            return {"data": [
                {
                    "step": step,
                    "visitors": counts.get(step, 0),
                    "conversion_rate": round(counts.get(step, 0) * 100.0 / top, 2) if top else 0,
                }
                for step in FUNNEL_STEPS
            ]}

        return self._run("booking_funnel", from_date, to_date, query, {"data": []})

    def booking_revenue_trends(self, from_date: str, to_date: str) -> Dict[str, Any]:
        """Daily bookings and USD revenue."""
        def query(session, start_ts, end_ts):
            day = (PageView.time // SECONDS_PER_DAY).label("day")
            stmt = (
                select(
                    day,
                    func.count(distinct(PageView.confirmation_no)),
                    func.coalesce(func.sum(self._usd_amount()), 0.0),
                )
                .select_from(PageView)
                .outerjoin(Currency, self._currency_join())
                .where(self._in_range(start_ts, end_ts), _has_value(PageView.confirmation_no))
                .group_by(day)
                .order_by(day)
            )
            epoch = date(1970, 1, 1)
            return {"data": [
                {
                    "date": (epoch + timedelta(days=int(day_number))).isoformat(),
                    "bookings": int(bookings),
                    "revenue": round(float(revenue or 0), 2),
                }
                for day_number, bookings, revenue in session.execute(stmt).all()
            ]}

        return self._run("booking_revenue_trends", from_date, to_date, query, {"data": []})

    def rebooking_rates(self, from_date: str, to_date: str) -> Dict[str, Any]:
        """Monthly share of booking customers who had already booked earlier in the range."""
        def query(session, start_ts, end_ts):
            stmt = (
                select(PageView.client_id, PageView.confirmation_no, func.min(PageView.time))
                .where(
                    self._in_range(start_ts, end_ts),
                    _has_value(PageView.client_id),
                    _has_value(PageView.confirmation_no),
                )
                .group_by(PageView.client_id, PageView.confirmation_no)
                .order_by(func.min(PageView.time))
            )
            seen = set()
            customers: Dict[str, set] = defaultdict(set)
            returning: Dict[str, set] = defaultdict(set)
            for client_id, _, first_seen in session.execute(stmt).all():
                month = datetime.fromtimestamp(first_seen, tz=timezone.utc).strftime("%Y-%m")
                customers[month].add(client_id)
                if client_id in seen:
                    returning[month].add(client_id)
                seen.add(client_id)

            data: List[Dict[str, Any]] = []
            for month in sorted(customers):
                total = len(customers[month])
                data.append({
                    "period": month,
                    "customers": total,
                    "returning_customers": len(returning[month]),
                    "rebooking_rate": round(len(returning[month]) * 100.0 / total, 2),
                })
            return {"data": data}

        return self._run("rebooking_rates", from_date, to_date, query, {"data": []})

    # ------------------------------------------------------------------
    # System
    # ------------------------------------------------------------------

    def date_ranges(self) -> Dict[str, Any]:
        """Earliest and latest event dates available."""
        try:
            with self._session_factory() as session:
                first, last = session.execute(
                    select(func.min(PageView.time), func.max(PageView.time))
                ).one()
        except SQLAlchemyError as e:
            logger.error(f"Error in date_ranges: {e}")
            return {"success": False, "error": str(e)}

        def as_date(ts):
            if ts is None:
                return None
            return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()

        return {
            "success": True,
            "min_date": as_date(first),
            "max_date": as_date(last),
            "query_time": _now_iso(),
        }

    def ping(self) -> bool:
        try:
            with self._session_factory() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
