import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import create_engine, Column, Integer, String, Float, DateTime, ForeignKey
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, relationship, Session

from exceptions import StorageError

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the form stored in the database)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False)
    url = Column(String(512), unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    prices = relationship("PriceHistory", back_populates="product", order_by="PriceHistory.recorded_at")

    def __repr__(self):
        return f"<Product {self.name} ({self.url})>"


class PriceHistory(Base):
    __tablename__ = "price_history"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    price = Column(Float, nullable=False)
    recorded_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    product = relationship("Product", back_populates="prices")

    def __repr__(self):
        return f"<PriceHistory {self.price:.2f} at {self.recorded_at}>"


class PriceStore:
    """
    Products and their price history in a SQL database.

    Every method accepts an optional session so several calls can share one
    transaction; without one, the method opens and commits its own.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def init_db(self):
        """Create all tables."""
        Base.metadata.create_all(self.engine)

    def dispose(self):
        self.engine.dispose()

    def get_session(self) -> Session:
        """Get a database session."""
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on any error."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _use_session(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
        else:
            with self.session_scope() as own_session:
                yield own_session

    def get_or_create_product(self, url: str, name: str, session: Optional[Session] = None) -> tuple[Product, bool]:
        """
        Find the product tracked at url, creating it if needed. Returns (product, is_new).

        An existing row whose name differs is renamed; an unchanged row is reused
        without a write.
        """
        try:
            with self._use_session(session) as s:
                product = s.query(Product).filter(Product.url == url).first()
                if product:
                    if product.name != name:
                        logger.info(f"Product at {url} renamed: {product.name!r} -> {name!r}")
                        product.name = name
                        s.flush()
                    return product, False

                product = Product(url=url, name=name)
                s.add(product)
                s.flush()
                logger.info(f"New product: {product.name}")
                return product, True
        except IntegrityError as e:
            raise StorageError(f"Product {name!r} conflicts with an existing product: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    def get_latest_price(self, product_id: int, session: Optional[Session] = None) -> Optional[PriceHistory]:
        """Most recent price record of a product, or None if it has none."""
        try:
            with self._use_session(session) as s:
                return s.query(PriceHistory).filter(
                    PriceHistory.product_id == product_id
                ).order_by(
                    PriceHistory.recorded_at.desc(), PriceHistory.id.desc()
                ).first()
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    def add_price(self, product_id: int, price: float, recorded_at: Optional[datetime] = None,
                  session: Optional[Session] = None) -> PriceHistory:
        """Record a price point for a product."""
        try:
            with self._use_session(session) as s:
                record = PriceHistory(
                    product_id=product_id,
                    price=price,
                    recorded_at=recorded_at or utcnow(),
                )
                s.add(record)
                s.flush()  # Ensure ID is generated
                return record
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    def delete_prices_older_than(self, cutoff: datetime) -> int:
        """Delete price records strictly older than cutoff. Returns the number removed."""
        session = self.get_session()
        try:
            deleted_count = session.query(PriceHistory).filter(
                PriceHistory.recorded_at < cutoff
            ).delete(synchronize_session=False)
            session.commit()
            return deleted_count
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(str(e)) from e
        finally:
            session.close()

