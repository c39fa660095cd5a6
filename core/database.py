# core/database.py
"""
Engine and session factory shared by the HTTP process and the delivery worker
"""

import logging
import time
from typing import Any, Dict

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from core.database_models import Base

logger = logging.getLogger(__name__)


def engine_options(database_url: str, config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build engine keyword arguments for the configured backend

    PostgreSQL gets a sized connection pool and READ COMMITTED isolation, which
    the queue claim (``FOR UPDATE SKIP LOCKED``) and the idempotency insert
    rely on. SQLite is used for development and tests only.
    """
    if database_url.startswith('sqlite'):
        options = {'connect_args': {'check_same_thread': False, 'timeout': 20}}
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            options['poolclass'] = StaticPool
        return options

    options = {
        'poolclass': QueuePool,
        'pool_size': config.get('DB_POOL_SIZE', 20),
        'max_overflow': config.get('DB_MAX_OVERFLOW', 30),
        'pool_pre_ping': True,  # Verify connections before use
        'pool_recycle': 3600,   # Recycle connections every hour
    }
    if database_url.startswith('postgresql'):
        options['isolation_level'] = 'READ COMMITTED'
        options['connect_args'] = {
            'application_name': 'newsletter_delivery',
            'connect_timeout': 10,
        }
    return options


def create_database_engine(config: Dict[str, Any]) -> Engine:
    """Create the engine and attach slow query logging"""
    database_url = config.get('DATABASE_URL', 'sqlite:///newsletter.db')
    engine = create_engine(database_url, **engine_options(database_url, config))

    threshold = config.get('SLOW_QUERY_THRESHOLD', 1.0)

    @event.listens_for(engine, "before_cursor_execute")
    def receive_before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault('query_start_time', []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def receive_after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        total = time.perf_counter() - conn.info['query_start_time'].pop()
        if total > threshold:
            logger.warning(f"Slow query ({total:.2f}s): {statement[:100]}...")

    logger.info(f"Database configured: {database_url.split('@')[-1] if '@' in database_url else database_url}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    """Create all tables (development and tests; production uses migrations)"""
    Base.metadata.create_all(engine)


def ping(session_factory: sessionmaker) -> None:
    """Raise if the database cannot answer a trivial query"""
    with session_factory() as session:
        session.execute(text('SELECT 1'))
