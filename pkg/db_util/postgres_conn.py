from typing import Dict, AsyncGenerator
from contextlib import asynccontextmanager
import urllib.parse
import asyncio
from pkg.db_util.types import PostgresConfig
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError


# Module-level singleton: one engine and sessionmaker per database URL
_engine_cache: Dict[str, AsyncEngine] = {}
_sessionmaker_cache: Dict[str, async_sessionmaker] = {}

# Module-level singleton: one PostgresConnection per database URL
_connection_instances: Dict[str, 'PostgresConnection'] = {}


class PostgresConnection:

    @staticmethod
    def _generate_db_url_from_config(db_config: PostgresConfig) -> str:
        """Generate database URL from config (used for singleton key)."""
        encoded_password = urllib.parse.quote_plus(db_config.password) if db_config.password else ''

        if not db_config.host:
            raise ValueError("Database host configuration is missing.")

        # prepared_statement_cache_size=0 keeps asyncpg usable behind PgBouncer
        return (
            f"postgresql+asyncpg://{db_config.username}:{encoded_password}@{db_config.host}:{db_config.port}"
            f"/{db_config.database}?prepared_statement_cache_size=0"
        )

    def __new__(cls, db_config: PostgresConfig, logger):
        """Singleton pattern: Return existing instance if one exists for this database URL."""
        db_url = cls._generate_db_url_from_config(db_config)

        if db_url in _connection_instances:
            existing = _connection_instances[db_url]
            existing.logger.debug(f"Reusing existing PostgresConnection instance for database: {db_url[:50]}...")
            return existing

        instance = super().__new__(cls)
        instance._db_url = db_url
        _connection_instances[db_url] = instance
        return instance

    def __init__(self, db_config: PostgresConfig, logger):
        # __init__ is called even for existing instances, so check if already initialized
        if hasattr(self, '_initialized'):
            return
        self.logger = logger
        self.db_config = db_config
        self._initialized = True

    async def get_engine(self, max_retries: int = 3, initial_delay: float = 2.0) -> AsyncEngine:
        """Get or create engine using module-level singleton pattern with retry logic."""
        if self._db_url in _engine_cache:
            return _engine_cache[self._db_url]

        self.logger.info("Database engine not initialized. Creating new engine...")
        pool_opts = {
            "pool_size": self.db_config.pool_size,
            "max_overflow": self.db_config.max_overflow,
            "pool_timeout": self.db_config.pool_timeout,
            "pool_recycle": self.db_config.pool_recycle,
            "pool_pre_ping": True,
        }
        self.logger.info(f"Creating async engine with pool options: {pool_opts}")

        last_error = None
        for attempt in range(max_retries):
            try:
                engine = create_async_engine(
                    self._db_url,
                    echo=False,
                    connect_args={
                        "timeout": 15,
                        "command_timeout": 15,
                        "statement_cache_size": 0,
                        "server_settings": {
                            "application_name": "stream-chat-orchestrator",
                            "jit": "off",
                        },
                    },
                    query_cache_size=0,
                    **pool_opts
                )

                self.logger.info(f"Testing database connection (attempt {attempt + 1}/{max_retries})...")
                async with engine.connect() as conn:
                    await conn.exec_driver_sql("SELECT 1")
                    self.logger.info("Database connection tested successfully.")

                sessionmaker = async_sessionmaker(
                    bind=engine,
                    class_=AsyncSession,
                    expire_on_commit=False,
                    autoflush=False,
                )

                _engine_cache[self._db_url] = engine
                _sessionmaker_cache[self._db_url] = sessionmaker
                self.logger.info("Async engine and sessionmaker created successfully and cached.")
                return engine

            except (SQLAlchemyError, OSError, ConnectionError) as e:
                last_error = e
                delay = initial_delay * (2 ** attempt)  # Exponential backoff

                if attempt < max_retries - 1:
                    self.logger.warning(
                        f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)
                else:
                    self.logger.error(f"Failed to create database engine after {max_retries} attempts: {e}", exc_info=True)
            except Exception as e:
                last_error = e
                self.logger.error(f"An unexpected error occurred during engine creation: {e}", exc_info=True)
                break

        raise ConnectionError(f"Could not create database engine after {max_retries} attempts: {last_error}") from last_error

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provides an asynchronous SQLAlchemy session; commits on success, rolls back on error."""
        await self.get_engine()

        sessionmaker = _sessionmaker_cache.get(self._db_url)
        if sessionmaker is None:
            self.logger.error("Sessionmaker is not available even after engine initialization attempt.")
            raise ConnectionError("Database engine/sessionmaker not initialized.")

        session: AsyncSession = sessionmaker()
        session_id = id(session)

        try:
            yield session
            if session.in_transaction():
                await session.commit()
        except SQLAlchemyError as e:
            self.logger.error(f"SQLAlchemy error in session {session_id}: {e}. Rolling back.", exc_info=True)
            if session.in_transaction():
                await session.rollback()
            raise
        except Exception as e:
            self.logger.error(f"Unexpected error in session {session_id}: {e}. Rolling back.", exc_info=True)
            if session.in_transaction():
                await session.rollback()
            raise
        finally:
            try:
                await session.close()
            except Exception as e:
                self.logger.error(f"Error closing session {session_id}: {e}", exc_info=True)

    async def ping(self) -> bool:
        """Round-trip ``SELECT 1`` on the cached engine. False when it is missing or unreachable."""
        engine = _engine_cache.get(self._db_url)
        if engine is None:
            return False
        try:
            async with engine.connect() as conn:
                await conn.exec_driver_sql("SELECT 1")
            return True
        except (SQLAlchemyError, OSError) as e:
            self.logger.warning(f"Database ping failed: {e}")
            return False

    async def close_engine(self):
        """Close engine and remove from module-level cache."""
        if self._db_url in _engine_cache:
            self.logger.info("Closing database engine and connection pool...")
            engine = _engine_cache.pop(self._db_url)
            await engine.dispose()
            _sessionmaker_cache.pop(self._db_url, None)
            self.logger.info("Database engine closed and removed from cache.")
        else:
            self.logger.info("Database engine was not initialized, no need to close.")
