from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from dotenv import load_dotenv
from pathlib import Path
import logging

from config import get_settings

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

settings = get_settings()

# Get database URL
DATABASE_URL = settings.get_database_url()

# Create async engine; command_timeout bounds every gateway round trip
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
    connect_args={
        "ssl": settings.POSTGRES_SSLMODE,
        "command_timeout": settings.DATABASE_COMMAND_TIMEOUT_SECONDS,
    }
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


class Base(DeclarativeBase):
    pass


async def init_db():
    """Initialize database connection and verify entity tables exist"""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("PostgreSQL connection successful")

            tables_query = text("""
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'public'
            """)
            result = await conn.execute(tables_query)
            tables = {row[0] for row in result.fetchall()}

            missing = sorted(set(Base.metadata.tables) - tables)
            if missing:
                logger.warning(f"Entity tables missing from database: {missing}")
            else:
                logger.info(f"All {len(Base.metadata.tables)} entity tables present")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
