"""PostgreSQL connection pool for the document store.

The pool owns the documents table:
- initialize() opens the pool and creates the table if missing
- health_check() reads the table, so readiness fails when the schema is gone
- credentials come from Secrets Manager when DB_SECRET_ARN is set
"""
import json
import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict

from obstrack.shared.errors import ValidationError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS {table} (
        path TEXT PRIMARY KEY,
        collection TEXT NOT NULL,
        doc_id TEXT NOT NULL,
        data JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS {table}_collection_idx ON {table} (collection);
"""

# Interpolated into SQL, so only plain identifiers are accepted
TABLE_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the documents table lives and how to pool connections to it."""
    host: str
    port: int = 5432
    database: str = "obstrack"
    username: str = ""
    password: str = ""
    table_name: str = "documents"
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    ssl_mode: str = "require"

    def __post_init__(self):
        if not TABLE_NAME_PATTERN.match(self.table_name):
            raise ValidationError(f"Invalid documents table name: {self.table_name!r}")
        if self.min_connections < 1 or self.max_connections < self.min_connections:
            raise ValidationError("Pool size must satisfy 1 <= min <= max")

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Create config from environment variables.

        Environment variables:
            DB_SECRET_ARN: Secrets Manager secret holding host and credentials
            DB_HOST: Database host
            DB_PORT: Database port (default 5432)
            DB_NAME: Database name (default obstrack)
            DB_USER: Database username
            DB_PASSWORD: Database password
            DB_TABLE: Documents table (default documents)
            DB_MIN_CONN: Minimum pool connections (default 2)
            DB_MAX_CONN: Maximum pool connections (default 10)
            DB_SSL_MODE: SSL mode (default require)
        """
        secret_arn = os.getenv("DB_SECRET_ARN")
        if secret_arn:
            return cls.from_secrets_manager(
                secret_arn, region=os.getenv("AWS_REGION", "us-east-1")
            )
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "obstrack"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            **_pool_settings(),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Load host and credentials from AWS Secrets Manager.

        Pool settings and the table name still come from the environment.

        Args:
            secret_arn: ARN of the secret containing credentials
            region: AWS region

        Raises:
            botocore.exceptions.ClientError: The secret could not be read
        """
        import boto3

        try:
            client = boto3.client("secretsmanager", region_name=region)
            response = client.get_secret_value(SecretId=secret_arn)
            secret = json.loads(response["SecretString"])
        except Exception as e:
            logger.error(
                "DB_SECRET_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise

        return cls(
            host=secret.get("host", os.getenv("DB_HOST", "localhost")),
            port=int(secret.get("port", os.getenv("DB_PORT", "5432"))),
            database=secret.get("dbname", os.getenv("DB_NAME", "obstrack")),
            username=secret.get("username", ""),
            password=secret.get("password", ""),
            **_pool_settings(),
        )


def _pool_settings() -> Dict[str, Any]:
    return {
        "table_name": os.getenv("DB_TABLE", "documents"),
        "min_connections": int(os.getenv("DB_MIN_CONN", "2")),
        "max_connections": int(os.getenv("DB_MAX_CONN", "10")),
        "ssl_mode": os.getenv("DB_SSL_MODE", "require"),
    }


class ConnectionManager:
    """psycopg2 pool bound to one documents table."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool = None
        self._initialized = False

    @property
    def table_name(self) -> str:
        return self.config.table_name

    def initialize(self, bootstrap_schema: bool = True) -> None:
        """Open the pool and, unless told otherwise, create the documents table.

        Call this during application startup.

        Raises:
            psycopg2.Error: The pool could not be opened or the DDL failed

        Logs:
            - DOCUMENT_DB_INITIALIZED: Pool open and schema in place
        """
        if self._initialized:
            return

        from psycopg2 import pool

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=self.config.min_connections,
                maxconn=self.config.max_connections,
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.username,
                password=self.config.password,
                connect_timeout=self.config.connect_timeout,
                sslmode=self.config.ssl_mode,
            )
        except Exception as e:
            logger.error("DOCUMENT_DB_POOL_FAILED", extra={"error": str(e)})
            raise

        self._initialized = True
        if bootstrap_schema:
            self.ensure_schema()

        logger.info(
            "DOCUMENT_DB_INITIALIZED",
            extra={
                "host": self.config.host,
                "database": self.config.database,
                "table_name": self.table_name,
            }
        )

    def ensure_schema(self) -> None:
        """Create the documents table and its collection index if missing."""
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL.format(table=self.table_name))
            conn.commit()

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection; rolled back if the block raises."""
        if not self._initialized:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def health_check(self) -> Dict[str, Any]:
        """Count stored documents to prove the pool and the table both work.

        Returns:
            {"healthy": bool, "status": ..., "documents": int} or an error entry
        """
        if not self._initialized:
            return {"status": "not_initialized", "healthy": False}

        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT count(*) FROM {self.table_name}")
                    (documents,) = cur.fetchone()
        except Exception as e:
            logger.error(
                "DOCUMENT_DB_HEALTH_CHECK_FAILED",
                extra={"error": str(e), "table_name": self.table_name}
            )
            return {"status": "error", "healthy": False, "error": str(e)}

        return {
            "status": "connected",
            "healthy": True,
            "table_name": self.table_name,
            "documents": documents,
        }

    def close(self) -> None:
        """Close all pooled connections. Call during shutdown."""
        if self._pool is not None:
            self._pool.closeall()
            logger.info("DOCUMENT_DB_CLOSED")

        self._pool = None
        self._initialized = False
