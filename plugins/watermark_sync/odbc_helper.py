"""
ODBC Source Connections

Opens pyodbc connections to the SQL Server source from an Airflow connection
ID, without requiring apache-airflow-providers-microsoft-mssql.
"""

from typing import Dict, Iterator
from airflow.hooks.base import BaseHook
import contextlib
import logging
import pyodbc

from watermark_sync import config
from watermark_sync.errors import TransferConnectionError

logger = logging.getLogger(__name__)

ODBC_DRIVER = '{ODBC Driver 18 for SQL Server}'


class OdbcConnectionHelper:
    """
    Builds ODBC connection strings from an Airflow connection and hands out
    scoped source connections.

    The engine holds one source connection per transfer run; ``connection()``
    guarantees it is closed on every exit path.
    """

    def __init__(self, odbc_conn_id: str):
        """
        Args:
            odbc_conn_id: Airflow connection ID for the source database
        """
        self.conn_id = odbc_conn_id
        self._conn_config = None

    def _get_connection_config(self) -> Dict[str, str]:
        """
        Get ODBC parameters from the Airflow connection (cached).

        Airflow stores the SQL Server database name in ``conn.schema``.
        """
        if self._conn_config is None:
            conn = BaseHook.get_connection(self.conn_id)

            port = conn.port or 1433
            server = f"{conn.host},{port}" if port != 1433 else conn.host

            self._conn_config = {
                'DRIVER': ODBC_DRIVER,
                'SERVER': server,
                'DATABASE': conn.schema,
                'TrustServerCertificate': 'yes',
            }

            if conn.login:
                self._conn_config['UID'] = conn.login
                self._conn_config['PWD'] = conn.password or ''
                self._conn_config['Trusted_Connection'] = 'no'
            else:
                # Windows Authentication (Kerberos)
                self._conn_config['Trusted_Connection'] = 'yes'

        return self._conn_config

    def _build_connection_string(self) -> str:
        config_values = self._get_connection_config()
        return ';'.join([f"{k}={v}" for k, v in config_values.items() if v])

    def get_conn(self) -> pyodbc.Connection:
        """
        Open a new pyodbc connection.

        Raises:
            TransferConnectionError: If the driver cannot connect
        """
        try:
            conn = pyodbc.connect(self._build_connection_string())
        except pyodbc.Error as e:
            logger.error(f"Could not connect to source '{self.conn_id}': {e}")
            raise TransferConnectionError(
                f"Cannot open source connection '{self.conn_id}': {e}"
            ) from e

        timeout = config.get_query_timeout_seconds()
        if timeout:
            conn.timeout = timeout
        return conn

    @contextlib.contextmanager
    def connection(self) -> Iterator[pyodbc.Connection]:
        """Context manager yielding a source connection that is always closed."""
        conn = self.get_conn()
        try:
            yield conn
        finally:
            try:
                conn.close()
            except pyodbc.Error as e:
                logger.warning(f"Error closing source connection '{self.conn_id}': {e}")
