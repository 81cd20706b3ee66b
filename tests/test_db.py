"""
Tests for the database layer: identifier quoting, DatabaseManager and
TableCatalog.
"""

import logging
from unittest.mock import MagicMock, Mock, patch

import pandas as pd
import pymysql
import pytest

# Add parent directory to path
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).parent.parent))

from repl_sentinel_config import ServerConfig
from repl_sentinel_db import (
    LIMIT, PRIMARY, DatabaseManager, SentinelError, TableCatalog, TableMeta,
    qualified_name, quote_identifier
)


@pytest.fixture
def server_config():
    return ServerConfig(host='db-master', port=3306, username='checker', password='secret', wait_timeout=20)


def mock_connection(rows=None, description=(('id',),), rowcount=1):
    cursor = MagicMock()
    cursor.fetchall.return_value = rows or []
    cursor.description = description
    cursor.rowcount = rowcount
    connection = MagicMock()
    connection.cursor.return_value.__enter__.return_value = cursor
    return connection, cursor


class TestIdentifiers:
    """Test the safe identifier path."""

    def test_quote_identifier(self):
        assert quote_identifier('orders') == '`orders`'

    def test_backticks_are_doubled(self):
        assert quote_identifier('we`ird') == '`we``ird`'

    def test_percent_is_escaped_for_the_driver(self):
        assert quote_identifier('pct%col') == '`pct%%col`'

    def test_qualified_name(self):
        assert qualified_name('shop', 'orders') == '`shop`.`orders`'


class TestDatabaseManager:
    """Test DatabaseManager with mocked connections."""

    @patch('repl_sentinel_db.pymysql.connect')
    def test_get_connection(self, mock_connect, server_config):
        """Connection is opened once with the session wait_timeout."""
        connection, _ = mock_connection()
        mock_connect.return_value = connection

        db = DatabaseManager(server_config)
        assert db.get_connection() is connection
        assert db.get_connection() is connection

        mock_connect.assert_called_once()
        kwargs = mock_connect.call_args.kwargs
        assert kwargs['host'] == 'db-master'
        assert kwargs['user'] == 'checker'
        assert kwargs['autocommit'] is True
        assert kwargs['init_command'] == 'SET SESSION wait_timeout=20'
        assert kwargs['cursorclass'] is pymysql.cursors.DictCursor

    @patch('repl_sentinel_db.pymysql.connect')
    def test_connection_failure(self, mock_connect, server_config):
        mock_connect.side_effect = pymysql.err.OperationalError(2003, "Can't connect")

        db = DatabaseManager(server_config)
        with pytest.raises(SentinelError, match="db-master:3306"):
            db.get_connection()

    @patch('repl_sentinel_db.pymysql.connect')
    def test_fetch_all_always_passes_params(self, mock_connect, server_config):
        """Statements always get a params dict so '%%' escapes behave the same."""
        connection, cursor = mock_connection(rows=[{'id': 1}, {'id': 2}])
        mock_connect.return_value = connection

        db = DatabaseManager(server_config)
        rows = db.fetch_all("SELECT id FROM t")

        assert rows == [{'id': 1}, {'id': 2}]
        cursor.execute.assert_called_once_with("SELECT id FROM t", {})

    @patch('repl_sentinel_db.pymysql.connect')
    def test_fetch_value(self, mock_connect, server_config):
        connection, _ = mock_connection(rows=[{'cnt': 7, 'other': 1}])
        mock_connect.return_value = connection

        db = DatabaseManager(server_config)
        assert db.fetch_value("SELECT ...") == 7
        assert db.fetch_value("SELECT ...", column='other') == 1

    @patch('repl_sentinel_db.pymysql.connect')
    def test_fetch_value_empty(self, mock_connect, server_config):
        connection, _ = mock_connection(rows=[])
        mock_connect.return_value = connection

        assert DatabaseManager(server_config).fetch_value("SELECT ...") is None

    @patch('repl_sentinel_db.pymysql.connect')
    def test_execute_query_returns_dataframe(self, mock_connect, server_config):
        connection, _ = mock_connection(
            rows=[{'id': 1, 'name': 'a'}, {'id': 2, 'name': 'b'}],
            description=(('id',), ('name',))
        )
        mock_connect.return_value = connection

        df = DatabaseManager(server_config).execute_query("SELECT id, name FROM t")

        expected = pd.DataFrame({'id': [1, 2], 'name': ['a', 'b']})
        pd.testing.assert_frame_equal(df, expected)

    @patch('repl_sentinel_db.pymysql.connect')
    def test_execute_query_empty_keeps_columns(self, mock_connect, server_config):
        connection, _ = mock_connection(rows=[], description=(('id',), ('name',)))
        mock_connect.return_value = connection

        df = DatabaseManager(server_config).execute_query("SELECT id, name FROM t")

        assert df.empty
        assert list(df.columns) == ['id', 'name']

    @patch('repl_sentinel_db.pymysql.connect')
    def test_execute_non_query_returns_rowcount(self, mock_connect, server_config):
        connection, cursor = mock_connection(rowcount=3)
        mock_connect.return_value = connection

        assert DatabaseManager(server_config).execute_non_query("DELETE FROM t WHERE id = %(id)s", {'id': 1}) == 3
        cursor.execute.assert_called_once_with("DELETE FROM t WHERE id = %(id)s", {'id': 1})

    @patch('repl_sentinel_db.pymysql.connect')
    def test_driver_errors_propagate(self, mock_connect, server_config):
        connection, cursor = mock_connection()
        cursor.execute.side_effect = pymysql.err.ProgrammingError(1064, 'syntax error')
        mock_connect.return_value = connection

        with pytest.raises(pymysql.MySQLError):
            DatabaseManager(server_config).fetch_all("SELEC 1")

    @patch('repl_sentinel_db.pymysql.connect')
    def test_query_log(self, mock_connect, server_config):
        """Statements are written to the query logger when one is given."""
        connection, _ = mock_connection()
        mock_connect.return_value = connection
        query_logger = Mock(spec=logging.Logger)

        DatabaseManager(server_config, query_logger=query_logger).fetch_all("SELECT 1")

        query_logger.info.assert_called_once()
        assert 'SELECT 1' in query_logger.info.call_args[0][0]
        assert 'db-master:3306' in query_logger.info.call_args[0][0]

    @patch('repl_sentinel_db.pymysql.connect')
    def test_render_uses_mogrify(self, mock_connect, server_config):
        connection, cursor = mock_connection()
        cursor.mogrify.return_value = "DELETE FROM t WHERE id = 5"
        mock_connect.return_value = connection

        rendered = DatabaseManager(server_config).render("DELETE FROM t WHERE id = %(key)s", {'key': 5})

        assert rendered == "DELETE FROM t WHERE id = 5"
        cursor.mogrify.assert_called_once_with("DELETE FROM t WHERE id = %(key)s", {'key': 5})

    @patch('repl_sentinel_db.pymysql.connect')
    def test_close_all_connections(self, mock_connect, server_config):
        connection, _ = mock_connection()
        mock_connect.return_value = connection

        db = DatabaseManager(server_config)
        db.get_connection()
        db.close_all_connections()

        connection.close.assert_called_once()
        db.get_connection()
        assert mock_connect.call_count == 2


class TestTableMeta:
    """Test TableMeta strategy selection."""

    def test_single_key_is_keyed(self):
        meta = TableMeta(schema='shop', name='orders', columns=['id', 'total'], keys=['id'])

        assert meta.strategy == PRIMARY
        assert meta.full_name == 'shop.orders'
        assert meta.quoted_name == '`shop`.`orders`'

    def test_composite_key_uses_offsets(self):
        meta = TableMeta(schema='shop', name='order_items', keys=['order_id', 'line'])
        assert meta.strategy == LIMIT

    def test_no_key_uses_offsets(self):
        assert TableMeta(schema='shop', name='log').strategy == LIMIT


class TestTableCatalog:
    """Test TableCatalog metadata assembly."""

    def test_auto_increment_wins(self):
        """A single auto_increment column is preferred over the PRI set."""
        columns = [
            {'COLUMN_NAME': 'tenant', 'COLUMN_KEY': 'PRI', 'EXTRA': ''},
            {'COLUMN_NAME': 'id', 'COLUMN_KEY': 'PRI', 'EXTRA': 'auto_increment'},
            {'COLUMN_NAME': 'name', 'COLUMN_KEY': '', 'EXTRA': ''},
        ]
        assert TableCatalog.chunking_keys(columns) == ['id']

    def test_primary_key_columns(self):
        columns = [
            {'COLUMN_NAME': 'order_id', 'COLUMN_KEY': 'PRI', 'EXTRA': ''},
            {'COLUMN_NAME': 'line', 'COLUMN_KEY': 'PRI', 'EXTRA': ''},
            {'COLUMN_NAME': 'qty', 'COLUMN_KEY': '', 'EXTRA': ''},
        ]
        assert TableCatalog.chunking_keys(columns) == ['order_id', 'line']

    def test_no_keys(self):
        columns = [{'COLUMN_NAME': 'msg', 'COLUMN_KEY': '', 'EXTRA': None}]
        assert TableCatalog.chunking_keys(columns) == []

    def test_get_tables(self):
        db = Mock()
        db.fetch_all.side_effect = [
            [{'TABLE_SCHEMA': 'shop', 'TABLE_NAME': 'orders', 'ENGINE': 'InnoDB', 'TABLE_ROWS': 25}],
            [
                {'COLUMN_NAME': 'id', 'COLUMN_KEY': 'PRI', 'EXTRA': 'auto_increment', 'DATA_TYPE': 'BIGINT'},
                {'COLUMN_NAME': 'total', 'COLUMN_KEY': '', 'EXTRA': '', 'DATA_TYPE': 'decimal'},
            ],
        ]

        tables = TableCatalog(db).get_tables('shop')

        assert len(tables) == 1
        meta = tables[0]
        assert meta.full_name == 'shop.orders'
        assert meta.row_count == 25
        assert meta.columns == ['id', 'total']
        assert meta.keys == ['id']
        assert meta.key_type == 'bigint'
        assert 'ORDER BY ORDINAL_POSITION' in db.fetch_all.call_args_list[1][0][0]

    def test_get_table_missing(self):
        db = Mock()
        db.fetch_one.return_value = None

        assert TableCatalog(db).get_table('shop', 'nope') is None

    def test_guess_replicated_dbs_from_binlog_do_db(self):
        db = Mock()
        db.fetch_one.return_value = {'File': 'bin.000001', 'Binlog_Do_DB': 'shop,crm,percona'}

        assert TableCatalog(db).guess_replicated_dbs(exclude=['percona']) == ['shop', 'crm']
        db.fetch_all.assert_not_called()

    def test_guess_replicated_dbs_all_user_schemas(self):
        db = Mock()
        db.fetch_one.return_value = None
        db.fetch_all.return_value = [
            {'SCHEMA_NAME': 'crm'}, {'SCHEMA_NAME': 'information_schema'},
            {'SCHEMA_NAME': 'mysql'}, {'SCHEMA_NAME': 'percona'}, {'SCHEMA_NAME': 'shop'},
            {'SCHEMA_NAME': 'sys'},
        ]

        assert TableCatalog(db).guess_replicated_dbs(exclude=['percona']) == ['crm', 'shop']

    def test_key_type_only_for_single_key(self):
        columns = [
            {'COLUMN_NAME': 'order_id', 'COLUMN_KEY': 'PRI', 'EXTRA': '', 'DATA_TYPE': 'int'},
            {'COLUMN_NAME': 'line', 'COLUMN_KEY': 'PRI', 'EXTRA': '', 'DATA_TYPE': 'int'},
        ]

        assert TableCatalog.key_type(columns, ['order_id', 'line']) is None
        assert TableCatalog.key_type(columns, ['line']) == 'int'
