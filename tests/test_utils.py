"""
Tests for the Repl-Sentinel utility commands.
"""

import tempfile
from unittest.mock import Mock, patch

import pytest
import yaml

# Add parent directory to path
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).parent.parent))

from repl_sentinel_config import ServerConfig
from repl_sentinel_db import LIMIT, PRIMARY, TableMeta
from repl_sentinel_utils import ConfigValidator, TableDiscovery, main


def write_yaml(data):
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        yaml.dump(data, f)
        return f.name


def valid_config(**general):
    return {
        'general': general,
        'master': {'DSN': 'host=db-master&username=checker'},
        'slaves': [{'DSN': 'host=db-replica&username=checker'}],
    }


class TestConfigValidator:
    """Test configuration validation."""

    def test_valid_configuration(self):
        path = write_yaml(valid_config(databases=['shop']))

        is_valid, errors, warnings = ConfigValidator().validate_configuration(path)

        assert is_valid
        assert errors == []
        assert warnings == []

    def test_missing_slaves(self):
        path = write_yaml({'master': {'DSN': 'host=db-master'}})

        is_valid, errors, _ = ConfigValidator().validate_configuration(path)

        assert not is_valid
        assert 'slaves' in errors[0]

    def test_duplicate_server(self):
        data = valid_config()
        data['slaves'] = [{'DSN': 'host=db-master'}]
        path = write_yaml(data)

        is_valid, errors, _ = ConfigValidator().validate_configuration(path)

        assert not is_valid
        assert 'more than once' in errors[0]

    def test_warnings(self):
        data = valid_config(record_skip=10, email_report=['dba@example.com'], max_threads=8,
                            query_log='/tmp/queries.log')
        data['extra'] = {'foo': 'bar'}
        path = write_yaml(data)

        is_valid, _, warnings = ConfigValidator().validate_configuration(path)

        assert is_valid
        text = ' '.join(warnings)
        assert 'record_skip' in text
        assert 'email_from' in text
        assert 'max_threads' in text
        assert 'query_log' in text
        assert 'Unknown section ignored: extra' in text

    def test_validate_command_exit_code(self, capsys):
        path = write_yaml({'master': {'DSN': 'host=db-master'}})

        with pytest.raises(SystemExit) as exc:
            main(['validate', path])

        assert exc.value.code == 1
        assert 'Validation Errors' in capsys.readouterr().out


class TestTableDiscovery:
    """Test table discovery."""

    @patch('repl_sentinel_utils.DatabaseManager')
    def make_discovery(self, tables, mock_db):
        discovery = TableDiscovery(ServerConfig(host='db-master'), min_block_size=10, max_block_size=100)
        discovery.catalog = Mock()
        discovery.catalog.get_tables.return_value = tables
        return discovery

    def test_analyze_schema(self):
        discovery = self.make_discovery([
            TableMeta(schema='shop', name='orders', engine='InnoDB', row_count=500, columns=['id'], keys=['id']),
            TableMeta(schema='shop', name='log', engine='MyISAM', row_count=25, columns=['msg']),
        ])

        analysis = discovery.analyze_schema('shop')

        orders, log = analysis
        assert orders['strategy'] == PRIMARY
        assert orders['page_size'] == 50
        assert orders['chunks'] == 10
        assert orders['notes'] == []
        assert log['strategy'] == LIMIT
        assert log['chunks'] == 3
        assert 'no primary key' in log['notes']
        assert 'engine MyISAM' in log['notes']

    def test_generate_configuration(self):
        discovery = self.make_discovery([])
        analysis = [
            {'table': 'shop.orders', 'keys': ['id']},
            {'table': 'shop.log', 'keys': []},
        ]

        config = discovery.generate_configuration(['shop'], analysis)

        assert config['general']['databases'] == ['shop']
        assert config['general']['ignore_tables'] == ['shop.log']
        assert config['master']['DSN']['host'] == 'db-master'
        assert len(config['slaves']) == 1
