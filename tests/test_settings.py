import logging
import os
from datetime import timedelta

import pytest
import yaml

from settings.loader import DEFAULTS, ConfigError, load_settings, require_integrations
from settings.log import setup_logging

MINIMAL = """
repos:
  - name: api
    path: /src/api
  - name: test-repo
jira:
  base_url: https://example.atlassian.net
  project_keys: [PROJ]
bitbucket:
  workspace: ws
"""


def _config(tmp_path, text=MINIMAL):
    p = tmp_path / 'shipsignal.yaml'
    p.write_text(text, encoding='utf-8')
    return str(p)


def test_defaults_merged_under_file(tmp_path):
    s = load_settings(_config(tmp_path), env={})
    assert [r.name for r in s.repos] == ['api', 'test-repo']
    assert s.repo_paths == {'api': '/src/api', 'test-repo': None}
    assert s.ticket_max_age_minutes == 60
    assert s.pr_activity_max_age_minutes == 30
    assert s.summary_window == timedelta(days=7)
    assert s.bitbucket['base_url'] == 'https://bitbucket.org'
    assert s.jira['recent_sprints'] == 10
    assert not s.scope.includes('test-repo')


def test_file_and_env_overrides(tmp_path):
    text = MINIMAL + """
summaries:
  command: "my-llm --print"
  window_days: 3
staleness:
  ticket_minutes: 15
scope:
  excluded_repos: []
"""
    s = load_settings(_config(tmp_path, text), env={'SHIPSIGNAL_DB': '/tmp/x.db', 'SHIPSIGNAL_LOG_LEVEL': 'debug'})
    assert s.database == '/tmp/x.db'
    assert s.log_level == 'DEBUG'
    assert s.summaries['command'] == ['my-llm', '--print']
    assert s.summaries['timeout_seconds'] == 120
    assert s.summary_window == timedelta(days=3)
    assert s.ticket_max_age_minutes == 15
    assert s.scope.includes('test-repo')


@pytest.mark.parametrize('text', [
    'repos: []\n',
    'repos:\n  - path: /x\n',
    '- just\n- a list\n',
    'repos: [\n',
    MINIMAL + 'staleness:\n  ticket_minutes: soon\n',
])
def test_invalid_config_rejected(tmp_path, text):
    with pytest.raises(ConfigError):
        load_settings(_config(tmp_path, text), env={})


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path / 'nope.yaml'), env={})


def test_credentials_required_only_for_enabled_integrations(tmp_path):
    s = load_settings(_config(tmp_path), env={})
    assert require_integrations(s, use_jira=False, use_bitbucket=False, env={}) == {'jira': None, 'bitbucket': None}

    with pytest.raises(ConfigError) as ex:
        require_integrations(s, use_jira=True, use_bitbucket=True, env={})
    assert 'JIRA_EMAIL' in str(ex.value)

    env = {'JIRA_EMAIL': 'me@example.com', 'JIRA_API_TOKEN': 'jt'}
    creds = require_integrations(s, use_jira=True, use_bitbucket=True, env=env)
    assert creds['jira'] == ('me@example.com', 'jt')
    # Bitbucket falls back to the Jira pair
    assert creds['bitbucket'] == ('me@example.com', 'jt')

    env['BITBUCKET_API_TOKEN'] = 'bt'
    assert require_integrations(s, use_jira=False, use_bitbucket=True, env=env)['bitbucket'] == ('me@example.com', 'bt')


def test_example_config_only_uses_known_keys():
    example = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'config', 'shipsignal.example.yaml')
    s = load_settings(example, env={})
    assert [r.name for r in s.repos] == ['payments-api', 'web-client']
    with open(example, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f)
    for section, values in raw.items():
        assert section in DEFAULTS
        if isinstance(values, dict):
            assert set(values) <= set(DEFAULTS[section]), section
    for repo in raw['repos']:
        assert set(repo) <= {'name', 'path'}


def test_setup_logging_sets_level():
    setup_logging('warning')
    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger('urllib3').level == logging.WARNING
    setup_logging('INFO')
