"""
Configuration loading.
Reads a YAML file, merges it over built-in defaults, then applies environment overrides.
Credentials only ever come from the environment.
"""
import copy
import os
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from storage.scope import DEFAULT_EXCLUDED_REPOS, RepoScope

CONFIG_FILENAME = 'shipsignal.yaml'

DEFAULTS: Dict[str, Any] = {
    'general': {
        'database': 'data/shipsignal.db',
        'log_level': 'INFO',
    },
    'repos': [],
    'jira': {
        'base_url': None,
        'project_keys': [],
        'recent_sprints': 10,
    },
    'bitbucket': {
        'base_url': 'https://bitbucket.org',
        'workspace': None,
        'page_delay_seconds': 0.2,
    },
    'summaries': {
        'command': ['claude', '-p', '--output-format', 'text'],
        'timeout_seconds': 120,
        'max_diff_lines': 200,
        'window_days': 7,
    },
    'staleness': {
        'ticket_minutes': 60,
        'pr_activity_minutes': 30,
    },
    'http': {
        'retry_delay_seconds': 5.0,
    },
    'scope': {
        'excluded_repos': list(DEFAULT_EXCLUDED_REPOS),
    },
}


class ConfigError(ValueError):
    """Configuration or credentials are missing or invalid; raised before any storage is touched."""


class RepoConfig:
    def __init__(self, name: str, path: Optional[str] = None):
        self.name = name
        self.path = path


class Settings:
    def __init__(self, data: Dict[str, Any], source: Optional[str] = None):
        self.data = data
        self.source = source
        general = data['general']
        self.database: str = general['database']
        self.log_level: str = str(general['log_level']).upper()
        self.repos: List[RepoConfig] = [
            RepoConfig(r['name'], r.get('path')) for r in data['repos']
        ]
        self.jira: Dict[str, Any] = data['jira']
        self.bitbucket: Dict[str, Any] = data['bitbucket']
        self.summaries: Dict[str, Any] = data['summaries']
        self.ticket_max_age_minutes = int(data['staleness']['ticket_minutes'])
        self.pr_activity_max_age_minutes = int(data['staleness']['pr_activity_minutes'])
        self.summary_window = timedelta(days=float(data['summaries']['window_days']))
        self.retry_delay = float(data['http']['retry_delay_seconds'])
        self.scope = RepoScope(data['scope'].get('excluded_repos') or ())

    @property
    def repo_paths(self) -> Dict[str, Optional[str]]:
        return {r.name: r.path for r in self.repos}


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validate(data: Dict[str, Any], source: str) -> None:
    repos = data.get('repos')
    if not isinstance(repos, list) or not repos:
        raise ConfigError(f"{source}: at least one entry under 'repos' is required")
    for i, r in enumerate(repos):
        if not isinstance(r, Mapping) or not r.get('name'):
            raise ConfigError(f"{source}: repos[{i}] needs a 'name'")
    command = data['summaries'].get('command')
    if isinstance(command, str):
        data['summaries']['command'] = command.split()
    elif not isinstance(command, list) or not command:
        raise ConfigError(f"{source}: summaries.command must be a non-empty list or string")
    try:
        float(data['summaries']['window_days'])
        int(data['staleness']['ticket_minutes'])
        int(data['staleness']['pr_activity_minutes'])
    except (TypeError, ValueError) as ex:
        raise ConfigError(f"{source}: staleness values must be numbers ({ex})") from ex


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load settings from ``path`` (default: config/shipsignal.yaml next to the project root).
    SHIPSIGNAL_DB and SHIPSIGNAL_LOG_LEVEL override the file.
    """
    env = os.environ if env is None else env
    if not path:
        path = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'config', CONFIG_FILENAME)
    if not os.path.exists(path):
        raise ConfigError(f"config file not found: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as ex:
        raise ConfigError(f"{path}: invalid YAML: {ex}") from ex
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{path}: top level must be a mapping")

    data = _deep_merge(DEFAULTS, raw)
    if env.get('SHIPSIGNAL_DB'):
        data['general']['database'] = env['SHIPSIGNAL_DB']
    if env.get('SHIPSIGNAL_LOG_LEVEL'):
        data['general']['log_level'] = env['SHIPSIGNAL_LOG_LEVEL']
    _validate(data, path)
    return Settings(data, source=path)


def jira_credentials(env: Optional[Mapping[str, str]] = None) -> Optional[Tuple[str, str]]:
    env = os.environ if env is None else env
    email, token = env.get('JIRA_EMAIL'), env.get('JIRA_API_TOKEN')
    return (email, token) if email and token else None


def bitbucket_credentials(env: Optional[Mapping[str, str]] = None) -> Optional[Tuple[str, str]]:
    """BITBUCKET_EMAIL / BITBUCKET_API_TOKEN, each falling back to its JIRA_* counterpart."""
    env = os.environ if env is None else env
    email = env.get('BITBUCKET_EMAIL') or env.get('JIRA_EMAIL')
    token = env.get('BITBUCKET_API_TOKEN') or env.get('JIRA_API_TOKEN')
    return (email, token) if email and token else None


def require_integrations(settings: Settings, use_jira: bool, use_bitbucket: bool, env: Optional[Mapping[str, str]] = None) -> Dict[str, Optional[Tuple[str, str]]]:
    """Check that every enabled integration is configured and has credentials."""
    creds: Dict[str, Optional[Tuple[str, str]]] = {'jira': None, 'bitbucket': None}
    missing: List[str] = []
    if use_jira:
        if not settings.jira.get('base_url'):
            missing.append("jira.base_url")
        creds['jira'] = jira_credentials(env)
        if creds['jira'] is None:
            missing.append("JIRA_EMAIL and JIRA_API_TOKEN")
    if use_bitbucket:
        if not settings.bitbucket.get('workspace'):
            missing.append("bitbucket.workspace")
        creds['bitbucket'] = bitbucket_credentials(env)
        if creds['bitbucket'] is None:
            missing.append("BITBUCKET_API_TOKEN (or JIRA_EMAIL and JIRA_API_TOKEN)")
    if missing:
        raise ConfigError("missing configuration: " + ", ".join(missing))
    return creds
