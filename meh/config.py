"""
Configuration — Centralized settings management

Config hierarchy (highest to lowest priority):
  1. Environment variables (MEH_*)
  2. Project config (<data dir>/config.yaml, data dir defaults to .meh/)
  3. User config (~/.meh/config.yaml)
  4. Defaults

API keys are NEVER stored in config files.
Servers name the environment variable that holds their key.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .core.sqlite import RetryPolicy
from .core.trust import TrustConfig


logger = logging.getLogger(__name__)


KB_KINDS = ("sqlite", "remote")
WRITE_MODES = ("allow", "deny", "ask")
DEFAULT_KB = "local"


@dataclass
class ServerConfig:
    """A remote meh server."""
    name: str
    url: str
    api_key_env: str = "MEH_API_KEY"
    timeout_secs: float = 5.0

    @property
    def api_key(self) -> Optional[str]:
        """Get API key from environment. Never stored."""
        return os.environ.get(self.api_key_env) if self.api_key_env else None

    def validate(self) -> Optional[str]:
        """Validate config. Returns error message or None if valid."""
        if not self.name:
            return "Server entries need a name"
        if not self.url.startswith(("http://", "https://")):
            return f"Server '{self.name}' url must start with http:// or https://, got '{self.url}'"
        if self.timeout_secs <= 0:
            return f"Server '{self.name}' timeout_secs must be > 0"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "api_key_env": self.api_key_env,
            "timeout_secs": self.timeout_secs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServerConfig':
        return cls(
            name=str(data.get("name", "")),
            url=str(data.get("url", "")).rstrip("/"),
            api_key_env=data.get("api_key_env", "MEH_API_KEY"),
            timeout_secs=float(data.get("timeout_secs", 5.0)),
        )


@dataclass
class KbConfig:
    """
    One knowledge base.

    sqlite KBs live in a data directory (`path`, relative to the project;
    the primary KB defaults to the main data dir). remote KBs are addressed
    by server name and slug.
    """
    name: str
    kind: str = "sqlite"
    write: str = "allow"
    path: Optional[str] = None
    server: Optional[str] = None
    slug: Optional[str] = None
    origin: Optional[str] = None  # trust origin label

    @property
    def is_remote(self) -> bool:
        return self.kind == "remote"

    @property
    def effective_origin(self) -> str:
        if self.origin:
            return self.origin
        return "remote" if self.is_remote else "local"

    def validate(self) -> Optional[str]:
        """Validate config. Returns error message or None if valid."""
        if not self.name:
            return "Knowledge base entries need a name"
        if self.kind not in KB_KINDS:
            return f"Unknown kind '{self.kind}' for kb '{self.name}'. Valid: {', '.join(KB_KINDS)}"
        if self.write not in WRITE_MODES:
            return f"Unknown write mode '{self.write}' for kb '{self.name}'. Valid: {', '.join(WRITE_MODES)}"
        if self.is_remote and not (self.server and self.slug):
            return f"Remote kb '{self.name}' needs both 'server' and 'slug'"
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "kind": self.kind, "write": self.write}
        for key in ("path", "server", "slug", "origin"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KbConfig':
        return cls(
            name=str(data.get("name", "")),
            kind=data.get("kind", "sqlite"),
            write=data.get("write", "allow"),
            path=data.get("path"),
            server=data.get("server"),
            slug=data.get("slug"),
            origin=data.get("origin"),
        )


@dataclass
class KbsConfig:
    primary: str = DEFAULT_KB
    search_order: List[str] = field(default_factory=list)
    entries: List[KbConfig] = field(default_factory=lambda: [KbConfig(name=DEFAULT_KB)])

    def get(self, name: str) -> Optional[KbConfig]:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    @property
    def effective_search_order(self) -> List[str]:
        """search_order if set, otherwise primary first then declaration order."""
        if self.search_order:
            return list(self.search_order)
        names = [e.name for e in self.entries]
        if self.primary in names:
            names.remove(self.primary)
            names.insert(0, self.primary)
        return names

    def validate(self) -> Optional[str]:
        """Validate config. Returns error message or None if valid."""
        seen = set()
        for entry in self.entries:
            error = entry.validate()
            if error:
                return error
            if entry.name in seen:
                return f"Duplicate kb name '{entry.name}'"
            seen.add(entry.name)
        if self.primary not in seen:
            return f"Primary kb '{self.primary}' is not declared in kbs.entries"
        for name in self.search_order:
            if name not in seen:
                return f"kbs.search_order names unknown kb '{name}'"
        return None


@dataclass
class SearchConfig:
    default_limit: int = 20
    token_budget: int = 3000
    federated_timeout_secs: float = 5.0
    federated_deadline_secs: float = 10.0
    max_workers: int = 4

    def validate(self) -> Optional[str]:
        """Validate config. Returns error message or None if valid."""
        if self.default_limit < 1:
            return "search.default_limit must be >= 1"
        if self.token_budget < 0:
            return "search.token_budget must be >= 0 (0 disables the budget)"
        if self.federated_timeout_secs <= 0 or self.federated_deadline_secs <= 0:
            return "search.federated_timeout_secs and search.federated_deadline_secs must be > 0"
        if self.max_workers < 1:
            return "search.max_workers must be >= 1"
        return None


@dataclass
class CoreConfig:
    gc_retention_days: int = 30
    busy_timeout_ms: int = 2000
    busy_retries: int = 5
    busy_backoff_ms: int = 50
    onboarding_path: str = "@readme"
    summary_max_chars: int = 150
    session: Optional[str] = None

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            busy_timeout_ms=self.busy_timeout_ms,
            retries=self.busy_retries,
            backoff_ms=self.busy_backoff_ms,
        )

    def validate(self) -> Optional[str]:
        """Validate config. Returns error message or None if valid."""
        if self.gc_retention_days < 0:
            return "core.gc_retention_days must be >= 0"
        if self.busy_timeout_ms < 0 or self.busy_retries < 0 or self.busy_backoff_ms < 0:
            return "core.busy_* settings must be >= 0"
        if not self.onboarding_path.startswith("@"):
            return f"core.onboarding_path must start with '@', got '{self.onboarding_path}'"
        if self.summary_max_chars < 20:
            return "core.summary_max_chars must be >= 20"
        return None


@dataclass
class Config:
    """Application configuration."""
    kbs: KbsConfig = field(default_factory=KbsConfig)
    servers: List[ServerConfig] = field(default_factory=list)
    search: SearchConfig = field(default_factory=SearchConfig)
    trust: TrustConfig = field(default_factory=TrustConfig)
    core: CoreConfig = field(default_factory=CoreConfig)

    def server(self, name: str) -> Optional[ServerConfig]:
        for server in self.servers:
            if server.name == name:
                return server
        return None

    def validate(self) -> Optional[str]:
        """First configuration error, or None."""
        for section in (self.kbs, self.search, self.trust, self.core):
            error = section.validate()
            if error:
                return error
        for server in self.servers:
            error = server.validate()
            if error:
                return error
        for entry in self.kbs.entries:
            if entry.is_remote and self.server(entry.server) is None:
                return f"Remote kb '{entry.name}' names unknown server '{entry.server}'"
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kbs": {
                "primary": self.kbs.primary,
                "search_order": list(self.kbs.search_order),
                "entries": [e.to_dict() for e in self.kbs.entries],
            },
            "servers": [s.to_dict() for s in self.servers],
            "search": _section_dict(self.search),
            "trust": self.trust.to_dict(),
            "core": {k: v for k, v in _section_dict(self.core).items() if k != "session"},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """Create from dictionary."""
        kbs_data = data.get("kbs") or {}
        entries = [KbConfig.from_dict(e) for e in kbs_data.get("entries") or []]
        kbs = KbsConfig(
            primary=kbs_data.get("primary", DEFAULT_KB),
            search_order=list(kbs_data.get("search_order") or []),
            entries=entries or [KbConfig(name=kbs_data.get("primary", DEFAULT_KB))],
        )
        return cls(
            kbs=kbs,
            servers=[ServerConfig.from_dict(s) for s in data.get("servers") or []],
            search=_section_from_dict(SearchConfig, data.get("search") or {}),
            trust=TrustConfig.from_dict(data.get("trust") or {}),
            core=_section_from_dict(CoreConfig, data.get("core") or {}),
        )


def _section_dict(section) -> Dict[str, Any]:
    return {f.name: getattr(section, f.name) for f in fields(section)}


def _section_from_dict(cls, data: Dict[str, Any]):
    defaults = cls()
    kwargs = {}
    for f in fields(cls):
        if f.name in data and data[f.name] is not None:
            kwargs[f.name] = _coerce(getattr(defaults, f.name), data[f.name])
    return cls(**kwargs)


def _coerce(current: Any, value: Any) -> Any:
    """Coerce a raw (often string) value to the type of the current setting."""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "on")
        return bool(value)
    if isinstance(current, int) and not isinstance(value, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


class ConfigManager:
    """
    Manages configuration loading and persistence.

    Hierarchy:
      1. Environment variables
      2. Project config (<data dir>/config.yaml)
      3. User config (~/.meh/config.yaml)
      4. Defaults
    """

    USER_CONFIG_DIR = Path.home() / ".meh"
    USER_CONFIG_FILE = USER_CONFIG_DIR / "config.yaml"
    DATA_DIR_NAME = ".meh"
    PROJECT_CONFIG_FILE = "config.yaml"

    SECTIONS = ("kbs", "search", "trust", "core")

    def __init__(self, project_dir: Optional[Path] = None, data_dir: Optional[Path] = None):
        self.project_dir = Path(project_dir) if project_dir else Path.cwd()
        if data_dir is None and os.environ.get("MEH_DATA_DIR"):
            data_dir = Path(os.environ["MEH_DATA_DIR"])
        self.data_dir = Path(data_dir) if data_dir else self.project_dir / self.DATA_DIR_NAME
        self._config: Optional[Config] = None

    @property
    def project_config_path(self) -> Path:
        return self.data_dir / self.PROJECT_CONFIG_FILE

    @property
    def user_config_path(self) -> Path:
        return self.USER_CONFIG_FILE

    def load(self) -> Config:
        """Load configuration from all sources."""
        if self._config is not None:
            return self._config

        config_data = self._file_data()

        # Environment overrides
        if os.environ.get("MEH_PRIMARY_KB"):
            config_data.setdefault("kbs", {})["primary"] = os.environ["MEH_PRIMARY_KB"]
        if os.environ.get("MEH_SESSION"):
            config_data.setdefault("core", {})["session"] = os.environ["MEH_SESSION"]
        if os.environ.get("MEH_SEARCH_LIMIT"):
            config_data.setdefault("search", {})["default_limit"] = os.environ["MEH_SEARCH_LIMIT"]
        if os.environ.get("MEH_TOKEN_BUDGET"):
            config_data.setdefault("search", {})["token_budget"] = os.environ["MEH_TOKEN_BUDGET"]

        self._config = Config.from_dict(config_data)
        return self._config

    def _file_data(self) -> Dict[str, Any]:
        config_data: Dict[str, Any] = {}
        for path in (self.user_config_path, self.project_config_path):
            if not path.exists():
                continue
            try:
                with open(path) as f:
                    layer = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Ignoring unreadable config %s: %s", path, e)
                continue
            if not isinstance(layer, dict):
                logger.warning("Ignoring config %s: top level must be a mapping", path)
                continue
            config_data = self._merge(config_data, layer)
        return config_data

    def save_project(self, config: Config):
        """Save configuration to project config file."""
        self._save(self.project_config_path, config)

    def save_user(self, config: Config):
        """Save configuration to user config file."""
        self._save(self.user_config_path, config)

    def _save(self, path: Path, config: Config):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
        self._config = config

    def set(self, key: str, value: str, scope: str = "project") -> Optional[str]:
        """
        Set a configuration value.

        Args:
            key: Dot-separated key (e.g., "search.default_limit")
            value: Value to set
            scope: "project" or "user"

        Returns:
            Error message or None if successful
        """
        config = self.load()

        parts = key.split(".")
        if len(parts) != 2:
            return f"Invalid key format: {key}. Use 'section.setting' (e.g., 'search.default_limit')"

        section_name, setting = parts
        if section_name not in self.SECTIONS:
            return f"Unknown section: {section_name}. Valid: {', '.join(self.SECTIONS)}"

        if section_name == "kbs":
            if setting == "primary":
                config.kbs.primary = value
            elif setting == "search_order":
                config.kbs.search_order = [v.strip() for v in value.split(",") if v.strip()]
            else:
                return f"Unknown kbs setting: {setting}. Valid: primary, search_order"
        else:
            section = getattr(config, section_name)
            names = [f.name for f in fields(section) if f.name != "session"]
            if setting not in names:
                return f"Unknown {section_name} setting: {setting}. Valid: {', '.join(names)}"
            current = getattr(section, setting)
            if isinstance(current, dict):
                return f"{section_name}.{setting} is a mapping; edit {self.project_config_path} directly"
            try:
                setattr(section, setting, _coerce(current, value))
            except ValueError:
                return f"Invalid value for {key}: {value!r}"

        error = config.validate()
        if error:
            self._config = None
            return error

        self._save_scope(config, scope)
        return None

    def add_kb(self, entry: KbConfig, scope: str = "project") -> Optional[str]:
        """
        Declare a knowledge base, replacing any entry with the same name.

        Returns:
            Error message or None if successful
        """
        config = self.load()
        if entry.name == config.kbs.primary:
            return f"'{entry.name}' is the primary knowledge base; choose another name"

        config.kbs.entries = [e for e in config.kbs.entries if e.name != entry.name] + [entry]
        if config.kbs.search_order and entry.name not in config.kbs.search_order:
            config.kbs.search_order.append(entry.name)

        error = config.validate()
        if error:
            self._config = None
            return error
        self._save_scope(config, scope)
        return None

    def remove_kb(self, name: str, scope: str = "project") -> Optional[str]:
        """Drop a declared knowledge base. Returns error message or None."""
        config = self.load()
        if name == config.kbs.primary:
            return f"'{name}' is the primary knowledge base and cannot be removed"
        if config.kbs.get(name) is None:
            return f"Unknown knowledge base '{name}'"
        config.kbs.entries = [e for e in config.kbs.entries if e.name != name]
        config.kbs.search_order = [n for n in config.kbs.search_order if n != name]
        self._save_scope(config, scope)
        return None

    def _save_scope(self, config: Config, scope: str):
        if scope == "project":
            self.save_project(config)
        else:
            self.save_user(config)

    def get(self, key: str) -> Optional[str]:
        """Get a configuration value."""
        config = self.load()

        parts = key.split(".")
        if len(parts) != 2:
            return None

        section_name, setting = parts
        if section_name == "kbs":
            if setting == "primary":
                return config.kbs.primary
            if setting == "search_order":
                return ",".join(config.kbs.effective_search_order)
            return None
        if section_name not in self.SECTIONS:
            return None
        value = getattr(getattr(config, section_name), setting, None)
        return None if value is None else str(value)

    def _merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dicts, override wins."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge(result[key], value)
            else:
                result[key] = value
        return result

    def display(self) -> str:
        """Format config for display."""
        config = self.load()
        lines = [
            "Configuration:",
            "",
            "Knowledge bases:",
            f"  Primary: {config.kbs.primary}",
            f"  Search order: {', '.join(config.kbs.effective_search_order)}",
        ]
        for entry in config.kbs.entries:
            where = f"{entry.server}/{entry.slug}" if entry.is_remote else (entry.path or str(self.data_dir))
            lines.append(f"  - {entry.name} [{entry.kind}, write={entry.write}] {where}")

        if config.servers:
            lines.extend(["", "Servers:"])
            for server in config.servers:
                key_status = "set" if server.api_key else f"missing (set {server.api_key_env})"
                lines.append(f"  - {server.name}: {server.url} (timeout {server.timeout_secs}s, key {key_status})")

        lines.extend(["", "Search:"])
        lines.extend(f"  {k}: {v}" for k, v in _section_dict(config.search).items())
        lines.extend(["", "Core:"])
        lines.extend(f"  {k}: {v}" for k, v in _section_dict(config.core).items() if k != "session")
        lines.extend([
            "",
            "Config files:",
            f"  User: {self.user_config_path}",
            f"  Project: {self.project_config_path}",
        ])
        return "\n".join(lines)


# Convenience function
def get_config(project_dir: Optional[Path] = None) -> Config:
    """Load configuration for a project."""
    return ConfigManager(project_dir).load()
