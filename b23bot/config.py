"""
Configuration for b23bot.

Two layers:
- BotSettings: process settings from the environment (paths, timings)
- ConfigStore: the persisted YAML document (gateway address, root/admin
  ids, enabled plugins) that survives restarts
"""

import asyncio
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, FrozenSet, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class BotSettings:
    """Process-level settings"""
    config_path: str = "config.yaml"
    plugins_dir: str = "./plugins"
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 5.0  # seconds, multiplied by the attempt number
    settle_delay: float = 1.0  # wait for the login info response
    call_timeout: float = 30.0
    http_timeout: float = 10.0
    log_level: str = "INFO"
    online_message: str = "b23bot is online"

    @classmethod
    def from_env(cls) -> "BotSettings":
        return cls(
            config_path=os.getenv("B23BOT_CONFIG", "config.yaml"),
            plugins_dir=os.getenv("B23BOT_PLUGINS_DIR", "./plugins"),
            max_reconnect_attempts=int(os.getenv("B23BOT_MAX_RECONNECT_ATTEMPTS", "5")),
            reconnect_delay=float(os.getenv("B23BOT_RECONNECT_DELAY", "5.0")),
            settle_delay=float(os.getenv("B23BOT_SETTLE_DELAY", "1.0")),
            call_timeout=float(os.getenv("B23BOT_CALL_TIMEOUT", "30.0")),
            http_timeout=float(os.getenv("B23BOT_HTTP_TIMEOUT", "10.0")),
            log_level=os.getenv("B23BOT_LOG_LEVEL", "INFO"),
            online_message=os.getenv("B23BOT_ONLINE_MESSAGE", "b23bot is online"),
        )


class PersistedConfig(BaseModel):
    """Shape of the persisted configuration document"""
    host: str = "127.0.0.1"
    port: int = 3001
    root: List[int] = Field(default_factory=list)
    admin: List[int] = Field(default_factory=list)
    plugins: List[str] = Field(default_factory=list)  # load order


class ConfigStore:
    """
    Single owner of the persisted configuration document.

    Reads go through the accessors. Every mutation is a transaction: the
    document is re-read from disk, changed, written back, and only then
    replaces the in-memory copy. A transaction body that raises writes
    nothing.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._config: Optional[PersistedConfig] = None
        self._lock = asyncio.Lock()

    def load(self) -> PersistedConfig:
        """Read the document from disk. Called once at startup."""
        self._config = self._read()
        logger.info(f"Loaded configuration from {self.path}")
        return self._config

    @property
    def config(self) -> PersistedConfig:
        if self._config is None:
            raise ConfigError("configuration has not been loaded")
        return self._config

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def root_ids(self) -> FrozenSet[int]:
        return frozenset(self.config.root)

    @property
    def admin_ids(self) -> FrozenSet[int]:
        return frozenset(self.config.admin)

    @property
    def plugins(self) -> List[str]:
        return list(self.config.plugins)

    def is_root(self, user_id: int) -> bool:
        return user_id in self.config.root

    def is_admin(self, user_id: int) -> bool:
        """Root ids are implicitly admins."""
        return user_id in self.config.admin or self.is_root(user_id)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PersistedConfig]:
        async with self._lock:
            draft = await asyncio.to_thread(self._read)
            yield draft
            await asyncio.to_thread(self._write, draft)
            self._config = draft

    async def add_root(self, user_id: int) -> bool:
        """Returns False if the id was already a root."""
        async with self.transaction() as doc:
            if user_id in doc.root:
                return False
            doc.root.append(user_id)
        logger.info(f"Added root {user_id}")
        return True

    async def add_admin(self, user_id: int) -> bool:
        """Returns False if the id was already an admin."""
        async with self.transaction() as doc:
            if user_id in doc.admin:
                return False
            doc.admin.append(user_id)
        logger.info(f"Added admin {user_id}")
        return True

    def _read(self) -> PersistedConfig:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"failed to read {self.path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {self.path}: {e}") from e

        try:
            return PersistedConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"invalid configuration in {self.path}: {e}") from e

    def _write(self, config: PersistedConfig) -> None:
        directory = self.path.parent
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".config-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise ConfigError(f"failed to write {self.path}: {e}") from e
