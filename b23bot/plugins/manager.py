"""
Plugin registry: runtime lifecycle kept consistent with the persisted plugin list
"""

import inspect
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..config import ConfigStore
from ..exceptions import (
    PluginAlreadyEnabledError,
    PluginError,
    PluginLoadError,
    PluginNotEnabledError,
    PluginNotFoundError,
)
from .base import PluginContext, PluginDefinition, PluginRecord
from .discovery import (
    PluginFactory,
    coerce_definition,
    discover_entry_point_plugins,
    load_plugin_module,
    resolve_plugin_path,
)

logger = logging.getLogger(__name__)

ContextFactory = Callable[[str], PluginContext]


class PluginRegistry:
    """
    Loads, enables, disables and reloads plugins.

    The persisted plugin list in the ConfigStore is the source of truth for
    what is enabled; the registry holds what is loaded. Enable and disable
    write the document first, then change the registry.

    Lookup order for a plugin name:
    1. static factories (constructor argument, then entry points)
    2. ``<plugins_dir>/<name>/__init__.py``
    3. ``<plugins_dir>/<name>.py``
    """

    def __init__(
        self,
        store: ConfigStore,
        context_factory: ContextFactory,
        plugins_dir: Union[str, Path] = "./plugins",
        factories: Optional[Dict[str, PluginFactory]] = None,
        auto_discover: bool = True,
    ):
        self.store = store
        self.plugins_dir = Path(plugins_dir)
        self._context_factory = context_factory

        self._factories: Dict[str, PluginFactory] = {}
        if auto_discover:
            self._factories.update(discover_entry_point_plugins())
        if factories:
            self._factories.update(factories)

        self._records: Dict[str, PluginRecord] = {}

    # Lookup

    def exists(self, name: str) -> bool:
        return name in self._factories or resolve_plugin_path(self.plugins_dir, name) is not None

    def available(self) -> List[str]:
        """Names of every plugin that could be enabled."""
        names = set(self._factories)
        if self.plugins_dir.is_dir():
            for item in self.plugins_dir.iterdir():
                if item.name.startswith(("_", ".")):
                    continue
                if item.is_dir() and (item / "__init__.py").is_file():
                    names.add(item.name)
                elif item.is_file() and item.suffix == ".py":
                    names.add(item.stem)
        return sorted(names)

    def get(self, name: str) -> Optional[PluginRecord]:
        return self._records.get(name)

    def loaded_names(self) -> List[str]:
        return list(self._records)

    def is_enabled(self, name: str) -> bool:
        return name in self.store.plugins

    def _resolve(self, name: str) -> PluginDefinition:
        factory = self._factories.get(name)
        if factory is not None:
            try:
                exported = factory()
            except Exception as e:
                raise PluginLoadError(name, f"factory failed: {type(e).__name__}: {e}") from e
            return coerce_definition(exported, name)

        path = resolve_plugin_path(self.plugins_dir, name)
        if path is None:
            raise PluginNotFoundError(name)
        return coerce_definition(load_plugin_module(path, name), name)

    # Load / unload

    async def _load(self, name: str, definition: Optional[PluginDefinition] = None) -> PluginRecord:
        if definition is None:
            definition = self._resolve(name)

        context = self._context_factory(name)
        try:
            result = definition.setup(context)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            context.retract_all()
            raise PluginLoadError(name, f"setup failed: {type(e).__name__}: {e}") from e

        record = PluginRecord(
            name=definition.name,
            version=definition.version,
            definition=definition,
            context=context,
        )
        self._records[name] = record
        logger.info(f"Loaded plugin: {name} v{definition.version}")
        return record

    def _unload(self, name: str) -> bool:
        record = self._records.pop(name, None)
        if record is None:
            return False
        removed = record.context.retract_all()
        logger.info(f"Unloaded plugin: {name} ({removed} handlers removed)")
        return True

    async def load_all(self, names: Iterable[str]) -> Dict[str, bool]:
        """
        Load each named plugin independently.

        Missing, invalid or failing plugins are logged and skipped. Plugins
        that are already loaded are left alone so a second bootstrap after a
        reconnect does not register their handlers twice.

        Returns dict of plugin name -> loaded
        """
        logger.info("Loading plugins...")
        results: Dict[str, bool] = {}

        for name in names:
            if name in self._records:
                logger.debug(f"Plugin already loaded: {name}")
                results[name] = True
                continue

            try:
                await self._load(name)
                results[name] = True
            except PluginNotFoundError:
                logger.error(f"Plugin not found: {name}")
                results[name] = False
            except PluginError as e:
                logger.error(str(e))
                results[name] = False
            except Exception:
                logger.exception(f"Unexpected error loading plugin {name}")
                results[name] = False

        logger.info(f"Plugin loading finished, {len(self._records)} plugins loaded")
        return results

    async def unload_all(self) -> None:
        for name in list(self._records):
            self._unload(name)

    # Management

    async def enable(self, name: str) -> PluginRecord:
        """
        Persist the plugin as enabled, then load it.

        Raises PluginAlreadyEnabledError, PluginNotFoundError, or
        PluginLoadError. A load failure leaves the name persisted as enabled
        without active handlers; a later reload retries it.
        """
        async with self.store.transaction() as doc:
            if name in doc.plugins:
                raise PluginAlreadyEnabledError(name)
            if not self.exists(name):
                raise PluginNotFoundError(name)
            doc.plugins.append(name)

        logger.info(f"Enabled plugin: {name}")
        self._unload(name)
        return await self._load(name)

    async def disable(self, name: str) -> None:
        """Persist the plugin as disabled, then retract its handlers and drop it."""
        async with self.store.transaction() as doc:
            if name not in doc.plugins:
                raise PluginNotEnabledError(name)
            doc.plugins = [p for p in doc.plugins if p != name]

        self._unload(name)
        logger.info(f"Disabled plugin: {name}")

    async def reload(self, name: str) -> PluginRecord:
        """
        Re-import a plugin and run its setup again, or enable it if it is not
        enabled. The new code is imported before the old handlers are
        retracted, so a plugin that no longer imports keeps running.
        """
        if not self.is_enabled(name):
            logger.info(f"Plugin {name} is not enabled, enabling")
            return await self.enable(name)

        definition = self._resolve(name)
        self._unload(name)
        record = await self._load(name, definition)
        logger.info(f"Reloaded plugin: {name}")
        return record

    def status(self) -> Dict[str, object]:
        enabled = set(self.store.plugins)
        return {
            "total": len(self._records),
            "list": [
                {
                    "name": name,
                    "version": record.version,
                    "enabled": name in enabled,
                }
                for name, record in self._records.items()
            ],
        }
