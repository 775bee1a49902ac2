"""
Plugin discovery: entry points, static factories and the plugins directory

Every source produces a typed PluginDefinition; nothing past this module
deals with raw modules.
"""

import importlib.util
import logging
import re
import sys
from importlib.metadata import entry_points
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Dict, Optional, Union

from ..exceptions import PluginLoadError
from .base import PluginDefinition

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "b23bot.plugins"
MODULE_PREFIX = "b23bot_plugin_"

PluginFactory = Callable[[], Any]

_VALID_NAME = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-]*$")


def discover_entry_point_plugins(group: str = ENTRY_POINT_GROUP) -> Dict[str, PluginFactory]:
    """
    Discover plugins registered via package entry points.
    The entry point name is the plugin name; its target is a
    PluginDefinition or a module exporting one.
    """
    factories: Dict[str, PluginFactory] = {}

    try:
        eps = entry_points(group=group)
    except Exception as e:
        logger.error(f"Failed to enumerate entry points: {e}")
        return factories

    for ep in eps:
        factories[ep.name] = ep.load
        logger.info(f"Discovered entry point plugin: {ep.name}")

    return factories


def resolve_plugin_path(plugins_dir: Union[str, Path], name: str) -> Optional[Path]:
    """
    Locate a plugin in the plugins directory: a package ``<name>/__init__.py``
    or a single file ``<name>.py``. Returns None if neither exists.
    """
    if not _VALID_NAME.match(name):
        return None

    base = Path(plugins_dir)
    package = base / name / "__init__.py"
    if package.is_file():
        return package
    single = base / f"{name}.py"
    if single.is_file():
        return single
    return None


def load_plugin_module(path: Path, name: str) -> ModuleType:
    """
    Import a plugin file from scratch. Re-importing the same name replaces
    the previous module so reloads pick up code changes.
    """
    module_name = f"{MODULE_PREFIX}{name.replace('-', '_')}"
    is_package = path.name == "__init__.py"

    spec = importlib.util.spec_from_file_location(
        module_name,
        path,
        submodule_search_locations=[str(path.parent)] if is_package else None,
    )
    if spec is None or spec.loader is None:
        raise PluginLoadError(name, f"could not load spec for {path}")

    module = importlib.util.module_from_spec(spec)
    previous = sys.modules.get(module_name)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        if previous is not None:
            sys.modules[module_name] = previous
        else:
            sys.modules.pop(module_name, None)
        raise PluginLoadError(name, f"{type(e).__name__}: {e}") from e

    return module


def coerce_definition(obj: Any, expected_name: str) -> PluginDefinition:
    """
    Validate an exported plugin and return it as a PluginDefinition.

    Accepts a PluginDefinition, any object with name/version/setup, or a
    module exporting ``plugin`` (falling back to module-level attributes).
    """
    if isinstance(obj, ModuleType):
        obj = getattr(obj, "plugin", obj)

    name = getattr(obj, "name", None)
    version = getattr(obj, "version", None)
    setup = getattr(obj, "setup", None)

    if not isinstance(name, str) or not isinstance(version, str) or not callable(setup):
        raise PluginLoadError(expected_name, "invalid plugin format, expected name, version and setup")

    if name != expected_name:
        raise PluginLoadError(expected_name, f"declared name {name!r} does not match")

    if isinstance(obj, PluginDefinition):
        return obj
    return PluginDefinition(
        name=name,
        version=version,
        setup=setup,
        description=getattr(obj, "description", "") or "",
    )
