"""
b23bot plugin system

- PluginDefinition / define_plugin: what a plugin module exports
- PluginContext: capabilities handed to a plugin's setup()
- PluginRegistry: load, enable, disable and reload against the persisted list
- discovery: entry points and the plugins directory
"""

from .base import PluginContext, PluginDefinition, PluginRecord, define_plugin
from .manager import PluginRegistry

__all__ = [
    "PluginContext",
    "PluginDefinition",
    "PluginRecord",
    "PluginRegistry",
    "define_plugin",
]
