"""
Exception hierarchy for b23bot.

Transport and dispatch failures are contained where they happen and logged.
Only send/reply failures and plugin-management failures reach the caller.
"""


class B23BotError(Exception):
    """Base class for all b23bot errors"""


class GatewayConnectionError(B23BotError, ConnectionError):
    """The gateway could not be reached or the socket dropped"""


class BootstrapError(GatewayConnectionError):
    """The socket opened but the session could not be initialised"""


class NotConnectedError(B23BotError):
    """An outbound action was attempted without a live connection"""


class ProtocolDecodeError(B23BotError):
    """An inbound frame was not valid JSON or not a JSON object"""


class ActionFailedError(B23BotError):
    """The gateway answered an action with a non-ok status"""

    def __init__(self, action: str, status: str, retcode=None, wording: str = ""):
        self.action = action
        self.status = status
        self.retcode = retcode
        self.wording = wording
        super().__init__(f"{action} failed: status={status} retcode={retcode} {wording}".rstrip())


class ConfigError(B23BotError):
    """The persisted configuration document could not be read or written"""


class ConfigConsistencyError(ConfigError):
    """A mutation was requested that the document is already in"""


class PluginAlreadyEnabledError(ConfigConsistencyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"plugin already enabled: {name}")


class PluginNotEnabledError(ConfigConsistencyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"plugin not enabled: {name}")


class PluginError(B23BotError):
    """Base class for plugin lifecycle errors"""


class PluginNotFoundError(PluginError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"plugin not found: {name}")


class PluginLoadError(PluginError):
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"failed to load plugin {name}: {reason}")
