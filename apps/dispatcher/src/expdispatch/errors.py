class ExpDispatchError(RuntimeError):
    pass


class ConfigError(ExpDispatchError):
    pass


class InvalidCommandError(ExpDispatchError):
    pass


class CollectorError(ExpDispatchError):
    pass
