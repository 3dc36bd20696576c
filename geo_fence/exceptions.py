class GeoFenceError(Exception):
    pass


class StartupError(GeoFenceError):
    """Registry never became reachable"""


class CycleError(GeoFenceError):
    """Any failure that aborts an update cycle

    ``fatal`` errors stop the supervisor at once instead of being counted
    """

    fatal = False


class ConfigError(CycleError):
    fatal = True


class PrerequisiteError(CycleError):
    fatal = True


class FetchError(CycleError):
    def __init__(self, message, country=None):
        super().__init__(message)
        self.country = country


class TransientFetchError(FetchError):
    """Timeout, connection failure or temporary upstream error, worth a retry"""


class ValidationError(FetchError):
    def __init__(self, message, country=None, lineno=None):
        super().__init__(message, country=country)
        self.lineno = lineno


class EmptyResultError(CycleError):
    pass


class SetBuildError(CycleError):
    pass


class RuleReconcileError(CycleError):
    pass
