class QuotacastError(Exception):
    """
    base class for every fault raised by quotacast.
    """


class StorageFault(QuotacastError):
    """
    StorageFault is raised when the persistence medium cannot be
    opened, rejects a statement or violates a structural constraint.
    It is never swallowed by the store itself.
    """


class ParseFault(QuotacastError):
    """
    ParseFault is raised (or collected) when collector output does not
    have the expected shape.
    """

    def __init__(self, message: "str", provider: "str | None" = None) -> "None":
        super().__init__(message)
        self.provider = provider


class CollectorFault(QuotacastError):
    """
    CollectorFault is raised when the external collector cannot be
    launched, times out or exits abnormally.
    """

    def __init__(
        self,
        message: "str",
        exit_code: "int | None" = None,
        stderr: "str" = "",
    ) -> "None":
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class UnknownProviderError(QuotacastError, ValueError):
    """
    raised when a series key is not one of the known providers.
    Callers should treat it as a client error.
    """

    def __init__(self, provider: "str") -> "None":
        super().__init__(f"unknown provider: {provider!r}")
        self.provider = provider
