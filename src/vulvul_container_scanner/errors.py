class ScannerError(Exception):
    """Base class for every error raised by this package."""


class ScanError(ScannerError):
    """A single scan call failed; terminal for that target."""


class TargetNotFoundError(ScanError):
    pass


class ScanInvocationError(ScanError):
    def __init__(self, message: str, stderr: str = "") -> None:
        self.stderr = stderr
        if stderr:
            message = f"{message} (stderr: {stderr.strip()})"
        super().__init__(message)


class ScanTimeoutError(ScanInvocationError):
    pass


class ScanParseError(ScanError):
    pass


class ExploitFeedError(ScannerError):
    pass


class PolicyError(ScannerError, ValueError):
    pass


class ReportError(ScannerError):
    pass
