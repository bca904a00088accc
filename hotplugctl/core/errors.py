"""Domain-specific errors for hotplugctl."""


class HotplugError(Exception):
    """Base error for hotplugctl."""


class SpecFormatError(HotplugError):
    """Raised when a device spec or VM binding string is malformed."""


class ConfigLoadError(HotplugError):
    """Raised when the config file cannot be read."""


class ConfigValidationError(HotplugError):
    """Raised when the config file does not conform to schema or semantics."""


class ScanUnavailableError(HotplugError):
    """Raised when the host USB topology cannot be read."""


class ChannelError(HotplugError):
    """Base control-channel error."""


class UnreachableError(ChannelError):
    """Raised when a VM's control socket cannot be opened or fails its liveness probe."""


class ProtocolError(ChannelError):
    """Raised when a command is rejected or the reply cannot be understood."""

    def __init__(self, message: str, *, error_class: str | None = None) -> None:
        super().__init__(message)
        self.error_class = error_class


class ChannelTimeoutError(ChannelError):
    """Raised when the control socket does not answer in time."""


class IntrospectionFailedError(HotplugError):
    """Raised when a VM's USB attachment tree cannot be fully read."""


class DetachFailedError(HotplugError):
    """Raised when removing a device from a VM fails for a reason other than absence."""


class NoTargetConnectionError(HotplugError):
    """Raised when the destination VM has no live control channel."""


class DetectDeviceNotFoundError(HotplugError):
    """Raised when the detect device is not plugged in at any bound position."""
