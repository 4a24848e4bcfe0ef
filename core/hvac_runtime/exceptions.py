"""
HVAC Runtime Custom Exceptions

Simple exception hierarchy for error handling. None of these is fatal to the
process: callers log them and keep processing other devices.
"""


class RuntimeTrackerError(Exception):
    """Base exception for the runtime tracker."""

    pass


class ConfigurationError(RuntimeTrackerError):
    """Configuration is invalid."""

    pass


class MalformedEvent(RuntimeTrackerError):
    """Payload is unusable (no device identity or timestamp)."""

    pass


class OutOfOrderEvent(RuntimeTrackerError):
    """Event is older than the last applied event for the device."""

    pass


class RunawaySession(RuntimeTrackerError):
    """Session exceeded the maximum session age and was force-closed."""

    pass


class SinkDeliveryFailure(RuntimeTrackerError):
    """Outbound sink rejected or did not receive a payload."""

    pass


class PersistenceFailure(RuntimeTrackerError):
    """Session store read or write failed."""

    pass


class VendorApiError(RuntimeTrackerError):
    """Vendor device API request failed."""

    pass
