class LeaseQueueError(Exception):
    """Base class for errors raised by leasequeue"""


class StoreError(LeaseQueueError):
    """The job store could not complete a read or write"""

    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class ConfigError(LeaseQueueError):
    """Configuration file is unreadable or holds an invalid value"""
