"""
Exceptions raised by the dose reminder core
"""


class ReminderError(Exception):
    """Base class for dose reminder errors"""


class PersistenceError(ReminderError):
    """A dose log write failed after its retry"""

    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause
