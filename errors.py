"""
Error taxonomy for the order pipeline.

Every error carries a human readable message and the HTTP status the API
layer answers with.
"""


class OrderError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(OrderError):
    status_code = 400


class NotFound(OrderError):
    status_code = 404


class Conflict(OrderError):
    status_code = 409


class StorageFailure(OrderError):
    status_code = 500
