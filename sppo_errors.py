from typing import Optional


class UpstreamError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class ValidationError(Exception):
    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.details = details


class NotFoundError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
