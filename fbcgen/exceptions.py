# SPDX-License-Identifier: GPL-3.0-or-later
from typing import Optional


class BaseException(Exception):
    """The base class for all fbcgen exceptions."""


class ConfigError(BaseException):
    """The configuration is invalid."""


class FbcgenError(BaseException):
    """An error was encountered in fbcgen."""


class ParseError(FbcgenError):
    """An image reference could not be parsed."""


class NotFoundError(FbcgenError):
    """An expected entity is absent from a render result."""


class AccessError(FbcgenError):
    """A registry could not be reached or refused access to an image."""

    def __init__(self, message: str, reference: Optional[str] = None, tier: Optional[str] = None):
        """
        Initialize the AccessError.

        :param str message: the error message
        :param str reference: the image reference that was attempted
        :param str tier: the registry tier that was attempted, e.g. ``primary``
        """
        super().__init__(message)
        self.reference = reference
        self.tier = tier


class ExternalToolError(FbcgenError):
    """An external process exited with a non-zero status."""

    def __init__(self, message: str, stderr: str = '', returncode: Optional[int] = None):
        """
        Initialize the ExternalToolError.

        :param str message: the error message
        :param str stderr: the captured standard error of the process
        :param int returncode: the exit status of the process
        """
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class ValidationError(BaseException):
    """Denote invalid input."""


class CancelledError(BaseException):
    """The operation was cancelled by the caller."""
