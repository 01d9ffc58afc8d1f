"""Typed application errors with user-facing messages."""

from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class UnsupportedSchemeError(AppError):
    pass


class FetchError(AppError):
    pass


class ConfigBuildError(AppError):
    pass


class ConfigMissingError(ConfigBuildError):
    pass


class InboundNotFoundError(ConfigBuildError):
    pass


class InvalidPortError(AppError):
    pass


class EngineBinaryMissingError(AppError):
    pass


class LaunchFailedError(AppError):
    pass


class NoConfigAvailableError(AppError):
    pass


class SystemProxyUnavailableError(AppError):
    pass


class BusyError(AppError):
    pass


class _AuthError(AppError):
    def __init__(self, origin: str, message: str, user_message: str | None = None) -> None:
        super().__init__(message, user_message)
        self.origin = origin


class AuthRequiredError(_AuthError):
    def __init__(self, origin: str) -> None:
        super().__init__(
            origin,
            f"Basic authentication required by {origin}",
            user_message="The config server requires a username and password.",
        )


class AuthInvalidError(_AuthError):
    def __init__(self, origin: str) -> None:
        super().__init__(
            origin,
            f"Basic authentication rejected by {origin}",
            user_message="The username or password was rejected by the config server.",
        )
