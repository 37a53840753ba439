from __future__ import annotations


class MonitorError(Exception):
    """Base class for errors that abort one unit of work but not the whole run."""


class ConfigError(MonitorError):
    pass


class ServiceConfigError(ConfigError):
    ACCESS_URL_NOT_DEFINED = "アクセス確認先のURLが指定されていません。"
    FIND_SELECTOR_NOT_DEFINED = "アクセス確認先のセレクタが指定されていません。"
    INVALID_COOKIE = "不正なCookieが指定されています。"

    def __init__(self, message: str, *, path: object = None) -> None:
        self.path = path
        super().__init__(f"{path}: {message}" if path is not None else message)


class BrowserSessionError(MonitorError):
    """The browser itself failed (launch, crash, closed driver), not the page under test."""


class BrowserLaunchError(BrowserSessionError):
    pass
