from __future__ import annotations


class ScanError(RuntimeError):
    pass


class BrowserLaunchError(ScanError):
    pass


class NavigationError(ScanError):
    def __init__(self, url: str, attempts: int, reason: str) -> None:
        super().__init__(f"Failed to navigate to {url} after {attempts} attempts: {reason}")
        self.url = url
        self.attempts = attempts
        self.reason = reason


class ArtifactFetchError(ScanError):
    def __init__(self, location: str, reason: str) -> None:
        super().__init__(f"Could not fetch {location}: {reason}")
        self.location = location


class SuggestionError(ScanError):
    pass


class StoreKeyNotFound(KeyError):
    pass


class ScanRejected(ScanError):
    pass
